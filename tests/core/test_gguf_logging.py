# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import io
import logging
import re

import pytest
import torch

from ggufio.core.gguf_logging import LOG_FORMAT, RankContextFormatter, get_logger


class TestRankContextFormatter:
    @pytest.fixture
    def formatter(self):
        return RankContextFormatter("[%(asctime)s] [%(levelname)s] [Rank %(rank)s] [%(name)s:%(lineno)d] %(message)s")

    @pytest.fixture
    def record(self):
        return logging.LogRecord(
            name="test_logger",
            level=logging.INFO,
            pathname="test_module.py",
            lineno=10,
            msg="Test message",
            args=(),
            exc_info=None,
        )

    @pytest.mark.parametrize("rank_value", [0, 1, 5, 8])
    def test_format_with_initialized_distributed(self, mocker, formatter, record, rank_value):
        mocker.patch("torch.distributed.is_available", return_value=True)
        mocker.patch("torch.distributed.is_initialized", return_value=True)
        mocker.patch("torch.distributed.get_rank", return_value=rank_value)

        formatted_message = formatter.format(record)

        assert f"[Rank {rank_value}]" in formatted_message
        torch.distributed.get_rank.assert_called_once()

    def test_format_with_uninitialized_distributed(self, mocker, formatter, record):
        mocker.patch("torch.distributed.is_available", return_value=True)
        mocker.patch("torch.distributed.is_initialized", return_value=False)

        formatted_message = formatter.format(record)

        assert "[Rank -1]" in formatted_message
        torch.distributed.is_initialized.assert_called_once()

    def test_format_without_distributed_support(self, mocker, formatter, record):
        mocker.patch("torch.distributed.is_available", return_value=False)
        mock_is_initialized = mocker.patch("torch.distributed.is_initialized")

        formatted_message = formatter.format(record)

        assert "[Rank -1]" in formatted_message
        mock_is_initialized.assert_not_called()


class TestGetLogger:
    @pytest.fixture(autouse=True)
    def cleanup_loggers(self):
        yield
        for logger_name in list(logging.Logger.manager.loggerDict.keys()):
            if logger_name.startswith("test_logger"):
                logger = logging.getLogger(logger_name)
                for handler in list(logger.handlers):
                    logger.removeHandler(handler)
                del logging.Logger.manager.loggerDict[logger_name]

    def test_get_logger_configures_handler_and_formatter(self, mocker, monkeypatch):
        # Given
        mock_stream = io.StringIO()
        monkeypatch.delenv("GGUFIO_LOG_LEVEL", raising=False)
        mocker.patch("torch.distributed.is_available", return_value=True)
        mocker.patch("torch.distributed.is_initialized", return_value=True)
        mocker.patch("torch.distributed.get_rank", return_value=1)

        # When
        logger = get_logger("test_logger_config_unique", stream=mock_stream)
        logger.info("Test message from logger")

        # Then
        assert len(logger.handlers) == 1
        handler = logger.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert isinstance(handler.formatter, RankContextFormatter)
        assert handler.formatter._fmt == LOG_FORMAT
        assert not logger.propagate
        assert logger.level == logging.INFO
        log_output = mock_stream.getvalue()
        match = re.search(
            r"\[GGUFIO \d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2},\d{3} INFO "
            r"Rank=1 test_logger_config_unique:\d+\] Test message from logger",
            log_output,
        )
        assert match is not None, f"got {log_output}"

    def test_get_logger_returns_existing_logger(self):
        mock_stream = io.StringIO()

        # Given
        logger1 = get_logger("test_logger_existing", stream=mock_stream)
        handler1 = logger1.handlers[0]

        # When
        logger2 = get_logger("test_logger_existing", stream=mock_stream)
        logger1.info("Another test message")

        # Then
        assert logger1 is logger2
        assert len(logger2.handlers) == 1
        assert logger2.handlers[0] is handler1
        assert mock_stream.getvalue().count("Another test message") == 1

    @pytest.mark.parametrize(
        "env_level, expected_level",
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("ERROR", logging.ERROR), ("bogus", logging.INFO)],
    )
    def test_get_logger_reads_level_from_env(self, monkeypatch, env_level, expected_level):
        # Given
        monkeypatch.setenv("GGUFIO_LOG_LEVEL", env_level)

        # When
        logger = get_logger(f"test_logger_level_{env_level}", stream=io.StringIO())

        # Then
        assert logger.level == expected_level

    def test_debug_messages_filtered_at_info(self, monkeypatch):
        # Given
        mock_stream = io.StringIO()
        monkeypatch.setenv("GGUFIO_LOG_LEVEL", "INFO")
        logger = get_logger("test_logger_filtered", stream=mock_stream)

        # When
        logger.debug("hidden")
        logger.warning("shown")

        # Then
        assert "hidden" not in mock_stream.getvalue()
        assert "WARNING" in mock_stream.getvalue()
