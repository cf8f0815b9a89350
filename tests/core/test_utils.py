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

import logging
import sys
import time

import pytest

from ggufio.core import utils


class TestLogExecutionTime:
    def test_logs_time_on_successful_execution(self, mocker):
        # Given
        mock_logger = mocker.MagicMock(spec=logging.Logger)
        op_name = "test_op"
        mocker.patch("time.perf_counter", side_effect=[0, 0.1234])

        # When
        with utils.log_execution_time(mock_logger, op_name):
            pass

        # Then
        mock_logger.log.assert_called_once_with(logging.DEBUG, "%s took %.4fs", op_name, 0.1234)

    def test_timing_accuracy_with_delay(self, mocker):
        # Given
        mock_logger = mocker.MagicMock(spec=logging.Logger)
        op_name = "delayed_op"
        delay = 0.01
        mocker.patch("time.perf_counter", side_effect=[0, delay])

        # When
        with utils.log_execution_time(mock_logger, op_name):
            time.sleep(delay)

        # Then
        mock_logger.log.assert_called_once_with(logging.DEBUG, "%s took %.4fs", op_name, delay)

    def test_logs_time_when_exception_is_raised(self, mocker):
        # Given
        mock_logger = mocker.MagicMock(spec=logging.Logger)
        op_name = "failing_op"
        error_message = "test error"
        mocker.patch("time.perf_counter", side_effect=[0, 0.1234])

        # When/Then
        with pytest.raises(ValueError, match=error_message):
            with utils.log_execution_time(mock_logger, op_name):
                raise ValueError(error_message)

        mock_logger.log.assert_called_once_with(logging.DEBUG, "%s took %.4fs", op_name, 0.1234)

    @pytest.mark.parametrize("log_level", [logging.INFO, logging.WARNING, logging.DEBUG])
    def test_logs_with_different_levels(self, mocker, log_level):
        # Given
        mock_logger = mocker.MagicMock(spec=logging.Logger)
        op_name = "test_op"
        mocker.patch("time.perf_counter", side_effect=[0, 1])

        # When
        with utils.log_execution_time(mock_logger, op_name, level=log_level):
            pass

        # Then
        mock_logger.log.assert_called_once_with(log_level, "%s took %.4fs", op_name, 1)

    def test_works_as_decorator(self, mocker):
        # Given
        mock_logger = mocker.MagicMock(spec=logging.Logger)
        mocker.patch("time.perf_counter", side_effect=[0, 0.5, 1, 2])

        @utils.log_execution_time(logger=mock_logger, name="decorated")
        def decorated(x):
            return x * 2

        # When
        first = decorated(2)
        second = decorated(3)

        # Then
        assert (first, second) == (4, 6)
        assert mock_logger.log.call_args_list == [
            mocker.call(logging.DEBUG, "%s took %.4fs", "decorated", 0.5),
            mocker.call(logging.DEBUG, "%s took %.4fs", "decorated", 1),
        ]


class TestEnvVals:
    def test_prefix(self):
        assert utils.get_env_var_prefix() == "GGUFIO"

    @pytest.mark.parametrize(
        "raw, default, expected",
        [
            ("true", False, True),
            ("TRUE", False, True),
            ("false", True, False),
            ("yes", True, False),
            (None, True, True),
            (None, False, False),
        ],
    )
    def test_get_env_val_bool(self, monkeypatch, raw, default, expected):
        # Given
        if raw is None:
            monkeypatch.delenv("GGUFIO_SOME_FLAG", raising=False)
        else:
            monkeypatch.setenv("GGUFIO_SOME_FLAG", raw)

        # When/Then
        assert utils.get_env_val_bool("SOME_FLAG", default) is expected

    def test_get_env_val_str(self, monkeypatch):
        monkeypatch.setenv("GGUFIO_LOG_LEVEL", "DEBUG")
        assert utils.get_env_val_str("LOG_LEVEL", "INFO") == "DEBUG"
        monkeypatch.delenv("GGUFIO_LOG_LEVEL")
        assert utils.get_env_val_str("LOG_LEVEL", "INFO") == "INFO"

    @pytest.mark.parametrize("raw, expected", [("42", 42), ("-3", -3), ("not-a-number", 7), (None, 7)])
    def test_get_env_val_int(self, monkeypatch, raw, expected):
        # Given
        if raw is None:
            monkeypatch.delenv("GGUFIO_SOME_INT", raising=False)
        else:
            monkeypatch.setenv("GGUFIO_SOME_INT", raw)

        # When/Then
        assert utils.get_env_val_int("SOME_INT", 7) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1024", 1024),
            ("0", utils.DEFAULT_COPY_CHUNK_BYTES),
            ("-5", utils.DEFAULT_COPY_CHUNK_BYTES),
            (None, utils.DEFAULT_COPY_CHUNK_BYTES),
        ],
    )
    def test_get_copy_chunk_bytes(self, monkeypatch, raw, expected):
        # Given
        if raw is None:
            monkeypatch.delenv("GGUFIO_COPY_CHUNK_BYTES", raising=False)
        else:
            monkeypatch.setenv("GGUFIO_COPY_CHUNK_BYTES", raw)

        # When/Then
        assert utils.get_copy_chunk_bytes() == expected


@pytest.mark.parametrize(
    "value, alignment, expected",
    [
        (0, 32, 0),
        (1, 32, 32),
        (31, 32, 32),
        (32, 32, 32),
        (33, 32, 64),
        (100, 1, 100),
        (4097, 4096, 8192),
    ],
)
def test_align_up(value, alignment, expected):
    assert utils.align_up(value, alignment) == expected


@pytest.mark.parametrize("alignment", [0, -32])
def test_align_up_rejects_non_positive_alignment(alignment):
    with pytest.raises(ValueError, match="Alignment must be positive"):
        utils.align_up(10, alignment)


@pytest.mark.parametrize(
    "alignment, expected",
    [
        (1, True),
        (2, True),
        (32, True),
        (2**31, True),
        (0, False),
        (-32, False),
        (24, False),
        (2**32, False),
        (True, False),
        (32.0, False),
        ("32", False),
    ],
)
def test_is_valid_alignment(alignment, expected):
    assert utils.is_valid_alignment(alignment) is expected


def test_host_byte_order_matches_interpreter():
    assert utils.host_byte_order() == sys.byteorder
