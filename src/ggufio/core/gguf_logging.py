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

"""Custom ggufio logging configuration."""

import logging
import sys

import torch
from typing_extensions import override

from ggufio.core import utils

_MISSING_RANK = -1
"""Logged as the rank when no distributed process group is active."""

LOG_FORMAT = "[GGUFIO %(asctime)s %(levelname)s Rank=%(rank)s %(name)s:%(lineno)d] %(message)s"


class RankContextFormatter(logging.Formatter):
    """A logging formatter that stamps the distributed rank onto every record.

    GGUF files are commonly exported from every rank of a training job at once, so the rank is what tells the
    interleaved log lines apart.
    """

    @override
    def format(self, record):
        """Formats the log record to include the rank.

        Args:
            record: The log record to format.

        Returns:
            The formatted log record as a string.
        """
        if torch.distributed.is_available() and torch.distributed.is_initialized():
            record.rank = torch.distributed.get_rank()
        else:
            record.rank = _MISSING_RANK
        return super().format(record)


def get_logger(name: str, stream=sys.stderr) -> logging.Logger:
    """Get a logger with a custom format that includes the rank.

    The level is read from the `GGUFIO_LOG_LEVEL` environment variable and defaults to INFO.

    Args:
        name: The name of the logger.
        stream: The stream to write log records to. Defaults to sys.stderr.

    Returns:
        A logger with a custom format.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(stream=stream)
        handler.setFormatter(RankContextFormatter(LOG_FORMAT))
        logger.addHandler(handler)
        log_level_str = utils.get_env_val_str("LOG_LEVEL", "INFO")
        log_level = logging.getLevelName(log_level_str.upper())
        logger.setLevel(log_level if isinstance(log_level, int) else logging.INFO)
    logger.propagate = False
    return logger
