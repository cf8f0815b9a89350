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
import os
import sys
import time
from contextlib import contextmanager

DEFAULT_COPY_CHUNK_BYTES = 16 * 1024 * 1024
"""The default chunk size used when streaming tensor payloads between files - 16 MiB."""


def get_env_var_prefix() -> str:
    """Returns the prefix for this application's environment variables.

    Returns:
        The env var prefix string.
    """
    return "GGUFIO"


def get_env_val_bool(env_var_name: str, default_val: bool) -> bool:
    """Returns the environment variable value for the given env_prop_name, prefixed with this app's custom prefix.

    Expects the env var value to be "true" or "false" (case-insensitive).

    Uses the provided default_val when the environment variable is not found.

    Args:
        env_var_name: The suffix of the environment variable name.
        default_val: The default value to return if the environment variable is missing.

    Returns:
        The boolean value of the environment variable or the default value.
    """
    return str(os.environ.get(f"{get_env_var_prefix()}_{env_var_name}", default_val)).lower() == "true"


def get_env_val_str(env_var_name: str, default_val: str) -> str:
    """Returns the environment variable value for the given env_prop_name, prefixed with this app's custom prefix.

    Args:
        env_var_name: The suffix of the environment variable name.
        default_val: The default value to return if the environment variable is missing.

    Returns:
        The string value of the environment variable or the default value.
    """
    return os.environ.get(f"{get_env_var_prefix()}_{env_var_name}", default_val)


def get_env_val_int(env_var_name: str, default_val: int) -> int:
    """Returns the environment variable value for the given env_prop_name, prefixed with this app's custom prefix.

    Uses the provided default_val when the environment variable is not found or cannot be converted to an integer.

    Args:
        env_var_name: The suffix of the environment variable name.
        default_val: The default value to return if the environment variable is missing or invalid.

    Returns:
        The integer value of the environment variable or the default value.
    """
    env_val = os.environ.get(f"{get_env_var_prefix()}_{env_var_name}", default_val)
    if env_val is None:
        return default_val
    try:
        return int(env_val)
    except ValueError:
        return default_val


def get_copy_chunk_bytes() -> int:
    """Returns the configured chunk size for streamed copies, falling back to the default for non-positive values."""
    chunk = get_env_val_int("COPY_CHUNK_BYTES", DEFAULT_COPY_CHUNK_BYTES)
    return chunk if chunk > 0 else DEFAULT_COPY_CHUNK_BYTES


def align_up(value: int, alignment: int) -> int:
    """Rounds `value` up to the next multiple of `alignment`.

    Args:
        value: A non-negative byte position or size.
        alignment: A positive alignment in bytes.

    Returns:
        The smallest multiple of `alignment` that is >= `value`.
    """
    if alignment <= 0:
        raise ValueError(f"Alignment must be positive, got {alignment}")
    return (value + alignment - 1) // alignment * alignment


def is_valid_alignment(alignment) -> bool:
    """Returns True if `alignment` is a positive power of two that fits in 32 bits."""
    return (
        isinstance(alignment, int)
        and not isinstance(alignment, bool)
        and 0 < alignment <= 0xFFFFFFFF
        and alignment & (alignment - 1) == 0
    )


def host_byte_order() -> str:
    """Returns the byte order of the running interpreter, "little" or "big"."""
    return sys.byteorder


@contextmanager
def log_execution_time(logger: logging.Logger, name: str, level: int = logging.DEBUG):
    """Simple context manager for timing functions/code blocks.

    Args:
        logger: The logger to use for recording the time.
        name: The name of the operation being timed.
        level: The logging level to use. Defaults to logging.DEBUG.

    Yields:
        None.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.log(level, "%s took %.4fs", name, time.perf_counter() - start)
