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

"""Exception hierarchy for reading and writing GGUF containers.

The builtin bases (`ValueError`, `RuntimeError`) are kept so that callers that only catch builtins still see these
errors.
"""

from typing import Optional


class GGUFError(Exception):
    """Base class for all errors raised by this package."""


class StructuralError(GGUFError, ValueError):
    """The file is not a well-formed GGUF container. Fatal for that file."""


class InvalidMagicError(StructuralError):
    """The file does not start with the GGUF magic bytes."""

    def __init__(self, actual: bytes, expected: bytes):
        self.actual = actual
        self.expected = expected
        super().__init__(f"Invalid GGUF magic at offset 0: expected {expected!r}, got {actual!r}")


class UnsupportedVersionError(StructuralError):
    """The file declares a format version that cannot be parsed."""

    def __init__(self, version: int, min_supported: int):
        self.version = version
        self.min_supported = min_supported
        super().__init__(f"Unsupported GGUF version {version} at offset 4 (minimum supported is {min_supported})")


class TruncatedDataError(StructuralError):
    """A read would run past the end of the available bytes."""

    def __init__(self, offset: int, expected: int, available: int, what: Optional[str] = None):
        self.offset = offset
        self.expected = expected
        self.available = available
        self.what = what
        subject = f" while reading {what}" if what else ""
        super().__init__(
            f"Truncated data at offset {offset}{subject}: needed {expected} bytes, only {available} available"
        )


class InvariantViolation(GGUFError, ValueError):
    """A building-time rule was broken by the offending call. The caller may correct and retry."""


class DuplicateKeyError(InvariantViolation):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Duplicate metadata key '{key}'")


class DuplicateTensorError(InvariantViolation):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate tensor name '{name}'")


class InvalidShapeError(InvariantViolation):
    def __init__(self, name: str, shape, reason: str):
        self.name = name
        self.shape = shape
        super().__init__(f"Invalid shape {list(shape)} for tensor '{name}': {reason}")


class InvalidValueError(InvariantViolation):
    """A metadata value cannot be represented with its declared type."""


class TensorSizeMismatchError(InvariantViolation):
    def __init__(self, name: str, expected: int, actual: int):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Byte size for tensor '{name}' is {actual}, but its shape and type require {expected}")


class SequenceError(GGUFError):
    """Tensor payloads were written out of sequence. The write session is unusable."""

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class IllegalStateError(GGUFError, RuntimeError):
    """The operation is not permitted in the object's current state."""
