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

import dataclasses
import struct
from typing import Tuple

from ggufio.core.constants import GGUF_MAGIC, GGUF_VERSION, MIN_SUPPORTED_VERSION, ByteOrder
from ggufio.core.errors import InvalidMagicError, TruncatedDataError, UnsupportedVersionError
from ggufio.core.gguf_logging import get_logger

_LOGGER = get_logger(__name__)

HEADER_SIZE = 4 + 4 + 8 + 8
"""magic + version + tensor_count + metadata_count."""


@dataclasses.dataclass(frozen=True)
class GGUFHeader:
    """Fixed-width header at the start of every GGUF file."""

    tensor_count: int
    metadata_count: int
    version: int = GGUF_VERSION
    byte_order: ByteOrder = ByteOrder.LITTLE

    def to_bytes(self) -> bytes:
        """Serializes the header to bytes.

        Format:
        [4 bytes MAGIC] [4 bytes VERSION] [8 bytes TENSOR_COUNT] [8 bytes METADATA_COUNT]

        The magic is always the raw bytes "GGUF"; the remaining fields follow `byte_order`.
        """
        return GGUF_MAGIC + struct.pack(
            f"{self.byte_order.struct_prefix}IQQ", self.version, self.tensor_count, self.metadata_count
        )

    @classmethod
    def from_bytes(cls, buffer: bytes) -> Tuple["GGUFHeader", int]:
        """Deserializes the header from bytes, detecting the file's byte order from the version field.

        A little-endian read of the version whose low 16 bits are all zero can only come from a big-endian file, since
        versions never reach 65536.

        Args:
            buffer: The bytes to deserialize, starting at file offset 0.

        Returns:
            A tuple containing the GGUFHeader and the number of bytes consumed.

        Raises:
            InvalidMagicError: If the buffer does not start with the GGUF magic.
            TruncatedDataError: If the buffer holds the magic but not the rest of the header.
            UnsupportedVersionError: If the version predates 64-bit lengths.
        """
        magic = bytes(buffer[: len(GGUF_MAGIC)])
        if magic != GGUF_MAGIC:
            _LOGGER.error("Invalid GGUF magic: %r", magic)
            raise InvalidMagicError(magic, GGUF_MAGIC)

        if len(buffer) < HEADER_SIZE:
            raise TruncatedDataError(0, HEADER_SIZE, len(buffer), what="header")

        (version,) = struct.unpack_from("<I", buffer, 4)
        byte_order = ByteOrder.LITTLE
        if version & 0xFFFF == 0:
            byte_order = ByteOrder.BIG
            (version,) = struct.unpack_from(">I", buffer, 4)

        if version < MIN_SUPPORTED_VERSION:
            _LOGGER.error("GGUF version %d is not supported", version)
            raise UnsupportedVersionError(version, MIN_SUPPORTED_VERSION)
        if version > GGUF_VERSION:
            _LOGGER.warning(
                "GGUF version %d is newer than the latest known version %d, parsing best-effort", version, GGUF_VERSION
            )

        tensor_count, metadata_count = struct.unpack_from(f"{byte_order.struct_prefix}QQ", buffer, 8)
        return (
            cls(tensor_count=tensor_count, metadata_count=metadata_count, version=version, byte_order=byte_order),
            HEADER_SIZE,
        )
