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
import struct
from typing import IO, Optional

from ggufio.core.constants import ByteOrder
from ggufio.core.errors import StructuralError, TruncatedDataError
from ggufio.core.gguf_logging import get_logger

_LOGGER = get_logger(__name__)


class BinaryCursor:
    """A bounded, byte-order aware read cursor over a seekable binary stream.

    Every read checks the requested length against the bytes left in the stream before touching it, so a corrupt
    length prefix fails with a `TruncatedDataError` instead of an oversized allocation or a short read.

    Not thread-safe: the cursor shares the position of the underlying stream.
    """

    def __init__(self, stream: IO[bytes], byte_order: ByteOrder = ByteOrder.LITTLE, size: Optional[int] = None):
        """Initializes the cursor at the stream's current position.

        Args:
            stream: A readable, seekable binary stream.
            byte_order: The byte order used for all numeric reads.
            size: The total stream size in bytes. Determined by seeking to the end when omitted.
        """
        self._stream = stream
        self.byte_order = byte_order
        self._pos = stream.tell()
        if size is None:
            size = stream.seek(0, io.SEEK_END)
            stream.seek(self._pos)
        self._size = size

    @property
    def size(self) -> int:
        return self._size

    def tell(self) -> int:
        """Returns the absolute position of the cursor in the stream."""
        return self._pos

    def remaining(self) -> int:
        return max(self._size - self._pos, 0)

    def seek(self, offset: int) -> int:
        """Moves the cursor to an absolute offset.

        Raises:
            ValueError: If the offset is negative.
        """
        if offset < 0:
            raise ValueError(f"Negative seek position is not allowed ({offset})")
        self._stream.seek(offset)
        self._pos = offset
        return self._pos

    def ensure_available(self, nbytes: int, what: Optional[str] = None) -> None:
        """Raises a `TruncatedDataError` unless at least `nbytes` can be read from the current position."""
        if nbytes > self.remaining():
            _LOGGER.error(
                "Truncated data at offset %d reading %s: needed %d bytes, %d available",
                self._pos,
                what or "bytes",
                nbytes,
                self.remaining(),
            )
            raise TruncatedDataError(self._pos, nbytes, self.remaining(), what=what)

    def read_exact(self, nbytes: int, what: Optional[str] = None) -> bytes:
        """Reads exactly `nbytes` bytes and advances the cursor.

        Raises:
            TruncatedDataError: If fewer than `nbytes` bytes remain.
        """
        self.ensure_available(nbytes, what)
        data = self._stream.read(nbytes)
        if len(data) != nbytes:
            # The stream shrank underneath us.
            raise TruncatedDataError(self._pos, nbytes, len(data), what=what)
        self._pos += nbytes
        return data

    def read_struct(self, fmt: str, what: Optional[str] = None):
        """Reads a single value described by a one-item `struct` format code (without byte order prefix)."""
        st = struct.Struct(self.byte_order.struct_prefix + fmt)
        (value,) = st.unpack(self.read_exact(st.size, what))
        return value

    def read_u32(self, what: Optional[str] = None) -> int:
        return self.read_struct("I", what)

    def read_u64(self, what: Optional[str] = None) -> int:
        return self.read_struct("Q", what)

    def read_string(self, what: Optional[str] = None) -> str:
        """Reads a GGUF string: an 8-byte length followed by that many UTF-8 bytes."""
        length = self.read_u64(what)
        raw = self.read_exact(length, what)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            _LOGGER.exception("Invalid UTF-8 in %s ending at offset %d", what or "string", self._pos)
            raise StructuralError(f"Invalid UTF-8 in {what or 'string'} ending at offset {self._pos}") from e
