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

import struct

import pytest

from ggufio.core.constants import GGUF_MAGIC, GGUF_VERSION, ByteOrder
from ggufio.core.errors import InvalidMagicError, StructuralError, TruncatedDataError, UnsupportedVersionError
from ggufio.core.header import HEADER_SIZE, GGUFHeader


class TestGGUFHeader:
    def test_to_bytes_little_endian_layout(self):
        # Given
        header = GGUFHeader(tensor_count=2, metadata_count=5)

        # When
        data = header.to_bytes()

        # Then
        assert len(data) == HEADER_SIZE == 24
        assert data[:4] == b"GGUF"
        assert data[4:] == struct.pack("<IQQ", GGUF_VERSION, 2, 5)

    def test_to_bytes_big_endian_keeps_raw_magic(self):
        # Given
        header = GGUFHeader(tensor_count=1, metadata_count=3, byte_order=ByteOrder.BIG)

        # When
        data = header.to_bytes()

        # Then
        assert data[:4] == GGUF_MAGIC
        assert data[4:8] == b"\x00\x00\x00\x03"
        assert data[4:] == struct.pack(">IQQ", 3, 1, 3)

    @pytest.mark.parametrize("byte_order", [ByteOrder.LITTLE, ByteOrder.BIG])
    def test_from_bytes_detects_byte_order(self, byte_order):
        # Given
        original = GGUFHeader(tensor_count=7, metadata_count=11, byte_order=byte_order)

        # When
        parsed, consumed = GGUFHeader.from_bytes(original.to_bytes() + b"trailing bytes")

        # Then
        assert consumed == HEADER_SIZE
        assert parsed == original
        assert parsed.byte_order is byte_order

    def test_from_bytes_accepts_version_2(self):
        data = GGUF_MAGIC + struct.pack("<IQQ", 2, 0, 1)

        header, _ = GGUFHeader.from_bytes(data)

        assert header.version == 2

    def test_from_bytes_newer_version_parses_with_warning(self, mocker):
        # Given
        mock_logger = mocker.patch("ggufio.core.header._LOGGER")
        data = GGUF_MAGIC + struct.pack("<IQQ", 4, 1, 2)

        # When
        header, _ = GGUFHeader.from_bytes(data)

        # Then
        assert header.version == 4
        assert (header.tensor_count, header.metadata_count) == (1, 2)
        mock_logger.warning.assert_called_once()

    def test_from_bytes_rejects_version_1(self):
        data = GGUF_MAGIC + struct.pack("<IQQ", 1, 0, 0)

        with pytest.raises(UnsupportedVersionError, match="Unsupported GGUF version 1"):
            GGUFHeader.from_bytes(data)

    def test_from_bytes_version_0_is_read_as_big_endian_and_rejected(self):
        # A zero version has all-zero low bits, so it can only be reported as unsupported.
        data = GGUF_MAGIC + struct.pack("<IQQ", 0, 0, 0)

        with pytest.raises(UnsupportedVersionError):
            GGUFHeader.from_bytes(data)

    @pytest.mark.parametrize("data", [b"ABCD" + bytes(20), b"ABCD", b"", b"GG", b"FUGG" + bytes(20)])
    def test_from_bytes_invalid_magic(self, data):
        with pytest.raises(InvalidMagicError, match="Invalid GGUF magic at offset 0"):
            GGUFHeader.from_bytes(data)

    def test_invalid_magic_is_a_structural_error(self):
        with pytest.raises(StructuralError):
            GGUFHeader.from_bytes(b"ABCD")

    def test_from_bytes_truncated_after_magic(self):
        data = (GGUF_MAGIC + struct.pack("<IQQ", 3, 0, 0))[:10]

        with pytest.raises(TruncatedDataError) as exc_info:
            GGUFHeader.from_bytes(data)

        assert exc_info.value.offset == 0
        assert exc_info.value.expected == HEADER_SIZE
        assert exc_info.value.available == 10

    def test_header_is_immutable(self):
        header = GGUFHeader(tensor_count=1, metadata_count=1)

        with pytest.raises(AttributeError):
            header.tensor_count = 2
