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
import enum
import io
import math
import os
from pathlib import Path
from typing import IO, Any, Callable, Iterator, Optional, Union

import numpy as np
import torch

from ggufio.codec.binary_cursor import BinaryCursor
from ggufio.codec.value_codec import GGUFValue, decode_entry
from ggufio.core.constants import GGUF_DEFAULT_ALIGNMENT, ByteOrder, GGMLQuantizationType, GGUFValueType, Keys
from ggufio.core.errors import IllegalStateError, InvalidValueError, StructuralError, TruncatedDataError
from ggufio.core.gguf_logging import get_logger
from ggufio.core.header import HEADER_SIZE, GGUFHeader
from ggufio.core.utils import align_up, get_copy_chunk_bytes, get_env_val_bool, is_valid_alignment, log_execution_time
from ggufio.tables.tensor_table import TensorInfo

_LOGGER = get_logger(__name__)

Source = Union[str, os.PathLike, bytes, bytearray, memoryview, IO[bytes]]

_NUMPY_DTYPES: dict[GGMLQuantizationType, Any] = {
    GGMLQuantizationType.F32: np.float32,
    GGMLQuantizationType.F16: np.float16,
    GGMLQuantizationType.F64: np.float64,
    GGMLQuantizationType.I8: np.int8,
    GGMLQuantizationType.I16: np.int16,
    GGMLQuantizationType.I32: np.int32,
    GGMLQuantizationType.I64: np.int64,
    # Reinterpreted as torch.bfloat16 after conversion.
    GGMLQuantizationType.BF16: np.int16,
}


class ReaderState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclasses.dataclass
class ReaderField:
    """A decoded metadata entry."""

    name: str
    value: GGUFValue
    offset: int
    """Absolute file offset of the entry's key."""

    @property
    def type(self) -> GGUFValueType:
        return self.value.type

    @property
    def sub_type(self) -> Optional[GGUFValueType]:
        return self.value.sub_type

    def contents(self) -> Any:
        """Returns the value as plain Python data."""
        return self.value.to_python()


@dataclasses.dataclass
class ReaderTensor:
    """A decoded tensor descriptor plus access to its payload."""

    name: str
    shape: tuple[int, ...]
    """Row-major dimensions, outermost first."""
    tensor_type: GGMLQuantizationType
    n_bytes: int
    offset: int
    """Offset relative to the start of the data section, as stored in the file."""
    data_offset: int
    """Absolute file offset of the payload."""
    byte_order: ByteOrder = ByteOrder.LITTLE
    _data: Optional[bytes] = dataclasses.field(default=None, repr=False, compare=False)
    _load: Optional[Callable[["ReaderTensor"], bytes]] = dataclasses.field(default=None, repr=False, compare=False)

    @property
    def n_elements(self) -> int:
        return math.prod(self.shape)

    def read_data(self) -> bytes:
        """Returns the raw payload bytes, loading them from the file in lazy mode.

        Raises:
            IllegalStateError: If the reader was closed, in either mode.
        """
        if self._data is not None:
            return self._data
        return self._load(self)

    def to_numpy(self) -> np.ndarray:
        """Returns the payload as a writable numpy array of the given shape, in native byte order.

        BF16 payloads are returned as their raw int16 bit patterns.

        Raises:
            InvalidValueError: For block-quantized types, which have no element-wise representation.
        """
        dtype = _NUMPY_DTYPES.get(self.tensor_type)
        if dtype is None:
            raise InvalidValueError(
                f"Tensor '{self.name}' has quantized type {self.tensor_type.name} and cannot be converted element-wise"
            )
        file_dtype = np.dtype(dtype).newbyteorder(self.byte_order.struct_prefix)
        array = np.frombuffer(self.read_data(), dtype=file_dtype)
        return array.astype(np.dtype(dtype), copy=True).reshape(self.shape)

    def to_torch(self) -> torch.Tensor:
        """Returns the payload as a CPU torch.Tensor of the given shape.

        Raises:
            InvalidValueError: For block-quantized types.
        """
        tensor = torch.from_numpy(self.to_numpy())
        if self.tensor_type == GGMLQuantizationType.BF16:
            tensor = tensor.view(torch.bfloat16)
        return tensor


class GGUFReader:
    """Parses a GGUF container and exposes its metadata and tensors.

    The whole structure is validated when the reader is constructed: header, metadata, tensor descriptors, the
    alignment of every stored offset, and that the file is long enough to hold every payload. A reader that was
    constructed successfully only fails later on I/O errors or use after `close()`.

    In eager mode every payload is read during construction; in lazy mode payloads are read on demand. Both modes
    return identical data.

    A GGUFReader is not thread-safe: lazy reads share the position of one file handle.
    """

    def __init__(self, source: Source, lazy: Optional[bool] = None):
        """Opens and parses a GGUF container.

        Args:
            source: A path, an in-memory buffer, or a readable, seekable binary file object. A file object passed in
                stays owned by the caller and is not closed by the reader.
            lazy: Whether to defer reading payloads. Defaults to the `GGUFIO_LAZY_LOAD` environment variable, else
                False.

        Raises:
            InvalidMagicError: If the source does not start with the GGUF magic.
            UnsupportedVersionError: If the format version is too old.
            TruncatedDataError: If the source ends before the structure or the payloads it declares.
            StructuralError: For any other malformed structure.
        """
        self.lazy = get_env_val_bool("LAZY_LOAD", False) if lazy is None else lazy
        self.path: Optional[Path] = None
        if isinstance(source, (str, os.PathLike)):
            self.path = Path(source)
            self._file: Optional[IO[bytes]] = open(self.path, "rb")
            self._owns_file = True
        elif isinstance(source, (bytes, bytearray, memoryview)):
            self._file = io.BytesIO(bytes(source))
            self._owns_file = True
        else:
            self._file = source
            self._owns_file = False

        self._state = ReaderState.OPEN
        self._fields: dict[str, ReaderField] = {}
        self._tensors: list[ReaderTensor] = []
        self._tensors_by_name: dict[str, ReaderTensor] = {}
        try:
            with log_execution_time(_LOGGER, f"Parsing GGUF {self.path or 'stream'}"):
                self._parse()
        except Exception:
            self._release()
            raise

    # --- Parsing ---

    def _parse(self) -> None:
        self._file.seek(0)
        cursor = BinaryCursor(self._file)
        self._file_size = cursor.size

        raw_header = cursor.read_exact(min(HEADER_SIZE, cursor.remaining()), "header")
        self._header, _ = GGUFHeader.from_bytes(raw_header)
        cursor.byte_order = self._header.byte_order

        for _ in range(self._header.metadata_count):
            entry_offset = cursor.tell()
            key, value = decode_entry(cursor)
            if key in self._fields:
                _LOGGER.error("Duplicate metadata key '%s' at offset %d", key, entry_offset)
                raise StructuralError(f"Duplicate metadata key '{key}' at offset {entry_offset}")
            self._fields[key] = ReaderField(name=key, value=value, offset=entry_offset)

        self._alignment = self._parse_alignment()

        infos: list[TensorInfo] = []
        seen: set[str] = set()
        for _ in range(self._header.tensor_count):
            info_offset = cursor.tell()
            info = TensorInfo.from_cursor(cursor)
            if info.name in seen:
                _LOGGER.error("Duplicate tensor name '%s' at offset %d", info.name, info_offset)
                raise StructuralError(f"Duplicate tensor name '{info.name}' at offset {info_offset}")
            seen.add(info.name)
            infos.append(info)

        self._data_offset = align_up(cursor.tell(), self._alignment)
        self._validate_layout(infos)

        for info in infos:
            tensor = ReaderTensor(
                name=info.name,
                shape=info.shape,
                tensor_type=info.tensor_type,
                n_bytes=info.n_bytes,
                offset=info.offset,
                data_offset=self._data_offset + info.offset,
                byte_order=self.byte_order,
                _load=self._load_payload,
            )
            if not self.lazy:
                tensor._data = self._load_payload(tensor)
            self._tensors.append(tensor)
            self._tensors_by_name[tensor.name] = tensor

        _LOGGER.info(
            "Opened GGUF v%d (%s-endian): %d metadata entries, %d tensors, data section at offset %d",
            self._header.version,
            self.byte_order.value,
            len(self._fields),
            len(self._tensors),
            self._data_offset,
        )

    def _parse_alignment(self) -> int:
        field = self._fields.get(Keys.General.ALIGNMENT)
        if field is None:
            return GGUF_DEFAULT_ALIGNMENT
        if field.type != GGUFValueType.UINT32 or not is_valid_alignment(field.value.value):
            _LOGGER.error(
                "Invalid '%s' at offset %d: %s %r", field.name, field.offset, field.type.name, field.contents()
            )
            raise StructuralError(
                f"'{Keys.General.ALIGNMENT}' at offset {field.offset} must be a UINT32 power of two, "
                f"got {field.type.name} {field.contents()!r}"
            )
        return field.value.value

    def _validate_layout(self, infos: list[TensorInfo]) -> None:
        end = 0
        for info in infos:
            if info.offset % self._alignment != 0:
                _LOGGER.error("Tensor '%s' has misaligned offset %d", info.name, info.offset)
                raise StructuralError(
                    f"Tensor '{info.name}' offset {info.offset} is not a multiple of the alignment {self._alignment}"
                )
            if info.offset < end:
                _LOGGER.error("Tensor '%s' at offset %d overlaps the previous tensor", info.name, info.offset)
                raise StructuralError(
                    f"Tensor '{info.name}' at data offset {info.offset} overlaps the previous tensor ending at {end}"
                )
            end = info.offset + info.n_bytes

        if infos:
            last = infos[-1]
            start = self._data_offset + last.offset
            required = align_up(last.n_bytes, self._alignment)
            if self._file_size < start + required:
                _LOGGER.error(
                    "File is %d bytes but tensor '%s' needs the file to extend to %d",
                    self._file_size,
                    last.name,
                    start + required,
                )
                raise TruncatedDataError(
                    self._file_size,
                    required,
                    max(self._file_size - start, 0),
                    what=f"payload of tensor '{last.name}' starting at offset {start}",
                )

    def _load_payload(self, tensor: ReaderTensor) -> bytes:
        self._check_open(f"read tensor '{tensor.name}'")
        self._file.seek(tensor.data_offset)
        data = self._file.read(tensor.n_bytes)
        if len(data) != tensor.n_bytes:
            raise TruncatedDataError(
                tensor.data_offset, tensor.n_bytes, len(data), what=f"payload of tensor '{tensor.name}'"
            )
        return data

    # --- Accessors ---

    def _check_open(self, operation: str) -> None:
        if self._state is ReaderState.CLOSED:
            _LOGGER.error("Attempted to %s on a closed GGUFReader.", operation)
            raise IllegalStateError(f"Cannot {operation}: the reader is closed")

    @property
    def header(self) -> GGUFHeader:
        return self._header

    @property
    def byte_order(self) -> ByteOrder:
        return self._header.byte_order

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def state(self) -> ReaderState:
        return self._state

    def get_field(self, key: str) -> Optional[ReaderField]:
        """Returns the metadata entry for `key`, or None when absent."""
        self._check_open("get a field")
        return self._fields.get(key)

    def get_fields(self) -> list[ReaderField]:
        """Returns all metadata entries in file order."""
        self._check_open("get fields")
        return list(self._fields.values())

    def get_tensor(self, name_or_index: Union[str, int]) -> ReaderTensor:
        """Returns a tensor by name or by position in file order.

        Raises:
            KeyError: If no tensor has the given name.
            IndexError: If the index is out of range.
        """
        self._check_open("get a tensor")
        if isinstance(name_or_index, str):
            try:
                return self._tensors_by_name[name_or_index]
            except KeyError:
                raise KeyError(f"Tensor '{name_or_index}' not found") from None
        return self._tensors[name_or_index]

    def get_tensors(self) -> list[ReaderTensor]:
        self._check_open("get tensors")
        return list(self._tensors)

    def get_tensor_count(self) -> int:
        self._check_open("get the tensor count")
        return len(self._tensors)

    def get_field_count(self) -> int:
        self._check_open("get the field count")
        return len(self._fields)

    def get_byte_order(self) -> ByteOrder:
        self._check_open("get the byte order")
        return self.byte_order

    def get_alignment(self) -> int:
        self._check_open("get the alignment")
        return self._alignment

    def get_data_offset(self) -> int:
        self._check_open("get the data offset")
        return self._data_offset

    def get_version(self) -> int:
        self._check_open("get the version")
        return self._header.version

    def read_tensor_data(self, name_or_index: Union[str, int]) -> bytes:
        """Returns the raw payload of a tensor, without trailing padding."""
        return self.get_tensor(name_or_index).read_data()

    def iter_tensor_data(self, name_or_index: Union[str, int], chunk_size: Optional[int] = None) -> Iterator[bytes]:
        """Yields the payload of a tensor in chunks of at most `chunk_size` bytes.

        `chunk_size` defaults to `GGUFIO_COPY_CHUNK_BYTES`. In lazy mode at most one chunk is held in memory.
        """
        tensor = self.get_tensor(name_or_index)
        chunk_size = chunk_size or get_copy_chunk_bytes()
        if tensor._data is not None:
            view = memoryview(tensor._data)
            for start in range(0, tensor.n_bytes, chunk_size):
                yield view[start : start + chunk_size]
            return
        for start in range(0, tensor.n_bytes, chunk_size):
            self._check_open(f"read tensor '{tensor.name}'")
            size = min(chunk_size, tensor.n_bytes - start)
            self._file.seek(tensor.data_offset + start)
            chunk = self._file.read(size)
            if len(chunk) != size:
                raise TruncatedDataError(
                    tensor.data_offset + start, size, len(chunk), what=f"payload of tensor '{tensor.name}'"
                )
            yield chunk

    # --- Lifecycle ---

    def _release(self) -> None:
        try:
            if self._owns_file and self._file is not None:
                self._file.close()
        finally:
            self._file = None
            self._state = ReaderState.CLOSED
            # A closed reader serves no payloads, eager or lazy.
            for tensor in self._tensors:
                tensor._data = None

    def close(self) -> None:
        """Releases the underlying file. Idempotent."""
        if self._state is ReaderState.CLOSED:
            _LOGGER.debug("close() called on an already-closed GGUFReader.")
            return
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
