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

import enum
import os
from typing import IO, Any, Iterable, Optional, Sequence, Union

import numpy as np
import torch

from ggufio.codec.value_codec import GGUFValue, encode_entry
from ggufio.core.constants import (
    GGML_QUANT_VERSION,
    GGUF_DEFAULT_ALIGNMENT,
    GGUF_VERSION,
    ByteOrder,
    GGUFValueType,
    Keys,
)
from ggufio.core.errors import IllegalStateError, InvalidValueError, SequenceError
from ggufio.core.gguf_logging import get_logger
from ggufio.core.header import GGUFHeader
from ggufio.core.utils import align_up, is_valid_alignment, log_execution_time
from ggufio.io.output_sink import CountingSink, FileSink, OutputSink
from ggufio.tables.metadata_table import MetadataTable
from ggufio.tables.tensor_table import TensorInfo, TensorTable

_LOGGER = get_logger(__name__)

Payload = Union[bytes, bytearray, memoryview, np.ndarray, torch.Tensor]


class WriterState(enum.Enum):
    BUILDING = "building"
    """Metadata and tensor descriptors may still be added."""
    FINALIZED = "finalized"
    """Tables are locked and offsets assigned; payloads may be outstanding."""
    WRITTEN = "written"
    """Header, tables and every declared payload have been written."""
    CLOSED = "closed"


class GGUFWriter:
    """Writes a GGUF container.

    The required order of operations is:

    1. add metadata (`add_string`, `add_uint32`, ...) and tensor descriptors (`add_tensor_info`)
    2. `write_header_and_tables()` - locks both tables, assigns tensor offsets, writes everything up to the data section
    3. `write_tensor_payload()` exactly once per declared tensor, in declaration order
    4. `close()`

    `estimated_size()` may be called at any point; it locks the tables like step 2 but writes nothing. With
    `dry_run=True` the writer counts bytes instead of writing them, and `bytes_written` at the end of a session equals
    the length of the file a real session would have produced.

    A GGUFWriter is not thread-safe. Callers sharing an instance across threads must synchronize externally.
    """

    def __init__(
        self,
        destination: Union[str, os.PathLike, IO[bytes], None],
        arch: str,
        byte_order: ByteOrder = ByteOrder.LITTLE,
        dry_run: bool = False,
        sink: Optional[OutputSink] = None,
    ):
        """Initializes the writer and records the architecture as the first metadata entry.

        Nothing is opened until `write_header_and_tables()`, so abandoning a writer while building leaves no file.

        Args:
            destination: A path or a writable binary stream. Ignored for dry runs and when `sink` is given.
            arch: The model architecture, stored as `general.architecture`.
            byte_order: The byte order applied to every numeric field of the file.
            dry_run: If True, count bytes without performing any I/O.
            sink: An explicit output sink, overriding `destination` and `dry_run`.
        """
        if destination is None and sink is None and not dry_run:
            raise ValueError("A destination is required unless dry_run is set or a sink is given")
        self._destination = destination
        self.arch = arch
        self.byte_order = ByteOrder(byte_order)
        self.dry_run = dry_run
        self._sink: Optional[OutputSink] = sink
        self._metadata = MetadataTable()
        self._tensors = TensorTable()
        self._state = WriterState.BUILDING
        self._header_written = False
        self._poisoned = False
        self._next_tensor = 0
        self._data_offset: Optional[int] = None

        _LOGGER.info(
            "GGUF: this file is for %s-endian only%s",
            "big" if self.byte_order is ByteOrder.BIG else "little",
            " (dry run)" if dry_run else "",
        )
        self.add_architecture()

    # --- Metadata ---

    def _check_building(self, operation: str) -> None:
        if self._state is not WriterState.BUILDING:
            _LOGGER.error("Attempted to %s in state %s", operation, self._state.name)
            raise IllegalStateError(f"Cannot {operation}: writer is {self._state.name}, expected BUILDING")

    def add_value(self, key: str, value: GGUFValue) -> None:
        """Adds a typed metadata entry.

        Raises:
            DuplicateKeyError: If `key` was already added.
            InvalidValueError: If `general.alignment` is not a UINT32 power of two.
            IllegalStateError: If the tables are already locked.
        """
        self._check_building(f"add metadata key '{key}'")
        if key == Keys.General.ALIGNMENT and (
            value.type != GGUFValueType.UINT32 or not is_valid_alignment(value.value)
        ):
            raise InvalidValueError(
                f"'{Keys.General.ALIGNMENT}' must be a UINT32 power of two, got {value.type.name} {value.value!r}"
            )
        self._metadata.insert(key, value)

    def add_key_value(
        self, key: str, value: Any, value_type: GGUFValueType, sub_type: Optional[GGUFValueType] = None
    ) -> None:
        self.add_value(key, GGUFValue(value, value_type, sub_type))

    def add_uint8(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.UINT8)

    def add_int8(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.INT8)

    def add_uint16(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.UINT16)

    def add_int16(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.INT16)

    def add_uint32(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.UINT32)

    def add_int32(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.INT32)

    def add_uint64(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.UINT64)

    def add_int64(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.INT64)

    def add_float32(self, key: str, value: float) -> None:
        self.add_key_value(key, value, GGUFValueType.FLOAT32)

    def add_float64(self, key: str, value: float) -> None:
        self.add_key_value(key, value, GGUFValueType.FLOAT64)

    def add_bool(self, key: str, value: bool) -> None:
        self.add_key_value(key, value, GGUFValueType.BOOL)

    def add_string(self, key: str, value: str) -> None:
        self.add_key_value(key, value, GGUFValueType.STRING)

    def add_array(self, key: str, values: Sequence[Any], sub_type: Optional[GGUFValueType] = None) -> None:
        """Adds an array entry. The element type is inferred from the values unless `sub_type` is given."""
        if sub_type is None:
            self.add_value(key, GGUFValue.infer(list(values)))
        else:
            self.add_key_value(key, list(values), GGUFValueType.ARRAY, sub_type)

    def add_architecture(self) -> None:
        self.add_string(Keys.General.ARCHITECTURE, self.arch)

    def add_type(self, type_name: str) -> None:
        self.add_string(Keys.General.TYPE, type_name)

    def add_name(self, name: str) -> None:
        self.add_string(Keys.General.NAME, name)

    def add_author(self, author: str) -> None:
        self.add_string(Keys.General.AUTHOR, author)

    def add_description(self, description: str) -> None:
        self.add_string(Keys.General.DESCRIPTION, description)

    def add_file_type(self, file_type: int) -> None:
        self.add_uint32(Keys.General.FILE_TYPE, file_type)

    def add_quantization_version(self, version: int = GGML_QUANT_VERSION) -> None:
        self.add_uint32(Keys.General.QUANTIZATION_VERSION, version)

    def add_alignment(self, alignment: int) -> None:
        """Overrides the data alignment (default 32 bytes)."""
        self.add_uint32(Keys.General.ALIGNMENT, alignment)

    def add_adapter_type(self, adapter_type: str) -> None:
        self.add_string(Keys.Adapter.TYPE, adapter_type)

    def add_lora_alpha(self, alpha: float) -> None:
        self.add_float32(Keys.Adapter.LORA_ALPHA, alpha)

    # --- Tensors ---

    def add_tensor_info(self, name: str, shape: Sequence[int], tensor_type, byte_size: Optional[int] = None) -> None:
        """Declares a tensor. Its offset is assigned when the tables are locked.

        Args:
            name: Unique tensor name.
            shape: Row-major dimensions, outermost first.
            tensor_type: A GGMLQuantizationType, its integer tag, or its name.
            byte_size: Optional payload size, checked against the size derived from shape and type.

        Raises:
            DuplicateTensorError, InvalidShapeError, TensorSizeMismatchError: See `TensorTable.add`.
            IllegalStateError: If the tables are already locked.
        """
        self._check_building(f"add tensor '{name}'")
        self._tensors.add(name, shape, tensor_type, byte_size)

    # --- Layout ---

    @property
    def alignment(self) -> int:
        value = self._metadata.get(Keys.General.ALIGNMENT)
        return value.value if value is not None else GGUF_DEFAULT_ALIGNMENT

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def metadata(self) -> MetadataTable:
        return self._metadata

    @property
    def tensors(self) -> TensorTable:
        return self._tensors

    @property
    def bytes_written(self) -> int:
        """Bytes written (or counted, for dry runs) so far."""
        return self._sink.tell() if self._sink is not None else 0

    @property
    def data_offset(self) -> Optional[int]:
        """Absolute file offset of the data section, known once the header and tables are written."""
        return self._data_offset

    def _lock_tables(self) -> None:
        if self._state is WriterState.BUILDING:
            self._metadata.lock()
            self._tensors.finalize(self.alignment)
            self._state = WriterState.FINALIZED
            _LOGGER.debug(
                "Locked tables: %d metadata entries, %d tensors, %d data bytes",
                len(self._metadata),
                len(self._tensors),
                self._tensors.data_size,
            )

    def _serialize_header_and_tables(self, sink: OutputSink) -> None:
        header = GGUFHeader(
            tensor_count=len(self._tensors),
            metadata_count=len(self._metadata),
            version=GGUF_VERSION,
            byte_order=self.byte_order,
        )
        sink.write(header.to_bytes())
        for key, value in self._metadata:
            sink.write(encode_entry(key, value, self.byte_order))
        for info in self._tensors:
            sink.write(info.to_bytes(self.byte_order))
        sink.write_zeros(align_up(sink.tell(), self.alignment) - sink.tell())

    def estimated_size(self) -> int:
        """Returns the exact length of the finished file. Locks the tables.

        Raises:
            IllegalStateError: If the writer is closed.
        """
        if self._state is WriterState.CLOSED:
            raise IllegalStateError("Cannot estimate the size of a closed writer")
        self._lock_tables()
        with CountingSink() as counter:
            self._serialize_header_and_tables(counter)
            return counter.tell() + self._tensors.data_size

    # --- Writing ---

    def _open_sink(self) -> OutputSink:
        if self._sink is None:
            self._sink = CountingSink() if self.dry_run else FileSink(self._destination)
        return self._sink

    @log_execution_time(logger=_LOGGER, name="write_header_and_tables")
    def write_header_and_tables(self) -> None:
        """Locks the tables and writes the header, metadata, tensor descriptors and padding up to the data section.

        Raises:
            IllegalStateError: If called more than once, after close(), or after a previous attempt failed.
            OSError: If the output cannot be written. The session is unusable afterwards.
        """
        if self._poisoned:
            raise IllegalStateError("A previous write failure made this write session unusable")
        if self._state is WriterState.CLOSED or self._header_written:
            _LOGGER.error("write_header_and_tables() called in state %s", self._state.name)
            raise IllegalStateError(f"Header and tables already written (state {self._state.name})")
        self._lock_tables()
        sink = self._open_sink()
        try:
            self._serialize_header_and_tables(sink)
        except Exception:
            # Part of the header may already be in the output.
            self._poisoned = True
            _LOGGER.exception("Failed to write the GGUF header and tables - the writer must be discarded")
            raise
        self._data_offset = sink.tell()
        self._header_written = True
        _LOGGER.info(
            "Wrote GGUF header and tables: %d metadata entries, %d tensors, data section at offset %d",
            len(self._metadata),
            len(self._tensors),
            self._data_offset,
        )
        if len(self._tensors) == 0:
            self._state = WriterState.WRITTEN

    def _fail_sequence(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        self._poisoned = True
        _LOGGER.error("%s - the output is unusable and the writer must be discarded", message)
        raise SequenceError(message, expected=expected, actual=actual)

    def _next_payload_info(self, operation: str) -> TensorInfo:
        if self._poisoned:
            raise IllegalStateError("A previous sequence error made this write session unusable")
        if self._state is WriterState.CLOSED or not self._header_written:
            raise IllegalStateError(
                f"{operation}() requires write_header_and_tables() first (state {self._state.name})"
            )
        if self._next_tensor >= len(self._tensors):
            self._fail_sequence(
                f"Extra tensor payload: all {len(self._tensors)} declared tensors were already written",
                expected=len(self._tensors),
                actual=self._next_tensor + 1,
            )
        info: TensorInfo = self._tensors[self._next_tensor]
        expected_pos = self._data_offset + info.offset
        if self._sink.tell() != expected_pos:
            self._fail_sequence(
                f"Output is at offset {self._sink.tell()} but tensor '{info.name}' belongs at {expected_pos}",
                expected=expected_pos,
                actual=self._sink.tell(),
            )
        return info

    def _finish_payload(self, info: TensorInfo) -> None:
        self._sink.write_zeros(align_up(info.n_bytes, self.alignment) - info.n_bytes)
        self._next_tensor += 1
        if self._next_tensor == len(self._tensors):
            self._state = WriterState.WRITTEN

    def _payload_size_error(self, info: TensorInfo, actual: int):
        self._fail_sequence(
            f"Payload for tensor '{info.name}' (#{self._next_tensor}) is {actual} bytes, expected {info.n_bytes}",
            expected=info.n_bytes,
            actual=actual,
        )

    def write_tensor_payload(self, data: Payload) -> None:
        """Writes the payload of the next declared tensor, followed by zero padding up to the alignment.

        Args:
            data: A bytes-like object, numpy array or torch tensor holding exactly the tensor's derived byte size.
                Arrays and tensors are written in this file's byte order; raw bytes are written as given.

        Raises:
            SequenceError: On an extra call or a size mismatch. The session is unusable afterwards.
            IllegalStateError: If the header has not been written, the writer is closed, or a previous call failed.
        """
        info = self._next_payload_info("write_tensor_payload")
        raw = self._payload_bytes(data)
        if raw.nbytes != info.n_bytes:
            self._payload_size_error(info, raw.nbytes)
        self._sink.write(raw)
        self._finish_payload(info)

    def write_tensor_chunks(self, chunks: Iterable[Payload]) -> None:
        """Like `write_tensor_payload`, but takes the payload as consecutive chunks.

        Used to copy tensors between files without holding a whole payload in memory. A size mismatch is detected as
        soon as the chunks overrun the tensor, or after the last chunk when they fall short.
        """
        info = self._next_payload_info("write_tensor_chunks")
        written = 0
        for chunk in chunks:
            raw = self._payload_bytes(chunk)
            if written + raw.nbytes > info.n_bytes:
                self._payload_size_error(info, written + raw.nbytes)
            self._sink.write(raw)
            written += raw.nbytes
        if written != info.n_bytes:
            self._payload_size_error(info, written)
        self._finish_payload(info)

    def write_to_file(self, payloads: Iterable[Payload]) -> None:
        """Writes the header and tables followed by every payload, in declaration order."""
        self.write_header_and_tables()
        for payload in payloads:
            self.write_tensor_payload(payload)

    def _payload_bytes(self, data: Payload) -> memoryview:
        if isinstance(data, torch.Tensor):
            tensor = data.detach().cpu().contiguous()
            if tensor.dtype == torch.bfloat16:
                # numpy has no bfloat16; the bit pattern is all that matters here.
                tensor = tensor.view(torch.int16)
            data = tensor.numpy()
        if isinstance(data, np.ndarray):
            array = np.ascontiguousarray(data)
            if array.dtype.itemsize > 1 and array.dtype.byteorder != "|":
                target = "<" if self.byte_order is ByteOrder.LITTLE else ">"
                array = array.astype(array.dtype.newbyteorder(target), copy=False)
            return memoryview(array.reshape(-1).view(np.uint8))
        view = memoryview(data)
        return view.cast("B") if view.format != "B" or view.ndim != 1 else view

    def close(self) -> None:
        """Closes the output. Idempotent.

        Raises:
            SequenceError: If the header was written but some declared payloads were not. The output is released
                before raising and must be treated as unusable.
        """
        self._close(check_complete=True)

    def _close(self, check_complete: bool) -> None:
        if self._state is WriterState.CLOSED:
            _LOGGER.debug("close() called on an already-closed GGUFWriter.")
            return
        incomplete = self._header_written and not self._poisoned and self._next_tensor < len(self._tensors)
        try:
            if self._sink is not None:
                self._sink.close()
        finally:
            self._state = WriterState.CLOSED
        if incomplete and check_complete:
            self._fail_sequence(
                f"Writer closed after {self._next_tensor} of {len(self._tensors)} tensor payloads",
                expected=len(self._tensors),
                actual=self._next_tensor,
            )
        _LOGGER.debug("Closed GGUFWriter after %d bytes", self.bytes_written)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        # Do not mask an in-flight exception with a sequence error.
        self._close(check_complete=exc_type is None)
