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
import math
import operator
import struct
from typing import Iterator, Optional, Sequence

from ggufio.codec.binary_cursor import BinaryCursor
from ggufio.codec.value_codec import encode_string
from ggufio.core.constants import GGML_QUANT_SIZES, ByteOrder, GGMLQuantizationType
from ggufio.core.errors import (
    DuplicateTensorError,
    IllegalStateError,
    InvalidShapeError,
    InvalidValueError,
    StructuralError,
    TensorSizeMismatchError,
)
from ggufio.core.gguf_logging import get_logger
from ggufio.core.utils import align_up, is_valid_alignment

_LOGGER = get_logger(__name__)

MAX_DIMS = 4
"""The inference engine rejects tensors with more dimensions than this."""

_MAX_DIM = 2**64 - 1


def parse_tensor_type(raw, name: str = "") -> GGMLQuantizationType:
    """Converts a raw tag (or a type name such as "F32") into a GGMLQuantizationType.

    Raises:
        InvalidValueError: If the tag or name is unknown.
    """
    if isinstance(raw, GGMLQuantizationType):
        return raw
    try:
        if isinstance(raw, str):
            return GGMLQuantizationType[raw.upper()]
        return GGMLQuantizationType(raw)
    except (KeyError, ValueError):
        raise InvalidValueError(f"Unknown tensor type {raw!r} for tensor '{name}'") from None


def tensor_nbytes(name: str, shape: Sequence[int], tensor_type: GGMLQuantizationType) -> int:
    """Derives the payload size of a tensor from its shape and type.

    Block-quantized types pack `block_size` consecutive elements of the innermost (last) dimension into `type_size`
    bytes, so the innermost dimension must be a multiple of the block size.

    Args:
        name: The tensor name, for error messages.
        shape: Row-major dimensions, outermost first.
        tensor_type: The numeric type of the elements.

    Returns:
        The size in bytes.

    Raises:
        InvalidShapeError: If the shape is empty, has non-positive dimensions, or does not fit the type's blocks.
    """
    validate_shape(name, shape)
    block_size, type_size = GGML_QUANT_SIZES[tensor_type]
    if shape[-1] % block_size != 0:
        raise InvalidShapeError(
            name,
            shape,
            f"innermost dimension {shape[-1]} is not a multiple of the {tensor_type.name} block size {block_size}",
        )
    return math.prod(shape) // block_size * type_size


def validate_shape(name: str, shape: Sequence[int]) -> None:
    if len(shape) == 0:
        raise InvalidShapeError(name, shape, "at least one dimension is required")
    if len(shape) > MAX_DIMS:
        raise InvalidShapeError(name, shape, f"at most {MAX_DIMS} dimensions are supported")
    for dim in shape:
        if isinstance(dim, bool) or not isinstance(dim, int):
            raise InvalidShapeError(name, shape, f"dimension {dim!r} is not an integer")
        if dim <= 0:
            raise InvalidShapeError(name, shape, f"dimension {dim} is not positive")
        if dim > _MAX_DIM:
            raise InvalidShapeError(name, shape, f"dimension {dim} does not fit in 64 bits")


@dataclasses.dataclass
class TensorInfo:
    """Descriptor of one tensor in the container."""

    name: str
    shape: tuple[int, ...]
    """Row-major dimensions, outermost first. Stored reversed (innermost first) on disk."""
    tensor_type: GGMLQuantizationType
    n_bytes: int
    """Payload size, always derived from shape and type."""
    offset: Optional[int] = None
    """Offset relative to the start of the data section. None until the table is finalized."""

    @property
    def n_elements(self) -> int:
        return math.prod(self.shape)

    def to_bytes(self, byte_order: ByteOrder = ByteOrder.LITTLE) -> bytes:
        """Serializes the descriptor.

        Format:
        [NAME (GGUF string)] [4 bytes N_DIMS] [N_DIMS x 8 bytes DIM, innermost first] [4 bytes TYPE] [8 bytes OFFSET]
        """
        if self.offset is None:
            raise IllegalStateError(f"Tensor '{self.name}' has no offset yet; finalize the tensor table first")
        prefix = byte_order.struct_prefix
        dims = tuple(reversed(self.shape))
        return (
            encode_string(self.name, byte_order)
            + struct.pack(f"{prefix}I{len(dims)}Q", len(dims), *dims)
            + struct.pack(f"{prefix}IQ", self.tensor_type, self.offset)
        )

    @classmethod
    def from_cursor(cls, cursor: BinaryCursor) -> "TensorInfo":
        """Deserializes a descriptor at the cursor's position.

        Raises:
            TruncatedDataError: If the stream ends inside the descriptor.
            StructuralError: If the descriptor is malformed.
        """
        start = cursor.tell()
        name = cursor.read_string("tensor name")
        n_dims = cursor.read_u32(f"dimension count of tensor '{name}'")
        if n_dims == 0 or n_dims > MAX_DIMS:
            _LOGGER.error("Tensor '%s' at offset %d has %d dimensions", name, start, n_dims)
            raise StructuralError(f"Tensor '{name}' at offset {start} has {n_dims} dimensions (expected 1..{MAX_DIMS})")
        cursor.ensure_available(8 * n_dims, f"shape of tensor '{name}'")
        dims = [cursor.read_u64(f"shape of tensor '{name}'") for _ in range(n_dims)]
        type_offset = cursor.tell()
        raw_type = cursor.read_u32(f"type of tensor '{name}'")
        offset = cursor.read_u64(f"offset of tensor '{name}'")
        try:
            tensor_type = GGMLQuantizationType(raw_type)
        except ValueError:
            _LOGGER.error("Unknown tensor type %d for tensor '%s' at offset %d", raw_type, name, type_offset)
            raise StructuralError(
                f"Unknown tensor type {raw_type} for tensor '{name}' at offset {type_offset}"
            ) from None

        shape = tuple(reversed(dims))
        try:
            n_bytes = tensor_nbytes(name, shape, tensor_type)
        except InvalidShapeError as e:
            raise StructuralError(f"Tensor descriptor at offset {start} is invalid: {e}") from e
        return cls(name=name, shape=shape, tensor_type=tensor_type, n_bytes=n_bytes, offset=offset)


class TensorTable:
    """Ordered tensor descriptors plus the layout algorithm that assigns their offsets.

    Tensors are laid out in insertion order: `offset[0] = 0`, and
    `offset[i] = align_up(offset[i-1] + n_bytes[i-1], alignment)`. Once finalized the table is immutable.
    Not thread-safe.
    """

    def __init__(self):
        self._tensors: dict[str, TensorInfo] = {}
        self._alignment: Optional[int] = None
        self._data_size: Optional[int] = None

    def add(
        self,
        name: str,
        shape: Sequence[int],
        tensor_type,
        byte_size: Optional[int] = None,
    ) -> TensorInfo:
        """Appends a descriptor with a placeholder offset.

        Args:
            name: Unique tensor name.
            shape: Row-major dimensions, outermost first.
            tensor_type: A GGMLQuantizationType, its integer tag, or its name.
            byte_size: Optional payload size. When given it must match the size derived from shape and type.

        Returns:
            The new TensorInfo.

        Raises:
            DuplicateTensorError: If `name` is already present.
            InvalidShapeError: If the shape is invalid for the type.
            TensorSizeMismatchError: If `byte_size` disagrees with the derived size.
            IllegalStateError: If the table is finalized.
        """
        if self.finalized:
            _LOGGER.error("Attempted to add tensor '%s' to a finalized tensor table.", name)
            raise IllegalStateError(f"Cannot add tensor '{name}': the tensor table is finalized")
        if not isinstance(name, str) or not name:
            raise InvalidValueError(f"Tensor names must be non-empty strings, got {name!r}")
        if name in self._tensors:
            _LOGGER.error("Duplicate tensor name '%s'", name)
            raise DuplicateTensorError(name)

        tensor_type = parse_tensor_type(tensor_type, name)
        try:
            shape = tuple(operator.index(dim) for dim in shape)
        except TypeError:
            raise InvalidShapeError(name, list(shape), "dimensions must be integers") from None
        n_bytes = tensor_nbytes(name, shape, tensor_type)
        if byte_size is not None and byte_size != n_bytes:
            _LOGGER.error("Tensor '%s' declared %d bytes, derived %d", name, byte_size, n_bytes)
            raise TensorSizeMismatchError(name, n_bytes, byte_size)

        info = TensorInfo(name=name, shape=shape, tensor_type=tensor_type, n_bytes=n_bytes)
        self._tensors[name] = info
        return info

    def finalize(self, alignment: int) -> int:
        """Assigns offsets and freezes the table. Idempotent for the same alignment.

        Args:
            alignment: The data alignment in bytes, a positive power of two.

        Returns:
            The total data-section length, including the padding after the last tensor.
        """
        if self.finalized:
            if alignment != self._alignment:
                raise IllegalStateError(
                    f"Tensor table already finalized with alignment {self._alignment}, got {alignment}"
                )
            return self._data_size
        if not is_valid_alignment(alignment):
            raise InvalidValueError(f"Alignment must be a positive power of two, got {alignment!r}")

        offset = 0
        for info in self._tensors.values():
            info.offset = offset
            offset = align_up(offset + info.n_bytes, alignment)
        self._alignment = alignment
        self._data_size = offset
        return offset

    @property
    def finalized(self) -> bool:
        return self._data_size is not None

    @property
    def alignment(self) -> Optional[int]:
        return self._alignment

    @property
    def data_size(self) -> int:
        if not self.finalized:
            raise IllegalStateError("The tensor table is not finalized")
        return self._data_size

    def get(self, name: str) -> Optional[TensorInfo]:
        return self._tensors.get(name)

    def names(self) -> list[str]:
        return list(self._tensors)

    def __getitem__(self, index: int) -> TensorInfo:
        return list(self._tensors.values())[index]

    def __contains__(self, name: object) -> bool:
        return name in self._tensors

    def __len__(self) -> int:
        return len(self._tensors)

    def __iter__(self) -> Iterator[TensorInfo]:
        return iter(list(self._tensors.values()))
