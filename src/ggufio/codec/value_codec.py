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

"""Encoding and decoding of typed metadata values.

Wire format, in the file's byte order:

- scalars: fixed width (1, 2, 4 or 8 bytes); BOOL is a single byte.
- STRING: [8 bytes LENGTH] [LENGTH bytes UTF-8], no terminator.
- ARRAY: [4 bytes ELEMENT_TYPE] [8 bytes COUNT] [COUNT encoded elements]. Elements of type ARRAY are themselves full
  arrays, so nesting depth is unbounded. Nested arrays are walked with an explicit stack, never by recursion.

A metadata entry on disk is the key as a STRING, a 4-byte value type, then the value.

FLOAT32 values decode to `np.float32` and are encoded from their bit pattern, so every NaN payload (signaling NaNs
included) survives a decode/encode cycle unchanged.
"""

import dataclasses
import struct
from typing import Any, Iterable, Optional

import numpy as np

from ggufio.codec.binary_cursor import BinaryCursor
from ggufio.core.constants import ByteOrder, GGUFValueType
from ggufio.core.errors import InvalidValueError, StructuralError
from ggufio.core.gguf_logging import get_logger

_LOGGER = get_logger(__name__)

_SCALAR_FORMATS: dict[GGUFValueType, str] = {
    GGUFValueType.UINT8: "B",
    GGUFValueType.INT8: "b",
    GGUFValueType.UINT16: "H",
    GGUFValueType.INT16: "h",
    GGUFValueType.UINT32: "I",
    GGUFValueType.INT32: "i",
    GGUFValueType.FLOAT32: "f",
    GGUFValueType.BOOL: "?",
    GGUFValueType.UINT64: "Q",
    GGUFValueType.INT64: "q",
    GGUFValueType.FLOAT64: "d",
}

_INT_RANGES: dict[GGUFValueType, tuple[int, int]] = {
    GGUFValueType.UINT8: (0, 2**8 - 1),
    GGUFValueType.INT8: (-(2**7), 2**7 - 1),
    GGUFValueType.UINT16: (0, 2**16 - 1),
    GGUFValueType.INT16: (-(2**15), 2**15 - 1),
    GGUFValueType.UINT32: (0, 2**32 - 1),
    GGUFValueType.INT32: (-(2**31), 2**31 - 1),
    GGUFValueType.UINT64: (0, 2**64 - 1),
    GGUFValueType.INT64: (-(2**63), 2**63 - 1),
}

_FLOAT_TYPES = (GGUFValueType.FLOAT32, GGUFValueType.FLOAT64)

_INFERRED_INT_TYPES = (GGUFValueType.INT32, GGUFValueType.INT64, GGUFValueType.UINT64)
"""Candidate types for untyped Python ints, narrowest first."""

_STRING_LENGTH_SIZE = 8
_ARRAY_HEADER_SIZE = 4 + 8


def _float32_bits(values: Iterable[Any]) -> list[int]:
    # Each element goes through np.float32 on its own; np.float32 inputs keep their exact bits.
    return [int(np.float32(v).view(np.uint32)) for v in values]


def _float32_from_bits(bits: Iterable[int]) -> list[np.float32]:
    return list(np.array(list(bits), dtype=np.uint32).view(np.float32))


def min_encoded_size(value_type: GGUFValueType) -> int:
    """Returns the smallest number of bytes a value of `value_type` can occupy (without its type tag)."""
    if value_type == GGUFValueType.STRING:
        return _STRING_LENGTH_SIZE
    if value_type == GGUFValueType.ARRAY:
        return _ARRAY_HEADER_SIZE
    return struct.calcsize(_SCALAR_FORMATS[value_type])


def parse_value_type(raw: int, offset: int) -> GGUFValueType:
    """Converts a raw tag read at `offset` into a GGUFValueType.

    Raises:
        StructuralError: If the tag is not a known value type.
    """
    try:
        return GGUFValueType(raw)
    except ValueError:
        _LOGGER.error("Unknown metadata value type %d at offset %d", raw, offset)
        raise StructuralError(f"Unknown metadata value type {raw} at offset {offset}") from None


@dataclasses.dataclass
class GGUFValue:
    """A typed metadata value.

    For arrays, `value` is a list and `sub_type` is the element type. Elements are plain Python values, except for
    arrays of arrays, whose elements are `GGUFValue` instances of type ARRAY. FLOAT32 values may be Python floats or
    `np.float32`; decoded ones are always `np.float32`.

    Values are validated on construction, so an unrepresentable value fails where it is created.
    """

    value: Any
    type: GGUFValueType
    sub_type: Optional[GGUFValueType] = None

    def __post_init__(self):
        self.type = GGUFValueType(self.type)
        if self.type == GGUFValueType.ARRAY:
            if self.sub_type is None:
                raise InvalidValueError("ARRAY values require an element sub_type")
            self.sub_type = GGUFValueType(self.sub_type)
            if not isinstance(self.value, (list, tuple)):
                raise InvalidValueError(f"ARRAY value must be a list, got {type(self.value).__name__}")
            self.value = list(self.value)
            for index, item in enumerate(self.value):
                _validate_scalar(item, self.sub_type, context=f"array element {index}")
        else:
            if self.sub_type is not None:
                raise InvalidValueError(f"sub_type is only valid for ARRAY values, got type {self.type.name}")
            _validate_scalar(self.value, self.type, context="value")

    @classmethod
    def infer(cls, value: Any) -> "GGUFValue":
        """Builds a GGUFValue choosing the type from the Python type of `value`.

        str -> STRING, bool -> BOOL, int -> INT32 (INT64 when out of range, UINT64 beyond that), float -> FLOAT32,
        list/tuple -> ARRAY typed after its elements, integers widened to the widest type needed (STRING when empty).
        A GGUFValue is returned unchanged.

        Raises:
            InvalidValueError: If the type cannot be inferred or list elements have mixed types.
        """
        if isinstance(value, GGUFValue):
            return value
        if isinstance(value, str):
            return cls(value, GGUFValueType.STRING)
        if isinstance(value, bool):
            return cls(value, GGUFValueType.BOOL)
        if isinstance(value, int):
            for candidate in _INFERRED_INT_TYPES:
                low, high = _INT_RANGES[candidate]
                if low <= value <= high:
                    return cls(value, candidate)
            raise InvalidValueError(f"Integer {value} does not fit in any GGUF integer type")
        if isinstance(value, (float, np.float32)):
            return cls(value, GGUFValueType.FLOAT32)
        if isinstance(value, (list, tuple)):
            if not value:
                return cls([], GGUFValueType.ARRAY, GGUFValueType.STRING)
            elements = [cls.infer(item) for item in value]
            element_types = {e.type for e in elements}
            if element_types <= set(_INFERRED_INT_TYPES):
                # Widen the whole array to the widest integer type any element needs.
                sub_type = max(element_types, key=_INFERRED_INT_TYPES.index)
            elif len(element_types) == 1:
                sub_type = elements[0].type
            else:
                raise InvalidValueError(f"Array elements have mixed types: {sorted(t.name for t in element_types)}")
            if sub_type == GGUFValueType.ARRAY:
                return cls(elements, GGUFValueType.ARRAY, sub_type)
            return cls([e.value for e in elements], GGUFValueType.ARRAY, sub_type)
        raise InvalidValueError(f"Unsupported metadata value type: {type(value).__name__}")

    def to_python(self) -> Any:
        """Returns the value as plain Python data: nested arrays unwrapped into lists, FLOAT32 as float."""
        if self.type != GGUFValueType.ARRAY:
            return _plain_elements([self.value], self.type)[0]
        if self.sub_type != GGUFValueType.ARRAY:
            return _plain_elements(self.value, self.sub_type)
        root: list = []
        stack = [(iter(self.value), root)]
        while stack:
            items, out = stack[-1]
            child = next(items, None)
            if child is None:
                stack.pop()
            elif child.sub_type == GGUFValueType.ARRAY:
                nested: list = []
                out.append(nested)
                stack.append((iter(child.value), nested))
            else:
                out.append(_plain_elements(child.value, child.sub_type))
        return root


def _plain_elements(items: list, value_type: GGUFValueType) -> list:
    if value_type == GGUFValueType.FLOAT32:
        return [float(item) for item in items]
    return list(items)


def _validate_scalar(value: Any, value_type: GGUFValueType, context: str) -> None:
    if value_type == GGUFValueType.ARRAY:
        if not isinstance(value, GGUFValue) or value.type != GGUFValueType.ARRAY:
            raise InvalidValueError(f"{context}: elements of an array of arrays must be ARRAY GGUFValues")
        return
    if value_type == GGUFValueType.STRING:
        if not isinstance(value, str):
            raise InvalidValueError(f"{context}: STRING value must be str, got {type(value).__name__}")
        return
    if value_type == GGUFValueType.BOOL:
        if not isinstance(value, bool):
            raise InvalidValueError(f"{context}: BOOL value must be bool, got {type(value).__name__}")
        return
    if value_type in _FLOAT_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, float, np.float32)):
            raise InvalidValueError(f"{context}: {value_type.name} value must be a number, got {type(value).__name__}")
        if value_type == GGUFValueType.FLOAT32 and not isinstance(value, np.float32):
            try:
                struct.pack("<f", value)
            except OverflowError:
                raise InvalidValueError(f"{context}: {value!r} is out of range for FLOAT32") from None
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidValueError(f"{context}: {value_type.name} value must be int, got {type(value).__name__}")
    low, high = _INT_RANGES[value_type]
    if not low <= value <= high:
        raise InvalidValueError(f"{context}: {value} is out of range for {value_type.name} [{low}, {high}]")


def _encode_elements(items: list, value_type: GGUFValueType, prefix: str) -> bytes:
    """Encodes a flat run of non-array elements."""
    if value_type == GGUFValueType.STRING:
        parts = []
        for item in items:
            raw = item.encode("utf-8")
            parts.append(struct.pack(f"{prefix}Q", len(raw)))
            parts.append(raw)
        return b"".join(parts)
    if not items:
        return b""
    if value_type == GGUFValueType.FLOAT32:
        return struct.pack(f"{prefix}{len(items)}I", *_float32_bits(items))
    return struct.pack(f"{prefix}{len(items)}{_SCALAR_FORMATS[value_type]}", *items)


def _encode_array(items: list, sub_type: GGUFValueType, prefix: str) -> bytes:
    parts = [struct.pack(f"{prefix}IQ", sub_type, len(items))]
    if sub_type != GGUFValueType.ARRAY:
        parts.append(_encode_elements(items, sub_type, prefix))
        return b"".join(parts)
    # Depth-first over nested arrays, one iterator per open level.
    stack = [iter(items)]
    while stack:
        child = next(stack[-1], None)
        if child is None:
            stack.pop()
            continue
        parts.append(struct.pack(f"{prefix}IQ", child.sub_type, len(child.value)))
        if child.sub_type == GGUFValueType.ARRAY:
            stack.append(iter(child.value))
        else:
            parts.append(_encode_elements(child.value, child.sub_type, prefix))
    return b"".join(parts)


def _encode_payload(value: Any, value_type: GGUFValueType, sub_type: Optional[GGUFValueType], prefix: str) -> bytes:
    if value_type == GGUFValueType.ARRAY:
        return _encode_array(value, sub_type, prefix)
    return _encode_elements([value], value_type, prefix)


def encode_value(value: GGUFValue, byte_order: ByteOrder = ByteOrder.LITTLE, with_type: bool = True) -> bytes:
    """Encodes a GGUFValue.

    Args:
        value: The value to encode.
        byte_order: The byte order of the target file.
        with_type: Whether to prefix the 4-byte value type tag, as metadata entries do.

    Returns:
        The encoded bytes.
    """
    prefix = byte_order.struct_prefix
    payload = _encode_payload(value.value, value.type, value.sub_type, prefix)
    if with_type:
        return struct.pack(f"{prefix}I", value.type) + payload
    return payload


def encode_string(text: str, byte_order: ByteOrder = ByteOrder.LITTLE) -> bytes:
    """Encodes a bare GGUF string, as used for metadata keys and tensor names."""
    return _encode_payload(text, GGUFValueType.STRING, None, byte_order.struct_prefix)


def encode_entry(key: str, value: GGUFValue, byte_order: ByteOrder = ByteOrder.LITTLE) -> bytes:
    """Encodes a full metadata entry: key, value type, value."""
    return encode_string(key, byte_order) + encode_value(value, byte_order)


def _read_array_header(cursor: BinaryCursor) -> tuple[GGUFValueType, int]:
    offset = cursor.tell()
    sub_type = parse_value_type(cursor.read_u32("array element type"), offset)
    count = cursor.read_u64("array length")
    # Every element takes at least min_encoded_size bytes, so an absurd count fails here and not after allocating.
    cursor.ensure_available(count * min_encoded_size(sub_type), what=f"{count} array elements")
    return sub_type, count


def _read_elements(cursor: BinaryCursor, value_type: GGUFValueType, count: int) -> list:
    """Reads `count` non-array elements of one type."""
    if value_type == GGUFValueType.STRING:
        return [cursor.read_string("array string element") for _ in range(count)]
    if not count:
        return []
    prefix = cursor.byte_order.struct_prefix
    if value_type == GGUFValueType.FLOAT32:
        fmt = f"{prefix}{count}I"
        return _float32_from_bits(struct.unpack(fmt, cursor.read_exact(struct.calcsize(fmt), "FLOAT32 values")))
    fmt = f"{prefix}{count}{_SCALAR_FORMATS[value_type]}"
    return list(struct.unpack(fmt, cursor.read_exact(struct.calcsize(fmt), f"{value_type.name} values")))


def _decode_array(cursor: BinaryCursor) -> GGUFValue:
    # Open arrays of arrays as (sub_type, count, items decoded so far). Other arrays are read whole.
    stack: list[tuple[GGUFValueType, int, list]] = []
    sub_type, count = _read_array_header(cursor)
    stack.append((sub_type, count, [] if sub_type == GGUFValueType.ARRAY else _read_elements(cursor, sub_type, count)))
    while True:
        sub_type, count, items = stack[-1]
        if len(items) < count:
            child_type, child_count = _read_array_header(cursor)
            child_items = [] if child_type == GGUFValueType.ARRAY else _read_elements(cursor, child_type, child_count)
            stack.append((child_type, child_count, child_items))
            continue
        stack.pop()
        value = GGUFValue(items, GGUFValueType.ARRAY, sub_type)
        if not stack:
            return value
        stack[-1][2].append(value)


def decode_value(value_type: GGUFValueType, cursor: BinaryCursor) -> GGUFValue:
    """Decodes a value of the given type at the cursor's position.

    Args:
        value_type: The type tag, already read from the stream.
        cursor: The cursor to read from. It is left just past the value.

    Returns:
        The decoded GGUFValue.

    Raises:
        TruncatedDataError: If the stream ends inside the value.
        StructuralError: If a nested type tag is unknown or a string is not valid UTF-8.
    """
    value_type = GGUFValueType(value_type)
    if value_type == GGUFValueType.ARRAY:
        return _decode_array(cursor)
    if value_type == GGUFValueType.STRING:
        return GGUFValue(cursor.read_string("string value"), value_type)
    if value_type == GGUFValueType.FLOAT32:
        return GGUFValue(_float32_from_bits([cursor.read_u32("FLOAT32 value")])[0], value_type)
    return GGUFValue(cursor.read_struct(_SCALAR_FORMATS[value_type], f"{value_type.name} value"), value_type)


def decode_entry(cursor: BinaryCursor) -> tuple[str, GGUFValue]:
    """Decodes a full metadata entry at the cursor's position."""
    key = cursor.read_string("metadata key")
    type_offset = cursor.tell()
    value_type = parse_value_type(cursor.read_u32(f"type of metadata key '{key}'"), type_offset)
    return key, decode_value(value_type, cursor)
