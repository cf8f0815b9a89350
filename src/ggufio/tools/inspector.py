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

"""
Summarizes the structure of a GGUF file: file information, metadata and tensor descriptors.

Usage:
    ```bash
    ggufio-inspect model.gguf
    ggufio-inspect --json model.gguf > info.json
    ggufio-inspect --filter llama --max-string-length 200 model.gguf
    ggufio-inspect --validate model.gguf
    ```
"""

import argparse
import dataclasses
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional, Union

from ggufio.codec.value_codec import GGUFValue
from ggufio.core.constants import GGUFValueType, Keys
from ggufio.core.errors import GGUFError
from ggufio.core.gguf_logging import get_logger
from ggufio.core.utils import host_byte_order, log_execution_time
from ggufio.io.reader import GGUFReader
from ggufio.tools.hasher import HashAlgorithm, hash_file

_LOGGER = get_logger(__name__)

REQUIRED_METADATA_KEYS = (Keys.General.NAME, Keys.General.ARCHITECTURE)
"""Keys whose presence `validate_file` reports."""


@dataclasses.dataclass
class InspectionOptions:
    show_metadata: bool = True
    show_tensors: bool = True
    key_filter: Optional[str] = None
    """Only metadata keys containing this substring are reported."""
    checksum: bool = False
    """Compute the SHA-256 of the whole file."""
    max_string_length: int = 60
    max_array_items: int = 5
    verbose: bool = False
    """Report strings and arrays in full."""


@dataclasses.dataclass
class FileInfo:
    path: str
    file_size: int
    version: int
    endianness: str
    host_endianness: str
    tensor_count: int
    metadata_count: int
    alignment: int
    data_offset: int
    sha256: Optional[str] = None

    @property
    def endianness_mismatch(self) -> bool:
        return self.endianness != self.host_endianness


@dataclasses.dataclass
class MetadataSummary:
    key: str
    type: str
    """The value type name; ARRAY values read as e.g. "ARRAY[UINT32]"."""
    value: Any
    """The value, with long strings and arrays shortened unless verbose."""
    length: Optional[int] = None
    """Element count for arrays, character count for strings."""


@dataclasses.dataclass
class TensorSummary:
    name: str
    shape: list[int]
    type: str
    n_elements: int
    n_bytes: int
    offset: int
    """Absolute file offset of the payload."""


@dataclasses.dataclass
class InspectionResult:
    file_info: FileInfo
    metadata: list[MetadataSummary] = dataclasses.field(default_factory=list)
    tensors: list[TensorSummary] = dataclasses.field(default_factory=list)

    @property
    def total_tensor_bytes(self) -> int:
        return sum(t.n_bytes for t in self.tensors)

    def to_dict(self) -> dict:
        result = dataclasses.asdict(self)
        result["file_info"]["endianness_mismatch"] = self.file_info.endianness_mismatch
        return result


@dataclasses.dataclass
class ValidationResult:
    path: str
    structure_valid: bool = False
    """Whether the whole container (header, metadata, tensor table, payload extents) parsed."""
    metadata_count: int = 0
    tensor_count: int = 0
    required_metadata: dict[str, bool] = dataclasses.field(default_factory=dict)
    """Presence of each of REQUIRED_METADATA_KEYS. Missing keys are reported but do not make the file invalid."""
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.structure_valid and self.error is None

    @property
    def missing_metadata(self) -> list[str]:
        return [key for key, present in self.required_metadata.items() if not present]

    def to_dict(self) -> dict:
        result = dataclasses.asdict(self)
        result["is_valid"] = self.is_valid
        return result


def _shorten(value: GGUFValue, options: InspectionOptions) -> Any:
    python_value = value.to_python()
    if options.verbose:
        return python_value
    if value.type == GGUFValueType.STRING and len(python_value) > options.max_string_length:
        return python_value[: options.max_string_length] + "..."
    if value.type == GGUFValueType.ARRAY and len(python_value) > options.max_array_items:
        head = python_value[: options.max_array_items]
        return head + [f"... {len(python_value) - len(head)} more"]
    return python_value


def _summarize_value(key: str, value: GGUFValue, options: InspectionOptions) -> MetadataSummary:
    type_name = value.type.name
    length = None
    if value.type == GGUFValueType.ARRAY:
        type_name = f"ARRAY[{value.sub_type.name}]"
        length = len(value.value)
    elif value.type == GGUFValueType.STRING:
        length = len(value.value)
    return MetadataSummary(key=key, type=type_name, value=_shorten(value, options), length=length)


def inspect_file(path: Union[str, os.PathLike], options: Optional[InspectionOptions] = None) -> InspectionResult:
    """Parses a GGUF file and summarizes it.

    Tensor payloads are never loaded: the file is opened lazily.

    Args:
        path: The GGUF file to inspect.
        options: What to report. Defaults to everything except the checksum.

    Returns:
        The InspectionResult.

    Raises:
        GGUFError: If the file is not a valid GGUF container.
        OSError: If the file cannot be read.
    """
    options = options or InspectionOptions()
    path = Path(path)
    with log_execution_time(_LOGGER, f"Inspecting {path}"), GGUFReader(path, lazy=True) as reader:
        file_info = FileInfo(
            path=str(path),
            file_size=reader.file_size,
            version=reader.get_version(),
            endianness=reader.get_byte_order().value,
            host_endianness=host_byte_order(),
            tensor_count=reader.get_tensor_count(),
            metadata_count=reader.get_field_count(),
            alignment=reader.get_alignment(),
            data_offset=reader.get_data_offset(),
        )
        result = InspectionResult(file_info=file_info)

        if options.show_metadata:
            for field in reader.get_fields():
                if options.key_filter and options.key_filter not in field.name:
                    continue
                result.metadata.append(_summarize_value(field.name, field.value, options))

        if options.show_tensors:
            for tensor in reader.get_tensors():
                result.tensors.append(
                    TensorSummary(
                        name=tensor.name,
                        shape=list(tensor.shape),
                        type=tensor.tensor_type.name,
                        n_elements=tensor.n_elements,
                        n_bytes=tensor.n_bytes,
                        offset=tensor.data_offset,
                    )
                )

    if options.checksum:
        file_info.sha256 = hash_file(path, [HashAlgorithm.SHA256]).hashes[HashAlgorithm.SHA256]
    return result


def validate_file(path: Union[str, os.PathLike]) -> ValidationResult:
    """Checks that a file is a well-formed GGUF container and which commonly required keys it carries.

    Unlike `inspect_file`, parse and I/O failures do not raise: they are recorded in `ValidationResult.error`.
    """
    result = ValidationResult(path=str(path))
    try:
        with GGUFReader(path, lazy=True) as reader:
            result.structure_valid = True
            result.metadata_count = reader.get_field_count()
            result.tensor_count = reader.get_tensor_count()
            for key in REQUIRED_METADATA_KEYS:
                result.required_metadata[key] = reader.get_field(key) is not None
    except (GGUFError, OSError) as e:
        _LOGGER.warning("'%s' is not a valid GGUF file: %s", path, e)
        result.structure_valid = False
        result.error = str(e)
        return result

    if result.missing_metadata:
        _LOGGER.info("'%s' lacks metadata keys: %s", path, ", ".join(result.missing_metadata))
    return result


def format_validation(result: ValidationResult) -> str:
    lines = [
        "=== VALIDATION ===",
        f"File: {Path(result.path).name}",
        f"Valid: {'yes' if result.is_valid else 'no'}",
    ]
    if result.error is not None:
        lines.append(f"Error: {result.error}")
    else:
        lines.append(f"Metadata entries: {result.metadata_count}")
        lines.append(f"Tensors: {result.tensor_count}")
        for key, present in result.required_metadata.items():
            lines.append(f"  {key}: {'present' if present else 'MISSING'}")
    return "\n".join(lines)


def to_json(result: Union[InspectionResult, ValidationResult], indent: Optional[int] = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent, default=str)


def format_text(result: InspectionResult) -> str:
    """Renders an InspectionResult as a human-readable report."""
    info = result.file_info
    lines = [
        "=== FILE INFORMATION ===",
        f"File: {Path(info.path).name}",
        f"Size: {info.file_size:,} bytes ({info.file_size / 1024 / 1024:.2f} MB)",
        f"Version: {info.version}",
        f"Endianness: {info.endianness} (host: {info.host_endianness})"
        + (" MISMATCH" if info.endianness_mismatch else ""),
        f"Alignment: {info.alignment}",
        f"Data offset: {info.data_offset}",
        f"Metadata entries: {info.metadata_count}",
        f"Tensors: {info.tensor_count}",
    ]
    if info.sha256 is not None:
        lines.append(f"SHA-256: {info.sha256}")
    lines.append("")

    if result.metadata:
        lines.append("=== METADATA ===")
        lines.append(f"Dumping {len(result.metadata)} key/value pairs:")
        for index, entry in enumerate(result.metadata, start=1):
            length = "" if entry.length is None else entry.length
            lines.append(f"{index:5d}: {entry.type:<16} | {length!s:>8} | {entry.key} = {entry.value!r}")
        lines.append("")

    if result.tensors:
        lines.append("=== TENSORS ===")
        lines.append(f"{'#':<5} {'Type':<8} {'Shape':<24} {'Size':>15} {'Offset':>12}  Name")
        lines.append("-" * 80)
        for index, tensor in enumerate(result.tensors, start=1):
            lines.append(
                f"{index:<5} {tensor.type:<8} {str(tensor.shape):<24} {tensor.n_bytes:>15,} "
                f"{tensor.offset:>#12x}  {tensor.name}"
            )
        lines.append("-" * 80)
        total = result.total_tensor_bytes
        lines.append(f"Total tensor data: {total:,} bytes ({total / 1024 / 1024:.2f} MB)")
        lines.append("")
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Inspect the contents and structure of a GGUF file.")
    parser.add_argument("file", help="Path to the GGUF file.")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of text.")
    parser.add_argument("--no-metadata", action="store_true", help="Skip the metadata section.")
    parser.add_argument("--no-tensors", action="store_true", help="Skip the tensor section.")
    parser.add_argument("--filter", dest="key_filter", default=None, help="Only show metadata keys containing this.")
    parser.add_argument("--checksum", action="store_true", help="Compute the SHA-256 of the file.")
    parser.add_argument(
        "--max-string-length", type=int, default=60, help="Shorten longer strings (default: %(default)s)."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show strings and arrays in full.")
    parser.add_argument(
        "--validate", action="store_true", help="Only check the file and report required metadata keys."
    )
    args = parser.parse_args(argv)

    if args.validate:
        validation = validate_file(args.file)
        print(to_json(validation) if args.json else format_validation(validation))
        return 0 if validation.is_valid else 1

    options = InspectionOptions(
        show_metadata=not args.no_metadata,
        show_tensors=not args.no_tensors,
        key_filter=args.key_filter,
        checksum=args.checksum,
        max_string_length=args.max_string_length,
        verbose=args.verbose,
    )
    try:
        result = inspect_file(args.file, options)
    except (GGUFError, OSError) as e:
        _LOGGER.error("Failed to inspect '%s': %s", args.file, e)
        return 1

    print(to_json(result) if args.json else format_text(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
