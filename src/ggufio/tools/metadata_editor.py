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
Edits the metadata of a GGUF file in place, copying its tensors verbatim.

Usage:
    ```bash
    ggufio-edit model.gguf --set general.name="My Model" --delete general.url
    ggufio-edit model.gguf --set llama.context_length:UINT32=8192 --backup
    ggufio-edit model.gguf --rename general.desc=general.description --dry-run
    ```
"""

import argparse
import dataclasses
import enum
import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from ggufio.codec.value_codec import GGUFValue
from ggufio.core.constants import GGUFValueType, Keys
from ggufio.core.errors import GGUFError, InvalidValueError
from ggufio.core.gguf_logging import get_logger
from ggufio.core.utils import log_execution_time
from ggufio.io.reader import GGUFReader
from ggufio.io.writer import GGUFWriter
from ggufio.tables.metadata_table import MetadataTable

_LOGGER = get_logger(__name__)

_PROTECTED_KEYS = (Keys.General.ARCHITECTURE,)

_TRUE_STRINGS = ("true", "1", "yes")
_FALSE_STRINGS = ("false", "0", "no")


class OperationType(enum.Enum):
    SET = "set"
    DELETE = "delete"
    RENAME = "rename"


@dataclasses.dataclass(frozen=True)
class MetadataOperation:
    """One edit applied to the metadata of a file. Build instances with `set`, `delete` and `rename`."""

    type: OperationType
    key: str
    value: Any = None
    value_type: Optional[GGUFValueType] = None
    new_key: Optional[str] = None

    @classmethod
    def set(cls, key: str, value: Any, value_type: Optional[GGUFValueType] = None) -> "MetadataOperation":
        """Sets `key` to `value`.

        The type is, in order of precedence: `value_type`, the type of `value` if it is a GGUFValue, the existing
        type of `key`, or the type inferred from `value`. Strings are parsed when the resolved type is not STRING.
        """
        return cls(OperationType.SET, key, value=value, value_type=value_type)

    @classmethod
    def delete(cls, key: str) -> "MetadataOperation":
        return cls(OperationType.DELETE, key)

    @classmethod
    def rename(cls, old_key: str, new_key: str) -> "MetadataOperation":
        return cls(OperationType.RENAME, old_key, new_key=new_key)


@dataclasses.dataclass
class EditOptions:
    dry_run: bool = False
    """Report the changes without touching the file."""
    backup: bool = False
    """Keep a copy of the original file next to it."""
    backup_suffix: str = ".bak"


@dataclasses.dataclass
class EditResult:
    path: Path
    dry_run: bool
    changed: dict[str, Any] = dataclasses.field(default_factory=dict)
    """Keys that were set, with their new values."""
    deleted: list[str] = dataclasses.field(default_factory=list)
    renamed: dict[str, str] = dataclasses.field(default_factory=dict)
    backup_path: Optional[Path] = None

    @property
    def modified(self) -> bool:
        return bool(self.changed or self.deleted or self.renamed)


def _parse_text(text: str, value_type: GGUFValueType, sub_type: Optional[GGUFValueType], key: str) -> GGUFValue:
    try:
        if value_type == GGUFValueType.ARRAY:
            items = json.loads(text)
            if not isinstance(items, list):
                raise ValueError("expected a JSON list")
            if sub_type is None:
                return GGUFValue.infer(items)
            return GGUFValue(items, value_type, sub_type)
        if value_type == GGUFValueType.BOOL:
            lowered = text.strip().lower()
            if lowered not in _TRUE_STRINGS + _FALSE_STRINGS:
                raise ValueError(f"expected one of {_TRUE_STRINGS + _FALSE_STRINGS}")
            return GGUFValue(lowered in _TRUE_STRINGS, value_type)
        if value_type in (GGUFValueType.FLOAT32, GGUFValueType.FLOAT64):
            return GGUFValue(float(text), value_type)
        return GGUFValue(int(text, 0), value_type)
    except (ValueError, json.JSONDecodeError) as e:
        raise InvalidValueError(f"Cannot parse {text!r} as {value_type.name} for key '{key}': {e}") from e


def _resolve_value(operation: MetadataOperation, existing: Optional[GGUFValue]) -> GGUFValue:
    value = operation.value
    if isinstance(value, GGUFValue) and operation.value_type is None:
        return value
    if isinstance(value, GGUFValue):
        value = value.value

    if operation.value_type is not None:
        value_type, sub_type = GGUFValueType(operation.value_type), None
    elif existing is not None:
        value_type, sub_type = existing.type, existing.sub_type
    else:
        return GGUFValue.infer(value)

    if isinstance(value, str) and value_type != GGUFValueType.STRING:
        return _parse_text(value, value_type, sub_type, operation.key)
    if value_type == GGUFValueType.ARRAY and sub_type is None:
        return GGUFValue.infer(list(value))
    return GGUFValue(value, value_type, sub_type)


def apply_operations(table: MetadataTable, operations: Iterable[MetadataOperation], result: EditResult) -> None:
    """Applies operations to a metadata table in order, recording them in `result`.

    Raises:
        KeyError: If a deleted or renamed key does not exist.
        DuplicateKeyError: If a key is renamed onto an existing key.
        InvalidValueError: If a protected key is deleted or renamed, or a value cannot be converted.
    """
    for operation in operations:
        if operation.type is OperationType.SET:
            value = _resolve_value(operation, table.get(operation.key))
            if operation.key in table:
                table.replace(operation.key, value)
            else:
                table.insert(operation.key, value)
            result.changed[operation.key] = value.to_python()
            _LOGGER.info("Set '%s' = %r (%s)", operation.key, value.to_python(), value.type.name)
        elif operation.type is OperationType.DELETE:
            if operation.key in _PROTECTED_KEYS:
                raise InvalidValueError(f"Cannot delete required key '{operation.key}'")
            table.remove(operation.key)
            result.changed.pop(operation.key, None)
            result.deleted.append(operation.key)
            _LOGGER.info("Deleted '%s'", operation.key)
        elif operation.type is OperationType.RENAME:
            if operation.key in _PROTECTED_KEYS:
                raise InvalidValueError(f"Cannot rename required key '{operation.key}'")
            table.rename(operation.key, operation.new_key)
            result.renamed[operation.key] = operation.new_key
            _LOGGER.info("Renamed '%s' to '%s'", operation.key, operation.new_key)


@log_execution_time(logger=_LOGGER, name="rewrite_gguf", level=logging.INFO)
def _rewrite(reader: GGUFReader, table: MetadataTable, destination: Path, arch: str) -> None:
    with GGUFWriter(destination, arch=arch, byte_order=reader.get_byte_order()) as writer:
        for key, value in table:
            if key != Keys.General.ARCHITECTURE:
                writer.add_value(key, value)
        for tensor in reader.get_tensors():
            writer.add_tensor_info(tensor.name, tensor.shape, tensor.tensor_type)
        writer.write_header_and_tables()
        for tensor in reader.get_tensors():
            writer.write_tensor_chunks(reader.iter_tensor_data(tensor.name))


def edit_metadata(
    path: Union[str, os.PathLike],
    operations: Iterable[MetadataOperation],
    options: Optional[EditOptions] = None,
) -> EditResult:
    """Applies metadata operations to a GGUF file.

    The file is rewritten through a GGUFWriter with the same byte order into a temporary file in the same directory,
    which then atomically replaces the original. Tensor payloads are streamed across unchanged. The architecture
    entry is written first, as every GGUFWriter does.

    Args:
        path: The GGUF file to edit.
        operations: The edits, applied in order.
        options: Dry-run and backup settings.

    Returns:
        An EditResult describing the applied changes.

    Raises:
        GGUFError: If the file is invalid or an operation violates a metadata invariant.
        KeyError: If a deleted or renamed key does not exist.
        OSError: If the file cannot be read or replaced.
    """
    options = options or EditOptions()
    path = Path(path)
    result = EditResult(path=path, dry_run=options.dry_run)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    with GGUFReader(path, lazy=True) as reader:
        table = MetadataTable()
        for field in reader.get_fields():
            table.insert(field.name, field.value)
        apply_operations(table, operations, result)

        if options.dry_run or not result.modified:
            _LOGGER.info("%s: %s", path, "dry run, file left untouched" if options.dry_run else "no changes")
            return result

        arch = table.get(Keys.General.ARCHITECTURE)
        if arch is None or arch.type != GGUFValueType.STRING:
            raise InvalidValueError(f"'{path}' has no string '{Keys.General.ARCHITECTURE}' entry")

        try:
            _rewrite(reader, table, tmp_path, arch.value)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        if options.backup:
            result.backup_path = path.with_name(path.name + options.backup_suffix)
            shutil.copy2(path, result.backup_path)
            _LOGGER.info("Backed up '%s' to '%s'", path, result.backup_path)
        os.replace(tmp_path, path)
    except OSError:
        _LOGGER.exception("Failed to replace '%s'", path)
        tmp_path.unlink(missing_ok=True)
        raise
    return result


def _split_assignment(text: str, flag: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"{flag} expects KEY=VALUE, got {text!r}")
    return key, value


def _set_operation(text: str) -> MetadataOperation:
    key, value = _split_assignment(text, "--set")
    value_type = None
    if ":" in key:
        key, type_name = key.rsplit(":", 1)
        try:
            value_type = GGUFValueType[type_name.upper()]
        except KeyError:
            raise argparse.ArgumentTypeError(f"Unknown value type {type_name!r} in --set {text!r}") from None
    return MetadataOperation.set(key, value, value_type)


def _delete_operation(text: str) -> MetadataOperation:
    return MetadataOperation.delete(text)


def _rename_operation(text: str) -> MetadataOperation:
    old_key, new_key = _split_assignment(text, "--rename")
    return MetadataOperation.rename(old_key, new_key)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Edit the metadata of a GGUF file in place.")
    parser.add_argument("file", help="Path to the GGUF file.")
    parser.add_argument(
        "--set",
        dest="operations",
        action="append",
        type=_set_operation,
        metavar="KEY[:TYPE]=VALUE",
        help="Set a key. Keeps the existing type unless TYPE (e.g. UINT32) is given. Arrays are JSON lists.",
    )
    parser.add_argument("--delete", dest="operations", action="append", type=_delete_operation, metavar="KEY")
    parser.add_argument("--rename", dest="operations", action="append", type=_rename_operation, metavar="OLD=NEW")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without writing.")
    parser.add_argument("--backup", action="store_true", help="Keep a copy of the original file.")
    parser.add_argument("--backup-suffix", default=".bak", help="Suffix of the backup file (default: %(default)s).")
    args = parser.parse_args(argv)

    if not args.operations:
        parser.error("at least one of --set, --delete or --rename is required")

    options = EditOptions(dry_run=args.dry_run, backup=args.backup, backup_suffix=args.backup_suffix)
    try:
        result = edit_metadata(args.file, args.operations, options)
    except (GGUFError, KeyError, OSError) as e:
        _LOGGER.error("Failed to edit '%s': %s", args.file, e)
        return 1

    prefix = "Would change" if result.dry_run else "Changed"
    for key, value in result.changed.items():
        print(f"{prefix}: {key} = {value!r}")
    for key in result.deleted:
        print(f"{prefix}: deleted {key}")
    for old_key, new_key in result.renamed.items():
        print(f"{prefix}: renamed {old_key} -> {new_key}")
    if result.backup_path is not None:
        print(f"Backup: {result.backup_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
