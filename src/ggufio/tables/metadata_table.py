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

from typing import Iterator, Optional

from ggufio.codec.value_codec import GGUFValue
from ggufio.core.errors import DuplicateKeyError, IllegalStateError, InvalidValueError
from ggufio.core.gguf_logging import get_logger

_LOGGER = get_logger(__name__)


class MetadataTable:
    """An ordered, key-unique collection of typed metadata entries.

    Iteration yields (key, value) pairs in insertion order; lookups are by key. Not thread-safe.
    """

    def __init__(self):
        self._entries: dict[str, GGUFValue] = {}
        self._locked = False

    def _check_mutable(self, operation: str) -> None:
        if self._locked:
            _LOGGER.error("Attempted to %s on a locked metadata table.", operation)
            raise IllegalStateError(f"Cannot {operation}: the metadata table is locked")

    def insert(self, key: str, value: GGUFValue) -> None:
        """Appends an entry.

        Raises:
            DuplicateKeyError: If `key` is already present. The existing value is left untouched.
            InvalidValueError: If `key` is not a non-empty string or `value` is not a GGUFValue.
            IllegalStateError: If the table is locked.
        """
        self._check_mutable(f"insert '{key}'")
        if not isinstance(key, str) or not key:
            raise InvalidValueError(f"Metadata keys must be non-empty strings, got {key!r}")
        if not isinstance(value, GGUFValue):
            raise InvalidValueError(f"Metadata value for '{key}' must be a GGUFValue, got {type(value).__name__}")
        if key in self._entries:
            _LOGGER.error("Duplicate metadata key '%s'", key)
            raise DuplicateKeyError(key)
        self._entries[key] = value

    def get(self, key: str) -> Optional[GGUFValue]:
        """Returns the value for `key`, or None when absent."""
        return self._entries.get(key)

    def remove(self, key: str) -> GGUFValue:
        """Removes and returns the entry for `key`.

        Raises:
            KeyError: If `key` is absent.
        """
        self._check_mutable(f"remove '{key}'")
        if key not in self._entries:
            raise KeyError(f"Metadata key '{key}' not found")
        return self._entries.pop(key)

    def replace(self, key: str, value: GGUFValue) -> GGUFValue:
        """Replaces the value of an existing entry in place and returns the previous value.

        Raises:
            KeyError: If `key` is absent. Use `insert` to add new keys.
        """
        self._check_mutable(f"replace '{key}'")
        if key not in self._entries:
            raise KeyError(f"Metadata key '{key}' not found")
        if not isinstance(value, GGUFValue):
            raise InvalidValueError(f"Metadata value for '{key}' must be a GGUFValue, got {type(value).__name__}")
        previous = self._entries[key]
        self._entries[key] = value
        return previous

    def rename(self, old_key: str, new_key: str) -> None:
        """Renames an entry, keeping its position in the iteration order.

        Raises:
            KeyError: If `old_key` is absent.
            DuplicateKeyError: If `new_key` is already present.
        """
        self._check_mutable(f"rename '{old_key}'")
        if old_key not in self._entries:
            raise KeyError(f"Metadata key '{old_key}' not found")
        if new_key in self._entries:
            raise DuplicateKeyError(new_key)
        self._entries = {(new_key if k == old_key else k): v for k, v in self._entries.items()}

    def lock(self) -> None:
        """Makes the table immutable. Idempotent."""
        self._locked = True

    @property
    def locked(self) -> bool:
        return self._locked

    def keys(self) -> list[str]:
        return list(self._entries)

    def items(self) -> list[tuple[str, GGUFValue]]:
        return list(self._entries.items())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[tuple[str, GGUFValue]]:
        return iter(list(self._entries.items()))
