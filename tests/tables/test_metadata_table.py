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

import pytest

from ggufio.codec.value_codec import GGUFValue
from ggufio.core.constants import GGUFValueType
from ggufio.core.errors import DuplicateKeyError, IllegalStateError, InvalidValueError
from ggufio.tables.metadata_table import MetadataTable


def _u32(value: int) -> GGUFValue:
    return GGUFValue(value, GGUFValueType.UINT32)


@pytest.fixture
def table():
    table = MetadataTable()
    table.insert("general.architecture", GGUFValue("llama", GGUFValueType.STRING))
    table.insert("a", _u32(1))
    table.insert("b", _u32(2))
    return table


class TestMetadataTable:
    def test_iteration_preserves_insertion_order(self, table):
        assert [key for key, _ in table] == ["general.architecture", "a", "b"]
        assert table.keys() == ["general.architecture", "a", "b"]
        assert len(table) == 3

    def test_get(self, table):
        assert table.get("a") == _u32(1)
        assert table.get("missing") is None
        assert "b" in table
        assert "missing" not in table

    def test_duplicate_insert_rejected_and_existing_value_kept(self, table):
        with pytest.raises(DuplicateKeyError, match="Duplicate metadata key 'a'") as e:
            table.insert("a", _u32(99))

        assert e.value.key == "a"
        assert table.get("a") == _u32(1)
        assert len(table) == 3

    @pytest.mark.parametrize("key", ["", None, 5])
    def test_invalid_keys_rejected(self, key):
        with pytest.raises(InvalidValueError, match="non-empty strings"):
            MetadataTable().insert(key, _u32(1))

    def test_non_gguf_value_rejected(self):
        with pytest.raises(InvalidValueError, match="must be a GGUFValue"):
            MetadataTable().insert("a", 1)

    def test_remove(self, table):
        removed = table.remove("a")

        assert removed == _u32(1)
        assert table.keys() == ["general.architecture", "b"]

    def test_remove_missing_key(self, table):
        with pytest.raises(KeyError, match="missing"):
            table.remove("missing")

    def test_replace_keeps_position(self, table):
        previous = table.replace("a", _u32(5))

        assert previous == _u32(1)
        assert table.items() == [
            ("general.architecture", GGUFValue("llama", GGUFValueType.STRING)),
            ("a", _u32(5)),
            ("b", _u32(2)),
        ]

    def test_replace_missing_key(self, table):
        with pytest.raises(KeyError):
            table.replace("missing", _u32(1))

    def test_rename_keeps_position(self, table):
        table.rename("a", "c")

        assert table.keys() == ["general.architecture", "c", "b"]
        assert table.get("c") == _u32(1)

    def test_rename_onto_existing_key(self, table):
        with pytest.raises(DuplicateKeyError):
            table.rename("a", "b")
        assert table.keys() == ["general.architecture", "a", "b"]

    def test_rename_missing_key(self, table):
        with pytest.raises(KeyError):
            table.rename("missing", "c")

    @pytest.mark.parametrize(
        "mutation",
        [
            lambda t: t.insert("c", _u32(3)),
            lambda t: t.remove("a"),
            lambda t: t.replace("a", _u32(3)),
            lambda t: t.rename("a", "c"),
        ],
    )
    def test_locked_table_is_immutable(self, table, mutation):
        # Given
        table.lock()

        # When/Then
        with pytest.raises(IllegalStateError, match="metadata table is locked"):
            mutation(table)
        assert table.locked
        assert table.keys() == ["general.architecture", "a", "b"]

    def test_iteration_is_a_snapshot(self, table):
        # Given
        seen = []

        # When
        for key, _ in table:
            seen.append(key)
            if key == "a":
                table.insert("z", _u32(0))

        # Then
        assert seen == ["general.architecture", "a", "b"]
        assert "z" in table
