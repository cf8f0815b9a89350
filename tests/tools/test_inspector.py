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

import hashlib
import json

import numpy as np
import pytest

from ggufio.core.constants import ByteOrder, GGMLQuantizationType
from ggufio.io.writer import GGUFWriter
from ggufio.tools import inspector
from ggufio.tools.inspector import (
    InspectionOptions,
    format_text,
    format_validation,
    inspect_file,
    to_json,
    validate_file,
)

_LONG_NAME = "x" * 100
_TOKENS = [f"tok{i}" for i in range(10)]


def _write_model(path, byte_order=ByteOrder.LITTLE):
    with GGUFWriter(path, "llama", byte_order=byte_order) as writer:
        writer.add_name(_LONG_NAME)
        writer.add_uint32("llama.context_length", 4096)
        writer.add_array("tokenizer.ggml.tokens", _TOKENS)
        writer.add_tensor_info("token_embd.weight", [2, 3], GGMLQuantizationType.F32)
        writer.add_tensor_info("output.weight", [1, 32], GGMLQuantizationType.Q8_0)
        writer.write_to_file([np.ones((2, 3), dtype=np.float32), bytes(34)])
        return writer.data_offset


@pytest.fixture
def model_path(tmp_path):
    path = tmp_path / "model.gguf"
    _write_model(path)
    return path


class TestInspectFile:
    def test_file_info(self, model_path, mocker):
        # Given
        mocker.patch("ggufio.tools.inspector.host_byte_order", return_value="little")

        # When
        result = inspect_file(model_path)

        # Then
        info = result.file_info
        assert info.path == str(model_path)
        assert info.file_size == model_path.stat().st_size
        assert info.version == 3
        assert info.endianness == "little"
        assert not info.endianness_mismatch
        assert info.tensor_count == 2
        assert info.metadata_count == 4
        assert info.alignment == 32
        assert info.data_offset % 32 == 0
        assert info.sha256 is None

    def test_metadata_summaries_are_shortened(self, model_path):
        # When
        result = inspect_file(model_path)

        # Then
        by_key = {entry.key: entry for entry in result.metadata}
        assert list(by_key) == ["general.architecture", "general.name", "llama.context_length", "tokenizer.ggml.tokens"]
        assert by_key["general.name"].value == "x" * 60 + "..."
        assert by_key["general.name"].length == 100
        assert by_key["llama.context_length"].type == "UINT32"
        assert by_key["llama.context_length"].value == 4096
        assert by_key["llama.context_length"].length is None
        assert by_key["tokenizer.ggml.tokens"].type == "ARRAY[STRING]"
        assert by_key["tokenizer.ggml.tokens"].value == _TOKENS[:5] + ["... 5 more"]
        assert by_key["tokenizer.ggml.tokens"].length == 10

    def test_verbose_reports_full_values(self, model_path):
        result = inspect_file(model_path, InspectionOptions(verbose=True))

        by_key = {entry.key: entry.value for entry in result.metadata}
        assert by_key["general.name"] == _LONG_NAME
        assert by_key["tokenizer.ggml.tokens"] == _TOKENS

    def test_tensor_summaries(self, tmp_path):
        # Given
        path = tmp_path / "model.gguf"
        data_offset = _write_model(path)

        # When
        result = inspect_file(path)

        # Then
        assert [(t.name, t.shape, t.type, t.n_elements, t.n_bytes, t.offset) for t in result.tensors] == [
            ("token_embd.weight", [2, 3], "F32", 6, 24, data_offset),
            ("output.weight", [1, 32], "Q8_0", 32, 34, data_offset + 32),
        ]
        assert result.total_tensor_bytes == 58

    def test_key_filter(self, model_path):
        result = inspect_file(model_path, InspectionOptions(key_filter="llama"))

        assert [entry.key for entry in result.metadata] == ["llama.context_length"]

    def test_sections_can_be_skipped(self, model_path):
        result = inspect_file(model_path, InspectionOptions(show_metadata=False, show_tensors=False))

        assert result.metadata == []
        assert result.tensors == []
        assert result.file_info.tensor_count == 2

    def test_checksum(self, model_path):
        result = inspect_file(model_path, InspectionOptions(checksum=True))

        assert result.file_info.sha256 == hashlib.sha256(model_path.read_bytes()).hexdigest()

    def test_big_endian_file_on_little_endian_host(self, tmp_path, mocker):
        # Given
        mocker.patch("ggufio.tools.inspector.host_byte_order", return_value="little")
        path = tmp_path / "be.gguf"
        _write_model(path, ByteOrder.BIG)

        # When
        result = inspect_file(path)

        # Then
        assert result.file_info.endianness == "big"
        assert result.file_info.endianness_mismatch
        assert "Endianness: big (host: little) MISMATCH" in format_text(result)


class TestValidateFile:
    def test_valid_file(self, model_path):
        result = validate_file(model_path)

        assert result.is_valid
        assert (result.metadata_count, result.tensor_count) == (4, 2)
        assert result.required_metadata == {"general.name": True, "general.architecture": True}
        assert result.missing_metadata == []
        assert result.error is None

    def test_missing_name_is_reported_but_valid(self, tmp_path):
        # Given
        path = tmp_path / "unnamed.gguf"
        with GGUFWriter(path, "llama") as writer:
            writer.write_to_file([])

        # When
        result = validate_file(path)

        # Then
        assert result.is_valid
        assert result.missing_metadata == ["general.name"]
        assert "  general.name: MISSING" in format_validation(result)

    def test_malformed_file_is_reported_not_raised(self, model_path, mocker):
        # Given
        mock_logger = mocker.patch("ggufio.tools.inspector._LOGGER")
        model_path.write_bytes(model_path.read_bytes()[:-1])

        # When
        result = validate_file(model_path)

        # Then
        assert not result.is_valid
        assert not result.structure_valid
        assert "Truncated data" in result.error
        assert result.required_metadata == {}
        mock_logger.warning.assert_called_once()

    def test_missing_file(self, tmp_path, mocker):
        mocker.patch("ggufio.tools.inspector._LOGGER")

        result = validate_file(tmp_path / "missing.gguf")

        assert not result.is_valid
        assert "Error: " in format_validation(result)


class TestFormatting:
    def test_to_json(self, model_path):
        # Given
        result = inspect_file(model_path, InspectionOptions(checksum=True))

        # When
        parsed = json.loads(to_json(result))

        # Then
        assert parsed["file_info"]["tensor_count"] == 2
        assert parsed["file_info"]["endianness_mismatch"] is result.file_info.endianness_mismatch
        assert parsed["file_info"]["sha256"] == result.file_info.sha256
        assert parsed["metadata"][0] == {
            "key": "general.architecture",
            "type": "STRING",
            "value": "llama",
            "length": 5,
        }
        assert parsed["tensors"][1]["name"] == "output.weight"

    def test_format_text(self, model_path, mocker):
        # Given
        mocker.patch("ggufio.tools.inspector.host_byte_order", return_value="little")
        result = inspect_file(model_path)

        # When
        text = format_text(result)

        # Then
        assert "=== FILE INFORMATION ===" in text
        assert "File: model.gguf" in text
        assert "Endianness: little (host: little)\n" in text
        assert "MISMATCH" not in text
        assert "Alignment: 32" in text
        assert "=== METADATA ===" in text
        assert "Dumping 4 key/value pairs:" in text
        assert "general.architecture = 'llama'" in text
        assert "=== TENSORS ===" in text
        assert "token_embd.weight" in text
        assert "Total tensor data: 58 bytes" in text
        assert "SHA-256" not in text

    def test_format_text_without_sections(self, model_path):
        result = inspect_file(model_path, InspectionOptions(show_metadata=False, show_tensors=False))

        text = format_text(result)

        assert "=== METADATA ===" not in text
        assert "=== TENSORS ===" not in text


class TestMain:
    def test_text_output(self, model_path, capsys):
        assert inspector.main([str(model_path)]) == 0

        out = capsys.readouterr().out
        assert "=== FILE INFORMATION ===" in out
        assert "output.weight" in out

    def test_json_output_with_options(self, model_path, capsys):
        # When
        exit_code = inspector.main([str(model_path), "--json", "--no-tensors", "--filter", "general", "--checksum"])

        # Then
        assert exit_code == 0
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["tensors"] == []
        assert [entry["key"] for entry in parsed["metadata"]] == ["general.architecture", "general.name"]
        assert len(parsed["file_info"]["sha256"]) == 64

    def test_max_string_length(self, model_path, capsys):
        inspector.main([str(model_path), "--json", "--max-string-length", "10"])

        parsed = json.loads(capsys.readouterr().out)
        assert parsed["metadata"][1]["value"] == "x" * 10 + "..."

    def test_invalid_file_returns_error(self, tmp_path, mocker, capsys):
        # Given
        mock_logger = mocker.patch("ggufio.tools.inspector._LOGGER")
        path = tmp_path / "bad.gguf"
        path.write_bytes(b"ABCD" + bytes(20))

        # When
        exit_code = inspector.main([str(path)])

        # Then
        assert exit_code == 1
        assert capsys.readouterr().out == ""
        mock_logger.error.assert_called_once()

    def test_missing_file_returns_error(self, tmp_path, mocker):
        mocker.patch("ggufio.tools.inspector._LOGGER")

        assert inspector.main([str(tmp_path / "missing.gguf")]) == 1

    def test_validate(self, model_path, capsys):
        assert inspector.main([str(model_path), "--validate"]) == 0

        out = capsys.readouterr().out
        assert "=== VALIDATION ===" in out
        assert "Valid: yes" in out
        assert "=== METADATA ===" not in out

    def test_validate_json_invalid_file(self, tmp_path, capsys, mocker):
        # Given
        mocker.patch("ggufio.tools.inspector._LOGGER")
        path = tmp_path / "bad.gguf"
        path.write_bytes(b"ABCD" + bytes(20))

        # When
        exit_code = inspector.main([str(path), "--validate", "--json"])

        # Then
        assert exit_code == 1
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["is_valid"] is False
        assert parsed["structure_valid"] is False
        assert parsed["error"]
