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
Computes checksums of GGUF files: whole-file digests plus digests of only the tensor content or only the metadata.

The content digest covers every tensor in name order (name, data-section offset, size, type, shape, then the payload),
so it does not change when metadata is edited. The metadata digest covers every entry in key order, with values
encoded big-endian, so it does not change when tensors are re-encoded or the file's byte order differs.

Usage:
    ```bash
    ggufio-hash model.gguf
    ggufio-hash -a sha256,gguf_content models/*.gguf
    ggufio-hash -r -o checksums.txt models/
    ggufio-hash -a gguf_content --verify 3f2a... model.gguf
    ```
"""

import argparse
import dataclasses
import enum
import glob
import hashlib
import os
import struct
import sys
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from ggufio.codec.value_codec import encode_string, encode_value
from ggufio.core.constants import ByteOrder
from ggufio.core.errors import GGUFError
from ggufio.core.gguf_logging import get_logger
from ggufio.core.utils import get_copy_chunk_bytes, log_execution_time
from ggufio.io.reader import GGUFReader

_LOGGER = get_logger(__name__)

PathLike = Union[str, os.PathLike]


class HashAlgorithm(enum.Enum):
    SHA256 = "sha256"
    SHA1 = "sha1"
    MD5 = "md5"
    GGUF_CONTENT = "gguf_content"
    """SHA-256 over the tensors only."""
    GGUF_METADATA = "gguf_metadata"
    """SHA-256 over the metadata only."""

    @property
    def is_whole_file(self) -> bool:
        return self in (HashAlgorithm.SHA256, HashAlgorithm.SHA1, HashAlgorithm.MD5)

    @classmethod
    def parse(cls, text: str) -> "HashAlgorithm":
        """Accepts the value or the member name, case-insensitively (e.g. "sha256", "GGUF_CONTENT")."""
        try:
            return cls(text.strip().lower())
        except ValueError:
            names = ", ".join(a.value for a in cls)
            raise ValueError(f"Unknown hash algorithm '{text}' (expected one of: {names})") from None


@dataclasses.dataclass
class HashResult:
    path: Path
    file_size: int
    hashes: dict[HashAlgorithm, str] = dataclasses.field(default_factory=dict)

    def lines(self) -> list[str]:
        """One `ALGORITHM (path) = digest` line per algorithm, in the order they were requested."""
        return [f"{algorithm.name} ({self.path}) = {digest}" for algorithm, digest in self.hashes.items()]


@dataclasses.dataclass
class VerificationResult:
    path: Path
    algorithm: HashAlgorithm
    expected: str
    actual: str

    @property
    def matches(self) -> bool:
        return self.expected.strip().lower() == self.actual.lower()


def _file_digests(path: Path, algorithms: Sequence[HashAlgorithm], chunk_size: int) -> dict[HashAlgorithm, str]:
    # Every whole-file digest is fed from a single pass over the file.
    digests = {algorithm: hashlib.new(algorithm.value) for algorithm in algorithms}
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            for digest in digests.values():
                digest.update(chunk)
    return {algorithm: digest.hexdigest() for algorithm, digest in digests.items()}


def _u64(value: int) -> bytes:
    return struct.pack(">Q", value)


def content_digest(reader: GGUFReader, chunk_size: Optional[int] = None) -> str:
    """Returns the SHA-256 of the tensors of an open reader, taken in name order."""
    digest = hashlib.sha256()
    for tensor in sorted(reader.get_tensors(), key=lambda t: t.name):
        digest.update(encode_string(tensor.name, ByteOrder.BIG))
        digest.update(_u64(tensor.offset))
        digest.update(_u64(tensor.n_bytes))
        digest.update(encode_string(tensor.tensor_type.name, ByteOrder.BIG))
        digest.update(_u64(len(tensor.shape)))
        for dim in tensor.shape:
            digest.update(_u64(dim))
        for chunk in reader.iter_tensor_data(tensor.name, chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def metadata_digest(reader: GGUFReader) -> str:
    """Returns the SHA-256 of the metadata of an open reader, taken in key order."""
    digest = hashlib.sha256()
    for field in sorted(reader.get_fields(), key=lambda f: f.name):
        digest.update(encode_string(field.name, ByteOrder.BIG))
        digest.update(encode_value(field.value, ByteOrder.BIG))
    return digest.hexdigest()


def hash_file(
    path: PathLike,
    algorithms: Sequence[HashAlgorithm] = (HashAlgorithm.SHA256,),
    chunk_size: Optional[int] = None,
) -> HashResult:
    """Computes the requested digests of one file.

    Whole-file digests read the file once, in chunks of `chunk_size` bytes (default `GGUFIO_COPY_CHUNK_BYTES`).
    The GGUF digests open the file with a lazy GGUFReader, so payloads are streamed rather than loaded.

    Raises:
        ValueError: If no algorithm is requested.
        GGUFError: If a GGUF digest is requested and the file is not a valid GGUF container.
        OSError: If the file cannot be read.
    """
    if not algorithms:
        raise ValueError("At least one hash algorithm is required")
    path = Path(path)
    chunk_size = chunk_size or get_copy_chunk_bytes()
    algorithms = list(dict.fromkeys(algorithms))

    with log_execution_time(_LOGGER, f"Hashing {path}"):
        result = HashResult(path=path, file_size=path.stat().st_size)
        whole_file: dict[HashAlgorithm, str] = {}
        if any(a.is_whole_file for a in algorithms):
            whole_file = _file_digests(path, [a for a in algorithms if a.is_whole_file], chunk_size)
        gguf: dict[HashAlgorithm, str] = {}
        if any(not a.is_whole_file for a in algorithms):
            with GGUFReader(path, lazy=True) as reader:
                if HashAlgorithm.GGUF_CONTENT in algorithms:
                    gguf[HashAlgorithm.GGUF_CONTENT] = content_digest(reader, chunk_size)
                if HashAlgorithm.GGUF_METADATA in algorithms:
                    gguf[HashAlgorithm.GGUF_METADATA] = metadata_digest(reader)
        for algorithm in algorithms:
            result.hashes[algorithm] = whole_file[algorithm] if algorithm.is_whole_file else gguf[algorithm]
    return result


def verify(path: PathLike, algorithm: HashAlgorithm, expected: str) -> VerificationResult:
    """Computes one digest of `path` and compares it with `expected`, ignoring case and surrounding whitespace."""
    actual = hash_file(path, [algorithm]).hashes[algorithm]
    result = VerificationResult(path=Path(path), algorithm=algorithm, expected=expected, actual=actual)
    if result.matches:
        _LOGGER.info("%s of %s matches", algorithm.name, path)
    else:
        _LOGGER.warning("%s of %s is %s, expected %s", algorithm.name, path, actual, expected)
    return result


def collect_paths(inputs: Iterable[PathLike], recursive: bool = False) -> list[Path]:
    """Expands directories into the `.gguf` files they contain (sorted); other inputs are kept as given."""
    paths = []
    for item in inputs:
        item = Path(item)
        if item.is_dir():
            pattern = os.path.join(item, "**", "*.gguf") if recursive else os.path.join(item, "*.gguf")
            paths.extend(sorted(Path(p) for p in glob.glob(pattern, recursive=recursive) if os.path.isfile(p)))
        else:
            paths.append(item)
    return paths


def _parse_algorithms(text: str) -> list[HashAlgorithm]:
    try:
        return [HashAlgorithm.parse(part) for part in text.split(",") if part.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Compute checksums of GGUF files.")
    parser.add_argument("paths", nargs="+", help="GGUF files or directories.")
    parser.add_argument(
        "-a",
        "--algorithm",
        dest="algorithms",
        type=_parse_algorithms,
        default=[HashAlgorithm.SHA256],
        help="Comma-separated algorithms: " + ", ".join(a.value for a in HashAlgorithm) + " (default: sha256).",
    )
    parser.add_argument("-r", "--recursive", action="store_true", help="Search directories recursively.")
    parser.add_argument("-o", "--output", default=None, help="Also write the results to this file.")
    parser.add_argument("--verify", metavar="DIGEST", default=None, help="Compare a single file against DIGEST.")
    args = parser.parse_args(argv)

    if not args.algorithms:
        parser.error("at least one algorithm is required")
    paths = collect_paths(args.paths, args.recursive)

    if args.verify is not None:
        if len(paths) != 1 or len(args.algorithms) != 1:
            parser.error("--verify takes exactly one file and one algorithm")
        try:
            result = verify(paths[0], args.algorithms[0], args.verify)
        except (GGUFError, OSError) as e:
            _LOGGER.error("Failed to hash '%s': %s", paths[0], e)
            return 1
        print(f"{paths[0]}: {'OK' if result.matches else 'FAILED'}")
        return 0 if result.matches else 1

    lines = []
    failures = 0
    for path in paths:
        try:
            result = hash_file(path, args.algorithms)
        except (GGUFError, OSError) as e:
            _LOGGER.error("Failed to hash '%s': %s", path, e)
            lines.append(f"# ERROR ({path}): {e}")
            failures += 1
            continue
        lines.extend(result.lines())

    print("\n".join(lines))
    if args.output:
        Path(args.output).write_text("\n".join(lines) + "\n", encoding="utf-8")
        _LOGGER.info("Saved checksums to %s", args.output)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
