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

import abc
import os
from pathlib import Path
from typing import IO, Optional, Union

from typing_extensions import override

from ggufio.core.gguf_logging import get_logger

_LOGGER = get_logger(__name__)

_ZERO_CHUNK = bytes(4096)


class OutputSink(abc.ABC):
    """Destination for the bytes produced by a GGUFWriter.

    The writer only ever appends, so a sink only has to track how many bytes it has accepted. Swapping the sink is how
    a dry run avoids touching storage while running exactly the same serialization code.
    """

    @abc.abstractmethod
    def write(self, data) -> int:
        """Appends a bytes-like object and returns the number of bytes accepted."""
        pass

    @abc.abstractmethod
    def tell(self) -> int:
        """Returns the number of bytes written so far."""
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Releases the sink's resources. Idempotent."""
        pass

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        pass

    def write_zeros(self, count: int) -> int:
        """Appends `count` zero bytes."""
        remaining = count
        while remaining > 0:
            chunk = min(remaining, len(_ZERO_CHUNK))
            self.write(_ZERO_CHUNK[:chunk])
            remaining -= chunk
        return count

    def flush(self) -> None:
        """Flushes buffered bytes to storage. A no-op unless the sink buffers."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class CountingSink(OutputSink):
    """A sink that discards its input and only counts bytes, used for dry runs and size estimation."""

    def __init__(self):
        self._count = 0
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise ValueError("I/O operation on a closed CountingSink")

    @override
    def write(self, data) -> int:
        self._check_open()
        size = memoryview(data).nbytes
        self._count += size
        return size

    @override
    def write_zeros(self, count: int) -> int:
        self._check_open()
        self._count += count
        return count

    @override
    def tell(self) -> int:
        return self._count

    @override
    def close(self) -> None:
        self._closed = True

    @property
    @override
    def closed(self) -> bool:
        return self._closed


class FileSink(OutputSink):
    """A sink backed by a binary file.

    When given a path the sink owns the file: it creates parent directories, truncates the file, and closes it exactly
    once. When given an already-open stream the caller keeps ownership and `close()` only flushes.
    """

    def __init__(self, destination: Union[str, os.PathLike, IO[bytes]]):
        if isinstance(destination, (str, os.PathLike)):
            path = Path(destination)
            path.parent.mkdir(parents=True, exist_ok=True)
            _LOGGER.debug("Opening '%s' for writing", path)
            self._file: Optional[IO[bytes]] = open(path, "wb")
            self._owns_file = True
            self.path: Optional[Path] = path
        else:
            self._file = destination
            self._owns_file = False
            self.path = None
        self._count = 0

    def _check_open(self):
        if self._file is None:
            raise ValueError("I/O operation on a closed FileSink")

    @override
    def write(self, data) -> int:
        self._check_open()
        size = memoryview(data).nbytes
        written = self._file.write(data)
        if written is not None and written != size:
            raise OSError(f"Short write to GGUF output: wrote {written} of {size} bytes at offset {self._count}")
        self._count += size
        return size

    @override
    def tell(self) -> int:
        return self._count

    @override
    def flush(self) -> None:
        self._check_open()
        self._file.flush()

    @override
    def close(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
        finally:
            if self._owns_file:
                self._file.close()
            self._file = None

    @property
    @override
    def closed(self) -> bool:
        return self._file is None
