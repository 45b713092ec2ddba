"""Byte sources an archive can be opened from."""

from pathlib import Path
from typing import BinaryIO, Protocol, Union, runtime_checkable

import io
import os


@runtime_checkable
class ReadAdapter(Protocol):
    """Random-access reads over an immutable byte source."""

    def size(self) -> int: ...

    def read(self, pos: int, n: int) -> bytes: ...


class StreamAdapter:
    """Adapter over a seekable binary stream owned by the caller."""

    def __init__(self, stream: BinaryIO):
        if not stream.seekable():
            raise ValueError("Archive streams must be seekable.")
        self._stream = stream
        current = stream.tell()
        self._size = stream.seek(0, io.SEEK_END)
        stream.seek(current)

    def size(self) -> int:
        return self._size

    def read(self, pos: int, n: int) -> bytes:
        self._stream.seek(pos)
        return self._stream.read(n)

    def close(self) -> None:
        pass


class FileAdapter(StreamAdapter):
    """Adapter over a file on disk, opened and owned by the adapter."""

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path).expanduser()
        if not self.path.is_file():
            raise FileNotFoundError(f"Archive file not found: {self.path}")
        super().__init__(self.path.open("rb"))

    def close(self) -> None:
        self._stream.close()


ByteSource = Union[str, os.PathLike, bytes, bytearray, BinaryIO, ReadAdapter]


def as_read_adapter(source: ByteSource) -> ReadAdapter:
    """Normalize a path, a stream, raw bytes or an adapter into a ReadAdapter."""

    if isinstance(source, (str, os.PathLike)):
        return FileAdapter(source)
    if isinstance(source, (bytes, bytearray)):
        return StreamAdapter(io.BytesIO(bytes(source)))
    if isinstance(source, ReadAdapter):
        return source
    if callable(getattr(source, "read", None)) and callable(
        getattr(source, "seek", None)
    ):
        return StreamAdapter(source)
    raise TypeError(
        f"Cannot read an archive from {type(source).__name__}; expected a path, "
        "bytes, a seekable binary stream or a ReadAdapter."
    )


class AdapterFile(io.RawIOBase):
    """Seekable read-only file view over a ReadAdapter."""

    def __init__(self, adapter: ReadAdapter):
        super().__init__()
        self._adapter = adapter
        self._size = adapter.size()
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._pos + offset
        elif whence == io.SEEK_END:
            position = self._size + offset
        else:
            raise ValueError(f"Invalid whence value: {whence!r}")
        if position < 0:
            raise OSError(f"Negative seek position {position}")
        self._pos = position
        return self._pos

    def readinto(self, buffer) -> int:
        remaining = self._size - self._pos
        if remaining <= 0:
            return 0
        data = self._adapter.read(self._pos, min(len(buffer), remaining))
        buffer[: len(data)] = data
        self._pos += len(data)
        return len(data)
