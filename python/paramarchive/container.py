"""Named-record access to the zip container of a serialized program."""

from typing import Optional

from paramarchive.adapters import AdapterFile, ReadAdapter
from paramarchive.errors import ContainerOpenFailure, RecordNotFound

import logging
import zipfile


logger = logging.getLogger(__name__)

# Range of container format versions this reader understands. Archives
# without a version record are accepted as-is.
MIN_SUPPORTED_VERSION = 1
MAX_SUPPORTED_VERSION = 10

_VERSION_RECORDS = ("version", ".data/version")


class ContainerReader:
    """Read records of a single archive stored inside a zip container.

    Every entry of the container lives below one top-level directory (the
    archive root). Record names are relative to that directory, so the
    structured record of archive ``data`` is ``data.pkl`` and its tensor
    storages are ``data/0``, ``data/1``, ...

    The adapter stays open on close unless ``close_adapter`` hands its
    ownership to the reader.
    """

    def __init__(
        self, adapter: ReadAdapter, check_version: bool = True, close_adapter: bool = False
    ):
        self._adapter = adapter
        self._close_adapter = close_adapter
        try:
            self._zip = zipfile.ZipFile(AdapterFile(adapter), mode="r")
        except (zipfile.BadZipFile, OSError, EOFError) as exc:
            raise ContainerOpenFailure(f"Cannot open archive container: {exc}") from exc

        names = self._zip.namelist()
        if not names:
            raise ContainerOpenFailure("Archive container holds no records.")

        root, sep, _ = names[0].partition("/")
        if not sep:
            raise ContainerOpenFailure(
                f"Archive entry '{names[0]}' is not stored inside an archive directory."
            )
        self.archive_root = root
        self._prefix = f"{root}/"
        self._records = {
            name[len(self._prefix) :]: name
            for name in names
            if name.startswith(self._prefix) and not name.endswith("/")
        }
        logger.debug(
            "Opened archive '%s' with %d records", self.archive_root, len(self._records)
        )

        self.version = self._read_version()
        if check_version and self.version is not None:
            if not MIN_SUPPORTED_VERSION <= self.version <= MAX_SUPPORTED_VERSION:
                raise ContainerOpenFailure(
                    f"Unsupported archive format version {self.version}. Supported "
                    f"versions are {MIN_SUPPORTED_VERSION} to {MAX_SUPPORTED_VERSION}."
                )

    def _read_version(self) -> Optional[int]:
        for record in _VERSION_RECORDS:
            if self.has_record(record):
                raw, _ = self.get_record(record)
                try:
                    return int(raw.decode("ascii").strip())
                except (UnicodeDecodeError, ValueError) as exc:
                    raise ContainerOpenFailure(
                        f"Invalid archive version record: {raw[:32]!r}"
                    ) from exc
        return None

    def has_record(self, name: str) -> bool:
        return name in self._records

    def get_all_records(self) -> list[str]:
        return list(self._records)

    def get_record(self, name: str) -> tuple[bytes, int]:
        """Return the full contents of a record and its length."""

        entry = self._records.get(name)
        if entry is None:
            raise RecordNotFound(name)
        try:
            data = self._zip.read(entry)
        except (zipfile.BadZipFile, EOFError) as exc:
            raise ContainerOpenFailure(f"Cannot read record '{name}': {exc}") from exc
        return data, len(data)

    def close(self) -> None:
        self._zip.close()
        if self._close_adapter:
            self._adapter.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
