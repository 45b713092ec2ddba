"""Materialization of one archive's object graph."""

from functools import partial
from typing import Any, Optional

from paramarchive.compilation import CompilationUnit
from paramarchive.container import ContainerReader
from paramarchive.errors import MalformedRecord, PayloadShapeMismatch
from paramarchive.objects import Module, Object
from paramarchive.reconstruct import ObjectLoader
from paramarchive.resolver import TypeResolver, is_class_type_name
from paramarchive.settings import LoadSettings
from paramarchive.unpickler import ArchiveUnpickler, RecordReader, StorageFactory

import logging
import pickle


logger = logging.getLogger(__name__)

_PICKLE_SUFFIX = ".pkl"


class ArchiveDeserializer:
    """Deserialize archives of a container into objects of one compilation unit."""

    def __init__(
        self,
        reader: ContainerReader,
        compilation_unit: Optional[CompilationUnit] = None,
        storage_factory: Optional[StorageFactory] = None,
        settings: Optional[LoadSettings] = None,
    ):
        self.reader = reader
        self.compilation_unit = compilation_unit or CompilationUnit()
        self.storage_factory = storage_factory
        self.settings = settings or LoadSettings()
        self.device: Optional[str] = None

    def deserialize(self, device: Optional[str] = None) -> Module:
        """Load the root object of the archive and wrap it as a module."""

        self.device = device
        root = self.read_archive(self.settings.archive_name, self.compilation_unit)
        if not isinstance(root, Object):
            raise PayloadShapeMismatch(
                f"Expected the root of archive '{self.settings.archive_name}' to be "
                f"an object, got {type(root).__name__}."
            )
        return Module(root, self.compilation_unit)

    def read_archive(self, archive_name: str, compilation_unit: CompilationUnit) -> Any:
        """Parse ``<archive_name>.pkl``, resolving storages under ``<archive_name>/``."""

        record_name = f"{archive_name}{_PICKLE_SUFFIX}"
        data, size = self.reader.get_record(record_name)
        logger.debug("Reading archive '%s' (%d bytes)", record_name, size)

        def read_record(name: str) -> bytes:
            record, _ = self.reader.get_record(f"{archive_name}/{name}")
            return record

        is_class_name = partial(
            is_class_type_name, namespace=self.settings.reserved_namespace
        )
        unpickler = ArchiveUnpickler(
            RecordReader(data),
            type_resolver=TypeResolver(compilation_unit, is_class_name),
            object_loader=ObjectLoader(compilation_unit),
            read_record=read_record,
            device=self.device,
            storage_factory=self.storage_factory,
        )
        try:
            return unpickler.load()
        except (EOFError, pickle.UnpicklingError) as exc:
            reason = str(exc) or "unexpected end of data"
            raise MalformedRecord(
                f"Record '{record_name}' is truncated or corrupt: {reason}"
            ) from exc
