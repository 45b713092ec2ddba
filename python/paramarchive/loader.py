"""Entry points loading the parameters of a serialized program."""

from collections.abc import Mapping
from typing import Any, Callable, Optional, Protocol, TypeVar

from paramarchive.adapters import ByteSource, as_read_adapter
from paramarchive.compilation import CompilationUnit
from paramarchive.container import ContainerReader
from paramarchive.deserializer import ArchiveDeserializer
from paramarchive.errors import LoadError
from paramarchive.objects import Module
from paramarchive.settings import LoadSettings
from paramarchive.unpickler import StorageFactory

import logging
import numpy as np


logger = logging.getLogger(__name__)

_FAILURE_PREFIX = "Error occurred during loading model: "
_UNKNOWN_FAILURE = "unknown exception"

T = TypeVar("T")


class LoadObserver(Protocol):
    """Receives lifecycle notifications of a load call."""

    def on_enter_load_model(self) -> None: ...

    def on_exit_load_model(self, name: str) -> None: ...

    def on_fail_load_model(self, message: str) -> None: ...


class LoggingObserver:
    """Observer reporting load lifecycle events to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def on_enter_load_model(self) -> None:
        self.log.info("Loading model archive")

    def on_exit_load_model(self, name: str) -> None:
        self.log.info("Loaded model '%s'", name)

    def on_fail_load_model(self, message: str) -> None:
        self.log.error("%s", message)


def load_parameters(
    source: ByteSource,
    device: Optional[str] = None,
    *,
    observer: Optional[LoadObserver] = None,
    methods: Optional[Mapping[str, Callable[..., Any]]] = None,
    storage_factory: Optional[StorageFactory] = None,
    settings: Optional[LoadSettings] = None,
) -> dict[str, np.ndarray]:
    """Load an archive and return its parameters by dotted name.

    Args:
        source: Path, seekable binary stream, raw bytes or ReadAdapter.
        device: Target device handed to the storage factory. Overrides
            ``settings.device``.
        observer: Optional receiver of enter/exit/fail notifications.
        methods: Reconstruction methods by qualified name, e.g.
            ``"__torch__.MyModule.__setstate__"``.
        storage_factory: Builds arrays from storage records; defaults to
            host numpy arrays.
        settings: Further load options.

    Raises:
        LoadError: On any failure, carrying the underlying message.
    """

    return _observed(
        observer,
        lambda: _load(source, device, methods, storage_factory, settings),
        Module.named_parameters,
    )


def load_module(
    source: ByteSource,
    device: Optional[str] = None,
    *,
    observer: Optional[LoadObserver] = None,
    methods: Optional[Mapping[str, Callable[..., Any]]] = None,
    storage_factory: Optional[StorageFactory] = None,
    settings: Optional[LoadSettings] = None,
) -> Module:
    """Load an archive and return its root object as a module.

    Takes the same arguments as :func:`load_parameters`.
    """

    return _observed(
        observer,
        lambda: _load(source, device, methods, storage_factory, settings),
        lambda module: module,
    )


def _observed(
    observer: Optional[LoadObserver],
    load: Callable[[], Module],
    extract: Callable[[Module], T],
) -> T:
    """Run a load with lifecycle notifications and the uniform failure boundary."""

    if observer is not None:
        observer.on_enter_load_model()
    try:
        module = load()
        result = extract(module)
    except Exception as exc:
        message = str(exc)
        if observer is not None:
            observer.on_fail_load_model(
                _FAILURE_PREFIX + message if message else _UNKNOWN_FAILURE
            )
        raise LoadError(message or _UNKNOWN_FAILURE) from exc

    if observer is not None:
        observer.on_exit_load_model(module.name)
    return result


def _load(
    source: ByteSource,
    device: Optional[str],
    methods: Optional[Mapping[str, Callable[..., Any]]],
    storage_factory: Optional[StorageFactory],
    settings: Optional[LoadSettings],
) -> Module:
    settings = _resolve_settings(settings, device)
    with _open_container(source, settings) as reader:
        deserializer = ArchiveDeserializer(
            reader,
            compilation_unit=CompilationUnit(methods),
            storage_factory=storage_factory,
            settings=settings,
        )
        return deserializer.deserialize(settings.device)


def _resolve_settings(settings: Optional[LoadSettings], device: Optional[str]) -> LoadSettings:
    if settings is None:
        return LoadSettings(device=device)
    if device is None:
        return settings
    return LoadSettings(**{**settings.model_dump(), "device": device})


def _open_container(source: ByteSource, settings: LoadSettings) -> ContainerReader:
    adapter = as_read_adapter(source)
    owned = adapter is not source
    try:
        return ContainerReader(
            adapter, check_version=settings.check_version, close_adapter=owned
        )
    except Exception:
        if owned:
            adapter.close()
        raise
