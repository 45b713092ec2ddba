"""Hooks that let ``pickle`` materialize an archive's value graph."""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from paramarchive.errors import MalformedRecord, PayloadShapeMismatch, TypeResolutionFailure
from paramarchive.objects import Object
from paramarchive.reconstruct import ObjectLoader
from paramarchive.types import ClassType, TypeHandle

import logging
import numpy as np
import pickle


logger = logging.getLogger(__name__)

StorageFactory = Callable[[bytes, np.dtype, int, str, Optional[str]], np.ndarray]


class RecordReader:
    """Sequential reader over the bytes of one record.

    Each read returns at most the requested number of bytes, and an empty
    result once the record is exhausted.
    """

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._view = memoryview(self._data)
        self._pos = 0

    def read(self, size: int = -1) -> bytes:
        remaining = len(self._view) - self._pos
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining
        chunk = self._view[self._pos : self._pos + size].tobytes()
        self._pos += size
        return chunk

    def readinto(self, buffer) -> int:
        chunk = self.read(len(buffer))
        buffer[: len(chunk)] = chunk
        return len(chunk)

    def readline(self) -> bytes:
        end = self._data.find(b"\n", self._pos)
        if end < 0:
            return self.read()
        return self.read(end + 1 - self._pos)


class Tensor(np.ndarray):
    """A numpy view over archive storage that remembers ``requires_grad``."""

    def __array_finalize__(self, obj):
        self.requires_grad = getattr(obj, "requires_grad", False)


@dataclass(frozen=True)
class StorageType:
    name: str
    dtype: np.dtype


_STORAGE_DTYPES = {
    "ByteStorage": np.uint8,
    "CharStorage": np.int8,
    "ShortStorage": np.int16,
    "IntStorage": np.int32,
    "LongStorage": np.int64,
    "HalfStorage": np.float16,
    "FloatStorage": np.float32,
    "DoubleStorage": np.float64,
    "ComplexFloatStorage": np.complex64,
    "ComplexDoubleStorage": np.complex128,
    "BoolStorage": np.bool_,
}


def numpy_storage(
    data: bytes, dtype: np.dtype, numel: int, location: str, device: Optional[str]
) -> np.ndarray:
    """Default storage factory: a writable host array over the record bytes."""

    if device not in (None, "cpu"):
        raise ValueError(f"Numpy storages cannot be placed on device '{device}'.")

    dtype = np.dtype(dtype)
    expected = numel * dtype.itemsize
    if len(data) < expected:
        raise MalformedRecord(
            f"Storage record holds {len(data)} bytes, expected {expected} "
            f"for {numel} elements of {dtype}."
        )
    little_endian = dtype.newbyteorder("<")
    return np.frombuffer(data, dtype=little_endian, count=numel).astype(dtype)


def _rebuild_tensor(storage, storage_offset, size, stride) -> Tensor:
    size = tuple(int(n) for n in size)
    stride = tuple(int(s) for s in stride)
    storage_offset = int(storage_offset)
    if len(size) != len(stride):
        raise PayloadShapeMismatch(
            f"Tensor size {size} and stride {stride} have different ranks."
        )
    if storage_offset < 0 or any(n < 0 for n in size) or any(s < 0 for s in stride):
        raise PayloadShapeMismatch(
            f"Invalid tensor geometry: offset {storage_offset}, size {size}, stride {stride}."
        )

    if all(n > 0 for n in size):
        extent = storage_offset + sum((n - 1) * s for n, s in zip(size, stride)) + 1
    else:
        extent = storage_offset
    if extent > storage.size:
        raise PayloadShapeMismatch(
            f"Tensor view of size {size} at offset {storage_offset} exceeds its "
            f"storage of {storage.size} elements."
        )

    view = np.lib.stride_tricks.as_strided(
        storage[storage_offset:],
        shape=size,
        strides=tuple(s * storage.itemsize for s in stride),
    )
    return view.view(Tensor)


def _rebuild_tensor_v2(
    storage,
    storage_offset,
    size,
    stride,
    requires_grad=False,
    backward_hooks=None,
    metadata=None,
) -> Tensor:
    tensor = _rebuild_tensor(storage, storage_offset, size, stride)
    tensor.requires_grad = bool(requires_grad)
    return tensor


def _rebuild_parameter(data, requires_grad, backward_hooks) -> Tensor:
    parameter = np.asarray(data).view(Tensor)
    parameter.requires_grad = bool(requires_grad)
    return parameter


def _build_list(values) -> list:
    return list(values)


def _device(device_type: str, index: Optional[int] = None) -> str:
    if index is None:
        return str(device_type)
    return f"{device_type}:{index}"


_TENSOR_GLOBALS: dict[tuple[str, str], Any] = {
    ("torch._utils", "_rebuild_tensor"): _rebuild_tensor,
    ("torch._utils", "_rebuild_tensor_v2"): _rebuild_tensor_v2,
    ("torch._utils", "_rebuild_parameter"): _rebuild_parameter,
    ("collections", "OrderedDict"): OrderedDict,
    ("torch", "device"): _device,
    ("torch.jit._pickle", "build_intlist"): _build_list,
    ("torch.jit._pickle", "build_doublelist"): _build_list,
    ("torch.jit._pickle", "build_floatlist"): _build_list,
    ("torch.jit._pickle", "build_boollist"): _build_list,
    ("torch.jit._pickle", "build_tensorlist"): _build_list,
}
_TENSOR_GLOBALS.update(
    (("torch", name), StorageType(name, np.dtype(dtype)))
    for name, dtype in _STORAGE_DTYPES.items()
)


class _ShellObject(Object):
    """An object allocated by NEWOBJ and populated when BUILD passes its state."""

    __slots__ = ()

    _class_type: ClassType
    _loader: ObjectLoader

    def __new__(cls, *args):
        obj = super().__new__(cls)
        Object.__init__(obj, cls._class_type, 0, cls._loader.compilation_unit)
        return obj

    def __init__(self, *args):
        pass

    def __setstate__(self, state):
        type(self)._loader(type(self)._class_type, state, instance=self)


class ArchiveUnpickler(pickle.Unpickler):
    """Unpickler resolving classes, objects and storages through archive hooks.

    Args:
        file: Reader over the structured record.
        type_resolver: Maps a qualified name to a type handle.
        object_loader: Rebuilds an object from its class and pickled state.
        read_record: Returns the bytes of an auxiliary record by name.
        device: Target device hint handed to the storage factory.
        storage_factory: Turns storage bytes into an array.
    """

    def __init__(
        self,
        file,
        type_resolver: Callable[[str], TypeHandle],
        object_loader: ObjectLoader,
        read_record: Callable[[str], bytes],
        device: Optional[str] = None,
        storage_factory: Optional[StorageFactory] = None,
    ):
        super().__init__(file)
        self.type_resolver = type_resolver
        self.object_loader = object_loader
        self.read_record = read_record
        self.device = device
        self.storage_factory = storage_factory or numpy_storage
        self._storages: dict[str, np.ndarray] = {}
        self._shell_classes: dict[ClassType, type] = {}

    def find_class(self, module: str, name: str):
        known = _TENSOR_GLOBALS.get((module, name))
        if known is not None:
            return known
        if (module, name) == ("torch.jit._pickle", "restore_type_tag"):
            return self._restore_type_tag

        qualified_name = f"{module}.{name}"
        type_ = self.type_resolver(qualified_name)
        if not isinstance(type_, ClassType):
            raise TypeResolutionFailure(
                f"'{qualified_name}' names builtin type '{type_}', which cannot be "
                "instantiated from an archive."
            )
        return self._shell_class(type_)

    def persistent_load(self, pid: Any) -> Any:
        if not isinstance(pid, tuple) or len(pid) != 5 or pid[0] != "storage":
            raise PayloadShapeMismatch(f"Unsupported persistent id {pid!r}.")

        _, storage_type, key, location, numel = pid
        if not isinstance(storage_type, StorageType):
            raise PayloadShapeMismatch(
                f"Persistent id {pid!r} does not reference a storage type."
            )

        key = str(key)
        storage = self._storages.get(key)
        if storage is None:
            logger.debug("Loading storage %s (%s, %s elements)", key, storage_type.name, numel)
            data = self.read_record(key)
            storage = self.storage_factory(
                data, storage_type.dtype, int(numel), str(location), self.device
            )
            self._storages[key] = storage
        return storage

    def _restore_type_tag(self, value: Any, type_expression: str) -> Any:
        self.type_resolver(type_expression)
        return value

    def _shell_class(self, class_type: ClassType) -> type:
        shell = self._shell_classes.get(class_type)
        if shell is None:
            shell = type(
                class_type.name.rpartition(".")[2],
                (_ShellObject,),
                {
                    "__slots__": (),
                    "__module__": __name__,
                    "_class_type": class_type,
                    "_loader": self.object_loader,
                },
            )
            self._shell_classes[class_type] = shell
        return shell
