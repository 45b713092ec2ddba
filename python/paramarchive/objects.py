"""Live objects reconstructed from an archive."""

from collections.abc import Mapping
from typing import Any

from paramarchive.types import (
    ANY,
    BOOL,
    COMPLEX,
    FLOAT,
    INT,
    NONE,
    STR,
    TENSOR,
    BuiltinType,
    ClassType,
    TypeHandle,
)

import numpy as np
import weakref


class Object:
    """An instance of a class type holding its attributes in ordered slots.

    Restored attributes are readable as Python attributes unless their name
    starts with an underscore or collides with a member of this class (for
    example ``compilation_unit`` or ``get_attr``); ``get_attr`` reads any of
    them.
    """

    __slots__ = ("_type", "_slots", "_compilation_unit", "__weakref__")

    def __init__(self, type_: ClassType, num_slots: int = 0, compilation_unit=None):
        self._type = type_
        self._slots: list[Any] = [None] * num_slots
        self._compilation_unit = (
            weakref.ref(compilation_unit) if compilation_unit is not None else None
        )

    def __repr__(self) -> str:
        return f"<Object {self._type.name} with {len(self._slots)} slots>"

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self.get_attr(name)
        except AttributeError:
            raise AttributeError(
                f"'{self._type.name}' object has no attribute '{name}'"
            ) from None

    @property
    def class_type(self) -> ClassType:
        return self._type

    @property
    def class_name(self) -> str:
        return self._type.name

    @property
    def compilation_unit(self):
        if self._compilation_unit is None:
            return None
        return self._compilation_unit()

    def get_slots(self) -> tuple:
        return tuple(self._slots)

    def num_slots(self) -> int:
        return len(self._slots)

    def get_slot(self, index: int) -> Any:
        return self._slots[index]

    def set_slot(self, index: int, value: Any) -> None:
        self.reserve_slots(index + 1)
        self._slots[index] = value

    def has_attr(self, name: str) -> bool:
        slot = self._type.find_attribute_slot(name)
        return slot is not None and slot < len(self._slots)

    def get_attr(self, name: str) -> Any:
        slot = self._type.find_attribute_slot(name)
        if slot is None or slot >= len(self._slots):
            raise AttributeError(f"Class '{self._type.name}' has no attribute '{name}'.")
        return self._slots[slot]

    def set_attr(self, name: str, value: Any) -> None:
        """Store an attribute, declaring it on the class on first sight."""

        slot = self._type.add_or_check_attribute(name, infer_type(value))
        self.set_slot(slot, value)

    def reserve_slots(self, count: int) -> None:
        if count > len(self._slots):
            self._slots.extend([None] * (count - len(self._slots)))

    def retype(self, type_: ClassType, num_slots: int, compilation_unit=None) -> None:
        if self._slots:
            raise RuntimeError(
                f"Cannot change the class of populated object {self!r} to '{type_.name}'."
            )
        self._type = type_
        self._slots = [None] * num_slots
        self._compilation_unit = (
            weakref.ref(compilation_unit) if compilation_unit is not None else None
        )


def _is_parameter(value: Any) -> bool:
    return isinstance(value, np.ndarray) and bool(getattr(value, "requires_grad", False))


class Module:
    """The root object of an archive together with its compilation unit."""

    def __init__(self, object_: Object, compilation_unit):
        self.object = object_
        self.compilation_unit = compilation_unit

    def __repr__(self) -> str:
        return f"Module({self.name!r})"

    @property
    def name(self) -> str:
        return self.object.class_name

    def get_attr(self, name: str) -> Any:
        return self.object.get_attr(name)

    def named_parameters(self) -> dict[str, np.ndarray]:
        """Return trainable tensors by dotted attribute path, in declaration order."""

        params: dict[str, np.ndarray] = {}
        _collect_parameters(self.object, "", params, set())
        return params

    def parameters(self) -> list[np.ndarray]:
        return list(self.named_parameters().values())


def _collect_parameters(
    obj: Object, prefix: str, params: dict[str, np.ndarray], visiting: set[int]
) -> None:
    if id(obj) in visiting:
        return
    visiting.add(id(obj))
    for attribute, value in zip(obj.class_type.attribute_names, obj.get_slots()):
        name = prefix + attribute
        if _is_parameter(value):
            params[name] = value
        elif isinstance(value, Object):
            _collect_parameters(value, f"{name}.", params, visiting)
    visiting.remove(id(obj))


def _unify(types: list[TypeHandle]) -> TypeHandle:
    if not types:
        return ANY
    first = types[0]
    if all(t == first for t in types[1:]):
        return first
    return ANY


def infer_type(value: Any) -> TypeHandle:
    """Return the type handle describing a deserialized value."""

    if value is None:
        return NONE
    if isinstance(value, Object):
        return value.class_type
    if isinstance(value, (bool, np.bool_)):
        return BOOL
    if isinstance(value, (int, np.integer)):
        return INT
    if isinstance(value, (float, np.floating)):
        return FLOAT
    if isinstance(value, (complex, np.complexfloating)):
        return COMPLEX
    if isinstance(value, str):
        return STR
    if isinstance(value, np.ndarray):
        return TENSOR
    if isinstance(value, list):
        return BuiltinType("List", (_unify([infer_type(item) for item in value]),))
    if isinstance(value, tuple):
        return BuiltinType("Tuple", tuple(infer_type(item) for item in value))
    if isinstance(value, Mapping):
        return BuiltinType(
            "Dict",
            (
                _unify([infer_type(key) for key in value.keys()]),
                _unify([infer_type(item) for item in value.values()]),
            ),
        )
    return ANY
