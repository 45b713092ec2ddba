"""Compilation units and the process-wide custom class registry."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

from paramarchive.types import ANY, ClassType


SETSTATE = "__setstate__"


class Function:
    """A reconstruction method, run on a stack of ``[instance, payload]``."""

    def __init__(self, qualified_name: str, fn: Callable[..., Any]):
        self.qualified_name = qualified_name
        self._fn = fn

    def __repr__(self) -> str:
        return f"Function({self.qualified_name!r})"

    def run(self, stack: list) -> None:
        """Call the method with the stack as arguments, leaving the instance first."""

        self._fn(*stack)
        del stack[1:]


class CompilationUnit:
    """Class types and reconstruction methods of one deserialization session."""

    def __init__(self, methods: Optional[Mapping[str, Callable[..., Any]]] = None):
        self._classes: dict[str, ClassType] = {}
        self._functions: dict[str, Function] = {}
        for qualified_name, fn in (methods or {}).items():
            self.register_function(qualified_name, fn)

    def get_class(self, qualified_name: str) -> Optional[ClassType]:
        return self._classes.get(qualified_name)

    def register_type(self, class_type: ClassType) -> None:
        if class_type.name in self._classes:
            raise ValueError(f"Class '{class_type.name}' is already registered.")
        self._classes[class_type.name] = class_type

    def get_or_create_class(self, qualified_name: str) -> ClassType:
        class_type = self._classes.get(qualified_name)
        if class_type is None:
            class_type = ClassType(qualified_name, self, is_module=True)
            self.register_type(class_type)
        return class_type

    def classes(self) -> list[ClassType]:
        return list(self._classes.values())

    def register_function(self, qualified_name: str, fn: Callable[..., Any]) -> Function:
        function = Function(qualified_name, fn)
        self._functions[qualified_name] = function
        return function

    def find_function(self, qualified_name: str) -> Optional[Function]:
        return self._functions.get(qualified_name)


@dataclass
class CustomClass:
    """A natively implemented opaque type known outside any compilation unit."""

    class_type: ClassType
    setstate: Function

    @property
    def name(self) -> str:
        return self.class_type.name


# The attribute holding the native state of a custom class instance.
CAPSULE_ATTRIBUTE = "capsule"

_CUSTOM_CLASSES: dict[str, CustomClass] = {}


def register_custom_class(qualified_name: str):
    """Decorator registering the ``__setstate__`` of a custom class.

    The decorated callable receives the new instance, which reserves exactly
    one slot for the native state, and the raw payload::

        @register_custom_class("__torch__.torch.classes.demo.Packed")
        def _restore_packed(instance, payload):
            instance.set_slot(0, unpack(payload))
    """

    def _register(setstate: Callable[[Any, Any], None]):
        class_type = ClassType(qualified_name)
        class_type.add_attribute(CAPSULE_ATTRIBUTE, ANY)
        _CUSTOM_CLASSES[qualified_name] = CustomClass(
            class_type=class_type,
            setstate=Function(f"{qualified_name}.{SETSTATE}", setstate),
        )
        return setstate

    return _register


def unregister_custom_class(qualified_name: str) -> None:
    _CUSTOM_CLASSES.pop(qualified_name, None)


def get_custom_class(qualified_name: str) -> Optional[CustomClass]:
    return _CUSTOM_CLASSES.get(qualified_name)
