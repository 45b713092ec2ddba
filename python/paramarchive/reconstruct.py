"""Reconstruction of class instances from their raw pickled state."""

from collections.abc import Mapping
from enum import Enum
from typing import Any, Optional, Union

from paramarchive.compilation import (
    SETSTATE,
    CompilationUnit,
    CustomClass,
    Function,
    get_custom_class,
)
from paramarchive.errors import PayloadShapeMismatch
from paramarchive.objects import Object
from paramarchive.types import ClassType, TypeHandle

import logging


logger = logging.getLogger(__name__)


class Strategy(Enum):
    """How an object of a given class is rebuilt, in priority order."""

    CONTEXT_METHOD = "context_method"
    EXTERNAL_METHOD = "external_method"
    ATTRIBUTE_DICT = "attribute_dict"


def select_strategy(
    class_type: ClassType, compilation_unit: CompilationUnit
) -> tuple[Strategy, Optional[Union[Function, CustomClass]]]:
    """Pick the first applicable reconstruction strategy for a class."""

    setstate = compilation_unit.find_function(f"{class_type.name}.{SETSTATE}")
    if setstate is not None:
        return Strategy.CONTEXT_METHOD, setstate

    custom_class = get_custom_class(class_type.name)
    if custom_class is not None:
        return Strategy.EXTERNAL_METHOD, custom_class

    return Strategy.ATTRIBUTE_DICT, None


class ObjectLoader:
    """Build objects from ``(type, payload)`` pairs produced by the unpickler."""

    def __init__(self, compilation_unit: CompilationUnit):
        self.compilation_unit = compilation_unit

    def __call__(
        self, type_: TypeHandle, payload: Any, instance: Optional[Object] = None
    ) -> Object:
        """Reconstruct an object of ``type_`` from ``payload``.

        ``instance`` is an empty object allocated earlier for the same class;
        when given it is populated in place instead of allocating a new one.
        """

        if not isinstance(type_, ClassType):
            raise PayloadShapeMismatch(
                f"Cannot construct an object of non-class type '{type_}'."
            )

        strategy, target = select_strategy(type_, self.compilation_unit)
        logger.debug("Restoring '%s' with strategy %s", type_.name, strategy.name)

        if strategy is Strategy.CONTEXT_METHOD:
            obj = self._allocate(instance, type_, 0, self.compilation_unit)
            stack = [obj, payload]
            target.run(stack)
            return stack[0]

        if strategy is Strategy.EXTERNAL_METHOD:
            obj = self._allocate(instance, target.class_type, 1, None)
            stack = [obj, payload]
            target.setstate.run(stack)
            return stack[0]

        return self._restore_attributes(type_, payload, instance)

    def _restore_attributes(
        self, type_: ClassType, payload: Any, instance: Optional[Object]
    ) -> Object:
        if not isinstance(payload, Mapping):
            raise PayloadShapeMismatch(
                f"Expected a dict of attributes to restore '{type_.name}', "
                f"got {type(payload).__name__}."
            )

        obj = self._allocate(instance, type_, len(payload), self.compilation_unit)
        for key, value in payload.items():
            obj.set_attr(str(key), value)
        obj.reserve_slots(type_.num_attributes())
        return obj

    @staticmethod
    def _allocate(
        instance: Optional[Object], type_: ClassType, num_slots: int, compilation_unit
    ) -> Object:
        if instance is None:
            return Object(type_, num_slots, compilation_unit)
        instance.retype(type_, num_slots, compilation_unit)
        return instance
