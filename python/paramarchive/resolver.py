"""Resolution of qualified names found in archives to type handles."""

from typing import Callable

from paramarchive.compilation import CompilationUnit
from paramarchive.types import TypeHandle, parse_type

import logging


logger = logging.getLogger(__name__)

# Root namespace of every class defined by the serialized program.
RESERVED_NAMESPACE = "__torch__"


def is_class_type_name(qualified_name: str, namespace: str = RESERVED_NAMESPACE) -> bool:
    """Return whether a qualified name denotes a user-defined class.

    This is a prefix test on dotted atoms, not a structural guarantee: a name
    outside the namespace is always treated as a type expression, and a name
    inside it always as a class.
    """

    return qualified_name == namespace or qualified_name.startswith(f"{namespace}.")


class TypeResolver:
    """Map qualified names to type handles owned by one compilation unit."""

    def __init__(
        self,
        compilation_unit: CompilationUnit,
        is_class_name: Callable[[str], bool] = is_class_type_name,
    ):
        self.compilation_unit = compilation_unit
        self.is_class_name = is_class_name

    def resolve(self, qualified_name: str) -> TypeHandle:
        if self.is_class_name(qualified_name):
            class_type = self.compilation_unit.get_class(qualified_name)
            if class_type is None:
                logger.debug("Creating class type '%s'", qualified_name)
                class_type = self.compilation_unit.get_or_create_class(qualified_name)
            return class_type
        return parse_type(qualified_name)

    __call__ = resolve
