"""Type handles for values found in serialized archives."""

from dataclasses import dataclass
from typing import Optional, Union

from paramarchive.errors import AttributeConflict, TypeResolutionFailure

import re
import weakref


@dataclass(frozen=True)
class BuiltinType:
    """A primitive or container type, as written in a type expression."""

    kind: str
    args: tuple["BuiltinType", ...] = ()

    def __str__(self) -> str:
        if self.kind == "Tuple" and not self.args:
            return "Tuple[()]"
        if not self.args:
            return self.kind
        return f"{self.kind}[{', '.join(str(arg) for arg in self.args)}]"

    def is_subtype_of(self, other: "TypeHandle") -> bool:
        if other == ANY:
            return True
        if not isinstance(other, BuiltinType):
            return False
        if other.kind == "Optional":
            if self.kind == "NoneType":
                return True
            if self.kind == "Optional":
                return _element_compatible(self.args[0], other.args[0])
            return self.is_subtype_of(other.args[0])
        if self.kind != other.kind or len(self.args) != len(other.args):
            return False
        return all(
            _element_compatible(mine, theirs)
            for mine, theirs in zip(self.args, other.args)
        )


def _element_compatible(value_type: "TypeHandle", declared: "TypeHandle") -> bool:
    # The element type of an empty container cannot be observed, so Any acts
    # as a wildcard on both sides.
    if value_type == ANY or declared == ANY:
        return True
    return value_type.is_subtype_of(declared)


class ClassType:
    """A user-defined class, identified by its qualified name.

    Attribute declarations are append-only: the index at which an attribute is
    declared is the slot index objects of this class store its value at.
    """

    def __init__(self, name: str, compilation_unit=None, is_module: bool = False):
        self.name = name
        self.is_module = is_module
        self._compilation_unit = (
            weakref.ref(compilation_unit) if compilation_unit is not None else None
        )
        self._attributes: list[tuple[str, "TypeHandle"]] = []
        self._attribute_slots: dict[str, int] = {}

    def __repr__(self) -> str:
        return f"ClassType({self.name!r}, attributes={self.attribute_names})"

    def __str__(self) -> str:
        return self.name

    @property
    def compilation_unit(self):
        """The owning compilation unit, or None for custom classes."""

        if self._compilation_unit is None:
            return None
        return self._compilation_unit()

    @property
    def attribute_names(self) -> list[str]:
        return [name for name, _ in self._attributes]

    def num_attributes(self) -> int:
        return len(self._attributes)

    def find_attribute_slot(self, name: str) -> Optional[int]:
        return self._attribute_slots.get(name)

    def get_attribute_name(self, slot: int) -> str:
        return self._attributes[slot][0]

    def get_attribute_type(self, name: str) -> "TypeHandle":
        slot = self._attribute_slots.get(name)
        if slot is None:
            raise AttributeError(f"Class '{self.name}' has no attribute '{name}'.")
        return self._attributes[slot][1]

    def add_attribute(self, name: str, type_: "TypeHandle") -> int:
        if name in self._attribute_slots:
            raise AttributeConflict(
                f"Attribute '{name}' is already declared on class '{self.name}'."
            )
        self._attributes.append((name, type_))
        self._attribute_slots[name] = len(self._attributes) - 1
        return self._attribute_slots[name]

    def add_or_check_attribute(self, name: str, type_: "TypeHandle") -> int:
        """Declare an attribute, or check a repeated declaration is compatible.

        An attribute seen both as ``None`` and as a value of type ``T`` is
        widened in place to ``Optional[T]``.
        """

        slot = self._attribute_slots.get(name)
        if slot is None:
            return self.add_attribute(name, type_)

        declared = self._attributes[slot][1]
        if type_.is_subtype_of(declared):
            return slot

        widened = _widen_to_optional(declared, type_)
        if widened is None:
            raise AttributeConflict(
                f"Attribute '{name}' of class '{self.name}' was declared as "
                f"'{declared}' but is redeclared as incompatible type '{type_}'."
            )
        self._attributes[slot] = (name, widened)
        return slot

    def is_subtype_of(self, other: "TypeHandle") -> bool:
        if other is self or other == ANY:
            return True
        return (
            isinstance(other, BuiltinType)
            and other.kind == "Optional"
            and self.is_subtype_of(other.args[0])
        )


def _widen_to_optional(declared: "TypeHandle", type_: "TypeHandle") -> Optional[BuiltinType]:
    if type_ == NONE:
        return BuiltinType("Optional", (declared,))
    if declared == NONE:
        if isinstance(type_, BuiltinType) and type_.kind == "Optional":
            return type_
        return BuiltinType("Optional", (type_,))
    return None


TypeHandle = Union[BuiltinType, ClassType]

ANY = BuiltinType("Any")
NONE = BuiltinType("NoneType")
BOOL = BuiltinType("bool")
INT = BuiltinType("int")
FLOAT = BuiltinType("float")
COMPLEX = BuiltinType("complex")
STR = BuiltinType("str")
TENSOR = BuiltinType("Tensor")
DEVICE = BuiltinType("Device")

_SCALAR_TYPES = {
    handle.kind: handle
    for handle in (ANY, NONE, BOOL, INT, FLOAT, COMPLEX, STR, TENSOR, DEVICE)
}
_SCALAR_TYPES["None"] = NONE

# Number of type arguments each generic takes; None means any number.
_GENERIC_ARITY: dict[str, Optional[int]] = {
    "List": 1,
    "Optional": 1,
    "Dict": 2,
    "Tuple": None,
}

_TOKEN_PATTERN = re.compile(r"\s*(?:([A-Za-z_][A-Za-z0-9_]*)|(\S))")


def _tokenize(expression: str) -> list[str]:
    tokens = []
    position = 0
    stripped = expression.rstrip()
    while position < len(stripped):
        match = _TOKEN_PATTERN.match(stripped, position)
        tokens.append(match.group(1) or match.group(2))
        position = match.end()
    return tokens


class _TypeExpressionParser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.position = 0

    def fail(self, reason: str):
        raise TypeResolutionFailure(
            f"Cannot parse type expression '{self.expression}': {reason}."
        )

    def peek(self) -> Optional[str]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def expect(self, token: str) -> None:
        current = self.peek()
        if current != token:
            self.fail(f"expected '{token}', found {current!r}")
        self.position += 1

    def parse(self) -> BuiltinType:
        result = self.parse_type()
        if self.peek() is not None:
            self.fail(f"unexpected trailing token {self.peek()!r}")
        return result

    def parse_type(self) -> BuiltinType:
        name = self.peek()
        if name is None:
            self.fail("unexpected end of expression")
        self.position += 1

        if name in _SCALAR_TYPES:
            return _SCALAR_TYPES[name]
        if name not in _GENERIC_ARITY:
            self.fail(f"unknown type '{name}'")

        self.expect("[")
        args: list[BuiltinType] = []
        if name == "Tuple" and self.peek() == "(":
            self.expect("(")
            self.expect(")")
        else:
            args.append(self.parse_type())
            while self.peek() == ",":
                self.expect(",")
                args.append(self.parse_type())
        self.expect("]")

        arity = _GENERIC_ARITY[name]
        if arity is not None and len(args) != arity:
            self.fail(f"'{name}' takes {arity} type argument(s), got {len(args)}")
        return BuiltinType(name, tuple(args))


def parse_type(expression: str) -> BuiltinType:
    """Parse a textual type expression such as ``Dict[str, List[Tensor]]``."""

    return _TypeExpressionParser(expression).parse()
