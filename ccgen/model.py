"""ccgen/model.py – Rule model for calling-convention descriptions.

A calling convention is an ordered tree of classification rules.  This
module defines that tree as immutable data; behaviour lives in
:mod:`ccgen.codegen` (synthesis) and :mod:`ccgen.resolver` (usage
closure).

Design invariants
-----------------
* Every node is a frozen dataclass (immutable after construction).
* Sequences inside nodes are tuples, never lists.
* Every action records its ``SourceLoc`` for diagnostics; locations do
  not take part in equality.
* The action vocabulary is closed: ``ACTION_TYPES`` lists every variant
  and the synthesizer must handle each of them.
* Structural constraints that depend on one action's fields (shadow
  list lengths, floating-point promotion) are checked lazily by the
  synthesizer, not here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, Union

from ccgen.errors import DuplicateConventionError, SourceSpan

__all__ = [
    "SourceLoc",
    "NO_LOC",
    "ValueType",
    "Register",
    "StackSlot",
    "TypeCondition",
    "ExprCondition",
    "Condition",
    "TransformKind",
    "Action",
    "Predicate",
    "RegisterAssign",
    "RegisterAssignWithShadow",
    "StackAssign",
    "StackAssignWithShadow",
    "TypeTransform",
    "PassByValue",
    "CustomHandler",
    "Delegate",
    "ACTION_TYPES",
    "ConventionRule",
    "RuleSet",
    "walk_action",
]


# ════════════════════════════════════════════════════════════════════════
# §1  Source location
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class SourceLoc:
    """Points back to a position in a rule file."""

    file: str = "<unknown>"
    line: int = 0
    col: int = 0

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.col}"


#: Sentinel for nodes built programmatically (no source position).
NO_LOC = SourceLoc()


# ════════════════════════════════════════════════════════════════════════
# §2  Value types and registers
# ════════════════════════════════════════════════════════════════════════

_SCALAR_RE = re.compile(r"^(i|f|bf)(\d+)$")
_VECTOR_RE = re.compile(r"^(nx)?v(\d+)(i|f|bf)(\d+)$")


@dataclass(frozen=True, slots=True)
class ValueType:
    """A machine value type referenced by name (``i32``, ``f64``, ``v4f32``).

    The rule tree's type references are trusted; the only properties
    derived here are whether the type is floating point and its width
    in bits (0 for names that do not follow the usual spelling).
    """

    name: str

    @property
    def is_floating_point(self) -> bool:
        if self.name == "ppcf128":
            return True
        m = _SCALAR_RE.match(self.name)
        if m:
            return m.group(1) in ("f", "bf")
        m = _VECTOR_RE.match(self.name)
        if m:
            return m.group(3) in ("f", "bf")
        return False

    @property
    def is_vector(self) -> bool:
        return _VECTOR_RE.match(self.name) is not None

    @property
    def bit_width(self) -> int:
        """Width in bits; for scalable vectors, the minimum width."""
        if self.name == "ppcf128":
            return 128
        m = _SCALAR_RE.match(self.name)
        if m:
            return int(m.group(2))
        m = _VECTOR_RE.match(self.name)
        if m:
            return int(m.group(2)) * int(m.group(4))
        return 0

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True, order=True)
class Register:
    """A physical register, optionally qualified by a target namespace."""

    name: str
    namespace: str = ""

    @property
    def qualified_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}.{self.name}"
        return self.name

    @classmethod
    def parse(cls, text: str) -> "Register":
        """Parse ``"EAX"`` or ``"X86.EAX"`` (``::`` is accepted as well)."""
        text = text.replace("::", ".")
        namespace, _, name = text.rpartition(".")
        return cls(name=name, namespace=namespace)

    def __str__(self) -> str:
        return self.qualified_name


@dataclass(frozen=True, slots=True)
class StackSlot:
    """Size and alignment of a stack reservation; 0 means "natural"."""

    size: int = 0
    align: int = 0


# ════════════════════════════════════════════════════════════════════════
# §3  Conditions
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class TypeCondition:
    """True when the current location type is any of ``value_types``."""

    value_types: Tuple[ValueType, ...]


@dataclass(frozen=True, slots=True)
class ExprCondition:
    """An opaque boolean expression over the procedure's parameters."""

    expression: str


Condition = Union[TypeCondition, ExprCondition]


# ════════════════════════════════════════════════════════════════════════
# §4  Actions
# ════════════════════════════════════════════════════════════════════════


class TransformKind(Enum):
    PROMOTE = "promote"
    PROMOTE_UPPER_BITS = "promote-upper-bits"
    BIT_CONVERT = "bit-convert"
    TRUNCATE = "truncate"
    PASS_INDIRECT = "pass-indirect"


@dataclass(frozen=True, slots=True)
class Predicate:
    """Run ``sub_action`` only when ``condition`` holds.

    ``auxiliary`` marks the predicate as part of the auxiliary-mode
    family; registers claimed under a top-level auxiliary predicate are
    accounted to the convention's auxiliary usage set.
    """

    condition: Condition
    sub_action: "Action"
    auxiliary: bool = False
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class RegisterAssign:
    """Claim the first free register of ``registers``.

    With ``shadow_registers`` the parallel shadow is reserved alongside;
    with ``stack_fallback`` a stack slot is reserved as well once a
    register has been claimed.
    """

    registers: Tuple[Register, ...]
    shadow_registers: Tuple[Register, ...] = ()
    stack_fallback: Optional[StackSlot] = None
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class RegisterAssignWithShadow:
    """Claim a register while reserving the aligned shadow register."""

    registers: Tuple[Register, ...]
    shadow_registers: Tuple[Register, ...] = ()
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class StackAssign:
    size: int = 0
    align: int = 0
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class StackAssignWithShadow:
    size: int
    align: int
    shadow_registers: Tuple[Register, ...]
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class TypeTransform:
    """Rewrite the location type and extension mode; never assigns."""

    kind: TransformKind
    dest_type: ValueType
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class PassByValue:
    """Hand an aggregate to the allocation state's by-value handling."""

    size: int
    align: int
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class CustomHandler:
    handler_name: str
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Delegate:
    target_convention: str
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)


Action = Union[
    Predicate,
    RegisterAssign,
    RegisterAssignWithShadow,
    StackAssign,
    StackAssignWithShadow,
    TypeTransform,
    PassByValue,
    CustomHandler,
    Delegate,
]

#: Every action variant, in declaration order.
ACTION_TYPES: Tuple[type, ...] = (
    Predicate,
    RegisterAssign,
    RegisterAssignWithShadow,
    StackAssign,
    StackAssignWithShadow,
    TypeTransform,
    PassByValue,
    CustomHandler,
    Delegate,
)


def walk_action(action: Action) -> Iterator[Action]:
    """Yield *action* and every action nested below it, pre-order."""
    yield action
    if isinstance(action, Predicate):
        yield from walk_action(action.sub_action)


# ════════════════════════════════════════════════════════════════════════
# §5  Conventions
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class ConventionRule:
    """One calling convention.

    Attributes
    ----------
    name:
        Unique identifier; also the name of the generated procedure.
    actions:
        Ordered top-level actions.
    is_entry_point:
        The generated procedure is externally callable.
    is_externally_implemented:
        No procedure is synthesized; the convention is defined elsewhere.
    """

    name: str
    actions: Tuple[Action, ...] = ()
    is_entry_point: bool = False
    is_externally_implemented: bool = False
    loc: SourceLoc = field(default=NO_LOC, compare=False, repr=False)

    def iter_actions(self) -> Iterator[Action]:
        for action in self.actions:
            yield from walk_action(action)

    def delegates(self) -> Tuple[str, ...]:
        """Names this convention delegates to, in first-seen order."""
        seen: Dict[str, None] = {}
        for action in self.iter_actions():
            if isinstance(action, Delegate):
                seen.setdefault(action.target_convention)
        return tuple(seen)


@dataclass(frozen=True, slots=True)
class RuleSet:
    """All conventions of one target, in declaration order."""

    conventions: Tuple[ConventionRule, ...] = ()

    def __post_init__(self) -> None:
        seen = set()
        for cc in self.conventions:
            if cc.name in seen:
                raise DuplicateConventionError(cc.name, span=SourceSpan.from_node(cc))
            seen.add(cc.name)

    def __iter__(self) -> Iterator[ConventionRule]:
        return iter(self.conventions)

    def __len__(self) -> int:
        return len(self.conventions)

    def __contains__(self, name: object) -> bool:
        return any(cc.name == name for cc in self.conventions)

    def get(self, name: str) -> Optional[ConventionRule]:
        for cc in self.conventions:
            if cc.name == name:
                return cc
        return None

    def names(self) -> Tuple[str, ...]:
        return tuple(cc.name for cc in self.conventions)

    def registers(self) -> Tuple[Register, ...]:
        """Every register named anywhere in the rule set, sorted."""
        regs = set()
        for cc in self.conventions:
            for action in cc.iter_actions():
                regs.update(getattr(action, "registers", ()))
                regs.update(getattr(action, "shadow_registers", ()))
        return tuple(sorted(regs, key=lambda r: r.qualified_name))
