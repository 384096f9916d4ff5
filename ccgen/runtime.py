"""ccgen/runtime.py – Reference runtime for generated calling-convention code.

Generated procedures expect their globals and their ``state`` argument
to provide a small vocabulary:

* ``MVT.<name>`` value types and ``LocInfo.<mode>`` location modes;
* one binding per register name (``R0``, or ``X86.EAX`` through a
  namespace object), bound to a register number;
* custom handlers by name;
* an allocation state with the ``allocate_*`` / ``add_*_loc`` surface.

This module supplies a reference version of each, plus
:func:`load_generated`, which executes a generated fragment under both
readings of its guard and collects procedures and usage tables.

Register numbers start at 1; 0 is the "no register" sentinel that
appears in empty usage tables.

Usage
-----
::

    from ccgen.runtime import ArgFlags, CCState, MVT, load_generated

    loaded = load_generated(output.code, rules)
    state = CCState()
    loaded.classify("CC_X", 0, MVT.i32, ArgFlags(), state)
    state.locs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import SimpleNamespace
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from ccgen import model as M
from ccgen.assembler import aux_table_name, table_name
from ccgen.codegen import procedure_name

__all__ = [
    "LocInfo",
    "MVT",
    "ArgFlags",
    "RegLoc",
    "MemLoc",
    "CCState",
    "ArgumentNotHandledError",
    "RegisterNumbering",
    "LoadedConventions",
    "load_generated",
]

logger = logging.getLogger(__name__)

#: Signature of a generated procedure or custom handler.
CCAssignFn = Callable[[int, M.ValueType, M.ValueType, "LocInfo", "ArgFlags", "CCState"], bool]


# ═══════════════════════════════════════════════════════════════════════════
# VALUE TYPES AND LOCATION MODES
# ═══════════════════════════════════════════════════════════════════════════

class LocInfo(Enum):
    """How a value is transformed on its way into its location."""

    Full = "full"
    SExt = "sext"
    ZExt = "zext"
    AExt = "aext"
    SExtUpper = "sext-upper"
    ZExtUpper = "zext-upper"
    AExtUpper = "aext-upper"
    BCvt = "bcvt"
    Trunc = "trunc"
    FPExt = "fpext"
    Indirect = "indirect"


class _MVTNamespace:
    """Attribute access yields value types: ``MVT.i32 == ValueType("i32")``."""

    def __init__(self) -> None:
        self._cache: Dict[str, M.ValueType] = {}

    def __getattr__(self, name: str) -> M.ValueType:
        if name.startswith("__"):
            raise AttributeError(name)
        vt = self._cache.get(name)
        if vt is None:
            vt = self._cache[name] = M.ValueType(name)
        return vt

    def __repr__(self) -> str:
        return "MVT"


MVT = _MVTNamespace()


# ═══════════════════════════════════════════════════════════════════════════
# ARGUMENT FLAGS AND LOCATIONS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ArgFlags:
    """Attributes of one argument, as seen by the classification rules."""

    sext: bool = False
    zext: bool = False
    in_reg: bool = False
    sret: bool = False
    byval: bool = False
    nest: bool = False
    split: bool = False
    swift_self: bool = False
    swift_error: bool = False
    swift_async: bool = False
    byval_size: int = 0
    byval_align: int = 1

    def is_sext(self) -> bool:
        return self.sext

    def is_zext(self) -> bool:
        return self.zext

    def is_in_reg(self) -> bool:
        return self.in_reg

    def is_sret(self) -> bool:
        return self.sret

    def is_byval(self) -> bool:
        return self.byval

    def is_nest(self) -> bool:
        return self.nest

    def is_split(self) -> bool:
        return self.split

    def is_swift_self(self) -> bool:
        return self.swift_self

    def is_swift_error(self) -> bool:
        return self.swift_error

    def is_swift_async(self) -> bool:
        return self.swift_async


@dataclass(frozen=True)
class RegLoc:
    """An argument placed in a register."""

    val_no: int
    val_vt: M.ValueType
    reg: int
    loc_vt: M.ValueType
    loc_info: LocInfo


@dataclass(frozen=True)
class MemLoc:
    """An argument placed on the stack at ``offset``."""

    val_no: int
    val_vt: M.ValueType
    offset: int
    loc_vt: M.ValueType
    loc_info: LocInfo


Location = Union[RegLoc, MemLoc]


class ArgumentNotHandledError(RuntimeError):
    """No action of the convention produced a location for an argument."""

    def __init__(self, convention: str, val_no: int, vt: M.ValueType) -> None:
        super().__init__(f"{convention}: unable to handle argument #{val_no} of type {vt}")
        self.convention = convention
        self.val_no = val_no
        self.vt = vt


# ═══════════════════════════════════════════════════════════════════════════
# ALLOCATION STATE
# ═══════════════════════════════════════════════════════════════════════════

def _align_to(value: int, align: int) -> int:
    if align <= 1:
        return value
    return (value + align - 1) // align * align


class CCState:
    """Reference allocation state consumed by generated procedures.

    Tracks claimed registers, the running stack offset and the
    locations assigned so far.  Registers are plain ints; a claim
    returns the register number, or ``None`` when it was taken.
    """

    def __init__(
        self,
        var_arg: bool = False,
        stack_offset: int = 0,
        max_align: int = 16,
    ) -> None:
        self.var_arg = var_arg
        self.stack_offset = stack_offset
        self.max_align = max_align
        self.allocated: Set[int] = set()
        self.locs: List[Location] = []

    # --- Registers ----------------------------------------------------

    def is_var_arg(self) -> bool:
        return self.var_arg

    def is_allocated(self, reg: int) -> bool:
        return reg in self.allocated

    def mark_allocated(self, reg: int) -> None:
        self.allocated.add(reg)

    def allocate_reg(self, reg: int, shadow: Optional[int] = None) -> Optional[int]:
        """Claim *reg* (and *shadow* with it); ``None`` when *reg* is taken."""
        if self.is_allocated(reg):
            return None
        self.mark_allocated(reg)
        if shadow is not None:
            self.mark_allocated(shadow)
        return reg

    def allocate_reg_from(
        self,
        regs: Sequence[int],
        shadows: Optional[Sequence[int]] = None,
    ) -> Optional[int]:
        """Claim the first free register of *regs*, with its parallel shadow."""
        for i, reg in enumerate(regs):
            if not self.is_allocated(reg):
                return self.allocate_reg(reg, shadows[i] if shadows else None)
        return None

    def first_unallocated(self, regs: Sequence[int]) -> int:
        """Index of the first free register of *regs*, or ``len(regs)``."""
        for i, reg in enumerate(regs):
            if not self.is_allocated(reg):
                return i
        return len(regs)

    # --- Stack --------------------------------------------------------

    def allocate_stack(self, size: int, align: int, shadows: Iterable[int] = ()) -> int:
        """Reserve *size* bytes at the next *align*-aligned offset."""
        offset = _align_to(self.stack_offset, align)
        self.stack_offset = offset + size
        for reg in shadows:
            self.mark_allocated(reg)
        return offset

    # --- Locations ----------------------------------------------------

    def add_reg_loc(
        self,
        val_no: int,
        val_vt: M.ValueType,
        reg: int,
        loc_vt: M.ValueType,
        loc_info: LocInfo,
    ) -> None:
        self.locs.append(RegLoc(val_no, val_vt, reg, loc_vt, loc_info))

    def add_mem_loc(
        self,
        val_no: int,
        val_vt: M.ValueType,
        offset: int,
        loc_vt: M.ValueType,
        loc_info: LocInfo,
    ) -> None:
        self.locs.append(MemLoc(val_no, val_vt, offset, loc_vt, loc_info))

    def handle_by_val(
        self,
        val_no: int,
        val_vt: M.ValueType,
        loc_vt: M.ValueType,
        loc_info: LocInfo,
        min_size: int,
        min_align: int,
        arg_flags: ArgFlags,
    ) -> None:
        """Copy a by-value aggregate to the stack.

        The slot is at least *min_size* bytes and at least *min_align*
        aligned, growing to the aggregate's own size and alignment.
        """
        size = max(min_size, arg_flags.byval_size)
        align = max(min_align, arg_flags.byval_align, 1)
        offset = self.allocate_stack(size, align)
        self.add_mem_loc(val_no, val_vt, offset, loc_vt, loc_info)

    # --- Natural size and alignment -----------------------------------

    def type_store_size(self, vt: M.ValueType) -> int:
        return max(1, (vt.bit_width + 7) // 8)

    def type_align(self, vt: M.ValueType) -> int:
        """Smallest power of two covering the store size, capped at ``max_align``."""
        size = self.type_store_size(vt)
        align = 1
        while align < size and align < self.max_align:
            align *= 2
        return align

    def type_alloc_size(self, vt: M.ValueType) -> int:
        return _align_to(self.type_store_size(vt), self.type_align(vt))

    # --- Driving a convention -----------------------------------------

    def analyze(
        self,
        fn: CCAssignFn,
        args: Iterable[Tuple[M.ValueType, ArgFlags]],
        convention: str = "",
    ) -> List[Location]:
        """Classify each ``(vt, flags)`` of *args* in order.

        Raises
        ------
        ArgumentNotHandledError
            When *fn* leaves an argument without a location.
        """
        for val_no, (vt, flags) in enumerate(args):
            if not fn(val_no, vt, vt, LocInfo.Full, flags, self):
                raise ArgumentNotHandledError(convention or fn.__name__, val_no, vt)
        return list(self.locs)


# ═══════════════════════════════════════════════════════════════════════════
# REGISTER BINDINGS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RegisterNumbering:
    """Register numbers for the registers of one rule set.

    Registers are numbered from 1 in sorted qualified-name order.
    """

    numbers: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def for_rules(cls, rules: M.RuleSet) -> "RegisterNumbering":
        return cls({r.qualified_name: i for i, r in enumerate(rules.registers(), 1)})

    def number(self, qualified_name: str) -> int:
        return self.numbers[qualified_name]

    def name_of(self, number: int) -> str:
        for name, n in self.numbers.items():
            if n == number:
                return name
        raise KeyError(number)

    def names_of(self, numbers: Iterable[int]) -> Tuple[str, ...]:
        """Names of *numbers*, skipping the 0 sentinel."""
        return tuple(self.name_of(n) for n in numbers if n)

    def bindings(self) -> Dict[str, Any]:
        """Globals that make every register literal resolve to its number.

        ``R0`` binds directly; ``X86.EAX`` binds ``X86`` to a namespace
        object holding ``EAX``.
        """
        result: Dict[str, Any] = {}
        for qualified, number in self.numbers.items():
            reg = M.Register.parse(qualified)
            if not reg.namespace:
                result[reg.name] = number
                continue
            head, *rest = reg.namespace.split(".")
            ns = result.setdefault(head, SimpleNamespace())
            for part in rest:
                if not hasattr(ns, part):
                    setattr(ns, part, SimpleNamespace())
                ns = getattr(ns, part)
            setattr(ns, reg.name, number)
        return result


# ═══════════════════════════════════════════════════════════════════════════
# LOADING GENERATED CODE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class LoadedConventions:
    """Procedures and usage tables of an executed fragment."""

    procedures: Dict[str, CCAssignFn]
    reg_lists: Dict[str, Tuple[int, ...]]
    aux_reg_lists: Dict[str, Tuple[int, ...]]
    numbering: RegisterNumbering

    def __getitem__(self, name: str) -> CCAssignFn:
        return self.procedures[name]

    def classify(
        self,
        name: str,
        val_no: int,
        vt: M.ValueType,
        arg_flags: ArgFlags,
        state: CCState,
    ) -> bool:
        """Run convention *name* on one argument with an unmodified location."""
        return self.procedures[name](val_no, vt, vt, LocInfo.Full, arg_flags, state)

    def analyze(
        self,
        name: str,
        args: Iterable[Tuple[M.ValueType, ArgFlags]],
        state: Optional[CCState] = None,
    ) -> List[Location]:
        state = state if state is not None else CCState()
        return state.analyze(self.procedures[name], args, convention=name)


def load_generated(
    code: str,
    rules: M.RuleSet,
    handlers: Optional[Mapping[str, CCAssignFn]] = None,
    guard: str = "GET_CC_REGISTER_LISTS",
    filename: str = "<ccgen>",
) -> LoadedConventions:
    """Execute *code* under both readings of *guard*.

    Parameters
    ----------
    code:
        A fragment produced by :func:`ccgen.assembler.generate`.
    rules:
        The rule set it was generated from; supplies register numbers
        and procedure names.
    handlers:
        Custom handlers and externally implemented conventions, by name.
    """
    numbering = RegisterNumbering.for_rules(rules)
    compiled = compile(code, filename, "exec")
    base: Dict[str, Any] = {"MVT": MVT, "LocInfo": LocInfo}
    base.update(numbering.bindings())
    base.update(handlers or {})

    procedures_ns = dict(base)
    exec(compiled, procedures_ns)

    tables_ns = dict(base)
    tables_ns[guard] = True
    exec(compiled, tables_ns)

    procedures: Dict[str, CCAssignFn] = {}
    reg_lists: Dict[str, Tuple[int, ...]] = {}
    aux_reg_lists: Dict[str, Tuple[int, ...]] = {}
    for cc in rules:
        fn = procedures_ns.get(procedure_name(cc))
        if fn is not None:
            procedures[cc.name] = fn
        if table_name(cc.name) in tables_ns:
            reg_lists[cc.name] = tables_ns[table_name(cc.name)]
        if aux_table_name(cc.name) in tables_ns:
            aux_reg_lists[cc.name] = tables_ns[aux_table_name(cc.name)]

    logger.debug(
        "loaded %d procedure(s), %d table(s)", len(procedures), len(reg_lists)
    )
    return LoadedConventions(procedures, reg_lists, aux_reg_lists, numbering)
