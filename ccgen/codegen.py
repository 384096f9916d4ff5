#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ccgen/codegen.py
================

Classifier synthesizer: rule tree → Python classification procedure.

For one calling convention this module emits a function

    def CC_X(val_no, val_vt, loc_vt, loc_info, arg_flags, state):

that returns ``True`` once the argument has been given a location and
``False`` when no action of the convention handled it.  While emitting,
every register literal is recorded into the convention's primary or
auxiliary usage set, and every delegation is recorded as an edge for
:mod:`ccgen.resolver`.

Action dispatch
---------------
Each action variant of :mod:`ccgen.model` has exactly one emitter,
registered in ``_ACTION_EMITTERS`` with the ``@_emits`` decorator.
Anything else reaching the synthesizer is an ``UnknownActionError``.

Generated names
---------------
Entry-point conventions keep their name, private ones get a leading
underscore.  Multi-register lists and stack offsets become locals
``reg_list<N>``, ``shadow_reg_list<N>`` and ``offset<N>``; ``N`` comes
from a counter reset at the start of each convention.
Conventions that would share a module-level name are rejected, and so
are register names that are not identifiers or that shadow a generated
name.
"""

from __future__ import annotations

import keyword
import logging
import re
from dataclasses import dataclass, field
from io import StringIO
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from ccgen import model as M
from ccgen.errors import (
    EmptyTypeListError,
    InvalidRegisterNameError,
    NameCollisionError,
    ShadowListLengthError,
    SourceSpan,
    UndefinedConventionError,
    UnknownActionError,
    UnsupportedPromotionError,
)

__all__ = [
    "CodeEmitter",
    "CompilationContext",
    "ClassifierSynthesizer",
    "PROCEDURE_PARAMS",
    "check_register_name",
    "generated_names",
    "procedure_name",
    "synthesize",
]

logger = logging.getLogger(__name__)

#: Parameter list shared by every generated procedure and custom handler.
PROCEDURE_PARAMS = "val_no, val_vt, loc_vt, loc_info, arg_flags, state"

#: Names a register may not take: they are bound in the generated module
#: or inside every procedure.
_RESERVED_NAMES = frozenset(
    [p.strip() for p in PROCEDURE_PARAMS.split(",")]
    + ["reg", "MVT", "LocInfo", "CCAssignFn", "globals"]
)
_RESERVED_LOCAL_RE = re.compile(r"(?:shadow_)?reg_list\d+|offset\d+")


# ═══════════════════════════════════════════════════════════════════════════
# CODE EMITTER
# ═══════════════════════════════════════════════════════════════════════════

class CodeEmitter:
    """Low-level code emission with indentation management.

    Provides a structured way to emit Python code with:
    - Automatic indentation tracking
    - Block context managers
    - Line mapping back to rule-file locations
    """

    def __init__(self, indent_str: str = "    ", indent_level: int = 0) -> None:
        self._buffer = StringIO()
        self._indent_str = indent_str
        self._indent_level = indent_level
        self._line_number = 1
        self._source_map: Dict[int, M.SourceLoc] = {}
        self._current_source: Optional[M.SourceLoc] = None

    def emit(self, code: str) -> None:
        """Emit a line of code at the current indentation."""
        if code.strip():
            self._buffer.write(self._indent_str * self._indent_level)
            self._buffer.write(code)
            if self._current_source is not None and self._current_source != M.NO_LOC:
                self._source_map[self._line_number] = self._current_source
        self._buffer.write("\n")
        self._line_number += 1

    def emit_blank(self, count: int = 1) -> None:
        """Emit blank lines."""
        for _ in range(count):
            self._buffer.write("\n")
            self._line_number += 1

    def emit_comment(self, text: str) -> None:
        """Emit a comment."""
        for line in text.split("\n"):
            self.emit(f"# {line}" if line else "#")

    def indent(self) -> None:
        """Increase indentation level."""
        self._indent_level += 1

    def dedent(self) -> None:
        """Decrease indentation level."""
        self._indent_level = max(0, self._indent_level - 1)

    def block(self, header: str) -> "CodeEmitter._BlockContext":
        """Context manager for indented blocks."""
        return self._BlockContext(self, header)

    class _BlockContext:
        """Context manager for code blocks."""

        def __init__(self, emitter: "CodeEmitter", header: str) -> None:
            self._emitter = emitter
            self._header = header

        def __enter__(self) -> "CodeEmitter":
            self._emitter.emit(self._header)
            self._emitter.indent()
            return self._emitter

        def __exit__(self, *args: Any) -> None:
            self._emitter.dedent()

    def set_source(self, location: Optional[M.SourceLoc]) -> None:
        """Set current source location for mapping."""
        self._current_source = location

    def get_code(self) -> str:
        """Get the generated code."""
        return self._buffer.getvalue()

    def get_source_map(self) -> Dict[int, M.SourceLoc]:
        """Get the source map (generated line -> rule-file location)."""
        return dict(self._source_map)

    @staticmethod
    def make_identifier(name: str) -> str:
        """Convert a name to a valid Python identifier."""
        result = name.replace("-", "_")
        result = re.sub(r"[^a-zA-Z0-9_]", "", result)
        if result and result[0].isdigit():
            result = "_" + result
        if keyword.iskeyword(result):
            result = result + "_"
        return result or "_unnamed"


def procedure_name(cc: M.ConventionRule) -> str:
    """Python name of the procedure implementing *cc*."""
    name = CodeEmitter.make_identifier(cc.name)
    if cc.is_entry_point or cc.is_externally_implemented:
        return name
    return f"_{name}"


def generated_names(cc: M.ConventionRule) -> Tuple[str, ...]:
    """Every module-level Python name emitted for *cc*."""
    ident = CodeEmitter.make_identifier(cc.name)
    return (procedure_name(cc), f"{ident}_ArgRegs", f"{ident}_Aux_ArgRegs")


def check_register_name(reg: M.Register, span: Optional[SourceSpan] = None) -> None:
    """Reject register names the generated code cannot bind."""
    parts = reg.qualified_name.split(".")
    for part in parts:
        if not part.isidentifier() or keyword.iskeyword(part):
            raise InvalidRegisterNameError(
                reg.qualified_name, "is not a Python identifier", span=span
            )
    if parts[0] in _RESERVED_NAMES or _RESERVED_LOCAL_RE.fullmatch(parts[0]):
        raise InvalidRegisterNameError(
            reg.qualified_name,
            f"shadows the generated name '{parts[0]}'",
            span=span,
        )


# ═══════════════════════════════════════════════════════════════════════════
# COMPILATION CONTEXT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class CompilationContext:
    """State of one compilation run.

    Holds the accumulating usage sets and delegation edges; nothing in
    here outlives the run that created it.
    """

    procedure_names: Dict[str, str] = field(default_factory=dict)

    # Collected information, keyed by convention name
    direct_usage: Dict[str, Set[str]] = field(default_factory=dict)
    aux_usage: Dict[str, Set[str]] = field(default_factory=dict)
    delegations: Dict[str, Set[str]] = field(default_factory=dict)

    # Per-convention state
    current: str = ""
    auxiliary: bool = False
    counter: int = 0

    @classmethod
    def for_rules(cls, rules: M.RuleSet) -> "CompilationContext":
        owners: Dict[str, str] = {}
        for cc in rules:
            for ident in generated_names(cc):
                other = owners.setdefault(ident, cc.name)
                if other != cc.name:
                    raise NameCollisionError(
                        ident, other, cc.name, span=SourceSpan.from_node(cc)
                    )
        ctx = cls(procedure_names={cc.name: procedure_name(cc) for cc in rules})
        for cc in rules:
            ctx.declare(cc.name)
        return ctx

    def declare(self, name: str) -> None:
        """Make sure *name* owns a (possibly empty) primary usage set."""
        self.direct_usage.setdefault(name, set())

    def begin_convention(self, name: str) -> None:
        self.current = name
        self.auxiliary = False
        self.counter = 0
        self.declare(name)

    def next_id(self) -> int:
        self.counter += 1
        return self.counter

    def record_register(self, reg: M.Register) -> None:
        usage = self.aux_usage if self.auxiliary else self.direct_usage
        usage.setdefault(self.current, set()).add(reg.qualified_name)

    def record_delegation(self, target: str) -> None:
        self.delegations.setdefault(self.current, set()).add(target)

    def procedure_for(self, name: str, span: Optional[SourceSpan] = None) -> str:
        try:
            return self.procedure_names[name]
        except KeyError:
            raise UndefinedConventionError(name, referrer=self.current, span=span) from None


# ═══════════════════════════════════════════════════════════════════════════
# CLASSIFIER SYNTHESIZER
# ═══════════════════════════════════════════════════════════════════════════

_Emitter = Callable[["ClassifierSynthesizer", Any, CodeEmitter], None]
_ACTION_EMITTERS: Dict[type, _Emitter] = {}


def _emits(action_type: type):
    """Decorator: register the emitter for one action variant."""
    def deco(fn: _Emitter) -> _Emitter:
        _ACTION_EMITTERS[action_type] = fn
        return fn
    return deco


def _tuple_literal(items: Sequence[str]) -> str:
    if len(items) == 1:
        return f"({items[0]},)"
    return f"({', '.join(items)})"


def _size_expr(size: int) -> str:
    return str(size) if size else "state.type_alloc_size(loc_vt)"


def _align_expr(align: int) -> str:
    return str(align) if align else "state.type_align(loc_vt)"


def _is_auxiliary(action: M.Action) -> bool:
    return isinstance(action, M.Predicate) and action.auxiliary


_PROMOTE_MODES = {
    M.TransformKind.PROMOTE: ("SExt", "ZExt", "AExt"),
    M.TransformKind.PROMOTE_UPPER_BITS: ("SExtUpper", "ZExtUpper", "AExtUpper"),
}

_FIXED_MODES = {
    M.TransformKind.BIT_CONVERT: "BCvt",
    M.TransformKind.TRUNCATE: "Trunc",
    M.TransformKind.PASS_INDIRECT: "Indirect",
}


class ClassifierSynthesizer:
    """Emit classification procedures for the conventions of one run."""

    def __init__(self, context: CompilationContext) -> None:
        self.ctx = context

    def synthesize(self, cc: M.ConventionRule, emitter: CodeEmitter) -> None:
        """Emit the full procedure for *cc* into *emitter*."""
        self.ctx.begin_convention(cc.name)
        name = self.ctx.procedure_for(cc.name)
        logger.debug("synthesizing %s (%d action(s))", cc.name, len(cc.actions))

        emitter.set_source(cc.loc)
        with emitter.block(f"def {name}({PROCEDURE_PARAMS}):"):
            for action in cc.actions:
                self.ctx.auxiliary = _is_auxiliary(action)
                emitter.emit_blank()
                self.emit_action(action, emitter)
            emitter.set_source(cc.loc)
            emitter.emit_blank()
            emitter.emit("return False  # CC didn't match.")
        emitter.set_source(None)

    def emit_action(self, action: M.Action, emitter: CodeEmitter) -> None:
        fn = _ACTION_EMITTERS.get(type(action))
        if fn is None:
            raise UnknownActionError(action)
        emitter.set_source(getattr(action, "loc", None))
        fn(self, action, emitter)

    # --- Predicates ---------------------------------------------------

    @_emits(M.Predicate)
    def _emit_predicate(self, action: M.Predicate, e: CodeEmitter) -> None:
        cond = self._condition(action)
        with e.block(f"if {cond}:"):
            self.emit_action(action.sub_action, e)

    def _condition(self, action: M.Predicate) -> str:
        cond = action.condition
        if isinstance(cond, M.TypeCondition):
            if not cond.value_types:
                raise EmptyTypeListError(span=SourceSpan.from_node(action))
            if len(cond.value_types) == 1:
                return f"loc_vt == MVT.{cond.value_types[0].name}"
            types = [f"MVT.{vt.name}" for vt in cond.value_types]
            return f"loc_vt in {_tuple_literal(types)}"
        if isinstance(cond, M.ExprCondition):
            expr = cond.expression.strip()
            if "\n" in expr:
                expr = " ".join(expr.split())
            return expr
        raise UnknownActionError(cond, span=SourceSpan.from_node(action))

    # --- Delegation ---------------------------------------------------

    @_emits(M.Delegate)
    def _emit_delegate(self, action: M.Delegate, e: CodeEmitter) -> None:
        target = self.ctx.procedure_for(
            action.target_convention, span=SourceSpan.from_node(action)
        )
        self.ctx.record_delegation(action.target_convention)
        with e.block(f"if {target}({PROCEDURE_PARAMS}):"):
            e.emit("return True")

    # --- Register assignment ------------------------------------------

    def _use_registers(self, regs: Sequence[M.Register], action: Any) -> None:
        for reg in regs:
            check_register_name(reg, span=SourceSpan.from_node(action))
            self.ctx.record_register(reg)

    @_emits(M.RegisterAssign)
    def _emit_register_assign(self, action: M.RegisterAssign, e: CodeEmitter) -> None:
        self._emit_register_claim(action, e, action.stack_fallback)

    @_emits(M.RegisterAssignWithShadow)
    def _emit_register_assign_with_shadow(
        self, action: M.RegisterAssignWithShadow, e: CodeEmitter
    ) -> None:
        self._emit_register_claim(action, e, None)

    def _emit_register_claim(
        self,
        action: Any,
        e: CodeEmitter,
        stack_fallback: Optional[M.StackSlot],
    ) -> None:
        regs = action.registers
        shadows = action.shadow_registers
        if shadows and len(shadows) != len(regs):
            raise ShadowListLengthError(
                len(regs), len(shadows), span=SourceSpan.from_node(action)
            )
        self._use_registers((*regs, *shadows), action)

        if len(regs) == 1:
            args = [regs[0].qualified_name]
            if shadows:
                args.append(shadows[0].qualified_name)
            e.emit(f"reg = state.allocate_reg({', '.join(args)})")
        else:
            n = self.ctx.next_id()
            e.emit(f"reg_list{n} = {_tuple_literal([r.qualified_name for r in regs])}")
            args = [f"reg_list{n}"]
            if shadows:
                m = self.ctx.next_id()
                e.emit(
                    f"shadow_reg_list{m} = "
                    f"{_tuple_literal([r.qualified_name for r in shadows])}"
                )
                args.append(f"shadow_reg_list{m}")
            e.emit(f"reg = state.allocate_reg_from({', '.join(args)})")

        with e.block("if reg is not None:"):
            e.emit("state.add_reg_loc(val_no, val_vt, reg, loc_vt, loc_info)")
            if stack_fallback is not None:
                e.emit(
                    f"state.allocate_stack({_size_expr(stack_fallback.size)}, "
                    f"{_align_expr(stack_fallback.align)})"
                )
            e.emit("return True")

    # --- Stack assignment ---------------------------------------------

    @_emits(M.StackAssign)
    def _emit_stack_assign(self, action: M.StackAssign, e: CodeEmitter) -> None:
        n = self.ctx.next_id()
        e.emit(
            f"offset{n} = state.allocate_stack("
            f"{_size_expr(action.size)}, {_align_expr(action.align)})"
        )
        e.emit(f"state.add_mem_loc(val_no, val_vt, offset{n}, loc_vt, loc_info)")
        e.emit("return True")

    @_emits(M.StackAssignWithShadow)
    def _emit_stack_assign_with_shadow(
        self, action: M.StackAssignWithShadow, e: CodeEmitter
    ) -> None:
        self._use_registers(action.shadow_registers, action)
        m = self.ctx.next_id()
        shadows = [r.qualified_name for r in action.shadow_registers]
        e.emit(f"shadow_reg_list{m} = {_tuple_literal(shadows)}")
        n = self.ctx.next_id()
        e.emit(
            f"offset{n} = state.allocate_stack("
            f"{_size_expr(action.size)}, {_align_expr(action.align)}, "
            f"shadow_reg_list{m})"
        )
        e.emit(f"state.add_mem_loc(val_no, val_vt, offset{n}, loc_vt, loc_info)")
        e.emit("return True")

    # --- Type transforms ----------------------------------------------

    @_emits(M.TypeTransform)
    def _emit_type_transform(self, action: M.TypeTransform, e: CodeEmitter) -> None:
        dest = action.dest_type
        if action.kind is M.TransformKind.PROMOTE_UPPER_BITS and dest.is_floating_point:
            raise UnsupportedPromotionError(dest.name, span=SourceSpan.from_node(action))

        e.emit(f"loc_vt = MVT.{dest.name}")
        if action.kind in _FIXED_MODES:
            e.emit(f"loc_info = LocInfo.{_FIXED_MODES[action.kind]}")
            return
        if dest.is_floating_point:
            e.emit("loc_info = LocInfo.FPExt")
            return
        sext, zext, aext = _PROMOTE_MODES[action.kind]
        with e.block("if arg_flags.is_sext():"):
            e.emit(f"loc_info = LocInfo.{sext}")
        with e.block("elif arg_flags.is_zext():"):
            e.emit(f"loc_info = LocInfo.{zext}")
        with e.block("else:"):
            e.emit(f"loc_info = LocInfo.{aext}")

    # --- External capabilities ----------------------------------------

    @_emits(M.PassByValue)
    def _emit_pass_by_value(self, action: M.PassByValue, e: CodeEmitter) -> None:
        e.emit(
            "state.handle_by_val(val_no, val_vt, loc_vt, loc_info, "
            f"{action.size}, {action.align}, arg_flags)"
        )
        e.emit("return True")

    @_emits(M.CustomHandler)
    def _emit_custom(self, action: M.CustomHandler, e: CodeEmitter) -> None:
        with e.block(f"if {action.handler_name}({PROCEDURE_PARAMS}):"):
            e.emit("return True")


def synthesize(
    cc: M.ConventionRule,
    context: Optional[CompilationContext] = None,
) -> str:
    """Synthesize the procedure for a single convention.

    Without a *context* the convention may only delegate to itself;
    use :func:`ccgen.assembler.generate` for whole rule sets.
    """
    if context is None:
        context = CompilationContext(procedure_names={cc.name: procedure_name(cc)})
    emitter = CodeEmitter()
    ClassifierSynthesizer(context).synthesize(cc, emitter)
    return emitter.get_code()
