"""ccgen/parser.py – S-expression rule files → rule model.

Converts the output of ``sexpdata`` (nested Python lists,
:class:`sexpdata.Symbol`, strings, ints) into the immutable rule model
of :mod:`ccgen.model`.

Design principles
-----------------
* **Head-symbol dispatch** – every action form ``(tag ...)`` is
  dispatched on ``tag`` to a dedicated ``_parse_<tag>`` helper.
* **Fail-fast with location** – ``ParseError`` carries a
  ``SourceSpan`` naming the file and the line of the enclosing
  ``calling-conv`` form.
* **No implicit coercions** – shapes are validated strictly; anything
  unexpected is an error, not silently ignored.

Public API
----------
``parse_rules(text, filename="<string>") -> RuleSet``
    Parse every ``calling-conv`` form of a rule-file string.

``parse_file(path) -> RuleSet``
    Read and parse a rule file.

Surface syntax
--------------
::

    (calling-conv <name> [:entry] [:custom] <action> ...)

    ;; predicates
    (if-type (<vt> ...) <action>)       (if-type <vt> <action>)
    (if "<python-expr>" <action>)       (if-aux "<python-expr>" <action>)
    (if-byval <action>)   (if-inreg <action>)   (if-nest <action>)
    (if-sret <action>)    (if-split <action>)
    (if-vararg <action>)  (if-not-vararg <action>)
    (if-swift-self <action>)  (if-swift-error <action>)
    (if-swift-async <action>)           ;; auxiliary family

    ;; assignment
    (assign-to-reg (<reg> ...) [(<shadow> ...)])
    (assign-to-reg-and-stack (<reg> ...) <size> <align>)
    (assign-to-reg-with-shadow (<reg> ...) (<shadow> ...))
    (assign-to-stack [<size> [<align>]])
    (assign-to-stack-with-shadow <size> <align> (<shadow> ...))

    ;; transforms and the rest
    (promote-to-type <vt>)   (promote-to-upper-bits-in-type <vt>)
    (bit-convert-to-type <vt>)   (trunc-to-type <vt>)
    (pass-indirect <vt>)   (pass-by-val <size> <align>)
    (custom <handler>)     (delegate-to <convention>)

A bare symbol stands for a one-element register list.
"""

from __future__ import annotations

import logging
import pathlib
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import sexpdata
from sexpdata import Symbol

from ccgen import model as M
from ccgen.errors import ErrorCodes, ParseError, SourceSpan

__all__ = [
    "parse_rules",
    "parse_file",
]

logger = logging.getLogger(__name__)

# Type aliases for raw sexpdata output
Sexp = Any  # Union[list, Symbol, str, int]


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _span(loc: M.SourceLoc) -> SourceSpan:
    return SourceSpan(file=loc.file, line=loc.line, column=loc.col)


def _bad(message: str, loc: M.SourceLoc) -> ParseError:
    return ParseError(message, code=ErrorCodes.BAD_OPERAND, span=_span(loc))


def _symbol_text(s: Symbol) -> str:
    # Symbol subclasses str in sexpdata >= 1.0; older releases wrap the text.
    if isinstance(s, str):
        return str(s)
    return s.value()


def _sym_name(s: Sexp, loc: M.SourceLoc) -> str:
    """Extract the string name from a ``sexpdata.Symbol``, or raise."""
    if isinstance(s, Symbol):
        return _symbol_text(s)
    raise _bad(f"Expected symbol, got {type(s).__name__}: {s!r}", loc)


def _expect_list(s: Sexp, loc: M.SourceLoc, *, min_len: int = 0, max_len: int = -1) -> list:
    """Assert that *s* is a list holding between *min_len* and *max_len* elements."""
    if not isinstance(s, list):
        raise _bad(f"Expected list, got {type(s).__name__}: {s!r}", loc)
    if len(s) < min_len:
        raise _bad(
            f"List too short: expected at least {min_len} elements, "
            f"got {len(s)}: {sexpdata.dumps(s)}",
            loc,
        )
    if 0 <= max_len < len(s):
        raise _bad(
            f"List too long: expected at most {max_len} elements, "
            f"got {len(s)}: {sexpdata.dumps(s)}",
            loc,
        )
    return s


def _head(s: list, loc: M.SourceLoc) -> str:
    """Return the head symbol name of a list form ``(tag ...)``."""
    if not s:
        raise _bad("Unexpected empty list", loc)
    return _sym_name(s[0], loc)


def _as_str(s: Sexp, loc: M.SourceLoc) -> str:
    """Coerce *s* to a Python ``str`` – accepts Symbol or string literal."""
    if isinstance(s, Symbol):
        return _symbol_text(s)
    if isinstance(s, str):
        return s
    raise _bad(f"Expected string or symbol, got {type(s).__name__}: {s!r}", loc)


def _as_int(s: Sexp, loc: M.SourceLoc) -> int:
    if isinstance(s, int) and not isinstance(s, bool) and s >= 0:
        return s
    raise _bad(f"Expected non-negative integer, got {type(s).__name__}: {s!r}", loc)


def _as_type(s: Sexp, loc: M.SourceLoc) -> M.ValueType:
    return M.ValueType(_sym_name(s, loc))


def _as_registers(s: Sexp, loc: M.SourceLoc) -> Tuple[M.Register, ...]:
    """A register list ``(R0 R1)``, or a bare symbol for a single register."""
    if isinstance(s, Symbol):
        return (M.Register.parse(_symbol_text(s)),)
    items = _expect_list(s, loc)
    return tuple(M.Register.parse(_sym_name(r, loc)) for r in items)


# ═══════════════════════════════════════════════════════════════════════
#  Dispatch registry
# ═══════════════════════════════════════════════════════════════════════

# Maps a head-symbol string to a parser callable.
# Populated by the ``@_register`` decorator below.

_ActionParser = Callable[[list, M.SourceLoc], M.Action]
_ACTION_DISPATCH: Dict[str, _ActionParser] = {}


def _register(table: dict, tag: str):
    """Decorator: register a parser function under *tag* in *table*."""
    def deco(fn):
        table[tag] = fn
        return fn
    return deco


def parse_action(s: Sexp, loc: M.SourceLoc) -> M.Action:
    """Parse one action form from a raw S-expression."""
    if isinstance(s, list) and s:
        tag = _head(s, loc)
        parser = _ACTION_DISPATCH.get(tag)
        if parser is not None:
            return parser(s, loc)
        raise ParseError(
            f"Unknown action form: ({tag} ...)",
            code=ErrorCodes.UNKNOWN_FORM,
            span=_span(loc),
            hint=f"known forms: {', '.join(sorted(_ACTION_DISPATCH))}",
        )
    raise _bad(f"Expected action form (tag ...), got: {s!r}", loc)


# ═══════════════════════════════════════════════════════════════════════
#  Predicates
# ═══════════════════════════════════════════════════════════════════════

@_register(_ACTION_DISPATCH, "if-type")
def _parse_if_type(s: list, loc: M.SourceLoc) -> M.Predicate:
    _expect_list(s, loc, min_len=3, max_len=3)
    if isinstance(s[1], list):
        types = tuple(_as_type(t, loc) for t in s[1])
    else:
        types = (_as_type(s[1], loc),)
    return M.Predicate(
        condition=M.TypeCondition(types),
        sub_action=parse_action(s[2], loc),
        loc=loc,
    )


def _parse_expr_predicate(s: list, loc: M.SourceLoc, auxiliary: bool) -> M.Predicate:
    _expect_list(s, loc, min_len=3, max_len=3)
    expr = _as_str(s[1], loc).strip()
    if not expr:
        raise _bad("Empty predicate expression", loc)
    return M.Predicate(
        condition=M.ExprCondition(expr),
        sub_action=parse_action(s[2], loc),
        auxiliary=auxiliary,
        loc=loc,
    )


@_register(_ACTION_DISPATCH, "if")
def _parse_if(s: list, loc: M.SourceLoc) -> M.Predicate:
    return _parse_expr_predicate(s, loc, auxiliary=False)


@_register(_ACTION_DISPATCH, "if-aux")
def _parse_if_aux(s: list, loc: M.SourceLoc) -> M.Predicate:
    return _parse_expr_predicate(s, loc, auxiliary=True)


# Flag shorthands: tag -> (expression, auxiliary)
_FLAG_PREDICATES: Dict[str, Tuple[str, bool]] = {
    "if-byval": ("arg_flags.is_byval()", False),
    "if-inreg": ("arg_flags.is_in_reg()", False),
    "if-nest": ("arg_flags.is_nest()", False),
    "if-sret": ("arg_flags.is_sret()", False),
    "if-split": ("arg_flags.is_split()", False),
    "if-vararg": ("state.is_var_arg()", False),
    "if-not-vararg": ("not state.is_var_arg()", False),
    "if-swift-self": ("arg_flags.is_swift_self()", True),
    "if-swift-error": ("arg_flags.is_swift_error()", True),
    "if-swift-async": ("arg_flags.is_swift_async()", True),
}


def _make_flag_parser(expr: str, auxiliary: bool) -> _ActionParser:
    def parse(s: list, loc: M.SourceLoc) -> M.Predicate:
        _expect_list(s, loc, min_len=2, max_len=2)
        return M.Predicate(
            condition=M.ExprCondition(expr),
            sub_action=parse_action(s[1], loc),
            auxiliary=auxiliary,
            loc=loc,
        )
    return parse


for _tag, (_expr, _aux) in _FLAG_PREDICATES.items():
    _register(_ACTION_DISPATCH, _tag)(_make_flag_parser(_expr, _aux))


# ═══════════════════════════════════════════════════════════════════════
#  Assignment
# ═══════════════════════════════════════════════════════════════════════

@_register(_ACTION_DISPATCH, "assign-to-reg")
def _parse_assign_to_reg(s: list, loc: M.SourceLoc) -> M.RegisterAssign:
    _expect_list(s, loc, min_len=2, max_len=3)
    shadows = _as_registers(s[2], loc) if len(s) == 3 else ()
    return M.RegisterAssign(
        registers=_as_registers(s[1], loc),
        shadow_registers=shadows,
        loc=loc,
    )


@_register(_ACTION_DISPATCH, "assign-to-reg-and-stack")
def _parse_assign_to_reg_and_stack(s: list, loc: M.SourceLoc) -> M.RegisterAssign:
    _expect_list(s, loc, min_len=4, max_len=4)
    return M.RegisterAssign(
        registers=_as_registers(s[1], loc),
        stack_fallback=M.StackSlot(_as_int(s[2], loc), _as_int(s[3], loc)),
        loc=loc,
    )


@_register(_ACTION_DISPATCH, "assign-to-reg-with-shadow")
def _parse_assign_to_reg_with_shadow(
    s: list, loc: M.SourceLoc
) -> M.RegisterAssignWithShadow:
    _expect_list(s, loc, min_len=3, max_len=3)
    return M.RegisterAssignWithShadow(
        registers=_as_registers(s[1], loc),
        shadow_registers=_as_registers(s[2], loc),
        loc=loc,
    )


@_register(_ACTION_DISPATCH, "assign-to-stack")
def _parse_assign_to_stack(s: list, loc: M.SourceLoc) -> M.StackAssign:
    _expect_list(s, loc, min_len=1, max_len=3)
    size = _as_int(s[1], loc) if len(s) > 1 else 0
    align = _as_int(s[2], loc) if len(s) > 2 else 0
    return M.StackAssign(size=size, align=align, loc=loc)


@_register(_ACTION_DISPATCH, "assign-to-stack-with-shadow")
def _parse_assign_to_stack_with_shadow(
    s: list, loc: M.SourceLoc
) -> M.StackAssignWithShadow:
    _expect_list(s, loc, min_len=4, max_len=4)
    return M.StackAssignWithShadow(
        size=_as_int(s[1], loc),
        align=_as_int(s[2], loc),
        shadow_registers=_as_registers(s[3], loc),
        loc=loc,
    )


# ═══════════════════════════════════════════════════════════════════════
#  Transforms and the rest
# ═══════════════════════════════════════════════════════════════════════

_TRANSFORM_FORMS: Dict[str, M.TransformKind] = {
    "promote-to-type": M.TransformKind.PROMOTE,
    "promote-to-upper-bits-in-type": M.TransformKind.PROMOTE_UPPER_BITS,
    "bit-convert-to-type": M.TransformKind.BIT_CONVERT,
    "trunc-to-type": M.TransformKind.TRUNCATE,
    "pass-indirect": M.TransformKind.PASS_INDIRECT,
}


def _make_transform_parser(kind: M.TransformKind) -> _ActionParser:
    def parse(s: list, loc: M.SourceLoc) -> M.TypeTransform:
        _expect_list(s, loc, min_len=2, max_len=2)
        return M.TypeTransform(kind=kind, dest_type=_as_type(s[1], loc), loc=loc)
    return parse


for _tag, _kind in _TRANSFORM_FORMS.items():
    _register(_ACTION_DISPATCH, _tag)(_make_transform_parser(_kind))


@_register(_ACTION_DISPATCH, "pass-by-val")
def _parse_pass_by_val(s: list, loc: M.SourceLoc) -> M.PassByValue:
    _expect_list(s, loc, min_len=3, max_len=3)
    return M.PassByValue(size=_as_int(s[1], loc), align=_as_int(s[2], loc), loc=loc)


@_register(_ACTION_DISPATCH, "custom")
def _parse_custom(s: list, loc: M.SourceLoc) -> M.CustomHandler:
    _expect_list(s, loc, min_len=2, max_len=2)
    return M.CustomHandler(handler_name=_sym_name(s[1], loc), loc=loc)


@_register(_ACTION_DISPATCH, "delegate-to")
def _parse_delegate_to(s: list, loc: M.SourceLoc) -> M.Delegate:
    _expect_list(s, loc, min_len=2, max_len=2)
    return M.Delegate(target_convention=_sym_name(s[1], loc), loc=loc)


# ═══════════════════════════════════════════════════════════════════════
#  Conventions
# ═══════════════════════════════════════════════════════════════════════

_FLAGS = {":entry", ":custom"}
_CONV_RE = re.compile(r"\(\s*calling-conv\s+([^\s()]+)")
_COMMENT_OR_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"|;[^\n]*')


def _convention_lines(text: str) -> Dict[str, int]:
    """Line number of the first ``calling-conv`` form naming each convention."""
    lines: Dict[str, int] = {}
    # Blank out comments and strings, keeping their newlines.
    text = _COMMENT_OR_STRING_RE.sub(lambda m: "\n" * m.group().count("\n"), text)
    for m in _CONV_RE.finditer(text):
        lines.setdefault(m.group(1), text.count("\n", 0, m.start()) + 1)
    return lines


def _parse_convention(s: Sexp, filename: str, lines: Dict[str, int]) -> M.ConventionRule:
    file_loc = M.SourceLoc(file=filename)
    lst = _expect_list(s, file_loc, min_len=2)
    tag = _head(lst, file_loc)
    if tag != "calling-conv":
        raise ParseError(
            f"Expected (calling-conv ...), got ({tag} ...)",
            code=ErrorCodes.UNKNOWN_FORM,
            span=_span(file_loc),
        )
    name = _sym_name(lst[1], file_loc)
    loc = M.SourceLoc(file=filename, line=lines.get(name, 0))

    flags = set()
    rest = lst[2:]
    while rest and isinstance(rest[0], Symbol) and _symbol_text(rest[0]).startswith(":"):
        flag = _symbol_text(rest[0])
        if flag not in _FLAGS:
            raise _bad(f"Unknown convention flag {flag!r} on {name}", loc)
        flags.add(flag)
        rest = rest[1:]

    custom = ":custom" in flags
    if custom and rest:
        raise _bad(f"Externally implemented convention {name} cannot have actions", loc)

    actions = tuple(parse_action(a, loc) for a in rest)
    logger.debug("parsed %s (%d action(s))", name, len(actions))
    return M.ConventionRule(
        name=name,
        actions=actions,
        is_entry_point=":entry" in flags,
        is_externally_implemented=custom,
        loc=loc,
    )


def parse_rules(text: str, *, filename: str = "<string>") -> M.RuleSet:
    """Parse every ``calling-conv`` form of a rule-file string.

    Parameters
    ----------
    text:
        The rule-file source (S-expression syntax, ``;`` comments).
    filename:
        The filename to use for error messages and ``SourceLoc`` tracking.

    Raises
    ------
    ParseError
        If the input is malformed or contains unrecognized forms.
    DuplicateConventionError
        If two forms declare the same convention.

    Example
    -------
    >>> rules = parse_rules('''
    ... (calling-conv CC_X :entry
    ...   (if-type (i32) (assign-to-reg (R0 R1)))
    ...   (assign-to-stack 4 4))
    ... ''')
    >>> rules.names()
    ('CC_X',)
    """
    # sexpdata configuration: disable nil/true/false auto-mapping so
    # that Symbols like "nil", "t" are preserved as-is.  The source is
    # wrapped in one list so that several top-level forms can be read;
    # the newlines keep a trailing comment from swallowing the bracket.
    try:
        raw = sexpdata.loads(f"(\n{text}\n)", nil=None, true=None, false=None)
    except Exception as e:
        raise ParseError(
            f"S-expression syntax error: {e}",
            span=SourceSpan(file=filename),
        ) from e

    lines = _convention_lines(text)
    conventions: List[M.ConventionRule] = [
        _parse_convention(form, filename, lines) for form in raw
    ]
    return M.RuleSet(tuple(conventions))


def parse_file(path: str, encoding: Optional[str] = "utf-8") -> M.RuleSet:
    """Read and parse a rule file into a :class:`~ccgen.model.RuleSet`."""
    p = pathlib.Path(path)
    text = p.read_text(encoding=encoding)
    return parse_rules(text, filename=str(p))
