# ccgen/errors.py
"""
Error types for the calling-convention generator.

Every failure in ccgen is a static validation failure over the rule
tree: nothing here is recoverable, and any raised error aborts the
whole run before output is written.

Error Hierarchy:
────────────────
┌─────────────────────────────────────────────────────────────────────────────┐
│  CcgenError (base)                                                          │
│  ├── ParseError                 - Malformed rule file                       │
│  ├── ValidationError            - Rule tree violates a structural rule      │
│  │   ├── ShadowListLengthError                                              │
│  │   ├── UnsupportedPromotionError                                          │
│  │   ├── EmptyTypeListError                                                 │
│  │   ├── DuplicateConventionError                                           │
│  │   ├── UndefinedConventionError                                           │
│  │   ├── NameCollisionError                                                 │
│  │   └── InvalidRegisterNameError                                           │
│  ├── CircularDelegationError    - Delegation graph is not acyclic           │
│  └── UnknownActionError         - Action kind outside the closed set        │
└─────────────────────────────────────────────────────────────────────────────┘

Error Codes:
────────────
Codes follow the pattern CCG-NNNN:
  - 1000-1999: Rule-file syntax errors
  - 2000-2999: Rule validation errors
  - 3000-3999: Delegation graph errors
  - 4000-4999: Code generation errors
  - 9000-9999: Internal errors
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Dict, Optional, Sequence


@unique
class ErrorPhase(Enum):
    """Pipeline phase where the error occurred."""

    SYNTAX = "syntax"
    VALIDATION = "validation"
    RESOLUTION = "resolution"
    CODEGEN = "codegen"


class ErrorCode:
    """
    Structured error code of the form ``CCG-NNNN``.
    """

    __slots__ = ("prefix", "number", "phase")

    def __init__(self, prefix: str, number: int, phase: ErrorPhase) -> None:
        self.prefix = prefix
        self.number = number
        self.phase = phase

    @property
    def code(self) -> str:
        """Get the full error code string."""
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"ErrorCode({self.code!r}, {self.phase.name})"

    def __hash__(self) -> int:
        return hash((self.prefix, self.number))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ErrorCode):
            return self.prefix == other.prefix and self.number == other.number
        if isinstance(other, str):
            return self.code == other
        return False


class ErrorCodes:
    """Predefined ccgen error codes."""

    # ═══════════════════════════════════════════════════════════════════════
    # SYNTAX ERRORS (1000-1999)
    # ═══════════════════════════════════════════════════════════════════════

    MALFORMED_SEXP = ErrorCode("CCG", 1000, ErrorPhase.SYNTAX)
    UNKNOWN_FORM = ErrorCode("CCG", 1001, ErrorPhase.SYNTAX)
    BAD_OPERAND = ErrorCode("CCG", 1002, ErrorPhase.SYNTAX)

    # ═══════════════════════════════════════════════════════════════════════
    # VALIDATION ERRORS (2000-2999)
    # ═══════════════════════════════════════════════════════════════════════

    SHADOW_LIST_LENGTH = ErrorCode("CCG", 2000, ErrorPhase.VALIDATION)
    UNSUPPORTED_PROMOTION = ErrorCode("CCG", 2001, ErrorPhase.VALIDATION)
    EMPTY_TYPE_LIST = ErrorCode("CCG", 2002, ErrorPhase.VALIDATION)
    DUPLICATE_CONVENTION = ErrorCode("CCG", 2003, ErrorPhase.VALIDATION)
    UNDEFINED_CONVENTION = ErrorCode("CCG", 2004, ErrorPhase.VALIDATION)
    NAME_COLLISION = ErrorCode("CCG", 2005, ErrorPhase.VALIDATION)
    INVALID_REGISTER = ErrorCode("CCG", 2006, ErrorPhase.VALIDATION)
    INVALID_RULE = ErrorCode("CCG", 2999, ErrorPhase.VALIDATION)

    # ═══════════════════════════════════════════════════════════════════════
    # DELEGATION GRAPH ERRORS (3000-3999)
    # ═══════════════════════════════════════════════════════════════════════

    CIRCULAR_DELEGATION = ErrorCode("CCG", 3000, ErrorPhase.RESOLUTION)

    # ═══════════════════════════════════════════════════════════════════════
    # CODE GENERATION ERRORS (4000-4999)
    # ═══════════════════════════════════════════════════════════════════════

    UNKNOWN_ACTION = ErrorCode("CCG", 4000, ErrorPhase.CODEGEN)

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNAL ERRORS (9000-9999)
    # ═══════════════════════════════════════════════════════════════════════

    INTERNAL_ERROR = ErrorCode("CCG", 9000, ErrorPhase.CODEGEN)


# ═══════════════════════════════════════════════════════════════════════════════
# SOURCE LOCATION TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SourceSpan:
    """A position in a rule file, used as the prefix of a diagnostic."""

    file: str = ""
    line: int = 0
    column: int = 0

    @classmethod
    def from_node(cls, node: Any) -> "SourceSpan":
        """Create a SourceSpan from a rule-model node carrying ``loc``."""
        loc = getattr(node, "loc", None)
        if loc is None:
            return cls()
        return cls(
            file=getattr(loc, "file", ""),
            line=getattr(loc, "line", 0),
            column=getattr(loc, "col", 0),
        )

    def __str__(self) -> str:
        if not self.file and self.line == 0:
            return "<unknown location>"

        parts = []
        if self.file:
            parts.append(self.file)
        if self.line > 0:
            parts.append(str(self.line))
            if self.column > 0:
                parts.append(str(self.column))

        return ":".join(parts)


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTION CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

class CcgenError(Exception):
    """
    Base exception for all ccgen errors.

    Carries a structured code and location and renders as a GCC-style
    one-line diagnostic.
    """

    default_code: ErrorCode = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        span: Optional[SourceSpan] = None,
        hint: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.span = span or SourceSpan()
        self.hint = hint

    def to_gcc_format(self) -> str:
        """Format as a GCC-style error message."""
        main = f"{self.span}: error: {self.message} [{self.code}]"
        if self.hint:
            return f"{main}\nhint: {self.hint}"
        return main

    def to_json(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code.code,
            "message": self.message,
            "phase": self.code.phase.value,
            "location": {
                "file": self.span.file,
                "line": self.span.line,
                "column": self.span.column,
            },
            "hint": self.hint,
        }

    def __str__(self) -> str:
        return self.to_gcc_format()


# ───────────────────────────────────────────────────────────────────────────────
# SYNTAX ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class ParseError(CcgenError):
    """A rule file could not be mapped onto the rule model."""

    default_code = ErrorCodes.MALFORMED_SEXP


# ───────────────────────────────────────────────────────────────────────────────
# VALIDATION ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class ValidationError(CcgenError):
    """The rule tree violates a structural constraint."""

    default_code = ErrorCodes.INVALID_RULE


class ShadowListLengthError(ValidationError):
    """A non-empty shadow list does not parallel its register list."""

    def __init__(
        self,
        registers: int,
        shadows: int,
        span: Optional[SourceSpan] = None,
    ) -> None:
        super().__init__(
            message=(
                "Invalid length of list of shadowed registers: "
                f"{shadows} shadow(s) for {registers} register(s)"
            ),
            code=ErrorCodes.SHADOW_LIST_LENGTH,
            span=span,
            hint="give one shadow register per register, or none at all",
        )
        self.registers = registers
        self.shadows = shadows


class UnsupportedPromotionError(ValidationError):
    """Promotion into the upper bits of a floating-point type."""

    def __init__(self, dest_type: str, span: Optional[SourceSpan] = None) -> None:
        super().__init__(
            message=(
                "promote-to-upper-bits-in-type does not handle floating "
                f"point (destination type {dest_type})"
            ),
            code=ErrorCodes.UNSUPPORTED_PROMOTION,
            span=span,
        )
        self.dest_type = dest_type


class EmptyTypeListError(ValidationError):
    """A type predicate that tests against no value types."""

    def __init__(self, span: Optional[SourceSpan] = None) -> None:
        super().__init__(
            message="Type predicate lists no value types",
            code=ErrorCodes.EMPTY_TYPE_LIST,
            span=span,
        )


class DuplicateConventionError(ValidationError):
    """Two conventions share one name."""

    def __init__(self, name: str, span: Optional[SourceSpan] = None) -> None:
        super().__init__(
            message=f"Calling convention '{name}' is defined more than once",
            code=ErrorCodes.DUPLICATE_CONVENTION,
            span=span,
        )
        self.name = name


class UndefinedConventionError(ValidationError):
    """A delegation names a convention that nothing declares."""

    def __init__(
        self,
        name: str,
        referrer: str = "",
        span: Optional[SourceSpan] = None,
    ) -> None:
        msg = f"Delegation to undefined calling convention '{name}'"
        if referrer:
            msg += f" from '{referrer}'"
        super().__init__(
            message=msg,
            code=ErrorCodes.UNDEFINED_CONVENTION,
            span=span,
        )
        self.name = name
        self.referrer = referrer


class NameCollisionError(ValidationError):
    """Two conventions would be emitted under the same Python name."""

    def __init__(
        self,
        identifier: str,
        first: str,
        second: str,
        span: Optional[SourceSpan] = None,
    ) -> None:
        super().__init__(
            message=(
                f"Calling conventions '{first}' and '{second}' both map to "
                f"the Python name '{identifier}'"
            ),
            code=ErrorCodes.NAME_COLLISION,
            span=span,
            hint="rename one of the conventions",
        )
        self.identifier = identifier
        self.conventions = (first, second)


class InvalidRegisterNameError(ValidationError):
    """A register name that cannot be bound in the generated module."""

    def __init__(
        self,
        register: str,
        reason: str,
        span: Optional[SourceSpan] = None,
    ) -> None:
        super().__init__(
            message=f"Register name '{register}' {reason}",
            code=ErrorCodes.INVALID_REGISTER,
            span=span,
        )
        self.register = register
        self.reason = reason


# ───────────────────────────────────────────────────────────────────────────────
# DELEGATION GRAPH ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class CircularDelegationError(CcgenError):
    """Conventions delegate to each other in a cycle."""

    def __init__(self, cycle: Sequence[str], span: Optional[SourceSpan] = None) -> None:
        cycle_str = " -> ".join(cycle)
        super().__init__(
            message=f"Circular delegation detected: {cycle_str}",
            code=ErrorCodes.CIRCULAR_DELEGATION,
            span=span,
        )
        self.cycle = list(cycle)


# ───────────────────────────────────────────────────────────────────────────────
# CODE GENERATION ERRORS
# ───────────────────────────────────────────────────────────────────────────────

class UnknownActionError(CcgenError):
    """An action node outside the closed action vocabulary."""

    def __init__(self, action: Any, span: Optional[SourceSpan] = None) -> None:
        super().__init__(
            message=f"Unknown calling-convention action: {type(action).__name__}",
            code=ErrorCodes.UNKNOWN_ACTION,
            span=span or SourceSpan.from_node(action),
        )
        self.action = action
