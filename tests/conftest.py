# tests/conftest.py
"""
Shared rule sources, helpers and fixtures for the ccgen test-suite.
"""

from typing import Dict, Optional, Tuple

import pytest

from ccgen.assembler import GeneratedOutput, generate
from ccgen.model import RuleSet
from ccgen.parser import parse_rules
from ccgen.runtime import CCAssignFn, CCState, LoadedConventions, load_generated


# ═══════════════════════════════════════════════════════════════════════════
# RULE SOURCES
# ═══════════════════════════════════════════════════════════════════════════

# i32 goes to R0/R1, everything else (and overflow) to a 4-byte slot.
EXAMPLE1_RULES = """
(calling-conv CC_X :entry
  (if-type (i32) (assign-to-reg (R0 R1)))
  (assign-to-stack 4 4))
"""

DELEGATE_RULES = """
(calling-conv CC_A :entry
  (delegate-to CC_B))
(calling-conv CC_B
  (assign-to-reg (R2 R3)))
"""

CHAIN_RULES = """
(calling-conv A :entry (delegate-to B))
(calling-conv B (delegate-to C))
(calling-conv C (assign-to-reg R9))
"""

CYCLE_RULES = """
(calling-conv A :entry (delegate-to B))
(calling-conv B (delegate-to A))
"""

SHADOW_MISMATCH_RULES = """
(calling-conv CC_Bad :entry
  (assign-to-reg-with-shadow (R4 R5) (S4)))
"""

FP_UPPER_BITS_RULES = """
(calling-conv CC_Bad :entry
  (promote-to-upper-bits-in-type f64))
"""

UNDEFINED_TARGET_RULES = """
(calling-conv CC_A :entry
  (delegate-to CC_Missing))
"""

SHORT_CIRCUIT_RULES = """
(calling-conv CC_A :entry
  (delegate-to CC_B)
  (assign-to-reg R5))
(calling-conv CC_B
  (assign-to-reg R2))
"""

FALL_THROUGH_RULES = """
(calling-conv CC_Ints :entry
  (if-type (i32) (assign-to-reg R0)))
"""

PROMOTE_RULES = """
(calling-conv CC_P :entry
  (if-type (i1 i8 i16) (promote-to-type i32))
  (if-type (f32) (promote-to-type f64))
  (assign-to-reg (R0 R1 R2)))
"""

# A richer, x86-flavoured rule set that touches every action form.
X86_RULES = """
;; 32-bit C convention
(calling-conv CC_X86_32_C :entry
  (if-type (i1 i8 i16) (promote-to-type i32))
  (if-nest (assign-to-reg X86.ECX))
  (if-inreg (if-type (i32) (assign-to-reg (X86.EAX X86.EDX X86.ECX))))
  (if-type (i64) (custom CC_X86_Handle_I64))
  (delegate-to CC_X86_32_Common))

(calling-conv CC_X86_32_Common
  (if-byval (pass-by-val 4 4))
  (if-swift-self (assign-to-reg X86.ESI))
  (if-type (f32 f64) (assign-to-stack 0 4))
  (assign-to-stack 4 4))

;; Win64: integer and FP registers shadow each other
(calling-conv CC_Win64 :entry
  (if-type (i32) (assign-to-reg-with-shadow (X86.ECX X86.EDX) (X86.XMM0 X86.XMM1)))
  (if-type (f64) (assign-to-reg-with-shadow (X86.XMM0 X86.XMM1) (X86.ECX X86.EDX)))
  (assign-to-stack-with-shadow 8 8 (X86.ECX X86.EDX)))

(calling-conv CC_X86_Handle_I64 :custom)
"""


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def build(src: str) -> Tuple[RuleSet, GeneratedOutput]:
    """Parse + generate."""
    rules = parse_rules(src, filename="<test>")
    return rules, generate(rules)


def load(src: str, handlers: Optional[Dict[str, CCAssignFn]] = None) -> LoadedConventions:
    """Parse + generate + execute under both guard readings."""
    rules, output = build(src)
    return load_generated(output.code, rules, handlers=handlers)


def compile_check(code: str):
    """Assert code is valid Python."""
    compile(code, "<test>", "exec")


# ═══════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def state() -> CCState:
    return CCState()


@pytest.fixture
def example1() -> LoadedConventions:
    return load(EXAMPLE1_RULES)


@pytest.fixture
def rule_file(tmp_path):
    """Write a rule source to a temporary file and return its path."""
    def _write(src: str, name: str = "rules.cc") -> str:
        path = tmp_path / name
        path.write_text(src, encoding="utf-8")
        return str(path)
    return _write
