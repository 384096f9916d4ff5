# tests/test_codegen.py
"""
Tests for the classifier synthesizer: rule tree → Python procedure.
Verifies the emitted text, the recorded usage and the validation errors.
"""

import pytest

from ccgen import codegen
from ccgen import model as M
from ccgen.codegen import (
    CodeEmitter,
    CompilationContext,
    ClassifierSynthesizer,
    procedure_name,
    synthesize,
)
from ccgen.errors import (
    EmptyTypeListError,
    InvalidRegisterNameError,
    NameCollisionError,
    ShadowListLengthError,
    UndefinedConventionError,
    UnknownActionError,
    UnsupportedPromotionError,
)
from tests.conftest import compile_check


R = M.Register.parse
VT = M.ValueType


def _cc(*actions, name="CC_T", entry=True):
    return M.ConventionRule(name=name, actions=tuple(actions), is_entry_point=entry)


def _regs(*names):
    return tuple(R(n) for n in names)


def _if_type(types, sub, auxiliary=False):
    return M.Predicate(
        M.TypeCondition(tuple(VT(t) for t in types)), sub, auxiliary=auxiliary
    )


def _synth(cc, names=None):
    """Synthesize *cc* with a fresh context; return (code, context)."""
    names = names or {cc.name: procedure_name(cc)}
    ctx = CompilationContext(procedure_names=names)
    e = CodeEmitter()
    ClassifierSynthesizer(ctx).synthesize(cc, e)
    return e.get_code(), ctx


class TestProcedureShape:

    def test_example1_exact_output(self):
        cc = _cc(
            _if_type(["i32"], M.RegisterAssign(_regs("R0", "R1"))),
            M.StackAssign(4, 4),
            name="CC_X",
        )
        assert synthesize(cc) == (
            "def CC_X(val_no, val_vt, loc_vt, loc_info, arg_flags, state):\n"
            "\n"
            "    if loc_vt == MVT.i32:\n"
            "        reg_list1 = (R0, R1)\n"
            "        reg = state.allocate_reg_from(reg_list1)\n"
            "        if reg is not None:\n"
            "            state.add_reg_loc(val_no, val_vt, reg, loc_vt, loc_info)\n"
            "            return True\n"
            "\n"
            "    offset2 = state.allocate_stack(4, 4)\n"
            "    state.add_mem_loc(val_no, val_vt, offset2, loc_vt, loc_info)\n"
            "    return True\n"
            "\n"
            "    return False  # CC didn't match.\n"
        )

    def test_empty_convention_is_unhandled(self):
        code = synthesize(_cc())
        assert code.rstrip().endswith("return False  # CC didn't match.")
        compile_check(code)

    def test_private_convention_gets_underscore(self):
        code = synthesize(_cc(name="CC_Private", entry=False))
        assert code.startswith("def _CC_Private(")

    def test_entry_point_keeps_name(self):
        assert procedure_name(_cc(name="CC_Pub")) == "CC_Pub"

    def test_external_keeps_name(self):
        cc = M.ConventionRule("CC_Ext", is_externally_implemented=True)
        assert procedure_name(cc) == "CC_Ext"

    def test_identifier_sanitized(self):
        assert procedure_name(_cc(name="cc-fast")) == "cc_fast"
        assert CodeEmitter.make_identifier("class") == "class_"
        assert CodeEmitter.make_identifier("9lives") == "_9lives"

    def test_counter_resets_per_convention(self):
        ctx = CompilationContext(procedure_names={"A": "A", "B": "B"})
        synth = ClassifierSynthesizer(ctx)
        e = CodeEmitter()
        synth.synthesize(_cc(M.StackAssign(4, 4), name="A"), e)
        synth.synthesize(_cc(M.StackAssign(8, 8), name="B"), e)
        code = e.get_code()
        assert code.count("offset1 = ") == 2
        assert "offset2" not in code


class TestPredicates:

    def test_single_type(self):
        code, _ = _synth(_cc(_if_type(["f64"], M.StackAssign(8, 8))))
        assert "if loc_vt == MVT.f64:" in code

    def test_type_list(self):
        code, _ = _synth(_cc(_if_type(["i8", "i16"], M.StackAssign(4, 4))))
        assert "if loc_vt in (MVT.i8, MVT.i16):" in code

    def test_empty_type_list_rejected(self):
        with pytest.raises(EmptyTypeListError):
            _synth(_cc(_if_type([], M.StackAssign(4, 4))))

    def test_expression_inserted_verbatim(self):
        pred = M.Predicate(M.ExprCondition("arg_flags.is_in_reg()"), M.StackAssign(4, 4))
        code, _ = _synth(_cc(pred))
        assert "if arg_flags.is_in_reg():" in code

    def test_multiline_expression_collapsed(self):
        pred = M.Predicate(
            M.ExprCondition("(arg_flags.is_sret()\n    and not state.is_var_arg())"),
            M.StackAssign(4, 4),
        )
        code, _ = _synth(_cc(pred))
        assert "if (arg_flags.is_sret() and not state.is_var_arg()):" in code
        compile_check(code)

    def test_nested_predicates_indent(self):
        inner = _if_type(["i32"], M.RegisterAssign(_regs("R0")))
        outer = M.Predicate(M.ExprCondition("arg_flags.is_in_reg()"), inner)
        code, _ = _synth(_cc(outer))
        assert "\n    if arg_flags.is_in_reg():\n        if loc_vt == MVT.i32:\n" in code
        compile_check(code)


class TestRegisterAssignment:

    def test_single_register(self):
        code, ctx = _synth(_cc(M.RegisterAssign(_regs("R0"))))
        assert "reg = state.allocate_reg(R0)" in code
        assert "reg_list" not in code
        assert ctx.direct_usage["CC_T"] == {"R0"}

    def test_register_list(self):
        code, _ = _synth(_cc(M.RegisterAssign(_regs("R0", "R1", "R2"))))
        assert "reg_list1 = (R0, R1, R2)" in code
        assert "reg = state.allocate_reg_from(reg_list1)" in code

    def test_namespaced_registers(self):
        code, ctx = _synth(_cc(M.RegisterAssign(_regs("X86.EAX", "X86.EDX"))))
        assert "reg_list1 = (X86.EAX, X86.EDX)" in code
        assert ctx.direct_usage["CC_T"] == {"X86.EAX", "X86.EDX"}

    def test_stack_fallback_reserved_after_claim(self):
        action = M.RegisterAssign(_regs("R0"), stack_fallback=M.StackSlot(4, 4))
        code, _ = _synth(_cc(action))
        assert (
            "        state.add_reg_loc(val_no, val_vt, reg, loc_vt, loc_info)\n"
            "        state.allocate_stack(4, 4)\n"
            "        return True\n"
        ) in code

    def test_with_shadow_list(self):
        action = M.RegisterAssignWithShadow(_regs("R4", "R5"), _regs("S4", "S5"))
        code, ctx = _synth(_cc(action))
        assert "reg_list1 = (R4, R5)" in code
        assert "shadow_reg_list2 = (S4, S5)" in code
        assert "reg = state.allocate_reg_from(reg_list1, shadow_reg_list2)" in code
        assert ctx.direct_usage["CC_T"] == {"R4", "R5", "S4", "S5"}

    def test_with_shadow_single(self):
        action = M.RegisterAssignWithShadow(_regs("R4"), _regs("S4"))
        code, _ = _synth(_cc(action))
        assert "reg = state.allocate_reg(R4, S4)" in code

    def test_with_empty_shadow_list(self):
        action = M.RegisterAssignWithShadow(_regs("R4", "R5"))
        code, _ = _synth(_cc(action))
        assert "reg = state.allocate_reg_from(reg_list1)" in code
        assert "shadow_reg_list" not in code

    def test_shadow_length_mismatch_rejected(self):
        action = M.RegisterAssignWithShadow(_regs("R4", "R5"), _regs("S4"))
        with pytest.raises(ShadowListLengthError) as exc_info:
            _synth(_cc(action))
        assert exc_info.value.registers == 2
        assert exc_info.value.shadows == 1
        assert exc_info.value.code == "CCG-2000"


class TestNames:

    def test_hyphen_and_underscore_collide(self):
        rules = M.RuleSet((_cc(name="CC-A"), _cc(name="CC_A")))
        with pytest.raises(NameCollisionError) as exc_info:
            CompilationContext.for_rules(rules)
        assert exc_info.value.identifier == "CC_A"
        assert exc_info.value.conventions == ("CC-A", "CC_A")
        assert exc_info.value.code == "CCG-2005"

    def test_private_collides_with_underscored_entry(self):
        rules = M.RuleSet((_cc(name="X", entry=False), _cc(name="_X")))
        with pytest.raises(NameCollisionError) as exc_info:
            CompilationContext.for_rules(rules)
        assert exc_info.value.identifier == "_X"

    def test_table_names_collide(self):
        rules = M.RuleSet((_cc(name="CC_Aux"), _cc(name="CC")))
        with pytest.raises(NameCollisionError) as exc_info:
            CompilationContext.for_rules(rules)
        assert exc_info.value.identifier == "CC_Aux_ArgRegs"

    def test_distinct_names_accepted(self):
        rules = M.RuleSet((_cc(name="CC_A"), _cc(name="CC_B", entry=False)))
        ctx = CompilationContext.for_rules(rules)
        assert ctx.procedure_names == {"CC_A": "CC_A", "CC_B": "_CC_B"}

    @pytest.mark.parametrize("name", [
        "reg", "state", "loc_vt", "val_no", "MVT", "LocInfo",
        "offset1", "reg_list1", "shadow_reg_list2", "state.R0",
    ])
    def test_register_shadowing_generated_name_rejected(self, name):
        with pytest.raises(InvalidRegisterNameError) as exc_info:
            _synth(_cc(M.RegisterAssign(_regs(name))))
        assert exc_info.value.code == "CCG-2006"
        assert "shadows" in exc_info.value.message

    @pytest.mark.parametrize("name", ["R-1", "X86.1A", "class"])
    def test_register_not_identifier_rejected(self, name):
        with pytest.raises(InvalidRegisterNameError) as exc_info:
            _synth(_cc(M.RegisterAssign(_regs(name))))
        assert "not a Python identifier" in exc_info.value.message

    def test_shadow_register_checked(self):
        action = M.StackAssignWithShadow(8, 8, _regs("offset2"))
        with pytest.raises(InvalidRegisterNameError):
            _synth(_cc(action))

    def test_reserved_name_allowed_below_namespace(self):
        code, _ = _synth(_cc(M.RegisterAssign(_regs("X86.reg"))))
        assert "reg = state.allocate_reg(X86.reg)" in code
        compile_check(code)


class TestStackAssignment:

    def test_fixed_size(self):
        code, _ = _synth(_cc(M.StackAssign(8, 4)))
        assert "offset1 = state.allocate_stack(8, 4)" in code
        assert "state.add_mem_loc(val_no, val_vt, offset1, loc_vt, loc_info)" in code

    def test_natural_size_and_align(self):
        code, _ = _synth(_cc(M.StackAssign()))
        assert (
            "offset1 = state.allocate_stack("
            "state.type_alloc_size(loc_vt), state.type_align(loc_vt))"
        ) in code

    def test_with_shadow(self):
        action = M.StackAssignWithShadow(8, 8, _regs("R0", "R1"))
        code, ctx = _synth(_cc(action))
        assert "shadow_reg_list1 = (R0, R1)" in code
        assert "offset2 = state.allocate_stack(8, 8, shadow_reg_list1)" in code
        assert ctx.direct_usage["CC_T"] == {"R0", "R1"}


class TestTypeTransforms:

    def test_promote_integer_follows_extension_flags(self):
        code, _ = _synth(_cc(M.TypeTransform(M.TransformKind.PROMOTE, VT("i32"))))
        assert "loc_vt = MVT.i32" in code
        assert "if arg_flags.is_sext():\n        loc_info = LocInfo.SExt" in code
        assert "elif arg_flags.is_zext():\n        loc_info = LocInfo.ZExt" in code
        assert "else:\n        loc_info = LocInfo.AExt" in code

    def test_promote_float(self):
        code, _ = _synth(_cc(M.TypeTransform(M.TransformKind.PROMOTE, VT("f64"))))
        assert "loc_info = LocInfo.FPExt" in code
        assert "is_sext" not in code

    def test_promote_upper_bits_integer(self):
        kind = M.TransformKind.PROMOTE_UPPER_BITS
        code, _ = _synth(_cc(M.TypeTransform(kind, VT("i64"))))
        assert "LocInfo.SExtUpper" in code
        assert "LocInfo.ZExtUpper" in code
        assert "LocInfo.AExtUpper" in code

    def test_promote_upper_bits_float_rejected(self):
        kind = M.TransformKind.PROMOTE_UPPER_BITS
        with pytest.raises(UnsupportedPromotionError):
            _synth(_cc(M.TypeTransform(kind, VT("f64"))))

    @pytest.mark.parametrize("kind, mode", [
        (M.TransformKind.BIT_CONVERT, "BCvt"),
        (M.TransformKind.TRUNCATE, "Trunc"),
        (M.TransformKind.PASS_INDIRECT, "Indirect"),
    ], ids=["bcvt", "trunc", "indirect"])
    def test_fixed_modes(self, kind, mode):
        code, _ = _synth(_cc(M.TypeTransform(kind, VT("i64"))))
        assert "loc_vt = MVT.i64" in code
        assert f"loc_info = LocInfo.{mode}" in code

    def test_transform_does_not_return(self):
        code, _ = _synth(_cc(M.TypeTransform(M.TransformKind.TRUNCATE, VT("i32"))))
        assert "return True" not in code


class TestExternalCapabilities:

    def test_pass_by_value(self):
        code, _ = _synth(_cc(M.PassByValue(16, 8)))
        assert (
            "state.handle_by_val(val_no, val_vt, loc_vt, loc_info, 16, 8, arg_flags)"
        ) in code

    def test_custom_handler(self):
        code, _ = _synth(_cc(M.CustomHandler("CC_Handle")))
        assert (
            "if CC_Handle(val_no, val_vt, loc_vt, loc_info, arg_flags, state):\n"
            "        return True\n"
        ) in code


class TestDelegation:

    def test_delegation_calls_target_and_records_edge(self):
        a = _cc(M.Delegate("CC_B"), name="CC_A")
        code, ctx = _synth(a, names={"CC_A": "CC_A", "CC_B": "_CC_B"})
        assert (
            "if _CC_B(val_no, val_vt, loc_vt, loc_info, arg_flags, state):\n"
            "        return True\n"
        ) in code
        assert ctx.delegations == {"CC_A": {"CC_B"}}

    def test_delegation_adds_no_direct_usage(self):
        a = _cc(M.Delegate("CC_B"), name="CC_A")
        _, ctx = _synth(a, names={"CC_A": "CC_A", "CC_B": "_CC_B"})
        assert ctx.direct_usage["CC_A"] == set()

    def test_undefined_target_rejected(self):
        with pytest.raises(UndefinedConventionError) as exc_info:
            synthesize(_cc(M.Delegate("CC_Nowhere")))
        assert exc_info.value.name == "CC_Nowhere"
        assert exc_info.value.referrer == "CC_T"


class TestAuxiliaryMode:

    def test_auxiliary_predicate_records_aux_usage(self):
        pred = _if_type(["i64"], M.RegisterAssign(_regs("R7")), auxiliary=True)
        _, ctx = _synth(_cc(pred, M.RegisterAssign(_regs("R0"))))
        assert ctx.aux_usage["CC_T"] == {"R7"}
        assert ctx.direct_usage["CC_T"] == {"R0"}

    def test_mode_taken_from_top_level_action(self):
        nested_aux = _if_type(["i64"], M.RegisterAssign(_regs("R7")), auxiliary=True)
        outer = _if_type(["i64"], nested_aux)
        _, ctx = _synth(_cc(outer))
        assert ctx.direct_usage["CC_T"] == {"R7"}
        assert "CC_T" not in ctx.aux_usage

    def test_mode_resets_between_actions(self):
        aux = _if_type(["i64"], M.RegisterAssign(_regs("R7")), auxiliary=True)
        _, ctx = _synth(_cc(aux, M.StackAssignWithShadow(4, 4, _regs("R1"))))
        assert ctx.direct_usage["CC_T"] == {"R1"}


class TestExhaustiveness:

    def test_every_action_type_has_an_emitter(self):
        assert set(M.ACTION_TYPES) <= set(codegen._ACTION_EMITTERS)

    def test_unknown_action_rejected(self):
        with pytest.raises(UnknownActionError) as exc_info:
            synthesize(_cc("not-an-action"))
        assert exc_info.value.code == "CCG-4000"

    def test_unknown_nested_action_rejected(self):
        with pytest.raises(UnknownActionError):
            synthesize(_cc(_if_type(["i32"], 42)))


class TestSourceMap:

    def test_lines_map_back_to_actions(self):
        loc = M.SourceLoc("x.cc", 7, 3)
        cc = _cc(M.StackAssign(4, 4, loc=loc))
        e = CodeEmitter()
        ctx = CompilationContext(procedure_names={"CC_T": "CC_T"})
        ClassifierSynthesizer(ctx).synthesize(cc, e)
        smap = e.get_source_map()
        assert loc in smap.values()
        line = e.get_code().splitlines().index("    offset1 = state.allocate_stack(4, 4)")
        assert smap[line + 1] == loc
