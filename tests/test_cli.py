# tests/test_cli.py
"""
Tests for the ``ccgen`` command line: subcommands, output and exit codes.
"""

import json
import logging

import pytest

from ccgen import __version__
from ccgen.main import EXIT_ERROR, EXIT_INFRA, EXIT_OK, main
from tests.conftest import (
    DELEGATE_RULES,
    EXAMPLE1_RULES,
    SHADOW_MISMATCH_RULES,
    X86_RULES,
    compile_check,
)


@pytest.fixture(autouse=True)
def _reset_ccgen_logger():
    yield
    logger = logging.getLogger("ccgen")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


class TestCompile:

    def test_compile_to_file(self, rule_file, tmp_path):
        out = tmp_path / "gen" / "CCGen.py"
        assert main(["compile", rule_file(EXAMPLE1_RULES), "-o", str(out)]) == EXIT_OK
        code = out.read_text(encoding="utf-8")
        assert "def CC_X(" in code
        compile_check(code)

    def test_compile_to_stdout(self, rule_file, capsys):
        assert main(["compile", rule_file(EXAMPLE1_RULES)]) == EXIT_OK
        assert "CC_X_ArgRegs" in capsys.readouterr().out

    def test_custom_guard(self, rule_file, capsys):
        assert main(["compile", rule_file(EXAMPLE1_RULES), "--guard", "TABLES"]) == EXIT_OK
        assert 'globals().get("TABLES")' in capsys.readouterr().out

    def test_validation_error_writes_nothing(self, rule_file, tmp_path, capsys):
        out = tmp_path / "CCGen.py"
        rc = main(["compile", rule_file(SHADOW_MISMATCH_RULES), "-o", str(out)])
        assert rc == EXIT_ERROR
        assert not out.exists()
        assert "[CCG-2000]" in capsys.readouterr().err

    def test_parse_error(self, rule_file, capsys):
        assert main(["compile", rule_file("(calling-conv A (fly-away))")]) == EXIT_ERROR
        assert "[CCG-1001]" in capsys.readouterr().err

    def test_missing_file(self, tmp_path):
        assert main(["compile", str(tmp_path / "nope.cc")]) == EXIT_INFRA


class TestCheck:

    def test_ok(self, rule_file, capsys):
        path = rule_file(X86_RULES)
        assert main(["check", path]) == EXIT_OK
        out = capsys.readouterr().out
        assert "OK (4 convention(s), 3 procedure(s))" in out

    def test_cycle(self, rule_file, capsys):
        src = "(calling-conv A (delegate-to B)) (calling-conv B (delegate-to A))"
        assert main(["check", rule_file(src)]) == EXIT_ERROR
        assert "A -> B -> A" in capsys.readouterr().err


class TestUsage:

    def test_text(self, rule_file, capsys):
        assert main(["usage", rule_file(DELEGATE_RULES)]) == EXIT_OK
        lines = capsys.readouterr().out.splitlines()
        assert lines == ["CC_A: R2 R3", "CC_B: R2 R3"]

    def test_text_with_aux_and_empty(self, rule_file, capsys):
        assert main(["usage", rule_file(X86_RULES)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "CC_X86_32_Common: -\n" in out
        assert "CC_X86_32_C (aux): X86.ESI\n" in out

    def test_json(self, rule_file, capsys):
        assert main(["usage", rule_file(DELEGATE_RULES), "--format", "json"]) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data == {
            "primary": {"CC_A": ["R2", "R3"], "CC_B": ["R2", "R3"]},
            "auxiliary": {},
        }


class TestTopLevel:

    def test_no_command(self):
        assert main([]) == EXIT_INFRA

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_verbose_accepted(self, rule_file):
        assert main(["-vv", "check", rule_file(EXAMPLE1_RULES)]) == EXIT_OK
