"""ccgen/assembler.py – Assemble the generated calling-convention module.

The output is one Python fragment that is executed twice by its
consumer, toggling the global ``GET_CC_REGISTER_LISTS`` in between:

* guard unset: forward declarations, then every procedure body;
* guard set: the closed primary usage table of every convention, then
  the auxiliary usage tables that are not empty.

Both branches are always present, so the text is valid Python under
either reading.  The whole fragment is rendered in memory first; a
validation error anywhere leaves the sink untouched.

Usage
-----
::

    from ccgen.assembler import generate
    out = generate(rules)
    out.write_to_file("X86GenCallingConv.py")
"""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, TextIO, Tuple

from ccgen import model as M
from ccgen.codegen import ClassifierSynthesizer, CodeEmitter, CompilationContext
from ccgen.resolver import ResolvedUsage, resolve

__all__ = [
    "GeneratorConfig",
    "GeneratedOutput",
    "generate",
    "emit",
    "table_name",
    "aux_table_name",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratorConfig:
    """Options of one generation run."""

    guard: str = "GET_CC_REGISTER_LISTS"
    indent: str = "    "
    title: str = "Calling Convention Implementation Fragment"


@dataclass
class GeneratedOutput:
    """Generated fragment plus what was learned while producing it."""

    code: str
    usage: ResolvedUsage
    procedures: List[str] = field(default_factory=list)
    source_map: Dict[int, M.SourceLoc] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)

    def write_to_file(self, path: str) -> None:
        """Write the generated code to a file."""
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.code)


def table_name(convention: str) -> str:
    return f"{CodeEmitter.make_identifier(convention)}_ArgRegs"


def aux_table_name(convention: str) -> str:
    return f"{CodeEmitter.make_identifier(convention)}_Aux_ArgRegs"


@contextlib.contextmanager
def _timed(phase: str, timings: Dict[str, float]) -> Iterator[None]:
    start = time.perf_counter()
    yield
    elapsed = time.perf_counter() - start
    timings[phase] = elapsed
    logger.info("[%s] completed in %.3fs", phase, elapsed)


def _emit_header(e: CodeEmitter, config: GeneratorConfig) -> None:
    e.emit_comment(f"===- {config.title} -===")
    e.emit_comment("")
    e.emit_comment("Automatically generated file, do not edit!")
    e.emit_comment("")
    e.emit_comment(f"Execute once with {config.guard} unset to define the")
    e.emit_comment("classification procedures, and once with it set to define")
    e.emit_comment("the argument register tables.")
    e.emit_blank()
    e.emit("from __future__ import annotations")
    e.emit_blank()


def _table_literal(regs: Tuple[str, ...]) -> str:
    if len(regs) == 1:
        return f"({regs[0]},)"
    return f"({', '.join(regs)})"


def _emit_tables(e: CodeEmitter, rules: M.RuleSet, usage: ResolvedUsage) -> int:
    """Emit the primary table of every convention, then the aux tables.

    Externally implemented conventions get a primary table too, ``(0,)``
    unless something else contributes to it.  LLVM's TableGen emitter
    only lists conventions it emitted a body for; here every declared
    convention can be looked up by name.  Returns the number of tables.
    """
    count = 0
    for cc in rules:
        if not cc.name:
            continue
        regs = usage.registers(cc.name) or ("0",)
        e.emit(f"{table_name(cc.name)}: tuple[int, ...] = {_table_literal(regs)}")
        count += 1

    aux = [cc.name for cc in rules if cc.name and usage.aux_registers(cc.name)]
    if aux:
        e.emit_blank()
        e.emit_comment("Registers used in auxiliary mode.")
        for name in aux:
            regs = usage.aux_registers(name)
            e.emit(f"{aux_table_name(name)}: tuple[int, ...] = {_table_literal(regs)}")
            count += 1
    return count


def generate(rules: M.RuleSet, config: Optional[GeneratorConfig] = None) -> GeneratedOutput:
    """Synthesize, resolve and assemble the fragment for *rules*.

    Raises
    ------
    ccgen.errors.CcgenError
        On any validation failure; nothing is produced in that case.
    """
    config = config or GeneratorConfig()
    ctx = CompilationContext.for_rules(rules)
    synthesizer = ClassifierSynthesizer(ctx)
    timings: Dict[str, float] = {}
    e = CodeEmitter(indent_str=config.indent)

    _emit_header(e, config)
    procedures = [cc for cc in rules if not cc.is_externally_implemented]

    with e.block(f'if not globals().get("{config.guard}"):'):
        with _timed("Emit prototypes", timings):
            if procedures:
                e.emit_blank()
            for cc in procedures:
                e.emit(f"{ctx.procedure_names[cc.name]}: CCAssignFn")

        with _timed("Emit full descriptions", timings):
            for cc in procedures:
                e.emit_blank(2)
                synthesizer.synthesize(cc, e)
            if not procedures:
                e.emit("pass")

    e.emit_blank()
    with e.block("else:"):
        with _timed("Resolve delegation", timings):
            usage = resolve(
                ctx.direct_usage,
                ctx.delegations,
                ctx.aux_usage,
                order=rules.names(),
            )
        with _timed("Emit register lists", timings):
            e.emit_blank()
            if not _emit_tables(e, rules, usage):
                e.emit("pass")

    e.emit_blank()
    e.emit_comment(f"end {config.guard}")

    logger.info(
        "generated %d procedure(s) for %d convention(s)", len(procedures), len(rules)
    )
    return GeneratedOutput(
        code=e.get_code(),
        usage=usage,
        procedures=[ctx.procedure_names[cc.name] for cc in procedures],
        source_map=e.get_source_map(),
        timings=timings,
    )


def emit(
    rules: M.RuleSet,
    sink: TextIO,
    config: Optional[GeneratorConfig] = None,
) -> GeneratedOutput:
    """Generate the fragment for *rules* and write it to *sink*."""
    output = generate(rules, config)
    sink.write(output.code)
    return output
