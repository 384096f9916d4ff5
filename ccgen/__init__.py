"""ccgen — calling-convention generator.

Compiles declarative calling-convention rules into Python
argument-classification procedures plus the register usage tables
that describe them.

Submodules
----------
model
    Immutable rule model: ``ConventionRule``, the closed set of action
    variants, ``ValueType`` and ``Register``.

parser
    S-expression rule files (``sexpdata``) → ``RuleSet``.

codegen
    Classifier synthesizer: one Python procedure per convention, with
    register usage and delegation edges recorded on the way.

resolver
    Closes register usage over the delegation graph; rejects cycles.

assembler
    Two-phase output fragment guarded by ``GET_CC_REGISTER_LISTS``.

runtime
    Reference allocation state and loader for generated fragments.

errors
    Exception hierarchy with structured ``CCG-NNNN`` codes.

main
    CLI entry-point with subcommands ``compile``, ``check``, ``usage``.

Usage
-----
Command-line::

    python -m ccgen compile X86CallingConv.cc -o X86GenCallingConv.py

Programmatic::

    from ccgen.parser import parse_file
    from ccgen.assembler import generate

    output = generate(parse_file("X86CallingConv.cc"))
    print(output.code)

"""

from __future__ import annotations

__version__: str = "0.1.0"
__all__: list[str] = [
    "__version__",
    "assembler",
    "codegen",
    "errors",
    "model",
    "parser",
    "resolver",
    "runtime",
]
