#!/usr/bin/env python3
"""ccgen/main.py — CLI entry-point for the calling-convention generator.

Usage examples
--------------
    # Generate the classification module for a rule file
    python -m ccgen compile X86CallingConv.cc -o X86GenCallingConv.py

    # Parse and validate only
    python -m ccgen check X86CallingConv.cc

    # Show the closed register usage of every convention
    python -m ccgen usage X86CallingConv.cc --format json

    # Show version and exit
    python -m ccgen --version

Exit codes
----------
    0   Success.
    1   The rule file is malformed or fails validation.
    2   Infrastructure failure (missing file, unwritable output, etc.).

The module doubles as ``python -m ccgen`` via the companion
``ccgen/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Optional, Sequence, TextIO

from ccgen import __version__
from ccgen.assembler import GeneratedOutput, GeneratorConfig, generate
from ccgen.errors import CcgenError
from ccgen.model import RuleSet
from ccgen.parser import parse_file

_log = logging.getLogger("ccgen")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the root ``ccgen`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("ccgen")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        root.addHandler(handler)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _load_and_generate(args: argparse.Namespace) -> tuple[RuleSet, GeneratedOutput]:
    path = _resolve_path(args.rules_file, "rule file")
    rules = parse_file(str(path))
    _log.info("Loaded %d convention(s) from %s", len(rules), path)
    config = GeneratorConfig(guard=args.guard)
    return rules, generate(rules, config)


def _report(exc: CcgenError) -> int:
    print(exc.to_gcc_format(), file=sys.stderr)
    return EXIT_ERROR


# ===========================================================================
# Subcommands
# ===========================================================================

def cmd_compile(args: argparse.Namespace) -> int:
    """Generate the classification module for a rule file.

    Nothing is written unless every convention synthesizes and the
    delegation graph resolves.
    """
    try:
        _, output = _load_and_generate(args)
    except CcgenError as exc:
        return _report(exc)

    try:
        stream = _open_output(args.output)
        try:
            stream.write(output.code)
        finally:
            if stream is not sys.stdout:
                stream.close()
    except OSError as exc:
        _log.error("Cannot write output: %s", exc)
        return EXIT_INFRA

    if args.output not in (None, "-"):
        _log.info("Wrote %d procedure(s) to %s", len(output.procedures), args.output)
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Parse and validate a rule file without producing output."""
    try:
        rules, output = _load_and_generate(args)
    except CcgenError as exc:
        return _report(exc)
    print(
        f"{args.rules_file}: OK ({len(rules)} convention(s), "
        f"{len(output.procedures)} procedure(s))"
    )
    return EXIT_OK


def cmd_usage(args: argparse.Namespace) -> int:
    """Print the closed register usage of every convention."""
    try:
        _, output = _load_and_generate(args)
    except CcgenError as exc:
        return _report(exc)

    usage = output.usage
    if args.format == "json":
        print(json.dumps(usage.to_json(), indent=2))
        return EXIT_OK

    for name, regs in usage.primary.items():
        print(f"{name}: {' '.join(regs) or '-'}")
        aux = usage.aux_registers(name)
        if aux:
            print(f"{name} (aux): {' '.join(aux)}")
    return EXIT_OK


# ===========================================================================
# Argument parser construction
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    # --- Top-level parser --------------------------------------------------
    parser = argparse.ArgumentParser(
        prog="ccgen",
        description=(
            "ccgen — calling-convention generator.\n\n"
            "Compiles declarative calling-convention rules into Python\n"
            "argument-classification procedures and register usage tables."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              ccgen compile X86CallingConv.cc -o X86GenCallingConv.py
              ccgen check   X86CallingConv.cc
              ccgen usage   X86CallingConv.cc --format json
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    def _add_common_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "rules_file",
            metavar="RULES",
            help="Path to the calling-convention rule file.",
        )
        p.add_argument(
            "--guard",
            default=GeneratorConfig.guard,
            metavar="NAME",
            help="Global flag selecting the register-table branch "
                 "(default: %(default)s).",
        )

    # --- compile -----------------------------------------------------------
    p_compile = subparsers.add_parser(
        "compile",
        help="Generate the classification module.",
    )
    _add_common_args(p_compile)
    p_compile.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    p_compile.set_defaults(func=cmd_compile)

    # --- check -------------------------------------------------------------
    p_check = subparsers.add_parser(
        "check",
        help="Parse and validate a rule file.",
    )
    _add_common_args(p_check)
    p_check.set_defaults(func=cmd_check)

    # --- usage -------------------------------------------------------------
    p_usage = subparsers.add_parser(
        "usage",
        help="Print closed register usage per convention.",
    )
    _add_common_args(p_usage)
    p_usage.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: %(default)s).",
    )
    p_usage.set_defaults(func=cmd_usage)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the ccgen CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    # No subcommand given → print help.
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
