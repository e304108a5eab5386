"""BFQ entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import BFQExtensionError, RuntimeServices, build_default_services, load_runtime_services
from interpreter import DEFAULT_MAX_DEPTH, BFQRuntimeError, Interpreter, TracebackFormatter, _write_stdout
from lexer import BFQParseError


def _opens_block(line: str) -> bool:
    return line.count("[") > line.count("]")


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None, seed: Optional[int] = None, max_depth: int = DEFAULT_MAX_DEPTH) -> int:
    print("\x1b[38;2;153;221;255mBFQ\033[0m REPL. Enter code, blank line to run an open loop.")
    had_output = False

    def _output_sink(data: bytes) -> None:
        nonlocal had_output
        had_output = True
        _write_stdout(data)

    # One interpreter keeps the tape, functions and output across entries.
    interpreter = Interpreter(
        source="",
        filename="<repl>",
        verbose=verbose,
        services=services,
        output_sink=_output_sink,
        seed=seed,
        max_depth=max_depth,
    )
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        if not buffer and line.strip() != "" and not _opens_block(line):
            source_text = line
        elif line.strip() == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
        else:
            if line.strip() != "":
                buffer.append(line)
            continue

        try:
            interpreter.run_source(source_text, name="<repl>")
        except BFQParseError as error:
            print(f"ParseError: {error}", file=sys.stderr)
        except BFQRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="BFQ reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit tape snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module or .bfqx list (repeatable)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the random commands")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum nesting of function calls and quine re-runs")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext) if args.ext else build_default_services()
    except BFQExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, seed=args.seed, max_depth=args.max_depth)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        services=services,
        seed=args.seed,
        max_depth=args.max_depth,
    )
    try:
        interpreter.run()
    except BFQParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except BFQRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
