"""LScript host entry point: loads a script document and drives it tick by tick."""

from __future__ import annotations
import argparse
import sys
import time
from typing import Callable, List, Optional

from document import ScriptDocument, load_document, parse_document
from extensions import LScriptExtensionError, load_runtime_services
from interpreter import Interpreter, Script, ScriptRuntimeError, TracebackFormatter
from syntax import ScriptLoadError


DEFAULT_TICK_MS = 50.0


def run_script(
    interpreter: Interpreter,
    script: Script,
    *,
    tick_ms: float = DEFAULT_TICK_MS,
    max_ticks: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Call ``execute_script`` once per tick until the script ends; returns the tick count."""
    ticks = 0
    while True:
        ticks += 1
        if not interpreter.execute_script(script):
            break
        if max_ticks is not None and ticks >= max_ticks:
            interpreter.stop_script()
            break
        if tick_ms > 0:
            sleep(tick_ms / 1000.0)
    return ticks


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="LScript tick-driven script host")
    parser.add_argument("document", help="Script document path, or literal JSON with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat document argument as literal JSON text")
    parser.add_argument("-e", "--ext", dest="extensions", action="append", default=[], help="Extension module, bundled extension name (e.g. flow) or .lsx pointer file (repeatable)")
    parser.add_argument("--tick-ms", type=float, default=DEFAULT_TICK_MS, help="Delay between ticks in milliseconds")
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop the script after this many ticks")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit scope snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    try:
        document: ScriptDocument = parse_document(args.document) if args.source_mode else load_document(args.document)
    except ScriptLoadError as error:
        print(f"LoadError: {error}", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.extensions)
    except LScriptExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(services=services, verbose=args.verbose)
    script = Script(document.to_ast(), interpreter, name=document.name)
    try:
        run_script(interpreter, script, tick_ms=args.tick_ms, max_ticks=args.max_ticks)
    except ScriptRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose, script=script), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error, script=script), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
