"""LScript Extension: core script commands.

Registers the game-independent commands and expressions every host wants:
pausing, aliases, timers, lists, the journal, the ignore list, goto/return and
a ``sysmsg`` that writes to the interpreter's output sink.

Usage::

    lscript script.json --ext flow
"""

from __future__ import annotations

from typing import List

from extensions import ExtensionAPI
from interpreter import Argument, ScriptRuntimeError
from syntax import ASTNode, ASTNodeType


LSCRIPT_EXTENSION_NAME = "flow"
LSCRIPT_EXTENSION_API_VERSION = 1

DEFAULT_JOURNAL_WAIT_MS = 10000


def _require(args: List[Argument], count: int, usage: str) -> None:
    if len(args) < count:
        raise ScriptRuntimeError(None, f"Usage: {usage}")


def _give_up() -> bool:
    return True


def lscript_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=LSCRIPT_EXTENSION_NAME, version="1.0.0")

    # ---- output & suspension ----

    @ext.command("sysmsg")
    def _sysmsg(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "sysmsg 'message text'")
        ext.interpreter.write(" ".join(arg.as_string() for arg in args))
        return True

    @ext.command("pause")
    def _pause(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "pause 'duration'")
        ext.interpreter.pause(args[0].as_int())
        return True

    # ---- aliases ----

    @ext.command("setalias")
    def _setalias(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 2, "setalias 'name' 'serial'")
        ext.interpreter.set_alias(args[0].as_string(), args[1].as_serial())
        return True

    @ext.command("unsetalias")
    def _unsetalias(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "unsetalias 'name'")
        ext.interpreter.remove_alias(args[0].as_string())
        return True

    @ext.expression("findalias")
    def _findalias(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "findalias 'name'")
        return ext.interpreter.get_alias(args[0].as_string()) is not None

    # ---- timers ----

    @ext.command("settimer")
    def _settimer(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 2, "settimer 'timer name' 'duration'")
        ext.interpreter.set_timer(args[0].as_string(), args[1].as_int())
        return True

    @ext.command("removetimer")
    def _removetimer(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "removetimer 'timer name'")
        ext.interpreter.remove_timer(args[0].as_string())
        return True

    @ext.expression("timerexpired")
    def _timerexpired(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "timerexpired 'timer name'")
        return ext.interpreter.timer_expired(args[0].as_string())

    @ext.expression("timerexists")
    def _timerexists(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "timerexists 'timer name'")
        return ext.interpreter.timer_exists(args[0].as_string())

    # ---- lists ----

    @ext.command("createlist")
    def _createlist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "createlist 'name'")
        ext.interpreter.create_list(args[0].as_string())
        return True

    @ext.command("removelist")
    def _removelist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "removelist 'name'")
        ext.interpreter.destroy_list(args[0].as_string())
        return True

    @ext.command("clearlist")
    def _clearlist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "clearlist 'name'")
        ext.interpreter.clear_list(args[0].as_string())
        return True

    @ext.command("pushlist")
    def _pushlist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 2, "pushlist 'name' 'value' [front]")
        front = len(args) > 2 and args[2].as_string().lower() == "front"
        value = args[1]
        if value.is_serial():
            # Store the resolved serial so later alias changes don't affect the entry.
            node = ASTNode(ASTNodeType.SERIAL, str(value.as_serial()), line=value.node.line)
            value = Argument(value.script, node)
        # Force pushes only values not already in the list.
        ext.interpreter.push_list(args[0].as_string(), value, front=front, unique=force)
        return True

    @ext.command("poplist")
    def _poplist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 2, "poplist 'name' 'value'|'front'|'back'")
        name = args[0].as_string()
        which = args[1].get_lexeme().lower()
        if which in ("front", "back"):
            ext.interpreter.pop_list(name, front=which == "front")
        else:
            ext.interpreter.pop_list_value(name, args[1])
        return True

    @ext.expression("inlist")
    def _inlist(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 2, "inlist 'name' 'value'")
        return ext.interpreter.list_contains(args[0].as_string(), args[1])

    @ext.expression("listexists")
    def _listexists(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "listexists 'name'")
        return ext.interpreter.list_exists(args[0].as_string())

    @ext.expression("listcount")
    def _listcount(expression: str, args: List[Argument], quiet: bool) -> int:
        _require(args, 1, "listcount 'name'")
        return ext.interpreter.list_length(args[0].as_string())

    # ---- journal ----

    @ext.command("clearjournal")
    def _clearjournal(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        ext.interpreter.clear_journal()
        return True

    @ext.command("waitforjournal")
    def _waitforjournal(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "waitforjournal 'search text' 'duration'")
        interp = ext.interpreter
        if interp.search_journal(args[0].as_string()):
            return True
        # Only the first call arms the timeout; later retries leave it running.
        wait_ms = args[1].as_int() if len(args) >= 2 else DEFAULT_JOURNAL_WAIT_MS
        interp.timeout(wait_ms, _give_up)
        return False

    @ext.expression("injournal")
    def _injournal(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "injournal 'search text'")
        return ext.interpreter.search_journal(args[0].as_string())

    # ---- ignore list ----

    @ext.command("ignoreobject")
    def _ignoreobject(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "ignoreobject 'serial'")
        ext.interpreter.ignore_serial(args[0].as_serial())
        return True

    @ext.command("clearignorelist")
    def _clearignorelist(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        ext.interpreter.clear_ignore_list()
        return True

    @ext.expression("ignored")
    def _ignored(expression: str, args: List[Argument], quiet: bool) -> bool:
        _require(args, 1, "ignored 'serial'")
        return ext.interpreter.in_ignore_list(args[0].as_serial())

    # ---- goto ----

    @ext.command("goto")
    def _goto(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        _require(args, 1, "goto 'linenum'")
        # A successful jump must not advance past the target.
        return not ext.interpreter.goto_line(args[0].as_int())

    @ext.command("return")
    def _return(command: str, args: List[Argument], quiet: bool, force: bool) -> bool:
        ext.interpreter.return_from_goto()
        return True

    # ---- constants ----

    @ext.expression("true")
    def _true(expression: str, args: List[Argument], quiet: bool) -> bool:
        return True

    @ext.expression("false")
    def _false(expression: str, args: List[Argument], quiet: bool) -> bool:
        return False
