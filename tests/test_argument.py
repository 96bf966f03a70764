from __future__ import annotations

import pytest

from interpreter import Argument, Script, ScriptRuntimeError, to_int, to_uint, to_ushort
from syntax import ASTNode, ASTNodeType, ScriptBuilder


@pytest.fixture()
def script(interpreter) -> Script:
    return Script(ScriptBuilder().root, interpreter)


def _arg(script: Script, lexeme, node_type: ASTNodeType = ASTNodeType.OPERAND) -> Argument:
    return Argument(script, ASTNode(node_type, lexeme))


@pytest.mark.parametrize(
    "lexeme, expected",
    [("42", 42), ("-7", -7), ("0x10", 16), ("0xFFFFFFFF", -1), (" 12 ", 12)],
)
def test_as_int_parses_literals(script, lexeme, expected):
    assert _arg(script, lexeme).as_int() == expected


@pytest.mark.parametrize("lexeme", ["abc", "1.5", "0x", "0xZZ", "2147483648", ""])
def test_as_int_rejects_bad_literals(script, lexeme):
    arg = _arg(script, lexeme)
    with pytest.raises(ScriptRuntimeError) as info:
        arg.as_int()
    assert info.value.node is arg.node


def test_integer_widths():
    assert to_uint("0xFFFFFFFF") == 0xFFFFFFFF
    assert to_ushort("65535") == 65535
    with pytest.raises(ScriptRuntimeError):
        to_ushort("65536")
    with pytest.raises(ScriptRuntimeError):
        to_uint("-1")
    assert to_int("-2147483648") == -(2 ** 31)


def test_as_bool_and_double(script):
    assert _arg(script, "TRUE").as_bool() is True
    assert _arg(script, "false").as_bool() is False
    assert _arg(script, "2.5").as_double() == 2.5
    with pytest.raises(ScriptRuntimeError):
        _arg(script, "yes").as_bool()
    with pytest.raises(ScriptRuntimeError):
        _arg(script, "x1").as_double()


def test_missing_lexeme_raises(script):
    arg = _arg(script, None)
    with pytest.raises(ScriptRuntimeError):
        arg.get_lexeme()
    with pytest.raises(ScriptRuntimeError):
        arg.as_string()
    assert arg.is_serial() is False


def test_variables_resolve_before_literals(script):
    script.scope.set_var("count", _arg(script, "5"))
    assert _arg(script, "count").as_int() == 5
    assert _arg(script, "count").as_string() == "5"
    # The variable's value is itself resolved.
    script.scope.set_var("alias_of_count", _arg(script, "count"))
    assert _arg(script, "alias_of_count").as_int() == 5


def test_self_bound_variable_resolves_as_literal(script):
    script.scope.set_var("7", _arg(script, "7"))
    assert _arg(script, "7").as_int() == 7


def test_as_serial_resolution_order(script, interpreter):
    interpreter.set_alias("mount", 0x1234)
    assert _arg(script, "mount").as_serial() == 0x1234
    assert _arg(script, "0x40000001").as_serial() == 0x40000001

    # Scope variable beats alias.
    script.scope.set_var("mount", _arg(script, "0x99"))
    assert _arg(script, "mount").as_serial() == 0x99

    with pytest.raises(ScriptRuntimeError):
        _arg(script, "unknown").as_serial()


def test_alias_handler_takes_priority_and_can_fall_through(script, interpreter):
    interpreter.set_alias("self", 1)
    interpreter.register_alias_handler("self", lambda name: 0xAA)
    assert _arg(script, "self").as_serial() == 0xAA

    interpreter.register_alias_handler("self", lambda name: None)
    assert _arg(script, "self").as_serial() == 1

    interpreter.unregister_alias_handler("self")
    interpreter.remove_alias("self")
    assert interpreter.get_alias("self") is None


def test_is_serial_never_raises(script, interpreter):
    interpreter.set_alias("backpack", 0x4000)
    assert _arg(script, "backpack").is_serial() is True
    assert _arg(script, "0x10").is_serial() is True
    assert _arg(script, "bandage").is_serial() is False


def test_equality_is_by_lexeme_not_value(script):
    script.scope.set_var("a", _arg(script, "1"))
    first = _arg(script, "a")
    second = _arg(script, "a", ASTNodeType.STRING)
    one = _arg(script, "1")

    assert first == second
    assert hash(first) == hash(second)
    # Same resolved value, different lexeme.
    assert first != one
    assert first.as_int() == one.as_int()
