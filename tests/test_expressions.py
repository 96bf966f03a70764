from __future__ import annotations

import pytest

from interpreter import Script, ScriptRuntimeError, compare_operands
from syntax import ASTNode, ASTNodeType, Binary, Call, Logical, ScriptBuilder, serial, string


def _holds(interpreter, run, expr) -> bool:
    b = ScriptBuilder()
    b.if_(expr)
    b.command("mark", "yes")
    b.else_()
    b.command("mark", "no")
    b.endif()
    run(Script(b.root, interpreter))
    return interpreter.marks[-1] == "yes"


@pytest.fixture()
def probes(interpreter):
    calls = []

    def _probe(value):
        def handler(name, args, quiet):
            calls.append((name, [a.get_lexeme() for a in args], quiet))
            return value

        return handler

    interpreter.register_expression_handler("yes", _probe(True))
    interpreter.register_expression_handler("no", _probe(False))
    interpreter.register_expression_handler("hp", _probe(3))
    interpreter.register_expression_handler("zero", _probe(0))
    interpreter.register_expression_handler("name", _probe("Bob"))
    return calls


@pytest.mark.parametrize(
    "op, expected",
    [("==", False), ("!=", True), ("<", True), ("<=", True), (">", False), (">=", False)],
)
def test_integer_comparisons(interpreter, run, op, expected):
    assert _holds(interpreter, run, Binary(1, op, 2)) is expected


def test_handler_operand_compares_with_literal(interpreter, run, probes):
    assert _holds(interpreter, run, Binary(Call("hp"), "==", 3))
    assert _holds(interpreter, run, Binary(Call("hp"), "<", 10))
    assert _holds(interpreter, run, Binary(Call("name"), "==", string("Bob")))


def test_handler_operand_receives_its_arguments(interpreter, run, probes):
    assert _holds(interpreter, run, Binary(Call("hp", ["self", 7]), ">", 1))
    assert probes == [("hp", ["self", "7"], False)]


def test_unregistered_operand_is_text(interpreter, run):
    # Right side converts to the left side's type.
    assert _holds(interpreter, run, Binary(5, "==", "5"))
    assert _holds(interpreter, run, Binary(string("abc"), "==", "abc"))


def test_right_float_widens_left(interpreter, run, probes):
    assert _holds(interpreter, run, Binary(Call("hp"), ">", 2.5))
    assert _holds(interpreter, run, Binary(2.0, "==", 2))


def test_right_bool_narrows_left(interpreter, run, probes):
    assert _holds(interpreter, run, Binary(Call("hp"), "==", Call("yes")))
    assert _holds(interpreter, run, Binary(Call("zero"), "==", Call("no")))


def test_serial_literal_is_unsigned(interpreter, run):
    assert _holds(interpreter, run, Binary(serial(0xFFFFFFFF), ">", 0))
    assert _holds(interpreter, run, Binary(serial(0x10), "==", 16))


def test_inconvertible_comparison_raises(interpreter, run):
    with pytest.raises(ScriptRuntimeError, match="Cannot convert"):
        _holds(interpreter, run, Binary(5, "==", "abc"))


def test_unary_uses_handler_truthiness(interpreter, run, probes):
    assert _holds(interpreter, run, Call("yes"))
    assert not _holds(interpreter, run, Call("no"))
    assert _holds(interpreter, run, Call("no", not_=True))
    assert not _holds(interpreter, run, Call("hp", not_=True))
    assert not _holds(interpreter, run, Call("zero"))


def test_quiet_is_forwarded(interpreter, run, probes):
    _holds(interpreter, run, Call("yes", quiet=True))
    assert probes == [("yes", [], True)]


def test_unknown_unary_raises(interpreter, run):
    with pytest.raises(ScriptRuntimeError, match="Unknown expression"):
        _holds(interpreter, run, Call("mystery"))


def test_logical_chain_is_left_associative(interpreter, run, probes):
    assert _holds(interpreter, run, Logical(Call("yes"), [("and", Call("yes"))]))
    assert not _holds(interpreter, run, Logical(Call("yes"), [("and", Call("no"))]))
    assert _holds(interpreter, run, Logical(Call("no"), [("or", Call("yes"))]))
    # (no or yes) and no
    assert not _holds(interpreter, run, Logical(Call("no"), [("or", Call("yes")), ("and", Call("no"))]))
    assert _holds(interpreter, run, Logical(Binary(1, "<", 2), [("and", Call("hp"))]))


def test_logical_evaluates_both_sides(interpreter, run, probes):
    _holds(interpreter, run, Logical(Call("no"), [("and", Call("yes"))]))
    assert [name for name, _, _ in probes] == ["no", "yes"]


def test_nested_logical_on_right_raises(interpreter, run, probes):
    root = ASTNode(ASTNodeType.SCRIPT)
    stmt = root.push(ASTNodeType.STATEMENT, line=1)
    logical = stmt.push(ASTNodeType.IF, "if").push(ASTNodeType.LOGICAL_EXPRESSION)
    logical.push(ASTNodeType.UNARY_EXPRESSION).push(ASTNodeType.OPERAND, "yes")
    logical.push(ASTNodeType.AND, "and")
    inner = logical.push(ASTNodeType.LOGICAL_EXPRESSION)
    inner.push(ASTNodeType.UNARY_EXPRESSION).push(ASTNodeType.OPERAND, "yes")
    root.push(ASTNodeType.STATEMENT, line=2).push(ASTNodeType.ENDIF, "endif")

    with pytest.raises(ScriptRuntimeError, match="Nested logical"):
        run(Script(root, interpreter))


def test_if_without_expression_raises(interpreter, run):
    root = ASTNode(ASTNodeType.SCRIPT)
    root.push(ASTNodeType.STATEMENT, line=1).push(ASTNodeType.IF, "if")
    with pytest.raises(ScriptRuntimeError, match="No expression"):
        run(Script(root, interpreter))


def test_compare_operands_coercion_rules():
    assert compare_operands(ASTNodeType.EQUAL, "1.5", 1.5)
    assert compare_operands(ASTNodeType.EQUAL, "TRUE", True)
    assert compare_operands(ASTNodeType.EQUAL, 2, "2")
    assert compare_operands(ASTNodeType.EQUAL, "3", 3)
    assert compare_operands(ASTNodeType.EQUAL, 1.5, "1.5")
    assert compare_operands(ASTNodeType.LESS_THAN, "a", "b")
    with pytest.raises(ScriptRuntimeError):
        compare_operands(ASTNodeType.EQUAL, None, 1)
    with pytest.raises(ScriptRuntimeError):
        compare_operands(ASTNodeType.AND, 1, 1)
