from __future__ import annotations

from interpreter import Argument, Scope, Script
from syntax import ASTNode, ASTNodeType, ScriptBuilder


def _arg(script: Script, lexeme: str) -> Argument:
    return Argument(script, ASTNode(ASTNodeType.OPERAND, lexeme))


def _script(interpreter) -> Script:
    return Script(ScriptBuilder().root, interpreter)


def test_get_var_walks_parent_chain(interpreter):
    script = _script(interpreter)
    outer = Scope()
    inner = Scope(parent=outer)
    outer.set_var("x", _arg(script, "1"))

    assert inner.get_var("x").lexeme == "1"
    assert inner.get_var("missing") is None


def test_inner_binding_shadows_outer(interpreter):
    script = _script(interpreter)
    outer = Scope()
    inner = Scope(parent=outer)
    outer.set_var("x", _arg(script, "outer"))
    inner.set_var("x", _arg(script, "inner"))

    assert inner.get_var("x").lexeme == "inner"
    assert outer.get_var("x").lexeme == "outer"


def test_set_and_clear_touch_only_receiving_scope(interpreter):
    script = _script(interpreter)
    outer = Scope()
    inner = Scope(parent=outer)
    outer.set_var("x", _arg(script, "1"))

    inner.clear_var("x")
    assert inner.get_var("x").lexeme == "1"

    inner.set_var("y", _arg(script, "2"))
    assert outer.get_var("y") is None
    inner.clear_var("y")
    assert inner.get_var("y") is None


def test_snapshot_renders_visible_bindings(interpreter):
    script = _script(interpreter)
    outer = Scope()
    inner = Scope(parent=outer)
    outer.set_var("a", _arg(script, "1"))
    outer.set_var("b", _arg(script, "old"))
    inner.set_var("b", _arg(script, "new"))

    assert inner.snapshot() == {"a": "1", "b": "new"}
    assert inner.depth() == 1
    assert outer.depth() == 0
