"""AST node types and tree construction for LScript.

The interpreter never parses source text; it walks a tree produced by an
external parser, by the JSON document loader, or by ``ScriptBuilder``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple, Union


class LScriptError(Exception):
    """Base class for interpreter errors."""


class ScriptLoadError(LScriptError):
    """Raised when a script document cannot be turned into a tree."""


class ASTNodeType(str, Enum):
    SCRIPT = "SCRIPT"
    STATEMENT = "STATEMENT"

    IF = "IF"
    ELSEIF = "ELSEIF"
    ELSE = "ELSE"
    ENDIF = "ENDIF"
    WHILE = "WHILE"
    ENDWHILE = "ENDWHILE"
    FOR = "FOR"
    FOREACH = "FOREACH"
    ENDFOR = "ENDFOR"
    BREAK = "BREAK"
    CONTINUE = "CONTINUE"
    STOP = "STOP"
    REPLAY = "REPLAY"

    COMMAND = "COMMAND"
    QUIET = "QUIET"
    FORCE = "FORCE"
    NOT = "NOT"

    UNARY_EXPRESSION = "UNARY_EXPRESSION"
    BINARY_EXPRESSION = "BINARY_EXPRESSION"
    LOGICAL_EXPRESSION = "LOGICAL_EXPRESSION"

    AND = "AND"
    OR = "OR"
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"

    INTEGER = "INTEGER"
    SERIAL = "SERIAL"
    STRING = "STRING"
    DOUBLE = "DOUBLE"
    OPERAND = "OPERAND"


MODIFIER_TYPES = frozenset({ASTNodeType.QUIET, ASTNodeType.FORCE, ASTNodeType.NOT})

LOGICAL_OPERATORS = frozenset({ASTNodeType.AND, ASTNodeType.OR})

COMPARISON_OPERATORS = frozenset(
    {
        ASTNodeType.EQUAL,
        ASTNodeType.NOT_EQUAL,
        ASTNodeType.LESS_THAN,
        ASTNodeType.LESS_THAN_OR_EQUAL,
        ASTNodeType.GREATER_THAN,
        ASTNodeType.GREATER_THAN_OR_EQUAL,
    }
)

# Tokens that end an argument list.
ARGUMENT_TERMINATORS = LOGICAL_OPERATORS | COMPARISON_OPERATORS

EXPRESSION_TYPES = frozenset(
    {ASTNodeType.UNARY_EXPRESSION, ASTNodeType.BINARY_EXPRESSION, ASTNodeType.LOGICAL_EXPRESSION}
)

_STRUCTURAL = EXPRESSION_TYPES | {ASTNodeType.STATEMENT}

LOOP_HEADERS = frozenset({ASTNodeType.WHILE, ASTNodeType.FOR, ASTNodeType.FOREACH})
LOOP_ENDS = frozenset({ASTNodeType.ENDWHILE, ASTNodeType.ENDFOR})

OPERATOR_SYMBOLS = {
    "==": ASTNodeType.EQUAL,
    "!=": ASTNodeType.NOT_EQUAL,
    "<": ASTNodeType.LESS_THAN,
    "<=": ASTNodeType.LESS_THAN_OR_EQUAL,
    ">": ASTNodeType.GREATER_THAN,
    ">=": ASTNodeType.GREATER_THAN_OR_EQUAL,
    "and": ASTNodeType.AND,
    "or": ASTNodeType.OR,
}


class ASTNode:
    __slots__ = ("type", "lexeme", "line", "parent", "_children", "_index")

    def __init__(
        self,
        type: ASTNodeType,
        lexeme: Optional[str] = None,
        parent: Optional["ASTNode"] = None,
        line: int = 0,
    ) -> None:
        self.type = type
        self.lexeme = lexeme
        self.line = line
        self.parent: Optional[ASTNode] = None
        self._children: List[ASTNode] = []
        self._index = -1
        if parent is not None:
            parent.append(self)

    def append(self, child: "ASTNode") -> "ASTNode":
        child.parent = self
        child._index = len(self._children)
        self._children.append(child)
        return child

    def push(self, type: ASTNodeType, lexeme: Optional[str] = None, line: Optional[int] = None) -> "ASTNode":
        """Create a child node; the line defaults to this node's line."""
        return ASTNode(type, lexeme, self, self.line if line is None else line)

    @property
    def children(self) -> Sequence["ASTNode"]:
        return tuple(self._children)

    def first_child(self) -> Optional["ASTNode"]:
        return self._children[0] if self._children else None

    def next(self) -> Optional["ASTNode"]:
        if self.parent is None:
            return None
        siblings = self.parent._children
        idx = self._index + 1
        return siblings[idx] if idx < len(siblings) else None

    def prev(self) -> Optional["ASTNode"]:
        if self.parent is None or self._index <= 0:
            return None
        return self.parent._children[self._index - 1]

    def walk(self) -> Iterator["ASTNode"]:
        yield self
        for child in self._children:
            yield from child.walk()

    def render(self) -> str:
        """Approximate source text for tracebacks and step logs."""
        if self.type == ASTNodeType.SCRIPT:
            return "\n".join(child.render() for child in self._children)
        parts: List[str] = []
        for node in self.walk():
            if node.type in _STRUCTURAL:
                continue
            parts.append(node.lexeme if node.lexeme is not None else node.type.value.lower())
        return " ".join(parts)

    def __repr__(self) -> str:
        return f"ASTNode({self.type.value}, {self.lexeme!r}, line={self.line})"


# ---- Programmatic construction ----

Token = Union[str, int, float, bool, Tuple[ASTNodeType, str]]


@dataclass
class Call:
    """An expression-handler invocation: ``keyword arg arg ...``."""

    keyword: str
    args: Sequence[Token] = ()
    quiet: bool = False
    not_: bool = False


@dataclass
class Binary:
    lhs: Union[Call, Token]
    op: str
    rhs: Union[Call, Token]


@dataclass
class Logical:
    first: Union[Call, Binary]
    rest: List[Tuple[str, Union[Call, Binary]]] = field(default_factory=list)


Expression = Union[Call, Binary, Logical]


def serial(value: int) -> Tuple[ASTNodeType, str]:
    return (ASTNodeType.SERIAL, hex(value))


def string(value: str) -> Tuple[ASTNodeType, str]:
    return (ASTNodeType.STRING, value)


def _leaf(parent: ASTNode, token: Token) -> ASTNode:
    if isinstance(token, tuple):
        node_type, lexeme = token
        return parent.push(node_type, lexeme)
    if isinstance(token, bool):
        return parent.push(ASTNodeType.OPERAND, "true" if token else "false")
    if isinstance(token, int):
        return parent.push(ASTNodeType.INTEGER, str(token))
    if isinstance(token, float):
        return parent.push(ASTNodeType.DOUBLE, repr(token))
    return parent.push(ASTNodeType.OPERAND, str(token))


def _operator(symbol: str) -> ASTNodeType:
    try:
        return OPERATOR_SYMBOLS[symbol.lower()]
    except KeyError:
        raise ScriptLoadError(f"Unknown operator '{symbol}'")


class ScriptBuilder:
    """Builds a SCRIPT tree one statement per line.

    Lines are numbered from 1 unless given explicitly::

        b = ScriptBuilder()
        b.if_(Binary(Call("hits"), "<", 50))
        b.command("cast", "greater heal")
        b.endif()
        root = b.root
    """

    def __init__(self) -> None:
        self.root = ASTNode(ASTNodeType.SCRIPT)
        self._line = 0

    def statement(self, line: Optional[int] = None) -> ASTNode:
        self._line = self._line + 1 if line is None else line
        return self.root.push(ASTNodeType.STATEMENT, line=self._line)

    def _keyword(self, node_type: ASTNodeType, lexeme: Optional[str], line: Optional[int]) -> ASTNode:
        return self.statement(line).push(node_type, lexeme)

    def _attach_expression(self, parent: ASTNode, expr: Expression) -> ASTNode:
        if isinstance(expr, Logical):
            node = parent.push(ASTNodeType.LOGICAL_EXPRESSION)
            self._attach_expression(node, expr.first)
            for symbol, sub in expr.rest:
                node.push(_operator(symbol), symbol)
                self._attach_expression(node, sub)
            return node
        if isinstance(expr, Binary):
            node = parent.push(ASTNodeType.BINARY_EXPRESSION)
            self._attach_operand(node, expr.lhs)
            node.push(_operator(expr.op), expr.op)
            self._attach_operand(node, expr.rhs)
            return node
        node = parent.push(ASTNodeType.UNARY_EXPRESSION)
        self._attach_call(node, expr)
        return node

    def _attach_call(self, parent: ASTNode, call: Call) -> None:
        if call.quiet:
            parent.push(ASTNodeType.QUIET, "@")
        if call.not_:
            parent.push(ASTNodeType.NOT, "not")
        parent.push(ASTNodeType.OPERAND, call.keyword)
        for arg in call.args:
            _leaf(parent, arg)

    def _attach_operand(self, parent: ASTNode, operand: Union[Call, Token]) -> None:
        if isinstance(operand, Call):
            self._attach_call(parent, operand)
        else:
            _leaf(parent, operand)

    # ---- statements ----

    def command(
        self,
        keyword: str,
        *args: Token,
        quiet: bool = False,
        force: bool = False,
        line: Optional[int] = None,
    ) -> ASTNode:
        stmt = self.statement(line)
        if quiet:
            stmt.push(ASTNodeType.QUIET, "@")
        if force:
            stmt.push(ASTNodeType.FORCE, "!")
        stmt.push(ASTNodeType.COMMAND, keyword)
        for arg in args:
            _leaf(stmt, arg)
        return stmt

    def if_(self, expr: Expression, line: Optional[int] = None) -> ASTNode:
        node = self._keyword(ASTNodeType.IF, "if", line)
        self._attach_expression(node, expr)
        return node

    def elseif(self, expr: Expression, line: Optional[int] = None) -> ASTNode:
        node = self._keyword(ASTNodeType.ELSEIF, "elseif", line)
        self._attach_expression(node, expr)
        return node

    def else_(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.ELSE, "else", line)

    def endif(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.ENDIF, "endif", line)

    def while_(self, expr: Expression, line: Optional[int] = None) -> ASTNode:
        node = self._keyword(ASTNodeType.WHILE, "while", line)
        self._attach_expression(node, expr)
        return node

    def endwhile(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.ENDWHILE, "endwhile", line)

    def for_(self, count: Union[int, str], line: Optional[int] = None) -> ASTNode:
        node = self._keyword(ASTNodeType.FOR, "for", line)
        node.push(ASTNodeType.INTEGER, str(count))
        return node

    def foreach(self, var: str, list_name: str, line: Optional[int] = None) -> ASTNode:
        node = self._keyword(ASTNodeType.FOREACH, "foreach", line)
        node.push(ASTNodeType.OPERAND, var)
        node.push(ASTNodeType.OPERAND, list_name)
        return node

    def endfor(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.ENDFOR, "endfor", line)

    def break_(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.BREAK, "break", line)

    def continue_(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.CONTINUE, "continue", line)

    def stop(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.STOP, "stop", line)

    def replay(self, line: Optional[int] = None) -> ASTNode:
        return self._keyword(ASTNodeType.REPLAY, "replay", line)
