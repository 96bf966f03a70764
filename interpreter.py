from __future__ import annotations
import json
import operator
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, Flag
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from extensions import (
    AliasHandler,
    CommandHandler,
    Comparable,
    ExpressionHandler,
    HandlerRegistry,
    HookRegistry,
    RuntimeServices,
    StepContext,
    build_default_services,
)
from syntax import (
    ARGUMENT_TERMINATORS,
    COMPARISON_OPERATORS,
    EXPRESSION_TYPES,
    LOGICAL_OPERATORS,
    LOOP_ENDS,
    LOOP_HEADERS,
    MODIFIER_TYPES,
    ASTNode,
    ASTNodeType,
    LScriptError,
)


JOURNAL_CAPACITY = 50
DEFAULT_MAX_LOG_ENTRIES = 1000

TimeoutCallback = Callable[[], bool]


class ScriptRuntimeError(LScriptError):
    """Raised for runtime faults."""

    def __init__(self, node: Optional[ASTNode], message: str) -> None:
        super().__init__(message)
        self.node = node
        self.message = message
        self.step_index: Optional[int] = None

    @property
    def line(self) -> Optional[int]:
        return self.node.line if self.node is not None else None


# ---- Literal conversion ----

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+\Z")
_DECIMAL = re.compile(r"\s*[+-]?[0-9]+\s*\Z")


def _parse_integer(token: Optional[str], bits: int, signed: bool, kind: str, node: Optional[ASTNode]) -> int:
    if token is not None:
        if token.startswith("0x"):
            digits = token[2:]
            if _HEX_DIGITS.match(digits):
                value = int(digits, 16)
                if value.bit_length() <= bits:
                    # Hex literals wrap like their two's complement bit pattern.
                    if signed and value >= 1 << (bits - 1):
                        value -= 1 << bits
                    return value
        elif _DECIMAL.match(token):
            value = int(token)
            if signed:
                low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
            else:
                low, high = 0, (1 << bits) - 1
            if low <= value <= high:
                return value
    raise ScriptRuntimeError(node, f"Cannot convert argument to {kind}({token})")


def to_int(token: Optional[str], node: Optional[ASTNode] = None) -> int:
    return _parse_integer(token, 32, True, "int", node)


def to_uint(token: Optional[str], node: Optional[ASTNode] = None) -> int:
    return _parse_integer(token, 32, False, "uint", node)


def to_ushort(token: Optional[str], node: Optional[ASTNode] = None) -> int:
    return _parse_integer(token, 16, False, "ushort", node)


def to_double(token: Optional[str], node: Optional[ASTNode] = None) -> float:
    if token is not None and token.strip():
        try:
            return float(token)
        except ValueError:
            pass
    raise ScriptRuntimeError(node, f"Cannot convert argument to double({token})")


def to_bool(token: Optional[str], node: Optional[ASTNode] = None) -> bool:
    text = token.strip().lower() if token is not None else ""
    if text == "true":
        return True
    if text == "false":
        return False
    raise ScriptRuntimeError(node, f"Cannot convert argument to bool({token})")


def _render_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _coerce(value: Any, target: type, node: Optional[ASTNode]) -> Any:
    if target is bool:
        if isinstance(value, str):
            return to_bool(value, node)
        if type(value) in (int, float):
            return value != 0
    elif target is float:
        if isinstance(value, str):
            return to_double(value, node)
        if type(value) in (int, bool):
            return float(value)
    elif target is int:
        if isinstance(value, str):
            return to_int(value, node)
        if type(value) is bool:
            return int(value)
        if type(value) is float:
            return int(round(value))
    elif target is str:
        if type(value) is float:
            return _render_number(value)
        if type(value) in (int, bool):
            return str(value)
    raise ScriptRuntimeError(
        node, f"Cannot convert {type(value).__name__} to {target.__name__} for comparison"
    )


_COMPARATORS: Dict[ASTNodeType, Callable[[Any, Any], bool]] = {
    ASTNodeType.EQUAL: operator.eq,
    ASTNodeType.NOT_EQUAL: operator.ne,
    ASTNodeType.LESS_THAN: operator.lt,
    ASTNodeType.LESS_THAN_OR_EQUAL: operator.le,
    ASTNodeType.GREATER_THAN: operator.gt,
    ASTNodeType.GREATER_THAN_OR_EQUAL: operator.ge,
}


def compare_operands(op: ASTNodeType, lhs: Comparable, rhs: Comparable, node: Optional[ASTNode] = None) -> bool:
    if type(lhs) is not type(rhs):
        if type(rhs) is float:
            lhs = _coerce(lhs, float, node)
        elif type(rhs) is bool:
            lhs = _coerce(lhs, bool, node)
        else:
            rhs = _coerce(rhs, type(lhs), node)
    compare = _COMPARATORS.get(op)
    if compare is None:
        raise ScriptRuntimeError(node, "Unknown operator in expression")
    try:
        return bool(compare(lhs, rhs))
    except TypeError as exc:
        raise ScriptRuntimeError(node, str(exc)) from exc


# ---- Modifiers ----


class Modifier(Flag):
    NONE = 0
    QUIET = 1
    FORCE = 2
    NOT = 4


_MODIFIER_BITS = {
    ASTNodeType.QUIET: Modifier.QUIET,
    ASTNodeType.FORCE: Modifier.FORCE,
    ASTNodeType.NOT: Modifier.NOT,
}


def parse_modifiers(node: Optional[ASTNode]) -> Tuple[Modifier, Optional[ASTNode]]:
    """Consume leading quiet/force/not tokens and return the first other node."""
    modifiers = Modifier.NONE
    while node is not None and node.type in MODIFIER_TYPES:
        modifiers |= _MODIFIER_BITS[node.type]
        node = node.next()
    return modifiers, node


# ---- Scope & Argument ----


@dataclass
class LoopFrame:
    index: int = 0
    bound: Optional[int] = None


@dataclass(eq=False)
class Scope:
    parent: Optional["Scope"] = None
    start_node: Optional[ASTNode] = None
    values: Dict[str, "Argument"] = field(default_factory=dict)
    loop: Optional[LoopFrame] = None

    def get_var(self, name: str) -> Optional["Argument"]:
        scope: Optional[Scope] = self
        while scope is not None:
            value = scope.values.get(name)
            if value is not None:
                return value
            scope = scope.parent
        return None

    def set_var(self, name: str, value: "Argument") -> None:
        self.values[name] = value

    def clear_var(self, name: str) -> None:
        self.values.pop(name, None)

    def depth(self) -> int:
        count = 0
        scope = self.parent
        while scope is not None:
            count += 1
            scope = scope.parent
        return count

    def snapshot(self) -> Dict[str, str]:
        chain: List[Scope] = []
        scope: Optional[Scope] = self
        while scope is not None:
            chain.append(scope)
            scope = scope.parent
        out: Dict[str, str] = {}
        for frame in reversed(chain):
            for name, arg in frame.values.items():
                rendered = arg.lexeme if arg.lexeme is not None else "<none>"
                if len(rendered) > 80:
                    rendered = rendered[:77] + "..."
                out[name] = rendered
        return out


class Argument:
    """A script argument that resolves its value each time it is read.

    Resolution order is scope variable, then (for serials) global alias, then
    the literal text of the token. Two arguments are equal when their raw
    lexemes are equal, regardless of what they resolve to.
    """

    __slots__ = ("_script", "_node")

    def __init__(self, script: "Script", node: ASTNode) -> None:
        self._script = script
        self._node = node

    @property
    def node(self) -> ASTNode:
        return self._node

    @property
    def script(self) -> "Script":
        return self._script

    @property
    def lexeme(self) -> Optional[str]:
        return self._node.lexeme

    def _require_lexeme(self, kind: str) -> str:
        if self._node.lexeme is None:
            raise ScriptRuntimeError(self._node, f"Cannot convert argument to {kind}")
        return self._node.lexeme

    def _variable(self, lexeme: str) -> Optional["Argument"]:
        arg = self._script.lookup(lexeme)
        # A variable bound to its own name resolves as a literal.
        if arg is None or arg is self or arg.lexeme == lexeme:
            return None
        return arg

    def get_lexeme(self) -> str:
        if self._node.lexeme is None:
            raise ScriptRuntimeError(self._node, "No lexeme found.")
        return self._node.lexeme

    def as_int(self) -> int:
        lexeme = self._require_lexeme("int")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_int()
        return to_int(lexeme, self._node)

    def as_uint(self) -> int:
        lexeme = self._require_lexeme("uint")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_uint()
        return to_uint(lexeme, self._node)

    def as_ushort(self) -> int:
        lexeme = self._require_lexeme("ushort")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_ushort()
        return to_ushort(lexeme, self._node)

    def as_double(self) -> float:
        lexeme = self._require_lexeme("double")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_double()
        return to_double(lexeme, self._node)

    def as_string(self) -> str:
        lexeme = self._require_lexeme("string")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_string()
        return lexeme

    def as_bool(self) -> bool:
        lexeme = self._require_lexeme("bool")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_bool()
        return to_bool(lexeme, self._node)

    def as_serial(self) -> int:
        lexeme = self._require_lexeme("serial")
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.as_serial()
        serial = self._script.interpreter.get_alias(lexeme)
        if serial is not None:
            return serial
        return to_uint(lexeme, self._node)

    def is_serial(self) -> bool:
        lexeme = self._node.lexeme
        if lexeme is None:
            return False
        arg = self._variable(lexeme)
        if arg is not None:
            return arg.is_serial()
        if self._script.interpreter.get_alias(lexeme) is not None:
            return True
        try:
            to_uint(lexeme, self._node)
        except ScriptRuntimeError:
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Argument):
            return NotImplemented
        return other._node.lexeme == self._node.lexeme

    def __hash__(self) -> int:
        return hash(self._node.lexeme)

    def __repr__(self) -> str:
        return f"Argument({self._node.lexeme!r})"


# ---- Control-flow links ----


@dataclass
class IfChain:
    branches: List[ASTNode] = field(default_factory=list)
    end: Optional[ASTNode] = None


@dataclass
class BlockLinks:
    """Matching begin/end statements, resolved once when a script loads."""

    if_chains: Dict[ASTNode, IfChain] = field(default_factory=dict)
    branch_chains: Dict[ASTNode, IfChain] = field(default_factory=dict)
    loop_end: Dict[ASTNode, ASTNode] = field(default_factory=dict)
    loop_header: Dict[ASTNode, ASTNode] = field(default_factory=dict)
    breaks: Dict[ASTNode, Tuple[ASTNode, ASTNode]] = field(default_factory=dict)
    continues: Dict[ASTNode, ASTNode] = field(default_factory=dict)


def link_blocks(statements: List[ASTNode]) -> BlockLinks:
    # Each family nests independently, matching the depth counters scripts
    # have always been written against: if/endif, while/endwhile,
    # for+foreach/endfor. break/continue see every loop header and end.
    links = BlockLinks()
    if_stack: List[IfChain] = []
    while_stack: List[ASTNode] = []
    for_stack: List[ASTNode] = []
    loop_stack: List[Tuple[ASTNode, List[ASTNode]]] = []

    for stmt in statements:
        head = stmt.first_child()
        if head is None:
            continue
        kind = head.type
        if kind == ASTNodeType.IF:
            chain = IfChain()
            links.if_chains[stmt] = chain
            if_stack.append(chain)
        elif kind in (ASTNodeType.ELSEIF, ASTNodeType.ELSE):
            if if_stack:
                if_stack[-1].branches.append(stmt)
                links.branch_chains[stmt] = if_stack[-1]
        elif kind == ASTNodeType.ENDIF:
            if if_stack:
                if_stack.pop().end = stmt
        elif kind == ASTNodeType.WHILE:
            while_stack.append(stmt)
        elif kind in (ASTNodeType.FOR, ASTNodeType.FOREACH):
            for_stack.append(stmt)
        elif kind == ASTNodeType.ENDWHILE:
            if while_stack:
                header = while_stack.pop()
                links.loop_end[header] = stmt
                links.loop_header[stmt] = header
        elif kind == ASTNodeType.ENDFOR:
            if for_stack:
                header = for_stack.pop()
                links.loop_end[header] = stmt
                links.loop_header[stmt] = header
        elif kind == ASTNodeType.BREAK:
            if loop_stack:
                loop_stack[-1][1].append(stmt)
        elif kind == ASTNodeType.CONTINUE:
            if loop_stack:
                links.continues[stmt] = loop_stack[-1][0]

        if kind in LOOP_HEADERS:
            loop_stack.append((stmt, []))
        elif kind in LOOP_ENDS and loop_stack:
            header, pending = loop_stack.pop()
            for brk in pending:
                links.breaks[brk] = (header, stmt)
    return links


# ---- Script ----


class ExecutionState(Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    TIMING_OUT = "TIMING_OUT"


@dataclass(frozen=True)
class JournalEntry:
    text: str
    name: str = ""


class Script:
    def __init__(self, root: ASTNode, interpreter: "Interpreter", name: str = "<script>") -> None:
        self.interpreter = interpreter
        self.name = name
        self.execution_state = ExecutionState.RUNNING
        self.deadline: Optional[float] = None
        self.timeout_callback: Optional[TimeoutCallback] = None
        self.target_requested = False
        self.ignore_list: Set[int] = set()
        self._journal: Deque[JournalEntry] = deque(maxlen=JOURNAL_CAPACITY)
        self._return_points: List[ASTNode] = []
        self._load(root)

    def _load(self, root: ASTNode) -> None:
        self.root = root
        self._statement: Optional[ASTNode] = root.first_child()
        self._scope = Scope()
        statements = list(root.children)
        self._line_nodes: Dict[int, ASTNode] = {stmt.line: stmt for stmt in statements}
        self._links = link_blocks(statements)

    def update_script(self, root: ASTNode) -> None:
        self._load(root)
        self.target_requested = False
        self._return_points.clear()

    def reset(self) -> None:
        self._statement = self.root.first_child()
        self._scope = Scope()
        self._journal.clear()
        self._return_points.clear()
        self.target_requested = False
        self.ignore_list.clear()
        self.deadline = None
        self.timeout_callback = None
        self.execution_state = ExecutionState.RUNNING

    # ---- views ----

    @property
    def statement(self) -> Optional[ASTNode]:
        return self._statement

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def current_line(self) -> int:
        return 0 if self._statement is None else self._statement.line

    @property
    def is_paused(self) -> bool:
        return self.execution_state == ExecutionState.PAUSED

    @property
    def is_running(self) -> bool:
        return self._statement is not None

    @property
    def return_depth(self) -> int:
        return len(self._return_points)

    def lookup(self, name: str) -> Optional[Argument]:
        return self._scope.get_var(name)

    # ---- journal ----

    def journal_entry_added(self, entry: JournalEntry) -> None:
        self._journal.append(entry)

    def search_journal(self, text: str) -> bool:
        return any(text in entry.text for entry in self._journal)

    def clear_journal(self) -> None:
        self._journal.clear()

    @property
    def journal(self) -> List[JournalEntry]:
        return list(self._journal)

    # ---- suspension ----

    def pause(self, duration_ms: float) -> None:
        if self.execution_state != ExecutionState.RUNNING:
            return
        self.deadline = self.interpreter.now() + duration_ms / 1000.0
        self.execution_state = ExecutionState.PAUSED

    def unpause(self) -> None:
        if self.execution_state != ExecutionState.PAUSED:
            return
        self.deadline = None
        self.execution_state = ExecutionState.RUNNING

    def timeout(self, duration_ms: float, callback: TimeoutCallback) -> None:
        # An existing pause or timeout is left untouched.
        if self.execution_state != ExecutionState.RUNNING:
            return
        self.deadline = self.interpreter.now() + duration_ms / 1000.0
        self.execution_state = ExecutionState.TIMING_OUT
        self.timeout_callback = callback

    def clear_timeout(self) -> None:
        if self.execution_state != ExecutionState.TIMING_OUT:
            return
        self.deadline = None
        self.timeout_callback = None
        self.execution_state = ExecutionState.RUNNING

    # ---- cursor movement ----

    def advance(self) -> None:
        self.clear_timeout()
        if self._statement is not None:
            self._statement = self._statement.next()

    def goto_line(self, line: int) -> bool:
        target = self._line_nodes.get(line)
        if target is None:
            return False
        if self._statement is not None:
            self._return_points.append(self._statement)
        self._statement = target
        return True

    def return_from_goto(self) -> None:
        if self._return_points:
            self._statement = self._return_points.pop()

    def _push_scope(self, start: ASTNode) -> None:
        self._scope = Scope(parent=self._scope, start_node=start)

    def _pop_scope(self) -> None:
        if self._scope.parent is not None:
            self._scope = self._scope.parent

    def _unwind_to(self, header: ASTNode, *, inclusive: bool) -> None:
        scope: Optional[Scope] = self._scope
        while scope is not None and scope.start_node is not header:
            scope = scope.parent
        if scope is None:
            # Loop entered without its header (e.g. via goto); nothing to unwind.
            return
        self._scope = scope.parent if inclusive and scope.parent is not None else scope

    # ---- execution ----

    def execute_next(self) -> bool:
        stmt = self._statement
        if stmt is None:
            return False
        if stmt.type != ASTNodeType.STATEMENT:
            raise ScriptRuntimeError(stmt, "Invalid script")
        node = stmt.first_child()
        if node is None:
            raise ScriptRuntimeError(stmt, "Invalid statement")

        kind = node.type
        if kind == ASTNodeType.IF:
            self._execute_if(stmt, node)
        elif kind in (ASTNodeType.ELSEIF, ASTNodeType.ELSE):
            # Branches are only entered by jumping in from their IF.
            self._skip_to_endif(stmt, node)
        elif kind == ASTNodeType.ENDIF:
            self._pop_scope()
            self.advance()
        elif kind == ASTNodeType.WHILE:
            self._execute_while(stmt, node)
        elif kind == ASTNodeType.FOR:
            self._execute_for(stmt, node)
        elif kind == ASTNodeType.FOREACH:
            self._execute_foreach(stmt, node)
        elif kind in LOOP_ENDS:
            header = self._links.loop_header.get(stmt)
            if header is None:
                raise ScriptRuntimeError(node, f"Unexpected {kind.value.lower()}")
            self._statement = header
        elif kind == ASTNodeType.BREAK:
            self._execute_break(stmt, node)
        elif kind == ASTNodeType.CONTINUE:
            self._execute_continue(stmt, node)
        elif kind == ASTNodeType.STOP:
            self._statement = None
        elif kind == ASTNodeType.REPLAY:
            while self._scope.parent is not None:
                self._scope = self._scope.parent
            self._statement = stmt.parent.first_child() if stmt.parent is not None else None
        elif kind == ASTNodeType.COMMAND or kind in MODIFIER_TYPES:
            if self._execute_command(node):
                self.advance()
        else:
            raise ScriptRuntimeError(node, "Invalid statement")

        return self._statement is not None

    def _execute_if(self, stmt: ASTNode, node: ASTNode) -> None:
        self._push_scope(stmt)
        if self._evaluate_guard(node):
            self.advance()
            return
        chain = self._links.if_chains.get(stmt)
        if chain is None or chain.end is None:
            raise ScriptRuntimeError(node, "If with no matching endif")
        self.clear_timeout()
        for branch in chain.branches:
            head = branch.first_child()
            if head.type == ASTNodeType.ELSE or self._evaluate_guard(head):
                self._statement = branch.next()
                return
        # ENDIF pops the scope on the next tick.
        self._statement = chain.end

    def _skip_to_endif(self, stmt: ASTNode, node: ASTNode) -> None:
        chain = self._links.branch_chains.get(stmt)
        if chain is None or chain.end is None:
            raise ScriptRuntimeError(node, "If with no matching endif")
        self.clear_timeout()
        self._statement = chain.end

    def _execute_while(self, stmt: ASTNode, node: ASTNode) -> None:
        if self._scope.start_node is not stmt:
            self._push_scope(stmt)
        if self._evaluate_guard(node):
            self.advance()
            return
        self._exit_loop(stmt, node)

    def _execute_for(self, stmt: ASTNode, node: ASTNode) -> None:
        bound_node = node.first_child()
        if bound_node is None or bound_node.type != ASTNodeType.INTEGER:
            raise ScriptRuntimeError(bound_node or node, "Invalid for loop syntax")
        if self._scope.start_node is not stmt:
            self._push_scope(stmt)
            self._scope.loop = LoopFrame(index=0, bound=Argument(self, bound_node).as_uint())
        else:
            self._scope.loop.index += 1

        frame = self._scope.loop
        if frame.index < frame.bound:
            self.advance()
            return
        self._exit_loop(stmt, node)

    def _execute_foreach(self, stmt: ASTNode, node: ASTNode) -> None:
        var_node = node.first_child()
        list_node = var_node.next() if var_node is not None else None
        if var_node is None or list_node is None or var_node.lexeme is None or list_node.lexeme is None:
            raise ScriptRuntimeError(node, "Invalid foreach loop syntax")
        if self._scope.start_node is not stmt:
            self._push_scope(stmt)
            self._scope.loop = LoopFrame(index=0)
        else:
            self._scope.loop.index += 1

        try:
            value = self.interpreter.get_list_value(list_node.lexeme, self._scope.loop.index)
        except ScriptRuntimeError as err:
            err.node = err.node or list_node
            raise
        if value is not None:
            self._scope.set_var(var_node.lexeme, value)
            self.advance()
            return
        self._scope.clear_var(var_node.lexeme)
        self._exit_loop(stmt, node)

    def _exit_loop(self, stmt: ASTNode, node: ASTNode) -> None:
        end = self._links.loop_end.get(stmt)
        if end is None:
            closer = "endwhile" if node.type == ASTNodeType.WHILE else "endfor"
            raise ScriptRuntimeError(node, f"{node.type.value.capitalize()} with no matching {closer}")
        self._pop_scope()
        self._statement = end
        self.advance()

    def _execute_break(self, stmt: ASTNode, node: ASTNode) -> None:
        target = self._links.breaks.get(stmt)
        if target is None:
            raise ScriptRuntimeError(node, "Unexpected break")
        header, end = target
        self._unwind_to(header, inclusive=True)
        self._statement = end
        self.advance()

    def _execute_continue(self, stmt: ASTNode, node: ASTNode) -> None:
        header = self._links.continues.get(stmt)
        if header is None:
            raise ScriptRuntimeError(node, "Unexpected continue")
        self._unwind_to(header, inclusive=False)
        self._statement = header

    def _construct_arguments(self, node: ASTNode) -> Tuple[List[Argument], Optional[ASTNode]]:
        """Collect the siblings after ``node`` up to an operator token.

        Returns the arguments and the operator that stopped collection, if any.
        """
        args: List[Argument] = []
        current = node.next()
        while current is not None:
            if current.type in ARGUMENT_TERMINATORS:
                return args, current
            args.append(Argument(self, current))
            current = current.next()
        return args, None

    def _execute_command(self, node: ASTNode) -> bool:
        modifiers, node = parse_modifiers(node)
        if node is None or node.lexeme is None:
            raise ScriptRuntimeError(node, "Invalid command")
        handler = self.interpreter.get_command_handler(node.lexeme)
        if handler is None:
            raise ScriptRuntimeError(node, "Unknown command")
        args, leftover = self._construct_arguments(node)
        if leftover is not None:
            raise ScriptRuntimeError(leftover, "Command did not consume all available arguments")
        return bool(handler(node.lexeme, args, Modifier.QUIET in modifiers, Modifier.FORCE in modifiers))

    # ---- expressions ----

    def _evaluate_guard(self, keyword: ASTNode) -> bool:
        return self._evaluate_expression(keyword.first_child(), keyword)

    def _evaluate_expression(self, expr: Optional[ASTNode], owner: Optional[ASTNode] = None) -> bool:
        if expr is None or expr.type not in EXPRESSION_TYPES:
            raise ScriptRuntimeError(expr or owner, "No expression following control statement")
        node = expr.first_child()
        if node is None:
            raise ScriptRuntimeError(expr, "Empty expression following control statement")

        if expr.type == ASTNodeType.UNARY_EXPRESSION:
            return self._evaluate_unary(node)
        if expr.type == ASTNodeType.BINARY_EXPRESSION:
            return self._evaluate_binary(node)

        # Logical chains combine left to right; every operand is evaluated.
        result = self._evaluate_expression(node)
        current = node.next()
        while current is not None:
            op = current
            if op.type not in LOGICAL_OPERATORS:
                raise ScriptRuntimeError(op, "Invalid logical operator")
            current = current.next()
            if current is None:
                raise ScriptRuntimeError(op, "Invalid logical expression")
            if current.type == ASTNodeType.UNARY_EXPRESSION or current.type == ASTNodeType.BINARY_EXPRESSION:
                rhs = self._evaluate_expression(current)
            else:
                raise ScriptRuntimeError(current, "Nested logical expressions are not possible")
            if op.type == ASTNodeType.AND:
                result = result and rhs
            else:
                result = result or rhs
            current = current.next()
        return result

    def _evaluate_unary(self, node: ASTNode) -> bool:
        modifiers, node = parse_modifiers(node)
        if node is None or node.lexeme is None:
            raise ScriptRuntimeError(node, "Invalid unary expression")
        handler = self.interpreter.get_expression_handler(node.lexeme)
        if handler is None:
            raise ScriptRuntimeError(node, "Unknown expression")
        args, _ = self._construct_arguments(node)
        result = handler(node.lexeme, args, Modifier.QUIET in modifiers)
        expected = Modifier.NOT not in modifiers
        return compare_operands(ASTNodeType.EQUAL, result, expected, node)

    def _evaluate_binary(self, node: ASTNode) -> bool:
        lhs, op = self._evaluate_operand(node)
        if op is None or op.type not in COMPARISON_OPERATORS:
            raise ScriptRuntimeError(op or node, "Invalid binary expression")
        rhs, leftover = self._evaluate_operand(op.next())
        if leftover is not None:
            raise ScriptRuntimeError(leftover, "Unexpected token in binary expression")
        return compare_operands(op.type, lhs, rhs, op)

    def _evaluate_operand(self, node: Optional[ASTNode]) -> Tuple[Comparable, Optional[ASTNode]]:
        """Evaluate one side of a comparison; returns the value and the node after it."""
        modifiers, node = parse_modifiers(node)
        if node is None:
            raise ScriptRuntimeError(None, "Missing operand in expression")
        kind = node.type
        if kind == ASTNodeType.INTEGER:
            return to_int(node.lexeme, node), node.next()
        if kind == ASTNodeType.SERIAL:
            return to_uint(node.lexeme, node), node.next()
        if kind == ASTNodeType.STRING:
            return node.lexeme or "", node.next()
        if kind == ASTNodeType.DOUBLE:
            return to_double(node.lexeme, node), node.next()
        if kind == ASTNodeType.OPERAND:
            handler = self.interpreter.get_expression_handler(node.lexeme) if node.lexeme is not None else None
            if handler is None:
                # Not a registered keyword, so it is just text.
                return node.lexeme or "", node.next()
            args, rest = self._construct_arguments(node)
            return handler(node.lexeme, args, Modifier.QUIET in modifiers), rest
        raise ScriptRuntimeError(node, "Invalid type found in expression")


# ---- Step log ----


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    script: str
    line: int
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool, max_entries: int = DEFAULT_MAX_LOG_ENTRIES) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=max_entries)
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.script_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        script: str,
        line: int,
        statement: Optional[str],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            script=script,
            line=line,
            statement=statement,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.script_last_entry[script] = entry
        self.last_state_id = entry.state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_script(self, script: str) -> Optional[StateEntry]:
        return self.script_last_entry.get(script)


# ---- Interpreter ----


class Interpreter:
    """Owns the handler registries, global stores and the active script."""

    def __init__(
        self,
        *,
        services: Optional[RuntimeServices] = None,
        clock: Optional[Callable[[], float]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        verbose: bool = False,
        max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
    ) -> None:
        self.services = services or build_default_services()
        self.services.attach(self)
        self.handlers: HandlerRegistry = self.services.handlers
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.clock = clock or time.monotonic
        self.output_sink = output_sink or (lambda text: print(text))
        self.verbose = verbose
        self.logger = StateLogger(verbose=verbose, max_entries=max_log_entries)

        self._aliases: Dict[str, int] = {}
        self._lists: Dict[str, List[Argument]] = {}
        self._timers: Dict[str, float] = {}
        self._active_script: Optional[Script] = None

    @property
    def active_script(self) -> Optional[Script]:
        return self._active_script

    def now(self) -> float:
        return self.clock()

    def write(self, text: str) -> None:
        self.output_sink(text)

    # ---- registries ----

    def register_command_handler(self, keyword: str, handler: CommandHandler) -> None:
        self.handlers.register_command(keyword, handler)

    def get_command_handler(self, keyword: str) -> Optional[CommandHandler]:
        return self.handlers.command(keyword)

    def register_expression_handler(self, keyword: str, handler: ExpressionHandler) -> None:
        self.handlers.register_expression(keyword, handler)

    def get_expression_handler(self, keyword: str) -> Optional[ExpressionHandler]:
        return self.handlers.expression(keyword)

    def register_alias_handler(self, keyword: str, handler: AliasHandler) -> None:
        self.handlers.register_alias(keyword, handler)

    def unregister_alias_handler(self, keyword: str) -> None:
        self.handlers.unregister_alias(keyword)

    # ---- aliases ----

    def get_alias(self, alias: str) -> Optional[int]:
        handler = self.handlers.alias(alias)
        if handler is not None:
            serial = handler(alias)
            if serial is not None:
                return serial
        return self._aliases.get(alias)

    def set_alias(self, alias: str, serial: int) -> None:
        self._aliases[alias] = serial

    def remove_alias(self, alias: str) -> None:
        self._aliases.pop(alias, None)

    # ---- lists ----

    def _require_list(self, name: str) -> List[Argument]:
        items = self._lists.get(name)
        if items is None:
            raise ScriptRuntimeError(None, f"List '{name}' does not exist")
        return items

    def create_list(self, name: str) -> None:
        self._lists.setdefault(name, [])

    def destroy_list(self, name: str) -> None:
        self._lists.pop(name, None)

    def clear_all_lists(self) -> None:
        self._lists.clear()

    def clear_list(self, name: str) -> None:
        items = self._lists.get(name)
        if items is not None:
            items.clear()

    def get_list(self, name: str) -> Optional[List[Argument]]:
        return self._lists.get(name)

    def list_exists(self, name: str) -> bool:
        return name in self._lists

    def list_contains(self, name: str, arg: Argument) -> bool:
        items = self._lists.get(name)
        return items is not None and arg in items

    def list_length(self, name: str) -> int:
        items = self._lists.get(name)
        return 0 if items is None else len(items)

    def push_list(self, name: str, arg: Argument, front: bool = False, unique: bool = False) -> None:
        items = self._require_list(name)
        if unique and arg in items:
            return
        if front:
            items.insert(0, arg)
        else:
            items.append(arg)

    def pop_list_value(self, name: str, arg: Argument) -> bool:
        items = self._lists.get(name)
        if items is None or arg not in items:
            return False
        items.remove(arg)
        return True

    def pop_list(self, name: str, front: bool) -> bool:
        items = self._require_list(name)
        if not items:
            raise ScriptRuntimeError(None, f"List '{name}' is empty")
        items.pop(0 if front else -1)
        return len(items) > 0

    def get_list_value(self, name: str, idx: int) -> Optional[Argument]:
        items = self._require_list(name)
        if 0 <= idx < len(items):
            return items[idx]
        return None

    # ---- timers ----

    def set_timer(self, name: str, duration_ms: float) -> None:
        if name in self._timers and not self.timer_expired(name):
            return
        self._timers[name] = self.now() + duration_ms / 1000.0

    def timer_expired(self, name: str) -> bool:
        expiry = self._timers.get(name)
        # Unknown timers read as expired.
        if expiry is None:
            return True
        if expiry <= self.now():
            # Expiry is reported once; the timer is consumed.
            del self._timers[name]
            return True
        return False

    def remove_timer(self, name: str) -> None:
        self._timers.pop(name, None)

    def timer_exists(self, name: str) -> bool:
        return name in self._timers

    # ---- active script helpers ----

    def goto_line(self, line: int) -> bool:
        if self._active_script is None:
            return False
        return self._active_script.goto_line(line)

    def return_from_goto(self) -> None:
        if self._active_script is not None:
            self._active_script.return_from_goto()

    def in_ignore_list(self, serial: int) -> bool:
        if self._active_script is None:
            return False
        return serial in self._active_script.ignore_list

    def ignore_serial(self, serial: int) -> None:
        if self._active_script is not None:
            self._active_script.ignore_list.add(serial)

    def clear_ignore_list(self) -> None:
        if self._active_script is not None:
            self._active_script.ignore_list.clear()

    def add_journal_entry(self, text: str, name: str = "") -> None:
        if self._active_script is not None:
            self._active_script.journal_entry_added(JournalEntry(text=text, name=name))

    def search_journal(self, text: str) -> bool:
        if self._active_script is None:
            return False
        return self._active_script.search_journal(text)

    def clear_journal(self) -> None:
        if self._active_script is not None:
            self._active_script.clear_journal()

    def is_target_requested(self) -> bool:
        if self._active_script is None:
            return False
        return self._active_script.target_requested

    def set_target_requested(self, requested: bool) -> None:
        if self._active_script is not None:
            self._active_script.target_requested = requested

    # ---- suspension (require an active script) ----

    def _require_active(self, action: str) -> Script:
        if self._active_script is None:
            raise ScriptRuntimeError(None, f"{action} requires an active script")
        return self._active_script

    def pause(self, duration_ms: float) -> None:
        self._require_active("pause").pause(duration_ms)

    def unpause(self) -> None:
        self._require_active("unpause").unpause()

    def timeout(self, duration_ms: float, callback: TimeoutCallback) -> None:
        self._require_active("timeout").timeout(duration_ms, callback)

    def clear_timeout(self) -> None:
        self._require_active("clear_timeout").clear_timeout()

    def reset(self) -> None:
        if self._active_script is not None:
            self._active_script.clear_timeout()
        self._active_script = None

    def stop_script(self) -> None:
        script = self._active_script
        if script is not None:
            script.execution_state = ExecutionState.RUNNING
            script.deadline = None
            script.timeout_callback = None
        self._active_script = None

    # ---- driver ----

    def execute_script(self, script: Optional[Script]) -> bool:
        """Run at most one statement of ``script``; call once per host tick.

        Returns False once the script has finished or was abandoned by an
        expired timeout.
        """
        if script is None:
            return False
        self._active_script = script

        if script.execution_state == ExecutionState.PAUSED:
            if self.now() < script.deadline:
                return True
            script.unpause()
        elif script.execution_state == ExecutionState.TIMING_OUT and self.now() >= script.deadline:
            callback = script.timeout_callback
            script.timeout_callback = None
            if callback is not None and callback():
                script.advance()
            if script.execution_state != ExecutionState.RUNNING:
                self._finish(script)
                return False

        return self._step(script)

    def _step(self, script: Script) -> bool:
        stmt = script.statement
        entry: Optional[StateEntry] = None
        if stmt is not None:
            self._emit_event("before_statement", self, script, stmt)
            entry = self._log_step(script, stmt)
        try:
            alive = script.execute_next()
        except ScriptRuntimeError as error:
            if error.node is None:
                error.node = stmt
            if entry is not None:
                error.step_index = entry.step_index
            self._emit_event("on_error", self, script, error)
            raise
        except Exception as exc:
            # Handler faults surface as ScriptRuntimeError so hosts can format them.
            wrapped = ScriptRuntimeError(stmt, f"Internal interpreter error: {exc}")
            if entry is not None:
                wrapped.step_index = entry.step_index
            self._emit_event("on_error", self, script, wrapped)
            raise wrapped from exc

        if stmt is not None:
            self._after_step(script, stmt, entry)
        if not alive:
            self._finish(script)
            return False
        return True

    def _finish(self, script: Script) -> None:
        self._active_script = None
        self._emit_event("script_end", self, script)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except ScriptRuntimeError:
            raise
        except Exception as exc:
            raise ScriptRuntimeError(None, f"Extension hook '{event}' failed: {exc}") from exc

    def _log_step(self, script: Script, stmt: ASTNode) -> StateEntry:
        env_snapshot = script.scope.snapshot() if self.verbose else None
        return self.logger.record(
            script=script.name,
            line=stmt.line,
            statement=stmt.render(),
            env_snapshot=env_snapshot,
        )

    def _after_step(self, script: Script, stmt: ASTNode, entry: Optional[StateEntry]) -> None:
        if entry is not None:
            head = stmt.first_child()
            ctx = StepContext(
                step_index=entry.step_index,
                script=script.name,
                line=stmt.line,
                keyword=head.lexeme if head is not None else None,
            )
            try:
                self.hook_registry.after_step(self, ctx)
            except ScriptRuntimeError:
                raise
            except Exception as exc:
                raise ScriptRuntimeError(stmt, f"Extension step rule failed: {exc}") from exc
        self._emit_event("after_statement", self, script, stmt)


# ---- Tracebacks ----


def _enclosing_statement(node: Optional[ASTNode]) -> Optional[ASTNode]:
    while node is not None and node.type != ASTNodeType.STATEMENT:
        node = node.parent
    return node


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def _script_name(self, script: Optional[Script]) -> str:
        script = script or self.interpreter.active_script
        return script.name if script is not None else "<script>"

    def format_text(self, error: ScriptRuntimeError, verbose: bool = False, script: Optional[Script] = None) -> str:
        name = self._script_name(script)
        entry = self.interpreter.logger.last_entry_for_script(name)
        stmt = _enclosing_statement(error.node)
        lines = ["Traceback (most recent call last):"]
        if stmt is not None:
            lines.append(f"  Script \"{name}\", line {stmt.line}")
            lines.append(f"    {stmt.render()}")
        else:
            lines.append(f"  <unknown location> in {name}")
        if entry is not None:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.env_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
                lines.append(f"    Scope snapshot: {snapshot}")
        active = script or self.interpreter.active_script
        if verbose and active is not None:
            lines.append(f"    Scope depth: {active.scope.depth()}  Goto depth: {active.return_depth}")
        lines.append(f"{error.__class__.__name__}: {error.message}")
        return "\n".join(lines)

    def to_json(self, error: ScriptRuntimeError, script: Optional[Script] = None) -> str:
        name = self._script_name(script)
        stmt = _enclosing_statement(error.node)
        location: Optional[Dict[str, Any]] = None
        if stmt is not None:
            location = {"script": name, "line": stmt.line, "statement": stmt.render()}
        recent = [
            {"step_index": e.step_index, "state_id": e.state_id, "line": e.line, "statement": e.statement}
            for e in list(self.interpreter.logger.entries)[-10:]
            if e.script == name
        ]
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
                "source_location": location,
            },
            "recent_steps": recent,
        }
        active = script or self.interpreter.active_script
        if active is not None:
            data["depth"] = {"scope": active.scope.depth(), "goto": active.return_depth}
        return json.dumps(data, indent=2)
