from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    from interpreter import Argument


EXTENSION_API_VERSION = 1
BUNDLED_EXTENSIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ext")


class LScriptExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


# ---- Handlers ----

Comparable = Union[int, float, str, bool]

# (command, args, quiet, force) -> advance?
CommandHandler = Callable[[str, List["Argument"], bool, bool], bool]
# (expression, args, quiet) -> value compared by the interpreter
ExpressionHandler = Callable[[str, List["Argument"], bool], Comparable]
# alias -> serial, or None to fall through to the alias table
AliasHandler = Callable[[str], Optional[int]]


@dataclass
class HandlerRegistry:
    _commands: Dict[str, CommandHandler] = field(default_factory=dict)
    _expressions: Dict[str, ExpressionHandler] = field(default_factory=dict)
    _aliases: Dict[str, AliasHandler] = field(default_factory=dict)

    @staticmethod
    def _check_keyword(kind: str, keyword: str) -> None:
        if not keyword or not isinstance(keyword, str):
            raise LScriptExtensionError(f"{kind} keyword must be a non-empty string")

    def register_command(self, keyword: str, handler: CommandHandler) -> None:
        self._check_keyword("Command", keyword)
        self._commands[keyword] = handler

    def register_expression(self, keyword: str, handler: ExpressionHandler) -> None:
        self._check_keyword("Expression", keyword)
        self._expressions[keyword] = handler

    def register_alias(self, keyword: str, handler: AliasHandler) -> None:
        self._check_keyword("Alias", keyword)
        self._aliases[keyword] = handler

    def unregister_alias(self, keyword: str) -> None:
        self._aliases.pop(keyword, None)

    def command(self, keyword: str) -> Optional[CommandHandler]:
        return self._commands.get(keyword)

    def expression(self, keyword: str) -> Optional[ExpressionHandler]:
        return self._expressions.get(keyword)

    def alias(self, keyword: str) -> Optional[AliasHandler]:
        return self._aliases.get(keyword)

    def command_names(self) -> set[str]:
        return set(self._commands.keys())

    def expression_names(self) -> set[str]:
        return set(self._expressions.keys())


@dataclass(frozen=True)
class StepContext:
    step_index: int
    script: str
    line: int
    keyword: Optional[str]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def has_listeners(self, event: str) -> bool:
        return bool(self._events.get(event))

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise LScriptExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    handlers: HandlerRegistry = field(default_factory=HandlerRegistry)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    interpreter: Optional[Any] = None

    def attach(self, interpreter: Any) -> None:
        if self.interpreter is not None and self.interpreter is not interpreter:
            raise LScriptExtensionError("Runtime services are already attached to another interpreter")
        self.interpreter = interpreter


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    @property
    def interpreter(self) -> Any:
        """The interpreter these services were attached to; valid inside handlers."""
        if self._services.interpreter is None:
            raise LScriptExtensionError(f"Extension {self._ext_name} used before an interpreter was attached")
        return self._services.interpreter

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- handlers ----
    def register_command(self, keyword: str, handler: CommandHandler) -> None:
        self._services.handlers.register_command(keyword, handler)

    def command(self, *keywords: str):
        def deco(fn: CommandHandler) -> CommandHandler:
            for keyword in keywords:
                self.register_command(keyword, fn)
            return fn

        return deco

    def register_expression(self, keyword: str, handler: ExpressionHandler) -> None:
        self._services.handlers.register_expression(keyword, handler)

    def expression(self, *keywords: str):
        def deco(fn: ExpressionHandler) -> ExpressionHandler:
            for keyword in keywords:
                self.register_expression(keyword, fn)
            return fn

        return deco

    def register_alias(self, keyword: str, handler: AliasHandler) -> None:
        self._services.handlers.register_alias(keyword, handler)

    def alias(self, *keywords: str):
        def deco(fn: AliasHandler) -> AliasHandler:
            for keyword in keywords:
                self.register_alias(keyword, fn)
            return fn

        return deco

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"lscript_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise LScriptExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise LScriptExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_lsx(pointer_file: str) -> List[str]:
    if not os.path.exists(pointer_file):
        raise LScriptExtensionError(f".lsx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    out: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle.read().splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            # Allow inline comments: path # comment
            if "#" in line:
                line = line.split("#", 1)[0].strip()
                if not line:
                    continue
            if not os.path.isabs(line):
                line = os.path.abspath(os.path.join(base_dir, line))
            out.append(line)
    return out


def resolve_bundled(name: str) -> str:
    """Map a bare extension name such as ``flow`` to the copy shipped in ``ext/``."""
    if os.path.exists(name) or os.sep in name or "/" in name or name.lower().endswith(".py"):
        return name
    return os.path.join(BUNDLED_EXTENSIONS_DIR, f"{name}.py")


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(".lsx"):
            expanded.extend(read_lsx(p))
        else:
            expanded.append(resolve_bundled(p))
    return [os.path.abspath(p) for p in expanded]


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_extension(services: RuntimeServices, module: Any, *, default_name: str) -> None:
    api_version = getattr(module, "LSCRIPT_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise LScriptExtensionError(
            f"Extension {default_name} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "lscript_register", None)
    if register is None or not callable(register):
        raise LScriptExtensionError(f"Extension {default_name} must define callable lscript_register(ext)")
    ext_name = getattr(module, "LSCRIPT_EXTENSION_NAME", default_name)
    register(ExtensionAPI(services=services, ext_name=str(ext_name)))


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    services = services or build_default_services()
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        register_extension(services, module, default_name=os.path.splitext(os.path.basename(path))[0])
    return services
