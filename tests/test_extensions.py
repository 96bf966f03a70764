from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from extensions import (
    ExtensionAPI,
    LScriptExtensionError,
    RuntimeServices,
    gather_extension_paths,
    load_runtime_services,
    read_lsx,
)
from interpreter import Interpreter, Script
from syntax import ScriptBuilder


FLOW_EXTENSION = Path(__file__).resolve().parents[1] / "ext" / "flow.py"


def _write(path, body: str):
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_flow_extension_registers_core_keywords():
    services = load_runtime_services([str(FLOW_EXTENSION)])

    assert {"pause", "pushlist", "poplist", "goto", "return", "waitforjournal"} <= services.handlers.command_names()
    assert {"timerexpired", "inlist", "listcount", "true", "false"} <= services.handlers.expression_names()
    assert [m.name for m in services.metadata] == ["flow"]


def test_bare_name_loads_bundled_extension(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    [path] = gather_extension_paths(["flow"])
    assert Path(path).resolve() == FLOW_EXTENSION

    services = load_runtime_services(["flow"])
    assert [m.name for m in services.metadata] == ["flow"]

    with pytest.raises(LScriptExtensionError, match="not found"):
        load_runtime_services(["teleport"])


def test_custom_extension_with_decorators(tmp_path, clock):
    ext = _write(
        tmp_path / "greet.py",
        """
        LSCRIPT_EXTENSION_NAME = "greet"

        def lscript_register(ext):
            ext.metadata(name="greet", version="0.2.0")

            @ext.command("greet", "hail")
            def _greet(command, args, quiet, force):
                ext.interpreter.write(f"{command} {args[0].as_string()}")
                return True

            @ext.alias("self")
            def _self(alias):
                return 0x1000
        """,
    )
    services = load_runtime_services([str(ext)])
    output = []
    interp = Interpreter(services=services, clock=clock, output_sink=output.append)
    b = ScriptBuilder()
    b.command("greet", "world")
    b.command("hail", "friend")
    script = Script(b.root, interp)

    while interp.execute_script(script):
        pass

    assert output == ["greet world", "hail friend"]
    assert interp.get_alias("self") == 0x1000
    assert services.metadata[0].version == "0.2.0"


def test_lsx_pointer_file(tmp_path):
    _write(tmp_path / "one.py", "def lscript_register(ext):\n    ext.register_command('one', lambda *a: True)\n")
    sub = tmp_path / "more"
    sub.mkdir()
    _write(sub / "two.py", "def lscript_register(ext):\n    ext.register_expression('two', lambda *a: 2)\n")
    pointer = _write(
        tmp_path / "bundle.lsx",
        """
        # core set
        one.py
        more/two.py  # relative to the pointer file
        """,
    )

    paths = read_lsx(str(pointer))
    assert paths == [str(tmp_path / "one.py"), str(sub / "two.py")]
    assert gather_extension_paths([str(pointer)]) == paths

    services = load_runtime_services([str(pointer)])
    assert services.handlers.command("one") is not None
    assert services.handlers.expression("two") is not None


def test_missing_extension_file(tmp_path):
    with pytest.raises(LScriptExtensionError, match="not found"):
        load_runtime_services([str(tmp_path / "nope.py")])
    with pytest.raises(LScriptExtensionError, match=".lsx file not found"):
        load_runtime_services([str(tmp_path / "nope.lsx")])


def test_extension_without_register_function(tmp_path):
    ext = _write(tmp_path / "empty.py", "VALUE = 1\n")
    with pytest.raises(LScriptExtensionError, match="lscript_register"):
        load_runtime_services([str(ext)])


def test_extension_api_version_mismatch(tmp_path):
    ext = _write(
        tmp_path / "future.py",
        "LSCRIPT_EXTENSION_API_VERSION = 99\n\ndef lscript_register(ext):\n    pass\n",
    )
    with pytest.raises(LScriptExtensionError, match="requires API 99"):
        load_runtime_services([str(ext)])


def test_invalid_registrations():
    services = RuntimeServices()
    api = ExtensionAPI(services=services, ext_name="bad")

    with pytest.raises(LScriptExtensionError):
        api.register_command("", lambda *a: True)
    with pytest.raises(LScriptExtensionError, match="every_n_steps"):
        api.every_n_steps(0, lambda interp, ctx: None)
    with pytest.raises(LScriptExtensionError, match="before an interpreter"):
        api.interpreter


def test_services_bind_to_one_interpreter(clock):
    services = RuntimeServices()
    first = Interpreter(services=services, clock=clock)
    assert ExtensionAPI(services=services, ext_name="x").interpreter is first

    with pytest.raises(LScriptExtensionError, match="already attached"):
        Interpreter(services=services, clock=clock)


def test_event_priority_order(clock):
    services = RuntimeServices()
    api = ExtensionAPI(services=services, ext_name="order")
    seen = []
    api.on_event("script_end", lambda interp, script: seen.append("low"), priority=0)

    @api.on_event("script_end", priority=10)
    def _high(interp, script):
        seen.append("high")

    interp = Interpreter(services=services, clock=clock)
    interp.register_command_handler("ok", lambda *a: True)
    b = ScriptBuilder()
    b.command("ok")
    interp.execute_script(Script(b.root, interp))

    assert seen == ["high", "low"]
    assert services.hook_registry.has_listeners("script_end")
    assert not services.hook_registry.has_listeners("before_statement")
