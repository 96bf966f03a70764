from __future__ import annotations

from pathlib import Path
from typing import Callable, List

import pytest

from extensions import load_runtime_services
from interpreter import Interpreter, Script


ROOT = Path(__file__).resolve().parents[1]
FLOW_EXTENSION = ROOT / "ext" / "flow.py"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.start = start
        self.elapsed_ms = 0

    def __call__(self) -> float:
        return self.start + self.elapsed_ms / 1000.0

    def advance(self, ms: int) -> None:
        self.elapsed_ms += ms


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def output() -> List[str]:
    return []


@pytest.fixture()
def interpreter(clock: FakeClock, output: List[str]) -> Interpreter:
    """Bare interpreter with a ``mark`` command that records its first argument."""
    interp = Interpreter(clock=clock, output_sink=output.append)
    marks: List[str] = []
    interp.marks = marks

    def _mark(command, args, quiet, force):
        marks.append(args[0].as_string() if args else "")
        return True

    interp.register_command_handler("mark", _mark)
    return interp


@pytest.fixture()
def flow(clock: FakeClock, output: List[str]) -> Interpreter:
    """Interpreter with the core command extension loaded from ext/flow.py."""
    services = load_runtime_services([str(FLOW_EXTENSION)])
    interp = Interpreter(services=services, clock=clock, output_sink=output.append)
    marks: List[str] = []
    interp.marks = marks

    def _mark(command, args, quiet, force):
        marks.append(args[0].as_string() if args else "")
        return True

    interp.register_command_handler("mark", _mark)
    return interp


@pytest.fixture()
def run() -> Callable[..., int]:
    """Tick a script until it finishes; fails if it never does."""

    def _run(script: Script, max_ticks: int = 1000) -> int:
        ticks = 0
        while script.interpreter.execute_script(script):
            ticks += 1
            if ticks >= max_ticks:
                raise AssertionError(f"script still running after {max_ticks} ticks")
        return ticks

    return _run
