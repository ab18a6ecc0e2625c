"""Shared test helpers for the ralph loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(PRD builders, a scripted fake invoker, real agent scripts) used across
multiple test files.
"""

import json
import sys
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from agent_invoker import AgentExit, OutputBuffer
from config import AgentConfig
from errors import LaunchError

MARKER = "<promise>COMPLETE</promise>"


# --- PRD builders ---

def make_task(
    description: str,
    category: str = "feature",
    steps: Optional[list[str]] = None,
    passes: bool = False,
) -> dict:
    return {
        "category": category,
        "description": description,
        "steps": steps if steps is not None else [f"Verify {description}"],
        "passes": passes,
    }


def write_prd(
    path: Path,
    tasks: Optional[list[dict]] = None,
    name: str = "Test PRD",
    quality_gates: Optional[list[str]] = None,
    **extra,
) -> Path:
    data = {
        "name": name,
        "quality_gates": quality_gates if quality_gates is not None else ["pytest"],
        "tasks": tasks or [],
        **extra,
    }
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


def mark_passing(prd_path: Path, *descriptions: str) -> Callable[[], None]:
    """Build an agent side effect that sets passes=true on the named tasks."""
    def side_effect() -> None:
        data = read_json(prd_path)
        for task in data["tasks"]:
            if task["description"] in descriptions:
                task["passes"] = True
        prd_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return side_effect


# --- Scripted fake invoker ---

@dataclass
class AgentScript:
    """What one fake agent invocation does.

    ``on_start`` runs inside run(), before the handle is returned. A hanging
    script never exits on its own; only interrupt() ends it.
    """

    output: list[str] = field(default_factory=list)
    returncode: int = 0
    hang: bool = False
    on_start: Optional[Callable[[], None]] = None


class FakeHandle:
    """In-process stand-in for AgentHandle."""

    def __init__(self, script: AgentScript, pid: int) -> None:
        self.pid = pid
        self.buffer = OutputBuffer()
        self.future: Future = Future()
        self.interrupt_calls = 0
        for chunk in script.output:
            self.buffer.append(chunk)
        if not script.hang:
            self.buffer.close()
            self.future.set_result(AgentExit(returncode=script.returncode))

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> AgentExit:
        return self.future.result(timeout=timeout)

    def interrupt(self) -> bool:
        self.interrupt_calls += 1
        if self.future.done():
            return False
        self.buffer.close()
        self.future.set_result(AgentExit(returncode=-15, killed=True))
        return True


class FakeInvoker:
    """Plays back AgentScripts in order; ``default`` covers any later calls."""

    def __init__(
        self,
        scripts: Optional[list[AgentScript]] = None,
        default: Optional[AgentScript] = None,
        launch_error: bool = False,
    ) -> None:
        self.scripts = list(scripts or [])
        self.default = default or AgentScript(output=["working...\n"])
        self.launch_error = launch_error
        self.payloads: list[str] = []
        self.handles: list[FakeHandle] = []
        self.preflight_calls = 0
        self.preflight_cwd = None

    def preflight(self, cwd=None) -> str:
        self.preflight_calls += 1
        self.preflight_cwd = cwd
        if self.launch_error:
            raise LaunchError("Agent command 'claude' not found on PATH or not executable")
        return "/usr/bin/claude"

    def run(self, payload: str, cwd) -> FakeHandle:
        if self.launch_error:
            raise LaunchError("Agent command not found: claude")
        self.payloads.append(payload)
        index = len(self.payloads) - 1
        script = self.scripts[index] if index < len(self.scripts) else self.default
        if script.on_start is not None:
            script.on_start()
        handle = FakeHandle(script, pid=40000 + index)
        self.handles.append(handle)
        return handle

    @property
    def call_count(self) -> int:
        return len(self.payloads)


# --- Real child processes for the invoker ---

def python_agent_config(code: str, **overrides) -> AgentConfig:
    """AgentConfig that runs ``code`` under this interpreter.

    The payload is appended positionally and ends up in sys.argv[1].
    """
    params = {
        "command": [sys.executable, "-c", code],
        "permission_mode": None,
        "prompt_flag": None,
    }
    params.update(overrides)
    return AgentConfig(**params)
