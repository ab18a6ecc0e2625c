"""Shared pytest fixtures for the ralph loop test suite.

Non-fixture helpers (PRD builders, scripted fake invoker, agent scripts) are
in helpers.py.
"""

import json
import logging
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from config import RalphConfig  # noqa: E402
from helpers import make_task, write_prd  # noqa: E402


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a fully populated project directory.

    Includes: plans/prd.json (3 open tasks), plans/progress.txt,
    .ralph/config.json. Tests needing a bare directory should use tmp_path.
    """
    plans = tmp_path / "plans"
    plans.mkdir()
    write_prd(
        plans / "prd.json",
        tasks=[
            make_task("Task A", category="setup"),
            make_task("Task B"),
            make_task("Task C", category="ui"),
        ],
    )
    (plans / "progress.txt").write_text("# Progress\n", encoding="utf-8")

    ralph_dir = tmp_path / ".ralph"
    ralph_dir.mkdir()
    config = {
        "limits": {"max_iterations": 5, "poll_interval_seconds": 0.01},
        "patterns": {"completion_markers": ["<promise>COMPLETE</promise>"]},
    }
    (ralph_dir / "config.json").write_text(json.dumps(config), encoding="utf-8")

    return tmp_path


@pytest.fixture
def prd_path(project_dir: Path) -> Path:
    return project_dir / "plans" / "prd.json"


@pytest.fixture
def config() -> RalphConfig:
    return RalphConfig(
        limits={
            "max_iterations": 5,
            "poll_interval_seconds": 0.01,
            "kill_grace_seconds": 0,
        },
    )


@pytest.fixture
def restore_root_logger():
    """Drop handlers installed by setup_logging() once the test is done."""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
