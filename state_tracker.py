"""Persistent run history for the ralph loop (.ralph/state.json)."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from config import Result
from run_state import IterationRecord, IterationStatus, LoopState
from task_store import atomic_write_text

logger = logging.getLogger(__name__)


class IterationSummary(BaseModel):
    """Record of a single loop iteration. Output text is not persisted."""

    iteration: int
    status: str
    exit_code: Optional[int] = None
    completion_signal: bool = False
    duration_ms: int = 0
    output_chars: int = 0
    tasks_migrated: int = 0
    completed_at: Optional[str] = None


class RunMetrics(BaseModel):
    """Aggregated metrics across all iterations of a run."""

    total_duration_ms: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    killed_count: int = 0
    tasks_migrated: int = 0


CURRENT_STATE_VERSION = 1


class RunHistory(BaseModel):
    """Root state model persisted to .ralph/state.json."""

    version: int = Field(default=CURRENT_STATE_VERSION)
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    prd_path: Optional[str] = None
    status: str = Field(default=LoopState.IDLE.value)
    iterations: list[IterationSummary] = Field(default_factory=list)
    metrics: RunMetrics = Field(default_factory=RunMetrics)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    error: Optional[str] = None


class StateTracker:
    """Manages the persisted summary of the current (or last) run."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / "state.json"
        self.state = RunHistory()

    @staticmethod
    def _migrate_state(raw: dict) -> dict:
        """Migrate older state formats to current version."""
        if "version" not in raw:
            raw["version"] = 1
            logger.info("Migrated state file: added version=1")
        return raw

    def load(self) -> Result[RunHistory]:
        """Load state from disk. Returns defaults if file doesn't exist."""
        if not self.state_path.exists():
            logger.debug("No existing state at %s", self.state_path)
            return Result.ok(self.state)

        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
            raw = self._migrate_state(raw)
            self.state = RunHistory.model_validate(raw)
            return Result.ok(self.state)
        except json.JSONDecodeError as e:
            return Result.fail(f"Corrupt state file: {e}", "JSON_ERROR")
        except Exception as e:
            return Result.fail(f"State load failed: {e}", "LOAD_ERROR")

    def save(self) -> Result[None]:
        """Persist current state to disk."""
        try:
            atomic_write_text(self.state_path, self.state.model_dump_json(indent=2))
            return Result.ok(None)
        except Exception as e:
            return Result.fail(f"State save failed: {e}", "SAVE_ERROR")

    def start_run(self, prd_path: str | Path) -> None:
        """Begin a fresh run history; the previous run's file is overwritten on save."""
        self.state = RunHistory(
            prd_path=str(prd_path),
            status=LoopState.RUNNING.value,
            start_time=datetime.now(timezone.utc).isoformat(),
        )

    def record_iteration(self, record: IterationRecord) -> None:
        """Append a finished iteration and update aggregated metrics."""
        summary = IterationSummary(
            iteration=record.index,
            status=record.status.value,
            exit_code=record.exit_code,
            completion_signal=record.completion_signal,
            duration_ms=record.duration_ms,
            output_chars=len(record.output),
            tasks_migrated=record.tasks_migrated,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        self.state.iterations.append(summary)

        metrics = self.state.metrics
        metrics.total_duration_ms += summary.duration_ms
        metrics.tasks_migrated += summary.tasks_migrated
        if record.status == IterationStatus.SUCCEEDED:
            metrics.succeeded_count += 1
        elif record.status == IterationStatus.FAILED:
            metrics.failed_count += 1
        elif record.status == IterationStatus.KILLED:
            metrics.killed_count += 1

    def finish(self, state: LoopState, error: Optional[str] = None) -> None:
        """Mark the run as ended in the given terminal state."""
        self.state.status = state.value
        self.state.error = error
        self.state.end_time = datetime.now(timezone.utc).isoformat()
        if state == LoopState.FAILED:
            logger.error("Run failed: %s", error)

    def get_metrics(self) -> RunMetrics:
        """Return current aggregated metrics."""
        return self.state.metrics
