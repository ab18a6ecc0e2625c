"""Per-run shared state: iteration records, control flags and the run context.

The loop controller owns a RunContext and is the only writer of its
iteration records. The control layer reads the records and writes only
the ControlState flags and its navigation cursor.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from agent_invoker import OutputBuffer


class IterationStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"


class LoopState(str, Enum):
    """Controller states. Everything except IDLE and RUNNING is terminal."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED_BY_COMPLETION = "stopped_by_completion"
    STOPPED_BY_CAP = "stopped_by_cap"
    STOPPED_BY_OPERATOR = "stopped_by_operator"
    KILLED = "killed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self not in (LoopState.IDLE, LoopState.RUNNING)


# Operator-facing labels, one per terminal state, so "backlog finished" can
# never be mistaken for "run aborted".
OUTCOME_LABELS: dict[LoopState, str] = {
    LoopState.STOPPED_BY_COMPLETION: "Backlog complete",
    LoopState.STOPPED_BY_CAP: "Iteration cap reached",
    LoopState.STOPPED_BY_OPERATOR: "Stopped by operator",
    LoopState.KILLED: "Killed by operator",
    LoopState.FAILED: "Run aborted (fatal error)",
}


@dataclass
class IterationRecord:
    """One loop pass. The buffer keeps growing while status is RUNNING."""

    index: int
    buffer: OutputBuffer
    status: IterationStatus = IterationStatus.RUNNING
    completion_signal: bool = False
    exit_code: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    tasks_migrated: int = 0

    @property
    def output(self) -> str:
        return self.buffer.snapshot()

    @property
    def duration_ms(self) -> int:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return int((end - self.started_at) * 1000)

    def finish(self, status: IterationStatus, exit_code: Optional[int]) -> None:
        self.status = status
        self.exit_code = exit_code
        self.finished_at = time.monotonic()


@dataclass
class ViewCursor:
    """Which iteration record the operator is looking at, and where.

    ``index`` None means "follow the live (newest) record"; ``scroll`` None
    means "stick to the bottom of the output".
    """

    index: Optional[int] = None
    scroll: Optional[int] = None
    live_index: Optional[int] = None

    def resolve(self, record_count: int) -> Optional[int]:
        """List position of the displayed record, or None when there are none."""
        if record_count == 0:
            return None
        if self.index is None:
            return record_count - 1
        return min(self.index, record_count - 1)

    def previous(self, record_count: int) -> None:
        current = self.resolve(record_count)
        if current is None or current == 0:
            return
        self.index = current - 1
        self.scroll = None

    def next(self, record_count: int) -> None:
        current = self.resolve(record_count)
        if current is None:
            return
        if current + 1 >= record_count - 1:
            self.follow_live()
        else:
            self.index = current + 1
            self.scroll = None

    def follow_live(self) -> None:
        self.index = None
        self.scroll = None

    def track_live(self, live_index: Optional[int]) -> None:
        """Note the newest record; a new one re-attaches a live view to its tail."""
        if self.index is None and live_index != self.live_index:
            self.scroll = None
        self.live_index = live_index

    @property
    def following_live(self) -> bool:
        return self.index is None

    def top_line(self, total_lines: int, height: int) -> int:
        """First visible line for a viewport of ``height`` lines."""
        bottom = max(0, total_lines - height)
        if self.scroll is None:
            return bottom
        return max(0, min(self.scroll, bottom))

    def scroll_up(self, amount: int, total_lines: int, height: int) -> None:
        self.scroll = max(0, self.top_line(total_lines, height) - amount)

    def scroll_down(self, amount: int, total_lines: int, height: int) -> None:
        bottom = max(0, total_lines - height)
        target = self.top_line(total_lines, height) + amount
        self.scroll = None if target >= bottom else target


class ControlState:
    """Operator requests: queued stop, immediate kill, and the view cursor."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._kill = threading.Event()
        self.cursor = ViewCursor()

    def reset(self) -> None:
        self._stop.clear()
        self._kill.clear()
        self.cursor = ViewCursor()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def kill_requested(self) -> bool:
        return self._kill.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def cancel_stop(self) -> None:
        self._stop.clear()

    def request_kill(self) -> None:
        self._kill.set()

    def wait_for_kill(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on a kill request."""
        return self._kill.wait(timeout)


@dataclass
class RunContext:
    """Everything the control layer needs to render one run."""

    prd_name: str = ""
    max_iterations: Optional[int] = None
    records: list[IterationRecord] = field(default_factory=list)
    control: ControlState = field(default_factory=ControlState)
    remaining_tasks: int = 0
    completed_tasks: int = 0
    state: LoopState = LoopState.IDLE
    status_message: str = "Initialising..."
    error: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)

    def reset(self, prd_name: str = "", max_iterations: Optional[int] = None) -> None:
        self.prd_name = prd_name
        self.max_iterations = max_iterations
        self.records = []
        self.control.reset()
        self.remaining_tasks = 0
        self.completed_tasks = 0
        self.state = LoopState.IDLE
        self.status_message = "Initialising..."
        self.error = None
        self.started_at = time.monotonic()

    @property
    def iteration(self) -> int:
        return self.records[-1].index if self.records else 0

    @property
    def live_record(self) -> Optional[IterationRecord]:
        return self.records[-1] if self.records else None

    @property
    def outcome_label(self) -> Optional[str]:
        return OUTCOME_LABELS.get(self.state)

    def set_status(self, message: str) -> None:
        self.status_message = message
