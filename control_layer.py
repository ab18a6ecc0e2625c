"""Operator-facing control surface for a running loop.

ControlLayer owns the terminal while a run is live: a rich Live view of the
displayed iteration's output plus an input thread that turns key presses
into stop/resume/kill requests and navigation. HeadlessControl is the
fallback when there is no TTY: it streams the live iteration's output and
maps SIGINT onto the same requests.

Both only read iteration records and only write ControlState.
"""

from __future__ import annotations

import collections
import logging
import os
import re
import select
import signal
import sys
import threading
import time
from enum import Enum
from typing import Optional, TextIO

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config import UiConfig
from run_state import IterationRecord, LoopState, RunContext

try:
    import termios
except ImportError:  # Windows has no termios; the headless fallback is used
    termios = None

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    STOP = "stop"
    RESUME = "resume"
    KILL = "kill"
    PREVIOUS = "previous"
    NEXT = "next"
    SCROLL_UP = "scroll_up"
    SCROLL_DOWN = "scroll_down"
    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    FOLLOW_LIVE = "follow_live"


KEY_BINDINGS: dict[str, Intent] = {
    "q": Intent.STOP,
    "Q": Intent.STOP,
    "r": Intent.RESUME,
    "R": Intent.RESUME,
    "\x03": Intent.KILL,  # Ctrl+C arrives as a byte with ISIG off
    "x": Intent.KILL,
    "\x1b[D": Intent.PREVIOUS,
    "\x1bOD": Intent.PREVIOUS,
    "h": Intent.PREVIOUS,
    "\x1b[C": Intent.NEXT,
    "\x1bOC": Intent.NEXT,
    "l": Intent.NEXT,
    "\x1b[A": Intent.SCROLL_UP,
    "\x1bOA": Intent.SCROLL_UP,
    "k": Intent.SCROLL_UP,
    "\x1b[B": Intent.SCROLL_DOWN,
    "\x1bOB": Intent.SCROLL_DOWN,
    "j": Intent.SCROLL_DOWN,
    "\x1b[5~": Intent.PAGE_UP,
    "\x1b[6~": Intent.PAGE_DOWN,
    "\x1b[F": Intent.FOLLOW_LIVE,
    "\x1bOF": Intent.FOLLOW_LIVE,
    "\x1b[4~": Intent.FOLLOW_LIVE,
    "G": Intent.FOLLOW_LIVE,
}

_BINDINGS_BY_LENGTH = sorted(KEY_BINDINGS.items(), key=lambda item: len(item[0]), reverse=True)

KEY_HINTS = (
    "q stop after this  r resume  ^C/x kill  "
    "←/→ iteration  ↑/↓ scroll  PgUp/PgDn page  End live"
)

OUTCOME_STYLES: dict[LoopState, str] = {
    LoopState.IDLE: "dim",
    LoopState.RUNNING: "bold green",
    LoopState.STOPPED_BY_COMPLETION: "bold bright_green",
    LoopState.STOPPED_BY_CAP: "bold yellow",
    LoopState.STOPPED_BY_OPERATOR: "bold cyan",
    LoopState.KILLED: "bold red",
    LoopState.FAILED: "bold magenta",
}


def _skip_escape(data: str, start: int) -> int:
    """Index just past an unrecognised escape sequence beginning at ``start``."""
    end = start + 1
    if end < len(data) and data[end] in "[O":
        end += 1
        while end < len(data) and not ("@" <= data[end] <= "~"):
            end += 1
        end += 1
    return min(end, len(data))


def decode_keys(data: str) -> list[Intent]:
    """Translate raw terminal input into intents. Unknown keys are dropped."""
    intents: list[Intent] = []
    pos = 0
    while pos < len(data):
        for sequence, intent in _BINDINGS_BY_LENGTH:
            if data.startswith(sequence, pos):
                intents.append(intent)
                pos += len(sequence)
                break
        else:
            if data[pos] == "\x1b":
                pos = _skip_escape(data, pos)
            else:
                pos += 1
    return intents


_HEADER_RE = re.compile(r"^\s{0,3}#{1,6}\s")
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s")
_INLINE_CODE_RE = r"`[^`]+`"
_BOLD_RE = r"\*\*[^*]+\*\*"


def highlight_output(window: str) -> Text:
    """Render agent output: ANSI lines as-is, plain lines with light markdown styling."""
    lines: list[Text] = []
    for line in window.split("\n"):
        if "\x1b" in line:
            lines.append(Text.from_ansi(line))
            continue
        text = Text(line)
        if _HEADER_RE.match(line):
            text.stylize("bold cyan")
        else:
            bullet = _BULLET_RE.match(line)
            if bullet:
                text.stylize("yellow", 0, bullet.end())
            text.highlight_regex(_BOLD_RE, "bold")
        text.highlight_regex(_INLINE_CODE_RE, "bold magenta")
        lines.append(text)
    body = Text("\n").join(lines)
    body.no_wrap = True
    body.overflow = "ellipsis"
    return body


def _format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


class RecentLogHandler(logging.Handler):
    """Keeps the last few formatted log records for the in-view log pane."""

    def __init__(self, capacity: int = 200) -> None:
        super().__init__()
        self._records: collections.deque[tuple[int, str]] = collections.deque(maxlen=capacity)
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._records.append((record.levelno, self.format(record)))
        except Exception:
            self.handleError(record)

    def lines(self, limit: Optional[int] = None) -> list[tuple[int, str]]:
        snapshot = list(self._records)
        if limit is not None:
            snapshot = snapshot[-limit:] if limit > 0 else []
        return snapshot


class ControlLayer:
    """Full-screen interactive view with keyboard control of the loop."""

    HEADER_SIZE = 4
    FOOTER_SIZE = 3
    LOG_PANE_LINES = 4

    def __init__(
        self,
        context: RunContext,
        ui_config: Optional[UiConfig] = None,
        console: Optional[Console] = None,
        stdin: Optional[TextIO] = None,
    ) -> None:
        self.context = context
        self.config = ui_config or UiConfig()
        self.console = console or Console()
        self._stdin = stdin if stdin is not None else sys.stdin
        self.log_handler = RecentLogHandler()
        self._closing = threading.Event()
        self._input_thread: Optional[threading.Thread] = None
        self._live: Optional[Live] = None
        self._saved_tty = None

    @staticmethod
    def supported(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> bool:
        """True when both ends of the terminal are TTYs we can put in cbreak mode."""
        if termios is None:
            return False
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        try:
            return stdin.isatty() and stdout.isatty()
        except (AttributeError, ValueError):
            return False

    # -- input ------------------------------------------------------------

    def handle_input(self, data: str) -> list[Intent]:
        intents = decode_keys(data)
        for intent in intents:
            self.apply(intent)
        return intents

    def apply(self, intent: Intent) -> None:
        """Apply one operator intent to the control state."""
        ctx = self.context
        control = ctx.control
        cursor = control.cursor

        if intent is Intent.STOP:
            if not control.stop_requested:
                control.request_stop()
                logger.info("Stop queued: the loop will end after iteration %d", ctx.iteration)
            return
        if intent is Intent.RESUME:
            if control.stop_requested:
                control.cancel_stop()
                logger.info("Stop cancelled: the loop will continue")
            return
        if intent is Intent.KILL:
            if not control.kill_requested:
                control.request_kill()
                logger.warning("Kill requested by operator")
            return

        record_count = len(ctx.records)
        if intent is Intent.PREVIOUS:
            cursor.previous(record_count)
            return
        if intent is Intent.NEXT:
            cursor.next(record_count)
            return
        if intent is Intent.FOLLOW_LIVE:
            cursor.follow_live()
            return

        record = self.displayed_record()
        if record is None:
            return
        total = len(record.output.splitlines())
        height = self._viewport_height()
        page = self.config.page_lines
        if intent is Intent.SCROLL_UP:
            cursor.scroll_up(1, total, height)
        elif intent is Intent.SCROLL_DOWN:
            cursor.scroll_down(1, total, height)
        elif intent is Intent.PAGE_UP:
            cursor.scroll_up(page, total, height)
        elif intent is Intent.PAGE_DOWN:
            cursor.scroll_down(page, total, height)

    def _read_input(self) -> None:
        fd = self._stdin.fileno()
        while not self._closing.is_set():
            try:
                ready, _, _ = select.select([fd], [], [], 0.1)
            except (OSError, ValueError):
                break
            if not ready:
                continue
            try:
                data = os.read(fd, 64)
            except OSError:
                break
            if not data:
                break
            try:
                self.handle_input(data.decode("utf-8", errors="ignore"))
            except Exception:
                logger.exception("Failed to handle key input")

    def _enter_cbreak(self) -> None:
        fd = self._stdin.fileno()
        try:
            self._saved_tty = termios.tcgetattr(fd)
            mode = termios.tcgetattr(fd)
            mode[3] &= ~(termios.ICANON | termios.ECHO | termios.ISIG)
            mode[6][termios.VMIN] = 1
            mode[6][termios.VTIME] = 0
            termios.tcsetattr(fd, termios.TCSADRAIN, mode)
        except (termios.error, OSError) as e:
            self._saved_tty = None
            logger.warning("Could not switch terminal to key input mode: %s", e)

    def _restore_tty(self) -> None:
        if self._saved_tty is None:
            return
        try:
            termios.tcsetattr(self._stdin.fileno(), termios.TCSADRAIN, self._saved_tty)
        except (termios.error, OSError) as e:
            logger.warning("Could not restore terminal settings: %s", e)
        self._saved_tty = None

    # -- rendering --------------------------------------------------------

    def displayed_record(self) -> Optional[IterationRecord]:
        records = list(self.context.records)
        cursor = self.context.control.cursor
        cursor.track_live(records[-1].index if records else None)
        position = cursor.resolve(len(records))
        if position is None:
            return None
        return records[position]

    def _viewport_height(self) -> int:
        chrome = self.HEADER_SIZE + self.FOOTER_SIZE + self.LOG_PANE_LINES + 2 + 2
        return max(1, self.console.size.height - chrome)

    def render(self) -> Layout:
        layout = Layout(name="root")
        layout.split_column(
            Layout(self._render_header(), name="header", size=self.HEADER_SIZE),
            Layout(self._render_output(), name="body"),
            Layout(self._render_logs(), name="logs", size=self.LOG_PANE_LINES + 2),
            Layout(self._render_footer(), name="footer", size=self.FOOTER_SIZE),
        )
        return layout

    def _render_header(self) -> Panel:
        ctx = self.context
        cap = ctx.max_iterations
        iteration = f"Iteration {ctx.iteration}/{cap}" if cap is not None else f"Iteration {ctx.iteration}"
        total = ctx.completed_tasks + ctx.remaining_tasks
        grid = Table.grid(expand=True)
        grid.add_column(ratio=2)
        grid.add_column(justify="right", ratio=1)
        grid.add_row(
            Text(ctx.prd_name or "(loading PRD)", style="bold"),
            Text(f"{iteration}   Tasks {ctx.completed_tasks}/{total}"),
        )
        grid.add_row(
            Text(ctx.status_message, style="italic"),
            Text(f"Elapsed {_format_elapsed(time.monotonic() - ctx.started_at)}", style="dim"),
        )
        return Panel(grid, title="ralph", border_style="blue")

    def _render_output(self) -> Panel:
        record = self.displayed_record()
        if record is None:
            return Panel(Text("Waiting for the first iteration...", style="dim"), title="Output")

        cursor = self.context.control.cursor
        height = self._viewport_height()
        lines = record.output.splitlines()
        top = cursor.top_line(len(lines), height)
        window = "\n".join(lines[top:top + height])
        body = highlight_output(window)

        live = record is self.context.live_record and cursor.following_live
        title = f"Iteration {record.index} [{record.status.value}]"
        if record.completion_signal:
            title += " [completion marker]"
        if live:
            title += " LIVE"
        subtitle = None
        if cursor.scroll is not None and lines:
            subtitle = f"lines {top + 1}-{min(top + height, len(lines))} of {len(lines)}"
        return Panel(body, title=title, subtitle=subtitle, border_style="green" if live else "white")

    def _render_logs(self) -> Panel:
        text = Text(no_wrap=True, overflow="ellipsis")
        for i, (levelno, line) in enumerate(self.log_handler.lines(self.LOG_PANE_LINES)):
            if i:
                text.append("\n")
            style = "red" if levelno >= logging.ERROR else "yellow" if levelno >= logging.WARNING else "dim"
            text.append(line, style=style)
        return Panel(text, title="Log", border_style="dim")

    def _render_footer(self) -> Panel:
        ctx = self.context
        control = ctx.control
        if ctx.state.terminal:
            mode = Text(ctx.outcome_label or ctx.state.value, style=OUTCOME_STYLES[ctx.state])
        elif control.kill_requested:
            mode = Text("KILLING", style="bold red")
        elif control.stop_requested:
            mode = Text("STOP QUEUED", style="bold yellow")
        else:
            mode = Text(ctx.state.value.upper(), style=OUTCOME_STYLES[ctx.state])

        records = len(ctx.records)
        position = control.cursor.resolve(records)
        if control.cursor.following_live:
            view = "view: live"
        else:
            view = f"view: {(position or 0) + 1}/{records}"

        grid = Table.grid(expand=True)
        grid.add_column()
        grid.add_column(justify="right")
        grid.add_row(Text.assemble(mode, "  ", (view, "dim")), Text(KEY_HINTS, style="dim"))
        return Panel(grid, border_style="blue")

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self._closing.clear()
        self._enter_cbreak()
        self._live = Live(
            console=self.console,
            screen=True,
            refresh_per_second=self.config.refresh_per_second,
            get_renderable=self.render,
        )
        self._live.start()
        self._input_thread = threading.Thread(
            target=self._read_input, name="ralph-keys", daemon=True
        )
        self._input_thread.start()

    def stop(self) -> None:
        self._closing.set()
        if self._input_thread is not None:
            self._input_thread.join(timeout=1.0)
            self._input_thread = None
        if self._live is not None:
            self._live.stop()
            self._live = None
        self._restore_tty()

    def __enter__(self) -> ControlLayer:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class HeadlessControl:
    """Streams the live iteration's output; SIGINT queues a stop, a second kills."""

    def __init__(
        self,
        context: RunContext,
        stream: Optional[TextIO] = None,
        poll_interval: float = 0.2,
    ) -> None:
        self.context = context
        self.stream = stream if stream is not None else sys.stdout
        self.poll_interval = poll_interval
        self._closing = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._previous_handler = None
        self._interrupts = 0
        self._position = 0
        self._offsets: dict[int, int] = {}
        self._header_written = False

    def handle_interrupt(self, signum=None, frame=None) -> None:
        control = self.context.control
        self._interrupts += 1
        if self._interrupts == 1:
            control.request_stop()
            logger.warning(
                "Interrupt received: stopping after iteration %d (interrupt again to kill)",
                self.context.iteration,
            )
        else:
            control.request_kill()
            logger.warning("Second interrupt: killing the agent")

    def drain(self, final: bool = False) -> None:
        """Write any output produced since the last call, iteration by iteration.

        ``final`` also flushes output that reached an earlier iteration's
        buffer after streaming moved on (a lingering child still writing).
        """
        records = list(self.context.records)
        if final:
            for position in range(min(self._position, len(records))):
                record = records[position]
                text, self._offsets[position] = record.buffer.read_from(self._offsets.get(position, 0))
                if text:
                    self.stream.write(f"\n━━━ Iteration {record.index} (late output) ━━━\n")
                    self.stream.write(text)
        while self._position < len(records):
            record = records[self._position]
            if not self._header_written:
                self.stream.write(f"\n━━━ Iteration {record.index} ━━━\n")
                self._header_written = True
            offset = self._offsets.get(self._position, 0)
            text, self._offsets[self._position] = record.buffer.read_from(offset)
            if text:
                self.stream.write(text)
            if self._position == len(records) - 1:
                break
            self._position += 1
            self._header_written = False
        self.stream.flush()

    def _tail(self) -> None:
        while not self._closing.wait(self.poll_interval):
            self.drain()
        self.drain(final=True)

    def start(self) -> None:
        self._closing.clear()
        if threading.current_thread() is threading.main_thread():
            self._previous_handler = signal.signal(signal.SIGINT, self.handle_interrupt)
        self._thread = threading.Thread(target=self._tail, name="ralph-tail", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._closing.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._previous_handler is not None:
            signal.signal(signal.SIGINT, self._previous_handler)
            self._previous_handler = None

    def __enter__(self) -> HeadlessControl:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
