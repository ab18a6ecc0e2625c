"""Launch the external agent CLI and capture its output while it runs.

One AgentHandle per iteration. A reader thread pumps the merged
stdout/stderr pipe into an append-only OutputBuffer chunk by chunk, so the
control layer and the completion detector see output as it is produced. A
waiter thread resolves the handle's future once the process exits.
"""

from __future__ import annotations

import codecs
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import AgentConfig
from errors import LaunchError
from run_state import IterationStatus

logger = logging.getLogger(__name__)


class OutputBuffer:
    """Append-only text buffer with a single writer and any number of readers.

    Readers snapshot the current chunk count and join up to it; appended
    chunks are never mutated, so readers never block the writer.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._closed = threading.Event()

    def append(self, text: str) -> None:
        if text:
            self._chunks.append(text)

    def snapshot(self) -> str:
        count = len(self._chunks)
        return "".join(self._chunks[:count])

    def read_from(self, offset: int) -> tuple[str, int]:
        """Return text after ``offset`` and the new offset."""
        text = self.snapshot()
        return text[offset:], len(text)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def close(self) -> None:
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __len__(self) -> int:
        return len(self.snapshot())


@dataclass(frozen=True)
class AgentExit:
    """How an agent process ended."""

    returncode: Optional[int]
    killed: bool = False

    @property
    def status(self) -> IterationStatus:
        if self.killed:
            return IterationStatus.KILLED
        if self.returncode == 0:
            return IterationStatus.SUCCEEDED
        return IterationStatus.FAILED


def kill_process_tree(pid: int, force: bool = False) -> None:
    """Signal a process and its children by PID."""
    if sys.platform == "win32":
        try:
            result = subprocess.run(
                ["taskkill", "/F", "/PID", str(pid), "/T"],
                capture_output=True, text=True, timeout=10,
            )
            if result.returncode != 0:
                logger.warning(
                    "taskkill PID %d failed (rc=%d): %s",
                    pid, result.returncode, result.stderr[:200],
                )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("taskkill PID %d exception: %s", pid, e)
        return

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        os.killpg(os.getpgid(pid), sig)
    except (ProcessLookupError, PermissionError):
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass


class AgentHandle:
    """A running agent process: live buffer, exit future and interrupt()."""

    def __init__(
        self,
        proc: subprocess.Popen,
        chunk_size: int = 4096,
        kill_grace_seconds: float = 5.0,
        drain_timeout_seconds: float = 2.0,
    ) -> None:
        self._proc = proc
        self._chunk_size = chunk_size
        self._kill_grace = kill_grace_seconds
        self._drain_timeout = drain_timeout_seconds
        self.buffer = OutputBuffer()
        self.future: Future[AgentExit] = Future()
        self._interrupt_lock = threading.Lock()
        self._interrupted = False
        self._escalation: Optional[threading.Timer] = None
        self._eof = threading.Event()

        self._reader = threading.Thread(
            target=self._pump, name=f"agent-reader-{proc.pid}", daemon=True
        )
        self._waiter = threading.Thread(
            target=self._await_exit, name=f"agent-waiter-{proc.pid}", daemon=True
        )
        self._reader.start()
        self._waiter.start()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> AgentExit:
        return self.future.result(timeout=timeout)

    def interrupt(self) -> bool:
        """Terminate the process. Returns False when there was nothing to stop."""
        with self._interrupt_lock:
            if self._interrupted or self._proc.poll() is not None:
                return False
            self._interrupted = True
            logger.warning("Interrupting agent PID %d", self._proc.pid)
            if self._kill_grace <= 0:
                kill_process_tree(self._proc.pid, force=True)
            else:
                kill_process_tree(self._proc.pid)
                self._escalation = threading.Timer(self._kill_grace, self._force_kill)
                self._escalation.daemon = True
                self._escalation.start()
            return True

    def _force_kill(self) -> None:
        if self._proc.poll() is None:
            logger.warning(
                "Agent PID %d still alive %.1fs after SIGTERM, sending SIGKILL",
                self._proc.pid, self._kill_grace,
            )
            kill_process_tree(self._proc.pid, force=True)

    def _pump(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = self._proc.stdout
        try:
            while True:
                chunk = stream.read1(self._chunk_size)
                if not chunk:
                    break
                self.buffer.append(decoder.decode(chunk))
        except (OSError, ValueError) as e:
            logger.debug("Agent output pipe closed: %s", e)
        finally:
            self.buffer.append(decoder.decode(b"", final=True))
            self._eof.set()

    def _await_exit(self) -> None:
        try:
            returncode = self._proc.wait()
            if not self._eof.wait(self._drain_timeout):
                # A grandchild inherited the pipe; keep reading in the
                # background but do not hold the iteration open for it.
                logger.warning(
                    "Agent PID %d exited but its output pipe is still open", self._proc.pid
                )
            if self._escalation is not None:
                self._escalation.cancel()
            self.buffer.close()
            self.future.set_result(AgentExit(returncode=returncode, killed=self._interrupted))
        except BaseException as e:  # the future must always resolve
            self.buffer.close()
            self.future.set_exception(e)


class AgentInvoker:
    """Starts one agent process per iteration."""

    def __init__(
        self,
        agent_config: AgentConfig,
        kill_grace_seconds: float = 5.0,
        drain_timeout_seconds: float = 2.0,
    ) -> None:
        self.config = agent_config
        self.kill_grace_seconds = kill_grace_seconds
        self.drain_timeout_seconds = drain_timeout_seconds

    def preflight(self, cwd: Optional[str | Path] = None) -> str:
        """Resolve the agent binary, raising LaunchError if it is unusable.

        A command containing a path separator is resolved against ``cwd``,
        the directory run() launches it from.
        """
        binary = self.config.command[0]
        has_dir = os.sep in binary or (os.altsep is not None and os.altsep in binary)
        if has_dir and cwd is not None and not os.path.isabs(binary):
            candidate = Path(cwd) / binary
            resolved = shutil.which(str(candidate))
        else:
            resolved = shutil.which(binary)
        if resolved is None:
            raise LaunchError(
                f"Agent command {binary!r} not found on PATH or not executable"
            )
        logger.info("Agent preflight OK: %s", resolved)
        return resolved

    def run(self, payload: str, cwd: str | Path) -> AgentHandle:
        """Start the agent with the given payload and return immediately."""
        args = self.config.build_args(payload)
        logger.info("Spawning: %s <payload %d chars>", " ".join(args[:-1]), len(payload))

        popen_kwargs: dict = {}
        if sys.platform == "win32":
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                **popen_kwargs,
            )
        except FileNotFoundError as e:
            raise LaunchError(f"Agent command not found: {args[0]}") from e
        except PermissionError as e:
            raise LaunchError(f"Agent command not executable: {args[0]}") from e
        except OSError as e:
            raise LaunchError(f"Failed to launch agent {args[0]}: {e}") from e

        logger.debug("Agent PID: %d", proc.pid)
        return AgentHandle(
            proc,
            chunk_size=self.config.read_chunk_bytes,
            kill_grace_seconds=self.kill_grace_seconds,
            drain_timeout_seconds=self.drain_timeout_seconds,
        )
