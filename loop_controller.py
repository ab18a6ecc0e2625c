"""Iteration loop controller for driving a coding agent through a PRD backlog.

Primary entry point. Each iteration re-reads the backlog, launches the agent
with the fixed instructional payload, watches its output stream for the
completion marker and for operator kill requests, then reconciles finished
tasks into the completed log before deciding whether to go again.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.text import Text

from agent_invoker import AgentExit, AgentHandle, AgentInvoker
from agent_prompt import build_payload
from completion_detector import CompletionDetector
from config import RalphConfig, load_config
from control_layer import OUTCOME_STYLES, ControlLayer, HeadlessControl
from errors import RalphError
from log_setup import setup_logging
from run_state import (
    OUTCOME_LABELS,
    IterationRecord,
    IterationStatus,
    LoopState,
    RunContext,
)
from state_tracker import StateTracker
from task_store import Backlog, TaskStore

logger = logging.getLogger(__name__)

# Exit codes
EXIT_COMPLETE = 0
EXIT_MAX_ITERATIONS = 1
EXIT_STOPPED = 2
EXIT_FATAL = 3
EXIT_KILLED = 130

EXIT_CODES: dict[LoopState, int] = {
    LoopState.STOPPED_BY_COMPLETION: EXIT_COMPLETE,
    LoopState.STOPPED_BY_CAP: EXIT_MAX_ITERATIONS,
    LoopState.STOPPED_BY_OPERATOR: EXIT_STOPPED,
    LoopState.FAILED: EXIT_FATAL,
    LoopState.KILLED: EXIT_KILLED,
}

DEFAULT_PRD_PATH = "plans/prd.json"


@dataclass
class RunResult:
    """Terminal outcome of one controller run."""

    state: LoopState
    iterations: int
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.state, EXIT_FATAL)


class LoopController:
    """Sequences agent iterations against a PRD until a terminal state."""

    def __init__(
        self,
        prd_path: str | Path,
        config: RalphConfig,
        project_path: str | Path = ".",
        context: Optional[RunContext] = None,
        invoker: Optional[AgentInvoker] = None,
        store: Optional[TaskStore] = None,
        skip_preflight: bool = False,
    ) -> None:
        self.project_path = Path(project_path).resolve()
        prd = Path(prd_path)
        self.prd_path = prd if prd.is_absolute() else self.project_path / prd
        self.config = config
        self.skip_preflight = skip_preflight

        self.context = context or RunContext()
        self.store = store or TaskStore(
            self.prd_path,
            completed_filename=config.files.completed_filename,
            progress_filename=config.files.progress_filename,
        )
        self.invoker = invoker or AgentInvoker(
            config.agent, kill_grace_seconds=config.limits.kill_grace_seconds
        )
        self.detector = CompletionDetector(
            config.patterns.completion_markers,
            case_sensitive=config.patterns.case_sensitive,
        )
        self.state_dir = self.project_path / config.files.state_dir
        self.tracker = StateTracker(self.state_dir)

    def _write_trace_event(self, event_type: str, **data) -> None:
        """Append a structured event to .ralph/trace.jsonl for observability."""
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "iteration": self.context.iteration,
            **data,
        }
        try:
            trace_path = self.state_dir / "trace.jsonl"
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            max_size = self.config.limits.trace_max_size_bytes
            if max_size > 0 and trace_path.exists() and trace_path.stat().st_size > max_size:
                trace_path.replace(trace_path.with_suffix(".jsonl.1"))
            with open(trace_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.warning("Failed to write trace event: %s", e)

    def run(self) -> RunResult:
        """Execute the loop until a terminal state. Never raises RalphError."""
        cap = self.config.limits.max_iterations
        self.context.reset(max_iterations=cap)

        logger.info("=" * 60)
        logger.info("Ralph loop")
        logger.info("Project: %s", self.project_path)
        logger.info("PRD: %s", self.prd_path)
        logger.info("Max iterations: %s", cap if cap is not None else "unbounded")
        logger.info("Agent: %s", " ".join(self.config.agent.command))
        logger.info("=" * 60)

        previous = self.tracker.load()
        if previous.success and previous.data and previous.data.end_time:
            logger.debug("Previous run ended as %s", previous.data.status)
        self.tracker.start_run(self.prd_path)
        self._write_trace_event(
            "loop_start",
            prd_path=str(self.prd_path),
            max_iterations=cap,
            command=self.config.agent.command,
        )

        try:
            if not self.skip_preflight:
                self.context.set_status("Checking agent command...")
                self.invoker.preflight(self.project_path)
            state = self._loop()
        except RalphError as e:
            logger.error("%s: %s", type(e).__name__, e)
            self._write_trace_event("fatal_error", error_code=e.code, error=str(e))
            return self._finish(LoopState.FAILED, error=str(e))
        return self._finish(state)

    def _loop(self) -> LoopState:
        control = self.context.control
        backlog = self.store.load()
        self.context.prd_name = backlog.name
        self._refresh_counts(backlog)

        if self.store.is_exhausted(backlog):
            logger.info("Backlog %r has no open tasks; nothing to do", backlog.name)
            return LoopState.STOPPED_BY_COMPLETION

        iteration = 0
        while True:
            if control.kill_requested:
                return LoopState.KILLED
            if control.stop_requested:
                logger.info("Stop requested before iteration %d", iteration + 1)
                return LoopState.STOPPED_BY_OPERATOR

            iteration += 1
            if iteration > 1:
                backlog = self.store.load()
                self._refresh_counts(backlog)
                if self.store.is_exhausted(backlog):
                    logger.info("Backlog exhausted before iteration %d", iteration)
                    return LoopState.STOPPED_BY_COMPLETION

            record, backlog = self._run_iteration(iteration)
            if record.status == IterationStatus.KILLED:
                return LoopState.KILLED

            decision = self._decide(record, backlog)
            if decision is not None:
                return decision

    def _run_iteration(self, iteration: int) -> tuple[IterationRecord, Optional[Backlog]]:
        """Run one agent invocation and reconcile the backlog afterwards."""
        ctx = self.context
        cap = self.config.limits.max_iterations
        logger.info("")
        logger.info("=" * 60)
        if cap is not None:
            logger.info("ITERATION %d / %d", iteration, cap)
        else:
            logger.info("ITERATION %d", iteration)
        logger.info("=" * 60)

        payload = build_payload(
            self.store.prd_path,
            self.store.completed_path,
            self.store.progress_path,
            cwd=self.project_path,
            template=self.config.agent.prompt_template,
            markers=self.config.patterns.completion_markers,
        )
        self.detector.reset()
        ctx.state = LoopState.RUNNING
        ctx.set_status("Spawning agent...")

        handle = self.invoker.run(payload, self.project_path)
        record = IterationRecord(index=iteration, buffer=handle.buffer)
        ctx.records.append(record)
        self._write_trace_event("iteration_start", pid=handle.pid)
        ctx.set_status("Waiting for agent... (q=stop after this, r=resume, Ctrl+C=kill)")

        agent_exit = self._supervise(handle, record)
        record.finish(agent_exit.status, agent_exit.returncode)
        if self.detector.update(handle.buffer):
            record.completion_signal = True

        if record.status == IterationStatus.KILLED:
            logger.warning(
                "Iteration %d killed by operator (%d chars of output kept)",
                iteration, len(record.output),
            )
            self._end_iteration(record)
            return record, None

        if record.status == IterationStatus.FAILED:
            logger.warning(
                "Iteration %d failed (exit code %s); the next iteration will pick up from here",
                iteration, record.exit_code,
            )
        else:
            logger.info("Iteration %d finished in %.1fs", iteration, record.duration_ms / 1000)

        ctx.set_status("Reconciling completed tasks...")
        backlog = self.store.load()
        completed = self.store.load_completed()
        report = self.store.migrate_completed(backlog, completed)
        record.tasks_migrated = len(report.migrated)
        if report.changed:
            self._write_trace_event(
                "tasks_migrated",
                migrated=[t.description for t in report.migrated],
                duplicates_skipped=report.duplicates_skipped,
            )
        self._refresh_counts(backlog, completed_count=len(completed))

        self._end_iteration(record)
        return record, backlog

    def _supervise(self, handle: AgentHandle, record: IterationRecord) -> AgentExit:
        """Wait for the agent, feeding the detector and honouring kill requests."""
        control = self.context.control
        poll = self.config.limits.poll_interval_seconds
        try:
            while not handle.done():
                if control.kill_requested:
                    self.context.set_status("Killing agent...")
                    handle.interrupt()
                    break
                if not record.completion_signal and self.detector.update(handle.buffer):
                    record.completion_signal = True
                    self.context.set_status("Completion marker seen; waiting for agent to exit...")
                control.wait_for_kill(poll)
            return handle.wait()
        except BaseException:
            handle.interrupt()
            raise

    def _end_iteration(self, record: IterationRecord) -> None:
        self.tracker.record_iteration(record)
        saved = self.tracker.save()
        if not saved.success:
            logger.warning("Could not persist run state: %s", saved.error)
        self._write_trace_event(
            "iteration_end",
            status=record.status.value,
            exit_code=record.exit_code,
            completion_signal=record.completion_signal,
            duration_ms=record.duration_ms,
            tasks_migrated=record.tasks_migrated,
        )

    def _decide(self, record: IterationRecord, backlog: Backlog) -> Optional[LoopState]:
        """Terminal state after a finished iteration, or None to keep going."""
        control = self.context.control
        exhausted = self.store.is_exhausted(backlog)

        if record.completion_signal:
            if self.config.completion_gate.require_exhausted_backlog and not exhausted:
                logger.warning(
                    "COMPLETION REJECTED: agent signalled completion but %d task(s) remain open",
                    len(backlog.tasks),
                )
                self._write_trace_event("completion_rejected", open_tasks=len(backlog.tasks))
            else:
                logger.info("Completion marker detected! Backlog is complete.")
                self._write_trace_event("completion_detected", open_tasks=len(backlog.tasks))
                return LoopState.STOPPED_BY_COMPLETION

        if exhausted:
            logger.info("All tasks migrated to the completed log.")
            return LoopState.STOPPED_BY_COMPLETION

        cap = self.config.limits.max_iterations
        if cap is not None and record.index >= cap:
            logger.warning("Reached max iterations (%d)", cap)
            return LoopState.STOPPED_BY_CAP

        if control.kill_requested:
            return LoopState.KILLED

        if control.stop_requested:
            logger.info("Stop was queued during iteration %d; not starting another", record.index)
            return LoopState.STOPPED_BY_OPERATOR

        return None

    def _refresh_counts(self, backlog: Backlog, completed_count: Optional[int] = None) -> None:
        self.context.remaining_tasks = len(backlog.tasks)
        if completed_count is None:
            completed_count = len(self.store.load_completed())
        self.context.completed_tasks = completed_count

    def _finish(self, state: LoopState, error: Optional[str] = None) -> RunResult:
        ctx = self.context
        ctx.state = state
        ctx.error = error
        label = OUTCOME_LABELS[state]
        ctx.set_status(f"{label}: {error}" if error else label)

        self.tracker.finish(state, error)
        saved = self.tracker.save()
        if not saved.success:
            logger.warning("Could not persist run state: %s", saved.error)
        result = RunResult(state=state, iterations=ctx.iteration, error=error)
        self._write_trace_event(
            "loop_end", exit_code=result.exit_code, status=state.value, error=error
        )
        self._log_summary(result)
        return result

    def _log_summary(self, result: RunResult) -> None:
        """Log final loop summary."""
        metrics = self.tracker.get_metrics()
        logger.info("")
        logger.info("=" * 60)
        logger.info("LOOP ENDED: %s", OUTCOME_LABELS[result.state])
        logger.info("Total iterations: %d", result.iterations)
        logger.info("Tasks migrated this run: %d", metrics.tasks_migrated)
        logger.info("Failed iterations: %d", metrics.failed_count)
        logger.info(
            "Open tasks: %d, completed: %d",
            self.context.remaining_tasks, self.context.completed_tasks,
        )
        if result.error:
            logger.info("Error: %s", result.error)
        logger.info("=" * 60)


def _print_final_report(console: Console, context: RunContext, result: RunResult) -> None:
    style = OUTCOME_STYLES[result.state]
    console.print()
    console.rule(f"[{style}]{OUTCOME_LABELS[result.state]}[/{style}]")
    console.print(f"Iterations: {result.iterations}")
    console.print(f"Open tasks: {context.remaining_tasks}  Completed: {context.completed_tasks}")
    if result.error:
        console.print(f"[red]Error:[/red] {escape(result.error)}", highlight=False)
    last = context.live_record
    if last is not None:
        tail = "\n".join(last.output.splitlines()[-40:])
        if tail:
            console.rule(f"Last agent output (iteration {last.index}, {last.status.value})")
            console.print(Text.from_ansi(tail))


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Drive a coding agent through a PRD backlog, one task per iteration"
    )
    parser.add_argument("prd", nargs="?", default=DEFAULT_PRD_PATH, help="Path to the PRD JSON file")
    parser.add_argument("-n", "--max-iterations", type=int, default=None, help="Iteration cap (default: unbounded)")
    parser.add_argument("--project", default=".", help="Project directory the agent works in")
    parser.add_argument("--max-turns", type=int, default=None, help="Max agent turns per iteration")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--no-ui", action="store_true", help="Stream output instead of the interactive view")
    parser.add_argument(
        "--require-exhausted-backlog", action="store_true",
        help="Ignore the completion marker while open tasks remain",
    )
    parser.add_argument("--skip-preflight", action="store_true", help="Skip the agent command check")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    args = parser.parse_args()

    if args.max_iterations is not None and args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")
    if args.max_turns is not None and args.max_turns < 1:
        parser.error("--max-turns must be at least 1")

    project_path = Path(args.project).resolve()
    config_path = args.config or (project_path / ".ralph" / "config.json")
    config_result = load_config(config_path)
    if not config_result.success:
        setup_logging(verbose=args.verbose, json_log=args.json_log)
        logger.error("Config error: %s", config_result.error)
        sys.exit(EXIT_FATAL)
    config = config_result.data

    # Apply CLI overrides
    if args.max_iterations is not None:
        config.limits.max_iterations = args.max_iterations
    if args.max_turns is not None:
        config.agent.max_turns = args.max_turns
    if args.require_exhausted_backlog:
        config.completion_gate.require_exhausted_backlog = True

    interactive = (
        config.ui.enabled
        and not args.no_ui
        and not args.json_log
        and ControlLayer.supported()
    )
    context = RunContext()
    if interactive:
        console = Console()
        control = ControlLayer(context, config.ui, console=console)
        log_file = project_path / config.files.state_dir / "ralph.log"
        setup_logging(
            verbose=args.verbose,
            log_file=log_file,
            extra_handlers=[control.log_handler],
            redact_patterns=config.security.log_redact_patterns,
        )
    else:
        control = HeadlessControl(context)
        setup_logging(
            verbose=args.verbose,
            json_log=args.json_log,
            redact_patterns=config.security.log_redact_patterns,
        )

    controller = LoopController(
        prd_path=args.prd,
        config=config,
        project_path=project_path,
        context=context,
        skip_preflight=args.skip_preflight,
    )
    with control:
        result = controller.run()

    if interactive:
        _print_final_report(console, context, result)
        console.print(f"[dim]Full log: {escape(str(log_file))}[/dim]")
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
