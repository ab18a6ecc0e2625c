"""Backlog (PRD) and completed-log persistence.

The backlog is the JSON document the agent edits between iterations. Tasks
it marks ``passes: true`` are moved into the completed log, stamped with the
date they were reconciled. Both files are only ever replaced whole via a
temp-file rename, so a crash mid-write leaves the previous version intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import NotFoundError, ParseError, StoreWriteError

logger = logging.getLogger(__name__)


class Task(BaseModel):
    """One open unit of backlog work."""

    model_config = ConfigDict(extra="allow")

    category: str
    description: str
    steps: list[str] = Field(default_factory=list)
    passes: bool = False

    def identity(self) -> tuple[str, str, tuple[str, ...]]:
        return (self.category, self.description, tuple(self.steps))


class CompletedTask(BaseModel):
    """A migrated task. Only these four fields are kept in the completed log."""

    model_config = ConfigDict(extra="ignore")

    category: str
    description: str
    steps: list[str] = Field(default_factory=list)
    completed_at: str

    def identity(self) -> tuple[str, str, tuple[str, ...]]:
        return (self.category, self.description, tuple(self.steps))


class Backlog(BaseModel):
    """Root PRD document."""

    model_config = ConfigDict(extra="allow")

    name: str
    quality_gates: list[str] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)


@dataclass
class MigrationReport:
    """Outcome of one migrate_completed call."""

    migrated: list[CompletedTask] = field(default_factory=list)
    duplicates_skipped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.migrated) or self.duplicates_skipped > 0


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


class TaskStore:
    """Loads and reconciles the backlog file and its completed log."""

    def __init__(
        self,
        prd_path: str | Path,
        completed_filename: str = "completed.json",
        progress_filename: str = "progress.txt",
        today: Callable[[], date] = date.today,
    ) -> None:
        self.prd_path = Path(prd_path)
        self.completed_path = self.prd_path.parent / completed_filename
        self.progress_path = self.prd_path.parent / progress_filename
        self._today = today
        self._completed_corrupt = False

    def load(self) -> Backlog:
        """Load the backlog, raising NotFoundError or ParseError."""
        if not self.prd_path.exists():
            raise NotFoundError(f"PRD file not found at {self.prd_path}")
        try:
            raw = json.loads(self.prd_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in PRD {self.prd_path}: {e}") from e
        except OSError as e:
            raise ParseError(f"Error reading PRD {self.prd_path}: {e}") from e
        try:
            return Backlog.model_validate(raw)
        except ValidationError as e:
            raise ParseError(f"PRD {self.prd_path} does not match the expected schema: {e}") from e

    def load_completed(self) -> list[CompletedTask]:
        """Load the completed log. Missing or malformed files read as empty."""
        self._completed_corrupt = False
        if not self.completed_path.exists():
            return []
        try:
            raw = json.loads(self.completed_path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("expected a JSON array")
            return [CompletedTask.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(
                "Ignoring malformed completed log %s (%s); treating it as empty",
                self.completed_path, e,
            )
            self._completed_corrupt = True
            return []

    @staticmethod
    def is_exhausted(backlog: Backlog) -> bool:
        return not backlog.tasks

    def migrate_completed(
        self,
        backlog: Backlog,
        completed_log: Optional[list[CompletedTask]] = None,
    ) -> MigrationReport:
        """Move every ``passes: true`` task from the backlog into the completed log.

        Tasks already present in the completed log (same category, description
        and steps) are dropped from the backlog without being appended again.
        Mutates both arguments and persists them; nothing is written when no
        task passes.
        """
        if completed_log is None:
            completed_log = self.load_completed()

        report = MigrationReport()
        passing = [t for t in backlog.tasks if t.passes]
        if not passing:
            return report

        stamp = self._today().isoformat()
        known = {entry.identity() for entry in completed_log}
        for task in passing:
            if task.identity() in known:
                report.duplicates_skipped += 1
                logger.info("Task already in completed log, dropping: %s", task.description)
                continue
            entry = CompletedTask(
                category=task.category,
                description=task.description,
                steps=list(task.steps),
                completed_at=stamp,
            )
            completed_log.append(entry)
            known.add(entry.identity())
            report.migrated.append(entry)

        backlog.tasks = [t for t in backlog.tasks if not t.passes]

        # Completed log first: if we die before the backlog is rewritten, the
        # next migration finds the tasks there and only drops them.
        self._preserve_corrupt_completed()
        self._write_with_retry(
            self.completed_path,
            _dump_json([entry.model_dump(mode="json") for entry in completed_log]),
        )
        self._write_with_retry(self.prd_path, _dump_json(backlog.model_dump(mode="json")))

        logger.info(
            "Migrated %d task(s) to %s (%d duplicate(s) skipped)",
            len(report.migrated), self.completed_path.name, report.duplicates_skipped,
        )
        return report

    def _preserve_corrupt_completed(self) -> None:
        if not self._completed_corrupt or not self.completed_path.exists():
            return
        backup = self.completed_path.with_name(self.completed_path.name + ".corrupt")
        try:
            os.replace(self.completed_path, backup)
            logger.warning("Moved malformed completed log aside to %s", backup)
        except OSError as e:
            logger.warning("Could not back up malformed completed log: %s", e)
        self._completed_corrupt = False

    @staticmethod
    def _write_with_retry(path: Path, text: str) -> None:
        try:
            atomic_write_text(path, text)
            return
        except OSError as e:
            logger.warning("Write to %s failed (%s), retrying once", path, e)
        try:
            atomic_write_text(path, text)
        except OSError as e:
            raise StoreWriteError(f"Failed to write {path}: {e}") from e
