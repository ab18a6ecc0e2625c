"""Configuration validation for the ralph loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COMPLETION_MARKER = "<promise>COMPLETE</promise>"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class LimitsConfig(BaseModel):
    """Iteration limits and polling cadence."""

    max_iterations: Optional[int] = Field(
        default=None, ge=1,
        description="Iteration cap; null runs until the backlog is complete",
    )
    poll_interval_seconds: float = Field(
        default=0.1, gt=0, le=5.0,
        description="How often the controller checks the running agent",
    )
    kill_grace_seconds: float = Field(
        default=5.0, ge=0, le=60.0,
        description="Delay between SIGTERM and SIGKILL when interrupting the agent",
    )
    trace_max_size_bytes: int = Field(
        default=10_000_000, ge=0,
        description="Max trace.jsonl size before rotation (0=unlimited)",
    )


class AgentConfig(BaseModel):
    """External agent CLI settings."""

    command: list[str] = Field(default_factory=lambda: ["claude"], min_length=1)
    permission_mode: Optional[str] = Field(default="bypassPermissions")
    prompt_flag: Optional[str] = Field(
        default="-p",
        description="Flag preceding the payload; null appends it positionally",
    )
    max_turns: Optional[int] = Field(default=None, ge=1, le=1000)
    extra_args: list[str] = Field(default_factory=list)
    prompt_template: Optional[str] = Field(
        default=None,
        description="Overrides the built-in instructions; see agent_prompt.py for placeholders",
    )
    read_chunk_bytes: int = Field(default=4096, ge=1, le=1_048_576)

    def build_args(self, payload: str) -> list[str]:
        """Assemble the full agent command line for one iteration."""
        args = list(self.command)
        if self.permission_mode:
            args.extend(["--permission-mode", self.permission_mode])
        if self.max_turns is not None:
            args.extend(["--max-turns", str(self.max_turns)])
        args.extend(self.extra_args)
        if self.prompt_flag:
            args.append(self.prompt_flag)
        args.append(payload)
        return args


class PatternsConfig(BaseModel):
    """Pattern matching for completion detection."""

    completion_markers: list[str] = Field(
        default_factory=lambda: [DEFAULT_COMPLETION_MARKER], min_length=1
    )
    case_sensitive: bool = Field(default=False)


class CompletionGateConfig(BaseModel):
    """Cross-check the agent's completion marker against the backlog."""

    require_exhausted_backlog: bool = Field(
        default=False,
        description="Only honour the completion marker once no open tasks remain",
    )


class FilesConfig(BaseModel):
    """File names resolved relative to the backlog and project directories."""

    completed_filename: str = Field(default="completed.json")
    progress_filename: str = Field(default="progress.txt")
    state_dir: str = Field(default=".ralph")


class SecurityConfig(BaseModel):
    """Security and redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"ghp_[\w]+",
        ]
    )


class UiConfig(BaseModel):
    """Interactive control layer settings."""

    enabled: bool = Field(default=True)
    refresh_per_second: float = Field(default=8.0, gt=0, le=60.0)
    page_lines: int = Field(default=10, ge=1, le=200)


class RalphConfig(BaseModel):
    """Root configuration model for .ralph/config.json."""

    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    completion_gate: CompletionGateConfig = Field(default_factory=CompletionGateConfig)
    files: FilesConfig = Field(default_factory=FilesConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    ui: UiConfig = Field(default_factory=UiConfig)


def load_config(config_path: str | Path) -> Result[RalphConfig]:
    """Load and validate loop config from a JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(RalphConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = RalphConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
