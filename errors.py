"""Error taxonomy for the ralph loop.

Fatal errors unwind to LoopController.run and end the run with a FAILED
state. Recoverable outcomes (a failed or killed iteration) are recorded on
the iteration record instead of being raised.
"""

from __future__ import annotations


class RalphError(Exception):
    """Base class for fatal loop errors."""

    code = "RALPH_ERROR"


class NotFoundError(RalphError):
    """The backlog file does not exist."""

    code = "NOT_FOUND"


class ParseError(RalphError):
    """The backlog file is not valid JSON or does not match the schema."""

    code = "PARSE_ERROR"


class LaunchError(RalphError):
    """The agent binary is missing or cannot be executed."""

    code = "LAUNCH_ERROR"


class StoreWriteError(RalphError):
    """Writing the backlog or completed log failed, even after a retry."""

    code = "WRITE_ERROR"
