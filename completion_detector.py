"""Detect the agent's "backlog complete" sentinel in streamed output."""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from agent_invoker import OutputBuffer
from config import DEFAULT_COMPLETION_MARKER

logger = logging.getLogger(__name__)


class CompletionDetector:
    """Scans the whole accumulated buffer for a completion marker.

    The full snapshot is re-scanned on every growth event rather than just
    the newest chunk, so a marker split across two chunks is still found.
    Once fired the detector stays fired until reset().
    """

    def __init__(
        self,
        markers: Sequence[str] = (DEFAULT_COMPLETION_MARKER,),
        case_sensitive: bool = False,
    ) -> None:
        if not markers:
            raise ValueError("at least one completion marker is required")
        flags = 0 if case_sensitive else re.IGNORECASE
        self._pattern = re.compile("|".join(re.escape(m) for m in markers), flags)
        self.markers = list(markers)
        self._fired = False
        self._scanned_length = -1
        self._matched: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def matched(self) -> Optional[str]:
        return self._matched

    def scan(self, snapshot: str) -> bool:
        """Stateless check of one buffer snapshot."""
        return self._pattern.search(snapshot) is not None

    def update(self, buffer: OutputBuffer) -> bool:
        """Re-scan ``buffer`` if it grew since the last call. Returns fired."""
        if self._fired:
            return True
        snapshot = buffer.snapshot()
        if len(snapshot) == self._scanned_length:
            return False
        self._scanned_length = len(snapshot)
        match = self._pattern.search(snapshot)
        if match is not None:
            self._fired = True
            self._matched = match.group(0)
            logger.info("Completion marker detected in agent output: %s", self._matched)
        return self._fired

    def reset(self) -> None:
        self._fired = False
        self._scanned_length = -1
        self._matched = None
