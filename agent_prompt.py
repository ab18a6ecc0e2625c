"""Instructional payload handed to the agent on every iteration."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from config import DEFAULT_COMPLETION_MARKER

logger = logging.getLogger(__name__)

# Placeholders: {prd_path} {completed_path} {progress_path} {marker}
# Other braces are passed through literally.
DEFAULT_PROMPT_TEMPLATE = """@{prd_path} @{progress_path}
1. Find the highest priority feature to work on and work only on that feature.
This should be the one you decide has the highest priority, not necessarily the 1st on the list.
2. Run the repo's quality gates (format/lint/typecheck/build/tests) listed in the PRD's quality_gates using project-native commands. If a gate is missing, note it.
3. Update the PRD with the work that was done. Set passes=true on a task only once every one of its steps is verified.
4. Move completed tasks: for any task with passes=true in {prd_path}, move it to {completed_path}.
Add a completed_at field with today's date (YYYY-MM-DD). Remove the passes field.
Keep only category, description, steps, and completed_at. Skip tasks already in {completed_path}.
5. Append your progress to {progress_path}.
Use this to leave a note for the next person working in the code base.
6. Make a git commit of that feature.
Only work on a single feature.
If, while implementing the feature, you notice the PRD is complete (with no tasks remaining), output {marker}"""


def _display_path(path: Path, cwd: Optional[Path]) -> str:
    if cwd is None:
        return str(path)
    try:
        return os.path.relpath(path, cwd)
    except ValueError:
        # Different drives on Windows
        return str(path)


def render_template(template: str, **values: str) -> str:
    """Substitute ``{name}`` placeholders, leaving every other brace untouched."""
    text = template
    for name, value in values.items():
        text = text.replace("{" + name + "}", value)
    return text


def build_payload(
    prd_path: Path,
    completed_path: Path,
    progress_path: Path,
    cwd: Optional[Path] = None,
    template: Optional[str] = None,
    markers: Sequence[str] = (DEFAULT_COMPLETION_MARKER,),
) -> str:
    """Render the payload, with paths relative to the agent's working directory."""
    marker = markers[0] if markers else DEFAULT_COMPLETION_MARKER
    text = render_template(
        template or DEFAULT_PROMPT_TEMPLATE,
        prd_path=_display_path(prd_path, cwd),
        completed_path=_display_path(completed_path, cwd),
        progress_path=_display_path(progress_path, cwd),
        marker=marker,
    )
    if template and not any(m.lower() in text.lower() for m in markers):
        logger.warning(
            "Custom prompt template never mentions a completion marker; "
            "the loop will only stop on exhaustion, the cap or the operator"
        )
    return text
