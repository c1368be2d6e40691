"""Template loader for injected instruction text.

Loads markdown templates from ``agentloop/templates/`` and renders them with
Python ``str.format()`` placeholders.  Operators can replace the continuation
instruction with their own file (``AGENTLOOP_CONTINUATION_TEMPLATE_PATH``);
those files use plain ``{name}`` substitution and may contain other braces.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional

from agentloop.core.todos import TaskItem

logger = logging.getLogger("agentloop.templates")

# This file lives at: agentloop/core/templates.py
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_TEMPLATES_DIR = os.path.normpath(os.path.join(_THIS_DIR, "..", "templates"))


@lru_cache(maxsize=8)
def _read_template(name: str) -> str:
    """Read a raw template file and return its contents (cached)."""
    path = os.path.join(_TEMPLATES_DIR, f"{name}.md")
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Template not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def load_template(name: str, **kwargs: Any) -> str:
    """Load a bundled template by name and render placeholders.

    Parameters
    ----------
    name : str
        Template name without extension: ``"continuation"``,
        ``"iteration_marker"``, ``"iteration_feedback"`` or
        ``"advisor_evaluation"``.
    **kwargs
        Values for ``{placeholder}`` substitution.

    Returns
    -------
    str
        Rendered template content without the trailing newline.
    """
    raw = _read_template(name)
    return raw.format(**kwargs).rstrip("\n")


def load_prompt_template(path: str, placeholders: Mapping[str, Any]) -> Optional[str]:
    """Render a user-supplied template file, or None if it cannot be read."""
    if not path or not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            result = f.read()
    except OSError as exc:
        logger.warning("Failed to read prompt template %s: %s", path, exc)
        return None
    for key, value in placeholders.items():
        result = result.replace("{" + key + "}", str(value))
    return result


def format_task_list(items: Iterable[TaskItem]) -> str:
    return "\n".join(
        f"{i}. [{item.status}] {item.content}" for i, item in enumerate(items, start=1)
    )


def continuation_template(
    items: list[TaskItem],
    custom_path: Optional[str] = None,
) -> str:
    """Return the continuation instruction for a session's task list."""
    pending = [item for item in items if item.is_incomplete]
    placeholders = {
        "pending_count": len(pending),
        "completed_count": len(items) - len(pending),
        "total_count": len(items),
        "task_list": format_task_list(pending),
    }
    if custom_path:
        custom = load_prompt_template(custom_path, placeholders)
        if custom is not None:
            return custom
        logger.warning("Continuation template %s unavailable; using built-in", custom_path)
    return load_template("continuation", **placeholders)


def iteration_marker_template(*, iteration: int, max_iterations: int, marker: str, prompt: str) -> str:
    return load_template(
        "iteration_marker",
        iteration=iteration,
        max_iterations=max_iterations,
        marker=marker,
        prompt=prompt,
    )


def iteration_feedback_template(*, iteration: int, max_iterations: int, feedback: str, prompt: str) -> str:
    return load_template(
        "iteration_feedback",
        iteration=iteration,
        max_iterations=max_iterations,
        completed_iterations=iteration - 1,
        feedback=feedback or "Please continue working on the task.",
        prompt=prompt,
    )


def advisor_evaluation_template(
    *,
    session_id: str,
    iteration: int,
    max_iterations: int,
    prompt: str,
    transcript: str,
) -> str:
    return load_template(
        "advisor_evaluation",
        session_id=session_id,
        iteration=iteration,
        max_iterations=max_iterations,
        prompt=prompt,
        transcript=transcript[-4000:] if transcript else "(No transcript available)",
    )


# Headers of the instructions this package injects; the host echoes them back
# as user messages.
INJECTED_PREFIXES = ("[SYSTEM - AUTO-CONTINUATION]", "[ITERATION LOOP")


def is_injected_text(text: str) -> bool:
    return bool(text) and text.lstrip().startswith(INJECTED_PREFIXES)
