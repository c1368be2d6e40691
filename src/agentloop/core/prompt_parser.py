"""Parse ``<iterationLoop>`` requests embedded in user prompts.

Two forms are recognized, the paired tag first::

    <iterationLoop max="20" marker="DONE">Build the parser</iterationLoop>
    <iterationLoop task="Build the parser" max="20" />
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

TAG_PATTERN = re.compile(r"<iterationLoop(?:\s+([^>]*))?>(\s*[\s\S]*?)</iterationLoop>", re.IGNORECASE)
SELF_CLOSING_PATTERN = re.compile(r"<iterationLoop\s+([\s\S]*?)\s*/>", re.IGNORECASE)

_EXTRA_NEWLINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class IterationLoopTagResult:
    found: bool
    cleaned_prompt: str
    task: Optional[str] = None
    max_iterations: Optional[int] = None
    marker: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "task": self.task,
            "max_iterations": self.max_iterations,
            "marker": self.marker,
            "cleaned_prompt": self.cleaned_prompt,
        }


def _get_int_attr(attrs: Optional[str], name: str) -> Optional[int]:
    if not attrs:
        return None
    match = re.search(rf"{name}\s*=\s*[\"']?(\d+)[\"']?", attrs)
    return int(match.group(1)) if match else None


def _get_str_attr(attrs: Optional[str], name: str) -> Optional[str]:
    if not attrs:
        return None
    match = re.search(rf"{name}\s*=\s*[\"']([^\"']+)[\"']", attrs)
    return match.group(1) if match else None


def parse_iteration_loop_tag(text: str) -> IterationLoopTagResult:
    """Extract an iteration request from *text*.

    When no tag is present the input comes back untouched (not trimmed).
    """
    pattern = TAG_PATTERN
    match = TAG_PATTERN.search(text)
    if match:
        attrs = (match.group(1) or "").strip() or None
        task: Optional[str] = (match.group(2) or "").strip()
    else:
        pattern = SELF_CLOSING_PATTERN
        match = SELF_CLOSING_PATTERN.search(text)
        if not match:
            return IterationLoopTagResult(found=False, cleaned_prompt=text)
        attrs = (match.group(1) or "").strip() or None
        task = _get_str_attr(attrs, "task")

    cleaned = pattern.sub("", text, count=1)
    cleaned = _EXTRA_NEWLINES.sub("\n\n", cleaned).strip()
    return IterationLoopTagResult(
        found=True,
        cleaned_prompt=cleaned,
        task=task,
        max_iterations=_get_int_attr(attrs, "max"),
        marker=_get_str_attr(attrs, "marker"),
    )


def build_iteration_start_prompt(
    task: str,
    max_iterations: int,
    marker: str,
    user_prompt: Optional[str] = None,
) -> str:
    """Build the first instruction of an iteration loop.

    The marker is accepted but never shown here; the agent learns it from the
    first continuation instruction, after it has done some work.
    """
    parts = [
        f"[ITERATION LOOP STARTED - 1/{max_iterations}]",
        "",
        f"Task: {task}",
        "",
        "Begin working on this task now.",
    ]
    if user_prompt and user_prompt.strip():
        parts.extend(["", "---", "", user_prompt.strip()])
    return "\n".join(parts)
