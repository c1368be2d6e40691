from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

logger = logging.getLogger("agentloop.todos")

TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
DONE_STATUSES = frozenset({"completed", "cancelled"})


@dataclass(frozen=True)
class TaskItem:
    """One entry of the host's task list for a session (read-only here)."""
    id: str
    content: str
    status: str = "pending"
    priority: str = "medium"

    @property
    def is_incomplete(self) -> bool:
        return self.status not in DONE_STATUSES

    @classmethod
    def from_dict(cls, d: dict) -> "TaskItem":
        return cls(
            id=str(d.get("id", "")),
            content=str(d.get("content", "")),
            status=str(d.get("status", "pending")),
            priority=str(d.get("priority", "medium")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status,
            "priority": self.priority,
        }


def parse_task_items(payload: Any) -> list[TaskItem]:
    """Parse a host task-list response.

    Accepts a bare list or a ``{"data": [...]}`` envelope.  Entries that are
    not mappings are skipped.
    """
    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        return []
    items: list[TaskItem] = []
    for entry in payload:
        if isinstance(entry, TaskItem):
            items.append(entry)
        elif isinstance(entry, dict):
            items.append(TaskItem.from_dict(entry))
        else:
            logger.debug("Skipping malformed task item: %r", entry)
    return items


def incomplete_items(items: Iterable[TaskItem]) -> list[TaskItem]:
    return [item for item in items if item.is_incomplete]
