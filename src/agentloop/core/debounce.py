from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional


@dataclass
class Debouncer:
    """Minimum spacing between two actions for the same key."""
    min_interval: float
    clock: Callable[[], float] = time.monotonic
    _last: Dict[str, float] = field(default_factory=dict)

    def allow(self, key: str) -> bool:
        """Record an action for *key* if the window has elapsed."""
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.min_interval:
            return False
        self._last[key] = now
        return True

    def remaining(self, key: str) -> float:
        last = self._last.get(key)
        if last is None:
            return 0.0
        return max(self.min_interval - (self.clock() - last), 0.0)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)
