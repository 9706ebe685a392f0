# backend/txguard/chains/circuit_breaker.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


class BreakerState(str, Enum):
    ARMED = "armed"
    TRIGGERED = "triggered"


@dataclass
class CircuitBreaker:
    """Per-resource latch with a cooldown.

    Once triggered the breaker stays triggered until strictly after
    ``trigger_time + cooldown``. The reset happens lazily, the next time the
    breaker is queried. Re-triggering a triggered breaker restarts the
    cooldown from the new trigger time, so it can only ever be extended.
    """
    key: str
    cooldown: timedelta = timedelta(minutes=10)
    threshold: float = 0.2
    clock: Clock = field(default=utc_now, repr=False)

    _state: BreakerState = BreakerState.ARMED
    _trigger_time: Optional[datetime] = None
    _trip_count: int = 0
    _last_reason: Optional[str] = None

    def trigger(self, reason: str = "") -> None:
        now = self.clock()
        if self._trigger_time is None or self._state == BreakerState.ARMED or now > self._trigger_time:
            self._trigger_time = now
        self._state = BreakerState.TRIGGERED
        self._trip_count += 1
        self._last_reason = reason or self._last_reason

    def is_triggered(self) -> bool:
        if self._state == BreakerState.TRIGGERED and self._trigger_time is not None:
            if self.clock() > self._trigger_time + self.cooldown:
                self._state = BreakerState.ARMED
        return self._state == BreakerState.TRIGGERED

    def reset(self) -> None:
        self._state = BreakerState.ARMED
        self._trigger_time = None

    def state(self) -> BreakerState:
        self.is_triggered()
        return self._state

    @property
    def trigger_time(self) -> Optional[datetime]:
        return self._trigger_time

    @property
    def resets_at(self) -> Optional[datetime]:
        if self._trigger_time is None:
            return None
        return self._trigger_time + self.cooldown

    def snapshot(self) -> Dict[str, Any]:
        state = self.state()
        return {
            "key": self.key,
            "state": state.value,
            "trigger_time": self._trigger_time.isoformat() if self._trigger_time else None,
            "cooldown_seconds": self.cooldown.total_seconds(),
            "threshold": self.threshold,
            "trip_count": self._trip_count,
            "last_reason": self._last_reason,
        }
