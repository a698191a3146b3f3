"""
CircuitBreaker: stops keeper loops from hammering an unreachable ledger.

Counts consecutive ledger transport errors (not reverts: a revert means the
ledger is up). When the streak hits the threshold the circuit trips and loops
skip their scan cycles until the cooldown expires. Repeated trips back off
exponentially.

Single event loop, no internal locks.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("keeper")


@dataclass
class CircuitBreakerConfig:
    error_threshold: int = 5  # consecutive transport errors to trip
    cooldown_sec: float = 10.0
    backoff_multiplier: float = 2.0  # applied to cooldown on repeated trips
    max_backoff: float = 32.0


class CircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        on_trip: Optional[Callable[[str, float], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.error_streak: int = 0
        self._tripped: bool = False
        self._cooldown_until: float = 0.0
        self._trip_count: int = 0
        self._last_where: Optional[str] = None
        self._on_trip = on_trip
        self._on_reset = on_reset
        self._log_event = log_event or self._default_log
        self._clock = clock

    def _default_log(self, event: str, level: str = "info", **kwargs: Any) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}))

    @property
    def is_tripped(self) -> bool:
        """Auto-resets once the cooldown has passed."""
        if self._tripped and self._clock() >= self._cooldown_until:
            self._reset()
            return False
        return self._tripped

    @property
    def cooldown_remaining(self) -> float:
        if not self._tripped:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    def record_error(self, where: str, error: BaseException) -> bool:
        """Returns True if this error tripped the circuit."""
        self.error_streak += 1
        self._last_where = where
        self._log_event("ledger_transport_error", level="warning", where=where, err=str(error), streak=self.error_streak)
        if self.error_streak >= self.config.error_threshold:
            return self._trip(where)
        return False

    def record_success(self) -> None:
        if self.error_streak > 0:
            self._log_event("ledger_error_streak_reset", streak=self.error_streak)
            self.error_streak = 0

    def _trip(self, where: str) -> bool:
        if self._tripped:
            return False
        self._tripped = True
        self._trip_count += 1
        base_cooldown = max(1.0, self.config.cooldown_sec)
        backoff = min(self.config.backoff_multiplier ** min(self._trip_count - 1, 5), self.config.max_backoff)
        cooldown = base_cooldown * backoff
        self._cooldown_until = self._clock() + cooldown
        self._log_event(
            "circuit_open",
            level="warning",
            where=where,
            streak=self.error_streak,
            trip_count=self._trip_count,
            cooldown_sec=cooldown,
        )
        if self._on_trip:
            try:
                self._on_trip(where, cooldown)
            except Exception as exc:
                self._log_event("circuit_callback_error", level="error", callback="on_trip", err=str(exc))
        return True

    def _reset(self) -> None:
        was_tripped = self._tripped
        self._tripped = False
        self.error_streak = 0
        if was_tripped:
            self._log_event("circuit_closed", trip_count=self._trip_count)
            if self._on_reset:
                try:
                    self._on_reset()
                except Exception as exc:
                    self._log_event("circuit_callback_error", level="error", callback="on_reset", err=str(exc))

    def force_reset(self) -> None:
        self._cooldown_until = 0.0
        self._reset()

    def force_trip(self, cooldown_sec: Optional[float] = None) -> None:
        """Manual pause, e.g. while an operator sorts out a partial failure."""
        self._tripped = True
        self._trip_count += 1
        cooldown = cooldown_sec if cooldown_sec is not None else self.config.cooldown_sec
        self._cooldown_until = self._clock() + cooldown
        self._log_event("circuit_force_trip", level="warning", cooldown_sec=cooldown)

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_remaining": round(self.cooldown_remaining, 1),
            "last_where": self._last_where,
        }
