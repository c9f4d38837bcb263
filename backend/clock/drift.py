"""
Clock drift detection and tick coalescing.

A resync is requested when the locally computed clock diverges from the
server-confirmed clock by more than `drift_threshold_s`, continuously for
longer than `drift_linger_s`, and no resync happened within `resync_cooldown_s`.
All timestamps are monotonic seconds supplied by the caller.
"""
from __future__ import annotations

from typing import Optional

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DriftMonitor:
    def __init__(
        self,
        threshold_s: float | None = None,
        linger_s: float | None = None,
        cooldown_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self.threshold_s = threshold_s if threshold_s is not None else settings.drift_threshold_s
        self.linger_s = linger_s if linger_s is not None else settings.drift_linger_s
        self.cooldown_s = cooldown_s if cooldown_s is not None else settings.resync_cooldown_s
        self._exceeded_since: Optional[float] = None
        self._last_resync: Optional[float] = None
        self.last_drift_s: float = 0.0

    @property
    def last_resync(self) -> Optional[float]:
        return self._last_resync

    def observe(self, local_s: float, server_s: float, now: float) -> bool:
        """Record one comparison. Returns True when a resync should be triggered now."""
        drift = abs(local_s - server_s)
        self.last_drift_s = drift
        if drift <= self.threshold_s:
            self._exceeded_since = None
            return False

        if self._exceeded_since is None:
            self._exceeded_since = now
            return False
        if now - self._exceeded_since <= self.linger_s:
            return False
        if self._last_resync is not None and now - self._last_resync < self.cooldown_s:
            return False

        logger.warning(
            "clock_drift_detected",
            drift_s=round(drift, 3),
            local_s=round(local_s, 3),
            server_s=round(server_s, 3),
        )
        self.mark_resynced(now)
        return True

    def mark_resynced(self, now: float) -> None:
        """Also called after an explicit refetch so it counts toward the cooldown."""
        self._last_resync = now
        self._exceeded_since = None


class TickCoalescer:
    """
    Collects recompute requests between ticks so that any number of requests
    results in a single recomputation.
    """

    def __init__(self) -> None:
        self._reasons: set[str] = set()

    def request(self, reason: str) -> None:
        self._reasons.add(reason)

    @property
    def pending(self) -> bool:
        return bool(self._reasons)

    def drain(self) -> frozenset[str]:
        reasons = frozenset(self._reasons)
        self._reasons.clear()
        return reasons
