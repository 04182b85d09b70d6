"""Hash and share counters shared by the search threads, plus the periodic reporter."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .mining.errors import classify_reject

log = logging.getLogger("xelis_miner.stats")

_UNITS = ("H/s", "KH/s", "MH/s", "GH/s", "TH/s")


def human_readable_hashrate(hashrate: float) -> str:
    """Format a hashrate with the largest unit that keeps the value >= 1."""
    value = float(hashrate)
    for unit in _UNITS[:-1]:
        if abs(value) < 1000:
            return f"{value:.2f} {unit}"
        value /= 1000
    return f"{value:.2f} {_UNITS[-1]}"


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the counters."""

    hashes: int
    shares_found: int
    shares_accepted: int
    shares_rejected: int
    elapsed: float
    hashrate: float
    reject_reasons: Dict[str, int] = field(default_factory=dict)


class MiningStats:
    """
    Process-wide counters.

    Every mutation takes one short lock, so concurrent increments from many
    search threads never lose updates. Counters are independent of each
    other; a snapshot is consistent per counter, not across counters.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.start_time = clock()
        self._hashes = 0
        self._found = 0
        self._accepted = 0
        self._rejected = 0
        self._reasons: Counter[str] = Counter()

    # ---- mutation -------------------------------------------------------

    def add_hashes(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._hashes += count

    def add_share_found(self) -> None:
        with self._lock:
            self._found += 1

    def add_accepted(self) -> None:
        with self._lock:
            self._accepted += 1

    def add_rejected(self, reason: Optional[str] = None) -> None:
        category = classify_reject(reason).value
        with self._lock:
            self._rejected += 1
            self._reasons[category] += 1

    # ---- reads ----------------------------------------------------------

    @property
    def hashes(self) -> int:
        return self._hashes

    @property
    def shares_found(self) -> int:
        return self._found

    @property
    def shares_accepted(self) -> int:
        return self._accepted

    @property
    def shares_rejected(self) -> int:
        return self._rejected

    def hashrate(self, now: Optional[float] = None) -> float:
        """Total hashes divided by seconds since start; 0.0 before any time has passed."""
        elapsed = (self._clock() if now is None else now) - self.start_time
        if elapsed <= 0:
            return 0.0
        return self._hashes / elapsed

    def snapshot(self) -> StatsSnapshot:
        now = self._clock()
        with self._lock:
            hashes = self._hashes
            found, accepted, rejected = self._found, self._accepted, self._rejected
            reasons = dict(self._reasons)
        elapsed = now - self.start_time
        return StatsSnapshot(
            hashes=hashes,
            shares_found=found,
            shares_accepted=accepted,
            shares_rejected=rejected,
            elapsed=elapsed,
            hashrate=hashes / elapsed if elapsed > 0 else 0.0,
            reject_reasons=reasons,
        )

    def render(self) -> str:
        snap = self.snapshot()
        line = (
            f"Hashrate: {human_readable_hashrate(snap.hashrate)} | "
            f"Shares: {snap.shares_found} (A:{snap.shares_accepted} R:{snap.shares_rejected})"
        )
        if snap.reject_reasons:
            detail = ", ".join(f"{k}={v}" for k, v in sorted(snap.reject_reasons.items()))
            line += f" [{detail}]"
        return line


class StatsReporter(threading.Thread):
    """Logs the stats line on a fixed interval until stopped."""

    def __init__(self, stats: MiningStats, *, interval: float = 2.0) -> None:
        super().__init__(name="stats-reporter", daemon=True)
        self._stats = stats
        self._interval = max(0.1, float(interval))
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            log.info("%s", self._stats.render())
