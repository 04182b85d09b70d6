from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Optional

from .mining.hash_search import difficulty_to_target
from .mining.nonce_domain import (EXTRA_NONCE_SIZE, HEADER_HASH_SIZE,
                                  PUBLIC_KEY_SIZE, TIMESTAMP_SIZE)

log = logging.getLogger("xelis_miner.job")


@dataclass(frozen=True)
class SessionInfo:
    """
    Per-connection secrets assigned by the pool in the subscribe result.

    Attributes:
        extra_nonce: 32 bytes placed at [48:80) of every work record.
        public_key: 32 bytes identifying the pool-side beneficiary, at [80:112).
    """

    extra_nonce: bytes
    public_key: bytes

    def __post_init__(self) -> None:
        if len(self.extra_nonce) != EXTRA_NONCE_SIZE:
            log.warning(
                "extraNonce is %d bytes (expected %d); it will be fitted to the work layout",
                len(self.extra_nonce),
                EXTRA_NONCE_SIZE,
            )
        if len(self.public_key) != PUBLIC_KEY_SIZE:
            log.warning(
                "publicKey is %d bytes (expected %d); it will be fitted to the work layout",
                len(self.public_key),
                PUBLIC_KEY_SIZE,
            )


@dataclass(frozen=True)
class Job:
    """
    Immutable snapshot of a pool job for the search threads.

    Attributes:
        job_id: Identifier provided by the pool, echoed verbatim in mining.submit.
        timestamp: 8 raw bytes placed at [32:40) of the work record.
        header_hash: 32-byte header work hash placed at [0:32).
        target: 256-bit share target captured when the job arrived.
        difficulty: Difficulty the target was derived from (telemetry only).
        generation: Monotonic counter distinguishing successive jobs.
    """

    job_id: str
    timestamp: bytes
    header_hash: bytes
    target: int
    difficulty: int = 1
    generation: int = 0
    received_at: float = field(default_factory=time.monotonic, compare=False)


class JobState:
    """
    Authoritative difficulty/target and current Job.

    Only the router thread writes here; workers never see this object, they
    receive a Job snapshot instead.
    """

    def __init__(self, difficulty: int = 1) -> None:
        self._lock = threading.Lock()
        self._difficulty = int(difficulty)
        self._target = difficulty_to_target(self._difficulty)
        self._generation = 0
        self._current: Optional[Job] = None

    @property
    def difficulty(self) -> int:
        return self._difficulty

    @property
    def target(self) -> int:
        return self._target

    @property
    def current(self) -> Optional[Job]:
        return self._current

    @property
    def generation(self) -> int:
        return self._generation

    def set_difficulty(self, value: object) -> bool:
        """
        Apply a mining.set_difficulty value. Returns False (and changes
        nothing) for non-numeric values and anything below 1; fractional
        difficulties are truncated.
        """
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            log.warning("Ignoring non-numeric difficulty %r", value)
            return False
        if value != value or value < 1:  # NaN or below the minimum
            log.warning("Ignoring difficulty %r (must be >= 1)", value)
            return False
        if value == float("inf"):
            log.warning("Ignoring infinite difficulty")
            return False
        difficulty = int(value)
        with self._lock:
            self._difficulty = difficulty
            self._target = difficulty_to_target(difficulty)
        return True

    def new_job(self, job_id: str, timestamp: bytes, header_hash: bytes) -> Job:
        """Snapshot the current target into a new Job and make it current."""
        if len(header_hash) != HEADER_HASH_SIZE:
            log.warning(
                "Job %s header hash is %d bytes (expected %d)",
                job_id,
                len(header_hash),
                HEADER_HASH_SIZE,
            )
        if len(timestamp) != TIMESTAMP_SIZE:
            log.warning(
                "Job %s timestamp is %d bytes (expected %d)",
                job_id,
                len(timestamp),
                TIMESTAMP_SIZE,
            )
        with self._lock:
            self._generation += 1
            job = Job(
                job_id=job_id,
                timestamp=bytes(timestamp),
                header_hash=bytes(header_hash),
                target=self._target,
                difficulty=self._difficulty,
                generation=self._generation,
            )
            self._current = job
        return job

    def retarget_current(self) -> Optional[Job]:
        """
        Re-snapshot the current job with the current target under a new
        generation. Returns None when no job has arrived yet.
        """
        with self._lock:
            if self._current is None:
                return None
            self._generation += 1
            job = replace(
                self._current,
                target=self._target,
                difficulty=self._difficulty,
                generation=self._generation,
                received_at=time.monotonic(),
            )
            self._current = job
        return job
