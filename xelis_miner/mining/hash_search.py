from __future__ import annotations

"""
Nonce search loop for XelisHashV2 work.

Design goals
------------
- One loop per worker thread, bound to one immutable Job for its whole life.
- No floating point in the hot predicate: the digest is read as a 256-bit
  integer and compared against the Job's precomputed 256-bit target.
- Low-allocation hot path: the 112-byte work record is built once and only
  the nonce slot is rewritten per attempt (struct.pack_into).
- Cooperative cancellation: the stop event is polled on every attempt, so a
  cancelled worker exits after at most one hash-and-compare cycle.
- Batched accounting: hashes are counted locally and flushed to the shared
  counter once per interval, and exactly once more on exit.

Usage sketch
------------
    from xelis_miner.mining.hash_search import NonceSearch, difficulty_to_target

    search = NonceSearch(job, session, thread_id=0, oracle=oracle,
                         on_share=submit, on_hashes=stats.add_hashes)
    search.run(stop_event)

Helpers:
    * difficulty_to_target(difficulty)
    * digest_to_int256(digest, byte_order)
    * meets_target(digest, target, byte_order)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from .errors import OracleError
from .nonce_domain import (COUNTER_MASK, NONCE_OFFSET, NONCE_SIZE, THREAD_SHIFT,
                           WorkBuffer, compose_nonce)

if TYPE_CHECKING:  # pragma: no cover - types only
    from ..job import Job, SessionInfo
    from .oracle import HashOracle

log = logging.getLogger("xelis_miner.hash_search")

# Constants
UINT256_MAX = (1 << 256) - 1
FLUSH_INTERVAL = 1.0


@dataclass(frozen=True)
class FoundShare:
    """Result of a successful share trial."""

    job_id: str
    thread_id: int
    nonce: int
    nonce_bytes: bytes  # little-endian, as placed in the work record
    digest: bytes
    ts: float  # discovery timestamp (monotonic seconds)

    @property
    def nonce_hex(self) -> str:
        return self.nonce_bytes.hex()


# ─────────────────────────────────────────────────────────────────────────────
# Numeric helpers
# ─────────────────────────────────────────────────────────────────────────────


def difficulty_to_target(difficulty: int) -> int:
    """
    Convert a pool difficulty into a 256-bit target:

        target = (2^256 - 1) // difficulty

    A digest qualifies as a share iff int(digest) <= target.
    """
    if difficulty < 1:
        raise ValueError(f"difficulty must be >= 1, got {difficulty}")
    return UINT256_MAX // int(difficulty)


def digest_to_int256(digest: bytes, byte_order: str = "big") -> int:
    """Interpret a 32-byte digest as an unsigned 256-bit integer."""
    if len(digest) != 32:
        raise ValueError("digest must be 32 bytes for int256 conversion")
    return int.from_bytes(digest, byte_order, signed=False)


def meets_target(digest: bytes, target: int, byte_order: str = "big") -> bool:
    return digest_to_int256(digest, byte_order) <= target


# ─────────────────────────────────────────────────────────────────────────────
# Search loop
# ─────────────────────────────────────────────────────────────────────────────


class NonceSearch:
    """
    Iterates worker `thread_id`'s nonce partition against a single Job.

    Nonces are `(thread_id << 56) | counter` with the counter starting at 1,
    so workers of one generation never try the same value.

    `on_share(FoundShare)` is called from the search thread and must not block
    for long; `on_hashes(n)` receives the batched hash count.
    """

    def __init__(
        self,
        job: "Job",
        session: "SessionInfo",
        *,
        thread_id: int,
        oracle: "HashOracle",
        on_share: Callable[[FoundShare], None],
        on_hashes: Callable[[int], None],
        flush_interval: float = FLUSH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        scratchpad: Optional[Any] = None,
    ) -> None:
        compose_nonce(thread_id, 0)  # validates the partition index
        self.job = job
        self.thread_id = thread_id
        self._oracle = oracle
        self._on_share = on_share
        self._on_hashes = on_hashes
        self._flush_interval = flush_interval
        self._clock = clock
        self._scratchpad = scratchpad if scratchpad is not None else oracle.new_scratchpad()
        self._work = WorkBuffer(
            job.header_hash, job.timestamp, session.extra_nonce, session.public_key
        )

        self.counter = 0
        self.hashes_done = 0  # total hashes, flushed or not
        self.hashes_flushed = 0
        self.shares_found = 0

    def _flush(self, pending: int) -> None:
        if pending:
            self._on_hashes(pending)
            self.hashes_flushed += pending

    def run(self, stop_event: threading.Event) -> int:
        """
        Search until `stop_event` is set (or the partition is exhausted).
        Returns the number of hashes computed. Raises OracleError if the
        hash function fails; pending hashes are flushed first.
        """
        # stack-local bindings for speed
        oracle = self._oracle
        scratchpad = self._scratchpad
        set_nonce = self._work.set_nonce
        target = self.job.target
        byte_order = oracle.byte_order
        base = self.thread_id << THREAD_SHIFT
        clock = self._clock
        interval = self._flush_interval
        is_stopped = stop_event.is_set

        pending = 0
        next_flush = clock() + interval
        try:
            while not is_stopped():
                if self.counter >= COUNTER_MASK:
                    log.warning(
                        "worker %d exhausted its nonce partition for job %s",
                        self.thread_id,
                        self.job.job_id,
                    )
                    break
                self.counter += 1
                nonce = base | self.counter
                work = set_nonce(nonce)

                try:
                    digest = oracle(work, scratchpad)
                except Exception as e:
                    raise OracleError(
                        message=f"hash oracle failed: {e}",
                        context={"thread": self.thread_id, "job": self.job.job_id},
                    ) from e
                pending += 1
                self.hashes_done += 1

                if int.from_bytes(digest, byte_order) <= target:
                    self.shares_found += 1
                    self._on_share(
                        FoundShare(
                            job_id=self.job.job_id,
                            thread_id=self.thread_id,
                            nonce=nonce,
                            nonce_bytes=work[NONCE_OFFSET : NONCE_OFFSET + NONCE_SIZE],
                            digest=bytes(digest),
                            ts=clock(),
                        )
                    )

                now = clock()
                if now >= next_flush:
                    self._flush(pending)
                    pending = 0
                    next_flush = now + interval
        finally:
            self._flush(pending)
        return self.hashes_done


__all__ = [
    "UINT256_MAX",
    "FLUSH_INTERVAL",
    "FoundShare",
    "difficulty_to_target",
    "digest_to_int256",
    "meets_target",
    "NonceSearch",
]
