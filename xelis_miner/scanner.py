from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from .job import Job, SessionInfo
from .mining.errors import MinerError, OracleError, normalize_exc
from .mining.hash_search import FLUSH_INTERVAL, FoundShare, NonceSearch
from .mining.nonce_domain import MAX_WORKERS
from .mining.oracle import HashOracle
from .stats import MiningStats

log = logging.getLogger("xelis_miner.scanner")

ShareCallback = Callable[[FoundShare], None]


class SearchWorker(threading.Thread):
    """
    One search thread bound to one Job for its whole life.

    Running until the generation's stop event is set, then terminal; a new
    job always gets new workers.
    """

    def __init__(
        self,
        thread_id: int,
        job: Job,
        session: SessionInfo,
        *,
        stats: MiningStats,
        oracle: HashOracle,
        on_share: ShareCallback,
        stop_event: threading.Event,
        flush_interval: float = FLUSH_INTERVAL,
    ) -> None:
        super().__init__(name=f"search-{job.generation}-{thread_id}", daemon=True)
        self.thread_id = thread_id
        self.job = job
        self._stats = stats
        self._on_share = on_share
        self._stop_event = stop_event
        self.error: Optional[MinerError] = None
        self.search = NonceSearch(
            job,
            session,
            thread_id=thread_id,
            oracle=oracle,
            on_share=self._found,
            on_hashes=stats.add_hashes,
            flush_interval=flush_interval,
        )

    def _found(self, share: FoundShare) -> None:
        self._stats.add_share_found()
        log.info(
            "[thread %d] found share job=%s nonce=%s hash=%s...",
            share.thread_id,
            share.job_id,
            share.nonce_hex,
            share.digest[:8].hex(),
        )
        self._on_share(share)

    def run(self) -> None:
        try:
            self.search.run(self._stop_event)
        except OracleError as e:
            self.error = e
            log.error("[thread %d] stopped: %s", self.thread_id, e.message, exc_info=True)
        except Exception as e:
            self.error = normalize_exc(e)
            log.exception("[thread %d] crashed on job %s", self.thread_id, self.job.job_id)


class WorkerPool:
    """
    The set of search threads for one job generation.

    All workers share one stop event (the generation's cancellation token);
    `cancel()` only sets it and returns immediately, `join()` waits for the
    threads to notice.
    """

    def __init__(
        self,
        job: Job,
        session: SessionInfo,
        *,
        threads: int,
        stats: MiningStats,
        oracle: HashOracle,
        on_share: ShareCallback,
        flush_interval: float = FLUSH_INTERVAL,
    ) -> None:
        if not 1 <= threads <= MAX_WORKERS:
            raise ValueError(f"threads must be in [1, {MAX_WORKERS}], got {threads}")
        self.job = job
        self.stop_event = threading.Event()
        self.workers: List[SearchWorker] = [
            SearchWorker(
                t,
                job,
                session,
                stats=stats,
                oracle=oracle,
                on_share=on_share,
                stop_event=self.stop_event,
                flush_interval=flush_interval,
            )
            for t in range(threads)
        ]
        self._started = False

    def start(self) -> None:
        for w in self.workers:
            w.start()
        self._started = True
        log.debug("started %d workers for job %s", len(self.workers), self.job.job_id)

    def cancel(self) -> None:
        self.stop_event.set()

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every worker to exit; returns False if any is still alive."""
        if not self._started:
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        for w in self.workers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            w.join(remaining)
        return not self.alive()

    def alive(self) -> bool:
        return any(w.is_alive() for w in self.workers)

    @property
    def hashes_done(self) -> int:
        return sum(w.search.hashes_done for w in self.workers)
