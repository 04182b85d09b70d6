from __future__ import annotations

import contextlib
import logging
import os
import signal
import threading
from typing import Any, Callable, Optional

from .job import Job, JobState, SessionInfo
from .mining.errors import MinerError, PoolConnectionError, SendError
from .mining.hash_search import FLUSH_INTERVAL, FoundShare
from .mining.nonce_domain import MAX_WORKERS
from .mining.oracle import HashOracle, load_oracle
from .mining.version import user_agent
from .router import MessageRouter
from .scanner import WorkerPool
from .stats import MiningStats, StatsReporter
from .stratum_client import StratumConnection
from .stratum_protocol import (JSON, MessageKind, parse_authorize_result,
                               parse_notify, parse_set_difficulty,
                               parse_submit_result, parse_subscribe_result,
                               req_authorize, req_submit, req_subscribe)

log = logging.getLogger("xelis_miner.core")

JOIN_TIMEOUT = 5.0
MAX_BACKOFF = 30.0

ConnectFn = Callable[..., StratumConnection]


class ShareSubmitter:
    """
    Sends found shares as mining.submit on one connection.

    Fire-and-forget: the reply is handled later by the router as a submit
    result. A failed send is logged and the share is dropped.
    """

    def __init__(self, conn: StratumConnection, worker: str) -> None:
        self._conn = conn
        self._worker = worker
        self._lock = threading.Lock()
        self.submitted = 0
        self.failed = 0

    def submit(self, share: FoundShare) -> bool:
        req = req_submit(self._worker, share.job_id, share.nonce_hex)
        try:
            self._conn.send(req)
        except SendError as e:
            with self._lock:
                self.failed += 1
            log.error("Failed to submit share nonce=%s: %s", share.nonce_hex, e.message)
            return False
        with self._lock:
            self.submitted += 1
        return True


class XelisMiner:
    """
    High-level coordinator: owns the pool connection, the job state and the
    active worker pool, and reacts to router callbacks.

    Job replacement is sequential: the previous generation is cancelled and
    joined before the next one starts, so at most one generation searches at
    any time.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        wallet: str,
        worker: str,
        oracle: HashOracle,
        threads: Optional[int] = None,
        agent: Optional[str] = None,
        stats_interval: float = 2.0,
        connect_timeout: float = 10.0,
        reconnect: bool = False,
        apply_difficulty_now: bool = False,
        flush_interval: float = FLUSH_INTERVAL,
        connect: ConnectFn = StratumConnection.connect,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.wallet = wallet
        self.worker = worker
        self.threads = int(threads or os.cpu_count() or 1)
        if not 1 <= self.threads <= MAX_WORKERS:
            raise ValueError(f"threads must be in [1, {MAX_WORKERS}], got {self.threads}")
        self.agent = agent or user_agent()
        self.reconnect = reconnect
        self.apply_difficulty_now = apply_difficulty_now
        self._oracle = oracle
        self._connect = connect
        self._connect_timeout = connect_timeout
        self._flush_interval = flush_interval

        self.stats = MiningStats()
        self.job_state = JobState()
        self._reporter = StatsReporter(self.stats, interval=stats_interval)

        self._conn: Optional[StratumConnection] = None
        self._router: Optional[MessageRouter] = None
        self._submitter: Optional[ShareSubmitter] = None
        self._session: Optional[SessionInfo] = None
        self._subscribed = threading.Event()
        self._pool: Optional[WorkerPool] = None
        self._pool_lock = threading.Lock()
        self._stopping = threading.Event()
        self._stopped = False

    # ------------------- lifecycle -------------------

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    @property
    def pool(self) -> Optional[WorkerPool]:
        return self._pool

    def start(self) -> None:
        """Connect, subscribe and authorize. Raises PoolConnectionError."""
        log.info("Starting miner with %d threads", self.threads)
        self._open_session()
        self._reporter.start()

    def request_stop(self) -> None:
        """Signal-safe: ask serve() to wind down."""
        self._stopping.set()

    def serve(self, poll: float = 0.5) -> None:
        """
        Block until stopped. When the pool connection ends, either stop or,
        with reconnect enabled, reconnect with exponential backoff.
        """
        try:
            while not self._stopping.is_set():
                router = self._router
                if router is None:
                    self._stopping.wait(poll)
                    continue
                if not router.wait(poll):
                    continue
                if self._stopping.is_set():
                    break
                if not self.reconnect:
                    log.error("Connection to pool lost; stopping")
                    break
                self._reconnect_with_backoff()
        finally:
            self.stop()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stopping.set()
        self._retire_pool()
        self._reporter.stop()
        if self._conn is not None:
            self._conn.close()
        if self._router is not None:
            self._router.wait(JOIN_TIMEOUT)
        log.info("Miner stopped. %s", self.stats.render())

    # ------------------- connection -------------------

    def _open_session(self) -> None:
        if self._conn is not None:
            self._conn.close()
        conn = self._connect(self.host, self.port, timeout=self._connect_timeout)
        self._session = None
        self._subscribed.clear()
        self.job_state = JobState()
        self._conn = conn
        self._submitter = ShareSubmitter(conn, self.worker)

        router = MessageRouter(conn, on_close=self._on_stream_closed)
        router.on(MessageKind.SUBSCRIBE_RESULT, self._handle_subscribe)
        router.on(MessageKind.AUTHORIZE_RESULT, self._handle_authorize)
        router.on(MessageKind.SET_DIFFICULTY, self._handle_set_difficulty)
        router.on(MessageKind.NOTIFY, self._handle_notify)
        router.on(MessageKind.SUBMIT_RESULT, self._handle_submit_result)
        self._router = router
        router.start()

        try:
            conn.send(req_subscribe(self.agent))
            if not self._wait_subscribed(router):
                raise PoolConnectionError(
                    message="pool did not answer mining.subscribe",
                    context={"host": self.host, "port": self.port},
                )
            conn.send(req_authorize(self.wallet, self.worker))
        except (SendError, PoolConnectionError) as e:
            conn.close()
            if isinstance(e, PoolConnectionError):
                raise
            raise PoolConnectionError(message=f"handshake failed: {e.message}") from e
        log.info(
            "Connected to Stratum %s:%s as wallet=%s worker=%s; waiting for jobs",
            self.host,
            self.port,
            self.wallet,
            self.worker,
        )

    def _wait_subscribed(self, router: MessageRouter) -> bool:
        waited = 0.0
        while waited < self._connect_timeout:
            if self._subscribed.wait(0.1):
                return True
            if not router.running or self._stopping.is_set():
                return self._subscribed.is_set()
            waited += 0.1
        return self._subscribed.is_set()

    def _reconnect_with_backoff(self) -> None:
        delay = 1.0
        while not self._stopping.is_set():
            try:
                self._open_session()
                return
            except PoolConnectionError as exc:
                log.warning(
                    "Failed to reconnect to Stratum (%s). Retrying in %.1f s.",
                    exc.message,
                    delay,
                )
            self._stopping.wait(delay)
            delay = min(delay * 2, MAX_BACKOFF)

    def _on_stream_closed(self, reason: Optional[MinerError]) -> None:
        self._retire_pool()
        if not self._stopping.is_set():
            log.warning("Pool stream closed (%s); workers stopped", reason.message if reason else "eof")

    # ------------------- router callbacks -------------------

    def _handle_subscribe(self, obj: JSON) -> None:
        result = parse_subscribe_result(obj)
        if self._session is not None:
            log.warning("Ignoring repeated subscribe result on the same connection")
            return
        self._session = SessionInfo(extra_nonce=result.extra_nonce, public_key=result.public_key)
        log.info("Extra Nonce: %s", result.extra_nonce.hex())
        log.info("Public Key: %s", result.public_key.hex())
        self._subscribed.set()

    def _handle_authorize(self, obj: JSON) -> None:
        result = parse_authorize_result(obj)
        if result.ok:
            log.info("Authorized worker=%s", self.worker)
        else:
            log.error("Authorization rejected for worker=%s: %s", self.worker, result.reason)

    def _handle_set_difficulty(self, obj: JSON) -> None:
        value = parse_set_difficulty(obj)
        if not self.job_state.set_difficulty(value):
            return
        log.info("Difficulty: %d", self.job_state.difficulty)
        if self.apply_difficulty_now:
            job = self.job_state.retarget_current()
            if job is not None:
                self._dispatch(job)

    def _handle_notify(self, obj: JSON) -> None:
        params = parse_notify(obj)
        if self._session is None:
            log.warning("Job %s arrived before the subscribe result; skipping", params.job_id)
            return
        job = self.job_state.new_job(params.job_id, params.timestamp, params.header_hash)
        log.info("New Job: %s (difficulty %d)", job.job_id, job.difficulty)
        self._dispatch(job)

    def _handle_submit_result(self, obj: JSON) -> None:
        result = parse_submit_result(obj)
        if result.accepted:
            self.stats.add_accepted()
            log.info("Share ACCEPTED")
        else:
            self.stats.add_rejected(result.reason)
            log.warning("Share REJECTED: %s", result.reason)

    # ------------------- worker generations -------------------

    def _dispatch(self, job: Job) -> None:
        session = self._session
        submitter = self._submitter
        if session is None or submitter is None:
            log.warning("No pool session for job %s; skipping", job.job_id)
            return
        with self._pool_lock:
            if self._stopping.is_set():
                return
            old, self._pool = self._pool, None
            if old is not None:
                old.cancel()
                if not old.join(JOIN_TIMEOUT):
                    log.warning("Workers for job %s did not stop in time", old.job.job_id)
            pool = WorkerPool(
                job,
                session,
                threads=self.threads,
                stats=self.stats,
                oracle=self._oracle,
                on_share=submitter.submit,
                flush_interval=self._flush_interval,
            )
            self._pool = pool
            pool.start()

    def _retire_pool(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
            if pool is not None:
                pool.cancel()
                pool.join(JOIN_TIMEOUT)


# Convenience runner ---------------------------------------------------------


def run_miner(args: Any) -> None:
    """
    Build a miner from parsed CLI arguments and run it until interrupted or
    the pool goes away. Raises MinerError subclasses for fatal conditions.
    """
    oracle = load_oracle(args.oracle)
    miner = XelisMiner(
        host=args.host,
        port=args.port,
        wallet=args.wallet,
        worker=args.worker,
        oracle=oracle,
        threads=args.threads,
        agent=getattr(args, "agent", None),
        stats_interval=args.stats_interval,
        connect_timeout=args.connect_timeout,
        reconnect=args.reconnect,
        apply_difficulty_now=args.apply_difficulty_now,
    )

    def _set_stop(*_: Any) -> None:
        miner.request_stop()

    for signame in ("SIGINT", "SIGTERM"):
        if hasattr(signal, signame):
            # Only the main thread may install handlers
            with contextlib.suppress(ValueError, RuntimeError):
                signal.signal(getattr(signal, signame), _set_stop)

    log.info("Connecting to pool %s:%s...", args.host, args.port)
    miner.start()
    log.info("Miner started. Press Ctrl+C to stop.")
    miner.serve()


__all__ = ["ShareSubmitter", "XelisMiner", "run_miner"]
