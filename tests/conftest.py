"""Shared fixtures: stub hash oracles, a socketpair-backed fake pool, polling helper."""

from __future__ import annotations

import json
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from xelis_miner.job import Job, SessionInfo
from xelis_miner.mining.hash_search import UINT256_MAX
from xelis_miner.stratum_client import StratumConnection
from xelis_miner.stratum_protocol import encode_lines

MAX_DIGEST = b"\xff" * 32
ZERO_DIGEST = b"\x00" * 32


class StubOracle:
    """Deterministic oracle: `digest_for(work)` decides each digest."""

    name = "stub"
    byte_order = "big"

    def __init__(self, digest_for: Optional[Callable[[bytes], bytes]] = None) -> None:
        self.digest_for = digest_for or (lambda work: MAX_DIGEST)
        self.scratchpads: List[bytearray] = []
        self.calls = 0
        self._lock = threading.Lock()

    def new_scratchpad(self) -> bytearray:
        pad = bytearray(64)
        with self._lock:
            self.scratchpads.append(pad)
        return pad

    def __call__(self, work: bytes, scratchpad: Any) -> bytes:
        with self._lock:
            self.calls += 1
        return self.digest_for(work)


class FakePool:
    """The pool end of a socketpair; the miner end is handed out by `connect`."""

    def __init__(self) -> None:
        self.server, self.client = socket.socketpair()
        self.server.settimeout(5.0)
        self._rfile = self.server.makefile("rb")

    def connect(self, host: str, port: int, timeout: Optional[float] = None) -> StratumConnection:
        return StratumConnection(self.client, host=host, port=port)

    def send(self, obj: Dict[str, Any]) -> None:
        self.server.sendall(encode_lines(obj))

    def send_raw(self, data: bytes) -> None:
        self.server.sendall(data)

    def read_line(self) -> bytes:
        return self._rfile.readline()

    def read_request(self) -> Dict[str, Any]:
        return json.loads(self.read_line())

    def close(self) -> None:
        self._rfile.close()
        try:
            self.server.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server.close()


def _wait_until(pred: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(interval)
    return pred()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return _wait_until


@pytest.fixture
def stub_oracle() -> StubOracle:
    return StubOracle()


@pytest.fixture
def make_oracle() -> Callable[..., StubOracle]:
    return StubOracle


@pytest.fixture
def fake_pool():
    pool = FakePool()
    yield pool
    pool.close()


@pytest.fixture
def session_info() -> SessionInfo:
    return SessionInfo(extra_nonce=b"\xaa" * 32, public_key=b"\xbb" * 32)


@pytest.fixture
def make_job() -> Callable[..., Job]:
    def _make(job_id: str = "job1", target: int = UINT256_MAX, generation: int = 1) -> Job:
        return Job(
            job_id=job_id,
            timestamp=bytes.fromhex("0102030405060708"),
            header_hash=bytes(range(32)),
            target=target,
            generation=generation,
        )

    return _make
