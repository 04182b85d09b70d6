from __future__ import annotations

import threading

import pytest

from xelis_miner.mining.errors import OracleError
from xelis_miner.mining.hash_search import (UINT256_MAX, FoundShare,
                                            NonceSearch, difficulty_to_target,
                                            digest_to_int256, meets_target)
from xelis_miner.mining.nonce_domain import COUNTER_MASK, compose_nonce


class StepClock:
    """Fake monotonic clock advancing by `step` on every read."""

    def __init__(self, step: float = 0.0) -> None:
        self.now = 100.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def stop_after(n: int, stop: threading.Event):
    calls = {"n": 0}

    def _digest(work: bytes, digest: bytes) -> bytes:
        calls["n"] += 1
        if calls["n"] >= n:
            stop.set()
        return digest

    return _digest


class TestTargets:
    def test_difficulty_one_is_full_range(self) -> None:
        assert difficulty_to_target(1) == 2**256 - 1 == UINT256_MAX

    def test_known_value(self) -> None:
        assert difficulty_to_target(1000) == (2**256 - 1) // 1000

    def test_monotonic_non_increasing(self) -> None:
        diffs = [1, 2, 3, 10, 1000, 10**6, 2**40, 2**200, 2**256]
        targets = [difficulty_to_target(d) for d in diffs]
        assert targets == sorted(targets, reverse=True)
        assert difficulty_to_target(2**256) == 0

    @pytest.mark.parametrize("difficulty", [0, -1])
    def test_rejects_below_one(self, difficulty: int) -> None:
        with pytest.raises(ValueError):
            difficulty_to_target(difficulty)

    def test_digest_byte_order(self) -> None:
        digest = b"\x01" + b"\x00" * 31
        assert digest_to_int256(digest) == 1 << 248
        assert digest_to_int256(digest, "little") == 1
        assert meets_target(digest, 1, "little")
        assert not meets_target(digest, 1, "big")
        with pytest.raises(ValueError):
            digest_to_int256(b"\x00" * 31)


class TestShareValidity:
    TARGET = difficulty_to_target(1000)

    def _run_once(self, make_oracle, make_job, session_info, digest: bytes):
        stop = threading.Event()
        step = stop_after(1, stop)
        oracle = make_oracle(lambda work: step(work, digest))
        shares = []
        hashes = []
        search = NonceSearch(
            make_job(target=self.TARGET),
            session_info,
            thread_id=0,
            oracle=oracle,
            on_share=shares.append,
            on_hashes=hashes.append,
            clock=StepClock(),
        )
        search.run(stop)
        assert hashes == [1]
        return shares

    def test_digest_equal_to_target_is_a_share(self, make_oracle, make_job, session_info) -> None:
        digest = self.TARGET.to_bytes(32, "big")
        shares = self._run_once(make_oracle, make_job, session_info, digest)
        assert len(shares) == 1
        share = shares[0]
        assert isinstance(share, FoundShare)
        assert share.job_id == "job1"
        assert share.nonce == compose_nonce(0, 1)
        assert share.nonce_hex == "0100000000000000"
        assert share.digest == digest

    def test_digest_below_target_is_a_share(self, make_oracle, make_job, session_info) -> None:
        digest = (self.TARGET - 1).to_bytes(32, "big")
        assert len(self._run_once(make_oracle, make_job, session_info, digest)) == 1

    def test_digest_above_target_is_not_a_share(self, make_oracle, make_job, session_info) -> None:
        digest = (self.TARGET + 1).to_bytes(32, "big")
        assert self._run_once(make_oracle, make_job, session_info, digest) == []

    def test_mining_continues_past_a_share(self, make_oracle, make_job, session_info) -> None:
        stop = threading.Event()
        step = stop_after(5, stop)
        oracle = make_oracle(lambda work: step(work, b"\x00" * 32))
        shares = []
        search = NonceSearch(
            make_job(),
            session_info,
            thread_id=4,
            oracle=oracle,
            on_share=shares.append,
            on_hashes=lambda n: None,
            clock=StepClock(),
        )
        assert search.run(stop) == 5
        assert [s.nonce for s in shares] == [compose_nonce(4, c) for c in range(1, 6)]
        assert search.shares_found == 5


class TestSearchLoop:
    def test_work_record_carries_job_session_and_nonce(self, make_oracle, make_job, session_info) -> None:
        stop = threading.Event()
        seen = []

        def digest_for(work: bytes) -> bytes:
            seen.append(work)
            if len(seen) == 3:
                stop.set()
            return b"\xff" * 32

        job = make_job(target=1)
        NonceSearch(
            job,
            session_info,
            thread_id=9,
            oracle=make_oracle(digest_for),
            on_share=lambda s: None,
            on_hashes=lambda n: None,
            clock=StepClock(),
        ).run(stop)
        assert len(seen) == 3
        for counter, work in enumerate(seen, start=1):
            assert len(work) == 112
            assert work[0:32] == job.header_hash
            assert work[32:40] == job.timestamp
            assert int.from_bytes(work[40:48], "little") == compose_nonce(9, counter)
            assert work[48:80] == session_info.extra_nonce
            assert work[80:112] == session_info.public_key

    def test_scratchpad_is_allocated_per_search(self, make_oracle, make_job, session_info) -> None:
        oracle = make_oracle()
        a = NonceSearch(make_job(), session_info, thread_id=0, oracle=oracle,
                        on_share=lambda s: None, on_hashes=lambda n: None)
        b = NonceSearch(make_job(), session_info, thread_id=1, oracle=oracle,
                        on_share=lambda s: None, on_hashes=lambda n: None)
        assert len(oracle.scratchpads) == 2
        assert oracle.scratchpads[0] is not oracle.scratchpads[1]
        assert a.thread_id != b.thread_id

    def test_already_cancelled_does_no_work(self, make_oracle, make_job, session_info) -> None:
        stop = threading.Event()
        stop.set()
        oracle = make_oracle()
        hashes = []
        search = NonceSearch(make_job(), session_info, thread_id=0, oracle=oracle,
                             on_share=lambda s: None, on_hashes=hashes.append)
        assert search.run(stop) == 0
        assert oracle.calls == 0
        assert hashes == []

    def test_pending_hashes_flushed_exactly_once_on_exit(self, make_oracle, make_job, session_info) -> None:
        stop = threading.Event()
        step = stop_after(250, stop)
        hashes = []
        search = NonceSearch(
            make_job(target=0),
            session_info,
            thread_id=0,
            oracle=make_oracle(lambda work: step(work, b"\xff" * 32)),
            on_share=lambda s: None,
            on_hashes=hashes.append,
            clock=StepClock(step=0.0),  # interval never elapses
        )
        search.run(stop)
        assert hashes == [250]
        assert search.hashes_flushed == search.hashes_done == 250

    def test_periodic_flush_batches(self, make_oracle, make_job, session_info) -> None:
        stop = threading.Event()
        step = stop_after(10, stop)
        hashes = []
        search = NonceSearch(
            make_job(target=0),
            session_info,
            thread_id=0,
            oracle=make_oracle(lambda work: step(work, b"\xff" * 32)),
            on_share=lambda s: None,
            on_hashes=hashes.append,
            flush_interval=2.0,
            clock=StepClock(step=1.0),
        )
        search.run(stop)
        assert len(hashes) > 1
        assert sum(hashes) == 10 == search.hashes_flushed

    def test_oracle_failure_flushes_then_raises(self, make_oracle, make_job, session_info) -> None:
        calls = {"n": 0}

        def digest_for(work: bytes) -> bytes:
            calls["n"] += 1
            if calls["n"] == 4:
                raise RuntimeError("boom")
            return b"\xff" * 32

        hashes = []
        search = NonceSearch(make_job(target=0), session_info, thread_id=0,
                             oracle=make_oracle(digest_for), on_share=lambda s: None,
                             on_hashes=hashes.append, clock=StepClock())
        with pytest.raises(OracleError):
            search.run(threading.Event())
        assert hashes == [3]

    def test_exhausted_partition_stops(self, make_oracle, make_job, session_info) -> None:
        hashes = []
        search = NonceSearch(make_job(target=0), session_info, thread_id=0,
                             oracle=make_oracle(), on_share=lambda s: None,
                             on_hashes=hashes.append, clock=StepClock())
        search.counter = COUNTER_MASK - 2
        assert search.run(threading.Event()) == 2
        assert hashes == [2]

    def test_rejects_out_of_range_thread(self, make_oracle, make_job, session_info) -> None:
        with pytest.raises(ValueError):
            NonceSearch(make_job(), session_info, thread_id=256, oracle=make_oracle(),
                        on_share=lambda s: None, on_hashes=lambda n: None)
