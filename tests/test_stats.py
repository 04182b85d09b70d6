from __future__ import annotations

import logging
import threading

import pytest

from xelis_miner.mining.errors import RejectCategory, classify_reject
from xelis_miner.stats import MiningStats, StatsReporter, human_readable_hashrate


class FakeClock:
    def __init__(self, now: float = 50.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMiningStats:
    def test_hashrate_is_zero_before_time_passes(self) -> None:
        clock = FakeClock()
        stats = MiningStats(clock=clock)
        stats.add_hashes(500)
        assert stats.hashrate() == 0.0
        assert stats.snapshot().hashrate == 0.0

    def test_hashrate_over_elapsed_time(self) -> None:
        clock = FakeClock()
        stats = MiningStats(clock=clock)
        stats.add_hashes(1000)
        clock.now += 4.0
        assert stats.hashrate() == pytest.approx(250.0)
        assert stats.hashrate(now=clock.now + 6.0) == pytest.approx(100.0)

    def test_non_positive_hash_counts_are_ignored(self) -> None:
        stats = MiningStats()
        stats.add_hashes(0)
        stats.add_hashes(-5)
        assert stats.hashes == 0

    def test_concurrent_updates_are_not_lost(self) -> None:
        stats = MiningStats()
        threads_n, per_thread = 8, 2000

        def hammer() -> None:
            for _ in range(per_thread):
                stats.add_hashes(3)
                stats.add_share_found()
                stats.add_accepted()

        threads = [threading.Thread(target=hammer) for _ in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert stats.hashes == threads_n * per_thread * 3
        assert stats.shares_found == threads_n * per_thread
        assert stats.shares_accepted == threads_n * per_thread

    def test_rejections_are_counted_by_category(self) -> None:
        stats = MiningStats()
        stats.add_rejected("Duplicate share")
        stats.add_rejected("duplicate")
        stats.add_rejected("Stale job")
        stats.add_rejected(None)
        snap = stats.snapshot()
        assert snap.shares_rejected == 4
        assert snap.reject_reasons == {"duplicate": 2, "stale": 1, "other": 1}

    def test_render_line(self) -> None:
        clock = FakeClock()
        stats = MiningStats(clock=clock)
        stats.add_hashes(2500)
        stats.add_share_found()
        stats.add_share_found()
        stats.add_accepted()
        stats.add_rejected("low difficulty share")
        clock.now += 1.0
        assert stats.render() == (
            "Hashrate: 2.50 KH/s | Shares: 2 (A:1 R:1) [low_difficulty=1]"
        )

    def test_render_without_rejections(self) -> None:
        stats = MiningStats(clock=FakeClock())
        assert stats.render() == "Hashrate: 0.00 H/s | Shares: 0 (A:0 R:0)"


class TestHumanReadable:
    @pytest.mark.parametrize(
        "rate, text",
        [
            (0, "0.00 H/s"),
            (999.4, "999.40 H/s"),
            (1000, "1.00 KH/s"),
            (1_500_000, "1.50 MH/s"),
            (2.5e9, "2.50 GH/s"),
            (7e15, "7000.00 TH/s"),
        ],
    )
    def test_units(self, rate: float, text: str) -> None:
        assert human_readable_hashrate(rate) == text


class TestRejectClassification:
    @pytest.mark.parametrize(
        "reason, category",
        [
            ("Duplicate share", RejectCategory.DUPLICATE),
            ("stale", RejectCategory.STALE),
            ("Low difficulty share", RejectCategory.LOW_DIFFICULTY),
            ("share above target", RejectCategory.LOW_DIFFICULTY),
            ("Job not found", RejectCategory.JOB_NOT_FOUND),
            ("Unauthorized worker", RejectCategory.UNAUTHORIZED),
            ("invalid nonce", RejectCategory.INVALID),
            ("something else", RejectCategory.OTHER),
            ("", RejectCategory.OTHER),
            (None, RejectCategory.OTHER),
        ],
    )
    def test_categories(self, reason, category) -> None:
        assert classify_reject(reason) is category


class TestStatsReporter:
    def test_logs_until_stopped(self, caplog, wait_until) -> None:
        stats = MiningStats()
        reporter = StatsReporter(stats, interval=0.1)
        with caplog.at_level(logging.INFO, logger="xelis_miner.stats"):
            reporter.start()
            assert wait_until(lambda: any("Hashrate:" in r.message for r in caplog.records))
            reporter.stop()
            reporter.join(timeout=2.0)
        assert not reporter.is_alive()
        assert reporter.name == "stats-reporter"
