"""Tests for money parsing, keyed locks, the worker pool and the ledger logger."""

import threading
import time
from decimal import Decimal

import pytest

from campaign_ledger.exceptions import ValidationError
from campaign_ledger.utils.locks import KeyedLockRegistry
from campaign_ledger.utils.logger import LedgerLogger
from campaign_ledger.utils.money import parse_amount
from campaign_ledger.utils.worker_pool import WorkerPool


class TestParseAmount:
    """Caller-supplied amounts."""

    @pytest.mark.parametrize(
        "value,expected",
        [("10.50", Decimal("10.50")), (0.1, Decimal("0.1")), (7, Decimal("7")), (Decimal("3.3"), Decimal("3.3"))],
    )
    def test_valid(self, value, expected):
        """Strings, ints, floats and Decimals are accepted; floats go through str()."""
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [None, True, "ten", "Infinity", "NaN", [1]])
    def test_invalid(self, value):
        """Non-numbers and non-finite values are rejected."""
        with pytest.raises(ValidationError):
            parse_amount(value, "budget")


class TestKeyedLocks:
    """Per-key serialization."""

    def test_same_key_serializes(self):
        """Two holders of one key never overlap."""
        locks = KeyedLockRegistry("test")
        active, overlaps = [], []

        def hold():
            with locks.hold("CMP-1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=hold) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert overlaps == []

    def test_different_keys_independent(self):
        """Holding one key does not block another."""
        locks = KeyedLockRegistry("test")
        with locks.hold("CMP-1"):
            acquired = threading.Event()

            def hold_other():
                with locks.hold("CMP-2"):
                    acquired.set()

            thread = threading.Thread(target=hold_other)
            thread.start()
            thread.join(timeout=1)
            assert acquired.is_set()
        assert len(locks) == 2
        locks.reset()
        assert len(locks) == 0


class TestWorkerPool:
    """Background task execution."""

    def test_failures_are_counted_not_raised(self):
        """A failing task is logged and counted."""
        pool = WorkerPool(max_workers=2)

        def fail():
            raise RuntimeError("mirror down")

        pool.submit(fail)
        pool.submit(lambda: None)
        assert pool.wait_idle(timeout=5)
        pool.shutdown()

        stats = pool.get_stats()
        assert stats["total_submitted"] == 2
        assert stats["total_failed"] == 1
        assert stats["total_successful"] == 1

    def test_idle_without_tasks(self):
        """An unused pool is idle."""
        assert WorkerPool().wait_idle(timeout=0)


class TestLedgerLogger:
    """Structured ledger logging and run summaries."""

    def test_tracks_commits_and_rejections(self):
        """Commits and rejections are counted by type."""
        ledger_logger = LedgerLogger(name="campaign_ledger_test_summary", log_level="WARNING")
        ledger_logger.log_commit("donation", "DON-1", "CMP-1", Decimal("5"), 90.0)
        ledger_logger.log_rejection("withdrawal", "BudgetExceeded", "over budget", campaignId="CMP-1")
        ledger_logger.log_rejection("withdrawal", "BudgetExceeded", "over budget")
        ledger_logger.log_rejection("donation", "FlaggedForReview", "risky")

        summary = ledger_logger.generate_summary()
        assert summary["committed"] == 1
        assert summary["rejections"] == {"total": 3, "by_type": {"BudgetExceeded": 2, "FlaggedForReview": 1}}

        ledger_logger.clear_tracking()
        assert ledger_logger.generate_summary()["rejections"]["total"] == 0

    def test_errors_and_warnings_tracked(self):
        """Errors keep the exception text and structured data."""
        ledger_logger = LedgerLogger(name="campaign_ledger_test_errors", log_level="CRITICAL")
        ledger_logger.warning("slow mirror", campaign_id="CMP-1")
        ledger_logger.error("propagation failed", exception=ValueError("boom"), transaction_id="DON-1")

        summary = ledger_logger.get_error_summary()
        assert summary["total_warnings"] == 1
        assert summary["errors"][0]["exception"] == "boom"
        assert summary["errors"][0]["data"] == {"transaction_id": "DON-1"}
        assert "[transaction_id=DON-1]" in summary["errors"][0]["message"]

    def test_file_output(self, tmp_path):
        """An optional log file receives every level."""
        ledger_logger = LedgerLogger(
            name="campaign_ledger_test_file", log_level="DEBUG", log_file="ledger.log", log_dir=tmp_path
        )
        ledger_logger.debug("detail", key="value")
        for handler in ledger_logger.logger.handlers:
            handler.flush()
        assert "detail [key=value]" in (tmp_path / "ledger.log").read_text()
