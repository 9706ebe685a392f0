"""
Tests for the core infrastructure: breakers, settings, errors, locks and scheduling.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import timedelta
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from txguard.chains.circuit_breaker import BreakerState, CircuitBreaker
from txguard.core.exceptions import (
    ConfigurationError,
    TransientIOError,
    UnknownAlertError,
    ValidationRejected,
    create_safe_error_dict,
)
from txguard.core.locks import KeyedLocks, ReadWriteLock
from txguard.core.logging import SecurityEventFilter, StructuredFormatter
from txguard.core.scheduler import SchedulerManager, best_effort
from txguard.core.settings import Settings


class TestCircuitBreaker:
    """Breaker latch and cooldown semantics."""

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(key="eth-usd", cooldown=timedelta(minutes=10), clock=clock)

    def test_starts_armed(self, breaker):
        assert breaker.state() == BreakerState.ARMED
        assert not breaker.is_triggered()
        assert breaker.trigger_time is None

    def test_stays_triggered_through_cooldown_boundary(self, breaker, clock):
        breaker.trigger("deviation")
        clock.advance(minutes=10)
        # Exactly at trigger_time + cooldown the breaker is still triggered
        assert breaker.is_triggered()
        clock.advance(seconds=1)
        assert not breaker.is_triggered()
        assert breaker.state() == BreakerState.ARMED

    def test_retrigger_never_shortens_cooldown(self, breaker, clock):
        breaker.trigger("first")
        first_reset = breaker.resets_at
        clock.advance(minutes=5)
        breaker.trigger("second")
        assert breaker.resets_at >= first_reset
        clock.advance(minutes=6)
        # Past the first deadline but within the extended one
        assert breaker.is_triggered()
        clock.advance(minutes=5)
        assert not breaker.is_triggered()

    def test_retrigger_at_same_instant_is_idempotent(self, breaker):
        breaker.trigger()
        resets_at = breaker.resets_at
        breaker.trigger()
        assert breaker.resets_at == resets_at
        assert breaker.snapshot()["trip_count"] == 2

    def test_manual_reset(self, breaker):
        breaker.trigger()
        breaker.reset()
        assert not breaker.is_triggered()
        assert breaker.snapshot()["state"] == "armed"


class TestSettings:
    """Settings validation."""

    def test_defaults(self, settings):
        assert settings.flag_risk_threshold == 0.6
        assert settings.block_risk_threshold == 0.8
        assert settings.min_corroborating_signals == 2
        assert settings.audit_default_retention_days == 90
        assert settings.audit_high_risk_retention_days == 365

    def test_rejects_out_of_range_ratio(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, oracle_max_deviation=1.5)

    def test_rejects_unknown_environment(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, environment="qa")

    def test_blacklist_is_lower_cased(self):
        s = Settings(_env_file=None, blacklisted_addresses=["0xABCDEF0000000000000000000000000000000001"])
        assert s.blacklisted_addresses == ["0xabcdef0000000000000000000000000000000001"]


class TestExceptions:
    """Error taxonomy and log-safe dicts."""

    def test_validation_rejected_carries_reason(self):
        error = ValidationRejected("blocked", reason="value exceeds limit")
        assert error.reason == "value exceeds limit"
        assert error.error_code == "VALIDATION_REJECTED"

    def test_unknown_alert_is_configuration_error(self):
        error = UnknownAlertError("alert-1")
        assert isinstance(error, ConfigurationError)

    def test_safe_error_dict_for_engine_error(self):
        error = TransientIOError("rpc down", details={"endpoint": "node"})
        data = create_safe_error_dict(error, trace_id="t-1")
        assert data["error_code"] == "TRANSIENT_IO_ERROR"
        assert data["trace_id"] == "t-1"
        assert data["details"] == {"endpoint": "node"}

    def test_safe_error_dict_for_foreign_error(self):
        data = create_safe_error_dict(KeyError("x"))
        assert data["error_code"] == "INTERNAL_ERROR"
        assert data["error_type"] == "KeyError"


class TestStructuredFormatter:

    def test_redacts_sensitive_keys(self):
        record = logging.LogRecord("txguard", logging.INFO, __file__, 1, "hello", None, None)
        record.extra_data = {"api_key": "abc", "source_id": "eth-usd"}
        data = json.loads(StructuredFormatter().format(record))
        assert data["api_key"] == "[REDACTED]"
        assert data["source_id"] == "eth-usd"
        assert data["message"] == "hello"

    def test_security_filter_selects_engine_warnings(self):
        security_filter = SecurityEventFilter()

        def record(name, level):
            return logging.LogRecord(name, level, __file__, 1, "event", None, None)

        assert security_filter.filter(record("txguard.security.oracle_validator", logging.ERROR))
        assert security_filter.filter(record("txguard.ledger.audit_trail", logging.WARNING))
        assert not security_filter.filter(record("txguard.security.mev_detector", logging.INFO))
        assert not security_filter.filter(record("txguard.core.scheduler", logging.ERROR))


class TestLocks:

    def test_keyed_locks_are_per_key(self):
        locks = KeyedLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")
        assert len(locks) == 2

    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        entered = threading.Event()

        def reader():
            with lock.read():
                entered.set()

        with lock.read():
            worker = threading.Thread(target=reader)
            worker.start()
            assert entered.wait(timeout=2.0)
            worker.join(timeout=2.0)

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order = []

        def reader():
            with lock.read():
                order.append("read")

        with lock.write():
            worker = threading.Thread(target=reader)
            worker.start()
            worker.join(timeout=0.2)
            order.append("write-done")
        worker.join(timeout=2.0)
        assert order == ["write-done", "read"]


class TestScheduler:

    @pytest.mark.asyncio
    async def test_interval_jobs_are_registered_and_removed(self):
        manager = SchedulerManager()

        async def job():
            return None

        manager.add_interval_job(job, seconds=30, id="gas_refresh", name="Gas refresh")
        await manager.start()
        try:
            jobs = manager.get_jobs()
            assert [j["id"] for j in jobs] == ["gas_refresh"]
            assert manager.remove_job("gas_refresh")
            assert not manager.remove_job("gas_refresh")
        finally:
            await manager.stop()
        assert not manager.running

    @pytest.mark.asyncio
    async def test_failed_tick_is_contained(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("rpc down")

        job = best_effort(flaky, "gas_refresh")
        await job()
        await job()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_sync_jobs_are_supported(self):
        calls = []
        await best_effort(lambda: calls.append(1), "audit_maintenance")()
        assert calls == [1]
