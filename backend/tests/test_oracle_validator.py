"""
Tests for price observation validation and oracle circuit breakers.
"""

from __future__ import annotations

import sys
import threading
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from txguard.core.exceptions import ConfigurationError
from txguard.core.settings import Settings
from txguard.security.models import PriceObservation, TransactionIntent
from txguard.security.oracle_validator import (
    AggregationMethod,
    AnomalyType,
    OracleConfig,
    OracleValidator,
    PearsonCorrelation,
    Severity,
    ValidationCheck,
    aggregate_prices,
)

AAVE_POOL = "0x7d2768de32b0b80b7a3454c06bdac94a69ddc7a9"
SENDER = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def validator(settings, clock):
    return OracleValidator(settings, clock=clock)


def register(validator, *source_ids, **kwargs):
    for source_id in source_ids:
        validator.register_oracle(OracleConfig(source_id=source_id, **kwargs))


class TestScenarios:

    def test_large_deviation_from_reference_trips_breaker(self, validator):
        register(validator, "ref-a", "ref-b", "primary", max_deviation=0.05)
        assert validator.validate("ref-a", 2000.0)
        assert validator.validate("ref-b", 2000.0)

        result = validator.validate_detailed("primary", 2500.0)

        assert not result.accepted
        assert result.reference_price == pytest.approx(2000.0)
        assert result.deviation == pytest.approx(0.25)
        assert result.anomaly.severity == Severity.HIGH
        assert ValidationCheck.DEVIATION in result.failed_checks
        assert validator.is_breaker_triggered("primary")

    def test_triggered_breaker_rejects_even_good_prices(self, validator, clock):
        register(validator, "ref-a", "ref-b", "primary")
        validator.validate("ref-a", 2000.0)
        validator.validate("ref-b", 2000.0)
        validator.validate("primary", 2500.0)

        result = validator.validate_detailed("primary", 2000.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.CIRCUIT_BREAKER,)

        clock.advance(minutes=10, seconds=1)
        validator.reset_history("ref-a")
        validator.reset_history("ref-b")
        assert validator.validate("primary", 2000.0)


class TestFailClosed:
    """Each check failing on its own rejects the observation."""

    def test_deviation_alone(self, validator):
        register(validator, "ref-a", "primary")
        validator.validate("ref-a", 2000.0)
        result = validator.validate_detailed("primary", 2150.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.DEVIATION,)
        assert result.anomaly.severity == Severity.LOW
        assert not validator.is_breaker_triggered("primary")

    def test_staleness_alone(self, validator, clock):
        register(validator, "primary", max_staleness=timedelta(minutes=5))
        assert validator.validate("primary", 100.0)
        clock.advance(minutes=6)
        result = validator.validate_detailed("primary", 100.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.STALENESS,)
        assert result.anomaly.anomaly_type == AnomalyType.STALE_PRICE

    def test_volatility_alone(self, validator):
        register(validator, "primary")
        for _ in range(10):
            assert validator.validate("primary", 100.0)
        result = validator.validate_detailed("primary", 200.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.VOLATILITY,)

    def test_flash_loan_context_alone(self, validator):
        register(validator, "primary")
        validator.set_flash_loan_context(True)
        result = validator.validate_detailed("primary", 100.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.FLASH_LOAN,)
        assert result.anomaly.anomaly_type == AnomalyType.FLASH_LOAN_ATTACK

    def test_correlation_alone(self, validator):
        register(validator, "ref", "primary")
        for price in (100.0, 101.0, 102.0, 103.0, 104.0):
            assert validator.validate("ref", price)
        for price in (104.0, 103.0, 102.0, 101.0):
            assert validator.validate("primary", price)

        result = validator.validate_detailed("primary", 100.0)
        assert not result.accepted
        assert result.failed_checks == (ValidationCheck.CORRELATION,)

    def test_co_moving_sources_are_accepted(self, validator):
        register(validator, "ref", "primary")
        for price in (100.0, 101.0, 102.0, 103.0, 104.0):
            assert validator.validate("ref", price)
        for price in (100.5, 101.5, 102.5, 103.5, 104.5):
            assert validator.validate("primary", price)
        assert len(validator.get_history("primary")) == 5


class TestFlashLoanContext:

    def test_block_activity_sets_context(self, validator):
        flash = TransactionIntent(sender=SENDER, to=AAVE_POOL)
        assert validator.update_block_activity([flash])
        assert validator.flash_loan_context
        assert not validator.update_block_activity([TransactionIntent(sender=SENDER, to=SENDER)])
        assert not validator.flash_loan_context

    def test_large_value_is_potential_flash_loan(self, validator, settings):
        big = TransactionIntent(
            sender=SENDER, to=SENDER, value=Decimal(str(settings.flash_loan_value_threshold)) + 1
        )
        assert validator.is_potential_flash_loan(big)

    def test_agreement_with_two_sources_passes(self, validator):
        register(validator, "a", "b", "primary")
        validator.validate("a", 100.0)
        validator.validate("b", 100.5)
        validator.set_flash_loan_context(True)
        assert validator.validate("primary", 100.2)


class TestSettingsDefaults:
    """Thresholds left unset on a config come from Settings."""

    def test_deviation_setting_applies(self, clock):
        validator = OracleValidator(Settings(_env_file=None, oracle_max_deviation=0.5), clock=clock)
        register(validator, "ref-a", "primary")
        validator.validate("ref-a", 2000.0)
        assert validator.validate("primary", 2150.0)

    def test_explicit_threshold_wins_over_setting(self, clock):
        validator = OracleValidator(Settings(_env_file=None, oracle_max_deviation=0.5), clock=clock)
        register(validator, "ref-a")
        register(validator, "primary", max_deviation=0.05)
        validator.validate("ref-a", 2000.0)
        result = validator.validate_detailed("primary", 2150.0)
        assert result.failed_checks == (ValidationCheck.DEVIATION,)

    def test_staleness_setting_applies(self, clock):
        validator = OracleValidator(Settings(_env_file=None, oracle_max_staleness_seconds=60), clock=clock)
        register(validator, "primary")
        assert validator.validate("primary", 100.0)
        clock.advance(minutes=2)
        result = validator.validate_detailed("primary", 100.0)
        assert result.failed_checks == (ValidationCheck.STALENESS,)

    def test_breaker_cooldown_setting_applies(self, clock):
        validator = OracleValidator(Settings(_env_file=None, oracle_breaker_cooldown_seconds=60), clock=clock)
        register(validator, "primary")
        validator.pause_oracle("primary")
        assert validator.is_breaker_triggered("primary")
        clock.advance(seconds=61)
        assert not validator.is_breaker_triggered("primary")

    def test_from_settings(self, settings):
        config = OracleConfig.from_settings("chainlink", settings, aggregation=AggregationMethod.TRIMMED_MEAN)
        assert config.max_deviation == settings.oracle_max_deviation
        assert config.max_staleness == timedelta(seconds=settings.oracle_max_staleness_seconds)
        assert config.breaker_cooldown == timedelta(seconds=settings.oracle_breaker_cooldown_seconds)
        assert config.aggregation == AggregationMethod.TRIMMED_MEAN


class TestRegistry:

    def test_unregistered_source_fails_fast(self, validator):
        with pytest.raises(ConfigurationError):
            validator.validate("missing", 1.0)

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            OracleConfig(source_id="bad", max_deviation=0.0)

    def test_backup_switching(self, validator):
        register(validator, "chainlink", "band")
        validator.set_backup("chainlink", "band")
        assert validator.resolve_source("chainlink") == "chainlink"
        assert validator.switch_to_backup("chainlink") == "band"
        assert validator.resolve_source("chainlink") == "band"
        validator.restore_primary("chainlink")
        assert validator.resolve_source("chainlink") == "chainlink"

    def test_switch_without_backup_raises(self, validator):
        register(validator, "chainlink")
        with pytest.raises(ConfigurationError):
            validator.switch_to_backup("chainlink")

    def test_pause_oracle_trips_breaker(self, validator):
        register(validator, "chainlink")
        validator.pause_oracle("chainlink")
        assert validator.get_breaker_state("chainlink")["state"] == "triggered"

    def test_listeners_receive_anomalies(self, validator):
        seen = []
        validator.add_listener(seen.append)
        register(validator, "ref", "primary")
        validator.validate("ref", 2000.0)
        validator.validate("primary", 2500.0)
        assert [a.source_id for a in seen] == ["primary"]

    def test_statistics(self, validator):
        register(validator, "ref", "primary")
        validator.validate("ref", 2000.0)
        validator.validate("primary", 3000.0)
        stats = validator.get_statistics()
        assert stats["registered_oracles"] == 2
        assert stats["active_circuit_breakers"] == 1
        assert stats["total_price_points"] == 1
        assert stats["anomalies_detected"] == 1

    def test_parallel_sources_record_every_observation(self, validator):
        sources = ["feed-a", "feed-b", "feed-c", "feed-d"]
        register(validator, *sources)
        start = threading.Barrier(len(sources))
        results = []
        results_lock = threading.Lock()

        def feed(source_id):
            start.wait()
            for _ in range(50):
                accepted = validator.validate(source_id, 100.0)
                with results_lock:
                    results.append(accepted)

        threads = [threading.Thread(target=feed, args=(s,)) for s in sources]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10.0)

        assert len(results) == 200
        assert all(results)
        stats = validator.get_statistics()
        assert stats["total_price_points"] == 200
        assert stats["anomalies_detected"] == 0
        assert all(len(validator.get_history(s)) == 50 for s in sources)


class TestAggregation:

    @staticmethod
    def observations(clock, prices):
        return [
            PriceObservation(price=p, timestamp=clock(), source_id=f"s{i}")
            for i, p in enumerate(prices)
        ]

    def test_median_ignores_outlier(self, clock):
        obs = self.observations(clock, [100.0, 101.0, 5000.0])
        assert aggregate_prices(obs, AggregationMethod.MEDIAN) == pytest.approx(101.0)

    def test_trimmed_mean(self, clock):
        obs = self.observations(clock, [1.0, 10.0, 10.0, 10.0, 10.0, 10.0, 10.0, 10.0, 10.0, 100.0])
        assert aggregate_prices(obs, AggregationMethod.TRIMMED_MEAN, trim_fraction=0.1) == pytest.approx(10.0)

    def test_weighted_average(self, clock):
        obs = self.observations(clock, [100.0, 200.0])
        value = aggregate_prices(obs, AggregationMethod.WEIGHTED_AVERAGE, weights={"s0": 3.0, "s1": 1.0})
        assert value == pytest.approx(125.0)

    def test_empty_is_unknown(self):
        assert aggregate_prices([], AggregationMethod.MEDIAN) is None


class TestPearsonCorrelation:

    def test_short_series_is_unknown(self):
        assert PearsonCorrelation().correlation([1, 2, 3], [1, 2, 3]) is None

    def test_flat_series_is_unknown(self):
        assert PearsonCorrelation().correlation([1, 1, 1, 1, 1], [1, 2, 3, 4, 5]) is None

    def test_anti_correlated(self):
        assert PearsonCorrelation().correlation([1, 2, 3, 4, 5], [5, 4, 3, 2, 1]) == pytest.approx(-1.0)
