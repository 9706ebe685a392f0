"""
Price oracle validation with per-source circuit breakers.

Every observation must pass five independent checks (fail-closed):
deviation from the cross-source reference, staleness, volatility impact,
flash-loan context and cross-source correlation. Rejections are classified
by deviation magnitude; High and Critical rejections trip the source's
breaker and are reported to anomaly listeners.

File: backend/txguard/security/oracle_validator.py
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from ..chains.circuit_breaker import CircuitBreaker, Clock, utc_now
from ..core.exceptions import ConfigurationError
from ..core.locks import KeyedLocks, ReadWriteLock
from ..core.logging import get_logger
from ..core.settings import Settings, get_settings
from .models import PriceObservation, TransactionIntent

logger = get_logger(__name__)

# Aave V2 lending pool and its provider registry
DEFAULT_FLASH_LOAN_PROVIDERS = (
    "0x398ec7346dcd622edc5ae82352f02be94c62d119",
    "0x7d2768de32b0b80b7a3454c06bdac94a69ddc7a9",
)

CORRELATION_TAIL = 20


class OracleType(str, Enum):
    CHAINLINK = "chainlink"
    UNISWAP = "uniswap"
    BAND = "band"
    CUSTOM = "custom"


class AggregationMethod(str, Enum):
    MEDIAN = "median"
    MEAN = "mean"
    WEIGHTED_AVERAGE = "weighted_average"
    TRIMMED_MEAN = "trimmed_mean"


class ValidationCheck(str, Enum):
    DEVIATION = "deviation"
    STALENESS = "staleness"
    VOLATILITY = "volatility"
    FLASH_LOAN = "flash_loan"
    CORRELATION = "correlation"
    CIRCUIT_BREAKER = "circuit_breaker"


class AnomalyType(str, Enum):
    PRICE_MANIPULATION = "price_manipulation"
    FLASH_LOAN_ATTACK = "flash_loan_attack"
    STALE_PRICE = "stale_price"
    EXTREME_VOLATILITY = "extreme_volatility"
    CIRCUIT_BREAKER = "circuit_breaker"
    OUTLIER = "outlier"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_deviation(cls, deviation: float) -> "Severity":
        if deviation > 0.5:
            return cls.CRITICAL
        if deviation > 0.2:
            return cls.HIGH
        if deviation > 0.1:
            return cls.MEDIUM
        return cls.LOW

    @property
    def trips_breaker(self) -> bool:
        return self in (Severity.HIGH, Severity.CRITICAL)


@dataclass
class OracleConfig:
    """Registration parameters for one price source."""

    source_id: str
    oracle_type: OracleType = OracleType.CUSTOM
    # Unset deviation, staleness and breaker cooldown come from Settings at registration
    max_deviation: Optional[float] = None
    max_staleness: Optional[timedelta] = None
    aggregation: AggregationMethod = AggregationMethod.MEDIAN
    # Per-source weights for WEIGHTED_AVERAGE; missing sources weigh 1.0
    weights: Dict[str, float] = field(default_factory=dict)
    trim_fraction: float = 0.1
    breaker_threshold: float = 0.2
    breaker_cooldown: Optional[timedelta] = None

    def __post_init__(self) -> None:
        if not self.source_id:
            raise ConfigurationError("Oracle source_id is required")
        if self.max_deviation is not None and not 0 < self.max_deviation <= 1:
            raise ConfigurationError(
                "max_deviation must be in (0, 1]",
                details={"source_id": self.source_id, "max_deviation": self.max_deviation}
            )
        if not 0 <= self.trim_fraction < 0.5:
            raise ConfigurationError("trim_fraction must be in [0, 0.5)")

    @classmethod
    def from_settings(cls, source_id: str, settings: Settings, **overrides) -> "OracleConfig":
        return cls(source_id=source_id, **overrides).with_defaults(settings)

    def with_defaults(self, settings: Settings) -> "OracleConfig":
        """Copy of this config with every unset threshold taken from settings."""
        return replace(
            self,
            max_deviation=(
                self.max_deviation if self.max_deviation is not None else settings.oracle_max_deviation
            ),
            max_staleness=(
                self.max_staleness if self.max_staleness is not None
                else timedelta(seconds=settings.oracle_max_staleness_seconds)
            ),
            breaker_cooldown=(
                self.breaker_cooldown if self.breaker_cooldown is not None
                else timedelta(seconds=settings.oracle_breaker_cooldown_seconds)
            ),
        )


@dataclass(frozen=True)
class OracleAnomaly:
    source_id: str
    anomaly_type: AnomalyType
    severity: Severity
    detected_at: datetime
    expected_price: Optional[float]
    actual_price: float
    deviation_percentage: float
    failed_checks: Tuple[ValidationCheck, ...] = ()


@dataclass(frozen=True)
class PriceValidationResult:
    accepted: bool
    source_id: str
    price: float
    failed_checks: Tuple[ValidationCheck, ...] = ()
    reference_price: Optional[float] = None
    deviation: float = 0.0
    anomaly: Optional[OracleAnomaly] = None


class CorrelationSource(Protocol):
    """Pairwise correlation between two price series; None when unknown."""

    def correlation(self, series: Sequence[float], other: Sequence[float]) -> Optional[float]: ...


class PearsonCorrelation:
    """Pearson correlation over the aligned tails of two series."""

    def __init__(self, min_points: int = 5):
        self.min_points = min_points

    def correlation(self, series: Sequence[float], other: Sequence[float]) -> Optional[float]:
        n = min(len(series), len(other))
        if n < self.min_points:
            return None
        a = np.asarray(series[-n:], dtype=float)
        b = np.asarray(other[-n:], dtype=float)
        if np.std(a) == 0 or np.std(b) == 0:
            return None
        value = float(np.corrcoef(a, b)[0, 1])
        if np.isnan(value):
            return None
        return value


def aggregate_prices(
    observations: Sequence[PriceObservation],
    method: AggregationMethod,
    weights: Optional[Dict[str, float]] = None,
    trim_fraction: float = 0.1,
) -> Optional[float]:
    """
    Combine reference observations into a single price.

    Returns:
        Aggregate price, or None when there are no observations
    """
    if not observations:
        return None

    prices = np.sort(np.asarray([o.price for o in observations], dtype=float))

    if method == AggregationMethod.MEAN:
        return float(np.mean(prices))

    if method == AggregationMethod.WEIGHTED_AVERAGE:
        weights = weights or {}
        values = np.asarray([o.price for o in observations], dtype=float)
        w = np.asarray([weights.get(o.source_id, 1.0) for o in observations], dtype=float)
        if w.sum() <= 0:
            return float(np.median(prices))
        return float(np.average(values, weights=w))

    if method == AggregationMethod.TRIMMED_MEAN:
        trim = int(len(prices) * trim_fraction)
        if trim * 2 >= len(prices):
            return float(np.median(prices))
        return float(np.mean(prices[trim:len(prices) - trim]))

    return float(np.median(prices))


def relative_deviation(price: float, reference: float) -> float:
    if reference == 0:
        return 1.0
    return abs(price - reference) / abs(reference)


def coefficient_of_variation(prices: Sequence[float]) -> float:
    if len(prices) < 2:
        return 0.0
    values = np.asarray(prices, dtype=float)
    mean = float(np.mean(values))
    if mean == 0:
        return 0.0
    return float(np.std(values)) / mean


@dataclass
class _SourceState:
    config: OracleConfig
    history: Deque[PriceObservation]
    breaker: CircuitBreaker


AnomalyListener = Callable[[OracleAnomaly], None]


class OracleValidator:
    """
    Validates price observations from registered sources.

    Each source's history and breaker sit behind that source's own lock;
    cross-source reads snapshot other sources one at a time, never while
    holding the candidate source's lock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        correlation_source: Optional[CorrelationSource] = None,
        clock: Clock = utc_now,
        flash_loan_providers: Iterable[str] = DEFAULT_FLASH_LOAN_PROVIDERS,
    ):
        self.settings = settings or get_settings()
        self.correlation_source = correlation_source or PearsonCorrelation()
        self.clock = clock

        self._sources: Dict[str, _SourceState] = {}
        self._registry_lock = ReadWriteLock()
        self._locks = KeyedLocks()

        self._backups: Dict[str, str] = {}
        self._active_backups: Dict[str, str] = {}

        self._flash_loan_providers = {a.lower() for a in flash_loan_providers}
        self._flash_loan_context = False
        self._flash_lock = threading.Lock()

        self._listeners: List[AnomalyListener] = []
        self._anomalies: Deque[OracleAnomaly] = deque(maxlen=1000)
        self._anomaly_count = 0
        self._stats_lock = threading.Lock()

    # Registration

    def register_oracle(self, config: OracleConfig) -> None:
        config = config.with_defaults(self.settings)
        capacity = self.settings.oracle_history_capacity
        state = _SourceState(
            config=config,
            history=deque(maxlen=capacity),
            breaker=CircuitBreaker(
                key=config.source_id,
                cooldown=config.breaker_cooldown,
                threshold=config.breaker_threshold,
                clock=self.clock,
            ),
        )
        with self._registry_lock.write():
            self._sources[config.source_id] = state
        logger.info(
            f"Oracle registered: {config.source_id}",
            extra={'extra_data': {
                'source_id': config.source_id,
                'oracle_type': config.oracle_type.value,
                'max_deviation': config.max_deviation,
                'aggregation': config.aggregation.value,
            }}
        )

    def unregister_oracle(self, source_id: str) -> None:
        with self._registry_lock.write():
            if self._sources.pop(source_id, None) is None:
                raise ConfigurationError(f"Oracle not registered: {source_id}")
        self._locks.discard(source_id)

    def is_registered(self, source_id: str) -> bool:
        with self._registry_lock.read():
            return source_id in self._sources

    def add_listener(self, listener: AnomalyListener) -> None:
        self._listeners.append(listener)

    def _state(self, source_id: str) -> _SourceState:
        with self._registry_lock.read():
            state = self._sources.get(source_id)
        if state is None:
            raise ConfigurationError(
                f"Oracle not registered: {source_id}",
                details={"source_id": source_id}
            )
        return state

    def _other_states(self, source_id: str) -> List[_SourceState]:
        with self._registry_lock.read():
            return [s for sid, s in self._sources.items() if sid != source_id]

    # Backups and manual controls

    def set_backup(self, primary: str, backup: str) -> None:
        self._state(primary)
        self._state(backup)
        with self._registry_lock.write():
            self._backups[primary] = backup

    def switch_to_backup(self, primary: str) -> str:
        """Route reads for ``primary`` to its configured backup."""
        with self._registry_lock.write():
            backup = self._backups.get(primary)
            if backup is None:
                raise ConfigurationError(
                    f"No backup configured for oracle {primary}",
                    details={"source_id": primary}
                )
            self._active_backups[primary] = backup
        logger.warning(
            f"Switched oracle {primary} to backup {backup}",
            extra={'extra_data': {'source_id': primary, 'backup': backup}}
        )
        return backup

    def restore_primary(self, primary: str) -> None:
        with self._registry_lock.write():
            self._active_backups.pop(primary, None)

    def resolve_source(self, source_id: str) -> str:
        with self._registry_lock.read():
            return self._active_backups.get(source_id, source_id)

    def pause_oracle(self, source_id: str, reason: str = "manual pause") -> None:
        state = self._state(source_id)
        with self._locks.write(source_id):
            state.breaker.trigger(reason)
        logger.error(
            f"Oracle paused: {source_id}",
            extra={'extra_data': {'source_id': source_id, 'reason': reason}}
        )

    def get_breaker_state(self, source_id: str) -> Dict:
        state = self._state(source_id)
        with self._locks.write(source_id):
            return state.breaker.snapshot()

    def is_breaker_triggered(self, source_id: str) -> bool:
        state = self._state(source_id)
        with self._locks.write(source_id):
            return state.breaker.is_triggered()

    def reset_history(self, source_id: str) -> None:
        state = self._state(source_id)
        with self._locks.write(source_id):
            state.history.clear()
        logger.info(f"Price history reset: {source_id}", extra={'extra_data': {'source_id': source_id}})

    def get_history(self, source_id: str) -> List[PriceObservation]:
        state = self._state(source_id)
        with self._locks.read(source_id):
            return list(state.history)

    # Flash-loan context

    def is_potential_flash_loan(self, tx: TransactionIntent) -> bool:
        if tx.value > Decimal(str(self.settings.flash_loan_value_threshold)):
            return True
        return tx.target_key in self._flash_loan_providers

    def update_block_activity(self, transactions: Iterable[TransactionIntent]) -> bool:
        """Refresh the flash-loan context from freshly sampled blocks."""
        detected = any(self.is_potential_flash_loan(tx) for tx in transactions)
        self.set_flash_loan_context(detected)
        return detected

    def set_flash_loan_context(self, active: bool) -> None:
        with self._flash_lock:
            changed = self._flash_loan_context != active
            self._flash_loan_context = active
        if changed:
            logger.info(
                "Flash-loan context changed",
                extra={'extra_data': {'flash_loan_context': active}}
            )

    @property
    def flash_loan_context(self) -> bool:
        with self._flash_lock:
            return self._flash_loan_context

    # Validation

    def validate(self, source_id: str, price: float) -> bool:
        """Validate one observation; True when accepted into history."""
        return self.validate_detailed(source_id, price).accepted

    def validate_detailed(
        self,
        source_id: str,
        price: float,
        block_number: Optional[int] = None,
        confidence: float = 1.0,
    ) -> PriceValidationResult:
        """
        Run every check against a candidate price.

        Args:
            source_id: Registered source reporting the price
            price: Candidate price
            block_number: Optional block reference for the observation

        Returns:
            PriceValidationResult with failed checks and any anomaly

        Raises:
            ConfigurationError: If the source is not registered
        """
        state = self._state(source_id)
        config = state.config
        now = self.clock()
        price = float(price)

        with self._locks.write(source_id):
            if state.breaker.is_triggered():
                logger.warning(
                    f"Price rejected, breaker triggered: {source_id}",
                    extra={'extra_data': {'source_id': source_id, 'price': price}}
                )
                return PriceValidationResult(
                    accepted=False,
                    source_id=source_id,
                    price=price,
                    failed_checks=(ValidationCheck.CIRCUIT_BREAKER,),
                )

        references, latest_by_source, other_series = self._snapshot_others(source_id, now)
        reference_price = aggregate_prices(
            references, config.aggregation, config.weights, config.trim_fraction
        )

        failed: List[ValidationCheck] = []
        if reference_price is not None and relative_deviation(price, reference_price) > config.max_deviation:
            failed.append(ValidationCheck.DEVIATION)

        if self.flash_loan_context and not self._agrees_with_multiple_sources(
            price, latest_by_source, config.max_deviation
        ):
            failed.append(ValidationCheck.FLASH_LOAN)

        with self._locks.write(source_id):
            # Re-check: another thread may have tripped the breaker meanwhile
            if state.breaker.is_triggered():
                return PriceValidationResult(
                    accepted=False,
                    source_id=source_id,
                    price=price,
                    failed_checks=(ValidationCheck.CIRCUIT_BREAKER,),
                )

            own_prices = [o.price for o in state.history]
            last = state.history[-1] if state.history else None

            if last is not None and now - last.timestamp > config.max_staleness:
                failed.append(ValidationCheck.STALENESS)

            if not self._volatility_ok(own_prices, price):
                failed.append(ValidationCheck.VOLATILITY)

            if not self._correlation_ok(own_prices + [price], other_series):
                failed.append(ValidationCheck.CORRELATION)

            if not failed:
                state.history.append(PriceObservation(
                    price=price,
                    timestamp=now,
                    source_id=source_id,
                    confidence=confidence,
                    block_number=block_number,
                ))
                logger.debug(
                    f"Price accepted: {source_id}",
                    extra={'extra_data': {'source_id': source_id, 'price': price}}
                )
                return PriceValidationResult(
                    accepted=True,
                    source_id=source_id,
                    price=price,
                    reference_price=reference_price,
                    deviation=relative_deviation(price, reference_price) if reference_price else 0.0,
                )

            baseline = reference_price if reference_price is not None else (last.price if last else None)
            deviation = relative_deviation(price, baseline) if baseline is not None else 0.0
            severity = Severity.from_deviation(deviation)
            anomaly = OracleAnomaly(
                source_id=source_id,
                anomaly_type=self._classify(failed, deviation),
                severity=severity,
                detected_at=now,
                expected_price=baseline,
                actual_price=price,
                deviation_percentage=deviation * 100.0,
                failed_checks=tuple(failed),
            )
            if severity.trips_breaker:
                state.breaker.trigger(f"{anomaly.anomaly_type.value} ({deviation:.1%} deviation)")

        self._record_anomaly(anomaly)
        return PriceValidationResult(
            accepted=False,
            source_id=source_id,
            price=price,
            failed_checks=tuple(failed),
            reference_price=reference_price,
            deviation=deviation,
            anomaly=anomaly,
        )

    def _snapshot_others(
        self, source_id: str, now: datetime
    ) -> Tuple[List[PriceObservation], Dict[str, PriceObservation], Dict[str, List[float]]]:
        """Recent observations of every other source, read one source at a time."""
        window = timedelta(seconds=self.settings.oracle_reference_window_seconds)
        cutoff = now - window
        references: List[PriceObservation] = []
        latest: Dict[str, PriceObservation] = {}
        series: Dict[str, List[float]] = {}

        for other in self._other_states(source_id):
            other_id = other.config.source_id
            with self._locks.read(other_id):
                recent = [o for o in other.history if o.timestamp >= cutoff]
                tail = [o.price for o in list(other.history)[-CORRELATION_TAIL:]]
            if recent:
                references.extend(recent)
                latest[other_id] = recent[-1]
                series[other_id] = tail
        return references, latest, series

    def _volatility_ok(self, own_prices: List[float], price: float) -> bool:
        window = self.settings.oracle_volatility_window
        if len(own_prices) < window:
            return True
        recent = own_prices[-window:]
        before = coefficient_of_variation(recent)
        after = coefficient_of_variation(recent + [price])
        return after - before <= self.settings.oracle_volatility_delta

    @staticmethod
    def _agrees_with_multiple_sources(
        price: float, latest: Dict[str, PriceObservation], max_deviation: float
    ) -> bool:
        agreeing = sum(
            1 for obs in latest.values()
            if relative_deviation(price, obs.price) <= max_deviation
        )
        return agreeing >= 2

    def _correlation_ok(self, candidate_series: List[float], others: Dict[str, List[float]]) -> bool:
        if not others:
            return True
        tail = candidate_series[-CORRELATION_TAIL:]
        known = [
            c for c in (self.correlation_source.correlation(tail, other) for other in others.values())
            if c is not None
        ]
        if not known:
            return True
        correlated = sum(1 for c in known if c >= self.settings.oracle_min_correlation)
        return correlated / len(known) >= 0.5

    @staticmethod
    def _classify(failed: List[ValidationCheck], deviation: float) -> AnomalyType:
        if deviation > 0.5:
            return AnomalyType.PRICE_MANIPULATION
        if ValidationCheck.FLASH_LOAN in failed:
            return AnomalyType.FLASH_LOAN_ATTACK
        if ValidationCheck.STALENESS in failed:
            return AnomalyType.STALE_PRICE
        if ValidationCheck.VOLATILITY in failed:
            return AnomalyType.EXTREME_VOLATILITY
        return AnomalyType.OUTLIER

    def _record_anomaly(self, anomaly: OracleAnomaly) -> None:
        with self._stats_lock:
            self._anomalies.append(anomaly)
            self._anomaly_count += 1

        log = logger.error if anomaly.severity.trips_breaker else logger.warning
        log(
            f"Oracle anomaly on {anomaly.source_id}: {anomaly.anomaly_type.value}",
            extra={'extra_data': {
                'source_id': anomaly.source_id,
                'severity': anomaly.severity.value,
                'deviation_percentage': round(anomaly.deviation_percentage, 2),
                'failed_checks': [c.value for c in anomaly.failed_checks],
                'breaker_tripped': anomaly.severity.trips_breaker,
            }}
        )

        for listener in list(self._listeners):
            try:
                listener(anomaly)
            except Exception as e:
                logger.error(
                    f"Anomaly listener failed: {e}",
                    extra={'extra_data': {'source_id': anomaly.source_id}},
                    exc_info=True
                )

    def recent_anomalies(self, limit: int = 50) -> List[OracleAnomaly]:
        with self._stats_lock:
            return list(self._anomalies)[-limit:]

    def get_statistics(self) -> Dict:
        with self._registry_lock.read():
            states = list(self._sources.values())
        active_breakers = 0
        total_points = 0
        for state in states:
            with self._locks.write(state.config.source_id):
                if state.breaker.is_triggered():
                    active_breakers += 1
                total_points += len(state.history)
        with self._stats_lock:
            anomalies = self._anomaly_count
        return {
            "registered_oracles": len(states),
            "active_circuit_breakers": active_breakers,
            "total_price_points": total_points,
            "anomalies_detected": anomalies,
            "flash_loan_context": self.flash_loan_context,
        }
