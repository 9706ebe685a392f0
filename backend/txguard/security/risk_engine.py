"""
Multi-factor risk engine.

Aggregates independently computed risk factors, plus factors derived from
detector threats, into a weighted score in [0, 1]:

    score = sum(severity * weight) / sum(weight), clamped to [0, 1]

Lookups against external data that come back unknown never raise the
score; they lower the assessment's confidence instead.

File: backend/txguard/security/risk_engine.py
"""

from __future__ import annotations

import math
import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..chains.circuit_breaker import Clock, utc_now
from ..chains.provider import ContractIntelligence
from ..core.logging import get_logger
from .models import (
    Position,
    RiskAssessment,
    RiskFactor,
    RiskFactorKind,
    RiskLevel,
    ThreatKind,
    ThreatRecord,
    TransactionIntent,
)
from .protocol_guard import FLASH_LOAN_SELECTORS
from .stress_testing import DEFAULT_SCENARIOS, ScenarioResult, StressScenario, run_scenarios

logger = get_logger(__name__)

BASE_CONFIDENCE = 0.85
PORTFOLIO_BASE_CONFIDENCE = 0.80
DEGRADED_PENALTY = 0.15
MIN_CONFIDENCE = 0.3
HISTORY_CAPACITY = 10_000
THREAT_WEIGHT = 0.7

LEVEL_RECOMMENDATIONS = {
    RiskLevel.VERY_HIGH: "URGENT: exit positions or reduce exposure immediately",
    RiskLevel.HIGH: "Reduce position sizes and hedge exposure",
    RiskLevel.MEDIUM: "Increase monitoring frequency and set up alerts",
}

THREAT_MITIGATIONS = {
    ThreatKind.FRONTRUNNING: "Submit through a private relay or raise gas to outbid",
    ThreatKind.BACKRUNNING: "Bundle the transaction to avoid trailing extraction",
    ThreatKind.SANDWICHING: "Tighten slippage tolerance and use a private relay",
    ThreatKind.ARBITRAGE: "Defer execution until competition clears",
    ThreatKind.LIQUIDATION: "Verify the position is genuinely undercollateralised",
    ThreatKind.FLASH_LOAN_ATTACK: "Reject interactions funded by same-block flash loans",
    ThreatKind.GOVERNANCE_ATTACK: "Review the proposal and voter before execution",
    ThreatKind.PRICE_MANIPULATION: "Use time-weighted prices and split large trades",
    ThreatKind.UNKNOWN: "Review the transaction manually",
}


class MarketDataSource(Protocol):
    """Per-contract market data; None when unknown."""

    def volatility(self, address: str) -> Optional[float]: ...

    def liquidity(self, address: str) -> Optional[float]: ...


def score_factors(factors: Sequence[RiskFactor]) -> float:
    """Weighted mean severity, clamped to [0, 1]; 0.0 for no factors."""
    total_weight = sum(f.weight for f in factors)
    if total_weight <= 0:
        return 0.0
    weighted = sum(f.severity * f.weight for f in factors)
    return min(1.0, max(0.0, weighted / total_weight))


def _bucket(value: float, steps: Sequence[Tuple[float, float]], default: float) -> float:
    for bound, severity in steps:
        if value < bound:
            return severity
    return default


def contract_severity(verified: bool, audit: Optional[str]) -> float:
    if not verified:
        return 0.8
    return {"audited": 0.1, "partial": 0.3, "none": 0.5}.get(audit or "", 0.4)


def impermanent_loss(price_ratio: float) -> float:
    """Magnitude of impermanent loss for a constant-product pool."""
    if price_ratio <= 0:
        return 1.0
    return abs(2.0 * math.sqrt(price_ratio) / (1.0 + price_ratio) - 1.0)


class RiskEngine:
    """Transaction and portfolio risk assessment."""

    def __init__(
        self,
        contract_intel: Optional[ContractIntelligence] = None,
        market_data: Optional[MarketDataSource] = None,
        clock: Clock = utc_now,
        scenarios: Sequence[StressScenario] = DEFAULT_SCENARIOS,
    ):
        self.contract_intel = contract_intel
        self.market_data = market_data
        self.clock = clock
        self.scenarios = list(scenarios)

        self._reference_gas_price: Optional[int] = None
        self._correlations: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self._history: Deque[RiskAssessment] = deque(maxlen=HISTORY_CAPACITY)

    # Inputs

    def set_reference_gas_price(self, gas_price_wei: Optional[int]) -> None:
        with self._lock:
            self._reference_gas_price = gas_price_wei if gas_price_wei else None

    def set_correlation(self, asset_a: str, asset_b: str, value: float) -> None:
        key = tuple(sorted((asset_a.lower(), asset_b.lower())))
        with self._lock:
            self._correlations[key] = max(-1.0, min(1.0, value))

    def get_correlation(self, asset_a: str, asset_b: str) -> Optional[float]:
        key = tuple(sorted((asset_a.lower(), asset_b.lower())))
        with self._lock:
            return self._correlations.get(key)

    # Transaction assessment

    def assess(self, tx: TransactionIntent, threats: Iterable[ThreatRecord] = ()) -> RiskAssessment:
        """
        Assess a single transaction.

        Args:
            tx: Candidate transaction
            threats: Detector output folded in as additional factors

        Returns:
            Immutable RiskAssessment
        """
        factors: List[RiskFactor] = []
        degraded: List[str] = []

        for collect in (
            self._contract_factor,
            self._volatility_factor,
            self._liquidity_factor,
            self._mev_factor,
            self._flash_loan_factor,
        ):
            factor = collect(tx, degraded)
            if factor is not None:
                factors.append(factor)

        factors.extend(self._threat_factors(threats))

        assessment = self.build_assessment(factors, degraded, BASE_CONFIDENCE)
        self._remember(assessment)
        logger.debug(
            "Transaction risk assessed",
            extra={'extra_data': {
                'target': tx.to,
                'risk_level': assessment.level.value,
                'score': round(assessment.overall_score, 4),
                'degraded_sources': degraded,
            }}
        )
        return assessment

    def build_assessment(
        self,
        factors: Sequence[RiskFactor],
        degraded: Sequence[str] = (),
        base_confidence: float = BASE_CONFIDENCE,
        extra_recommendations: Sequence[str] = (),
    ) -> RiskAssessment:
        score = score_factors(factors)
        level = RiskLevel.from_score(score)
        confidence = max(MIN_CONFIDENCE, base_confidence - DEGRADED_PENALTY * len(degraded))
        return RiskAssessment(
            overall_score=score,
            level=level,
            factors=tuple(factors),
            recommendations=tuple(self._recommendations(factors, level, extra_recommendations)),
            confidence=confidence,
            timestamp=self.clock(),
            degraded_sources=tuple(degraded),
        )

    @staticmethod
    def _recommendations(
        factors: Sequence[RiskFactor], level: RiskLevel, extra: Sequence[str]
    ) -> List[str]:
        recommendations: List[str] = []
        for factor in factors:
            if factor.severity > 0.6 and factor.mitigation and factor.mitigation not in recommendations:
                recommendations.append(factor.mitigation)
        for item in extra:
            if item not in recommendations:
                recommendations.append(item)
        generic = LEVEL_RECOMMENDATIONS.get(level)
        if generic:
            recommendations.append(generic)
        return recommendations

    def _contract_factor(self, tx: TransactionIntent, degraded: List[str]) -> Optional[RiskFactor]:
        if self.contract_intel is None:
            degraded.append("contract_intelligence")
            verified, audit = None, None
        else:
            verified = self.contract_intel.is_verified(tx.to)
            audit = self.contract_intel.audit_status(tx.to)
            if verified is None:
                degraded.append("contract_verification")
            elif audit is None:
                degraded.append("audit_status")

        severity = 0.5 if verified is None else contract_severity(verified, audit)
        return RiskFactor(
            kind=RiskFactorKind.SMART_CONTRACT,
            severity=severity,
            weight=0.8,
            description=f"Contract verified: {verified}, audit status: {audit or 'unknown'}",
            mitigation="Use only verified and audited contracts",
        )

    def _volatility_factor(self, tx: TransactionIntent, degraded: List[str]) -> Optional[RiskFactor]:
        if self.market_data is None:
            return None
        volatility = self.market_data.volatility(tx.to)
        if volatility is None:
            degraded.append("volatility")
            return None
        severity = _bucket(volatility, ((0.1, 0.1), (0.2, 0.3), (0.4, 0.5), (0.6, 0.7)), 0.9)
        return RiskFactor(
            kind=RiskFactorKind.PRICE_VOLATILITY,
            severity=severity,
            weight=0.6,
            description=f"Current volatility: {volatility:.2%}",
            mitigation="Use limit orders or reduce position size during volatile periods",
        )

    def _liquidity_factor(self, tx: TransactionIntent, degraded: List[str]) -> Optional[RiskFactor]:
        if self.market_data is None or tx.value <= 0:
            return None
        liquidity = self.market_data.liquidity(tx.to)
        if liquidity is None:
            degraded.append("liquidity")
            return None
        impact = float(tx.value) / liquidity if liquidity > 0 else 1.0
        severity = _bucket(impact, ((0.01, 0.1), (0.05, 0.3), (0.1, 0.5), (0.2, 0.7)), 0.9)
        return RiskFactor(
            kind=RiskFactorKind.LIQUIDITY,
            severity=severity,
            weight=0.7,
            description=f"Transaction impact: {impact:.2%} of available liquidity",
            mitigation="Split the trade or route through deeper liquidity",
        )

    def _mev_factor(self, tx: TransactionIntent, degraded: List[str]) -> Optional[RiskFactor]:
        with self._lock:
            reference = self._reference_gas_price
        if reference is None:
            degraded.append("gas_reference")
            return None
        premium = tx.gas_price / reference - 1.0
        severity = _bucket(premium, ((0.1, 0.1), (0.3, 0.4), (0.5, 0.6)), 0.8)
        return RiskFactor(
            kind=RiskFactorKind.MEV,
            severity=severity,
            weight=0.5,
            description=f"Gas price premium: {premium:.1%}",
            mitigation="Use private mempools or commit-reveal schemes",
        )

    def _flash_loan_factor(self, tx: TransactionIntent, degraded: List[str]) -> Optional[RiskFactor]:
        if tx.selector not in FLASH_LOAN_SELECTORS:
            return None
        return RiskFactor(
            kind=RiskFactorKind.FLASH_LOAN,
            severity=0.7,
            weight=0.8,
            description="Transaction contains a flash loan call",
            mitigation="Ensure the flash loan is repaid within the same transaction and audited",
        )

    @staticmethod
    def _threat_factors(threats: Iterable[ThreatRecord]) -> List[RiskFactor]:
        return [
            RiskFactor(
                kind=RiskFactorKind.THREAT,
                severity=threat.confidence,
                weight=THREAT_WEIGHT,
                description=f"{threat.kind.value}: {threat.description}".rstrip(": "),
                mitigation=THREAT_MITIGATIONS.get(threat.kind),
            )
            for threat in threats
        ]

    # Portfolio assessment

    def assess_portfolio(self, positions: Sequence[Position]) -> RiskAssessment:
        """
        Assess concentration, correlation, liquidation and impermanent-loss risk.
        """
        degraded: List[str] = []
        factors = [
            self._concentration_factor(positions),
            self._correlation_factor(positions, degraded),
            self._liquidation_factor(positions),
            self._impermanent_loss_factor(positions),
        ]

        extra: List[str] = []
        leveraged = sum(1 for p in positions if p.is_leveraged)
        if positions and leveraged > len(positions) / 2:
            extra.append("Consider reducing leverage across the portfolio")
        if factors[0].severity > 0.6:
            extra.append("Diversify across more protocols and asset classes")

        assessment = self.build_assessment(factors, degraded, PORTFOLIO_BASE_CONFIDENCE, extra)
        self._remember(assessment)
        logger.info(
            "Portfolio risk assessed",
            extra={'extra_data': {
                'positions': len(positions),
                'risk_level': assessment.level.value,
                'score': round(assessment.overall_score, 4),
            }}
        )
        return assessment

    @staticmethod
    def _concentration_factor(positions: Sequence[Position]) -> RiskFactor:
        total = sum(max(p.value, 0.0) for p in positions)
        largest = max((p.value for p in positions), default=0.0)
        ratio = largest / total if total > 0 else 0.0
        return RiskFactor(
            kind=RiskFactorKind.CONCENTRATION,
            severity=_bucket(ratio, ((0.2, 0.1), (0.4, 0.3), (0.6, 0.5), (0.8, 0.7)), 0.9),
            weight=0.6,
            description=f"Largest position represents {ratio:.1%} of portfolio",
            mitigation="Diversify holdings to reduce single-asset exposure",
        )

    def _correlation_factor(self, positions: Sequence[Position], degraded: List[str]) -> RiskFactor:
        assets = sorted({p.asset.lower() for p in positions})
        known: List[float] = []
        missing = 0
        for i, a in enumerate(assets):
            for b in assets[i + 1:]:
                value = self.get_correlation(a, b)
                if value is None:
                    missing += 1
                else:
                    known.append(abs(value))
        if missing:
            degraded.append("correlation")
        average = sum(known) / len(known) if known else 0.0
        return RiskFactor(
            kind=RiskFactorKind.CORRELATION,
            severity=_bucket(average, ((0.2, 0.1), (0.4, 0.3), (0.6, 0.5), (0.8, 0.7)), 0.9),
            weight=0.5,
            description=f"Average correlation between positions: {average:.2f}",
            mitigation="Reduce correlation by diversifying across uncorrelated assets",
        )

    @staticmethod
    def _liquidation_factor(positions: Sequence[Position]) -> RiskFactor:
        leveraged = [p for p in positions if p.is_leveraged]
        if not leveraged:
            severity = 0.0
            description = "No leveraged positions"
        else:
            min_health = min(p.health_factor for p in leveraged)
            at_risk = sum(1 for p in leveraged if p.health_factor < 1.5)
            if min_health > 2.0:
                severity = 0.1
            elif min_health > 1.5:
                severity = 0.3
            elif min_health > 1.2:
                severity = 0.6
            elif min_health > 1.0:
                severity = 0.8
            else:
                severity = 1.0
            description = f"Minimum health factor: {min_health:.2f}, positions at risk: {at_risk}"
        return RiskFactor(
            kind=RiskFactorKind.LIQUIDATION,
            severity=severity,
            weight=0.9,
            description=description,
            mitigation="Increase collateral or reduce debt to improve health factors",
        )

    @staticmethod
    def _impermanent_loss_factor(positions: Sequence[Position]) -> RiskFactor:
        exposure = max(
            (impermanent_loss(p.price_ratio) for p in positions if p.is_liquidity_position),
            default=0.0,
        )
        return RiskFactor(
            kind=RiskFactorKind.IMPERMANENT_LOSS,
            severity=_bucket(exposure, ((0.05, 0.1), (0.1, 0.3), (0.2, 0.5), (0.3, 0.7)), 0.9),
            weight=0.4,
            description=f"Maximum impermanent loss exposure: {exposure:.1%}",
            mitigation="Prefer correlated pairs or concentrated ranges you actively manage",
        )

    # Stress testing

    def run_stress_tests(
        self,
        positions: Sequence[Position],
        scenarios: Optional[Sequence[StressScenario]] = None,
    ) -> List[ScenarioResult]:
        results = run_scenarios(scenarios if scenarios is not None else self.scenarios, positions)
        for result in results:
            logger.info(
                f"Stress scenario {result.scenario_name} completed",
                extra={'extra_data': {
                    'portfolio_loss': round(result.portfolio_loss, 4),
                    'max_drawdown': round(result.max_drawdown, 4),
                    'liquidation_probability': round(result.liquidation_probability, 4),
                }}
            )
        return results

    # History

    def _remember(self, assessment: RiskAssessment) -> None:
        with self._lock:
            self._history.append(assessment)

    def get_statistics(self) -> Dict:
        with self._lock:
            history = list(self._history)
        levels: Dict[str, int] = {}
        for a in history:
            levels[a.level.value] = levels.get(a.level.value, 0) + 1
        return {
            "assessments": len(history),
            "average_score": (sum(a.overall_score for a in history) / len(history)) if history else 0.0,
            "by_level": levels,
            "degraded_assessments": sum(1 for a in history if a.degraded),
        }
