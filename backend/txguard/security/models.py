"""
Domain records shared by the detectors, risk engine and orchestrator.

File: backend/txguard/security/models.py
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address: str) -> bool:
    """Check the 0x-prefixed 20 byte hex form."""
    return bool(address) and bool(ADDRESS_PATTERN.match(address))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransactionIntent:
    """Candidate transaction received from the submission layer."""

    sender: str
    to: str
    value: Decimal = Decimal("0")
    gas_price: int = 0
    gas_limit: int = 21_000
    data: str = "0x"
    nonce: int = 0
    tx_hash: Optional[str] = None

    @property
    def selector(self) -> str:
        """Lower-cased 4 byte function selector, empty for plain transfers."""
        data = self.data.lower()
        if not data.startswith("0x"):
            data = "0x" + data
        return data[:10] if len(data) >= 10 else ""

    @property
    def data_bytes(self) -> bytes:
        raw = self.data[2:] if self.data.lower().startswith("0x") else self.data
        try:
            return bytes.fromhex(raw)
        except ValueError:
            return raw.encode("utf-8", errors="replace")

    @property
    def sender_key(self) -> str:
        return self.sender.lower()

    @property
    def target_key(self) -> str:
        return self.to.lower()


class ThreatKind(str, Enum):
    FRONTRUNNING = "frontrunning"
    BACKRUNNING = "backrunning"
    SANDWICHING = "sandwiching"
    ARBITRAGE = "arbitrage"
    LIQUIDATION = "liquidation"
    FLASH_LOAN_ATTACK = "flash_loan_attack"
    GOVERNANCE_ATTACK = "governance_attack"
    PRICE_MANIPULATION = "price_manipulation"
    UNKNOWN = "unknown"


MEV_THREATS = frozenset({
    ThreatKind.FRONTRUNNING,
    ThreatKind.BACKRUNNING,
    ThreatKind.SANDWICHING,
    ThreatKind.ARBITRAGE,
    ThreatKind.UNKNOWN,
})


@dataclass(frozen=True)
class ThreatRecord:
    """A single detected threat against a candidate transaction."""

    kind: ThreatKind
    confidence: float
    potential_value: Decimal = Decimal("0")
    attacker: Optional[str] = None
    detected_at: datetime = field(default_factory=_utc_now)
    description: str = ""
    detector: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "confidence": self.confidence,
            "potential_value": str(self.potential_value),
            "attacker": self.attacker,
            "detected_at": self.detected_at.isoformat(),
            "description": self.description,
            "detector": self.detector,
        }


class RiskFactorKind(str, Enum):
    SMART_CONTRACT = "smart_contract_risk"
    PRICE_VOLATILITY = "price_volatility"
    LIQUIDITY = "liquidity_risk"
    MEV = "mev_risk"
    FLASH_LOAN = "flash_loan_risk"
    CONCENTRATION = "concentration_risk"
    CORRELATION = "correlation_risk"
    LIQUIDATION = "liquidation_risk"
    IMPERMANENT_LOSS = "impermanent_loss_risk"
    THREAT = "detected_threat"


@dataclass(frozen=True)
class RiskFactor:
    kind: RiskFactorKind
    severity: float
    weight: float
    description: str = ""
    mitigation: Optional[str] = None

    def __post_init__(self) -> None:
        if self.weight <= 0:
            raise ValueError("risk factor weight must be positive")
        object.__setattr__(self, "severity", min(1.0, max(0.0, float(self.severity))))


class RiskLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        return _RISK_LEVEL_ORDER.index(self)

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        """Step function from score to level."""
        if score < 0.2:
            return cls.VERY_LOW
        if score < 0.4:
            return cls.LOW
        if score < 0.6:
            return cls.MEDIUM
        if score < 0.8:
            return cls.HIGH
        return cls.VERY_HIGH


_RISK_LEVEL_ORDER = [
    RiskLevel.VERY_LOW, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.VERY_HIGH
]


@dataclass(frozen=True)
class RiskAssessment:
    overall_score: float
    level: RiskLevel
    factors: Tuple[RiskFactor, ...]
    recommendations: Tuple[str, ...]
    confidence: float
    timestamp: datetime
    degraded_sources: Tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": round(self.overall_score, 4),
            "level": self.level.value,
            "factors": [
                {
                    "kind": f.kind.value,
                    "severity": f.severity,
                    "weight": f.weight,
                    "description": f.description,
                    "mitigation": f.mitigation,
                }
                for f in self.factors
            ],
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
            "degraded_sources": list(self.degraded_sources),
        }


@dataclass(frozen=True)
class PriceObservation:
    price: float
    timestamp: datetime
    source_id: str
    confidence: float = 1.0
    block_number: Optional[int] = None


@dataclass
class Position:
    """A held position as reported by the protocol/lending managers."""

    asset: str
    value: float
    owner: Optional[str] = None
    protocol: Optional[str] = None
    collateral_value: float = 0.0
    debt_value: float = 0.0
    leverage: float = 1.0
    is_liquidity_position: bool = False
    price_ratio: float = 1.0  # current / entry price, liquidity positions only

    @property
    def is_leveraged(self) -> bool:
        return self.debt_value > 0 or self.leverage > 1.0

    @property
    def health_factor(self) -> float:
        return self.collateral_value / max(self.debt_value, 1.0)


@dataclass(frozen=True)
class ProtectionPlan:
    """Suggested adjustments returned to the submission layer.

    Nothing here is signed or broadcast; it is advice only.
    """

    adjusted_gas_price: Optional[int] = None
    recommended_delay_seconds: float = 0.0
    use_private_relay: bool = False
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adjusted_gas_price": self.adjusted_gas_price,
            "recommended_delay_seconds": self.recommended_delay_seconds,
            "use_private_relay": self.use_private_relay,
            "notes": list(self.notes),
        }


@dataclass
class PolicyResult:
    allowed: bool
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
