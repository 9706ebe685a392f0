"""
Compliance rules evaluated against every audit entry before it is appended.

File: backend/txguard/ledger/compliance.py
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .audit_trail import AuditEntry


class ComplianceAction(str, Enum):
    LOG_WARNING = "log_warning"
    BLOCK_TRANSACTION = "block_transaction"
    REQUIRE_APPROVAL = "require_approval"
    NOTIFY_COMPLIANCE = "notify_compliance"
    GENERATE_REPORT = "generate_report"


# Looks up how many entries an actor logged since a point in time.
ActorFrequency = Callable[[str, datetime], int]


@dataclass(frozen=True)
class ComplianceCondition:
    """Base of the closed set of rule conditions."""

    name: ClassVar[str] = "condition"

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


@dataclass(frozen=True)
class ValueAbove(ComplianceCondition):
    name: ClassVar[str] = "value_above"
    threshold: Decimal = Decimal("0")

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        return entry.value is not None and entry.value > self.threshold

    def describe(self) -> str:
        return f"value > {self.threshold}"


@dataclass(frozen=True)
class RiskScoreAbove(ComplianceCondition):
    name: ClassVar[str] = "risk_score_above"
    threshold: float = 0.8

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        return entry.risk_score is not None and entry.risk_score > self.threshold

    def describe(self) -> str:
        return f"risk score > {self.threshold}"


@dataclass(frozen=True)
class HasSecurityFlag(ComplianceCondition):
    name: ClassVar[str] = "security_flag"
    flag: str = ""

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        return self.flag in entry.security_flags

    def describe(self) -> str:
        return f"flag {self.flag}"


@dataclass(frozen=True)
class GasAbove(ComplianceCondition):
    name: ClassVar[str] = "gas_above"
    threshold: int = 0

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        return entry.gas_used is not None and entry.gas_used > self.threshold

    def describe(self) -> str:
        return f"gas > {self.threshold}"


@dataclass(frozen=True)
class FrequencyAbove(ComplianceCondition):
    """More than ``max_entries`` from one actor within ``window``, the candidate included."""

    name: ClassVar[str] = "frequency_above"
    max_entries: int = 100
    window: timedelta = timedelta(hours=1)

    def matches(self, entry: "AuditEntry", frequency: ActorFrequency) -> bool:
        if not entry.actor:
            return False
        return frequency(entry.actor, entry.timestamp - self.window) + 1 > self.max_entries

    def describe(self) -> str:
        return f"more than {self.max_entries} entries per {self.window}"


@dataclass
class ComplianceRule:
    name: str
    condition: ComplianceCondition
    action: ComplianceAction
    description: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class RuleMatch:
    rule: str
    action: ComplianceAction
    condition: str


def evaluate_rules(
    rules: List[ComplianceRule], entry: "AuditEntry", frequency: ActorFrequency
) -> List[RuleMatch]:
    """Every enabled rule whose condition holds for ``entry``, in rule order."""
    matches: List[RuleMatch] = []
    for rule in rules:
        if rule.enabled and rule.condition.matches(entry, frequency):
            matches.append(RuleMatch(rule.name, rule.action, rule.condition.describe()))
    return matches


def default_rules() -> List[ComplianceRule]:
    return [
        ComplianceRule(
            name="high_value_transaction",
            condition=ValueAbove(Decimal("100")),
            action=ComplianceAction.NOTIFY_COMPLIANCE,
            description="Transactions above 100 native units require additional monitoring",
        ),
        ComplianceRule(
            name="high_risk_transaction",
            condition=RiskScoreAbove(0.8),
            action=ComplianceAction.REQUIRE_APPROVAL,
            description="Transactions with risk score above 0.8 require approval",
        ),
    ]


@dataclass
class ComplianceReport:
    report_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    total_transactions: int
    high_risk_transactions: int
    security_violations: int
    compliance_score: float
    recommendations: List[str] = field(default_factory=list)
    entries: Tuple["AuditEntry", ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "generated_at": self.generated_at.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_transactions": self.total_transactions,
            "high_risk_transactions": self.high_risk_transactions,
            "security_violations": self.security_violations,
            "compliance_score": round(self.compliance_score, 4),
            "recommendations": list(self.recommendations),
            "entry_ids": [e.id for e in self.entries],
        }


def compliance_recommendations(total: int, high_risk: int, violations: int) -> List[str]:
    recommendations: List[str] = []
    if total == 0:
        recommendations.append("No audited activity in period")
        return recommendations
    if high_risk / total > 0.1:
        recommendations.append("Consider implementing stricter risk controls")
    if violations > 0:
        recommendations.append("Review and strengthen security measures")
    if not recommendations:
        recommendations.append("No compliance issues detected")
    return recommendations


__all__ = [
    "ActorFrequency",
    "ComplianceAction",
    "ComplianceCondition",
    "ComplianceReport",
    "ComplianceRule",
    "FrequencyAbove",
    "GasAbove",
    "HasSecurityFlag",
    "RiskScoreAbove",
    "RuleMatch",
    "ValueAbove",
    "compliance_recommendations",
    "default_rules",
    "evaluate_rules",
]
