"""
Security orchestrator.

Single entry point that wires the policy validator, oracle validator,
threat detectors, risk engine, emergency dispatcher and audit trail into
one analysis pipeline, and registers the background monitors that keep
their reference data fresh.

File: backend/txguard/security/orchestrator.py
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..chains.circuit_breaker import Clock, utc_now
from ..chains.provider import (
    ChainProvider,
    ContractIntelligence,
    ExplorerVerificationClient,
    HttpChainProvider,
    StaticContractRegistry,
    call_with_timeout,
)
from ..core.exceptions import AnalysisDegraded, TransientIOError
from ..core.logging import cleanup_logging, get_logger, new_trace_id, setup_logging
from ..core.scheduler import SchedulerManager
from ..core.settings import Settings, get_settings
from ..ledger.audit_trail import AuditEntryType, AuditTrail, ComplianceNotifier
from ..ledger.compliance import ComplianceReport, ComplianceRule
from ..monitoring.emergency import (
    AlertCategory,
    EmergencyAlert,
    EmergencyDispatcher,
    EmergencyLevel,
    ExecutionGateway,
    NotificationChannel,
    ResponseRecord,
    WebhookNotificationChannel,
)
from .mev_detector import MevDetector
from .models import (
    MEV_THREATS,
    ProtectionPlan,
    RiskAssessment,
    RiskFactorKind,
    ThreatKind,
    ThreatRecord,
    TransactionIntent,
)
from .oracle_validator import CorrelationSource, OracleAnomaly, OracleConfig, OracleValidator, Severity
from .protocol_guard import PositionFeed, ProtocolConfig, ProtocolGuard, VotingPowerSource
from .risk_engine import MarketDataSource, RiskEngine
from .transaction_validator import TransactionValidator

logger = get_logger(__name__)

CORROBORATING_CONFIDENCE = 0.7
CORROBORATING_SEVERITY = 0.6


class Decision(str, Enum):
    PASS = "pass"
    FLAG = "flag"
    BLOCK = "block"


class SecurityStatus(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one transaction analysis, with its explanation."""

    decision: Decision
    reasons: Tuple[str, ...]
    assessment: RiskAssessment
    threats: Tuple[ThreatRecord, ...] = ()
    violations: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    protection: Optional[ProtectionPlan] = None
    audit_entry_id: Optional[str] = None
    alert_id: Optional[str] = None
    trace_id: str = ""

    @property
    def approved(self) -> bool:
        return self.decision != Decision.BLOCK

    @property
    def degraded(self) -> bool:
        return self.assessment.degraded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "approved": self.approved,
            "reasons": list(self.reasons),
            "assessment": self.assessment.to_dict(),
            "threats": [t.to_dict() for t in self.threats],
            "violations": list(self.violations),
            "warnings": list(self.warnings),
            "protection": self.protection.to_dict() if self.protection else None,
            "audit_entry_id": self.audit_entry_id,
            "alert_id": self.alert_id,
            "degraded": self.degraded,
            "trace_id": self.trace_id,
        }


@dataclass
class StatusReport:
    status: SecurityStatus
    active_alerts: int
    active_breakers: int
    generated_at: datetime
    components: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "active_alerts": self.active_alerts,
            "active_breakers": self.active_breakers,
            "generated_at": self.generated_at.isoformat(),
            "components": self.components,
        }


def corroborating_signals(assessment: RiskAssessment, threats: Iterable[ThreatRecord]) -> int:
    """Independent signals: confident threats plus severe non-threat factors."""
    strong_threats = sum(1 for t in threats if t.confidence >= CORROBORATING_CONFIDENCE)
    severe_factors = sum(
        1 for f in assessment.factors
        if f.kind != RiskFactorKind.THREAT and f.severity > CORROBORATING_SEVERITY
    )
    return strong_threats + severe_factors


def transaction_alert(
    tx: TransactionIntent, assessment: RiskAssessment, threats: Iterable[ThreatRecord]
) -> EmergencyAlert:
    """
    Build the Critical alert raised for a blocked high-risk transaction.

    The target is listed as an affected protocol, and so has its resource
    breaker tripped, only when a threat points at the protocol itself
    (flash loan, price manipulation or governance attack). Otherwise the
    alert is scoped to the sender and the target keeps serving other users.
    """
    threats = list(threats)
    kinds = {t.kind for t in threats}
    if ThreatKind.FLASH_LOAN_ATTACK in kinds or ThreatKind.PRICE_MANIPULATION in kinds:
        category = AlertCategory.SMART_CONTRACT_EXPLOIT
    elif ThreatKind.GOVERNANCE_ATTACK in kinds:
        category = AlertCategory.GOVERNANCE_ATTACK
    else:
        category = AlertCategory.HIGH_RISK_TRANSACTION

    details = [t.description for t in threats if t.description]
    details.append(f"target {tx.target_key}")
    return EmergencyAlert.create(
        EmergencyLevel.CRITICAL,
        f"High-risk transaction blocked ({assessment.level.value})",
        description="; ".join(details),
        category=category,
        affected_addresses=[tx.sender_key],
        affected_protocols=[] if category == AlertCategory.HIGH_RISK_TRANSACTION else [tx.target_key],
        metrics={"risk_score": assessment.overall_score},
        actions_required=["review blocked transaction"],
    )


class EngineControls:
    """Protective controls backed by the protocol guard and oracle validator."""

    def __init__(self, guard: ProtocolGuard, oracles: OracleValidator):
        self.guard = guard
        self.oracles = oracles

    def pause_protocol(self, protocol: str) -> None:
        self.guard.set_paused(protocol, True)

    def freeze_address(self, address: str) -> None:
        self.guard.freeze_address(address)

    def block_address(self, address: str) -> None:
        self.guard.block_address(address)

    def block_function(self, contract: str, selector: str) -> None:
        self.guard.block_function(contract, selector)

    def rate_limit_address(self, address: str, max_tx_per_minute: int) -> None:
        self.guard.set_rate_limit(address, max_tx_per_minute)

    def pause_oracle(self, source_id: str) -> None:
        self.oracles.pause_oracle(source_id, reason="emergency response")

    def switch_to_backup_oracle(self, primary: str) -> str:
        return self.oracles.switch_to_backup(primary)


class SecurityOrchestrator:
    """
    Coordinates every security component behind narrow methods.

    Analysis is synchronous and in-memory; only the monitor jobs registered
    by ``start_monitors`` touch the chain provider.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[ChainProvider] = None,
        contract_intel: Optional[ContractIntelligence] = None,
        market_data: Optional[MarketDataSource] = None,
        position_feed: Optional[PositionFeed] = None,
        voting_power: Optional[VotingPowerSource] = None,
        correlation_source: Optional[CorrelationSource] = None,
        channel: Optional[NotificationChannel] = None,
        gateway: Optional[ExecutionGateway] = None,
        compliance_rules: Optional[Iterable[ComplianceRule]] = None,
        compliance_notifier: Optional[ComplianceNotifier] = None,
        explorer: Optional[ExplorerVerificationClient] = None,
        clock: Clock = utc_now,
        install_default_procedures: bool = True,
    ):
        self.settings = settings or get_settings()
        self.provider = provider
        self.explorer = explorer
        self._owns_logging = False
        self.clock = clock

        self.policy = TransactionValidator(self.settings)
        self.oracles = OracleValidator(self.settings, correlation_source=correlation_source, clock=clock)
        self.mev = MevDetector(self.settings, clock=clock)
        self.guard = ProtocolGuard(
            self.settings, clock=clock, position_feed=position_feed, voting_power=voting_power
        )
        self.risk = RiskEngine(contract_intel=contract_intel, market_data=market_data, clock=clock)
        self.dispatcher = EmergencyDispatcher(
            self.settings,
            controls=EngineControls(self.guard, self.oracles),
            gateway=gateway,
            channel=channel,
            clock=clock,
            install_defaults=install_default_procedures,
        )
        self.audit = AuditTrail(
            self.settings, rules=compliance_rules, notifier=compliance_notifier, clock=clock
        )

        self.oracles.add_listener(self._on_oracle_anomaly)
        self._escalated_positions: Set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        configure_logging: bool = True,
        **overrides: Any,
    ) -> "SecurityOrchestrator":
        """
        Build an orchestrator wired to the endpoints named in settings.

        Creates the JSON-RPC provider from ``rpc_url``, an explorer-backed
        contract registry when ``explorer_api_url`` is set, and a webhook
        channel when ``webhook_url`` is set. Keyword overrides replace any
        of these. Logging is configured from settings unless disabled.
        """
        settings = settings or get_settings()
        if configure_logging:
            setup_logging(
                log_level=settings.log_level,
                debug=settings.debug,
                environment=settings.environment,
                logs_dir=settings.logs_dir,
            )

        if "provider" not in overrides and settings.rpc_url:
            overrides["provider"] = HttpChainProvider(settings.rpc_url, settings.rpc_timeout_seconds)
        if "explorer" not in overrides and settings.explorer_api_url:
            registry = overrides.get("contract_intel")
            if not isinstance(registry, StaticContractRegistry):
                registry = StaticContractRegistry()
            overrides["explorer"] = ExplorerVerificationClient(
                settings.explorer_api_url,
                registry,
                api_key=settings.explorer_api_key,
                timeout_seconds=settings.rpc_timeout_seconds,
            )
            overrides.setdefault("contract_intel", registry)
        if "channel" not in overrides and settings.webhook_url:
            overrides["channel"] = WebhookNotificationChannel(settings.webhook_url)

        orchestrator = cls(settings, **overrides)
        orchestrator._owns_logging = configure_logging
        logger.info(
            "Security orchestrator configured",
            extra={'extra_data': {
                'environment': settings.environment,
                'provider': type(orchestrator.provider).__name__ if orchestrator.provider else None,
                'explorer': orchestrator.explorer is not None,
            }}
        )
        return orchestrator

    async def close(self) -> None:
        """Release network clients and stop the log listener this instance started."""
        if isinstance(self.provider, HttpChainProvider):
            await self.provider.close()
        if self._owns_logging:
            cleanup_logging()
            self._owns_logging = False

    # Registration

    def register_protocol(self, config: ProtocolConfig, breaker_cooldown: Optional[timedelta] = None) -> None:
        self.guard.register_protocol(config)
        self.dispatcher.register_resource(config.address, breaker_cooldown)

    def register_oracle(self, config: OracleConfig) -> None:
        self.oracles.register_oracle(config)

    # Analysis

    def analyze(self, tx: TransactionIntent, strict: bool = False) -> AnalysisResult:
        """
        Analyze a candidate transaction.

        Args:
            tx: Transaction intent from the submission layer
            strict: Raise instead of proceeding when external data is unknown

        Returns:
            AnalysisResult with a pass/flag/block decision and its explanation

        Raises:
            AnalysisDegraded: In strict mode, if any risk lookup was unknown
        """
        trace_id = new_trace_id()
        reasons: List[str] = []

        policy = self.policy.validate(tx)
        reasons.extend(policy.violations)

        if self.dispatcher.is_resource_blocked(tx.target_key):
            reasons.append("target circuit breaker triggered")

        if policy.allowed:
            allowed, reason = self.guard.validate_protocol_interaction(tx)
            if not allowed:
                reasons.append(reason)

        threats: List[ThreatRecord] = self.mev.detect(tx) + self.guard.detect(tx)
        assessment = self.risk.assess(tx, threats)
        if strict and assessment.degraded:
            raise AnalysisDegraded(
                "Risk assessment ran on partial data",
                sources=list(assessment.degraded_sources),
                trace_id=trace_id,
            )

        hard_block = bool(reasons)
        signals = corroborating_signals(assessment, threats)
        if hard_block:
            decision = Decision.BLOCK
        elif (assessment.overall_score >= self.settings.block_risk_threshold
              and signals >= self.settings.min_corroborating_signals):
            decision = Decision.BLOCK
            reasons.append(
                f"risk score {assessment.overall_score:.2f} with {signals} corroborating signals"
            )
        elif assessment.overall_score >= self.settings.flag_risk_threshold or threats:
            decision = Decision.FLAG
            if assessment.overall_score >= self.settings.flag_risk_threshold:
                reasons.append(f"risk score {assessment.overall_score:.2f}")
            reasons.extend(f"threat detected: {t.kind.value}" for t in threats)
        else:
            decision = Decision.PASS

        protection = None
        mev_threats = [t for t in threats if t.kind in MEV_THREATS]
        if decision != Decision.BLOCK and mev_threats:
            protection = self.mev.apply_protection(tx, mev_threats)

        entry_id, compliance_block = self._audit_analysis(tx, decision, assessment, threats, reasons, trace_id)
        if compliance_block:
            decision = Decision.BLOCK
            reasons.append(compliance_block)
            protection = None

        alert_id = None
        if decision == Decision.BLOCK and not hard_block and compliance_block is None:
            alert_id = self._escalate_transaction(tx, assessment, threats)

        if decision != Decision.BLOCK:
            self.mev.record_transaction(tx)

        log = logger.warning if decision == Decision.BLOCK else logger.info
        log(
            f"Transaction analyzed: {decision.value}",
            extra={'extra_data': {
                'trace_id': trace_id,
                'sender': tx.sender_key,
                'target': tx.target_key,
                'decision': decision.value,
                'risk_level': assessment.level.value,
                'score': round(assessment.overall_score, 4),
                'threats': [t.kind.value for t in threats],
            }}
        )

        return AnalysisResult(
            decision=decision,
            reasons=tuple(reasons),
            assessment=assessment,
            threats=tuple(threats),
            violations=tuple(policy.violations),
            warnings=tuple(policy.warnings),
            protection=protection,
            audit_entry_id=entry_id,
            alert_id=alert_id,
            trace_id=trace_id,
        )

    def _audit_analysis(
        self,
        tx: TransactionIntent,
        decision: Decision,
        assessment: RiskAssessment,
        threats: List[ThreatRecord],
        reasons: List[str],
        trace_id: str,
    ) -> Tuple[Optional[str], Optional[str]]:
        flags = {f"threat:{t.kind.value}" for t in threats}
        metadata = {"trace_id": trace_id, "decision": decision.value, "reasons": list(reasons)}

        if decision == Decision.BLOCK:
            result = self.audit.log_security_event(
                AuditEntryType.SECURITY_VIOLATION,
                tx.sender_key,
                "; ".join(reasons),
                risk_score=assessment.overall_score,
                flags=flags | {"blocked"},
                contract=tx.target_key,
                metadata=metadata,
            )
            return (result.entry.id if result.entry else None), None

        result = self.audit.log_transaction(
            sender=tx.sender_key,
            to=tx.target_key,
            value=tx.value,
            gas_price=tx.gas_price,
            tx_hash=tx.tx_hash,
            function=tx.selector or None,
            risk_score=assessment.overall_score,
            security_flags=flags,
            metadata=metadata,
        )
        if result.accepted:
            return result.entry.id, None

        # Rejected entries are not appended; record the violation instead
        violation = self.audit.log_security_event(
            AuditEntryType.SECURITY_VIOLATION,
            tx.sender_key,
            result.reason,
            flags={"compliance_block"},
            contract=tx.target_key,
            metadata={"trace_id": trace_id, "rule": result.blocking_rule},
        )
        return (violation.entry.id if violation.entry else None), result.reason

    def _escalate_transaction(
        self, tx: TransactionIntent, assessment: RiskAssessment, threats: List[ThreatRecord]
    ) -> str:
        alert = transaction_alert(tx, assessment, threats)
        self.trigger_alert(alert)
        return alert.id

    # Prices

    def validate_price(self, source_id: str, price: float) -> bool:
        """Validate a price against the source currently serving reads."""
        return self.oracles.validate(self.oracles.resolve_source(source_id), price)

    def _on_oracle_anomaly(self, anomaly: OracleAnomaly) -> None:
        self.audit.log_security_event(
            AuditEntryType.PRICE_DEVIATION,
            None,
            f"{anomaly.anomaly_type.value} on {anomaly.source_id}",
            flags={f"oracle:{anomaly.anomaly_type.value}"},
            metadata={
                "source_id": anomaly.source_id,
                "severity": anomaly.severity.value,
                "deviation_percentage": anomaly.deviation_percentage,
            },
        )
        if not anomaly.severity.trips_breaker:
            return
        level = EmergencyLevel.EMERGENCY if anomaly.severity == Severity.CRITICAL else EmergencyLevel.CRITICAL
        self.trigger_alert(EmergencyAlert.create(
            level,
            f"Oracle anomaly: {anomaly.source_id}",
            description=f"{anomaly.anomaly_type.value}, {anomaly.deviation_percentage:.1f}% deviation",
            category=AlertCategory.ORACLE_MANIPULATION,
            affected_addresses=[anomaly.source_id],
            metrics={"deviation": anomaly.deviation_percentage / 100.0},
        ))

    # Alerts

    def trigger_alert(self, alert: EmergencyAlert) -> ResponseRecord:
        record = self.dispatcher.trigger_alert(alert)
        self.audit.log_security_event(
            AuditEntryType.EMERGENCY_ACTION,
            None,
            alert.title,
            flags={f"alert:{alert.level.value}"},
            metadata={
                "alert_id": alert.id,
                "procedures": list(record.procedures),
                "effectiveness": record.effectiveness_score,
            },
        )
        return record

    def resolve_alert(self, alert_id: str, note: str = "") -> EmergencyAlert:
        alert = self.dispatcher.resolve_alert(alert_id, note)
        self.audit.log_security_event(
            AuditEntryType.ADMIN_ACTION,
            None,
            f"Alert resolved: {alert.title}",
            metadata={"alert_id": alert_id, "note": note},
        )
        return alert

    # Reporting

    def get_status(self) -> StatusReport:
        alerts = self.dispatcher.get_active_alerts()
        levels = {a.level for a in alerts}
        dispatcher_stats = self.dispatcher.get_statistics()
        oracle_stats = self.oracles.get_statistics()
        breakers = dispatcher_stats["active_circuit_breakers"] + oracle_stats["active_circuit_breakers"]

        if EmergencyLevel.EMERGENCY in levels:
            status = SecurityStatus.EMERGENCY
        elif EmergencyLevel.CRITICAL in levels:
            status = SecurityStatus.CRITICAL
        elif alerts or breakers:
            status = SecurityStatus.ELEVATED
        else:
            status = SecurityStatus.NORMAL

        return StatusReport(
            status=status,
            active_alerts=len(alerts),
            active_breakers=breakers,
            generated_at=self.clock(),
            components={
                "oracles": oracle_stats,
                "mev": self.mev.get_statistics(),
                "protocols": self.guard.get_statistics(),
                "risk": self.risk.get_statistics(),
                "emergency": dispatcher_stats,
                "audit": self.audit.get_statistics(),
            },
        )

    def generate_report(self, start: datetime, end: datetime) -> ComplianceReport:
        return self.audit.generate_compliance_report(start, end)

    # Background monitors

    def start_monitors(self, scheduler: SchedulerManager) -> None:
        """Register the fixed-interval monitor jobs on ``scheduler``."""
        s = self.settings
        scheduler.add_interval_job(
            self.refresh_positions, s.position_monitor_interval_seconds,
            id="position_monitor", name="Position health monitor",
        )
        scheduler.add_interval_job(
            self.audit_maintenance, s.audit_maintenance_interval_seconds,
            id="audit_maintenance", name="Audit retention",
        )
        if self.provider is not None:
            scheduler.add_interval_job(
                self.refresh_gas_price, s.gas_refresh_interval_seconds,
                id="gas_refresh", name="Reference gas price refresh",
            )
            scheduler.add_interval_job(
                self.sample_blocks, s.block_sample_interval_seconds,
                id="block_sampler", name="Block activity sampler",
            )
        if self.explorer is not None:
            scheduler.add_interval_job(
                self.refresh_contract_verification, s.verification_refresh_interval_seconds,
                id="verification_refresh", name="Contract verification refresh",
            )
        if isinstance(self.dispatcher.channel, WebhookNotificationChannel):
            scheduler.add_interval_job(
                self.dispatcher.channel.flush, s.notification_flush_interval_seconds,
                id="notification_flush", name="Webhook notification flush",
            )

    async def refresh_gas_price(self) -> Optional[int]:
        if self.provider is None:
            return None
        try:
            gas_price = await call_with_timeout(
                self.provider.get_gas_price(), self.settings.rpc_timeout_seconds
            )
        except TransientIOError as e:
            logger.warning(f"Gas price refresh failed: {e.message}")
            return None
        if gas_price is None:
            return None
        self.mev.set_reference_gas_price(gas_price)
        self.risk.set_reference_gas_price(gas_price)
        logger.debug("Reference gas price refreshed", extra={'extra_data': {'gas_price': gas_price}})
        return gas_price

    async def sample_blocks(self) -> int:
        """Feed recent block transactions to the flash-loan context and MEV window."""
        if self.provider is None:
            return 0
        timeout = self.settings.rpc_timeout_seconds
        try:
            head = await call_with_timeout(self.provider.get_block_number(), timeout)
            if head is None:
                return 0
            transactions: List[TransactionIntent] = []
            for number in range(max(head - self.settings.block_sample_depth + 1, 0), head + 1):
                block = await call_with_timeout(self.provider.get_block(number), timeout)
                if block:
                    transactions.extend(block)
        except TransientIOError as e:
            logger.warning(f"Block sampling failed: {e.message}")
            return 0

        self.oracles.update_block_activity(transactions)
        return self.mev.observe_many(transactions)

    async def refresh_positions(self) -> List[str]:
        """Recompute the at-risk queue and escalate liquidatable positions."""
        self.guard.monitor_positions()
        at_risk = self.guard.at_risk_positions()

        for position_id, health in at_risk.items():
            if health >= 1.0 or position_id in self._escalated_positions:
                continue
            self._escalated_positions.add(position_id)
            self.trigger_alert(EmergencyAlert.create(
                EmergencyLevel.CRITICAL,
                f"Position liquidatable: {position_id}",
                category=AlertCategory.LIQUIDATION_RISK,
                affected_addresses=[position_id],
                metrics={"health_factor": health},
            ))
        self._escalated_positions &= set(at_risk)
        return list(at_risk)

    async def audit_maintenance(self) -> int:
        return self.audit.apply_retention()

    async def refresh_contract_verification(self) -> Dict[str, Optional[bool]]:
        """Re-check verification status of every registered protocol and known contract."""
        if self.explorer is None:
            return {}
        addresses = set(self.guard.protocol_addresses()) | set(self.explorer.registry.known_contracts())
        return await self.explorer.refresh(sorted(addresses))
