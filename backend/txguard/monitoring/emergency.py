"""Emergency Response Dispatcher.

This module turns security alerts into automated protective responses:
- Active/archived alert bookkeeping with explicit resolution
- Rule-driven procedures matched against alert category, metrics and addresses
- Fault-tolerant execution of protective, communication and recovery actions
- Per-resource circuit breakers tripped by Critical/Emergency alerts
- Priority-ordered notification fan-out and response effectiveness records

The dispatcher never signs or broadcasts anything: protective actions go to
a ProtectiveControls port and financial actions to an ExecutionGateway port.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, ClassVar, Deque, Dict, Iterable, List, Optional, Protocol, Tuple

import httpx

from ..chains.circuit_breaker import CircuitBreaker, Clock, utc_now
from ..core.exceptions import ConfigurationError, UnknownAlertError, ValidationRejected
from ..core.locks import KeyedLocks, ReadWriteLock
from ..core.logging import get_logger
from ..core.settings import Settings, get_settings

logger = get_logger(__name__)


class EmergencyLevel(str, Enum):
    """Alert levels, ordered by urgency."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @property
    def is_severe(self) -> bool:
        return self in (EmergencyLevel.CRITICAL, EmergencyLevel.EMERGENCY)


_LEVEL_ORDER = [
    EmergencyLevel.INFO, EmergencyLevel.WARNING, EmergencyLevel.CRITICAL, EmergencyLevel.EMERGENCY
]


class AlertCategory(str, Enum):
    """What kind of incident an alert describes."""

    PRICE_DROP = "price_drop"
    LIQUIDATION_RISK = "liquidation_risk"
    FLASH_CRASH = "flash_crash"
    GOVERNANCE_ATTACK = "governance_attack"
    SMART_CONTRACT_EXPLOIT = "smart_contract_exploit"
    ORACLE_MANIPULATION = "oracle_manipulation"
    HIGH_GAS_PRICE = "high_gas_price"
    LIQUIDITY_DRAIN = "liquidity_drain"
    SUSPICIOUS_VOLUME = "suspicious_volume"
    HIGH_RISK_TRANSACTION = "high_risk_transaction"
    GENERAL = "general"


@dataclass
class EmergencyAlert:
    """Alert instance with all relevant information."""

    id: str
    level: EmergencyLevel
    title: str
    description: str = ""
    category: AlertCategory = AlertCategory.GENERAL
    affected_addresses: List[str] = field(default_factory=list)
    affected_protocols: List[str] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    detected_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    actions_taken: List[str] = field(default_factory=list)
    actions_required: List[str] = field(default_factory=list)
    estimated_impact: Optional[Decimal] = None
    resolution_note: Optional[str] = None

    @classmethod
    def create(cls, level: EmergencyLevel, title: str, **kwargs: Any) -> "EmergencyAlert":
        return cls(id=f"alert-{uuid.uuid4().hex[:12]}", level=level, title=title, **kwargs)

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def addresses(self) -> List[str]:
        return [a.lower() for a in self.affected_addresses]

    def protocols(self) -> List[str]:
        return [p.lower() for p in self.affected_protocols]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level.value,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "affected_addresses": list(self.affected_addresses),
            "affected_protocols": list(self.affected_protocols),
            "metrics": dict(self.metrics),
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "actions_taken": list(self.actions_taken),
            "actions_required": list(self.actions_required),
            "estimated_impact": str(self.estimated_impact) if self.estimated_impact is not None else None,
            "resolution_note": self.resolution_note,
        }


# Response actions

class ActionKind(str, Enum):
    PAUSE_PROTOCOL = "pause_protocol"
    EMERGENCY_WITHDRAW = "emergency_withdraw"
    FREEZE_ASSETS = "freeze_assets"
    BLOCK_ADDRESS = "block_address"
    BLOCK_FUNCTION = "block_function"
    RATE_LIMIT_ADDRESS = "rate_limit_address"
    PAUSE_ORACLE = "pause_oracle"
    SWITCH_TO_BACKUP_ORACLE = "switch_to_backup_oracle"
    NOTIFY_ADMINS = "notify_admins"
    BROADCAST_ALERT = "broadcast_alert"
    UPDATE_DASHBOARD = "update_dashboard"
    REBALANCE_POSITIONS = "rebalance_positions"
    LIQUIDATE_POSITION = "liquidate_position"
    HEDGE_EXPOSURE = "hedge_exposure"


@dataclass(frozen=True)
class ResponseAction:
    """Base of the closed set of automatic response actions."""

    kind: ClassVar[ActionKind]

    @property
    def value_at_risk(self) -> Decimal:
        return Decimal("0")

    def describe(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class PauseProtocol(ResponseAction):
    """Pause ``protocol``, or every affected protocol of the alert when unset."""
    kind: ClassVar[ActionKind] = ActionKind.PAUSE_PROTOCOL
    protocol: Optional[str] = None


@dataclass(frozen=True)
class EmergencyWithdraw(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.EMERGENCY_WITHDRAW
    source: str = ""
    destination: str = ""
    amount: Decimal = Decimal("0")

    @property
    def value_at_risk(self) -> Decimal:
        return self.amount


@dataclass(frozen=True)
class FreezeAssets(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.FREEZE_ASSETS
    address: Optional[str] = None


@dataclass(frozen=True)
class BlockAddress(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.BLOCK_ADDRESS
    address: Optional[str] = None


@dataclass(frozen=True)
class BlockFunction(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.BLOCK_FUNCTION
    contract: str = ""
    selector: str = ""


@dataclass(frozen=True)
class RateLimitAddress(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.RATE_LIMIT_ADDRESS
    address: Optional[str] = None
    max_tx_per_minute: int = 1


@dataclass(frozen=True)
class PauseOracle(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.PAUSE_ORACLE
    source_id: Optional[str] = None


@dataclass(frozen=True)
class SwitchToBackupOracle(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.SWITCH_TO_BACKUP_ORACLE
    primary: str = ""


@dataclass(frozen=True)
class NotifyAdmins(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.NOTIFY_ADMINS
    message: str = ""


@dataclass(frozen=True)
class BroadcastAlert(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.BROADCAST_ALERT


@dataclass(frozen=True)
class UpdateDashboard(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.UPDATE_DASHBOARD
    message: str = ""


@dataclass(frozen=True)
class RebalancePositions(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.REBALANCE_POSITIONS


@dataclass(frozen=True)
class LiquidatePosition(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.LIQUIDATE_POSITION
    position: str = ""


@dataclass(frozen=True)
class HedgeExposure(ResponseAction):
    kind: ClassVar[ActionKind] = ActionKind.HEDGE_EXPOSURE
    amount: Decimal = Decimal("0")
    direction: str = "short"

    @property
    def value_at_risk(self) -> Decimal:
        return self.amount


FINANCIAL_ACTIONS = (EmergencyWithdraw, RebalancePositions, LiquidatePosition, HedgeExposure)


# Trigger conditions

@dataclass(frozen=True)
class TriggerCondition:
    """Base of the closed set of procedure trigger conditions.

    A condition matches when the alert has the condition's category and the
    named metric (when the condition has one) meets its threshold.
    """

    category: ClassVar[AlertCategory]
    metric: ClassVar[Optional[str]] = None

    def matches(self, alert: EmergencyAlert) -> bool:
        if alert.category != self.category:
            return False
        if self.metric is None:
            return self._matches_addresses(alert)
        value = alert.metrics.get(self.metric)
        if value is None:
            return False
        return self._meets(value) and self._matches_addresses(alert)

    def _meets(self, value: float) -> bool:
        return True

    def _matches_addresses(self, alert: EmergencyAlert) -> bool:
        return True


def _address_in(alert: EmergencyAlert, address: Optional[str]) -> bool:
    if address is None:
        return True
    key = address.lower()
    return key in alert.addresses() or key in alert.protocols()


@dataclass(frozen=True)
class PriceDrop(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.PRICE_DROP
    metric: ClassVar[Optional[str]] = "price_drop"
    percentage: float = 0.1
    token: Optional[str] = None

    def _meets(self, value: float) -> bool:
        return value >= self.percentage

    def _matches_addresses(self, alert: EmergencyAlert) -> bool:
        return _address_in(alert, self.token)


@dataclass(frozen=True)
class LiquidationRisk(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.LIQUIDATION_RISK
    metric: ClassVar[Optional[str]] = "health_factor"
    health_factor_threshold: float = 1.1

    def _meets(self, value: float) -> bool:
        return value <= self.health_factor_threshold


@dataclass(frozen=True)
class FlashCrash(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.FLASH_CRASH
    metric: ClassVar[Optional[str]] = "volatility"
    volatility_threshold: float = 0.2

    def _meets(self, value: float) -> bool:
        return value >= self.volatility_threshold


@dataclass(frozen=True)
class GovernanceAttack(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.GOVERNANCE_ATTACK
    metric: ClassVar[Optional[str]] = "voting_power_concentration"
    voting_power_concentration: float = 0.2

    def _meets(self, value: float) -> bool:
        return value >= self.voting_power_concentration


@dataclass(frozen=True)
class SmartContractExploit(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.SMART_CONTRACT_EXPLOIT
    contract: Optional[str] = None

    def _matches_addresses(self, alert: EmergencyAlert) -> bool:
        return _address_in(alert, self.contract)


@dataclass(frozen=True)
class OracleManipulation(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.ORACLE_MANIPULATION
    metric: ClassVar[Optional[str]] = "deviation"
    deviation_threshold: float = 0.2

    def _meets(self, value: float) -> bool:
        return value >= self.deviation_threshold


@dataclass(frozen=True)
class HighGasPrice(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.HIGH_GAS_PRICE
    metric: ClassVar[Optional[str]] = "gas_price"
    threshold_wei: int = 500 * 10**9

    def _meets(self, value: float) -> bool:
        return value >= self.threshold_wei


@dataclass(frozen=True)
class LiquidityDrain(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.LIQUIDITY_DRAIN
    metric: ClassVar[Optional[str]] = "liquidity_drain"
    percentage: float = 0.3
    pool: Optional[str] = None

    def _meets(self, value: float) -> bool:
        return value >= self.percentage

    def _matches_addresses(self, alert: EmergencyAlert) -> bool:
        return _address_in(alert, self.pool)


@dataclass(frozen=True)
class SuspiciousVolume(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.SUSPICIOUS_VOLUME
    metric: ClassVar[Optional[str]] = "volume"
    threshold: float = 0.0
    address: Optional[str] = None

    def _meets(self, value: float) -> bool:
        return value >= self.threshold

    def _matches_addresses(self, alert: EmergencyAlert) -> bool:
        return _address_in(alert, self.address)


@dataclass(frozen=True)
class HighRiskTransaction(TriggerCondition):
    category: ClassVar[AlertCategory] = AlertCategory.HIGH_RISK_TRANSACTION
    metric: ClassVar[Optional[str]] = "risk_score"
    min_score: float = 0.8

    def _meets(self, value: float) -> bool:
        return value >= self.min_score


@dataclass
class EmergencyProcedure:
    name: str
    trigger_conditions: List[TriggerCondition]
    automatic_actions: List[ResponseAction]
    escalation_chain: List[str] = field(default_factory=list)
    max_auto_response_value: Decimal = Decimal("1000000")
    cooldown_period: timedelta = timedelta(minutes=10)
    enabled: bool = True


@dataclass(frozen=True)
class EmergencyContact:
    name: str
    role: str
    address: str
    notification_priority: int = 1  # 1 = highest priority


@dataclass(frozen=True)
class ActionOutcome:
    action: ResponseAction
    success: bool
    detail: str
    executed_at: datetime
    procedure: str = ""


@dataclass(frozen=True)
class ResponseRecord:
    alert_id: str
    procedures: Tuple[str, ...]
    outcomes: Tuple[ActionOutcome, ...]
    notified: Tuple[str, ...]
    timestamp: datetime
    outcome: str
    effectiveness_score: float


# Ports

class ProtectiveControls(Protocol):
    def pause_protocol(self, protocol: str) -> None: ...

    def freeze_address(self, address: str) -> None: ...

    def block_address(self, address: str) -> None: ...

    def block_function(self, contract: str, selector: str) -> None: ...

    def rate_limit_address(self, address: str, max_tx_per_minute: int) -> None: ...

    def pause_oracle(self, source_id: str) -> None: ...

    def switch_to_backup_oracle(self, primary: str) -> str: ...


class ExecutionGateway(Protocol):
    def submit(self, action: ResponseAction, alert: EmergencyAlert) -> str: ...


class NotificationChannel(Protocol):
    def deliver(self, contact: EmergencyContact, alert: EmergencyAlert, message: str = "") -> bool: ...

    def broadcast(self, alert: EmergencyAlert) -> bool: ...


class LoggingExecutionGateway:
    """Records financial action requests without executing them."""

    def __init__(self) -> None:
        self.requests: List[Tuple[str, ResponseAction, str]] = []
        self._lock = threading.Lock()

    def submit(self, action: ResponseAction, alert: EmergencyAlert) -> str:
        reference = f"req-{uuid.uuid4().hex[:10]}"
        with self._lock:
            self.requests.append((reference, action, alert.id))
        logger.warning(
            f"Emergency execution requested: {action.describe()}",
            extra={'extra_data': {'alert_id': alert.id, 'reference': reference}}
        )
        return reference


class LoggingNotificationChannel:
    """Notification channel that writes to the structured log."""

    def __init__(self) -> None:
        self.delivered: List[Tuple[str, str]] = []
        self.broadcasts: List[str] = []

    def deliver(self, contact: EmergencyContact, alert: EmergencyAlert, message: str = "") -> bool:
        self.delivered.append((contact.name, alert.id))
        log = logger.critical if alert.level == EmergencyLevel.EMERGENCY else logger.warning
        log(
            f"ALERT [{alert.level.value.upper()}] {alert.title} -> {contact.name}",
            extra={'extra_data': {
                'alert_id': alert.id,
                'contact': contact.name,
                'role': contact.role,
                'message': message or alert.description,
            }}
        )
        return True

    def broadcast(self, alert: EmergencyAlert) -> bool:
        self.broadcasts.append(alert.id)
        logger.error(
            f"Broadcasting alert: {alert.title}",
            extra={'extra_data': {'alert_id': alert.id, 'level': alert.level.value}}
        )
        return True


class WebhookNotificationChannel:
    """
    Queues notifications and delivers them to a webhook.

    ``deliver`` only enqueues, so the dispatcher never waits on the
    network; ``flush`` is run by a background job.
    """

    def __init__(self, webhook_url: str, headers: Optional[Dict[str, str]] = None, timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout = httpx.Timeout(timeout_seconds, connect=2.0)
        self._outbox: Deque[Dict[str, Any]] = deque(maxlen=1000)
        self._lock = threading.Lock()

    def deliver(self, contact: EmergencyContact, alert: EmergencyAlert, message: str = "") -> bool:
        payload = {"contact": contact.address, "message": message, "alert": alert.to_dict()}
        with self._lock:
            self._outbox.append(payload)
        return True

    def broadcast(self, alert: EmergencyAlert) -> bool:
        with self._lock:
            self._outbox.append({"contact": "*", "message": "", "alert": alert.to_dict()})
        return True

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._outbox)

    async def flush(self) -> int:
        """Post queued notifications; failed ones are requeued."""
        with self._lock:
            batch = list(self._outbox)
            self._outbox.clear()
        if not batch:
            return 0

        sent = 0
        failed: List[Dict[str, Any]] = []
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for payload in batch:
                try:
                    response = await client.post(self.webhook_url, json=payload, headers=self.headers)
                    if response.status_code in (200, 201, 202):
                        sent += 1
                        continue
                    logger.error(f"Webhook error: {response.status_code}")
                except httpx.HTTPError as e:
                    logger.error(f"Failed to send webhook notification: {e}")
                failed.append(payload)

        if failed:
            with self._lock:
                self._outbox.extendleft(reversed(failed))
        return sent


def default_procedures() -> List[EmergencyProcedure]:
    """Built-in procedures installed unless the caller opts out."""
    return [
        EmergencyProcedure(
            name="flash_crash",
            trigger_conditions=[FlashCrash(volatility_threshold=0.2)],
            automatic_actions=[NotifyAdmins("Flash crash detected"), RebalancePositions()],
            escalation_chain=["risk-desk"],
            cooldown_period=timedelta(minutes=10),
        ),
        EmergencyProcedure(
            name="oracle_manipulation",
            trigger_conditions=[OracleManipulation(deviation_threshold=0.2)],
            automatic_actions=[
                PauseOracle(),
                NotifyAdmins("Oracle manipulation suspected"),
                UpdateDashboard("Oracle paused pending review"),
            ],
            cooldown_period=timedelta(minutes=5),
        ),
        EmergencyProcedure(
            name="contract_exploit",
            trigger_conditions=[SmartContractExploit()],
            automatic_actions=[PauseProtocol(), BroadcastAlert(), NotifyAdmins("Possible exploit in progress")],
            cooldown_period=timedelta(minutes=5),
        ),
        EmergencyProcedure(
            name="high_risk_transaction",
            trigger_conditions=[HighRiskTransaction(min_score=0.8)],
            automatic_actions=[UpdateDashboard("High-risk transaction blocked")],
            cooldown_period=timedelta(minutes=1),
        ),
    ]


class EmergencyDispatcher:
    """Central emergency response system."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        controls: Optional[ProtectiveControls] = None,
        gateway: Optional[ExecutionGateway] = None,
        channel: Optional[NotificationChannel] = None,
        clock: Clock = utc_now,
        install_defaults: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.controls = controls
        self.gateway = gateway or LoggingExecutionGateway()
        self.channel = channel or LoggingNotificationChannel()
        self.clock = clock

        self._auto_response = self.settings.auto_response_enabled
        self._alerts: Dict[str, EmergencyAlert] = {}
        self._archived: Deque[EmergencyAlert] = deque(maxlen=1000)
        self._alerts_lock = ReadWriteLock()

        self._procedures: Dict[str, EmergencyProcedure] = {}
        self._last_executed: Dict[str, datetime] = {}
        self._procedures_lock = threading.Lock()

        self._contacts: List[EmergencyContact] = []
        self._funds: Dict[str, Decimal] = {}
        self._config_lock = threading.Lock()

        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breaker_locks = KeyedLocks()
        self._breaker_registry_lock = ReadWriteLock()

        self._history: Deque[ResponseRecord] = deque(maxlen=10_000)
        self._dashboard: Deque[Tuple[datetime, str]] = deque(maxlen=500)
        self._history_lock = threading.Lock()

        self._handlers: Dict[type, Callable[[ResponseAction, EmergencyAlert], str]] = {
            PauseProtocol: self._pause_protocol,
            EmergencyWithdraw: self._emergency_withdraw,
            FreezeAssets: self._freeze_assets,
            BlockAddress: self._block_address,
            BlockFunction: self._block_function,
            RateLimitAddress: self._rate_limit_address,
            PauseOracle: self._pause_oracle,
            SwitchToBackupOracle: self._switch_to_backup_oracle,
            NotifyAdmins: self._notify_admins,
            BroadcastAlert: self._broadcast_alert,
            UpdateDashboard: self._update_dashboard,
            RebalancePositions: self._submit_financial,
            LiquidatePosition: self._submit_financial,
            HedgeExposure: self._submit_financial,
        }

        if install_defaults:
            for procedure in default_procedures():
                self.register_procedure(procedure)

    # Configuration

    def register_procedure(self, procedure: EmergencyProcedure) -> None:
        with self._procedures_lock:
            self._procedures[procedure.name] = procedure
        logger.info(f"Emergency procedure registered: {procedure.name}")

    def remove_procedure(self, name: str) -> None:
        with self._procedures_lock:
            if self._procedures.pop(name, None) is None:
                raise ConfigurationError(f"Procedure not registered: {name}")

    def procedures(self) -> List[str]:
        with self._procedures_lock:
            return sorted(self._procedures)

    def add_contact(self, contact: EmergencyContact) -> None:
        with self._config_lock:
            self._contacts.append(contact)
            self._contacts.sort(key=lambda c: c.notification_priority)

    def contacts(self) -> List[EmergencyContact]:
        with self._config_lock:
            return list(self._contacts)

    def set_emergency_funds(self, address: str, amount: Decimal) -> None:
        with self._config_lock:
            self._funds[address.lower()] = Decimal(amount)

    def emergency_funds(self, address: str) -> Optional[Decimal]:
        with self._config_lock:
            return self._funds.get(address.lower())

    def set_auto_response(self, enabled: bool) -> None:
        self._auto_response = enabled
        logger.warning(f"Automatic emergency response {'enabled' if enabled else 'disabled'}")

    @property
    def auto_response_enabled(self) -> bool:
        return self._auto_response

    # Resource breakers

    def register_resource(self, address: str, cooldown: Optional[timedelta] = None) -> None:
        key = address.lower()
        breaker = CircuitBreaker(
            key=key,
            cooldown=cooldown or timedelta(seconds=self.settings.resource_breaker_cooldown_seconds),
            clock=self.clock,
        )
        with self._breaker_registry_lock.write():
            self._breakers.setdefault(key, breaker)

    def _breaker(self, address: str) -> Optional[CircuitBreaker]:
        with self._breaker_registry_lock.read():
            return self._breakers.get(address.lower())

    def trip_resource(self, address: str, reason: str) -> bool:
        breaker = self._breaker(address)
        if breaker is None:
            return False
        with self._breaker_locks.write(breaker.key):
            breaker.trigger(reason)
        logger.error(
            f"Resource breaker triggered: {breaker.key}",
            extra={'extra_data': {'target': breaker.key, 'reason': reason}}
        )
        return True

    def is_resource_blocked(self, address: str) -> bool:
        breaker = self._breaker(address)
        if breaker is None:
            return False
        with self._breaker_locks.write(breaker.key):
            return breaker.is_triggered()

    def reset_resource(self, address: str) -> None:
        breaker = self._breaker(address)
        if breaker is None:
            raise ConfigurationError(f"Resource not registered: {address}")
        with self._breaker_locks.write(breaker.key):
            breaker.reset()

    def breaker_snapshots(self) -> List[Dict[str, Any]]:
        with self._breaker_registry_lock.read():
            breakers = list(self._breakers.values())
        snapshots = []
        for breaker in breakers:
            with self._breaker_locks.write(breaker.key):
                snapshots.append(breaker.snapshot())
        return snapshots

    # Alerts

    def trigger_alert(self, alert: EmergencyAlert) -> ResponseRecord:
        """
        Record an alert and run the automatic response.

        Args:
            alert: Alert to raise

        Returns:
            ResponseRecord describing what was executed and who was notified
        """
        now = self.clock()
        if alert.detected_at is None:
            alert.detected_at = now

        with self._alerts_lock.write():
            if alert.id in self._alerts:
                logger.warning(f"Replacing active alert with same id: {alert.id}")
            self._alerts[alert.id] = alert

        log = logger.error if alert.level.is_severe else logger.warning
        log(
            f"Emergency alert triggered: {alert.level.value} - {alert.title}",
            extra={'extra_data': {
                'alert_id': alert.id,
                'level': alert.level.value,
                'category': alert.category.value,
                'affected_addresses': alert.affected_addresses,
                'affected_protocols': alert.affected_protocols,
            }}
        )

        if alert.level.is_severe:
            for resource in set(alert.addresses()) | set(alert.protocols()):
                self.trip_resource(resource, f"{alert.level.value}: {alert.title}")

        matched: List[EmergencyProcedure] = []
        outcomes: List[ActionOutcome] = []
        if self._auto_response and alert.level.is_severe:
            matched = self._matching_procedures(alert, now)
            for action, procedure in self._planned_actions(matched):
                outcome = self._run_action(action, alert, procedure)
                outcomes.append(outcome)
                if outcome.success:
                    alert.actions_taken.append(outcome.detail)
                else:
                    alert.actions_required.append(f"{action.describe()}: {outcome.detail}")

        notified = self._notify_contacts(alert, matched)

        attempted = len(outcomes)
        succeeded = sum(1 for o in outcomes if o.success)
        record = ResponseRecord(
            alert_id=alert.id,
            procedures=tuple(p.name for p in matched),
            outcomes=tuple(outcomes),
            notified=tuple(notified),
            timestamp=now,
            outcome="response initiated" if attempted else "notification only",
            effectiveness_score=(succeeded / attempted) if attempted else 0.0,
        )
        with self._history_lock:
            self._history.append(record)
        return record

    def _matching_procedures(self, alert: EmergencyAlert, now: datetime) -> List[EmergencyProcedure]:
        matched: List[EmergencyProcedure] = []
        with self._procedures_lock:
            for name, procedure in sorted(self._procedures.items()):
                if not procedure.enabled:
                    continue
                if not any(c.matches(alert) for c in procedure.trigger_conditions):
                    continue
                last = self._last_executed.get(name)
                if last is not None and now - last < procedure.cooldown_period:
                    logger.info(
                        f"Procedure {name} in cooldown, skipped",
                        extra={'extra_data': {'alert_id': alert.id, 'procedure': name}}
                    )
                    continue
                self._last_executed[name] = now
                matched.append(procedure)
        for procedure in matched:
            logger.info(
                f"Executing emergency procedure: {procedure.name}",
                extra={'extra_data': {'alert_id': alert.id, 'procedure': procedure.name}}
            )
        return matched

    @staticmethod
    def _planned_actions(
        matched: Iterable[EmergencyProcedure]
    ) -> List[Tuple[ResponseAction, EmergencyProcedure]]:
        """Ordered union of the matched procedures' actions; the first procedure listing an action owns it."""
        planned: List[Tuple[ResponseAction, EmergencyProcedure]] = []
        for procedure in matched:
            for action in procedure.automatic_actions:
                if any(action == seen for seen, _ in planned):
                    continue
                planned.append((action, procedure))
        return planned

    def _run_action(
        self, action: ResponseAction, alert: EmergencyAlert, procedure: EmergencyProcedure
    ) -> ActionOutcome:
        now = self.clock()
        handler = self._handlers.get(type(action))
        try:
            if handler is None:
                raise ConfigurationError(f"No handler for action {type(action).__name__}")
            if action.value_at_risk > procedure.max_auto_response_value:
                raise ValidationRejected(
                    f"{action.describe()} exceeds max auto-response value",
                    reason="value exceeds auto-response cap",
                    details={"value": str(action.value_at_risk),
                             "cap": str(procedure.max_auto_response_value)}
                )
            detail = handler(action, alert)
            logger.info(
                f"Emergency action executed: {detail}",
                extra={'extra_data': {'alert_id': alert.id, 'action': action.kind.value}}
            )
            return ActionOutcome(action, True, detail, now, procedure.name)
        except Exception as e:
            logger.error(
                f"Emergency action failed: {action.kind.value}: {e}",
                extra={'extra_data': {'alert_id': alert.id, 'action': action.kind.value}}
            )
            return ActionOutcome(action, False, str(e), now, procedure.name)

    def _notify_contacts(self, alert: EmergencyAlert, matched: Iterable[EmergencyProcedure]) -> List[str]:
        recipients = self.contacts()
        known = {c.name for c in recipients}
        for procedure in matched:
            for name in procedure.escalation_chain:
                if name not in known:
                    known.add(name)
                    recipients.append(EmergencyContact(
                        name=name, role="escalation", address=name,
                        notification_priority=len(recipients) + 1,
                    ))

        notified: List[str] = []
        for contact in recipients:
            try:
                if self.channel.deliver(contact, alert):
                    notified.append(contact.name)
            except Exception as e:
                logger.error(
                    f"Notification to {contact.name} failed: {e}",
                    extra={'extra_data': {'alert_id': alert.id, 'contact': contact.name}}
                )
        return notified

    def resolve_alert(self, alert_id: str, note: str = "") -> EmergencyAlert:
        """
        Archive an active alert.

        Raises:
            UnknownAlertError: If no active alert has this id
        """
        with self._alerts_lock.write():
            alert = self._alerts.pop(alert_id, None)
        if alert is None:
            raise UnknownAlertError(alert_id)

        now = self.clock()
        alert.resolved_at = now
        alert.resolution_note = note
        with self._history_lock:
            self._archived.append(alert)
            self._history.append(ResponseRecord(
                alert_id=alert_id,
                procedures=(),
                outcomes=(),
                notified=(),
                timestamp=now,
                outcome=note or "resolved",
                effectiveness_score=1.0,
            ))
        logger.info(
            f"Emergency alert resolved: {alert.title}",
            extra={'extra_data': {'alert_id': alert_id, 'note': note}}
        )
        return alert

    def get_alert(self, alert_id: str) -> Optional[EmergencyAlert]:
        with self._alerts_lock.read():
            return self._alerts.get(alert_id)

    def get_active_alerts(self) -> List[EmergencyAlert]:
        with self._alerts_lock.read():
            return sorted(self._alerts.values(), key=lambda a: a.level.rank, reverse=True)

    def get_archived_alerts(self) -> List[EmergencyAlert]:
        with self._history_lock:
            return list(self._archived)

    def get_response_history(self) -> List[ResponseRecord]:
        with self._history_lock:
            return list(self._history)

    def dashboard_messages(self) -> List[Tuple[datetime, str]]:
        with self._history_lock:
            return list(self._dashboard)

    def highest_active_level(self) -> Optional[EmergencyLevel]:
        alerts = self.get_active_alerts()
        return alerts[0].level if alerts else None

    def get_statistics(self) -> Dict[str, Any]:
        with self._alerts_lock.read():
            levels = [a.level for a in self._alerts.values()]
        active_breakers = sum(1 for b in self.breaker_snapshots() if b["state"] == "triggered")
        with self._history_lock:
            incidents = len(self._history)
            archived = len(self._archived)
        return {
            "active_alerts": len(levels),
            "info_alerts": levels.count(EmergencyLevel.INFO),
            "warning_alerts": levels.count(EmergencyLevel.WARNING),
            "critical_alerts": levels.count(EmergencyLevel.CRITICAL),
            "emergency_alerts": levels.count(EmergencyLevel.EMERGENCY),
            "archived_alerts": archived,
            "total_incidents": incidents,
            "active_circuit_breakers": active_breakers,
            "auto_response_enabled": self._auto_response,
        }

    # Action handlers

    def _require_controls(self) -> ProtectiveControls:
        if self.controls is None:
            raise ConfigurationError("No protective controls configured")
        return self.controls

    @staticmethod
    def _targets(explicit: Optional[str], fallback: List[str]) -> List[str]:
        targets = [explicit.lower()] if explicit else fallback
        if not targets:
            raise ConfigurationError("Action has no target and the alert names none")
        return targets

    def _pause_protocol(self, action: PauseProtocol, alert: EmergencyAlert) -> str:
        controls = self._require_controls()
        targets = self._targets(action.protocol, alert.protocols() or alert.addresses())
        for protocol in targets:
            controls.pause_protocol(protocol)
            self.trip_resource(protocol, f"paused by {alert.id}")
        return f"paused protocol {', '.join(targets)}"

    def _emergency_withdraw(self, action: EmergencyWithdraw, alert: EmergencyAlert) -> str:
        source = action.source.lower()
        # Check and debit in one scope so concurrent withdrawals cannot overdraw
        with self._config_lock:
            available = self._funds.get(source)
            if available is not None:
                if available < action.amount:
                    raise ValidationRejected(
                        "Insufficient emergency funds available",
                        reason="insufficient emergency funds",
                        details={"available": str(available), "requested": str(action.amount)}
                    )
                self._funds[source] = available - action.amount
        try:
            reference = self.gateway.submit(action, alert)
        except Exception:
            if available is not None:
                with self._config_lock:
                    self._funds[source] += action.amount
            raise
        return f"emergency withdraw {action.amount} from {action.source} ({reference})"

    def _freeze_assets(self, action: FreezeAssets, alert: EmergencyAlert) -> str:
        controls = self._require_controls()
        targets = self._targets(action.address, alert.addresses())
        for address in targets:
            controls.freeze_address(address)
        return f"froze assets of {', '.join(targets)}"

    def _block_address(self, action: BlockAddress, alert: EmergencyAlert) -> str:
        controls = self._require_controls()
        targets = self._targets(action.address, alert.addresses())
        for address in targets:
            controls.block_address(address)
        return f"blocked {', '.join(targets)}"

    def _block_function(self, action: BlockFunction, alert: EmergencyAlert) -> str:
        self._require_controls().block_function(action.contract, action.selector)
        return f"blocked function {action.selector} on {action.contract}"

    def _rate_limit_address(self, action: RateLimitAddress, alert: EmergencyAlert) -> str:
        controls = self._require_controls()
        targets = self._targets(action.address, alert.addresses())
        for address in targets:
            controls.rate_limit_address(address, action.max_tx_per_minute)
        return f"rate limited {', '.join(targets)} to {action.max_tx_per_minute}/min"

    def _pause_oracle(self, action: PauseOracle, alert: EmergencyAlert) -> str:
        controls = self._require_controls()
        targets = [action.source_id] if action.source_id else alert.affected_addresses
        if not targets:
            raise ConfigurationError("PauseOracle has no source and the alert names none")
        for source in targets:
            controls.pause_oracle(source)
        return f"paused oracle {', '.join(targets)}"

    def _switch_to_backup_oracle(self, action: SwitchToBackupOracle, alert: EmergencyAlert) -> str:
        backup = self._require_controls().switch_to_backup_oracle(action.primary)
        return f"switched oracle {action.primary} to backup {backup}"

    def _notify_admins(self, action: NotifyAdmins, alert: EmergencyAlert) -> str:
        admins = [c for c in self.contacts() if c.role.lower() in ("admin", "administrator")]
        for contact in admins:
            self.channel.deliver(contact, alert, action.message)
        if not admins:
            logger.warning(
                f"Admin notification: {action.message}",
                extra={'extra_data': {'alert_id': alert.id}}
            )
        return f"notified {len(admins)} admins: {action.message}"

    def _broadcast_alert(self, action: BroadcastAlert, alert: EmergencyAlert) -> str:
        if not self.channel.broadcast(alert):
            raise ConfigurationError("Broadcast channel rejected the alert")
        return f"broadcast alert {alert.id}"

    def _update_dashboard(self, action: UpdateDashboard, alert: EmergencyAlert) -> str:
        with self._history_lock:
            self._dashboard.append((self.clock(), action.message or alert.title))
        return f"dashboard updated: {action.message or alert.title}"

    def _submit_financial(self, action: ResponseAction, alert: EmergencyAlert) -> str:
        reference = self.gateway.submit(action, alert)
        return f"{action.describe()} requested ({reference})"
