"""
Tamper-evident, retention-governed audit trail.

Entries are appended in timestamp order and chained by SHA-256 hash, so
retention eviction is a prefix scan from the oldest entry and
``verify_integrity`` can detect any in-place modification of the log.

File: backend/txguard/ledger/audit_trail.py
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..chains.circuit_breaker import Clock, utc_now
from ..core.exceptions import ConfigurationError, ValidationRejected
from ..core.locks import ReadWriteLock
from ..core.logging import get_logger
from ..core.settings import Settings, get_settings
from .compliance import (
    ComplianceAction,
    ComplianceReport,
    ComplianceRule,
    RuleMatch,
    compliance_recommendations,
    default_rules,
    evaluate_rules,
)

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64


class AuditEntryType(str, Enum):
    # Transaction events
    TRANSACTION_SUBMITTED = "transaction_submitted"
    TRANSACTION_EXECUTED = "transaction_executed"
    TRANSACTION_FAILED = "transaction_failed"

    # Security events
    SECURITY_VIOLATION = "security_violation"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RISK_ASSESSMENT = "risk_assessment"
    THREAT_DETECTED = "threat_detected"

    # System events
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    CONFIGURATION_CHANGE = "configuration_change"
    EMERGENCY_ACTION = "emergency_action"

    # User events
    USER_LOGIN = "user_login"
    USER_ACTION = "user_action"
    ADMIN_ACTION = "admin_action"

    # DeFi events
    LIQUIDATION_EVENT = "liquidation_event"
    FLASH_LOAN_EXECUTION = "flash_loan_execution"
    ARBITRAGE_TRANSACTION = "arbitrage_transaction"
    GOVERNANCE_VOTE = "governance_vote"

    # Oracle events
    PRICE_UPDATE = "price_update"
    ORACLE_FAILURE = "oracle_failure"
    PRICE_DEVIATION = "price_deviation"

    # Protocol events
    PROTOCOL_UPGRADE = "protocol_upgrade"
    PARAMETER_CHANGE = "parameter_change"
    PAUSE_EVENT = "pause_event"
    UNPAUSE_EVENT = "unpause_event"


SECURITY_EVENT_TYPES = frozenset({
    AuditEntryType.SECURITY_VIOLATION,
    AuditEntryType.SUSPICIOUS_ACTIVITY,
    AuditEntryType.THREAT_DETECTED,
})

REPORTED_TYPES = frozenset({
    AuditEntryType.TRANSACTION_SUBMITTED,
    AuditEntryType.TRANSACTION_EXECUTED,
    AuditEntryType.TRANSACTION_FAILED,
    AuditEntryType.SECURITY_VIOLATION,
    AuditEntryType.SUSPICIOUS_ACTIVITY,
})


@dataclass(frozen=True)
class AuditEntry:
    """
    One immutable audit record.

    Callers build entries with the descriptive fields only; ``id``,
    ``timestamp`` and the hash fields are assigned by the trail on append.
    """

    entry_type: AuditEntryType
    actor: Optional[str] = None
    tx_hash: Optional[str] = None
    contract: Optional[str] = None
    function: Optional[str] = None
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    value: Optional[Decimal] = None
    risk_score: Optional[float] = None
    success: bool = True
    error_message: Optional[str] = None
    security_flags: FrozenSet[str] = frozenset()
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    id: str = ""
    timestamp: Optional[datetime] = None
    compliance_matches: Tuple[str, ...] = ()
    previous_hash: str = ""
    entry_hash: str = ""

    def __post_init__(self) -> None:
        # Normalize addresses and flag containers on construction
        if self.actor:
            object.__setattr__(self, "actor", self.actor.lower())
        if self.contract:
            object.__setattr__(self, "contract", self.contract.lower())
        if not isinstance(self.security_flags, frozenset):
            object.__setattr__(self, "security_flags", frozenset(self.security_flags))
        if self.value is not None and not isinstance(self.value, Decimal):
            object.__setattr__(self, "value", Decimal(str(self.value)))

    def is_high_risk(self, threshold: float) -> bool:
        return self.risk_score is not None and self.risk_score > threshold

    def canonical(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_type": self.entry_type.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "actor": self.actor,
            "tx_hash": self.tx_hash,
            "contract": self.contract,
            "function": self.function,
            "gas_used": self.gas_used,
            "gas_price": self.gas_price,
            "value": str(self.value) if self.value is not None else None,
            "risk_score": self.risk_score,
            "success": self.success,
            "error_message": self.error_message,
            "security_flags": sorted(self.security_flags),
            "metadata": self.metadata,
            "compliance_matches": list(self.compliance_matches),
        }

    def compute_hash(self, previous_hash: str) -> str:
        payload = json.dumps(self.canonical(), sort_keys=True, default=str)
        return hashlib.sha256((previous_hash + payload).encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = self.canonical()
        data["previous_hash"] = self.previous_hash
        data["entry_hash"] = self.entry_hash
        return data


@dataclass
class AuditQuery:
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    entry_types: FrozenSet[AuditEntryType] = frozenset()
    actor: Optional[str] = None
    contract: Optional[str] = None
    tx_hash: Optional[str] = None
    risk_score_min: Optional[float] = None
    risk_score_max: Optional[float] = None
    security_flags: FrozenSet[str] = frozenset()
    success: Optional[bool] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, entry: AuditEntry) -> bool:
        if self.start_time is not None and entry.timestamp < self.start_time:
            return False
        if self.end_time is not None and entry.timestamp > self.end_time:
            return False
        if self.entry_types and entry.entry_type not in self.entry_types:
            return False
        if self.actor is not None and entry.actor != self.actor.lower():
            return False
        if self.contract is not None and entry.contract != self.contract.lower():
            return False
        if self.tx_hash is not None and entry.tx_hash != self.tx_hash:
            return False
        risk = entry.risk_score if entry.risk_score is not None else 0.0
        if self.risk_score_min is not None and risk < self.risk_score_min:
            return False
        if self.risk_score_max is not None and risk > self.risk_score_max:
            return False
        if self.security_flags and not (self.security_flags & entry.security_flags):
            return False
        if self.success is not None and entry.success != self.success:
            return False
        return True


@dataclass(frozen=True)
class LogResult:
    accepted: bool
    entry: Optional[AuditEntry] = None
    reason: str = ""
    matches: Tuple[RuleMatch, ...] = ()

    @property
    def blocking_rule(self) -> Optional[str]:
        for match in self.matches:
            if match.action == ComplianceAction.BLOCK_TRANSACTION:
                return match.rule
        return None

    def raise_for_rejection(self) -> None:
        if not self.accepted:
            raise ValidationRejected(
                f"Blocked by compliance rule: {self.blocking_rule}",
                reason=self.reason,
                details={"rule": self.blocking_rule},
            )


@dataclass(frozen=True)
class PendingApproval:
    entry_id: str
    rule: str
    requested_at: datetime


# Receives (rule name, entry) for NotifyCompliance matches and generated reports.
ComplianceNotifier = Callable[[str, AuditEntry], None]


class AuditTrail:
    """
    Append-only audit log with compliance evaluation.

    All state sits behind one reader/writer lock: the log is a single
    time-ordered structure and every mutation touches its tail or head.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rules: Optional[Iterable[ComplianceRule]] = None,
        notifier: Optional[ComplianceNotifier] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.notifier = notifier

        self.default_retention = timedelta(days=self.settings.audit_default_retention_days)
        self.high_risk_retention = timedelta(days=self.settings.audit_high_risk_retention_days)
        self.compliance_retention = timedelta(days=self.settings.audit_compliance_retention_days)
        self.high_risk_score = self.settings.audit_high_risk_score

        self._log: Deque[AuditEntry] = deque()
        self._indices: Dict[str, Deque[AuditEntry]] = {}
        self._sequence = 0
        self._evicted = 0
        self._head_hash = GENESIS_HASH
        self._lock = ReadWriteLock()

        self._rules: Dict[str, ComplianceRule] = {}
        self._rules_lock = threading.Lock()
        for rule in (default_rules() if rules is None else rules):
            self.add_rule(rule)

        self._pending: Dict[str, PendingApproval] = {}
        self._reports: Deque[ComplianceReport] = deque(maxlen=100)
        self._aux_lock = threading.Lock()

    # Rules

    def add_rule(self, rule: ComplianceRule) -> None:
        with self._rules_lock:
            self._rules[rule.name] = rule

    def remove_rule(self, name: str) -> None:
        with self._rules_lock:
            if self._rules.pop(name, None) is None:
                raise ConfigurationError(f"Compliance rule not registered: {name}")

    def set_rule_enabled(self, name: str, enabled: bool) -> None:
        with self._rules_lock:
            rule = self._rules.get(name)
            if rule is None:
                raise ConfigurationError(f"Compliance rule not registered: {name}")
            rule.enabled = enabled

    def rules(self) -> List[ComplianceRule]:
        with self._rules_lock:
            return list(self._rules.values())

    # Writing

    def log(self, entry: AuditEntry) -> LogResult:
        """
        Evaluate compliance rules and append the entry.

        Args:
            entry: Entry to append; id, timestamp and hashes are assigned here

        Returns:
            LogResult; ``accepted`` is False when a BlockTransaction rule matched
        """
        rules = self.rules()
        with self._lock.write():
            now = self.clock()
            self._prune(now)

            timestamp = entry.timestamp or now
            if self._log and timestamp < self._log[-1].timestamp:
                timestamp = self._log[-1].timestamp
            candidate = replace(entry, timestamp=timestamp)

            matches = evaluate_rules(rules, candidate, self._frequency)
            blocking = [m for m in matches if m.action == ComplianceAction.BLOCK_TRANSACTION]
            # A violation record documents a block; it is never itself blocked
            if blocking and entry.entry_type != AuditEntryType.SECURITY_VIOLATION:
                result = LogResult(
                    accepted=False,
                    reason=f"blocked by compliance rule: {blocking[0].rule}",
                    matches=tuple(matches),
                )
            else:
                self._sequence += 1
                stamped = replace(
                    candidate,
                    id=f"audit-{self._sequence:010d}",
                    compliance_matches=tuple(m.rule for m in matches),
                    previous_hash=self._head_hash,
                )
                stamped = replace(stamped, entry_hash=stamped.compute_hash(self._head_hash))
                self._head_hash = stamped.entry_hash
                self._log.append(stamped)
                self._index(stamped)
                result = LogResult(accepted=True, entry=stamped, matches=tuple(matches))

        self._apply_actions(result, candidate)
        return result

    def log_transaction(
        self,
        sender: str,
        to: Optional[str],
        value: Optional[Decimal] = None,
        gas_price: Optional[int] = None,
        gas_used: Optional[int] = None,
        tx_hash: Optional[str] = None,
        function: Optional[str] = None,
        risk_score: Optional[float] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        security_flags: Iterable[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
        entry_type: AuditEntryType = AuditEntryType.TRANSACTION_SUBMITTED,
    ) -> LogResult:
        return self.log(AuditEntry(
            entry_type=entry_type,
            actor=sender,
            tx_hash=tx_hash,
            contract=to,
            function=function,
            gas_used=gas_used,
            gas_price=gas_price,
            value=value,
            risk_score=risk_score,
            success=success,
            error_message=error_message,
            security_flags=frozenset(security_flags),
            metadata=dict(metadata or {}),
        ))

    def log_security_event(
        self,
        entry_type: AuditEntryType,
        address: Optional[str],
        description: str,
        risk_score: Optional[float] = None,
        flags: Iterable[str] = (),
        contract: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogResult:
        data = dict(metadata or {})
        data["description"] = description
        return self.log(AuditEntry(
            entry_type=entry_type,
            actor=address,
            contract=contract,
            risk_score=risk_score,
            success=False,
            security_flags=frozenset(flags),
            metadata=data,
        ))

    def _apply_actions(self, result: LogResult, entry: AuditEntry) -> None:
        target = result.entry or entry
        for match in result.matches:
            context = {'entry_id': target.id or None, 'rule': match.rule, 'condition': match.condition}
            if match.action == ComplianceAction.BLOCK_TRANSACTION:
                logger.warning(
                    f"Transaction blocked by compliance rule: {match.rule}",
                    extra={'extra_data': context}
                )
            elif match.action == ComplianceAction.LOG_WARNING:
                logger.warning(f"Compliance rule violation: {match.rule}", extra={'extra_data': context})
            elif match.action == ComplianceAction.REQUIRE_APPROVAL:
                if result.entry is not None:
                    with self._aux_lock:
                        self._pending[target.id] = PendingApproval(target.id, match.rule, self.clock())
                logger.info(f"Entry requires approval due to rule: {match.rule}", extra={'extra_data': context})
            elif match.action == ComplianceAction.NOTIFY_COMPLIANCE:
                self._notify(match.rule, target)
            elif match.action == ComplianceAction.GENERATE_REPORT:
                end = self.clock()
                report = self.generate_compliance_report(end - timedelta(hours=24), end)
                with self._aux_lock:
                    self._reports.append(report)
                logger.info(f"Compliance report generated due to rule: {match.rule}", extra={'extra_data': context})
                self._notify(match.rule, target)

    def _notify(self, rule: str, entry: AuditEntry) -> None:
        if self.notifier is None:
            logger.info(f"Compliance team notified due to rule: {rule}")
            return
        try:
            self.notifier(rule, entry)
        except Exception as e:
            logger.error(f"Compliance notifier failed for rule {rule}: {e}")

    # Indices

    def _index(self, entry: AuditEntry) -> None:
        keys = [f"type:{entry.entry_type.value}"]
        if entry.actor:
            keys.append(f"actor:{entry.actor}")
        if entry.contract:
            keys.append(f"contract:{entry.contract}")
        for key in keys:
            self._indices.setdefault(key, deque()).append(entry)

    def _unindex(self, entry: AuditEntry) -> None:
        keys = [f"type:{entry.entry_type.value}"]
        if entry.actor:
            keys.append(f"actor:{entry.actor}")
        if entry.contract:
            keys.append(f"contract:{entry.contract}")
        for key in keys:
            bucket = self._indices.get(key)
            # Eviction is oldest-first, so the evicted entry heads every bucket
            if bucket and bucket[0].id == entry.id:
                bucket.popleft()
            if bucket is not None and not bucket:
                del self._indices[key]

    def _frequency(self, actor: str, since: datetime) -> int:
        bucket = self._indices.get(f"actor:{actor.lower()}")
        if not bucket:
            return 0
        count = 0
        for entry in reversed(bucket):
            if entry.timestamp < since:
                break
            count += 1
        return count

    # Retention

    def retention_for(self, entry: AuditEntry) -> timedelta:
        if entry.compliance_matches:
            return max(self.compliance_retention, self.high_risk_retention)
        if entry.is_high_risk(self.high_risk_score) or entry.entry_type == AuditEntryType.SECURITY_VIOLATION:
            return self.high_risk_retention
        return self.default_retention

    def _prune(self, now: datetime) -> int:
        evicted = 0
        while self._log:
            oldest = self._log[0]
            if now - oldest.timestamp <= self.retention_for(oldest):
                break
            self._log.popleft()
            self._unindex(oldest)
            evicted += 1
        if evicted:
            self._evicted += evicted
            logger.info(f"Audit retention evicted {evicted} entries")
        return evicted

    def apply_retention(self) -> int:
        """Evict expired entries from the head of the log."""
        with self._lock.write():
            return self._prune(self.clock())

    # Reading

    def query(self, query: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """Filter, order newest-first, then paginate."""
        query = query or AuditQuery()
        with self._lock.write():
            self._prune(self.clock())
            if query.actor is not None:
                candidates = list(self._indices.get(f"actor:{query.actor.lower()}", ()))
            elif query.contract is not None:
                candidates = list(self._indices.get(f"contract:{query.contract.lower()}", ()))
            elif len(query.entry_types) == 1:
                (only,) = query.entry_types
                candidates = list(self._indices.get(f"type:{only.value}", ()))
            else:
                candidates = list(self._log)

        results = [e for e in reversed(candidates) if query.matches(e)]
        start = max(query.offset, 0)
        if query.limit is None:
            return results[start:]
        return results[start:start + max(query.limit, 0)]

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        with self._lock.read():
            for entry in reversed(self._log):
                if entry.id == entry_id:
                    return entry
        return None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._log)

    def verify_integrity(self) -> bool:
        """Recompute the hash chain over the retained entries."""
        with self._lock.read():
            entries = list(self._log)
        for i, entry in enumerate(entries):
            if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                logger.error(f"Audit chain broken at {entry.id}", extra={'extra_data': {'entry_id': entry.id}})
                return False
            if entry.compute_hash(entry.previous_hash) != entry.entry_hash:
                logger.error(f"Audit entry hash mismatch: {entry.id}", extra={'extra_data': {'entry_id': entry.id}})
                return False
        return True

    def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        entries = self.query(AuditQuery(start_time=start, end_time=end, entry_types=REPORTED_TYPES))
        total = len(entries)
        high_risk = sum(1 for e in entries if e.is_high_risk(self.high_risk_score))
        violations = sum(1 for e in entries if e.entry_type == AuditEntryType.SECURITY_VIOLATION)
        score = 1.0 - violations / total if total else 1.0
        return ComplianceReport(
            report_id=f"report-{uuid.uuid4().hex[:12]}",
            generated_at=self.clock(),
            period_start=start,
            period_end=end,
            total_transactions=total,
            high_risk_transactions=high_risk,
            security_violations=violations,
            compliance_score=score,
            recommendations=compliance_recommendations(total, high_risk, violations),
            entries=tuple(entries),
        )

    def pending_approvals(self) -> List[PendingApproval]:
        with self._aux_lock:
            return sorted(self._pending.values(), key=lambda p: p.requested_at)

    def approve(self, entry_id: str) -> PendingApproval:
        with self._aux_lock:
            pending = self._pending.pop(entry_id, None)
        if pending is None:
            raise ConfigurationError(f"No pending approval for entry: {entry_id}")
        logger.info(f"Approval granted for {entry_id}", extra={'extra_data': {'entry_id': entry_id}})
        return pending

    def generated_reports(self) -> List[ComplianceReport]:
        with self._aux_lock:
            return list(self._reports)

    def get_statistics(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock.read():
            entries = list(self._log)
            evicted = self._evicted
        with self._aux_lock:
            pending = len(self._pending)
        counts = Counter(e.entry_type.value for e in entries)
        return {
            "total_entries": len(entries),
            "entries_last_24h": sum(1 for e in entries if e.timestamp >= now - timedelta(hours=24)),
            "high_risk_entries": sum(1 for e in entries if e.is_high_risk(self.high_risk_score)),
            "security_events": sum(1 for e in entries if e.entry_type in SECURITY_EVENT_TYPES),
            "entry_type_counts": dict(counts),
            "oldest_entry": entries[0].timestamp.isoformat() if entries else None,
            "newest_entry": entries[-1].timestamp.isoformat() if entries else None,
            "evicted_entries": evicted,
            "pending_approvals": pending,
        }
