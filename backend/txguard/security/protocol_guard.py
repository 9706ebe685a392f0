"""
Protocol-attack detection and per-protocol interaction policy.

File: backend/txguard/security/protocol_guard.py
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Deque, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set, Tuple

from ..chains.circuit_breaker import Clock, utc_now
from ..core.exceptions import ConfigurationError
from ..core.locks import KeyedLocks, ReadWriteLock
from ..core.logging import get_logger
from ..core.settings import Settings, get_settings
from .models import Position, ThreatKind, ThreatRecord, TransactionIntent
from .oracle_validator import DEFAULT_FLASH_LOAN_PROVIDERS

logger = get_logger(__name__)

FLASH_LOAN_SELECTORS = frozenset({
    "0xab9c4b5d",  # Aave V2 flashLoan
    "0x42b0b77c",  # Aave V3 flashLoanSimple
    "0x5cffe9de",  # ERC-3156 flashLoan
})
LIQUIDATION_SELECTORS = frozenset({
    "0x00a718a9",  # Aave liquidationCall
    "0xf5e3c462",  # Compound liquidateBorrow
})
GOVERNANCE_SELECTORS = frozenset({
    "0x56781388",  # castVote
    "0xda95691a",  # propose
})


class ProtocolType(str, Enum):
    LENDING = "lending"
    DEX = "dex"
    YIELD = "yield"
    INSURANCE = "insurance"
    GOVERNANCE = "governance"


@dataclass
class RateLimits:
    max_transactions_per_minute: int = 10
    max_value_per_hour: Decimal = Decimal("1000")
    cooldown_period: timedelta = timedelta(minutes=5)


@dataclass
class ProtocolConfig:
    """Policy for one registered protocol contract."""

    address: str
    protocol_type: ProtocolType
    max_transaction_value: Decimal = Decimal("100")
    allowed_functions: FrozenSet[str] = frozenset()
    rate_limits: RateLimits = field(default_factory=RateLimits)
    emergency_pause: bool = False
    name: str = ""

    def __post_init__(self) -> None:
        self.address = self.address.lower()
        self.allowed_functions = frozenset(s.lower() for s in self.allowed_functions)


class PositionFeed(Protocol):
    """Source of leveraged positions from the lending managers."""

    def get_positions(self) -> Iterable[Position]: ...


class VotingPowerSource(Protocol):
    """Share of total voting power held by a voter; None when unknown."""

    def concentration(self, voter: str, protocol: str) -> Optional[float]: ...


@dataclass
class _SenderActivity:
    tx_times: Deque[datetime] = field(default_factory=deque)
    values: Deque[Tuple[datetime, Decimal]] = field(default_factory=deque)
    cooldown_until: Optional[datetime] = None
    evicted: bool = False

    def prune(self, now: datetime) -> None:
        minute_ago = now - timedelta(minutes=1)
        while self.tx_times and self.tx_times[0] <= minute_ago:
            self.tx_times.popleft()
        hour_ago = now - timedelta(hours=1)
        while self.values and self.values[0][0] <= hour_ago:
            self.values.popleft()

    def is_idle(self, now: datetime) -> bool:
        cooling = self.cooldown_until is not None and now < self.cooldown_until
        return not self.tx_times and not self.values and not cooling


def call_data_addresses(tx: TransactionIntent) -> Set[str]:
    """Addresses encoded as ABI words in the call arguments."""
    data = tx.data_bytes[4:]
    found: Set[str] = set()
    for offset in range(0, len(data) - 31, 32):
        word = data[offset:offset + 32]
        if word[:12] == bytes(12) and word[12:] != bytes(20):
            found.add("0x" + word[12:].hex())
    return found


class ProtocolGuard:
    """
    Detects protocol-level attacks and enforces per-protocol policy.

    Rate-limit state is kept per sender behind its own lock; the registry
    and the at-risk position queue each have a reader/writer lock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        position_feed: Optional[PositionFeed] = None,
        voting_power: Optional[VotingPowerSource] = None,
        flash_loan_providers: Iterable[str] = DEFAULT_FLASH_LOAN_PROVIDERS,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.position_feed = position_feed
        self.voting_power = voting_power

        self._protocols: Dict[str, ProtocolConfig] = {}
        self._flash_loan_providers: Set[str] = {a.lower() for a in flash_loan_providers}
        self._dex_contracts: Set[str] = set()
        self._registry_lock = ReadWriteLock()

        self._blocked_addresses: Set[str] = set()
        self._frozen_addresses: Set[str] = set()
        self._blocked_functions: Set[Tuple[str, str]] = set()
        self._rate_overrides: Dict[str, int] = {}
        self._controls_lock = threading.Lock()

        self._positions: Dict[str, Position] = {}
        self._at_risk: Dict[str, float] = {}
        self._positions_lock = ReadWriteLock()

        self._activity: Dict[str, _SenderActivity] = {}
        self._sender_locks = KeyedLocks()
        self._activity_lock = threading.Lock()
        self._next_sender_prune: Optional[datetime] = None

        self._stats_lock = threading.Lock()
        self._analyzed = 0
        self._threats = 0
        self._rejections: Dict[str, int] = {}

    # Registration

    def register_protocol(self, config: ProtocolConfig) -> None:
        with self._registry_lock.write():
            self._protocols[config.address] = config
            if config.protocol_type == ProtocolType.DEX:
                self._dex_contracts.add(config.address)
        logger.info(
            f"Protocol registered: {config.name or config.address}",
            extra={'extra_data': {
                'protocol': config.address,
                'protocol_type': config.protocol_type.value,
                'max_transaction_value': str(config.max_transaction_value),
            }}
        )

    def get_protocol(self, address: str) -> Optional[ProtocolConfig]:
        with self._registry_lock.read():
            return self._protocols.get(address.lower())

    def protocol_addresses(self) -> List[str]:
        with self._registry_lock.read():
            return sorted(self._protocols)

    def register_flash_loan_provider(self, address: str) -> None:
        with self._registry_lock.write():
            self._flash_loan_providers.add(address.lower())

    def register_dex(self, address: str) -> None:
        with self._registry_lock.write():
            self._dex_contracts.add(address.lower())

    def set_paused(self, address: str, paused: bool = True) -> None:
        """
        Pause or resume a registered protocol.

        Raises:
            ConfigurationError: If the protocol is not registered
        """
        key = address.lower()
        with self._registry_lock.write():
            config = self._protocols.get(key)
            if config is None:
                raise ConfigurationError(
                    f"Protocol not registered: {address}",
                    details={"protocol": address}
                )
            config.emergency_pause = paused
        log = logger.error if paused else logger.info
        log(
            f"Protocol {'paused' if paused else 'resumed'}: {address}",
            extra={'extra_data': {'protocol': key, 'paused': paused}}
        )

    def is_paused(self, address: str) -> bool:
        config = self.get_protocol(address)
        return bool(config and config.emergency_pause)

    # Protective controls used by the emergency dispatcher

    def block_address(self, address: str) -> None:
        with self._controls_lock:
            self._blocked_addresses.add(address.lower())
        logger.warning(f"Address blocked: {address}", extra={'extra_data': {'address': address}})

    def unblock_address(self, address: str) -> None:
        with self._controls_lock:
            self._blocked_addresses.discard(address.lower())

    def freeze_address(self, address: str) -> None:
        with self._controls_lock:
            self._frozen_addresses.add(address.lower())
        logger.warning(f"Address frozen: {address}", extra={'extra_data': {'address': address}})

    def unfreeze_address(self, address: str) -> None:
        with self._controls_lock:
            self._frozen_addresses.discard(address.lower())

    def block_function(self, contract: str, selector: str) -> None:
        with self._controls_lock:
            self._blocked_functions.add((contract.lower(), selector.lower()))
        logger.warning(
            f"Function blocked: {selector} on {contract}",
            extra={'extra_data': {'protocol': contract, 'selector': selector}}
        )

    def set_rate_limit(self, address: str, max_tx_per_minute: int) -> None:
        if max_tx_per_minute < 1:
            raise ConfigurationError("max_tx_per_minute must be at least 1")
        with self._controls_lock:
            self._rate_overrides[address.lower()] = max_tx_per_minute

    # Position monitoring

    def update_positions(self, positions: Iterable[Position]) -> None:
        with self._positions_lock.write():
            self._positions = {
                (p.owner or p.asset).lower(): p for p in positions
            }

    def monitor_positions(self) -> List[str]:
        """
        Recompute the at-risk queue from the latest position snapshot.

        Returns:
            Addresses whose health factor is below the liquidation threshold
        """
        if self.position_feed is not None:
            self.update_positions(self.position_feed.get_positions())

        threshold = self.settings.liquidation_health_threshold
        with self._positions_lock.read():
            snapshot = list(self._positions.items())

        at_risk = {
            key: position.health_factor
            for key, position in snapshot
            if position.debt_value > 0 and position.health_factor < threshold
        }
        with self._positions_lock.write():
            self._at_risk = at_risk

        for key, health in at_risk.items():
            logger.warning(
                f"Position at liquidation risk: {key}",
                extra={'extra_data': {'owner': key, 'health_factor': round(health, 4)}}
            )
        return sorted(at_risk)

    def at_risk_positions(self) -> Dict[str, float]:
        with self._positions_lock.read():
            return dict(self._at_risk)

    # Detection

    def detect(self, tx: TransactionIntent) -> List[ThreatRecord]:
        """
        Inspect a transaction for protocol-level attack patterns.

        Returns:
            Threat records, possibly empty
        """
        now = self.clock()
        threats = [
            t for t in (
                self._detect_flash_loan(tx, now),
                self._detect_liquidation(tx, now),
                self._detect_governance(tx, now),
                self._detect_price_manipulation(tx, now),
            )
            if t is not None
        ]
        with self._stats_lock:
            self._analyzed += 1
            self._threats += len(threats)
        if threats:
            logger.warning(
                "Protocol threats detected",
                extra={'extra_data': {
                    'sender': tx.sender,
                    'target': tx.to,
                    'threats': [t.kind.value for t in threats],
                }}
            )
        return threats

    def _detect_flash_loan(self, tx: TransactionIntent, now: datetime) -> Optional[ThreatRecord]:
        with self._registry_lock.read():
            is_provider = tx.target_key in self._flash_loan_providers
        if not is_provider or tx.selector not in FLASH_LOAN_SELECTORS:
            return None
        return ThreatRecord(
            kind=ThreatKind.FLASH_LOAN_ATTACK,
            confidence=0.75,
            potential_value=tx.value,
            attacker=tx.sender_key,
            detected_at=now,
            description="Flash loan requested from a known provider",
            detector="protocol",
        )

    def _detect_liquidation(self, tx: TransactionIntent, now: datetime) -> Optional[ThreatRecord]:
        if tx.selector not in LIQUIDATION_SELECTORS:
            return None
        candidates = {tx.target_key} | call_data_addresses(tx)
        at_risk = self.at_risk_positions()
        hit = sorted(candidates & set(at_risk))
        if not hit:
            return None
        with self._positions_lock.read():
            exposed = sum(
                (Decimal(str(self._positions[k].debt_value)) for k in hit if k in self._positions),
                Decimal("0"),
            )
        return ThreatRecord(
            kind=ThreatKind.LIQUIDATION,
            confidence=0.7,
            potential_value=exposed or tx.value,
            attacker=tx.sender_key,
            detected_at=now,
            description=f"Liquidation targeting at-risk position {hit[0]}",
            detector="protocol",
        )

    def _detect_governance(self, tx: TransactionIntent, now: datetime) -> Optional[ThreatRecord]:
        if tx.selector not in GOVERNANCE_SELECTORS or self.voting_power is None:
            return None
        concentration = self.voting_power.concentration(tx.sender_key, tx.target_key)
        if concentration is None or concentration < self.settings.governance_concentration_threshold:
            return None
        return ThreatRecord(
            kind=ThreatKind.GOVERNANCE_ATTACK,
            confidence=0.65,
            attacker=tx.sender_key,
            detected_at=now,
            description=f"Voter controls {concentration:.0%} of voting power",
            detector="protocol",
        )

    def _detect_price_manipulation(self, tx: TransactionIntent, now: datetime) -> Optional[ThreatRecord]:
        with self._registry_lock.read():
            is_dex = tx.target_key in self._dex_contracts
        if not is_dex or tx.value <= Decimal(str(self.settings.large_trade_threshold)):
            return None
        return ThreatRecord(
            kind=ThreatKind.PRICE_MANIPULATION,
            confidence=0.6,
            potential_value=tx.value,
            attacker=tx.sender_key,
            detected_at=now,
            description="Large trade against a registered DEX",
            detector="protocol",
        )

    # Policy

    def validate_protocol_interaction(self, tx: TransactionIntent) -> Tuple[bool, str]:
        """
        Check a transaction against protocol policy and sender rate limits.

        Returns:
            Tuple of (allowed, reason); reason is empty when allowed
        """
        allowed, reason = self._check_interaction(tx)
        if not allowed:
            with self._stats_lock:
                self._rejections[reason] = self._rejections.get(reason, 0) + 1
            logger.warning(
                f"Protocol interaction rejected: {reason}",
                extra={'extra_data': {'sender': tx.sender, 'target': tx.to, 'reason': reason}}
            )
        return allowed, reason

    def _check_interaction(self, tx: TransactionIntent) -> Tuple[bool, str]:
        with self._controls_lock:
            if tx.sender_key in self._blocked_addresses or tx.target_key in self._blocked_addresses:
                return False, "address blocked"
            if tx.sender_key in self._frozen_addresses:
                return False, "address frozen"
            if (tx.target_key, tx.selector) in self._blocked_functions:
                return False, "function blocked"
            override = self._rate_overrides.get(tx.sender_key)

        if self._in_cooldown(tx.sender_key):
            return False, "sender in cooldown"

        config = self.get_protocol(tx.to)
        if config is None:
            if override is None:
                return True, ""
            return self._check_rate_limits(tx, RateLimits(max_transactions_per_minute=override,
                                                          max_value_per_hour=Decimal("Infinity")))

        if config.emergency_pause:
            return False, "protocol paused"
        if tx.value > config.max_transaction_value:
            return False, "value exceeds limit"
        if config.allowed_functions and tx.selector and tx.selector not in config.allowed_functions:
            return False, "function not allowed"

        limits = config.rate_limits
        if override is not None:
            limits = RateLimits(
                max_transactions_per_minute=min(override, limits.max_transactions_per_minute),
                max_value_per_hour=limits.max_value_per_hour,
                cooldown_period=limits.cooldown_period,
            )
        return self._check_rate_limits(tx, limits)

    def _sender_activity(self, sender: str) -> _SenderActivity:
        with self._activity_lock:
            activity = self._activity.get(sender)
            if activity is None:
                activity = _SenderActivity()
                self._activity[sender] = activity
            return activity

    def _in_cooldown(self, sender: str) -> bool:
        now = self.clock()
        with self._activity_lock:
            activity = self._activity.get(sender)
        if activity is None:
            return False
        with self._sender_locks.write(sender):
            if activity.cooldown_until is None:
                return False
            if now < activity.cooldown_until:
                return True
            activity.cooldown_until = None
            return False

    def _check_rate_limits(self, tx: TransactionIntent, limits: RateLimits) -> Tuple[bool, str]:
        sender = tx.sender_key
        now = self.clock()
        self._maybe_prune_senders(now)

        while True:
            activity = self._sender_activity(sender)
            with self._sender_locks.write(sender):
                # Evicted by a concurrent sweep; pick up the fresh entry
                if activity.evicted:
                    continue
                if activity.cooldown_until is not None:
                    if now < activity.cooldown_until:
                        return False, "sender in cooldown"
                    activity.cooldown_until = None

                activity.prune(now)

                if len(activity.tx_times) >= limits.max_transactions_per_minute:
                    activity.cooldown_until = now + limits.cooldown_period
                    return False, "rate limit exceeded"

                hourly = sum((v for _, v in activity.values), Decimal("0"))
                if hourly + tx.value > limits.max_value_per_hour:
                    activity.cooldown_until = now + limits.cooldown_period
                    return False, "hourly value limit exceeded"

                activity.tx_times.append(now)
                activity.values.append((now, tx.value))
                return True, ""

    def _maybe_prune_senders(self, now: datetime) -> None:
        with self._activity_lock:
            if self._next_sender_prune is not None and now < self._next_sender_prune:
                return
            self._next_sender_prune = now + timedelta(seconds=self.settings.sender_prune_interval_seconds)
        self.prune_idle_senders(now)

    def prune_idle_senders(self, now: Optional[datetime] = None) -> int:
        """
        Drop rate-limit state of senders with no activity in the hourly window and no active cooldown.

        Returns:
            Number of senders evicted
        """
        now = now or self.clock()
        evicted = 0
        with self._activity_lock:
            for sender, activity in list(self._activity.items()):
                with self._sender_locks.write(sender):
                    activity.prune(now)
                    if not activity.is_idle(now):
                        continue
                    activity.evicted = True
                del self._activity[sender]
                self._sender_locks.discard(sender)
                evicted += 1
        if evicted:
            logger.debug(
                f"Evicted {evicted} idle senders",
                extra={'extra_data': {'evicted': evicted}}
            )
        return evicted

    def tracked_senders(self) -> int:
        with self._activity_lock:
            return len(self._activity)

    def get_statistics(self) -> Dict:
        with self._registry_lock.read():
            protocols = len(self._protocols)
            paused = sum(1 for c in self._protocols.values() if c.emergency_pause)
        with self._positions_lock.read():
            positions = len(self._positions)
            at_risk = len(self._at_risk)
        with self._controls_lock:
            blocked = len(self._blocked_addresses)
            frozen = len(self._frozen_addresses)
        with self._stats_lock:
            return {
                "monitored_protocols": protocols,
                "paused_protocols": paused,
                "transactions_analyzed": self._analyzed,
                "threats_detected": self._threats,
                "positions_monitored": positions,
                "positions_at_risk": at_risk,
                "blocked_addresses": blocked,
                "frozen_addresses": frozen,
                "rejections": dict(self._rejections),
            }
