"""
MEV threat detection over a short sliding window of recent transactions.

File: backend/txguard/security/mev_detector.py
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Set

from ..chains.circuit_breaker import Clock, utc_now
from ..core.locks import ReadWriteLock
from ..core.logging import get_logger
from ..core.settings import Settings, get_settings
from .models import ProtectionPlan, ThreatKind, ThreatRecord, TransactionIntent

logger = get_logger(__name__)

WEI_PER_NATIVE = Decimal(10) ** 18

# Router swap selectors keyed by trade direction relative to the pool's base token
BUY_SELECTORS = frozenset({
    "0x7ff36ab5",  # swapExactETHForTokens
    "0xfb3bdb41",  # swapETHForExactTokens
    "0xb6f9de95",  # swapExactETHForTokensSupportingFeeOnTransferTokens
})
SELL_SELECTORS = frozenset({
    "0x18cbafe5",  # swapExactTokensForETH
    "0x4a25d94a",  # swapTokensForExactETH
    "0x791ac947",  # swapExactTokensForETHSupportingFeeOnTransferTokens
})
# Token-to-token swaps whose direction cannot be read from the selector
UNDIRECTED_SWAP_SELECTORS = frozenset({
    "0x38ed1739",  # swapExactTokensForTokens
    "0x8a657b9a",
})
SWAP_SELECTORS = BUY_SELECTORS | SELL_SELECTORS | UNDIRECTED_SWAP_SELECTORS

FRONTRUN_GAS_PREMIUM = Decimal("1.10")
GENERAL_GAS_PREMIUM = Decimal("1.05")
FRONTRUN_DELAY_SECONDS = 2.0
NEXT_BLOCK_DELAY_SECONDS = 12.0

WINDOW_CAPACITY = 1000


def trade_direction(selector: str) -> Optional[str]:
    if selector in BUY_SELECTORS:
        return "buy"
    if selector in SELL_SELECTORS:
        return "sell"
    return None


@dataclass(frozen=True)
class TransactionPattern:
    """Compact record of a recently seen transaction."""

    sender: str
    target: str
    selector: str
    gas_price: int
    gas_limit: int
    value: Decimal
    nonce: int
    timestamp: datetime

    @classmethod
    def from_intent(cls, tx: TransactionIntent, timestamp: datetime) -> "TransactionPattern":
        return cls(
            sender=tx.sender_key,
            target=tx.target_key,
            selector=tx.selector,
            gas_price=tx.gas_price,
            gas_limit=tx.gas_limit,
            value=tx.value,
            nonce=tx.nonce,
            timestamp=timestamp,
        )

    def is_same_call(self, tx: TransactionIntent) -> bool:
        return bool(self.selector) and self.target == tx.target_key and self.selector == tx.selector

    def is_same_transaction(self, tx: TransactionIntent) -> bool:
        return self.sender == tx.sender_key and self.nonce == tx.nonce


class MevDetector:
    """
    Detects frontrunning, sandwiching, gas-premium and competition patterns.

    Detection is read-only against the window; callers feed it through
    record_transaction (analysed transactions) and observe_pending (patterns
    sampled from blocks or a mempool feed).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        known_bots: Iterable[str] = (),
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.window = timedelta(seconds=self.settings.mev_window_seconds)

        self._patterns: Deque[TransactionPattern] = deque(maxlen=WINDOW_CAPACITY)
        self._lock = ReadWriteLock()

        self._known_bots: Set[str] = {a.lower() for a in known_bots}
        self._reference_gas_price: Optional[int] = None
        self._meta_lock = threading.Lock()

        self._threat_counts: Dict[ThreatKind, int] = {}
        self._plans_issued = 0

    # Feeds

    def set_reference_gas_price(self, gas_price_wei: Optional[int]) -> None:
        with self._meta_lock:
            self._reference_gas_price = gas_price_wei if gas_price_wei else None

    @property
    def reference_gas_price(self) -> Optional[int]:
        with self._meta_lock:
            return self._reference_gas_price

    def add_known_bot(self, address: str) -> None:
        with self._meta_lock:
            self._known_bots.add(address.lower())

    def is_known_bot(self, address: str) -> bool:
        with self._meta_lock:
            return address.lower() in self._known_bots

    def record_transaction(self, tx: TransactionIntent, timestamp: Optional[datetime] = None) -> None:
        self.observe_pending(TransactionPattern.from_intent(tx, timestamp or self.clock()))

    def observe_pending(self, pattern: TransactionPattern) -> None:
        with self._lock.write():
            self._patterns.append(pattern)
            self._prune_locked()

    def observe_many(self, transactions: Iterable[TransactionIntent]) -> int:
        now = self.clock()
        patterns = [TransactionPattern.from_intent(tx, now) for tx in transactions]
        with self._lock.write():
            self._patterns.extend(patterns)
            self._prune_locked()
        return len(patterns)

    def _prune_locked(self) -> None:
        cutoff = self.clock() - self.window
        while self._patterns and self._patterns[0].timestamp < cutoff:
            self._patterns.popleft()

    def _windowed(self, tx: TransactionIntent) -> List[TransactionPattern]:
        cutoff = self.clock() - self.window
        with self._lock.read():
            return [
                p for p in self._patterns
                if p.timestamp >= cutoff and not p.is_same_transaction(tx)
            ]

    # Detection

    def detect(self, tx: TransactionIntent) -> List[ThreatRecord]:
        """
        Inspect a candidate transaction against the recent window.

        Args:
            tx: Candidate transaction

        Returns:
            Threat records, possibly empty
        """
        recent = self._windowed(tx)
        now = self.clock()
        threats: List[ThreatRecord] = []

        for threat in (
            self._detect_frontrunning(tx, recent, now),
            self._detect_sandwich(tx, recent, now),
            self._detect_gas_premium(tx, now),
            self._detect_competition(tx, recent, now),
        ):
            if threat is not None:
                threats.append(threat)

        if threats:
            with self._meta_lock:
                for threat in threats:
                    self._threat_counts[threat.kind] = self._threat_counts.get(threat.kind, 0) + 1
            logger.warning(
                "MEV threats detected",
                extra={'extra_data': {
                    'sender': tx.sender,
                    'target': tx.to,
                    'threats': [t.kind.value for t in threats],
                }}
            )
        return threats

    def _describe_attacker(self, address: str, base: str) -> str:
        if self.is_known_bot(address):
            return f"{base} (known MEV bot)"
        return base

    def _detect_frontrunning(
        self, tx: TransactionIntent, recent: Sequence[TransactionPattern], now: datetime
    ) -> Optional[ThreatRecord]:
        rivals = [p for p in recent if p.is_same_call(tx) and p.gas_price > tx.gas_price]
        if not rivals:
            return None
        rival = max(rivals, key=lambda p: (p.gas_price, p.timestamp))
        return ThreatRecord(
            kind=ThreatKind.FRONTRUNNING,
            confidence=0.8,
            potential_value=rival.value,
            attacker=rival.sender,
            detected_at=now,
            description=self._describe_attacker(
                rival.sender, "Same call outbid by a recent transaction"
            ),
            detector="mev",
        )

    def _detect_sandwich(
        self, tx: TransactionIntent, recent: Sequence[TransactionPattern], now: datetime
    ) -> Optional[ThreatRecord]:
        if tx.selector not in SWAP_SELECTORS:
            return None
        direction = trade_direction(tx.selector)
        if direction is None:
            return None
        for p in recent:
            other = trade_direction(p.selector)
            if p.target == tx.target_key and other is not None and other != direction:
                return ThreatRecord(
                    kind=ThreatKind.SANDWICHING,
                    confidence=0.7,
                    potential_value=tx.value,
                    attacker=p.sender,
                    detected_at=now,
                    description=self._describe_attacker(
                        p.sender, f"Opposite {other} on the same pool"
                    ),
                    detector="mev",
                )
        return None

    def _detect_gas_premium(self, tx: TransactionIntent, now: datetime) -> Optional[ThreatRecord]:
        reference = self.reference_gas_price
        if reference is None:
            return None
        if tx.gas_price <= reference * self.settings.mev_high_gas_multiplier:
            return None
        return ThreatRecord(
            kind=ThreatKind.UNKNOWN,
            confidence=0.6,
            potential_value=Decimal(tx.gas_price * tx.gas_limit) / WEI_PER_NATIVE,
            attacker=tx.sender_key,
            detected_at=now,
            description=f"Gas price {tx.gas_price / reference:.1f}x network reference",
            detector="mev",
        )

    def _detect_competition(
        self, tx: TransactionIntent, recent: Sequence[TransactionPattern], now: datetime
    ) -> Optional[ThreatRecord]:
        competing = sum(1 for p in recent if p.is_same_call(tx))
        if competing <= self.settings.mev_competition_threshold:
            return None
        return ThreatRecord(
            kind=ThreatKind.ARBITRAGE,
            confidence=0.9,
            detected_at=now,
            description=f"{competing} competing transactions for the same call",
            detector="mev",
        )

    # Protection

    def apply_protection(self, tx: TransactionIntent, threats: Sequence[ThreatRecord]) -> ProtectionPlan:
        """
        Build advisory adjustments for a threatened transaction.

        Nothing is submitted; the plan goes back to the submission layer.
        """
        kinds = {t.kind for t in threats}
        reference = self.reference_gas_price or tx.gas_price
        gas: Optional[int] = None
        delay = 0.0
        private_relay = False
        notes: List[str] = []

        if ThreatKind.FRONTRUNNING in kinds:
            gas = int(Decimal(reference) * FRONTRUN_GAS_PREMIUM)
            delay = max(delay, FRONTRUN_DELAY_SECONDS)
            notes.append("raise gas to 10% above network reference and delay submission")
        if ThreatKind.SANDWICHING in kinds:
            private_relay = True
            notes.append("route through a private relay")
        if ThreatKind.ARBITRAGE in kinds:
            delay = max(delay, NEXT_BLOCK_DELAY_SECONDS)
            notes.append("defer to the next block")
        if gas is None and kinds - {ThreatKind.SANDWICHING, ThreatKind.ARBITRAGE}:
            gas = int(Decimal(reference) * GENERAL_GAS_PREMIUM)
            notes.append("use a moderate gas premium")

        with self._meta_lock:
            self._plans_issued += 1

        return ProtectionPlan(
            adjusted_gas_price=gas,
            recommended_delay_seconds=delay,
            use_private_relay=private_relay,
            notes=tuple(notes),
        )

    def get_statistics(self) -> Dict:
        with self._lock.read():
            monitored = len(self._patterns)
        with self._meta_lock:
            return {
                "transactions_monitored": monitored,
                "threats_detected": sum(self._threat_counts.values()),
                "threats_by_kind": {k.value: v for k, v in self._threat_counts.items()},
                "known_mev_bots": len(self._known_bots),
                "protection_plans_issued": self._plans_issued,
                "reference_gas_price": self._reference_gas_price,
            }
