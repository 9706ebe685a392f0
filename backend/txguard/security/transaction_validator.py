"""
Static transaction policy checks.

Runs before any threat detection: recipient blacklist, value and gas
bounds, call data size and content, and a nested-call reentrancy
heuristic. All violations are collected rather than failing on the first.

File: backend/txguard/security/transaction_validator.py
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Iterable, List, Optional, Set

from ..core.logging import get_logger
from ..core.settings import Settings, get_settings
from .models import PolicyResult, TransactionIntent, is_valid_address

logger = get_logger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DANGEROUS_PATTERNS = (b"selfdestruct", b"delegatecall")

# transfer, transferFrom and the generic call selector
REENTRANCY_ENTRY_SELECTORS = frozenset({"0xa9059cbb", "0x23b872dd", "0x2e1a7d4d"})
NESTED_CALL_SELECTOR = bytes.fromhex("2e1a7d4d")
MAX_NESTED_CALLS = 3


def sanitize_string(text: str, max_length: int = 1000) -> str:
    """Drop control and non-ASCII characters and cap the length."""
    return "".join(c for c in text if c.isascii() and c.isprintable())[:max_length]


class TransactionValidator:
    """Policy gate applied to every candidate transaction."""

    def __init__(self, settings: Optional[Settings] = None, blacklist: Optional[Iterable[str]] = None):
        self.settings = settings or get_settings()
        self._blacklist: Set[str] = {ZERO_ADDRESS}
        self._blacklist.update(a.lower() for a in self.settings.blacklisted_addresses)
        if blacklist:
            self._blacklist.update(a.lower() for a in blacklist)
        self._lock = threading.Lock()

    def blacklist(self, address: str) -> None:
        with self._lock:
            self._blacklist.add(address.lower())

    def unblacklist(self, address: str) -> None:
        with self._lock:
            self._blacklist.discard(address.lower())

    def is_blacklisted(self, address: str) -> bool:
        with self._lock:
            return address.lower() in self._blacklist

    def validate(self, tx: TransactionIntent) -> PolicyResult:
        """
        Check a transaction against the static policy.

        Args:
            tx: Candidate transaction

        Returns:
            PolicyResult with every violation found
        """
        violations: List[str] = []
        warnings: List[str] = []
        s = self.settings

        if not is_valid_address(tx.sender):
            violations.append("invalid sender address")
        if not is_valid_address(tx.to):
            violations.append("invalid recipient address")
        elif self.is_blacklisted(tx.to):
            violations.append("transaction to blacklisted address")

        if tx.value < 0:
            violations.append("negative transaction value")
        elif tx.value > Decimal(str(s.max_transaction_value)):
            violations.append("transaction value too high")

        if tx.gas_price > s.max_gas_price_wei:
            violations.append("gas price too high")
        if tx.gas_limit < s.min_gas_limit:
            violations.append("gas limit too low")
        elif tx.gas_limit > s.max_gas_limit:
            violations.append("gas limit too high")

        if tx.nonce == 0:
            warnings.append("transaction nonce is zero")

        violations.extend(self.validate_call_data(tx))

        if violations:
            logger.warning(
                "Transaction failed policy validation",
                extra={'extra_data': {
                    'sender': tx.sender,
                    'target': tx.to,
                    'violations': violations,
                }}
            )
        return PolicyResult(allowed=not violations, violations=violations, warnings=warnings)

    def validate_call_data(self, tx: TransactionIntent) -> List[str]:
        data = tx.data_bytes
        problems: List[str] = []

        if len(data) > self.settings.max_call_data_bytes:
            problems.append("call data too large")
            return problems

        if any(pattern in data for pattern in DANGEROUS_PATTERNS):
            problems.append("dangerous pattern in call data")

        if tx.selector in REENTRANCY_ENTRY_SELECTORS and len(data) > 100:
            if data.count(NESTED_CALL_SELECTOR) > MAX_NESTED_CALLS:
                problems.append("potential reentrancy: multiple nested calls")

        return problems
