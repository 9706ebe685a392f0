"""
Tests for static transaction policy validation.
"""

from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from txguard.core.settings import Settings
from txguard.security.models import TransactionIntent
from txguard.security.transaction_validator import (
    ZERO_ADDRESS,
    TransactionValidator,
    sanitize_string,
)

SENDER = "0x1111111111111111111111111111111111111111"
TARGET = "0x5555555555555555555555555555555555555555"
GWEI = 10**9


@pytest.fixture
def validator(settings):
    return TransactionValidator(settings)


def make_tx(**overrides):
    fields = dict(sender=SENDER, to=TARGET, value=Decimal("1"), gas_price=30 * GWEI, gas_limit=100_000, nonce=7)
    fields.update(overrides)
    return TransactionIntent(**fields)


class TestBasicPolicy:

    def test_clean_transaction_is_allowed(self, validator):
        result = validator.validate(make_tx())
        assert result.allowed
        assert result.violations == []
        assert result.warnings == []

    def test_violations_are_collected(self, validator):
        result = validator.validate(make_tx(
            value=Decimal("5000"), gas_price=600 * GWEI, gas_limit=20_000_000,
        ))
        assert not result.allowed
        assert "transaction value too high" in result.violations
        assert "gas price too high" in result.violations
        assert "gas limit too high" in result.violations

    def test_low_gas_limit(self, validator):
        result = validator.validate(make_tx(gas_limit=20_000))
        assert result.violations == ["gas limit too low"]

    def test_negative_value(self, validator):
        result = validator.validate(make_tx(value=Decimal("-1")))
        assert "negative transaction value" in result.violations

    def test_invalid_addresses(self, validator):
        result = validator.validate(make_tx(sender="bob", to="0x123"))
        assert "invalid sender address" in result.violations
        assert "invalid recipient address" in result.violations

    def test_zero_nonce_is_only_a_warning(self, validator):
        result = validator.validate(make_tx(nonce=0))
        assert result.allowed
        assert result.warnings == ["transaction nonce is zero"]


class TestBlacklist:

    def test_zero_address_always_blacklisted(self, validator):
        assert validator.is_blacklisted(ZERO_ADDRESS)
        result = validator.validate(make_tx(to=ZERO_ADDRESS))
        assert "transaction to blacklisted address" in result.violations

    def test_configured_blacklist_is_case_insensitive(self):
        settings = Settings(_env_file=None, blacklisted_addresses=[TARGET.upper().replace("0X", "0x")])
        validator = TransactionValidator(settings)
        assert validator.is_blacklisted(TARGET)

    def test_runtime_blacklist(self, validator):
        validator.blacklist(TARGET)
        assert not validator.validate(make_tx()).allowed
        validator.unblacklist(TARGET)
        assert validator.validate(make_tx()).allowed


class TestCallData:

    def test_dangerous_pattern(self, validator):
        data = "0x12345678" + b"delegatecall".hex()
        result = validator.validate(make_tx(data=data))
        assert "dangerous pattern in call data" in result.violations

    def test_oversized_call_data(self, validator, settings):
        data = "0x" + "ab" * (settings.max_call_data_bytes + 1)
        assert validator.validate_call_data(make_tx(data=data)) == ["call data too large"]

    def test_nested_call_heuristic(self, validator):
        data = "0x2e1a7d4d" + ("00" * 28 + "2e1a7d4d") * 4
        result = validator.validate(make_tx(data=data))
        assert "potential reentrancy: multiple nested calls" in result.violations

    def test_few_nested_calls_pass(self, validator):
        data = "0x2e1a7d4d" + ("00" * 28 + "2e1a7d4d") * 2 + "00" * 64
        assert validator.validate_call_data(make_tx(data=data)) == []


class TestSanitize:

    def test_strips_control_and_non_ascii(self):
        assert sanitize_string("swap\x00 ETHé\n") == "swap ETH"

    def test_caps_length(self):
        assert sanitize_string("a" * 50, max_length=10) == "a" * 10
