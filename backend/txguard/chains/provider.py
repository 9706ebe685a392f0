"""
Read-only chain access and contract intelligence.

The engine treats the chain as fallible and slow: every call carries an
explicit timeout, a timeout maps to "unknown", and transport failures are
surfaced as TransientIOError. Nothing here is called under an engine lock.

File: backend/txguard/chains/provider.py
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

import httpx

from ..core.exceptions import TransientIOError
from ..core.logging import get_logger
from ..security.models import TransactionIntent

logger = get_logger(__name__)

T = TypeVar("T")

WEI_PER_NATIVE = Decimal(10) ** 18


class ChainProvider(Protocol):
    """Read-only chain queries."""

    async def get_gas_price(self) -> int: ...

    async def get_block_number(self) -> int: ...

    async def get_block(self, number: int) -> List[TransactionIntent]: ...


class ContractIntelligence(Protocol):
    """Verification and audit lookups. ``None`` means unknown.

    Audit status is one of ``"audited"``, ``"partial"`` or ``"none"``.
    """

    def is_verified(self, address: str) -> Optional[bool]: ...

    def audit_status(self, address: str) -> Optional[str]: ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: float) -> Optional[T]:
    """
    Await an external call with a hard timeout.

    Returns:
        The result, or None if the call timed out

    Raises:
        TransientIOError: On transport or protocol failure
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("External call timed out", extra={'extra_data': {'timeout': timeout}})
        return None
    except httpx.HTTPError as e:
        raise TransientIOError(
            f"External call failed: {e}",
            details={"error_type": type(e).__name__}
        ) from e


def _hex_to_int(value: Optional[str]) -> int:
    if not value:
        return 0
    return int(value, 16)


@dataclass
class HttpChainProvider:
    """JSON-RPC chain provider over httpx."""

    rpc_url: str
    timeout_seconds: float = 5.0
    client: Optional[httpx.AsyncClient] = None

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)
        self._owns_client = self.client is None
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=2.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            )

    async def close(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()

    async def _request(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }
        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientIOError(
                f"RPC transport error on {method}: {e}",
                details={"method": method}
            ) from e

        data = response.json()
        if "error" in data:
            raise TransientIOError(
                f"RPC error on {method}",
                details={"method": method, "rpc_error": data["error"]}
            )
        return data.get("result")

    async def get_gas_price(self) -> int:
        return _hex_to_int(await self._request("eth_gasPrice", []))

    async def get_block_number(self) -> int:
        return _hex_to_int(await self._request("eth_blockNumber", []))

    async def get_block(self, number: int) -> List[TransactionIntent]:
        block = await self._request("eth_getBlockByNumber", [hex(number), True])
        if not block:
            return []
        return [self._parse_transaction(tx) for tx in block.get("transactions", []) if isinstance(tx, dict)]

    @staticmethod
    def _parse_transaction(tx: Dict[str, Any]) -> TransactionIntent:
        return TransactionIntent(
            sender=tx.get("from") or "",
            to=tx.get("to") or "",
            value=Decimal(_hex_to_int(tx.get("value"))) / WEI_PER_NATIVE,
            gas_price=_hex_to_int(tx.get("gasPrice")),
            gas_limit=_hex_to_int(tx.get("gas")),
            data=tx.get("input") or "0x",
            nonce=_hex_to_int(tx.get("nonce")),
            tx_hash=tx.get("hash"),
        )


class StaticContractRegistry:
    """In-memory contract intelligence, populated by operators or a refresher."""

    def __init__(self) -> None:
        self._verified: Dict[str, bool] = {}
        self._audited: Dict[str, str] = {}
        self._updated_at: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def set_status(self, address: str, verified: Optional[bool] = None, audit: Optional[str] = None) -> None:
        key = address.lower()
        with self._lock:
            if verified is not None:
                self._verified[key] = verified
            if audit is not None:
                self._audited[key] = audit
            self._updated_at[key] = datetime.now(timezone.utc)

    def is_verified(self, address: str) -> Optional[bool]:
        with self._lock:
            return self._verified.get(address.lower())

    def audit_status(self, address: str) -> Optional[str]:
        with self._lock:
            return self._audited.get(address.lower())

    def known_contracts(self) -> List[str]:
        with self._lock:
            return sorted(set(self._verified) | set(self._audited))


class ExplorerVerificationClient:
    """
    Refreshes source-verification status from an Etherscan-style explorer API.

    Results are written into a StaticContractRegistry so the synchronous
    risk engine can read them without touching the network.
    """

    def __init__(
        self,
        api_url: str,
        registry: StaticContractRegistry,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ):
        self.api_url = api_url
        self.registry = registry
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout_seconds, connect=2.0)

    async def fetch_verified(self, address: str) -> Optional[bool]:
        params = {
            "module": "contract",
            "action": "getsourcecode",
            "address": address,
        }
        if self.api_key:
            params["apikey"] = self.api_key

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.api_url, params=params)
            response.raise_for_status()
            data = response.json()

        result = data.get("result")
        if not isinstance(result, list) or not result:
            return None
        return bool(result[0].get("SourceCode"))

    async def refresh(self, addresses: List[str]) -> Dict[str, Optional[bool]]:
        """Look up each address; unknown or timed out entries stay unset."""
        results: Dict[str, Optional[bool]] = {}
        for address in addresses:
            try:
                verified = await call_with_timeout(
                    self.fetch_verified(address), self.timeout.read or 5.0
                )
            except TransientIOError as e:
                logger.warning(
                    f"Verification lookup failed for {address}",
                    extra={'extra_data': {'address': address, 'error': e.message}}
                )
                verified = None
            if verified is not None:
                self.registry.set_status(address, verified=verified)
            results[address] = verified
        return results
