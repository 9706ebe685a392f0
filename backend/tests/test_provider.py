"""
Tests for the JSON-RPC provider, explorer verification and settings wiring.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import pytest

from txguard.chains.provider import (
    ExplorerVerificationClient,
    HttpChainProvider,
    StaticContractRegistry,
    call_with_timeout,
)
from txguard.core.exceptions import TransientIOError
from txguard.core.scheduler import SchedulerManager
from txguard.core.settings import Settings
from txguard.monitoring.emergency import WebhookNotificationChannel
from txguard.security.orchestrator import SecurityOrchestrator
from txguard.security.protocol_guard import ProtocolConfig, ProtocolType

RPC_URL = "https://rpc.example.com"
EXPLORER_URL = "https://api.etherscan.example/api"
POOL = "0x7d2768de32b0b80b7a3454c06bdac94a69ddc7a9"
ROUTER = "0x7a250d5630b4cf539739df2c5dac4c4ab1c2488d"
SENDER = "0x1111111111111111111111111111111111111111"


def rpc_provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpChainProvider(RPC_URL, client=client)


def rpc_result(result):
    def handler(request):
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return handler


@pytest.fixture
def explorer_transport(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport driven by ``responses``."""
    responses = {}
    requests = []

    def handler(request):
        requests.append(request)
        address = request.url.params["address"]
        status, payload = responses.get(address, (200, {"status": "0", "result": "Invalid address"}))
        return httpx.Response(status, json=payload)

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return responses, requests


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestHttpChainProvider:

    @pytest.mark.asyncio
    async def test_gas_price_and_block_number(self):
        methods = []

        def handler(request):
            body = json.loads(request.content)
            methods.append(body["method"])
            result = {"eth_gasPrice": "0x4a817c800", "eth_blockNumber": "0x64"}[body["method"]]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        provider = rpc_provider(handler)
        assert await provider.get_gas_price() == 20 * 10**9
        assert await provider.get_block_number() == 100
        assert methods == ["eth_gasPrice", "eth_blockNumber"]

    @pytest.mark.asyncio
    async def test_block_transactions_are_parsed(self):
        seen = []
        block = {
            "number": "0x64",
            "transactions": [
                {
                    "hash": "0xabc",
                    "from": SENDER,
                    "to": ROUTER,
                    "value": "0xde0b6b3a7640000",
                    "gasPrice": "0x4a817c800",
                    "gas": "0x30d40",
                    "input": "0x38ed1739",
                    "nonce": "0x7",
                },
                "0xdeadbeef",
            ],
        }

        def handler(request):
            body = json.loads(request.content)
            seen.append(body["params"])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": block})

        transactions = await rpc_provider(handler).get_block(100)

        assert seen == [["0x64", True]]
        assert len(transactions) == 1
        tx = transactions[0]
        assert tx.sender == SENDER
        assert tx.to == ROUTER
        assert tx.value == Decimal(1)
        assert tx.gas_price == 20 * 10**9
        assert tx.gas_limit == 200_000
        assert tx.nonce == 7
        assert tx.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_missing_block_is_empty(self):
        assert await rpc_provider(rpc_result(None)).get_block(5) == []

    @pytest.mark.asyncio
    async def test_rpc_error_maps_to_transient_error(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32005, "message": "limit exceeded"},
            })

        with pytest.raises(TransientIOError) as exc_info:
            await rpc_provider(handler).get_gas_price()
        assert exc_info.value.details["method"] == "eth_gasPrice"
        assert exc_info.value.details["rpc_error"]["code"] == -32005

    @pytest.mark.asyncio
    async def test_http_status_error_maps_to_transient_error(self):
        provider = rpc_provider(lambda request: httpx.Response(503))
        with pytest.raises(TransientIOError):
            await provider.get_block_number()

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_transient_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientIOError) as exc_info:
            await rpc_provider(handler).get_gas_price()
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


class TestCallWithTimeout:

    @pytest.mark.asyncio
    async def test_timeout_is_unknown(self):
        async def slow():
            await asyncio.sleep(1.0)
            return 1

        assert await call_with_timeout(slow(), 0.01) is None

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        async def failing():
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(TransientIOError) as exc_info:
            await call_with_timeout(failing(), 1.0)
        assert exc_info.value.details["error_type"] == "ReadTimeout"


class TestExplorerVerificationClient:

    @pytest.mark.asyncio
    async def test_refresh_records_verification(self, explorer_transport):
        responses, requests = explorer_transport
        responses[POOL] = (200, {"status": "1", "result": [{"SourceCode": "contract Pool {}"}]})
        responses[ROUTER] = (200, {"status": "1", "result": [{"SourceCode": ""}]})
        registry = StaticContractRegistry()
        client = ExplorerVerificationClient(EXPLORER_URL, registry, api_key="secret")

        results = await client.refresh([POOL, ROUTER])

        assert results == {POOL: True, ROUTER: False}
        assert registry.is_verified(POOL) is True
        assert registry.is_verified(ROUTER) is False
        assert all(r.url.params["apikey"] == "secret" for r in requests)
        assert requests[0].url.params["action"] == "getsourcecode"

    @pytest.mark.asyncio
    async def test_failed_lookup_stays_unknown(self, explorer_transport):
        responses, _ = explorer_transport
        responses[POOL] = (502, {"message": "bad gateway"})
        registry = StaticContractRegistry()
        client = ExplorerVerificationClient(EXPLORER_URL, registry)

        assert await client.refresh([POOL, ROUTER]) == {POOL: None, ROUTER: None}
        assert registry.is_verified(POOL) is None
        assert registry.known_contracts() == []


class TestOrchestratorFromSettings:

    @pytest.mark.asyncio
    async def test_adapters_are_built_from_settings(self):
        settings = Settings(
            _env_file=None,
            rpc_url=RPC_URL,
            explorer_api_url=EXPLORER_URL,
            explorer_api_key="secret",
            webhook_url="https://hooks.example.com/alerts",
        )
        orchestrator = SecurityOrchestrator.from_settings(settings, configure_logging=False)
        try:
            assert isinstance(orchestrator.provider, HttpChainProvider)
            assert orchestrator.provider.rpc_url == RPC_URL
            assert orchestrator.explorer.api_key == "secret"
            assert orchestrator.risk.contract_intel is orchestrator.explorer.registry
            assert isinstance(orchestrator.dispatcher.channel, WebhookNotificationChannel)

            scheduler = SchedulerManager()
            orchestrator.start_monitors(scheduler)
            await scheduler.start()
            try:
                ids = {job["id"] for job in scheduler.get_jobs()}
            finally:
                await scheduler.stop()
            assert {"gas_refresh", "block_sampler", "verification_refresh", "notification_flush"} <= ids
        finally:
            await orchestrator.close()

    @pytest.mark.asyncio
    async def test_optional_endpoints_stay_unset(self):
        settings = Settings(_env_file=None, rpc_url="")
        orchestrator = SecurityOrchestrator.from_settings(settings, configure_logging=False)
        assert orchestrator.provider is None
        assert orchestrator.explorer is None
        assert await orchestrator.refresh_contract_verification() == {}
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_verification_refresh_covers_registered_protocols(self, explorer_transport):
        responses, requests = explorer_transport
        responses[POOL] = (200, {"status": "1", "result": [{"SourceCode": "contract Pool {}"}]})
        settings = Settings(_env_file=None, rpc_url="", explorer_api_url=EXPLORER_URL)
        orchestrator = SecurityOrchestrator.from_settings(settings, configure_logging=False)
        orchestrator.register_protocol(ProtocolConfig(POOL, ProtocolType.LENDING))

        assert await orchestrator.refresh_contract_verification() == {POOL: True}
        assert orchestrator.risk.contract_intel.is_verified(POOL) is True
        assert [r.url.params["address"] for r in requests] == [POOL]

    @pytest.mark.asyncio
    async def test_logging_is_configured_and_released(self, tmp_path, restore_root_logger):
        settings = Settings(_env_file=None, rpc_url="", logs_dir=str(tmp_path / "logs"))
        orchestrator = SecurityOrchestrator.from_settings(settings)
        await orchestrator.close()

        assert (tmp_path / "logs" / "app.jsonl").exists()
        assert (tmp_path / "logs" / "security.jsonl").exists()
        first = json.loads((tmp_path / "logs" / "app.jsonl").read_text().splitlines()[0])
        assert first["message"] == "Logging system initialized"
