"""
Tests for the emergency response dispatcher.
"""

from __future__ import annotations

import sys
import threading
import time
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from txguard.core.exceptions import UnknownAlertError
from txguard.monitoring.emergency import (
    AlertCategory,
    BlockAddress,
    BroadcastAlert,
    EmergencyAlert,
    EmergencyContact,
    EmergencyDispatcher,
    EmergencyLevel,
    EmergencyProcedure,
    EmergencyWithdraw,
    FlashCrash,
    FreezeAssets,
    HedgeExposure,
    LoggingExecutionGateway,
    LoggingNotificationChannel,
    NotifyAdmins,
    OracleManipulation,
    PauseProtocol,
    PriceDrop,
    SmartContractExploit,
    UpdateDashboard,
    WebhookNotificationChannel,
)

PROTOCOL = "0x3d9819210a31b4961b30ef54be2aed79b9c9cd3b"
ATTACKER = "0x2222222222222222222222222222222222222222"
TREASURY = "0x4444444444444444444444444444444444444444"


class SlowGateway(LoggingExecutionGateway):
    """Gateway that holds each submission long enough for callers to overlap."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def submit(self, action, alert):
        time.sleep(self.delay)
        return super().submit(action, alert)


@pytest.fixture
def controls():
    return Mock()


@pytest.fixture
def channel():
    return LoggingNotificationChannel()


@pytest.fixture
def gateway():
    return LoggingExecutionGateway()


@pytest.fixture
def dispatcher(settings, clock, controls, channel, gateway):
    return EmergencyDispatcher(
        settings, controls=controls, gateway=gateway, channel=channel, clock=clock, install_defaults=False
    )


def exploit_alert(level=EmergencyLevel.CRITICAL, **kwargs):
    return EmergencyAlert.create(
        level,
        "Exploit in progress",
        category=AlertCategory.SMART_CONTRACT_EXPLOIT,
        affected_addresses=[ATTACKER],
        affected_protocols=[PROTOCOL],
        **kwargs,
    )


def exploit_procedure(actions, **kwargs):
    return EmergencyProcedure(
        name="exploit",
        trigger_conditions=[SmartContractExploit()],
        automatic_actions=actions,
        **kwargs,
    )


class TestTriggering:

    def test_matching_procedure_runs_every_action(self, dispatcher, controls):
        dispatcher.register_procedure(exploit_procedure([PauseProtocol(), BlockAddress()]))
        record = dispatcher.trigger_alert(exploit_alert())

        controls.pause_protocol.assert_called_once_with(PROTOCOL)
        controls.block_address.assert_called_once_with(ATTACKER)
        assert record.procedures == ("exploit",)
        assert record.effectiveness_score == pytest.approx(1.0)

    def test_failing_action_does_not_stop_the_rest(self, dispatcher, controls):
        controls.pause_protocol.side_effect = RuntimeError("rpc unavailable")
        dispatcher.register_procedure(exploit_procedure([PauseProtocol(), FreezeAssets(), UpdateDashboard("x")]))
        alert = exploit_alert()
        record = dispatcher.trigger_alert(alert)

        assert [o.success for o in record.outcomes] == [False, True, True]
        controls.freeze_address.assert_called_once_with(ATTACKER)
        assert record.effectiveness_score == pytest.approx(2 / 3)
        assert any("rpc unavailable" in item for item in alert.actions_required)
        assert len(alert.actions_taken) == 2

    def test_shared_action_runs_once(self, dispatcher, controls):
        dispatcher.register_procedure(exploit_procedure([PauseProtocol(), BlockAddress()]))
        dispatcher.register_procedure(EmergencyProcedure(
            name="exploit-followup",
            trigger_conditions=[SmartContractExploit()],
            automatic_actions=[BlockAddress(), FreezeAssets()],
        ))
        record = dispatcher.trigger_alert(exploit_alert())

        controls.block_address.assert_called_once_with(ATTACKER)
        controls.freeze_address.assert_called_once_with(ATTACKER)
        assert [o.action for o in record.outcomes] == [PauseProtocol(), BlockAddress(), FreezeAssets()]
        assert [o.procedure for o in record.outcomes] == ["exploit", "exploit", "exploit-followup"]

    def test_warning_alerts_do_not_run_procedures(self, dispatcher, controls):
        dispatcher.register_procedure(exploit_procedure([PauseProtocol()]))
        record = dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.WARNING))
        assert record.procedures == ()
        controls.pause_protocol.assert_not_called()
        assert dispatcher.get_alert(record.alert_id) is not None

    def test_auto_response_can_be_disabled(self, dispatcher, controls):
        dispatcher.register_procedure(exploit_procedure([PauseProtocol()]))
        dispatcher.set_auto_response(False)
        dispatcher.trigger_alert(exploit_alert())
        controls.pause_protocol.assert_not_called()

    def test_procedure_cooldown(self, dispatcher, controls, clock):
        dispatcher.register_procedure(exploit_procedure([PauseProtocol()], cooldown_period=timedelta(minutes=5)))
        dispatcher.trigger_alert(exploit_alert())
        dispatcher.trigger_alert(exploit_alert())
        assert controls.pause_protocol.call_count == 1
        clock.advance(minutes=5, seconds=1)
        dispatcher.trigger_alert(exploit_alert())
        assert controls.pause_protocol.call_count == 2

    def test_missing_controls_are_recorded_as_failures(self, settings, clock):
        dispatcher = EmergencyDispatcher(settings, clock=clock, install_defaults=False)
        dispatcher.register_procedure(exploit_procedure([PauseProtocol()]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert not record.outcomes[0].success


class TestConditions:

    def test_metric_thresholds(self):
        alert = EmergencyAlert.create(
            EmergencyLevel.CRITICAL, "crash", category=AlertCategory.FLASH_CRASH, metrics={"volatility": 0.25}
        )
        assert FlashCrash(volatility_threshold=0.2).matches(alert)
        assert not FlashCrash(volatility_threshold=0.3).matches(alert)
        assert not OracleManipulation(deviation_threshold=0.1).matches(alert)

    def test_missing_metric_does_not_match(self):
        alert = EmergencyAlert.create(EmergencyLevel.CRITICAL, "crash", category=AlertCategory.FLASH_CRASH)
        assert not FlashCrash().matches(alert)

    def test_address_filter(self):
        alert = EmergencyAlert.create(
            EmergencyLevel.CRITICAL, "drop", category=AlertCategory.PRICE_DROP,
            affected_addresses=[TREASURY], metrics={"price_drop": 0.3},
        )
        assert PriceDrop(percentage=0.2, token=TREASURY.upper()).matches(alert)
        assert not PriceDrop(percentage=0.2, token=ATTACKER).matches(alert)


class TestFinancialActions:

    def test_withdraw_above_cap_fails(self, dispatcher, gateway):
        dispatcher.register_procedure(exploit_procedure(
            [EmergencyWithdraw(PROTOCOL, TREASURY, Decimal("500"))],
            max_auto_response_value=Decimal("100"),
        ))
        record = dispatcher.trigger_alert(exploit_alert())
        assert not record.outcomes[0].success
        assert gateway.requests == []

    def test_withdraw_needs_sufficient_funds(self, dispatcher, gateway):
        dispatcher.set_emergency_funds(PROTOCOL, Decimal("50"))
        dispatcher.register_procedure(exploit_procedure([EmergencyWithdraw(PROTOCOL, TREASURY, Decimal("80"))]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert not record.outcomes[0].success
        assert "Insufficient" in record.outcomes[0].detail

    def test_withdraw_debits_funds(self, dispatcher, gateway):
        dispatcher.set_emergency_funds(PROTOCOL, Decimal("100"))
        dispatcher.register_procedure(exploit_procedure([EmergencyWithdraw(PROTOCOL, TREASURY, Decimal("60"))]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert record.outcomes[0].success
        assert dispatcher.emergency_funds(PROTOCOL) == Decimal("40")

    def test_failed_submission_refunds(self, settings, clock):
        gateway = Mock()
        gateway.submit.side_effect = RuntimeError("gateway offline")
        dispatcher = EmergencyDispatcher(settings, gateway=gateway, clock=clock, install_defaults=False)
        dispatcher.set_emergency_funds(PROTOCOL, Decimal("100"))
        dispatcher.register_procedure(exploit_procedure([EmergencyWithdraw(PROTOCOL, TREASURY, Decimal("60"))]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert not record.outcomes[0].success
        assert dispatcher.emergency_funds(PROTOCOL) == Decimal("100")

    def test_concurrent_withdrawals_never_overdraw(self, settings, clock):
        gateway = SlowGateway(delay=0.2)
        dispatcher = EmergencyDispatcher(settings, gateway=gateway, clock=clock, install_defaults=False)
        dispatcher.set_emergency_funds(PROTOCOL, Decimal("100"))
        dispatcher.register_procedure(exploit_procedure(
            [EmergencyWithdraw(PROTOCOL, TREASURY, Decimal("60"))], cooldown_period=timedelta(0)
        ))

        records = []
        threads = [
            threading.Thread(target=lambda: records.append(dispatcher.trigger_alert(exploit_alert())))
            for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        assert len(records) == 2
        assert len(gateway.requests) == 1
        assert dispatcher.emergency_funds(PROTOCOL) == Decimal("40")
        assert sorted(r.outcomes[0].success for r in records) == [False, True]

    def test_hedge_goes_to_gateway(self, dispatcher, gateway):
        dispatcher.register_procedure(exploit_procedure([HedgeExposure(Decimal("10"))]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert record.outcomes[0].success
        assert len(gateway.requests) == 1


class TestNotifications:

    def test_contacts_notified_in_priority_order(self, dispatcher, channel):
        dispatcher.add_contact(EmergencyContact("ops", "operator", "ops@example.com", notification_priority=2))
        dispatcher.add_contact(EmergencyContact("lead", "admin", "lead@example.com", notification_priority=1))
        record = dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.WARNING))
        assert record.notified == ("lead", "ops")
        assert [name for name, _ in channel.delivered] == ["lead", "ops"]

    def test_escalation_chain_is_appended(self, dispatcher):
        dispatcher.add_contact(EmergencyContact("lead", "admin", "lead@example.com"))
        dispatcher.register_procedure(exploit_procedure([NotifyAdmins("exploit")], escalation_chain=["ciso"]))
        record = dispatcher.trigger_alert(exploit_alert())
        assert record.notified == ("lead", "ciso")

    def test_failing_channel_is_tolerated(self, settings, clock):
        channel = Mock()
        channel.deliver.side_effect = RuntimeError("smtp down")
        dispatcher = EmergencyDispatcher(settings, channel=channel, clock=clock, install_defaults=False)
        dispatcher.add_contact(EmergencyContact("lead", "admin", "lead@example.com"))
        record = dispatcher.trigger_alert(exploit_alert())
        assert record.notified == ()

    def test_broadcast(self, dispatcher, channel):
        dispatcher.register_procedure(exploit_procedure([BroadcastAlert()]))
        alert = exploit_alert()
        dispatcher.trigger_alert(alert)
        assert channel.broadcasts == [alert.id]


class TestResourceBreakers:

    def test_severe_alert_trips_registered_resources(self, dispatcher, clock, settings):
        dispatcher.register_resource(PROTOCOL)
        assert not dispatcher.is_resource_blocked(PROTOCOL)
        dispatcher.trigger_alert(exploit_alert())
        assert dispatcher.is_resource_blocked(PROTOCOL)
        assert not dispatcher.is_resource_blocked(ATTACKER)

        clock.advance(seconds=settings.resource_breaker_cooldown_seconds + 1)
        assert not dispatcher.is_resource_blocked(PROTOCOL)

    def test_warning_does_not_trip(self, dispatcher):
        dispatcher.register_resource(PROTOCOL)
        dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.WARNING))
        assert not dispatcher.is_resource_blocked(PROTOCOL)


class TestResolution:

    def test_resolve_archives_alert(self, dispatcher, clock):
        alert = exploit_alert()
        dispatcher.trigger_alert(alert)
        clock.advance(minutes=3)
        resolved = dispatcher.resolve_alert(alert.id, "patched")

        assert resolved.resolved_at == clock()
        assert resolved.resolution_note == "patched"
        assert dispatcher.get_active_alerts() == []
        assert dispatcher.get_archived_alerts() == [alert]
        assert dispatcher.get_response_history()[-1].effectiveness_score == 1.0

    def test_unknown_alert_raises(self, dispatcher):
        with pytest.raises(UnknownAlertError):
            dispatcher.resolve_alert("alert-missing", "")

    def test_statistics(self, dispatcher):
        dispatcher.register_resource(PROTOCOL)
        dispatcher.trigger_alert(exploit_alert())
        dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.INFO))
        stats = dispatcher.get_statistics()
        assert stats["active_alerts"] == 2
        assert stats["critical_alerts"] == 1
        assert stats["info_alerts"] == 1
        assert stats["active_circuit_breakers"] == 1
        assert stats["total_incidents"] == 2

    def test_active_alerts_sorted_by_level(self, dispatcher):
        dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.INFO))
        dispatcher.trigger_alert(exploit_alert(level=EmergencyLevel.EMERGENCY))
        assert dispatcher.highest_active_level() == EmergencyLevel.EMERGENCY


class TestDefaults:

    def test_default_procedures_installed(self, settings, clock):
        dispatcher = EmergencyDispatcher(settings, clock=clock)
        assert "oracle_manipulation" in dispatcher.procedures()
        assert "flash_crash" in dispatcher.procedures()


class TestWebhookChannel:

    @pytest.mark.asyncio
    async def test_flush_requeues_failures(self, monkeypatch):
        import httpx

        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500 if len(calls) == 1 else 200)

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            kwargs["transport"] = transport
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)

        channel = WebhookNotificationChannel("https://hooks.example.com/alerts")
        alert = exploit_alert()
        channel.deliver(EmergencyContact("lead", "admin", "lead@example.com"), alert, "msg")
        channel.broadcast(alert)
        assert channel.pending == 2

        assert await channel.flush() == 1
        assert channel.pending == 1
        assert await channel.flush() == 1
        assert channel.pending == 0
