import asyncio
import logging
from datetime import timedelta

import pytest

from models.alert import AlertKind
from models.payment import PaymentMethod, PaymentStatus
from models.payout import PayoutStatus, ReleaseTrigger
from models.webhook import DeliveryUpdate, PaymentCaptured, TransferFailed, UnhandledEvent
from utils.errors import PayoutStateError
from utils.store import InMemoryKeyedStore
from utils.webhooks import event_key, parse_event


def _captured(payment_id="pay_1", amount=100000, vendor_id="vendor_1", order_id=None):
    return {
        "event": "payment.captured",
        "created_at": 1767600000,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "amount": amount,
            "order_id": order_id,
            "notes": {"vendor_id": vendor_id} if vendor_id else [],
        }}},
    }


def _transfer(event, transfer_id, payout_id=None, **extra):
    entity = {"id": transfer_id, "amount": 90000, "notes": {"payout_id": payout_id} if payout_id else []}
    entity.update(extra)
    return {"event": event, "payload": {"transfer": {"entity": entity}}}


def _refund(refund_id="rfnd_1", payment_id="pay_1", amount=100000):
    return {"event": "refund.processed", "payload": {"refund": {"entity": {
        "id": refund_id,
        "payment_id": payment_id,
        "amount": amount,
    }}}}


class YieldingStore(InMemoryKeyedStore):
    """Gives the event loop a turn before every read and write so gathered tasks interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl=None):
        await asyncio.sleep(0)
        return await super().set(key, value, ttl=ttl)

    async def set_if_absent(self, key, value, ttl=None):
        await asyncio.sleep(0)
        return await super().set_if_absent(key, value, ttl=ttl)


class TestParsing:
    def test_payment_captured(self):
        event = parse_event(_captured())
        assert event == PaymentCaptured(
            payment_id="pay_1",
            gateway_order_id=None,
            amount=100000,
            notes={"vendor_id": "vendor_1"},
        )

    def test_empty_notes_list_becomes_dict(self):
        assert parse_event(_captured(vendor_id=None)).notes == {}

    def test_transfer_failed_error_fields(self):
        event = parse_event(_transfer(
            "transfer.failed",
            "trf_1",
            payout_id="po_1",
            error={"code": "GATEWAY_ERROR", "description": "Bank down", "source": "bank", "step": "settlement"},
        ))
        assert isinstance(event, TransferFailed)
        assert event.payout_id == "po_1"
        assert event.error_description == "Bank down"
        assert event.error_source == "bank"

    def test_unknown_event(self):
        assert parse_event({"event": "payout.queued"}) == UnhandledEvent("payout.queued")

    def test_missing_entity_is_unhandled(self):
        assert isinstance(parse_event({"event": "payment.captured", "payload": {}}), UnhandledEvent)

    def test_key_uses_entity_not_delivery(self):
        assert event_key(parse_event(_captured())) == "payment.captured:pay_1"
        assert event_key(UnhandledEvent("ping"), "1767600000") == "ping:1767600000"
        assert event_key(UnhandledEvent("ping")) == "ping:none"

    def test_delivery_key(self):
        assert event_key(DeliveryUpdate(waybill="WB1", status="Delivered")) == "delivery.delivered:WB1"


class TestPaymentEvents:
    def test_capture_creates_payout_once(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            first = await settlement.reconciler.handle(_captured())
            second = await settlement.reconciler.handle(_captured())
            payouts = await settlement.reports.list_vendor_payouts("vendor_1")
            return first, second, payouts

        first, second, payouts = asyncio.run(scenario())
        assert first["status"] == "processed"
        assert first["result"]["payout_status"] == "processing"
        assert second["status"] == "duplicate"
        assert second["key"] == "payment.captured:pay_1"
        assert second["result"] == first["result"]
        assert len(payouts) == 1
        assert len(gateway.transfer_calls) == 1

    def test_capture_for_held_order(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.payments.register_order(
                "order_1", "vendor_1", 100000, hold_until_delivery=True, gateway_order_id="order_gw1"
            )
            return await settlement.reconciler.handle(_captured(order_id="order_gw1", vendor_id=None))

        outcome = asyncio.run(scenario())
        assert outcome["result"]["payout_status"] == "on_hold"
        assert gateway.transfer_calls == []

    def test_failure_after_capture_is_ignored(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            await settlement.reconciler.handle({
                "event": "payment.failed",
                "payload": {"payment": {"entity": {"id": "pay_1", "error_code": "BAD_REQUEST_ERROR"}}},
            })
            return await settlement.payments.payments.get("pay_1")

        assert asyncio.run(scenario()).status == PaymentStatus.CAPTURED

    def test_handler_error_is_alerted_and_recorded(self, settlement):
        async def scenario():
            # vendor has no settlement account, payout creation fails
            outcome = await settlement.reconciler.handle(_captured(vendor_id="vendor_x"))
            alerts = await settlement.reports.admin_alerts(AlertKind.WEBHOOK_PROCESSING_FAILED)
            record = await settlement.reconciler.events.get(outcome["key"])
            return outcome, alerts, record

        outcome, alerts, record = asyncio.run(scenario())
        assert outcome["status"] == "processed"
        assert "AccountNotEligible" in outcome["result"]["error"]
        assert [a.entity_id for a in alerts] == ["payment.captured:pay_1"]
        assert record.status.value == "processed"
        assert record.error is not None

    def test_unhandled_event_is_acknowledged(self, settlement):
        outcome = asyncio.run(settlement.reconciler.handle({"event": "payout.queued", "created_at": 1}))
        assert outcome["status"] == "processed"
        assert outcome["result"] == {"ignored": True, "event": "payout.queued"}


class TestConcurrentCaptures:
    @pytest.fixture
    def store(self, clock):
        return YieldingStore(clock=clock)

    def test_parallel_redeliveries_pay_once(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            redelivered = {**_captured(), "created_at": 1767600999}
            outcomes = await asyncio.gather(
                settlement.reconciler.handle(_captured()),
                settlement.reconciler.handle(redelivered),
            )
            return outcomes, await settlement.reports.list_vendor_payouts("vendor_1")

        outcomes, payouts = asyncio.run(scenario())
        assert sorted(o["status"] for o in outcomes) == ["duplicate", "processed"]
        assert len(payouts) == 1
        assert len(gateway.transfer_calls) == 1

    def test_webhook_racing_direct_capture_pays_once(self, settlement, gateway, verified_vendor):
        gateway.add_payment("pay_1", amount=100000, notes={"vendor_id": "vendor_1"})

        async def scenario():
            await verified_vendor("vendor_1")
            webhook, direct = await asyncio.gather(
                settlement.reconciler.handle(_captured()),
                settlement.payments.capture_payment("pay_1", 100000),
            )
            return webhook, direct, await settlement.reports.list_vendor_payouts("vendor_1")

        webhook, direct, payouts = asyncio.run(scenario())
        assert len(payouts) == 1
        assert webhook["result"]["payout_id"] == payouts[0].id
        assert direct["payout"].id == payouts[0].id
        assert len(gateway.transfer_calls) == 1

    def test_parallel_create_payout_returns_one_record(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            created = await asyncio.gather(*(
                settlement.orchestrator.create_payout("vendor_1", 5000, order_id="o1", payment_id="p1")
                for _ in range(3)
            ))
            stored = [await settlement.orchestrator.get_payout(p.id) for p in created]
            return created, stored

        created, stored = asyncio.run(scenario())
        assert len({p.id for p in created}) == 1
        assert len({p.id for p in stored}) == 1
        assert len(gateway.transfer_calls) == 1


class TestTransferEvents:
    def test_processed_completes_payout(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            outcome = await settlement.reconciler.handle(_transfer("transfer.processed", payout.transfer_reference))
            again = await settlement.reconciler.handle(_transfer("transfer.processed", payout.transfer_reference))
            return outcome, again, await settlement.orchestrator.get_payout(payout.id)

        outcome, again, payout = asyncio.run(scenario())
        assert outcome["result"]["changed"] is True
        assert again["status"] == "duplicate"
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.vendor_notified is True

    def test_failed_schedules_retry(self, settlement, clock, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_transfer(
                "transfer.failed",
                payout.transfer_reference,
                error={"code": "GATEWAY_ERROR", "description": "Beneficiary bank down"},
            ))
            return await settlement.orchestrator.get_payout(payout.id), await settlement.scheduler.queue.queued()

        payout, queued = asyncio.run(scenario())
        assert payout.status == PayoutStatus.FAILED
        assert payout.error_details.code == "GATEWAY_ERROR"
        assert payout.error_message == "Beneficiary bank down"
        assert queued == {payout.id}

    def test_notes_payout_with_other_transfer_is_a_mismatch(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            outcome = await settlement.reconciler.handle(_transfer("transfer.processed", "trf_unknown", payout_id=payout.id))
            alerts = await settlement.reports.admin_alerts(AlertKind.TRANSFER_MISMATCH)
            return payout, outcome, alerts, await settlement.orchestrator.get_payout(payout.id)

        payout, outcome, alerts, stored = asyncio.run(scenario())
        assert outcome["result"]["transfer_mismatch"] is True
        assert outcome["result"]["changed"] is False
        assert stored.status == PayoutStatus.PROCESSING
        assert stored.transfer_reference == payout.transfer_reference
        assert [a.entity_id for a in alerts] == ["trf_unknown"]
        assert alerts[0].details["expected_transfer"] == payout.transfer_reference

    def test_failed_event_for_other_transfer_does_not_requeue(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_transfer("transfer.failed", "trf_stale", payout_id=payout.id))
            clock.advance(minutes=5)
            await settlement.run_due_retries()
            return await settlement.orchestrator.get_payout(payout.id), await settlement.scheduler.queue.queued()

        payout, queued = asyncio.run(scenario())
        assert payout.status == PayoutStatus.PROCESSING
        assert queued == set()
        assert len(gateway.transfer_calls) == 1

    def test_settled_transfer_for_failed_payout_stops_retries(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            outcome = await settlement.reconciler.handle(_transfer("transfer.processed", "trf_ghost", payout_id=payout.id))
            clock.advance(minutes=5)
            summary = await settlement.run_due_retries()
            alerts = await settlement.reports.admin_alerts(AlertKind.TRANSFER_SETTLED_OUTSIDE_PROCESSING)
            return outcome, summary, alerts, await settlement.orchestrator.get_payout(payout.id)

        outcome, summary, alerts, payout = asyncio.run(scenario())
        assert outcome["result"]["reconciliation_required"] is True
        assert summary["retried"] == 0
        assert len(gateway.transfer_calls) == 1
        assert payout.status == PayoutStatus.FAILED
        assert payout.retry_blocked_reason == "settled_at_gateway"
        assert payout.transfer_reference == "trf_ghost"
        assert [a.entity_id for a in alerts] == [payout.id]

    def test_settled_payout_cannot_be_retried_by_hand(self, settlement, gateway, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_transfer("transfer.processed", "trf_ghost", payout_id=payout.id))
            try:
                await settlement.orchestrator.retry_payout(payout.id)
            except PayoutStateError:
                return True
            return False

        assert asyncio.run(scenario()) is True
        assert len(gateway.transfer_calls) == 1

    def test_unknown_transfer(self, settlement):
        outcome = asyncio.run(settlement.reconciler.handle(_transfer("transfer.processed", "trf_missing")))
        assert outcome["result"] == {"payout": "not_found", "transfer_id": "trf_missing"}

    def test_illegal_transition_is_alerted(self, settlement, clock, verified_vendor, caplog):
        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout(
                "vendor_1", 1000, order_id="o1", hold_until=clock() + timedelta(days=1)
            )
            outcome = await settlement.reconciler.handle(_transfer("transfer.processed", "trf_x", payout_id=payout.id))
            alerts = await settlement.reports.admin_alerts(AlertKind.ILLEGAL_TRANSITION)
            return outcome, alerts, await settlement.orchestrator.get_payout(payout.id)

        with caplog.at_level(logging.CRITICAL):
            outcome, alerts, payout = asyncio.run(scenario())
        assert payout.status == PayoutStatus.ON_HOLD
        assert outcome["status"] == "processed"
        assert "Illegal payout transition" in outcome["result"]["error"]
        assert len(alerts) == 1
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_reconcile_pulls_gateway_state(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            gateway.settle_transfer(payout.transfer_reference, "processed")
            result = await settlement.reconciler.reconcile_transfer(payout.id)
            return result, await settlement.orchestrator.get_payout(payout.id)

        result, payout = asyncio.run(scenario())
        assert result["transfer_status"] == "processed"
        assert payout.status == PayoutStatus.COMPLETED

    def test_reconcile_without_transfer(self, settlement, clock, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout(
                "vendor_1", 1000, order_id="o1", hold_until=clock() + timedelta(days=1)
            )
            try:
                await settlement.reconciler.reconcile_transfer(payout.id)
            except PayoutStateError:
                return True
            return False

        assert asyncio.run(scenario()) is True


class TestRefundEvents:
    def test_refund_reverses_completed_payout(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_transfer("transfer.processed", payout.transfer_reference))
            outcome = await settlement.reconciler.handle(_refund())
            return payout, outcome, await settlement.orchestrator.get_payout(payout.id)

        payout, outcome, stored = asyncio.run(scenario())
        assert outcome["result"]["reversed"] == [payout.id]
        assert stored.status == PayoutStatus.REVERSED
        assert len(gateway.reversals) == 1

    def test_refund_while_processing_is_blocked(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            outcome = await settlement.reconciler.handle(_refund())
            alerts = await settlement.reports.admin_alerts(AlertKind.REVERSAL_BLOCKED)
            return payout, outcome, alerts, await settlement.orchestrator.get_payout(payout.id)

        payout, outcome, alerts, stored = asyncio.run(scenario())
        assert outcome["result"]["blocked"] == [payout.id]
        assert stored.status == PayoutStatus.PROCESSING
        assert [a.entity_id for a in alerts] == [payout.id]
        assert gateway.reversals == []

    def test_refund_stops_retry_of_failed_payout(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            outcome = await settlement.reconciler.handle(_refund())
            clock.advance(minutes=5)
            summary = await settlement.run_due_retries()
            return payout, outcome, summary, await settlement.orchestrator.get_payout(payout.id)

        payout, outcome, summary, stored = asyncio.run(scenario())
        assert outcome["result"]["blocked"] == [payout.id]
        assert summary["retried"] == 0
        assert len(gateway.transfer_calls) == 1
        assert stored.status == PayoutStatus.FAILED
        assert stored.retry_blocked_reason == "refunded"

    def test_refund_while_processing_then_transfer_failure_is_final(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_refund())
            await settlement.reconciler.handle(_transfer("transfer.failed", payout.transfer_reference))
            clock.advance(minutes=5)
            await settlement.run_due_retries()
            return await settlement.orchestrator.get_payout(payout.id), await settlement.scheduler.queue.queued()

        payout, queued = asyncio.run(scenario())
        assert payout.status == PayoutStatus.FAILED
        assert payout.next_retry_at is None
        assert queued == set()
        assert len(gateway.transfer_calls) == 1

    def test_refunded_pending_payout_cannot_start(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1", auto_payout_enabled=False)
            await settlement.reconciler.handle(_captured())
            payout = (await settlement.reports.list_vendor_payouts("vendor_1"))[0]
            await settlement.reconciler.handle(_refund())
            try:
                await settlement.orchestrator.initiate_transfer(payout.id)
            except PayoutStateError:
                return payout, True
            return payout, False

        payout, refused = asyncio.run(scenario())
        assert payout.status == PayoutStatus.PENDING
        assert refused is True
        assert gateway.transfer_calls == []

    def test_refund_without_payment_id_is_looked_up(self, settlement, gateway, verified_vendor):
        gateway.add_refund("rfnd_9", payment_id="pay_1", amount=100000)

        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.reconciler.handle(_captured())
            outcome = await settlement.reconciler.handle(_refund(refund_id="rfnd_9", payment_id=None))
            return outcome, await settlement.payments.payments.get("pay_1")

        outcome, payment = asyncio.run(scenario())
        assert outcome["result"]["payment_id"] == "pay_1"
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_amount == 100000


class TestDeliveryEvents:
    def test_delivered_releases_held_payout(self, settlement, gateway, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.payments.register_order(
                "order_1",
                "vendor_1",
                100000,
                customer_id="cust_1",
                hold_until_delivery=True,
                gateway_order_id="order_gw1",
                waybill="WB100",
            )
            await settlement.reconciler.handle(_captured(order_id="order_gw1"))
            outcome = await settlement.reconciler.handle_delivery(DeliveryUpdate(waybill="WB100", status="DELIVERED"))
            again = await settlement.reconciler.handle_delivery(DeliveryUpdate(waybill="WB100", status="DELIVERED"))
            payouts = await settlement.reports.get_order_payouts("order_1")
            return outcome, again, payouts

        outcome, again, payouts = asyncio.run(scenario())
        assert outcome["result"]["released"] == [payouts[0].id]
        assert again["status"] == "duplicate"
        assert payouts[0].status == PayoutStatus.PROCESSING
        assert payouts[0].release_trigger == ReleaseTrigger.DELIVERY_CONFIRMED
        assert len(gateway.transfer_calls) == 1
        # prepaid orders do not feed COD risk
        assert "risk_level" not in outcome["result"]

    def test_cod_outcomes_feed_risk(self, settlement):
        async def scenario():
            await settlement.payments.register_order(
                "order_1", "vendor_1", 50000, customer_id="cust_1", payment_method=PaymentMethod.COD, waybill="WB1"
            )
            await settlement.payments.register_order(
                "order_2", "vendor_1", 50000, customer_id="cust_1", payment_method=PaymentMethod.COD, waybill="WB2"
            )
            await settlement.reconciler.handle_delivery(DeliveryUpdate(waybill="WB1", status="DELIVERED"))
            await settlement.reconciler.handle_delivery(DeliveryUpdate(waybill="WB2", status="RTO"))
            return await settlement.scorer.get_profile("cust_1")

        profile = asyncio.run(scenario())
        assert profile.total_orders == 2
        assert profile.successful_cod_orders == 1
        assert profile.failed_cod_orders == 1
        assert profile.risk_score == 55

    def test_unknown_waybill(self, settlement):
        outcome = asyncio.run(settlement.reconciler.handle_delivery(DeliveryUpdate(waybill="WB404", status="DELIVERED")))
        assert outcome["result"] == {"order": "not_found", "waybill": "WB404"}
