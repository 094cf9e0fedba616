"""Reconciliation flow against in-memory store, cache and gateways."""
from __future__ import annotations

import pytest

from app.errors import AmountMismatchError, NotFoundError, ProcessorError, StateConflictError, ValidationError
from app.schemas.orders import OrderStatus, PendingCheckout
from app.services.checkout import CheckoutConfig, CheckoutOrchestrator
from app.services.gateway import FAILED, PENDING, SUCCEEDED, CaptureResult


def _card_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


async def _start(orchestrator, request_factory, **overrides):
    return await orchestrator.create_checkout(request_factory(**overrides))


# ---------- create ----------

@pytest.mark.asyncio
async def test_create_card_checkout_stashes_payload(orchestrator, request_factory, pending, store, card_gateway):
    created = await _start(orchestrator, request_factory)

    assert created.remoteSessionId == "pi_1"
    assert created.clientSecret == "pi_1_secret_x"
    assert created.approvalUrl is None
    assert created.amount == 22.0
    # deferred: nothing persisted before payment
    assert store.orders == {}
    stashed = await pending.get("pi_1")
    assert stashed.amount == 22.0
    assert stashed.correlationId.startswith("chk_")
    call = card_gateway.sessions[0]
    assert call["correlation_id"] == stashed.correlationId
    assert call["shipping_amount"] == 3.0
    assert call["discount_amount"] == 1.0
    assert call["shipping_address"] is None
    assert call["lines"][0].name == "Pommes Gala - 1kg"


@pytest.mark.asyncio
async def test_create_wallet_checkout_returns_approval_url(orchestrator, request_factory, wallet_gateway):
    created = await _start(
        orchestrator,
        request_factory,
        paymentMethod="paypal",
        pickupType="delivery",
        deliveryAddress={"street": "3 rue Neuve", "city": "Lyon", "postalCode": "69001"},
    )
    assert created.paymentMethod == "wallet"
    assert created.approvalUrl == "https://paypal.test/approve?token=PAYPAL_1"
    address = wallet_gateway.sessions[0]["shipping_address"]
    assert address.full_name == "Camille Martin"
    assert address.city == "Lyon"


@pytest.mark.asyncio
async def test_mismatch_creates_nothing(orchestrator, request_factory, pending, store, card_gateway):
    with pytest.raises(AmountMismatchError):
        await _start(orchestrator, request_factory, amount=50.0)
    assert card_gateway.sessions == []
    assert pending.entries == {}
    assert store.orders == {}


@pytest.mark.asyncio
async def test_gateway_failure_stashes_nothing(orchestrator, request_factory, pending, card_gateway):
    card_gateway.create_error = ProcessorError("stripe down")
    with pytest.raises(ProcessorError):
        await _start(orchestrator, request_factory)
    assert pending.entries == {}


@pytest.mark.asyncio
async def test_cash_is_not_a_checkout_method(orchestrator, request_factory):
    with pytest.raises(ValidationError) as exc:
        await _start(orchestrator, request_factory, paymentMethod="cash")
    assert exc.value.field == "paymentMethod"


@pytest.mark.asyncio
async def test_catalog_verification(store, pending, card_gateway, catalog, request_factory):
    orchestrator = CheckoutOrchestrator(
        config=CheckoutConfig(verify_catalog_prices=True),
        orders=store,
        pending=pending,
        gateways={card_gateway.method: card_gateway},
        catalog=catalog,
    )
    await orchestrator.create_checkout(request_factory())

    catalog.prices[("p-apple", "v-1kg")]["price"] = 12.0
    with pytest.raises(ValidationError):
        await orchestrator.create_checkout(request_factory())


# ---------- confirm ----------

@pytest.mark.asyncio
async def test_confirm_creates_one_paid_order(orchestrator, request_factory, pending, store, notifier):
    await _start(orchestrator, request_factory)

    result = await orchestrator.handle_card_event(_card_event("payment_intent.succeeded", {"id": "pi_1"}))
    await orchestrator.wait_for_receipts()

    assert result == "paid"
    assert len(store.orders) == 1
    order = next(iter(store.orders.values()))
    assert order.status == OrderStatus.paid
    assert order.amount == 22.0
    assert order.remoteSessionId == "pi_1"
    assert order.transactionId == "txn_1"
    assert order.delivered is True  # store pickup
    assert "pi_1" not in pending.entries
    assert notifier.sent == [("camille@example.com", order.id)]


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_a_noop(orchestrator, request_factory, store, notifier, card_gateway):
    await _start(orchestrator, request_factory)

    first = await orchestrator.confirm_payment("pi_1", card_gateway.method)
    second = await orchestrator.handle_card_event(
        _card_event("charge.succeeded", {"id": "ch_1", "payment_intent": "pi_1"}, event_id="evt_2")
    )
    await orchestrator.wait_for_receipts()

    assert first.created is True
    assert second == "paid"
    assert len(store.orders) == 1
    assert len(notifier.sent) == 1
    assert card_gateway.captures == ["pi_1"]


@pytest.mark.asyncio
async def test_concurrent_winner_only_sends_receipt(orchestrator, request_factory, store, notifier, card_gateway):
    """The cache entry is still there but another worker already inserted the order."""
    await _start(orchestrator, request_factory)
    first = await orchestrator.confirm_payment("pi_1", card_gateway.method)

    payload = first.order.model_dump()
    await orchestrator.pending.put("pi_1", PendingCheckout(**payload, correlationId="chk_again"))

    again = await orchestrator.confirm_payment("pi_1", card_gateway.method)
    await orchestrator.wait_for_receipts()

    assert again.created is False
    assert again.order_id == first.order_id
    assert len(store.orders) == 1
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_delivery_order_is_not_delivered(orchestrator, request_factory, store, card_gateway):
    await _start(
        orchestrator,
        request_factory,
        pickupType="delivery",
        deliveryAddress={"street": "3 rue Neuve", "city": "Lyon"},
    )
    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)
    assert result.order.delivered is False
    assert result.order.pickupLocation is None


@pytest.mark.asyncio
async def test_orphaned_confirmation_fabricates_nothing(orchestrator, store, card_gateway):
    with pytest.raises(NotFoundError):
        await orchestrator.confirm_payment("pi_unknown", card_gateway.method)
    assert store.orders == {}

    handled = await orchestrator.handle_card_event(_card_event("payment_intent.succeeded", {"id": "pi_unknown"}))
    assert handled == "orphaned"
    assert card_gateway.captures == []


@pytest.mark.asyncio
async def test_cancelled_capture_drops_pending(orchestrator, request_factory, pending, store, card_gateway):
    await _start(orchestrator, request_factory)
    card_gateway.capture_result = CaptureResult(status=FAILED, raw_status="canceled", terminal=True)

    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)

    assert result.status == "failed"
    assert result.order is None
    assert store.orders == {}
    assert pending.entries == {}


@pytest.mark.asyncio
async def test_declined_capture_keeps_pending_for_retry(orchestrator, request_factory, pending, store, card_gateway):
    await _start(orchestrator, request_factory)
    card_gateway.capture_result = CaptureResult(status=FAILED, raw_status="requires_payment_method")

    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)

    assert result.status == "failed"
    assert store.orders == {}
    assert "pi_1" in pending.entries


@pytest.mark.asyncio
async def test_processing_capture_keeps_pending(orchestrator, request_factory, pending, store, card_gateway):
    await _start(orchestrator, request_factory)
    card_gateway.capture_result = CaptureResult(status=PENDING, raw_status="processing")

    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)

    assert result.status == "pending"
    assert store.orders == {}
    assert "pi_1" in pending.entries


@pytest.mark.asyncio
async def test_payment_failed_event_then_retry_creates_order(orchestrator, request_factory, pending, store, notifier):
    await _start(orchestrator, request_factory)

    handled = await orchestrator.handle_card_event(_card_event("payment_intent.payment_failed", {"id": "pi_1"}))
    assert handled == "failed"
    assert "pi_1" in pending.entries

    # the customer pays again on the same intent
    handled = await orchestrator.handle_card_event(
        _card_event("payment_intent.succeeded", {"id": "pi_1"}, event_id="evt_2")
    )
    await orchestrator.wait_for_receipts()

    assert handled == "paid"
    assert len(store.orders) == 1
    assert pending.entries == {}
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_canceled_event_drops_pending(orchestrator, request_factory, pending, store):
    await _start(orchestrator, request_factory)
    handled = await orchestrator.handle_card_event(_card_event("payment_intent.canceled", {"id": "pi_1"}))
    assert handled == "cancelled"
    assert pending.entries == {}
    assert store.orders == {}


@pytest.mark.asyncio
async def test_unknown_events_are_ignored(orchestrator, request_factory, pending, card_gateway):
    await _start(orchestrator, request_factory)
    handled = await orchestrator.handle_card_event(_card_event("customer.created", {"id": "cus_1"}))
    assert handled == "ignored"
    assert "pi_1" in pending.entries
    assert card_gateway.captures == []


@pytest.mark.asyncio
async def test_receipt_failure_keeps_order_paid(orchestrator, request_factory, store, notifier, card_gateway):
    notifier.fail = True
    await _start(orchestrator, request_factory)

    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)
    await orchestrator.wait_for_receipts()

    assert result.status == "paid"
    assert store.orders[result.order_id].status == OrderStatus.paid
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_events_are_journaled(orchestrator, request_factory):
    recorded = []

    class Journal:
        async def record(self, processor, event_type, remote_session_id, event_id=None):
            recorded.append((processor, event_type, remote_session_id, event_id))

    orchestrator.journal = Journal()
    await _start(orchestrator, request_factory)
    await orchestrator.handle_card_event(_card_event("payment_intent.succeeded", {"id": "pi_1"}))

    assert recorded == [("stripe", "payment_intent.succeeded", "pi_1", "evt_1")]


# ---------- wallet capture ----------

async def _start_wallet(orchestrator, request_factory):
    return await _start(orchestrator, request_factory, paymentMethod="wallet")


@pytest.mark.asyncio
async def test_wallet_capture_approved(orchestrator, request_factory, store, wallet_gateway):
    created = await _start_wallet(orchestrator, request_factory)

    out = await orchestrator.capture_wallet(created.remoteSessionId)

    assert out.success is True
    assert out.status == "paid"
    assert store.orders[out.orderId].paymentMethod.value == "wallet"
    assert wallet_gateway.captures == ["PAYPAL_1"]


@pytest.mark.asyncio
async def test_wallet_capture_twice_returns_same_order(orchestrator, request_factory, store, wallet_gateway):
    created = await _start_wallet(orchestrator, request_factory)
    first = await orchestrator.capture_wallet(created.remoteSessionId)
    wallet_gateway.remote_status = "COMPLETED"
    second = await orchestrator.capture_wallet(created.remoteSessionId)

    assert second.success is True
    assert second.orderId == first.orderId
    assert len(store.orders) == 1
    assert wallet_gateway.captures == ["PAYPAL_1"]


@pytest.mark.asyncio
async def test_wallet_completed_but_not_persisted(orchestrator, request_factory, store, wallet_gateway):
    created = await _start_wallet(orchestrator, request_factory)
    wallet_gateway.remote_status = "COMPLETED"

    out = await orchestrator.capture_wallet(created.remoteSessionId)

    assert out.success is True
    assert len(store.orders) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("remote_status,reason", [
    ("CREATED", "not_approved"),
    ("PAYER_ACTION_REQUIRED", "not_approved"),
    ("SAVED", "not_approved"),
    ("VOIDED", "cancelled"),
    ("WEIRD", "unexpected_state"),
])
async def test_wallet_refuses_uncapturable_states(
    orchestrator, request_factory, pending, store, wallet_gateway, remote_status, reason
):
    created = await _start_wallet(orchestrator, request_factory)
    wallet_gateway.remote_status = remote_status

    with pytest.raises(StateConflictError) as exc:
        await orchestrator.capture_wallet(created.remoteSessionId)

    assert exc.value.reason == reason
    assert exc.value.status_code == 422
    assert wallet_gateway.captures == []
    assert store.orders == {}
    # a voided session can never be paid; the others may still be approved
    assert (created.remoteSessionId in pending.entries) == (remote_status != "VOIDED")


@pytest.mark.asyncio
async def test_wallet_capture_declined_can_be_retried(orchestrator, request_factory, pending, store, wallet_gateway):
    created = await _start_wallet(orchestrator, request_factory)
    wallet_gateway.capture_result = CaptureResult(status=FAILED, raw_status="UNPROCESSABLE_ENTITY")

    out = await orchestrator.capture_wallet(created.remoteSessionId)

    assert out.success is False
    assert out.status == "failed"
    assert out.orderId is None
    assert created.remoteSessionId in pending.entries

    # buyer went back to PayPal and approved another funding source
    wallet_gateway.capture_result = CaptureResult(status=SUCCEEDED, transaction_id="CAP_2", raw_status="COMPLETED")
    out = await orchestrator.capture_wallet(created.remoteSessionId)

    assert out.success is True
    assert store.orders[out.orderId].transactionId == "CAP_2"
    assert pending.entries == {}


# ---------- status ----------

@pytest.mark.asyncio
async def test_status(orchestrator, request_factory, card_gateway):
    await _start(orchestrator, request_factory)
    result = await orchestrator.confirm_payment("pi_1", card_gateway.method)

    status = await orchestrator.get_status(result.order_id)

    assert status.status == "paid"
    assert status.amount == 22.0
    assert status.remoteSessionId == "pi_1"
    assert status.delivered is True
    with pytest.raises(NotFoundError):
        await orchestrator.get_status("nope")
