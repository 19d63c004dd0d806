from datetime import datetime, timedelta, timezone

import pytest

from marketplace.checkout.cart import serialize_market_box_items
from marketplace.errors import CheckoutValidationError, ForbiddenError, PaymentServiceError, PersistenceError
from marketplace.payments import service, webhooks
from marketplace.payments.webhooks import WebhookContext
import marketplace.payments.repository as payments_repo

NOW = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)

def _order(store, order_id, buyer="buyer-1", total=2145):
    store.orders[order_id] = {
        "id": order_id,
        "buyer_user_id": buyer,
        "status": "pending",
        "total_cents": total,
        "platform_fee_cents": 260,
        "stripe_checkout_session_id": f"cs_{order_id}",
        "created_at": NOW.isoformat(),
    }

def _session(order_id, pi, buyer="buyer-1", boxes=None, amount=2145):
    metadata = {"type": "order", "order_id": order_id, "user_id": buyer}
    if boxes:
        metadata["market_box_items"] = serialize_market_box_items(boxes)
    return {
        "id": f"cs_{order_id}",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": pi,
        "amount_total": amount,
        "metadata": metadata,
    }

def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}

def _dispatch(event, gateway):
    return webhooks.dispatch(event, WebhookContext(gateway, now=NOW))

BOX = {"offering_id": "box-1", "term_weeks": 4, "price_cents": 4000, "start_date": "2026-10-24"}

def test_replayed_completion_records_one_payment_and_one_subscription(store, gateway):
    store.add_offering("box-1")
    _order(store, "o1")
    event = _event("checkout.session.completed", _session("o1", "pi_1", boxes=[BOX]))

    first = _dispatch(event, gateway)
    replay = _dispatch(event, gateway)

    assert first["subscriptions"] == 1
    assert replay["duplicate"] is True
    assert list(store.payments) == ["pi_1"]
    assert store.payments["pi_1"]["amount_cents"] == 2145
    assert len(store.subscriptions) == 1
    assert store.orders["o1"]["status"] == "paid"

def test_replay_after_fulfilment_does_not_rewind_the_order(store, gateway):
    _order(store, "o1")
    event = _event("checkout.session.completed", _session("o1", "pi_1"))
    _dispatch(event, gateway)
    paid_at = store.orders["o1"]["paid_at"]
    store.orders["o1"]["status"] = "fulfilled"

    replay = webhooks.dispatch(event, WebhookContext(gateway, now=NOW + timedelta(hours=2)))

    assert replay["duplicate"] is True
    assert store.orders["o1"]["status"] == "fulfilled"
    assert store.orders["o1"]["paid_at"] == paid_at
    assert gateway.refunds == []

def test_payment_for_cancelled_order_is_refunded_in_full(store, gateway):
    store.add_offering("box-1")
    _order(store, "o1")
    store.orders["o1"]["status"] = "cancelled"
    event = _event("checkout.session.completed", _session("o1", "pi_1", boxes=[BOX]))

    first = _dispatch(event, gateway)
    replay = _dispatch(event, gateway)

    assert first["lateRefund"] is True
    assert replay["duplicate"] is True
    assert store.orders["o1"]["status"] == "cancelled"
    assert gateway.refunds == [{"payment_intent": "pi_1", "amount": None, "reason": "Order expired before payment"}]
    assert store.payments["pi_1"]["status"] == "refunded"
    assert store.subscriptions == []

def test_failed_late_refund_asks_for_retry(store, gateway, monkeypatch):
    _order(store, "o1")
    store.orders["o1"]["status"] = "cancelled"

    def refund_down(*args, **kwargs):
        raise RuntimeError("stripe down")

    monkeypatch.setattr(gateway, "refund", refund_down)
    with pytest.raises(PaymentServiceError):
        _dispatch(_event("checkout.session.completed", _session("o1", "pi_1")), gateway)
    assert store.payments == {}

def test_no_subscription_exists_before_payment(store, gateway):
    store.add_offering("box-1")
    _order(store, "o1")
    assert store.subscriptions == []
    _dispatch(_event("checkout.session.completed", _session("o1", "pi_1", boxes=[BOX])), gateway)
    [sub] = store.subscriptions
    assert sub["stripe_payment_intent_id"] == "pi_1"
    assert sub["order_id"] == "o1"

def test_overflowing_box_is_refunded_without_subscription(store, gateway):
    store.add_offering("box-1", max_subscribers=2)
    store.add_subscription(buyer_user_id="early-bird", offering_id="box-1")
    _order(store, "o2", buyer="buyer-2")
    _order(store, "o3", buyer="buyer-3")

    _dispatch(_event("checkout.session.completed", _session("o2", "pi_2", buyer="buyer-2", boxes=[BOX])), gateway)
    late = _dispatch(_event("checkout.session.completed", _session("o3", "pi_3", buyer="buyer-3", boxes=[BOX]), "evt_3"), gateway)

    assert late == {"status": "ok", "orderId": "o3", "subscriptions": 0, "refunded": 1}
    assert gateway.refunds == [{"payment_intent": "pi_3", "amount": 4000, "reason": "Market box at capacity"}]
    assert [s["buyer_user_id"] for s in store.subscriptions] == ["early-bird", "buyer-2"]
    # le reste de la commande reste payé
    assert store.orders["o3"]["status"] == "paid"

def test_refund_is_not_repeated_on_replay(store, gateway):
    store.add_offering("box-1", max_subscribers=0)
    for _ in range(2):
        service.grant_market_box(
            gateway,
            offering_id="box-1",
            buyer_user_id="buyer-1",
            payment_intent_id="pi_1",
            term_weeks=4,
            start_date=None,
            price_cents=4000,
        )
    assert len(gateway.refunds) == 1

def test_payment_insert_failure_asks_for_retry(store, gateway, monkeypatch):
    _order(store, "o1")
    monkeypatch.setattr(payments_repo, "insert_payment", lambda row: None)
    with pytest.raises(PersistenceError):
        _dispatch(_event("checkout.session.completed", _session("o1", "pi_1")), gateway)

def test_standalone_market_box_purchase(store, gateway):
    store.add_offering("box-1")
    session = {
        "id": "cs_box",
        "mode": "payment",
        "payment_intent": "pi_box",
        "amount_total": 7500,
        "metadata": {
            "type": "market_box",
            "offering_id": "box-1",
            "user_id": "buyer-1",
            "term_weeks": "8",
            "start_date": "2026-10-24",
            "price_cents": "7500",
        },
    }
    assert _dispatch(_event("checkout.session.completed", session), gateway) == {"status": "ok", "marketBox": "created"}
    assert _dispatch(_event("checkout.session.completed", session), gateway)["marketBox"] == "created"
    [sub] = store.subscriptions
    assert sub["term_weeks"] == 8

def test_tier_lifecycle(store, gateway):
    session = {
        "id": "cs_sub",
        "mode": "subscription",
        "subscription": "sub_1",
        "customer": "cus_1",
        "metadata": {"user_id": "vendor-user", "tier_type": "vendor", "tier": "premium", "billing_cycle": "annual"},
    }
    assert _dispatch(_event("checkout.session.completed", session), gateway)["tier"] == "premium"
    _dispatch(_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}), gateway)
    _dispatch(_event("customer.subscription.deleted", {"id": "sub_1"}), gateway)

    activation, failed, deleted = store.tiers
    assert activation["stripe_subscription_id"] == "sub_1"
    assert activation["billing_cycle"] == "annual"
    assert failed["status"] == "past_due" and failed["downgrade"] is False
    assert deleted["status"] == "cancelled" and deleted["downgrade"] is True

def test_subscription_update_mirrors_period_end(store, gateway):
    _dispatch(_event("customer.subscription.updated", {"id": "sub_1", "status": "active", "current_period_end": 1792281600}), gateway)
    [mirror] = store.tiers
    assert mirror["expires_at"].startswith("2026-10-18")

def test_payment_intent_events_update_status(store, gateway):
    store.payments["pi_1"] = {"stripe_payment_intent_id": "pi_1", "status": "pending"}
    _dispatch(_event("payment_intent.payment_failed", {"id": "pi_1"}), gateway)
    assert store.payments["pi_1"]["status"] == "failed"
    _dispatch(_event("payment_intent.succeeded", {"id": "pi_1"}), gateway)
    assert store.payments["pi_1"]["status"] == "succeeded"

def test_unknown_event_is_ignored(store, gateway):
    assert _dispatch(_event("charge.dispute.created", {"id": "dp_1"}), gateway) == {"status": "ignored"}

def test_success_route_and_webhook_share_one_payment(store, gateway):
    store.add_offering("box-1")
    _order(store, "o1")
    gateway.sessions["cs_o1"] = _session("o1", "pi_1", boxes=[BOX])

    by_route = service.confirm_session_by_id("cs_o1", "buyer-1", gateway, now=NOW)
    by_webhook = _dispatch(_event("checkout.session.completed", gateway.sessions["cs_o1"]), gateway)

    assert by_route["subscriptions"] == 1
    assert by_webhook["duplicate"] is True
    assert len(store.payments) == 1
    assert len(store.subscriptions) == 1

def test_success_route_checks_payment_and_owner(store, gateway):
    _order(store, "o1")
    gateway.sessions["cs_o1"] = {**_session("o1", "pi_1"), "payment_status": "unpaid"}
    with pytest.raises(CheckoutValidationError) as out:
        service.confirm_session_by_id("cs_o1", "buyer-1", gateway)
    assert out.value.code == "PAYMENT_NOT_COMPLETED"

    gateway.sessions["cs_o1"]["payment_status"] = "paid"
    with pytest.raises(ForbiddenError):
        service.confirm_session_by_id("cs_o1", "intruder", gateway)
    assert store.payments == {}

def _paid_order_with_stock(store, gateway, quantity=2):
    store.add_listing("L1", quantity=3)
    _order(store, "o1")
    store.order_items.append({
        "id": "o1-i1",
        "order_id": "o1",
        "listing_id": "L1",
        "quantity": quantity,
        "status": "pending",
        "cancelled_at": None,
        "inventory_reserved": True,
    })
    _dispatch(_event("checkout.session.completed", _session("o1", "pi_1")), gateway)

def test_buyer_cancels_within_grace_period(store, gateway):
    _paid_order_with_stock(store, gateway)

    result = service.cancel_paid_order("o1", "buyer-1", gateway, now=NOW + timedelta(minutes=30))

    assert result["status"] == "cancelled"
    assert result["refundAmountCents"] == 2145
    assert store.orders["o1"]["status"] == "cancelled"
    [item] = store.order_items
    assert item["status"] == "cancelled"
    assert item["cancelled_by"] == "buyer"
    assert store.listings["L1"]["quantity"] == 5
    assert gateway.refunds == [{"payment_intent": "pi_1", "amount": None, "reason": "Cancelled by buyer"}]
    assert store.payments["pi_1"]["status"] == "refunded"

    # rejouer la confirmation Stripe ne rembourse pas une seconde fois
    replay = _dispatch(_event("checkout.session.completed", _session("o1", "pi_1")), gateway)
    assert replay["duplicate"] is True
    assert len(gateway.refunds) == 1

def test_buyer_cancel_after_grace_period_is_refused(store, gateway):
    _paid_order_with_stock(store, gateway)
    with pytest.raises(CheckoutValidationError) as out:
        service.cancel_paid_order("o1", "buyer-1", gateway, now=NOW + timedelta(minutes=61))
    assert out.value.code == "GRACE_PERIOD_EXPIRED"
    assert store.orders["o1"]["status"] == "paid"
    assert gateway.refunds == []

def test_buyer_cancel_checks_owner_and_status(store, gateway):
    _paid_order_with_stock(store, gateway)
    with pytest.raises(ForbiddenError):
        service.cancel_paid_order("o1", "intruder", gateway, now=NOW)

    service.cancel_paid_order("o1", "buyer-1", gateway, now=NOW)
    with pytest.raises(CheckoutValidationError) as out:
        service.cancel_paid_order("o1", "buyer-1", gateway, now=NOW)
    assert out.value.code == "ORDER_NOT_CANCELLABLE"
    assert store.listings["L1"]["quantity"] == 5
    assert len(gateway.refunds) == 1

def test_failed_paid_flip_asks_for_retry(store, gateway, monkeypatch):
    _order(store, "o1")
    monkeypatch.setattr(payments_repo, "mark_order_paid", lambda order_id, paid_at, grace_period_ends_at=None: False)
    with pytest.raises(PersistenceError) as out:
        _dispatch(_event("checkout.session.completed", _session("o1", "pi_1")), gateway)
    assert out.value.code == "ORDER_UPDATE_FAILED"
    assert store.payments == {}
