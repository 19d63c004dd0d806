"""
Doublures de test: base en mémoire (FakeStore) et passerelle Stripe (FakeGateway).

FakeStore reproduit le contrat des repositories, y compris les garanties atomiques
(décrément conditionnel, insert de paiement unique, RPC à capacité contrôlée), et
s'installe par monkeypatch sur les modules repository.
"""
import copy
import json
import threading
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import marketplace.checkout.repository as checkout_repo
import marketplace.payments.repository as payments_repo
import marketplace.market_boxes.repository as boxes_repo


class FakeStore:
    def __init__(self):
        self.lock = threading.Lock()
        self.listings: Dict[str, Dict[str, Any]] = {}
        self.offerings: Dict[str, Dict[str, Any]] = {}
        self.verticals: Dict[str, Dict[str, Any]] = {"farmers_market": {"id": "farmers_market", "config": {}}}
        self.cart_items: List[Dict[str, Any]] = []
        self.schedules: Dict[str, Dict[str, Any]] = {}
        self.closed_listings: Dict[str, List[Dict[str, Any]]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.order_items: List[Dict[str, Any]] = []
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: List[Dict[str, Any]] = []
        self.pickups: Dict[str, Dict[str, Any]] = {}
        self.tiers: List[Dict[str, Any]] = []
        self.fail_order_items_insert = False

    # --- seed ---

    def add_listing(self, listing_id: str, *, price_cents: int = 1000, quantity: Optional[int] = 10, markets=None, **extra) -> Dict[str, Any]:
        markets = markets if markets is not None else [{"id": "m1", "name": "Downtown Market", "market_type": "traditional"}]
        row = {
            "id": listing_id,
            "title": extra.pop("title", f"Listing {listing_id}"),
            "price_cents": price_cents,
            "quantity": quantity,
            "status": "published",
            "vertical_id": "farmers_market",
            "vendor_profile_id": "v1",
            "listing_markets": [{"market_id": m["id"], "markets": m} for m in markets],
            **extra,
        }
        self.listings[listing_id] = row
        return row

    def add_offering(self, offering_id: str, *, price_4week_cents: int = 4000, price_8week_cents: Optional[int] = 7500, max_subscribers: Optional[int] = None, **extra) -> Dict[str, Any]:
        row = {
            "id": offering_id,
            "name": extra.pop("name", f"Box {offering_id}"),
            "vendor_profile_id": "v1",
            "vertical_id": "farmers_market",
            "price_4week_cents": price_4week_cents,
            "price_8week_cents": price_8week_cents,
            "active": True,
            "max_subscribers": max_subscribers,
            **extra,
        }
        self.offerings[offering_id] = row
        return row

    def add_pickup(self, pickup_id: str, *, status: str = "scheduled", scheduled_date: Optional[str] = None, subscription: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
        subscription = subscription or self.add_subscription()
        row = {
            "id": pickup_id,
            "subscription_id": subscription["id"],
            "week_number": extra.pop("week_number", 1),
            "scheduled_date": scheduled_date or date.today().isoformat(),
            "status": status,
            "is_extension": False,
            "ready_at": None,
            "picked_up_at": None,
            "missed_at": None,
            "rescheduled_to": None,
            "vendor_notes": None,
            "skip_reason": None,
            "vendor_confirmed_at": None,
            "buyer_confirmed_at": None,
            "confirmation_window_expires_at": None,
            **extra,
        }
        self.pickups[pickup_id] = row
        return row

    def add_subscription(self, *, buyer_user_id: str = "buyer-1", offering_id: str = "box-1", term_weeks: int = 4, **extra) -> Dict[str, Any]:
        if offering_id not in self.offerings:
            self.add_offering(offering_id)
        row = {
            "id": extra.pop("id", f"sub-{uuid.uuid4().hex[:8]}"),
            "buyer_user_id": buyer_user_id,
            "offering_id": offering_id,
            "status": "active",
            "term_weeks": term_weeks,
            "extended_weeks": 0,
            "weeks_completed": 0,
            "start_date": date.today().isoformat(),
            "original_end_date": None,
            "stripe_payment_intent_id": extra.pop("stripe_payment_intent_id", None),
            **extra,
        }
        self.subscriptions.append(row)
        return row

    # --- checkout.repository ---

    def fetch_listings_by_ids(self, ids):
        return [copy.deepcopy(self.listings[str(i)]) for i in ids if str(i) in self.listings]

    def fetch_offerings_by_ids(self, ids):
        return [copy.deepcopy(self.offerings[str(i)]) for i in ids if str(i) in self.offerings]

    def fetch_vertical(self, vertical_id):
        return copy.deepcopy(self.verticals.get(vertical_id))

    def fetch_cart_items(self, user_id, listing_ids):
        ids = {str(i) for i in listing_ids}
        return [dict(ci) for ci in self.cart_items if ci.get("user_id") == user_id and str(ci.get("listing_id")) in ids]

    def fetch_schedule(self, schedule_id):
        return copy.deepcopy(self.schedules.get(schedule_id))

    def count_active_subscriptions(self, offering_id):
        return sum(1 for s in self.subscriptions if s["offering_id"] == offering_id and s["status"] == "active")

    def rpc_is_listing_accepting_orders(self, listing_id):
        return listing_id not in self.closed_listings

    def rpc_get_listing_availability(self, listing_id):
        return list(self.closed_listings.get(listing_id, []))

    def rpc_decrement_inventory(self, listing_id, quantity):
        with self.lock:
            listing = self.listings[listing_id]
            if listing["quantity"] is None:
                return {"ok": True, "remaining": None}
            if listing["quantity"] < quantity:
                return {"ok": False, "remaining": listing["quantity"]}
            listing["quantity"] -= quantity
            return {"ok": True, "remaining": listing["quantity"]}

    def rpc_restore_inventory(self, listing_id, quantity):
        with self.lock:
            listing = self.listings.get(listing_id)
            if listing and listing["quantity"] is not None:
                listing["quantity"] += quantity
            return True

    def insert_order(self, row):
        with self.lock:
            self.orders[row["id"]] = dict(row)
            return dict(row)

    def insert_order_items(self, rows):
        if self.fail_order_items_insert:
            return None
        with self.lock:
            for r in rows:
                self.order_items.append({"cancelled_at": None, **r})
            return rows

    def _items_of(self, order_id):
        return [i for i in self.order_items if i["order_id"] == order_id]

    def fetch_pending_orders(self, buyer_user_id, *, created_after=None, created_before=None):
        out = []
        for o in self.orders.values():
            if o["buyer_user_id"] != buyer_user_id or o["status"] != "pending" or not o.get("stripe_checkout_session_id"):
                continue
            if created_after and o["created_at"] < created_after:
                continue
            if created_before and o["created_at"] >= created_before:
                continue
            out.append({**o, "order_items": [dict(i) for i in self._items_of(o["id"])]})
        return out

    def fetch_expired_pending_orders(self, created_before, limit=100):
        rows = [
            dict(o) for o in self.orders.values()
            if o["status"] == "pending" and o.get("stripe_checkout_session_id") and o["created_at"] < created_before
        ]
        return rows[:limit]

    def fetch_active_order_items(self, order_id):
        return [dict(i) for i in self._items_of(order_id) if not i.get("cancelled_at")]

    def cancel_order_items(self, order_id, reason, cancelled_at, cancelled_by="system"):
        for i in self._items_of(order_id):
            if not i.get("cancelled_at"):
                i.update({"status": "cancelled", "cancelled_at": cancelled_at, "cancelled_by": cancelled_by, "cancellation_reason": reason})
        return True

    def mark_items_reserved(self, order_id, listing_id):
        for i in self._items_of(order_id):
            if i.get("listing_id") == listing_id:
                i["inventory_reserved"] = True
        return True

    def mark_order_cancelled(self, order_id, expected_status="pending"):
        with self.lock:
            order = self.orders.get(order_id)
            if not order or order["status"] != expected_status:
                return False
            order["status"] = "cancelled"
            return True

    def fetch_order(self, order_id):
        order = self.orders.get(order_id)
        return dict(order) if order else None

    # --- payments.repository ---

    def mark_order_paid(self, order_id, paid_at, grace_period_ends_at=None):
        with self.lock:
            order = self.orders.get(order_id)
            if not order or order["status"] != "pending":
                return False
            order.update({"status": "paid", "paid_at": paid_at, "grace_period_ends_at": grace_period_ends_at})
            for i in self._items_of(order_id):
                if i.get("status") == "pending":
                    i["status"] = "paid"
            return True

    def fetch_order_payment(self, order_id):
        for p in self.payments.values():
            if p.get("order_id") == order_id:
                return dict(p)
        return None

    def insert_payment(self, row):
        with self.lock:
            pi = row["stripe_payment_intent_id"]
            if pi in self.payments:
                return payments_repo.PAYMENT_DUPLICATE
            self.payments[pi] = dict(row)
            return payments_repo.PAYMENT_CREATED

    def update_payment_status(self, payment_intent_id, status, paid_at=None):
        if payment_intent_id in self.payments:
            self.payments[payment_intent_id]["status"] = status
        return True

    def rpc_subscribe_market_box(self, *, offering_id, buyer_user_id, payment_intent_id, term_weeks, start_date, price_cents, order_id=None):
        with self.lock:
            for s in self.subscriptions:
                if (s["offering_id"], s["buyer_user_id"], s.get("stripe_payment_intent_id")) == (offering_id, buyer_user_id, payment_intent_id):
                    return {"ok": True, "subscription_id": s["id"], "reason": None}
            cap = (self.offerings.get(offering_id) or {}).get("max_subscribers")
            if cap is not None and self.count_active_subscriptions(offering_id) >= cap:
                return {"ok": False, "subscription_id": None, "reason": "at_capacity"}
            sub = self.add_subscription(
                buyer_user_id=buyer_user_id,
                offering_id=offering_id,
                term_weeks=term_weeks,
                stripe_payment_intent_id=payment_intent_id,
                order_id=order_id,
            )
            return {"ok": True, "subscription_id": sub["id"], "reason": None}

    def activate_tier(self, **kwargs):
        self.tiers.append({"event": "activate", **kwargs})
        return True

    def mirror_subscription(self, stripe_subscription_id, *, status, expires_at=None, downgrade=False):
        self.tiers.append({"event": "mirror", "subscription": stripe_subscription_id, "status": status, "expires_at": expires_at, "downgrade": downgrade})
        return "vendor"

    # --- market_boxes.repository ---

    def _subscription(self, subscription_id):
        for s in self.subscriptions:
            if s["id"] == subscription_id:
                return s
        return None

    def fetch_pickup(self, pickup_id):
        pickup = self.pickups.get(pickup_id)
        if not pickup:
            return None
        sub = dict(self._subscription(pickup["subscription_id"]) or {})
        sub["offering"] = dict(self.offerings.get(sub.get("offering_id")) or {})
        return {**copy.deepcopy(pickup), "subscription": sub}

    def update_pickup(self, pickup_id, updates, expected):
        with self.lock:
            pickup = self.pickups.get(pickup_id)
            if not pickup or any(pickup.get(k) != v for k, v in expected.items()):
                return None
            pickup.update(updates)
            return dict(pickup)

    def rpc_skip_week(self, pickup_id, reason):
        with self.lock:
            pickup = self.pickups[pickup_id]
            if pickup["status"] not in ("scheduled", "ready") or pickup.get("is_extension"):
                return {"rejected": True}
            sub = self._subscription(pickup["subscription_id"])
            pickup.update({"status": "skipped", "skip_reason": reason})
            sub["extended_weeks"] += 1
            siblings = [p for p in self.pickups.values() if p["subscription_id"] == sub["id"]]
            last = max(date.fromisoformat(p["scheduled_date"]) for p in siblings)
            new_id = f"pickup-ext-{uuid.uuid4().hex[:6]}"
            self.pickups[new_id] = {
                **pickup,
                "id": new_id,
                "status": "scheduled",
                "is_extension": True,
                "skip_reason": None,
                "week_number": max(p["week_number"] for p in siblings) + 1,
                "scheduled_date": (last + timedelta(days=7)).isoformat(),
            }
            return {"extension_pickup_id": new_id, "new_scheduled_date": self.pickups[new_id]["scheduled_date"]}

    def fetch_subscription(self, subscription_id):
        sub = self._subscription(subscription_id)
        return dict(sub) if sub else None

    def count_picked_up(self, subscription_id):
        return sum(1 for p in self.pickups.values() if p["subscription_id"] == subscription_id and p["status"] == "picked_up")

    def update_subscription(self, subscription_id, updates):
        sub = self._subscription(subscription_id)
        if sub:
            sub.update(updates)
        return True

    # --- installation ---

    CHECKOUT_FUNCS = (
        "fetch_listings_by_ids", "fetch_offerings_by_ids", "fetch_vertical", "fetch_cart_items",
        "fetch_schedule", "count_active_subscriptions", "rpc_is_listing_accepting_orders",
        "rpc_get_listing_availability", "rpc_decrement_inventory", "rpc_restore_inventory",
        "insert_order", "insert_order_items", "fetch_pending_orders", "fetch_expired_pending_orders",
        "fetch_active_order_items", "cancel_order_items", "mark_order_cancelled", "fetch_order",
        "mark_items_reserved",
    )
    PAYMENTS_FUNCS = (
        "mark_order_paid", "insert_payment", "update_payment_status", "rpc_subscribe_market_box",
        "activate_tier", "mirror_subscription", "fetch_order_payment",
    )
    BOXES_FUNCS = (
        "fetch_pickup", "update_pickup", "rpc_skip_week", "fetch_subscription", "count_picked_up",
        "update_subscription",
    )

    def install(self, monkeypatch) -> "FakeStore":
        for module, names in (
            (checkout_repo, self.CHECKOUT_FUNCS),
            (payments_repo, self.PAYMENTS_FUNCS),
            (boxes_repo, self.BOXES_FUNCS),
        ):
            for name in names:
                monkeypatch.setattr(module, name, getattr(self, name))
        return self


class FakeGateway:
    """Passerelle de paiement en mémoire (sessions, remboursements, signature)."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.created: List[Dict[str, Any]] = []
        self.fail_create = False
        self.events: Dict[str, Dict[str, Any]] = {}
        self._refund_keys = set()

    def create_session(self, *, line_items, success_url, cancel_url, metadata, client_reference_id=None, idempotency_key=None, mode="payment"):
        if self.fail_create:
            raise RuntimeError("stripe unavailable")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "status": "open",
            "payment_status": "unpaid",
            "mode": mode,
            "metadata": dict(metadata),
            "amount_total": sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items),
            "line_items": line_items,
            "idempotency_key": idempotency_key,
        }
        self.sessions[session_id] = session
        self.created.append(session)
        return dict(session)

    def retrieve_session(self, session_id):
        return dict(self.sessions[session_id])

    def refund(self, payment_intent_id, amount_cents=None, reason=None, idempotency_key=None):
        key = idempotency_key or f"refund-{payment_intent_id}-{amount_cents}"
        if key not in self._refund_keys:
            self._refund_keys.add(key)
            self.refunds.append({"payment_intent": payment_intent_id, "amount": amount_cents, "reason": reason})
        return {"id": f"re_{len(self.refunds)}", "status": "succeeded"}

    def verify_signature(self, payload, sig_header):
        if sig_header != "valid":
            raise ValueError("bad signature")
        return json.loads(payload)

    def complete(self, session_id, payment_intent="pi_1"):
        """Simule le paiement d'une session."""
        session = self.sessions[session_id]
        session.update({"status": "complete", "payment_status": "paid", "payment_intent": payment_intent})
        return dict(session)
