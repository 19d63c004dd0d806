"""
Orchestrateur de checkout: transforme un panier en session Stripe + commande 'pending'.

États: validating -> session_created -> persisted.
1) Reaper puis garde anti-doublon (peut renvoyer une session existante)
2) Lectures parallèles: listings, offres market box, verticale, panier DB
3) Résolution du retrait par ligne, puis cutoff + stock en parallèle
4) Tarification + minimum de commande, snapshots de retrait (best-effort)
5) Session Stripe créée AVANT toute écriture de commande
6) Insert commande, insert lignes (listings et market boxes), puis réservation de stock
   ligne par ligne; seules les lignes marquées inventory_reserved seront restaurées

Échecs acceptés (saga sans transaction distribuée):
- échec avant 5): lecture pure, rien à compenser
- échec entre 5) et 6): session Stripe orpheline, expire seule
- échec de l'insert des lignes après l'insert commande: checkout en échec, la commande
  'pending' orpheline est annulée plus tard par le Reaper
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from marketplace.checkout import availability
from marketplace.checkout import cart
from marketplace.checkout import guards
from marketplace.checkout import inventory
from marketplace.checkout import pickup
from marketplace.checkout import pricing
from marketplace.checkout import repository
from marketplace.checkout.schemas import CheckoutRequest, MarketBoxCheckoutRequest
from marketplace.errors import CheckoutValidationError, PaymentServiceError, PersistenceError
from marketplace.payments.stripe_client import to_line_items

logger = logging.getLogger(__name__)

# module marketplace.checkout.service
def _minimum_for(vertical: str, vertical_row: Optional[Dict[str, Any]]) -> int:
    cfg = (vertical_row or {}).get("config") or {}
    if cfg.get("minimum_order_cents") is not None:
        return int(cfg["minimum_order_cents"])
    return pricing.minimum_order_cents(vertical)

def _validate_listings(items: List[Dict[str, Any]], listings: List[Dict[str, Any]], vertical: str) -> Dict[str, Dict[str, Any]]:
    by_id = {str(l["id"]): l for l in listings}
    wanted = {str(it["listing_id"]) for it in items}
    if len(by_id) != len(wanted) or not wanted.issubset(by_id):
        raise CheckoutValidationError("Some items in your cart are no longer available.", code="INVALID_ITEMS")
    for listing in listings:
        title = listing.get("title") or "This item"
        if listing.get("status") not in (None, "published"):
            raise CheckoutValidationError(f'"{title}" is no longer available.', code="INVALID_ITEMS", details={"listingId": listing["id"]})
        if listing.get("vertical_id") and listing["vertical_id"] != vertical:
            raise CheckoutValidationError(f'"{title}" belongs to a different marketplace.', code="INVALID_ITEMS", details={"listingId": listing["id"]})
    return by_id

def _validate_offerings(box_items: List[Dict[str, Any]], offerings: List[Dict[str, Any]], vertical: str) -> List[Dict[str, Any]]:
    """Valide les market boxes du panier; retourne les lignes enrichies (price_cents, offering)."""
    by_id = {str(o["id"]): o for o in offerings}
    wanted = {str(it["offering_id"]) for it in box_items}
    if len(by_id) != len(wanted) or not wanted.issubset(by_id):
        raise CheckoutValidationError("Some market boxes in your cart are no longer available.", code="INVALID_ITEMS")
    resolved = []
    for it in box_items:
        offering = by_id[str(it["offering_id"])]
        name = offering.get("name") or "Market box"
        if not offering.get("active"):
            raise CheckoutValidationError(f'"{name}" is not currently offered.', code="OFFERING_INACTIVE", details={"offeringId": offering["id"]})
        if offering.get("vertical_id") and offering["vertical_id"] != vertical:
            raise CheckoutValidationError(f'"{name}" belongs to a different marketplace.', code="INVALID_ITEMS", details={"offeringId": offering["id"]})
        price = cart.offering_price_cents(offering, it["term_weeks"])
        if price is None:
            raise CheckoutValidationError(
                f'"{name}" is not offered as a {it["term_weeks"]}-week term.',
                code="INVALID_ITEMS",
                details={"offeringId": offering["id"]},
            )
        resolved.append({**it, "price_cents": price, "offering": offering})
    return resolved

def _ensure_capacity(offering: Dict[str, Any]) -> None:
    cap = offering.get("max_subscribers")
    if cap is None:
        return
    if repository.count_active_subscriptions(str(offering["id"])) >= int(cap):
        raise CheckoutValidationError(
            f'"{offering.get("name") or "This market box"}" is full.',
            code="OFFERING_FULL",
            details={"offeringId": offering["id"]},
        )

def _check_listing(listing: Dict[str, Any], quantity: int) -> None:
    availability.ensure_accepting(listing)
    inventory.check_stock(listing, quantity)

def _build_snapshot(resolution: Dict[str, Any], now: datetime) -> Optional[Dict[str, Any]]:
    try:
        schedule = repository.fetch_schedule(resolution["schedule_id"]) if resolution.get("schedule_id") else None
        return pickup.build_pickup_snapshot(resolution["market"], schedule, resolution.get("pickup_date"), now=now)
    except Exception:
        logger.exception("checkout.service snapshot failed market_id=%s", (resolution.get("market") or {}).get("id"))
        return None

def _stripe_line_items(lines: List[Dict[str, Any]], order_pricing: pricing.OrderPricing) -> List[Dict[str, Any]]:
    """
    Une ligne Stripe par ligne de commande (montant = sous-total + part acheteur), puis
    le frais fixe et le pourboire: le total Stripe égale exactement le total calculé.
    """
    stripe_items = []
    for line, shares in zip(lines, order_pricing.lines):
        qty = int(line["quantity"])
        name = line["name"] if qty == 1 else f'{line["name"]} (x{qty})'
        stripe_items.append({
            "name": name,
            "description": line.get("description") or "",
            "amount_cents": shares["subtotal_cents"] + shares["buyer_fee_cents"],
            "quantity": 1,
        })
    if order_pricing.flat_fee_cents:
        stripe_items.append({"name": "Service fee", "amount_cents": order_pricing.flat_fee_cents, "quantity": 1})
    if order_pricing.tip_cents:
        stripe_items.append({"name": "Tip", "amount_cents": order_pricing.tip_cents, "quantity": 1})
    return to_line_items(stripe_items)

def _abort_reservation(order_id: str, decremented: List[Dict[str, Any]], now: datetime) -> None:
    """Compensation d'un sur-vente détectée par le décrément atomique: annule et restaure le déjà réservé."""
    repository.mark_order_cancelled(order_id)
    repository.cancel_order_items(order_id, guards.CANCELLATION_REASON, now.isoformat())
    inventory.restore_items(decremented)

async def create_checkout(
    *,
    user: Dict[str, Any],
    payload: CheckoutRequest,
    gateway,
    success_url: str,
    cancel_url: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Crée (ou réutilise) la session de paiement pour le panier de l'acheteur.
    Retour: {"sessionId", "url", "orderId", "orderNumber"} (+ "reused": True si garde anti-doublon).
    Erreurs: CheckoutValidationError (code précis), PaymentServiceError, PersistenceError.
    """
    now = now or datetime.now(timezone.utc)
    buyer_id = str(user.get("id") or "")
    vertical = payload.vertical
    items = [it.model_dump() for it in payload.items]
    box_items = [it.model_dump() for it in payload.market_box_items]
    if not items and not box_items:
        raise CheckoutValidationError("Your cart is empty.", code="EMPTY_CART")

    # validating
    await run_in_threadpool(guards.reap_expired_orders, buyer_id, now)
    reused = await run_in_threadpool(guards.find_reusable_session, buyer_id, items, gateway, box_items, now)
    if reused:
        return {**reused, "reused": True}

    listing_ids = sorted({str(it["listing_id"]) for it in items})
    offering_ids = sorted({str(it["offering_id"]) for it in box_items})
    listings, offerings, vertical_row, cart_rows = await asyncio.gather(
        run_in_threadpool(repository.fetch_listings_by_ids, listing_ids),
        run_in_threadpool(repository.fetch_offerings_by_ids, offering_ids),
        run_in_threadpool(repository.fetch_vertical, vertical),
        run_in_threadpool(repository.fetch_cart_items, buyer_id, listing_ids),
    )
    listings_by_id = _validate_listings(items, listings, vertical) if items else {}
    boxes = _validate_offerings(box_items, offerings, vertical) if box_items else []

    resolutions = [pickup.resolve_pickup(it, listings_by_id[str(it["listing_id"])], cart_rows) for it in items]

    qty_by_listing: Dict[str, int] = {}
    for it in items:
        qty_by_listing[str(it["listing_id"])] = qty_by_listing.get(str(it["listing_id"]), 0) + int(it["quantity"])
    await asyncio.gather(
        *[run_in_threadpool(_check_listing, listings_by_id[lid], qty) for lid, qty in qty_by_listing.items()],
        *[run_in_threadpool(_ensure_capacity, b["offering"]) for b in boxes],
    )

    lines: List[Dict[str, Any]] = []
    for it in items:
        listing = listings_by_id[str(it["listing_id"])]
        lines.append({
            "name": listing.get("title") or "Item",
            "description": listing.get("description") or "",
            "unit_price_cents": int(listing.get("price_cents") or 0),
            "quantity": int(it["quantity"]),
        })
    for b in boxes:
        lines.append({
            "name": f'{b["offering"].get("name") or "Market box"} - {b["term_weeks"]} Week Market Box',
            "description": f'Prepaid {b["term_weeks"]}-week market box',
            "unit_price_cents": b["price_cents"],
            "quantity": 1,
        })
    subtotal = sum(l["unit_price_cents"] * l["quantity"] for l in lines)
    pricing.enforce_minimum(subtotal, vertical, minimum_cents=_minimum_for(vertical, vertical_row))
    tip = pricing.resolve_tip_cents(subtotal, payload.tip_amount_cents, payload.tip_percentage)
    order_pricing = pricing.calculate_order_pricing(lines, tip_cents=tip)

    snapshots = await asyncio.gather(*[run_in_threadpool(_build_snapshot, r, now) for r in resolutions])

    # session_created
    order_id = str(uuid4())
    order_number = cart.generate_order_number(vertical, now)
    metadata = cart.make_order_metadata(
        order_id=order_id,
        order_number=order_number,
        user_id=buyer_id,
        vertical=vertical,
        market_box_items=[
            {"offering_id": b["offering_id"], "term_weeks": b["term_weeks"], "price_cents": b["price_cents"], "start_date": b.get("start_date")}
            for b in boxes
        ],
    )
    try:
        session = await run_in_threadpool(
            gateway.create_session,
            line_items=_stripe_line_items(lines, order_pricing),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            client_reference_id=order_id,
            idempotency_key=f"checkout-{order_id}",
        )
    except Exception:
        logger.exception("checkout.service create_session failed order_id=%s buyer=%s", order_id, buyer_id)
        raise PaymentServiceError("Checkout failed. Please try again.", code="PAYMENT_SESSION_FAILED")
    session_id = session.get("id")
    logger.info("checkout.service state=session_created order_id=%s session_id=%s", order_id, session_id)

    # persisted
    order_row = {
        "id": order_id,
        "order_number": order_number,
        "buyer_user_id": buyer_id,
        "vertical_id": vertical,
        "status": "pending",
        "subtotal_cents": order_pricing.subtotal_cents,
        "platform_fee_cents": order_pricing.platform_fee_cents,
        "total_cents": order_pricing.total_with_tip_cents,
        "tip_cents": order_pricing.tip_cents,
        "stripe_checkout_session_id": session_id,
        "created_at": now.isoformat(),
    }
    if await run_in_threadpool(repository.insert_order, order_row) is None:
        raise PersistenceError("Checkout failed. Please try again.", code="ORDER_CREATE_FAILED")

    item_rows = []
    for it, resolution, snapshot, shares in zip(items, resolutions, snapshots, order_pricing.lines):
        listing = listings_by_id[str(it["listing_id"])]
        row = {
            "id": str(uuid4()),
            "order_id": order_id,
            "listing_id": listing["id"],
            "vendor_profile_id": listing.get("vendor_profile_id"),
            "quantity": int(it["quantity"]),
            "unit_price_cents": int(listing.get("price_cents") or 0),
            "subtotal_cents": shares["subtotal_cents"],
            "platform_fee_cents": shares["platform_fee_cents"],
            "vendor_payout_cents": shares["vendor_payout_cents"],
            "market_id": resolution["market"]["id"],
            "schedule_id": resolution.get("schedule_id"),
            "pickup_date": resolution.get("pickup_date"),
            "status": "pending",
            "inventory_reserved": False,
        }
        if snapshot:
            row["pickup_snapshot"] = snapshot
        item_rows.append(row)
    # market boxes: lignes sans listing (ni stock, ni retrait), montants issus de la même tarification
    for b, shares in zip(boxes, order_pricing.lines[len(items):]):
        item_rows.append({
            "id": str(uuid4()),
            "order_id": order_id,
            "listing_id": None,
            "market_box_offering_id": str(b["offering_id"]),
            "vendor_profile_id": b["offering"].get("vendor_profile_id"),
            "quantity": 1,
            "unit_price_cents": b["price_cents"],
            "subtotal_cents": shares["subtotal_cents"],
            "platform_fee_cents": shares["platform_fee_cents"],
            "vendor_payout_cents": shares["vendor_payout_cents"],
            "term_weeks": int(b["term_weeks"]),
            "start_date": b.get("start_date"),
            "status": "pending",
            "inventory_reserved": False,
        })
    if item_rows and await run_in_threadpool(repository.insert_order_items, item_rows) is None:
        raise PersistenceError("Checkout failed. Please try again.", code="ORDER_ITEMS_FAILED")

    decremented: List[Dict[str, Any]] = []
    for lid, qty in qty_by_listing.items():
        try:
            await run_in_threadpool(inventory.decrement, listings_by_id[lid], qty)
            decremented.append({"listing_id": lid, "quantity": qty})
            if not inventory.is_unlimited(listings_by_id[lid]):
                await run_in_threadpool(repository.mark_items_reserved, order_id, lid)
        except CheckoutValidationError:
            logger.warning("checkout.service oversell prevented order_id=%s listing_id=%s", order_id, lid)
            await run_in_threadpool(_abort_reservation, order_id, decremented, now)
            raise
        except Exception:
            logger.exception("checkout.service decrement failed order_id=%s listing_id=%s", order_id, lid)

    logger.info("checkout.service state=persisted order_id=%s items=%s boxes=%s", order_id, len(items), len(boxes))
    return {"sessionId": session_id, "url": session.get("url"), "orderId": order_id, "orderNumber": order_number}

async def create_market_box_checkout(
    *,
    user: Dict[str, Any],
    payload: MarketBoxCheckoutRequest,
    gateway,
    success_url: str,
    cancel_url: str,
) -> Dict[str, Any]:
    """
    Achat autonome d'une market box: session Stripe 'market_box', aucune commande créée.
    L'abonnement n'est créé qu'au webhook de paiement réussi.
    Clé d'idempotence déterministe: les retentatives retombent sur la même session.
    """
    buyer_id = str(user.get("id") or "")
    item = {"offering_id": payload.offering_id, "term_weeks": payload.term_weeks, "start_date": payload.start_date}
    offerings = await run_in_threadpool(repository.fetch_offerings_by_ids, [payload.offering_id])
    box = _validate_offerings([item], offerings, payload.vertical)[0]
    await run_in_threadpool(_ensure_capacity, box["offering"])

    name = box["offering"].get("name") or "Market box"
    line_items = [{
        "name": f"{name} - {payload.term_weeks} Week Market Box",
        "description": f"Prepaid {payload.term_weeks}-week market box subscription starting {payload.start_date}",
        "amount_cents": box["price_cents"],
        "quantity": 1,
    }]
    try:
        session = await run_in_threadpool(
            gateway.create_session,
            line_items=to_line_items(line_items),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=cart.make_market_box_metadata(
                offering_id=payload.offering_id,
                user_id=buyer_id,
                term_weeks=payload.term_weeks,
                start_date=payload.start_date,
                price_cents=box["price_cents"],
            ),
            client_reference_id=f"market_box_{payload.offering_id}_{buyer_id}",
            idempotency_key=f"market-box-{payload.offering_id}-{buyer_id}-{payload.start_date}",
        )
    except Exception:
        logger.exception("checkout.service market box session failed offering_id=%s buyer=%s", payload.offering_id, buyer_id)
        raise PaymentServiceError("Checkout failed. Please try again.", code="PAYMENT_SESSION_FAILED")
    return {"sessionId": session.get("id"), "url": session.get("url")}
