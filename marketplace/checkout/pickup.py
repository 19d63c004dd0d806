"""
Résolution du lieu de retrait et instantané (snapshot) figé au moment de l'achat.

Ordre de résolution par ligne:
  1) sélection portée par la requête (marketId / scheduleId / pickupDate)
  2) ligne cart_items enregistrée en base
  3) l'unique marché du listing
Chaque ligne doit aboutir à exactement un marché, sinon le checkout échoue.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from marketplace.errors import CheckoutValidationError

# module marketplace.checkout.pickup
def listing_markets(listing: Dict[str, Any]) -> List[Dict[str, Any]]:
    markets = []
    for lm in listing.get("listing_markets") or []:
        market = lm.get("markets") or {}
        if isinstance(market, list):
            market = market[0] if market else {}
        if market.get("id") or lm.get("market_id"):
            markets.append({**market, "id": market.get("id") or lm.get("market_id")})
    return markets

def _find_cart_item(item: Dict[str, Any], cart_items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if item.get("cart_item_id"):
        for ci in cart_items:
            if str(ci.get("id")) == str(item["cart_item_id"]):
                return ci
    for ci in cart_items:
        if str(ci.get("listing_id")) == str(item["listing_id"]) and ci.get("market_id"):
            return ci
    return None

def resolve_pickup(item: Dict[str, Any], listing: Dict[str, Any], cart_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Retourne {"market": {...}, "schedule_id", "pickup_date"} pour la ligne.
    Lève PICKUP_REQUIRED si aucun marché (ou plusieurs sans sélection) ne peut être retenu.
    """
    markets = listing_markets(listing)
    by_id = {str(m["id"]): m for m in markets}
    title = listing.get("title") or "This item"

    selected = None
    if item.get("market_id"):
        selected = {"market_id": item["market_id"], "schedule_id": item.get("schedule_id"), "pickup_date": item.get("pickup_date")}
    else:
        ci = _find_cart_item(item, cart_items)
        if ci:
            selected = {"market_id": ci.get("market_id"), "schedule_id": ci.get("schedule_id"), "pickup_date": ci.get("pickup_date")}

    if selected:
        market = by_id.get(str(selected["market_id"]))
        if not market:
            raise CheckoutValidationError(
                f'"{title}" is not available at the selected pickup location.',
                code="PICKUP_REQUIRED",
                details={"listingId": listing.get("id")},
            )
        return {"market": market, "schedule_id": selected.get("schedule_id"), "pickup_date": selected.get("pickup_date")}

    if len(markets) == 1:
        return {"market": markets[0], "schedule_id": item.get("schedule_id"), "pickup_date": item.get("pickup_date")}

    if not markets:
        message = f'"{title}" is not available at any markets.'
    else:
        message = f'Please choose a pickup location for "{title}".'
    raise CheckoutValidationError(message, code="PICKUP_REQUIRED", details={"listingId": listing.get("id")})

def build_pickup_snapshot(
    market: Dict[str, Any],
    schedule: Optional[Dict[str, Any]],
    pickup_date: Optional[str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Copie dénormalisée des faits de retrait (marché, horaire, date) au moment de l'achat.
    Une modification ultérieure du marché ne modifie pas une commande passée.
    """
    now = now or datetime.now(timezone.utc)
    snapshot = {
        "market_id": market["id"],
        "market_name": market.get("name"),
        "market_type": market.get("market_type"),
        "address": market.get("address"),
        "city": market.get("city"),
        "state": market.get("state"),
        "timezone": market.get("timezone"),
        "pickup_date": pickup_date,
        "captured_at": now.isoformat(),
    }
    if schedule:
        if schedule.get("market_id") and str(schedule["market_id"]) != str(market["id"]):
            raise ValueError("schedule does not belong to the selected market")
        snapshot.update({
            "schedule_id": schedule.get("id"),
            "day_of_week": schedule.get("day_of_week"),
            "start_time": schedule.get("start_time"),
            "end_time": schedule.get("end_time"),
        })
    return snapshot
