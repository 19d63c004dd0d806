"""
Logique panier pure (pas de Stripe, pas de DB).
- Clés normalisées des lignes (garde anti-doublon)
- Métadonnées de session Stripe (order_id, market_box_items sérialisés)
- Numéro de commande lisible, généré avant tout appel externe
"""
import json
import random
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from marketplace import config

# module marketplace.checkout.cart
def item_key(listing_id: Any, schedule_id: Any = None, pickup_date: Any = None) -> str:
    """Clé normalisée d'une ligne: listing_id|schedule_id|pickup_date (vides si absents)."""
    return "|".join(str(v or "").strip() for v in (listing_id, schedule_id, pickup_date))

def cart_signature(items: Iterable[Dict[str, Any]]) -> List[Tuple[str, int]]:
    """
    Signature triée [(clé, quantité), ...] d'un ensemble de lignes.
    Accepte les lignes de panier (listing_id/schedule_id/pickup_date) comme les order_items.
    Les lignes annulées et les lignes market box (sans listing) sont ignorées;
    les clés identiques sont agrégées.
    """
    totals: Dict[str, int] = {}
    for it in items or []:
        if it.get("cancelled_at") or not it.get("listing_id"):
            continue
        key = item_key(it.get("listing_id"), it.get("schedule_id"), it.get("pickup_date"))
        totals[key] = totals.get(key, 0) + int(it.get("quantity") or 0)
    return sorted(totals.items())

def generate_order_number(vertical: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Numéro lisible ex: FM-2026-04213 (préfixe par verticale)."""
    now = now or datetime.now(timezone.utc)
    prefix = config.ORDER_NUMBER_PREFIXES.get(vertical or "", "MK")
    return f"{prefix}-{now.year}-{random.randint(0, 99999):05d}"

def serialize_market_box_items(items: Iterable[Dict[str, Any]]) -> str:
    """JSON compact des market boxes du panier, tronqué pour respecter la limite Stripe (500 car./valeur)."""
    payload = [
        {
            "o": str(it["offering_id"]),
            "w": int(it["term_weeks"]),
            "p": int(it["price_cents"]),
            "s": it.get("start_date") or "",
        }
        for it in items or []
    ]
    return json.dumps(payload, separators=(",", ":"))[:500]

def parse_market_box_items(raw: Optional[str]) -> List[Dict[str, Any]]:
    """
    Inverse de serialize_market_box_items. Tolérant aux erreurs: [] si JSON invalide.
    Retour: [{"offering_id", "term_weeks", "price_cents", "start_date"}, ...]
    """
    try:
        data = json.loads(raw) if raw else []
    except Exception:
        data = []
    items: List[Dict[str, Any]] = []
    for it in data if isinstance(data, list) else []:
        if not isinstance(it, dict) or not it.get("o"):
            continue
        items.append({
            "offering_id": str(it["o"]),
            "term_weeks": int(it.get("w") or 4),
            "price_cents": int(it.get("p") or 0),
            "start_date": it.get("s") or None,
        })
    return items

def market_box_signature(items: Iterable[Dict[str, Any]]) -> List[Tuple[str, int]]:
    return sorted((str(it["offering_id"]), int(it["term_weeks"])) for it in items or [])

def make_order_metadata(
    *,
    order_id: str,
    order_number: str,
    user_id: str,
    vertical: str,
    market_box_items: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, str]:
    """Métadonnées Stripe d'une commande classique/mixte."""
    metadata = {
        "type": "order",
        "order_id": order_id,
        "order_number": order_number,
        "user_id": user_id,
        "vertical": vertical,
    }
    if market_box_items:
        metadata["market_box_items"] = serialize_market_box_items(market_box_items)
    return metadata

def make_market_box_metadata(*, offering_id: str, user_id: str, term_weeks: int, start_date: str, price_cents: int) -> Dict[str, str]:
    """Métadonnées Stripe d'un achat market box autonome."""
    return {
        "type": "market_box",
        "offering_id": offering_id,
        "user_id": user_id,
        "term_weeks": str(term_weeks),
        "start_date": start_date,
        "price_cents": str(price_cents),
    }

def offering_price_cents(offering: Dict[str, Any], term_weeks: int) -> Optional[int]:
    """Prix du terme demandé (4 ou 8 semaines); None si le terme n'est pas proposé."""
    key = "price_8week_cents" if int(term_weeks) == 8 else "price_4week_cents"
    value = offering.get(key)
    return int(value) if value is not None else None
