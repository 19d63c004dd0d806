"""
Lecture des métadonnées Stripe (session Checkout ou event webhook).
"""
from typing import Any, Dict, List, Optional

from marketplace.checkout.cart import parse_market_box_items

# module marketplace.payments.metadata
def session_from_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """event.data.object, {} si absent."""
    return ((event or {}).get("data") or {}).get("object") or {}

def session_kind(session: Dict[str, Any]) -> str:
    """
    'subscription' (tier premium), 'market_box' (achat autonome) ou 'order' (commande classique/mixte).
    """
    if (session or {}).get("mode") == "subscription":
        return "subscription"
    meta = (session or {}).get("metadata") or {}
    if meta.get("type") == "market_box":
        return "market_box"
    return "order"

def payment_intent_id(obj: Dict[str, Any]) -> Optional[str]:
    """payment_intent peut être un id ou un objet développé."""
    pi = (obj or {}).get("payment_intent")
    if isinstance(pi, dict):
        return pi.get("id")
    return pi or None

def extract_market_box_purchase(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Achat market box autonome: {"offering_id", "user_id", "term_weeks", "start_date", "price_cents"}.
    None si une clé obligatoire manque.
    """
    meta = (session or {}).get("metadata") or {}
    if not meta.get("offering_id") or not meta.get("user_id"):
        return None
    try:
        term_weeks = int(meta.get("term_weeks") or 4)
        price_cents = int(meta.get("price_cents") or session.get("amount_total") or 0)
    except (TypeError, ValueError):
        return None
    return {
        "offering_id": str(meta["offering_id"]),
        "user_id": str(meta["user_id"]),
        "term_weeks": term_weeks,
        "start_date": meta.get("start_date") or None,
        "price_cents": price_cents,
    }

def extract_order_market_boxes(session: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Market boxes d'une commande mixte (metadata.market_box_items, JSON compact)."""
    meta = (session or {}).get("metadata") or {}
    return parse_market_box_items(meta.get("market_box_items"))

def extract_tier_activation(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Métadonnées d'une session 'subscription': user_id, tier_type (buyer|vendor), tier, billing_cycle.
    """
    meta = (session or {}).get("metadata") or {}
    if not meta.get("user_id"):
        return None
    sub = session.get("subscription")
    return {
        "user_id": str(meta["user_id"]),
        "tier_type": meta.get("tier_type") or "vendor",
        "tier": meta.get("tier") or "premium",
        "billing_cycle": meta.get("billing_cycle") or "monthly",
        "stripe_subscription_id": sub.get("id") if isinstance(sub, dict) else sub,
        "stripe_customer_id": session.get("customer") if not isinstance(session.get("customer"), dict) else session["customer"].get("id"),
    }
