"""
Gardes exécutées avant toute création de commande.

- reap_expired_orders: annule les commandes 'pending' de l'acheteur plus vieilles que
  PENDING_ORDER_TIMEOUT_MINUTES et ayant une session Stripe, puis restaure leur stock.
  Les commandes sans session (flux hors carte) ne sont jamais touchées.
- find_reusable_session: si une commande 'pending' récente a exactement les mêmes lignes
  et que sa session Stripe est encore ouverte, on la réutilise (retour arrière navigateur).
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging

from marketplace import config
from marketplace.checkout import repository
from marketplace.checkout import inventory
from marketplace.checkout.cart import cart_signature, market_box_signature, parse_market_box_items

logger = logging.getLogger(__name__)

CANCELLATION_REASON = "payment not completed"

# module marketplace.checkout.guards
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def cancel_pending_order(order: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """
    Annule une commande 'pending' et restaure son stock.
    - Statut commande conditionnel (pending -> cancelled): une commande payée entre-temps n'est pas touchée.
    - Lignes actives annulées avec la raison "payment not completed".
    - Stock restauré pour chaque ligne décrémentée.
    """
    now = now or _utcnow()
    order_id = str(order["id"])
    if not repository.mark_order_cancelled(order_id):
        return False
    # stock restauré à partir des lignes encore actives, avant leur annulation
    result = inventory.restore_order(order_id)
    repository.cancel_order_items(order_id, CANCELLATION_REASON, now.isoformat())
    if result["failed"]:
        logger.warning("checkout.guards.cancel_pending_order restore failures order_id=%s failed=%s", order_id, result["failed"])
    logger.info("checkout.guards.cancel_pending_order order_id=%s restored=%s", order_id, result["restored"])
    return True

def reap_expired_orders(buyer_user_id: str, now: Optional[datetime] = None) -> int:
    """Annule les commandes 'pending' expirées de l'acheteur. Retourne le nombre annulé."""
    now = now or _utcnow()
    cutoff = now - timedelta(minutes=config.PENDING_ORDER_TIMEOUT_MINUTES)
    expired = repository.fetch_pending_orders(buyer_user_id, created_before=cutoff.isoformat())
    reaped = 0
    for order in expired:
        if not order.get("stripe_checkout_session_id"):
            continue
        if cancel_pending_order(order, now=now):
            reaped += 1
    return reaped

def reap_all_expired_orders(now: Optional[datetime] = None, batch_size: int = 100) -> Dict[str, int]:
    """Balayage global (tâche cron): même annulation, toutes commandes confondues."""
    now = now or _utcnow()
    cutoff = now - timedelta(minutes=config.PENDING_ORDER_TIMEOUT_MINUTES)
    processed = 0
    errors = 0
    for order in repository.fetch_expired_pending_orders(cutoff.isoformat(), limit=batch_size):
        try:
            if cancel_pending_order(order, now=now):
                processed += 1
        except Exception:
            logger.exception("checkout.guards.reap_all_expired_orders failed order_id=%s", order.get("id"))
            errors += 1
    return {"processed": processed, "errors": errors}

def find_reusable_session(
    buyer_user_id: str,
    cart_items: Iterable[Dict[str, Any]],
    gateway,
    market_box_items: Iterable[Dict[str, Any]] = (),
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """
    Cherche une commande 'pending' récente dont les lignes correspondent exactement au panier.
    Les market boxes du panier doivent aussi correspondre à celles portées par la session.
    Retourne {"sessionId", "url", "orderId"} si sa session Stripe est encore 'open', sinon None.
    """
    now = now or _utcnow()
    wanted = cart_signature(cart_items)
    wanted_boxes = market_box_signature(market_box_items)
    if not wanted and not wanted_boxes:
        return None
    since = now - timedelta(minutes=config.DUPLICATE_ORDER_WINDOW_MINUTES)
    candidates = repository.fetch_pending_orders(buyer_user_id, created_after=since.isoformat())
    for order in candidates:
        session_id = order.get("stripe_checkout_session_id")
        if not session_id:
            continue
        if cart_signature(order.get("order_items") or []) != wanted:
            continue
        try:
            session = gateway.retrieve_session(session_id)
        except Exception:
            logger.exception("checkout.guards.find_reusable_session retrieve failed session_id=%s", session_id)
            continue
        session_boxes = parse_market_box_items(((session or {}).get("metadata") or {}).get("market_box_items"))
        if market_box_signature(session_boxes) != wanted_boxes:
            continue
        if (session or {}).get("status") == "open" and session.get("url"):
            logger.info("checkout.guards.find_reusable_session reuse order_id=%s session_id=%s", order.get("id"), session_id)
            return {"sessionId": session_id, "url": session["url"], "orderId": order.get("id")}
    return None
