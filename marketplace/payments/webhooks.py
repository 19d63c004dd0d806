"""
Traitement des events Stripe (livraison "au moins une fois").

Table de dispatch {type d'event: handler(obj, ctx)}; chaque handler reçoit data.object et un
WebhookContext (passerelle pour les remboursements, horloge). Les types inconnus sont ignorés.
Les échecs métier (market box complète...) sont compensés et logués, jamais renvoyés à Stripe.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from . import metadata as meta
from . import repository
from . import service

logger = logging.getLogger(__name__)


class WebhookContext:
    """Capacités injectées dans les handlers."""

    def __init__(self, gateway, now: Optional[datetime] = None):
        self.gateway = gateway
        self.now = now or datetime.now(timezone.utc)


# module marketplace.payments.webhooks
def _ts_to_iso(ts: Any) -> Optional[str]:
    """Timestamp Stripe (secondes epoch) -> ISO-8601 UTC."""
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None

def _subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    sub = (obj or {}).get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    return sub or None

def handle_checkout_completed(session: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    kind = meta.session_kind(session)
    if kind == "subscription":
        activation = meta.extract_tier_activation(session)
        if not activation:
            logger.warning("payments.webhooks subscription session without user_id session_id=%s", session.get("id"))
            return {"status": "ignored"}
        repository.activate_tier(expires_at=None, **activation)
        return {"status": "ok", "tier": activation["tier"], "tierType": activation["tier_type"]}
    if kind == "market_box":
        return service.record_market_box_purchase(session, ctx.gateway)
    return service.record_order_payment(session, ctx.gateway, now=ctx.now)

def handle_subscription_updated(subscription: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    status = subscription.get("status") or "active"
    updated = repository.mirror_subscription(
        subscription.get("id"),
        status=status,
        expires_at=_ts_to_iso(subscription.get("current_period_end")),
    )
    return {"status": "ok", "updated": updated}

def handle_subscription_deleted(subscription: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    updated = repository.mirror_subscription(subscription.get("id"), status="cancelled", downgrade=True)
    logger.info("payments.webhooks tier downgraded subscription=%s account=%s", subscription.get("id"), updated)
    return {"status": "ok", "updated": updated}

def handle_invoice_paid(invoice: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    sub_id = _subscription_id(invoice)
    if not sub_id:
        return {"status": "ignored"}
    period_end = None
    lines = ((invoice.get("lines") or {}).get("data")) or []
    if lines:
        period_end = ((lines[0] or {}).get("period") or {}).get("end")
    updated = repository.mirror_subscription(sub_id, status="active", expires_at=_ts_to_iso(period_end))
    return {"status": "ok", "updated": updated}

def handle_invoice_failed(invoice: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    # past_due sans rétrogradation: la période de grâce est gérée par Stripe
    sub_id = _subscription_id(invoice)
    if not sub_id:
        return {"status": "ignored"}
    updated = repository.mirror_subscription(sub_id, status="past_due")
    return {"status": "ok", "updated": updated}

def handle_payment_succeeded(intent: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    repository.update_payment_status(intent.get("id"), "succeeded", paid_at=ctx.now.isoformat())
    return {"status": "ok"}

def handle_payment_failed(intent: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    # Pas de restauration de stock ici: la commande 'pending' expire via le reaper
    repository.update_payment_status(intent.get("id"), "failed")
    return {"status": "ok"}


HANDLERS: Dict[str, Callable[[Dict[str, Any], WebhookContext], Dict[str, Any]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_failed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
}

def dispatch(event: Dict[str, Any], ctx: WebhookContext) -> Dict[str, Any]:
    """Route l'event vers son handler. Retour {"status": "ok"|"ignored", ...}."""
    event_type = (event or {}).get("type") or ""
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("payments.webhooks unhandled event type=%s id=%s", event_type, (event or {}).get("id"))
        return {"status": "ignored"}
    result = handler(meta.session_from_event(event), ctx)
    logger.info("payments.webhooks handled type=%s id=%s status=%s", event_type, event.get("id"), result.get("status"))
    return result
