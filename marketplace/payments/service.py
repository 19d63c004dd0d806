"""
Cas d'usage 'payments': enregistrement d'un paiement de commande et création des market boxes.

Partagé par le webhook (checkout.session.completed) et la route de succès: l'insert du
paiement (unique par payment intent) est la seule garde d'idempotence entre les deux chemins.
Seul le gagnant de cet insert crée les abonnements market box de la commande.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from marketplace.checkout import inventory
from marketplace.checkout import repository as checkout_repo
from marketplace.errors import CheckoutValidationError, ForbiddenError, NotFoundError, PaymentServiceError, PersistenceError
from marketplace.market_boxes.state import parse_ts
from . import metadata as meta
from . import repository

logger = logging.getLogger(__name__)

# Délai pendant lequel l'acheteur peut encore annuler une commande payée
GRACE_PERIOD_MINUTES = 60
AT_CAPACITY_REASON = "Market box at capacity"
LATE_PAYMENT_REASON = "Order expired before payment"
BUYER_CANCELLATION_REASON = "Cancelled by buyer"
# Commandes qui ne doivent plus jamais passer à 'paid'
CANCELLED_STATUSES = ("cancelled", "expired")

# module marketplace.payments.service
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def grant_market_box(
    gateway,
    *,
    offering_id: str,
    buyer_user_id: str,
    payment_intent_id: str,
    term_weeks: int,
    start_date: Optional[str],
    price_cents: int,
    order_id: Optional[str] = None,
) -> str:
    """
    Crée l'abonnement via la RPC à capacité contrôlée; rembourse le prix de la box si complète.
    Retour: "created", "refunded", "refund_failed" ou "failed". Ne lève jamais.
    """
    result = repository.rpc_subscribe_market_box(
        offering_id=offering_id,
        buyer_user_id=buyer_user_id,
        payment_intent_id=payment_intent_id,
        term_weeks=term_weeks,
        start_date=start_date,
        price_cents=price_cents,
        order_id=order_id,
    )
    if result["ok"]:
        logger.info(
            "payments.service.grant_market_box created subscription_id=%s offering_id=%s buyer=%s",
            result.get("subscription_id"),
            offering_id,
            buyer_user_id,
        )
        return "created"
    if result["reason"] != "at_capacity":
        logger.error(
            "payments.service.grant_market_box failed offering_id=%s payment_intent=%s reason=%s",
            offering_id,
            payment_intent_id,
            result["reason"],
        )
        return "failed"
    try:
        gateway.refund(
            payment_intent_id,
            amount_cents=price_cents,
            reason=AT_CAPACITY_REASON,
            idempotency_key=f"refund-{payment_intent_id}-{offering_id}",
        )
    except Exception:
        logger.exception(
            "payments.service.grant_market_box refund failed offering_id=%s payment_intent=%s amount=%s",
            offering_id,
            payment_intent_id,
            price_cents,
        )
        return "refund_failed"
    logger.warning(
        "payments.service.grant_market_box at capacity, refunded offering_id=%s buyer=%s amount=%s",
        offering_id,
        buyer_user_id,
        price_cents,
    )
    return "refunded"

def refund_late_payment(session: Dict[str, Any], order: Dict[str, Any], gateway, now: datetime) -> Dict[str, Any]:
    """
    Paiement reçu pour une commande déjà annulée (Reaper passé avant le webhook).
    La commande reste annulée, le stock déjà restauré n'est pas repris: remboursement intégral.
    Le remboursement précède l'insert du paiement; sa clé déterministe absorbe les rejeux.
    """
    order_id = str(order.get("id"))
    pi = meta.payment_intent_id(session)
    if repository.fetch_order_payment(order_id):
        # déjà enregistré (rejeu, ou annulation acheteur déjà remboursée)
        return {"status": "ok", "orderId": order_id, "duplicate": True}
    try:
        gateway.refund(pi, reason=LATE_PAYMENT_REASON, idempotency_key=f"refund-{pi}-late")
    except Exception:
        logger.exception("payments.service.refund_late_payment refund failed order_id=%s payment_intent=%s", order_id, pi)
        raise PaymentServiceError("Refund of a late payment failed.", code="REFUND_FAILED", details={"orderId": order_id})
    outcome = repository.insert_payment({
        "order_id": order_id,
        "stripe_payment_intent_id": pi,
        "amount_cents": int(session.get("amount_total") or order.get("total_cents") or 0),
        "platform_fee_cents": 0,
        "status": "refunded",
        "paid_at": now.isoformat(),
    })
    if outcome is None:
        raise PersistenceError("Payment could not be recorded.", code="PAYMENT_RECORD_FAILED", details={"orderId": order_id})
    logger.warning(
        "payments.service.refund_late_payment order_id=%s status=%s payment_intent=%s",
        order_id,
        order.get("status"),
        pi,
    )
    return {"status": "ok", "orderId": order_id, "refunded": 1, "lateRefund": True, "duplicate": outcome == repository.PAYMENT_DUPLICATE}

def record_order_payment(session: Dict[str, Any], gateway, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Commande payée: order 'pending' -> 'paid', insert du paiement, puis market boxes de la commande.
    - Commande déjà annulée: remboursement intégral, aucune box créée (refund_late_payment).
    - Violation d'unicité sur le paiement: l'autre chemin a déjà tout fait => succès, arrêt.
    - Échec technique du passage à 'paid' ou de l'insert: PersistenceError (Stripe rejouera l'event).
    """
    now = now or _utcnow()
    order_id = ((session or {}).get("metadata") or {}).get("order_id")
    pi = meta.payment_intent_id(session)
    if not order_id or not pi:
        logger.warning("payments.service.record_order_payment missing order_id/payment_intent session_id=%s", (session or {}).get("id"))
        return {"status": "ignored"}

    flipped = repository.mark_order_paid(
        order_id,
        paid_at=now.isoformat(),
        grace_period_ends_at=(now + timedelta(minutes=GRACE_PERIOD_MINUTES)).isoformat(),
    )
    order = checkout_repo.fetch_order(order_id) or {}
    if not flipped and order.get("status") in CANCELLED_STATUSES:
        return refund_late_payment(session, {"id": order_id, **order}, gateway, now)
    if not flipped and order.get("status") == "pending":
        raise PersistenceError("Order could not be marked paid.", code="ORDER_UPDATE_FAILED", details={"orderId": order_id})
    outcome = repository.insert_payment({
        "order_id": order_id,
        "stripe_payment_intent_id": pi,
        "amount_cents": int(session.get("amount_total") or order.get("total_cents") or 0),
        "platform_fee_cents": int(order.get("platform_fee_cents") or 0),
        "status": "succeeded",
        "paid_at": now.isoformat(),
    })
    if outcome == repository.PAYMENT_DUPLICATE:
        return {"status": "ok", "orderId": order_id, "duplicate": True}
    if outcome is None:
        raise PersistenceError("Payment could not be recorded.", code="PAYMENT_RECORD_FAILED", details={"orderId": order_id})

    buyer = str(order.get("buyer_user_id") or (session.get("metadata") or {}).get("user_id") or "")
    results = [
        grant_market_box(
            gateway,
            offering_id=box["offering_id"],
            buyer_user_id=buyer,
            payment_intent_id=pi,
            term_weeks=box["term_weeks"],
            start_date=box.get("start_date"),
            price_cents=box["price_cents"],
            order_id=order_id,
        )
        for box in meta.extract_order_market_boxes(session)
    ]
    logger.info("payments.service.record_order_payment order_id=%s payment_intent=%s boxes=%s", order_id, pi, results)
    return {
        "status": "ok",
        "orderId": order_id,
        "subscriptions": results.count("created"),
        "refunded": results.count("refunded"),
    }

def record_market_box_purchase(session: Dict[str, Any], gateway) -> Dict[str, Any]:
    """Achat market box autonome: un abonnement (ou un remboursement si complet)."""
    purchase = meta.extract_market_box_purchase(session)
    pi = meta.payment_intent_id(session)
    if not purchase or not pi:
        logger.warning("payments.service.record_market_box_purchase incomplete metadata session_id=%s", (session or {}).get("id"))
        return {"status": "ignored"}
    outcome = grant_market_box(
        gateway,
        offering_id=purchase["offering_id"],
        buyer_user_id=purchase["user_id"],
        payment_intent_id=pi,
        term_weeks=purchase["term_weeks"],
        start_date=purchase["start_date"],
        price_cents=purchase["price_cents"],
    )
    return {"status": "ok", "marketBox": outcome}

def confirm_session_by_id(session_id: str, current_user_id: str, gateway, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Route de succès (retour navigateur): vérifie l'état du paiement et la propriété,
    puis applique le même enregistrement que le webhook.
    """
    session = gateway.retrieve_session(session_id)
    payment_status = (session or {}).get("payment_status") or ""
    if payment_status != "paid":
        raise CheckoutValidationError(
            f"Payment not completed (payment_status={payment_status or 'unknown'}).",
            code="PAYMENT_NOT_COMPLETED",
        )
    owner = ((session or {}).get("metadata") or {}).get("user_id")
    if owner and owner != current_user_id:
        raise ForbiddenError("This checkout session belongs to another user.")
    if meta.session_kind(session) == "market_box":
        return record_market_box_purchase(session, gateway)
    return record_order_payment(session, gateway, now=now)

def cancel_paid_order(order_id: str, buyer_user_id: str, gateway, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Annulation par l'acheteur pendant le délai de grâce (grace_period_ends_at).
    - Propriété, statut 'paid' et délai vérifiés; passage paid -> cancelled conditionnel
    - Stock réservé restauré, lignes annulées (cancelled_by='buyer')
    - Remboursement intégral, clé d'idempotence buyer-cancel-{order_id}
    """
    now = now or _utcnow()
    order = checkout_repo.fetch_order(order_id)
    if not order:
        raise NotFoundError("Order not found.", code="ORDER_NOT_FOUND")
    if str(order.get("buyer_user_id")) != str(buyer_user_id):
        raise ForbiddenError("This order belongs to another buyer.")
    if order.get("status") != "paid":
        raise CheckoutValidationError(
            "Only paid orders can be cancelled.",
            code="ORDER_NOT_CANCELLABLE",
            details={"status": order.get("status")},
        )
    deadline = parse_ts(order.get("grace_period_ends_at"))
    if deadline is None or now > deadline:
        raise CheckoutValidationError("The cancellation window for this order has closed.", code="GRACE_PERIOD_EXPIRED")
    payment = repository.fetch_order_payment(order_id)
    pi = (payment or {}).get("stripe_payment_intent_id")
    if not pi:
        raise PersistenceError("Payment for this order could not be found.", code="PAYMENT_NOT_FOUND", details={"orderId": order_id})

    if not checkout_repo.mark_order_cancelled(order_id, expected_status="paid"):
        raise CheckoutValidationError(
            "This order was updated at the same time. Please refresh and try again.",
            code="ORDER_CONFLICT",
            status_code=409,
        )
    restored = inventory.restore_order(order_id)
    checkout_repo.cancel_order_items(order_id, BUYER_CANCELLATION_REASON, now.isoformat(), cancelled_by="buyer")
    try:
        refund = gateway.refund(pi, reason=BUYER_CANCELLATION_REASON, idempotency_key=f"buyer-cancel-{order_id}")
    except Exception:
        logger.exception("payments.service.cancel_paid_order refund failed order_id=%s payment_intent=%s", order_id, pi)
        repository.update_payment_status(pi, "refund_failed")
        raise PaymentServiceError("The order was cancelled but the refund failed.", code="REFUND_FAILED", details={"orderId": order_id})
    repository.update_payment_status(pi, "refunded")
    logger.info("payments.service.cancel_paid_order order_id=%s restored=%s refund=%s", order_id, restored["restored"], (refund or {}).get("id"))
    return {
        "success": True,
        "orderId": order_id,
        "status": "cancelled",
        "refundAmountCents": int(payment.get("amount_cents") or order.get("total_cents") or 0),
        "cancelledAt": now.isoformat(),
    }
