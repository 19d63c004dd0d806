import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from marketplace import config
from marketplace.utils.security import require_user, require_cron
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.payments.stripe_client import get_gateway
from marketplace.payments import service as payments_service
from marketplace.checkout import guards
from marketplace.checkout import service as checkout_service
from marketplace.checkout.schemas import CheckoutRequest, MarketBoxCheckoutRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"])
cron_router = APIRouter(prefix="/api/v1/cron", tags=["Cron"])
buyer_orders_router = APIRouter(prefix="/api/v1/buyer/orders", tags=["Buyer Orders"])

# module marketplace.checkout.views
def _return_urls(vertical: str) -> Dict[str, str]:
    base = config.BASE_URL.rstrip("/")
    return {
        "success_url": base + config.CHECKOUT_SUCCESS_PATH.format(vertical=vertical),
        "cancel_url": base + config.CHECKOUT_CANCEL_PATH.format(vertical=vertical),
    }

@router.post("/session", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_checkout_session(
    payload: CheckoutRequest,
    user: dict = Depends(require_user),
    gateway=Depends(get_gateway),
) -> Dict[str, Any]:
    """
    Crée la session Stripe Checkout du panier (listings + market boxes).
    - Entrée JSON: {items[], marketBoxItems[], vertical, tipAmountCents?, tipPercentage?}
    - Sécurité: require_user + rate limit (10 req / 60s)
    - Réponse: {sessionId, url, orderId, orderNumber} ({..., reused: true} si session existante)
    - Erreurs: {error, code} (OUT_OF_STOCK, INSUFFICIENT_STOCK, CUTOFF_PASSED, BELOW_MINIMUM, ...)
    """
    return await checkout_service.create_checkout(
        user=user,
        payload=payload,
        gateway=gateway,
        **_return_urls(payload.vertical),
    )

@router.post("/market-box", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def create_market_box_session(
    payload: MarketBoxCheckoutRequest,
    user: dict = Depends(require_user),
    gateway=Depends(get_gateway),
) -> Dict[str, Any]:
    """Achat autonome d'une market box: {sessionId, url}. L'abonnement naît au webhook."""
    return await checkout_service.create_market_box_checkout(
        user=user,
        payload=payload,
        gateway=gateway,
        **_return_urls(payload.vertical),
    )

@router.get("/success")
async def checkout_success(session_id: str, user: dict = Depends(require_user), gateway=Depends(get_gateway)) -> Dict[str, Any]:
    """
    Alternative au webhook (retour navigateur): confirme la session et enregistre le paiement.
    - Vérifie payment_status='paid' et la propriété (metadata.user_id)
    - Même garde d'idempotence que le webhook (insert paiement unique par payment intent)
    """
    return await run_in_threadpool(payments_service.confirm_session_by_id, session_id, str(user.get("id")), gateway)

@cron_router.post("/expire-orders", dependencies=[Depends(require_cron)])
async def expire_orders() -> Dict[str, Any]:
    """Annule toutes les commandes 'pending' expirées (batch de 100) et restaure leur stock."""
    result = await run_in_threadpool(guards.reap_all_expired_orders)
    logger.info("checkout.views.expire_orders processed=%s errors=%s", result["processed"], result["errors"])
    return {"status": "ok", **result}

@buyer_orders_router.post("/{order_id}/cancel", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def cancel_order(order_id: str, user: dict = Depends(require_user), gateway=Depends(get_gateway)) -> Dict[str, Any]:
    """
    Annulation d'une commande payée pendant le délai de grâce, remboursement intégral.
    - Erreurs: 404 ORDER_NOT_FOUND, 403, 400 ORDER_NOT_CANCELLABLE / GRACE_PERIOD_EXPIRED, 409 ORDER_CONFLICT
    """
    return await run_in_threadpool(payments_service.cancel_paid_order, order_id, str(user.get("id")), gateway)
