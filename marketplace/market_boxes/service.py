"""
Cas d'usage 'market_boxes': actions vendeur, confirmation acheteur, saut de semaine.

Les écritures de retrait sont conditionnelles (statut et horodatages lus): deux confirmations
simultanées ne peuvent pas s'écraser. En cas de conflit, on relit et on rejoue une fois.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from marketplace.errors import ForbiddenError, NotFoundError, PersistenceError, PickupTransitionError
from marketplace.utils.security import fetch_vendor_profile
from . import repository
from . import state

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

# module marketplace.market_boxes.service
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _subscription(pickup: Dict[str, Any]) -> Dict[str, Any]:
    sub = pickup.get("subscription") or {}
    if isinstance(sub, list):
        sub = sub[0] if sub else {}
    return sub

def _offering(pickup: Dict[str, Any]) -> Dict[str, Any]:
    offering = _subscription(pickup).get("offering") or {}
    if isinstance(offering, list):
        offering = offering[0] if offering else {}
    return offering

def _load_pickup(pickup_id: str) -> Dict[str, Any]:
    pickup = repository.fetch_pickup(pickup_id)
    if not pickup:
        raise NotFoundError("Pickup not found.", code="PICKUP_NOT_FOUND")
    return pickup

def _ensure_vendor_owns(pickup: Dict[str, Any], vendor_profile_id: Any) -> None:
    offering = _offering(pickup)
    if not offering or str(offering.get("vendor_profile_id")) != str(vendor_profile_id):
        raise ForbiddenError("This pickup belongs to another vendor.")

def _ensure_buyer_owns(pickup: Dict[str, Any], user_id: Any) -> None:
    if str(_subscription(pickup).get("buyer_user_id")) != str(user_id):
        raise NotFoundError("Pickup not found.", code="PICKUP_NOT_FOUND")

def _conflict() -> PickupTransitionError:
    return PickupTransitionError(
        "This pickup was updated at the same time. Please refresh and try again.",
        code="PICKUP_CONFLICT",
        status_code=409,
    )

def _expected(pickup: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "status": pickup.get("status"),
        "vendor_confirmed_at": pickup.get("vendor_confirmed_at"),
        "buyer_confirmed_at": pickup.get("buyer_confirmed_at"),
    }

def _apply(
    pickup_id: str,
    transition: Callable[[Dict[str, Any]], Tuple[Dict[str, Any], Dict[str, Any]]],
    check: Callable[[Dict[str, Any]], None],
    now: datetime,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Relit, vérifie, calcule la transition puis l'écrit de façon conditionnelle."""
    for attempt in range(MAX_ATTEMPTS):
        pickup = _load_pickup(pickup_id)
        check(pickup)
        updates, response = transition(pickup)
        if not updates:
            return pickup, response
        updates["updated_at"] = now.isoformat()
        row = repository.update_pickup(pickup_id, updates, _expected(pickup))
        if row:
            if row.get("status") == state.PICKED_UP and pickup.get("status") != state.PICKED_UP:
                sync_weeks_completed(pickup.get("subscription_id") or _subscription(pickup).get("id"))
            return row, response
        logger.info("market_boxes.service conflict pickup_id=%s attempt=%s", pickup_id, attempt + 1)
    raise _conflict()

def sync_weeks_completed(subscription_id: Optional[str]) -> None:
    """
    weeks_completed = nombre de retraits 'picked_up'; abonnement 'completed' quand il
    atteint term_weeks + extended_weeks.
    """
    if not subscription_id:
        return
    subscription = repository.fetch_subscription(subscription_id)
    done = repository.count_picked_up(subscription_id)
    if not subscription or done is None:
        return
    updates: Dict[str, Any] = {"weeks_completed": done}
    if subscription.get("status") == "active" and done >= state.total_weeks(subscription):
        updates["status"] = "completed"
    repository.update_subscription(subscription_id, updates)
    logger.info("market_boxes.service.sync_weeks_completed subscription_id=%s weeks=%s", subscription_id, done)

def vendor_update_pickup(
    vendor: Dict[str, Any],
    pickup_id: str,
    action: Optional[str],
    *,
    reschedule_to: Optional[str] = None,
    vendor_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    PATCH vendeur: ready | picked_up | missed | reschedule (ou notes seules).
    picked_up renvoie {waitingForBuyer: true} ou {completed: true}.
    """
    now = now or _utcnow()
    row, response = _apply(
        pickup_id,
        lambda p: state.vendor_action(p, action, now, reschedule_to=reschedule_to, vendor_notes=vendor_notes),
        lambda p: _ensure_vendor_owns(p, vendor.get("vendor_profile_id")),
        now,
    )
    logger.info("market_boxes.service.vendor_update_pickup pickup_id=%s action=%s status=%s", pickup_id, action, row.get("status"))
    return {"pickup": row, **response}

def _ensure_buyer_can_confirm(pickup: Dict[str, Any], user_id: Any) -> None:
    _ensure_buyer_owns(pickup, user_id)
    if _subscription(pickup).get("status") != "active":
        raise PickupTransitionError("Subscription is not active.", code="SUBSCRIPTION_INACTIVE")

def buyer_confirm_pickup(user: Dict[str, Any], pickup_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Confirmation acheteur: {waitingForVendor: true} ou {completed: true}."""
    now = now or _utcnow()
    row, response = _apply(
        pickup_id,
        lambda p: state.confirm(p, state.BUYER, now),
        lambda p: _ensure_buyer_can_confirm(p, user.get("id")),
        now,
    )
    return {"pickup": row, **response}

def skip_week(vendor: Dict[str, Any], pickup_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Saut de semaine (vendeur uniquement, sans confirmation acheteur).
    La RPC marque le retrait 'skipped', prolonge l'abonnement d'une semaine et crée le retrait d'extension.
    """
    pickup = _load_pickup(pickup_id)
    _ensure_vendor_owns(pickup, vendor.get("vendor_profile_id"))
    state.ensure_skippable(pickup)
    reason = (reason or "").strip() or None

    result = repository.rpc_skip_week(pickup_id, reason)
    if result is None:
        raise PersistenceError("Failed to skip week.", code="SKIP_FAILED")
    if result.get("rejected"):
        logger.info("market_boxes.service.skip_week concurrent skip pickup_id=%s", pickup_id)
        raise _conflict()

    subscription_id = pickup.get("subscription_id") or _subscription(pickup).get("id")
    subscription = repository.fetch_subscription(subscription_id) or {}
    logger.info(
        "market_boxes.service.skip_week pickup_id=%s extension_pickup_id=%s subscription_id=%s",
        pickup_id,
        result.get("extension_pickup_id"),
        subscription_id,
    )
    return {
        "success": True,
        "skippedPickupId": pickup_id,
        "extensionPickupId": result.get("extension_pickup_id"),
        "reason": reason,
        "subscription": {
            **subscription,
            "total_weeks": state.total_weeks(subscription) if subscription else None,
            "new_end_date": result.get("new_scheduled_date"),
        },
        "message": "Week skipped. Subscription extended by 1 week.",
    }

def get_confirmation(user: Dict[str, Any], pickup_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    État de la confirmation mutuelle, consultable par l'acheteur ou le vendeur du retrait.
    Le client interroge cet état; l'échéance fait foi côté serveur.
    """
    now = now or _utcnow()
    pickup = _load_pickup(pickup_id)
    is_buyer = str(_subscription(pickup).get("buyer_user_id")) == str(user.get("id"))
    if not is_buyer:
        vendor = fetch_vendor_profile(str(user.get("id")))
        if not vendor or str(_offering(pickup).get("vendor_profile_id")) != str(vendor.get("id")):
            raise NotFoundError("Pickup not found.", code="PICKUP_NOT_FOUND")
    return {
        "pickupId": pickup_id,
        "status": state.confirmation_status(pickup, now),
        "pickupStatus": pickup.get("status"),
        "vendorConfirmedAt": pickup.get("vendor_confirmed_at"),
        "buyerConfirmedAt": pickup.get("buyer_confirmed_at"),
        "expiresAt": pickup.get("confirmation_window_expires_at"),
    }
