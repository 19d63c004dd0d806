import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from starlette.concurrency import run_in_threadpool

from marketplace.utils.security import require_user, require_vendor
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.market_boxes import service
from marketplace.market_boxes.schemas import PickupActionRequest, SkipWeekRequest

logger = logging.getLogger(__name__)
vendor_router = APIRouter(prefix="/api/v1/vendor/market-boxes", tags=["Market boxes (vendor)"])
buyer_router = APIRouter(prefix="/api/v1/buyer/market-boxes", tags=["Market boxes (buyer)"])
router = APIRouter(prefix="/api/v1/market-boxes", tags=["Market boxes"])

# module marketplace.market_boxes.views
@vendor_router.patch("/pickups/{pickup_id}")
async def update_pickup(pickup_id: str, payload: PickupActionRequest, vendor: dict = Depends(require_vendor)) -> Dict[str, Any]:
    """
    Action vendeur sur un retrait.
    - Entrée JSON: {action: ready|picked_up|missed|reschedule, rescheduleTo?, vendorNotes?}
    - picked_up: {waitingForBuyer: true} tant que l'acheteur n'a pas confirmé, puis {completed: true}
    - Erreurs: 400 transition interdite, 403 autre vendeur, 404 retrait inconnu, 409 conflit
    """
    return await run_in_threadpool(
        service.vendor_update_pickup,
        vendor,
        pickup_id,
        payload.action,
        reschedule_to=payload.reschedule_to,
        vendor_notes=payload.vendor_notes,
    )

@vendor_router.post("/pickups/{pickup_id}/skip", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def skip_pickup_week(
    pickup_id: str,
    payload: Optional[SkipWeekRequest] = Body(default=None),
    vendor: dict = Depends(require_vendor),
) -> Dict[str, Any]:
    """Saute la semaine et prolonge l'abonnement d'une semaine. Entrée JSON optionnelle: {reason?}."""
    reason = payload.reason if payload else None
    return await run_in_threadpool(service.skip_week, vendor, pickup_id, reason)

@buyer_router.post("/pickups/{pickup_id}/confirm")
async def confirm_pickup(pickup_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    """Confirmation acheteur: {waitingForVendor: true} ou {completed: true}."""
    return await run_in_threadpool(service.buyer_confirm_pickup, user, pickup_id)

@router.get("/pickups/{pickup_id}/confirmation")
async def pickup_confirmation(pickup_id: str, user: dict = Depends(require_user)) -> Dict[str, Any]:
    """État de la confirmation mutuelle: awaiting | completed | expired (acheteur ou vendeur)."""
    return await run_in_threadpool(service.get_confirmation, user, pickup_id)
