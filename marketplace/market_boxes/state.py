"""
Machine à états des retraits market box (pure: pas de DB).

Statuts: scheduled -> ready -> picked_up, sorties latérales missed / rescheduled / skipped.
Confirmation mutuelle du retrait:
- chaque partie (vendeur, acheteur) enregistre son propre horodatage
- la première confirmation ouvre une fenêtre (PICKUP_CONFIRMATION_WINDOW_SECONDS)
- la contre-partie confirmant avant l'échéance => picked_up, les deux horodatages conservés
- fenêtre expirée avec une seule confirmation: le retrait reste ouvert; une nouvelle
  confirmation relance la fenêtre et efface l'horodatage périmé de l'autre partie
Les fonctions retournent (updates, response): updates à appliquer à la ligne, response pour l'API.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from marketplace import config
from marketplace.errors import PickupTransitionError

SCHEDULED = "scheduled"
READY = "ready"
PICKED_UP = "picked_up"
MISSED = "missed"
RESCHEDULED = "rescheduled"
SKIPPED = "skipped"

OPEN_STATUSES = (SCHEDULED, READY)
VENDOR_ACTIONS = ("ready", "picked_up", "missed", "reschedule")

VENDOR = "vendor"
BUYER = "buyer"
_CONFIRM_FIELDS = {VENDOR: "vendor_confirmed_at", BUYER: "buyer_confirmed_at"}
_COUNTERPART = {VENDOR: BUYER, BUYER: VENDOR}
_WAITING_KEYS = {VENDOR: "waitingForBuyer", BUYER: "waitingForVendor"}

# module marketplace.market_boxes.state
def parse_ts(value: Any) -> Optional[datetime]:
    """ISO-8601 (PostgREST) -> datetime; None si vide ou invalide."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None

def parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None

def confirmation_field(party: str) -> str:
    return _CONFIRM_FIELDS[party]

def confirm(pickup: Dict[str, Any], party: str, now: datetime, window_seconds: Optional[int] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Confirmation du retrait par 'vendor' ou 'buyer'.
    - contre-partie confirmée et fenêtre non expirée => picked_up ({"completed": True})
    - sinon ouvre/relance la fenêtre ({"waitingForBuyer": True} ou {"waitingForVendor": True})
    """
    status = pickup.get("status")
    if status == PICKED_UP:
        raise PickupTransitionError("This pickup has already been confirmed.", code="ALREADY_CONFIRMED")
    if status not in OPEN_STATUSES:
        raise PickupTransitionError(f"Cannot confirm a pickup with status: {status}.")

    window = config.PICKUP_CONFIRMATION_WINDOW_SECONDS if window_seconds is None else window_seconds
    own_field = _CONFIRM_FIELDS[party]
    other_field = _CONFIRM_FIELDS[_COUNTERPART[party]]
    other_at = parse_ts(pickup.get(other_field))
    expires_at = parse_ts(pickup.get("confirmation_window_expires_at"))

    if other_at and expires_at and now <= expires_at:
        updates = {own_field: now.isoformat(), "status": PICKED_UP, "picked_up_at": now.isoformat()}
        if not pickup.get("ready_at"):
            updates["ready_at"] = now.isoformat()
        return updates, {"completed": True}

    updates = {
        own_field: now.isoformat(),
        other_field: None,
        "confirmation_window_expires_at": (now + timedelta(seconds=window)).isoformat(),
    }
    return updates, {_WAITING_KEYS[party]: True}

def confirmation_status(pickup: Dict[str, Any], now: datetime) -> str:
    """
    'completed' si retiré; 'expired' si une seule partie a confirmé et la fenêtre est passée;
    'awaiting' sinon (aucune confirmation, ou fenêtre en cours).
    """
    if pickup.get("status") == PICKED_UP:
        return "completed"
    vendor_at = parse_ts(pickup.get("vendor_confirmed_at"))
    buyer_at = parse_ts(pickup.get("buyer_confirmed_at"))
    expires_at = parse_ts(pickup.get("confirmation_window_expires_at"))
    if (vendor_at or buyer_at) and expires_at and now > expires_at:
        return "expired"
    return "awaiting"

def vendor_action(
    pickup: Dict[str, Any],
    action: Optional[str],
    now: datetime,
    *,
    reschedule_to: Optional[str] = None,
    vendor_notes: Optional[str] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Action vendeur: ready, picked_up (confirmation vendeur), missed (date passée), reschedule."""
    status = pickup.get("status")
    updates: Dict[str, Any] = {}
    response: Dict[str, Any] = {}
    if vendor_notes is not None:
        updates["vendor_notes"] = vendor_notes

    if action == "ready":
        if status != SCHEDULED:
            raise PickupTransitionError("Can only mark scheduled pickups as ready.")
        updates.update({"status": READY, "ready_at": now.isoformat()})
    elif action == "picked_up":
        confirmed, response = confirm(pickup, VENDOR, now)
        updates.update(confirmed)
    elif action == "missed":
        if status not in OPEN_STATUSES:
            raise PickupTransitionError("Can only mark scheduled or ready pickups as missed.")
        scheduled = parse_date(pickup.get("scheduled_date"))
        if scheduled is None or scheduled >= now.date():
            raise PickupTransitionError("Can only mark past pickups as missed.", code="PICKUP_NOT_PAST")
        updates.update({"status": MISSED, "missed_at": now.isoformat()})
    elif action == "reschedule":
        if status != MISSED:
            raise PickupTransitionError("Can only reschedule missed pickups.")
        if not reschedule_to:
            raise PickupTransitionError("rescheduleTo date is required.", code="RESCHEDULE_DATE_REQUIRED")
        updates.update({"status": RESCHEDULED, "rescheduled_to": reschedule_to})
    elif action:
        raise PickupTransitionError(
            "Invalid action. Use: ready, picked_up, missed, or reschedule.",
            code="INVALID_ACTION",
        )
    return updates, response

def ensure_skippable(pickup: Dict[str, Any]) -> None:
    """Saut de semaine: seulement scheduled/ready, jamais sur une semaine d'extension."""
    if pickup.get("status") not in OPEN_STATUSES:
        raise PickupTransitionError("Can only skip scheduled or ready pickups.")
    if pickup.get("is_extension"):
        raise PickupTransitionError(
            "Cannot skip extension pickups - these are already makeup weeks.",
            code="EXTENSION_NOT_SKIPPABLE",
        )

def total_weeks(subscription: Dict[str, Any]) -> int:
    return int(subscription.get("term_weeks") or 4) + int(subscription.get("extended_weeks") or 0)
