"""
Oracle de disponibilité (cutoff): collaborateur externe, consulté via RPC.
- is_accepting_orders(listing_id) -> bool
- get_availability(listing_id) -> [{market_name, market_type, next_open_at, is_accepting}]
Ce module ne recalcule pas les horaires: il interprète la réponse pour produire
un message lisible (retrait privé vs jour de marché passé).
"""
from typing import Any, Dict, List

from marketplace.checkout import repository
from marketplace.errors import CheckoutValidationError

# module marketplace.checkout.availability
def is_accepting_orders(listing_id: str) -> bool:
    return repository.rpc_is_listing_accepting_orders(str(listing_id))

def get_availability(listing_id: str) -> List[Dict[str, Any]]:
    rows = repository.rpc_get_listing_availability(str(listing_id))
    return [
        {
            "market_name": r.get("market_name"),
            "market_type": r.get("market_type"),
            "next_open_at": r.get("next_open_at") or r.get("next_pickup_at"),
            "is_accepting": bool(r.get("is_accepting")),
        }
        for r in rows or []
    ]

def cutoff_reason(listing_title: str, availability: List[Dict[str, Any]]) -> str:
    """
    Message lisible expliquant pourquoi le listing n'accepte plus de commandes.
    - private_pickup: le vendeur a besoin d'un délai de préparation
    - marché traditionnel: les commandes pour ce jour de marché sont closes
    """
    title = listing_title or "This item"
    closed = [a for a in availability or [] if not a.get("is_accepting")]
    if not closed:
        return f'"{title}" is not currently accepting orders.'
    first = closed[0]
    market = first.get("market_name") or "this market"
    next_open = first.get("next_open_at")
    suffix = f" Orders reopen {next_open}." if next_open else ""
    if first.get("market_type") == "private_pickup":
        return f'"{title}" can no longer be ordered for {market}: the vendor needs prep time before this pickup.{suffix}'
    return f'Orders for "{title}" at {market} have closed for this market day.{suffix}'

def ensure_accepting(listing: Dict[str, Any]) -> None:
    """Lève CUTOFF_PASSED (avec raison détaillée) si le listing n'accepte plus de commandes."""
    listing_id = str(listing.get("id"))
    if is_accepting_orders(listing_id):
        return
    availability = get_availability(listing_id)
    raise CheckoutValidationError(
        cutoff_reason(listing.get("title") or "", availability),
        code="CUTOFF_PASSED",
        details={"listingId": listing_id, "availability": availability},
    )
