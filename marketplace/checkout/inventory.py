"""
Registre de stock (inventory ledger).
- La décrémentation et la restauration sont des RPC atomiques (voir repository).
- Stock NULL = illimité: jamais décrémenté, ne bloque jamais le checkout.
- check_stock est une pré-vérification lecture seule pour produire un message précis.
- Une ligne de commande n'est restaurée que si son décrément a réussi (inventory_reserved).
"""
from typing import Any, Dict, Iterable, Optional
import logging

from marketplace.checkout import repository
from marketplace.errors import CheckoutValidationError

logger = logging.getLogger(__name__)

# module marketplace.checkout.inventory
def is_unlimited(listing: Dict[str, Any]) -> bool:
    return listing.get("quantity") is None

def check_stock(listing: Dict[str, Any], quantity: int) -> None:
    """
    Vérifie le stock disponible d'un listing pour la quantité demandée.
    - OUT_OF_STOCK si le stock est à 0
    - INSUFFICIENT_STOCK si le stock est inférieur à la quantité (details.available)
    """
    if is_unlimited(listing):
        return
    available = int(listing.get("quantity") or 0)
    title = listing.get("title") or "This item"
    if available <= 0:
        raise CheckoutValidationError(
            f'"{title}" is out of stock.',
            code="OUT_OF_STOCK",
            details={"listingId": listing.get("id")},
        )
    if available < int(quantity):
        raise CheckoutValidationError(
            f'Only {available} of "{title}" available.',
            code="INSUFFICIENT_STOCK",
            details={"listingId": listing.get("id"), "available": available},
        )

def decrement(listing: Dict[str, Any], quantity: int) -> Optional[int]:
    """
    Réserve le stock d'un listing (décrément atomique).
    Retourne le stock restant, None si illimité. Lève CheckoutValidationError si le
    décrément conditionnel échoue (stock insuffisant au moment de l'UPDATE).
    """
    if is_unlimited(listing):
        return None
    result = repository.rpc_decrement_inventory(str(listing["id"]), int(quantity))
    if not result.get("ok"):
        raise CheckoutValidationError(
            f'Only {int(result.get("remaining") or 0)} of "{listing.get("title") or "this item"}" available.',
            code="INSUFFICIENT_STOCK" if result.get("remaining") else "OUT_OF_STOCK",
            details={"listingId": listing.get("id"), "available": int(result.get("remaining") or 0)},
        )
    return result.get("remaining")

def quantities_by_listing(items: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Agrège {listing_id: quantité} sur les lignes non annulées."""
    totals: Dict[str, int] = {}
    for it in items or []:
        if it.get("cancelled_at") or not it.get("listing_id"):
            continue
        lid = str(it["listing_id"])
        totals[lid] = totals.get(lid, 0) + int(it.get("quantity") or 0)
    return totals

def restore_items(items: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Restaure le stock des lignes fournies. Retour {"restored": n, "failed": n}."""
    restored = 0
    failed = 0
    for listing_id, qty in quantities_by_listing(items).items():
        if qty <= 0:
            continue
        if repository.rpc_restore_inventory(listing_id, qty):
            restored += 1
        else:
            failed += 1
    return {"restored": restored, "failed": failed}

def restore_order(order_id: str) -> Dict[str, int]:
    """
    Restaure le stock des lignes non annulées d'une commande dont le décrément a réussi
    (inventory_reserved). Une ligne jamais réservée ne rend rien au stock.
    """
    items = repository.fetch_active_order_items(order_id)
    return restore_items([it for it in items if it.get("inventory_reserved")])
