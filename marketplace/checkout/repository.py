"""
Accès aux données pour la feature 'checkout' (listings, offres market box, commandes, stock).
Toutes les écritures passent par le client service-role; les opérations de stock
sont des RPC atomiques côté Postgres (UPDATE conditionnel), jamais lecture-puis-écriture.
"""
from typing import Any, Dict, Iterable, List, Optional
import logging

import marketplace.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

LISTING_COLUMNS = (
    "id, title, description, price_cents, quantity, status, vertical_id, vendor_profile_id, "
    "listing_markets(market_id, markets(id, name, market_type, address, city, state, timezone))"
)
OFFERING_COLUMNS = (
    "id, name, description, vendor_profile_id, vertical_id, price_4week_cents, price_8week_cents, "
    "pickup_market_id, pickup_day_of_week, pickup_start_time, pickup_end_time, active, max_subscribers"
)
ORDER_COLUMNS = (
    "id, order_number, buyer_user_id, vertical_id, status, subtotal_cents, platform_fee_cents, "
    "total_cents, tip_cents, stripe_checkout_session_id, created_at, paid_at, grace_period_ends_at"
)
ORDER_ITEM_COLUMNS = (
    "id, order_id, listing_id, vendor_profile_id, quantity, unit_price_cents, subtotal_cents, "
    "platform_fee_cents, vendor_payout_cents, market_id, schedule_id, pickup_date, status, cancelled_at, "
    "inventory_reserved, market_box_offering_id, term_weeks, start_date"
)

# module marketplace.checkout.repository
def fetch_listings_by_ids(ids: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Récupère les listings (avec leurs marchés) par IDs.
    - Retourne [] si ids vide ou en cas d'erreur.
    """
    ids = [str(i) for i in ids if i]
    if not ids:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("listings")
            .select(LISTING_COLUMNS)
            .in_("id", ids)
            .is_("deleted_at", "null")
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_listings_by_ids failed ids=%s", ids)
        return []

def fetch_offerings_by_ids(ids: Iterable[str]) -> List[Dict[str, Any]]:
    ids = [str(i) for i in ids if i]
    if not ids:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_box_offerings")
            .select(OFFERING_COLUMNS)
            .in_("id", ids)
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_offerings_by_ids failed ids=%s", ids)
        return []

def fetch_vertical(vertical_id: str) -> Optional[Dict[str, Any]]:
    """Configuration de la verticale (ex: config.minimum_order_cents)."""
    if not vertical_id:
        return None
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("verticals")
            .select("vertical_id, name, config")
            .eq("vertical_id", vertical_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("checkout.repository.fetch_vertical failed vertical_id=%s", vertical_id)
        return None

def fetch_cart_items(user_id: str, listing_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Sélections de retrait enregistrées dans le panier DB de l'acheteur."""
    ids = [str(i) for i in listing_ids if i]
    if not user_id or not ids:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("cart_items")
            .select("id, listing_id, quantity, market_id, schedule_id, pickup_date, carts!inner(user_id)")
            .eq("carts.user_id", user_id)
            .in_("listing_id", ids)
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_cart_items failed user_id=%s", user_id)
        return []

def fetch_schedule(schedule_id: str) -> Optional[Dict[str, Any]]:
    if not schedule_id:
        return None
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_schedules")
            .select("id, market_id, day_of_week, start_time, end_time, active, markets(id, name, market_type, address, city, state, timezone)")
            .eq("id", schedule_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("checkout.repository.fetch_schedule failed schedule_id=%s", schedule_id)
        return None

def fetch_market_schedules(market_id: str) -> List[Dict[str, Any]]:
    if not market_id:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_schedules")
            .select("id, market_id, day_of_week, start_time, end_time, active")
            .eq("market_id", market_id)
            .eq("active", True)
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_market_schedules failed market_id=%s", market_id)
        return []

def count_active_subscriptions(offering_id: str) -> int:
    """Nombre d'abonnés actifs (pré-contrôle indicatif; la vraie garde est la RPC de création)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_box_subscriptions")
            .select("id", count="exact")
            .eq("offering_id", offering_id)
            .eq("status", "active")
            .execute()
        )
        return int(res.count or 0)
    except Exception:
        logger.exception("checkout.repository.count_active_subscriptions failed offering_id=%s", offering_id)
        return 0

# --- Oracle de disponibilité (RPC, contrat externe) ---

def rpc_is_listing_accepting_orders(listing_id: str) -> bool:
    """RPC is_listing_accepting_orders: le cutoff est calculé côté base. Erreur => fermé."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .rpc("is_listing_accepting_orders", {"p_listing_id": listing_id})
            .execute()
        )
        return bool(res.data)
    except Exception:
        logger.exception("checkout.repository.rpc_is_listing_accepting_orders failed listing_id=%s", listing_id)
        return False

def rpc_get_listing_availability(listing_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .rpc("get_listing_market_availability", {"p_listing_id": listing_id})
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.rpc_get_listing_availability failed listing_id=%s", listing_id)
        return []

# --- Stock (RPC atomiques) ---

def rpc_decrement_inventory(listing_id: str, quantity: int) -> Dict[str, Any]:
    """
    RPC atomic_decrement_inventory: UPDATE listings SET quantity = quantity - q
    WHERE id = ... AND quantity >= q. Retour {"ok": bool, "remaining": int|None}.
    remaining None = stock illimité (quantity NULL, jamais décrémenté).
    """
    res = (
        supabase_client.get_service_supabase()
        .rpc("atomic_decrement_inventory", {"p_listing_id": listing_id, "p_quantity": int(quantity)})
        .execute()
    )
    data = res.data
    if isinstance(data, list):
        data = data[0] if data else {}
    data = data or {}
    return {"ok": bool(data.get("ok", data.get("success"))), "remaining": data.get("remaining")}

def rpc_restore_inventory(listing_id: str, quantity: int) -> bool:
    """RPC atomic_restore_inventory: UPDATE ... SET quantity = quantity + q WHERE quantity IS NOT NULL."""
    try:
        (
            supabase_client.get_service_supabase()
            .rpc("atomic_restore_inventory", {"p_listing_id": listing_id, "p_quantity": int(quantity)})
            .execute()
        )
        return True
    except Exception:
        logger.exception("checkout.repository.rpc_restore_inventory failed listing_id=%s qty=%s", listing_id, quantity)
        return False

# --- Commandes ---

def insert_order(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Insert de la commande (id pré-généré). None en cas d'échec (logué)."""
    try:
        res = supabase_client.get_service_supabase().table("orders").insert(row).execute()
        rows = res.data or []
        return rows[0] if rows else row
    except Exception:
        logger.exception("checkout.repository.insert_order failed order_id=%s buyer=%s", row.get("id"), row.get("buyer_user_id"))
        return None

def insert_order_items(rows: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Insert groupé des lignes (une seule requête = unité d'atomicité)."""
    if not rows:
        return []
    try:
        res = supabase_client.get_service_supabase().table("order_items").insert(rows).execute()
        return res.data or rows
    except Exception:
        logger.exception("checkout.repository.insert_order_items failed order_id=%s count=%s", rows[0].get("order_id"), len(rows))
        return None

def fetch_pending_orders(
    buyer_user_id: str,
    *,
    created_after: Optional[str] = None,
    created_before: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Commandes 'pending' de l'acheteur ayant une session Stripe, avec leurs lignes.
    created_after / created_before: bornes ISO-8601 sur created_at.
    """
    try:
        query = (
            supabase_client.get_service_supabase()
            .table("orders")
            .select(f"{ORDER_COLUMNS}, order_items({ORDER_ITEM_COLUMNS})")
            .eq("buyer_user_id", buyer_user_id)
            .eq("status", "pending")
            .not_.is_("stripe_checkout_session_id", "null")
        )
        if created_after:
            query = query.gte("created_at", created_after)
        if created_before:
            query = query.lt("created_at", created_before)
        res = query.order("created_at", desc=True).execute()
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_pending_orders failed buyer=%s", buyer_user_id)
        return []

def fetch_expired_pending_orders(created_before: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Balayage global (cron): commandes 'pending' avec session, plus anciennes que created_before."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("orders")
            .select(ORDER_COLUMNS)
            .eq("status", "pending")
            .not_.is_("stripe_checkout_session_id", "null")
            .lt("created_at", created_before)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_expired_pending_orders failed before=%s", created_before)
        return []

def fetch_active_order_items(order_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("order_items")
            .select(ORDER_ITEM_COLUMNS)
            .eq("order_id", order_id)
            .is_("cancelled_at", "null")
            .execute()
        )
        return res.data or []
    except Exception:
        logger.exception("checkout.repository.fetch_active_order_items failed order_id=%s", order_id)
        return []

def cancel_order_items(order_id: str, reason: str, cancelled_at: str, cancelled_by: str = "system") -> bool:
    try:
        (
            supabase_client.get_service_supabase()
            .table("order_items")
            .update({
                "status": "cancelled",
                "cancelled_at": cancelled_at,
                "cancelled_by": cancelled_by,
                "cancellation_reason": reason,
            })
            .eq("order_id", order_id)
            .is_("cancelled_at", "null")
            .execute()
        )
        return True
    except Exception:
        logger.exception("checkout.repository.cancel_order_items failed order_id=%s", order_id)
        return False

def mark_order_cancelled(order_id: str, expected_status: str = "pending") -> bool:
    """
    Passe la commande à 'cancelled' seulement si son statut est encore expected_status
    ('pending' pour le Reaper, 'paid' pour l'annulation acheteur).
    Retourne False si aucune ligne n'a changé (statut modifié entre-temps).
    """
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("orders")
            .update({"status": "cancelled"})
            .eq("id", order_id)
            .eq("status", expected_status)
            .execute()
        )
        return len(res.data or []) > 0
    except Exception:
        logger.exception("checkout.repository.mark_order_cancelled failed order_id=%s", order_id)
        return False

def fetch_order(order_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("orders")
            .select(ORDER_COLUMNS)
            .eq("id", order_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("checkout.repository.fetch_order failed order_id=%s", order_id)
        return None

def mark_items_reserved(order_id: str, listing_id: str) -> bool:
    """Lignes d'un listing dont le stock vient d'être décrémenté: seules celles-ci seront restaurées."""
    try:
        (
            supabase_client.get_service_supabase()
            .table("order_items")
            .update({"inventory_reserved": True})
            .eq("order_id", order_id)
            .eq("listing_id", listing_id)
            .execute()
        )
        return True
    except Exception:
        logger.exception("checkout.repository.mark_items_reserved failed order_id=%s listing_id=%s", order_id, listing_id)
        return False
