"""
Accès aux données pour la feature 'market_boxes' (retraits hebdomadaires et abonnements).
"""
from typing import Any, Dict, Optional
import logging

import marketplace.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

PICKUP_COLUMNS = (
    "id, subscription_id, week_number, scheduled_date, status, is_extension, ready_at, picked_up_at, "
    "missed_at, rescheduled_to, vendor_notes, skip_reason, vendor_confirmed_at, buyer_confirmed_at, "
    "confirmation_window_expires_at"
)
SUBSCRIPTION_COLUMNS = (
    "id, buyer_user_id, offering_id, status, term_weeks, extended_weeks, weeks_completed, start_date, "
    "original_end_date"
)

# module marketplace.market_boxes.repository
def fetch_pickup(pickup_id: str) -> Optional[Dict[str, Any]]:
    """Retrait + abonnement + offre (pour la vérification de propriété)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_box_pickups")
            .select(
                f"{PICKUP_COLUMNS}, subscription:market_box_subscriptions({SUBSCRIPTION_COLUMNS}, "
                "offering:market_box_offerings(id, name, vendor_profile_id, vertical_id))"
            )
            .eq("id", pickup_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("market_boxes.repository.fetch_pickup failed pickup_id=%s", pickup_id)
        return None

def update_pickup(pickup_id: str, updates: Dict[str, Any], expected: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Update conditionnel: n'écrit que si les colonnes 'expected' ont encore la valeur lue.
    Retourne la ligne mise à jour, None si la ligne a changé entre-temps (ou en cas d'erreur).
    """
    try:
        query = (
            supabase_client.get_service_supabase()
            .table("market_box_pickups")
            .update(updates)
            .eq("id", pickup_id)
        )
        for column, value in expected.items():
            query = query.is_(column, "null") if value is None else query.eq(column, value)
        res = query.execute()
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("market_boxes.repository.update_pickup failed pickup_id=%s", pickup_id)
        return None

def rpc_skip_week(pickup_id: str, reason: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    RPC vendor_skip_week: pickup -> skipped, extended_weeks + 1 et une ligne 'scheduled'
    (is_extension) une semaine après le dernier retrait, dans une seule transaction.
    La RPC reverrouille le retrait et refuse s'il n'est plus scheduled/ready (saut concurrent).
    Retour: {"extension_pickup_id", "new_scheduled_date"}, {"rejected": True} si refusé,
    ou None en cas d'échec.
    """
    try:
        res = (
            supabase_client.get_service_supabase()
            .rpc("vendor_skip_week", {"p_pickup_id": pickup_id, "p_reason": reason})
            .execute()
        )
    except Exception:
        logger.exception("market_boxes.repository.rpc_skip_week failed pickup_id=%s", pickup_id)
        return None
    data = res.data
    if isinstance(data, list):
        data = data[0] if data else {}
    data = data or {}
    if data.get("rejected"):
        logger.info("market_boxes.repository.rpc_skip_week rejected pickup_id=%s", pickup_id)
        return {"rejected": True}
    return {
        "extension_pickup_id": data.get("extension_pickup_id"),
        "new_scheduled_date": data.get("new_scheduled_date"),
    }

def fetch_subscription(subscription_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_box_subscriptions")
            .select(SUBSCRIPTION_COLUMNS)
            .eq("id", subscription_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("market_boxes.repository.fetch_subscription failed subscription_id=%s", subscription_id)
        return None

def count_picked_up(subscription_id: str) -> Optional[int]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("market_box_pickups")
            .select("id", count="exact")
            .eq("subscription_id", subscription_id)
            .eq("status", "picked_up")
            .execute()
        )
        return int(res.count or 0)
    except Exception:
        logger.exception("market_boxes.repository.count_picked_up failed subscription_id=%s", subscription_id)
        return None

def update_subscription(subscription_id: str, updates: Dict[str, Any]) -> bool:
    try:
        (
            supabase_client.get_service_supabase()
            .table("market_box_subscriptions")
            .update(updates)
            .eq("id", subscription_id)
            .execute()
        )
        return True
    except Exception:
        logger.exception("market_boxes.repository.update_subscription failed subscription_id=%s", subscription_id)
        return False
