"""
Accès aux données pour la feature 'payments' (client service-role: webhooks Stripe).

- payments: une ligne par payment intent (contrainte unique = garde d'idempotence)
- orders: passage à 'paid'
- market_box_subscriptions: création via RPC avec contrôle de capacité atomique
- vendor_profiles / user_profiles: champs de tier premium (miroir de l'abonnement Stripe)
"""
from typing import Any, Dict, Optional
import logging

import marketplace.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

PAYMENT_CREATED = "created"
PAYMENT_DUPLICATE = "duplicate"

# Colonnes de tier par type de compte: (table, tier, expiration, statut)
TIER_COLUMNS = {
    "vendor": ("vendor_profiles", "tier", "tier_expires_at", "subscription_status"),
    "buyer": ("user_profiles", "buyer_tier", "buyer_tier_expires_at", "buyer_subscription_status"),
}
FREE_TIERS = {"vendor": "standard", "buyer": "free"}

# module marketplace.payments.repository
def mark_order_paid(order_id: str, paid_at: str, grace_period_ends_at: Optional[str] = None) -> bool:
    """
    Commande 'pending' -> 'paid' (et ses lignes 'pending' -> 'paid'), par UPDATE conditionnel.
    Retourne True seulement si la commande a changé: une commande déjà payée, livrée ou
    annulée n'est jamais réécrite (rejeu de webhook, paiement arrivé après le Reaper).
    """
    client = supabase_client.get_service_supabase()
    updates: Dict[str, Any] = {"status": "paid", "paid_at": paid_at}
    if grace_period_ends_at:
        updates["grace_period_ends_at"] = grace_period_ends_at
    try:
        res = client.table("orders").update(updates).eq("id", order_id).eq("status", "pending").execute()
        if not res.data:
            return False
        (
            client.table("order_items")
            .update({"status": "paid"})
            .eq("order_id", order_id)
            .eq("status", "pending")
            .execute()
        )
        return True
    except Exception:
        logger.exception("payments.repository.mark_order_paid failed order_id=%s", order_id)
        return False

def fetch_order_payment(order_id: str) -> Optional[Dict[str, Any]]:
    """Paiement enregistré d'une commande (payment intent à rembourser), None si absent."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("payments")
            .select("id, order_id, stripe_payment_intent_id, amount_cents, status")
            .eq("order_id", order_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("payments.repository.fetch_order_payment failed order_id=%s", order_id)
        return None

def insert_payment(row: Dict[str, Any]) -> Optional[str]:
    """
    Insère le paiement (clé unique: stripe_payment_intent_id).
    Retour: PAYMENT_CREATED, PAYMENT_DUPLICATE (violation 23505: l'autre chemin a gagné) ou None (échec).
    """
    try:
        supabase_client.get_service_supabase().table("payments").insert(row).execute()
        return PAYMENT_CREATED
    except Exception as exc:
        if supabase_client.is_unique_violation(exc):
            logger.info("payments.repository.insert_payment duplicate payment_intent=%s", row.get("stripe_payment_intent_id"))
            return PAYMENT_DUPLICATE
        logger.exception(
            "payments.repository.insert_payment failed order_id=%s payment_intent=%s",
            row.get("order_id"),
            row.get("stripe_payment_intent_id"),
        )
        return None

def update_payment_status(payment_intent_id: str, status: str, paid_at: Optional[str] = None) -> bool:
    updates: Dict[str, Any] = {"status": status}
    if paid_at:
        updates["paid_at"] = paid_at
    try:
        (
            supabase_client.get_service_supabase()
            .table("payments")
            .update(updates)
            .eq("stripe_payment_intent_id", payment_intent_id)
            .execute()
        )
        return True
    except Exception:
        logger.exception("payments.repository.update_payment_status failed payment_intent=%s status=%s", payment_intent_id, status)
        return False

def rpc_subscribe_market_box(
    *,
    offering_id: str,
    buyer_user_id: str,
    payment_intent_id: str,
    term_weeks: int,
    start_date: Optional[str],
    price_cents: int,
    order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    RPC subscribe_to_market_box_if_capacity: compte + insert dans une seule transaction.
    Clé d'idempotence (offering_id, buyer_user_id, payment_intent_id): un rejeu renvoie l'abonnement existant.
    Retour normalisé: {"ok": bool, "subscription_id": str|None, "reason": str|None}
    reason: "at_capacity" (à rembourser) ou "error" (échec technique, logué).
    """
    params = {
        "p_offering_id": offering_id,
        "p_buyer_user_id": buyer_user_id,
        "p_stripe_payment_intent_id": payment_intent_id,
        "p_term_weeks": int(term_weeks),
        "p_start_date": start_date,
        "p_total_paid_cents": int(price_cents),
        "p_order_id": order_id,
    }
    try:
        res = supabase_client.get_service_supabase().rpc("subscribe_to_market_box_if_capacity", params).execute()
    except Exception:
        logger.exception(
            "payments.repository.rpc_subscribe_market_box failed offering_id=%s payment_intent=%s",
            offering_id,
            payment_intent_id,
        )
        return {"ok": False, "subscription_id": None, "reason": "error"}
    data = res.data
    if isinstance(data, list):
        data = data[0] if data else {}
    data = data or {}
    if data.get("success"):
        return {"ok": True, "subscription_id": data.get("subscription_id"), "reason": None}
    reason = str(data.get("error") or "")
    return {"ok": False, "subscription_id": None, "reason": "at_capacity" if "capacity" in reason.lower() else reason or "error"}

# --- Tiers premium (abonnements Stripe en mode 'subscription') ---

def activate_tier(
    *,
    tier_type: str,
    user_id: str,
    tier: str,
    billing_cycle: Optional[str],
    stripe_subscription_id: Optional[str],
    stripe_customer_id: Optional[str],
    expires_at: Optional[str],
) -> bool:
    """Active le tier sur le profil vendeur/acheteur. Update idempotent (mêmes valeurs au rejeu)."""
    columns = TIER_COLUMNS.get(tier_type)
    if not columns:
        logger.warning("payments.repository.activate_tier unknown tier_type=%s user_id=%s", tier_type, user_id)
        return False
    table, tier_col, expires_col, status_col = columns
    updates = {
        tier_col: tier,
        expires_col: expires_at,
        status_col: "active",
        "stripe_subscription_id": stripe_subscription_id,
        "stripe_customer_id": stripe_customer_id,
        "billing_cycle": billing_cycle,
    }
    try:
        supabase_client.get_service_supabase().table(table).update(updates).eq("user_id", user_id).execute()
        return True
    except Exception:
        logger.exception("payments.repository.activate_tier failed tier_type=%s user_id=%s", tier_type, user_id)
        return False

def mirror_subscription(
    stripe_subscription_id: str,
    *,
    status: str,
    expires_at: Optional[str] = None,
    downgrade: bool = False,
) -> Optional[str]:
    """
    Recopie le statut d'un abonnement Stripe sur le profil qui le porte (vendeur puis acheteur).
    downgrade=True: retour immédiat au tier gratuit. Retourne le type de compte mis à jour ou None.
    """
    client = supabase_client.get_service_supabase()
    for tier_type, (table, tier_col, expires_col, status_col) in TIER_COLUMNS.items():
        updates: Dict[str, Any] = {status_col: status}
        if expires_at is not None:
            updates[expires_col] = expires_at
        if downgrade:
            updates.update({tier_col: FREE_TIERS[tier_type], expires_col: None, "stripe_subscription_id": None})
        try:
            res = (
                client.table(table)
                .update(updates)
                .eq("stripe_subscription_id", stripe_subscription_id)
                .execute()
            )
        except Exception:
            logger.exception("payments.repository.mirror_subscription failed table=%s subscription=%s", table, stripe_subscription_id)
            continue
        if res.data:
            return tier_type
    return None
