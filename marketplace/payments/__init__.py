"""
Module 'payments' (feature-first): point d'entrée public.
Passerelle Stripe, métadonnées de session, enregistrement des paiements et webhooks.
"""

from .stripe_client import StripeGateway, get_gateway, to_line_items
from .metadata import session_kind, payment_intent_id
from .service import record_order_payment, record_market_box_purchase, confirm_session_by_id, grant_market_box, cancel_paid_order
from .webhooks import WebhookContext, dispatch, HANDLERS

__all__ = [
    # stripe
    "StripeGateway",
    "get_gateway",
    "to_line_items",
    # metadata
    "session_kind",
    "payment_intent_id",
    # services
    "record_order_payment",
    "record_market_box_purchase",
    "confirm_session_by_id",
    "grant_market_box",
    "cancel_paid_order",
    # webhooks
    "WebhookContext",
    "dispatch",
    "HANDLERS",
]
