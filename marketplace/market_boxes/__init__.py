"""
Module 'market_boxes' (feature-first): point d'entrée public.
Machine à états des retraits, confirmation mutuelle et saut de semaine.
"""

from .state import confirm, confirmation_status, vendor_action, ensure_skippable
from .service import vendor_update_pickup, buyer_confirm_pickup, skip_week, get_confirmation

__all__ = [
    # state
    "confirm",
    "confirmation_status",
    "vendor_action",
    "ensure_skippable",
    # services
    "vendor_update_pickup",
    "buyer_confirm_pickup",
    "skip_week",
    "get_confirmation",
]
