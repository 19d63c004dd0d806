"""
Module 'checkout' (feature-first): point d'entrée public.
Tarification, stock, disponibilité, gardes (doublons, expiration) et orchestrateur.
"""

from .pricing import calculate_order_pricing, enforce_minimum, OrderPricing
from .guards import find_reusable_session, reap_expired_orders, reap_all_expired_orders
from .service import create_checkout, create_market_box_checkout

__all__ = [
    # pricing
    "calculate_order_pricing",
    "enforce_minimum",
    "OrderPricing",
    # guards
    "find_reusable_session",
    "reap_expired_orders",
    "reap_all_expired_orders",
    # service
    "create_checkout",
    "create_market_box_checkout",
]
