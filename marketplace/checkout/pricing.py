"""
Moteur de prix (pur: pas de Stripe, pas de DB).

Structure des frais:
- l'acheteur paie sous-total + pourcentage acheteur + frais fixe (une seule fois par commande)
- le vendeur reçoit sous-total - pourcentage vendeur
- la plateforme déclare pourcentage acheteur + pourcentage vendeur comme platform_fee;
  le frais fixe appartient à la commande, jamais à un versement vendeur.

Les pourcentages sont arrondis par ligne (demi-supérieur au centime) et les totaux
de commande sont des sommes de lignes: sum(payouts) + platform_fee == total - flat_fee.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from marketplace import config
from marketplace.errors import CheckoutValidationError

# module marketplace.checkout.pricing
def percent_of(cents: int, percent: float) -> int:
    """Pourcentage d'un montant en centimes, arrondi au centime (ROUND_HALF_UP)."""
    value = Decimal(int(cents)) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def item_fee_shares(
    unit_price_cents: int,
    quantity: int,
    buyer_fee_percent: Optional[float] = None,
    vendor_fee_percent: Optional[float] = None,
) -> Dict[str, int]:
    """
    Parts de frais d'une ligne de commande (pourcentages uniquement, sans frais fixe).
    Retour: {subtotal_cents, buyer_fee_cents, vendor_fee_cents, platform_fee_cents, vendor_payout_cents}
    """
    buyer_pct = config.BUYER_FEE_PERCENT if buyer_fee_percent is None else buyer_fee_percent
    vendor_pct = config.VENDOR_FEE_PERCENT if vendor_fee_percent is None else vendor_fee_percent
    subtotal = int(unit_price_cents) * int(quantity)
    buyer_fee = percent_of(subtotal, buyer_pct)
    vendor_fee = percent_of(subtotal, vendor_pct)
    return {
        "subtotal_cents": subtotal,
        "buyer_fee_cents": buyer_fee,
        "vendor_fee_cents": vendor_fee,
        "platform_fee_cents": buyer_fee + vendor_fee,
        "vendor_payout_cents": subtotal - vendor_fee,
    }

class OrderPricing:
    """Décomposition complète d'une commande (montants en centimes)."""

    def __init__(self, lines: List[Dict[str, int]], flat_fee_cents: int, tip_cents: int = 0):
        self.lines = lines
        self.subtotal_cents = sum(l["subtotal_cents"] for l in lines)
        self.buyer_percent_fee_cents = sum(l["buyer_fee_cents"] for l in lines)
        self.vendor_percent_fee_cents = sum(l["vendor_fee_cents"] for l in lines)
        self.platform_fee_cents = self.buyer_percent_fee_cents + self.vendor_percent_fee_cents
        self.flat_fee_cents = flat_fee_cents if lines else 0
        self.tip_cents = tip_cents
        self.buyer_total_cents = self.subtotal_cents + self.buyer_percent_fee_cents + self.flat_fee_cents
        self.vendor_payout_cents_per_item = [l["vendor_payout_cents"] for l in lines]

    @property
    def total_with_tip_cents(self) -> int:
        return self.buyer_total_cents + self.tip_cents

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal_cents": self.subtotal_cents,
            "buyer_percent_fee_cents": self.buyer_percent_fee_cents,
            "vendor_percent_fee_cents": self.vendor_percent_fee_cents,
            "flat_fee_cents": self.flat_fee_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "buyer_total_cents": self.buyer_total_cents,
            "tip_cents": self.tip_cents,
            "total_cents": self.total_with_tip_cents,
            "vendor_payout_cents_per_item": list(self.vendor_payout_cents_per_item),
        }

def calculate_order_pricing(
    items: Iterable[Dict[str, Any]],
    *,
    buyer_fee_percent: Optional[float] = None,
    vendor_fee_percent: Optional[float] = None,
    flat_fee_cents: Optional[int] = None,
    tip_cents: int = 0,
) -> OrderPricing:
    """
    Calcule la tarification d'une commande.
    - items: [{"unit_price_cents": int, "quantity": int}, ...]
    - Le frais fixe est ajouté une seule fois, quel que soit le nombre de lignes.
    """
    flat = config.BUYER_FLAT_FEE_CENTS if flat_fee_cents is None else flat_fee_cents
    lines = [
        item_fee_shares(
            int(it.get("unit_price_cents") or 0),
            int(it.get("quantity") or 0),
            buyer_fee_percent,
            vendor_fee_percent,
        )
        for it in items
    ]
    return OrderPricing(lines, flat_fee_cents=flat, tip_cents=max(0, int(tip_cents or 0)))

def resolve_tip_cents(subtotal_cents: int, tip_amount_cents: Optional[int], tip_percentage: Optional[float]) -> int:
    """Pourboire explicite prioritaire, sinon pourcentage du sous-total (hors frais)."""
    if tip_amount_cents:
        return max(0, int(tip_amount_cents))
    if tip_percentage:
        return max(0, percent_of(subtotal_cents, float(tip_percentage)))
    return 0

def minimum_order_cents(vertical: Optional[str] = None) -> int:
    if vertical and vertical in config.VERTICAL_MINIMUM_DEFAULTS:
        return config.VERTICAL_MINIMUM_DEFAULTS[vertical]
    return config.MINIMUM_ORDER_CENTS

def amount_to_minimum(subtotal_cents: int, minimum_cents: int) -> int:
    return max(0, minimum_cents - subtotal_cents)

def enforce_minimum(subtotal_cents: int, vertical: Optional[str] = None, minimum_cents: Optional[int] = None) -> None:
    """
    Vérifie le minimum de commande sur le sous-total AVANT frais.
    Soulève BELOW_MINIMUM avec le manque exact (shortfall_cents).
    """
    minimum = minimum_order_cents(vertical) if minimum_cents is None else minimum_cents
    shortfall = amount_to_minimum(subtotal_cents, minimum)
    if shortfall > 0:
        raise CheckoutValidationError(
            f"Minimum order is {format_price(minimum)}. Add {format_price(shortfall)} more to check out.",
            code="BELOW_MINIMUM",
            details={"shortfall_cents": shortfall, "minimum_cents": minimum},
        )

def format_price(cents: int) -> str:
    return f"${cents / 100:.2f}"
