"""
Taxonomie d'erreurs du pipeline checkout / paiement / market box.

- CheckoutValidationError: panier invalide, stock, cutoff, minimum (4xx, corrigeable par l'acheteur)
- PaymentServiceError: échec d'appel Stripe (message générique, aucun état partiel)
- PersistenceError: échec d'écriture critique (insert commande / lignes)
- PickupTransitionError: action de retrait interdite depuis le statut courant

Le handler enregistré dans app_setup.exceptions sérialise en {"error", "code", ...details}.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 400
    default_code = "ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.details}


class CheckoutValidationError(MarketplaceError):
    status_code = 400
    default_code = "INVALID_ITEMS"


class PaymentServiceError(MarketplaceError):
    status_code = 502
    default_code = "PAYMENT_SERVICE_ERROR"


class PersistenceError(MarketplaceError):
    status_code = 500
    default_code = "PERSISTENCE_ERROR"


class PickupTransitionError(MarketplaceError):
    status_code = 400
    default_code = "INVALID_TRANSITION"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(MarketplaceError):
    status_code = 403
    default_code = "FORBIDDEN"
