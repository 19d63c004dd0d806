"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.

StripeGateway est la capacité injectée dans l'orchestrateur de checkout et le
processeur de webhooks (create_session, retrieve_session, refund, verify_signature).
Les tests remplacent get_gateway par un faux (dependency_overrides ou monkeypatch).
"""
import logging
from typing import Any, Dict, List, Optional

import stripe

from marketplace import config

logger = logging.getLogger(__name__)

# module marketplace.payments.stripe_client
def require_stripe():
    """
    Prépare et retourne le module stripe prêt à l'emploi.
    - Configure stripe.api_key via STRIPE_SECRET_KEY si disponible.
    - En absence de clé, les appels Stripe échoueront côté SDK (ex: No API key provided).
    """
    if config.STRIPE_SECRET_KEY:
        stripe.api_key = config.STRIPE_SECRET_KEY
    return stripe

def _as_dict(obj: Any) -> Dict[str, Any]:
    # Les objets Stripe sont dict-compatibles; to_dict_recursive n'existe plus en v8+
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)

def to_line_items(items: List[Dict[str, Any]], currency: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Construit les line_items Stripe (price_data) à partir de lignes {name, description, amount_cents, quantity}.
    - Ignore les lignes à quantité ou montant non valides.
    """
    line_items: List[Dict[str, Any]] = []
    for it in items or []:
        qty = int(it.get("quantity") or 0)
        amount = int(it.get("amount_cents") or 0)
        if qty <= 0 or amount < 0:
            continue
        product_data: Dict[str, Any] = {"name": it.get("name") or "Item"}
        if it.get("description"):
            product_data["description"] = it["description"]
        line_items.append({
            "quantity": qty,
            "price_data": {
                "currency": currency or config.CURRENCY,
                "unit_amount": amount,
                "product_data": product_data,
            },
        })
    return line_items


class StripeGateway:
    """Passerelle de paiement: seule porte d'accès à l'API Stripe."""

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET

    def create_session(
        self,
        *,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        client_reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        mode: str = "payment",
    ) -> Dict[str, Any]:
        """
        Crée une session Stripe Checkout.
        - idempotency_key: les retentatives retombent sur la même session côté Stripe
        Retour: dict session (ex: {"id": "cs_test_...", "url": "https://...", "status": "open"})
        """
        require_stripe()
        params: Dict[str, Any] = {
            "line_items": line_items,
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_method_types": ["card"],
        }
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        session = stripe.checkout.Session.create(**params)
        return _as_dict(session)

    def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        """Récupère une session Checkout (status, payment_status, payment_intent, metadata)."""
        require_stripe()
        return _as_dict(stripe.checkout.Session.retrieve(session_id))

    def refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Rembourse (totalement ou partiellement) un payment intent.
        Clé d'idempotence déterministe: un rejeu du webhook ne rembourse pas deux fois.
        """
        require_stripe()
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents is not None:
            params["amount"] = int(amount_cents)
        if reason:
            params["metadata"] = {"reason": reason[:500]}
        idempotency_key = idempotency_key or f"refund-{payment_intent_id}-{amount_cents if amount_cents is not None else 'full'}"
        refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        return _as_dict(refund)

    def verify_signature(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Valide la signature d'un webhook (Stripe-Signature + STRIPE_WEBHOOK_SECRET)
        et retourne l'événement. Lève stripe.SignatureVerificationError / ValueError sinon.
        """
        require_stripe()
        event = stripe.Webhook.construct_event(payload, sig_header or "", self.webhook_secret or "")
        return _as_dict(event)


_gateway: Optional[StripeGateway] = None

def get_gateway() -> StripeGateway:
    """Dépendance FastAPI: instance partagée (sans état mutable) de la passerelle."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
