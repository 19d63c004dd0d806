"""
Middlewares transverses de l'application.
- register_basic_middlewares: CORS et TrustedHost.
- register_security_middleware: en-têtes de sécurité, no-store sur /api.
- register_request_logging_middleware: X-Request-ID et une ligne de log par requête API.
Le webhook Stripe n'a besoin d'aucune exemption: l'API n'utilise pas de protection CSRF.
"""
import logging
import time
import uuid

from fastapi import Request, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from marketplace.config import CORS_ORIGINS, ALLOWED_HOSTS

REQUEST_ID_HEADER = "X-Request-ID"
access_logger = logging.getLogger("marketplace.access")

def register_basic_middlewares(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=ALLOWED_HOSTS + ["*"] if "*" in CORS_ORIGINS else ALLOWED_HOSTS,
    )

def register_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # Réponses de checkout/paiement: jamais en cache (URL de session, statut de commande)
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        return response

def register_request_logging_middleware(app: FastAPI) -> None:
    """
    Propage (ou génère) X-Request-ID et journalise méthode, chemin, statut et durée.
    Le corps des requêtes n'est jamais journalisé (webhooks signés, données acheteur).
    """
    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        if request.url.path.startswith("/api/"):
            access_logger.info(
                "%s %s status=%s duration_ms=%.1f request_id=%s",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
                request_id,
            )
        return response
