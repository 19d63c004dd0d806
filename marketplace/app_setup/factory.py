"""
Factory d'application pour les entrypoints (ex: marketplace.asgi).
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_security_middleware, register_request_logging_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      - middlewares (CORS, TrustedHost, en-têtes de sécurité, X-Request-ID)
      - gestionnaires d'exceptions
      - tous les routers (checkout, payments, market boxes, health)
    """
    app = FastAPI(title="Marketplace Checkout API", lifespan=lifespan)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_request_logging_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
