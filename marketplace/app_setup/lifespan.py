"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Journalisation (LOG_LEVEL) et contrôle des secrets nécessaires au checkout
- FastAPILimiter (Redis), fakeredis en tests, fermeture propre à l'arrêt
Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: fallback mémoire si Redis est indisponible
  - RATE_LIMIT_REDIS_URL: URL Redis (défaut redis://127.0.0.1:6379/0)
"""
import os
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from marketplace import config

try:
    from fakeredis.aioredis import FakeRedis  # tests only
except ImportError:
    FakeRedis = None

logger = logging.getLogger("uvicorn.error")

# Secrets sans lesquels une partie du pipeline échoue à l'exécution
REQUIRED_SETTINGS = {
    "SUPABASE_URL": "lectures/écritures Supabase",
    "SUPABASE_SERVICE_KEY": "réservation de stock, webhooks, cron",
    "STRIPE_SECRET_KEY": "sessions Checkout et remboursements",
    "STRIPE_WEBHOOK_SECRET": "vérification de signature des webhooks",
    "CRON_SECRET": "expiration planifiée des commandes",
}

def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "info").upper()
    logging.getLogger("marketplace").setLevel(getattr(logging, level, logging.INFO))

def missing_settings() -> list:
    return [name for name in REQUIRED_SETTINGS if not getattr(config, name, "")]

async def init_rate_limiter(app: FastAPI) -> bool:
    """
    Initialise FastAPILimiter. Retourne True si Redis (ou fakeredis) est branché.
    En cas d'échec: fallback mémoire si demandé, sinon rate limiting désactivé.
    """
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return False
    try:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            if not FakeRedis:
                raise RuntimeError("USE_FAKE_REDIS_FOR_TESTS=1 mais fakeredis n'est pas installé.")
            r = FakeRedis(decode_responses=True)
        else:
            redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
            r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        await FastAPILimiter.init(r)
    except Exception as e:
        fallback = os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1"
        app.state.rate_limit_enabled = fallback
        logger.warning(
            "Rate limiting %s due to init error: %s",
            "falling back to local in-memory" if fallback else "disabled",
            e,
        )
        return False
    app.state.rate_limit_enabled = True
    logger.info("Rate limiting enabled")
    return True

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    missing = missing_settings()
    if missing:
        for name in missing:
            logger.warning("Missing setting %s (%s)", name, REQUIRED_SETTINGS[name])
    app.state.missing_settings = missing

    limiter_ready = await init_rate_limiter(app)
    try:
        yield
    finally:
        if limiter_ready:
            await FastAPILimiter.close()
