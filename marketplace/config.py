# marketplace.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend marketplace.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe), CORS/hosts, cron
- Expose les constantes métier du checkout (frais, minimums, délais)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_float(name: str, default: float) -> float:
    try:
        return float(_clean_env(os.getenv(name, "")) or default)
    except ValueError:
        return default

def _env_int(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name, "")) or default)
    except ValueError:
        return default

# Supabase: URLs et clés (anon/service)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Stripe: clé privée et secret webhook
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
CURRENCY = _clean_env(os.getenv("CURRENCY") or "usd")

# Secret partagé des tâches planifiées (expiration des commandes)
CRON_SECRET = _clean_env(os.getenv("CRON_SECRET") or "")

BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000")

# Pages de succès/annulation du checkout (relatives à BASE_URL, préfixées par la verticale)
CHECKOUT_SUCCESS_PATH = os.getenv("CHECKOUT_SUCCESS_PATH", "/{vertical}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}")
CHECKOUT_CANCEL_PATH = os.getenv("CHECKOUT_CANCEL_PATH", "/{vertical}/checkout")

# Frais plateforme: pourcentages acheteur/vendeur + frais fixe unique par commande
BUYER_FEE_PERCENT = _env_float("BUYER_FEE_PERCENT", 6.5)
VENDOR_FEE_PERCENT = _env_float("VENDOR_FEE_PERCENT", 6.5)
BUYER_FLAT_FEE_CENTS = _env_int("BUYER_FLAT_FEE_CENTS", 15)

# Minimum de commande (sous-total avant frais), par verticale
MINIMUM_ORDER_CENTS = _env_int("MINIMUM_ORDER_CENTS", 1000)
VERTICAL_MINIMUM_DEFAULTS = {
    "farmers_market": 1000,
    "food_trucks": 500,
    "fire_works": 4000,
}

# Délais (commandes en attente, garde anti-doublon, fenêtre de confirmation mutuelle)
PENDING_ORDER_TIMEOUT_MINUTES = _env_int("PENDING_ORDER_TIMEOUT_MINUTES", 10)
DUPLICATE_ORDER_WINDOW_MINUTES = _env_int("DUPLICATE_ORDER_WINDOW_MINUTES", 10)
PICKUP_CONFIRMATION_WINDOW_SECONDS = _env_int("PICKUP_CONFIRMATION_WINDOW_SECONDS", 30)

# Préfixe du numéro de commande lisible (ex: FM-2026-04213)
ORDER_NUMBER_PREFIXES = {
    "farmers_market": "FM",
    "food_trucks": "FT",
    "fire_works": "FW",
}
