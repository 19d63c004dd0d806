from fastapi import Request, HTTPException, Depends
from typing import Optional, Dict, Any
import hmac
import logging

from marketplace import config
import marketplace.infra.supabase_client as supabase_client

logger = logging.getLogger(__name__)

COOKIE_NAME = "sb_access"

def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None

def get_user_from_token(token: str) -> Dict[str, Any]:
    """
    Résout un access token via Supabase Auth.
    Retour: {id, email, role, token}; {} si le token est invalide.
    """
    res = supabase_client.get_supabase().auth.get_user(token)
    user = getattr(res, "user", None)
    if not user:
        return {}
    metadata = getattr(user, "user_metadata", None) or {}
    return {
        "id": getattr(user, "id", None),
        "email": getattr(user, "email", None),
        "role": str(metadata.get("role") or "user"),
        "token": token,
    }

def get_current_user(request: Request) -> Dict[str, Any]:
    # Hybride: priorité au Bearer, fallback cookie
    token = _bearer_token(request) or request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        user = get_user_from_token(token)
        if not user.get("id"):
            raise HTTPException(status_code=401, detail="Session expired, please sign in again")
        return user
    except HTTPException:
        raise
    except Exception:
        logger.exception("utils.security.get_current_user token resolution failed")
        raise HTTPException(status_code=401, detail="Session expired, please sign in again")

def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user

def fetch_vendor_profile(user_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("vendor_profiles")
            .select("id, user_id, status, vertical_id")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return rows[0] if rows else None
    except Exception:
        logger.exception("utils.security.fetch_vendor_profile failed user_id=%s", user_id)
        return None

def require_vendor(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """Utilisateur + son profil vendeur (403 si l'utilisateur n'est pas vendeur)."""
    vendor = fetch_vendor_profile(str(user.get("id")))
    if not vendor:
        raise HTTPException(status_code=403, detail="Vendor account required")
    return {**user, "vendor_profile_id": vendor["id"], "vendor_profile": vendor}

def require_cron(request: Request) -> None:
    """Tâches planifiées: Authorization: Bearer <CRON_SECRET> (comparaison à temps constant)."""
    token = _bearer_token(request) or ""
    if not config.CRON_SECRET or not hmac.compare_digest(token, config.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")
