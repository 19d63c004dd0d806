from fastapi import APIRouter, Request

from marketplace.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/rate-limit")
def health_rate_limit(request: Request):
    return rate_limit_health_info(request)

@router.get("/config")
def health_config(request: Request):
    """Noms des réglages manquants (jamais leurs valeurs)."""
    missing = getattr(request.app.state, "missing_settings", [])
    return {"ok": not missing, "missing": missing}
