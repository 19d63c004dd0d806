import os

# Pas de Redis en tests: rate limiting désactivé au lifespan
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

import pytest
from typing import Generator, Dict, Any
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from marketplace.app import app as fastapi_app
from marketplace.utils.security import require_user, require_vendor
from marketplace.payments.stripe_client import get_gateway
from fakes import FakeStore, FakeGateway

BUYER = {"id": "buyer-1", "email": "buyer@example.com", "role": "user", "token": "fake-token"}
VENDOR = {"id": "vendor-user", "email": "vendor@example.com", "role": "user", "token": "fake-vendor-token", "vendor_profile_id": "v1"}

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "integration/" in nodeid:
            item.add_marker(pytest.mark.integration)

@pytest.fixture(scope="session")
def app():
    return fastapi_app

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c

# Simuler un acheteur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    app.dependency_overrides[require_user] = lambda: dict(BUYER)
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)

@pytest.fixture
def as_vendor(app):
    """Requêtes vendeur: require_vendor retourne le profil v1."""
    app.dependency_overrides[require_vendor] = lambda: dict(VENDOR)
    try:
        yield dict(VENDOR)
    finally:
        app.dependency_overrides.pop(require_vendor, None)

# Aucun accès réseau à Supabase
@pytest.fixture(autouse=True)
def mock_db_dependency(monkeypatch):
    monkeypatch.setattr("marketplace.infra.supabase_client.get_supabase", lambda: MagicMock())
    monkeypatch.setattr("marketplace.infra.supabase_client.get_service_supabase", lambda: MagicMock())

@pytest.fixture
def store(monkeypatch) -> FakeStore:
    return FakeStore().install(monkeypatch)

@pytest.fixture
def gateway(app) -> Generator[FakeGateway, None, None]:
    gw = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: gw
    try:
        yield gw
    finally:
        app.dependency_overrides.pop(get_gateway, None)

@pytest.fixture
def buyer() -> Dict[str, Any]:
    return dict(BUYER)
