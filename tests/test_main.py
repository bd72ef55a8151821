from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.core.context import build_context
from app.core.dependencies import get_context
from app.main import app


@pytest.fixture
def client(repository, gateway, uow):
    app.state.context = build_context(settings, uow=uow, repository=repository, gateway=gateway)
    with TestClient(app) as client:
        yield client
    app.state.context = None


def test_root(client):
    response = client.get("/api/")
    assert response.status_code == 200
    assert response.json() == {"message": f"{settings.APP_NAME} API is running"}


def test_health_check(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_unknown_route_uses_error_format(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.json() == {"message": "Not Found", "code": 404}


def test_get_context_requires_startup():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(RuntimeError, match="not initialised"):
        get_context(request)
