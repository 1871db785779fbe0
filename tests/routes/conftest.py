"""
Conftest for routes tests - TestClient over the real app, with the
authenticated account swapped in through a dependency override.
"""

import pytest
from fastapi.testclient import TestClient

from fluxstudio.db.accounts import get_account
from fluxstudio.security.deps import get_current_account


@pytest.fixture
def app():
    from fluxstudio.main import app

    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # Not used as a context manager: the lifespan database check stays off
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def login(app, sb):
    """Authenticate subsequent requests as ``account_id`` (loaded fresh per request)."""

    def _login(account_id: str):
        app.dependency_overrides[get_current_account] = lambda: get_account(account_id)

    return _login
