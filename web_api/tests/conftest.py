# web_api/tests/conftest.py
"""Pytest fixtures for web API tests.

Builds an app with the notification, reminder and WhatsApp routers (no
lifespan, so no scheduler or database pool is started).
"""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from web_api.routes.notifications import router as notifications_router
from web_api.routes.reminders import router as reminders_router
from web_api.routes.whatsapp import router as whatsapp_router


@pytest.fixture
def app():
    app = FastAPI()
    app.include_router(notifications_router)
    app.include_router(reminders_router)
    app.include_router(whatsapp_router)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def api_db(fake_db):
    """fake_db, also patched into the routes that import get_connection directly."""
    with patch("web_api.routes.notifications.get_connection", fake_db.connection):
        yield fake_db
