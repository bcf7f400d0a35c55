import os
# Ensure the app factory picks the Testing config & an in-memory tenant DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_TENANT_DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from hrms import create_app
from hrms.models.feedback import ENTITY_NAME, FEEDBACK_SCHEMA
from hrms.services.feedback_store import FeedbackStore
from hrms.services.lifecycle import LifecycleCoordinator
from hrms.tenancy import TenantRegistry

# Wednesday; the coming Sunday is 2026-03-15
FIXED_NOW = datetime(2026, 3, 11, 10, 0, 0)


class FixedClock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


@pytest.fixture()
def app():
    app = create_app({"TENANT_DATABASE_URL": "sqlite://"})
    yield app
    app.extensions["tenant_registry"].dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def tenant_headers():
    return {"X-Company-Code": "acme", "X-User-Id": "U-1"}


@pytest.fixture()
def registry():
    reg = TenantRegistry("sqlite://")
    yield reg
    reg.dispose()


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def store(registry, clock):
    return FeedbackStore(registry.resolve("ACME", ENTITY_NAME, FEEDBACK_SCHEMA), clock=clock)


@pytest.fixture()
def lifecycle(store):
    return LifecycleCoordinator(store)
