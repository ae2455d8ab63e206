"""Pytest configuration and shared fixtures."""
import asyncio
import os
from datetime import datetime, timedelta, timezone

# Must be set before educore.core.config is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from educore.api.dependencies import Services, get_services
from educore.core.auth import create_access_token
from educore.infrastructure.store import InMemoryDocumentStore
from educore.services.classes import ClassRegistry
from educore.services.ledger import CreditLedger
from educore.services.support import SupportDesk
from educore.services.vouchers import VoucherService


class MutableClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def run():
    """Drive a coroutine to completion from a sync test."""
    def _run(coro):
        return asyncio.run(coro)
    return _run


@pytest.fixture
def clock():
    return MutableClock(datetime(2024, 9, 2, 8, 30, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def ledger(store, clock):
    return CreditLedger(store, clock=clock)


@pytest.fixture
def classes(ledger):
    return ClassRegistry(ledger)


@pytest.fixture
def vouchers(ledger, classes):
    return VoucherService(ledger, classes)


@pytest.fixture
def support(store, clock):
    return SupportDesk(store, clock=clock)


@pytest.fixture
def make_profile(ledger, run):
    """Create a profile and apply role flags and a balance."""
    def _make(user_id, credits=10, is_teacher=False, is_admin=False, display_name=None):
        async def _create():
            await ledger.ensure_profile(
                user_id,
                email=f"{user_id}@school.lk",
                display_name=display_name or user_id.title(),
            )

            def change(profile):
                profile.credits = credits
                profile.is_teacher = is_teacher
                profile.is_admin = is_admin

            return await ledger.mutate_profile(user_id, change)
        return run(_create())
    return _make


@pytest.fixture
def teacher(make_profile):
    return make_profile("teacher_1", credits=100, is_teacher=True, display_name="Ms. Perera")


@pytest.fixture
def admin(make_profile):
    return make_profile("admin_1", credits=0, is_admin=True, display_name="Admin")


@pytest.fixture
def student(make_profile):
    return make_profile("student_1", credits=5, display_name="Nimali")


@pytest.fixture
def teacher_class(classes, teacher, run):
    """A class owned by ``teacher``."""
    return run(classes.create_class("Grade 10 Science", "Physics and chemistry", teacher.id, "Ms. Perera"))


@pytest.fixture
def services(store, clock):
    return Services.build(store, clock=clock)


@pytest.fixture
def test_client(services):
    """FastAPI test client bound to the in-memory services."""
    from main import app
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer headers for a user id."""
    def _headers(user_id, email=None, name=None):
        token = create_access_token(user_id, email=email, name=name)
        return {"Authorization": f"Bearer {token}"}
    return _headers
