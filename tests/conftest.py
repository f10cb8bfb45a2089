"""Pytest configuration and fixtures for Sharpline tests."""

import pytest

from tests.fakes import FakeClock, FakePolymarketClient, FakeStore


@pytest.fixture
def store():
    """Empty in-memory store."""
    return FakeStore()


@pytest.fixture
def client():
    """Upstream client with no canned pages."""
    return FakePolymarketClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cron_context(clock):
    """Context with a generous budget on a hand-driven clock."""
    from app.services.cron_guard import CronContext

    return CronContext("test", "req-1", budget_seconds=30.0, clock=clock)

