"""
LexDesk CRM - Shared test fixtures

In-memory MongoDB (mongomock-motor) per test; the process-wide timeline
cache is emptied around every test.
"""

import pytest
from mongomock_motor import AsyncMongoMockClient

from services.interaction_aggregator import interaction_cache


@pytest.fixture
def db():
    return AsyncMongoMockClient()["lexdesk_test"]


@pytest.fixture(autouse=True)
def clear_interaction_cache():
    interaction_cache.clear()
    yield
    interaction_cache.clear()
