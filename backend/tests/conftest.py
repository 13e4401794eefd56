import uuid

import pytest
from mongomock_motor import AsyncMongoMockClient


@pytest.fixture
def db():
    """Fresh in-memory Motor database per test."""
    return AsyncMongoMockClient()[f"medrem_test_{uuid.uuid4().hex[:8]}"]
