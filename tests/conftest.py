"""Shared fixtures for envseal tests."""

import pytest

from envseal import crypto
from envseal.storage import MemoryStore


@pytest.fixture
def alice():
    return crypto.generate_identity()


@pytest.fixture
def bob():
    return crypto.generate_identity()


@pytest.fixture
def mallory():
    return crypto.generate_identity()


@pytest.fixture
def store():
    return MemoryStore()
