"""Pytest configuration for sync service tests

WHAT: Shared fixtures wiring the sync services to in-memory doubles
WHY: Services run end to end (mapping, ordering, failure policy) without Postgres or the Graph API
REFERENCES:
    - adsync/tests/fakes.py: _FakeStore, _FakeAdapter, _FakeCredentials
    - adsync/services/sync_store.py: the surface the fake store mirrors
"""

import pytest

from adsync.services.platforms.registry import PlatformRegistry

from adsync.tests.fakes import NOW, _FakeAdapter, _FakeCredentials, _FakeStore, make_account


@pytest.fixture
def account():
    return make_account()


@pytest.fixture
def store(account):
    return _FakeStore(accounts=[account])


@pytest.fixture
def adapter():
    return _FakeAdapter()


@pytest.fixture
def registry(adapter):
    return PlatformRegistry([adapter])


@pytest.fixture
def credentials(account):
    return _FakeCredentials({account.id: "token-123"})


@pytest.fixture
def clock():
    return lambda: NOW

