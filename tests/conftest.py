"""Pytest configuration for channels-global tests."""

import os
import tempfile

import django
import pytest
from django.conf import settings

from channels_global import create_service
from channels_global.rpc import StaticDirectory
from channels_global.stores.aio import AIOSQLiteStore

# Use a temporary file database that persists during the test session
TEST_DB = os.path.join(tempfile.gettempdir(), "channels_global_test.db")

TEST_PREFIX = "{TEST-GLOBALCHANNEL}"


def pytest_configure():
    """Configure Django settings for tests."""
    if not settings.configured:
        # Remove old test database if it exists
        if os.path.exists(TEST_DB):
            os.remove(TEST_DB)

        settings.configure(
            DEBUG=True,
            DATABASES={
                "default": {
                    "ENGINE": "django.db.backends.sqlite3",
                    "NAME": TEST_DB,
                },
                "postgres": {
                    "ENGINE": "django.db.backends.postgresql",
                    "NAME": "unused",
                },
            },
            INSTALLED_APPS=[
                "django.contrib.contenttypes",
                "channels",
            ],
            USE_TZ=True,
            SECRET_KEY="test-secret-key",
            CHANNEL_LAYERS={
                "default": {"BACKEND": "channels.layers.InMemoryChannelLayer"},
            },
            GLOBAL_CHANNEL={
                "prefix": TEST_PREFIX,
                "rpc_timeout": 1.0,
            },
        )
        django.setup()


def pytest_unconfigure():
    """Clean up after tests."""
    if os.path.exists(TEST_DB):
        os.remove(TEST_DB)


class RecordingInvoker:
    """
    Remote invoker double that records every call.

    failures maps a server id to either an exception to raise or the list of
    uids to report as undelivered.
    """

    def __init__(self, failures=None):
        self.calls = []
        self.failures = failures or {}

    async def invoke(self, server_id, call):
        self.calls.append((server_id, call))
        outcome = self.failures.get(server_id)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or []

    @property
    def servers_called(self):
        return [server_id for server_id, _ in self.calls]


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "registry.db"


@pytest.fixture()
async def store(db_path):
    store = AIOSQLiteStore(db_path=db_path)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture()
def directory():
    return StaticDirectory({"connector": ["srvA", "srvB"], "chat": ["chat-1"]})


@pytest.fixture()
def registry_prefix():
    return TEST_PREFIX


@pytest.fixture()
def invoker():
    return RecordingInvoker()


@pytest.fixture()
def make_invoker():
    """Build a RecordingInvoker with scripted failures."""
    return RecordingInvoker


@pytest.fixture()
async def service(db_path, directory, invoker):
    """Started service on a private database, stopped after the test."""
    service = create_service(directory, invoker, db_path=db_path)
    await service.start()
    yield service
    await service.stop()
