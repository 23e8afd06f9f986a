"""
Shared pytest fixtures and configuration for drcfg tests.
"""

import pytest

from drcfg import reset_default_codec
from tests.utils import FakeZooKeeper


@pytest.fixture(autouse=True)
def reset_codec():
    """Restore the default codec around each test to prevent state leakage."""
    reset_default_codec()
    yield
    reset_default_codec()


@pytest.fixture
def zk():
    """An in-memory ZooKeeper delivering watches on the writing thread."""
    server = FakeZooKeeper()
    yield server
    server.close()


@pytest.fixture
def threaded_zk():
    """An in-memory ZooKeeper delivering watches on a separate event thread."""
    server = FakeZooKeeper(threaded_watches=True)
    yield server
    server.close()
