"""Shared fixtures: an in-memory replica, local caches and published users."""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Dict

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from dchat_client.directory import KeyDirectory
from dchat_client.replica import MemoryReplica
from dchat_client.storage import LocalCache
from dchat_crypto import SessionKeyCache, export_public_jwk, generate_keypair


class SleepRecorder:
    """Replaces asyncio.sleep in directory lookups"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@dataclass
class TestUser:
    __test__ = False

    name: str
    private_key: ec.EllipticCurvePrivateKey
    public_jwk: Dict[str, str]
    replica: MemoryReplica
    directory: KeyDirectory
    cache: LocalCache

    def key_cache(self) -> SessionKeyCache:
        return SessionKeyCache(self.private_key, self.directory.require)


@pytest.fixture()
def replica() -> MemoryReplica:
    return MemoryReplica()


@pytest.fixture()
def clock():
    ticks = itertools.count(1_700_000_000_000, 1000)
    return lambda: next(ticks)


@pytest.fixture()
def make_user(replica, tmp_path, clock):
    """Create a user with a published key, a private local cache and their
    own view of the shared replica"""

    def factory(name: str) -> TestUser:
        private_key, public_key = generate_keypair()
        public_jwk = export_public_jwk(public_key)
        view = replica.peer()
        directory = KeyDirectory(view, sleep=SleepRecorder())
        asyncio.run(directory.publish(name, public_jwk))
        cache = LocalCache(str(tmp_path / name), clock=clock)
        return TestUser(name, private_key, public_jwk, view, directory, cache)

    return factory
