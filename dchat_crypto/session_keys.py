"""
Per-partner shared key cache.

Memoizes the ECDH-derived key for each chat partner for the lifetime of a
logged-in session. Keys are never persisted; they are recomputed lazily after
a restart.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from .primitives import derive_shared_key, import_public_jwk


logger = logging.getLogger(__name__)

PublicKeyResolver = Callable[[str], Awaitable[Dict[str, str]]]


class SessionKeyCache:
    """
    Maps partner username to the derived shared key.

    Concurrent misses for the same partner share a single in-flight
    derivation task. Failed derivations are not cached.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, resolve_public_key: PublicKeyResolver):
        """
        Initialize the cache.

        Args:
            private_key: The logged-in user's private key
            resolve_public_key: Coroutine returning a partner's public JWK;
                expected to raise PartnerNotFound when it cannot
        """
        self._private_key = private_key
        self._resolve = resolve_public_key
        self._keys: Dict[str, bytes] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def __contains__(self, partner: str) -> bool:
        return partner in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def peek(self, partner: str) -> Optional[bytes]:
        """Return a cached key without deriving"""
        return self._keys.get(partner)

    async def get_or_derive(self, partner: str) -> bytes:
        """
        Get the shared key for a partner, deriving it on first use.

        Args:
            partner: Partner username

        Returns:
            32-byte shared key
        """
        key = self._keys.get(partner)
        if key is not None:
            return key

        task = self._pending.get(partner)
        if task is None:
            task = asyncio.ensure_future(self._derive(partner))
            self._pending[partner] = task
            task.add_done_callback(lambda t, p=partner: self._forget(p, t))

        return await asyncio.shield(task)

    def _forget(self, partner: str, task: asyncio.Task):
        # A task cancelled by clear() may finish after its replacement started
        if self._pending.get(partner) is task:
            del self._pending[partner]

    async def _derive(self, partner: str) -> bytes:
        public_jwk = await self._resolve(partner)
        key = derive_shared_key(self._private_key, import_public_jwk(public_jwk))
        self._keys[partner] = key
        logger.debug("Derived shared key for %s", partner)
        return key

    def clear(self):
        """Drop every cached key and cancel in-flight derivations (logout)"""
        for task in list(self._pending.values()):
            task.cancel()
        self._pending.clear()
        self._keys.clear()
