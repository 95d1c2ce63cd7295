"""
Key directory on top of the replicated store.

Publishes each user's public key under users/<name>/pubKey and resolves
partner keys. The store has no authoritative "does not exist" signal, so a
lookup that keeps coming back empty is treated as a probabilistic not-found
after a bounded number of attempts.
"""

import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, Optional

from .errors import DirectoryUnavailable, PartnerNotFound, ReplicaUnavailable
from .replica import Replica, join_path


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """
    Bounded retry with multiplicative backoff.

    Attributes:
        max_attempts: Number of reads before giving up
        base_delay: Delay after the first failed attempt (seconds)
        growth: Multiplier applied to the delay after each attempt
        max_delay: Upper bound for the delay
        min_timeout: Lower bound for a single attempt's read timeout
    """
    max_attempts: int = 5
    base_delay: float = 0.7
    growth: float = 1.2
    max_delay: float = 2.0
    min_timeout: float = 0.9

    def delays(self) -> Iterator[float]:
        """Yield the backoff delay in effect for each attempt"""
        delay = self.base_delay
        for _ in range(self.max_attempts):
            yield delay
            delay = min(self.max_delay, delay * self.growth)

    def timeout_for(self, delay: float) -> float:
        return max(self.min_timeout, delay / 2)


@dataclass
class AccountRecord:
    """Public account data kept in the directory"""
    username: str
    public_jwk: Dict[str, str]
    wrapped_private_key: str


def _parse_jwk(value) -> Optional[Dict[str, str]]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


class KeyDirectory:
    """
    Maps usernames to published public key material.
    """

    def __init__(self, replica: Replica, policy: Optional[RetryPolicy] = None,
                 sleep: Sleep = asyncio.sleep):
        """
        Initialize the directory.

        Args:
            replica: Replicated store
            policy: Retry policy for resolve()
            sleep: Coroutine used for backoff; injectable for tests
        """
        self.replica = replica
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @staticmethod
    def user_path(username: str, *parts: str) -> str:
        return join_path("users", username, *parts)

    async def publish(self, username: str, public_jwk: Dict[str, str]):
        """
        Publish a user's public key.

        Raises:
            DirectoryUnavailable: If the replica cannot be reached
        """
        try:
            await self.replica.put(self.user_path(username, "pubKey"), json.dumps(public_jwk))
        except ReplicaUnavailable as e:
            raise DirectoryUnavailable(f"Could not publish key for {username}: {e}")
        logger.info("Published public key for %s", username)

    async def create_account(self, username: str, public_jwk: Dict[str, str], wrapped_private_key: str):
        """
        Publish a full account record (public key and wrapped private key).

        Args:
            username: Account name
            public_jwk: Public key as JWK
            wrapped_private_key: Password-wrapped private key
        """
        await self.publish(username, public_jwk)
        try:
            await self.replica.put(self.user_path(username, "privKey"), wrapped_private_key)
        except ReplicaUnavailable as e:
            raise DirectoryUnavailable(f"Could not publish account for {username}: {e}")

    async def fetch_account(self, username: str, timeout: float = 1.5) -> Optional[AccountRecord]:
        """
        Read an account record once.

        Returns:
            AccountRecord, or None if nothing has been replicated for this user
        """
        try:
            pub = await self.replica.get_once(self.user_path(username, "pubKey"), timeout)
            priv = await self.replica.get_once(self.user_path(username, "privKey"), timeout)
        except ReplicaUnavailable as e:
            raise DirectoryUnavailable(str(e))

        public_jwk = _parse_jwk(pub)
        if not public_jwk or not isinstance(priv, str) or not priv:
            return None
        return AccountRecord(username=username, public_jwk=public_jwk, wrapped_private_key=priv)

    async def resolve(self, username: str) -> Optional[Dict[str, str]]:
        """
        Look up a public key with bounded retry.

        Each attempt is a read bounded by a timeout. Empty results, timeouts
        and transport errors all back off and retry.

        Args:
            username: User to resolve

        Returns:
            Public JWK, or None after every attempt came back empty

        Raises:
            DirectoryUnavailable: If every attempt failed to reach the replica
        """
        path = self.user_path(username, "pubKey")
        unreachable = 0
        delays = list(self.policy.delays())

        for attempt, delay in enumerate(delays, start=1):
            try:
                value = await asyncio.wait_for(
                    self.replica.get_once(path, self.policy.timeout_for(delay)),
                    timeout=self.policy.timeout_for(delay),
                )
                jwk = _parse_jwk(value)
                if jwk:
                    return jwk
            except asyncio.TimeoutError:
                logger.debug("Resolve %s attempt %d timed out", username, attempt)
            except ReplicaUnavailable as e:
                unreachable += 1
                logger.warning("Resolve %s attempt %d failed: %s", username, attempt, e)

            if attempt < len(delays):
                await self._sleep(delay)

        if unreachable == len(delays):
            raise DirectoryUnavailable(f"Directory unreachable while resolving {username}")

        logger.info("No public key found for %s after %d attempts", username, len(delays))
        return None

    async def require(self, username: str) -> Dict[str, str]:
        """resolve() that raises PartnerNotFound instead of returning None"""
        jwk = await self.resolve(username)
        if jwk is None:
            raise PartnerNotFound(username)
        return jwk
