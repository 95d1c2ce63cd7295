"""
Logged-in chat session.

Bootstraps an identity (signup/login with a password-wrapped private key)
and owns everything scoped to one logged-in user: the shared key cache, the
contact registry and the message reconciler. Logging out destroys them.
"""

import logging
from typing import Callable, Dict, List, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from dchat_crypto import (
    SessionKeyCache,
    CryptoError,
    export_private_jwk,
    export_public_jwk,
    generate_keypair,
    import_private_jwk,
    unwrap_private_key,
    wrap_private_key,
)

from .contacts import Contact, ContactRegistry, validate_username
from .directory import KeyDirectory
from .errors import AuthenticationFailed, ChatError, InvalidPassword, InvalidUsername, StorageQuotaExceeded
from .reconciler import MAX_FILE_BYTES, MessageStreamReconciler, RenderedMessage
from .replica import Replica
from .storage import LocalCache


logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 20
MIN_PASSWORD_LENGTH = 6


class ChatSession:
    """
    Entry point for a user interface.

    Typical use:
        session = ChatSession(replica, cache)
        await session.login("alice", "secret")
        await session.load_contacts(on_change)
        chat_id = await session.start_chat("bob")
        await session.open_chat(chat_id, "bob")
        await session.send_text("hi")
    """

    def __init__(self, replica: Replica, cache: LocalCache, directory: Optional[KeyDirectory] = None,
                 max_file_bytes: int = MAX_FILE_BYTES):
        """
        Initialize the session.

        Args:
            replica: Replicated store
            cache: Local durable cache
            directory: Key directory (built on the replica if omitted)
            max_file_bytes: Attachment size cap
        """
        self.replica = replica
        self.cache = cache
        self.directory = directory or KeyDirectory(replica)
        self.max_file_bytes = max_file_bytes

        self.username: Optional[str] = None
        self.public_jwk: Optional[Dict[str, str]] = None
        self.private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self.keys: Optional[SessionKeyCache] = None
        self.registry: Optional[ContactRegistry] = None
        self.reconciler: Optional[MessageStreamReconciler] = None

    @property
    def logged_in(self) -> bool:
        return self.username is not None

    @staticmethod
    def _validate(username: str, password: str) -> str:
        username = validate_username(username, MIN_USERNAME_LENGTH, MAX_USERNAME_LENGTH)
        if not password:
            raise InvalidPassword("Password is required.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidPassword(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return username

    def _cache_identity(self, username: str, public_jwk: Dict[str, str], wrapped: str):
        try:
            self.cache.save_user(username, public_jwk, wrapped)
        except StorageQuotaExceeded:
            logger.warning("Storage quota exceeded, continuing without identity cache")

    async def signup(self, username: str, password: str):
        """
        Create an account and log in.

        Raises:
            InvalidUsername: If validation fails or the name is taken
        """
        username = self._validate(username, password)
        if await self.directory.fetch_account(username):
            raise InvalidUsername("Username already taken.")

        private_key, public_key = generate_keypair()
        public_jwk = export_public_jwk(public_key)
        wrapped = wrap_private_key(export_private_jwk(private_key), password)

        await self.directory.create_account(username, public_jwk, wrapped)
        self._cache_identity(username, public_jwk, wrapped)
        logger.info("Created account %s", username)
        self._start(username, public_jwk, private_key)

    async def login(self, username: str, password: str):
        """
        Log in, restoring the account from the local backup if the
        replica does not have it.

        Raises:
            AuthenticationFailed: On unknown user or wrong password
        """
        username = self._validate(username, password)
        account = await self.directory.fetch_account(username)

        if account:
            public_jwk, wrapped = account.public_jwk, account.wrapped_private_key
        else:
            cached = self.cache.load_user(username)
            if not cached:
                raise AuthenticationFailed("Invalid username or password.")
            public_jwk, wrapped = cached["pubKey"], cached["encryptedPrivKey"]
            await self.directory.create_account(username, public_jwk, wrapped)
            logger.info("Account %s restored from local backup", username)

        private_jwk = unwrap_private_key(wrapped, password)
        if not private_jwk:
            raise AuthenticationFailed("Invalid username or password.")
        try:
            private_key = import_private_jwk(private_jwk)
        except CryptoError as e:
            raise AuthenticationFailed(f"Stored key is unusable: {e}")

        self._cache_identity(username, public_jwk, wrapped)
        self._start(username, public_jwk, private_key)

    def _start(self, username: str, public_jwk: Dict[str, str], private_key: ec.EllipticCurvePrivateKey):
        self.username = username
        self.public_jwk = public_jwk
        self.private_key = private_key
        self.keys = SessionKeyCache(private_key, self.directory.require)
        self.registry = ContactRegistry(username, self.replica, self.directory, self.cache)
        self.reconciler = MessageStreamReconciler(
            username, self.replica, self.keys, self.cache,
            max_file_bytes=self.max_file_bytes,
            on_traffic=self.registry.observe_channel,
        )

    def _require_login(self):
        if not self.logged_in:
            raise ChatError("Not logged in")

    async def load_contacts(self, on_change: Optional[Callable[[List[Contact]], None]] = None) -> List[Contact]:
        self._require_login()
        return await self.registry.load(on_change)

    @property
    def contacts(self) -> List[Contact]:
        return list(self.registry.contacts) if self.registry else []

    async def start_chat(self, partner: str) -> str:
        self._require_login()
        return await self.registry.start_chat(partner)

    async def open_chat(self, chat_id: str, partner: str,
                        listener: Optional[Callable[[List[RenderedMessage]], None]] = None):
        """Select a channel; the previous one is torn down first"""
        self._require_login()
        self.reconciler.set_listener(listener)
        await self.reconciler.open(chat_id, partner)

    async def send_text(self, text: str) -> str:
        self._require_login()
        return await self.reconciler.send_text(text)

    async def send_file(self, name: str, data: bytes, mime_type: Optional[str] = None) -> str:
        self._require_login()
        return await self.reconciler.send_file(name, data, mime_type)

    async def logout(self):
        """Tear down subscriptions and destroy the key cache"""
        if self.reconciler:
            await self.reconciler.close()
        if self.registry:
            await self.registry.close()
        if self.keys:
            self.keys.clear()

        logger.info("Logged out %s", self.username)
        self.username = None
        self.public_jwk = None
        self.private_key = None
        self.keys = None
        self.registry = None
        self.reconciler = None
