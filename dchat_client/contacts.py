"""
Contact registry.

Keeps the set of chat sessions known to the logged-in user. Cached contacts
are shown immediately; the replica's per-user chat list is merged in as it
arrives. Chat links are written to both participants' lists without any
transaction, so either side may be missing a link for a while; the registry
re-asserts links from its cache at load time and whenever traffic shows a
channel in use that the replica list does not contain.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .directory import KeyDirectory
from .errors import InvalidUsername, ReplicaUnavailable
from .replica import Replica, join_path
from .storage import LocalCache


logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_username(username: str) -> str:
    """Strip characters that could break the channel identifier format"""
    return _UNSAFE_CHARS.sub("", username)


def channel_id(user_a: str, user_b: str) -> str:
    """
    Deterministic identifier for the channel between two users.

    Both parties compute the same value independently:
    channel_id("bob", "alice") == channel_id("alice", "bob") == "alice:bob"
    """
    safe_a = sanitize_username(user_a)
    safe_b = sanitize_username(user_b)
    if not safe_a or not safe_b:
        raise InvalidUsername("Invalid usernames for chat link")
    return ":".join(sorted([safe_a, safe_b]))


def partner_from_channel(chat_id: str, username: str) -> Optional[str]:
    """Return the other participant of a channel, or None"""
    for name in chat_id.split(":"):
        if name and name != username:
            return name
    return None


def validate_username(username: str, min_length: int = 0, max_length: int = 0) -> str:
    """
    Check a username and return it trimmed.

    Raises:
        InvalidUsername: With a message suitable for the user
    """
    trimmed = (username or "").strip()
    if not trimmed:
        raise InvalidUsername("Username is required.")
    if min_length and len(trimmed) < min_length:
        raise InvalidUsername(f"Username must be at least {min_length} characters.")
    if max_length and len(trimmed) > max_length:
        raise InvalidUsername(f"Username must be {max_length} characters or less.")
    if not USERNAME_RE.match(trimmed):
        raise InvalidUsername("Username can only contain letters, numbers, underscores, and hyphens.")
    return trimmed


@dataclass
class Contact:
    """A chat partner and the channel shared with them"""
    username: str
    chat_id: str

    def to_dict(self) -> Dict[str, str]:
        return {'username': self.username, 'chatId': self.chat_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['Contact']:
        username = data.get('username') if isinstance(data, dict) else None
        chat_id = data.get('chatId') if isinstance(data, dict) else None
        if not username or not chat_id:
            return None
        return cls(username=username, chat_id=chat_id)


class ContactRegistry:
    """
    Merges the local contact cache with the replica's chat list.
    """

    def __init__(self, username: str, replica: Replica, directory: KeyDirectory, cache: LocalCache):
        """
        Initialize the registry.

        Args:
            username: Logged-in user
            replica: Replicated store
            directory: Key directory used to validate partners
            cache: Local durable cache
        """
        self.username = username
        self.replica = replica
        self.directory = directory
        self.cache = cache
        self.contacts: List[Contact] = []
        self._remote_ids: Set[str] = set()
        self._on_change: Optional[Callable[[List[Contact]], None]] = None
        self._subscribed = False

    @property
    def chats_path(self) -> str:
        return join_path("users", self.username, "chats")

    def find(self, partner: str) -> Optional[Contact]:
        for contact in self.contacts:
            if contact.username == partner:
                return contact
        return None

    def _notify(self):
        if self._on_change:
            self._on_change(list(self.contacts))

    def _persist(self):
        self.cache.save_contacts(self.username, [c.to_dict() for c in self.contacts])

    def _add(self, contact: Contact) -> bool:
        for existing in self.contacts:
            if existing.username == contact.username or existing.chat_id == contact.chat_id:
                return False
        self.contacts.insert(0, contact)
        self._persist()
        self._notify()
        return True

    async def load(self, on_change: Optional[Callable[[List[Contact]], None]] = None) -> List[Contact]:
        """
        Load contacts: cache first, then the live replica list.

        Args:
            on_change: Called with the full contact list on every change

        Returns:
            The contacts known once the subscription is in place
        """
        self._on_change = on_change

        cached = self.cache.load_contacts(self.username) or []
        restored = [c for c in (Contact.from_dict(d) for d in cached) if c]
        if restored:
            self.contacts = restored
            self._notify()
            await self.restore_links(restored)

        await self.replica.subscribe_map(self.chats_path, self._handle_entry)
        self._subscribed = True
        return list(self.contacts)

    async def _handle_entry(self, value: Any, key: str):
        chat_id = None
        if isinstance(value, str):
            chat_id = value
        elif isinstance(value, dict) and isinstance(value.get('#'), str):
            chat_id = value['#']
        if not chat_id:
            return

        self._remote_ids.add(chat_id)
        partner = partner_from_channel(chat_id, self.username)
        if partner:
            self._add(Contact(username=partner, chat_id=chat_id))

    async def _link(self, user: str, chat_id: str):
        # Keyed by chat id so repeated links stay a single set member
        await self.replica.put(join_path("users", user, "chats", chat_id), chat_id)

    async def restore_links(self, contacts: List[Contact]):
        """Re-register chat links on both sides; failures are logged"""
        for contact in contacts:
            for user in (self.username, contact.username):
                try:
                    await self._link(user, contact.chat_id)
                except ReplicaUnavailable as e:
                    logger.warning("Could not restore chat link %s for %s: %s", contact.chat_id, user, e)

    async def start_chat(self, partner: str) -> str:
        """
        Start (or reopen) a chat with a partner.

        Args:
            partner: Partner username

        Returns:
            The channel identifier

        Raises:
            InvalidUsername: For empty, malformed or own usernames
            PartnerNotFound: If the partner has no published key
            ReplicaUnavailable: If neither chat link could be written
        """
        partner = validate_username(partner)
        if partner == self.username:
            raise InvalidUsername("You can't chat with yourself.")

        await self.directory.require(partner)
        chat_id = channel_id(self.username, partner)

        written = 0
        for user in (self.username, partner):
            try:
                await self._link(user, chat_id)
                written += 1
            except ReplicaUnavailable as e:
                logger.warning("Chat link %s for %s not written: %s", chat_id, user, e)
        if not written:
            raise ReplicaUnavailable("Failed to create chat. Please try again.")

        self._add(Contact(username=partner, chat_id=chat_id))
        logger.info("Started chat %s", chat_id)
        return chat_id

    async def observe_channel(self, chat_id: str):
        """
        Heal a missing link after seeing traffic on a channel.

        Called when messages arrive on a channel; if the replica's chat list
        never delivered this channel, the link is written again on both sides.
        """
        partner = partner_from_channel(chat_id, self.username)
        if not partner or chat_id in self._remote_ids:
            return

        contact = Contact(username=partner, chat_id=chat_id)
        self._add(contact)
        logger.info("Healing missing chat link %s", chat_id)
        await self.restore_links([contact])

    async def close(self):
        if self._subscribed:
            await self.replica.unsubscribe(self.chats_path)
            self._subscribed = False
        self._on_change = None
