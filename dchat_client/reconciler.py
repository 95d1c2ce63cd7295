"""
Message stream reconciler.

Merges the local message cache and the replica's live feed for the open
channel into one timeline ordered by timestamp, de-duplicated by the
replica-assigned entry key, decrypted and written back to the cache.

Per channel: IDLE -> HYDRATING (cached messages rendered) -> LIVE (feed
merged). Switching channels or logging out tears the subscription down and
bumps a generation counter; callbacks from an older generation are dropped.
"""

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from dchat_crypto import (
    DECRYPTION_FAILED_TEXT,
    CryptoError,
    SessionKeyCache,
    decrypt_file,
    decrypt_text,
    encrypt_file,
    encrypt_text,
)

from .errors import ChatError, FileTooLarge
from .replica import Replica, join_path, new_entry_key
from .storage import LocalCache, now_ms


logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 5 * 1024 * 1024
DANGEROUS_EXTENSIONS = ('.exe', '.bat', '.sh', '.scr', '.vbs', '.js', '.jar')


class ChannelState(enum.Enum):
    IDLE = "idle"
    HYDRATING = "hydrating"
    LIVE = "live"


@dataclass
class RenderedMessage:
    """
    One decrypted timeline entry as shown to the user.

    Attributes:
        key: Replica entry key
        sender: Sender username
        timestamp: Sender wall clock (ms)
        is_mine: True for the viewer's own messages
        text: Plaintext, or the failure sentinel
        is_file: True for attachments
        file_name: Attachment name
        mime_type: Attachment MIME type
        size: Attachment size reported by the sender
        data: Decrypted attachment bytes
        pending: True while the partner's key is unavailable
        failed: True if decryption failed
    """
    key: str
    sender: str
    timestamp: int
    is_mine: bool
    text: Optional[str] = None
    is_file: bool = False
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    data: Optional[bytes] = None
    failed: bool = False
    pending: bool = False


def _timestamp(record: Dict[str, Any]) -> int:
    try:
        return int(record.get('timestamp') or 0)
    except (TypeError, ValueError):
        return 0


class MessageStreamReconciler:
    """
    Owns the timeline of the currently open channel.
    """

    def __init__(self, username: str, replica: Replica, keys: SessionKeyCache, cache: LocalCache,
                 max_file_bytes: int = MAX_FILE_BYTES,
                 on_traffic: Optional[Callable[[str], Awaitable[None]]] = None,
                 clock: Callable[[], int] = now_ms):
        """
        Initialize the reconciler.

        Args:
            username: Logged-in user
            replica: Replicated store
            keys: Shared key cache of the session
            cache: Local durable cache
            max_file_bytes: Attachment size cap
            on_traffic: Awaited with the channel id when the partner's
                messages arrive from the feed
            clock: Millisecond clock used to timestamp sent messages
        """
        self.username = username
        self.replica = replica
        self.keys = keys
        self.cache = cache
        self.max_file_bytes = max_file_bytes
        self.on_traffic = on_traffic
        self.clock = clock

        self.state = ChannelState.IDLE
        self.chat_id: Optional[str] = None
        self.partner: Optional[str] = None
        self.timeline: List[RenderedMessage] = []

        self._generation = 0
        self._arrivals = itertools.count()
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._arrival: Dict[str, int] = {}
        self._order: List[str] = []
        self._rendered: Dict[str, RenderedMessage] = {}
        self._own_keys: Set[str] = set()
        self._echoes: Dict[str, str] = {}
        self._key_failed = False
        self._listener: Optional[Callable[[List[RenderedMessage]], None]] = None

    def set_listener(self, listener: Optional[Callable[[List[RenderedMessage]], None]]):
        """Register the callable that receives every new timeline"""
        self._listener = listener

    @property
    def feed_path(self) -> Optional[str]:
        return join_path("chat", self.chat_id) if self.chat_id else None

    def _reset(self):
        self._entries.clear()
        self._arrival.clear()
        self._order = []
        self._rendered.clear()
        self._own_keys.clear()
        self._echoes.clear()
        self._key_failed = False
        self.timeline = []

    def _insert(self, key: str, record: Dict[str, Any]):
        record['_key'] = key
        self._entries[key] = record
        self._arrival[key] = next(self._arrivals)
        # Ties on timestamp fall back to arrival order
        self._order = sorted(self._entries, key=lambda k: (_timestamp(self._entries[k]), self._arrival[k]))

    def _persist(self):
        if self.chat_id:
            self.cache.save_messages(self.chat_id, [self._entries[k] for k in self._order])

    async def open(self, chat_id: str, partner: str):
        """
        Open a channel: render the cache, then subscribe to the live feed.

        Cached entries are shown before any key lookup; entries that need
        the partner's key stay pending until it resolves.

        Args:
            chat_id: Channel identifier
            partner: The other participant
        """
        await self.close()

        self._generation += 1
        generation = self._generation
        self.chat_id = chat_id
        self.partner = partner
        self.state = ChannelState.HYDRATING

        for record in self.cache.load_messages(chat_id) or []:
            if not isinstance(record, dict):
                continue
            key = record.get('_key') or f"{_timestamp(record)}-{record.get('sender')}"
            if key in self._entries:
                continue
            # Only this client's own cached entries keep their plaintext echo
            if record.get('sender') == self.username and isinstance(record.get('text'), str):
                self._own_keys.add(key)
            self._insert(key, dict(record))

        await self._render(generation, resolve=False)

        await self.replica.subscribe_map(self.feed_path, self._entry_handler(generation, chat_id))
        if generation != self._generation:
            return
        self.state = ChannelState.LIVE
        logger.debug("Channel %s live with %d cached messages", chat_id, len(self._order))
        await self._render(generation)

    def _entry_handler(self, generation: int, chat_id: str):
        async def on_entry(value: Any, key: str):
            if generation != self._generation or chat_id != self.chat_id:
                return
            await self._accept(generation, value, key)
        return on_entry

    async def _accept(self, generation: int, value: Any, key: str):
        if not key or not isinstance(value, dict) or key in self._entries:
            return

        record = dict(value)
        record.pop('text', None)
        if key in self._echoes:
            record['text'] = self._echoes.pop(key)
        self._insert(key, record)
        self._persist()

        if self.on_traffic and record.get('sender') == self.partner:
            await self.on_traffic(self.chat_id)
            if generation != self._generation:
                return

        await self._render(generation)

    async def refresh(self):
        """Retry the partner key lookup for entries still pending"""
        if self.state == ChannelState.IDLE:
            return
        self._key_failed = False
        await self._render(self._generation)

    async def _render(self, generation: int, resolve: bool = True):
        """
        Publish the timeline, then resolve the partner key if entries wait on it.

        A failed lookup is remembered for the rest of this generation so
        further feed entries do not each repeat the directory backoff.
        """
        self._build(self.keys.peek(self.partner))
        if not resolve or self._key_failed or not any(m.pending for m in self.timeline):
            return

        try:
            shared_key = await self.keys.get_or_derive(self.partner)
        except (ChatError, CryptoError) as e:
            if generation == self._generation:
                self._key_failed = True
                logger.warning("Key for %s unavailable, messages stay pending: %s", self.partner, e)
            return

        if generation == self._generation:
            self._build(shared_key)

    def _build(self, shared_key: Optional[bytes]):
        timeline = []
        for key in self._order:
            message = self._rendered.get(key)
            if message is None:
                message = self._decrypt(key, self._entries[key], shared_key)
                if not message.pending:
                    self._rendered[key] = message
            timeline.append(message)

        self.timeline = timeline
        if self._listener:
            self._listener(list(timeline))

    def _decrypt(self, key: str, record: Dict[str, Any], shared_key: Optional[bytes]) -> RenderedMessage:
        sender = str(record.get('sender') or '')
        message = RenderedMessage(
            key=key,
            sender=sender,
            timestamp=_timestamp(record),
            is_mine=sender == self.username,
        )

        try:
            if record.get('isFile'):
                message.is_file = True
                message.file_name = record.get('name')
                message.size = record.get('size')
                ct = record.get('ctFile') or record.get('ct')
                iv = record.get('ivFile') or record.get('iv')
                if not ct or not iv:
                    raise CryptoError("File message without ciphertext")
                if shared_key is None:
                    message.pending = True
                    return message
                decrypted = decrypt_file(shared_key, ct, iv, record.get('type'))
                message.data = decrypted.data
                message.mime_type = decrypted.mime_type
                return message

            if message.is_mine and key in self._own_keys and isinstance(record.get('text'), str):
                message.text = record['text']
                return message

            if not record.get('ct') or not record.get('iv'):
                raise CryptoError("Message without ciphertext")
            if shared_key is None:
                message.pending = True
                return message
            message.text = decrypt_text(shared_key, record['ct'], record['iv'])
        except CryptoError as e:
            logger.warning("Decryption failed for message %s: %s", key, e)
            message.text = DECRYPTION_FAILED_TEXT
            message.failed = True

        return message

    def _require_open(self):
        if self.state == ChannelState.IDLE or not self.chat_id:
            raise ChatError("No active chat")

    async def _publish(self, record: Dict[str, Any], echo: Optional[str] = None) -> str:
        key = new_entry_key()
        self._own_keys.add(key)
        if echo is not None:
            self._echoes[key] = echo
        try:
            await self.replica.put(join_path(self.feed_path, key), record)
        except Exception:
            self._own_keys.discard(key)
            self._echoes.pop(key, None)
            raise
        return key

    async def send_text(self, text: str) -> str:
        """
        Encrypt and send a text message on the open channel.

        The plaintext is kept locally as an echo so this client renders its
        own message without decrypting; only ciphertext reaches the replica.

        Returns:
            The replica entry key
        """
        self._require_open()
        text = text.strip()
        if not text:
            raise ValueError("Message is empty")

        shared_key = await self.keys.get_or_derive(self.partner)
        payload = encrypt_text(shared_key, text)
        return await self._publish({
            'sender': self.username,
            'ct': payload.ct,
            'iv': payload.iv,
            'timestamp': self.clock(),
        }, echo=text)

    async def send_file(self, name: str, data: bytes, mime_type: Optional[str] = None) -> str:
        """
        Encrypt and send a file on the open channel.

        Raises:
            FileTooLarge: If the file exceeds the size cap
        """
        self._require_open()
        if len(data) > self.max_file_bytes:
            raise FileTooLarge(
                f"File too large. Please choose a file under {self.max_file_bytes // (1024 * 1024)}MB."
            )
        if name.lower().endswith(DANGEROUS_EXTENSIONS):
            logger.warning("Sending executable file %s", name)

        shared_key = await self.keys.get_or_derive(self.partner)
        payload = encrypt_file(shared_key, data)
        return await self._publish({
            'sender': self.username,
            'name': name,
            'type': mime_type or '',
            'size': len(data),
            'ivFile': payload.iv,
            'ctFile': payload.ct,
            'timestamp': self.clock(),
            'isFile': True,
        })

    async def close(self):
        """Tear down the open channel; no callback is applied afterwards"""
        path = self.feed_path
        self._generation += 1
        self.state = ChannelState.IDLE
        self.chat_id = None
        self.partner = None
        self._reset()
        if path:
            await self.replica.unsubscribe(path)
