"""
Local durable cache for the chat client.

Stores identity material, contact lists and per-channel message lists as JSON
documents in SQLite, under a byte quota. Every record carries an updatedAt
timestamp used for least-recently-updated eviction when the quota is hit.
"""

import json
import time
import sqlite3
import logging
from typing import Any, Callable, Dict, List, Optional
from pathlib import Path

from .errors import StorageQuotaExceeded


logger = logging.getLogger(__name__)

USER_PREFIX = "dchat_user_"
CHATS_PREFIX = "dchat_chats_"
MESSAGES_PREFIX = "dchat_messages_"

MESSAGE_EVICTION_FRACTION = 0.2


def now_ms() -> int:
    return int(time.time() * 1000)


class LocalCache:
    """
    Quota-limited JSON key/value store.

    Writes raise StorageQuotaExceeded when they would push the stored size
    over the quota. The record-level helpers below handle eviction and decide
    which failures are reported to the caller.
    """

    def __init__(self, storage_dir: str = "client_data", quota_bytes: int = 5 * 1024 * 1024,
                 clock: Callable[[], int] = now_ms):
        """
        Initialize the cache.

        Args:
            storage_dir: Directory holding the SQLite file
            quota_bytes: Maximum total size of stored JSON values
            clock: Millisecond clock used for updatedAt
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.storage_dir / "dchat_cache.db"
        self.quota_bytes = quota_bytes
        self.clock = clock
        self.db: Optional[sqlite3.Connection] = sqlite3.connect(str(self.db_path))
        self._init_database()

    def _init_database(self):
        """Initialize SQLite database"""
        cursor = self.db.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                size INTEGER NOT NULL
            )
        """)
        self.db.commit()

    # Key/value primitives

    def set(self, key: str, value: Any):
        """
        Store a JSON value.

        Raises:
            StorageQuotaExceeded: If the write would exceed the quota
        """
        raw = json.dumps(value)
        size = len(raw.encode("utf-8"))

        cursor = self.db.cursor()
        cursor.execute("SELECT COALESCE(SUM(size), 0) FROM records WHERE key != ?", (key,))
        used = cursor.fetchone()[0]
        if used + size > self.quota_bytes:
            raise StorageQuotaExceeded(
                f"Writing {key} ({size} bytes) exceeds quota of {self.quota_bytes} bytes"
            )

        cursor.execute(
            "INSERT OR REPLACE INTO records (key, value, size) VALUES (?, ?, ?)",
            (key, raw, size)
        )
        self.db.commit()

    def get(self, key: str) -> Optional[Any]:
        cursor = self.db.cursor()
        cursor.execute("SELECT value FROM records WHERE key = ?", (key,))
        row = cursor.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Corrupt cache record %s", key)
            return None

    def remove(self, key: str):
        cursor = self.db.cursor()
        cursor.execute("DELETE FROM records WHERE key = ?", (key,))
        self.db.commit()

    def keys(self, prefix: str = "") -> List[str]:
        cursor = self.db.cursor()
        cursor.execute(
            "SELECT key FROM records WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix)
        )
        return [row[0] for row in cursor.fetchall()]

    def _oldest_first(self, keys: List[str]) -> List[str]:
        def updated_at(key: str) -> int:
            record = self.get(key)
            if isinstance(record, dict):
                return record.get("updatedAt") or 0
            return 0
        return sorted(keys, key=updated_at)

    # Identity records

    def save_user(self, username: str, public_jwk: Dict[str, str], wrapped_private_key: str):
        """
        Cache a user's identity record.

        On quota pressure the least recently updated other identity record is
        evicted and the write retried once.

        Raises:
            StorageQuotaExceeded: If the write still fails after eviction
        """
        key = USER_PREFIX + username
        record = {
            "username": username,
            "pubKey": public_jwk,
            "encryptedPrivKey": wrapped_private_key,
            "updatedAt": self.clock(),
        }
        try:
            self.set(key, record)
            return
        except StorageQuotaExceeded:
            others = [k for k in self.keys(USER_PREFIX) if k != key]
            if not others:
                raise
            oldest = self._oldest_first(others)[0]
            logger.info("Storage quota exceeded, evicting identity record %s", oldest)
            self.remove(oldest)

        self.set(key, record)

    def load_user(self, username: str) -> Optional[Dict[str, Any]]:
        """
        Load a cached identity.

        Returns:
            {"pubKey": ..., "encryptedPrivKey": ...} or None
        """
        record = self.get(USER_PREFIX + username)
        if not isinstance(record, dict):
            return None
        if not record.get("pubKey") or not record.get("encryptedPrivKey"):
            return None
        return {"pubKey": record["pubKey"], "encryptedPrivKey": record["encryptedPrivKey"]}

    def clear_user(self, username: str):
        self.remove(USER_PREFIX + username)
        self.remove(CHATS_PREFIX + username)

    # Contacts

    def save_contacts(self, username: str, contacts: List[Dict[str, str]]):
        """Cache a contact list; failures are logged and never raised"""
        try:
            self.set(CHATS_PREFIX + username, {"contacts": contacts, "updatedAt": self.clock()})
        except StorageQuotaExceeded:
            logger.warning("Storage quota exceeded for contacts cache of %s", username)
        except sqlite3.Error as e:
            logger.warning("Failed to persist contacts cache: %s", e)

    def load_contacts(self, username: str) -> Optional[List[Dict[str, str]]]:
        record = self.get(CHATS_PREFIX + username)
        if not isinstance(record, dict) or not isinstance(record.get("contacts"), list):
            return None
        return record["contacts"]

    # Messages

    def save_messages(self, chat_id: str, messages: List[Dict[str, Any]]) -> bool:
        """
        Cache a channel's message list.

        On quota pressure the oldest fifth (at least one) of the other
        channels' message records are evicted and the write retried once.

        Returns:
            True if the messages were stored
        """
        key = MESSAGES_PREFIX + chat_id
        record = {"messages": messages, "updatedAt": self.clock()}
        try:
            self.set(key, record)
            return True
        except StorageQuotaExceeded:
            pass
        except sqlite3.Error as e:
            logger.warning("Failed to persist messages cache: %s", e)
            return False

        others = self._oldest_first([k for k in self.keys(MESSAGES_PREFIX) if k != key])
        if not others:
            logger.warning("Storage quota exceeded for messages of %s, caching disabled", chat_id)
            return False

        to_remove = max(1, int(len(others) * MESSAGE_EVICTION_FRACTION))
        for stale in others[:to_remove]:
            self.remove(stale)
        logger.info("Evicted %d message caches to store %s", to_remove, chat_id)

        try:
            self.set(key, record)
            return True
        except StorageQuotaExceeded:
            logger.warning("Storage quota still exceeded for messages of %s", chat_id)
            return False

    def load_messages(self, chat_id: str) -> Optional[List[Dict[str, Any]]]:
        record = self.get(MESSAGES_PREFIX + chat_id)
        if not isinstance(record, dict) or not isinstance(record.get("messages"), list):
            return None
        return record["messages"]

    def clear_messages(self, chat_id: str):
        self.remove(MESSAGES_PREFIX + chat_id)

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None
