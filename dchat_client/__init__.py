"""
Chat client: encrypted-session synchronization on a replicated graph.

- Key directory with bounded-retry lookups
- Contact registry merging the local cache with the replica
- Message stream reconciler producing one ordered, decrypted timeline
"""

from .contacts import Contact, ContactRegistry, channel_id
from .directory import KeyDirectory, RetryPolicy
from .errors import (
    ChatError,
    PartnerNotFound,
    DirectoryUnavailable,
    ReplicaUnavailable,
    StorageQuotaExceeded,
)
from .reconciler import ChannelState, MessageStreamReconciler, RenderedMessage
from .replica import MemoryReplica, RelayReplica, Replica
from .session import ChatSession
from .storage import LocalCache

__all__ = [
    'Contact',
    'ContactRegistry',
    'channel_id',
    'KeyDirectory',
    'RetryPolicy',
    'ChatError',
    'PartnerNotFound',
    'DirectoryUnavailable',
    'ReplicaUnavailable',
    'StorageQuotaExceeded',
    'ChannelState',
    'MessageStreamReconciler',
    'RenderedMessage',
    'MemoryReplica',
    'RelayReplica',
    'Replica',
    'ChatSession',
    'LocalCache',
]
