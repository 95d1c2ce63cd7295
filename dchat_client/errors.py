"""
Error taxonomy for the chat client.

None of these terminate a session: each is either retried with bounded
attempts or reported to the user as an actionable or transient message.
"""


class ChatError(Exception):
    """Base exception for chat client errors"""
    pass


class PartnerNotFound(ChatError):
    """Directory resolution exhausted its retries without a public key"""

    def __init__(self, username: str):
        super().__init__(f"User '{username}' not found. Please check the username and try again.")
        self.username = username


class ReplicaUnavailable(ChatError):
    """No relay peer could be reached"""
    pass


class DirectoryUnavailable(ChatError):
    """The key directory could not be read or written"""
    pass


class StorageQuotaExceeded(ChatError):
    """A local cache write would exceed the storage quota"""
    pass


class InvalidUsername(ChatError):
    pass


class AuthenticationFailed(ChatError):
    pass


class FileTooLarge(ChatError):
    pass


class InvalidPassword(ChatError):
    pass
