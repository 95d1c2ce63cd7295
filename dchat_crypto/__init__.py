"""
Cryptographic module for end-to-end encrypted chat.

Implements per-pair symmetric encryption:
- P-256 ECDH key agreement between identity keys
- AES-256-GCM for messages and files
- Per-session cache of derived shared keys
"""

from .primitives import (
    generate_keypair,
    export_public_jwk,
    export_private_jwk,
    import_public_jwk,
    import_private_jwk,
    derive_shared_key,
    encrypt_text,
    decrypt_text,
    encrypt_file,
    decrypt_file,
    wrap_private_key,
    unwrap_private_key,
    EncryptedPayload,
    DecryptedFile,
    CryptoError,
    DecryptionFailure,
    DECRYPTION_FAILED_TEXT,
)
from .session_keys import SessionKeyCache

__all__ = [
    'generate_keypair',
    'export_public_jwk',
    'export_private_jwk',
    'import_public_jwk',
    'import_private_jwk',
    'derive_shared_key',
    'encrypt_text',
    'decrypt_text',
    'encrypt_file',
    'decrypt_file',
    'wrap_private_key',
    'unwrap_private_key',
    'EncryptedPayload',
    'DecryptedFile',
    'CryptoError',
    'DecryptionFailure',
    'DECRYPTION_FAILED_TEXT',
    'SessionKeyCache',
]
