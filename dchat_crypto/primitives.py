"""
Cryptographic Primitives for End-to-End Encryption

This module is the only place ciphertext is produced or consumed. It provides
P-256 identity keys, ECDH shared-key derivation, AES-256-GCM encryption of
text and file payloads, and password wrapping of the private key for storage
in the replicated directory.
"""

import os
import json
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_SIZE = 12
KEY_SIZE = 32
WRAP_SALT_SIZE = 16
WRAP_ITERATIONS = 100000
WRAP_VERSION = "v1"
DEFAULT_MIME_TYPE = "application/octet-stream"
DECRYPTION_FAILED_TEXT = "\U0001F512 [Decryption Failed]"


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionFailure(CryptoError):
    """Authentication tag mismatch: wrong key, corrupted data or wrong nonce"""
    pass


@dataclass
class EncryptedPayload:
    """
    Ciphertext and nonce as stored in the replica.

    Attributes:
        ct: Base64 ciphertext with the GCM tag appended
        iv: Base64 12-byte nonce
    """
    ct: str
    iv: str

    def to_dict(self) -> Dict[str, str]:
        return {'ct': self.ct, 'iv': self.iv}


@dataclass
class DecryptedFile:
    """Decrypted file payload with the MIME type it was sent with"""
    data: bytes
    mime_type: str


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode('ascii'), validate=True)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def _b64url_decode(data: str) -> bytes:
    padding = '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate a P-256 keypair for ECDH key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, private_key.public_key()


def export_public_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, str]:
    """
    Export a P-256 public key as a JSON Web Key.

    Args:
        public_key: Key to export

    Returns:
        JWK dictionary with kty, crv, x and y members
    """
    numbers = public_key.public_numbers()
    return {
        'kty': 'EC',
        'crv': 'P-256',
        'x': _b64url_encode(numbers.x.to_bytes(KEY_SIZE, 'big')),
        'y': _b64url_encode(numbers.y.to_bytes(KEY_SIZE, 'big')),
    }


def export_private_jwk(private_key: ec.EllipticCurvePrivateKey) -> Dict[str, str]:
    """Export a P-256 private key as a JWK (public members plus d)"""
    jwk = export_public_jwk(private_key.public_key())
    d = private_key.private_numbers().private_value
    jwk['d'] = _b64url_encode(d.to_bytes(KEY_SIZE, 'big'))
    return jwk


def _public_numbers_from_jwk(jwk: Dict[str, str]) -> ec.EllipticCurvePublicNumbers:
    if jwk.get('kty') != 'EC' or jwk.get('crv') != 'P-256':
        raise CryptoError("Unsupported key type, expected EC P-256")
    try:
        x = int.from_bytes(_b64url_decode(jwk['x']), 'big')
        y = int.from_bytes(_b64url_decode(jwk['y']), 'big')
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise CryptoError(f"Malformed JWK: {e}")
    return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1())


def import_public_jwk(jwk: Dict[str, str]) -> ec.EllipticCurvePublicKey:
    """
    Import a P-256 public key from a JWK.

    Raises:
        CryptoError: If the JWK is malformed or not on the curve
    """
    numbers = _public_numbers_from_jwk(jwk)
    try:
        return numbers.public_key()
    except ValueError as e:
        raise CryptoError(f"Invalid public key: {e}")


def import_private_jwk(jwk: Dict[str, str]) -> ec.EllipticCurvePrivateKey:
    """Import a P-256 private key from a JWK containing d"""
    public_numbers = _public_numbers_from_jwk(jwk)
    try:
        d = int.from_bytes(_b64url_decode(jwk['d']), 'big')
        return ec.EllipticCurvePrivateNumbers(d, public_numbers).private_key()
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise CryptoError(f"Invalid private key: {e}")


def derive_shared_key(private_key: ec.EllipticCurvePrivateKey,
                      public_key: ec.EllipticCurvePublicKey) -> bytes:
    """
    Derive the per-pair AES-256-GCM key by ECDH.

    The raw 32-byte shared secret is used directly as the AES key, so
    derive_shared_key(a_priv, b_pub) == derive_shared_key(b_priv, a_pub).

    Args:
        private_key: Our private key
        public_key: Partner's public key

    Returns:
        32-byte symmetric key
    """
    return private_key.exchange(ec.ECDH(), public_key)


def _encrypt(key: bytes, data: bytes) -> EncryptedPayload:
    # A fresh nonce for every call; never reuse one under the same key
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, data, None)
    return EncryptedPayload(ct=b64encode(ciphertext), iv=b64encode(nonce))


def _decrypt(key: bytes, ct: str, iv: str) -> bytes:
    try:
        nonce = b64decode(iv)
        ciphertext = b64decode(ct)
    except (ValueError, binascii.Error, AttributeError) as e:
        raise DecryptionFailure(f"Malformed ciphertext encoding: {e}")

    if len(nonce) != NONCE_SIZE:
        raise DecryptionFailure("Invalid nonce length")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise DecryptionFailure("Authentication tag mismatch")
    except ValueError as e:
        raise DecryptionFailure(f"Decryption failed: {e}")


def encrypt_text(key: bytes, plaintext: str) -> EncryptedPayload:
    """
    Encrypt a text message using AES-256-GCM.

    Args:
        key: 32-byte shared key
        plaintext: Message text

    Returns:
        EncryptedPayload with base64 ciphertext and nonce
    """
    return _encrypt(key, plaintext.encode('utf-8'))


def decrypt_text(key: bytes, ct: str, iv: str) -> str:
    """
    Decrypt a text message.

    Args:
        key: 32-byte shared key
        ct: Base64 ciphertext
        iv: Base64 nonce

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionFailure: If authentication fails or the payload is malformed
    """
    plaintext = _decrypt(key, ct, iv)
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError:
        raise DecryptionFailure("Decrypted payload is not valid UTF-8")


def encrypt_file(key: bytes, data: bytes) -> EncryptedPayload:
    """Encrypt a whole file payload; no chunking"""
    return _encrypt(key, data)


def decrypt_file(key: bytes, ct: str, iv: str, mime_type: Optional[str] = None) -> DecryptedFile:
    """
    Decrypt a file payload.

    Args:
        key: 32-byte shared key
        ct: Base64 ciphertext
        iv: Base64 nonce
        mime_type: MIME type recorded by the sender

    Returns:
        DecryptedFile with the plaintext bytes

    Raises:
        DecryptionFailure: If authentication fails
    """
    return DecryptedFile(data=_decrypt(key, ct, iv), mime_type=mime_type or DEFAULT_MIME_TYPE)


def _password_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=WRAP_ITERATIONS,
    )
    return kdf.derive(password.encode('utf-8'))


def wrap_private_key(private_jwk: Dict[str, str], password: str) -> str:
    """
    Encrypt a private JWK with a password-derived key.

    Args:
        private_jwk: JWK including the private member d
        password: User's password

    Returns:
        "v1.<salt>.<nonce>.<ciphertext>" with base64 parts
    """
    salt = os.urandom(WRAP_SALT_SIZE)
    payload = _encrypt(_password_key(password, salt), json.dumps(private_jwk).encode('utf-8'))
    return '.'.join([WRAP_VERSION, b64encode(salt), payload.iv, payload.ct])


def unwrap_private_key(wrapped: str, password: str) -> Optional[Dict[str, str]]:
    """
    Decrypt a wrapped private JWK.

    Args:
        wrapped: Output of wrap_private_key
        password: User's password

    Returns:
        The private JWK, or None if the password is wrong or data is corrupt
    """
    parts = wrapped.split('.') if isinstance(wrapped, str) else []
    if len(parts) != 4 or parts[0] != WRAP_VERSION:
        return None

    try:
        salt = b64decode(parts[1])
        plaintext = _decrypt(_password_key(password, salt), parts[3], parts[2])
        return json.loads(plaintext.decode('utf-8'))
    except (CryptoError, ValueError, binascii.Error):
        return None
