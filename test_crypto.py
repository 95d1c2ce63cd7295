#!/usr/bin/env python3
"""
Tests for cryptographic primitives and the shared key cache.
"""

import sys
import asyncio
import base64

from dchat_crypto.primitives import (
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
    CryptoError,
    DecryptionFailure,
)
from dchat_crypto.session_keys import SessionKeyCache


def _flip_bit(b64: str, index: int) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


def test_ecdh_symmetry():
    """Test that both sides derive the same shared key"""
    print("Testing ECDH exchange...")

    alice_private, alice_public = generate_keypair()
    bob_private, bob_public = generate_keypair()

    alice_shared = derive_shared_key(alice_private, bob_public)
    bob_shared = derive_shared_key(bob_private, alice_public)

    assert alice_shared == bob_shared, "ECDH exchange failed"
    assert len(alice_shared) == 32, "Wrong shared key length"

    print("✓ ECDH exchange works")


def test_jwk_roundtrip():
    """Test JWK export/import preserves the key"""
    print("Testing JWK export/import...")

    private_key, public_key = generate_keypair()
    public_jwk = export_public_jwk(public_key)
    private_jwk = export_private_jwk(private_key)

    assert public_jwk['kty'] == 'EC' and public_jwk['crv'] == 'P-256'
    assert 'd' not in public_jwk, "Public JWK leaks private member"

    other_private, other_public = generate_keypair()
    restored_private = import_private_jwk(private_jwk)
    restored_public = import_public_jwk(public_jwk)

    assert derive_shared_key(restored_private, other_public) == derive_shared_key(other_private, restored_public)

    try:
        import_public_jwk({'kty': 'RSA', 'n': 'x', 'e': 'AQAB'})
        assert False, "Should have raised CryptoError"
    except CryptoError:
        pass

    print("✓ JWK export/import works")


def test_text_encryption():
    """Test text encryption round trip and fresh nonces"""
    print("Testing text encryption...")

    key = b"0" * 32
    first = encrypt_text(key, "hi")
    second = encrypt_text(key, "hi")

    assert decrypt_text(key, first.ct, first.iv) == "hi", "Decryption failed"
    assert first.iv != second.iv, "Nonce reused"
    assert first.ct != second.ct, "Ciphertext repeated"

    unicode_text = "héllo wörld \U0001F600"
    payload = encrypt_text(key, unicode_text)
    assert decrypt_text(key, payload.ct, payload.iv) == unicode_text

    empty = encrypt_text(key, "")
    assert decrypt_text(key, empty.ct, empty.iv) == ""

    print("✓ Text encryption works")


def test_wrong_key_fails():
    """Test authentication with the wrong key"""
    key = b"0" * 32
    payload = encrypt_text(key, "secret")

    try:
        decrypt_text(b"1" * 32, payload.ct, payload.iv)
        assert False, "Should have raised DecryptionFailure"
    except DecryptionFailure:
        pass


def test_tamper_detection():
    """Test that flipping any bit of ciphertext or nonce is detected"""
    print("Testing tamper detection...")

    key = b"k" * 32
    payload = encrypt_text(key, "attack at dawn")
    ct_len = len(base64.b64decode(payload.ct))

    for index in range(ct_len):
        try:
            decrypt_text(key, _flip_bit(payload.ct, index), payload.iv)
            assert False, f"Tampered ciphertext byte {index} accepted"
        except DecryptionFailure:
            pass

    for index in range(12):
        try:
            decrypt_text(key, payload.ct, _flip_bit(payload.iv, index))
            assert False, f"Tampered nonce byte {index} accepted"
        except DecryptionFailure:
            pass

    for ct, iv in [("not base64!", payload.iv), (payload.ct, "AAAA")]:
        try:
            decrypt_text(key, ct, iv)
            assert False, "Malformed payload accepted"
        except DecryptionFailure:
            pass

    print("✓ Tamper detection works")


def test_file_encryption():
    """Test file payload encryption"""
    print("Testing file encryption...")

    key = b"f" * 32
    data = bytes(range(256)) * 64
    payload = encrypt_file(key, data)

    decrypted = decrypt_file(key, payload.ct, payload.iv, "image/png")
    assert decrypted.data == data
    assert decrypted.mime_type == "image/png"
    assert decrypt_file(key, payload.ct, payload.iv, "").mime_type == "application/octet-stream"

    try:
        decrypt_file(b"g" * 32, payload.ct, payload.iv, "image/png")
        assert False, "Should have raised DecryptionFailure"
    except DecryptionFailure:
        pass

    print("✓ File encryption works")


def test_private_key_wrapping():
    """Test password wrapping of the private key"""
    print("Testing private key wrapping...")

    private_key, _ = generate_keypair()
    private_jwk = export_private_jwk(private_key)
    wrapped = wrap_private_key(private_jwk, "correct horse")

    assert "correct horse" not in wrapped
    assert unwrap_private_key(wrapped, "correct horse") == private_jwk
    assert unwrap_private_key(wrapped, "wrong password") is None
    assert unwrap_private_key("garbage", "correct horse") is None

    print("✓ Private key wrapping works")


def test_session_key_cache():
    """Test the key cache derives once per partner"""
    print("Testing session key cache...")

    alice_private, _ = generate_keypair()
    bob_private, bob_public = generate_keypair()
    calls = []

    async def resolve(partner):
        calls.append(partner)
        await asyncio.sleep(0)
        return export_public_jwk(bob_public)

    async def scenario():
        cache = SessionKeyCache(alice_private, resolve)
        first, second = await asyncio.gather(cache.get_or_derive("bob"), cache.get_or_derive("bob"))
        third = await cache.get_or_derive("bob")
        return cache, first, second, third

    cache, first, second, third = asyncio.run(scenario())

    assert first == second == third == derive_shared_key(alice_private, bob_public)
    assert calls == ["bob"], "Partner key resolved more than once"
    assert "bob" in cache

    cache.clear()
    assert "bob" not in cache and len(cache) == 0

    print("✓ Session key cache works")


def test_session_key_cache_failure_not_cached():
    """Test a failed resolution is retried on the next call"""
    alice_private, _ = generate_keypair()
    _, bob_public = generate_keypair()
    attempts = []

    class NotFound(Exception):
        pass

    async def resolve(partner):
        attempts.append(partner)
        if len(attempts) == 1:
            raise NotFound(partner)
        return export_public_jwk(bob_public)

    async def scenario():
        cache = SessionKeyCache(alice_private, resolve)
        try:
            await cache.get_or_derive("bob")
            assert False, "Should have raised NotFound"
        except NotFound:
            pass
        return await cache.get_or_derive("bob")

    key = asyncio.run(scenario())
    assert len(key) == 32
    assert attempts == ["bob", "bob"]


def test_session_key_cache_clear_during_derivation():
    """Test a derivation cancelled by clear() does not evict its successor"""
    alice_private, _ = generate_keypair()
    _, bob_public = generate_keypair()
    calls = []

    async def scenario():
        release = asyncio.Event()

        async def resolve(partner):
            calls.append(partner)
            await release.wait()
            return export_public_jwk(bob_public)

        cache = SessionKeyCache(alice_private, resolve)
        first = asyncio.ensure_future(cache.get_or_derive("bob"))
        for _ in range(3):
            await asyncio.sleep(0)

        cache.clear()
        second = asyncio.ensure_future(cache.get_or_derive("bob"))
        for _ in range(5):
            await asyncio.sleep(0)
        third = asyncio.ensure_future(cache.get_or_derive("bob"))

        release.set()
        return await asyncio.gather(first, second, third, return_exceptions=True)

    first, second, third = asyncio.run(scenario())

    assert isinstance(first, asyncio.CancelledError)
    assert second == third == derive_shared_key(alice_private, bob_public)
    assert calls == ["bob", "bob"], "Derivation restarted after clear()"


def run_all_tests():
    """Run all tests"""
    print("\n" + "="*50)
    print("Running Cryptographic Tests")
    print("="*50 + "\n")

    try:
        test_ecdh_symmetry()
        test_jwk_roundtrip()
        test_text_encryption()
        test_wrong_key_fails()
        test_tamper_detection()
        test_file_encryption()
        test_private_key_wrapping()
        test_session_key_cache()
        test_session_key_cache_failure_not_cached()
        test_session_key_cache_clear_during_derivation()

        print("\n" + "="*50)
        print("✓ All tests passed!")
        print("="*50 + "\n")
        return 0

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1
    except Exception as e:
        print(f"\n✗ Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
