"""
Tests for wacrm.core.encryption: AES-256-GCM session backup encryption.

All tests use in-memory data; no external services needed.
"""
import os

import pytest

from wacrm.core.encryption import SessionEncryption, ENCRYPTED_HEADER
from wacrm.core.exceptions import DecryptionException


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_encryption(key: str = "a" * 32) -> SessionEncryption:
    """Create a SessionEncryption instance with a known key."""
    return SessionEncryption(key)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestSessionEncryptionInit:

    def test_valid_key(self):
        enc = SessionEncryption("f" * 32)
        assert enc is not None

    def test_key_too_short_raises(self):
        with pytest.raises(ValueError, match="at least 32"):
            SessionEncryption("short")

    def test_empty_key_raises(self):
        with pytest.raises(ValueError):
            SessionEncryption("")


# ---------------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------------

class TestEncryptDecrypt:

    def test_binary_payload(self):
        enc = _make_encryption()
        plaintext = os.urandom(4096)
        assert enc.decrypt("default", enc.encrypt("default", plaintext)) == plaintext

    def test_header_prefix(self):
        enc = _make_encryption()
        data = enc.encrypt("default", b"creds")
        assert data.startswith(ENCRYPTED_HEADER)
        assert enc.is_encrypted(data)
        assert not enc.is_encrypted(b"{\"noiseKey\": 1}")

    def test_random_nonce(self):
        """Each call uses a fresh nonce, so output must differ."""
        enc = _make_encryption()
        assert enc.encrypt("default", b"same data") != enc.encrypt("default", b"same data")

    def test_text_encoding(self):
        enc = _make_encryption()
        text = enc.encrypt_to_text("sales", b"auth files")
        assert isinstance(text, str)
        assert enc.decrypt_from_text("sales", text) == b"auth files"


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------

class TestDecryptFailures:

    def test_wrong_key_fails(self):
        data = _make_encryption("a" * 32).encrypt("default", b"secret")
        with pytest.raises(DecryptionException):
            _make_encryption("b" * 32).decrypt("default", data)

    def test_bound_to_session_id(self):
        enc = _make_encryption()
        data = enc.encrypt("default", b"secret")
        with pytest.raises(DecryptionException):
            enc.decrypt("sales", data)

    def test_missing_header(self):
        with pytest.raises(DecryptionException):
            _make_encryption().decrypt("default", b"plain bytes")

    def test_truncated_payload(self):
        with pytest.raises(DecryptionException):
            _make_encryption().decrypt("default", ENCRYPTED_HEADER + b"short")

    def test_tampered_ciphertext(self):
        enc = _make_encryption()
        data = bytearray(enc.encrypt("default", b"secret"))
        data[-1] ^= 0x01
        with pytest.raises(DecryptionException):
            enc.decrypt("default", bytes(data))
