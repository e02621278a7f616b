"""Tests for the AES-256-GCM credential envelope."""

import base64

import pytest

from content_sync.core.errors import CredentialError
from content_sync.credentials import ENVELOPE_KEY, CredentialCipher, is_encrypted


class TestCredentialCipher:
    """Tests for CredentialCipher."""

    def test_envelope_shape(self, cipher):
        """Envelopes hold base64 iv, tag and ciphertext."""
        envelope = cipher.encrypt({"access_token": "xoxb-1"})

        assert list(envelope) == [ENVELOPE_KEY]
        iv, tag, ciphertext = envelope[ENVELOPE_KEY].split(":")
        assert len(base64.b64decode(iv)) == 12
        assert len(base64.b64decode(tag)) == 16
        assert base64.b64decode(ciphertext)

    def test_decrypt_opens_envelope(self, cipher):
        """Encrypted credentials decrypt to the original dict."""
        credentials = {"access_token": "ghp_abc", "refresh_token": "r1"}
        assert cipher.decrypt(cipher.encrypt(credentials)) == credentials

    def test_plaintext_passes_through(self, cipher):
        """Credentials stored before encryption still work."""
        assert cipher.decrypt({"access_token": "plain"}) == {"access_token": "plain"}
        assert cipher.decrypt(None) == {}

    def test_wrong_key_fails(self, cipher):
        """A different key cannot open the envelope."""
        envelope = cipher.encrypt({"access_token": "secret"})
        other = CredentialCipher("cd" * 32)
        with pytest.raises(CredentialError):
            other.decrypt(envelope)

    def test_malformed_envelope(self, cipher):
        """Envelopes without three parts are rejected."""
        with pytest.raises(CredentialError):
            cipher.decrypt({ENVELOPE_KEY: "not-an-envelope"})

    def test_invalid_key(self):
        """Keys must be 64 hex chars."""
        with pytest.raises(ValueError):
            CredentialCipher("zz")
        with pytest.raises(ValueError):
            CredentialCipher("ab" * 16)

    def test_is_encrypted(self, cipher):
        """is_encrypted recognizes envelopes only."""
        assert is_encrypted(cipher.encrypt({"a": 1}))
        assert not is_encrypted({"access_token": "x"})
        assert not is_encrypted(None)
