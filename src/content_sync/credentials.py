from __future__ import annotations

import base64
import json
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import structlog

from content_sync.core.errors import CredentialError


ENVELOPE_KEY = "_encrypted"
_NONCE_BYTES = 12
_TAG_BYTES = 16
logger = structlog.get_logger(__name__)


def is_encrypted(credentials: Optional[dict[str, Any]]) -> bool:
    """Whether a stored credentials value is an encrypted envelope."""
    return bool(credentials) and isinstance(credentials.get(ENVELOPE_KEY), str)


class CredentialCipher:
    """AES-256-GCM envelope for source credentials at rest.

    The envelope is ``{"_encrypted": "<iv>:<authTag>:<ciphertext>"}`` with
    base64 components, a 96-bit IV and a 128-bit auth tag. Adapters get an
    instance injected and call ``decrypt`` to obtain usable tokens.
    """

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be hex-encoded.") from exc
        if len(key) != 32:
            raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be 32 bytes (64 hex chars).")
        self._aesgcm = AESGCM(key)

    def encrypt(self, credentials: dict[str, Any]) -> dict[str, str]:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(
            nonce,
            json.dumps(credentials).encode("utf-8"),
            None,
        )
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        parts = [base64.b64encode(p).decode("ascii") for p in (nonce, tag, ciphertext)]
        return {ENVELOPE_KEY: ":".join(parts)}

    def decrypt(self, credentials: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Open an envelope. Plaintext dicts not yet migrated pass through."""
        if not credentials:
            return {}
        if not is_encrypted(credentials):
            return dict(credentials)
        try:
            iv_b64, tag_b64, ct_b64 = credentials[ENVELOPE_KEY].split(":")
            nonce = base64.b64decode(iv_b64)
            tag = base64.b64decode(tag_b64)
            ciphertext = base64.b64decode(ct_b64)
        except ValueError as exc:
            raise CredentialError("decrypt", "malformed envelope") from exc
        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise CredentialError("decrypt", "invalid IV or auth tag length")
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("credential_decrypt_failed", error_type=exc.__class__.__name__)
            raise CredentialError("decrypt", "authentication tag mismatch") from exc
        return json.loads(plaintext.decode("utf-8"))
