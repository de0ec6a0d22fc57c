import base64
import binascii
import hashlib
import logging
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings
from app.core.exceptions import TokenDecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


class TokenEncryptionService:
    """
    AES-256-GCM encryption for OAuth tokens at rest.

    The key is the SHA-256 digest of the configured master key. Each
    ciphertext is base64(nonce || tag || ciphertext) so it carries
    everything needed to decrypt and authenticate it.
    """

    def __init__(self, master_key: Optional[str] = None):
        master_key = master_key if master_key is not None else settings.INTEGRATIONS_ENCRYPTION_KEY
        if not master_key:
            raise ValueError("INTEGRATIONS_ENCRYPTION_KEY is not configured")

        key = hashlib.sha256(master_key.encode("utf-8")).digest()
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token with a fresh random nonce."""
        nonce = os.urandom(NONCE_SIZE)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            TokenDecryptionError: on malformed input, a wrong key or tampering
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TokenDecryptionError("Stored token is not valid base64") from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise TokenDecryptionError("Stored token is too short")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE :]

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise TokenDecryptionError("Stored token failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TokenDecryptionError("Stored token is not valid UTF-8") from e


@lru_cache()
def get_token_encryption_service() -> TokenEncryptionService:
    return TokenEncryptionService()
