# src/claude_usage_core/crypto_box.py

import base64
import binascii
import hashlib
import logging
import secrets
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .error_handler import DecryptError
from .utils.machine_id import get_machine_id

lib_logger = logging.getLogger("claude_usage_core")

APP_NAME = "claude-usage-core"
PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96-bit GCM nonce
TAG_LENGTH = 16


class CryptoBox:
    """
    AES-256-GCM sealing keyed from the local machine identity.

    The key is derived with PBKDF2-HMAC-SHA256 over `machine_id + app_name`,
    salted with SHA-256(machine_id), so it can be recomputed on every run
    without any key material on disk. A store file copied to another machine
    will not decrypt there.

    Envelope (base64 text): nonce(12) || tag(16) || ciphertext
    """

    def __init__(
        self,
        app_name: str = APP_NAME,
        machine_id_provider: Optional[Callable[[], str]] = None,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        self.app_name = app_name
        self.iterations = iterations
        self._machine_id_provider = machine_id_provider or get_machine_id
        self._key: Optional[bytes] = None

    def derive_key(self) -> bytes:
        """Derives (and memoizes for this instance) the 256-bit key."""
        if self._key is None:
            machine_id = self._machine_id_provider()
            salt = hashlib.sha256(machine_id.encode("utf-8")).digest()
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=salt,
                iterations=self.iterations,
            )
            self._key = kdf.derive((machine_id + self.app_name).encode("utf-8"))
            lib_logger.debug("Derived store encryption key from machine identity")
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """
        Seals plaintext under a fresh random nonce.

        Returns:
            base64(nonce || tag || ciphertext)
        """
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext; the envelope keeps it up front
        sealed = AESGCM(self.derive_key()).encrypt(
            nonce, plaintext.encode("utf-8"), None
        )
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        """
        Opens an envelope produced by encrypt().

        Raises:
            DecryptError: On bad base64, a truncated envelope, a failed tag
                check, or non-UTF-8 plaintext. Nothing partial is returned.
        """
        try:
            combined = base64.b64decode(envelope.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptError(f"Envelope is not valid base64: {e}") from e

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptError(
                f"Envelope too short ({len(combined)} bytes, need at least {NONCE_LENGTH + TAG_LENGTH})"
            )

        nonce = combined[:NONCE_LENGTH]
        tag = combined[NONCE_LENGTH : NONCE_LENGTH + TAG_LENGTH]
        ciphertext = combined[NONCE_LENGTH + TAG_LENGTH :]

        try:
            plaintext = AESGCM(self.derive_key()).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptError("Authentication tag mismatch (tampered or foreign envelope)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptError(f"Decrypted payload is not UTF-8: {e}") from e
