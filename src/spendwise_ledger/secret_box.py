"""Authenticated encryption for free-text notes.

Notes are sealed with XChaCha20-Poly1305-IETF (libsodium via PyNaCl) under a
32-byte device-held key. The key lives in an explicit `KeySession` owned by the
caller: it is unavailable until initialized, dropped when the host locks the
session (e.g. the app is backgrounded) and restored on re-authentication.

Ciphertext format (base64):

    NONCE_LENGTH (1 byte) || NONCE (24 bytes) || CIPHERTEXT_WITH_TAG
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
from enum import Enum
from pathlib import Path

from nacl import bindings
from nacl import utils as nacl_utils
from nacl.exceptions import CryptoError

from .exceptions import AuthenticationFailedError, KeyUnavailableError

logger = logging.getLogger(__name__)

KEY_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES  # 32
NONCE_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES  # 24
TAG_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_ABYTES  # 16


class KeyState(Enum):
    UNINITIALIZED = "uninitialized"
    UNLOCKED = "unlocked"
    LOCKED = "locked"


def _fingerprint(key: bytes) -> bytes:
    return hashlib.sha256(b"spendwise-key-fingerprint" + key).digest()


def _check_key(key: bytes) -> bytes:
    if len(key) != KEY_SIZE:
        raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
    return bytes(key)


class KeySession:
    """Lifecycle of the note encryption key.

    UNINITIALIZED --initialize--> UNLOCKED --lock--> LOCKED --unlock--> UNLOCKED
    """

    def __init__(self):
        self._key: bytes | None = None
        self._fingerprint: bytes | None = None
        self.state = KeyState.UNINITIALIZED

    def initialize(self, key: bytes) -> None:
        """Install the key for this process and unlock the session."""
        self._key = _check_key(key)
        self._fingerprint = _fingerprint(self._key)
        self.state = KeyState.UNLOCKED
        logger.debug("Key session initialized")

    def lock(self) -> None:
        """Forget the key; encrypt/decrypt fail until the session is unlocked."""
        if self.state is KeyState.UNINITIALIZED:
            return
        self._key = None
        self.state = KeyState.LOCKED
        logger.info("Key session locked")

    def unlock(self, key: bytes) -> None:
        """
        Restore the key after re-authentication.

        Raises:
            KeyUnavailableError: If the session was never initialized
            AuthenticationFailedError: If the key differs from the initialized one
        """
        if self.state is KeyState.UNINITIALIZED or self._fingerprint is None:
            raise KeyUnavailableError("Key session was never initialized")
        key = _check_key(key)
        if not hmac.compare_digest(_fingerprint(key), self._fingerprint):
            raise AuthenticationFailedError("Key does not match the session key")
        self._key = key
        self.state = KeyState.UNLOCKED
        logger.info("Key session unlocked")

    @property
    def is_available(self) -> bool:
        return self.state is KeyState.UNLOCKED

    @property
    def key(self) -> bytes:
        if self._key is None or self.state is not KeyState.UNLOCKED:
            raise KeyUnavailableError(f"Encryption key not available ({self.state.value})")
        return self._key


class FileKeyStore:
    """Device-held key stored as hex in a file readable only by the owner."""

    def __init__(self, path: Path):
        self.path = path

    def load_or_create(self) -> bytes:
        """Load the key, generating and persisting a new one on first use."""
        if self.path.exists():
            try:
                key = bytes.fromhex(self.path.read_text().strip())
            except ValueError as e:
                raise KeyUnavailableError(f"Key file {self.path} is corrupted") from e
            if len(key) != KEY_SIZE:
                raise KeyUnavailableError(f"Key file {self.path} has the wrong length")
            return key

        key = nacl_utils.random(KEY_SIZE)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(key.hex())
        logger.info(f"Generated new encryption key at {self.path}")
        return key


class SecretBox:
    """Encrypt and decrypt strings with the session key."""

    def __init__(self, session: KeySession):
        self.session = session

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Text to seal

        Returns:
            Base64 token carrying its own nonce

        Raises:
            KeyUnavailableError: If the session is locked or uninitialized
        """
        key = self.session.key
        nonce = nacl_utils.random(NONCE_SIZE)
        sealed = bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
            plaintext.encode("utf-8"), None, nonce, key
        )
        combined = bytes([NONCE_SIZE]) + nonce + sealed
        return base64.b64encode(combined).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by `encrypt`.

        Raises:
            KeyUnavailableError: If the session is locked or uninitialized
            AuthenticationFailedError: If the token is malformed, was produced
                with another key, or was tampered with
        """
        key = self.session.key
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationFailedError("Invalid ciphertext encoding") from e

        if not combined or combined[0] != NONCE_SIZE:
            raise AuthenticationFailedError("Invalid ciphertext format: nonce length mismatch")
        nonce = combined[1 : 1 + NONCE_SIZE]
        sealed = combined[1 + NONCE_SIZE :]
        if len(nonce) != NONCE_SIZE or len(sealed) < TAG_SIZE:
            raise AuthenticationFailedError("Invalid ciphertext format: truncated")

        try:
            plaintext = bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
                sealed, None, nonce, key
            )
        except CryptoError as e:
            raise AuthenticationFailedError(
                "Decryption failed: authentication tag mismatch"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationFailedError("Decrypted note is not valid UTF-8") from e
