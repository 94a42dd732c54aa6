"""
Cryptographic primitives for AES-256-GCM field encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- Envelope: Parsed envelope (nonce, tag, ciphertext, optional key version)
- AesGcmCipher: AES-256-GCM encryption/decryption operations
- hash_for_lookup / generate_secure_id: key-independent helpers

Envelope token format:
    base64(nonce[16] || tag[16] || ciphertext)          (unversioned)
    "<key_version>:" + base64(nonce || tag || ciphertext) (versioned)

':' is outside the base64 alphabet, so both forms parse unambiguously.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, EncryptionError, MalformedEnvelope

# Cryptographic constants
KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 16  # 128 bits, fixed by the stored envelope format
TAG_SIZE: int = 16  # 128 bits (authentication tag)
DEFAULT_SECURE_ID_LENGTH: int = 32

VERSION_SEPARATOR: str = ":"
MAX_VERSION_DIGITS: int = 9


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise EncryptionError("Key must be bytes or bytearray")
        if len(key_bytes) != KEY_SIZE:
            raise EncryptionError(
                f"Invalid key size: expected {KEY_SIZE}, got {len(key_bytes)}"
            )
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def fingerprint(self) -> str:
        """Short SHA-256 prefix identifying the key; safe to log."""
        return hashlib.sha256(self._bytes).hexdigest()[:8]

    def __len__(self) -> int:
        return len(self._bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureKey):
            return NotImplemented
        return secrets.compare_digest(bytes(self._bytes), bytes(other._bytes))

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass(frozen=True)
class Envelope:
    """
    One encrypted value: nonce, authentication tag, and ciphertext body.

    key_version is None for envelopes written before keys were versioned.
    """

    nonce: bytes  # 16 bytes
    tag: bytes  # 16 bytes
    ciphertext: bytes
    key_version: Optional[int] = None

    def to_blob(self) -> bytes:
        """Concatenate nonce || tag || ciphertext."""
        return self.nonce + self.tag + self.ciphertext

    @classmethod
    def from_blob(cls, blob: bytes, key_version: Optional[int] = None) -> Envelope:
        """
        Split a raw nonce || tag || ciphertext blob.

        Raises:
            MalformedEnvelope: If blob is shorter than nonce + tag
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise MalformedEnvelope(
                f"Envelope too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(
            nonce=blob[:NONCE_SIZE],
            tag=blob[NONCE_SIZE:min_size],
            ciphertext=blob[min_size:],
            key_version=key_version,
        )

    def to_token(self) -> str:
        """Encode as a single text token, version-prefixed when versioned."""
        body = base64.standard_b64encode(self.to_blob()).decode("ascii")
        if self.key_version is None:
            return body
        return f"{self.key_version}{VERSION_SEPARATOR}{body}"

    @classmethod
    def from_token(cls, token: str) -> Envelope:
        """
        Decode a text token produced by to_token (or by the unversioned format).

        Raises:
            MalformedEnvelope: If the token is not a string, has a bad version
                prefix, is not valid base64, or is too short
        """
        if not isinstance(token, str):
            raise MalformedEnvelope(
                f"Envelope token must be str, got {type(token).__name__}"
            )

        key_version: Optional[int] = None
        body = token
        if VERSION_SEPARATOR in token:
            prefix, _, body = token.partition(VERSION_SEPARATOR)
            if not (prefix.isascii() and prefix.isdigit()):
                raise MalformedEnvelope("Invalid key version prefix")
            if len(prefix) > MAX_VERSION_DIGITS:
                raise MalformedEnvelope("Key version prefix too long")
            key_version = int(prefix)

        try:
            blob = base64.b64decode(body, validate=True)
        except ValueError as e:
            raise MalformedEnvelope(f"Base64 decode error: {e}") from e

        return cls.from_blob(blob, key_version)


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Nonces come from the secrets module, which is safe to call concurrently.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        key_version: Optional[int] = None,
    ) -> Envelope:
        """
        Encrypt plaintext with AES-256-GCM under a fresh random nonce.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt
            key_version: Version recorded in the envelope, if any

        Returns:
            Envelope with nonce, tag and ciphertext

        Raises:
            EncryptionError: If encryption fails
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        aesgcm = AESGCM(key.as_bytes())

        try:
            sealed = aesgcm.encrypt(nonce, plaintext, None)
        except (TypeError, ValueError, OverflowError) as e:
            raise EncryptionError(f"Encryption error: {e}") from e

        # AESGCM appends the tag; the stored format puts it before the body.
        return Envelope(
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
            key_version=key_version,
        )

    @staticmethod
    def decrypt(key: SecureKey, envelope: Envelope) -> bytes:
        """
        Decrypt and authenticate an envelope.

        Raises:
            AuthenticationFailure: If the tag does not verify
        """
        aesgcm = AESGCM(key.as_bytes())

        try:
            return aesgcm.decrypt(envelope.nonce, envelope.ciphertext + envelope.tag, None)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise AuthenticationFailure("Decryption failed") from None


def derive_local_key(secret: str) -> SecureKey:
    """Derive a stable 256-bit key by hashing a development secret with SHA-256."""
    return SecureKey(hashlib.sha256(secret.encode("utf-8")).digest())


def hash_for_lookup(plaintext: str) -> str:
    """
    Deterministic SHA-256 hex digest for equality lookups.

    Encrypted columns cannot be queried by value; a digest column stored
    alongside them can.
    """
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def generate_secure_id(length: int = DEFAULT_SECURE_ID_LENGTH) -> str:
    """
    Generate a hex-encoded identifier from `length` cryptographically random bytes.

    Raises:
        ValueError: If length is not a positive integer
    """
    if isinstance(length, bool) or not isinstance(length, int) or length <= 0:
        raise ValueError(f"length must be a positive integer, got {length!r}")
    return secrets.token_hex(length)
