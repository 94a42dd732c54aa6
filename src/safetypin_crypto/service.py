"""
Field encryption service.

This module provides:
- FieldEncryptionService: encrypt/decrypt sensitive fields at rest, rotate
  keys, and compute lookup hashes and secure identifiers

Lifecycle: initialize -> [rotate]* -> shutdown. The service owns its key
ring; callers receive the service by injection rather than through module
state, so independent services (and keys) can coexist in one process.

Concurrency:
- First use is guarded by an asyncio.Lock with a double-checked test, so
  concurrent callers trigger a single key acquisition.
- Rotation builds a new immutable KeyRing and swaps one reference; an
  in-flight encrypt/decrypt works on whichever ring it read.
- The lock is created for the running event loop, so a service may be
  used from successive asyncio.run calls (one loop at a time).

Key versions are numbered per service instance, starting at 1. Two
services whose key source mints fresh keys (KMS data keys) both write
"1:" tokens under different keys; a version number says which retained
key to try, not that the key is the one that wrote the token.
"""

from __future__ import annotations

import asyncio
import json
import warnings
from typing import Any, Optional


from .crypto import (
    DEFAULT_SECURE_ID_LENGTH,
    AesGcmCipher,
    Envelope,
    generate_secure_id,
    hash_for_lookup,
)
from .errors import (
    AuthenticationFailure,
    MalformedEnvelope,
    RotationUnsupported,
    SerializationError,
    ServiceClosedError,
)
from .key_ring import DEFAULT_MAX_KEY_VERSIONS, KeyRing, KeyVersion
from .key_source import KeySource
from .log import get_logger

logger = get_logger(__name__)


class FieldEncryptionService:
    """
    Authenticated field encryption backed by a pluggable key source.

    Tokens written by encrypt carry the key version that produced them.
    Unversioned tokens (written before versioning) are decrypted by trying
    each retained key, newest first.
    """

    def __init__(
        self,
        key_source: KeySource,
        *,
        production: bool = False,
        max_key_versions: int = DEFAULT_MAX_KEY_VERSIONS,
    ) -> None:
        """
        Args:
            key_source: Source of key material, selected once at startup
            production: Whether the runtime is production (enables rotation)
            max_key_versions: Number of key versions retained for decryption
        """
        if max_key_versions < 1:
            raise ValueError("max_key_versions must be at least 1")
        self._key_source = key_source
        self._production = production
        self._max_key_versions = max_key_versions
        self._ring: Optional[KeyRing] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    async def __aenter__(self) -> FieldEncryptionService:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def key_source(self) -> KeySource:
        return self._key_source

    @property
    def production(self) -> bool:
        return self._production

    @property
    def initialized(self) -> bool:
        return self._ring is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_version(self) -> Optional[int]:
        ring = self._ring
        return ring.active.version if ring is not None else None

    @property
    def key_ring(self) -> Optional[KeyRing]:
        return self._ring

    def _get_lock(self) -> asyncio.Lock:
        # An asyncio.Lock binds to the loop it first waits on; a service
        # reused under a new loop (successive asyncio.run calls) gets a new one.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _check_open(self) -> None:
        if self._closed:
            raise ServiceClosedError("FieldEncryptionService has been shut down")

    # -------------------------------------------------------------------------
    # Key lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Acquire the first key. Subsequent calls are no-ops while a key is held.

        Raises:
            KeySourceUnavailable: If the key source fails; the service stays
                uninitialized so a later call can try again
            ServiceClosedError: If the service has been shut down
        """
        await self._ensure_ring()

    async def _ensure_ring(self) -> KeyRing:
        self._check_open()
        ring = self._ring
        if ring is not None:
            return ring

        async with self._get_lock():
            self._check_open()
            if self._ring is None:
                key = await self._key_source.fetch_key()
                self._ring = KeyRing.initial(
                    key, self._key_source.name, self._max_key_versions
                )
                logger.info(
                    "encryption_initialized",
                    source=self._key_source.name,
                    version=self._ring.active.version,
                    fingerprint=key.fingerprint(),
                )
            return self._ring

    async def rotate(self) -> Optional[KeyVersion]:
        """
        Replace the active key with a fresh one from the key source.

        Outside production (or with a source that cannot mint new keys) this
        is a no-op that warns with RotationUnsupported and returns None.
        Previous versions stay in the ring for decryption.

        Returns:
            The new active KeyVersion, or None if rotation was skipped

        Raises:
            KeySourceUnavailable: If the key source fails; the ring is unchanged
        """
        self._check_open()
        if not self._production or not self._key_source.supports_rotation:
            logger.warning(
                "key_rotation_unsupported",
                production=self._production,
                source=self._key_source.name,
            )
            warnings.warn(
                "Key rotation is not supported outside production",
                RotationUnsupported,
                stacklevel=2,
            )
            return None

        async with self._get_lock():
            self._check_open()
            key = await self._key_source.fetch_key()
            if self._ring is None:
                new_ring = KeyRing.initial(key, self._key_source.name, self._max_key_versions)
                old_version = None
            else:
                new_ring = self._ring.with_new_key(key, self._key_source.name)
                old_version = self._ring.active.version
            self._ring = new_ring

        logger.info(
            "encryption_key_rotated",
            old_version=old_version,
            new_version=new_ring.active.version,
            retained=[kv.version for kv in new_ring.versions],
            fingerprint=key.fingerprint(),
        )
        return new_ring.active

    async def shutdown(self) -> None:
        """Drop all key material. Further operations raise ServiceClosedError."""
        async with self._get_lock():
            if self._closed:
                return
            self._closed = True
            self._ring = None
        logger.info("encryption_shutdown")

    # -------------------------------------------------------------------------
    # Encrypt / decrypt
    # -------------------------------------------------------------------------

    async def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a text value under the active key.

        Returns:
            Versioned envelope token
        """
        ring = await self._ensure_ring()
        active = ring.active
        envelope = AesGcmCipher.encrypt(
            active.key, plaintext.encode("utf-8"), active.version
        )
        return envelope.to_token()

    async def decrypt(self, token: str) -> str:
        """
        Decrypt an envelope token.

        Raises:
            MalformedEnvelope: If the token cannot be parsed
            KeyNotFoundError: If the token's key version is no longer retained
            AuthenticationFailure: If authentication fails under every candidate key
        """
        ring = await self._ensure_ring()
        envelope = Envelope.from_token(token)

        if envelope.key_version is not None:
            key_version = ring.get(envelope.key_version)
            plaintext = AesGcmCipher.decrypt(key_version.key, envelope)
        else:
            plaintext = self._decrypt_unversioned(ring, envelope)

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelope("Decrypted value is not valid UTF-8 text") from e

    @staticmethod
    def _decrypt_unversioned(ring: KeyRing, envelope: Envelope) -> bytes:
        for key_version in ring.newest_first():
            try:
                return AesGcmCipher.decrypt(key_version.key, envelope)
            except AuthenticationFailure:
                continue
        raise AuthenticationFailure("Decryption failed")

    def needs_reencrypt(self, token: str) -> bool:
        """
        True when the token was not written under the active key version.

        Only parses the token; nothing is decrypted. A False result does not
        prove this service can decrypt the token: another instance with a
        different key also numbers its first key 1.
        """
        envelope = Envelope.from_token(token)
        return envelope.key_version is None or envelope.key_version != self.active_version

    async def reencrypt(self, token: str) -> str:
        """Decrypt a token and encrypt the value again under the active key."""
        return await self.encrypt(await self.decrypt(token))

    # -------------------------------------------------------------------------
    # Structured credentials
    # -------------------------------------------------------------------------

    async def encrypt_credentials(self, credentials: Any) -> str:
        """
        Encrypt a credential payload.

        Strings are encrypted as-is; anything else is serialized as JSON.

        Raises:
            SerializationError: If the payload is not JSON serializable
        """
        if isinstance(credentials, str):
            plaintext = credentials
        else:
            try:
                plaintext = json.dumps(credentials, separators=(",", ":"))
            except (TypeError, ValueError) as e:
                raise SerializationError(f"Failed to serialize credentials: {e}") from e
        return await self.encrypt(plaintext)

    async def decrypt_credentials(self, token: str) -> Any:
        """
        Decrypt a credential payload.

        Returns the parsed JSON object or array when the plaintext is one,
        otherwise the plaintext string.
        """
        plaintext = await self.decrypt(token)
        if plaintext.startswith(("{", "[")):
            try:
                return json.loads(plaintext)
            except json.JSONDecodeError:
                # Bracket-prefixed text that isn't JSON is a plain string value.
                return plaintext
        return plaintext

    # -------------------------------------------------------------------------
    # Key-independent helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def hash_for_lookup(plaintext: str) -> str:
        return hash_for_lookup(plaintext)

    @staticmethod
    def generate_secure_id(length: int = DEFAULT_SECURE_ID_LENGTH) -> str:
        return generate_secure_id(length)
