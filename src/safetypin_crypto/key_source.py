"""
Key sources for the field encryption service.

This module provides:
- KeySource: Abstract interface for acquiring a 256-bit data key
- ManagedKeySource: AWS KMS GenerateDataKey (production)
- DerivedLocalKeySource: SHA-256 of a development secret (development/test)
- StaticKeySource: Caller-supplied key material

The source is chosen once at startup (see config.build_key_source), so the
encryption path never branches on the runtime environment.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .crypto import KEY_SIZE, SecureKey, derive_local_key
from .errors import KeySourceUnavailable
from .log import get_logger

logger = get_logger(__name__)

DEFAULT_DEV_SECRET = "SafetyPin-Dev-Key-For-Local-Development"


class KeySource(ABC):
    """
    Abstract source of encryption keys.

    fetch_key is async so that network-backed sources do not block the
    event loop.
    """

    name: str = "abstract"
    supports_rotation: bool = False

    @abstractmethod
    async def fetch_key(self) -> SecureKey:
        """Return a 256-bit key."""
        ...


class ManagedKeySource(KeySource):
    """
    AWS KMS-backed key source.

    Every fetch asks KMS for a freshly generated AES-256 data key. Failures
    raise KeySourceUnavailable and are never retried here.
    """

    name = "kms"
    supports_rotation = True

    def __init__(
        self,
        key_id: str,
        client: Any = None,
        region: Optional[str] = None,
    ) -> None:
        """
        Args:
            key_id: KMS key ID, ARN, or alias
            client: Preconfigured boto3 KMS client (created lazily if None)
            region: AWS region for the lazily created client
        """
        if not key_id:
            raise ValueError("key_id is required for ManagedKeySource")
        self._key_id = key_id
        self._client = client
        self._region = region

    @property
    def key_id(self) -> str:
        return self._key_id

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def _generate_data_key(self) -> bytes:
        try:
            response = self._get_client().generate_data_key(
                KeyId=self._key_id,
                KeySpec="AES_256",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("kms_generate_data_key_failed", key_id=self._key_id, error=str(e))
            raise KeySourceUnavailable(f"KMS generate data key failed: {e}") from e

        plaintext = response.get("Plaintext")
        if not isinstance(plaintext, (bytes, bytearray)) or len(plaintext) != KEY_SIZE:
            raise KeySourceUnavailable("KMS returned an invalid data key")
        return bytes(plaintext)

    async def fetch_key(self) -> SecureKey:
        key = SecureKey(await asyncio.to_thread(self._generate_data_key))
        logger.info("kms_data_key_generated", key_id=self._key_id, fingerprint=key.fingerprint())
        return key


class DerivedLocalKeySource(KeySource):
    """
    Deterministic key derived from a development secret.

    Must never be selected in production: the default secret is public.
    """

    name = "derived-local"
    supports_rotation = False

    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = secret or DEFAULT_DEV_SECRET

    @property
    def uses_default_secret(self) -> bool:
        return self._secret == DEFAULT_DEV_SECRET

    async def fetch_key(self) -> SecureKey:
        if self.uses_default_secret:
            logger.warning("using_default_development_key")
        return derive_local_key(self._secret)


class StaticKeySource(KeySource):
    """Key source returning caller-provided key material."""

    name = "static"
    supports_rotation = False

    def __init__(self, key: bytes | SecureKey) -> None:
        self._key = key if isinstance(key, SecureKey) else SecureKey(key)

    async def fetch_key(self) -> SecureKey:
        return self._key
