"""
Versioned key ring.

The newest version is active (encrypt + decrypt); older versions are kept
for decryption only, up to max_versions. Rings are immutable: rotation
builds a new ring, and the service swaps its single reference to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Tuple

from .crypto import SecureKey
from .errors import KeyNotFoundError

DEFAULT_MAX_KEY_VERSIONS: int = 5


@dataclass(frozen=True)
class KeyVersion:
    """One key held by the ring."""

    version: int
    key: SecureKey
    source: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"v{self.version} ({self.source}, {self.key.fingerprint()})"


class KeyRing:
    """Ordered, bounded set of key versions (oldest first)."""

    __slots__ = ("_versions", "_max_versions")

    def __init__(
        self,
        versions: Tuple[KeyVersion, ...],
        max_versions: int = DEFAULT_MAX_KEY_VERSIONS,
    ) -> None:
        if max_versions < 1:
            raise ValueError("max_versions must be at least 1")
        if not versions:
            raise ValueError("KeyRing requires at least one key version")
        self._versions = tuple(versions[-max_versions:])
        self._max_versions = max_versions

    @classmethod
    def initial(
        cls,
        key: SecureKey,
        source: str,
        max_versions: int = DEFAULT_MAX_KEY_VERSIONS,
    ) -> KeyRing:
        """Create a ring holding a single version 1 key."""
        return cls((KeyVersion(version=1, key=key, source=source),), max_versions)

    @property
    def active(self) -> KeyVersion:
        return self._versions[-1]

    @property
    def versions(self) -> Tuple[KeyVersion, ...]:
        return self._versions

    @property
    def max_versions(self) -> int:
        return self._max_versions

    def with_new_key(self, key: SecureKey, source: str) -> KeyRing:
        """Return a new ring whose active version is `key`, evicting the oldest beyond the bound."""
        new_version = KeyVersion(version=self.active.version + 1, key=key, source=source)
        return KeyRing(self._versions + (new_version,), self._max_versions)

    def get(self, version: int) -> KeyVersion:
        """
        Look up a retained version.

        Raises:
            KeyNotFoundError: If the version was never issued or has been evicted
        """
        for key_version in self._versions:
            if key_version.version == version:
                return key_version
        raise KeyNotFoundError(f"Key version {version} is not retained")

    def newest_first(self) -> Iterator[KeyVersion]:
        return reversed(self._versions)

    def __contains__(self, version: object) -> bool:
        return any(kv.version == version for kv in self._versions)

    def __len__(self) -> int:
        return len(self._versions)

    def __repr__(self) -> str:
        return f"KeyRing(active=v{self.active.version}, versions={[kv.version for kv in self._versions]})"
