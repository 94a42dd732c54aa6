"""
SafetyPin Field Encryption

Authenticated encryption of sensitive fields at rest for SafetyPin Cloud.

Quick Start
-----------
```python
import asyncio
from safetypin_crypto import EncryptionSettings, create_service

async def main():
    async with create_service(EncryptionSettings.from_env()) as service:
        token = await service.encrypt("4111-1111-1111-1111")
        email_hash = service.hash_for_lookup("user@example.com")
        card = await service.decrypt(token)

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: 16-byte random nonce and 16-byte tag per envelope
- **Pluggable Key Sources**: AWS KMS data keys in production, a derived
  local key in development
- **Versioned Keys**: Rotation keeps old versions for decryption
- **Lookup Hashes**: SHA-256 digests for equality search over encrypted data
- **Bulk Re-encryption**: Migrate stored envelopes to the active key

Modules
-------
- `crypto`: AES-256-GCM primitives and the envelope token codec
- `key_source`: KMS, derived-local and static key sources
- `key_ring`: Versioned key ring
- `service`: FieldEncryptionService
- `config`: Settings loaded from the environment
- `reencrypt`: PostgreSQL column re-encryption
- `errors`: Error types
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    DEFAULT_SECURE_ID_LENGTH,
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    Envelope,
    SecureKey,
    derive_local_key,
    generate_secure_id,
    hash_for_lookup,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AuthenticationFailure,
    ConfigError,
    EncryptionError,
    KeyNotFoundError,
    KeySourceUnavailable,
    MalformedEnvelope,
    RotationUnsupported,
    SerializationError,
    ServiceClosedError,
)

# =============================================================================
# Key Management Exports
# =============================================================================

from .key_source import (
    DEFAULT_DEV_SECRET,
    DerivedLocalKeySource,
    KeySource,
    ManagedKeySource,
    StaticKeySource,
)
from .key_ring import DEFAULT_MAX_KEY_VERSIONS, KeyRing, KeyVersion

# =============================================================================
# Service Exports (Primary API)
# =============================================================================

from .service import FieldEncryptionService
from .config import EncryptionSettings, build_key_source, create_service
from .reencrypt import ReencryptionStats, reencrypt_column

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "DEFAULT_SECURE_ID_LENGTH",
    "KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "Envelope",
    "SecureKey",
    "derive_local_key",
    "generate_secure_id",
    "hash_for_lookup",
    # Errors
    "EncryptionError",
    "KeySourceUnavailable",
    "MalformedEnvelope",
    "AuthenticationFailure",
    "KeyNotFoundError",
    "ConfigError",
    "SerializationError",
    "ServiceClosedError",
    "RotationUnsupported",
    # Key management
    "KeySource",
    "ManagedKeySource",
    "DerivedLocalKeySource",
    "StaticKeySource",
    "DEFAULT_DEV_SECRET",
    "KeyRing",
    "KeyVersion",
    "DEFAULT_MAX_KEY_VERSIONS",
    # Service (Primary API)
    "FieldEncryptionService",
    "EncryptionSettings",
    "build_key_source",
    "create_service",
    "ReencryptionStats",
    "reencrypt_column",
]
