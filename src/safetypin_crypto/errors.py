"""
Exception classes for field encryption operations.

Every cryptographic failure propagates to the caller as one of these types.
The only condition reported as a warning instead of an error is
RotationUnsupported.
"""

from __future__ import annotations


class EncryptionError(Exception):
    """Base exception for all field encryption operations."""

    pass


class KeySourceUnavailable(EncryptionError):
    """The managed key service could not provide a data key."""

    pass


class MalformedEnvelope(EncryptionError):
    """Input to decrypt is not a syntactically valid envelope token."""

    pass


class AuthenticationFailure(EncryptionError):
    """Authentication tag did not verify (tampering, wrong key, or corruption)."""

    pass


class KeyNotFoundError(EncryptionError):
    """Envelope references a key version that is no longer retained."""

    pass


class ConfigError(EncryptionError):
    """Configuration error."""

    pass


class SerializationError(EncryptionError):
    """Credential payload could not be serialized or deserialized."""

    pass


class ServiceClosedError(EncryptionError):
    """Operation attempted on a service that has been shut down."""

    pass


class RotationUnsupported(UserWarning):
    """Key rotation was requested where it has no effect."""

    pass
