"""
Encryption configuration and key-source selection.

Reads settings from the environment (and an optional .env file):
    SAFETYPIN_ENV (falls back to NODE_ENV)  runtime mode, "production" enables KMS
    KMS_KEY_ID                              KMS key ID/ARN/alias, required in production
    AWS_REGION                              region for the KMS client
    DEV_ENCRYPTION_KEY                      secret for the derived development key
    SAFETYPIN_MAX_KEY_VERSIONS              key versions retained for decryption

Security Note:
    Never log key material or the development secret.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .key_ring import DEFAULT_MAX_KEY_VERSIONS
from .key_source import DerivedLocalKeySource, KeySource, ManagedKeySource
from .log import get_logger
from .service import FieldEncryptionService

logger = get_logger(__name__)

PRODUCTION = "production"


class EncryptionSettings(BaseModel):
    """Validated encryption settings."""

    environment: str = Field(default="development")
    kms_key_id: Optional[str] = None
    aws_region: Optional[str] = None
    dev_encryption_key: Optional[str] = Field(default=None, repr=False)
    max_key_versions: int = Field(default=DEFAULT_MAX_KEY_VERSIONS, ge=1, le=100)

    model_config = {"frozen": True}

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("environment cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_production_key_source(self) -> "EncryptionSettings":
        """Production must use KMS; the derived development key is guessable."""
        if self.production and not self.kms_key_id:
            raise ValueError("KMS_KEY_ID must be set when running in production")
        return self

    @property
    def production(self) -> bool:
        return self.environment == PRODUCTION

    @classmethod
    def from_env(
        cls, dotenv_path: Optional[Union[str, Path]] = None
    ) -> "EncryptionSettings":
        """
        Create settings from environment variables.

        Args:
            dotenv_path: Optional .env file; existing variables take precedence

        Raises:
            ConfigError: If the resulting settings are invalid
        """
        load_dotenv(dotenv_path)

        values = {
            "environment": os.environ.get("SAFETYPIN_ENV") or os.environ.get("NODE_ENV") or "development",
            "kms_key_id": os.environ.get("KMS_KEY_ID") or None,
            "aws_region": os.environ.get("AWS_REGION") or None,
            "dev_encryption_key": os.environ.get("DEV_ENCRYPTION_KEY") or None,
        }
        max_versions = os.environ.get("SAFETYPIN_MAX_KEY_VERSIONS")
        if max_versions:
            values["max_key_versions"] = max_versions

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid encryption settings: {e}") from e


def build_key_source(settings: EncryptionSettings) -> KeySource:
    """Select the key source once, from configuration."""
    if settings.production:
        return ManagedKeySource(settings.kms_key_id, region=settings.aws_region)
    return DerivedLocalKeySource(settings.dev_encryption_key)


def create_service(settings: Optional[EncryptionSettings] = None) -> FieldEncryptionService:
    """Build a FieldEncryptionService from settings (read from the environment if omitted)."""
    if settings is None:
        settings = EncryptionSettings.from_env()
    key_source = build_key_source(settings)
    logger.info(
        "encryption_service_configured",
        environment=settings.environment,
        source=key_source.name,
        max_key_versions=settings.max_key_versions,
    )
    return FieldEncryptionService(
        key_source,
        production=settings.production,
        max_key_versions=settings.max_key_versions,
    )
