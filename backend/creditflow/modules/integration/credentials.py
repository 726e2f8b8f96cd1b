"""Secret handling for integration configs.

Stored configs carry secret fields encrypted; responses carry them
masked. Plaintext only exists in memory while a connector runs.
"""

import logging
from typing import Any, Optional

from creditflow.core.encryption import decrypt_secret, encrypt_secret
from creditflow.core.logging import log_warning
from creditflow.modules.integration.schemas import IntegrationConfig, integration_config_adapter

logger = logging.getLogger(__name__)

SECRET_FIELDS = (
    "api_key",
    "bearer_token",
    "basic_auth_password",
    "oauth2_access_token",
    "oauth2_refresh_token",
    "password",
    "connection_string",
)

MASK = "***"


def encrypt_config(config: IntegrationConfig, previous: Optional[dict] = None) -> dict:
    """Serialize a config for storage with its secrets encrypted.

    A secret submitted as ``***`` keeps the ciphertext from ``previous``,
    so a masked config read back from the API can be saved unchanged.
    """
    stored = config.model_dump(mode="json", exclude_none=True)
    previous = previous or {}
    for name in SECRET_FIELDS:
        value = stored.get(name)
        if value is None:
            continue
        if value == MASK:
            if previous.get(name):
                stored[name] = previous[name]
            else:
                stored.pop(name)
            continue
        stored[name] = encrypt_secret(value)
    return stored


def decrypt_config(stored: dict) -> IntegrationConfig:
    """Rebuild a typed config with plaintext secrets for a connector."""
    values: dict[str, Any] = dict(stored)
    for name in SECRET_FIELDS:
        if name not in values:
            continue
        plaintext = decrypt_secret(values[name])
        if plaintext is None:
            log_warning(logger, "Stored integration secret could not be decrypted", field=name)
            values.pop(name)
        else:
            values[name] = plaintext
    return integration_config_adapter.validate_python(values)


def mask_config(stored: dict) -> dict:
    """Copy of a stored config with every present secret replaced by ``***``."""
    masked = dict(stored)
    for name in SECRET_FIELDS:
        if masked.get(name):
            masked[name] = MASK
    return masked
