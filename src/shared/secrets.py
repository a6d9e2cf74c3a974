"""
Secrets and keychain integration — retrieves credentials from the
system keychain and provides the Fernet helpers used to keep the paired
session encrypted at rest.

Secrets are looked up in the system keychain (``secret-tool`` /
``libsecret``) first and fall back to environment variables for
development hosts.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

_SERVICE = "wa-relay"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service wa-relay key <key_name>

    Falls back to environment variables (``WA_RELAY_<KEY_NAME>``) if
    ``secret-tool`` is not available (e.g. in development environments).

    Args:
        key_name: The key identifier (e.g. ``"supabase-service-key"``,
                  ``"session-encryption-key"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except Exception:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = f"WA_RELAY_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.debug("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = _SERVICE) -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when the secret is absent."""
    try:
        return get_secret(key_name, service=service)
    except RuntimeError:
        return None


# ---------------------------------------------------------------------------
# Fernet helpers
# ---------------------------------------------------------------------------


def encrypt_bytes(plaintext: bytes, key: str) -> bytes:
    """Encrypt *plaintext* with a Fernet key.

    Raises:
        ValueError: If the key is not a valid Fernet key.
    """
    return Fernet(key.encode()).encrypt(plaintext)


def decrypt_bytes(ciphertext: bytes, key: str) -> bytes:
    """Decrypt a Fernet token and return the plaintext **in memory**.

    Raises:
        cryptography.fernet.InvalidToken: If the key is wrong or the
            token has been tampered with.
    """
    return Fernet(key.encode()).decrypt(ciphertext)


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key.

    Returns:
        A base64-encoded 32-byte key suitable for Fernet.

    This should be called once during initial setup and the resulting
    key stored in the system keychain under ``session-encryption-key``.
    """
    return Fernet.generate_key().decode()
