"""
Credential encryption for the source registry.

Data source passwords are stored encrypted with Fernet (cryptography):
AES-128-CBC with an HMAC-SHA256 tag, base64 encoded for storage.

KEY MANAGEMENT:
---------------
- The key is read from the SECRET_KEY setting (environment or .env)
- Without one, a fixed development key is derived and a RuntimeWarning is
  issued; never run production that way
- Generate a key with:
      python -c "from querygate.crypto import generate_key; print(generate_key())"
"""

import base64
import hashlib
import json
import warnings
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

_SENSITIVE_KEYS = {"password", "secret", "token", "key", "credential", "auth", "api_key"}

_DEV_SEED = b"querygate-dev-key-do-not-use-in-production"


class CredentialCipher:
    """Encrypts and decrypts credential dicts with one Fernet key."""

    def __init__(self, secret_key: Optional[str] = None):
        if secret_key:
            key = secret_key.encode("utf-8")
        else:
            warnings.warn(
                "SECRET_KEY not set! Using development fallback key. "
                "This is NOT secure for production.",
                RuntimeWarning,
            )
            key = base64.urlsafe_b64encode(hashlib.sha256(_DEV_SEED).digest())
        self._fernet = Fernet(key)

    def encrypt(self, credentials: Dict[str, Any]) -> str:
        """Encrypt a dict into a storage-safe string."""
        if not credentials:
            return ""
        return self._fernet.encrypt(json.dumps(credentials).encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted: str) -> Dict[str, Any]:
        """
        Decrypt a string produced by encrypt().

        Raises:
            ValueError: If the key is wrong or the data is corrupted
        """
        if not encrypted:
            return {}
        try:
            return json.loads(self._fernet.decrypt(encrypted.encode("utf-8")).decode("utf-8"))
        except InvalidToken:
            raise ValueError(
                "Cannot decrypt stored credentials: SECRET_KEY differs from the key "
                "they were written with, or the stored value is damaged"
            )
        except json.JSONDecodeError:
            raise ValueError("Stored credentials did not decrypt to JSON")


def mask_sensitive_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of an options dict safe to return from the API.

    Values whose key name contains a secret-looking word are replaced;
    nested dicts are masked recursively.
    """
    if not config:
        return {}

    masked = {}
    for k, v in config.items():
        if any(s in k.lower() for s in _SENSITIVE_KEYS):
            masked[k] = "********" if v is not None else None
        elif isinstance(v, dict):
            masked[k] = mask_sensitive_config(v)
        else:
            masked[k] = v
    return masked


def generate_key() -> str:
    """Generate a new Fernet key for the SECRET_KEY setting."""
    return Fernet.generate_key().decode("utf-8")
