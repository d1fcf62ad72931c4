"""Credential encryption helpers."""

import json
import logging
from typing import Dict, Optional
from cryptography.fernet import Fernet, InvalidToken


logger = logging.getLogger(__name__)


class CredentialCipher:
    """Reversible transform for credential maps stored in the service cache."""

    def __init__(self, key: Optional[str]):
        """Initialize cipher. A missing key disables encryption entirely."""
        self._fernet = Fernet(key.encode()) if key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, credentials: Dict[str, str]) -> Optional[str]:
        """Serialize and encrypt a credential map."""
        if not self._fernet:
            logger.warning("No encryption key configured, credentials will not be stored")
            return None
        payload = json.dumps(credentials, sort_keys=True).encode()
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, blob: str) -> Optional[Dict[str, str]]:
        """Decrypt a blob produced by encrypt; None when it cannot be read."""
        if not self._fernet:
            return None
        try:
            return json.loads(self._fernet.decrypt(blob.encode()))
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Failed to decrypt credentials: {e}")
            return None
