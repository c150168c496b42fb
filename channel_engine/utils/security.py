import base64
import hashlib
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..config import settings

logger = logging.getLogger(__name__)

# Keys whose values never reach logs
SENSITIVE_KEYS = [
    "password", "secret", "token", "authorization", "refresh", "code",
    "credential", "email", "phone", "mobile",
]


class CredentialError(Exception):
    """Stored credential could not be encrypted or decrypted"""


def derive_key(secret: str) -> bytes:
    """Derive a Fernet key from an arbitrary secret string"""
    digest = hashlib.sha256(secret.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest)


def generate_encryption_key() -> str:
    """Generate a new Fernet key for CREDENTIAL_ENCRYPTION_KEY"""
    return Fernet.generate_key().decode('utf-8')


class CredentialCipher:
    """
    Encrypts refresh credentials at rest.

    Uses CREDENTIAL_ENCRYPTION_KEY when set, otherwise a key derived
    from SECRET_KEY.
    """

    def __init__(self, key: Optional[str] = None):
        raw_key = key or settings.credential_encryption_key
        try:
            self._fernet = Fernet(raw_key.encode('utf-8') if raw_key else derive_key(settings.secret_key))
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid credential encryption key: {e}")

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode('utf-8')).decode('utf-8')

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            logger.error("Failed to decrypt stored credential (key rotated?)")
            raise CredentialError("Stored credential cannot be decrypted")


def sanitize_payload(payload: Any) -> Any:
    """Remove sensitive data from a payload before logging"""
    if payload is None:
        return None

    def sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            result: Dict[str, Any] = {}
            for k, v in value.items():
                if any(sk in str(k).lower() for sk in SENSITIVE_KEYS):
                    result[k] = "[REDACTED]"
                else:
                    result[k] = sanitize(v)
            return result
        if isinstance(value, list):
            return [sanitize(i) for i in value]
        return value

    return sanitize(payload)
