"""PII hashing.

User ids, phone numbers and contact ids never reach application logs in
the clear; they are logged as salted SHA-256 digests. The same salt keys
the live location-sharing tokens and the anonymized record ids.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

# Set at startup from PII_HASH_SALT (Secrets Manager in production)
_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Install the process-wide salt.

    Raises:
        ValueError: If the salt is shorter than MIN_SALT_LENGTH
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def _require_salt() -> str:
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")
    return _PII_SALT


def hash_pii(value: str) -> str:
    """Salted SHA-256 of `value` as a 64-char hex string.

    Raises:
        RuntimeError: If no salt has been configured
    """
    return hashlib.sha256(f"{_require_salt()}{value}".encode()).hexdigest()


def share_token(incident_id: str) -> str:
    """Unguessable token for an incident's live location-sharing link."""
    digest = hmac.new(_require_salt().encode(), incident_id.encode(), hashlib.sha256)
    return digest.hexdigest()[:32]
