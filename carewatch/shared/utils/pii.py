"""PII handling for subject identifiers.

Monitored subjects are vulnerable people living alone; their
identifiers, phone numbers and addresses must never reach application
logs in clear text. Log context carries ``user_id_hash`` instead.
"""
import hashlib
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# Loaded from the secrets store at startup
_PII_SALT: Optional[str] = None

MIN_SALT_LENGTH = 32


def configure_pii_salt(salt: str) -> None:
    """Configure the salt used for subject identifier hashing.

    Must be called once during application startup, before the engine
    emits any log line that references a subject.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or shorter than 32 characters
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


def hash_pii(value: str) -> str:
    """Hash a subject identifier (or other PII) for logging.

    Args:
        value: The PII value to hash

    Returns:
        64-character hex digest, stable for a given salt

    Raises:
        RuntimeError: If the salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def mask_phone(phone: Optional[str]) -> str:
    """Keep only the last four digits of a phone number."""
    if not phone:
        return ""
    digits = [c for c in phone if c.isdigit()]
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + "".join(digits[-4:])


def redact_report_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Log-safe copy of an emergency report payload.

    The subject id is replaced by its hash, name and address are
    dropped and every phone number is masked. Medical fields are kept
    so an operator can triage from the log line alone.
    """
    data = dict(payload.get("data", {}))
    user_id = data.pop("user_id", None)
    if user_id is not None:
        data["user_id_hash"] = hash_pii(user_id)
    for key in ("user_name", "address", "detail_address"):
        data.pop(key, None)
    for key in ("emergency_contacts", "reported_by"):
        data[key] = [
            dict(contact, phone=mask_phone(contact.get("phone")))
            for contact in data.get(key, [])
        ]
    redacted = dict(payload)
    redacted["data"] = data
    return redacted
