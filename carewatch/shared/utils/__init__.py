"""Shared utilities for the CareWatch engine."""
from .pii import hash_pii, configure_pii_salt, mask_phone, redact_report_payload

__all__ = ["hash_pii", "configure_pii_salt", "mask_phone", "redact_report_payload"]
