"""
Shared text utilities for the CreditGate service

Tax identifier (RFC) normalization/validation and log sanitization used by
the API layer, the services and the security logger.
"""

import logging
import re
from typing import Optional

from errors import InputValidationError

logger = logging.getLogger(__name__)

# Persona fisica: 4 letters, birth date, 3-char homoclave (13 chars)
RFC_INDIVIDUAL_PATTERN = re.compile(r'^[A-ZÑ&]{4}\d{6}[A-Z0-9]{3}$')
# Persona moral: 3 letters, incorporation date, 3-char homoclave (12 chars)
RFC_COMPANY_PATTERN = re.compile(r'^[A-ZÑ&]{3}\d{6}[A-Z0-9]{3}$')


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def normalize_tax_id(tax_id: Optional[str]) -> str:
    """Trim and uppercase a tax identifier"""
    if not tax_id:
        return ""
    return re.sub(r'\s+', '', str(tax_id)).upper()


def infer_entity_type(tax_id: str) -> Optional[str]:
    """Return FISICA or MORAL for a normalized RFC, None if it matches neither"""
    if RFC_INDIVIDUAL_PATTERN.match(tax_id):
        return "FISICA"
    if RFC_COMPANY_PATTERN.match(tax_id):
        return "MORAL"
    return None


def validate_tax_id(tax_id: Optional[str], field: str = "tax_id") -> str:
    """Normalize and validate an RFC

    Args:
        tax_id: Raw tax identifier from the caller
        field: Field name reported in the error

    Returns:
        The normalized tax identifier

    Raises:
        InputValidationError: If the identifier is empty or malformed
    """
    normalized = normalize_tax_id(tax_id)
    if not normalized:
        raise InputValidationError(
            "Tax identifier is required",
            field=field,
            code="TAX_ID_REQUIRED",
            suggestion="Provide a 12 or 13 character RFC"
        )
    if len(normalized) not in (12, 13):
        raise InputValidationError(
            f"Tax identifier must be 12 or 13 characters (got {len(normalized)})",
            field=field,
            code="TAX_ID_INVALID_LENGTH",
            suggestion="Companies use 12 characters, individuals use 13"
        )
    if infer_entity_type(normalized) is None:
        logger.debug("Malformed tax identifier rejected: %s", sanitize_for_logging(normalized))
        raise InputValidationError(
            "Tax identifier format is invalid",
            field=field,
            code="TAX_ID_INVALID_FORMAT",
            suggestion="Expected letters, a YYMMDD date and a 3-character homoclave"
        )
    return normalized
