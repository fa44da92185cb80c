"""
Validation service for free trial requests.
"""
import logging
from typing import Tuple, Optional

from trials.services.normalization import normalize_phone_number, is_valid_phone

logger = logging.getLogger(__name__)

# Rejection codes
MISSING_REQUIRED_FIELD = 'MISSING_REQUIRED_FIELD'
INVALID_PHONE = 'INVALID_PHONE'
FIELD_TOO_LONG = 'FIELD_TOO_LONG'

REQUIRED_FIELDS = ['customer_phone', 'buyer_name', 'storyteller_name', 'selected_album']
MAX_NAME_LENGTH = 255


def validate_trial_request(payload: dict) -> Tuple[bool, Optional[str]]:
    """
    Validates a request to start a free trial.

    Rules:
    1. customer_phone, buyer_name, storyteller_name and selected_album are required
    2. customer_phone must normalize to 10-15 digits
    3. storyteller_phone is optional but must be valid when present
    4. Names and album are at most 255 characters

    Args:
        payload: Request body dictionary

    Returns:
        Tuple of (is_valid, rejection_reason)
    """
    logger.debug("Validating trial request: %s", payload)
    if not payload or not isinstance(payload, dict):
        return False, MISSING_REQUIRED_FIELD

    for field in REQUIRED_FIELDS:
        value = payload.get(field)
        if not isinstance(value, str) or not value.strip():
            logger.debug(f"Validation failed: missing or empty required field '{field}'")
            return False, MISSING_REQUIRED_FIELD

    for field in ('buyer_name', 'storyteller_name', 'selected_album'):
        if len(payload[field].strip()) > MAX_NAME_LENGTH:
            logger.debug(f"Validation failed: '{field}' longer than {MAX_NAME_LENGTH}")
            return False, FIELD_TOO_LONG

    if not is_valid_phone(normalize_phone_number(payload['customer_phone'])):
        logger.debug(f"Validation failed: customer_phone '{payload['customer_phone']}' is not a valid number")
        return False, INVALID_PHONE

    storyteller_phone = payload.get('storyteller_phone')
    if storyteller_phone and not is_valid_phone(normalize_phone_number(storyteller_phone)):
        logger.debug("Validation failed: storyteller_phone is not a valid number")
        return False, INVALID_PHONE

    logger.debug("Validation passed")
    return True, None
