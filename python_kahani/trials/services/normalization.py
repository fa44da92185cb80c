"""
Normalization service for phone numbers and storyteller replies.
"""
import logging
import re
from typing import Optional

from django.conf import settings

from trials.models import FreeTrial

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^\d{10,15}$')
TRIAL_ID_PATTERN = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
    re.IGNORECASE
)

AFFIRMATIVE_REPLIES = {
    'yes', 'y', 'yeah', 'yep', 'yup', 'ready', 'sure', 'ok', 'okay', 'of course',
    'absolutely', 'lets go', "let's go", 'start', 'haan', 'han', 'ha', 'ji', 'haan ji',
    'ji haan', 'theek hai', 'thik hai', 'chalo',
}
NEGATIVE_REPLIES = {
    'no', 'n', 'nope', 'not now', 'not yet', 'later', 'not today', 'busy', 'tomorrow',
    'nahi', 'nahin', 'abhi nahi', 'baad mein', 'stop',
}


def normalize_phone_number(phone: Optional[str]) -> str:
    """
    Normalize a phone number to digits only, adding the default country code
    to bare national numbers.

    - 'whatsapp:+91 98765-43210' -> '919876543210'
    - '9876543210'               -> '919876543210'
    """
    if not phone:
        return ''
    cleaned = re.sub(r'\D', '', str(phone))
    country_code = settings.DEFAULT_COUNTRY_CODE

    if cleaned.startswith(country_code) and len(cleaned) == 10 + len(country_code):
        return cleaned
    if len(cleaned) == 10:
        return country_code + cleaned
    return cleaned


def is_valid_phone(phone: Optional[str]) -> bool:
    """True for a normalized number of 10 to 15 digits."""
    return bool(phone) and bool(PHONE_PATTERN.match(phone))


def normalize_reply_text(text: Optional[str]) -> str:
    """Lowercase, trim, drop punctuation/emoji and collapse whitespace."""
    if not text:
        return ''
    lowered = text.strip().lower()
    lowered = re.sub(r"[^\w\s']", ' ', lowered)
    return re.sub(r'\s+', ' ', lowered).strip()


def classify_readiness_reply(text: Optional[str]) -> str:
    """
    Classify a storyteller's answer to the readiness check.

    Returns:
        One of FreeTrial.ReadinessResponse AFFIRMATIVE / NEGATIVE / AMBIGUOUS
    """
    normalized = normalize_reply_text(text)
    if not normalized:
        return FreeTrial.ReadinessResponse.AMBIGUOUS

    if normalized in NEGATIVE_REPLIES:
        return FreeTrial.ReadinessResponse.NEGATIVE
    if normalized in AFFIRMATIVE_REPLIES:
        return FreeTrial.ReadinessResponse.AFFIRMATIVE

    # "yes i am ready", "no not today" - judge by the leading word
    words = normalized.split(' ')
    if words[0] in NEGATIVE_REPLIES or ' '.join(words[:2]) in NEGATIVE_REPLIES:
        return FreeTrial.ReadinessResponse.NEGATIVE
    if words[0] in AFFIRMATIVE_REPLIES or ' '.join(words[:2]) in AFFIRMATIVE_REPLIES:
        return FreeTrial.ReadinessResponse.AFFIRMATIVE

    logger.debug(f"Readiness reply '{normalized}' is ambiguous")
    return FreeTrial.ReadinessResponse.AMBIGUOUS


def extract_trial_id(text: Optional[str]) -> Optional[str]:
    """Find the trial id carried by the prefilled first message, if any."""
    if not text:
        return None
    match = TRIAL_ID_PATTERN.search(text)
    return match.group(0).lower() if match else None
