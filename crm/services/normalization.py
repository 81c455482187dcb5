"""
Normalization service for phone identities and inbound lead fields.
"""
import re
import logging
from dataclasses import dataclass
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)

NON_DIGITS = re.compile(r'\D')

# Dial codes checked longest prefix first
COUNTRY_CODES = {
    '91': ('IN', 'India'),
    '1': ('US', 'USA/Canada'),
    '971': ('AE', 'UAE'),
    '65': ('SG', 'Singapore'),
    '44': ('GB', 'UK'),
    '55': ('BR', 'Brazil'),
    '61': ('AU', 'Australia'),
    '81': ('JP', 'Japan'),
    '49': ('DE', 'Germany'),
    '33': ('FR', 'France'),
    '86': ('CN', 'China'),
    '82': ('KR', 'South Korea'),
    '7': ('RU', 'Russia'),
    '39': ('IT', 'Italy'),
    '34': ('ES', 'Spain'),
    '31': ('NL', 'Netherlands'),
    '46': ('SE', 'Sweden'),
    '41': ('CH', 'Switzerland'),
    '62': ('ID', 'Indonesia'),
    '60': ('MY', 'Malaysia'),
    '66': ('TH', 'Thailand'),
    '84': ('VN', 'Vietnam'),
    '63': ('PH', 'Philippines'),
    '92': ('PK', 'Pakistan'),
    '880': ('BD', 'Bangladesh'),
    '94': ('LK', 'Sri Lanka'),
    '977': ('NP', 'Nepal'),
    '27': ('ZA', 'South Africa'),
    '234': ('NG', 'Nigeria'),
    '254': ('KE', 'Kenya'),
    '20': ('EG', 'Egypt'),
    '966': ('SA', 'Saudi Arabia'),
    '974': ('QA', 'Qatar'),
    '968': ('OM', 'Oman'),
    '973': ('BH', 'Bahrain'),
    '965': ('KW', 'Kuwait'),
}


@dataclass(frozen=True)
class CountryInfo:
    iso: str
    name: str
    country_code: str
    local_number: str


def _match_digits() -> int:
    return getattr(settings, 'PHONE_MATCH_DIGITS', 10)


def normalize_phone(phone: Any) -> str:
    """
    Canonicalize a phone number to its digits.

    Separators, spaces and a leading plus sign are dropped; the country code is
    kept when present. ``None`` or empty input yields an empty key.
    """
    if phone is None:
        return ''
    return NON_DIGITS.sub('', str(phone))


def last_digits(phone: Any, n: int | None = None) -> str:
    """Return the trailing ``n`` digits of a phone number."""
    n = n or _match_digits()
    return normalize_phone(phone)[-n:]


def phones_match(first: Any, second: Any, n: int | None = None) -> bool:
    """
    Tail-digit comparison: two numbers are the same identity when their last
    ``n`` digits agree, regardless of country-code prefixing.
    """
    first_tail = last_digits(first, n)
    return bool(first_tail) and first_tail == last_digits(second, n)


def is_valid_phone(phone: Any) -> bool:
    """True when the phone carries enough digits to identify a lead."""
    return len(normalize_phone(phone)) >= getattr(settings, 'PHONE_MIN_DIGITS', 10)


def extract_country_info(phone: Any) -> CountryInfo:
    """
    Split a phone number into country and local parts.

    Checks 3-digit dial codes first, then 2, then 1. Unknown prefixes yield
    ISO ``XX`` with the full number as the local part.
    """
    digits = normalize_phone(phone)
    for length in (3, 2, 1):
        prefix = digits[:length]
        if prefix in COUNTRY_CODES:
            iso, name = COUNTRY_CODES[prefix]
            return CountryInfo(iso, name, f'+{prefix}', digits[length:])
    return CountryInfo('XX', 'Unknown', '', digits)


def normalize_value(value: Any) -> Any:
    """Trim whitespace from strings; other values pass through."""
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_fields(data: dict) -> dict:
    """
    Normalize inbound lead fields.

    - Trim whitespace from string values
    - Lowercase email addresses
    - Drop ``None`` values so they never overwrite stored data
    """
    if not data:
        return {}

    normalized = {
        key: normalize_value(value)
        for key, value in data.items()
        if value is not None
    }
    if isinstance(normalized.get('email'), str):
        normalized['email'] = normalized['email'].lower()

    logger.debug(f"Normalized fields: {normalized}")
    return normalized
