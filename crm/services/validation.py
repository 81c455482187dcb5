"""
Validation service for inbound lead events.

Validation failures are rejected synchronously and never reach the retry queue.
"""
import logging
from typing import Optional

from django.conf import settings

from crm.services.normalization import normalize_phone

logger = logging.getLogger(__name__)

# Rejection codes
MISSING_REQUIRED_FIELD = 'MISSING_REQUIRED_FIELD'
INVALID_PHONE = 'INVALID_PHONE'


class LeadValidationError(Exception):
    """
    Raised when an inbound event cannot produce a valid lead.

    Carries the rejection code, the offending field and the handler that
    rejected it so callers can report the failure meaningfully.
    """

    def __init__(self, message: str, code: str = MISSING_REQUIRED_FIELD,
                 field: Optional[str] = None, handler: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.field = field
        self.handler = handler

    def to_dict(self) -> dict:
        return {
            'error': self.code,
            'message': str(self),
            'field': self.field,
            'handler': self.handler,
        }


def validate_phone(phone, field: str = 'phone', handler: Optional[str] = None) -> str:
    """
    Validate a phone number and return its digits.

    Raises:
        LeadValidationError: if the phone is missing or has fewer than
            ``PHONE_MIN_DIGITS`` digits
    """
    if not phone:
        raise LeadValidationError(
            'Phone number is required',
            code=MISSING_REQUIRED_FIELD,
            field=field,
            handler=handler,
        )

    digits = normalize_phone(phone)
    min_digits = getattr(settings, 'PHONE_MIN_DIGITS', 10)
    if len(digits) < min_digits:
        logger.debug(f"Validation failed in {handler}: phone '{phone}' too short")
        raise LeadValidationError(
            f"Invalid phone number: {phone}. Expected at least {min_digits} digits.",
            code=INVALID_PHONE,
            field=field,
            handler=handler,
        )
    return digits
