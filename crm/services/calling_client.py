"""
Calling platform client: registers leads as dialable contacts.
"""
import logging
import re

import httpx
from django.conf import settings

from crm.services.http_utils import format_response

logger = logging.getLogger(__name__)

EMOJI = re.compile(
    '[\U0001F000-\U0001FAFF\U00002600-\U000027BF\U0000FE0F\U0000200D]',
    flags=re.UNICODE,
)
# Characters the platform rejects in the name field
REJECTED_CHARS = re.compile(r'[!@#$%^&*()_+=:;\\,.></?|{}\[\]]')
WHITESPACE = re.compile(r'\s+')


class CallingPlatformError(Exception):
    """Raised when the calling platform rejects a contact."""


def sanitize_name(name) -> str:
    """
    Strip emojis and special characters the platform rejects.

    Letters (including accented ones), digits, spaces and hyphens survive.
    """
    if not name:
        return ''
    name = EMOJI.sub('', str(name))
    name = REJECTED_CHARS.sub('', name)
    return WHITESPACE.sub(' ', name).strip()


def create_contact(phone: str, name: str = '') -> dict:
    """
    Create a contact in the configured contact group.

    A 409 (contact already exists) counts as success.

    Returns:
        Response body, or ``{'already_exists': True}``

    Raises:
        CallingPlatformError: missing configuration or a non-2xx response
        httpx.HTTPError: On network/timeout errors
    """
    if not settings.CALLING_API_KEY:
        raise CallingPlatformError('CALLING_API_KEY is not set')
    if not settings.CALLING_CONTACT_GROUP_ID:
        raise CallingPlatformError('CALLING_CONTACT_GROUP_ID is not set')

    contact_name = sanitize_name(name) or phone
    url = f"{settings.CALLING_API_URL.rstrip('/')}/v1/contact/{settings.CALLING_CONTACT_GROUP_ID}"
    headers = {
        'Accept': 'application/json',
        'Authorization': settings.CALLING_API_KEY,
        'Content-Type': 'application/json',
    }

    logger.info(f"Creating calling contact: {phone} ({contact_name})")

    try:
        response = httpx.post(
            url,
            json={'field_0': phone, 'field_1': contact_name},
            headers=headers,
            timeout=settings.CALLING_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as e:
        logger.error(f"Timeout creating calling contact {phone}: {e}")
        raise
    except httpx.HTTPError as e:
        logger.error(f"HTTP error creating calling contact {phone}: {e}")
        raise

    if response.status_code == 409:
        logger.info(f"Calling contact {phone} already exists (409)")
        return {'already_exists': True}

    if not 200 <= response.status_code < 300:
        logger.error("Calling platform response body:\n%s", format_response(response))
        raise CallingPlatformError(
            f"create_contact failed ({response.status_code}) for {phone}"
        )

    logger.info(f"Calling contact created: {phone}")
    return response.json() if response.content else {}
