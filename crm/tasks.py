"""
Celery tasks for best-effort lead enrichment.
"""
import logging

import httpx
from celery import shared_task

from crm.services.calling_client import CallingPlatformError, create_contact

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(httpx.TimeoutException, httpx.ConnectError),
    retry_backoff=30,  # Exponential backoff starting at 30s
    retry_backoff_max=480,
    max_retries=5,
    retry_jitter=False
)
def sync_calling_contact(self, phone: str, name: str = '', trigger: str = ''):
    """
    Register a lead with the calling platform.

    Network errors retry with backoff; a rejected contact is logged and
    dropped, since this sync is never part of the lead's write path.

    Args:
        phone: normalized phone number
        name: display name (sanitized by the client)
        trigger: handler that produced the lead, for the log trail
    """
    logger.info(f"Calling sync for {phone} (trigger: {trigger or 'unknown'})")
    try:
        return create_contact(phone, name)
    except CallingPlatformError as e:
        logger.error(f"Calling sync for {phone} rejected: {e}")
        return {'error': str(e)}
    except (httpx.TimeoutException, httpx.ConnectError) as e:
        if self.request.retries >= self.max_retries:
            logger.error(f"Calling sync for {phone} gave up after {self.max_retries} retries: {e}")
        raise
