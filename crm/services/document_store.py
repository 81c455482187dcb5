"""
Document store adapter: the lead system of record.

Leads are keyed by normalized phone. Lookups and writes fail soft (log and
return ``None``) so a storage hiccup never crashes the webhook pipeline; the
dual-write orchestrator treats a ``None`` write result as a failure to retry.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from crm.models import Lead, LeadCounter, SyncFailure
from crm.services.mapping import APPEND_SEPARATORS, DEFAULT_PRODUCT, DEFAULT_STATUS, merge_text
from crm.services.normalization import extract_country_info, normalize_phone

logger = logging.getLogger(__name__)

COUNTER_NAME = 'leads'
BACKEND_ERRORS = (DatabaseError, asyncio.TimeoutError)

# Fields a write may touch after creation
UPDATABLE_FIELDS = frozenset({
    'name', 'email', 'stage', 'agent', 'status', 'location', 'product', 'source',
    'message', 'remark', 'registration_number', 'rating', 'team_2', 'status_2',
    'remark_2', 'community_status', 'sheet_row',
})

# Refreshed on upsert only when the incoming value is non-empty
MERGE_OVERWRITE_FIELDS = ('name', 'email', 'location', 'registration_number', 'community_status')


@dataclass(frozen=True)
class LeadRef:
    """Identity of a written lead."""

    pk: int
    business_id: str
    created: bool = False
    updated: bool = False


def _to_base36(number: int) -> str:
    digits = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'
    encoded = ''
    while number:
        number, remainder = divmod(number, 36)
        encoded = digits[remainder] + encoded
    return encoded or '0'


def _history_record(entry: dict) -> dict:
    record = {
        'action': entry.get('action', 'field_updated'),
        'by': entry.get('by') or 'system',
        'at': timezone.now().isoformat(),
        'details': entry.get('details') or {},
    }
    if entry.get('entry_id'):
        record['entry_id'] = entry['entry_id']
    return record


def _has_entry(history: list, entry: dict) -> bool:
    entry_id = entry.get('entry_id')
    return bool(entry_id) and any(item.get('entry_id') == entry_id for item in history)


def merge_lead_fields(lead: Lead, fields: dict) -> dict:
    """
    Merge inbound fields into an existing lead without losing data.

    Non-empty scalars overwrite, empty ones never do; ``message``, ``remark``
    and ``product`` accumulate.
    """
    updates = {}
    for field in MERGE_OVERWRITE_FIELDS:
        value = fields.get(field)
        if value and value != getattr(lead, field):
            updates[field] = value

    for field, separator in APPEND_SEPARATORS.items():
        merged = merge_text(getattr(lead, field), fields.get(field, ''), separator)
        if merged is not None:
            updates[field] = merged

    sheet_row = fields.get('sheet_row')
    if sheet_row and sheet_row != lead.sheet_row:
        updates['sheet_row'] = sheet_row
    return updates


class LeadDocumentStore:
    """
    CRUD, upsert and history append for leads.

    Every backend call runs in a worker thread via ``sync_to_async`` and is
    bounded by ``DOCUMENT_STORE_TIMEOUT_SECONDS``.
    """

    def __init__(self, timeout: Optional[float] = None,
                 prefix: Optional[str] = None, width: Optional[int] = None):
        self.timeout = timeout or getattr(settings, 'DOCUMENT_STORE_TIMEOUT_SECONDS', 5)
        self.prefix = prefix or getattr(settings, 'BUSINESS_ID_PREFIX', 'CG')
        self.width = width or getattr(settings, 'BUSINESS_ID_WIDTH', 5)
        self.min_digits = getattr(settings, 'PHONE_MIN_DIGITS', 10)

    async def _run(self, fn: Callable, *args) -> Any:
        return await asyncio.wait_for(sync_to_async(fn)(*args), timeout=self.timeout)

    def _valid_key(self, phone) -> Optional[str]:
        phone_norm = normalize_phone(phone)
        if len(phone_norm) < self.min_digits:
            return None
        return phone_norm

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_by_phone(self, phone) -> Optional[Lead]:
        """Exact match on the normalized phone; ``None`` when absent or on error."""
        phone_norm = self._valid_key(phone)
        if not phone_norm:
            return None
        try:
            return await self._run(
                lambda: Lead.objects.filter(phone_normalized=phone_norm).first()
            )
        except BACKEND_ERRORS as e:
            logger.error(f"find_by_phone error for {phone_norm}: {e!r}")
            return None

    async def find_by_business_id(self, business_id: str) -> Optional[Lead]:
        try:
            return await self._run(
                lambda: Lead.objects.filter(business_id=business_id).first()
            )
        except BACKEND_ERRORS as e:
            logger.error(f"find_by_business_id error for {business_id}: {e!r}")
            return None

    # ------------------------------------------------------------------
    # Business id
    # ------------------------------------------------------------------

    def _next_business_id_sync(self) -> str:
        try:
            with transaction.atomic():
                counter, _ = LeadCounter.objects.select_for_update().get_or_create(
                    name=COUNTER_NAME
                )
                counter.value += 1
                counter.save(update_fields=['value', 'updated_at'])
                value = counter.value
        except DatabaseError as e:
            logger.error(f"Business id counter failed, using timestamp fallback: {e!r}")
            return f"{self.prefix}{_to_base36(int(time.time() * 1000))}"
        return f"{self.prefix}{value:0{self.width}d}"

    async def next_business_id(self) -> str:
        """
        Allocate the next sequential business id (``CG00001``).

        A failed counter transaction falls back to a timestamp-derived id so
        lead creation is never blocked by counter contention.
        """
        try:
            return await self._run(self._next_business_id_sync)
        except asyncio.TimeoutError:
            logger.error("Business id counter timed out, using timestamp fallback")
            return f"{self.prefix}{_to_base36(int(time.time() * 1000))}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _create_sync(self, phone_norm: str, fields: dict,
                     history_entry: Optional[dict]) -> LeadRef:
        existing = Lead.objects.filter(phone_normalized=phone_norm).first()
        if existing:
            logger.info(f"Lead already exists: {existing.business_id} ({phone_norm})")
            return LeadRef(existing.pk, existing.business_id, created=False)

        phone = fields.get('phone') or phone_norm
        country = extract_country_info(phone)
        first_entry = {
            'action': 'lead_created',
            'by': 'system',
            'details': {
                'source': fields.get('source', ''),
                'channel': fields.get('channel', 'webhook'),
            },
        }
        if history_entry and history_entry.get('entry_id'):
            first_entry['entry_id'] = history_entry['entry_id']

        agent = fields.get('agent') or Lead.Stage.NOT_ASSIGNED.value
        lead = Lead(
            business_id=self._next_business_id_sync(),
            phone=phone,
            phone_normalized=phone_norm,
            country_iso=country.iso,
            country_code=country.country_code,
            local_number=country.local_number,
            name=fields.get('name', ''),
            email=fields.get('email', ''),
            stage=fields.get('stage') or Lead.Stage.NOT_ASSIGNED.value,
            agent=agent,
            status=fields.get('status') or DEFAULT_STATUS,
            location=fields.get('location', ''),
            product=fields.get('product') or DEFAULT_PRODUCT,
            source=fields.get('source', ''),
            message=fields.get('message', ''),
            remark=fields.get('remark', ''),
            registration_number=fields.get('registration_number', ''),
            community_status=fields.get('community_status', ''),
            sheet_row=fields.get('sheet_row'),
            history=[_history_record(first_entry)],
        )
        try:
            with transaction.atomic():
                lead.save()
        except IntegrityError:
            # Lost a creation race for this phone; the winner's identity stands
            winner = Lead.objects.filter(phone_normalized=phone_norm).first()
            if winner is None:
                raise
            return LeadRef(winner.pk, winner.business_id, created=False)

        logger.info(f"Lead created: {lead.business_id} (pk: {lead.pk}, phone: {phone_norm})")
        return LeadRef(lead.pk, lead.business_id, created=True)

    def _apply_sync(self, phone_norm: str, compute_updates: Callable[[Lead], dict],
                    history_entry: Optional[dict]) -> Optional[LeadRef]:
        with transaction.atomic():
            lead = Lead.objects.select_for_update().filter(phone_normalized=phone_norm).first()
            if lead is None:
                return None

            replayed = bool(history_entry) and _has_entry(lead.history, history_entry)
            updates = compute_updates(lead)
            if replayed:
                # Already applied; only a newly learned sheet row is kept
                updates = {field: value for field, value in updates.items()
                           if field == 'sheet_row' and value != lead.sheet_row}

            changed = []
            for field, value in updates.items():
                if field not in UPDATABLE_FIELDS:
                    logger.debug(f"Ignoring non-updatable field '{field}' for {lead.business_id}")
                    continue
                setattr(lead, field, value)
                changed.append(field)

            if history_entry and not replayed:
                lead.history = [*lead.history, _history_record(history_entry)]
                changed.append('history')

            if replayed and not changed:
                logger.info(f"Lead unchanged: {lead.business_id} (entry {history_entry['entry_id']} already applied)")
                return LeadRef(lead.pk, lead.business_id)
            lead.save(update_fields=[*changed, 'updated_at'])

        logger.info(f"Lead updated: {lead.business_id} ({', '.join(changed) or 'touch'})")
        return LeadRef(lead.pk, lead.business_id, updated=True)

    async def create(self, fields: dict, history_entry: Optional[dict] = None) -> Optional[LeadRef]:
        """
        Create a lead, or return the existing identity for a known phone.

        Returns ``None`` for a phone with fewer than ``PHONE_MIN_DIGITS`` digits
        (partial events must not create junk leads) or on backend error.
        """
        phone_norm = self._valid_key(fields.get('phone'))
        if not phone_norm:
            logger.warning(f"create skipped - invalid phone: {fields.get('phone')!r}")
            return None
        try:
            return await self._run(self._create_sync, phone_norm, fields, history_entry)
        except BACKEND_ERRORS as e:
            logger.error(f"create error for {phone_norm}: {e!r}")
            return None

    async def update(self, phone, updates: dict,
                     history_entry: Optional[dict] = None) -> Optional[LeadRef]:
        """
        Apply field updates and append ``history_entry`` in one transaction.

        Returns ``None`` if the lead does not exist (never auto-creates) or on
        backend error.
        """
        phone_norm = self._valid_key(phone)
        if not phone_norm:
            return None
        try:
            result = await self._run(self._apply_sync, phone_norm, lambda lead: updates, history_entry)
        except BACKEND_ERRORS as e:
            logger.error(f"update error for {phone_norm}: {e!r}")
            return None
        if result is None:
            logger.info(f"update: {phone_norm} not found")
        return result

    async def create_or_update(self, fields: dict,
                               history_entry: Optional[dict] = None) -> Optional[LeadRef]:
        """
        Upsert entry point used by the handlers.

        An existing lead gets its non-empty fields merged and text fields
        concatenated; a new phone is created.
        """
        phone_norm = self._valid_key(fields.get('phone'))
        if not phone_norm:
            logger.warning(f"create_or_update skipped - invalid phone: {fields.get('phone')!r}")
            return None

        entry = history_entry or {
            'action': 'contact_updated',
            'by': 'system',
            'details': {'source': fields.get('source', '')},
        }
        try:
            result = await self._run(
                self._apply_sync, phone_norm, lambda lead: merge_lead_fields(lead, fields), entry
            )
            if result is None:
                result = await self._run(self._create_sync, phone_norm, fields, history_entry)
        except BACKEND_ERRORS as e:
            logger.error(f"create_or_update error for {phone_norm}: {e!r}")
            return None
        return result

    async def add_history(self, phone, action: str, by: str = 'system',
                          details: Optional[dict] = None) -> Optional[LeadRef]:
        """Append one audit entry without touching any other field."""
        return await self.update(phone, {}, {'action': action, 'by': by, 'details': details or {}})

    async def store_sync_failure(self, source: str, phone: str, payload: dict,
                                 error: str, retry_count: int = 0) -> None:
        """Persist a failed write for human follow-up. Never raises."""
        try:
            await self._run(
                lambda: SyncFailure.objects.create(
                    source=source,
                    phone=phone or '',
                    payload=payload,
                    error=error,
                    retry_count=retry_count,
                )
            )
            logger.info(f"Sync failure stored for {source} ({phone})")
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to store sync failure for {phone}: {e!r}")
