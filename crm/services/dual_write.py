"""
Dual-write orchestration: one idempotent unit of work against both lead stores.

A write is described by a ``WriteCommand`` (operation kind + payload) rather
than a closure, so a failed write can be queued, inspected and replayed. The
whole command is retried on any failure; both store adapters' upserts are
idempotent, so replaying the half that already succeeded changes nothing.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from crm.services.document_store import LeadDocumentStore, LeadRef
from crm.services.normalization import normalize_phone
from crm.services.tabular_store import LeadSheetStore, SheetUpsert

logger = logging.getLogger(__name__)

# Command kinds
UPSERT_CONTACT = 'upsert_contact'
SYNC_SHEET_EDIT = 'sync_sheet_edit'

COMMAND_KINDS = (UPSERT_CONTACT, SYNC_SHEET_EDIT)


class DocumentWriteFailed(Exception):
    """The document store reported a failed write (it returned no lead)."""


class DualWriteError(Exception):
    """
    Raised when at least one store failed a dual-write.

    ``errors`` maps the store name (``'sheets'`` / ``'documents'``) to the
    exception it raised.
    """

    def __init__(self, operation_id: str, errors: dict):
        self.operation_id = operation_id
        self.errors = errors
        summary = '; '.join(f"{store}: {error}" for store, error in errors.items())
        super().__init__(f"{operation_id} failed ({summary})")


@dataclass
class WriteCommand:
    """
    A serializable, replayable write.

    Args:
        kind: ``upsert_contact`` writes both stores; ``sync_sheet_edit``
            writes the document store only, the sheet already holds the edit
        phone: phone as received
        fields: lead fields for the write
        history_entry: audit entry to append (``action``, ``by``, ``details``)
        submitted_at: submission time in epoch milliseconds
        key: optional discriminator for several commands on one phone
            submitted in the same millisecond
    """

    kind: str
    phone: str
    fields: dict = field(default_factory=dict)
    history_entry: Optional[dict] = None
    submitted_at: int = 0
    key: str = ''

    def __post_init__(self):
        if self.kind not in COMMAND_KINDS:
            raise ValueError(f"Unknown write command kind: {self.kind}")

    @property
    def operation_id(self) -> str:
        parts = [self.kind, normalize_phone(self.phone)]
        if self.key:
            parts.append(self.key)
        parts.append(str(self.submitted_at))
        return '_'.join(parts)

    def history_record(self) -> dict:
        """History entry stamped with the operation id so replays append it once."""
        entry = dict(self.history_entry or {
            'action': 'contact_updated',
            'by': 'system',
            'details': {'source': self.fields.get('source', '')},
        })
        entry['entry_id'] = self.operation_id
        return entry

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'WriteCommand':
        return cls(
            kind=data['kind'],
            phone=data['phone'],
            fields=dict(data.get('fields') or {}),
            history_entry=data.get('history_entry'),
            submitted_at=data.get('submitted_at', 0),
            key=data.get('key', ''),
        )


@dataclass(frozen=True)
class DualWriteResult:
    operation_id: str
    sheet: Optional[SheetUpsert] = None
    lead: Optional[LeadRef] = None

    def to_dict(self) -> dict:
        data = {}
        if self.sheet is not None:
            data['row'] = self.sheet.row
            data['sheet_action'] = self.sheet.action
        if self.lead is not None:
            data['business_id'] = self.lead.business_id
            data['created'] = self.lead.created
        return data


@dataclass(frozen=True)
class SubmitResult:
    """What the caller of ``submit`` learns: synced inline, or accepted for retry."""

    operation_id: str
    queued: bool = False
    result: Optional[DualWriteResult] = None
    error: Optional[str] = None

    @property
    def synced(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict:
        data = {'operation_id': self.operation_id, 'queued': self.queued}
        if self.result is not None:
            data.update(self.result.to_dict())
        if self.error:
            data['error'] = self.error
        return data


class DualWriteOrchestrator:
    """
    Executes write commands against both stores and hands failures to the
    retry queue.

    ``queue`` is anything with ``enqueue(operation_id, command, metadata)``;
    it is usually assigned after construction because the queue in turn
    needs ``execute`` as its retry callable.
    """

    def __init__(self, documents: LeadDocumentStore, sheets: LeadSheetStore,
                 queue=None, document_store_enabled: bool = True):
        self.documents = documents
        self.sheets = sheets
        self.queue = queue
        self.document_store_enabled = document_store_enabled

    async def execute(self, command: WriteCommand) -> DualWriteResult:
        """
        Run one attempt of ``command``.

        Raises:
            DualWriteError: if either store failed; the other store's write
                is still attempted first
        """
        if command.kind == SYNC_SHEET_EDIT:
            return await self._sync_sheet_edit(command)
        return await self._upsert_contact(command)

    async def _upsert_contact(self, command: WriteCommand) -> DualWriteResult:
        errors = {}
        row_hint = None

        if self.document_store_enabled:
            existing = await self.documents.find_by_phone(command.phone)
            if existing is not None:
                row_hint = existing.sheet_row

        sheet = None
        try:
            sheet = await self.sheets.upsert_contact(command.fields, row_hint=row_hint)
        except Exception as e:
            logger.warning(f"Sheet write failed for {command.operation_id}: {e!r}")
            errors['sheets'] = e

        lead = None
        if self.document_store_enabled:
            fields = dict(command.fields)
            if sheet is not None and sheet.row:
                fields['sheet_row'] = sheet.row
            try:
                lead = await self.documents.create_or_update(fields, command.history_record())
                if lead is None:
                    raise DocumentWriteFailed(f"create_or_update returned nothing for {command.phone}")
            except Exception as e:
                logger.warning(f"Document write failed for {command.operation_id}: {e!r}")
                errors['documents'] = e

        if errors:
            raise DualWriteError(command.operation_id, errors)
        return DualWriteResult(command.operation_id, sheet=sheet, lead=lead)

    async def _sync_sheet_edit(self, command: WriteCommand) -> DualWriteResult:
        if not self.document_store_enabled:
            return DualWriteResult(command.operation_id)

        entry = command.history_record()
        lead = await self.documents.update(command.phone, command.fields, entry)
        if lead is None:
            # Not in the document store yet; backfill from the sheet edit, then apply it
            created = await self.documents.create(self._backfill_fields(command))
            if created is None:
                raise DualWriteError(command.operation_id, {
                    'documents': DocumentWriteFailed(f"backfill create failed for {command.phone}"),
                })
            lead = await self.documents.update(command.phone, command.fields, entry)
            if lead is None:
                raise DualWriteError(command.operation_id, {
                    'documents': DocumentWriteFailed(f"update after backfill failed for {command.phone}"),
                })
        return DualWriteResult(command.operation_id, lead=lead)

    @staticmethod
    def _backfill_fields(command: WriteCommand) -> dict:
        updates = command.fields
        fields = {
            'phone': command.phone,
            'source': 'sheet_backfill',
            'channel': 'sheet_sync',
            'sheet_row': updates.get('sheet_row'),
        }
        for name in ('status', 'agent', 'stage'):
            if updates.get(name):
                fields[name] = updates[name]
        return fields

    async def submit(self, command: WriteCommand, metadata: Optional[dict] = None) -> SubmitResult:
        """
        Attempt ``command`` inline; on failure queue it for background retry.

        Never raises a backend error: the caller gets either the synced
        result or ``queued=True``.
        """
        try:
            result = await self.execute(command)
        except Exception as e:
            logger.warning(f"Inline write failed, queueing {command.operation_id}: {e}")
            if self.queue is None:
                logger.error(f"No retry queue configured, dropping {command.operation_id}")
                return SubmitResult(command.operation_id, queued=False, error=str(e))
            self.queue.enqueue(command.operation_id, command, {
                'phone': command.phone,
                'kind': command.kind,
                **(metadata or {}),
            })
            return SubmitResult(command.operation_id, queued=True, error=str(e))

        logger.info(f"Synced {command.operation_id}")
        return SubmitResult(command.operation_id, result=result)
