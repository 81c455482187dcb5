"""
Process wiring: one pipeline per process, shared by every request handler.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from django.conf import settings

from crm.routing import RecentEventCache
from crm.services.document_store import LeadDocumentStore
from crm.services.dual_write import DualWriteOrchestrator, DualWriteResult, SubmitResult, WriteCommand
from crm.services.lease_lock import LeaseLock, LeaseTimeoutError
from crm.services.normalization import last_digits
from crm.services.retry_queue import PendingWrite, PendingWriteQueue
from crm.services.tabular_store import LeadSheetStore

logger = logging.getLogger(__name__)


def lock_identity(phone) -> str:
    """Leases are keyed by tail digits so every channel's format shares one lock."""
    return last_digits(phone)


@dataclass
class Pipeline:
    documents: LeadDocumentStore
    sheets: LeadSheetStore
    orchestrator: DualWriteOrchestrator
    queue: PendingWriteQueue
    lock: LeaseLock
    events: RecentEventCache
    clock: Callable[[], float] = field(default=time.time)

    @property
    def document_store_enabled(self) -> bool:
        return self.orchestrator.document_store_enabled

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def execute_locked(self, command: WriteCommand) -> DualWriteResult:
        """Retry path: replays hold the same lease as fresh events."""
        async with self.lock.hold(lock_identity(command.phone)):
            return await self.orchestrator.execute(command)

    async def submit(self, command: WriteCommand, metadata: Optional[dict] = None) -> SubmitResult:
        """
        Take the lead's lease and submit ``command``.

        In strict lock mode a lease timeout queues the command instead of
        writing without the lock.
        """
        try:
            async with self.lock.hold(lock_identity(command.phone)):
                return await self.orchestrator.submit(command, metadata)
        except LeaseTimeoutError as e:
            logger.warning(f"Queueing {command.operation_id}: {e}")
            self.queue.enqueue(command.operation_id, command, {
                'phone': command.phone,
                'kind': command.kind,
                **(metadata or {}),
            })
            return SubmitResult(command.operation_id, queued=True, error=str(e))


def _dead_letter_recorder(documents: LeadDocumentStore):
    async def record(item: PendingWrite, reason: str) -> None:
        command = item.command.to_dict() if hasattr(item.command, 'to_dict') else {}
        await documents.store_sync_failure(
            source=f"retry_queue:{reason}",
            phone=item.metadata.get('phone', ''),
            payload={'operation_id': item.operation_id, 'command': command, 'metadata': item.metadata},
            error=item.last_error or reason,
            retry_count=item.attempts,
        )
    return record


def build_pipeline(clock: Callable[[], float] = time.time, autostart: bool = True,
                   documents: Optional[LeadDocumentStore] = None,
                   sheets: Optional[LeadSheetStore] = None,
                   lock: Optional[LeaseLock] = None) -> Pipeline:
    """Construct the pipeline from settings; collaborators may be injected."""
    documents = documents or LeadDocumentStore()
    sheets = sheets or LeadSheetStore()
    lock = lock or LeaseLock()
    orchestrator = DualWriteOrchestrator(
        documents, sheets, document_store_enabled=settings.DOCUMENT_STORE_ENABLED,
    )
    pipeline = Pipeline(
        documents=documents,
        sheets=sheets,
        orchestrator=orchestrator,
        queue=None,
        lock=lock,
        events=RecentEventCache(clock=clock),
        clock=clock,
    )
    pipeline.queue = PendingWriteQueue(
        pipeline.execute_locked,
        clock=clock,
        on_dead_letter=_dead_letter_recorder(documents),
        autostart=autostart,
    )
    orchestrator.queue = pipeline.queue
    return pipeline


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
        logger.info(
            f"Pipeline ready (document store {'on' if _pipeline.document_store_enabled else 'off'})"
        )
    return _pipeline


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    """Replace the process pipeline (``None`` rebuilds it lazily)."""
    global _pipeline
    _pipeline = pipeline
