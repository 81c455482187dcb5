import logging
import os
import re
import sys

import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'lead_sync.settings')
os.environ.setdefault('USE_SQLITE_FOR_TESTS', 'true')

CELL = re.compile(r'^([A-Z]*)(\d*)$')


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - ord('A') + 1)
    return index - 1


def _parse_cell(a1: str):
    letters, digits = CELL.match(a1).groups()
    return letters, int(digits) if digits else None


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSheetsClient:
    """
    In-memory worksheet speaking the ``SheetsClient`` interface.

    ``rows`` holds data rows only; ``rows[0]`` is sheet row 2 (row 1 is the
    header). Set ``fail_with`` to an exception to simulate an outage.
    """

    def __init__(self, rows=None):
        self.rows = [list(row) for row in rows or []]
        self.calls = []
        self.fail_with = None

    def _call(self, name: str, *args):
        self.calls.append((name, *args))
        if self.fail_with is not None:
            raise self.fail_with

    def _cell_ref(self, range_: str):
        letters, row = _parse_cell(range_.split('!', 1)[1])
        return _column_index(letters), row

    def cell(self, row: int, column: int) -> str:
        values = self.rows[row - 2]
        return values[column] if column < len(values) else ''

    async def get_values(self, range_: str) -> list:
        self._call('get_values', range_)
        start, _, end = range_.split('!', 1)[1].partition(':')
        _, start_row = _parse_cell(start)
        _, end_row = _parse_cell(end) if end else (None, start_row)
        first = max((start_row or 2) - 2, 0)
        last = len(self.rows) if end_row is None else end_row - 1
        return [list(row) for row in self.rows[first:last]]

    async def batch_update(self, data: list) -> dict:
        self._call('batch_update', data)
        for block in data:
            column, row = self._cell_ref(block['range'])
            self._set(row, column, block['values'][0][0])
        return {}

    async def append_row(self, range_: str, row: list) -> dict:
        self._call('append_row', range_)
        self.rows.append(list(row))
        number = len(self.rows) + 1
        return {'updates': {'updatedRange': f"{range_.split('!')[0]}!A{number}:AA{number}"}}

    def _set(self, row: int, column: int, value) -> None:
        values = self.rows[row - 2]
        if column >= len(values):
            values.extend([''] * (column + 1 - len(values)))
        values[column] = value


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sheets():
    return FakeSheetsClient()


@pytest.fixture
def sheet_store(fake_sheets):
    from crm.services.tabular_store import LeadSheetStore
    return LeadSheetStore(client=fake_sheets, tab='Sheet5')


@pytest.fixture
def documents():
    from crm.services.document_store import LeadDocumentStore
    return LeadDocumentStore(timeout=5)


@pytest.fixture
def lock_cache():
    from django.core.cache import caches
    cache = caches['locks']
    cache.clear()
    yield cache
    cache.clear()


@pytest.fixture
def dead_letters():
    """Records emitted on the dead-letter logger (it does not propagate)."""
    # Importing the ASGI module re-runs django.setup(), whose LOGGING dictConfig
    # would drop a handler attached beforehand; import it first.
    import lead_sync.asgi  # noqa: F401
    handler = ListHandler()
    dead_letter_logger = logging.getLogger('crm.dead_letter')
    dead_letter_logger.addHandler(handler)
    yield handler.records
    dead_letter_logger.removeHandler(handler)


@pytest.fixture
def pipeline(documents, sheet_store, fake_clock, lock_cache):
    """Process pipeline over the in-memory sheet, with a manual retry loop."""
    from crm.runtime import build_pipeline, set_pipeline
    from crm.services.lease_lock import LeaseLock

    built = build_pipeline(
        clock=fake_clock,
        autostart=False,
        documents=documents,
        sheets=sheet_store,
        lock=LeaseLock(cache=lock_cache, poll_interval=0.001, max_attempts=5, strict=False),
    )
    set_pipeline(built)
    yield built
    set_pipeline(None)


@pytest.fixture
def web_form_payload():
    return {
        'eventType': 'CGI_Web_Form',
        'name': 'Asha Patel',
        'phone': '+91 98765 43210',
        'state': 'Gujarat',
    }


@pytest.fixture
def new_contact_payload():
    return {
        'eventType': 'newContactMessageReceived',
        'waId': '919876543210',
        'senderName': 'Asha Patel',
        'sourceUrl': '',
    }
