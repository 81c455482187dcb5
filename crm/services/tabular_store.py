"""
Tabular store adapter: the spreadsheet mirror agents work in.

One row per lead, located by scanning the phone column with tail-digit
matching. Backend errors always propagate so the dual-write orchestrator can
queue a retry.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from django.conf import settings

from crm.services.mapping import (
    LAST_COLUMN,
    SHEET_COLUMNS,
    build_new_row,
    build_row_updates,
    cell_value,
    column_letter,
)
from crm.services.normalization import last_digits, phones_match
from crm.services.sheets_client import SheetsClient

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2
UPDATED_RANGE_ROW = re.compile(r'![A-Z]+(\d+)')


@dataclass
class SheetRow:
    row: int
    values: list = field(default_factory=list)

    def get(self, field_name: str) -> str:
        return cell_value(self.values, field_name)


@dataclass(frozen=True)
class SheetUpsert:
    row: Optional[int]
    action: str  # 'created' | 'updated' | 'unchanged'


class LeadSheetStore:
    """Find, upsert and targeted cell writes against the leads worksheet."""

    def __init__(self, client: Optional[SheetsClient] = None, tab: Optional[str] = None):
        self.client = client or SheetsClient()
        self.tab = tab or settings.SHEETS_LEADS_TAB

    def _range(self, a1: str) -> str:
        return f"{self.tab}!{a1}"

    async def find_by_phone(self, phone) -> Optional[SheetRow]:
        """Scan every data row for a phone-column match (O(n) in rows)."""
        search = last_digits(phone)
        if not search:
            return None

        rows = await self.client.get_values(self._range(f'A{FIRST_DATA_ROW}:{LAST_COLUMN}'))
        for offset, values in enumerate(rows):
            if phones_match(cell_value(values, 'phone'), search):
                return SheetRow(row=offset + FIRST_DATA_ROW, values=values)
        return None

    async def get_row(self, row: int) -> Optional[SheetRow]:
        rows = await self.client.get_values(self._range(f'A{row}:{LAST_COLUMN}{row}'))
        if not rows:
            return None
        return SheetRow(row=row, values=rows[0])

    async def _locate(self, phone, row_hint: Optional[int]) -> Optional[SheetRow]:
        if row_hint and row_hint >= FIRST_DATA_ROW:
            hinted = await self.get_row(row_hint)
            if hinted and phones_match(hinted.get('phone'), phone):
                return hinted
            logger.info(f"Row hint {row_hint} no longer holds {last_digits(phone)}, rescanning")
        return await self.find_by_phone(phone)

    async def update_cells_by_row(self, row: int, field_map: dict) -> None:
        """Write the given fields into an already-located row."""
        data = [
            {
                'range': self._range(f'{column_letter(SHEET_COLUMNS[name])}{row}'),
                'values': [[value]],
            }
            for name, value in field_map.items()
        ]
        if data:
            await self.client.batch_update(data)
            logger.info(f"Row {row} updated: {', '.join(field_map)}")

    async def upsert_contact(self, fields: dict, row_hint: Optional[int] = None) -> SheetUpsert:
        """
        Merge a lead into its existing row, or append a new one.

        Safe to repeat with identical input: the second call finds the row the
        first one wrote and has nothing left to change.
        """
        phone = fields.get('phone', '')
        existing = await self._locate(phone, row_hint)

        if existing:
            updates = build_row_updates(existing.values, fields)
            if not updates:
                logger.info(f"Contact {last_digits(phone)} unchanged at row {existing.row}")
                return SheetUpsert(row=existing.row, action='unchanged')
            await self.update_cells_by_row(existing.row, updates)
            return SheetUpsert(row=existing.row, action='updated')

        response = await self.client.append_row(
            self._range(f'A:{LAST_COLUMN}'), build_new_row(fields)
        )
        row = self._appended_row(response)
        logger.info(f"New contact {last_digits(phone)} appended at row {row}")
        return SheetUpsert(row=row, action='created')

    @staticmethod
    def _appended_row(response: dict) -> Optional[int]:
        updated_range = (response.get('updates') or {}).get('updatedRange', '')
        match = UPDATED_RANGE_ROW.search(updated_range)
        return int(match.group(1)) if match else None
