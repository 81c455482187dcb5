"""
Tests for the spreadsheet adapter against an in-memory worksheet.
"""
import pytest
from asgiref.sync import async_to_sync

from crm.services.mapping import SHEET_COLUMNS
from crm.services.sheets_client import SheetsAPIError
from crm.services.tabular_store import LeadSheetStore

PHONE_COL = SHEET_COLUMNS['phone']
MESSAGE_COL = SHEET_COLUMNS['message']


def row_with(phone, **values):
    row = [''] * 27
    row[PHONE_COL] = phone
    for field, value in values.items():
        row[SHEET_COLUMNS[field]] = value
    return row


class TestFindByPhone:

    def test_tail_digit_match(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('918000000001'), row_with('9876543210')]

        found = async_to_sync(sheet_store.find_by_phone)('+91 98765 43210')

        assert found.row == 3
        assert found.get('phone') == '9876543210'

    def test_not_found(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('918000000001')]
        assert async_to_sync(sheet_store.find_by_phone)('919876543210') is None

    def test_empty_phone_skips_scan(self, fake_sheets, sheet_store):
        assert async_to_sync(sheet_store.find_by_phone)('') is None
        assert fake_sheets.calls == []


class TestUpsertContact:
    """Tests for insert-or-merge semantics."""

    def test_appends_new_row(self, fake_sheets, sheet_store):
        result = async_to_sync(sheet_store.upsert_contact)(
            {'phone': '919876543210', 'name': 'Asha', 'message': 'hi'}
        )

        assert result.action == 'created'
        assert result.row == 2
        assert len(fake_sheets.rows) == 1
        assert fake_sheets.rows[0][PHONE_COL] == '919876543210'

    def test_twice_with_same_input_keeps_one_row(self, fake_sheets, sheet_store):
        fields = {'phone': '919876543210', 'name': 'Asha', 'message': 'hi'}

        first = async_to_sync(sheet_store.upsert_contact)(fields)
        second = async_to_sync(sheet_store.upsert_contact)(fields)

        assert first.action == 'created'
        assert second.action == 'unchanged'
        assert second.row == first.row
        assert len(fake_sheets.rows) == 1
        assert fake_sheets.rows[0][MESSAGE_COL] == 'hi'

    def test_existing_row_gets_targeted_merge(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('9876543210', name='Asha', message='hi')]

        result = async_to_sync(sheet_store.upsert_contact)(
            {'phone': '919876543210', 'name': '', 'message': 'price?'}
        )

        assert result.action == 'updated'
        assert result.row == 2
        assert fake_sheets.rows[0][MESSAGE_COL] == 'hi | price?'
        assert fake_sheets.rows[0][SHEET_COLUMNS['name']] == 'Asha'
        batch = [call for call in fake_sheets.calls if call[0] == 'batch_update']
        assert [block['range'] for block in batch[0][1]] == ['Sheet5!I2']

    def test_valid_row_hint_avoids_full_scan(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('918000000001'), row_with('919876543210')]

        async_to_sync(sheet_store.upsert_contact)({'phone': '919876543210', 'remark': 'x'}, row_hint=3)

        reads = [call[1] for call in fake_sheets.calls if call[0] == 'get_values']
        assert reads == ['Sheet5!A3:AA3']

    def test_stale_row_hint_falls_back_to_scan(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('918000000001'), row_with('919876543210')]

        result = async_to_sync(sheet_store.upsert_contact)(
            {'phone': '919876543210', 'remark': 'x'}, row_hint=2
        )

        assert result.row == 3
        assert fake_sheets.rows[1][SHEET_COLUMNS['remark']] == 'x'

    def test_backend_errors_propagate(self, fake_sheets, sheet_store):
        fake_sheets.fail_with = SheetsAPIError('unavailable', status_code=503)

        with pytest.raises(SheetsAPIError):
            async_to_sync(sheet_store.upsert_contact)({'phone': '919876543210'})


class TestUpdateCellsByRow:

    def test_writes_named_fields(self, fake_sheets, sheet_store):
        fake_sheets.rows = [row_with('919876543210')]

        async_to_sync(sheet_store.update_cells_by_row)(2, {'community_status': 'Joined', 'status': 'Lead'})

        assert fake_sheets.rows[0][SHEET_COLUMNS['community_status']] == 'Joined'
        assert fake_sheets.rows[0][SHEET_COLUMNS['status']] == 'Lead'

    def test_empty_map_makes_no_call(self, fake_sheets, sheet_store):
        async_to_sync(sheet_store.update_cells_by_row)(2, {})
        assert fake_sheets.calls == []


def test_appended_row_parsed_from_updated_range():
    assert LeadSheetStore._appended_row({'updates': {'updatedRange': 'Sheet5!A42:AA42'}}) == 42
    assert LeadSheetStore._appended_row({}) is None
