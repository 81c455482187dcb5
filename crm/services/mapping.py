"""
Mapping service between lead fields and the agents' spreadsheet layout.

The worksheet is a fixed 27-column layout; only the phone column, a handful of
mutable text columns and the row number are addressed by the pipeline. Derived
display columns are written as formulas so the sheet stays self-describing.
"""
import logging
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

from crm.models import Lead

logger = logging.getLogger(__name__)

SHEET_TIMEZONE = ZoneInfo('Asia/Kolkata')
ROW_WIDTH = 27
SERIAL_OFFSET = 230000

SHEET_COLUMNS = {
    'serial': 0,
    'date': 1,
    'time': 2,
    'name': 3,
    'phone': 4,
    'registration_number': 5,
    'location': 6,
    'product': 7,
    'message': 8,
    'source': 9,
    'agent': 10,
    'status': 11,
    'rating': 12,
    'callback_date': 13,
    'remark': 14,
    'team_2': 15,
    'status_2': 16,
    'remark_2': 17,
    'priority': 18,
    'confirmation': 19,
    'community_status': 20,
    'number_without_code': 21,
    'day': 22,
    'hours': 23,
    'converted': 24,
    'attendance': 25,
    'interaction': 26,
}

# Text columns that accumulate instead of being replaced
APPEND_SEPARATORS = {
    'message': ' | ',
    'remark': ' | ',
    'product': ', ',
}

# Leading characters the sheet would evaluate as a formula on a USER_ENTERED append
FORMULA_PREFIXES = ('=', '+', '-', '@')

# Free-text columns filled from inbound data
USER_TEXT_FIELDS = ('name', 'registration_number', 'location', 'message', 'source', 'remark')

# Columns refreshed from inbound data on an existing row, only when non-empty
OVERWRITE_FIELDS = ('name', 'registration_number', 'location', 'community_status')

# Sheet column name (as sent by the edit trigger) -> Lead field
SHEET_EDIT_FIELD_MAP = {
    'name': 'name',
    'location': 'location',
    'team': 'agent',
    'status': 'status',
    'rating': 'rating',
    'remark': 'remark',
    'team_2': 'team_2',
    'status_2': 'status_2',
    'remark_2': 'remark_2',
}

DEFAULT_PRODUCT = 'CGI'
DEFAULT_STATUS = 'Lead'


def column_letter(index: int) -> str:
    """Convert a zero-based column index to A1 notation (0 -> A, 26 -> AA)."""
    letters = ''
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord('A') + remainder) + letters
    return letters


LAST_COLUMN = column_letter(ROW_WIDTH - 1)


def cell_value(row: list, field: str) -> str:
    """Read a field from a raw sheet row, tolerating short rows."""
    index = SHEET_COLUMNS[field]
    if index < len(row) and row[index] is not None:
        return str(row[index])
    return ''


def merge_text(current: str, incoming: str, separator: str) -> Optional[str]:
    """
    Append ``incoming`` to ``current`` with ``separator``.

    Returns ``None`` when nothing changes: empty input, or a segment that is
    already present as the last entry (``' | '`` columns) or anywhere in the
    list (``', '`` columns). This keeps repeated writes of the same event from
    growing the text.
    """
    incoming = (incoming or '').strip()
    if not incoming:
        return None
    current = (current or '').strip()
    if not current:
        return incoming

    segments = [segment.strip() for segment in current.split(separator.strip())]
    if separator.strip() == ',':
        if incoming in segments:
            return None
    elif segments[-1] == incoming:
        return None
    return f"{current}{separator}{incoming}"


def resolve_source(params: dict) -> str:
    """Channel attribution from an explicit source or the ad source URL."""
    if params.get('source'):
        return params['source']
    source_url = params.get('sourceUrl') or ''
    if 'instagram.com' in source_url:
        return 'Insta'
    if 'fb.me' in source_url:
        return 'FB'
    return 'WhatsApp'


def escape_formula(value: Any) -> Any:
    """Quote text that would otherwise be evaluated as a formula."""
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def build_new_row(fields: dict, now: Optional[datetime] = None) -> list:
    """
    Build a full row for a new lead.

    Serial number, day-of-week, hour and converted flag are ``ROW()``-relative
    formulas, so the row is correct wherever the append lands.
    """
    now = (now or datetime.now(tz=SHEET_TIMEZONE)).astimezone(SHEET_TIMEZONE)
    row = [''] * ROW_WIDTH

    def put(field: str, value: Any) -> None:
        if field in USER_TEXT_FIELDS:
            value = escape_formula(value)
        row[SHEET_COLUMNS[field]] = value

    put('serial', f'=ROW()-1+{SERIAL_OFFSET}')
    put('date', now.strftime('%m/%d/%Y'))
    put('time', now.strftime('%H:%M:%S'))
    put('name', fields.get('name', ''))
    put('phone', fields.get('phone', ''))
    put('registration_number', fields.get('registration_number', ''))
    put('location', fields.get('location', ''))
    put('product', fields.get('product') or DEFAULT_PRODUCT)
    put('message', fields.get('message', ''))
    put('source', fields.get('source', ''))
    put('agent', fields.get('agent') or Lead.Stage.NOT_ASSIGNED.value)
    put('status', fields.get('status') or DEFAULT_STATUS)
    put('remark', fields.get('remark', ''))
    put('community_status', fields.get('community_status', ''))
    put('day', '=IFERROR(WEEKDAY(INDIRECT("B"&ROW()),2)&TEXT(INDIRECT("B"&ROW()),"dddd"),"")')
    put('hours', '=IFERROR(HOUR(INDIRECT("C"&ROW())),"")')
    put('converted', '=SWITCH(INDIRECT("L"&ROW()),"Admission Done",1,"Seat Booked",1,0)')
    return row


def build_row_updates(current_row: list, fields: dict) -> dict:
    """
    Compute the targeted cell changes for an existing row.

    Returns a ``{field: new_value}`` map containing only cells that change;
    populated cells are never blanked.
    """
    updates = {}

    for field, separator in APPEND_SEPARATORS.items():
        merged = merge_text(cell_value(current_row, field), fields.get(field, ''), separator)
        if merged is not None:
            updates[field] = merged

    for field in OVERWRITE_FIELDS:
        incoming = (fields.get(field) or '').strip()
        if incoming and incoming != cell_value(current_row, field).strip():
            updates[field] = incoming

    return updates


def build_edit_details(field: str, old_value: Any, new_value: Any) -> dict:
    """Field-specific history details for a spreadsheet edit."""
    old_value = old_value or ''
    new_value = new_value or ''

    if field == 'team':
        return {
            'from': old_value or Lead.Stage.NOT_ASSIGNED.value,
            'to': new_value or Lead.Stage.NOT_ASSIGNED.value,
        }
    if field in ('status', 'status_2'):
        return {'from': old_value, 'to': new_value}
    if field == 'rating':
        return {'rating': new_value}
    if field in ('remark', 'remark_2'):
        return {'text': new_value[:200]}
    if field == 'name':
        return {'oldName': old_value, 'newName': new_value}
    if field == 'location':
        return {'location': new_value}
    return {'value': new_value}


def resolve_attributor(editor: str, field: str, new_value: Any) -> str:
    """An agent claiming a lead is credited by name; other edits by editor."""
    if field == 'team' and new_value and new_value != Lead.Stage.NOT_ASSIGNED:
        return new_value
    return editor or 'unknown'


def map_sheet_edit(field: str, new_value: Any) -> dict:
    """
    Translate a single spreadsheet edit into Lead field updates.

    Claiming (``team`` set to an agent name) also moves the stage to
    ``agent_working``; clearing it returns the lead to ``Not Assigned``.

    Raises:
        KeyError: if the sheet column has no Lead counterpart
    """
    lead_field = SHEET_EDIT_FIELD_MAP[field]
    updates = {lead_field: new_value or ''}

    if field == 'team':
        unassigned = not new_value or new_value == Lead.Stage.NOT_ASSIGNED
        updates['agent'] = new_value or Lead.Stage.NOT_ASSIGNED.value
        updates['stage'] = (
            Lead.Stage.NOT_ASSIGNED.value if unassigned else Lead.Stage.AGENT_WORKING.value
        )
    return updates
