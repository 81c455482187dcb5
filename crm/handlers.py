"""
Event handlers.

Each handler receives the already-parsed webhook params and the process
pipeline, validates the phone, and submits a write command under the lead's
lease. Validation failures raise ``LeadValidationError``; backend failures
never escape, they end up on the retry queue.
"""
import logging

from asgiref.sync import sync_to_async

from crm.models import Lead
from crm.serializers import ManualEntrySerializer, WebFormSerializer, validated_fields
from crm.services.best_effort import fire_and_forget
from crm.services.dual_write import SYNC_SHEET_EDIT, UPSERT_CONTACT, SubmitResult, WriteCommand
from crm.services.mapping import (
    SHEET_EDIT_FIELD_MAP,
    build_edit_details,
    map_sheet_edit,
    resolve_attributor,
    resolve_source,
)
from crm.services.normalization import is_valid_phone, normalize_phone
from crm.services.validation import validate_phone
from crm.tasks import sync_calling_contact

logger = logging.getLogger(__name__)


def _contact_history(source: str, trigger: str) -> dict:
    return {
        'action': 'contact_updated',
        'by': 'system',
        'details': {'source': source, 'trigger': trigger},
    }


def _contact_response(outcome: SubmitResult) -> dict:
    if not outcome.synced:
        message = 'Contact accepted, sync pending'
    elif outcome.result.sheet is not None and outcome.result.sheet.action == 'created':
        message = 'New contact created'
    elif outcome.result.lead is not None and outcome.result.lead.created:
        message = 'New contact created'
    else:
        message = 'Existing contact updated'
    return {'message': message, **outcome.to_dict()}


async def _submit_contact(ctx, fields: dict, handler: str, history_entry: dict = None) -> SubmitResult:
    command = WriteCommand(
        kind=UPSERT_CONTACT,
        phone=fields['phone'],
        fields=fields,
        history_entry=history_entry,
        submitted_at=ctx.now_ms(),
    )
    return await ctx.submit(command, {'handler': handler})


def _sync_calling_contact(phone: str, name: str, trigger: str):
    return fire_and_forget(
        sync_to_async(sync_calling_contact.delay)(phone, name, trigger),
        label=f"calling_sync:{phone}",
    )


# ---------------------------------------------------------------------------
# Contact events
# ---------------------------------------------------------------------------

async def handle_new_contact(params: dict, ctx) -> dict:
    logger.info("New contact")
    phone = validate_phone(params.get('waId'), field='waId', handler='handle_new_contact')
    name = (params.get('senderName') or '').strip()
    source = resolve_source(params)

    _sync_calling_contact(phone, name, 'new_contact')

    outcome = await _submit_contact(
        ctx,
        {'phone': phone, 'name': name, 'source': source, 'channel': 'webhook'},
        'handle_new_contact',
        _contact_history(source, 'new_contact'),
    )
    return _contact_response(outcome)


async def handle_contact_message(params: dict, ctx, trigger: str, message: str = None) -> dict:
    """
    Insert or update a contact from an inbound chat message.

    The message text is appended to the lead's message log; ``team`` in the
    params pre-assigns the lead.
    """
    phone = validate_phone(params.get('waId'), field='waId', handler=f"handle_{trigger}")
    source = resolve_source(params)
    if message is None:
        message = params.get('text') or params.get('msg') or ''

    fields = {
        'phone': phone,
        'name': (params.get('senderName') or '').strip(),
        'message': message,
        'remark': params.get('remark') or '',
        'location': params.get('location') or '',
        'source': source,
        'channel': 'webhook',
    }
    if params.get('team'):
        fields['agent'] = params['team']

    outcome = await _submit_contact(ctx, fields, f"handle_{trigger}", _contact_history(source, trigger))
    return _contact_response(outcome)


async def handle_interested_user(params: dict, ctx) -> dict:
    logger.info("Interested user")
    return await handle_contact_message(params, ctx, 'interested_user')


async def handle_advertisement_contact(params: dict, ctx) -> dict:
    logger.info("Advertisement contact")
    return await handle_contact_message(params, ctx, 'advertisement')


async def handle_keyword_contact(params: dict, ctx) -> dict:
    logger.info("Keyword contact")
    params = {**params, 'sourceUrl': params.get('sourceUrl') or 'keyword_message'}
    return await handle_contact_message(
        params, ctx, 'keyword_message', message=f"Keyword: {params.get('text') or ''}",
    )


async def handle_web_form(params: dict, ctx) -> dict:
    logger.info("Web form")
    data = validated_fields(WebFormSerializer, params, 'handle_web_form')
    phone = normalize_phone(data['phone'])

    outcome = await _submit_contact(
        ctx,
        {
            'phone': phone,
            'name': data['name'],
            'location': data.get('state', ''),
            'source': 'CGI Web Form',
            'product': 'CGI',
            'channel': 'web_form',
        },
        'handle_web_form',
        _contact_history('CGI Web Form', 'web_form'),
    )
    return _contact_response(outcome)


async def handle_manual_entry(params: dict, ctx) -> dict:
    logger.info("Manual entry")
    data = validated_fields(ManualEntrySerializer, params, 'handle_manual_entry')
    phone = normalize_phone(data['waId'])
    source = data.get('source') or 'Manual Entry'

    outcome = await _submit_contact(
        ctx,
        {
            'phone': phone,
            'name': data['senderName'],
            'remark': data.get('remark', ''),
            'location': data.get('location', ''),
            'product': data.get('product') or 'CGI',
            'source': source,
            'agent': data.get('team') or Lead.Stage.NOT_ASSIGNED.value,
            'channel': 'manual_entry',
        },
        'handle_manual_entry',
        _contact_history(source, 'manual_entry'),
    )
    return {
        'status': 'success',
        'message': 'Manual inquiry added',
        **outcome.to_dict(),
    }


# ---------------------------------------------------------------------------
# Form, community and payment events
# ---------------------------------------------------------------------------

async def handle_form_submission(params: dict, ctx) -> dict:
    """Registration form: name, registration number and chosen product."""
    logger.info("Processing form")
    field = 'form_num' if params.get('form_num') else 'wa_num'
    phone = validate_phone(params.get(field), field=field, handler='handle_form_submission')
    option = params.get('option') or ''

    outcome = await _submit_contact(
        ctx,
        {
            'phone': phone,
            'name': params.get('name') or '',
            'registration_number': params.get('form_num') or '',
            'product': option,
            'source': 'WhatsApp Form',
            'channel': 'whatsapp_form',
        },
        'handle_form_submission',
        {
            'action': 'form_submitted',
            'by': 'customer',
            'details': {'form': 'whatsapp_flow', 'option': option},
        },
    )
    return {'status': 'form_update_success', **outcome.to_dict()}


async def handle_community_join(params: dict, ctx) -> dict:
    """Mark a known lead as joined; unknown phones are ignored."""
    phone = validate_phone(params.get('waId') or params.get('phone'), handler='handle_community_join')

    known = False
    if ctx.document_store_enabled:
        known = await ctx.documents.find_by_phone(phone) is not None
    if not known:
        try:
            known = await ctx.sheets.find_by_phone(phone) is not None
        except Exception as e:
            # Lookup outage: submit anyway, the write path queues on failure
            logger.warning(f"Community join lookup failed for {phone}: {e!r}")
            known = True
    if not known:
        logger.info(f"Community join: {phone} not found")
        return {'message': 'User not found'}

    outcome = await _submit_contact(
        ctx,
        {'phone': phone, 'community_status': 'Joined'},
        'handle_community_join',
        {
            'action': 'community_joined',
            'by': 'system',
            'details': {'group': params.get('groupName') or 'unknown'},
        },
    )
    return {'message': 'Community join recorded', **outcome.to_dict()}


async def handle_payment(params: dict, ctx) -> dict:
    """
    Match a payment to a lead: document store first, then a sheet scan.

    Unmatched payments are flagged for manual review.
    """
    logger.info("Processing payment")
    phone = params.get('phone') or params.get('contact_number') or ''

    if is_valid_phone(phone):
        if ctx.document_store_enabled:
            lead = await ctx.documents.find_by_phone(phone)
            if lead is not None:
                logger.info(f"Payment matched via document store: {lead.business_id}")
                return {'status': 'payment_processed', 'business_id': lead.business_id}

        try:
            row = await ctx.sheets.find_by_phone(phone)
        except Exception as e:
            logger.error(f"Payment sheet lookup failed for {phone}: {e!r}")
            return {'status': 'manual_review_required', 'phone': phone, 'reason': 'lookup_failed'}
        if row is not None:
            logger.info(f"Payment matched via sheet row {row.row}")
            return {'status': 'payment_processed', 'row': row.row}

    logger.info("Payment not matched - manual review required")
    return {'status': 'manual_review_required', 'phone': phone}


async def handle_registration_check(params: dict, ctx) -> dict:
    """Answer "my registered number?" from the document store."""
    phone = validate_phone(params.get('waId'), field='waId', handler='handle_registration_check')
    lead = await ctx.documents.find_by_phone(phone) if ctx.document_store_enabled else None
    if lead is not None and lead.registration_number:
        return {'message': 'already_registered', 'registration_number': lead.registration_number}
    return {'message': 'not_registered', 'phone': phone}


# ---------------------------------------------------------------------------
# Sheet edits (agents editing the spreadsheet)
# ---------------------------------------------------------------------------

def _check_edit(edit: dict):
    phone = edit.get('phone')
    if not phone:
        return 'no_phone'
    if not is_valid_phone(phone):
        return 'invalid_phone'
    if edit.get('field') not in SHEET_EDIT_FIELD_MAP:
        return 'unknown_field'
    return None


def _edit_command(edit: dict, index: int, editor: str, submitted_at: int) -> WriteCommand:
    field = edit['field']
    new_value = edit.get('newValue')
    updates = map_sheet_edit(field, new_value)
    try:
        updates['sheet_row'] = int(edit['row'])
    except (KeyError, TypeError, ValueError):
        pass

    return WriteCommand(
        kind=SYNC_SHEET_EDIT,
        phone=edit['phone'],
        fields=updates,
        history_entry={
            'action': edit.get('action') or 'field_updated',
            'by': resolve_attributor(editor, field, new_value),
            'details': build_edit_details(field, edit.get('oldValue'), new_value),
        },
        submitted_at=submitted_at,
        key=f"{field}{index}",
    )


async def handle_sheet_edit(params: dict, ctx) -> dict:
    """
    Mirror a batch of spreadsheet edits into the document store.

    Soft failures (bad phone, unmapped column) are reported per edit; hard
    failures are also recorded as ``SyncFailure`` rows.
    """
    edits = params.get('edits') or []
    editor = params.get('editor') or 'unknown'
    if not edits:
        return {'synced': 0, 'queued': 0, 'errors': 0, 'failed': [], 'message': 'No edits to process'}

    try:
        submitted_at = int(params.get('timestamp'))
    except (TypeError, ValueError):
        submitted_at = ctx.now_ms()

    retry_note = ' (RETRY)' if params.get('isRetry') else ''
    logger.info(f"Processing {len(edits)} edit(s) from {editor}{retry_note}")

    synced = queued = errors = 0
    failed, details = [], []

    for index, edit in enumerate(edits):
        edit = dict(edit)
        reason = _check_edit(edit)
        if reason:
            logger.warning(f"Edit skipped ({reason}): {edit.get('phone')!r} {edit.get('field')!r}")
            errors += 1
            failed.append({**edit, 'failReason': reason})
            details.append({'phone': edit.get('phone'), 'field': edit.get('field'),
                            'status': 'failed', 'reason': reason})
            continue

        try:
            outcome = await ctx.submit(
                _edit_command(edit, index, editor, submitted_at),
                {'handler': 'handle_sheet_edit', 'editor': editor},
            )
        except Exception as e:
            logger.error(f"Error processing edit for {edit['phone']}: {e!r}")
            errors += 1
            edit['retryCount'] = edit.get('retryCount', 0) + 1
            edit['failReason'] = edit['lastError'] = str(e)
            failed.append(edit)
            details.append({'phone': edit['phone'], 'field': edit['field'],
                            'status': 'error', 'reason': str(e)})
            fire_and_forget(
                ctx.documents.store_sync_failure(
                    'sheet_edit', edit['phone'], edit, str(e), edit['retryCount'],
                ),
                label=f"sync_failure:{edit['phone']}",
            )
            continue

        if not outcome.synced:
            queued += 1
            details.append({'phone': edit['phone'], 'field': edit['field'], 'status': 'queued'})
        else:
            synced += 1
            detail = {'phone': edit['phone'], 'field': edit['field'], 'status': 'synced'}
            if outcome.result.lead is not None:
                detail['business_id'] = outcome.result.lead.business_id
            details.append(detail)

    logger.info(f"Done: {synced} synced, {queued} queued, {errors} errors")
    return {
        'synced': synced,
        'queued': queued,
        'errors': errors,
        'failed': failed,
        'details': details,
        'message': f"Processed {len(edits)} edit(s)",
    }
