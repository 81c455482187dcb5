"""
Event routing and inbound de-duplication.

Routes are an ordered table of ``(name, match, handler)``; the first match
wins. Delivery retries from upstream integrations are blocked by a
time-boxed map of recently seen event ids.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from django.conf import settings

from crm import handlers

logger = logging.getLogger(__name__)

# Upstream event discriminators
NEW_CONTACT = 'newContactMessageReceived'
MESSAGE = 'message'
FORM_FILLED = 'MC_FormFilled'
PAYMENT = 'Payment_Received'
GROUP_JOIN = 'GRP_LINK_CLICK'
WEB_FORM = 'CGI_Web_Form'
MANUAL_ENTRY = 'Manually_Entry'
SHEET_EDIT = 'sheet_edit'
INTERESTED_REPLY_ID = 'EPXcDmp'

# English keywords matched with typo tolerance
FUZZY_KEYWORDS = (
    'online', 'offline', 'masterclass', 'register', 'address',
    'link', 'course', 'jyotish', 'vastu', 'hi', 'hello',
    'learn', 'vedic', 'astrology', 'hey', 'detail', 'info',
    'more', 'cvpt', 'price', 'syllabus', 'fees',
)

# Gujarati keywords, matched exactly
EXACT_KEYWORDS = (
    'ફ્રી રજિસ્ટર કરો',
    'ફ્રી',
    'રજિસ્ટર',
    'કરો',
    'માસ્ટરક્લાસ',
    'ઓનલાઇન',
    'ઓફલાઇન',
)

AD_SOURCE_PREFIXES = ('https://www.instagram.com/', 'https://fb.me/')


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def _keyword_threshold(keyword: str) -> int:
    if len(keyword) <= 3:
        return 1
    if len(keyword) <= 6:
        return 2
    if len(keyword) <= 10:
        return 3
    return 4


def contains_fuzzy_keywords(text: str) -> bool:
    """True when the message mentions a course keyword, typos tolerated."""
    if not text:
        return False
    lowered = text.lower()
    if any(keyword in lowered for keyword in EXACT_KEYWORDS):
        return True

    words = lowered.split()
    return any(
        levenshtein(word, keyword) <= _keyword_threshold(keyword)
        for keyword in FUZZY_KEYWORDS
        for word in words
    )


def matches_registration_check(text: str) -> bool:
    """True for "my registered number?" and close misspellings of it."""
    if not text:
        return False
    normalized = text.lower().strip()
    if normalized in ('my registered number?', 'my registered number'):
        return True

    words = normalized.split()
    has_registered = any(levenshtein(word, 'registered') <= 3 for word in words)
    has_number = any(levenshtein(word, 'number') <= 2 for word in words)
    return has_registered and has_number


def is_from_advertisement(source_url) -> bool:
    return bool(source_url) and any(prefix in source_url for prefix in AD_SOURCE_PREFIXES)


def _event_type(params: dict) -> str:
    return params.get('eventType') or params.get('event_type') or ''


def _is_message(params: dict) -> bool:
    return _event_type(params) == MESSAGE and bool(params.get('text'))


@dataclass(frozen=True)
class Route:
    name: str
    match: Callable[[dict], bool]
    handler: Callable[..., Awaitable[dict]]
    skip_duplicate: bool = False


ROUTES = (
    Route('sheet_edit', lambda p: _event_type(p) == SHEET_EDIT,
          handlers.handle_sheet_edit, skip_duplicate=True),
    Route('web_form', lambda p: _event_type(p) == WEB_FORM, handlers.handle_web_form),
    Route('new_contact', lambda p: _event_type(p) == NEW_CONTACT, handlers.handle_new_contact),
    Route('registration_check',
          lambda p: _is_message(p) and matches_registration_check(p['text']),
          handlers.handle_registration_check),
    Route('keyword_message',
          lambda p: _is_message(p) and contains_fuzzy_keywords(p['text']),
          handlers.handle_keyword_contact),
    Route('advertisement', lambda p: is_from_advertisement(p.get('sourceUrl')),
          handlers.handle_advertisement_contact),
    Route('manual_entry', lambda p: _event_type(p) == MANUAL_ENTRY, handlers.handle_manual_entry),
    Route('interested_user',
          lambda p: (p.get('listReply') or {}).get('id') == INTERESTED_REPLY_ID,
          handlers.handle_interested_user),
    Route('form_filled', lambda p: _event_type(p) == FORM_FILLED, handlers.handle_form_submission),
    Route('payment', lambda p: _event_type(p) == PAYMENT, handlers.handle_payment),
    Route('group_join', lambda p: _event_type(p) == GROUP_JOIN, handlers.handle_community_join),
)


def find_route(params: dict) -> Optional[Route]:
    for route in ROUTES:
        if route.match(params):
            return route
    return None


def generate_event_id(params: dict, now_ms: Optional[int] = None) -> str:
    """
    Identity of an inbound delivery, for duplicate blocking.

    Message ids win; otherwise the event type, phone and a 10-second bucket of
    the event timestamp.
    """
    data = params.get('data') if isinstance(params.get('data'), dict) else {}
    phone = params.get('waId') or params.get('wa_num') or params.get('phone') or data.get('phone') or ''
    event_type = (
        params.get('type') or params.get('eventType') or params.get('event_type')
        or params.get('event') or ''
    )
    message_id = params.get('messageId') or params.get('id') or ''
    try:
        timestamp = int(params.get('timestamp'))
    except (TypeError, ValueError):
        timestamp = now_ms if now_ms is not None else int(time.time() * 1000)

    if message_id:
        return f"msg_{message_id}"
    if event_type == 'whatsapp_flow_reply':
        return f"flow_{phone}"
    if event_type == SHEET_EDIT:
        return f"sheet_edit_{timestamp}"
    return f"{event_type}_{phone}_{timestamp // 10000}"


class RecentEventCache:
    """
    Event ids seen within the last ``window`` seconds.

    Expired ids are swept at most once per window; an expired id that has not
    been swept yet is already treated as unseen.
    """

    def __init__(self, window: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.window = window or getattr(settings, 'EVENT_DEDUP_WINDOW_SECONDS', 3600)
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._seen)

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window
        self._seen = {key: seen_at for key, seen_at in self._seen.items() if seen_at >= cutoff}
        self._last_sweep = now

    def check_and_mark(self, event_id: str) -> bool:
        """Return True if ``event_id`` is a duplicate; otherwise remember it."""
        now = self._clock()
        if now - self._last_sweep >= self.window:
            self._sweep(now)

        seen_at = self._seen.get(event_id)
        if seen_at is not None and now - seen_at <= self.window:
            return True
        self._seen[event_id] = now
        return False


async def dispatch_event(params: dict, ctx) -> dict:
    """
    Route one inbound event.

    Returns:
        The handler's result, ``{'message': 'duplicate_ignored'}`` for a
        repeated delivery, or ``{'message': 'No handler found'}``
    """
    route = find_route(params)

    if not (route and route.skip_duplicate):
        event_id = generate_event_id(params, ctx.now_ms())
        if ctx.events.check_and_mark(event_id):
            logger.info(f"Duplicate blocked: {event_id}")
            return {'message': 'duplicate_ignored'}

    if route is None:
        event_type = _event_type(params) or params.get('type') or 'unknown'
        logger.info(f"No handler for: {event_type}")
        return {'message': 'No handler found'}

    logger.info(f"Matched: {route.name}")
    return await route.handler(params, ctx)
