"""
Dedup & Cancellation Engine
Keeps at most one active delivery per logical target:
  - find_equivalent() spots a trigger whose data was already sent
  - cancel_superseded() retires older TODO/ERROR queries for the same key
  - handle_trigger() is the entry point for a domain event
"""

import functools
import logging
from typing import Any, Dict, Optional

from crmsync.engine import hooks, store
from crmsync.engine import query as query_entity
from crmsync.engine.debounce import DebounceWindow
from crmsync.models import Query, STATE_TODO, STATE_ERROR, STATE_DONE, STATE_SENDED
from crmsync.config import config

logger = logging.getLogger(__name__)

MSG_SUPERSEDED = (
    'Your request has been canceled because a more recent request '
    'has already been created or sent to Pipedrive.'
)

# Cart updates fire in bursts; only the last one per order is processed
cart_window = DebounceWindow(config.DEBOUNCE_SECONDS)


def same_payload(stored_payload: Dict[str, Any], formatted_hook: Dict[str, Any]) -> bool:
    """
    Compare a stored payload (derived 'data' ignored) with a fresh FormattedHook
    on fields and products. Dict key order does not matter.
    """
    if not isinstance(stored_payload, dict) or 'fields' not in stored_payload:
        return False
    return (
        stored_payload.get('fields') == formatted_hook.get('fields')
        and stored_payload.get('products') == formatted_hook.get('products')
    )


def find_equivalent(formatted_hook: Dict[str, Any]) -> Optional[Query]:
    """
    Latest DONE/SENDED query for the same category/source/source_id when its
    payload still matches the hook, else None.
    """
    page = store.list_queries({
        'category': formatted_hook.get('category'),
        'source': formatted_hook.get('source'),
        'source_id': formatted_hook.get('source_id'),
        'state': [STATE_DONE, STATE_SENDED],
    }, page=1, per_page=1)

    if not page.items:
        return None

    last = page.items[0]
    if same_payload(last.payload, formatted_hook):
        return last
    return None


def cancel_superseded(query: Query) -> int:
    """
    Cancel TODO/ERROR queries sharing category, source_id, target_id and hook
    with a smaller id than `query`. Returns how many were canceled.
    """
    if not query.id:
        return 0

    page = store.list_queries({
        'state': [STATE_TODO, STATE_ERROR],
        'category': query.category,
        'source_id': query.source_id,
        'target_id': query.target_id,
        'hook': query.hook,
    }, page=1, per_page=-1)

    canceled = 0
    for older in page.items:
        if older.id < query.id:
            query_entity.add_traceback(older, query_entity.STEP_CANCELLATION, False, MSG_SUPERSEDED)
            query_entity.cancel(older)
            canceled += 1

    if canceled:
        logger.info(f"Query ID {query.id} superseded {canceled} older queries")
    return canceled


def cart_key(source_id: int):
    return ('order', source_id)


def is_deferred(hook_key: str, source_id: int) -> bool:
    """True while a cart update for this order waits for its window to go quiet."""
    return hook_key == hooks.CART_UPDATED_HOOK and cart_window.is_pending(cart_key(source_id))


def handle_trigger(hook_key: str, category: str, source_id: int,
                   send_now: bool = False) -> Optional[Query]:
    """
    React to a domain event for one shop entity.

    Returns the query that now represents the change (new or equivalent),
    or None when no enabled hook matches. Cart updates return None too: the
    latest one per order is processed once the order has been quiet for
    DEBOUNCE_SECONDS, reading the cart as it is at that moment.
    """
    if hook_key == hooks.CART_UPDATED_HOOK:
        if not hooks.get_hook(hook_key, category, source_id):
            logger.info(f"{hook_key}: no enabled {category} hook, nothing to do for #{source_id}")
            return None
        cart_window.submit(
            cart_key(source_id),
            functools.partial(process_trigger, hook_key, category, source_id, send_now),
        )
        logger.info(f"{hook_key}: order #{source_id} deferred until {cart_window.seconds}s without updates")
        return None

    return process_trigger(hook_key, category, source_id, send_now)


def process_trigger(hook_key: str, category: str, source_id: int,
                    send_now: bool = False) -> Optional[Query]:
    """Format the hook now, then reuse an equivalent query or create one."""
    hook = hooks.get_hook(hook_key, category, source_id)
    if not hook:
        logger.info(f"{hook_key}: no enabled {category} hook, nothing to do for #{source_id}")
        return None

    formatted = hooks.format_hook(hook, source_id)

    equivalent = find_equivalent(formatted)
    if equivalent:
        logger.info(
            f"{hook_key}: nothing to update for {category} #{source_id} "
            f"(query ID {equivalent.id} holds the same data)"
        )
        if query_entity.get_state(equivalent) != STATE_DONE:
            query_entity.send(equivalent, True)
        return equivalent

    created = store.create_query(
        formatted['category'], formatted['source'], formatted['source_id'],
        formatted['label'], formatted,
    )
    logger.info(f"Hook {hook_key} ({category}) triggered for {formatted['source']} #{source_id}")

    if send_now:
        query_entity.send(created, True)
    return created


def find_previous_identical(formatted_hook: Dict[str, Any]) -> Optional[Query]:
    """
    Latest query (any state) for the same category/source/source_id whose whole
    stored payload, minus derived 'data', equals the fresh FormattedHook.
    """
    page = store.list_queries({
        'category': formatted_hook.get('category'),
        'source': formatted_hook.get('source'),
        'source_id': formatted_hook.get('source_id'),
    }, page=1, per_page=1)

    if not page.items:
        return None

    last = page.items[0]
    stored = {key: value for key, value in (last.payload or {}).items() if key != 'data'}
    if stored == formatted_hook:
        return last
    return None
