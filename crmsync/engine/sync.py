"""
Sync Orchestrator - Bulk Resync of Users and Orders
Drives every user (organization + person hooks) and every order (deal hook by
status) through dedup and delivery, with persisted progress so an interrupted
run resumes where it stopped.

Control flow:
  - sync_state.running     : cooperative stop flag, re-read every entity
  - sync_state.last_heartbeat : stamped every entity; the watchdog restarts a
                                run whose heartbeat is older than
                                HEARTBEAT_STALE_SECONDS, any status check
                                force-resets one older than SYNC_FORCE_RESET_SECONDS
Also hosts the periodic sweep that resends TODO/ERROR queries.
"""

import logging
import threading
import traceback as tb
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg2.extras import Json
from tqdm import tqdm

from crmsync.db.connection import get_db_cursor
from crmsync.engine import collaborators, dedup, hooks, store
from crmsync.engine import query as query_entity
from crmsync.engine.parameters import has_credentials
from crmsync.models import (
    SyncRunState, COUNTER_FIELDS, CATEGORIES, STATE_DONE, STATE_TODO, STATE_ERROR,
)
from crmsync.bus.events import (
    bus, EVENT_SYNC_STARTED, EVENT_SYNC_PROGRESS, EVENT_SYNC_COMPLETE, EVENT_SYNC_FAILED,
    EVENT_SWEEP_COMPLETE,
)
from crmsync.config import config

logger = logging.getLogger(__name__)

_STATE_COLUMNS = {
    'running', 'started', 'last_heartbeat', 'last_sync', 'last_error',
    'progress_users', 'progress_orders',
}

MSG_STARTED = 'Synchronization started in the background.'
MSG_ALREADY_RUNNING = 'Synchronization already in progress.'
MSG_SYNCED = 'Data synced'
MSG_STOPPED = 'Synchronization stopped before completion.'
MSG_PERSON_HOOK_MISSING = "You need to set the status 'User updated' in persons settings."
ERR_PERSON_HOOK_MISSING = "You need to enable the 'User updated' status in the person's settings."
ERR_SYNC_FAILED = (
    'An error occurred during the synchronization. Please try again later. '
    'If the issue persists, you may want to contact support for assistance.'
)

OUTCOME_UPTODATE = 'uptodate'
OUTCOME_DONE = 'done'
OUTCOME_ERROR = 'errors'


class ConfigurationError(Exception):
    """A hook the run depends on is not configured; the whole run is aborted."""

    def __init__(self, message: str, source_id: Optional[int] = None):
        super().__init__(message)
        self.source_id = source_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# RUN STATE PERSISTENCE
# =============================================================================

def load_state() -> SyncRunState:
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM sync_state WHERE id = 1")
        row = cur.fetchone()

    if not row:
        return SyncRunState()

    counters = row.get('counters') or {}
    values = {key: row[key] for key in _STATE_COLUMNS if key in row}
    values.update({key: int(counters.get(key) or 0) for key in COUNTER_FIELDS})
    return SyncRunState(**values)


def update_state(**changes) -> None:
    """
    Write selected columns and counters of the run state.
    Counters are merged into the JSON column, other counters are kept.
    """
    invalid = set(changes) - _STATE_COLUMNS - set(COUNTER_FIELDS)
    if invalid:
        raise ValueError(f"Invalid sync state fields: {invalid}")

    params: Dict[str, Any] = {key: value for key, value in changes.items() if key in _STATE_COLUMNS}
    set_clauses = [f"{key} = %({key})s" for key in params]

    counters = {key: value for key, value in changes.items() if key in COUNTER_FIELDS}
    if counters:
        set_clauses.append("counters = counters || %(counters)s")
        params['counters'] = Json(counters)

    if not set_clauses:
        return

    with get_db_cursor() as cur:
        cur.execute(f"UPDATE sync_state SET {', '.join(set_clauses)} WHERE id = 1", params)


def reset_state() -> None:
    """Forget progress, counters and the last error before a fresh run."""
    update_state(
        started=False,
        last_error=None,
        progress_users=0,
        progress_orders=0,
        **{key: 0 for key in COUNTER_FIELDS},
    )


def heartbeat() -> None:
    update_state(last_heartbeat=_now())


def is_sync_running(now: Optional[datetime] = None) -> bool:
    """
    Persisted running flag. A run without heartbeat for SYNC_FORCE_RESET_SECONDS
    is considered dead and the flag is cleared.
    """
    now = now or _now()
    state = load_state()

    if state.running:
        age = (now - state.last_heartbeat).total_seconds() if state.last_heartbeat else None
        if age is None or age > config.SYNC_FORCE_RESET_SECONDS:
            logger.warning(f"Sync flagged running without heartbeat for {age}s, force reset")
            update_state(running=False)
            return False

    return state.running


def _should_continue(stop_event: Optional[threading.Event]) -> bool:
    if stop_event is not None and stop_event.is_set():
        return False
    return is_sync_running()


# =============================================================================
# PER-ENTITY SYNC
# =============================================================================

def sync_entity(hook: Dict[str, Any], source_id: int) -> str:
    """
    Bring one shop entity up to date for one hook.
    Returns 'uptodate', 'done' or 'errors'.
    """
    formatted = hooks.format_hook(hook, source_id)

    previous = dedup.find_previous_identical(formatted)
    if previous:
        if query_entity.get_state(previous) != STATE_DONE:
            query_entity.send(previous, True)
        return OUTCOME_UPTODATE

    created = store.create_query(
        formatted['category'], formatted['source'], formatted['source_id'],
        f"Manual ({formatted['label']})", formatted,
    )
    result = query_entity.send(created, True)
    return OUTCOME_DONE if result.success else OUTCOME_ERROR


def _progress(index: int, total: int) -> int:
    return int((index + 1) / total * 100) if total else 100


def _sync_users(state: SyncRunState, stop_event: Optional[threading.Event], show_progress: bool) -> bool:
    """Returns False when the run was stopped."""
    user_ids = collaborators.list_user_ids()
    total = len(user_ids)
    state.total_users = total
    update_state(total_users=total)

    for index, user_id in enumerate(tqdm(user_ids, desc="Users", unit="user", disable=not show_progress)):
        if index < state.current_user_index:
            continue
        if not _should_continue(stop_event):
            return False

        heartbeat()

        organization_hook = hooks.get_hook(hooks.PROFILE_UPDATE_HOOK, 'organization', user_id)
        if organization_hook:
            sync_entity(organization_hook, user_id)

        person_hook = hooks.get_hook(hooks.PROFILE_UPDATE_HOOK, 'person', user_id)
        if not person_hook:
            raise ConfigurationError(MSG_PERSON_HOOK_MISSING, source_id=user_id)

        outcome = sync_entity(person_hook, user_id)
        counter = f"total_person_{outcome}"
        setattr(state, counter, getattr(state, counter) + 1)

        state.progress_users = _progress(index, total)
        state.current_user = user_id
        state.current_user_index = index + 1
        update_state(**{
            counter: getattr(state, counter),
            'progress_users': state.progress_users,
            'current_user': user_id,
            'current_user_index': index + 1,
        })
        bus.emit(EVENT_SYNC_PROGRESS, {'users': state.progress_users, 'orders': state.progress_orders})

    return True


def _sync_orders(state: SyncRunState, stop_event: Optional[threading.Event], show_progress: bool) -> bool:
    """Returns False when the run was stopped."""
    orders = collaborators.list_orders()
    total = len(orders)
    state.total_orders = total
    update_state(total_orders=total)

    for index, order in enumerate(tqdm(orders, desc="Orders", unit="order", disable=not show_progress)):
        if index < state.current_order_index:
            continue
        if not _should_continue(stop_event):
            return False

        heartbeat()

        order_id = order['id']
        hook_key = hooks.ORDER_STATUS_HOOK.get(order['status'])
        deal_hook = hooks.get_hook(hook_key, 'deal', order_id) if hook_key else None

        changes: Dict[str, Any] = {}
        if deal_hook:
            outcome = sync_entity(deal_hook, order_id)
            counter = f"total_order_{outcome}"
            setattr(state, counter, getattr(state, counter) + 1)
            changes[counter] = getattr(state, counter)
        else:
            logger.debug(f"Order #{order_id}: no deal hook for status {order['status']!r}")

        state.progress_orders = _progress(index, total)
        state.current_order = order_id
        state.current_order_index = index + 1
        changes.update({
            'progress_orders': state.progress_orders,
            'current_order': order_id,
            'current_order_index': index + 1,
        })
        update_state(**changes)
        bus.emit(EVENT_SYNC_PROGRESS, {'users': state.progress_users, 'orders': state.progress_orders})

    return True


# =============================================================================
# RUN / START / STOP
# =============================================================================

def run_sync(retry: bool = False, stop_event: Optional[threading.Event] = None,
             show_progress: bool = False) -> Dict[str, Any]:
    """
    Run the bulk sync in the calling thread.

    Args:
        retry: run even if a run is flagged as running, resuming from saved indices
        stop_event: optional in-process stop signal, checked with the running flag
        show_progress: draw tqdm progress bars
    Returns: {'success', 'message', ...}
    Raises: ConfigurationError when the person hook is missing; any other
        exception after the run state has been cleaned up
    """
    heartbeat()

    if is_sync_running() and not retry:
        state = load_state()
        return {
            'success': False,
            'message': MSG_ALREADY_RUNNING,
            'running': True,
            'sync_progress_users': state.progress_users,
            'sync_progress_orders': state.progress_orders,
            'sync_additional_datas': state.counters(),
        }

    update_state(running=True)
    state = load_state()
    logger.info(
        f"Sync run starting (retry={retry}, user_index={state.current_user_index}, "
        f"order_index={state.current_order_index})"
    )
    bus.emit(EVENT_SYNC_STARTED, {'retry': retry})

    try:
        completed = (
            _sync_users(state, stop_event, show_progress)
            and _sync_orders(state, stop_event, show_progress)
        )
    except ConfigurationError as e:
        update_state(running=False, last_error=ERR_PERSON_HOOK_MISSING)
        logger.error(f"Sync aborted: {e}")
        bus.emit(EVENT_SYNC_FAILED, {'error': str(e)})
        raise
    except Exception as e:
        update_state(running=False, last_error=ERR_SYNC_FAILED)
        logger.error(f"Sync failed: {e}", exc_info=True)
        bus.emit(EVENT_SYNC_FAILED, {'error': str(e), 'traceback': tb.format_exc()})
        raise

    if not completed:
        logger.info("Sync run stopped before completion")
        return {'success': False, 'message': MSG_STOPPED, 'sync_additional_datas': state.counters()}

    update_state(running=False, last_sync=_now())
    logger.info(f"Sync run complete: {state.counters()}")
    bus.emit(EVENT_SYNC_COMPLETE, state.counters())
    return {'success': True, 'message': MSG_SYNCED, 'sync_additional_datas': state.counters()}


_worker: Optional[threading.Thread] = None
_stop_event: Optional[threading.Event] = None


def _run_in_background(retry: bool, stop_event: threading.Event) -> None:
    try:
        run_sync(retry=retry, stop_event=stop_event)
    except ConfigurationError as e:
        logger.error(f"Background sync aborted: {e}")
    except Exception as e:
        logger.error(f"Background sync crashed: {e}", exc_info=True)


def _retire_worker() -> None:
    """Stop the previous in-process worker before another one starts."""
    if _stop_event is not None:
        _stop_event.set()
    if _worker is None or not _worker.is_alive() or _worker is threading.current_thread():
        return

    _worker.join(timeout=config.SYNC_STOP_JOIN_SECONDS)
    if _worker.is_alive():
        logger.warning(
            f"Previous sync worker still busy after {config.SYNC_STOP_JOIN_SECONDS}s, "
            f"it stops after its current entity"
        )


def dispatch_background(retry: bool) -> threading.Thread:
    """Run the sync on its own thread with a fresh stop event, retiring any previous worker."""
    global _worker, _stop_event
    _retire_worker()
    _stop_event = threading.Event()
    _worker = threading.Thread(
        target=_run_in_background,
        args=(retry, _stop_event),
        name="crmsync-sync",
    )
    _worker.start()
    return _worker


def start_sync(retry: bool = False) -> Dict[str, Any]:
    """
    Start a background run unless one is already running (retry forces it).
    A non-retry start forgets previous progress first.
    """
    if is_sync_running() and not retry:
        return {'success': True, 'message': MSG_ALREADY_RUNNING}

    if not retry:
        reset_state()
        update_state(current_user_index=0, current_order_index=0)
    update_state(started=True)

    dispatch_background(retry)
    logger.info(f"Sync dispatched in background (retry={retry})")
    return {'success': True, 'message': MSG_STARTED}


def stop_sync() -> None:
    """Ask the current run to stop after the entity it is processing."""
    update_state(running=False)
    if _stop_event is not None:
        _stop_event.set()
    logger.info("Sync stop requested")


def watchdog_check(now: Optional[datetime] = None) -> bool:
    """
    Restart a run whose heartbeat went stale. Returns True when restarted.
    """
    now = now or _now()
    state = load_state()
    if not state.running:
        return False

    age = (now - state.last_heartbeat).total_seconds() if state.last_heartbeat else None
    if age is not None and age <= config.HEARTBEAT_STALE_SECONDS:
        return False

    logger.warning(f"Sync heartbeat stale ({age}s), restarting from saved position")
    update_state(running=False)
    start_sync(retry=True)
    return True


def sync_progress() -> Dict[str, Any]:
    running = is_sync_running()
    state = load_state()
    return {
        'running': running,
        'sync_progress_users': state.progress_users,
        'sync_progress_orders': state.progress_orders,
        'last_sync': state.last_sync.isoformat() if state.last_sync else None,
        'last_heartbeat': state.last_heartbeat.isoformat() if state.last_heartbeat else None,
        'last_error': state.last_error,
        'sync_additional_datas': state.counters(),
    }


# =============================================================================
# PERIODIC SWEEP
# =============================================================================

def send_pending_queries(show_progress: bool = False) -> Dict[str, Any]:
    """
    Resend every TODO/ERROR query, category by category (organization, person,
    deal), oldest first. Skipped while a sync runs or credentials are missing.
    """
    stats = {'total': 0, 'success': 0, 'error': 0, 'skipped': None}

    if is_sync_running():
        logger.info("Sweep skipped: sync in progress")
        stats['skipped'] = 'sync_running'
        return stats

    if not has_credentials():
        logger.warning("Sweep skipped: gateway or CRM API key missing")
        stats['skipped'] = 'missing_credentials'
        return stats

    for category in CATEGORIES:
        page = store.list_queries(
            {'category': category, 'state': [STATE_TODO, STATE_ERROR]},
            page=1, per_page=-1, order='ASC',
        )
        for pending in tqdm(page.items, desc=f"Sending {category}", unit="query", disable=not show_progress):
            stats['total'] += 1
            try:
                result = query_entity.send(pending, True)
            except Exception as e:
                logger.error(f"Sweep: query ID {pending.id} raised {type(e).__name__}: {e}", exc_info=True)
                stats['error'] += 1
                continue
            if result.success:
                stats['success'] += 1
            else:
                stats['error'] += 1

    logger.info(f"Sweep complete: {stats['success']} sent, {stats['error']} failed, {stats['total']} total")
    bus.emit(EVENT_SWEEP_COMPLETE, stats)
    return stats
