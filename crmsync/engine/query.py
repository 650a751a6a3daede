"""
Query Entity - State Machine and Delivery Lifecycle
Operations on a single Query: traceback bookkeeping, validation, state
derivation, error counting / auto-cancel, and send() through the gateway.

State is recomputed on every read:
    CANCELED (sticky) > INVALID > ERROR > DONE > SENDED > TODO
The stored `state` column is a snapshot written on each persist.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from crmsync.engine import collaborators, delivery, store
from crmsync.engine.payload import payload_data
from crmsync.engine.parameters import get_parameters
from crmsync.models import (
    Query, FieldValue, SendResult, TracebackEntry, REQUIRED_FIELDS, utc_timestamp,
    STATE_TODO, STATE_SENDED, STATE_DONE, STATE_ERROR, STATE_INVALID, STATE_CANCELED,
)
from crmsync.bus.events import (
    bus, EVENT_QUERY_SENT, EVENT_QUERY_FAILED, EVENT_QUERY_DONE, EVENT_QUERY_CANCELED,
)
from crmsync.config import config

logger = logging.getLogger(__name__)

# Traceback steps
STEP_SENDING = 'Sending query from your server'
STEP_PROCESSING = 'Processing the request on our servers'
STEP_DATA = 'Processing data'
STEP_CHECKING = 'Checking query'
STEP_CANCELLATION = 'Request Cancellation'

# Messages
MSG_NOT_VALID = 'The query is not valid'
MSG_RESULT_NOT_VALID = 'This query is not valid.'
MSG_READY = 'The query is ready to be sent'
MSG_NO_DATA = 'No data available for this request.'
MSG_MAINTENANCE = 'Servers are down for maintenance. Apologies for the inconvenience'
MSG_UNKNOWN_ERROR = 'Unknown error'
MSG_SENDED = 'Query sended'
MSG_TOO_MANY_ERRORS = (
    'Your request encountered too many errors and needs to be cancelled. '
    'You may want to check your settings'
)
MSG_REMOTE_CANCEL = 'Your query has been canceled due to too many errors on our servers.'

UNSENDABLE_STATES = {STATE_INVALID, STATE_CANCELED, STATE_SENDED}


# =============================================================================
# TRACEBACK
# =============================================================================

def add_traceback(query: Query, step: str, success: bool, message: str = '',
                  additional_data: Any = None, internal: bool = True,
                  date: Optional[str] = None) -> None:
    """Record a step. An existing entry with the same step is overwritten in place."""
    entry = TracebackEntry(
        step=step,
        success=success,
        message=message,
        date=date or utc_timestamp(),
        additional_data=additional_data,
        internal=internal,
    ).to_dict()

    traceback = query.traceback
    for index, existing in enumerate(traceback):
        if existing.get('step') == step:
            traceback[index] = entry
            return
    traceback.append(entry)


def reset_traceback(query: Query) -> None:
    query.additional_data['traceback'] = []


def _last_failure(query: Query) -> Optional[Dict[str, Any]]:
    for entry in reversed(query.additional_data.get('traceback') or []):
        if entry.get('success') is False:
            return entry
    return None


def get_last_error(query: Query) -> Optional[str]:
    """Message of the most recent failing step, or None."""
    failure = _last_failure(query)
    return failure.get('message') if failure else None


def _normalize_date(value: Any) -> Optional[str]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable traceback date {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def merge_remote_traceback(query: Query, events: List[Dict[str, Any]]) -> None:
    """Merge gateway traceback events (step, success, value, data, createdAt)."""
    for event in events or []:
        if not isinstance(event, dict) or 'step' not in event or 'success' not in event:
            continue
        add_traceback(
            query,
            event['step'],
            bool(event['success']),
            event.get('value') or '',
            event.get('data'),
            internal=False,
            date=_normalize_date(event.get('createdAt')),
        )


# =============================================================================
# IDENTITY AND LINKAGE
# =============================================================================

def get_user_id(query: Query) -> Optional[int]:
    query.user_id = collaborators.owner_user_id(query.source, query.source_id)
    return query.user_id


def get_target_id(query: Query) -> Optional[int]:
    """CRM id: cached on the query, else looked up in the linkage store."""
    if query.target_id:
        return query.target_id
    if not query.category or not query.source_id:
        return None
    return collaborators.resolve_external_id(query.category, query.source, query.source_id)


def get_method(query: Query) -> str:
    """PUT when the CRM entity already exists, POST otherwise. Cached once computed."""
    if query.method:
        return query.method
    query.method = 'PUT' if get_target_id(query) else 'POST'
    return query.method


def link_target(query: Query, target_id: Any, pipedrive_response: Optional[Dict[str, Any]] = None) -> None:
    """Adopt a CRM id, store it in the linkage store and retire superseded queries."""
    query.target_id = int(target_id)

    org_id = None
    if query.category == 'person' and get_parameters()['w2p']['person'].get('linkToOrga'):
        org = (pipedrive_response or {}).get('org_id')
        org_id = org.get('value') if isinstance(org, dict) else org

    collaborators.persist_external_id(query.category, query.source, query.source_id,
                                      query.target_id, org_id=org_id)

    # Imported here: dedup depends on this module
    from crmsync.engine import dedup
    dedup.cancel_superseded(query)


# =============================================================================
# VALIDATION AND STATE
# =============================================================================

def get_payload_data(query: Query) -> List[FieldValue]:
    return payload_data(query.payload, query.category, query.source_id, get_user_id(query))


def validation_error(query: Query) -> Optional[str]:
    """Why a create (POST) query cannot be sent, or None when it can."""
    if get_method(query) != 'POST':
        return None

    data = get_payload_data(query)
    if not data:
        return MSG_NO_DATA

    keys = {item.key for item in data}
    for required in REQUIRED_FIELDS.get(query.category, ()):
        if required not in keys:
            return f"You need at least a {required} to create this {query.category}."
    return None


def is_valid(query: Query) -> bool:
    """Validate and record a failing 'Processing data' step when invalid."""
    error = validation_error(query)
    if error:
        add_traceback(query, STEP_DATA, False, error)
        return False
    return True


def get_state(query: Query) -> str:
    if query.state == STATE_CANCELED:
        return STATE_CANCELED
    if validation_error(query):
        return STATE_INVALID
    if _last_failure(query) is not None:
        return STATE_ERROR
    if isinstance(query.pipedrive_response, dict) and query.pipedrive_response.get('id'):
        return STATE_DONE
    if query.additional_data.get('sended_at'):
        return STATE_SENDED
    return STATE_TODO


def can_be_sent(state: str) -> bool:
    return state not in UNSENDABLE_STATES


def persist(query: Query) -> Optional[int]:
    """Snapshot the derived state and save."""
    query.state = get_state(query)
    return store.save_query(query)


def cancel(query: Query) -> None:
    query.state = STATE_CANCELED
    store.save_query(query)
    logger.info(f"Canceled query ID {query.id}")
    bus.emit(EVENT_QUERY_CANCELED, {'query_id': query.id})


def increment_error(query: Query) -> int:
    """Count one failed attempt; cancels the query at MAX_QUERY_ERRORS unless it already is."""
    total = query.total_error + 1
    query.additional_data['total_error'] = total

    if total >= config.MAX_QUERY_ERRORS and query.state != STATE_CANCELED:
        add_traceback(query, STEP_CHECKING, False, MSG_TOO_MANY_ERRORS)
        cancel(query)

    return total


# =============================================================================
# VIEWS
# =============================================================================

def get_data(query: Query) -> Dict[str, Any]:
    """Serializable view of a query with derived fields filled in."""
    target_id = get_target_id(query)

    payload = dict(query.payload or {})
    payload['data'] = [item.to_dict() for item in get_payload_data(query)]

    valid = is_valid(query)

    additional_data = dict(query.additional_data)
    additional_data['last_error'] = get_last_error(query)

    state = get_state(query)

    return {
        'id': query.id,
        'category': query.category,
        'source': query.source,
        'source_id': query.source_id,
        'hook': query.hook,
        'payload': payload,
        'pipedrive_response': query.pipedrive_response,
        'additional_data': additional_data,
        'is_valid': valid,
        'state': state,
        'can_be_sent': can_be_sent(state),
        'target_id': target_id,
        'user_id': get_user_id(query),
        'method': get_method(query),
    }


def build_user_query(query: Query) -> Dict[str, Any]:
    """Full denormalized context the gateway needs to process a query."""
    parameters = get_parameters()
    return {
        'query': get_data(query),
        'user_data': collaborators.get_user_data(get_user_id(query)),
        'pipedrive_parameters': {
            'domain': config.PIPEDRIVE_COMPANY_DOMAIN,
            'api_key': config.PIPEDRIVE_API_KEY,
        },
        'w2p_parameters': parameters['w2p'],
    }


# =============================================================================
# SEND
# =============================================================================

def _failure_message(response) -> str:
    message = (response.data or {}).get('message')
    if message:
        return message
    if response.status_code in (404, 503):
        return MSG_MAINTENANCE
    if response.error:
        return response.error
    return MSG_UNKNOWN_ERROR


def send(query: Query, direct_to_target: bool = False) -> SendResult:
    """
    Deliver a query to the gateway and fold the outcome back into it.

    Args:
        query: persisted query
        direct_to_target: ask the gateway to forward to the CRM synchronously
            and return the CRM response
    Returns: SendResult; the query is always persisted before returning
    """
    reset_traceback(query)
    query.additional_data['sended_at'] = None

    state = get_state(query)
    valid = is_valid(query)
    sendable = can_be_sent(state)

    if not query.id or not sendable or not valid:
        add_traceback(query, STEP_SENDING, False, MSG_NOT_VALID, {
            'get_id': query.id,
            'state': state,
            'can_be_sent': sendable,
            'is_valid': valid,
        })
        increment_error(query)
        persist(query)
        logger.warning(f"Query ID {query.id} not sendable (state={state}, valid={valid})")
        bus.emit(EVENT_QUERY_FAILED, {'query_id': query.id, 'message': MSG_RESULT_NOT_VALID})
        return SendResult(success=False, message=MSG_RESULT_NOT_VALID)

    add_traceback(query, STEP_SENDING, True, MSG_READY)

    body = delivery.build_request_body(query.id, direct_to_target, build_user_query(query))
    response = delivery.deliver(delivery.query_endpoint(), body)

    query.additional_data['sended_at'] = utc_timestamp()

    if response.status_code not in (200, 201):
        message = _failure_message(response)
        add_traceback(query, STEP_PROCESSING, False, message)
        increment_error(query)
        persist(query)
        logger.warning(f"Query ID {query.id} delivery failed: {message}")
        bus.emit(EVENT_QUERY_FAILED, {'query_id': query.id, 'message': message})
        return SendResult(success=False, message=message, post_query_response=response)

    reply = response.data or {}
    pipedrive_response = None
    traceback = None

    if direct_to_target:
        reply_data = reply.get('data') or {}
        pipedrive_response = reply_data.get('pipedrive_response')
        traceback = reply_data.get('Traceback')

        if reply_data.get('method'):
            query.method = reply_data['method']

        if isinstance(traceback, list):
            merge_remote_traceback(query, traceback)

        target_id = pipedrive_response.get('id') if isinstance(pipedrive_response, dict) else None
        if target_id:
            link_target(query, target_id, pipedrive_response)
        else:
            increment_error(query)

        query.additional_data['responded_at'] = utc_timestamp()
        query.pipedrive_response = pipedrive_response

    persist(query)

    event = EVENT_QUERY_DONE if query.state == STATE_DONE else EVENT_QUERY_SENT
    logger.info(f"Sent query ID {query.id} (state={query.state})")
    bus.emit(event, {'query_id': query.id, 'target_id': query.target_id})

    return SendResult(
        success=bool(reply.get('success')),
        message=reply.get('message') or MSG_SENDED,
        data=reply,
        pipedrive_response=pipedrive_response,
        traceback=traceback if isinstance(traceback, list) else [],
        target_id=get_target_id(query),
    )


# =============================================================================
# REMOTE UPDATE
# =============================================================================

def apply_remote_update(query: Query, body: Dict[str, Any]) -> str:
    """
    Apply a gateway callback (PUT /query/{id}).

    body keys (all optional):
        cancel             : truthy to cancel the query
        traceback          : list of gateway traceback events
        pipedrive_response : dict or JSON string holding the CRM id
    Returns: 'Query canceled' or 'Query updated'
    """
    if body.get('cancel'):
        add_traceback(query, STEP_CANCELLATION, False, MSG_REMOTE_CANCEL)
        cancel(query)
        return 'Query canceled'

    traceback = body.get('traceback')
    if isinstance(traceback, list):
        merge_remote_traceback(query, traceback)

    pipedrive_response = body.get('pipedrive_response')
    if isinstance(pipedrive_response, str):
        try:
            pipedrive_response = json.loads(pipedrive_response)
        except ValueError:
            logger.warning(f"Query ID {query.id}: ignoring non-JSON pipedrive_response")
            pipedrive_response = None

    if isinstance(pipedrive_response, dict) and pipedrive_response.get('id'):
        query.pipedrive_response = {'id': pipedrive_response['id']}
        link_target(query, pipedrive_response['id'], pipedrive_response)

    persist(query)
    return 'Query updated'
