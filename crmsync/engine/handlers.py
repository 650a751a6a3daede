"""
Boundary Handlers - REST-equivalent entry points
Each handler returns (status_code, body). Exceptions stop here: they are
logged and turned into a 500 body carrying message, error and the input echo.

  get_query       GET  /query/{id}        200 | 204
  update_query    PUT  /query/{id}        200 | 204 | 500
  list_queries    GET  /queries           200 | 500
  send_query      PUT  /query/{id}/send   200 | 400 | 500
  run_sync        POST /run-sync          200 | 400 | 500
  start_sync      GET  /start-sync        200
  sync_progress   GET  /sync-progress     200
"""

import logging
import traceback as tb
from dataclasses import asdict
from typing import Any, Dict, Optional, Tuple

from crmsync.engine import store, sync
from crmsync.engine import query as query_entity
from crmsync.config import config

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

LIST_FILTER_KEYS = ('category', 'source', 'source_id', 'target_id', 'hook', 'state')

MSG_NO_QUERY = 'There is no query for this id'
MSG_SEND_CRASHED = 'An error occured during sending the query on your website'


def _server_error(e: Exception, where: str, payload: Dict[str, Any], **extra) -> Response:
    logger.error(f"{where} failed: {e}", exc_info=True)
    body = {
        'success': False,
        'message': str(e),
        'error': str(e),
        'traceback': tb.format_exc(),
        'payload': payload,
    }
    body.update(extra)
    return 500, body


# =============================================================================
# QUERIES
# =============================================================================

def get_query(query_id: int) -> Response:
    try:
        query = store.get_query(int(query_id))
        if query is None:
            return 204, {}
        return 200, {'success': True, 'data': query_entity.get_data(query)}
    except Exception as e:
        return _server_error(e, 'get_query', {'id': query_id})


def update_query(query_id: int, body: Optional[Dict[str, Any]] = None) -> Response:
    """Gateway callback: cancel, traceback events, CRM response."""
    body = body or {}
    try:
        query = store.get_query(int(query_id))
        if query is None:
            return 204, {}

        message = query_entity.apply_remote_update(query, body)
        logger.info(f"Query ID {query.id}: {message}")
        return 200, {
            'success': True,
            'message': message,
            'data': query_entity.get_data(query),
            'params': body,
        }
    except Exception as e:
        return _server_error(e, 'update_query', {'id': query_id, **body})


def list_queries(params: Optional[Dict[str, Any]] = None) -> Response:
    """
    params: page, per_page, order plus any of LIST_FILTER_KEYS.
    A comma-separated state means "any of".
    """
    params = params or {}
    try:
        filters = {key: params[key] for key in LIST_FILTER_KEYS if params.get(key) not in (None, '')}
        if isinstance(filters.get('state'), str) and ',' in filters['state']:
            filters['state'] = [state.strip() for state in filters['state'].split(',')]

        page = store.list_queries(
            filters,
            page=int(params.get('page') or 1),
            per_page=int(params.get('per_page') or config.QUERIES_PER_PAGE),
            order=params.get('order') or 'DESC',
        )
        if page.error:
            return 500, {'success': False, 'error': page.error, 'payload': params}

        return 200, {
            'data': [query_entity.get_data(query) for query in page.items],
            'pagination': asdict(page.pagination),
        }
    except Exception as e:
        return _server_error(e, 'list_queries', params)


def send_query(query_id: int, direct_to_target: bool = True) -> Response:
    try:
        query = store.get_query(int(query_id))
        if query is None:
            return 400, {'success': False, 'message': MSG_NO_QUERY}

        result = query_entity.send(query, direct_to_target)
        send_info = result.to_dict()

        if result.success:
            return 200, {
                'success': True,
                'data': query_entity.get_data(query),
                'send_info': send_info,
                'message': result.message,
            }

        query.additional_data['last_error'] = result.message
        store.save_query(query)
        return 400, {
            'success': False,
            'send_info': send_info,
            'data': query_entity.get_data(query),
            'message': result.message,
        }
    except Exception as e:
        return _server_error(
            e, 'send_query', {'id': query_id, 'direct_to_pipedrive': direct_to_target},
            message=MSG_SEND_CRASHED,
        )


# =============================================================================
# SYNC
# =============================================================================

def run_sync(retry: bool = False, show_progress: bool = False) -> Response:
    try:
        result = sync.run_sync(retry=retry, show_progress=show_progress)
        return 200, result
    except sync.ConfigurationError as e:
        return 400, {'success': False, 'message': str(e), 'data': e.source_id}
    except Exception as e:
        return _server_error(e, 'run_sync', {'retry': retry}, message=sync.ERR_SYNC_FAILED)


def start_sync(retry: bool = False) -> Response:
    return 200, sync.start_sync(retry=retry)


def sync_progress() -> Response:
    return 200, sync.sync_progress()
