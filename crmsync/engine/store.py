"""
Query Store - Outbox Persistence
Filtered, paginated CRUD over the queries table. Knows how to (de)serialize a
Query row; state transitions live in crmsync.engine.query.
"""

import logging
import math
from typing import Any, Dict, Optional

from psycopg2.extras import Json

from crmsync.db.connection import get_db_cursor
from crmsync.engine import collaborators
from crmsync.models import Query, QueryPage, Pagination, STATE_TODO, utc_timestamp
from crmsync.bus.events import bus, EVENT_QUERY_CREATED

logger = logging.getLogger(__name__)

# Filterable columns; names never come from user input directly
_FILTER_COLUMNS = {
    'state', 'method', 'hook', 'category', 'source_id', 'source', 'target_id', 'user_id',
}
_ORDERS = {'ASC', 'DESC'}
# Id columns where 0 means "no filter", like an empty value
_ID_COLUMNS = {'source_id', 'target_id', 'user_id'}


def _validate_filters(filters: Dict[str, Any]) -> None:
    """Raise ValueError if any filter key is not a filterable column."""
    invalid = set(filters.keys()) - _FILTER_COLUMNS
    if invalid:
        raise ValueError(f"Invalid query filters: {invalid}")


def is_savable(query: Query) -> bool:
    """A query is persisted only once category and source_id are both set."""
    return bool(query.category) and bool(query.source_id)


def _row_to_query(row: Dict[str, Any]) -> Query:
    return Query(
        id=row['id'],
        category=row['category'],
        source=row['source'],
        source_id=row['source_id'],
        target_id=row.get('target_id'),
        hook=row.get('hook'),
        method=row.get('method'),
        state=row.get('state') or STATE_TODO,
        payload=row.get('payload') or {},
        pipedrive_response=row.get('pipedrive_response'),
        additional_data=row.get('additional_data') or {},
        user_id=row.get('user_id'),
    )


def _query_params(query: Query) -> Dict[str, Any]:
    return {
        'id': query.id,
        'category': query.category,
        'source': query.source,
        'source_id': query.source_id,
        'target_id': query.target_id,
        'hook': query.hook,
        'method': query.method,
        'state': query.state,
        'payload': Json(query.payload),
        'pipedrive_response': Json(query.pipedrive_response) if query.pipedrive_response is not None else None,
        'additional_data': Json(query.additional_data),
        'user_id': query.user_id,
    }


# =============================================================================
# CRUD
# =============================================================================

def get_query(query_id: int) -> Optional[Query]:
    """Load a query by id."""
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM queries WHERE id = %s", (query_id,))
        row = cur.fetchone()
        if row:
            return _row_to_query(row)
        logger.debug(f"get_query: query_id={query_id} not found")
        return None


def save_query(query: Query) -> Optional[int]:
    """
    Insert or update a query. Returns its id.
    Queries without category or source_id are not persisted (returns None).
    """
    if not is_savable(query):
        logger.debug(f"save_query: skipping unsavable query {query.category}/{query.source_id}")
        return None

    params = _query_params(query)

    with get_db_cursor() as cur:
        if query.id is None:
            cur.execute("""
                INSERT INTO queries (
                    category, source, source_id, target_id, hook, method, state,
                    payload, pipedrive_response, additional_data, user_id
                ) VALUES (
                    %(category)s, %(source)s, %(source_id)s, %(target_id)s, %(hook)s,
                    %(method)s, %(state)s, %(payload)s, %(pipedrive_response)s,
                    %(additional_data)s, %(user_id)s
                ) RETURNING id
            """, params)
            query.id = cur.fetchone()['id']
            logger.debug(f"Inserted query ID {query.id}")
        else:
            cur.execute("""
                UPDATE queries SET
                    category = %(category)s, source = %(source)s, source_id = %(source_id)s,
                    target_id = %(target_id)s, hook = %(hook)s, method = %(method)s,
                    state = %(state)s, payload = %(payload)s,
                    pipedrive_response = %(pipedrive_response)s,
                    additional_data = %(additional_data)s, user_id = %(user_id)s
                WHERE id = %(id)s
            """, params)
            logger.debug(f"Updated query ID {query.id} (state={query.state})")

    return query.id


def create_query(category: str, source: str, source_id: int, hook: str,
                 payload: Dict[str, Any]) -> Query:
    """
    Create a new TODO query and retire the older queries it supersedes.
    """
    query = Query(
        category=category,
        source=source,
        source_id=source_id,
        hook=hook,
        state=STATE_TODO,
        payload=payload,
        additional_data={'created_at': utc_timestamp(), 'traceback': [], 'total_error': 0},
        user_id=collaborators.owner_user_id(source, source_id),
    )

    if save_query(query) is None:
        raise ValueError(f"Cannot create a query without category and source_id ({category}, {source_id})")

    logger.info(f"Created query ID {query.id}: {category} from {source} #{source_id} ({hook})")
    bus.emit(EVENT_QUERY_CREATED, {'query_id': query.id, 'category': category, 'source_id': source_id})

    # Imported here: dedup depends on this module
    from crmsync.engine import dedup
    dedup.cancel_superseded(query)

    return query


# =============================================================================
# LISTING
# =============================================================================

def _build_where(filters: Dict[str, Any]):
    conditions = []
    params: Dict[str, Any] = {}

    for column, value in filters.items():
        if value is None or value == '' or value == [] or value == ():
            continue
        if column in _ID_COLUMNS and value in (0, '0'):
            continue
        if isinstance(value, (list, tuple, set)):
            conditions.append(f"{column} = ANY(%({column})s)")
            params[column] = list(value)
        else:
            conditions.append(f"{column} = %({column})s")
            params[column] = value

    where_clause = " AND ".join(conditions) if conditions else "TRUE"
    return where_clause, params


def list_queries(filters: Optional[Dict[str, Any]] = None, page: int = 1,
                 per_page: int = 10, order: str = 'DESC') -> QueryPage:
    """
    Filtered, paginated query listing.

    Args:
        filters: exact-match column filters; a list/set value means "any of"
        page: 1-based page number
        per_page: page size, -1 for every matching row on one page
        order: 'ASC' or 'DESC' on id
    Returns: QueryPage; on database failure items are empty and error is set
    """
    filters = filters or {}
    _validate_filters(filters)

    order = (order or 'DESC').upper()
    if order not in _ORDERS:
        raise ValueError(f"Invalid order: {order}")

    page = max(int(page or 1), 1)
    where_clause, params = _build_where(filters)

    limit_clause = ""
    if per_page != -1:
        per_page = max(int(per_page), 1)
        params['limit'] = per_page
        params['offset'] = (page - 1) * per_page
        limit_clause = "LIMIT %(limit)s OFFSET %(offset)s"

    try:
        with get_db_cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS total FROM queries WHERE {where_clause}", params)
            total = cur.fetchone()['total']

            cur.execute(f"""
                SELECT * FROM queries
                WHERE {where_clause}
                ORDER BY id {order}
                {limit_clause}
            """, params)
            rows = cur.fetchall()
    except Exception as e:
        logger.error(f"list_queries failed (filters={filters}): {e}", exc_info=True)
        return QueryPage(items=[], pagination=Pagination(), error=str(e))

    total_pages = 1 if per_page == -1 else math.ceil(total / per_page)
    pagination = Pagination(
        total_items=total,
        total_pages=total_pages,
        has_next_page=page < total_pages,
    )

    logger.debug(f"list_queries: {len(rows)}/{total} rows (filters={filters}, page={page})")
    return QueryPage(items=[_row_to_query(row) for row in rows], pagination=pagination)
