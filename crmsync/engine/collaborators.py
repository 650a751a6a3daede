"""
Collaborators - Shop Data and CRM Linkage
Everything the query engine needs from the shop side: user context, order and
product values for hook variables, and the CRM ids stored against shop
entities (the linkage store).
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from crmsync.db.connection import get_db_cursor
from crmsync.config import config

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = {'id', 'customer_id', 'status', 'created_at'}
_PRODUCT_COLUMNS = {'id', 'name', 'sku', 'price'}

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


def meta_key(category: str, suffix: str = 'id') -> str:
    """Linkage key for a CRM category, e.g. crmsync_person_id."""
    return f"crmsync_{category}_{suffix}"


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, '') else None
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric linkage value {value!r}")
        return None


# =============================================================================
# LINKAGE STORE
# =============================================================================

def get_link(source: str, source_id: int, key: str) -> Optional[str]:
    """Read one linkage value for a shop entity."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT value FROM source_links
            WHERE source = %(source)s AND source_id = %(source_id)s AND meta_key = %(key)s
        """, {'source': source, 'source_id': source_id, 'key': key})
        row = cur.fetchone()
        return row['value'] if row else None


def set_link(source: str, source_id: int, key: str, value: Any) -> None:
    """Insert or overwrite one linkage value."""
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO source_links (source, source_id, meta_key, value)
            VALUES (%(source)s, %(source_id)s, %(key)s, %(value)s)
            ON CONFLICT (source, source_id, meta_key) DO UPDATE SET value = EXCLUDED.value
        """, {'source': source, 'source_id': source_id, 'key': key, 'value': str(value)})
    logger.info(f"Linked {source} #{source_id}: {key}={value}")


def get_customer_id(order_id: int) -> Optional[int]:
    with get_db_cursor() as cur:
        cur.execute("SELECT customer_id FROM orders WHERE id = %s", (order_id,))
        row = cur.fetchone()
        return row['customer_id'] if row else None


def owner_user_id(source: Optional[str], source_id: Optional[int]) -> Optional[int]:
    """User owning a shop entity: the user itself, or the order's customer."""
    if not source_id:
        return None
    if source == 'user':
        return int(source_id)
    if source == 'order':
        return get_customer_id(source_id)
    return None


def resolve_external_id(category: str, source: str, source_id: int) -> Optional[int]:
    """
    CRM id already known for a shop entity.
    person/organization ids live on the user, deal ids on the order.
    """
    key = meta_key(category)

    if category in ('person', 'organization'):
        user_id = owner_user_id(source, source_id)
        if user_id:
            return _to_int(get_link('user', user_id, key))
    elif category == 'deal' and source == 'order':
        return _to_int(get_link('order', source_id, key))

    return None


def persist_external_id(category: str, source: str, source_id: int, target_id: int,
                        org_id: Optional[int] = None) -> None:
    """Store a freshly assigned CRM id (and the person's organization when known)."""
    if category in ('person', 'organization'):
        user_id = owner_user_id(source, source_id)
        if not user_id:
            logger.warning(f"No user behind {source} #{source_id}: {category} id {target_id} not linked")
            return
        set_link('user', user_id, meta_key(category), target_id)
        if category == 'person' and org_id:
            set_link('user', user_id, meta_key('organization'), org_id)
    elif category == 'deal':
        set_link('order', source_id, meta_key(category), target_id)


# =============================================================================
# USER / ORDER / PRODUCT CONTEXT
# =============================================================================

def get_user_data(user_id: Optional[int]) -> Optional[Dict[str, Any]]:
    """Denormalized user profile sent along with every query."""
    if not user_id:
        return None

    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM users WHERE id = %s", (user_id,))
        user = cur.fetchone()
        if not user:
            logger.debug(f"get_user_data: user_id={user_id} not found")
            return None

        cur.execute("""
            SELECT meta_key, value FROM source_links
            WHERE source = 'user' AND source_id = %s
        """, (user_id,))
        links = {row['meta_key']: row['value'] for row in cur.fetchall()}

    user_meta = dict(user.get('meta') or {})
    user_meta.update(links)

    return {
        'ID': user['id'],
        'user_login': user.get('login'),
        'user_email': user.get('email'),
        'display_name': user.get('display_name'),
        'user_meta': user_meta,
    }


def get_user_value(user_id: Optional[int], key: str) -> Any:
    user_data = get_user_data(user_id)
    if not user_data:
        return None
    if key in user_data and key != 'user_meta':
        return user_data[key]
    return user_data['user_meta'].get(key)


def get_order(order_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if not order_id:
        return None
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM orders WHERE id = %s", (order_id,))
        return cur.fetchone()


def get_order_value(order: Dict[str, Any], key: str) -> Any:
    if key in _ORDER_COLUMNS:
        return order.get(key)
    return (order.get('data') or {}).get(key)


def get_product_value(product_id: Optional[int], key: str) -> Any:
    if not product_id:
        return None
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM products WHERE id = %s", (product_id,))
        product = cur.fetchone()
    if not product:
        logger.warning(f"Product #{product_id} not found while resolving '{key}'")
        return None
    if key in _PRODUCT_COLUMNS:
        return product.get(key)
    return (product.get('data') or {}).get(key)


def get_site_value(name: str) -> Optional[str]:
    """Built-in site variables (current time/date, domain, title)."""
    now = datetime.now(timezone.utc)
    values = {
        'w2p_current_time': now.strftime(DATETIME_FORMAT),
        'w2p_current_date': now.strftime(DATE_FORMAT),
        'w2p_website_domain': config.SITE_DOMAIN,
        'w2p_site_title': config.SITE_TITLE,
    }
    if name not in values:
        logger.error(f"Unknown site variable: {name}")
        return None
    return values[name]


def to_json_value(value: Any) -> Any:
    """
    Column values as JSON scalars: timestamps and dates in the site format,
    NUMERIC as float. Variable values end up in JSONB payloads and request bodies.
    """
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, Decimal):
        return float(value)
    return value


def get_variable_value(variable: Dict[str, Any], source_id: Optional[int],
                       user_id: Optional[int]) -> Any:
    """
    Resolve one hook variable.
    Free fields carry their own value; otherwise dispatch on variable['source'].
    """
    return to_json_value(_raw_variable_value(variable, source_id, user_id))


def _raw_variable_value(variable: Dict[str, Any], source_id: Optional[int], user_id: Optional[int]) -> Any:
    if variable.get('isFreeField'):
        return variable.get('value')

    source = variable.get('source')
    name = variable.get('value')

    if source == 'user':
        return get_user_value(user_id, name) if user_id else None
    if source == 'order':
        order = get_order(source_id)
        if not order:
            logger.warning(f"Order #{source_id} not found while resolving '{name}'")
            return None
        return get_order_value(order, name)
    if source == 'product':
        return get_product_value(source_id, name)
    if source == 'w2p':
        return get_site_value(name)

    logger.warning(f"Unknown variable source {source!r} for '{name}'")
    return None


# =============================================================================
# ENTITY UNIVERSE (bulk sync)
# =============================================================================

def list_user_ids() -> List[int]:
    """All users, oldest registration first."""
    with get_db_cursor() as cur:
        cur.execute("SELECT id FROM users ORDER BY registered_at ASC, id ASC")
        return [row['id'] for row in cur.fetchall()]


def list_orders() -> List[Dict[str, Any]]:
    """All orders (id, status), oldest first."""
    with get_db_cursor() as cur:
        cur.execute("SELECT id, status FROM orders ORDER BY created_at ASC, id ASC")
        return cur.fetchall()
