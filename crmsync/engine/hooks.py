"""
Hooks - Trigger Configuration and Formatted Hooks
Finds the enabled hook for a trigger and turns it into a FormattedHook:

    {fields: [{pipedriveFieldId, condition, values, isLogicBlock}], products,
     category, key, label, source, source_id}

Logic-block field values become a list of candidate value sets; plain values
become [value].
"""

import logging
from typing import Any, Dict, List, Optional

from crmsync.engine import collaborators
from crmsync.engine.parameters import get_parameters, get_hook_list
from crmsync.models import CATEGORIES, SOURCES
from crmsync.config import config

logger = logging.getLogger(__name__)

# Order status -> hook key used for deals
ORDER_STATUS_HOOK = {
    'on-hold': 'woocommerce_order_status_on-hold',
    'pending': 'woocommerce_order_status_pending',
    'processing': 'woocommerce_order_status_processing',
    'completed': 'woocommerce_order_status_completed',
    'refunded': 'woocommerce_order_status_refunded',
    'cancelled': 'woocommerce_order_status_cancelled',
    'failed': 'woocommerce_order_status_failed',
    'checkout-draft': 'woocommerce_cart_updated',
}

CART_UPDATED_HOOK = 'woocommerce_cart_updated'
PROFILE_UPDATE_HOOK = 'profile_update'


# =============================================================================
# HOOK LOOKUP
# =============================================================================

def get_hook(key: str, category: str, source_id: int,
             parameters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """First enabled hook matching key and category, or None."""
    if not source_id or category not in CATEGORIES:
        return None

    for hook in get_hook_list(parameters):
        if hook.get('enabled') is True and hook.get('key') == key and hook.get('category') == category:
            return hook

    logger.debug(f"get_hook: no enabled '{key}' hook for category {category}")
    return None


def hook_user_id(hook: Dict[str, Any], source_id: int) -> Optional[int]:
    return collaborators.owner_user_id(hook.get('source'), source_id)


# =============================================================================
# VALUE FORMATTING
# =============================================================================

def is_logic_block_value(value: Any) -> bool:
    """A logic-block value is a list of dicts that each carry 'variables'."""
    if not isinstance(value, list):
        return False
    return all(isinstance(block, dict) and 'variables' in block for block in value)


def format_logic_blocks(blocks: List[Dict[str, Any]], source_id: int,
                        user_id: Optional[int]) -> List[List[Any]]:
    """Resolve every variable of every block: one value list per block."""
    return [
        [collaborators.get_variable_value(variable, source_id, user_id) for variable in block['variables']]
        for block in blocks
    ]


def format_variables(variables: List[Dict[str, Any]], source_id: Optional[int],
                     user_id: Optional[int], to_string: bool = False):
    """Resolve a variable list; joined with spaces when to_string is set."""
    values = [collaborators.get_variable_value(variable, source_id, user_id) for variable in variables]
    values = [v for v in values if v is not None and v != '']
    if to_string:
        return ' '.join(str(v) for v in values)
    return values


def format_hook_field(field: Dict[str, Any], source_id: int,
                      user_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if not field.get('enabled'):
        return None

    value = field.get('value')
    if is_logic_block_value(value):
        values = format_logic_blocks(value, source_id, user_id)
    else:
        values = [value]

    return {
        'pipedriveFieldId': field.get('pipedriveFieldId'),
        'condition': field.get('condition'),
        'values': values,
        'isLogicBlock': is_logic_block_value(value),
    }


# =============================================================================
# PRODUCTS (order -> deal)
# =============================================================================

def format_product(item: Dict[str, Any], deal_parameters: Dict[str, Any],
                   user_id: Optional[int]) -> Dict[str, Any]:
    """Turn an order line item into a deal product entry."""
    quantity = float(item.get('quantity') or 0) or 1.0
    regular_price = float(item.get('subtotal') or 0) / quantity
    sale_price = float(item.get('total') or 0) / quantity
    product_id = item.get('variation_id') or item.get('product_id')

    comment = ''
    comment_variables = (deal_parameters.get('productsComment') or {}).get('variables')
    if product_id and comment_variables:
        comment = format_variables(comment_variables, product_id, user_id, to_string=True)

    tax_rate = float(item.get('tax_rate') or 0)

    discount = 0.0
    if regular_price > 0 and sale_price > 0:
        discount = (regular_price - sale_price) / regular_price * 100

    amounts_are = deal_parameters.get('amountsAre')
    item_price = round(regular_price * (1 + tax_rate / 100), 2) if amounts_are == 'inclusive' else regular_price

    return {
        'name': item.get('name'),
        'comments': comment,
        'quantity': quantity,
        'tax': tax_rate,
        'discount': discount,
        'discount_type': 'percentage',
        'tax_method': amounts_are,
        'currency': config.CURRENCY,
        'item_price': item_price,
        'prices': {
            'regular_price': regular_price,
            'sale_price': sale_price,
        },
    }


def get_order_products(hook: Dict[str, Any], source_id: int,
                       parameters: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Products only exist for order -> deal hooks; an empty list when disabled."""
    if hook.get('source') != 'order' or hook.get('category') != 'deal' or not source_id:
        return None

    deal_parameters = parameters['w2p']['deal']
    if not deal_parameters.get('sendProducts'):
        return []

    order = collaborators.get_order(source_id)
    if not order:
        return []

    user_id = order.get('customer_id')
    return [format_product(item, deal_parameters, user_id) for item in order.get('line_items') or []]


# =============================================================================
# FORMATTED HOOK
# =============================================================================

def format_hook(hook: Dict[str, Any], source_id: int,
                parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the FormattedHook for one hook configuration and shop entity."""
    if source_id is None or source_id < 0:
        raise ValueError(f"Invalid source_id for hook: {source_id}")
    if hook.get('source') not in SOURCES:
        raise ValueError(f"Invalid source for hook: {hook.get('source')}")

    parameters = parameters or get_parameters()
    user_id = hook_user_id(hook, source_id)

    fields = []
    for field in hook.get('fields') or []:
        formatted = format_hook_field(field, source_id, user_id)
        if formatted:
            fields.append(formatted)

    return {
        'fields': fields,
        'products': get_order_products(hook, source_id, parameters),
        'category': hook.get('category'),
        'key': hook.get('key'),
        'label': hook.get('label'),
        'source': hook.get('source'),
        'source_id': source_id,
    }
