"""
Unit tests for crmsync/engine/hooks.py (hook lookup and FormattedHook building).
Variable and order lookups are patched on crmsync.engine.hooks.collaborators.
"""

from unittest.mock import patch

import pytest

from crmsync.engine import hooks
from crmsync.engine.hooks import (
    get_hook, is_logic_block_value, format_variables, format_hook_field,
    format_product, get_order_products, format_hook,
)
from crmsync.engine.parameters import DEFAULT_PARAMETERS, _merge
from crmsync.config import config

PERSON_HOOK = {
    'key': 'profile_update', 'label': 'User updated', 'category': 'person',
    'source': 'user', 'enabled': True,
    'fields': [
        {'pipedriveFieldId': 10, 'enabled': True, 'condition': None,
         'value': [{'variables': [{'source': 'user', 'value': 'first_name'},
                                  {'source': 'user', 'value': 'last_name'}]}]},
        {'pipedriveFieldId': 11, 'enabled': False, 'condition': None, 'value': 'ignored'},
        {'pipedriveFieldId': 12, 'enabled': True, 'condition': None, 'value': 'VIP'},
    ],
}

DEAL_HOOK = {
    'key': 'woocommerce_order_status_completed', 'label': 'Order completed',
    'category': 'deal', 'source': 'order', 'enabled': True, 'fields': [],
}


def _params(hook_list=None, **w2p):
    overrides = {'w2p': dict(w2p, hookList=hook_list or [])}
    return _merge(DEFAULT_PARAMETERS, overrides)


# ---------------------------------------------------------------------------
# get_hook
# ---------------------------------------------------------------------------

def test_get_hook_matches_key_category_and_enabled():
    disabled = dict(PERSON_HOOK, enabled=False)
    params = _params([disabled, PERSON_HOOK])
    assert get_hook('profile_update', 'person', 3, params) is PERSON_HOOK


def test_get_hook_requires_enabled_true():
    params = _params([dict(PERSON_HOOK, enabled='yes')])
    assert get_hook('profile_update', 'person', 3, params) is None


def test_get_hook_wrong_category_or_key():
    params = _params([PERSON_HOOK])
    assert get_hook('profile_update', 'organization', 3, params) is None
    assert get_hook('woocommerce_cart_updated', 'person', 3, params) is None


def test_get_hook_needs_source_id_and_known_category():
    params = _params([PERSON_HOOK])
    assert get_hook('profile_update', 'person', 0, params) is None
    assert get_hook('profile_update', 'lead', 3, params) is None


def test_checkout_draft_maps_to_cart_updated():
    assert hooks.ORDER_STATUS_HOOK['checkout-draft'] == hooks.CART_UPDATED_HOOK
    assert hooks.ORDER_STATUS_HOOK['completed'] == 'woocommerce_order_status_completed'


# ---------------------------------------------------------------------------
# value formatting
# ---------------------------------------------------------------------------

def test_is_logic_block_value():
    assert is_logic_block_value([{'variables': []}]) is True
    assert is_logic_block_value('plain') is False
    assert is_logic_block_value([{'value': 1}]) is False


def test_format_variables_drops_empty_and_joins():
    with patch.object(hooks.collaborators, 'get_variable_value', side_effect=['Order', None, '', 42]):
        assert format_variables([{}, {}, {}, {}], 42, 3, to_string=True) == 'Order 42'


def test_format_variables_list_mode():
    with patch.object(hooks.collaborators, 'get_variable_value', side_effect=['a', None]):
        assert format_variables([{}, {}], 1, 1) == ['a']


def test_format_hook_field_logic_block():
    with patch.object(hooks.collaborators, 'get_variable_value', side_effect=['Jane', 'Doe']):
        result = format_hook_field(PERSON_HOOK['fields'][0], 3, 3)
    assert result == {
        'pipedriveFieldId': 10, 'condition': None, 'values': [['Jane', 'Doe']], 'isLogicBlock': True,
    }


def test_format_hook_field_plain_and_disabled():
    assert format_hook_field(PERSON_HOOK['fields'][2], 3, 3)['values'] == ['VIP']
    assert format_hook_field(PERSON_HOOK['fields'][1], 3, 3) is None


# ---------------------------------------------------------------------------
# products
# ---------------------------------------------------------------------------

LINE_ITEM = {'name': 'Mug', 'quantity': 2, 'subtotal': 20, 'total': 16, 'product_id': 5, 'tax_rate': 20}


def test_format_product_inclusive_amounts():
    deal = {'productsComment': {'variables': []}, 'amountsAre': 'inclusive'}
    product = format_product(LINE_ITEM, deal, 3)
    assert product['quantity'] == 2
    assert product['prices'] == {'regular_price': 10.0, 'sale_price': 8.0}
    assert product['discount'] == pytest.approx(20.0)
    assert product['item_price'] == 12.0
    assert product['tax_method'] == 'inclusive'
    assert product['currency'] == config.CURRENCY
    assert product['comments'] == ''


def test_format_product_exclusive_keeps_regular_price():
    deal = {'productsComment': {'variables': []}, 'amountsAre': 'exclusive'}
    assert format_product(LINE_ITEM, deal, 3)['item_price'] == 10.0


def test_format_product_comment_uses_variation_id():
    deal = {'productsComment': {'variables': [{'source': 'product', 'value': 'sku'}]}, 'amountsAre': 'exclusive'}
    item = dict(LINE_ITEM, variation_id=9)
    with patch.object(hooks.collaborators, 'get_variable_value', return_value='MUG-9') as get_value:
        product = format_product(item, deal, 3)
    assert product['comments'] == 'MUG-9'
    assert get_value.call_args[0][1] == 9


def test_order_products_only_for_order_deals():
    assert get_order_products(PERSON_HOOK, 3, _params()) is None


def test_order_products_empty_when_disabled():
    assert get_order_products(DEAL_HOOK, 42, _params(deal={'sendProducts': False})) == []


def test_order_products_from_line_items():
    params = _params(deal={'sendProducts': True})
    order = {'id': 42, 'customer_id': 3, 'line_items': [LINE_ITEM]}
    with patch.object(hooks.collaborators, 'get_order', return_value=order):
        products = get_order_products(DEAL_HOOK, 42, params)
    assert [p['name'] for p in products] == ['Mug']


# ---------------------------------------------------------------------------
# format_hook
# ---------------------------------------------------------------------------

def test_format_hook_person():
    with patch.object(hooks.collaborators, 'get_variable_value', side_effect=['Jane', 'Doe']):
        formatted = format_hook(PERSON_HOOK, 3, _params())
    assert formatted['category'] == 'person'
    assert formatted['key'] == 'profile_update'
    assert formatted['label'] == 'User updated'
    assert formatted['source'] == 'user'
    assert formatted['source_id'] == 3
    assert formatted['products'] is None
    assert [f['pipedriveFieldId'] for f in formatted['fields']] == [10, 12]


def test_format_hook_rejects_bad_source_id():
    with pytest.raises(ValueError, match='source_id'):
        format_hook(PERSON_HOOK, -1, _params())


def test_format_hook_rejects_unknown_source():
    with pytest.raises(ValueError, match='source'):
        format_hook(dict(PERSON_HOOK, source='cart'), 3, _params())
