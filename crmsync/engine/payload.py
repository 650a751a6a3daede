"""
Payload Resolver
Turns a stored FormattedHook into the flat list of CRM fields sent to the
gateway. resolve() is pure; build_defaults() does the linkage lookups that
seed the category defaults.
"""

import logging
from typing import Any, Dict, List, Optional

from crmsync.engine import collaborators
from crmsync.engine.hooks import format_variables
from crmsync.engine.parameters import get_parameters, get_field_catalog
from crmsync.models import FieldValue

logger = logging.getLogger(__name__)

LOGIC_ALL = 'ALL'
LOGIC_ANY = '1'


def _default_condition(skip_on_exist: bool) -> Dict[str, Any]:
    return {
        'logicBlock': {'enabled': False, 'fieldNumber': LOGIC_ANY},
        'SkipOnExist': skip_on_exist,
        'findInPipedrive': skip_on_exist,
    }


def _is_filled(value: Any) -> bool:
    return value is not None and value != ''


# =============================================================================
# FIELD SELECTION
# =============================================================================

def find_catalog_field(catalog: List[Dict[str, Any]], field_id: Any,
                       category: str) -> Optional[Dict[str, Any]]:
    """CRM field definition for a hook field id within a category."""
    if not isinstance(field_id, int) or isinstance(field_id, bool):
        return None
    for entry in catalog:
        if entry.get('id') == field_id and entry.get('category') == category:
            return entry
    return None


def select_value_set(values: List[Any], condition: Optional[Dict[str, Any]]) -> Optional[Any]:
    """
    Pick one candidate value set according to condition.logicBlock:
      - disabled or no condition : first set
      - fieldNumber "ALL"        : first set with every sub-value filled
      - fieldNumber "1"          : first set with at least one sub-value filled
    Returns None when no set qualifies.
    """
    if not values:
        return None

    logic_block = (condition or {}).get('logicBlock') or {}
    if not logic_block.get('enabled'):
        return values[0]

    field_number = logic_block.get('fieldNumber')
    for value_set in values:
        items = value_set if isinstance(value_set, list) else [value_set]
        filled = [v for v in items if _is_filled(v)]
        if field_number == LOGIC_ALL and len(filled) == len(items):
            return value_set
        if field_number == LOGIC_ANY and filled:
            return value_set

    return None


def join_value_set(value_set: Any) -> Any:
    """Join a multi-value set with single spaces, dropping empty entries."""
    if isinstance(value_set, list):
        return ' '.join(str(v) for v in value_set if _is_filled(v))
    return value_set


# =============================================================================
# RESOLVE
# =============================================================================

def resolve(payload: Dict[str, Any], category: str,
            defaults: Optional[List[FieldValue]] = None,
            catalog: Optional[List[Dict[str, Any]]] = None) -> List[FieldValue]:
    """
    Resolve a FormattedHook into CRM fields.
    Later fields overwrite earlier ones (and defaults) with the same key.
    """
    data = list(defaults or [])
    catalog = catalog or []

    for field in (payload or {}).get('fields') or []:
        if not field:
            continue

        catalog_field = find_catalog_field(catalog, field.get('pipedriveFieldId'), category)
        if not catalog_field:
            logger.debug(f"resolve: field {field.get('pipedriveFieldId')} has no {category} catalog entry")
            continue

        key = (catalog_field.get('key') or '').lower()
        values = field.get('values')
        if values is None and 'value' in field:
            values = [field['value']]

        selected = select_value_set(values or [], field.get('condition'))
        if selected is None or not key:
            continue

        value = join_value_set(selected)
        if value is None or str(value).strip() == '':
            continue

        item = FieldValue(
            key=key,
            name=catalog_field.get('name'),
            value=value,
            condition=field.get('condition'),
            pipedrive_field_id=field.get('pipedriveFieldId'),
            is_logic_block=bool(field.get('isLogicBlock')),
        )

        for index, existing in enumerate(data):
            if existing.key == key:
                data[index] = item
                break
        else:
            data.append(item)

    return data


def build_defaults(category: str, source_id: Optional[int], user_id: Optional[int],
                   parameters: Dict[str, Any]) -> List[FieldValue]:
    """
    Category defaults:
      person : name from the user's email (optional), org_id from linkage
      deal   : title from the order-name template, org_id / person_id from linkage
    """
    data: List[FieldValue] = []
    options = parameters['w2p']

    if category == 'person':
        if options['person'].get('defaultEmailAsName'):
            user_data = collaborators.get_user_data(user_id)
            if user_data:
                data.append(FieldValue('name', 'Name', user_data['user_email'],
                                       _default_condition(True), 0, False))

        org_id = collaborators.get_link('user', user_id, collaborators.meta_key('organization')) if user_id else None
        if org_id:
            data.append(FieldValue('org_id', 'Organization id', org_id, _default_condition(False), 0, False))

    elif category == 'deal':
        variables = (options['deal'].get('defaultOrderName') or {}).get('variables')
        if isinstance(variables, list):
            title = format_variables(variables, source_id, user_id, to_string=True)
            if title:
                data.append(FieldValue('title', 'Title', title, _default_condition(True), 0, True))

            user_data = collaborators.get_user_data(user_id)
            if user_data:
                meta = user_data['user_meta']
                org_id = meta.get(collaborators.meta_key('organization'))
                if org_id:
                    data.append(FieldValue('org_id', 'Organization id', org_id, _default_condition(False), 0, False))
                person_id = meta.get(collaborators.meta_key('person'))
                if person_id:
                    data.append(FieldValue('person_id', 'Person id', person_id, _default_condition(False), 0, False))

    return data


def payload_data(payload: Dict[str, Any], category: str, source_id: Optional[int],
                 user_id: Optional[int], parameters: Optional[Dict[str, Any]] = None) -> List[FieldValue]:
    """Defaults plus resolved hook fields for one query."""
    parameters = parameters or get_parameters()
    defaults = build_defaults(category, source_id, user_id, parameters)
    return resolve(payload, category, defaults, get_field_catalog(parameters))
