"""
Tenant Parameters
Reads the JSON settings file holding the hook list, the CRM field catalog
and the person/deal options. Missing keys fall back to DEFAULT_PARAMETERS.

Expected layout:
    {
      "pipedrive": {"fields": [{"id": 1, "key": "title", "name": "Title", "category": "deal"}]},
      "w2p": {
        "hookList": [{"key": "profile_update", "label": "User updated", "category": "person",
                      "source": "user", "enabled": true, "fields": [...]}],
        "person": {"defaultEmailAsName": true, "linkToOrga": true},
        "deal": {"defaultOrderName": {"variables": [...]}, "sendProducts": false,
                 "productsComment": {"variables": []}, "amountsAre": "inclusive"}
      }
    }
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from crmsync.config import config

logger = logging.getLogger(__name__)

DEFAULT_PARAMETERS: Dict[str, Any] = {
    'pipedrive': {
        'fields': [],
    },
    'w2p': {
        'hookList': [],
        'person': {
            'defaultEmailAsName': False,
            'linkToOrga': False,
        },
        'deal': {
            'defaultOrderName': {'variables': []},
            'sendProducts': False,
            'productsComment': {'variables': []},
            'amountsAre': 'exclusive',
        },
    },
}


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; values from overrides win."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_parameters(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load tenant parameters from disk.
    A missing file yields the defaults; malformed JSON raises ValueError.
    """
    path = Path(path) if path else config.SETTINGS_PATH

    if not path.exists():
        logger.warning(f"Settings file {path} not found, using default parameters")
        return copy.deepcopy(DEFAULT_PARAMETERS)

    try:
        raw = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ValueError(f"Settings file {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Settings file {path} must contain a JSON object")

    return _merge(DEFAULT_PARAMETERS, raw)


def get_parameters() -> Dict[str, Any]:
    return load_parameters()


def get_field_catalog(parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    parameters = parameters or get_parameters()
    return parameters['pipedrive'].get('fields') or []


def get_hook_list(parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    parameters = parameters or get_parameters()
    return parameters['w2p'].get('hookList') or []


def has_credentials() -> bool:
    """True when both the gateway and CRM API keys are configured."""
    return bool(config.GATEWAY_API_KEY and config.PIPEDRIVE_API_KEY)
