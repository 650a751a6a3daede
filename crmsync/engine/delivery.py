"""
Delivery Client - Gateway HTTP Calls
Posts a query to the remote gateway that relays it to the CRM.
Failures (non-2xx, timeouts, connection errors) come back as a
DeliveryResponse with success=False; nothing is raised.
"""

import logging
from typing import Any, Dict, Optional

import requests

from crmsync.config import config
from crmsync.models import DeliveryResponse

logger = logging.getLogger(__name__)


def query_endpoint() -> str:
    return f"{config.GATEWAY_URL}/query"


def build_request_body(query_id: int, direct_to_target: bool,
                       user_query: Dict[str, Any]) -> Dict[str, Any]:
    """Wire body expected by the gateway's /query endpoint."""
    return {
        'user_query_id': query_id,
        'direct_to_pipedrive': direct_to_target,
        'api_key': config.GATEWAY_API_KEY,
        'domain': config.GATEWAY_DOMAIN,
        'user_query': user_query,
    }


def deliver(endpoint: str, body: Dict[str, Any], timeout: Optional[float] = None) -> DeliveryResponse:
    """
    POST a JSON body to the gateway.

    Args:
        endpoint: absolute URL
        body: JSON-serializable request body
        timeout: seconds, defaults to HTTP_TIMEOUT_SECONDS
    Returns: DeliveryResponse (success only for 2xx)
    """
    timeout = timeout or config.HTTP_TIMEOUT_SECONDS
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }

    try:
        logger.debug(f"POST {endpoint} (user_query_id={body.get('user_query_id')})")
        response = requests.post(endpoint, json=body, headers=headers, timeout=timeout, verify=True)
    except requests.exceptions.RequestException as e:
        logger.error(f"Gateway request to {endpoint} failed: {e}")
        return DeliveryResponse(success=False, status_code=None, data=None, error=str(e))

    try:
        data = response.json()
    except ValueError:
        data = None

    success = 200 <= response.status_code < 300
    if success:
        logger.info(f"Gateway accepted query {body.get('user_query_id')} ({response.status_code})")
    else:
        logger.warning(f"Gateway returned {response.status_code} for query {body.get('user_query_id')}")

    return DeliveryResponse(
        success=success,
        status_code=response.status_code,
        data=data if isinstance(data, dict) else None,
        raw=response.text,
    )
