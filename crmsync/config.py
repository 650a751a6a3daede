"""
crmsync Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    """Application configuration."""

    # Database: must be set in .env; never hardcode credentials here
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")

    # Remote gateway (relays queries to the CRM)
    GATEWAY_URL = os.getenv('GATEWAY_URL', 'https://woocommerce-to-pipedrive.com/api/v1').rstrip('/')
    GATEWAY_API_KEY = os.getenv('GATEWAY_API_KEY', '')
    GATEWAY_DOMAIN = os.getenv('GATEWAY_DOMAIN', '')

    # CRM credentials forwarded with every query
    PIPEDRIVE_API_KEY = os.getenv('PIPEDRIVE_API_KEY', '')
    PIPEDRIVE_COMPANY_DOMAIN = os.getenv('PIPEDRIVE_COMPANY_DOMAIN', '')

    HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '15'))

    # Failed attempts before a query is cancelled
    MAX_QUERY_ERRORS = int(os.getenv('MAX_QUERY_ERRORS', '5'))

    # Sync orchestrator
    HEARTBEAT_STALE_SECONDS = int(os.getenv('HEARTBEAT_STALE_SECONDS', '60'))
    SYNC_FORCE_RESET_SECONDS = int(os.getenv('SYNC_FORCE_RESET_SECONDS', str(4 * 60 * 60)))
    # How long a restart waits for the previous in-process worker to stop
    SYNC_STOP_JOIN_SECONDS = int(os.getenv('SYNC_STOP_JOIN_SECONDS', '30'))

    # Coalescing window for cart updates
    DEBOUNCE_SECONDS = int(os.getenv('DEBOUNCE_SECONDS', '60'))

    QUERIES_PER_PAGE = int(os.getenv('QUERIES_PER_PAGE', '10'))

    DB_CONNECT_TIMEOUT = int(os.getenv('DB_CONNECT_TIMEOUT', '10'))

    # Tenant parameters (hook list, field catalog, person/deal options)
    SETTINGS_PATH = Path(os.getenv('SETTINGS_PATH', str(Path(__file__).parent.parent / 'settings.json')))

    # Site values exposed to hook variables
    SITE_DOMAIN = os.getenv('SITE_DOMAIN', '')
    SITE_TITLE = os.getenv('SITE_TITLE', '')
    CURRENCY = os.getenv('CURRENCY', 'EUR')


# Singleton instance
config = Config()
