"""
Environment-driven settings for the offline POS client.

Values come from the process environment, optionally seeded from a local .env
file. Every module reads its settings from here so the agent, the sync worker
and the scripts agree on paths and endpoints.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    try:
        value = float(_env_string(name) or default)
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(_env_string(name) or default)
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


# Remote collaborator
API_BASE = (_env_string('POS_API_BASE', 'http://localhost:5000') or '').rstrip('/')
CATALOG_PATH = _env_string('POS_CATALOG_PATH', '/api/product')
SALES_PATH = _env_string('POS_SALES_PATH', '/api/sales')
USERS_PATH = _env_string('POS_USERS_PATH', '/api/auth/all')
HEALTH_PATH = _env_string('POS_HEALTH_PATH', '/')
HTTP_TIMEOUT = _env_float('POS_HTTP_TIMEOUT', 15.0, minimum=1.0)

# Local store
OFFLINE_DB_PATH = _env_string('POS_OFFLINE_DB_PATH', 'pos_offline.db')
EXPORT_DIR = _env_string('POS_EXPORT_DIR', 'pos_backup')

# Billing
GST_PERCENT = _env_float('POS_GST_PERCENT', 18.0, minimum=0.0)
INVOICE_PREFIX = _env_string('POS_INVOICE_PREFIX', 'inv')

# Sync
SYNC_SETTLE_DELAY = _env_float('POS_SYNC_SETTLE_DELAY', 0.8, minimum=0.0)
SYNC_MAX_REJECTIONS = _env_int('POS_SYNC_MAX_REJECTIONS', 0, minimum=0)
SYNC_INTERVAL = _env_float('POS_SYNC_INTERVAL', 30.0, minimum=1.0)
CONNECTIVITY_INTERVAL = _env_float('POS_CONNECTIVITY_INTERVAL', 10.0, minimum=2.0)

LOG_LEVEL_NAME = (_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper()


def log_level() -> int:
    level = getattr(logging, LOG_LEVEL_NAME, None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(tag: str) -> None:
    """Install the bracketed console format used by every entry point."""
    logging.basicConfig(level=log_level(), format=f'[{tag}] %(asctime)s %(levelname)s %(name)s %(message)s')
