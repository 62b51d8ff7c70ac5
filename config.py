"""
Environment settings for the Pharmacy KPI API.
Everything is read once at import time; override through environment variables.
"""

import os


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Database (internal host first, external as fallback)
DB_HOST = os.getenv('DB_HOST', 'localhost')
DB_EXTERNAL_HOST = os.getenv('DB_EXTERNAL_HOST')
DB_PORT = _int_env('DB_PORT', 5432)
DB_NAME = os.getenv('DB_NAME', 'pharmacy_bi')
DB_USER = os.getenv('DB_USER', 'pharmacy_bi')
DB_PASSWORD = os.getenv('DB_PASSWORD', '')
DB_SSL = _bool_env('DB_SSL', False)
DB_POOL_MIN_SIZE = _int_env('DB_POOL_MIN_SIZE', 1)
DB_POOL_MAX_SIZE = _int_env('DB_POOL_MAX_SIZE', 10)

# KPI core
KPI_CACHE_TTL_SECONDS = _int_env('KPI_CACHE_TTL_SECONDS', 12 * 60 * 60)
KPI_QUERY_TIMEOUT_SECONDS = _int_env('KPI_QUERY_TIMEOUT_SECONDS', 60)
KPI_API_KEY = os.getenv('KPI_API_KEY', 'pharmacy-kpi-dev')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
CORS_ALLOW_ORIGINS = os.getenv('CORS_ALLOW_ORIGINS', '*').split(',')
