"""
asyncpg-backed data source used by the KPI repositories.

``query(sql, params)`` takes ``$n`` placeholders and a flat parameter list and
returns rows as plain dicts.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Sequence

import asyncpg

import config
from kpi_errors import DataSourceError

logger = logging.getLogger(__name__)


class PoolDataSource:
    def __init__(self, pool, timeout: float = config.KPI_QUERY_TIMEOUT_SECONDS):
        self._pool = pool
        self._timeout = timeout

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(sql, *params, timeout=self._timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error("Query failed after %.0fms: %s", (time.perf_counter() - started) * 1000, e)
            raise DataSourceError(f"Query failed: {e}", sql=sql) from e

        logger.debug("Query returned %d rows in %.0fms", len(rows), (time.perf_counter() - started) * 1000)
        return [dict(row) for row in rows]
