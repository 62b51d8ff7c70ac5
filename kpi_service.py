"""
Cached KPI computation with optional comparison period.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from kpi_repositories import evolution_percent
from query_cache import QueryCache, generate_key

logger = logging.getLogger(__name__)

Fetch = Callable[[Any], Awaitable[Dict[str, Any]]]


def period_cache_key(key: str, request) -> str:
    # A period's figures do not depend on what it is compared with
    params = request.cache_params()
    params.pop('comparisonDateRange', None)
    return generate_key(key, params)


async def _cached(request, key: str, fetch: Fetch, cache: Optional[QueryCache]) -> Dict[str, Any]:
    if cache is None:
        return await fetch(request)
    return await cache.with_cache(period_cache_key(key, request), lambda: fetch(request))


async def get_kpi_data_with_evolution(request, key: str, fetch: Fetch, cache: Optional[QueryCache],
                                      evolution_field: Optional[str] = None) -> Dict[str, Any]:
    """Current period, plus the comparison period when the request sets one.

    Each period is cached under its own key; the two queries run concurrently
    and their results are never merged.
    """
    started = time.perf_counter()

    if request.comparison_enabled:
        current, comparison = await asyncio.gather(
            _cached(request, key, fetch, cache),
            _cached(request.for_comparison(), key, fetch, cache),
        )
    else:
        current, comparison = await _cached(request, key, fetch, cache), None

    evolution = None
    if comparison is not None and evolution_field:
        evolution = evolution_percent(current.get(evolution_field, 0), comparison.get(evolution_field, 0))

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info("[%s] computed in %dms (comparison=%s)", key, duration_ms, comparison is not None)

    return {
        **current,
        'comparison': comparison,
        'evolution_percent': evolution,
        'duration': f"{duration_ms}ms",
    }
