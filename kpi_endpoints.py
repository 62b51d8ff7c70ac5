"""
KPI Endpoints
=============
Router factory for the dashboard KPI and analysis endpoints.

Every route takes the filter request as JSON body (camelCase keys) and the
API key as query parameter. Malformed date ranges give a 400; any database
failure gives a generic 500.
"""

import logging
from typing import Any, Callable, Dict, Optional, Type

from fastapi import APIRouter, Body, HTTPException, Query

from kpi_errors import InvalidRequest
from kpi_models import parse_filter_request
from kpi_repositories import (
    CategoryAnalysisRepository,
    DiscrepancyRepository,
    FlatKpiRepository,
    InventoryDaysRepository,
    LaboratoryAnalysisRepository,
    MarginRepository,
    NetworkHealthRepository,
    PriceEvolutionRepository,
    ProductAnalysisRepository,
    PurchasesRepository,
    ReceptionRateRepository,
    SalesRepository,
    StockRepository,
)
from kpi_service import get_kpi_data_with_evolution
from query_cache import QueryCache, generate_key

logger = logging.getLogger(__name__)

# route -> (repository, cache prefix, field used for evolution_percent)
FLAT_KPIS: Dict[str, tuple] = {
    'purchases': (PurchasesRepository, 'kpi:purchases', 'montant_ht'),
    'sales': (SalesRepository, 'kpi:sales', 'montant_ttc'),
    'margin': (MarginRepository, 'kpi:margin', 'montant_marge'),
    'stock': (StockRepository, 'kpi:stock', 'stock_value_ht'),
    'price-evolution': (PriceEvolutionRepository, 'kpi:price-evolution', 'avg_sell_price_ttc'),
    'reception-rate': (ReceptionRateRepository, 'kpi:reception-rate', 'taux_reception'),
    'inventory-days': (InventoryDaysRepository, 'kpi:inventory-days', 'days_of_stock'),
    'discrepancy': (DiscrepancyRepository, 'kpi:discrepancy', 'nb_discrepancy'),
    'network-health': (NetworkHealthRepository, 'kpi:network-health', 'dn_percent'),
}

GENERIC_ERROR = "Failed to compute KPI"


def create_kpi_router(get_data_source: Callable[[], Any],
                      verify_api_key: Callable[[str], None],
                      cache: QueryCache) -> APIRouter:
    """Create the KPI router bound to a data source getter and an API key check."""
    router = APIRouter(tags=["kpis"])

    def _data_source():
        data_source = get_data_source()
        if data_source is None:
            raise HTTPException(status_code=503, detail="Database not connected")
        return data_source

    async def _run_flat(name: str, body: Any) -> Dict[str, Any]:
        repository_class, prefix, evolution_field = FLAT_KPIS[name]
        try:
            request = parse_filter_request(body)
            repository: FlatKpiRepository = repository_class(_data_source())
            return await get_kpi_data_with_evolution(
                request, prefix, repository.fetch, cache, evolution_field=evolution_field,
            )
        except HTTPException:
            raise
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("KPI %s failed", name)
            raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    async def _run_table(name: str, repository_class: Type, body: Any, **kwargs) -> Dict[str, Any]:
        try:
            request = parse_filter_request(body)
            repository = repository_class(_data_source())
            key = generate_key(f"analysis:{name}", {**request.cache_params(), **kwargs})
            return await cache.with_cache(key, lambda: repository.execute(request, **kwargs))
        except HTTPException:
            raise
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("Analysis %s failed", name)
            raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    # ========================================================================
    # Flat KPIs
    # ========================================================================

    @router.post("/api/v1/kpis/purchases")
    async def purchases_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        """Purchased quantity and HT amount over the date range."""
        verify_api_key(api_key)
        return await _run_flat('purchases', body)

    @router.post("/api/v1/kpis/sales")
    async def sales_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        """Sold quantity, HT and TTC amounts."""
        verify_api_key(api_key)
        return await _run_flat('sales', body)

    @router.post("/api/v1/kpis/margin")
    async def margin_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        verify_api_key(api_key)
        return await _run_flat('margin', body)

    @router.post("/api/v1/kpis/stock")
    async def stock_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        """Last known stock quantity and value at the end of the date range."""
        verify_api_key(api_key)
        return await _run_flat('stock', body)

    @router.post("/api/v1/kpis/price-evolution")
    async def price_evolution_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        verify_api_key(api_key)
        return await _run_flat('price-evolution', body)

    @router.post("/api/v1/kpis/reception-rate")
    async def reception_rate_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        verify_api_key(api_key)
        return await _run_flat('reception-rate', body)

    @router.post("/api/v1/kpis/inventory-days")
    async def inventory_days_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        """Days of stock = stock value / average daily cost of goods sold."""
        verify_api_key(api_key)
        return await _run_flat('inventory-days', body)

    @router.post("/api/v1/kpis/discrepancy")
    async def discrepancy_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        verify_api_key(api_key)
        return await _run_flat('discrepancy', body)

    @router.post("/api/v1/kpis/network-health")
    async def network_health_kpi(body: Any = Body(default=None), api_key: str = Query(...)):
        """Numeric distribution and top-20% concentration across the network."""
        verify_api_key(api_key)
        return await _run_flat('network-health', body)

    # ========================================================================
    # Analysis tables
    # ========================================================================

    @router.post("/api/v1/analysis/laboratories")
    async def laboratory_analysis(body: Any = Body(default=None), api_key: str = Query(...)):
        """Paginated laboratory ranking, selected pharmacies vs group."""
        verify_api_key(api_key)
        return await _run_table('laboratories', LaboratoryAnalysisRepository, body)

    @router.post("/api/v1/analysis/products")
    async def product_analysis(body: Any = Body(default=None), api_key: str = Query(...)):
        verify_api_key(api_key)
        return await _run_table('products', ProductAnalysisRepository, body)

    @router.post("/api/v1/analysis/categories")
    async def category_analysis(body: Any = Body(default=None), api_key: str = Query(...)):
        """Category drill-down. ``path`` in the body selects the parent segments."""
        verify_api_key(api_key)
        path = body.get('path') if isinstance(body, dict) else None
        if path is not None and not (isinstance(path, list) and all(isinstance(p, str) for p in path)):
            raise HTTPException(status_code=400, detail="path must be a list of segment names")
        return await _run_table('categories', CategoryAnalysisRepository, body, path=list(path or []))

    # ========================================================================
    # Cache
    # ========================================================================

    @router.delete("/api/v1/kpis/cache")
    async def clear_kpi_cache(api_key: str = Query(...), pattern: Optional[str] = Query(default=None)):
        """Drop cached KPI results (all, or keys containing ``pattern``)."""
        verify_api_key(api_key)
        removed = cache.invalidate(pattern)
        logger.info("KPI cache invalidated: %d entries", removed)
        return {"status": "success", "removed": removed}

    return router
