"""
KPI repositories.

Each repository turns a validated FilterRequest into one parameterised query
per period against the BI materialized views and normalises the result: SQL
NULL aggregates (no matching rows) come back as 0, never None.

Flat KPIs expose ``fetch(request)`` (one period, one round trip) and
``execute(request)`` which adds the comparison period as an independent
second query. Table KPIs return ``{data, total, page, page_size}``.
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

from filter_query_builder import FilterQueryBuilder
from kpi_joins import NATIVE_CATEGORY_TYPES, OptionalJoin, render_joins
from kpi_periods import KpiContext, Period, build_context

logger = logging.getLogger(__name__)


# Column mappings per base view
SALES_MV_MAPPING = {
    'pharmacy_id': 'mv.pharmacy_id',
    'laboratory': 'mv.laboratory_name',
    'product_code': 'mv.code_13_ref',
    'tva': 'mv.tva_rate',
    'reimbursable': 'mv.is_reimbursable',
    'generic_status': 'mv.bcb_generic_status',
    'cat_l1': 'mv.category_name',
}

STOCK_MV_MAPPING = SALES_MV_MAPPING

PRODUCT_STATS_MAPPING = {
    'pharmacy_id': 'mv.pharmacy_id',
    'laboratory': 'mv.laboratory_name',
    'product_code': 'mv.ean13',
}

MAX_CATEGORY_LEVEL = 5


def to_number(value: Any):
    """NULL -> 0, Decimal -> float; ints stay ints."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    return float(value)


def evolution_percent(current: float, previous: float) -> float:
    return (current - previous) / previous * 100 if previous else 0.0


def percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


def period_days(period: Period) -> int:
    """Inclusive number of days covered by a period (at least 1)."""
    return max((period.end - period.start).days + 1, 1)


def _has_attribute_filters(request) -> bool:
    return bool(request.tva_rates) or request.reimbursement_status != 'ALL' or request.is_generic != 'ALL'


class BaseKpiRepository:
    """Shared plumbing: condition builder setup, optional joins, execution and normalisation."""

    name = 'kpi'
    mapping: Dict[str, str] = {}
    product_id_column = 'ip.id'
    ean_column = 'ip.code_13_ref_id'
    native_category_types: Sequence[str] = NATIVE_CATEGORY_TYPES
    # Joins the base query cannot do without
    always_joins: Sequence[OptionalJoin] = ()
    # False when tva / reimbursement / generic status live on data_globalproduct only
    native_attributes = True

    def __init__(self, data_source):
        self.data_source = data_source

    def create_builder(self, context: KpiContext, base_params: Sequence[Any],
                       include_pharmacies: bool = True) -> FilterQueryBuilder:
        builder = FilterQueryBuilder(base_params, self.mapping)
        return builder.apply_request(context.request, include_pharmacies=include_pharmacies)

    def render_joins(self, request) -> str:
        always = set(self.always_joins)
        if not self.native_attributes and _has_attribute_filters(request):
            always.add(OptionalJoin.GLOBAL_PRODUCT)
        return render_joins(request, self.product_id_column, self.ean_column,
                            self.native_category_types, always)

    async def _fetch_all(self, sql: str, params: Sequence[Any], context: Optional[KpiContext] = None) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        rows = await self.data_source.query(sql, list(params))
        logger.info(
            "[%s] %d rows in %.0fms (strategy=%s)",
            self.name, len(rows), (time.perf_counter() - started) * 1000,
            context.strategy.value if context else '-',
        )
        return rows

    async def _fetch_one(self, sql: str, params: Sequence[Any], fields: Iterable[str],
                         context: Optional[KpiContext] = None) -> Dict[str, Any]:
        rows = await self._fetch_all(sql, params, context)
        row = rows[0] if rows else {}
        return {field: to_number(row.get(field)) for field in fields}


class FlatKpiRepository(BaseKpiRepository):
    async def fetch(self, request) -> Dict[str, Any]:
        raise NotImplementedError

    async def execute(self, request) -> Dict[str, Any]:
        if not request.comparison_enabled:
            return {**await self.fetch(request), 'comparison': None}
        current, comparison = await asyncio.gather(
            self.fetch(request),
            self.fetch(request.for_comparison()),
        )
        return {**current, 'comparison': comparison}

    def _period_query_parts(self, request):
        context = build_context(request)
        current = context.periods.current
        builder = self.create_builder(context, [current.start, current.end])
        conditions, params = builder.render()
        return context, conditions, params


# ============================================================================
# Flat KPIs
# ============================================================================

class PurchasesRepository(FlatKpiRepository):
    """Purchased quantity and amount (received quantity x weighted average price)."""

    name = 'purchases'
    product_id_column = 'po.product_id'
    always_joins = (OptionalJoin.LATEST_PRICES, OptionalJoin.GLOBAL_PRODUCT)

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            SELECT
                SUM(po.qte_r) AS quantite_achetee,
                SUM(po.qte_r * COALESCE(lp.weighted_average_price, 0)) AS montant_ht
            FROM data_productorder po
            INNER JOIN data_order o ON po.order_id = o.id
            INNER JOIN data_internalproduct ip ON po.product_id = ip.id
            {self.render_joins(request)}
            WHERE o.delivery_date >= $1::date
              AND o.delivery_date <= $2::date
              AND o.delivery_date IS NOT NULL
              AND po.qte_r > 0
              {conditions}
        """
        return await self._fetch_one(sql, params, ('quantite_achetee', 'montant_ht'), context)


class SalesRepository(FlatKpiRepository):
    name = 'sales'
    mapping = SALES_MV_MAPPING
    product_id_column = 'mv.internal_product_id'
    ean_column = 'mv.code_13_ref'

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            SELECT
                SUM(mv.quantity) AS quantite_vendue,
                SUM(mv.montant_ht) AS montant_ht,
                SUM(mv.montant_ht * (1 + COALESCE(mv.tva_rate, 0) / 100.0)) AS montant_ttc
            FROM mv_sales_enriched mv
            {self.render_joins(request)}
            WHERE mv.sale_date >= $1::date
              AND mv.sale_date <= $2::date
              {conditions}
        """
        return await self._fetch_one(sql, params, ('quantite_vendue', 'montant_ht', 'montant_ttc'), context)


class MarginRepository(FlatKpiRepository):
    name = 'margin'
    mapping = SALES_MV_MAPPING
    product_id_column = 'mv.internal_product_id'
    ean_column = 'mv.code_13_ref'

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            SELECT
                SUM(mv.montant_marge) AS montant_marge,
                SUM(mv.montant_ht) AS montant_ht
            FROM mv_sales_enriched mv
            {self.render_joins(request)}
            WHERE mv.sale_date >= $1::date
              AND mv.sale_date <= $2::date
              {conditions}
        """
        result = await self._fetch_one(sql, params, ('montant_marge', 'montant_ht'), context)
        result['taux_marge_pct'] = percent(result['montant_marge'], result['montant_ht'])
        return result


class StockRepository(FlatKpiRepository):
    """Last known stock per product at the end of the analysed range."""

    name = 'stock'
    mapping = STOCK_MV_MAPPING
    product_id_column = 'mv.product_id'
    ean_column = 'mv.code_13_ref'

    async def fetch(self, request) -> Dict[str, Any]:
        context = build_context(request)
        builder = self.create_builder(context, [context.periods.current.end])
        conditions, params = builder.render()
        sql = f"""
            WITH latest_snapshots AS (
                SELECT DISTINCT ON (mv.product_id)
                    mv.stock,
                    mv.stock_value_ht
                FROM mv_stock_monthly mv
                {self.render_joins(request)}
                WHERE mv.month_end_date <= $1::date
                  {conditions}
                ORDER BY mv.product_id, mv.month_end_date DESC
            )
            SELECT
                SUM(ls.stock) AS stock_quantity,
                SUM(ls.stock_value_ht) AS stock_value_ht,
                COUNT(*) FILTER (WHERE ls.stock > 0) AS nb_references
            FROM latest_snapshots ls
        """
        return await self._fetch_one(sql, params, ('stock_quantity', 'stock_value_ht', 'nb_references'), context)


class PriceEvolutionRepository(FlatKpiRepository):
    """Average unit purchase price (HT) and sell price (TTC) over the period."""

    name = 'price-evolution'
    mapping = SALES_MV_MAPPING
    product_id_column = 'mv.internal_product_id'
    ean_column = 'mv.code_13_ref'

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            SELECT
                SUM(mv.montant_ht - mv.montant_marge) / NULLIF(SUM(mv.quantity), 0) AS avg_purchase_price,
                SUM(mv.montant_ht * (1 + COALESCE(mv.tva_rate, 0) / 100.0)) / NULLIF(SUM(mv.quantity), 0) AS avg_sell_price_ttc
            FROM mv_sales_enriched mv
            {self.render_joins(request)}
            WHERE mv.sale_date >= $1::date
              AND mv.sale_date <= $2::date
              AND mv.quantity > 0
              {conditions}
        """
        return await self._fetch_one(sql, params, ('avg_purchase_price', 'avg_sell_price_ttc'), context)


class ReceptionRateRepository(FlatKpiRepository):
    """Received vs ordered quantities for orders sent in the period."""

    name = 'reception-rate'
    product_id_column = 'po.product_id'
    always_joins = (OptionalJoin.GLOBAL_PRODUCT,)

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            SELECT
                SUM(po.qte) AS total_ordered,
                SUM(po.qte_r) AS total_received
            FROM data_productorder po
            INNER JOIN data_order o ON po.order_id = o.id
            INNER JOIN data_internalproduct ip ON po.product_id = ip.id
            {self.render_joins(request)}
            WHERE o.sent_date >= $1::date
              AND o.sent_date <= $2::date
              {conditions}
        """
        result = await self._fetch_one(sql, params, ('total_ordered', 'total_received'), context)
        result['taux_reception'] = percent(result['total_received'], result['total_ordered'])
        return result


class InventoryDaysRepository(FlatKpiRepository):
    """Days of stock: stock value at the end date over average daily cost of goods sold."""

    name = 'inventory-days'
    mapping = SALES_MV_MAPPING
    product_id_column = 'mv.internal_product_id'
    ean_column = 'mv.code_13_ref'

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        cogs_sql = f"""
            SELECT SUM(mv.montant_ht - mv.montant_marge) AS cogs_ht
            FROM mv_sales_enriched mv
            {self.render_joins(request)}
            WHERE mv.sale_date >= $1::date
              AND mv.sale_date <= $2::date
              {conditions}
        """
        stock, cogs = await asyncio.gather(
            StockRepository(self.data_source).fetch(request),
            self._fetch_one(cogs_sql, params, ('cogs_ht',), context),
        )

        days = period_days(context.periods.current)
        daily_cogs = cogs['cogs_ht'] / days
        days_of_stock = stock['stock_value_ht'] / daily_cogs if daily_cogs > 0 else 0.0
        return {
            'stock_value_ht': stock['stock_value_ht'],
            'cogs_ht': cogs['cogs_ht'],
            'period_days': days,
            'days_of_stock': round(days_of_stock, 1),
        }


class DiscrepancyRepository(FlatKpiRepository):
    """References received in a lower quantity than ordered."""

    name = 'discrepancy'
    product_id_column = 'po.product_id'
    always_joins = (OptionalJoin.GLOBAL_PRODUCT,)

    async def fetch(self, request) -> Dict[str, Any]:
        context, conditions, params = self._period_query_parts(request)
        sql = f"""
            WITH product_orders AS (
                SELECT
                    ip.code_13_ref_id AS code_13_ref,
                    SUM(po.qte) AS ordered,
                    SUM(po.qte_r) AS received
                FROM data_productorder po
                INNER JOIN data_order o ON po.order_id = o.id
                INNER JOIN data_internalproduct ip ON po.product_id = ip.id
                {self.render_joins(request)}
                WHERE o.sent_date >= $1::date
                  AND o.sent_date <= $2::date
                  AND po.qte > 0
                  {conditions}
                GROUP BY ip.code_13_ref_id
            )
            SELECT
                COUNT(*) FILTER (WHERE received < ordered) AS nb_discrepancy,
                COUNT(*) AS total_refs_ordered,
                ARRAY_AGG(code_13_ref ORDER BY code_13_ref) FILTER (WHERE received < ordered) AS discrepancy_codes
            FROM product_orders
        """
        rows = await self._fetch_all(sql, params, context)
        row = rows[0] if rows else {}
        nb_discrepancy = to_number(row.get('nb_discrepancy'))
        total_refs = to_number(row.get('total_refs_ordered'))
        return {
            'nb_discrepancy': nb_discrepancy,
            'total_refs_ordered': total_refs,
            'percent_discrepancy': percent(nb_discrepancy, total_refs),
            'discrepancy_codes': list(row.get('discrepancy_codes') or []),
        }


class NetworkHealthRepository(FlatKpiRepository):
    """Numeric distribution (share of pharmacies with sales) and top-20% sales concentration."""

    name = 'network-health'
    mapping = SALES_MV_MAPPING
    product_id_column = 'mv.internal_product_id'
    ean_column = 'mv.code_13_ref'
    max_missing_names = 50

    async def fetch(self, request) -> Dict[str, Any]:
        context = build_context(request)

        # Scope: the selected pharmacies, or the whole network, less excluded ones
        excluded = list(request.excluded_pharmacy_ids) if request.exclusion_mode == 'exclude' else []
        if request.pharmacy_ids:
            pharmacies = await self._fetch_all(
                "SELECT id::text AS id, name FROM data_pharmacy WHERE id = ANY($1::uuid[])",
                [request.selected_pharmacy_ids()], context,
            )
        elif excluded:
            pharmacies = await self._fetch_all(
                "SELECT id::text AS id, name FROM data_pharmacy WHERE id <> ALL($1::uuid[])",
                [excluded], context,
            )
        else:
            pharmacies = await self._fetch_all("SELECT id::text AS id, name FROM data_pharmacy", [], context)

        total_count = len(pharmacies)
        if total_count == 0:
            return {
                'dn_percent': 0.0, 'active_count': 0, 'total_count': 0,
                'active_pharmacies': [], 'missing_pharmacy_names': [],
                'concentration_percent': 0.0, 'pareto_pharmacies': [],
            }

        current = context.periods.current
        builder = self.create_builder(context, [current.start, current.end])
        conditions, params = builder.render()
        sql = f"""
            SELECT
                mv.pharmacy_id::text AS pharmacy_id,
                SUM(mv.montant_ht * (1 + COALESCE(mv.tva_rate, 0) / 100.0)) AS total_sales
            FROM mv_sales_enriched mv
            {self.render_joins(request)}
            WHERE mv.sale_date >= $1::date
              AND mv.sale_date <= $2::date
              {conditions}
            GROUP BY mv.pharmacy_id
            HAVING SUM(mv.montant_ht) > 0
            ORDER BY total_sales DESC
        """
        active = await self._fetch_all(sql, params, context)

        names = {p['id']: p['name'] for p in pharmacies}
        active_ids = [row['pharmacy_id'] for row in active]
        active_set = set(active_ids)

        total_sales = sum(to_number(row['total_sales']) for row in active)
        top_count = max(1, math.ceil(total_count * 0.20))
        top = active[:top_count]
        top_sales = sum(to_number(row['total_sales']) for row in top)

        missing = sorted(p['name'] for p in pharmacies if p['id'] not in active_set)
        return {
            'dn_percent': percent(len(active_ids), total_count),
            'active_count': len(active_ids),
            'total_count': total_count,
            'active_pharmacies': [{'id': pid, 'name': names.get(pid, 'Inconnu')} for pid in active_ids],
            'missing_pharmacy_names': missing[:self.max_missing_names],
            'concentration_percent': percent(top_sales, total_sales),
            'pareto_pharmacies': [{'id': row['pharmacy_id'], 'name': names.get(row['pharmacy_id'], 'Inconnu')} for row in top],
        }


# ============================================================================
# Table KPIs (current vs previous period, one round trip)
# ============================================================================

_METRICS = (
    ('sales_ttc', 'ttc_sold'),
    ('sales_ht', 'ht_sold'),
    ('sales_qty', 'qty_sold'),
    ('purchases_ht', 'ht_purchased'),
    ('purchases_qty', 'qty_purchased'),
    ('margin_ht', 'margin_sold'),
)

_MINE = "($5::uuid[] IS NULL OR mv.pharmacy_id = ANY($5::uuid[]))"
_CURRENT = "mv.month >= $1::date AND mv.month <= $2::date"
_PREVIOUS = "mv.month >= $3::date AND mv.month <= $4::date"


def _period_sums(include_group: bool = False) -> str:
    lines = []
    for alias, column in _METRICS:
        lines.append(f"SUM(CASE WHEN {_MINE} AND {_CURRENT} THEN mv.{column} ELSE 0 END) AS {alias}")
        lines.append(f"SUM(CASE WHEN {_MINE} AND {_PREVIOUS} THEN mv.{column} ELSE 0 END) AS {alias}_prev")
    if include_group:
        lines.append(f"SUM(CASE WHEN {_CURRENT} THEN mv.ttc_sold ELSE 0 END) AS group_sales_ttc")
        lines.append(f"SUM(CASE WHEN {_PREVIOUS} THEN mv.ttc_sold ELSE 0 END) AS group_sales_ttc_prev")
    return ',\n                    '.join(lines)


def _metric_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Numbers, rates and evolutions shared by every analysis row."""
    values = {alias: to_number(row.get(alias)) for alias, _ in _METRICS}
    prev = {alias: to_number(row.get(f"{alias}_prev")) for alias, _ in _METRICS}

    margin_rate = percent(values['margin_ht'], values['sales_ht'])
    margin_rate_prev = percent(prev['margin_ht'], prev['sales_ht'])
    market_share = percent(values['sales_ttc'], to_number(row.get('total_sales_ttc')))
    market_share_prev = percent(prev['sales_ttc'], to_number(row.get('total_sales_ttc_prev')))

    return {
        **values,
        'margin_rate': margin_rate,
        'market_share_pct': market_share,
        'sales_evolution': evolution_percent(values['sales_ttc'], prev['sales_ttc']),
        'sales_qty_evolution': evolution_percent(values['sales_qty'], prev['sales_qty']),
        'purchases_evolution': evolution_percent(values['purchases_ht'], prev['purchases_ht']),
        'purchases_qty_evolution': evolution_percent(values['purchases_qty'], prev['purchases_qty']),
        'margin_ht_evolution': evolution_percent(values['margin_ht'], prev['margin_ht']),
        # Rates move in points
        'margin_rate_evolution': margin_rate - margin_rate_prev,
        'market_share_evolution': market_share - market_share_prev,
    }


class AnalysisRepository(BaseKpiRepository):
    """Row-set KPIs over mv_product_stats_monthly.

    Pharmacy selection does not filter rows: it is passed as $5 and only splits
    the selected pharmacies' figures from the group's.
    """

    mapping = PRODUCT_STATS_MAPPING
    product_id_column = 'mv.product_id'
    ean_column = 'mv.ean13'
    native_category_types = ()
    native_attributes = False

    def _analysis_params(self, context: KpiContext) -> List[Any]:
        request = context.request
        current = context.periods.current
        if context.comparison_enabled:
            comparison = request.for_comparison()
            previous = build_context(comparison).periods.current
        else:
            previous = context.periods.previous
        # NULL means no selection; an emptied selection stays [] and matches nothing
        pharmacy_ids = request.selected_pharmacy_ids() if request.pharmacy_ids else None
        return [current.start, current.end, previous.start, previous.end, pharmacy_ids]


class LaboratoryAnalysisRepository(AnalysisRepository):
    name = 'laboratory-analysis'
    search_columns = ('mv.laboratory_name', 'mv.product_label')

    async def execute(self, request) -> Dict[str, Any]:
        context = build_context(request, page=request.page, page_size=request.page_size)
        builder = self.create_builder(context, self._analysis_params(context), include_pharmacies=False)
        builder.add_search(self.search_columns, request.search)
        conditions, params = builder.render()

        limit_idx = len(params) + 1
        params += [context.pagination.page_size, context.pagination.offset]

        sql = f"""
            WITH lab_stats AS (
                SELECT
                    mv.laboratory_name,
                    {_period_sums(include_group=True)}
                FROM mv_product_stats_monthly mv
                {self.render_joins(request)}
                WHERE (({_CURRENT}) OR ({_PREVIOUS}))
                  AND mv.laboratory_name IS NOT NULL
                  {conditions}
                GROUP BY mv.laboratory_name
            )
            SELECT
                ls.*,
                SUM(ls.sales_ttc) OVER () AS total_sales_ttc,
                SUM(ls.sales_ttc_prev) OVER () AS total_sales_ttc_prev,
                RANK() OVER (ORDER BY ls.sales_ttc DESC) AS my_rank,
                RANK() OVER (ORDER BY ls.group_sales_ttc DESC) AS group_rank,
                COUNT(*) OVER () AS total_rows
            FROM lab_stats ls
            ORDER BY ls.sales_ttc DESC, ls.laboratory_name
            LIMIT ${limit_idx}::int OFFSET ${limit_idx + 1}::int
        """
        rows = await self._fetch_all(sql, params, context)
        data = [
            {
                'laboratory_name': row['laboratory_name'],
                'my_rank': to_number(row.get('my_rank')),
                'group_rank': to_number(row.get('group_rank')),
                'group_sales_ttc': to_number(row.get('group_sales_ttc')),
                'group_sales_evolution': evolution_percent(
                    to_number(row.get('group_sales_ttc')), to_number(row.get('group_sales_ttc_prev'))),
                **_metric_row(row),
            }
            for row in rows
        ]
        return _page(data, rows, context)


class ProductAnalysisRepository(AnalysisRepository):
    name = 'product-analysis'
    search_columns = ('mv.product_label', 'mv.ean13')

    async def execute(self, request) -> Dict[str, Any]:
        context = build_context(request, page=request.page, page_size=request.page_size)
        builder = self.create_builder(context, self._analysis_params(context), include_pharmacies=False)
        builder.add_search(self.search_columns, request.search)
        conditions, params = builder.render()

        limit_idx = len(params) + 1
        params += [context.pagination.page_size, context.pagination.offset]

        sql = f"""
            WITH product_stats AS (
                SELECT
                    mv.ean13,
                    MAX(mv.product_label) AS product_name,
                    MAX(mv.laboratory_name) AS laboratory_name,
                    {_period_sums(include_group=True)}
                FROM mv_product_stats_monthly mv
                {self.render_joins(request)}
                WHERE (({_CURRENT}) OR ({_PREVIOUS}))
                  {conditions}
                GROUP BY mv.ean13
            )
            SELECT
                ps.*,
                SUM(ps.sales_ttc) OVER () AS total_sales_ttc,
                SUM(ps.sales_ttc_prev) OVER () AS total_sales_ttc_prev,
                RANK() OVER (ORDER BY ps.sales_qty DESC) AS my_rank,
                COUNT(*) OVER () AS total_rows
            FROM product_stats ps
            ORDER BY ps.sales_qty DESC, ps.ean13
            LIMIT ${limit_idx}::int OFFSET ${limit_idx + 1}::int
        """
        rows = await self._fetch_all(sql, params, context)
        data = [
            {
                'ean13': row['ean13'],
                'product_name': row.get('product_name'),
                'laboratory_name': row.get('laboratory_name'),
                'my_rank': to_number(row.get('my_rank')),
                'group_sales_ttc': to_number(row.get('group_sales_ttc')),
                **_metric_row(row),
            }
            for row in rows
        ]
        return _page(data, rows, context)


class CategoryAnalysisRepository(AnalysisRepository):
    """Drill-down by segment: ``path=[]`` groups by level 0, ``['A']`` by level 1 within A, etc."""

    name = 'category-analysis'
    always_joins = (OptionalJoin.GLOBAL_PRODUCT,)

    async def execute(self, request, path: Sequence[str] = ()) -> Dict[str, Any]:
        path = list(path or [])
        level = len(path)
        if level > MAX_CATEGORY_LEVEL:
            return {'data': [], 'total': 0, 'level': level, 'path': path}

        context = build_context(request)
        builder = self.create_builder(context, self._analysis_params(context), include_pharmacies=False)
        for index, segment in enumerate(path):
            builder.add_equals(f"gp.bcb_segment_l{index}", segment)
        conditions, params = builder.render()

        category_column = f"gp.bcb_segment_l{level}"
        sql = f"""
            WITH category_stats AS (
                SELECT
                    {category_column} AS name,
                    {_period_sums()}
                FROM mv_product_stats_monthly mv
                {self.render_joins(request)}
                WHERE (({_CURRENT}) OR ({_PREVIOUS}))
                  AND {category_column} IS NOT NULL
                  AND {category_column} <> ''
                  AND {category_column} <> 'NaN'
                  {conditions}
                GROUP BY 1
            )
            SELECT
                cs.*,
                SUM(cs.sales_ttc) OVER () AS total_sales_ttc,
                SUM(cs.sales_ttc_prev) OVER () AS total_sales_ttc_prev
            FROM category_stats cs
            ORDER BY cs.sales_ttc DESC
        """
        rows = await self._fetch_all(sql, params, context)
        data = [{'name': row['name'], **_metric_row(row)} for row in rows]
        return {'data': data, 'total': len(data), 'level': level, 'path': path}


def _page(data: List[Dict[str, Any]], rows: List[Dict[str, Any]], context: KpiContext) -> Dict[str, Any]:
    total = to_number(rows[0].get('total_rows')) if rows else 0
    return {
        'data': data,
        'total': total,
        'page': context.pagination.page,
        'page_size': context.pagination.page_size,
    }
