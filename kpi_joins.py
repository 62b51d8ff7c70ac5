"""
Optional joins for KPI queries.

The base views already carry pharmacy id, product code and the level-1
category, so dimension tables are only joined when a requested filter needs a
column they do not have.
"""

from enum import Enum
from typing import Iterable, List


class OptionalJoin(str, Enum):
    LATEST_PRICES = 'LATEST_PRICES'
    GLOBAL_PRODUCT = 'GLOBAL_PRODUCT'


NATIVE_CATEGORY_TYPES = ('bcb_segment_l1',)

LATEST_PRICE_RANGES = (
    'purchase_price_net_range',
    'sell_price_range',
    'discount_range',
    'margin_range',
)


def _present(value_range) -> bool:
    return value_range is not None


def needs_join(request, join: OptionalJoin, native_category_types: Iterable[str] = NATIVE_CATEGORY_TYPES) -> bool:
    if join == OptionalJoin.LATEST_PRICES:
        return any(_present(getattr(request, name)) for name in LATEST_PRICE_RANGES)

    if join == OptionalJoin.GLOBAL_PRODUCT:
        if _present(request.purchase_price_gross_range) or request.groups:
            return True
        native = set(native_category_types)
        requested = list(request.categories) + list(request.excluded_categories)
        return any(category.type not in native for category in requested)

    raise ValueError(f"Unknown join: {join}")


def render_joins(request, product_id_column: str, ean_column: str,
                 native_category_types: Iterable[str] = NATIVE_CATEGORY_TYPES,
                 always: Iterable[OptionalJoin] = ()) -> str:
    """LEFT JOIN fragments for the joins the request needs (plus any in ``always``)."""
    always = set(always)
    joins: List[str] = []
    if OptionalJoin.LATEST_PRICES in always or needs_join(request, OptionalJoin.LATEST_PRICES, native_category_types):
        joins.append(f"LEFT JOIN mv_latest_product_prices lp ON {product_id_column} = lp.product_id")
    if OptionalJoin.GLOBAL_PRODUCT in always or needs_join(request, OptionalJoin.GLOBAL_PRODUCT, native_category_types):
        joins.append(f"LEFT JOIN data_globalproduct gp ON {ean_column} = gp.code_13_ref")
    return '\n'.join(joins)
