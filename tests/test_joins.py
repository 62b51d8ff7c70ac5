# tests/test_joins.py
from conftest import make_request
from kpi_joins import OptionalJoin, needs_join, render_joins


def test_no_filters_need_no_join():
    request = make_request()
    assert not needs_join(request, OptionalJoin.LATEST_PRICES)
    assert not needs_join(request, OptionalJoin.GLOBAL_PRODUCT)
    assert render_joins(request, "mv.internal_product_id", "mv.code_13_ref") == ""


def test_price_ranges_need_latest_prices():
    for field in ("purchasePriceNetRange", "sellPriceRange", "discountRange", "marginRange"):
        request = make_request(**{field: {"min": 1}})
        assert needs_join(request, OptionalJoin.LATEST_PRICES), field
        assert not needs_join(request, OptionalJoin.GLOBAL_PRODUCT), field


def test_gross_price_needs_global_product():
    request = make_request(purchasePriceGrossRange={"max": 10})
    assert needs_join(request, OptionalJoin.GLOBAL_PRODUCT)
    assert not needs_join(request, OptionalJoin.LATEST_PRICES)


def test_groups_need_global_product():
    assert needs_join(make_request(groups=["PARACETAMOL 500MG"]), OptionalJoin.GLOBAL_PRODUCT)


def test_native_category_level_needs_no_join():
    request = make_request(categories=[{"code": "Dermo", "type": "bcb_segment_l1"}])
    assert not needs_join(request, OptionalJoin.GLOBAL_PRODUCT)


def test_deeper_category_level_needs_global_product():
    request = make_request(categories=[{"code": "Solaires", "type": "bcb_segment_l3"}])
    assert needs_join(request, OptionalJoin.GLOBAL_PRODUCT)


def test_excluded_categories_count():
    request = make_request(excludedCategories=[{"code": "Bébé", "type": "bcb_family"}])
    assert needs_join(request, OptionalJoin.GLOBAL_PRODUCT)


def test_native_levels_are_configurable():
    request = make_request(categories=[{"code": "Dermo", "type": "bcb_segment_l1"}])
    assert needs_join(request, OptionalJoin.GLOBAL_PRODUCT, native_category_types=())


def test_render_joins_uses_given_columns():
    request = make_request(sellPriceRange={"max": 20}, groups=["G1"])
    sql = render_joins(request, "mv.internal_product_id", "mv.code_13_ref")
    assert sql.splitlines() == [
        "LEFT JOIN mv_latest_product_prices lp ON mv.internal_product_id = lp.product_id",
        "LEFT JOIN data_globalproduct gp ON mv.code_13_ref = gp.code_13_ref",
    ]


def test_render_joins_always():
    sql = render_joins(make_request(), "po.product_id", "ip.code_13_ref_id", always=[OptionalJoin.GLOBAL_PRODUCT])
    assert sql == "LEFT JOIN data_globalproduct gp ON ip.code_13_ref_id = gp.code_13_ref"
