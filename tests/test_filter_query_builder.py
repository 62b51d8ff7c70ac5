# tests/test_filter_query_builder.py
import re
from datetime import date

from conftest import make_request
from filter_query_builder import ClauseOp, FilterQueryBuilder
from kpi_models import NumericRange, Operator

BASE = [date(2025, 1, 1), date(2025, 1, 31)]


def build(**overrides):
    return FilterQueryBuilder(BASE).apply_request(make_request(**overrides))


def _evaluate(predicate, row):
    value = row.get(predicate.column)
    if predicate.op == ClauseOp.ANY:
        return value in predicate.value
    if predicate.op == ClauseOp.NOT_ALL:
        return value not in predicate.value
    if predicate.op == ClauseOp.EQ:
        return value == predicate.value
    if predicate.op == ClauseOp.GTE:
        return value is not None and value >= predicate.value
    if predicate.op == ClauseOp.LTE:
        return value is not None and value <= predicate.value
    if predicate.op == ClauseOp.IS_TRUE:
        return value is True
    if predicate.op == ClauseOp.IS_FALSE:
        return value is False
    raise AssertionError(predicate.op)


def matches(builder, row):
    """Evaluate the accumulated clauses against one row, the way Postgres would."""
    for group in builder.groups:
        results = [_evaluate(p, row) for p in group.predicates]
        if not (all(results) if group.joiner == "AND" else any(results)):
            return False
    return True


def test_empty_request_adds_nothing():
    conditions, params = build().render()
    assert conditions == ""
    assert params == BASE


def test_inclusion_uses_array_membership():
    conditions, params = build(laboratories=["LAB A", "LAB B"]).render()
    assert conditions == "AND (gp.bcb_lab = ANY($3::text[]))"
    assert params[2] == ["LAB A", "LAB B"]


def test_pharmacies_are_cast_to_uuid():
    conditions, _ = build(pharmacyIds=["7c1e4d2a-0000-0000-0000-000000000001"]).render()
    assert "ip.pharmacy_id = ANY($3::uuid[])" in conditions


def test_exclusion_is_always_subtractive():
    conditions, params = build(excludedLaboratories=["LAB X"]).render()
    assert conditions == "AND (gp.bcb_lab <> ALL($3::text[]))"
    assert params[2] == ["LAB X"]


def test_exclusion_wins_over_inclusion():
    builder = build(productCodes=["EAN1", "EAN2"], excludedProductCodes=["EAN2"])
    col = "ip.code_13_ref_id"
    assert matches(builder, {col: "EAN1"})
    assert not matches(builder, {col: "EAN2"})
    assert not matches(builder, {col: "EAN3"})
    _, params = builder.render()
    assert params[2:] == [["EAN1"], ["EAN2"]]


def test_everything_excluded_matches_nothing():
    builder = build(productCodes=["EAN1"], excludedProductCodes=["EAN1"])
    assert not matches(builder, {"ip.code_13_ref_id": "EAN1"})
    assert "ip.code_13_ref_id = ANY($3::text[])" in builder.conditions


def test_excluded_pharmacy_is_removed_from_selection():
    builder = build(pharmacyIds=["ph-1", "ph-2"], excludedPharmacyIds=["ph-2"])
    assert matches(builder, {"ip.pharmacy_id": "ph-1"})
    assert not matches(builder, {"ip.pharmacy_id": "ph-2"})


def test_placeholders_line_up_with_params():
    builder = build(
        pharmacyIds=["ph-1"],
        laboratories=["LAB A"],
        categories=[{"code": "Dermo", "type": "bcb_segment_l1"}, {"code": "Solaires", "type": "bcb_segment_l3"}],
        productCodes=["EAN1"],
        excludedProductCodes=["EAN9"],
        excludedCategories=[{"code": "Bébé", "type": "bcb_segment_l2"}],
        sellPriceRange={"min": 1, "max": 30},
        discountRange={},
        tvaRates=[2.1],
        reimbursementStatus="NOT_REIMBURSED",
        isGeneric="PRINCEPS_GENERIC",
    )
    builder.add_search(["gp.name", "gp.bcb_lab"], "crème")
    conditions, params = builder.render()
    where = f"WHERE d >= $1 AND d <= $2 {conditions}"

    indices = [int(i) for i in re.findall(r"\$(\d+)", where)]
    assert indices == list(range(1, len(params) + 1))
    assert builder.next_index == len(params) + 1


def test_numbering_continues_after_custom_base_params():
    builder = FilterQueryBuilder(["a", "b", "c", "d", None])
    builder.add_laboratories(["LAB"])
    assert builder.conditions == "AND (gp.bcb_lab = ANY($6::text[]))"
    assert builder.next_index == 7


def test_categories_or_across_levels():
    builder = build(categories=[
        {"code": "Dermo", "type": "bcb_segment_l1"},
        {"code": "Hygiène", "type": "bcb_segment_l1"},
        {"code": "Solaires", "type": "bcb_family"},
    ])
    conditions, params = builder.render()
    assert conditions == "AND (gp.bcb_segment_l1 = ANY($3::text[]) OR gp.bcb_family = ANY($4::text[]))"
    assert params[2] == ["Dermo", "Hygiène"]
    assert params[3] == ["Solaires"]


def test_categories_and_requires_every_level():
    builder = build(
        categories=[{"code": "Dermo", "type": "bcb_segment_l1"}, {"code": "Solaires", "type": "bcb_family"}],
        filterOperators={"categories": "AND"},
    )
    assert builder.conditions == "AND (gp.bcb_segment_l1 = ANY($3::text[]) AND gp.bcb_family = ANY($4::text[]))"
    both = {"gp.bcb_segment_l1": "Dermo", "gp.bcb_family": "Solaires"}
    assert matches(builder, both)
    assert not matches(builder, {**both, "gp.bcb_family": "Autre"})


def test_and_on_a_single_level_is_membership():
    builder = FilterQueryBuilder(BASE)
    request = make_request(categories=[{"code": "A", "type": "bcb_segment_l2"}, {"code": "B", "type": "bcb_segment_l2"}])
    builder.add_categories(request.categories, Operator.AND)
    assert matches(builder, {"gp.bcb_segment_l2": "A"})
    assert matches(builder, {"gp.bcb_segment_l2": "B"})


def test_excluded_categories_are_and_ed():
    builder = build(excludedCategories=[
        {"code": "Bébé", "type": "bcb_segment_l2"},
        {"code": "Vétérinaire", "type": "bcb_family"},
    ])
    assert builder.conditions == "AND (gp.bcb_segment_l2 <> ALL($3::text[]) AND gp.bcb_family <> ALL($4::text[]))"


def test_range_bounds():
    builder = FilterQueryBuilder(BASE)
    builder.add_range(NumericRange(min=2), "lp.price_with_tax")
    builder.add_range(NumericRange(max=8.5), "lp.margin_percentage")
    builder.add_range(NumericRange(min=1, max=3), "lp.discount_percentage")
    builder.add_range(NumericRange(), "lp.weighted_average_price")
    builder.add_range(None, "lp.weighted_average_price")
    conditions, params = builder.render()
    assert conditions == (
        "AND (lp.price_with_tax >= $3) "
        "AND (lp.margin_percentage <= $4) "
        "AND (lp.discount_percentage >= $5 AND lp.discount_percentage <= $6)"
    )
    assert params[2:] == [2, 8.5, 1, 3]


def test_reimbursement_status_has_no_parameter():
    conditions, params = build(reimbursementStatus="REIMBURSED").render()
    assert conditions == "AND (gp.is_reimbursable = true)"
    assert params == BASE
    assert build(reimbursementStatus="NOT_REIMBURSED").conditions == "AND (gp.is_reimbursable = false)"


def test_generic_status_is_parameterized():
    conditions, params = build(isGeneric="PRINCEPS_GENERIC").render()
    assert conditions == "AND (gp.bcb_generic_status = ANY($3::text[]))"
    assert params[2] == ["GÉNÉRIQUE", "RÉFÉRENT"]
    assert build(isGeneric="YES").params[2] == ["GÉNÉRIQUE"]


def test_tva_rates_use_numeric_array():
    conditions, params = build(tvaRates=[2.1, 20]).render()
    assert conditions == "AND (gp.tva_percentage = ANY($3::numeric[]))"
    assert params[2] == [2.1, 20.0]


def test_mapping_override():
    builder = FilterQueryBuilder(BASE, {"laboratory": "mv.laboratory_name"})
    builder.apply_request(make_request(laboratories=["LAB"]))
    assert builder.conditions == "AND (mv.laboratory_name = ANY($3::text[]))"


def test_search_is_and_ed_with_filters():
    builder = build(laboratories=["LAB"])
    builder.add_search(["mv.product_label", "mv.laboratory_name"], "doli")
    conditions, params = builder.render()
    assert conditions.endswith("AND (mv.product_label ILIKE $4 OR mv.laboratory_name ILIKE $5)")
    assert params[3:] == ["%doli%", "%doli%"]


def test_blank_search_adds_nothing():
    builder = FilterQueryBuilder(BASE)
    builder.add_search(["mv.product_label"], "")
    assert builder.conditions == ""


def test_include_mode_ignores_exclusions():
    builder = build(productCodes=["EAN1", "EAN2"], excludedProductCodes=["EAN2"], exclusionMode="include")
    assert "<> ALL" not in builder.conditions
    assert matches(builder, {"ip.code_13_ref_id": "EAN2"})


def test_only_mode_selects_the_excluded_items():
    builder = build(
        pharmacyIds=["ph-1"],
        laboratories=["LAB IGNORED"],
        excludedProductCodes=["EAN9"],
        excludedLaboratories=["LAB X"],
        excludedCategories=[{"code": "Bébé", "type": "bcb_segment_l2"}],
        exclusionMode="only",
    )
    conditions, params = builder.render()
    assert "LAB IGNORED" not in [v for p in params[2:] for v in p]
    assert conditions == (
        "AND (ip.pharmacy_id = ANY($3::uuid[])) "
        "AND (ip.code_13_ref_id = ANY($4::text[]) OR gp.bcb_lab = ANY($5::text[]) OR gp.bcb_segment_l2 = ANY($6::text[]))"
    )
    assert matches(builder, {"ip.pharmacy_id": "ph-1", "gp.bcb_lab": "LAB X"})
    assert not matches(builder, {"ip.pharmacy_id": "ph-1", "gp.bcb_lab": "LAB IGNORED"})


def test_leaving_out_pharmacies_keeps_their_exclusion():
    builder = FilterQueryBuilder(BASE).apply_request(
        make_request(pharmacyIds=["ph-1", "ph-2"], excludedPharmacyIds=["ph-2"]), include_pharmacies=False,
    )
    conditions, params = builder.render()
    assert conditions == "AND (ip.pharmacy_id <> ALL($3::uuid[]))"
    assert params[2:] == [["ph-2"]]
    assert not matches(builder, {"ip.pharmacy_id": "ph-2"})
    assert matches(builder, {"ip.pharmacy_id": "ph-3"})


def test_range_filters_from_request():
    conditions, _ = build(purchasePriceNetRange={"min": 1}, purchasePriceGrossRange={"max": 9}).render()
    assert "lp.weighted_average_price >= $3" in conditions
    assert "gp.prix_achat_ht_fabricant <= $4" in conditions
