"""
Filter-to-SQL condition builder.

Filters are collected as typed predicates and only turned into SQL by
``render()``, which numbers the ``$n`` placeholders in the order the
predicates were added, continuing after the caller's base parameters
(usually the date range as $1/$2). Every group is AND-ed to the query:

    AND (mv.laboratory_name = ANY($3::text[])) AND (mv.code_13_ref <> ALL($4::text[]))
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from kpi_models import Operator


DEFAULT_MAPPING: Dict[str, str] = {
    'pharmacy_id': 'ip.pharmacy_id',
    'laboratory': 'gp.bcb_lab',
    'product_code': 'ip.code_13_ref_id',
    'tva': 'gp.tva_percentage',
    'reimbursable': 'gp.is_reimbursable',
    'generic_status': 'gp.bcb_generic_status',
    'generic_group': 'gp.bcb_generic_group',

    # Categories
    'cat_l0': 'gp.bcb_segment_l0',
    'cat_l1': 'gp.bcb_segment_l1',
    'cat_l2': 'gp.bcb_segment_l2',
    'cat_l3': 'gp.bcb_segment_l3',
    'cat_l4': 'gp.bcb_segment_l4',
    'cat_l5': 'gp.bcb_segment_l5',
    'cat_family': 'gp.bcb_family',

    # Range filters (latest prices / global product joins)
    'purchase_price_net': 'lp.weighted_average_price',
    'purchase_price_gross': 'gp.prix_achat_ht_fabricant',
    'sell_price': 'lp.price_with_tax',
    'discount': 'lp.discount_percentage',
    'margin': 'lp.margin_percentage',
}

CATEGORY_MAPPING_KEYS = {
    'bcb_segment_l0': 'cat_l0',
    'bcb_segment_l1': 'cat_l1',
    'bcb_segment_l2': 'cat_l2',
    'bcb_segment_l3': 'cat_l3',
    'bcb_segment_l4': 'cat_l4',
    'bcb_segment_l5': 'cat_l5',
    'bcb_family': 'cat_family',
}

RANGE_MAPPING_KEYS = {
    'purchase_price_net_range': 'purchase_price_net',
    'purchase_price_gross_range': 'purchase_price_gross',
    'sell_price_range': 'sell_price',
    'discount_range': 'discount',
    'margin_range': 'margin',
}

GENERIC_STATUS_VALUES = {
    'GENERIC': ['GÉNÉRIQUE'],
    'PRINCEPS': ['RÉFÉRENT'],
    'PRINCEPS_GENERIC': ['GÉNÉRIQUE', 'RÉFÉRENT'],
}


class ClauseOp(str, Enum):
    ANY = 'ANY'
    NOT_ALL = 'NOT_ALL'
    EQ = 'EQ'
    GTE = 'GTE'
    LTE = 'LTE'
    IS_TRUE = 'IS_TRUE'
    IS_FALSE = 'IS_FALSE'
    ILIKE = 'ILIKE'


_PARAMLESS = (ClauseOp.IS_TRUE, ClauseOp.IS_FALSE)


@dataclass(frozen=True)
class Predicate:
    column: str
    op: ClauseOp
    value: Any = None
    cast: Optional[str] = None

    @property
    def uses_param(self) -> bool:
        return self.op not in _PARAMLESS

    def to_sql(self, placeholder: str = '') -> str:
        if self.op == ClauseOp.ANY:
            return f"{self.column} = ANY({placeholder})"
        if self.op == ClauseOp.NOT_ALL:
            return f"{self.column} <> ALL({placeholder})"
        if self.op == ClauseOp.EQ:
            return f"{self.column} = {placeholder}"
        if self.op == ClauseOp.GTE:
            return f"{self.column} >= {placeholder}"
        if self.op == ClauseOp.LTE:
            return f"{self.column} <= {placeholder}"
        if self.op == ClauseOp.ILIKE:
            return f"{self.column} ILIKE {placeholder}"
        if self.op == ClauseOp.IS_TRUE:
            return f"{self.column} = true"
        return f"{self.column} = false"


@dataclass
class ClauseGroup:
    """Predicates rendered inside one pair of parentheses."""
    predicates: List[Predicate] = field(default_factory=list)
    joiner: str = 'AND'


class FilterQueryBuilder:
    def __init__(self, base_params: Sequence[Any] = (), mapping: Optional[Dict[str, str]] = None):
        self._base_params = list(base_params)
        self.mapping = {**DEFAULT_MAPPING, **(mapping or {})}
        self.groups: List[ClauseGroup] = []

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def param_count(self) -> int:
        return len(self._base_params) + sum(
            1 for g in self.groups for p in g.predicates if p.uses_param
        )

    @property
    def next_index(self) -> int:
        """Placeholder index the caller should use for its next own parameter."""
        return self.param_count + 1

    def render(self) -> Tuple[str, List[Any]]:
        params = list(self._base_params)
        parts = []
        for group in self.groups:
            rendered = []
            for predicate in group.predicates:
                placeholder = ''
                if predicate.uses_param:
                    params.append(predicate.value)
                    placeholder = f"${len(params)}"
                    if predicate.cast:
                        placeholder += f"::{predicate.cast}"
                rendered.append(predicate.to_sql(placeholder))
            parts.append(f"AND ({f' {group.joiner} '.join(rendered)})")
        return ' '.join(parts), params

    @property
    def conditions(self) -> str:
        return self.render()[0]

    @property
    def params(self) -> List[Any]:
        return self.render()[1]

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def add_group(self, predicates: Iterable[Predicate], joiner: str = 'AND') -> None:
        predicates = list(predicates)
        if predicates:
            self.groups.append(ClauseGroup(predicates=predicates, joiner=joiner))

    def _add_list(self, key: str, values, cast: str, op: ClauseOp, keep_empty: bool = False) -> None:
        values = list(values or [])
        if not values and not keep_empty:
            return
        self.add_group([Predicate(self.mapping[key], op, values, cast)])

    def add_equals(self, column: str, value: Any) -> None:
        self.add_group([Predicate(column, ClauseOp.EQ, value)])

    # ------------------------------------------------------------------
    # Inclusion
    # ------------------------------------------------------------------

    def add_pharmacies(self, pharmacy_ids, keep_empty: bool = False) -> None:
        self._add_list('pharmacy_id', pharmacy_ids, 'uuid[]', ClauseOp.ANY, keep_empty)

    def add_laboratories(self, laboratories, keep_empty: bool = False) -> None:
        self._add_list('laboratory', laboratories, 'text[]', ClauseOp.ANY, keep_empty)

    def add_products(self, product_codes, keep_empty: bool = False) -> None:
        self._add_list('product_code', product_codes, 'text[]', ClauseOp.ANY, keep_empty)

    def add_groups(self, groups) -> None:
        self._add_list('generic_group', groups, 'text[]', ClauseOp.ANY)

    def add_tva_rates(self, rates) -> None:
        self._add_list('tva', rates, 'numeric[]', ClauseOp.ANY)

    def add_categories(self, categories, operator: Operator = Operator.OR) -> None:
        """One predicate per category level.

        OR: the row matches any selected level. AND: the row must match every
        selected level at once (e.g. a given segment l1 *and* a given family).
        """
        predicates = [
            Predicate(column, ClauseOp.ANY, codes, 'text[]')
            for column, codes in self._codes_by_column(categories).items()
        ]
        joiner = 'AND' if operator == Operator.AND else 'OR'
        self.add_group(predicates, joiner)

    def add_reimbursement_status(self, status: Optional[str]) -> None:
        if status == 'REIMBURSED':
            self.add_group([Predicate(self.mapping['reimbursable'], ClauseOp.IS_TRUE)])
        elif status == 'NOT_REIMBURSED':
            self.add_group([Predicate(self.mapping['reimbursable'], ClauseOp.IS_FALSE)])

    def add_generic_status(self, is_generic: Optional[str]) -> None:
        values = GENERIC_STATUS_VALUES.get(is_generic or 'ALL')
        if values:
            self._add_list('generic_status', values, 'text[]', ClauseOp.ANY)

    def add_range(self, value_range, column: str) -> None:
        """min -> col >= $n, max -> col <= $n; a range with neither adds nothing."""
        if value_range is None:
            return
        predicates = []
        if value_range.min is not None:
            predicates.append(Predicate(column, ClauseOp.GTE, value_range.min))
        if value_range.max is not None:
            predicates.append(Predicate(column, ClauseOp.LTE, value_range.max))
        self.add_group(predicates)

    def add_search(self, columns: Sequence[str], text: Optional[str]) -> None:
        """Case-insensitive substring match on any of the given name columns."""
        if not text:
            return
        pattern = f"%{text}%"
        self.add_group([Predicate(col, ClauseOp.ILIKE, pattern) for col in columns], joiner='OR')

    # ------------------------------------------------------------------
    # Exclusion (always subtractive)
    # ------------------------------------------------------------------

    def add_excluded_pharmacies(self, pharmacy_ids) -> None:
        self._add_list('pharmacy_id', pharmacy_ids, 'uuid[]', ClauseOp.NOT_ALL)

    def add_excluded_laboratories(self, laboratories) -> None:
        self._add_list('laboratory', laboratories, 'text[]', ClauseOp.NOT_ALL)

    def add_excluded_products(self, product_codes) -> None:
        self._add_list('product_code', product_codes, 'text[]', ClauseOp.NOT_ALL)

    def add_excluded_categories(self, categories) -> None:
        # Not in level A AND not in level B
        predicates = [
            Predicate(column, ClauseOp.NOT_ALL, codes, 'text[]')
            for column, codes in self._codes_by_column(categories).items()
        ]
        self.add_group(predicates, 'AND')

    def add_any_of(self, request) -> None:
        """Turn the exclusion lists into a single OR-ed selection ('only' mode)."""
        predicates = []
        if request.excluded_product_codes:
            predicates.append(Predicate(self.mapping['product_code'], ClauseOp.ANY,
                                        list(request.excluded_product_codes), 'text[]'))
        if request.excluded_laboratories:
            predicates.append(Predicate(self.mapping['laboratory'], ClauseOp.ANY,
                                        list(request.excluded_laboratories), 'text[]'))
        for column, codes in self._codes_by_column(request.excluded_categories).items():
            predicates.append(Predicate(column, ClauseOp.ANY, codes, 'text[]'))
        self.add_group(predicates, 'OR')

    # ------------------------------------------------------------------
    # Whole request
    # ------------------------------------------------------------------

    def apply_request(self, request, include_pharmacies: bool = True) -> 'FilterQueryBuilder':
        """Apply every filter of the request.

        ``include_pharmacies=False`` drops the pharmacy inclusion clause only;
        excluded pharmacies are still removed.
        """
        mode = request.exclusion_mode
        ops = request.filter_operators

        if mode == 'only':
            if include_pharmacies:
                self.add_pharmacies(request.pharmacy_ids)
            self.add_any_of(request)
        else:
            subtract = mode != 'include'
            if include_pharmacies:
                self._apply_dimension(self.add_pharmacies, request.pharmacy_ids,
                                      request.excluded_pharmacy_ids if subtract else ())
            self._apply_dimension(self.add_laboratories, request.laboratories,
                                  request.excluded_laboratories if subtract else ())
            self.add_categories(
                _subtract_categories(request.categories, request.excluded_categories if subtract else ()),
                ops.categories,
            )
            self._apply_dimension(self.add_products, request.product_codes,
                                  request.excluded_product_codes if subtract else ())
            self.add_groups(request.groups)

            if subtract:
                self.add_excluded_pharmacies(request.excluded_pharmacy_ids)
                self.add_excluded_laboratories(request.excluded_laboratories)
                self.add_excluded_categories(request.excluded_categories)
                self.add_excluded_products(request.excluded_product_codes)

        self.add_tva_rates(request.tva_rates)
        self.add_reimbursement_status(request.reimbursement_status)
        self.add_generic_status(request.is_generic)

        for name, value_range in request.range_filters().items():
            self.add_range(value_range, self.mapping[RANGE_MAPPING_KEYS[name]])
        return self

    @staticmethod
    def _apply_dimension(add, included, excluded) -> None:
        if not included:
            return
        excluded = set(excluded or ())
        # Exclusion wins: a value both selected and excluded is dropped, and the
        # clause is kept even if nothing remains so the filter still matches nothing.
        add([value for value in included if value not in excluded], keep_empty=True)

    def _codes_by_column(self, categories) -> Dict[str, List[str]]:
        codes_by_column: Dict[str, List[str]] = {}
        for category in categories or []:
            key = CATEGORY_MAPPING_KEYS.get(category.type)
            if key is None:
                continue
            codes = codes_by_column.setdefault(self.mapping[key], [])
            if category.code is not None:
                codes.append(category.code)
        return codes_by_column


def _subtract_categories(categories, excluded) -> list:
    if not excluded:
        return list(categories or [])
    excluded_pairs = {(c.type, c.code) for c in excluded}
    kept = [c for c in categories or [] if (c.type, c.code) not in excluded_pairs]
    if categories and not kept:
        # Everything selected was excluded: keep the levels with no codes
        return [_EmptyCategory(c.type) for c in categories]
    return kept


@dataclass(frozen=True)
class _EmptyCategory:
    type: str
    code: Optional[str] = None
