"""
Request models for the KPI endpoints.

The dashboard posts camelCase JSON (``dateRange``, ``excludedProductCodes``...);
attributes are snake_case on the Python side.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from kpi_errors import InvalidRequest
from kpi_periods import parse_iso, parse_range


CategoryType = Literal[
    'bcb_segment_l0', 'bcb_segment_l1', 'bcb_segment_l2', 'bcb_segment_l3',
    'bcb_segment_l4', 'bcb_segment_l5', 'bcb_family',
]


class Operator(str, Enum):
    AND = 'AND'
    OR = 'OR'


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra='ignore',
    )


class DateRange(_CamelModel):
    start: str
    end: str

    @field_validator('start', 'end')
    @classmethod
    def _must_be_iso(cls, value: str) -> str:
        parse_iso(value)
        return value

    @model_validator(mode='after')
    def _ordered(self):
        start, end = parse_range(self.start, self.end)
        if start > end:
            raise ValueError('dateRange.start must not be after dateRange.end')
        return self


class ComparisonDateRange(_CamelModel):
    """Both bounds may be null or empty: comparison is then disabled."""
    start: Optional[str] = None
    end: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.start) and bool(self.end)

    @model_validator(mode='after')
    def _parseable_when_complete(self):
        if not self.is_complete:
            return self
        start, end = parse_range(self.start, self.end)
        if start > end:
            raise ValueError('comparisonDateRange.start must not be after comparisonDateRange.end')
        return self


class CategoryFilter(_CamelModel):
    code: str
    type: CategoryType


class NumericRange(_CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.min is None and self.max is None


class FilterOperators(_CamelModel):
    # Only categories span several columns; on a single column AND is list membership like OR.
    products: Operator = Operator.OR
    laboratories: Operator = Operator.OR
    categories: Operator = Operator.OR
    pharmacies: Operator = Operator.OR


class FilterRequest(_CamelModel):
    date_range: DateRange
    comparison_date_range: Optional[ComparisonDateRange] = None

    product_codes: List[str] = Field(default_factory=list)
    laboratories: List[str] = Field(default_factory=list)
    categories: List[CategoryFilter] = Field(default_factory=list)
    pharmacy_ids: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)

    excluded_product_codes: List[str] = Field(default_factory=list)
    excluded_laboratories: List[str] = Field(default_factory=list)
    excluded_categories: List[CategoryFilter] = Field(default_factory=list)
    excluded_pharmacy_ids: List[str] = Field(default_factory=list)
    exclusion_mode: Literal['exclude', 'include', 'only'] = 'exclude'

    filter_operators: FilterOperators = Field(default_factory=FilterOperators)

    purchase_price_net_range: Optional[NumericRange] = None
    purchase_price_gross_range: Optional[NumericRange] = None
    sell_price_range: Optional[NumericRange] = None
    discount_range: Optional[NumericRange] = None
    margin_range: Optional[NumericRange] = None

    tva_rates: List[float] = Field(default_factory=list)
    reimbursement_status: Literal['ALL', 'REIMBURSED', 'NOT_REIMBURSED'] = 'ALL'
    is_generic: Literal['ALL', 'GENERIC', 'PRINCEPS', 'PRINCEPS_GENERIC'] = 'ALL'

    # Table endpoints only
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=500)

    @field_validator('is_generic', mode='before')
    @classmethod
    def _legacy_generic_flags(cls, value):
        # Older dashboard builds send YES/NO
        if value == 'YES':
            return 'GENERIC'
        if value == 'NO':
            return 'PRINCEPS'
        return value or 'ALL'

    @field_validator('filter_operators', mode='before')
    @classmethod
    def _operators_object(cls, value):
        # Positional operator arrays from older clients carry no per-dimension meaning
        if value is None or isinstance(value, list):
            return {}
        return value

    @property
    def comparison_enabled(self) -> bool:
        return self.comparison_date_range is not None and self.comparison_date_range.is_complete

    def selected_pharmacy_ids(self) -> List[str]:
        """Pharmacy selection with excluded ids removed when exclusions subtract."""
        if self.exclusion_mode != 'exclude':
            return list(self.pharmacy_ids)
        excluded = set(self.excluded_pharmacy_ids)
        return [p for p in self.pharmacy_ids if p not in excluded]

    def range_filters(self) -> Dict[str, Optional[NumericRange]]:
        return {
            'purchase_price_net_range': self.purchase_price_net_range,
            'purchase_price_gross_range': self.purchase_price_gross_range,
            'sell_price_range': self.sell_price_range,
            'discount_range': self.discount_range,
            'margin_range': self.margin_range,
        }

    def for_comparison(self) -> 'FilterRequest':
        """Same filters with the comparison range as the analysed range."""
        if not self.comparison_enabled:
            raise InvalidRequest('comparisonDateRange is not set')
        comparison = DateRange(
            start=self.comparison_date_range.start,
            end=self.comparison_date_range.end,
        )
        return self.model_copy(update={'date_range': comparison, 'comparison_date_range': None})

    def cache_params(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


def parse_filter_request(body: Any) -> FilterRequest:
    """Validate a decoded JSON body, raising InvalidRequest on any shape error."""
    if not isinstance(body, dict):
        raise InvalidRequest('Request body must be a JSON object')
    if not isinstance(body.get('dateRange'), dict):
        raise InvalidRequest('Date range is required')
    try:
        return FilterRequest.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = '.'.join(str(part) for part in first.get('loc', ()))
        raise InvalidRequest(f"{location}: {first.get('msg')}") from e
