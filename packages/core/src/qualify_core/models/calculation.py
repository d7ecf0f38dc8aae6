"""Calculation result models: components, trace items and the calculation row.

A calculation owns copies of every number it used. Components and trace
items are frozen once built, and a recalculation always produces a new
IncomeCalculation instead of updating an old one.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .audit import AuditEntry, IncomeWarning


CENT = Decimal("0.01")


def round_currency(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _utc_now() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class ComponentType(str, Enum):
    """Qualifying income component categories."""
    BASE_HOURLY = "base_hourly"
    BASE_SALARY = "base_salary"
    OVERTIME = "overtime"
    BONUS = "bonus"
    COMMISSION = "commission"
    SELF_EMPLOYMENT = "self_employment"
    RENTAL = "rental"
    W2_INCOME = "w2_income"
    VARIABLE_INCOME_YTD = "variable_income_ytd"
    VOE_VERIFIED = "voe_verified"
    K1_INCOME = "k1_income"
    PARTNERSHIP_K1_INCOME = "partnership_k1_income"
    CCORP_INCOME = "ccorp_income"
    FARM_INCOME = "farm_income"
    OTHER = "other"


class CalculationStatus(str, Enum):
    """Run states of a single calculation."""
    COLLECTING_DOCUMENTS = "collecting_documents"
    NORMALIZING = "normalizing"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    COMPLETE_WITH_WARNINGS = "complete_with_warnings"

    @property
    def is_terminal(self) -> bool:
        return self in (CalculationStatus.COMPLETE, CalculationStatus.COMPLETE_WITH_WARNINGS)


class CalculationTraceItem(BaseModel):
    """One audited line tying a dollar figure back to a form line and year.

    ``amount`` is the annual (or per-period) figure, never negative; the
    direction is carried by ``sign``. ``allocated_to`` is the key of the
    component the line feeds.
    """

    model_config = ConfigDict(frozen=True)

    year: Optional[int] = None
    form: str
    line: Optional[str] = None
    description: str
    amount: Decimal = Field(ge=Decimal("0"))
    sign: Literal["+", "-"] = "+"
    allocated_to: str
    allocation_pct: Optional[Decimal] = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    document_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.sign == "+" else -self.amount


class IncomeComponent(BaseModel):
    """One normalized monthly income contribution."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    calculation_id: Optional[str] = None
    key: str = Field(description="Stable identity used for overrides and trace allocation")
    component_type: ComponentType
    monthly_amount: Decimal = Field(ge=Decimal("0"))
    calculation_method: str
    months_considered: Optional[int] = Field(default=None, gt=0)
    notes: Optional[str] = None
    source_name: Optional[str] = Field(
        default=None,
        description="Employer, business, property or entity the income comes from",
    )
    source_document_ids: list[str] = Field(default_factory=list)
    tax_years: list[int] = Field(default_factory=list)
    trend_direction: Optional[Literal["increasing", "stable", "declining"]] = None
    trend_percentage: Optional[Decimal] = None
    is_override: bool = False
    original_monthly_amount: Optional[Decimal] = None

    @field_validator("monthly_amount", mode="before")
    @classmethod
    def round_monthly_amount(cls, v):
        """Store monthly amounts at two decimal places."""
        if isinstance(v, (int, float, str)):
            v = Decimal(str(v))
        if isinstance(v, Decimal):
            return round_currency(v)
        return v

    @property
    def is_manual(self) -> bool:
        """True for components that exist only because of an override."""
        return self.key.startswith("manual:")


class IncomeCalculation(BaseModel):
    """One calculation run for a (borrower, agency, loan program) triple."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "borrower_id": "borrower-123",
                    "agency": "fannie",
                    "loan_program": "conventional",
                    "status": "complete",
                    "result_monthly_income": "4333.33",
                    "confidence": 0.9,
                    "calculation_version": "v2.0_fannie_mae",
                }
            ]
        }
    }

    id: str = Field(default_factory=_new_id)
    borrower_id: str
    agency: str
    loan_program: str
    status: CalculationStatus = CalculationStatus.COMPLETE
    result_monthly_income: Decimal = Field(ge=Decimal("0"))
    confidence: float = Field(ge=0.0, le=1.0)
    warnings: list[IncomeWarning] = Field(default_factory=list)
    missing_inputs: list[str] = Field(default_factory=list)
    overrides: dict[str, Decimal] = Field(default_factory=dict)
    components: list[IncomeComponent] = Field(
        default_factory=list,
        description="Components after overrides; these sum to the result",
    )
    computed_components: list[IncomeComponent] = Field(
        default_factory=list,
        description="Components as normalized, before any override",
    )
    calculation_trace: list[CalculationTraceItem] = Field(default_factory=list)
    audit_log: list[AuditEntry] = Field(default_factory=list)
    calculation_version: str
    document_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)

    def model_post_init(self, __context) -> None:
        """Ensure timestamp is timezone-aware."""
        if self.created_at.tzinfo is None:
            object.__setattr__(
                self,
                'created_at',
                self.created_at.replace(tzinfo=timezone.utc)
            )

    @computed_field
    @property
    def annual_income(self) -> Decimal:
        """Qualifying income annualized (monthly x 12)."""
        return self.result_monthly_income * 12

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings) or bool(self.missing_inputs)

    @property
    def requires_review(self) -> bool:
        return any(w.requires_review for w in self.warnings)

    def get_component(self, key: str) -> Optional[IncomeComponent]:
        """Return the post-override component with ``key``, if any."""
        for component in self.components:
            if component.key == key:
                return component
        return None

    def trace_for(self, key: str) -> list[CalculationTraceItem]:
        """Trace items allocated to the component with ``key``, in trace order."""
        return [item for item in self.calculation_trace if item.allocated_to == key]

    def verify_total(self) -> bool:
        """Re-sum components and compare against the stored result."""
        total = sum((c.monthly_amount for c in self.components), Decimal("0"))
        return self.result_monthly_income == round_currency(total)

    def reconciles(self) -> bool:
        """Check every component against its trace lines.

        For each component the signed trace total divided by
        ``months_considered`` (1 when unset) must round to its monthly amount.
        """
        for component in self.components:
            items = self.trace_for(component.key)
            if not items:
                return False
            total = sum((item.signed_amount for item in items), Decimal("0"))
            months = component.months_considered or 1
            if round_currency(total / months) != component.monthly_amount:
                return False
        return True


__all__ = [
    "CENT",
    "round_currency",
    "ComponentType",
    "CalculationStatus",
    "CalculationTraceItem",
    "IncomeComponent",
    "IncomeCalculation",
]
