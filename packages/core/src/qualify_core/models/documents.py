"""Income document models and per-type extracted field sets.

Each document type has its own typed field set. The sets form a tagged
union keyed by ``document_type`` so that the normalizer can dispatch on the
variant instead of looking up loose string keys.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter


def _utc_now() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class DocumentType(str, Enum):
    """Types of income documents accepted for qualification."""
    PAY_STUB = "pay_stub"
    W2 = "w2"
    FORM_1099 = "1099"
    FORM_1040 = "1040"
    SCHEDULE_C = "schedule_c"
    SCHEDULE_E = "schedule_e"
    K1 = "k1"
    VOE = "voe"
    OTHER = "other"

    @property
    def label(self) -> str:
        """Display name used in warnings and worksheets."""
        return DOCUMENT_LABELS[self]


DOCUMENT_LABELS: dict[DocumentType, str] = {
    DocumentType.PAY_STUB: "Pay Stub",
    DocumentType.W2: "W-2",
    DocumentType.FORM_1099: "1099",
    DocumentType.FORM_1040: "1040",
    DocumentType.SCHEDULE_C: "Schedule C",
    DocumentType.SCHEDULE_E: "Schedule E",
    DocumentType.K1: "K-1",
    DocumentType.VOE: "VOE",
    DocumentType.OTHER: "Other",
}


class OcrStatus(str, Enum):
    """Extraction lifecycle of an uploaded document."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OcrStatus.SUCCESS, OcrStatus.FAILED)


# Forward-only. Reprocessing is a separate reset to PENDING (InMemoryDocumentStore.reset_for_reprocess).
ALLOWED_TRANSITIONS: dict[OcrStatus, frozenset[OcrStatus]] = {
    OcrStatus.PENDING: frozenset({OcrStatus.PROCESSING}),
    OcrStatus.PROCESSING: frozenset({OcrStatus.SUCCESS, OcrStatus.FAILED}),
    OcrStatus.SUCCESS: frozenset(),
    OcrStatus.FAILED: frozenset(),
}


class PayFrequency(str, Enum):
    """Pay frequencies and their periods per year."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    SEMIMONTHLY = "semimonthly"
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def periods_per_year(self) -> int:
        return PERIODS_PER_YEAR[self]


PERIODS_PER_YEAR: dict[PayFrequency, int] = {
    PayFrequency.WEEKLY: 52,
    PayFrequency.BIWEEKLY: 26,
    PayFrequency.SEMIMONTHLY: 24,
    PayFrequency.MONTHLY: 12,
    PayFrequency.ANNUAL: 1,
}


def parse_pay_frequency(value: Optional[str]) -> Optional[PayFrequency]:
    """Map a free-text pay frequency ("Bi-Weekly", "every 2 weeks") to PayFrequency.

    Returns None when the text is empty or not recognizable.
    """
    if value is None:
        return None
    text = re.sub(r"[\s_\-]+", "", str(value).lower())
    if not text:
        return None
    if text in ("biweekly", "everytwoweeks", "every2weeks", "fortnightly"):
        return PayFrequency.BIWEEKLY
    if text in ("semimonthly", "twiceamonth", "twicemonthly"):
        return PayFrequency.SEMIMONTHLY
    if text in ("weekly", "everyweek"):
        return PayFrequency.WEEKLY
    if text in ("monthly", "everymonth", "oncemonthly"):
        return PayFrequency.MONTHLY
    if text in ("annual", "annually", "yearly"):
        return PayFrequency.ANNUAL
    return None


def parse_amount(value: Any) -> Any:
    """Coerce "$1,234.56"-style strings to Decimal; blank strings become None."""
    if value is None or isinstance(value, (Decimal, int, float)):
        return value
    if isinstance(value, str):
        negative = value.strip().startswith("(") and value.strip().endswith(")")
        cleaned = re.sub(r"[^\d.\-]", "", value)
        if not cleaned or cleaned in (".", "-"):
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return value
        return -amount if negative else amount
    return value


def parse_date(value: Any) -> Any:
    """Accept ISO dates plus the US formats printed on pay stubs and W-2s."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%m/%d/%y", "%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return value


def parse_form_type(value: Any) -> Any:
    """Normalize K-1 source form spellings ("1120-S", "1120s") to 1065/1120S."""
    if value is None:
        return None
    text = re.sub(r"[\s\-]", "", str(value)).upper()
    if text in ("1065", "1120S"):
        return text
    return None


Money = Annotated[Optional[Decimal], BeforeValidator(parse_amount)]
DateValue = Annotated[Optional[date], BeforeValidator(parse_date)]


# =============================================================================
# FIELD SETS
# =============================================================================

class PayStubFields(BaseModel):
    """Fields read from a pay stub. ``*_current`` values are for the stub's period."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "document_type": "pay_stub",
                    "employer_name": "Acme Corp",
                    "pay_frequency": "biweekly",
                    "gross_current": "2000.00",
                    "pay_period_end": "2024-03-15",
                }
            ]
        }
    }

    document_type: Literal["pay_stub"] = "pay_stub"
    employee_name: Optional[str] = None
    employer_name: Optional[str] = None
    pay_period_start: DateValue = None
    pay_period_end: DateValue = None
    pay_date: DateValue = None
    pay_frequency: Optional[str] = Field(
        default=None,
        description="Pay frequency as printed on the stub",
    )
    hourly_rate: Money = None
    hours_current: Money = None
    gross_current: Money = None
    ot_current: Money = None
    bonus_current: Money = None
    commission_current: Money = None
    net_current: Money = None
    hours_ytd: Money = None
    gross_ytd: Money = None
    ot_ytd: Money = None
    bonus_ytd: Money = None
    commission_ytd: Money = None

    @property
    def period_end(self) -> Optional[date]:
        """Best available end date of the pay period."""
        return self.pay_period_end or self.pay_date


class W2Fields(BaseModel):
    """Form W-2 wage and tax statement."""

    document_type: Literal["w2"] = "w2"
    employee_name: Optional[str] = None
    employer_name: Optional[str] = None
    employer_ein: Optional[str] = None
    wages: Money = Field(default=None, description="Box 1: wages, tips, other compensation")
    fed_tax_withheld: Money = Field(default=None, description="Box 2")
    ss_wages: Money = Field(default=None, description="Box 3")
    medicare_wages: Money = Field(default=None, description="Box 5")
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class Form1099Fields(BaseModel):
    document_type: Literal["1099"] = "1099"
    form_subtype: Optional[str] = None
    payer_name: Optional[str] = None
    recipient_name: Optional[str] = None
    gross_amount: Money = None
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class Form1040Fields(BaseModel):
    document_type: Literal["1040"] = "1040"
    taxpayer_name: Optional[str] = None
    filing_status: Optional[str] = None
    wages: Money = Field(default=None, description="Line 1")
    total_income: Money = Field(default=None, description="Line 9")
    agi: Money = Field(default=None, description="Line 11")
    schedule_c_attached: bool = False
    schedule_e_attached: bool = False
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class ScheduleCFields(BaseModel):
    """Schedule C (sole proprietor) profit or loss."""

    document_type: Literal["schedule_c"] = "schedule_c"
    business_name: Optional[str] = None
    gross_receipts: Money = Field(default=None, description="Line 1")
    net_profit: Money = Field(default=None, description="Line 31: net profit or (loss)")
    depreciation: Money = Field(default=None, description="Line 13")
    depletion: Money = Field(default=None, description="Line 12")
    meals: Money = Field(default=None, description="Line 24b: deductible meals")
    home_office_deduction: Money = Field(default=None, description="Line 30")
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class ScheduleEFields(BaseModel):
    """Schedule E rental real estate, one property per document."""

    document_type: Literal["schedule_e"] = "schedule_e"
    property_address: Optional[str] = None
    rents_received: Money = Field(default=None, description="Line 3")
    total_expenses: Money = Field(default=None, description="Line 20")
    depreciation: Money = Field(default=None, description="Line 18")
    net_income: Money = Field(default=None, description="Line 21: income or (loss)")
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class K1Fields(BaseModel):
    """Schedule K-1 from a partnership (1065) or S corporation (1120S)."""

    document_type: Literal["k1"] = "k1"
    entity_name: Optional[str] = None
    entity_ein: Optional[str] = None
    form_type: Annotated[Optional[Literal["1065", "1120S"]], BeforeValidator(parse_form_type)] = None
    allocation_pct: Money = Field(
        default=None,
        ge=Decimal("0"),
        le=Decimal("100"),
        description="Borrower's ownership share in percent",
    )
    ordinary_income: Money = Field(default=None, description="Box 1: ordinary business income")
    guaranteed_payments: Money = Field(default=None, description="Box 4 (1065 only)")
    distributions: Money = None
    tax_year: Optional[int] = Field(default=None, ge=1900, le=2100)


class VOEFields(BaseModel):
    """Verification of employment."""

    document_type: Literal["voe"] = "voe"
    employer_name: Optional[str] = None
    employee_name: Optional[str] = None
    employee_title: Optional[str] = None
    verified_monthly_income: Money = None
    base_pay_amount: Money = None
    base_pay_period: Optional[str] = None
    ytd_earnings: Money = None
    prior_year_earnings: Money = None
    prior_year2_earnings: Money = None
    probability_of_continued_employment: Optional[str] = None


class OtherFields(BaseModel):
    document_type: Literal["other"] = "other"
    values: dict[str, Any] = Field(default_factory=dict)


DocumentFields = Annotated[
    Union[
        PayStubFields,
        W2Fields,
        Form1099Fields,
        Form1040Fields,
        ScheduleCFields,
        ScheduleEFields,
        K1Fields,
        VOEFields,
        OtherFields,
    ],
    Field(discriminator="document_type"),
]

_FIELDS_ADAPTER: TypeAdapter = TypeAdapter(DocumentFields)


def parse_document_fields(document_type: DocumentType, raw: dict[str, Any]) -> DocumentFields:
    """Validate a raw extracted field map into the variant for ``document_type``.

    Unknown keys are ignored. ``other`` documents keep every key under ``values``.

    Raises:
        pydantic.ValidationError: If a known field has an unusable value.
    """
    if document_type == DocumentType.OTHER:
        values = {k: v for k, v in raw.items() if k != "document_type"}
        return OtherFields(values=values)
    payload = {k: v for k, v in raw.items() if v is not None}
    payload["document_type"] = document_type.value
    return _FIELDS_ADAPTER.validate_python(payload)


# =============================================================================
# DOCUMENT
# =============================================================================

class IncomeDocument(BaseModel):
    """One uploaded income document and its extraction state."""

    id: str = Field(default_factory=_new_id)
    borrower_id: str
    document_type: DocumentType
    file_name: Optional[str] = None
    storage_path: Optional[str] = None
    mime_type: Optional[str] = None
    ocr_status: OcrStatus = OcrStatus.PENDING
    fields: Optional[DocumentFields] = None
    extraction_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    extraction_method: Optional[str] = None
    extraction_error: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    ytd_flag: bool = False
    manually_corrected: bool = False
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def model_post_init(self, __context) -> None:
        """Ensure timestamps are timezone-aware."""
        for name in ("created_at", "updated_at"):
            value = getattr(self, name)
            if value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))

    @property
    def is_available(self) -> bool:
        """True when the document can feed a calculation."""
        return self.ocr_status == OcrStatus.SUCCESS

    @property
    def tax_year(self) -> Optional[int]:
        return getattr(self.fields, "tax_year", None)

    def can_transition(self, status: OcrStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.ocr_status]

    def sort_key(self) -> tuple[datetime, str]:
        """Deterministic processing order: creation time, then id."""
        return (self.created_at, self.id)


__all__ = [
    "DocumentType",
    "DOCUMENT_LABELS",
    "OcrStatus",
    "ALLOWED_TRANSITIONS",
    "PayFrequency",
    "PERIODS_PER_YEAR",
    "parse_pay_frequency",
    "parse_amount",
    "parse_date",
    "parse_form_type",
    "DateValue",
    "Money",
    "PayStubFields",
    "W2Fields",
    "Form1099Fields",
    "Form1040Fields",
    "ScheduleCFields",
    "ScheduleEFields",
    "K1Fields",
    "VOEFields",
    "OtherFields",
    "DocumentFields",
    "parse_document_fields",
    "IncomeDocument",
]
