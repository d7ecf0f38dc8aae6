"""Data models for qualify-core.

This package provides:
- Income documents and per-type extracted field sets (documents.py)
- Income components, trace items and calculation rows (calculation.py)
- Audit trail and warning models (audit.py)
"""

from qualify_core.models.documents import (
    # Enumerations
    DocumentType,
    OcrStatus,
    PayFrequency,
    DOCUMENT_LABELS,
    PERIODS_PER_YEAR,
    ALLOWED_TRANSITIONS,
    # Parsing helpers
    parse_pay_frequency,
    parse_amount,
    parse_date,
    parse_document_fields,
    # Field sets
    PayStubFields,
    W2Fields,
    Form1099Fields,
    Form1040Fields,
    ScheduleCFields,
    ScheduleEFields,
    K1Fields,
    VOEFields,
    OtherFields,
    DocumentFields,
    # Document
    IncomeDocument,
)

from qualify_core.models.calculation import (
    CENT,
    round_currency,
    ComponentType,
    CalculationStatus,
    CalculationTraceItem,
    IncomeComponent,
    IncomeCalculation,
)

from qualify_core.models.audit import (
    AuditSeverity,
    WarningCode,
    AuditSource,
    AuditEntry,
    IncomeWarning,
    AuditTrail,
)

__all__ = [
    # Documents
    "DocumentType",
    "OcrStatus",
    "PayFrequency",
    "DOCUMENT_LABELS",
    "PERIODS_PER_YEAR",
    "ALLOWED_TRANSITIONS",
    "parse_pay_frequency",
    "parse_amount",
    "parse_date",
    "parse_document_fields",
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
    "IncomeDocument",
    # Calculation
    "CENT",
    "round_currency",
    "ComponentType",
    "CalculationStatus",
    "CalculationTraceItem",
    "IncomeComponent",
    "IncomeCalculation",
    # Audit
    "AuditSeverity",
    "WarningCode",
    "AuditSource",
    "AuditEntry",
    "IncomeWarning",
    "AuditTrail",
]
