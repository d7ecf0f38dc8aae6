"""Audit models for tracking calculation provenance.

A calculation run records every processing step as an AuditEntry and every
caveat as an IncomeWarning. Both are collected on an AuditTrail that is
stored with the calculation, so a reviewer can see why a number came out the
way it did without re-running anything.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class WarningCode(str, Enum):
    """Machine-readable warning codes attached to a calculation."""
    DOCUMENT_EXTRACTION_FAILED = "document_extraction_failed"
    DOCUMENT_NOT_READY = "document_not_ready"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    UNMAPPED_DOCUMENT_TYPE = "unmapped_document_type"
    PAY_FREQUENCY_DEFAULTED = "pay_frequency_defaulted"
    PAY_STUB_SPLIT_EXCEEDS_GROSS = "pay_stub_split_exceeds_gross"
    YTD_AVERAGE_USED = "ytd_average_used"
    SINGLE_YEAR_HISTORY = "single_year_history"
    DECLINING_INCOME = "declining_income"
    DUPLICATE_TAX_YEAR = "duplicate_tax_year"
    W2_SUPERSEDED_BY_PAY_STUB = "w2_superseded_by_pay_stub"
    NEGATIVE_INCOME = "negative_income"
    EMPLOYMENT_CONTINUANCE_UNCERTAIN = "employment_continuance_uncertain"
    MANUAL_OVERRIDE_APPLIED = "manual_override_applied"
    MANUAL_COMPONENT_ADDED = "manual_component_added"
    VARIABLE_INCOME_FROM_YTD = "variable_income_from_ytd"


class AuditSource(BaseModel):
    """Document reference for a value used in a calculation.

    Attributes:
        document_id: Id of the income document
        document_type: Type of document (e.g., "w2", "pay_stub")
        file_name: Original filename, if known
        tax_year: Tax year the value belongs to
        line: Form line or box (e.g., "Box 1", "Line 31")
        extraction_method: How the fields were extracted ("regex", "llm", "manual")
        confidence: Extraction confidence score (0.0 to 1.0)
    """
    document_id: str
    document_type: Optional[str] = None
    file_name: Optional[str] = None
    tax_year: Optional[int] = None
    line: Optional[str] = None
    extraction_method: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def to_reference_string(self) -> str:
        """Generate a human-readable source reference string.

        Example: "w2_2023.pdf:2023:Box 1"
        """
        parts = [self.file_name or self.document_id]
        if self.tax_year is not None:
            parts.append(str(self.tax_year))
        if self.line:
            parts.append(self.line)
        return ":".join(parts)


class AuditEntry(BaseModel):
    """Single audit event recording a processing step.

    Attributes:
        timestamp: When this entry was created (UTC)
        step: Name of the processing step (e.g., "normalize_w2", "sum_components")
        action: Human-readable description of what was done
        input_value: Value before processing
        output_value: Value after processing
        source: Source reference for the data
        field_name: Name of the field being processed
        notes: Additional context or explanation
    """
    timestamp: datetime = Field(default_factory=_utc_now)
    step: str
    action: str
    input_value: Optional[str] = None
    output_value: Optional[str] = None
    source: Optional[AuditSource] = None
    field_name: Optional[str] = None
    notes: Optional[str] = None

    def model_post_init(self, __context) -> None:
        """Ensure timestamp is timezone-aware."""
        if self.timestamp.tzinfo is None:
            object.__setattr__(
                self,
                'timestamp',
                self.timestamp.replace(tzinfo=timezone.utc)
            )


class IncomeWarning(BaseModel):
    """Caveat attached to a calculation for human review.

    Warnings never stop a calculation. They record what was skipped,
    assumed or degraded so the result can be shown with visible caveats.

    Attributes:
        timestamp: When this warning was created (UTC)
        code: Machine-readable warning code
        message: Human-readable warning message
        document_id: Document that triggered the warning, if any
        source: Source reference for the data that triggered the warning
        field_name: Name of the field with the issue
        expected_value: What was expected (if applicable)
        actual_value: What was found
        severity: Warning severity level
        requires_review: Whether this must be reviewed before the figure is used
        suggested_action: Recommended action to resolve the warning
    """
    timestamp: datetime = Field(default_factory=_utc_now)
    code: WarningCode
    message: str
    document_id: Optional[str] = None
    source: Optional[AuditSource] = None
    field_name: Optional[str] = None
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.WARNING
    requires_review: bool = True
    suggested_action: Optional[str] = None

    def model_post_init(self, __context) -> None:
        """Ensure timestamp is timezone-aware."""
        if self.timestamp.tzinfo is None:
            object.__setattr__(
                self,
                'timestamp',
                self.timestamp.replace(tzinfo=timezone.utc)
            )


class AuditTrail(BaseModel):
    """Complete audit trail for one calculation run.

    Attributes:
        run_id: Identifier of the run (the calculation id)
        started_at: When processing started (UTC)
        completed_at: When processing completed (UTC), None if still running
        status: Current run status
        entries: List of all audit entries
        warnings: List of all warnings, in the order they were raised
        source_documents: Ids of the documents read in this run
        metadata: Additional metadata about the run
    """
    run_id: str
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    status: str = "collecting_documents"
    entries: list[AuditEntry] = Field(default_factory=list)
    warnings: list[IncomeWarning] = Field(default_factory=list)
    source_documents: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    def model_post_init(self, __context) -> None:
        """Ensure timestamps are timezone-aware."""
        if self.started_at.tzinfo is None:
            object.__setattr__(
                self,
                'started_at',
                self.started_at.replace(tzinfo=timezone.utc)
            )
        if self.completed_at is not None and self.completed_at.tzinfo is None:
            object.__setattr__(
                self,
                'completed_at',
                self.completed_at.replace(tzinfo=timezone.utc)
            )

    def add_entry(
        self,
        step: str,
        action: str,
        input_value: Optional[str] = None,
        output_value: Optional[str] = None,
        source: Optional[AuditSource] = None,
        field_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AuditEntry:
        """Add an audit entry to the trail.

        Args:
            step: Name of the processing step
            action: Human-readable description of what was done
            input_value: Value before processing
            output_value: Value after processing
            source: Source reference for the data
            field_name: Name of the field being processed
            notes: Additional context or explanation

        Returns:
            The created AuditEntry
        """
        entry = AuditEntry(
            step=step,
            action=action,
            input_value=input_value,
            output_value=output_value,
            source=source,
            field_name=field_name,
            notes=notes,
        )
        self.entries.append(entry)
        return entry

    def add_warning(self, warning: IncomeWarning) -> IncomeWarning:
        """Append an already-built warning."""
        self.warnings.append(warning)
        return warning

    def set_status(self, status: str) -> None:
        self.status = status

    def complete(self, status: str = "complete") -> None:
        """Mark the audit trail as complete.

        Args:
            status: Final status ("complete" or "complete_with_warnings")
        """
        self.completed_at = _utc_now()
        self.status = status

    @property
    def has_warnings(self) -> bool:
        """Check if there are any warnings in the trail."""
        return len(self.warnings) > 0

    @property
    def requires_review(self) -> bool:
        """Check if any warnings require human review."""
        return any(w.requires_review for w in self.warnings)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate the duration of the run in seconds."""
        if self.completed_at is None:
            return None
        delta = self.completed_at - self.started_at
        return delta.total_seconds()

    def get_warnings_for_document(self, document_id: str) -> list[IncomeWarning]:
        """Get all warnings raised for a specific document."""
        return [w for w in self.warnings if w.document_id == document_id]

    def summary(self) -> dict[str, object]:
        """Generate a summary of the audit trail.

        Returns:
            Dictionary with summary statistics
        """
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "entry_count": len(self.entries),
            "warning_count": len(self.warnings),
            "document_count": len(self.source_documents),
            "requires_review": self.requires_review,
        }
