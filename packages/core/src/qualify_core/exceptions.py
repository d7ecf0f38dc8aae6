"""Custom exceptions for the qualifying-income engine.

All engine errors inherit from QualifyError. Document-level and field-level
problems (a failed extraction, a missing W-2 box, an absent pay stub) are
not raised at all; they surface as warnings and missing inputs on the
calculation. Only configuration, input and storage problems are raised.

Example:
    try:
        calculation = calculator.calculate(borrower_id, agency="fannie")
    except PersistenceError as e:
        if e.recoverable:
            # Nothing was written, so the whole calculation can be retried
            calculation = calculator.calculate(borrower_id, agency="fannie")
        else:
            raise
    except QualifyError as e:
        logger.error("calculation_failed", error=str(e))
"""

from typing import Any, Optional


class QualifyError(Exception):
    """Base exception for all qualifying-income engine errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context.
        recoverable: Whether the error is potentially recoverable.

    Example:
        >>> raise QualifyError("Something went wrong", details={"code": 500})
        QualifyError: Something went wrong
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        """Initialize QualifyError.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional context about the error.
            recoverable: Whether the error is potentially recoverable through
                retry or alternative approaches. Defaults to False.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        """Return string representation of the error."""
        return self.message

    def __repr__(self) -> str:
        """Return detailed representation of the error."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable!r})"
        )


class ExtractionError(QualifyError):
    """Error raised when fields cannot be extracted from an income document.

    The extraction service catches this and marks the document as failed;
    the document can be reprocessed later.

    Example:
        >>> raise ExtractionError(
        ...     "No gross pay found on pay stub",
        ...     source="paystub_2024_03.pdf",
        ...     field="gross_current",
        ...     document_type="pay_stub",
        ... )
        ExtractionError: No gross pay found on pay stub
    """

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        field: Optional[str] = None,
        document_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        """Initialize ExtractionError.

        Args:
            message: Human-readable error description.
            source: The document id or file being processed.
            field: The specific field that failed extraction.
            document_type: Type of document (e.g., "w2", "pay_stub").
            details: Optional dictionary with additional context.
            recoverable: Whether extraction can be retried. Defaults to True.
        """
        super().__init__(message, details=details, recoverable=recoverable)
        self.source = source
        self.field = field
        self.document_type = document_type

        if source:
            self.details["source"] = source
        if field:
            self.details["field"] = field
        if document_type:
            self.details["document_type"] = document_type


class ValidationError(QualifyError):
    """Error raised when data or a state change fails validation.

    Example:
        >>> raise ValidationError(
        ...     "Illegal OCR status transition",
        ...     field="ocr_status",
        ...     value="success -> processing",
        ...     constraint="pending -> processing -> success|failed",
        ... )
        ValidationError: Illegal OCR status transition
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        constraint: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        """Initialize ValidationError.

        Args:
            message: Human-readable error description.
            field: The name of the field that failed validation.
            value: The invalid value (avoid including sensitive data).
            constraint: Description of the validation rule violated.
            details: Optional dictionary with additional context.
            recoverable: Whether the error can be fixed by user correction.
        """
        super().__init__(message, details=details, recoverable=recoverable)
        self.field = field
        self.value = value
        self.constraint = constraint

        if field:
            self.details["field"] = field
        if value is not None:
            self.details["value"] = value
        if constraint:
            self.details["constraint"] = constraint


class InvalidInputError(ValidationError):
    """Error raised for an unknown agency or loan program.

    Raised before any document is read or any record is written.

    Example:
        >>> raise InvalidInputError(
        ...     "Unknown loan program: heloc",
        ...     field="loan_program",
        ...     value="heloc",
        ... )
        InvalidInputError: Unknown loan program: heloc
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        constraint: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(
            message,
            field=field,
            value=value,
            constraint=constraint,
            details=details,
            recoverable=recoverable,
        )


class ConfigurationError(QualifyError):
    """Error raised when configuration is invalid or missing.

    Example:
        >>> raise ConfigurationError(
        ...     "Missing required API key",
        ...     config_key="ANTHROPIC_API_KEY",
        ...     expected="Valid Anthropic API key",
        ... )
        ConfigurationError: Missing required API key
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[Any] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error description.
            config_key: The name of the configuration key that is problematic.
            expected: Description of what value was expected.
            actual: The actual value found (avoid including secrets).
            details: Optional dictionary with additional context.
            recoverable: Whether the error can be fixed at runtime.
        """
        super().__init__(message, details=details, recoverable=recoverable)
        self.config_key = config_key
        self.expected = expected
        self.actual = actual

        if config_key:
            self.details["config_key"] = config_key
        if expected:
            self.details["expected"] = expected
        if actual is not None:
            self.details["actual"] = actual


class PersistenceError(QualifyError):
    """Error raised when a calculation record cannot be written.

    Writes are atomic, so when this is raised nothing was stored and the
    caller may simply retry.

    Example:
        >>> raise PersistenceError(
        ...     "Failed to write calculation record",
        ...     operation="create",
        ...     record_id="5f0c...",
        ... )
        PersistenceError: Failed to write calculation record
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        record_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        """Initialize PersistenceError.

        Args:
            message: Human-readable error description.
            operation: Store operation that failed (e.g., "create").
            record_id: Identifier of the record being written.
            details: Optional dictionary with additional context.
            recoverable: Whether the write can be retried. Defaults to True.
        """
        super().__init__(message, details=details, recoverable=recoverable)
        self.operation = operation
        self.record_id = record_id

        if operation:
            self.details["operation"] = operation
        if record_id:
            self.details["record_id"] = record_id


class RecordNotFoundError(QualifyError):
    """Error raised when a document or calculation id is unknown."""

    def __init__(
        self,
        message: str,
        *,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.record_type = record_type
        self.record_id = record_id

        if record_type:
            self.details["record_type"] = record_type
        if record_id:
            self.details["record_id"] = record_id


__all__ = [
    "QualifyError",
    "ExtractionError",
    "ValidationError",
    "InvalidInputError",
    "ConfigurationError",
    "PersistenceError",
    "RecordNotFoundError",
]
