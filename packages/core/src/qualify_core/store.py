"""Document and calculation record stores.

The document store is the only shared mutable resource. Readers always get
deep copies, and every write happens under one lock, so a calculation never
sees a document half-way through a re-extraction.

Calculation stores are append-only. ``create`` either stores the calculation
with its components and trace or stores nothing.
"""

import os
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

import pydantic
import structlog

from .exceptions import (
    InvalidInputError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from .models.calculation import CalculationTraceItem, IncomeCalculation, IncomeComponent
from .models.documents import (
    DocumentFields,
    DocumentType,
    IncomeDocument,
    OcrStatus,
    parse_document_fields,
)

logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# INTERFACES
# =============================================================================

@runtime_checkable
class DocumentStore(Protocol):
    """Read side of the document store used by the calculator."""

    def get(self, document_id: str) -> IncomeDocument:
        ...

    def snapshot(self, borrower_id: str) -> list[IncomeDocument]:
        ...


@runtime_checkable
class CalculationRecordStore(Protocol):
    """Append-only persistence for calculations."""

    def create(
        self,
        calculation: IncomeCalculation,
        components: list[IncomeComponent],
        trace: list[CalculationTraceItem],
    ) -> IncomeCalculation:
        ...

    def get(self, calculation_id: str) -> IncomeCalculation:
        ...

    def get_latest(self, borrower_id: str) -> Optional[IncomeCalculation]:
        ...

    def list(self, borrower_id: str) -> list[IncomeCalculation]:
        ...


def build_record(
    calculation: IncomeCalculation,
    components: list[IncomeComponent],
    trace: list[CalculationTraceItem],
) -> IncomeCalculation:
    """Combine a calculation with its components and trace into one record.

    Raises:
        ValidationError: If a component belongs to another calculation, the
            stored total does not equal the sum of the components, or a
            component does not reconcile with its trace lines.
    """
    for component in components:
        if component.calculation_id not in (None, calculation.id):
            raise ValidationError(
                "Component belongs to a different calculation",
                field="calculation_id",
                value=component.calculation_id,
                constraint=f"== {calculation.id}",
                recoverable=False,
            )
    record = calculation.model_copy(
        update={"components": list(components), "calculation_trace": list(trace)},
        deep=True,
    )
    if not record.verify_total():
        raise ValidationError(
            "Calculation total does not equal the sum of its components",
            field="result_monthly_income",
            value=str(record.result_monthly_income),
            constraint="sum(components.monthly_amount)",
            recoverable=False,
        )
    if not record.reconciles():
        raise ValidationError(
            "Calculation trace does not reconcile with its components",
            field="calculation_trace",
            constraint="sum(trace) / months_considered == monthly_amount",
            recoverable=False,
        )
    return record


# =============================================================================
# CALCULATION STORES
# =============================================================================

class InMemoryCalculationStore:
    """Thread-safe in-memory calculation store for tests and single-process use."""

    def __init__(self):
        self._records: dict[str, IncomeCalculation] = {}
        self._sequence: dict[str, int] = {}
        self._lock = threading.Lock()

    def create(
        self,
        calculation: IncomeCalculation,
        components: list[IncomeComponent],
        trace: list[CalculationTraceItem],
    ) -> IncomeCalculation:
        """Store a new calculation. Existing records are never replaced."""
        record = build_record(calculation, components, trace)
        with self._lock:
            if record.id in self._records:
                raise PersistenceError(
                    f"Calculation {record.id} already exists",
                    operation="create",
                    record_id=record.id,
                    recoverable=False,
                )
            self._records[record.id] = record
            self._sequence[record.id] = len(self._sequence)
        logger.info(
            "calculation_stored",
            calculation_id=record.id,
            borrower_id=record.borrower_id,
            components=len(record.components),
            trace_items=len(record.calculation_trace),
        )
        return record.model_copy(deep=True)

    def get(self, calculation_id: str) -> IncomeCalculation:
        with self._lock:
            record = self._records.get(calculation_id)
            if record is None:
                raise RecordNotFoundError(
                    f"Calculation {calculation_id} not found",
                    record_type="calculation",
                    record_id=calculation_id,
                )
            return record.model_copy(deep=True)

    def list(self, borrower_id: str) -> list[IncomeCalculation]:
        """All calculations for a borrower, newest first."""
        with self._lock:
            records = [r for r in self._records.values() if r.borrower_id == borrower_id]
            records.sort(key=lambda r: (r.created_at, self._sequence[r.id]), reverse=True)
            return [r.model_copy(deep=True) for r in records]

    def get_latest(self, borrower_id: str) -> Optional[IncomeCalculation]:
        """Calculation with the greatest creation timestamp, or None."""
        records = self.list(borrower_id)
        return records[0] if records else None

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class JsonFileCalculationStore:
    """Calculation store writing one JSON file per calculation.

    Each record is written to a temp file in the same directory and moved
    into place with ``os.replace``, so a failed write leaves no file behind.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, calculation_id: str) -> Path:
        return self.root / f"{calculation_id}.json"

    def create(
        self,
        calculation: IncomeCalculation,
        components: list[IncomeComponent],
        trace: list[CalculationTraceItem],
    ) -> IncomeCalculation:
        """Write a new calculation record atomically.

        Raises:
            PersistenceError: If the record exists or cannot be written.
        """
        record = build_record(calculation, components, trace)
        path = self._path(record.id)

        with self._lock:
            if path.exists():
                raise PersistenceError(
                    f"Calculation {record.id} already exists",
                    operation="create",
                    record_id=record.id,
                    recoverable=False,
                )
            tmp_path = None
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=str(self.root), suffix=".json.tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(record.model_dump_json(indent=2))
                os.replace(tmp_path, path)
            except OSError as e:
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                logger.error(
                    "calculation_write_failed",
                    calculation_id=record.id,
                    path=str(path),
                    error=str(e),
                )
                raise PersistenceError(
                    f"Failed to write calculation {record.id}: {e}",
                    operation="create",
                    record_id=record.id,
                ) from e

        logger.info(
            "calculation_stored",
            calculation_id=record.id,
            borrower_id=record.borrower_id,
            path=str(path),
        )
        return record

    def _read(self, path: Path) -> IncomeCalculation:
        try:
            return IncomeCalculation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, pydantic.ValidationError) as e:
            raise PersistenceError(
                f"Failed to read calculation file {path.name}: {e}",
                operation="read",
                record_id=path.stem,
                recoverable=False,
            ) from e

    def get(self, calculation_id: str) -> IncomeCalculation:
        path = self._path(calculation_id)
        if not path.exists():
            raise RecordNotFoundError(
                f"Calculation {calculation_id} not found",
                record_type="calculation",
                record_id=calculation_id,
            )
        return self._read(path)

    def list(self, borrower_id: str) -> list[IncomeCalculation]:
        """All calculations for a borrower, newest first."""
        if not self.root.exists():
            return []
        records = [self._read(path) for path in sorted(self.root.glob("*.json"))]
        records = [r for r in records if r.borrower_id == borrower_id]
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return records

    def get_latest(self, borrower_id: str) -> Optional[IncomeCalculation]:
        records = self.list(borrower_id)
        return records[0] if records else None


# =============================================================================
# DOCUMENT STORE
# =============================================================================

class InMemoryDocumentStore:
    """Thread-safe in-memory store for income documents and their extraction state."""

    def __init__(self):
        self._documents: dict[str, IncomeDocument] = {}
        self._lock = threading.RLock()

    def _require(self, document_id: str) -> IncomeDocument:
        document = self._documents.get(document_id)
        if document is None:
            raise RecordNotFoundError(
                f"Document {document_id} not found",
                record_type="document",
                record_id=document_id,
            )
        return document

    def _replace(self, document: IncomeDocument, **changes: Any) -> IncomeDocument:
        changes["updated_at"] = _utc_now()
        updated = document.model_copy(update=changes, deep=True)
        self._documents[updated.id] = updated
        return updated.model_copy(deep=True)

    def upload(
        self,
        borrower_id: str,
        file_name: str,
        declared_doc_type: Union[DocumentType, str],
        storage_path: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> IncomeDocument:
        """Register an uploaded file. The document starts at ``pending``.

        Raises:
            InvalidInputError: If the declared document type is unknown.
        """
        try:
            doc_type = DocumentType(declared_doc_type)
        except ValueError:
            raise InvalidInputError(
                f"Unknown document type: {declared_doc_type}",
                field="document_type",
                value=declared_doc_type,
                constraint=f"one of {[t.value for t in DocumentType]}",
            )
        document = IncomeDocument(
            borrower_id=borrower_id,
            document_type=doc_type,
            file_name=file_name,
            storage_path=storage_path,
            mime_type=mime_type,
        )
        with self._lock:
            self._documents[document.id] = document
        logger.info(
            "document_uploaded",
            document_id=document.id,
            borrower_id=borrower_id,
            document_type=doc_type.value,
        )
        return document.model_copy(deep=True)

    def add(self, document: IncomeDocument) -> IncomeDocument:
        """Store an already-built document (imports and fixtures)."""
        with self._lock:
            self._documents[document.id] = document.model_copy(deep=True)
        return document.model_copy(deep=True)

    def get(self, document_id: str) -> IncomeDocument:
        with self._lock:
            return self._require(document_id).model_copy(deep=True)

    def snapshot(self, borrower_id: str) -> list[IncomeDocument]:
        """Point-in-time deep copies of all of a borrower's documents."""
        with self._lock:
            documents = [d for d in self._documents.values() if d.borrower_id == borrower_id]
            return [d.model_copy(deep=True) for d in sorted(documents, key=lambda d: d.sort_key())]

    def list(self, borrower_id: str) -> list[IncomeDocument]:
        return self.snapshot(borrower_id)

    def update_status(
        self,
        document_id: str,
        status: OcrStatus,
        error: Optional[str] = None,
    ) -> IncomeDocument:
        """Advance a document's OCR status.

        Moving to ``failed`` clears any parsed fields and records ``error``.

        Raises:
            ValidationError: If the transition is not allowed.
        """
        with self._lock:
            document = self._require(document_id)
            if not document.can_transition(status):
                raise ValidationError(
                    f"Illegal OCR status transition for document {document_id}",
                    field="ocr_status",
                    value=f"{document.ocr_status.value} -> {status.value}",
                    constraint="pending -> processing -> success|failed",
                )
            changes: dict[str, Any] = {"ocr_status": status}
            if status == OcrStatus.FAILED:
                changes.update(
                    fields=None,
                    extraction_confidence=None,
                    extraction_error=error or "Extraction failed",
                )
            return self._replace(document, **changes)

    def save_extraction(
        self,
        document_id: str,
        fields: DocumentFields,
        confidence: float,
        method: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        ytd_flag: bool = False,
    ) -> IncomeDocument:
        """Write extracted fields and flip the document to ``success`` in one step."""
        with self._lock:
            document = self._require(document_id)
            if not document.can_transition(OcrStatus.SUCCESS):
                raise ValidationError(
                    f"Document {document_id} is not being processed",
                    field="ocr_status",
                    value=document.ocr_status.value,
                    constraint="processing",
                )
            return self._replace(
                document,
                ocr_status=OcrStatus.SUCCESS,
                fields=fields,
                extraction_confidence=confidence,
                extraction_method=method,
                extraction_error=None,
                period_start=period_start,
                period_end=period_end,
                ytd_flag=ytd_flag,
            )

    def correct_fields(self, document_id: str, updates: dict[str, Any]) -> IncomeDocument:
        """Apply a manual correction over the parsed fields.

        A corrected document counts as successfully extracted with full
        confidence. Documents still being processed cannot be corrected.

        Raises:
            ValidationError: If extraction is in progress or a value is unusable.
        """
        with self._lock:
            document = self._require(document_id)
            if document.ocr_status == OcrStatus.PROCESSING:
                raise ValidationError(
                    f"Document {document_id} is being extracted",
                    field="ocr_status",
                    value=document.ocr_status.value,
                    constraint="not processing",
                )
            current: dict[str, Any] = {}
            if document.fields is not None:
                current = document.fields.model_dump(exclude_none=True)
                if document.document_type == DocumentType.OTHER:
                    current = dict(current.get("values", {}))
            current.update(updates)
            try:
                fields = parse_document_fields(document.document_type, current)
            except pydantic.ValidationError as e:
                raise ValidationError(
                    f"Invalid field correction for document {document_id}",
                    field=", ".join(str(k) for k in updates),
                    constraint=str(e.errors()[0].get("msg")) if e.errors() else None,
                ) from e
            logger.info(
                "document_fields_corrected",
                document_id=document_id,
                fields=sorted(updates),
            )
            return self._replace(
                document,
                fields=fields,
                ocr_status=OcrStatus.SUCCESS,
                extraction_confidence=1.0,
                extraction_error=None,
                manually_corrected=True,
            )

    def reset_for_reprocess(self, document_id: str) -> IncomeDocument:
        """Reset a document to ``pending`` so extraction can run again.

        Calculations that already used the old fields keep their own copies.
        """
        with self._lock:
            document = self._require(document_id)
            logger.info(
                "document_reset_for_reprocess",
                document_id=document_id,
                previous_status=document.ocr_status.value,
            )
            return self._replace(
                document,
                ocr_status=OcrStatus.PENDING,
                fields=None,
                extraction_confidence=None,
                extraction_method=None,
                extraction_error=None,
                manually_corrected=False,
            )


__all__ = [
    "DocumentStore",
    "CalculationRecordStore",
    "build_record",
    "InMemoryCalculationStore",
    "JsonFileCalculationStore",
    "InMemoryDocumentStore",
]
