"""Extraction lifecycle for uploaded income documents.

``ExtractionService.request_extraction`` drives a document from ``pending``
through ``processing`` to ``success`` or ``failed``. Failures are recorded on
the document and logged; they are never raised to the caller. Calculations
simply skip documents that are not at ``success``.

Example Usage:
    ```python
    from qualify_core.extraction import ExtractionService, FallbackExtractor
    from qualify_core.llm_extractor import create_llm_extractor
    from qualify_core.pdf_parser import RegexFieldExtractor
    from qualify_core.store import InMemoryDocumentStore

    documents = InMemoryDocumentStore()
    extractor = FallbackExtractor(RegexFieldExtractor(), create_llm_extractor())
    service = ExtractionService(documents, extractor)

    doc = documents.upload("borrower-1", "stub.pdf", "pay_stub", storage_path="/uploads/stub.pdf")
    service.request_extraction(doc.id)
    documents.get(doc.id).ocr_status  # success or failed
    ```
"""

from datetime import date
from pathlib import Path
from typing import Any, Optional, Union

import pydantic
import structlog

from .exceptions import ExtractionError
from .interfaces import ExtractionOutcome, FieldExtractor
from .llm_extractor import LLMFieldExtractor
from .models.documents import (
    DocumentFields,
    DocumentType,
    IncomeDocument,
    OcrStatus,
    PayStubFields,
    parse_document_fields,
)
from .pdf_parser import PDFTextExtractor, RegexFieldExtractor
from .store import InMemoryDocumentStore

logger = structlog.get_logger()


class FallbackExtractor:
    """
    Regex first, LLM second.

    The LLM runs when the document type has no regex patterns, when regex
    finds nothing, when required fields are missing, or when regex
    confidence is below ``min_confidence``. Regex values are passed to the
    LLM as hints to verify.
    """

    def __init__(
        self,
        regex: Optional[RegexFieldExtractor] = None,
        llm: Optional[LLMFieldExtractor] = None,
        min_confidence: float = 0.6,
    ):
        self.regex = regex or RegexFieldExtractor()
        self.llm = llm
        self.min_confidence = min_confidence

    def extract(self, text: str, document_type: DocumentType) -> ExtractionOutcome:
        regex_outcome: Optional[ExtractionOutcome] = None
        regex_error: Optional[ExtractionError] = None

        if self.regex.supports(document_type):
            try:
                regex_outcome = self.regex.extract(text, document_type)
            except ExtractionError as e:
                regex_error = e

        if (
            regex_outcome is not None
            and regex_outcome.is_complete
            and regex_outcome.confidence >= self.min_confidence
        ):
            return regex_outcome

        if self.llm is None:
            if regex_outcome is not None:
                return regex_outcome.model_copy(
                    update={"warnings": regex_outcome.warnings + ["LLM fallback not configured"]}
                )
            if regex_error is not None:
                raise regex_error
            raise ExtractionError(
                f"No extractor available for document type: {document_type.value}",
                document_type=document_type.value,
                recoverable=False,
            )

        logger.info(
            "llm_fallback",
            document_type=document_type.value,
            regex_confidence=regex_outcome.confidence if regex_outcome else None,
            missing=regex_outcome.missing_fields if regex_outcome else None,
        )
        existing = regex_outcome.fields if regex_outcome else None
        llm_outcome = self.llm.extract_with_context(text, document_type, existing)

        # LLM values win; regex fills anything the LLM left null
        if regex_outcome is not None:
            merged = {**regex_outcome.fields, **llm_outcome.fields}
            return llm_outcome.model_copy(update={
                "fields": merged,
                "method": "regex+llm",
                "missing_fields": [f for f in llm_outcome.missing_fields if f not in merged],
            })
        return llm_outcome


class ExtractionService:
    """Run extraction for stored documents and record the outcome on them."""

    def __init__(
        self,
        document_store: InMemoryDocumentStore,
        extractor: FieldExtractor,
        text_extractor: Optional[PDFTextExtractor] = None,
    ):
        self.documents = document_store
        self.extractor = extractor
        self.text_extractor = text_extractor or PDFTextExtractor()

    def request_extraction(
        self,
        document_id: str,
        expected_doc_type: Optional[Union[DocumentType, str]] = None,
        content: Optional[Union[str, bytes]] = None,
        force: bool = False,
    ) -> IncomeDocument:
        """
        Extract fields for a document and record the result.

        Args:
            document_id: Document to extract.
            expected_doc_type: Type the caller expects. A mismatch with the
                declared type fails the document.
            content: Document text or PDF bytes. Read from ``storage_path``
                when omitted.
            force: Re-run extraction on a document already at ``success``.

        Returns:
            The document after extraction, at ``success`` or ``failed``.
        """
        document = self.documents.get(document_id)

        if document.ocr_status == OcrStatus.SUCCESS and not force:
            logger.info("extraction_skipped", document_id=document_id, reason="already_extracted")
            return document
        if document.ocr_status != OcrStatus.PENDING:
            document = self.documents.reset_for_reprocess(document_id)

        self.documents.update_status(document_id, OcrStatus.PROCESSING)
        logger.info(
            "extraction_started",
            document_id=document_id,
            document_type=document.document_type.value,
        )

        try:
            self._check_expected_type(document, expected_doc_type)
            text = self._resolve_text(document, content)
            outcome = self.extractor.extract(text, document.document_type)
            fields = parse_document_fields(document.document_type, outcome.fields)
        except (ExtractionError, pydantic.ValidationError, OSError, UnicodeDecodeError) as e:
            error = self._describe(e)
            logger.warning(
                "extraction_failed",
                document_id=document_id,
                document_type=document.document_type.value,
                error=error,
            )
            return self.documents.update_status(document_id, OcrStatus.FAILED, error=error)
        except Exception as e:
            # Unexpected extractor or client errors still end the run as failed
            logger.error(
                "extraction_failed_unexpectedly",
                document_id=document_id,
                document_type=document.document_type.value,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            error = f"Unexpected extraction error ({type(e).__name__}): {e}"
            return self.documents.update_status(document_id, OcrStatus.FAILED, error=error)

        period_start, period_end, ytd_flag = derive_period(fields)
        saved = self.documents.save_extraction(
            document_id,
            fields=fields,
            confidence=outcome.confidence,
            method=outcome.method,
            period_start=period_start,
            period_end=period_end,
            ytd_flag=ytd_flag,
        )
        logger.info(
            "extraction_complete",
            document_id=document_id,
            method=outcome.method,
            confidence=outcome.confidence,
            missing_fields=outcome.missing_fields,
        )
        return saved

    def reprocess(self, document_id: str) -> IncomeDocument:
        """Reset a document to ``pending`` so it can be extracted again."""
        return self.documents.reset_for_reprocess(document_id)

    def correct_fields(self, document_id: str, updates: dict[str, Any]) -> IncomeDocument:
        """Apply a manual correction over a document's parsed fields."""
        return self.documents.correct_fields(document_id, updates)

    @staticmethod
    def _check_expected_type(
        document: IncomeDocument,
        expected: Optional[Union[DocumentType, str]],
    ) -> None:
        if expected is None:
            return
        try:
            expected_type = DocumentType(expected)
        except ValueError:
            raise ExtractionError(
                f"Unknown expected document type: {expected}",
                document_type=str(expected),
                recoverable=False,
            )
        if expected_type != document.document_type:
            raise ExtractionError(
                f"Document was uploaded as {document.document_type.label} "
                f"but {expected_type.label} was expected",
                document_type=document.document_type.value,
                recoverable=False,
            )

    def _resolve_text(self, document: IncomeDocument, content: Optional[Union[str, bytes]]) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, bytes):
            if content.startswith(b"%PDF"):
                return self.text_extractor.extract_text_from_bytes(
                    content, source=document.file_name or document.id
                ).full_text
            return content.decode("utf-8")
        if not document.storage_path:
            raise ExtractionError(
                "No content supplied and document has no storage path",
                source=document.file_name,
                document_type=document.document_type.value,
                recoverable=False,
            )
        path = Path(document.storage_path)
        if path.suffix.lower() == ".pdf":
            return self.text_extractor.extract_text(path).full_text
        return path.read_text(encoding="utf-8")

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, pydantic.ValidationError):
            first = error.errors()[0] if error.errors() else {}
            location = ".".join(str(p) for p in first.get("loc", ()))
            return f"Invalid extracted value for {location}: {first.get('msg', 'invalid')}"
        return str(error)


def derive_period(fields: DocumentFields) -> tuple[Optional[date], Optional[date], bool]:
    """Period covered by a document's fields, and whether it is a YTD figure.

    Pay stubs cover their pay period. Tax-year documents cover the calendar
    year. VOEs and ``other`` documents carry no period.
    """
    if isinstance(fields, PayStubFields):
        ytd_flag = (
            fields.gross_current is None
            and (fields.hourly_rate is None or fields.hours_current is None)
            and fields.gross_ytd is not None
        )
        return fields.pay_period_start, fields.period_end, ytd_flag

    tax_year = getattr(fields, "tax_year", None)
    if tax_year is not None:
        return date(tax_year, 1, 1), date(tax_year, 12, 31), False
    return None, None, False


__all__ = [
    "FallbackExtractor",
    "ExtractionService",
    "derive_period",
]
