"""PDF text extraction and regex field extraction for income documents.

Text is read with PyPDF2; image-heavy or oddly encoded PDFs that yield
almost no text are re-read with pdfplumber. The regex extractor then pulls
pay stub and W-2 fields out of the text. Other document types have no
regex patterns and go straight to the LLM extractor.
"""

import io
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

import pdfplumber
import structlog
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from .exceptions import ExtractionError
from .interfaces import ExtractionOutcome
from .models.documents import DocumentType, parse_amount

logger = structlog.get_logger()

# Below this many characters PyPDF2 output is treated as unusable
MIN_TEXT_CHARS = 100


@dataclass
class ExtractedText:
    """Raw extracted text from one page."""
    text: str
    page: int


@dataclass
class TextExtractionResult:
    """Text read from a PDF."""
    source: str
    page_count: int
    pages: list[ExtractedText]
    method: str = "pypdf2"
    warnings: list[str] = field(default_factory=list)

    @property
    def full_text(self) -> str:
        """Get all text as a single string."""
        return "\n\n".join(p.text for p in self.pages)


class PDFTextExtractor:
    """Read the text layer of PDF documents."""

    def extract_text(self, file_path: Union[str, Path]) -> TextExtractionResult:
        """
        Read all pages of a PDF file.

        Raises:
            ExtractionError: If the file is missing, not a PDF, or unreadable.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise ExtractionError(
                f"PDF file not found: {file_path}",
                source=str(file_path),
                recoverable=False,
            )
        if file_path.suffix.lower() != ".pdf":
            raise ExtractionError(
                f"File must be a PDF: {file_path}",
                source=str(file_path),
                recoverable=False,
            )
        with open(file_path, "rb") as f:
            return self._extract(io.BytesIO(f.read()), str(file_path))

    def extract_text_from_bytes(self, content: bytes, source: str = "<bytes>") -> TextExtractionResult:
        """Read all pages of an in-memory PDF."""
        return self._extract(io.BytesIO(content), source)

    def _extract(self, stream: BinaryIO, source: str) -> TextExtractionResult:
        logger.info("parsing_pdf", source=source)
        try:
            reader = PdfReader(stream)
        except (PdfReadError, OSError, ValueError) as e:
            raise ExtractionError(f"Failed to read PDF: {e}", source=source) from e

        pages: list[ExtractedText] = []
        for page_num, page in enumerate(reader.pages, start=1):
            try:
                text = page.extract_text() or ""
            except Exception as e:
                logger.warning("page_extraction_failed", source=source, page=page_num, error=str(e))
                text = ""
            pages.append(ExtractedText(text=text, page=page_num))

        result = TextExtractionResult(source=source, page_count=len(reader.pages), pages=pages)

        if len(result.full_text.strip()) < MIN_TEXT_CHARS:
            logger.info(
                "pypdf2_fallback_pdfplumber",
                source=source,
                pypdf2_chars=len(result.full_text.strip()),
            )
            stream.seek(0)
            fallback = self._extract_with_pdfplumber(stream, source)
            if fallback is not None and len(fallback.full_text.strip()) > len(result.full_text.strip()):
                result = fallback
            else:
                result.warnings.append("Very little text found; document may be a scanned image")

        logger.info(
            "pdf_parsed",
            source=source,
            pages=result.page_count,
            method=result.method,
            chars=len(result.full_text),
        )
        return result

    def _extract_with_pdfplumber(self, stream: BinaryIO, source: str) -> Optional[TextExtractionResult]:
        try:
            with pdfplumber.open(stream) as pdf:
                pages = []
                for page_num, page in enumerate(pdf.pages, start=1):
                    text = normalize_pdfplumber_text(page.extract_text() or "")
                    pages.append(ExtractedText(text=text, page=page_num))
        except Exception as e:
            logger.warning("pdfplumber_fallback_failed", source=source, error=str(e))
            return None
        return TextExtractionResult(
            source=source,
            page_count=len(pages),
            pages=pages,
            method="pdfplumber",
        )


def normalize_pdfplumber_text(text: str) -> str:
    """Repair pdfplumber output where amounts come out space-separated.

    "$6 136 38" becomes "$6,136.38"; "(cid:12)" font garbage is dropped.
    """
    def join_amount(match: re.Match) -> str:
        groups = match.group(1).split()
        return "$" + ",".join(groups) + "." + match.group(2)

    text = re.sub(r"\$(\d{1,3}(?:\s\d{3})*)\s(\d{2})\b(?![/\-])", join_amount, text)
    return re.sub(r"\(cid:\d+\)", "", text)


# =============================================================================
# REGEX FIELD EXTRACTION
# =============================================================================

_AMOUNT = r"\$?\s*\(?([\d,]+\.\d{2})\)?"
_LOOSE_AMOUNT = r"\$?\s*([\d,]+\.?\d*)"
_DATE = r"(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})"


class RegexFieldExtractor:
    """
    Extract pay stub and W-2 fields from document text with regular expressions.

    Each field has an ordered list of patterns; the first match wins.
    Confidence reflects how many required and optional fields were found.
    """

    # Text indicators used to check the declared document type
    DOCUMENT_INDICATORS: dict[DocumentType, list[str]] = {
        DocumentType.PAY_STUB: [
            r"(?i)gross\s+pay",
            r"(?i)net\s+pay",
            r"(?i)ytd\s+(?:gross|net|earnings)",
            r"(?i)pay\s+period",
            r"(?i)earnings\s+statement",
        ],
        DocumentType.W2: [
            r"(?i)form\s+w-?2",
            r"(?i)wage\s+and\s+tax\s+statement",
            r"(?i)wages,?\s+tips,?\s+other\s+comp",
            r"(?i)employer\s+identification\s+number",
        ],
        DocumentType.FORM_1099: [
            r"(?i)form\s+1099",
            r"(?i)nonemployee\s+compensation",
            r"(?i)payer.?s\s+(?:tin|federal)",
        ],
        DocumentType.FORM_1040: [
            r"(?i)form\s+1040",
            r"(?i)u\.?s\.?\s+individual\s+income\s+tax\s+return",
            r"(?i)adjusted\s+gross\s+income",
        ],
        DocumentType.SCHEDULE_C: [
            r"(?i)schedule\s+c\b",
            r"(?i)profit\s+or\s+loss\s+from\s+business",
        ],
        DocumentType.SCHEDULE_E: [
            r"(?i)schedule\s+e\b",
            r"(?i)supplemental\s+income\s+and\s+loss",
            r"(?i)rents\s+received",
        ],
        DocumentType.K1: [
            r"(?i)schedule\s+k-?1",
            r"(?i)partner.?s\s+share\s+of\s+income",
            r"(?i)shareholder.?s\s+share\s+of\s+income",
        ],
        DocumentType.VOE: [
            r"(?i)verification\s+of\s+employment",
            r"(?i)probability\s+of\s+continued\s+employment",
        ],
    }

    FIELD_PATTERNS: dict[DocumentType, dict[str, list[str]]] = {
        DocumentType.PAY_STUB: {
            "employee_name": [
                r"(?i)employee(?:\s+name)?[ \t]*:[ \t]*([A-Za-z][A-Za-z.'\-]*(?:[ \t]+[A-Za-z][A-Za-z.'\-]*){1,2})",
                r"(?i)pay(?:\s+to\s+the\s+order\s+of|ee)[ \t]*:[ \t]*([A-Za-z][A-Za-z.'\-]*(?:[ \t]+[A-Za-z][A-Za-z.'\-]*){1,2})",
            ],
            "employer_name": [
                r"(?i)(?:employer|company)(?:\s+name)?[ \t]*:[ \t]*([A-Za-z0-9][A-Za-z0-9 &.,'\-]*[A-Za-z0-9.])",
            ],
            "pay_period_start": [
                r"(?i)(?:pay\s+)?period\s*(?:start(?:ing)?|begin(?:ning)?)[:\s]*" + _DATE,
            ],
            "pay_period_end": [
                r"(?i)(?:pay\s+)?period\s*end(?:ing)?[:\s]*" + _DATE,
            ],
            "pay_date": [
                r"(?i)(?:pay|check)\s+date[:\s]*" + _DATE,
            ],
            "pay_frequency": [
                r"(?i)pay\s+(?:frequency|cycle|schedule)[:\s]*(bi-?weekly|semi-?monthly|weekly|monthly|annual)",
                r"(?i)\b(bi-?weekly|semi-?monthly)\b",
            ],
            "hourly_rate": [
                r"(?i)(?:hourly\s+)?rate[ \t]*:?[ \t]*\$?([\d,]+\.\d{2,4})",
            ],
            "hours_current": [
                r"(?i)(?:regular\s+)?hours(?:\s+worked)?[ \t]*:?[ \t]*([\d,]+\.?\d*)",
            ],
            "gross_current": [
                r"(?i)(?:current\s+)?gross\s+(?:pay|earnings|wages)[ \t]*:?[ \t]*" + _AMOUNT,
                r"(?i)total\s+(?:current\s+)?(?:gross|earnings)[ \t]*:?[ \t]*" + _AMOUNT,
            ],
            "ot_current": [
                r"(?i)(?:overtime|ot)(?:\s+(?:pay|earnings))?[ \t]*:?[ \t]*" + _AMOUNT,
            ],
            "bonus_current": [
                r"(?i)bonus(?:\s+pay)?[ \t]*:?[ \t]*" + _AMOUNT,
            ],
            "commission_current": [
                r"(?i)commissions?[ \t]*:?[ \t]*" + _AMOUNT,
            ],
            "net_current": [
                r"(?i)net\s+(?:pay|check)[ \t]*:?[ \t]*" + _AMOUNT,
                r"(?i)take\s+home[ \t]*:?[ \t]*" + _AMOUNT,
            ],
            "gross_ytd": [
                r"(?i)ytd\s+(?:gross|earnings)(?:\s+pay)?[ \t]*:?[ \t]*" + _AMOUNT,
                r"(?i)(?:gross|earnings)(?:\s+pay)?\s+ytd[ \t]*:?[ \t]*" + _AMOUNT,
                r"(?i)year[- ]to[- ]date\s+(?:gross|earnings)[ \t]*:?[ \t]*" + _AMOUNT,
            ],
        },
        DocumentType.W2: {
            "employee_name": [
                r"(?i)employee.?s\s+(?:first\s+)?name[^:\n]*:[ \t]*([^\n]+)",
            ],
            "employer_name": [
                r"(?i)employer.?s\s+name[^:\n]*:[ \t]*([^\n]+)",
                r"(?i)employer[ \t]*:[ \t]*([^\n]+)",
            ],
            "employer_ein": [
                r"(?i)(?:ein|employer\s+identification\s+number|employer\s+id)[^\d\n]{0,20}(\d{2}-\d{7})",
            ],
            "wages": [
                r"(?i)wages,?\s+tips,?\s+other\s+comp(?:ensation)?[:\s]*" + _LOOSE_AMOUNT,
                r"(?i)box\s*1\b[:\s]*" + _LOOSE_AMOUNT,
            ],
            "fed_tax_withheld": [
                r"(?i)federal\s+income\s+tax\s+withheld[:\s]*" + _LOOSE_AMOUNT,
                r"(?i)box\s*2\b[:\s]*" + _LOOSE_AMOUNT,
            ],
            "ss_wages": [
                r"(?i)social\s+security\s+wages[:\s]*" + _LOOSE_AMOUNT,
                r"(?i)box\s*3\b[:\s]*" + _LOOSE_AMOUNT,
            ],
            "medicare_wages": [
                r"(?i)medicare\s+wages(?:\s+and\s+tips)?[:\s]*" + _LOOSE_AMOUNT,
                r"(?i)box\s*5\b[:\s]*" + _LOOSE_AMOUNT,
            ],
            "tax_year": [
                r"(?i)tax\s+year[:\s]*((?:19|20)\d{2})",
                r"(?i)form\s+w-?2[^\d\n]{0,40}((?:19|20)\d{2})",
            ],
        },
    }

    REQUIRED_FIELDS: dict[DocumentType, tuple[str, ...]] = {
        DocumentType.PAY_STUB: ("gross_current", "pay_frequency"),
        DocumentType.W2: ("wages", "tax_year"),
    }

    AMOUNT_FIELDS = frozenset({
        "hourly_rate", "hours_current", "gross_current", "ot_current", "bonus_current",
        "commission_current", "net_current", "gross_ytd", "wages", "fed_tax_withheld",
        "ss_wages", "medicare_wages",
    })

    def __init__(self):
        """Initialize the regex extractor."""
        self._compiled = {
            doc_type: {name: [re.compile(p) for p in patterns] for name, patterns in fields.items()}
            for doc_type, fields in self.FIELD_PATTERNS.items()
        }

    def supports(self, document_type: DocumentType) -> bool:
        return document_type in self.FIELD_PATTERNS

    def detect_document_type(self, text: str) -> Optional[DocumentType]:
        """Guess the document type from text indicators, or None."""
        scores: dict[DocumentType, int] = {}
        for doc_type, patterns in self.DOCUMENT_INDICATORS.items():
            score = sum(1 for pattern in patterns if re.search(pattern, text))
            if score > 0:
                scores[doc_type] = score
        if not scores:
            return None
        return max(scores, key=scores.get)

    def extract(self, text: str, document_type: DocumentType) -> ExtractionOutcome:
        """
        Extract fields for ``document_type`` from ``text``.

        Raises:
            ExtractionError: If the type has no patterns or nothing was found.
        """
        patterns = self._compiled.get(document_type)
        if patterns is None:
            raise ExtractionError(
                f"No regex patterns for document type: {document_type.value}",
                document_type=document_type.value,
            )

        fields: dict[str, Any] = {}
        for name, compiled in patterns.items():
            for pattern in compiled:
                match = pattern.search(text)
                if not match:
                    continue
                value = self._convert(name, match.group(1))
                if value is not None:
                    fields[name] = value
                    break

        if not fields:
            raise ExtractionError(
                "No recognizable fields found in document text",
                document_type=document_type.value,
            )

        required = self.REQUIRED_FIELDS.get(document_type, ())
        missing = [name for name in required if name not in fields]
        confidence = self._calculate_confidence(len(fields), len(patterns), required, missing)

        logger.info(
            "regex_extraction_complete",
            document_type=document_type.value,
            fields_found=len(fields),
            missing=missing,
            confidence=confidence,
        )
        return ExtractionOutcome(
            fields=fields,
            confidence=confidence,
            method="regex",
            missing_fields=missing,
        )

    def _convert(self, name: str, raw: str) -> Any:
        raw = raw.strip()
        if name in self.AMOUNT_FIELDS:
            return parse_amount(raw)
        if name == "tax_year":
            return int(raw)
        return raw or None

    @staticmethod
    def _calculate_confidence(
        found: int,
        total: int,
        required: tuple[str, ...],
        missing: list[str],
    ) -> float:
        """
        Confidence for a regex extraction.

        - Any required field missing: at most 0.3, scaled by required fields found
        - All required fields found: 0.6 plus up to 0.3 for optional coverage
        """
        if found == 0:
            return 0.0
        if missing:
            return round(0.3 * (len(required) - len(missing)) / len(required), 2)
        return round(min(0.9, 0.6 + 0.3 * found / total), 2)


__all__ = [
    "MIN_TEXT_CHARS",
    "ExtractedText",
    "TextExtractionResult",
    "PDFTextExtractor",
    "normalize_pdfplumber_text",
    "RegexFieldExtractor",
]
