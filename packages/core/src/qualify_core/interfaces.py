"""Extractor interfaces for qualify-core.

Any class with a matching ``extract`` method can back the extraction
service; no inheritance is required. Extractors work on document text and
return raw field maps. Validation into typed field sets happens in the
service, so every extractor shares one contract.

Example Usage:
    ```python
    from qualify_core.interfaces import ExtractionOutcome, FieldExtractor

    class FixedExtractor:
        def extract(self, text, document_type):
            return ExtractionOutcome(
                fields={"wages": "60000", "tax_year": 2023},
                confidence=0.9,
                method="fixed",
            )

    assert isinstance(FixedExtractor(), FieldExtractor)
    ```
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .models.documents import DocumentType


class ExtractionOutcome(BaseModel):
    """Raw result of one extraction attempt.

    Attributes:
        fields: Extracted field map; keys follow the document type's field set
        confidence: Extraction confidence score (0.0 to 1.0)
        method: Extractor that produced the fields ("regex", "llm", ...)
        missing_fields: Required fields the extractor could not find
        warnings: Non-fatal issues encountered during extraction
        tokens_used: LLM tokens consumed, if any
    """

    fields: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: str
    missing_fields: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0)

    @property
    def is_complete(self) -> bool:
        """True when every required field was found."""
        return not self.missing_fields


@runtime_checkable
class FieldExtractor(Protocol):
    """Contract for anything that turns document text into a field map.

    Implementations raise ``ExtractionError`` when no usable fields can be
    produced.
    """

    def extract(self, text: str, document_type: DocumentType) -> ExtractionOutcome:
        """Extract fields for ``document_type`` from ``text``."""
        ...


__all__ = [
    "ExtractionOutcome",
    "FieldExtractor",
]
