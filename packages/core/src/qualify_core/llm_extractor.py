"""
LLM Fallback Extractor for income documents.

Uses the Claude API to extract structured fields when regex extraction
fails, returns low confidence, or the document type has no regex patterns.
"""

import json
import os
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import anthropic
import structlog

from .config import LLMConfig
from .exceptions import ConfigurationError, ExtractionError
from .interfaces import ExtractionOutcome
from .models.documents import DocumentType

logger = structlog.get_logger()


@dataclass
class LLMExtractionResult:
    """Result from LLM extraction attempt."""

    success: bool
    extracted_data: dict[str, Any]
    confidence: float
    raw_response: str
    tokens_used: int
    error: Optional[str] = None


# Field definitions by document type; keys match the typed field sets
EXTRACTION_SCHEMAS: dict[DocumentType, dict[str, str]] = {
    DocumentType.PAY_STUB: {
        "employee_name": "Employee's full name",
        "employer_name": "Employer/company name",
        "pay_period_start": "Pay period start date (YYYY-MM-DD)",
        "pay_period_end": "Pay period end date (YYYY-MM-DD)",
        "pay_date": "Payment date (YYYY-MM-DD)",
        "pay_frequency": "Pay frequency (weekly, biweekly, semimonthly, monthly)",
        "hourly_rate": "Regular hourly rate as a number, if paid hourly",
        "hours_current": "Regular hours worked this period as a number",
        "gross_current": "Gross pay for this period as a number",
        "ot_current": "Overtime earnings this period as a number",
        "bonus_current": "Bonus earnings this period as a number",
        "commission_current": "Commission earnings this period as a number",
        "net_current": "Net pay (take-home) for this period as a number",
        "gross_ytd": "Year-to-date gross earnings as a number",
        "ot_ytd": "Year-to-date overtime earnings as a number",
        "bonus_ytd": "Year-to-date bonus earnings as a number",
        "commission_ytd": "Year-to-date commission earnings as a number",
    },
    DocumentType.W2: {
        "employee_name": "Full name of the employee (Box e)",
        "employer_name": "Employer name (Box c)",
        "employer_ein": "Employer Identification Number (Box b)",
        "wages": "Wages, tips, other compensation (Box 1) as a number",
        "fed_tax_withheld": "Federal income tax withheld (Box 2) as a number",
        "ss_wages": "Social security wages (Box 3) as a number",
        "medicare_wages": "Medicare wages and tips (Box 5) as a number",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.FORM_1099: {
        "form_subtype": "Type of 1099 (e.g., NEC, MISC, INT, DIV, R)",
        "payer_name": "Payer's name",
        "recipient_name": "Recipient's name",
        "gross_amount": "Total income/payment amount as a number",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.FORM_1040: {
        "taxpayer_name": "Primary taxpayer's full name",
        "filing_status": "Filing status",
        "wages": "Wages, salaries, tips (Line 1) as a number",
        "total_income": "Total income (Line 9) as a number",
        "agi": "Adjusted gross income (Line 11) as a number",
        "schedule_c_attached": "true if Schedule C is attached, else false",
        "schedule_e_attached": "true if Schedule E is attached, else false",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.SCHEDULE_C: {
        "business_name": "Name of the proprietor's business",
        "gross_receipts": "Gross receipts or sales (Line 1) as a number",
        "net_profit": "Net profit or loss (Line 31) as a number, negative for a loss",
        "depreciation": "Depreciation (Line 13) as a number",
        "depletion": "Depletion (Line 12) as a number",
        "meals": "Deductible meals (Line 24b) as a number",
        "home_office_deduction": "Business use of home (Line 30) as a number",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.SCHEDULE_E: {
        "property_address": "Rental property address",
        "rents_received": "Rents received (Line 3) as a number",
        "total_expenses": "Total expenses (Line 20) as a number",
        "depreciation": "Depreciation expense or depletion (Line 18) as a number",
        "net_income": "Income or loss for the property (Line 21) as a number, negative for a loss",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.K1: {
        "entity_name": "Partnership or S corporation name",
        "entity_ein": "Entity's employer identification number",
        "form_type": "Source return: 1065 for partnerships, 1120S for S corporations",
        "allocation_pct": "Partner/shareholder ownership or profit share percentage as a number (0-100)",
        "ordinary_income": "Ordinary business income or loss (Box 1) as a number",
        "guaranteed_payments": "Guaranteed payments (Box 4, 1065 only) as a number",
        "distributions": "Distributions as a number",
        "tax_year": "Tax year (4-digit year)",
    },
    DocumentType.VOE: {
        "employer_name": "Employer name",
        "employee_name": "Employee's full name",
        "employee_title": "Employee's position or title",
        "verified_monthly_income": "Verified current gross monthly income as a number",
        "base_pay_amount": "Current base pay amount as a number",
        "base_pay_period": "Period of the base pay amount (hourly, weekly, monthly, annual)",
        "ytd_earnings": "Year-to-date earnings as a number",
        "prior_year_earnings": "Total earnings for the prior year as a number",
        "prior_year2_earnings": "Total earnings for two years prior as a number",
        "probability_of_continued_employment": "Stated probability of continued employment",
    },
}


class LLMFieldExtractor:
    """
    Use the Claude API to extract structured fields from income documents
    when regex extraction fails or returns incomplete results.
    """

    # Base confidence for LLM extractions (adjusted by response quality)
    BASE_CONFIDENCE = 0.7

    def __init__(self, client: Any = None, config: Optional[LLMConfig] = None):
        """
        Initialize the LLM extractor.

        Args:
            client: Pre-built Anthropic client. Built from config when omitted.
            config: LLM settings. Defaults to LLMConfig() from the environment.

        Raises:
            ConfigurationError: If no client is given and no API key is available.
        """
        self.config = config or LLMConfig()
        if client is None:
            api_key = self.config.api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise ConfigurationError(
                    "No Anthropic API key provided. Set QUALIFY_LLM_API_KEY or "
                    "ANTHROPIC_API_KEY.",
                    config_key="api_key",
                    expected="non-empty API key",
                )
            client = anthropic.Anthropic(api_key=api_key, timeout=self.config.timeout)
        self.client = client

    def extract(self, text: str, document_type: DocumentType) -> ExtractionOutcome:
        """
        Extract all schema fields for ``document_type``.

        Raises:
            ExtractionError: If the call fails or the response is unusable.
        """
        return self.extract_with_context(text, document_type)

    def extract_with_context(
        self,
        text: str,
        document_type: DocumentType,
        existing_extractions: Optional[dict[str, Any]] = None,
    ) -> ExtractionOutcome:
        """Extract fields, using ``existing_extractions`` as hints to verify."""
        result = self.extract_from_document(
            document_text=text,
            document_type=document_type,
            existing_extractions=existing_extractions,
        )
        if not result.success:
            raise ExtractionError(
                result.error or "LLM extraction failed",
                source="llm",
                document_type=document_type.value,
            )

        fields = {k: v for k, v in result.extracted_data.items() if v is not None}
        return ExtractionOutcome(
            fields=fields,
            confidence=result.confidence,
            method="llm",
            missing_fields=[k for k in EXTRACTION_SCHEMAS[document_type] if k not in fields],
            tokens_used=result.tokens_used,
        )

    def extract_from_document(
        self,
        document_text: str,
        document_type: DocumentType,
        fields_needed: Optional[list[str]] = None,
        existing_extractions: Optional[dict[str, Any]] = None,
    ) -> LLMExtractionResult:
        """
        Extract structured data from a document using Claude.

        Args:
            document_text: The raw text content of the document.
            document_type: The type of document being processed.
            fields_needed: Specific fields to extract. If None, extracts all fields for doc type.
            existing_extractions: Already extracted data (from regex) to provide context.

        Returns:
            LLMExtractionResult with extracted data and metadata.
        """
        schema = EXTRACTION_SCHEMAS.get(document_type, {})
        if not schema:
            return LLMExtractionResult(
                success=False,
                extracted_data={},
                confidence=0.0,
                raw_response="",
                tokens_used=0,
                error=f"No extraction schema defined for document type: {document_type.value}",
            )

        if fields_needed:
            schema = {k: v for k, v in schema.items() if k in fields_needed}

        if not schema:
            return LLMExtractionResult(
                success=False,
                extracted_data={},
                confidence=0.0,
                raw_response="",
                tokens_used=0,
                error="No valid fields to extract",
            )

        prompt = self._build_extraction_prompt(
            document_text=document_text,
            document_type=document_type,
            schema=schema,
            existing_extractions=existing_extractions,
        )

        try:
            response = self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.warning("llm_extraction_failed", document_type=document_type.value, error=str(e))
            return LLMExtractionResult(
                success=False,
                extracted_data={},
                confidence=0.0,
                raw_response="",
                tokens_used=0,
                error=f"API call failed: {str(e)}",
            )

        raw_response = "".join(getattr(block, "text", "") for block in response.content)
        tokens_used = response.usage.input_tokens + response.usage.output_tokens

        extracted_data = self._parse_json_response(raw_response)
        if extracted_data is None:
            logger.warning("llm_response_unparseable", document_type=document_type.value)
            return LLMExtractionResult(
                success=False,
                extracted_data={},
                confidence=0.0,
                raw_response=raw_response,
                tokens_used=tokens_used,
                error="Failed to parse JSON from LLM response",
            )

        # Drop keys the model invented
        extracted_data = {k: v for k, v in extracted_data.items() if k in schema}

        confidence = self._calculate_confidence(
            extracted_data=extracted_data,
            schema=schema,
            existing_extractions=existing_extractions,
        )

        logger.info(
            "llm_extraction_complete",
            document_type=document_type.value,
            fields_found=sum(1 for v in extracted_data.values() if v is not None),
            tokens_used=tokens_used,
            confidence=confidence,
        )
        return LLMExtractionResult(
            success=True,
            extracted_data=extracted_data,
            confidence=confidence,
            raw_response=raw_response,
            tokens_used=tokens_used,
        )

    def _build_extraction_prompt(
        self,
        document_text: str,
        document_type: DocumentType,
        schema: dict[str, str],
        existing_extractions: Optional[dict[str, Any]],
    ) -> str:
        """Build the extraction prompt for Claude."""
        field_descriptions = "\n".join(
            f"- {field}: {description}"
            for field, description in schema.items()
        )

        context_section = ""
        if existing_extractions:
            context_section = f"""
Some fields have already been extracted (verify or fill in missing):
{json.dumps(existing_extractions, indent=2, default=str)}
"""

        return f"""You are a mortgage income document data extraction assistant. Extract structured data from the following {document_type.label} document.

DOCUMENT TEXT:
---
{document_text[:8000]}
---

FIELDS TO EXTRACT:
{field_descriptions}
{context_section}
INSTRUCTIONS:
1. Extract ONLY the requested fields from the document
2. For monetary amounts, return just the number (no $ signs or commas); losses are negative
3. For dates, use YYYY-MM-DD format
4. If a field cannot be found, set it to null
5. Extract exact values as they appear in the document; do not compute totals

Return ONLY a JSON object with the extracted fields. No explanation or additional text.

Example format:
{{"field_name": "extracted_value", "another_field": 12345.67}}

JSON:"""

    def _parse_json_response(self, response: str) -> Optional[dict[str, Any]]:
        """Parse JSON from LLM response, handling common formatting issues."""
        try:
            parsed = json.loads(response.strip())
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        # Fenced code block
        json_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", response, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group(1))
            except json.JSONDecodeError:
                pass

        # Bare object surrounded by prose
        json_match = re.search(r"\{[^{}]*\}", response, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group(0))
            except json.JSONDecodeError:
                pass

        return None

    def _calculate_confidence(
        self,
        extracted_data: dict[str, Any],
        schema: dict[str, str],
        existing_extractions: Optional[dict[str, Any]],
    ) -> float:
        """
        Calculate confidence score for LLM extraction.

        Confidence adjustments:
        - Base: 0.7
        - Up to +0.1 for the share of fields extracted
        - Up to +0.1 for agreement with existing regex extractions
        - Up to -0.1 for the share of fields returned as null
        - Clamped to [0.3, 0.95] (never fully confident in LLM)
        """
        confidence = self.BASE_CONFIDENCE

        fields_extracted = 0
        fields_null = 0
        fields_matching = 0

        for field in schema:
            value = extracted_data.get(field)
            if value is not None:
                fields_extracted += 1
                if existing_extractions and field in existing_extractions:
                    if self._values_match(value, existing_extractions[field]):
                        fields_matching += 1
            else:
                fields_null += 1

        if fields_extracted > 0:
            confidence += fields_extracted / len(schema) * 0.1

        if fields_matching > 0 and existing_extractions:
            confidence += fields_matching / len(existing_extractions) * 0.1

        if fields_null > 0:
            confidence -= fields_null / len(schema) * 0.1

        return round(max(0.3, min(0.95, confidence)), 4)

    def _values_match(self, llm_value: Any, regex_value: Any) -> bool:
        """Check if LLM and regex values match, with 1% tolerance for numbers."""
        if llm_value is None or regex_value is None:
            return llm_value == regex_value

        try:
            llm_num = Decimal(str(llm_value))
            regex_num = Decimal(str(regex_value))
            if regex_num != 0:
                return abs((llm_num - regex_num) / regex_num) < Decimal("0.01")
            return llm_num == regex_num
        except (ValueError, TypeError, InvalidOperation):
            pass

        return str(llm_value).lower().strip() == str(regex_value).lower().strip()


def create_llm_extractor(config: Optional[LLMConfig] = None) -> Optional[LLMFieldExtractor]:
    """
    Factory function to create an LLMFieldExtractor if one can be configured.

    Returns None when no API key is available, so extraction degrades to
    regex-only instead of failing.
    """
    try:
        return LLMFieldExtractor(config=config)
    except ConfigurationError:
        logger.info("llm_extractor_disabled", reason="no_api_key")
        return None


__all__ = [
    "EXTRACTION_SCHEMAS",
    "LLMExtractionResult",
    "LLMFieldExtractor",
    "create_llm_extractor",
]
