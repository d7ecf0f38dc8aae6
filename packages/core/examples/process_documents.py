#!/usr/bin/env python3
"""
Qualify a Borrower from a Folder of Income Documents

This script scans a folder for PDF income documents, detects each document's
type, extracts its fields, runs the qualifying income calculation and writes
the monthly income worksheet.

Usage:
    python examples/process_documents.py /path/to/documents --borrower "Jane Doe"
    python examples/process_documents.py /path/to/documents --borrower "Jane Doe" --agency freddie --program fha
    python examples/process_documents.py /path/to/documents --borrower "Jane Doe" --use-llm-fallback

Document Types Detected:
    - Pay stubs
    - W-2 forms
    - 1099 forms
    - 1040 returns
    - Schedule C and Schedule E
    - Schedule K-1
    - Verifications of employment
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from qualify_core import (
    ExtractionService,
    FallbackExtractor,
    InMemoryDocumentStore,
    IncomeCalculator,
    JsonFileCalculationStore,
    QualifyConfig,
    WorksheetExporter,
    WorksheetGenerator,
)
from qualify_core.config import configure_logging
from qualify_core.exceptions import ExtractionError, QualifyError
from qualify_core.llm_extractor import create_llm_extractor
from qualify_core.models import DocumentType, OcrStatus
from qualify_core.pdf_parser import PDFTextExtractor, RegexFieldExtractor


def find_pdf_files(folder_path: Path, recursive: bool = True) -> list[Path]:
    """Find all PDF files in a folder, sorted by path."""
    pattern = folder_path.rglob if recursive else folder_path.glob
    return sorted(pattern("*.pdf"))


def format_document_summary(documents: list) -> str:
    """Create a summary of documents by type and extraction status."""
    lines = ["Documents:"]
    lines.append("-" * 60)
    for doc in documents:
        status = doc.ocr_status.value
        if doc.ocr_status == OcrStatus.SUCCESS:
            status = f"{status} ({doc.extraction_method}, {doc.extraction_confidence:.0%})"
        lines.append(f"  {doc.document_type.label:<12} {doc.file_name:<30} {status}")
        if doc.extraction_error:
            lines.append(f"      {doc.extraction_error}")
    lines.append("-" * 60)
    lines.append(f"  Total: {len(documents)}")
    return "\n".join(lines)


def main():
    """Main entry point for document processing."""
    parser = argparse.ArgumentParser(
        description="Calculate qualifying monthly income from borrower income documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Conventional loan, Fannie Mae rules
  python process_documents.py ~/Documents/borrower --borrower "Jane Doe"

  # FHA loan with Freddie Mac rules
  python process_documents.py ./borrower_docs --borrower "Jane Doe" --agency freddie --program fha

  # With LLM fallback for difficult extractions
  python process_documents.py /path/to/pdfs --borrower "Jane Doe" --use-llm-fallback
        """
    )
    parser.add_argument(
        "folder",
        type=str,
        help="Path to folder containing PDF documents"
    )
    parser.add_argument(
        "--borrower", "-b",
        type=str,
        required=True,
        help="Borrower name shown on the worksheet (required)"
    )
    parser.add_argument(
        "--agency", "-a",
        type=str,
        default=None,
        help="Agency rule set: fannie or freddie (default from config)"
    )
    parser.add_argument(
        "--program", "-p",
        type=str,
        default=None,
        help="Loan program: conventional, fha, va, usda, jumbo, non_qm (default from config)"
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Data directory for calculation records and exports (default: QUALIFY_DATA_DIR)"
    )
    parser.add_argument(
        "--no-recursive",
        action="store_true",
        help="Don't scan subfolders"
    )
    parser.add_argument(
        "--use-llm-fallback",
        action="store_true",
        help="Use Claude API for difficult extractions (requires ANTHROPIC_API_KEY)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show structured log events"
    )

    args = parser.parse_args()

    config = QualifyConfig()
    configure_logging("DEBUG" if args.verbose else "WARNING")

    folder_path = Path(args.folder).expanduser().resolve()
    if not folder_path.is_dir():
        print(f"Error: Not a directory: {folder_path}")
        sys.exit(1)

    data_dir = Path(args.output or config.data_dir).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    print("=" * 70)
    print("QUALIFY CORE - Income Document Pipeline")
    print("=" * 70)
    print()
    print(f"Scanning:  {folder_path}")
    print(f"Data dir:  {data_dir}")
    print(f"Borrower:  {args.borrower}")
    print(f"Agency:    {args.agency or config.engine.default_agency}")
    print(f"Program:   {args.program or config.engine.default_loan_program}")
    if args.use_llm_fallback:
        print("LLM:       Enabled (fallback)")
    print()

    # Step 1: Find PDF files
    print("Step 1: Scanning for PDF files...")
    pdf_files = find_pdf_files(folder_path, recursive=not args.no_recursive)
    if not pdf_files:
        print("  No PDF files found.")
        sys.exit(1)
    print(f"  Found {len(pdf_files)} PDF files")
    print()

    # Step 2: Detect types and extract fields
    print("Step 2: Extracting fields...")
    llm = create_llm_extractor(config.llm) if args.use_llm_fallback else None
    if args.use_llm_fallback and llm is None:
        print("  Warning: no API key found, continuing with regex extraction only")

    documents = InMemoryDocumentStore()
    text_extractor = PDFTextExtractor()
    regex = RegexFieldExtractor()
    service = ExtractionService(
        documents,
        FallbackExtractor(regex, llm, min_confidence=config.llm.min_regex_confidence),
        text_extractor,
    )
    borrower_id = args.borrower.strip().lower().replace(" ", "-")

    for pdf_file in pdf_files:
        try:
            text = text_extractor.extract_text(pdf_file).full_text
        except ExtractionError as e:
            print(f"  Skipped {pdf_file.name}: {e}")
            continue
        doc_type = regex.detect_document_type(text) or DocumentType.OTHER
        doc = documents.upload(borrower_id, pdf_file.name, doc_type, storage_path=str(pdf_file))
        service.request_extraction(doc.id, content=text)

    print(format_document_summary(documents.list(borrower_id)))
    print()

    # Step 3: Calculate
    print("Step 3: Calculating qualifying income...")
    calculations = JsonFileCalculationStore(data_dir / "calculations")
    calculator = IncomeCalculator(documents, calculations, config=config.engine)
    try:
        calculation = calculator.calculate(borrower_id, agency=args.agency, loan_program=args.program)
    except QualifyError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"  Calculation {calculation.id} stored")
    print()

    # Step 4: Worksheets
    print("Step 4: Writing worksheets...")
    generator = WorksheetGenerator()
    exports = data_dir / "exports"
    exports.mkdir(parents=True, exist_ok=True)
    for fmt, suffix in (("text", "txt"), ("markdown", "md"), ("html", "html")):
        worksheet_file = exports / f"{calculation.id}.{suffix}"
        worksheet_file.write_text(generator.generate(calculation, format=fmt, borrower_name=args.borrower))
        print(f"  Saved: {worksheet_file}")
    url = WorksheetExporter(calculations, data_dir, generator).export_worksheet(
        calculation.id, borrower_name=args.borrower
    )
    print(f"  Saved: {url}")

    summary_file = exports / f"{calculation.id}.json"
    summary_file.write_text(json.dumps({
        "calculation_id": calculation.id,
        "monthly_income": str(calculation.result_monthly_income),
        "confidence": calculation.confidence,
        "warnings": [w.message for w in calculation.warnings],
        "missing_inputs": calculation.missing_inputs,
    }, indent=2))
    print(f"  Saved: {summary_file}")

    print()
    print("=" * 70)
    print("Processing Complete!")
    print("=" * 70)
    print()
    print(f"QUALIFYING MONTHLY INCOME: ${calculation.result_monthly_income:,.2f}")
    print(f"Confidence:                {calculation.confidence:.0%}")
    if calculation.requires_review:
        print("RESULT: Needs underwriter review before use")
    if calculation.missing_inputs:
        print("Missing inputs:")
        for item in calculation.missing_inputs:
            print(f"  - {item}")


if __name__ == "__main__":
    main()
