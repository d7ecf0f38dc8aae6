"""Monthly income worksheet rendering for stored calculations.

This module renders a stored IncomeCalculation in the layout of the Fannie Mae
Form 1084 cash-flow worksheet: income grouped into base, variable,
self-employment, rental and other sections, followed by review items and the
line-by-line calculation trace. Rendering never recomputes anything.
"""

import html
from dataclasses import dataclass, field
from decimal import Decimal
from io import BytesIO
from pathlib import Path
from typing import Optional, Union

import structlog
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .exceptions import PersistenceError
from .models.calculation import ComponentType, IncomeCalculation, IncomeComponent
from .requirements import AGENCY_RULES, get_program_label
from .store import CalculationRecordStore

logger = structlog.get_logger()

WORKSHEET_CATEGORIES: list[tuple[str, frozenset[ComponentType]]] = [
    ("Base Income", frozenset({
        ComponentType.BASE_HOURLY,
        ComponentType.BASE_SALARY,
        ComponentType.W2_INCOME,
        ComponentType.VOE_VERIFIED,
    })),
    ("Variable Income", frozenset({
        ComponentType.OVERTIME,
        ComponentType.BONUS,
        ComponentType.COMMISSION,
        ComponentType.VARIABLE_INCOME_YTD,
    })),
    ("Self-Employment Income", frozenset({ComponentType.SELF_EMPLOYMENT})),
    ("Rental Income", frozenset({ComponentType.RENTAL})),
    ("Other Income", frozenset({
        ComponentType.K1_INCOME,
        ComponentType.PARTNERSHIP_K1_INCOME,
        ComponentType.CCORP_INCOME,
        ComponentType.FARM_INCOME,
        ComponentType.OTHER,
    })),
]

SUPPORTED_FORMATS = ("text", "markdown", "html", "pdf")


@dataclass
class ReportSection:
    """A section of the worksheet."""
    title: str
    content: str
    subsections: list["ReportSection"] = field(default_factory=list)


def categorize_components(
    components: list[IncomeComponent],
) -> list[tuple[str, list[IncomeComponent], Decimal]]:
    """Group components into worksheet sections with subtotals, in worksheet order."""
    grouped = []
    for title, types in WORKSHEET_CATEGORIES:
        members = [c for c in components if c.component_type in types]
        subtotal = sum((c.monthly_amount for c in members), Decimal("0"))
        grouped.append((title, members, subtotal))
    return grouped


def component_label(component: IncomeComponent) -> str:
    label = component.component_type.value.replace("_", " ").title()
    if component.source_name:
        label = f"{label} - {component.source_name}"
    if component.is_override:
        label = f"{label} (override)"
    return label


def _money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


class WorksheetGenerator:
    """
    Generate monthly income worksheets from stored calculations.

    Worksheets include:
    - Header with borrower, agency and loan program
    - Income sections with subtotals and the qualifying total
    - Warnings and missing inputs that need review
    - Manual overrides
    - The full calculation trace
    """

    TITLE = "MONTHLY INCOME CALCULATION WORKSHEET"

    def __init__(self):
        """Initialize the worksheet generator."""
        self._sections: list[ReportSection] = []

    def generate(
        self,
        calculation: IncomeCalculation,
        format: str = "text",
        borrower_name: Optional[str] = None,
    ) -> Union[str, bytes]:
        """
        Render a worksheet.

        Args:
            calculation: Stored calculation with components and trace
            format: Output format ("text", "markdown", "html", "pdf")
            borrower_name: Display name; the borrower id is shown when omitted

        Returns:
            Formatted worksheet string, or bytes for PDF format

        Raises:
            ValueError: If the format is not supported.
        """
        if format not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported worksheet format: {format}")

        self._sections = []
        self._add_header(calculation, borrower_name)
        self._add_income_sections(calculation)
        self._add_summary(calculation)
        if calculation.warnings:
            self._add_warnings(calculation)
        if calculation.missing_inputs:
            self._add_missing_inputs(calculation)
        if calculation.overrides:
            self._add_overrides(calculation)
        self._add_trace(calculation)

        if format == "markdown":
            return self._format_markdown()
        elif format == "html":
            return self._format_html()
        elif format == "pdf":
            return self._format_pdf(calculation, borrower_name)
        return self._format_text()

    def _header_rows(self, calculation: IncomeCalculation, borrower_name: Optional[str]) -> list[tuple[str, str]]:
        rules = AGENCY_RULES.get(calculation.agency)
        return [
            ("Borrower", borrower_name or calculation.borrower_id),
            ("Agency", rules.label if rules else calculation.agency),
            ("Loan Program", get_program_label(calculation.loan_program) or calculation.loan_program),
            ("Calculated", calculation.created_at.strftime("%B %d, %Y")),
            ("Calculation ID", calculation.id),
            ("Rules Version", calculation.calculation_version),
            ("Status", calculation.status.value.replace("_", " ").title()),
        ]

    def _add_header(self, calculation: IncomeCalculation, borrower_name: Optional[str]) -> None:
        lines = [self.TITLE, "=" * len(self.TITLE), ""]
        for label, value in self._header_rows(calculation, borrower_name):
            lines.append(f"{label + ':':<16}{value}")
        self._sections.append(ReportSection(title="Header", content="\n".join(lines)))

    def _add_income_sections(self, calculation: IncomeCalculation) -> None:
        for title, members, subtotal in categorize_components(calculation.components):
            if not members:
                continue
            lines = []
            for component in members:
                months = f"{component.months_considered} mo" if component.months_considered else "-"
                lines.append(f"{component_label(component):<46} {months:>7} {_money(component.monthly_amount):>14}")
                lines.append(f"    {component.calculation_method}")
                if component.trend_direction:
                    lines.append(f"    Trend: {component.trend_direction} ({component.trend_percentage}%)")
            lines.append("-" * 69)
            lines.append(f"{'Subtotal':<54} {_money(subtotal):>14}")
            self._sections.append(ReportSection(title=title, content="\n".join(lines)))

    def _add_summary(self, calculation: IncomeCalculation) -> None:
        lines = []
        for title, members, subtotal in categorize_components(calculation.components):
            lines.append(f"{title + ':':<40} {_money(subtotal):>14}")
        lines.append("-" * 55)
        lines.append(f"{'TOTAL QUALIFYING MONTHLY INCOME:':<40} {_money(calculation.result_monthly_income):>14}")
        lines.append(f"{'Annual equivalent:':<40} {_money(calculation.annual_income):>14}")
        lines.append(f"{'Extraction confidence:':<40} {calculation.confidence:>14.0%}")
        self._sections.append(ReportSection(title="Income Summary", content="\n".join(lines)))

    def _add_warnings(self, calculation: IncomeCalculation) -> None:
        lines = []
        for warning in calculation.warnings:
            marker = "[REVIEW]" if warning.requires_review else "[INFO]"
            lines.append(f"{marker} {warning.code.value}: {warning.message}")
            if warning.source is not None:
                lines.append(f"    Source: {warning.source.to_reference_string()}")
        self._sections.append(ReportSection(title="Warnings", content="\n".join(lines)))

    def _add_missing_inputs(self, calculation: IncomeCalculation) -> None:
        content = "\n".join(f"- {item}" for item in calculation.missing_inputs)
        self._sections.append(ReportSection(title="Missing Inputs", content=content))

    def _add_overrides(self, calculation: IncomeCalculation) -> None:
        lines = []
        for key, amount in calculation.overrides.items():
            original = next(
                (c.monthly_amount for c in calculation.computed_components if c.key == key),
                None,
            )
            was = f" (computed {_money(original)})" if original is not None else " (added manually)"
            lines.append(f"{key}: {_money(amount)}{was}")
        self._sections.append(ReportSection(title="Manual Overrides", content="\n".join(lines)))

    def _add_trace(self, calculation: IncomeCalculation) -> None:
        lines = []
        for item in calculation.calculation_trace:
            year = str(item.year) if item.year else ""
            line = f" {item.line}" if item.line else ""
            allocation = f" [{item.allocation_pct}% allocation]" if item.allocation_pct is not None else ""
            lines.append(
                f"{item.sign} {_money(item.amount):>14}  {year:<4} {item.form}{line}: "
                f"{item.description}{allocation} -> {item.allocated_to}"
            )
        content = "\n".join(lines) if lines else "No trace lines."
        self._sections.append(ReportSection(title="Calculation Trace", content=content))

    def _format_text(self) -> str:
        """Format worksheet as plain text."""
        output = []

        for section in self._sections:
            if section.title != "Header":
                output.append("")
                output.append("=" * 69)
                output.append(section.title.upper())
                output.append("=" * 69)
            output.append(section.content)

        output.append("")
        output.append("=" * 69)
        output.append("END OF WORKSHEET")
        output.append("=" * 69)
        return "\n".join(output)

    def _format_markdown(self) -> str:
        """Format worksheet as Markdown."""
        output = []

        for section in self._sections:
            if section.title == "Header":
                output.append(f"# {self.TITLE.title()}\n")
                output.append("```")
                output.append(section.content)
                output.append("```")
            else:
                output.append(f"\n## {section.title}\n")
                output.append("```")
                output.append(section.content)
                output.append("```")

        return "\n".join(output)

    def _format_html(self) -> str:
        """Format worksheet as HTML."""
        lines = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            "<title>Monthly Income Calculation Worksheet</title>",
            "<style>",
            "body { font-family: 'Times New Roman', Times, serif; margin: 40px; }",
            "h2 { color: #2c5282; border-bottom: 2px solid #2c5282; padding-bottom: 5px; }",
            "pre { background: #f5f5f5; padding: 15px; overflow-x: auto; }",
            "</style>",
            "</head>",
            "<body>",
        ]

        for section in self._sections:
            if section.title != "Header":
                lines.append(f"<h2>{html.escape(section.title)}</h2>")
            lines.append(f"<pre>{html.escape(section.content)}</pre>")

        lines.append("</body>")
        lines.append("</html>")
        return "\n".join(lines)

    def _format_pdf(self, calculation: IncomeCalculation, borrower_name: Optional[str]) -> bytes:
        """Format worksheet as a PDF using reportlab."""
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=0.6 * inch,
            leftMargin=0.6 * inch,
            topMargin=0.6 * inch,
            bottomMargin=0.6 * inch,
            title="Monthly Income Calculation Worksheet",
        )

        styles = getSampleStyleSheet()
        styles.add(ParagraphStyle(
            name='ReportTitle',
            parent=styles['Heading1'],
            fontSize=16,
            spaceAfter=14,
            alignment=TA_CENTER,
            textColor=colors.HexColor('#1a365d'),
        ))
        styles.add(ParagraphStyle(
            name='SectionHeading',
            parent=styles['Heading2'],
            fontSize=12,
            spaceAfter=8,
            spaceBefore=14,
            textColor=colors.HexColor('#2c5282'),
        ))
        styles.add(ParagraphStyle(
            name='CellText',
            parent=styles['Normal'],
            fontSize=8,
            leading=10,
        ))

        elements = []
        elements.append(Paragraph(self.TITLE, styles['ReportTitle']))

        header_table = Table(
            [[f"{label}:", value] for label, value in self._header_rows(calculation, borrower_name)],
            colWidths=[1.5 * inch, 5 * inch],
        )
        header_table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTNAME', (1, 0), (1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('ALIGN', (0, 0), (0, -1), 'RIGHT'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
        ]))
        elements.append(header_table)

        for title, members, subtotal in categorize_components(calculation.components):
            if not members:
                continue
            elements.append(Paragraph(title, styles['SectionHeading']))
            rows = [["Component", "Method", "Months", "Monthly"]]
            for component in members:
                rows.append([
                    Paragraph(html.escape(component_label(component)), styles['CellText']),
                    Paragraph(html.escape(component.calculation_method), styles['CellText']),
                    str(component.months_considered or "-"),
                    _money(component.monthly_amount),
                ])
            rows.append(["Subtotal", "", "", _money(subtotal)])
            table = Table(rows, colWidths=[2.2 * inch, 3.0 * inch, 0.6 * inch, 1.2 * inch])
            table.setStyle(TableStyle([
                ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#2c5282')),
                ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
                ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
                ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
                ('FONTSIZE', (0, 0), (-1, -1), 8),
                ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
                ('VALIGN', (0, 0), (-1, -1), 'TOP'),
                ('LINEABOVE', (0, -1), (-1, -1), 1, colors.grey),
                ('GRID', (0, 0), (-1, -2), 0.25, colors.HexColor('#cbd5e0')),
            ]))
            elements.append(table)

        elements.append(Spacer(1, 0.15 * inch))
        total_table = Table(
            [["TOTAL QUALIFYING MONTHLY INCOME", _money(calculation.result_monthly_income)]],
            colWidths=[5.8 * inch, 1.2 * inch],
        )
        total_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, -1), colors.HexColor('#1a365d')),
            ('TEXTCOLOR', (0, 0), (-1, -1), colors.white),
            ('FONTNAME', (0, 0), (-1, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('ALIGN', (1, 0), (1, 0), 'RIGHT'),
            ('TOPPADDING', (0, 0), (-1, -1), 6),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ]))
        elements.append(total_table)

        # Review sections reuse the text rendering
        for section in self._sections:
            if section.title in ("Warnings", "Missing Inputs", "Manual Overrides", "Calculation Trace"):
                elements.append(Paragraph(section.title, styles['SectionHeading']))
                for line in section.content.split("\n"):
                    elements.append(Paragraph(html.escape(line), styles['CellText']))

        doc.build(elements)
        return buffer.getvalue()


class WorksheetExporter:
    """Render stored calculations to PDF files under ``<data_dir>/exports``."""

    def __init__(
        self,
        calculation_store: CalculationRecordStore,
        data_dir: Union[str, Path],
        generator: Optional[WorksheetGenerator] = None,
    ):
        self.calculations = calculation_store
        self.export_dir = Path(data_dir) / "exports"
        self.generator = generator or WorksheetGenerator()

    def export_worksheet(self, calculation_id: str, borrower_name: Optional[str] = None) -> str:
        """
        Write the worksheet PDF for a stored calculation.

        Returns:
            ``file://`` URL of the written PDF.

        Raises:
            RecordNotFoundError: If the calculation does not exist.
            PersistenceError: If the file cannot be written.
        """
        calculation = self.calculations.get(calculation_id)
        content = self.generator.generate(calculation, format="pdf", borrower_name=borrower_name)

        path = self.export_dir / f"{calculation.id}.pdf"
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise PersistenceError(
                f"Failed to write worksheet: {e}",
                operation="export_worksheet",
                record_id=calculation_id,
            ) from e

        logger.info(
            "worksheet_exported",
            calculation_id=calculation_id,
            path=str(path),
            size=len(content),
        )
        return path.resolve().as_uri()


__all__ = [
    "WORKSHEET_CATEGORIES",
    "SUPPORTED_FORMATS",
    "ReportSection",
    "categorize_components",
    "component_label",
    "WorksheetGenerator",
    "WorksheetExporter",
]
