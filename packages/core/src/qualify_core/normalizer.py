"""Income normalization: extracted document fields to monthly income components.

Each successfully extracted document is turned into zero or more
IncomeComponents plus the trace lines that produced them. Annual forms
(W-2, Schedule C, Schedule E, K-1) are grouped per employer, business,
property or entity and averaged across the tax years present. Pay stubs are
annualized from their pay frequency, or from year-to-date figures over the
days elapsed in the year.

Trace line amounts are annual (or whole-period) figures. For every component
the signed trace total divided by ``months_considered`` is the unrounded
monthly amount; rounding to cents happens only when the component is built.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

import structlog

from .config import EngineConfig
from .models.audit import AuditSeverity, AuditSource, IncomeWarning, WarningCode
from .models.calculation import (
    CalculationTraceItem,
    ComponentType,
    IncomeComponent,
    round_currency,
)
from .models.documents import (
    DocumentType,
    IncomeDocument,
    K1Fields,
    OcrStatus,
    PayStubFields,
    ScheduleCFields,
    ScheduleEFields,
    VOEFields,
    W2Fields,
    parse_pay_frequency,
)
from .requirements import AgencyRules, get_agency_rules

logger = structlog.get_logger()


# Fields that must be present after extraction, per document type
REQUIRED_FIELDS: dict[DocumentType, tuple[str, ...]] = {
    DocumentType.W2: ("wages", "tax_year"),
    DocumentType.SCHEDULE_C: ("net_profit", "tax_year"),
    DocumentType.SCHEDULE_E: ("net_income", "tax_year"),
    DocumentType.K1: ("ordinary_income", "tax_year"),
}

GROUPED_TYPES = frozenset(REQUIRED_FIELDS)

UNMAPPED_TYPES = frozenset({DocumentType.FORM_1099, DocumentType.FORM_1040, DocumentType.OTHER})

BASE_TYPES = frozenset({ComponentType.BASE_HOURLY, ComponentType.BASE_SALARY})

# (field prefix, component type, label) for income reported separately on a pay stub
PAY_STUB_SPLITS: tuple[tuple[str, ComponentType, str], ...] = (
    ("ot", ComponentType.OVERTIME, "Overtime"),
    ("bonus", ComponentType.BONUS, "Bonus"),
    ("commission", ComponentType.COMMISSION, "Commission"),
)

_ENTITY_SUFFIXES = re.compile(
    r"\b(inc|incorporated|llc|llp|lp|pllc|corp|corporation|co|company|ltd)\b"
)


def normalize_entity_name(name: Optional[str]) -> Optional[str]:
    """Reduce an employer or business name to a comparison key.

    "ACME Corp." and "Acme Corporation" both become "acme".
    """
    if not name:
        return None
    text = re.sub(r"[^a-z0-9 ]", " ", name.lower())
    text = _ENTITY_SUFFIXES.sub(" ", text)
    key = " ".join(text.split())
    return key or None


def _ein_key(ein: Optional[str]) -> Optional[str]:
    digits = re.sub(r"\D", "", ein or "")
    return digits or None


def ytd_days(period_end: date) -> tuple[int, int]:
    """Days elapsed in the year through ``period_end`` (inclusive), and days in that year."""
    start = date(period_end.year, 1, 1)
    elapsed = (period_end - start).days + 1
    in_year = (date(period_end.year, 12, 31) - start).days + 1
    return elapsed, in_year


@dataclass
class NormalizationResult:
    """Components, trace lines, warnings and missing inputs from normalization."""
    components: list[IncomeComponent] = field(default_factory=list)
    trace: list[CalculationTraceItem] = field(default_factory=list)
    warnings: list[IncomeWarning] = field(default_factory=list)
    missing_inputs: list[str] = field(default_factory=list)

    def extend(self, other: "NormalizationResult") -> None:
        self.components.extend(other.components)
        self.trace.extend(other.trace)
        self.warnings.extend(other.warnings)
        self.missing_inputs.extend(other.missing_inputs)


@dataclass
class _Unit:
    """One normalization unit: a single document or a group of annual forms."""
    kind: str
    documents: list[IncomeDocument] = field(default_factory=list)
    group_key: Optional[str] = None
    missing_fields: list[str] = field(default_factory=list)


class IncomeNormalizer:
    """Convert extracted document fields into qualifying income components.

    Documents are handled in the order given; the calculator passes them
    sorted by creation time, then id, so output order is reproducible.
    Grouped forms are emitted where their first document appears.
    """

    def __init__(
        self,
        rules: Optional[AgencyRules] = None,
        config: Optional[EngineConfig] = None,
    ):
        """
        Initialize normalizer.

        Args:
            rules: Agency rule set (default: Fannie Mae)
            config: Engine settings (pay-frequency fallback, trend threshold)
        """
        self.rules = rules or get_agency_rules("fannie")
        self.config = config or EngineConfig()
        self._decline_threshold = Decimal(str(self.config.declining_trend_threshold))

    def normalize_document(self, document: IncomeDocument) -> NormalizationResult:
        """Normalize a single document."""
        return self.normalize([document])

    def normalize(self, documents: list[IncomeDocument]) -> NormalizationResult:
        """Normalize a borrower's documents.

        Args:
            documents: Documents in processing order. Documents that are not
                at ``success`` status are skipped with a warning.

        Returns:
            NormalizationResult with components and trace in document order
        """
        units = self._plan(documents)

        # Pay stubs run first so W-2 groups can see which employers already
        # have current base pay; output order still follows the plan.
        outputs: dict[int, NormalizationResult] = {}
        paid_employers: set[str] = set()
        for index, unit in enumerate(units):
            if unit.kind == DocumentType.PAY_STUB.value:
                document = unit.documents[0]
                outputs[index] = self._normalize_pay_stub(document)
                employer = normalize_entity_name(document.fields.employer_name)
                if employer and any(
                    c.component_type in BASE_TYPES for c in outputs[index].components
                ):
                    paid_employers.add(employer)

        result = NormalizationResult()
        for index, unit in enumerate(units):
            output = outputs.get(index)
            if output is None:
                output = self._normalize_unit(unit, paid_employers)
            result.extend(output)

        logger.info(
            "documents_normalized",
            documents=len(documents),
            components=len(result.components),
            warnings=len(result.warnings),
            missing_inputs=len(result.missing_inputs),
        )
        return result

    # =========================================================================
    # PLANNING
    # =========================================================================

    def _plan(self, documents: list[IncomeDocument]) -> list[_Unit]:
        units: list[_Unit] = []
        groups: dict[tuple[str, str], _Unit] = {}

        for document in documents:
            if document.ocr_status != OcrStatus.SUCCESS:
                units.append(_Unit(kind="skipped", documents=[document]))
                continue

            if document.document_type in UNMAPPED_TYPES:
                units.append(_Unit(kind="unmapped", documents=[document]))
                continue

            missing = self._missing_fields(document)
            if missing:
                units.append(_Unit(kind="missing", documents=[document], missing_fields=missing))
                continue

            if document.document_type in GROUPED_TYPES:
                group_key = self._group_key(document)
                key = (document.document_type.value, group_key)
                if key not in groups:
                    groups[key] = _Unit(kind=document.document_type.value, group_key=group_key)
                    units.append(groups[key])
                groups[key].documents.append(document)
            else:
                units.append(_Unit(kind=document.document_type.value, documents=[document]))

        return units

    def _missing_fields(self, document: IncomeDocument) -> list[str]:
        fields = document.fields
        if fields is not None and fields.document_type != document.document_type.value:
            fields = None

        if document.document_type == DocumentType.PAY_STUB:
            if fields is None:
                return ["gross_current"]
            has_hourly = fields.hourly_rate is not None and fields.hours_current is not None
            period_end = fields.period_end or document.period_end
            has_ytd = fields.gross_ytd is not None and period_end is not None
            if fields.gross_current is None and not has_hourly and not has_ytd:
                return ["gross_current"]
            return []

        if document.document_type == DocumentType.VOE:
            return [] if fields is not None else ["verified_monthly_income"]

        required = REQUIRED_FIELDS.get(document.document_type, ())
        return [name for name in required if getattr(fields, name, None) is None]

    def _group_key(self, document: IncomeDocument) -> str:
        fields = document.fields
        if isinstance(fields, W2Fields):
            ein = _ein_key(fields.employer_ein)
            if ein:
                return f"ein-{ein}"
            name = normalize_entity_name(fields.employer_name)
        elif isinstance(fields, K1Fields):
            ein = _ein_key(fields.entity_ein)
            if ein:
                return f"ein-{ein}"
            name = normalize_entity_name(fields.entity_name)
        elif isinstance(fields, ScheduleCFields):
            name = normalize_entity_name(fields.business_name)
        elif isinstance(fields, ScheduleEFields):
            name = normalize_entity_name(fields.property_address)
        else:
            name = None
        return name.replace(" ", "-") if name else f"doc-{document.id}"

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def _normalize_unit(self, unit: _Unit, paid_employers: set[str]) -> NormalizationResult:
        if unit.kind == "skipped":
            return self._skipped(unit.documents[0])
        if unit.kind == "unmapped":
            return self._unmapped(unit.documents[0])
        if unit.kind == "missing":
            return self._missing(unit.documents[0], unit.missing_fields)

        fields = unit.documents[0].fields
        if isinstance(fields, W2Fields):
            return self._normalize_w2_group(unit, paid_employers)
        if isinstance(fields, ScheduleCFields):
            return self._normalize_schedule_c_group(unit)
        if isinstance(fields, ScheduleEFields):
            return self._normalize_schedule_e_group(unit)
        if isinstance(fields, K1Fields):
            return self._normalize_k1_group(unit)
        if isinstance(fields, VOEFields):
            return self._normalize_voe(unit.documents[0])
        return self._unmapped(unit.documents[0])

    def _skipped(self, document: IncomeDocument) -> NormalizationResult:
        result = NormalizationResult()
        label = document.document_type.label
        name = document.file_name or document.id
        if document.ocr_status == OcrStatus.FAILED:
            result.warnings.append(self._warning(
                WarningCode.DOCUMENT_EXTRACTION_FAILED,
                f"{label} {name} could not be read and was excluded",
                document,
                actual_value=document.extraction_error,
                suggested_action="Reprocess the document or enter its fields manually",
            ))
        else:
            result.warnings.append(self._warning(
                WarningCode.DOCUMENT_NOT_READY,
                f"{label} {name} is not yet available ({document.ocr_status.value})",
                document,
                severity=AuditSeverity.INFO,
                requires_review=False,
                suggested_action="Recalculate once extraction finishes",
            ))
        return result

    def _unmapped(self, document: IncomeDocument) -> NormalizationResult:
        result = NormalizationResult()
        result.warnings.append(self._warning(
            WarningCode.UNMAPPED_DOCUMENT_TYPE,
            f"Document type {document.document_type.value} could not be auto-calculated; "
            "manual entry required",
            document,
            suggested_action="Add the income as a manual override",
        ))
        return result

    def _missing(self, document: IncomeDocument, missing: list[str]) -> NormalizationResult:
        result = NormalizationResult()
        names = ", ".join(missing)
        result.warnings.append(self._warning(
            WarningCode.MISSING_REQUIRED_FIELD,
            f"{document.document_type.label} {document.file_name or document.id} "
            f"is missing required field(s): {names}",
            document,
            field_name=names,
            suggested_action="Correct the extracted fields and recalculate",
        ))
        return result

    # =========================================================================
    # PAY STUB
    # =========================================================================

    def _normalize_pay_stub(self, document: IncomeDocument) -> NormalizationResult:
        """Annualize one pay stub and split out overtime, bonus and commission."""
        result = NormalizationResult()
        fields: PayStubFields = document.fields
        period_end = fields.period_end or document.period_end
        year = period_end.year if period_end else None
        hourly = fields.hourly_rate is not None and fields.hours_current is not None

        if fields.gross_current is not None or hourly:
            frequency = parse_pay_frequency(fields.pay_frequency)
            if frequency is None:
                frequency = self.config.pay_frequency_fallback
                if self.config.warn_on_frequency_fallback:
                    result.warnings.append(self._warning(
                        WarningCode.PAY_FREQUENCY_DEFAULTED,
                        f"Pay frequency {fields.pay_frequency!r} not recognized; "
                        f"assumed {frequency.value}",
                        document,
                        field_name="pay_frequency",
                        expected_value="weekly, biweekly, semimonthly, monthly or annual",
                        actual_value=fields.pay_frequency,
                        suggested_action="Confirm the pay frequency on the pay stub",
                    ))
            factor = Decimal(frequency.periods_per_year)

            def annualize(value: Decimal) -> Decimal:
                return value * factor

            from_ytd = False
            basis = f"× {frequency.periods_per_year} periods"
            if fields.gross_current is not None:
                gross = fields.gross_current
                gross_line = "Current gross"
                gross_description = f"Gross pay {basis} ({frequency.value})"
            else:
                gross = fields.hourly_rate * fields.hours_current
                gross_line = "Rate × hours"
                gross_description = (
                    f"Hourly rate {fields.hourly_rate} × {fields.hours_current} hours "
                    f"{basis} ({frequency.value})"
                )
            splits = {prefix: getattr(fields, f"{prefix}_current") for prefix, _, _ in PAY_STUB_SPLITS}
            method = f"Current period annualized ({frequency.value}, {frequency.periods_per_year} periods) / 12"
        else:
            # Step: annualize YTD over the days elapsed when no current-period figures were extracted
            elapsed, in_year = ytd_days(period_end)

            def annualize(value: Decimal) -> Decimal:
                return value * in_year / elapsed

            from_ytd = True
            basis = f"YTD × {in_year}/{elapsed} days"
            gross = fields.gross_ytd
            gross_line = "YTD gross"
            gross_description = (
                f"Year-to-date gross pay through {period_end.isoformat()} "
                f"({elapsed} of {in_year} days) annualized"
            )
            splits = {prefix: getattr(fields, f"{prefix}_ytd") for prefix, _, _ in PAY_STUB_SPLITS}
            method = f"YTD annualized over {elapsed} elapsed days / 12"
            result.warnings.append(self._warning(
                WarningCode.YTD_AVERAGE_USED,
                f"No current-period pay found; base income is YTD gross annualized over "
                f"{elapsed} elapsed days",
                document,
                severity=AuditSeverity.INFO,
                requires_review=False,
            ))

        split_values = [
            (component_type, label, splits[prefix])
            for prefix, component_type, label in PAY_STUB_SPLITS
            if splits[prefix] is not None and splits[prefix] > 0
        ]
        split_total = sum((value for _, _, value in split_values), Decimal("0"))
        base_type = ComponentType.BASE_HOURLY if fields.hourly_rate is not None else ComponentType.BASE_SALARY
        employer = fields.employer_name

        if split_total > gross:
            result.warnings.append(self._warning(
                WarningCode.PAY_STUB_SPLIT_EXCEEDS_GROSS,
                f"Overtime, bonus and commission ({split_total}) exceed gross pay ({gross}); "
                "no base income was derived",
                document,
                field_name="gross_current",
                expected_value=f">= {split_total}",
                actual_value=str(gross),
                suggested_action="Check the pay stub earnings breakdown",
            ))
        elif gross - split_total > 0:
            key = f"{base_type.value}:{document.id}"
            lines = [self._line(
                key, document, year=year, form="Pay Stub", line=gross_line,
                description=gross_description, value=annualize(gross),
            )]
            for _, label, value in split_values:
                lines.append(self._line(
                    key, document, year=year, form="Pay Stub", line=label,
                    description=f"{label} reported separately {basis}",
                    value=annualize(value), negate=True,
                ))
            result.trace.extend(lines)
            result.components.append(self._component(
                key, base_type, lines, 12, method,
                source_name=employer, documents=[document], tax_years=[year] if year else [],
            ))

        for component_type, label, value in split_values:
            key = f"{component_type.value}:{document.id}"
            lines = [self._line(
                key, document, year=year, form="Pay Stub", line=label,
                description=f"{label} pay {basis}", value=annualize(value),
            )]
            result.trace.extend(lines)
            result.components.append(self._component(
                key, component_type, lines, 12, method,
                source_name=employer, documents=[document], tax_years=[year] if year else [],
            ))

        if not from_ytd and not split_values:
            result.extend(self._project_ytd_variable(document, period_end))

        logger.debug(
            "pay_stub_normalized",
            document_id=document.id,
            components=[c.key for c in result.components],
        )
        return result

    def _project_ytd_variable(self, document: IncomeDocument, period_end: Optional[date]) -> NormalizationResult:
        """Project YTD overtime, bonus and commission to a monthly amount.

        Used when the current period shows no variable pay of its own. The
        YTD total is annualized over the days elapsed through ``period_end``.
        """
        result = NormalizationResult()
        fields: PayStubFields = document.fields
        ytd_values = [
            (label, getattr(fields, f"{prefix}_ytd"))
            for prefix, _, label in PAY_STUB_SPLITS
        ]
        ytd_values = [(label, value) for label, value in ytd_values if value is not None and value > 0]
        if not ytd_values:
            return result

        if period_end is None:
            result.warnings.append(self._warning(
                WarningCode.MISSING_REQUIRED_FIELD,
                "Year-to-date overtime, bonus or commission found but the pay stub has no "
                "period end date; variable income was not projected",
                document,
                field_name="pay_period_end",
                suggested_action="Correct the pay period end date and recalculate",
            ))
            return result

        elapsed, in_year = ytd_days(period_end)
        key = f"{ComponentType.VARIABLE_INCOME_YTD.value}:{document.id}"
        lines = [
            self._line(
                key, document, year=period_end.year, form="Pay Stub", line=f"{label} YTD",
                description=(
                    f"{label} year-to-date through {period_end.isoformat()} "
                    f"× {in_year}/{elapsed} days"
                ),
                value=value * in_year / elapsed,
            )
            for label, value in ytd_values
        ]
        result.trace.extend(lines)
        result.components.append(self._component(
            key, ComponentType.VARIABLE_INCOME_YTD, lines, 12,
            "YTD variable income projected to annual / 12",
            source_name=fields.employer_name, documents=[document], tax_years=[period_end.year],
        ))
        result.warnings.append(self._warning(
            WarningCode.VARIABLE_INCOME_FROM_YTD,
            f"Variable income for {fields.employer_name or document.file_name or document.id} "
            "projected from pay stub YTD; two years of W-2s are recommended for trending",
            document,
            requires_review=False,
            suggested_action="Provide two years of W-2s to trend overtime, bonus and commission",
        ))
        return result

    # =========================================================================
    # ANNUAL FORMS
    # =========================================================================

    def _normalize_w2_group(self, unit: _Unit, paid_employers: set[str]) -> NormalizationResult:
        employer = self._first_value(unit.documents, "employer_name")
        names = {
            normalize_entity_name(d.fields.employer_name)
            for d in unit.documents
            if d.fields.employer_name
        }
        if names & paid_employers:
            result = NormalizationResult()
            result.warnings.append(self._warning(
                WarningCode.W2_SUPERSEDED_BY_PAY_STUB,
                f"W-2 wages from {employer} not counted; current pay stub income "
                "from the same employer is used instead",
                unit.documents[-1],
                severity=AuditSeverity.INFO,
                requires_review=False,
            ))
            return result

        def w2_lines(document: IncomeDocument, key: str) -> list[CalculationTraceItem]:
            fields: W2Fields = document.fields
            return [self._line(
                key, document, year=fields.tax_year, form="W-2", line="Box 1",
                description=f"Wages, tips, other compensation ({fields.employer_name or 'employer'})",
                value=fields.wages,
            )]

        return self._average_annual_group(
            unit,
            component_type=ComponentType.W2_INCOME,
            source_name=employer,
            build_lines=w2_lines,
        )

    def _normalize_schedule_c_group(self, unit: _Unit) -> NormalizationResult:
        meals_rate = self.rules.meals_addback_rate

        def schedule_c_lines(document: IncomeDocument, key: str) -> list[CalculationTraceItem]:
            fields: ScheduleCFields = document.fields
            year = fields.tax_year
            lines = [self._line(
                key, document, year=year, form="Schedule C", line="Line 31",
                description="Net profit or (loss)", value=fields.net_profit,
            )]
            add_backs = (
                ("Line 13", "Depreciation add-back", fields.depreciation),
                ("Line 12", "Depletion add-back", fields.depletion),
                ("Line 30", "Business use of home add-back", fields.home_office_deduction),
            )
            for line, description, value in add_backs:
                if value:
                    lines.append(self._line(
                        key, document, year=year, form="Schedule C", line=line,
                        description=description, value=value,
                    ))
            if fields.meals:
                lines.append(self._line(
                    key, document, year=year, form="Schedule C", line="Line 24b",
                    description=f"Meals add-back ({meals_rate * 100:.0f}%)",
                    value=fields.meals * meals_rate,
                ))
            return lines

        return self._average_annual_group(
            unit,
            component_type=ComponentType.SELF_EMPLOYMENT,
            source_name=self._first_value(unit.documents, "business_name"),
            build_lines=schedule_c_lines,
        )

    def _normalize_schedule_e_group(self, unit: _Unit) -> NormalizationResult:
        factor = self.rules.rental_vacancy_factor

        def schedule_e_lines(document: IncomeDocument, key: str) -> list[CalculationTraceItem]:
            fields: ScheduleEFields = document.fields
            net = fields.net_income
            return [
                self._line(
                    key, document, year=fields.tax_year, form="Schedule E", line="Line 21",
                    description=f"Rental income or (loss) ({fields.property_address or 'property'})",
                    value=net,
                ),
                self._line(
                    key, document, year=fields.tax_year, form="Schedule E", line="Line 21",
                    description=f"Vacancy factor (qualify {factor * 100:.0f}% of net rents)",
                    value=net * factor - net,
                ),
            ]

        return self._average_annual_group(
            unit,
            component_type=ComponentType.RENTAL,
            source_name=self._first_value(unit.documents, "property_address"),
            build_lines=schedule_e_lines,
        )

    def _normalize_k1_group(self, unit: _Unit) -> NormalizationResult:
        def k1_lines(document: IncomeDocument, key: str) -> list[CalculationTraceItem]:
            fields: K1Fields = document.fields
            year = fields.tax_year
            pct = fields.allocation_pct
            lines = [self._line(
                key, document, year=year, form="Schedule K-1", line="Box 1",
                description=f"Ordinary business income ({fields.entity_name or 'entity'})",
                value=fields.ordinary_income, allocation_pct=pct,
            )]
            if pct is not None and pct < 100:
                allocated = fields.ordinary_income * pct / 100
                lines.append(self._line(
                    key, document, year=year, form="Schedule K-1", line="Box 1",
                    description=f"Allocation to {pct}% ownership",
                    value=allocated - fields.ordinary_income, allocation_pct=pct,
                ))
            if fields.guaranteed_payments:
                lines.append(self._line(
                    key, document, year=year, form="Schedule K-1", line="Box 4",
                    description="Guaranteed payments to partner",
                    value=fields.guaranteed_payments,
                ))
            return lines

        latest = max(unit.documents, key=lambda d: d.fields.tax_year)
        component_type = (
            ComponentType.PARTNERSHIP_K1_INCOME
            if latest.fields.form_type == "1065"
            else ComponentType.K1_INCOME
        )
        return self._average_annual_group(
            unit,
            component_type=component_type,
            source_name=self._first_value(unit.documents, "entity_name"),
            build_lines=k1_lines,
        )

    def _average_annual_group(
        self,
        unit: _Unit,
        component_type: ComponentType,
        source_name: Optional[str],
        build_lines: Callable[[IncomeDocument, str], list[CalculationTraceItem]],
    ) -> NormalizationResult:
        """Average one employer/business/property/entity across its tax years.

        A later document for an already-seen tax year replaces the earlier one.
        Monthly amount is the signed trace total over 12 months per year.
        """
        result = NormalizationResult()
        key = f"{component_type.value}:{unit.group_key}"
        label = unit.documents[0].document_type.label

        by_year: dict[int, IncomeDocument] = {}
        for document in unit.documents:
            year = document.fields.tax_year
            if year in by_year:
                result.warnings.append(self._warning(
                    WarningCode.DUPLICATE_TAX_YEAR,
                    f"Two {label} documents for {source_name or unit.group_key} in {year}; "
                    f"using {document.file_name or document.id}",
                    by_year[year],
                    severity=AuditSeverity.INFO,
                    requires_review=False,
                ))
            by_year[year] = document

        years = sorted(by_year)
        lines: list[CalculationTraceItem] = []
        yearly_totals: dict[int, Decimal] = {}
        for year in years:
            year_lines = build_lines(by_year[year], key)
            lines.extend(year_lines)
            yearly_totals[year] = sum((item.signed_amount for item in year_lines), Decimal("0"))

        trend_direction, trend_percentage = self._trend(yearly_totals)
        latest_document = by_year[years[-1]]

        if len(years) == 1:
            result.warnings.append(self._warning(
                WarningCode.SINGLE_YEAR_HISTORY,
                f"Only one year of {label} history for {source_name or unit.group_key} ({years[0]})",
                latest_document,
                requires_review=False,
                suggested_action="Provide the prior year's document if available",
            ))
        if trend_percentage is not None and -trend_percentage / 100 > self._decline_threshold:
            result.warnings.append(self._warning(
                WarningCode.DECLINING_INCOME,
                f"{label} income for {source_name or unit.group_key} declined "
                f"{abs(trend_percentage)}% from {years[-2]} to {years[-1]}",
                latest_document,
                expected_value=f"decline <= {self._decline_threshold * 100:.0f}%",
                actual_value=f"{trend_percentage}%",
                suggested_action="Review whether the most recent year should be used alone",
            ))

        total = sum(yearly_totals.values(), Decimal("0"))
        if total <= 0:
            if total < 0:
                result.warnings.append(self._warning(
                    WarningCode.NEGATIVE_INCOME,
                    f"{label} income for {source_name or unit.group_key} averages a loss; "
                    "no qualifying income counted",
                    latest_document,
                    actual_value=str(total),
                ))
            return result

        months = 12 * len(years)
        year_list = ", ".join(str(y) for y in years)
        result.trace.extend(lines)
        result.components.append(self._component(
            key,
            component_type,
            lines,
            months,
            f"{months}-month average of tax years {year_list}",
            source_name=source_name,
            documents=[by_year[y] for y in years],
            tax_years=years,
            trend_direction=trend_direction,
            trend_percentage=trend_percentage,
        ))
        return result

    def _trend(self, yearly_totals: dict[int, Decimal]) -> tuple[Optional[str], Optional[Decimal]]:
        """Direction and percent change between the two most recent years."""
        if len(yearly_totals) < 2:
            return None, None
        years = sorted(yearly_totals)
        prior = yearly_totals[years[-2]]
        latest = yearly_totals[years[-1]]
        if prior <= 0:
            return None, None
        pct = round_currency((latest - prior) / prior * 100)
        if pct > 0:
            return "increasing", pct
        if pct < 0:
            return "declining", pct
        return "stable", pct

    # =========================================================================
    # VOE
    # =========================================================================

    def _normalize_voe(self, document: IncomeDocument) -> NormalizationResult:
        result = NormalizationResult()
        fields: VOEFields = document.fields
        employer = fields.employer_name or document.file_name or document.id

        likelihood = (fields.probability_of_continued_employment or "").strip().lower()
        if likelihood and likelihood != "good":
            result.warnings.append(self._warning(
                WarningCode.EMPLOYMENT_CONTINUANCE_UNCERTAIN,
                f"Employer {employer} reports probability of continued employment "
                f"as {fields.probability_of_continued_employment!r}",
                document,
                field_name="probability_of_continued_employment",
                expected_value="good",
                actual_value=fields.probability_of_continued_employment,
            ))

        prior = fields.prior_year_earnings
        earlier = fields.prior_year2_earnings
        if prior is not None and earlier is not None and earlier > 0:
            decline = (earlier - prior) / earlier
            if decline > self._decline_threshold:
                result.warnings.append(self._warning(
                    WarningCode.DECLINING_INCOME,
                    f"VOE earnings at {employer} declined {round_currency(decline * 100)}% "
                    "year over year",
                    document,
                    expected_value=f"decline <= {self._decline_threshold * 100:.0f}%",
                    actual_value=f"{earlier} -> {prior}",
                ))

        amount = fields.verified_monthly_income
        if amount is None or amount <= 0:
            result.missing_inputs.append(f"Verified monthly income for VOE ({employer})")
            return result

        key = f"{ComponentType.VOE_VERIFIED.value}:{document.id}"
        lines = [self._line(
            key, document, form="VOE", line="Verified income",
            description=f"Verified monthly income ({employer})", value=amount,
        )]
        result.trace.extend(lines)
        result.components.append(self._component(
            key, ComponentType.VOE_VERIFIED, lines, None,
            "Verified monthly income from VOE",
            source_name=fields.employer_name, documents=[document],
        ))
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _line(
        self,
        key: str,
        document: IncomeDocument,
        *,
        form: str,
        line: Optional[str],
        description: str,
        value: Decimal,
        year: Optional[int] = None,
        allocation_pct: Optional[Decimal] = None,
        negate: bool = False,
    ) -> CalculationTraceItem:
        """Build a trace line; the sign follows the signed value."""
        signed = -value if negate else value
        return CalculationTraceItem(
            year=year,
            form=form,
            line=line,
            description=description,
            amount=abs(signed),
            sign="-" if signed < 0 else "+",
            allocated_to=key,
            allocation_pct=allocation_pct,
            document_id=document.id,
        )

    def _component(
        self,
        key: str,
        component_type: ComponentType,
        lines: list[CalculationTraceItem],
        months: Optional[int],
        method: str,
        *,
        source_name: Optional[str],
        documents: list[IncomeDocument],
        tax_years: Optional[list[int]] = None,
        trend_direction: Optional[str] = None,
        trend_percentage: Optional[Decimal] = None,
    ) -> IncomeComponent:
        total = sum((item.signed_amount for item in lines), Decimal("0"))
        monthly = round_currency(total / (months or 1))
        return IncomeComponent(
            key=key,
            component_type=component_type,
            monthly_amount=monthly,
            calculation_method=method,
            months_considered=months,
            source_name=source_name,
            source_document_ids=[d.id for d in documents],
            tax_years=tax_years or [],
            trend_direction=trend_direction,
            trend_percentage=trend_percentage,
        )

    def _warning(
        self,
        code: WarningCode,
        message: str,
        document: Optional[IncomeDocument] = None,
        *,
        field_name: Optional[str] = None,
        expected_value: Optional[str] = None,
        actual_value: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.WARNING,
        requires_review: bool = True,
        suggested_action: Optional[str] = None,
    ) -> IncomeWarning:
        source = None
        if document is not None:
            source = AuditSource(
                document_id=document.id,
                document_type=document.document_type.value,
                file_name=document.file_name,
                tax_year=document.tax_year,
                extraction_method=document.extraction_method,
                confidence=document.extraction_confidence,
            )
        return IncomeWarning(
            code=code,
            message=message,
            document_id=document.id if document else None,
            source=source,
            field_name=field_name,
            expected_value=expected_value,
            actual_value=actual_value,
            severity=severity,
            requires_review=requires_review,
            suggested_action=suggested_action,
        )

    @staticmethod
    def _first_value(documents: list[IncomeDocument], name: str) -> Optional[str]:
        for document in documents:
            value = getattr(document.fields, name, None)
            if value:
                return value
        return None


__all__ = [
    "REQUIRED_FIELDS",
    "NormalizationResult",
    "IncomeNormalizer",
    "normalize_entity_name",
    "ytd_days",
]
