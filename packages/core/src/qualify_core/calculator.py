"""Qualifying monthly income calculation per agency income rules.

The calculator reads one point-in-time snapshot of a borrower's documents,
normalizes them into income components, applies manual overrides, sums the
result and scores confidence. Every step is logged for the audit trail and
the finished calculation is persisted as a new, immutable record.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import uuid4

import structlog

from .config import EngineConfig
from .exceptions import InvalidInputError, PersistenceError
from .models.audit import AuditSeverity, AuditTrail, IncomeWarning, WarningCode
from .models.calculation import (
    CalculationStatus,
    CalculationTraceItem,
    ComponentType,
    IncomeCalculation,
    IncomeComponent,
    round_currency,
)
from .models.documents import DocumentType, Form1040Fields, IncomeDocument
from .normalizer import IncomeNormalizer
from .requirements import find_missing_documents, get_agency_rules, get_program_requirements
from .store import CalculationRecordStore, DocumentStore

logger = structlog.get_logger()

SELF_EMPLOYMENT_TYPES = frozenset({DocumentType.SCHEDULE_C, DocumentType.K1, DocumentType.FORM_1099})

OverrideValue = Union[Decimal, int, float, str]


class IncomeCalculator:
    """
    Calculate qualifying monthly income for a borrower.

    Document-level problems never abort a run. They become warnings and
    missing inputs on the result; only unknown agency or loan program values
    and storage failures are raised.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        calculation_store: CalculationRecordStore,
        config: Optional[EngineConfig] = None,
    ):
        """
        Initialize calculator.

        Args:
            document_store: Source of borrower documents (read as snapshots)
            calculation_store: Destination for finished calculations
            config: Engine defaults (default agency, loan program, pay-frequency fallback)
        """
        self.document_store = document_store
        self.calculation_store = calculation_store
        self.config = config or EngineConfig()
        self._last_trail: Optional[AuditTrail] = None

    @property
    def last_trail(self) -> Optional[AuditTrail]:
        """Audit trail of the most recently finished run."""
        return self._last_trail

    @staticmethod
    def _log_step(
        trail: AuditTrail,
        step: str,
        action: str,
        input_value: str,
        output_value: str,
        notes: Optional[str] = None,
    ) -> None:
        """Add an entry to the run's audit log."""
        trail.add_entry(
            step=step,
            action=action,
            input_value=input_value,
            output_value=output_value,
            notes=notes,
        )
        logger.info(
            "calculation_step",
            step=step,
            input=input_value,
            output=output_value,
            calculation_id=trail.run_id,
        )

    def calculate(
        self,
        borrower_id: str,
        agency: Optional[str] = None,
        loan_program: Optional[str] = None,
        overrides: Optional[dict[str, OverrideValue]] = None,
        config: Optional[EngineConfig] = None,
    ) -> IncomeCalculation:
        """
        Calculate and persist qualifying monthly income.

        Args:
            borrower_id: Borrower whose documents are used
            agency: Agency rule set ("fannie", "freddie"); default from config
            loan_program: Loan program key; default from config
            overrides: Component key (or component type) -> forced monthly amount.
                Unknown keys add a manual component.
            config: Engine settings for this call only

        Returns:
            The stored IncomeCalculation

        Raises:
            InvalidInputError: Unknown agency, loan program or a bad override value.
                Nothing is read or written.
            PersistenceError: The record could not be written. Nothing was stored.
        """
        config = config or self.config
        agency_key = (agency or config.default_agency).strip().lower()
        program_key = (loan_program or config.default_loan_program).strip().lower()

        # Step 0: Validate inputs before touching any store
        rules = get_agency_rules(agency_key)
        get_program_requirements(program_key)
        override_map = self._validate_overrides(overrides)

        calculation_id = str(uuid4())
        trail = AuditTrail(
            run_id=calculation_id,
            metadata={
                "borrower_id": borrower_id,
                "agency": agency_key,
                "loan_program": program_key,
                "calculation_version": rules.calculation_version,
            },
        )

        # Step 1: Snapshot documents once, in deterministic order
        trail.set_status(CalculationStatus.COLLECTING_DOCUMENTS.value)
        documents = sorted(self.document_store.snapshot(borrower_id), key=lambda d: d.sort_key())
        available = [d for d in documents if d.is_available]
        trail.source_documents = [d.id for d in available]
        self._log_step(
            trail,
            step="collect_documents",
            action="Snapshot borrower documents",
            input_value=f"borrower={borrower_id}",
            output_value=f"documents={len(documents)}, available={len(available)}",
        )

        # Step 2: Normalize
        trail.set_status(CalculationStatus.NORMALIZING.value)
        normalized = IncomeNormalizer(rules, config).normalize(documents)
        computed = [
            c.model_copy(update={"calculation_id": calculation_id})
            for c in normalized.components
        ]
        for component in computed:
            self._log_step(
                trail,
                step=f"component_{component.component_type.value}",
                action=component.calculation_method,
                input_value=", ".join(component.source_document_ids),
                output_value=str(component.monthly_amount),
                notes=component.key,
            )

        # Step 3: Required documents
        trail.set_status(CalculationStatus.AGGREGATING.value)
        self_employed = self._is_self_employed(available)
        present = {d.document_type for d in available}
        missing_inputs = list(normalized.missing_inputs)
        missing_inputs.extend(find_missing_documents(program_key, present, self_employed))
        self._log_step(
            trail,
            step="document_requirements",
            action=f"Check {program_key} document requirements",
            input_value=f"present={sorted(t.value for t in present)}, self_employed={self_employed}",
            output_value=f"missing={missing_inputs}",
        )

        # Step 4: Apply overrides
        warnings: list[IncomeWarning] = list(normalized.warnings)
        components, override_trace, override_warnings = self._apply_overrides(
            computed, normalized.trace, override_map, calculation_id, trail
        )
        warnings.extend(override_warnings)
        trace = list(normalized.trace) + override_trace

        # Step 5: Sum, rounding only here
        total = round_currency(sum((c.monthly_amount for c in components), Decimal("0")))
        self._log_step(
            trail,
            step="sum_components",
            action="Sum component monthly amounts",
            input_value=" + ".join(str(c.monthly_amount) for c in components) or "0",
            output_value=str(total),
        )

        # Step 6: Confidence
        confidence = self._calculate_confidence(components, available)
        self._log_step(
            trail,
            step="confidence",
            action="Contribution-weighted extraction confidence",
            input_value=f"components={len(components)}",
            output_value=str(confidence),
        )

        for warning in warnings:
            trail.add_warning(warning)
        status = (
            CalculationStatus.COMPLETE_WITH_WARNINGS
            if warnings or missing_inputs
            else CalculationStatus.COMPLETE
        )
        trail.complete(status.value)

        # Step 7: Assemble the immutable record
        calculation = IncomeCalculation(
            id=calculation_id,
            borrower_id=borrower_id,
            agency=agency_key,
            loan_program=program_key,
            status=status,
            result_monthly_income=total,
            confidence=confidence,
            warnings=warnings,
            missing_inputs=missing_inputs,
            overrides=override_map,
            components=components,
            computed_components=computed,
            calculation_trace=trace,
            audit_log=list(trail.entries),
            calculation_version=rules.calculation_version,
            document_ids=[d.id for d in available],
        )

        # Step 8: Persist atomically
        try:
            self.calculation_store.create(calculation, components, trace)
        except PersistenceError as e:
            logger.error(
                "calculation_persist_failed",
                calculation_id=calculation_id,
                borrower_id=borrower_id,
                error=str(e),
            )
            raise

        self._last_trail = trail
        logger.info("calculation_complete", **trail.summary())
        return calculation

    def _validate_overrides(
        self, overrides: Optional[dict[str, OverrideValue]]
    ) -> dict[str, Decimal]:
        result: dict[str, Decimal] = {}
        for key, value in (overrides or {}).items():
            if not isinstance(key, str) or not key.strip():
                raise InvalidInputError(
                    "Override keys must be non-empty strings",
                    field="overrides",
                    value=key,
                )
            try:
                amount = Decimal(str(value))
            except (InvalidOperation, ValueError):
                raise InvalidInputError(
                    f"Override for {key} is not a number",
                    field="overrides",
                    value=value,
                    constraint="decimal monthly amount",
                )
            if not amount.is_finite() or amount < 0:
                raise InvalidInputError(
                    f"Override for {key} must be a non-negative amount",
                    field="overrides",
                    value=str(value),
                    constraint=">= 0",
                )
            result[key] = amount
        return result

    def _apply_overrides(
        self,
        computed: list[IncomeComponent],
        trace: list[CalculationTraceItem],
        overrides: dict[str, Decimal],
        calculation_id: str,
        trail: AuditTrail,
    ) -> tuple[list[IncomeComponent], list[CalculationTraceItem], list[IncomeWarning]]:
        """Replace or add components per the override map.

        Each override adds one trace line so that the component still
        reconciles against its trace, including earlier override lines when
        two keys name the same component. The computed components are left
        as-is.
        """
        components = list(computed)
        extra_trace: list[CalculationTraceItem] = []
        warnings: list[IncomeWarning] = []
        valid_types = {t.value for t in ComponentType}

        for name, value in overrides.items():
            amount = round_currency(value)
            index = self._find_override_target(components, name)

            if index is not None:
                original = components[index]
                computed_amount = (
                    original.original_monthly_amount
                    if original.is_override and original.original_monthly_amount is not None
                    else original.monthly_amount
                )
                months = original.months_considered or 1
                traced = sum(
                    (
                        item.signed_amount
                        for item in trace + extra_trace
                        if item.allocated_to == original.key
                    ),
                    Decimal("0"),
                )
                delta = amount * months - traced
                extra_trace.append(CalculationTraceItem(
                    form="Manual override",
                    description=(
                        f"Manual override of {original.key}: "
                        f"{original.monthly_amount} -> {amount} per month"
                    ),
                    amount=abs(delta),
                    sign="-" if delta < 0 else "+",
                    allocated_to=original.key,
                ))
                components[index] = original.model_copy(update={
                    "monthly_amount": amount,
                    "is_override": True,
                    "original_monthly_amount": computed_amount,
                    "notes": f"Overridden from {computed_amount}",
                })
                warnings.append(IncomeWarning(
                    code=WarningCode.MANUAL_OVERRIDE_APPLIED,
                    message=f"{original.key} overridden from {original.monthly_amount} to {amount}",
                    field_name=name,
                    expected_value=str(original.monthly_amount),
                    actual_value=str(amount),
                    severity=AuditSeverity.INFO,
                    requires_review=False,
                ))
                self._log_step(
                    trail,
                    step="override",
                    action=f"Override {original.key}",
                    input_value=str(original.monthly_amount),
                    output_value=str(amount),
                )
                continue

            component_type = ComponentType(name) if name in valid_types else ComponentType.OTHER
            key = f"manual:{name}"
            extra_trace.append(CalculationTraceItem(
                form="Manual override",
                description=f"Manual entry for {name}",
                amount=amount,
                sign="+",
                allocated_to=key,
            ))
            components.append(IncomeComponent(
                calculation_id=calculation_id,
                key=key,
                component_type=component_type,
                monthly_amount=amount,
                calculation_method="Manual entry",
                notes=f"Added by override {name!r}",
                is_override=True,
            ))
            warnings.append(IncomeWarning(
                code=WarningCode.MANUAL_COMPONENT_ADDED,
                message=f"Manual {component_type.value} component of {amount} added for {name!r}",
                field_name=name,
                actual_value=str(amount),
                severity=AuditSeverity.INFO,
                requires_review=False,
            ))
            self._log_step(
                trail,
                step="override",
                action=f"Add manual component {key}",
                input_value=name,
                output_value=str(amount),
            )

        return components, extra_trace, warnings

    @staticmethod
    def _find_override_target(components: list[IncomeComponent], name: str) -> Optional[int]:
        """Index of the component an override names, by key or by unique type."""
        for index, component in enumerate(components):
            if component.key == name:
                return index
        matches = [
            index
            for index, component in enumerate(components)
            if component.component_type.value == name and not component.is_manual
        ]
        if len(matches) > 1:
            raise InvalidInputError(
                f"Override {name!r} matches {len(matches)} components; use a component key",
                field="overrides",
                value=name,
                constraint="component key or a component type present once",
            )
        return matches[0] if matches else None

    @staticmethod
    def _is_self_employed(documents: list[IncomeDocument]) -> bool:
        for document in documents:
            if document.document_type in SELF_EMPLOYMENT_TYPES:
                return True
            fields = document.fields
            if isinstance(fields, Form1040Fields) and fields.schedule_c_attached:
                return True
        return False

    @staticmethod
    def _calculate_confidence(
        components: list[IncomeComponent],
        documents: list[IncomeDocument],
    ) -> float:
        """Weighted average of extraction confidence by income contribution.

        Each component's amount is split evenly across its source documents.
        Manual components and zero-amount components carry no weight.
        """
        confidence_by_id = {d.id: d.extraction_confidence or 0.0 for d in documents}
        weighted = Decimal("0")
        total_weight = Decimal("0")

        for component in components:
            if component.is_manual or not component.source_document_ids:
                continue
            share = component.monthly_amount / len(component.source_document_ids)
            for document_id in component.source_document_ids:
                score = Decimal(str(confidence_by_id.get(document_id, 0.0)))
                weighted += share * score
                total_weight += share

        if total_weight == 0:
            return 0.0
        return round(float(weighted / total_weight), 4)


__all__ = ["IncomeCalculator"]
