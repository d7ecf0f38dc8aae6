"""Tests for the qualifying income calculator."""

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from qualify_core import (
    ExtractionService,
    FallbackExtractor,
    IncomeCalculator,
    InMemoryCalculationStore,
    InMemoryDocumentStore,
)
from qualify_core.exceptions import InvalidInputError, PersistenceError
from qualify_core.models import (
    CalculationStatus,
    ComponentType,
    DocumentType,
    IncomeCalculation,
    IncomeDocument,
    K1Fields,
    OcrStatus,
    PayStubFields,
    ScheduleCFields,
    VOEFields,
    W2Fields,
    WarningCode,
)

BORROWER = "borrower-1"
BASE_TIME = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)


def make_doc(fields, *, offset: int = 0, status: OcrStatus = OcrStatus.SUCCESS,
             confidence: float = 0.9, borrower_id: str = BORROWER) -> IncomeDocument:
    return IncomeDocument(
        borrower_id=borrower_id,
        document_type=DocumentType(fields.document_type),
        ocr_status=status,
        fields=fields if status == OcrStatus.SUCCESS else None,
        extraction_confidence=confidence if status == OcrStatus.SUCCESS else None,
        extraction_error="Unreadable scan" if status == OcrStatus.FAILED else None,
        created_at=BASE_TIME + timedelta(minutes=offset),
    )


class FailingCalculationStore(InMemoryCalculationStore):
    """Store whose writes always fail."""

    def create(self, calculation, components, trace):
        raise PersistenceError("disk full", operation="create", record_id=calculation.id)


@pytest.fixture
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def calculations() -> InMemoryCalculationStore:
    return InMemoryCalculationStore()


@pytest.fixture
def calculator(documents: InMemoryDocumentStore, calculations: InMemoryCalculationStore) -> IncomeCalculator:
    return IncomeCalculator(documents, calculations)


@pytest.fixture
def pay_stub() -> IncomeDocument:
    return make_doc(PayStubFields(
        employer_name="Acme Corp",
        pay_frequency="biweekly",
        gross_current=Decimal("2000.00"),
        pay_period_end=date(2024, 3, 15),
    ))


class TestIncomeCalculator:
    """Test suite for IncomeCalculator."""

    def test_calculate_returns_stored_result(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
        calculations: InMemoryCalculationStore, pay_stub: IncomeDocument,
    ):
        """Calculator should return and persist an IncomeCalculation."""
        documents.add(pay_stub)

        result = calculator.calculate(BORROWER, agency="fannie", loan_program="conventional")

        assert isinstance(result, IncomeCalculation)
        assert result.result_monthly_income == Decimal("4333.33")
        assert result.calculation_version == "v2.0_fannie_mae"
        assert result.document_ids == [pay_stub.id]
        assert calculations.get(result.id).result_monthly_income == Decimal("4333.33")
        assert all(c.calculation_id == result.id for c in result.components)

    def test_total_equals_sum_of_components(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
    ):
        """The result is always the rounded sum of the component amounts."""
        documents.add(make_doc(PayStubFields(
            employer_name="Acme", pay_frequency="monthly", gross_current=Decimal("5000"),
            ot_current=Decimal("500"), bonus_current=Decimal("200"),
        ), offset=0))
        documents.add(make_doc(W2Fields(
            employer_name="Globex", wages=Decimal("10000"), tax_year=2023,
        ), offset=1))

        result = calculator.calculate(BORROWER)

        total = sum((c.monthly_amount for c in result.components), Decimal("0"))
        assert result.result_monthly_income == total == Decimal("5833.33")
        assert result.verify_total()
        assert result.reconciles()

    def test_no_documents(self, calculator: IncomeCalculator):
        """No documents: zero income, zero confidence, required types missing."""
        result = calculator.calculate(BORROWER, loan_program="conventional")

        assert result.result_monthly_income == Decimal("0")
        assert result.confidence == 0.0
        assert result.components == []
        assert result.missing_inputs == ["Pay Stub or W-2"]
        assert result.status == CalculationStatus.COMPLETE_WITH_WARNINGS

    def test_failed_document_excluded(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore, pay_stub: IncomeDocument,
    ):
        """A failed document is excluded with a warning and does not stop the run."""
        failed = make_doc(W2Fields(), status=OcrStatus.FAILED, offset=-1)
        documents.add(failed)
        documents.add(pay_stub)

        result = calculator.calculate(BORROWER)

        assert result.result_monthly_income == Decimal("4333.33")
        assert failed.id not in result.document_ids
        assert [w.code for w in result.warnings] == [WarningCode.DOCUMENT_EXTRACTION_FAILED]
        assert result.warnings[0].document_id == failed.id

    def test_override_replaces_component_and_keeps_original(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore, pay_stub: IncomeDocument,
    ):
        """Overrides change the result but the computed value stays on record."""
        documents.add(pay_stub)

        result = calculator.calculate(BORROWER, overrides={"base_salary": "5000"})

        assert result.result_monthly_income == Decimal("5000.00")
        assert result.overrides == {"base_salary": Decimal("5000")}
        assert result.computed_components[0].monthly_amount == Decimal("4333.33")
        component = result.components[0]
        assert component.is_override is True
        assert component.original_monthly_amount == Decimal("4333.33")
        override_lines = [t for t in result.calculation_trace if t.form == "Manual override"]
        assert len(override_lines) == 1
        assert override_lines[0].allocated_to == component.key
        assert WarningCode.MANUAL_OVERRIDE_APPLIED in [w.code for w in result.warnings]
        assert result.reconciles()

    def test_override_by_component_key(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore, pay_stub: IncomeDocument,
    ):
        documents.add(pay_stub)
        key = f"base_salary:{pay_stub.id}"

        result = calculator.calculate(BORROWER, overrides={key: Decimal("4000")})

        assert result.get_component(key).monthly_amount == Decimal("4000.00")
        assert result.reconciles()

    def test_type_and_key_overrides_on_same_component(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
        calculations: InMemoryCalculationStore,
    ):
        """The later override wins and the trace still adds up to it."""
        stub = make_doc(PayStubFields(pay_frequency="monthly", gross_current=Decimal("1000")))
        documents.add(stub)
        key = f"base_salary:{stub.id}"

        result = calculator.calculate(BORROWER, overrides={"base_salary": "1500", key: "2000"})

        component = result.get_component(key)
        assert component.monthly_amount == Decimal("2000.00")
        assert component.original_monthly_amount == Decimal("1000.00")
        assert [(t.sign, t.amount) for t in result.trace_for(key)] == [
            ("+", Decimal("12000")),
            ("+", Decimal("6000.00")),
            ("+", Decimal("6000.00")),
        ]
        assert result.result_monthly_income == Decimal("2000.00")
        assert result.reconciles()
        assert calculations.get(result.id).reconciles()

    def test_override_back_down_is_negative_line(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
    ):
        stub = make_doc(PayStubFields(pay_frequency="monthly", gross_current=Decimal("1000")))
        documents.add(stub)
        key = f"base_salary:{stub.id}"

        result = calculator.calculate(BORROWER, overrides={"base_salary": "3000", key: "500"})

        assert [t.sign for t in result.trace_for(key)] == ["+", "+", "-"]
        assert result.get_component(key).monthly_amount == Decimal("500.00")
        assert result.reconciles()

    def test_unknown_override_adds_manual_component(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore, pay_stub: IncomeDocument,
    ):
        """An override that matches nothing adds a manual component."""
        documents.add(pay_stub)

        result = calculator.calculate(BORROWER, overrides={"rental": 1200})

        manual = result.get_component("manual:rental")
        assert manual is not None
        assert manual.component_type == ComponentType.RENTAL
        assert manual.monthly_amount == Decimal("1200.00")
        assert result.result_monthly_income == Decimal("5533.33")
        assert WarningCode.MANUAL_COMPONENT_ADDED in [w.code for w in result.warnings]
        assert result.reconciles()

    def test_manual_component_with_free_text_key_is_other(self, calculator: IncomeCalculator):
        result = calculator.calculate(BORROWER, overrides={"alimony": "800"})

        assert result.get_component("manual:alimony").component_type == ComponentType.OTHER
        assert result.result_monthly_income == Decimal("800.00")
        assert result.confidence == 0.0

    def test_trace_is_deterministic(self, documents: InMemoryDocumentStore, pay_stub: IncomeDocument):
        """Identical inputs give identical traces."""
        documents.add(make_doc(W2Fields(employer_name="Globex", wages=Decimal("36000"), tax_year=2023),
                               offset=5))
        documents.add(pay_stub)
        documents.add(make_doc(K1Fields(entity_name="Widget", form_type="1120S",
                                        allocation_pct=Decimal("50"), ordinary_income=Decimal("100000"),
                                        tax_year=2023), offset=2))

        first = IncomeCalculator(documents, InMemoryCalculationStore()).calculate(BORROWER)
        second = IncomeCalculator(documents, InMemoryCalculationStore()).calculate(BORROWER)

        assert [t.model_dump() for t in first.calculation_trace] == \
            [t.model_dump() for t in second.calculation_trace]
        assert [c.key for c in first.components] == [c.key for c in second.components]

    def test_k1_allocation_on_trace(self, calculator: IncomeCalculator, documents: InMemoryDocumentStore):
        """K-1 income is allocated by ownership and the percentage is on the trace."""
        documents.add(make_doc(K1Fields(entity_name="Widget", form_type="1120S",
                                        allocation_pct=Decimal("50"), ordinary_income=Decimal("100000"),
                                        tax_year=2023)))

        result = calculator.calculate(BORROWER)

        assert result.result_monthly_income == Decimal("4166.67")
        assert any(t.allocation_pct == Decimal("50") for t in result.calculation_trace)

    def test_self_employed_requirements(self, calculator: IncomeCalculator, documents: InMemoryDocumentStore):
        """Self-employment documents pull in the self-employed requirement groups."""
        documents.add(make_doc(ScheduleCFields(business_name="Smith Consulting",
                                               net_profit=Decimal("60000"), tax_year=2023)))

        result = calculator.calculate(BORROWER, loan_program="conventional")

        assert result.missing_inputs == ["Pay Stub or W-2", "1040 Tax Returns (self-employed)"]

    def test_voe_missing_income_listed_before_documents(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
    ):
        documents.add(make_doc(VOEFields(employer_name="Acme")))

        result = calculator.calculate(BORROWER, loan_program="fha")

        assert result.missing_inputs == ["Verified monthly income for VOE (Acme)", "Pay Stub or W-2"]

    def test_confidence_weighted_by_contribution(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
    ):
        """Larger contributions weigh more in the confidence score."""
        documents.add(make_doc(PayStubFields(pay_frequency="monthly", gross_current=Decimal("3000")),
                               confidence=0.9, offset=0))
        documents.add(make_doc(VOEFields(employer_name="Globex", verified_monthly_income=Decimal("1000")),
                               confidence=0.5, offset=1))

        result = calculator.calculate(BORROWER)

        assert result.confidence == pytest.approx(0.8)

    def test_freddie_version(self, calculator: IncomeCalculator):
        result = calculator.calculate(BORROWER, agency="Freddie")

        assert result.agency == "freddie"
        assert result.calculation_version == "v2.0_freddie_mac"

    def test_audit_log_populated(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore, pay_stub: IncomeDocument,
    ):
        """Calculator should record each step."""
        documents.add(pay_stub)

        result = calculator.calculate(BORROWER)

        steps = [entry.step for entry in result.audit_log]
        assert steps[0] == "collect_documents"
        assert "component_base_salary" in steps
        assert "sum_components" in steps
        assert calculator.last_trail.summary()["status"] == result.status.value

    def test_latest_calculation(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
        calculations: InMemoryCalculationStore, pay_stub: IncomeDocument,
    ):
        """Recalculating stores a new record; the old one is kept."""
        first = calculator.calculate(BORROWER)
        documents.add(pay_stub)
        second = calculator.calculate(BORROWER)

        assert calculations.get_latest(BORROWER).id == second.id
        assert [c.id for c in calculations.list(BORROWER)] == [second.id, first.id]
        assert calculations.get(first.id).result_monthly_income == Decimal("0")


class TestCalculatorErrors:
    """Invalid input and persistence failures."""

    def test_unknown_agency(self, calculator: IncomeCalculator, calculations: InMemoryCalculationStore):
        with pytest.raises(InvalidInputError) as exc_info:
            calculator.calculate(BORROWER, agency="ginnie")

        assert exc_info.value.recoverable is False
        assert calculations.count() == 0

    def test_unknown_loan_program(self, calculator: IncomeCalculator, calculations: InMemoryCalculationStore):
        with pytest.raises(InvalidInputError):
            calculator.calculate(BORROWER, loan_program="balloon")

        assert calculations.count() == 0

    def test_negative_override_rejected(self, calculator: IncomeCalculator):
        with pytest.raises(InvalidInputError):
            calculator.calculate(BORROWER, overrides={"base_salary": "-1"})

    def test_non_numeric_override_rejected(self, calculator: IncomeCalculator):
        with pytest.raises(InvalidInputError):
            calculator.calculate(BORROWER, overrides={"base_salary": "lots"})

    def test_persistence_failure_raises(self, documents: InMemoryDocumentStore, pay_stub: IncomeDocument):
        """A failed write raises a recoverable PersistenceError."""
        documents.add(pay_stub)
        store = FailingCalculationStore()
        calculator = IncomeCalculator(documents, store)

        with pytest.raises(PersistenceError) as exc_info:
            calculator.calculate(BORROWER)

        assert exc_info.value.recoverable is True
        assert store.count() == 0


class GatedDocumentStore(InMemoryDocumentStore):
    """Holds snapshots for one borrower until released."""

    def __init__(self, gated_borrower: str):
        super().__init__()
        self.gated_borrower = gated_borrower
        self.entered = threading.Event()
        self.release = threading.Event()

    def snapshot(self, borrower_id):
        if borrower_id == self.gated_borrower:
            self.entered.set()
            self.release.wait(timeout=5)
        return super().snapshot(borrower_id)


class TestStoredCalculations:
    """Stored records against later document changes and concurrent runs."""

    def test_correction_and_reprocess_leave_stored_record_unchanged(
        self, calculator: IncomeCalculator, documents: InMemoryDocumentStore,
        calculations: InMemoryCalculationStore, pay_stub: IncomeDocument,
    ):
        documents.add(pay_stub)
        service = ExtractionService(documents, FallbackExtractor())
        first = calculator.calculate(BORROWER)
        before = calculations.get(first.id).model_dump()

        service.correct_fields(pay_stub.id, {"gross_current": "2600.00"})
        corrected = calculator.calculate(BORROWER)
        service.reprocess(pay_stub.id)
        after_reset = calculator.calculate(BORROWER)

        stored = calculations.get(first.id)
        assert stored.model_dump() == before
        assert stored.result_monthly_income == Decimal("4333.33")
        assert [c.monthly_amount for c in stored.components] == [Decimal("4333.33")]
        assert corrected.result_monthly_income == Decimal("5633.33")
        assert after_reset.result_monthly_income == Decimal("0")

    def test_concurrent_runs_keep_separate_audit_logs(self):
        documents = GatedDocumentStore("borrower-a")
        documents.add(make_doc(
            PayStubFields(pay_frequency="monthly", gross_current=Decimal("1000")), borrower_id="borrower-a",
        ))
        documents.add(make_doc(
            PayStubFields(pay_frequency="monthly", gross_current=Decimal("2000")), borrower_id="borrower-b",
        ))
        calculations = InMemoryCalculationStore()
        calculator = IncomeCalculator(documents, calculations)
        results = {}

        def run_a():
            results["a"] = calculator.calculate("borrower-a")

        thread = threading.Thread(target=run_a)
        thread.start()
        assert documents.entered.wait(timeout=5)
        results["b"] = calculator.calculate("borrower-b")
        documents.release.set()
        thread.join(timeout=5)

        stored_a = calculations.get(results["a"].id)
        stored_b = calculations.get(results["b"].id)
        inputs_a = [entry.input_value for entry in stored_a.audit_log]
        inputs_b = [entry.input_value for entry in stored_b.audit_log]
        assert "borrower=borrower-a" in inputs_a
        assert "borrower=borrower-b" not in inputs_a
        assert "borrower=borrower-a" not in inputs_b
        assert "1000.00" in inputs_a
        assert "2000.00" not in inputs_a
        assert stored_a.result_monthly_income == Decimal("1000.00")
        assert stored_b.result_monthly_income == Decimal("2000.00")
        assert calculator.last_trail.run_id == results["a"].id
