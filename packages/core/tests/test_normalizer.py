"""Tests for income normalization."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from qualify_core.config import EngineConfig
from qualify_core.models import (
    ComponentType,
    DocumentType,
    Form1040Fields,
    IncomeDocument,
    K1Fields,
    OcrStatus,
    PayFrequency,
    PayStubFields,
    ScheduleCFields,
    ScheduleEFields,
    VOEFields,
    W2Fields,
    WarningCode,
)
from qualify_core.models.calculation import round_currency
from qualify_core.normalizer import IncomeNormalizer, normalize_entity_name

BASE_TIME = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)


def make_doc(fields, *, offset: int = 0, status: OcrStatus = OcrStatus.SUCCESS,
             confidence: float = 0.9, file_name: str = None) -> IncomeDocument:
    """Build a document with parsed fields at BASE_TIME + offset minutes."""
    return IncomeDocument(
        borrower_id="borrower-1",
        document_type=DocumentType(fields.document_type),
        file_name=file_name,
        ocr_status=status,
        fields=fields if status == OcrStatus.SUCCESS else None,
        extraction_confidence=confidence if status == OcrStatus.SUCCESS else None,
        created_at=BASE_TIME + timedelta(minutes=offset),
    )


def codes(result) -> list[WarningCode]:
    return [w.code for w in result.warnings]


def assert_reconciles(result) -> None:
    """Every component's trace lines divide back to its monthly amount."""
    for component in result.components:
        items = [t for t in result.trace if t.allocated_to == component.key]
        assert items, f"no trace lines for {component.key}"
        total = sum((t.signed_amount for t in items), Decimal("0"))
        months = component.months_considered or 1
        assert round_currency(total / months) == component.monthly_amount


@pytest.fixture
def normalizer() -> IncomeNormalizer:
    return IncomeNormalizer()


@pytest.fixture
def biweekly_stub() -> IncomeDocument:
    return make_doc(PayStubFields(
        employer_name="Acme Corp",
        pay_frequency="Bi-Weekly",
        gross_current=Decimal("2000.00"),
        pay_period_end=date(2024, 3, 15),
    ), file_name="stub.pdf")


class TestPayStubNormalization:
    """Pay stub annualization and earnings splits."""

    def test_biweekly_gross_annualized(self, normalizer: IncomeNormalizer, biweekly_stub: IncomeDocument):
        """2000 biweekly is 2000 x 26 / 12 = 4333.33 per month."""
        result = normalizer.normalize([biweekly_stub])

        assert len(result.components) == 1
        component = result.components[0]
        assert component.component_type == ComponentType.BASE_SALARY
        assert component.monthly_amount == Decimal("4333.33")
        assert component.months_considered == 12
        assert component.source_name == "Acme Corp"
        assert component.source_document_ids == [biweekly_stub.id]
        assert_reconciles(result)

    def test_splits_overtime_and_bonus_from_base(self, normalizer: IncomeNormalizer):
        """Overtime and bonus become their own components and are removed from base."""
        doc = make_doc(PayStubFields(
            pay_frequency="monthly",
            gross_current=Decimal("5000"),
            ot_current=Decimal("500"),
            bonus_current=Decimal("200"),
        ))

        result = normalizer.normalize([doc])

        amounts = {c.component_type: c.monthly_amount for c in result.components}
        assert amounts == {
            ComponentType.BASE_SALARY: Decimal("4300.00"),
            ComponentType.OVERTIME: Decimal("500.00"),
            ComponentType.BONUS: Decimal("200.00"),
        }
        base_key = f"base_salary:{doc.id}"
        signs = [t.sign for t in result.trace if t.allocated_to == base_key]
        assert signs == ["+", "-", "-"]
        assert_reconciles(result)

    def test_hourly_rate_times_hours(self, normalizer: IncomeNormalizer):
        """Hourly rate x hours derives gross and marks the base as hourly."""
        doc = make_doc(PayStubFields(
            pay_frequency="biweekly",
            hourly_rate=Decimal("25.00"),
            hours_current=Decimal("80"),
        ))

        result = normalizer.normalize([doc])

        assert len(result.components) == 1
        assert result.components[0].component_type == ComponentType.BASE_HOURLY
        assert result.components[0].monthly_amount == Decimal("4333.33")

    def test_unrecognized_frequency_falls_back_with_warning(self, normalizer: IncomeNormalizer):
        """Unknown pay frequency uses the monthly fallback and flags it."""
        doc = make_doc(PayStubFields(pay_frequency="per diem", gross_current=Decimal("3000")))

        result = normalizer.normalize([doc])

        assert result.components[0].monthly_amount == Decimal("3000.00")
        assert codes(result) == [WarningCode.PAY_FREQUENCY_DEFAULTED]
        assert result.warnings[0].requires_review is True

    def test_fallback_frequency_is_configurable(self):
        """The fallback frequency comes from the engine config."""
        config = EngineConfig(pay_frequency_fallback=PayFrequency.WEEKLY, warn_on_frequency_fallback=False)
        doc = make_doc(PayStubFields(gross_current=Decimal("1000")))

        result = IncomeNormalizer(config=config).normalize([doc])

        assert result.components[0].monthly_amount == Decimal("4333.33")
        assert result.warnings == []

    def test_splits_exceeding_gross_drop_base(self, normalizer: IncomeNormalizer):
        """When splits exceed gross there is no base component, only a warning."""
        doc = make_doc(PayStubFields(
            pay_frequency="monthly",
            gross_current=Decimal("1000"),
            ot_current=Decimal("1500"),
        ))

        result = normalizer.normalize([doc])

        assert [c.component_type for c in result.components] == [ComponentType.OVERTIME]
        assert WarningCode.PAY_STUB_SPLIT_EXCEEDS_GROSS in codes(result)

    def test_ytd_annualized_over_elapsed_days(self, normalizer: IncomeNormalizer):
        """YTD gross through Mar 31 covers 90 of 365 days."""
        doc = make_doc(PayStubFields(
            gross_ytd=Decimal("9000"),
            pay_period_end=date(2023, 3, 31),
        ))

        result = normalizer.normalize([doc])

        component = result.components[0]
        assert component.monthly_amount == Decimal("3041.67")
        assert component.months_considered == 12
        assert result.trace[0].amount == Decimal("36500")
        assert "90 of 365 days" in result.trace[0].description
        assert WarningCode.YTD_AVERAGE_USED in codes(result)
        assert_reconciles(result)

    def test_ytd_early_month_period_end(self, normalizer: IncomeNormalizer):
        """A period ending Mar 1 counts 60 elapsed days, not three months."""
        doc = make_doc(PayStubFields(
            gross_ytd=Decimal("12000"),
            pay_period_end=date(2023, 3, 1),
        ))

        result = normalizer.normalize([doc])

        assert result.components[0].monthly_amount == Decimal("6083.33")
        assert_reconciles(result)

    def test_ytd_full_leap_year(self, normalizer: IncomeNormalizer):
        doc = make_doc(PayStubFields(
            gross_ytd=Decimal("60000"),
            pay_date=date(2024, 12, 31),
        ))

        result = normalizer.normalize([doc])

        assert result.components[0].monthly_amount == Decimal("5000.00")

    def test_ytd_variable_income_projected(self, normalizer: IncomeNormalizer):
        """YTD overtime and bonus become one projected variable component."""
        doc = make_doc(PayStubFields(
            employer_name="Acme Corp",
            pay_frequency="biweekly",
            gross_current=Decimal("2000"),
            ot_ytd=Decimal("3000"),
            bonus_ytd=Decimal("1500"),
            pay_period_end=date(2023, 3, 31),
        ))

        result = normalizer.normalize([doc])

        assert [c.component_type for c in result.components] == [
            ComponentType.BASE_SALARY,
            ComponentType.VARIABLE_INCOME_YTD,
        ]
        variable = result.components[1]
        assert variable.monthly_amount == Decimal("1520.83")
        assert variable.months_considered == 12
        assert [t.line for t in result.trace if t.allocated_to == variable.key] == [
            "Overtime YTD", "Bonus YTD",
        ]
        assert result.components[0].monthly_amount == Decimal("4333.33")
        assert WarningCode.VARIABLE_INCOME_FROM_YTD in codes(result)
        assert_reconciles(result)

    def test_ytd_variable_ignored_when_current_split_present(self, normalizer: IncomeNormalizer):
        doc = make_doc(PayStubFields(
            pay_frequency="monthly",
            gross_current=Decimal("5000"),
            ot_current=Decimal("500"),
            ot_ytd=Decimal("1500"),
            pay_period_end=date(2023, 3, 31),
        ))

        result = normalizer.normalize([doc])

        types = [c.component_type for c in result.components]
        assert ComponentType.VARIABLE_INCOME_YTD not in types
        assert WarningCode.VARIABLE_INCOME_FROM_YTD not in codes(result)

    def test_ytd_variable_needs_period_end(self, normalizer: IncomeNormalizer):
        doc = make_doc(PayStubFields(
            pay_frequency="monthly",
            gross_current=Decimal("5000"),
            commission_ytd=Decimal("2500"),
        ))

        result = normalizer.normalize([doc])

        assert [c.component_type for c in result.components] == [ComponentType.BASE_SALARY]
        assert WarningCode.MISSING_REQUIRED_FIELD in codes(result)
        assert result.warnings[0].field_name == "pay_period_end"


class TestW2Normalization:
    """W-2 grouping and averaging across tax years."""

    def test_two_year_average(self, normalizer: IncomeNormalizer):
        """60000 and 66000 average to 5250.00 per month over 24 months."""
        docs = [
            make_doc(W2Fields(employer_name="Acme Corp", employer_ein="12-3456789",
                              wages=Decimal("60000"), tax_year=2022), offset=0),
            make_doc(W2Fields(employer_name="ACME Corporation", employer_ein="123456789",
                              wages=Decimal("66000"), tax_year=2023), offset=1),
        ]

        result = normalizer.normalize(docs)

        assert len(result.components) == 1
        component = result.components[0]
        assert component.component_type == ComponentType.W2_INCOME
        assert component.monthly_amount == Decimal("5250.00")
        assert component.months_considered == 24
        assert component.tax_years == [2022, 2023]
        assert "2022, 2023" in component.calculation_method
        assert component.trend_direction == "increasing"
        assert component.trend_percentage == Decimal("10.00")
        assert [t.line for t in result.trace] == ["Box 1", "Box 1"]
        assert_reconciles(result)

    def test_declining_income_warning(self, normalizer: IncomeNormalizer):
        """A drop of more than 20% between the last two years is flagged."""
        docs = [
            make_doc(W2Fields(employer_name="Acme", wages=Decimal("100000"), tax_year=2022), offset=0),
            make_doc(W2Fields(employer_name="Acme", wages=Decimal("70000"), tax_year=2023), offset=1),
        ]

        result = normalizer.normalize(docs)

        assert WarningCode.DECLINING_INCOME in codes(result)
        assert result.components[0].trend_direction == "declining"
        assert result.components[0].monthly_amount == Decimal("7083.33")

    def test_single_year_warning(self, normalizer: IncomeNormalizer):
        """One year of history is noted but still counted."""
        doc = make_doc(W2Fields(employer_name="Acme", wages=Decimal("48000"), tax_year=2023))

        result = normalizer.normalize([doc])

        assert result.components[0].monthly_amount == Decimal("4000.00")
        assert codes(result) == [WarningCode.SINGLE_YEAR_HISTORY]
        assert result.warnings[0].requires_review is False

    def test_duplicate_year_keeps_later_document(self, normalizer: IncomeNormalizer):
        """A second W-2 for the same employer and year replaces the first."""
        first = make_doc(W2Fields(employer_name="Acme", wages=Decimal("40000"), tax_year=2023), offset=0)
        second = make_doc(W2Fields(employer_name="Acme", wages=Decimal("48000"), tax_year=2023), offset=1)

        result = normalizer.normalize([first, second])

        component = result.components[0]
        assert component.monthly_amount == Decimal("4000.00")
        assert component.source_document_ids == [second.id]
        assert WarningCode.DUPLICATE_TAX_YEAR in codes(result)

    def test_separate_employers_are_separate_components(self, normalizer: IncomeNormalizer):
        docs = [
            make_doc(W2Fields(employer_name="Acme", wages=Decimal("24000"), tax_year=2023), offset=0),
            make_doc(W2Fields(employer_name="Globex", wages=Decimal("12000"), tax_year=2023), offset=1),
        ]

        result = normalizer.normalize(docs)

        assert [c.monthly_amount for c in result.components] == [Decimal("2000.00"), Decimal("1000.00")]
        assert [c.source_name for c in result.components] == ["Acme", "Globex"]

    def test_w2_superseded_by_pay_stub_from_same_employer(
        self, normalizer: IncomeNormalizer, biweekly_stub: IncomeDocument
    ):
        """Current pay stub income replaces W-2 history from the same employer."""
        w2 = make_doc(W2Fields(employer_name="ACME Corporation", wages=Decimal("50000"), tax_year=2023),
                      offset=-5)

        result = normalizer.normalize([w2, biweekly_stub])

        assert [c.component_type for c in result.components] == [ComponentType.BASE_SALARY]
        assert WarningCode.W2_SUPERSEDED_BY_PAY_STUB in codes(result)


class TestSelfEmploymentNormalization:
    """Schedule C, Schedule E and K-1 income."""

    def test_schedule_c_add_backs(self, normalizer: IncomeNormalizer):
        """Net profit plus depreciation and 50% of meals, averaged over two years."""
        docs = [
            make_doc(ScheduleCFields(business_name="Smith Consulting", net_profit=Decimal("40000"),
                                     tax_year=2022), offset=0),
            make_doc(ScheduleCFields(business_name="Smith Consulting", net_profit=Decimal("50000"),
                                     depreciation=Decimal("5000"), meals=Decimal("2000"),
                                     tax_year=2023), offset=1),
        ]

        result = normalizer.normalize(docs)

        component = result.components[0]
        assert component.component_type == ComponentType.SELF_EMPLOYMENT
        assert component.monthly_amount == Decimal("4000.00")
        lines = [t.line for t in result.trace]
        assert lines == ["Line 31", "Line 31", "Line 13", "Line 24b"]
        meals = result.trace[-1]
        assert meals.amount == Decimal("1000.00")
        assert_reconciles(result)

    def test_schedule_c_loss_produces_no_component(self, normalizer: IncomeNormalizer):
        doc = make_doc(ScheduleCFields(net_profit=Decimal("-10000"), tax_year=2023))

        result = normalizer.normalize([doc])

        assert result.components == []
        assert WarningCode.NEGATIVE_INCOME in codes(result)

    def test_schedule_e_vacancy_factor(self, normalizer: IncomeNormalizer):
        """Net rents are counted at 75%, with the reduction on its own trace line."""
        doc = make_doc(ScheduleEFields(property_address="12 Elm St", net_income=Decimal("24000"),
                                       tax_year=2023))

        result = normalizer.normalize([doc])

        component = result.components[0]
        assert component.component_type == ComponentType.RENTAL
        assert component.monthly_amount == Decimal("1500.00")
        assert [(t.sign, t.amount) for t in result.trace] == [
            ("+", Decimal("24000")),
            ("-", Decimal("6000.00")),
        ]

    def test_k1_allocation(self, normalizer: IncomeNormalizer):
        """50% of 100000 ordinary income is 4166.67 per month."""
        doc = make_doc(K1Fields(entity_name="Widget Holdings", form_type="1120-S",
                                allocation_pct=Decimal("50"), ordinary_income=Decimal("100000"),
                                tax_year=2023))

        result = normalizer.normalize([doc])

        component = result.components[0]
        assert component.component_type == ComponentType.K1_INCOME
        assert component.monthly_amount == Decimal("4166.67")
        assert all(t.allocation_pct == Decimal("50") for t in result.trace)
        assert [t.sign for t in result.trace] == ["+", "-"]
        assert result.trace[1].description == "Allocation to 50% ownership"
        assert_reconciles(result)

    def test_k1_allocation_of_a_loss_year(self, normalizer: IncomeNormalizer):
        """Allocating a loss adds back the other owners' share; the wording does not claim a reduction."""
        docs = [
            make_doc(K1Fields(entity_name="Widget Holdings", form_type="1120-S",
                              allocation_pct=Decimal("50"), ordinary_income=Decimal("120000"),
                              tax_year=2022), offset=0),
            make_doc(K1Fields(entity_name="Widget Holdings", form_type="1120-S",
                              allocation_pct=Decimal("50"), ordinary_income=Decimal("-10000"),
                              tax_year=2023), offset=1),
        ]

        result = normalizer.normalize(docs)

        loss_lines = [t for t in result.trace if t.year == 2023]
        assert [(t.sign, t.amount) for t in loss_lines] == [
            ("-", Decimal("10000")),
            ("+", Decimal("5000")),
        ]
        assert all("reduction" not in t.description for t in result.trace)
        assert result.components[0].monthly_amount == Decimal("2291.67")
        assert_reconciles(result)

    def test_partnership_k1_with_guaranteed_payments(self, normalizer: IncomeNormalizer):
        doc = make_doc(K1Fields(entity_name="Acme Partners", form_type="1065",
                                allocation_pct=Decimal("100"), ordinary_income=Decimal("60000"),
                                guaranteed_payments=Decimal("12000"), tax_year=2023))

        result = normalizer.normalize([doc])

        component = result.components[0]
        assert component.component_type == ComponentType.PARTNERSHIP_K1_INCOME
        assert component.monthly_amount == Decimal("6000.00")
        assert [t.line for t in result.trace] == ["Box 1", "Box 4"]


class TestVOENormalization:
    """Verification of employment."""

    def test_verified_income_passes_through(self, normalizer: IncomeNormalizer):
        doc = make_doc(VOEFields(employer_name="Acme", verified_monthly_income=Decimal("6500"),
                                 probability_of_continued_employment="Good"))

        result = normalizer.normalize([doc])

        component = result.components[0]
        assert component.component_type == ComponentType.VOE_VERIFIED
        assert component.monthly_amount == Decimal("6500.00")
        assert component.months_considered is None
        assert result.warnings == []

    def test_missing_verified_income_is_a_missing_input(self, normalizer: IncomeNormalizer):
        doc = make_doc(VOEFields(employer_name="Acme"))

        result = normalizer.normalize([doc])

        assert result.components == []
        assert result.missing_inputs == ["Verified monthly income for VOE (Acme)"]

    def test_uncertain_continuance_warns(self, normalizer: IncomeNormalizer):
        doc = make_doc(VOEFields(employer_name="Acme", verified_monthly_income=Decimal("5000"),
                                 probability_of_continued_employment="fair"))

        result = normalizer.normalize([doc])

        assert codes(result) == [WarningCode.EMPLOYMENT_CONTINUANCE_UNCERTAIN]


class TestDocumentHandling:
    """Skipped, unmapped and incomplete documents."""

    def test_failed_document_is_skipped_with_warning(self, normalizer: IncomeNormalizer):
        doc = make_doc(PayStubFields(), status=OcrStatus.FAILED, file_name="blurry.pdf")

        result = normalizer.normalize([doc])

        assert result.components == []
        assert codes(result) == [WarningCode.DOCUMENT_EXTRACTION_FAILED]
        assert result.warnings[0].document_id == doc.id

    def test_pending_document_is_informational(self, normalizer: IncomeNormalizer):
        doc = make_doc(PayStubFields(), status=OcrStatus.PENDING)

        result = normalizer.normalize([doc])

        assert codes(result) == [WarningCode.DOCUMENT_NOT_READY]
        assert result.warnings[0].requires_review is False

    def test_unmapped_type_requires_manual_entry(self, normalizer: IncomeNormalizer):
        doc = make_doc(Form1040Fields(agi=Decimal("90000"), tax_year=2023))

        result = normalizer.normalize([doc])

        assert result.components == []
        assert codes(result) == [WarningCode.UNMAPPED_DOCUMENT_TYPE]
        assert "could not be auto-calculated; manual entry required" in result.warnings[0].message

    def test_missing_required_field_names_the_field(self, normalizer: IncomeNormalizer):
        doc = make_doc(W2Fields(employer_name="Acme", tax_year=2023))

        result = normalizer.normalize([doc])

        assert result.components == []
        assert codes(result) == [WarningCode.MISSING_REQUIRED_FIELD]
        assert result.warnings[0].field_name == "wages"

    def test_normalization_is_idempotent(self, normalizer: IncomeNormalizer, biweekly_stub: IncomeDocument):
        """Normalizing the same documents twice gives the same components and trace."""
        docs = [
            biweekly_stub,
            make_doc(W2Fields(employer_name="Globex", wages=Decimal("30000"), tax_year=2023), offset=1),
        ]

        first = normalizer.normalize(docs)
        second = normalizer.normalize(docs)

        assert [c.model_dump(exclude={"id"}) for c in first.components] == \
            [c.model_dump(exclude={"id"}) for c in second.components]
        assert [t.model_dump() for t in first.trace] == [t.model_dump() for t in second.trace]
        assert codes(first) == codes(second)


class TestEntityNames:
    """Employer name normalization."""

    @pytest.mark.parametrize("name", ["Acme Corp", "ACME Corporation", "Acme, Inc.", "acme llc"])
    def test_suffixes_and_case_removed(self, name: str):
        assert normalize_entity_name(name) == "acme"

    def test_empty_name(self):
        assert normalize_entity_name("") is None
        assert normalize_entity_name(None) is None
