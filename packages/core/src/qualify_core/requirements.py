"""Agency rule sets and loan-program document requirements.

Agency rule sets carry the factors that differ between investors (rental
vacancy factor, meals add-back rate) plus the version tag stamped on every
calculation, so a later rule change never reinterprets an old result.

Loan-program requirements are a static table. Each program lists groups of
document types; a group is satisfied when any one of its types has a
successfully extracted document. Some groups only apply to self-employed
borrowers.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from .exceptions import InvalidInputError
from .models.documents import DocumentType


# =============================================================================
# AGENCY RULE SETS
# =============================================================================

RULES_VERSION = "v2.0"


@dataclass(frozen=True)
class AgencyRules:
    """Income rules for one agency."""
    agency: str
    label: str
    version_suffix: str
    rental_vacancy_factor: Decimal = Decimal("0.75")
    meals_addback_rate: Decimal = Decimal("0.50")

    @property
    def calculation_version(self) -> str:
        """Version tag stored on calculations (e.g. "v2.0_fannie_mae")."""
        return f"{RULES_VERSION}_{self.version_suffix}"


AGENCY_RULES: dict[str, AgencyRules] = {
    "fannie": AgencyRules(agency="fannie", label="Fannie Mae", version_suffix="fannie_mae"),
    "freddie": AgencyRules(agency="freddie", label="Freddie Mac", version_suffix="freddie_mac"),
}


def get_agency_rules(agency: str) -> AgencyRules:
    """Look up an agency rule set.

    Raises:
        InvalidInputError: If the agency is unknown.
    """
    key = (agency or "").strip().lower()
    rules = AGENCY_RULES.get(key)
    if rules is None:
        raise InvalidInputError(
            f"Unknown agency: {agency}",
            field="agency",
            value=agency,
            constraint=f"one of {sorted(AGENCY_RULES)}",
        )
    return rules


# =============================================================================
# LOAN PROGRAM REQUIREMENTS
# =============================================================================

@dataclass(frozen=True)
class RequirementGroup:
    """Required document types; any one of ``any_of`` satisfies the group."""
    any_of: tuple[DocumentType, ...]
    label: str
    self_employed_only: bool = False

    def is_satisfied(self, present: set[DocumentType]) -> bool:
        return any(doc_type in present for doc_type in self.any_of)

    def applies(self, self_employed: bool) -> bool:
        return self_employed or not self.self_employed_only


@dataclass(frozen=True)
class LoanProgramRequirements:
    program: str
    label: str
    description: str
    groups: tuple[RequirementGroup, ...] = field(default_factory=tuple)


_WAGE_HISTORY = RequirementGroup(
    any_of=(DocumentType.PAY_STUB, DocumentType.W2),
    label="Pay Stub or W-2",
)
_VOE = RequirementGroup(any_of=(DocumentType.VOE,), label="VOE")
_TAX_RETURNS = RequirementGroup(any_of=(DocumentType.FORM_1040,), label="1040 Tax Returns")
_SELF_EMPLOYED_RETURNS = RequirementGroup(
    any_of=(DocumentType.FORM_1040,),
    label="1040 Tax Returns (self-employed)",
    self_employed_only=True,
)
_SELF_EMPLOYED_BUSINESS = RequirementGroup(
    any_of=(DocumentType.SCHEDULE_C, DocumentType.K1),
    label="Schedule C or K-1 (self-employed)",
    self_employed_only=True,
)

LOAN_PROGRAM_REQUIREMENTS: dict[str, LoanProgramRequirements] = {
    "conventional": LoanProgramRequirements(
        program="conventional",
        label="Conventional",
        description="Standard Fannie Mae/Freddie Mac conforming loans",
        groups=(_WAGE_HISTORY, _SELF_EMPLOYED_BUSINESS, _SELF_EMPLOYED_RETURNS),
    ),
    "fha": LoanProgramRequirements(
        program="fha",
        label="FHA",
        description="Federal Housing Administration insured loans",
        groups=(_WAGE_HISTORY, _VOE, _SELF_EMPLOYED_RETURNS),
    ),
    "va": LoanProgramRequirements(
        program="va",
        label="VA",
        description="Veterans Affairs guaranteed loans",
        groups=(_WAGE_HISTORY, _VOE, _SELF_EMPLOYED_RETURNS),
    ),
    "usda": LoanProgramRequirements(
        program="usda",
        label="USDA",
        description="Rural Development loans",
        groups=(_WAGE_HISTORY, _TAX_RETURNS, _VOE),
    ),
    "jumbo": LoanProgramRequirements(
        program="jumbo",
        label="Jumbo",
        description="Non-conforming loans exceeding conventional limits",
        groups=(
            RequirementGroup(any_of=(DocumentType.W2,), label="W-2"),
            RequirementGroup(any_of=(DocumentType.PAY_STUB,), label="Pay Stubs"),
            _TAX_RETURNS,
            _VOE,
        ),
    ),
    # Alternative documentation; no fixed document set
    "non_qm": LoanProgramRequirements(
        program="non_qm",
        label="Non-QM",
        description="Non-Qualified Mortgage - Alternative documentation",
    ),
}


def get_program_requirements(loan_program: str) -> LoanProgramRequirements:
    """Look up a loan program's requirement table.

    Raises:
        InvalidInputError: If the loan program is unknown.
    """
    key = (loan_program or "").strip().lower()
    requirements = LOAN_PROGRAM_REQUIREMENTS.get(key)
    if requirements is None:
        raise InvalidInputError(
            f"Unknown loan program: {loan_program}",
            field="loan_program",
            value=loan_program,
            constraint=f"one of {sorted(LOAN_PROGRAM_REQUIREMENTS)}",
        )
    return requirements


def find_missing_documents(
    loan_program: str,
    present_types: Iterable[DocumentType],
    self_employed: bool = False,
) -> list[str]:
    """Return labels of unsatisfied requirement groups, in table order.

    Args:
        loan_program: Program key (e.g. "conventional")
        present_types: Types that have at least one successfully extracted document
        self_employed: Whether self-employed-only groups apply
    """
    requirements = get_program_requirements(loan_program)
    present = set(present_types)
    return [
        group.label
        for group in requirements.groups
        if group.applies(self_employed) and not group.is_satisfied(present)
    ]


def get_program_label(loan_program: str) -> Optional[str]:
    requirements = LOAN_PROGRAM_REQUIREMENTS.get((loan_program or "").strip().lower())
    return requirements.label if requirements else None
