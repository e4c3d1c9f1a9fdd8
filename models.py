"""
Scenario input records supplied by collaborators: people, accounts, income and
expense streams, goals and planning assumptions. Also the account bucket
taxonomy shared by the withdrawal sequencer and the planning graph.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from errors import InvalidInputError
from tax_utils import FILING_STATUSES

TAXABLE = 'taxable'
TAX_DEFERRED = 'tax_deferred'
TAX_FREE = 'tax_free'
TAX_TREATMENTS = (TAXABLE, TAX_DEFERRED, TAX_FREE)

BUCKET_TREATMENTS = {
    'taxable': TAXABLE,
    'ira_traditional': TAX_DEFERRED,
    '401k_traditional': TAX_DEFERRED,
    'ira_roth': TAX_FREE,
    '401k_roth': TAX_FREE,
}

DEFAULT_WITHDRAWAL_ORDER = ['taxable', 'ira_traditional', '401k_traditional', 'ira_roth', '401k_roth']

# Conversions land in the Roth IRA
ROTH_CONVERSION_TARGET = 'ira_roth'

FREQUENCIES = ('monthly', 'annual')

INCOME_TAX_CHARACTERS = (
    'ordinary', 'social_security', 'capital_gains', 'qualified_dividends',
    'tax_free', 'municipal_bond_interest',
)


def bucket_treatment(bucket: str) -> str:
    """Tax treatment for a bucket identifier"""
    try:
        return BUCKET_TREATMENTS[bucket]
    except KeyError:
        raise InvalidInputError(f"Unknown account bucket: {bucket}") from None


def empty_balances() -> Dict[str, float]:
    return {bucket: 0.0 for bucket in BUCKET_TREATMENTS}


def balances_by_treatment(balances: Dict[str, float]) -> Dict[str, float]:
    """Collapse bucket balances into taxable / tax-deferred / tax-free totals"""
    totals = {treatment: 0.0 for treatment in TAX_TREATMENTS}
    for bucket, amount in balances.items():
        totals[bucket_treatment(bucket)] += amount
    return totals


def _check_amount(name: str, value: float) -> None:
    if value is None or value < 0:
        raise InvalidInputError(f"{name} must be a non-negative amount, got {value}")


def _check_date_range(name: str, start: Optional[date], end: Optional[date]) -> None:
    for label, value in (('start_date', start), ('end_date', end)):
        if value is not None and not isinstance(value, date):
            raise InvalidInputError(f"{name} {label} must be a date, got {value!r}")
    if start is not None and end is not None and end < start:
        raise InvalidInputError(f"{name} ends ({end}) before it starts ({start})")


def _active(month: date, start: Optional[date], end: Optional[date]) -> bool:
    return (start is None or month >= start) and (end is None or month <= end)


@dataclass
class Person:
    name: str = ''
    date_of_birth: Optional[date] = None
    relationship: str = 'primary'  # primary, spouse, dependent


@dataclass
class Account:
    account_type: str
    current_value: float = 0.0
    account_id: Optional[str] = None
    name: str = ''

    def validate(self) -> None:
        bucket_treatment(self.account_type)
        _check_amount(f"Account {self.account_id or self.account_type} current_value", self.current_value)


@dataclass
class IncomeStream:
    amount: float
    frequency: str = 'annual'
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    tax_character: str = 'ordinary'
    description: str = ''

    def validate(self) -> None:
        label = f"Income stream '{self.description}'"
        _check_amount(f"{label} amount", self.amount)
        if self.frequency not in FREQUENCIES:
            raise InvalidInputError(f"{label} has unsupported frequency: {self.frequency}")
        if self.tax_character not in INCOME_TAX_CHARACTERS:
            raise InvalidInputError(f"{label} has unsupported tax character: {self.tax_character}")
        _check_date_range(label, self.start_date, self.end_date)

    def monthly_amount(self) -> float:
        if self.frequency == 'monthly':
            return self.amount
        if self.frequency == 'annual':
            return self.amount / 12
        raise InvalidInputError(f"Unsupported frequency: {self.frequency}")

    def is_active(self, month: date) -> bool:
        return _active(month, self.start_date, self.end_date)


@dataclass
class ExpenseStream:
    amount: float
    frequency: str = 'monthly'
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    inflation_rate: Optional[float] = None  # None -> scenario inflation
    description: str = ''

    def validate(self) -> None:
        label = f"Expense stream '{self.description}'"
        _check_amount(f"{label} amount", self.amount)
        if self.frequency not in FREQUENCIES:
            raise InvalidInputError(f"{label} has unsupported frequency: {self.frequency}")
        if self.inflation_rate is not None and self.inflation_rate <= -1:
            raise InvalidInputError(f"{label} inflation_rate must be greater than -100%")
        _check_date_range(label, self.start_date, self.end_date)

    def monthly_amount(self) -> float:
        if self.frequency == 'monthly':
            return self.amount
        if self.frequency == 'annual':
            return self.amount / 12
        raise InvalidInputError(f"Unsupported frequency: {self.frequency}")

    def is_active(self, month: date) -> bool:
        return _active(month, self.start_date, self.end_date)


@dataclass
class Goal:
    """Passed through to collaborators, not consumed by the engine"""
    name: str
    target_amount: float = 0.0
    target_date: Optional[date] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Assumptions:
    """Scenario-level planning assumptions"""
    state: str = 'AZ'
    filing_status: str = 'married_joint'
    inflation_rate: float = 0.03
    portfolio_return: float = 0.07
    portfolio_volatility: float = 0.15

    # Withdrawal policy
    allow_roth_withdrawals: bool = False
    withdrawal_order: Optional[List[str]] = None
    roth_conversion_budget: float = 0.0
    charitable_giving: float = 0.0
    tax_loss_harvesting: float = 0.0

    # Put after-tax surplus back into the taxable bucket at settlement
    reinvest_surplus: bool = True
    tax_year: int = 2024

    def validate(self) -> None:
        if self.filing_status not in FILING_STATUSES:
            raise InvalidInputError(f"Unsupported filing status: {self.filing_status}")
        if self.inflation_rate <= -1:
            raise InvalidInputError("inflation_rate must be greater than -100%")
        if self.portfolio_return <= -1:
            raise InvalidInputError("portfolio_return must be greater than -100%")
        if self.portfolio_volatility < 0:
            raise InvalidInputError("portfolio_volatility must be non-negative")
        _check_amount('roth_conversion_budget', self.roth_conversion_budget)
        _check_amount('charitable_giving', self.charitable_giving)
        _check_amount('tax_loss_harvesting', self.tax_loss_harvesting)
        if self.withdrawal_order is not None:
            for bucket in self.withdrawal_order:
                bucket_treatment(bucket)


@dataclass
class Scenario:
    """Everything one projection needs"""
    scenario_id: str
    people: List[Person] = field(default_factory=list)
    accounts: List[Account] = field(default_factory=list)
    income_streams: List[IncomeStream] = field(default_factory=list)
    expense_streams: List[ExpenseStream] = field(default_factory=list)
    goals: List[Goal] = field(default_factory=list)
    assumptions: Assumptions = field(default_factory=Assumptions)

    def validate(self) -> None:
        """Reject malformed input before any calculation starts"""
        if len(self.people) > 2:
            raise InvalidInputError(f"At most two people are tracked, got {len(self.people)}")
        for person in self.people:
            if person.date_of_birth is not None and not isinstance(person.date_of_birth, date):
                raise InvalidInputError(f"{person.name or 'Person'} date_of_birth must be a date")
        for account in self.accounts:
            account.validate()
        for stream in self.income_streams:
            stream.validate()
        for stream in self.expense_streams:
            stream.validate()
        self.assumptions.validate()

    @property
    def primary(self) -> Optional[Person]:
        return self.people[0] if self.people else None

    @property
    def secondary(self) -> Optional[Person]:
        return self.people[1] if len(self.people) > 1 else None

    def initial_balances(self) -> Dict[str, float]:
        """Sum account values into buckets"""
        balances = empty_balances()
        for account in self.accounts:
            balances[account.account_type] += account.current_value
        return balances
