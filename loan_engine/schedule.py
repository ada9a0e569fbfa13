"""
Schedule Generator Module

Pure amortization math: turns loan terms into an ordered list of schedule
periods. Supports the flat method (interest on the original principal every
period) and the reducing-balance method (equal installments, interest on the
remaining balance).

This module is the single rounding authority for schedules: every amount is
rounded ROUND_HALF_UP to the currency's minor unit as it is produced, equal
principal shares are rounded down, and the final period absorbs whatever
principal remains so the periods always sum to the disbursed principal exactly.
"""

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import CalculationConfig
from .currency import Money, currency_precision, max_money, min_money, sum_money
from .exceptions import LoanValidationError


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def periods_per_year(self) -> int:
        return 52 if self is RepaymentFrequency.WEEKLY else 12


class TermUnit(Enum):
    """Unit the loan term is expressed in"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class InterestMethod(Enum):
    """Interest calculation methods"""
    FLAT = "flat"            # Interest on original principal, constant per period
    REDUCING = "reducing"    # Annuity: interest on remaining balance


class RateBasis(Enum):
    """What period the quoted interest rate refers to"""
    PER_PERIOD = "per_period"  # e.g. 2% per month on a monthly loan
    ANNUAL = "annual"          # divided by periods per year


class PeriodStatus(Enum):
    """Repayment status of a schedule period"""
    UPCOMING = "upcoming"
    OVERDUE = "overdue"
    PAID = "paid"


class Bucket(Enum):
    """Amount components of a schedule period"""
    PENALTIES = "penalties"
    FEES = "fees"
    INTEREST = "interest"
    PRINCIPAL = "principal"


# Payments are applied to the buckets of a period in this order
ALLOCATION_ORDER = (Bucket.PENALTIES, Bucket.FEES, Bucket.INTEREST, Bucket.PRINCIPAL)

# Number of repayment periods in one unit of term
_PERIODS_PER_TERM_UNIT = {
    RepaymentFrequency.WEEKLY: {
        TermUnit.DAYS: Fraction(1, 7),
        TermUnit.WEEKS: Fraction(1),
        TermUnit.MONTHS: Fraction(52, 12),
        TermUnit.YEARS: Fraction(52),
    },
    RepaymentFrequency.MONTHLY: {
        TermUnit.DAYS: Fraction(12, 365),
        TermUnit.WEEKS: Fraction(12, 52),
        TermUnit.MONTHS: Fraction(1),
        TermUnit.YEARS: Fraction(12),
    },
}


def count_periods(term_value: int, term_unit: TermUnit, frequency: RepaymentFrequency) -> int:
    """
    Number of installments for a term; a partial period counts as a full one

    >>> count_periods(3, TermUnit.MONTHS, RepaymentFrequency.WEEKLY)
    13
    >>> count_periods(1, TermUnit.MONTHS, RepaymentFrequency.WEEKLY)
    5
    """
    if term_value <= 0:
        raise LoanValidationError("Term must be positive", field="term_value", term_value=term_value)
    exact = Fraction(term_value) * _PERIODS_PER_TERM_UNIT[frequency][term_unit]
    return max(1, math.ceil(exact))


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clamping to the last day of shorter months"""
    month_index = start_date.month - 1 + months
    year = start_date.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start_date.day, last_day))


def due_date_for(start_date: date, frequency: RepaymentFrequency, period: int) -> date:
    """Due date of the n-th period, always stepped from the start date"""
    if frequency is RepaymentFrequency.WEEKLY:
        return start_date + timedelta(weeks=period)
    return add_months(start_date, period)


@dataclass(frozen=True)
class ScheduleTerms:
    """Resolved numeric terms the generator works from"""
    principal: Money
    interest_rate: Decimal              # e.g. Decimal('0.02') for 2%
    term_value: int
    term_unit: TermUnit
    frequency: RepaymentFrequency
    method: InterestMethod
    rate_basis: RateBasis = RateBasis.PER_PERIOD

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            object.__setattr__(self, 'interest_rate', Decimal(str(self.interest_rate)))
        if not self.principal.is_positive():
            raise LoanValidationError("Principal must be positive", field="amount",
                                      amount=self.principal.amount)
        if self.interest_rate < Decimal('0'):
            raise LoanValidationError("Interest rate cannot be negative", field="interest_rate",
                                      interest_rate=self.interest_rate)
        if self.term_value <= 0:
            raise LoanValidationError("Term must be positive", field="term_value",
                                      term_value=self.term_value)

    @property
    def period_count(self) -> int:
        return count_periods(self.term_value, self.term_unit, self.frequency)

    @property
    def rate_per_period(self) -> Decimal:
        if self.rate_basis is RateBasis.ANNUAL:
            return self.interest_rate / Decimal(self.frequency.periods_per_year)
        return self.interest_rate


@dataclass
class SchedulePeriod:
    """One installment of a loan schedule with its paid-to-date amounts"""
    period: int
    due_date: date
    principal: Money
    interest: Money
    fees: Money = None
    penalties: Money = None
    principal_paid: Money = None
    interest_paid: Money = None
    fees_paid: Money = None
    penalties_paid: Money = None
    status: PeriodStatus = PeriodStatus.UPCOMING
    loan_id: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.principal.currency)
        for name in ('fees', 'penalties', 'principal_paid', 'interest_paid', 'fees_paid', 'penalties_paid'):
            if getattr(self, name) is None:
                setattr(self, name, zero)

    @property
    def currency(self) -> str:
        return self.principal.currency

    @property
    def record_id(self) -> str:
        """Storage key; unique per (loan, period)"""
        return f"{self.loan_id}:{self.period}"

    def due(self, bucket: Bucket) -> Money:
        return getattr(self, bucket.value)

    def paid_for(self, bucket: Bucket) -> Money:
        return getattr(self, f"{bucket.value}_paid")

    def remaining(self, bucket: Bucket) -> Money:
        """Unpaid part of one bucket, never negative"""
        return max_money(self.due(bucket) - self.paid_for(bucket), Money.zero(self.currency))

    def add_paid(self, bucket: Bucket, amount: Money) -> None:
        """Adjust a bucket's paid amount; negative amounts reverse earlier payments"""
        new_paid = self.paid_for(bucket) + amount
        if new_paid.is_negative() or new_paid > self.due(bucket):
            raise ValueError(
                f"Period {self.period} {bucket.value} paid would become {new_paid.to_string()} "
                f"against {self.due(bucket).to_string()} due"
            )
        setattr(self, f"{bucket.value}_paid", new_paid)

    @property
    def total(self) -> Money:
        return self.principal + self.interest + self.fees + self.penalties

    @property
    def paid(self) -> Money:
        return self.principal_paid + self.interest_paid + self.fees_paid + self.penalties_paid

    @property
    def outstanding(self) -> Money:
        return self.total - self.paid

    @property
    def is_settled(self) -> bool:
        return self.paid >= self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'period': self.period,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency,
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'fees': str(self.fees.amount),
            'penalties': str(self.penalties.amount),
            'total': str(self.total.amount),
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'fees_paid': str(self.fees_paid.amount),
            'penalties_paid': str(self.penalties_paid.amount),
            'paid': str(self.paid.amount),
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SchedulePeriod':
        currency = data['currency']

        def get_money(name: str) -> Money:
            return Money(Decimal(data.get(name, '0')), currency)

        return cls(
            period=data['period'],
            due_date=date.fromisoformat(data['due_date']),
            principal=get_money('principal'),
            interest=get_money('interest'),
            fees=get_money('fees'),
            penalties=get_money('penalties'),
            principal_paid=get_money('principal_paid'),
            interest_paid=get_money('interest_paid'),
            fees_paid=get_money('fees_paid'),
            penalties_paid=get_money('penalties_paid'),
            status=PeriodStatus(data['status']),
            loan_id=data.get('loan_id'),
        )


def _equal_share(principal: Money, periods: int) -> Money:
    """principal / periods rounded down to the minor unit; the last period takes the rest"""
    step = Decimal('1').scaleb(-currency_precision(principal.currency))
    return Money((principal.amount / Decimal(periods)).quantize(step, rounding=ROUND_DOWN), principal.currency)


def _installment(principal: Money, rate: Decimal, periods: int) -> Money:
    """Equal installment P*r / (1 - (1 + r)^-n); P/n without interest"""
    if rate == Decimal('0'):
        return _equal_share(principal, periods)
    factor = Decimal('1') - (Decimal('1') + rate) ** -periods
    return Money(principal.amount * rate / factor, principal.currency)


def generate_schedule(
    terms: ScheduleTerms,
    start_date: Union[date, datetime],
    config: CalculationConfig,
    loan_id: Optional[str] = None
) -> List[SchedulePeriod]:
    """
    Build the repayment schedule for a loan

    Args:
        terms: Principal, rate, term, frequency and method
        start_date: Disbursement date; period n falls due n steps later
        config: Rounding context; its currency must match the principal
        loan_id: Owning loan, stamped onto each period

    Returns:
        Periods ordered by period number. Fees and penalties start at zero.
    """
    if terms.principal.currency != config.currency.upper():
        raise LoanValidationError(
            f"Principal currency {terms.principal.currency} does not match calculation currency {config.currency}",
            field="currency"
        )
    if isinstance(start_date, datetime):
        start_date = start_date.date()

    currency = terms.principal.currency
    zero = Money.zero(currency)
    periods = terms.period_count
    rate = terms.rate_per_period
    balance = terms.principal

    if terms.method is InterestMethod.FLAT:
        flat_interest = terms.principal * rate
        flat_principal = _equal_share(terms.principal, periods)
    else:
        installment = _installment(terms.principal, rate, periods)

    schedule = []
    for number in range(1, periods + 1):
        if terms.method is InterestMethod.FLAT:
            interest = flat_interest
            principal = flat_principal
        else:
            interest = balance * rate
            principal = max_money(installment - interest, zero)

        # Final period takes the rounding remainder
        if number == periods:
            principal = balance
        else:
            principal = min_money(principal, balance)
        balance = balance - principal

        period = SchedulePeriod(
            period=number,
            due_date=due_date_for(start_date, terms.frequency, number),
            principal=principal,
            interest=interest,
            loan_id=loan_id,
        )
        # Nothing falls due: principal smaller than one minor unit per period
        if period.total.is_zero():
            period.status = PeriodStatus.PAID
        schedule.append(period)

    return schedule


def total_interest(periods: Sequence[SchedulePeriod], currency: str) -> Money:
    return sum_money((p.interest for p in periods), currency)


def total_principal(periods: Sequence[SchedulePeriod], currency: str) -> Money:
    return sum_money((p.principal for p in periods), currency)
