"""
Payment Allocation Module

Splits a repayment across a loan's unpaid schedule periods. Periods are
visited oldest due date first (period number breaks ties) and within a period
money goes strictly to penalties, then fees, then interest, then principal.
No bucket ever receives more than it still owes; whatever is left after the
last period stays unallocated on the payment.

``PaymentAllocator.allocate`` is a pure function of the amount and a schedule
snapshot. ``apply`` and ``reverse`` mutate the periods in place; a void
reverses the recorded allocation line by line instead of re-running it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

from .config import CalculationConfig
from .currency import Money, min_money, sum_money
from .exceptions import AllocationMismatch, LoanValidationError
from .schedule import ALLOCATION_ORDER, Bucket, PeriodStatus, SchedulePeriod


@dataclass(frozen=True)
class AllocationLine:
    """Amounts a payment put into one schedule period"""
    period: int
    penalties: Money
    fees: Money
    interest: Money
    principal: Money
    prior_status: PeriodStatus

    def amount_for(self, bucket: Bucket) -> Money:
        return getattr(self, bucket.value)

    @property
    def total(self) -> Money:
        return self.penalties + self.fees + self.interest + self.principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'period': self.period,
            'penalties': str(self.penalties.amount),
            'fees': str(self.fees.amount),
            'interest': str(self.interest.amount),
            'principal': str(self.principal.amount),
            'prior_status': self.prior_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], currency: str) -> 'AllocationLine':
        return cls(
            period=data['period'],
            penalties=Money(Decimal(data['penalties']), currency),
            fees=Money(Decimal(data['fees']), currency),
            interest=Money(Decimal(data['interest']), currency),
            principal=Money(Decimal(data['principal']), currency),
            prior_status=PeriodStatus(data['prior_status']),
        )


@dataclass(frozen=True)
class Allocation:
    """Complete breakdown of one payment; lines plus unallocated always equal the amount"""
    amount: Money
    lines: Tuple[AllocationLine, ...]
    unallocated: Money

    def __post_init__(self):
        if self.allocated + self.unallocated != self.amount:
            raise ValueError(
                f"Allocation of {self.amount.to_string()} does not add up: "
                f"{self.allocated.to_string()} allocated, {self.unallocated.to_string()} unallocated"
            )

    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def allocated(self) -> Money:
        return sum_money((line.total for line in self.lines), self.amount.currency)

    @property
    def has_overflow(self) -> bool:
        return self.unallocated.is_positive()

    def bucket_total(self, bucket: Bucket) -> Money:
        return sum_money((line.amount_for(bucket) for line in self.lines), self.currency)

    def bucket_totals(self) -> Dict[str, Money]:
        return {bucket.value: self.bucket_total(bucket) for bucket in ALLOCATION_ORDER}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount.amount),
            'currency': self.currency,
            'unallocated': str(self.unallocated.amount),
            'lines': [line.to_dict() for line in self.lines],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Allocation':
        currency = data['currency']
        return cls(
            amount=Money(Decimal(data['amount']), currency),
            lines=tuple(AllocationLine.from_dict(line, currency) for line in data['lines']),
            unallocated=Money(Decimal(data['unallocated']), currency),
        )


class PaymentAllocator:
    """Applies the penalties → fees → interest → principal waterfall"""

    def __init__(self, config: CalculationConfig):
        self.config = config

    def allocate(self, amount: Money, periods: Sequence[SchedulePeriod]) -> Allocation:
        """
        Compute how a payment would be split, without touching the periods

        Args:
            amount: Payment amount, positive
            periods: The loan's schedule as it is now

        Returns:
            Allocation whose lines only name periods that receive money
        """
        if not amount.is_positive():
            raise LoanValidationError(f"Payment amount must be positive, got {amount.to_string()}", field="amount")
        if amount.currency != self.config.currency.upper():
            raise LoanValidationError(f"Payment currency {amount.currency} does not match loan currency {self.config.currency}",
                                      field="currency")

        remaining = amount
        lines: List[AllocationLine] = []
        unpaid = sorted(
            (p for p in periods if p.status is not PeriodStatus.PAID),
            key=lambda p: (p.due_date, p.period)
        )

        for period in unpaid:
            if remaining.is_zero():
                break
            parts = {}
            for bucket in ALLOCATION_ORDER:
                take = min_money(period.remaining(bucket), remaining)
                parts[bucket] = take
                remaining = remaining - take

            line = AllocationLine(
                period=period.period,
                penalties=parts[Bucket.PENALTIES],
                fees=parts[Bucket.FEES],
                interest=parts[Bucket.INTEREST],
                principal=parts[Bucket.PRINCIPAL],
                prior_status=period.status,
            )
            if not line.total.is_zero():
                lines.append(line)

        return Allocation(amount=amount, lines=tuple(lines), unallocated=remaining)

    def apply(self, allocation: Allocation, periods: Sequence[SchedulePeriod]) -> List[SchedulePeriod]:
        """Add an allocation to the periods; returns the periods it touched"""
        touched = []
        by_number = {p.period: p for p in periods}
        for line in allocation.lines:
            period = self._period_for(line, by_number)
            for bucket in ALLOCATION_ORDER:
                self._adjust(period, bucket, line.amount_for(bucket))
            if period.is_settled:
                period.status = PeriodStatus.PAID
            touched.append(period)
        return touched

    def reverse(self, allocation: Allocation, periods: Sequence[SchedulePeriod]) -> List[SchedulePeriod]:
        """
        Take a previously applied allocation back out

        A period this payment settled goes back to its status from before the
        payment; any other status (e.g. ``overdue`` set by collections since)
        is left as it is.
        """
        touched = []
        by_number = {p.period: p for p in periods}
        for line in allocation.lines:
            period = self._period_for(line, by_number)
            for bucket in ALLOCATION_ORDER:
                self._adjust(period, bucket, -line.amount_for(bucket))
            if period.is_settled and period.total.is_positive():
                period.status = PeriodStatus.PAID
            elif period.status is PeriodStatus.PAID:
                period.status = line.prior_status
            touched.append(period)
        return touched

    def _period_for(self, line: AllocationLine, by_number: Dict[int, SchedulePeriod]) -> SchedulePeriod:
        period = by_number.get(line.period)
        if period is None:
            raise AllocationMismatch(f"Allocation names period {line.period} which is not on the schedule",
                                     period=line.period)
        return period

    def _adjust(self, period: SchedulePeriod, bucket: Bucket, amount: Money) -> None:
        if amount.is_zero():
            return
        try:
            period.add_paid(bucket, amount)
        except ValueError as exc:
            raise AllocationMismatch(str(exc), loan_id=period.loan_id, period=period.period,
                                     bucket=bucket.value) from exc
