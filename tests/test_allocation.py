"""
Tests for the payment allocation waterfall
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.allocation import Allocation, AllocationLine, PaymentAllocator
from loan_engine.config import CalculationConfig
from loan_engine.currency import Money
from loan_engine.exceptions import AllocationMismatch, LoanValidationError
from loan_engine.schedule import Bucket, PeriodStatus, SchedulePeriod


def tzs(value) -> Money:
    return Money(Decimal(str(value)), "TZS")


def make_period(number, principal, interest, fees=0, penalties=0, due=None, status=PeriodStatus.UPCOMING):
    return SchedulePeriod(
        period=number,
        due_date=due or date(2025, number, 1),
        principal=tzs(principal),
        interest=tzs(interest),
        fees=tzs(fees),
        penalties=tzs(penalties),
        status=status,
        loan_id="L1",
    )


@pytest.fixture
def allocator():
    return PaymentAllocator(CalculationConfig(currency="TZS"))


class TestWaterfall:
    """Bucket order inside a period"""

    def test_fees_interest_principal(self, allocator):
        """55,000 fully pays fees 5,000, interest 20,000 and principal 30,000"""
        periods = [make_period(1, 30000, 20000, fees=5000)]
        allocation = allocator.allocate(tzs(55000), periods)

        assert len(allocation.lines) == 1
        line = allocation.lines[0]
        assert line.fees == tzs(5000)
        assert line.interest == tzs(20000)
        assert line.principal == tzs(30000)
        assert allocation.unallocated.is_zero()

        allocator.apply(allocation, periods)
        assert periods[0].status == PeriodStatus.PAID

    def test_short_payment_leaves_principal_unpaid(self, allocator):
        """50,000 against the same period stops 5,000 short on principal"""
        periods = [make_period(1, 30000, 20000, fees=5000)]
        allocation = allocator.allocate(tzs(50000), periods)

        line = allocation.lines[0]
        assert (line.fees, line.interest, line.principal) == (tzs(5000), tzs(20000), tzs(25000))

        allocator.apply(allocation, periods)
        assert periods[0].status == PeriodStatus.UPCOMING
        assert periods[0].remaining(Bucket.PRINCIPAL) == tzs(5000)

    def test_penalties_first(self, allocator):
        periods = [make_period(1, 30000, 20000, fees=5000, penalties=2000)]
        allocation = allocator.allocate(tzs(4000), periods)

        line = allocation.lines[0]
        assert line.penalties == tzs(2000)
        assert line.fees == tzs(2000)
        assert line.interest.is_zero()
        assert line.principal.is_zero()


class TestPeriodOrder:
    """Oldest due date first"""

    def test_oldest_period_settled_first(self, allocator):
        periods = [
            make_period(2, 1000, 100, due=date(2025, 3, 1)),
            make_period(1, 1000, 100, due=date(2025, 2, 1)),
        ]
        allocation = allocator.allocate(tzs(1500), periods)

        assert [line.period for line in allocation.lines] == [1, 2]
        assert allocation.lines[0].total == tzs(1100)
        assert allocation.lines[1].interest == tzs(100)
        assert allocation.lines[1].principal == tzs(300)

    def test_paid_periods_skipped(self, allocator):
        periods = [
            make_period(1, 1000, 100, status=PeriodStatus.PAID),
            make_period(2, 1000, 100),
        ]
        allocation = allocator.allocate(tzs(500), periods)
        assert [line.period for line in allocation.lines] == [2]

    def test_overdue_status_recorded(self, allocator):
        periods = [make_period(1, 1000, 100, status=PeriodStatus.OVERDUE)]
        allocation = allocator.allocate(tzs(50), periods)
        assert allocation.lines[0].prior_status == PeriodStatus.OVERDUE


class TestAllocationInvariants:
    """Conservation and purity"""

    def test_deterministic_and_pure(self, allocator):
        """Same inputs give the same split and the periods are untouched"""
        periods = [make_period(1, 1000, 100, fees=10), make_period(2, 1000, 100)]
        first = allocator.allocate(tzs(1500), periods)
        second = allocator.allocate(tzs(1500), periods)

        assert first == second
        assert all(p.paid.is_zero() for p in periods)

    def test_no_bucket_over_allocated(self, allocator):
        periods = [make_period(1, 1000, 100), make_period(2, 1000, 100)]
        allocation = allocator.allocate(tzs(5000), periods)

        for line in allocation.lines:
            period = periods[line.period - 1]
            for bucket in (Bucket.PENALTIES, Bucket.FEES, Bucket.INTEREST, Bucket.PRINCIPAL):
                assert line.amount_for(bucket) <= period.due(bucket)

    def test_overflow_left_unallocated(self, allocator):
        """Paying more than owed keeps the remainder on the allocation"""
        periods = [make_period(1, 1000, 100)]
        allocation = allocator.allocate(tzs(1500), periods)

        assert allocation.allocated == tzs(1100)
        assert allocation.unallocated == tzs(400)
        assert allocation.has_overflow
        assert allocation.allocated + allocation.unallocated == allocation.amount

    def test_bucket_totals(self, allocator):
        periods = [make_period(1, 1000, 100, fees=10), make_period(2, 1000, 100)]
        totals = allocator.allocate(tzs(1300), periods).bucket_totals()
        assert totals == {
            "penalties": tzs(0),
            "fees": tzs(10),
            "interest": tzs(200),
            "principal": tzs(1090),
        }

    def test_unbalanced_allocation_rejected(self):
        with pytest.raises(ValueError):
            Allocation(amount=tzs(100), lines=(), unallocated=tzs(50))


class TestAllocationValidation:
    def test_non_positive_amount(self, allocator):
        with pytest.raises(LoanValidationError):
            allocator.allocate(tzs(0), [make_period(1, 1000, 100)])

    def test_currency_mismatch(self, allocator):
        with pytest.raises(LoanValidationError) as exc_info:
            allocator.allocate(Money(Decimal("100"), "KES"), [make_period(1, 1000, 100)])
        assert exc_info.value.field == "currency"


class TestReverse:
    """Voids take the exact recorded split back out"""

    def test_reverse_restores_periods(self, allocator):
        periods = [make_period(1, 1000, 100, status=PeriodStatus.OVERDUE), make_period(2, 1000, 100)]
        allocation = allocator.allocate(tzs(1500), periods)
        allocator.apply(allocation, periods)
        assert periods[0].status == PeriodStatus.PAID

        allocator.reverse(allocation, periods)
        assert periods[0].status == PeriodStatus.OVERDUE
        assert periods[1].status == PeriodStatus.UPCOMING
        assert all(p.paid.is_zero() for p in periods)

    def test_reverse_keeps_overdue_marked_later(self, allocator):
        """A period marked overdue after a part payment stays overdue when the payment is voided"""
        periods = [make_period(1, 1000, 100)]
        allocation = allocator.allocate(tzs(400), periods)
        allocator.apply(allocation, periods)

        periods[0].status = PeriodStatus.OVERDUE
        periods[0].penalties = tzs(50)

        allocator.reverse(allocation, periods)
        assert periods[0].status == PeriodStatus.OVERDUE
        assert periods[0].paid.is_zero()

    def test_reverse_of_settling_payment_restores_status(self, allocator):
        """A settled period reopened by its void gets its old status back"""
        periods = [make_period(1, 1000, 100, status=PeriodStatus.OVERDUE)]
        allocation = allocator.allocate(tzs(1100), periods)
        allocator.apply(allocation, periods)
        assert periods[0].status == PeriodStatus.PAID

        allocator.reverse(allocation, periods)
        assert periods[0].status == PeriodStatus.OVERDUE

    def test_reverse_keeps_later_payments(self, allocator):
        """Reversing an earlier payment leaves a later one in place"""
        periods = [make_period(1, 1000, 100)]
        first = allocator.allocate(tzs(300), periods)
        allocator.apply(first, periods)
        second = allocator.allocate(tzs(200), periods)
        allocator.apply(second, periods)

        allocator.reverse(first, periods)
        assert periods[0].paid == tzs(200)

    def test_reverse_missing_period(self, allocator):
        allocation = Allocation(
            amount=tzs(10),
            lines=(AllocationLine(period=9, penalties=tzs(0), fees=tzs(0), interest=tzs(10),
                                  principal=tzs(0), prior_status=PeriodStatus.UPCOMING),),
            unallocated=tzs(0),
        )
        with pytest.raises(AllocationMismatch):
            allocator.reverse(allocation, [make_period(1, 1000, 100)])

    def test_reverse_more_than_paid(self, allocator):
        periods = [make_period(1, 1000, 100)]
        allocation = allocator.allocate(tzs(50), periods)
        with pytest.raises(AllocationMismatch):
            allocator.reverse(allocation, periods)

    def test_document_round_trip(self, allocator):
        periods = [make_period(1, 1000, 100)]
        allocation = allocator.allocate(tzs(1500), periods)
        assert Allocation.from_dict(allocation.to_dict()) == allocation
