"""
Loan Module

Handles loan application, approval, disbursement and closure, plus the two
ways a running loan is replaced by a new one (reschedule and top-up) and
write-off. Schedule periods are materialized once at disbursement and mutated
in place by payments; loan aggregates are always recomputed from them.

Every state change runs in one storage transaction under a row lock on the
loan, and the ledger journal it causes is posted in that same transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, replace
from contextlib import contextmanager
from fractions import Fraction
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .config import CalculationConfig
from .currency import Money, sum_money
from .events import DomainEvent, EventDispatcher, EventPayload
from .exceptions import InvalidTransition, LoanNotFound, LoanValidationError, LockConflict
from .ledger import JournalEventType, LedgerPoster
from .logging_config import get_logger, log_action
from .schedule import (
    InterestMethod, RateBasis, RepaymentFrequency, SchedulePeriod, ScheduleTerms, TermUnit,
    generate_schedule
)
from .storage import LockTimeoutError, StorageInterface, StorageRecord
from .tenancy import get_current_scope


logger = get_logger("loan_engine.loans")


class LoanState(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application captured, awaiting decision
    APPROVED = "approved"      # Approved, not yet paid out
    REJECTED = "rejected"      # Declined (terminal)
    DISBURSED = "disbursed"    # Funds paid out, schedule running
    CLOSED = "closed"          # Repaid, superseded or written off (terminal)


LOAN_TRANSITIONS = {
    LoanState.PENDING: frozenset({LoanState.APPROVED, LoanState.REJECTED}),
    LoanState.APPROVED: frozenset({LoanState.DISBURSED, LoanState.REJECTED}),
    LoanState.REJECTED: frozenset(),
    LoanState.DISBURSED: frozenset({LoanState.CLOSED}),
    LoanState.CLOSED: frozenset(),
}


class CloseReason(Enum):
    """Why a loan reached the closed state"""
    REPAID = "repaid"
    RESCHEDULED = "rescheduled"
    TOPPED_UP = "topped_up"
    WRITTEN_OFF = "written_off"


class LoanStateMachine:
    """Checks moves against the transition table"""

    transitions = LOAN_TRANSITIONS

    @classmethod
    def can_transition(cls, current: LoanState, target: LoanState) -> bool:
        return target in cls.transitions[current]

    @classmethod
    def allowed_targets(cls, current: LoanState) -> List[LoanState]:
        return sorted(cls.transitions[current], key=lambda state: state.value)

    @classmethod
    def is_terminal(cls, state: LoanState) -> bool:
        return not cls.transitions[state]

    @classmethod
    def assert_transition(cls, loan: 'Loan', target: LoanState, action: Optional[str] = None) -> None:
        """
        Raises:
            InvalidTransition: If ``loan.status -> target`` is not in the table
        """
        if not cls.can_transition(loan.status, target):
            raise InvalidTransition("loan", loan.id, loan.status.value, target.value, action=action)


def term_in_months(term_value: int, term_unit: TermUnit) -> Fraction:
    """Express a term in (possibly fractional) months for product bounds"""
    per_unit = {
        TermUnit.DAYS: Fraction(12, 365),
        TermUnit.WEEKS: Fraction(12, 52),
        TermUnit.MONTHS: Fraction(1),
        TermUnit.YEARS: Fraction(12),
    }
    return Fraction(term_value) * per_unit[term_unit]


@dataclass
class LoanApplication:
    """What a borrower asks for"""
    borrower_id: str
    amount: Money
    term_value: int
    term_unit: TermUnit = TermUnit.MONTHS
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    interest_rate: Optional[Decimal] = None
    interest_method: Optional[InterestMethod] = None
    rate_basis: RateBasis = RateBasis.PER_PERIOD
    purpose: Optional[str] = None


@dataclass(frozen=True)
class LoanProduct:
    """Reference data a loan may be originated against"""
    code: str
    name: str = ""
    active: bool = True
    interest_method: InterestMethod = InterestMethod.FLAT
    interest_rate: Decimal = Decimal('0')
    rate_basis: Optional[RateBasis] = None
    min_principal: Optional[Decimal] = None
    max_principal: Optional[Decimal] = None
    min_term_months: Optional[int] = None
    max_term_months: Optional[int] = None

    def apply_defaults(self, application: LoanApplication) -> LoanApplication:
        """Fill in method, rate and basis the application left open"""
        changes: Dict[str, Any] = {}
        if application.interest_method is None:
            changes['interest_method'] = self.interest_method
        if application.interest_rate is None:
            changes['interest_rate'] = self.interest_rate
            if self.rate_basis is not None:
                changes['rate_basis'] = self.rate_basis
        return replace(application, **changes) if changes else application

    def validate(self, application: LoanApplication) -> None:
        """
        Raises:
            LoanValidationError: If the application falls outside the product's bounds
        """
        if not self.active:
            raise LoanValidationError(f"Loan product {self.code} is not active", field="product_code",
                                      product_code=self.code)
        amount = application.amount.amount
        if self.min_principal is not None and amount < self.min_principal:
            raise LoanValidationError(f"Amount must be at least {self.min_principal}", field="amount",
                                      product_code=self.code, amount=amount)
        if self.max_principal is not None and amount > self.max_principal:
            raise LoanValidationError(f"Amount must not exceed {self.max_principal}", field="amount",
                                      product_code=self.code, amount=amount)

        months = term_in_months(application.term_value, application.term_unit)
        if self.min_term_months is not None and months < self.min_term_months:
            raise LoanValidationError(f"Term must be at least {self.min_term_months} months",
                                      field="term_value", product_code=self.code)
        if self.max_term_months is not None and months > self.max_term_months:
            raise LoanValidationError(f"Term must not exceed {self.max_term_months} months",
                                      field="term_value", product_code=self.code)


@dataclass
class RescheduleTerms:
    """Terms for the loan that replaces a rescheduled or topped-up one"""
    interest_rate: Decimal
    term_value: int
    term_unit: TermUnit = TermUnit.MONTHS
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    interest_method: InterestMethod = InterestMethod.FLAT
    rate_basis: RateBasis = RateBasis.PER_PERIOD

    @classmethod
    def from_loan(cls, loan: 'Loan') -> 'RescheduleTerms':
        return cls(
            interest_rate=loan.interest_rate,
            term_value=loan.term_value,
            term_unit=loan.term_unit,
            repayment_frequency=loan.repayment_frequency,
            interest_method=loan.interest_method,
            rate_basis=loan.rate_basis
        )


_MONEY_FIELDS = ('amount', 'total_interest', 'total_paid', 'charges_paid', 'written_off_amount')
_DATETIME_FIELDS = ('approval_date', 'rejection_date', 'closed_date')


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, lifecycle status and repayment aggregates"""
    reference: str
    borrower_id: str
    amount: Money                       # Principal
    interest_rate: Decimal              # e.g. Decimal('0.02') for 2%
    term_value: int
    term_unit: TermUnit = TermUnit.MONTHS
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    interest_method: InterestMethod = InterestMethod.FLAT
    rate_basis: RateBasis = RateBasis.PER_PERIOD
    status: LoanState = LoanState.PENDING

    # Recomputed from the schedule after every mutation
    total_interest: Money = None        # Scheduled interest
    total_paid: Money = None            # Principal + interest recovered
    charges_paid: Money = None          # Fees + penalties recovered
    written_off_amount: Money = None

    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    product_code: Optional[str] = None
    purpose: Optional[str] = None

    initiated_by: Optional[str] = None
    approved_by: Optional[str] = None
    approval_date: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    disbursed_by: Optional[str] = None
    disbursement_date: Optional[date] = None
    disbursement_method: Optional[str] = None
    closed_by: Optional[str] = None
    closed_date: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None

    # Lineage: the replacement points back, the replaced loan points forward
    rescheduled_from_id: Optional[str] = None
    top_up_of_id: Optional[str] = None
    superseded_by_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            self.interest_rate = Decimal(str(self.interest_rate))
        zero = Money.zero(self.amount.currency)
        for name in _MONEY_FIELDS[1:]:
            if getattr(self, name) is None:
                setattr(self, name, zero)

    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def outstanding(self) -> Money:
        """Principal plus scheduled interest not yet recovered"""
        return self.amount + self.total_interest - self.total_paid

    @property
    def is_terminal(self) -> bool:
        return LoanStateMachine.is_terminal(self.status)

    @property
    def supersedes_id(self) -> Optional[str]:
        """Loan this one replaced, if any"""
        return self.rescheduled_from_id or self.top_up_of_id

    def schedule_terms(self) -> ScheduleTerms:
        return ScheduleTerms(
            principal=self.amount,
            interest_rate=self.interest_rate,
            term_value=self.term_value,
            term_unit=self.term_unit,
            frequency=self.repayment_frequency,
            method=self.interest_method,
            rate_basis=self.rate_basis
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        currency = data.pop('currency')
        for name in _MONEY_FIELDS:
            if data.get(name) is not None:
                data[name] = Money(Decimal(data[name]), currency)
        for name in _DATETIME_FIELDS:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        if data.get('disbursement_date'):
            data['disbursement_date'] = date.fromisoformat(data['disbursement_date'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        data['term_unit'] = TermUnit(data['term_unit'])
        data['repayment_frequency'] = RepaymentFrequency(data['repayment_frequency'])
        data['interest_method'] = InterestMethod(data['interest_method'])
        data['rate_basis'] = RateBasis(data['rate_basis'])
        data['status'] = LoanState(data['status'])
        if data.get('close_reason'):
            data['close_reason'] = CloseReason(data['close_reason'])
        return super().from_dict(data)


def unpaid_principal(periods: List[SchedulePeriod], currency: str) -> Money:
    return sum_money((p.principal - p.principal_paid for p in periods), currency)


class LoanManager:
    """
    Manages the loan lifecycle from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger_poster: LedgerPoster,
        audit_trail: AuditTrail,
        calculation_config: Optional[CalculationConfig] = None,
        lock_timeout: float = 5.0,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger_poster = ledger_poster
        self.audit_trail = audit_trail
        self.calculation_config = calculation_config or CalculationConfig()
        self.lock_timeout = lock_timeout
        self.event_dispatcher = event_dispatcher

        self.loans_table = "loans"
        self.schedule_table = "loan_schedule_periods"
        self.storage.add_unique_constraint(self.loans_table, ("reference",))
        self.storage.add_unique_constraint(self.schedule_table, ("loan_id", "period"))

    def calculation_config_for(self, currency: str) -> CalculationConfig:
        """Rounding context for a loan's currency"""
        return CalculationConfig(currency=currency,
                                 rounding_tolerance=self.calculation_config.rounding_tolerance)

    @contextmanager
    def locked_loan(self, loan_id: str):
        """
        Open a transaction, take the loan's row lock and yield the loan as stored

        Raises:
            LoanNotFound: If the loan does not exist
            LockConflict: If the lock is not granted within ``lock_timeout``
        """
        try:
            with self.storage.atomic():
                self.storage.lock_record(self.loans_table, loan_id, timeout=self.lock_timeout)
                yield self.require_loan(loan_id)
        except LockTimeoutError as exc:
            logger.warning(f"Lock wait on loan {loan_id} timed out after {self.lock_timeout}s")
            raise LockConflict(loan_id, self.lock_timeout) from exc

    def publish(self, events: List[EventPayload]) -> None:
        """Hand committed events to subscribers"""
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish_all(events)

    def _event(self, event_type: DomainEvent, loan: Loan, **data: Any) -> EventPayload:
        payload = {
            'reference': loan.reference,
            'status': loan.status.value,
            'tenant_id': loan.tenant_id,
        }
        payload.update(data)
        return EventPayload(event_type=event_type, entity_type="loan", entity_id=loan.id, data=payload)

    def _audit(self, event_type: AuditEventType, loan: Loan, actor_id: Optional[str],
               **metadata: Any) -> None:
        metadata.setdefault('reference', loan.reference)
        metadata.setdefault('status', loan.status.value)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata=metadata,
            user_id=actor_id,
            tenant_id=loan.tenant_id
        )

    def _new_reference(self) -> str:
        return f"LN-{datetime.now(timezone.utc):%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"

    def apply_for_loan(
        self,
        application: LoanApplication,
        actor_id: Optional[str] = None,
        product: Optional[LoanProduct] = None
    ) -> Loan:
        """
        Capture a loan application in the pending state

        Args:
            application: Borrower, amount and requested terms
            actor_id: Who captured the application
            product: Optional product whose bounds and defaults apply

        Returns:
            Created Loan, stamped with the current tenant scope

        Raises:
            LoanValidationError: If terms are invalid or outside the product's bounds
        """
        if product is not None:
            application = product.apply_defaults(application)
            product.validate(application)
        if application.interest_rate is None:
            raise LoanValidationError("Interest rate is required", field="interest_rate")
        if application.interest_method is None:
            raise LoanValidationError("Interest method is required", field="interest_method")

        now = datetime.now(timezone.utc)
        scope = get_current_scope()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            reference=self._new_reference(),
            borrower_id=application.borrower_id,
            amount=application.amount,
            interest_rate=application.interest_rate,
            term_value=application.term_value,
            term_unit=application.term_unit,
            repayment_frequency=application.repayment_frequency,
            interest_method=application.interest_method,
            rate_basis=application.rate_basis,
            tenant_id=scope.tenant_id,
            branch_id=scope.branch_id,
            product_code=product.code if product else None,
            purpose=application.purpose,
            initiated_by=actor_id
        )
        # Validates principal, rate and term before anything is stored
        loan.schedule_terms()

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self._audit(AuditEventType.LOAN_APPLIED, loan, actor_id,
                        borrower_id=loan.borrower_id,
                        amount=loan.amount.to_string(),
                        interest_rate=loan.interest_rate,
                        interest_method=loan.interest_method.value,
                        term=f"{loan.term_value} {loan.term_unit.value}",
                        product_code=loan.product_code)

        log_action(logger, "info", f"Loan {loan.reference} applied for {loan.amount.to_string()}",
                   user_id=actor_id, action="apply", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_APPLIED, loan, amount=str(loan.amount.amount))])
        return loan

    def approve(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Approve a pending loan"""
        with self.locked_loan(loan_id) as loan:
            LoanStateMachine.assert_transition(loan, LoanState.APPROVED, action="approve")
            now = datetime.now(timezone.utc)
            loan.status = LoanState.APPROVED
            loan.approved_by = actor_id
            loan.approval_date = now
            self.save_loan(loan)
            self._audit(AuditEventType.LOAN_APPROVED, loan, actor_id)

        log_action(logger, "info", f"Loan {loan.reference} approved",
                   user_id=actor_id, action="approve", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_APPROVED, loan)])
        return loan

    def reject(self, loan_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None) -> Loan:
        """Reject a pending or approved loan; no financial effect"""
        with self.locked_loan(loan_id) as loan:
            LoanStateMachine.assert_transition(loan, LoanState.REJECTED, action="reject")
            loan.status = LoanState.REJECTED
            loan.rejected_by = actor_id
            loan.rejection_date = datetime.now(timezone.utc)
            loan.rejection_reason = reason
            self.save_loan(loan)
            self._audit(AuditEventType.LOAN_REJECTED, loan, actor_id, reason=reason)

        log_action(logger, "info", f"Loan {loan.reference} rejected",
                   user_id=actor_id, action="reject", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_REJECTED, loan, reason=reason)])
        return loan

    def disburse(
        self,
        loan_id: str,
        actor_id: Optional[str] = None,
        method: str = "cash",
        disbursement_date: Optional[date] = None
    ) -> Loan:
        """
        Pay out an approved loan

        Materializes the repayment schedule from the disbursement date and
        posts Dr loans receivable / Cr the account for ``method``.

        Returns:
            Updated Loan with ``total_interest`` set from the schedule
        """
        with self.locked_loan(loan_id) as loan:
            LoanStateMachine.assert_transition(loan, LoanState.DISBURSED, action="disburse")
            loan.status = LoanState.DISBURSED
            loan.disbursed_by = actor_id
            loan.disbursement_date = disbursement_date or datetime.now(timezone.utc).date()
            loan.disbursement_method = method

            periods = self.get_schedule(loan.id)
            if not periods:
                periods = self._materialize_schedule(loan)
            self.refresh_aggregates(loan, periods)
            self.save_loan(loan)

            journal = self.ledger_poster.post_disbursement(loan, method, actor_id)
            self._audit(AuditEventType.LOAN_DISBURSED, loan, actor_id,
                        amount=loan.amount.to_string(),
                        method=method,
                        disbursement_date=loan.disbursement_date,
                        periods=len(periods),
                        total_interest=loan.total_interest.to_string(),
                        journal_entry_id=journal.id)

        log_action(logger, "info", f"Loan {loan.reference} disbursed via {method}",
                   user_id=actor_id, action="disburse", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_DISBURSED, loan,
                                  amount=str(loan.amount.amount), journal_entry_id=journal.id)])
        return loan

    def close(self, loan_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None) -> Loan:
        """
        Close a fully repaid loan

        Raises:
            InvalidTransition: If the loan is not disbursed or still has more
                than the rounding tolerance outstanding
        """
        with self.locked_loan(loan_id) as loan:
            LoanStateMachine.assert_transition(loan, LoanState.CLOSED, action="close")
            outstanding = loan.outstanding
            if outstanding.amount > self.calculation_config.rounding_tolerance:
                raise InvalidTransition(
                    "loan", loan.id, loan.status.value, LoanState.CLOSED.value, action="close",
                    reason=f"{outstanding.to_string()} still outstanding",
                    outstanding=outstanding.amount
                )
            self._close(loan, CloseReason.REPAID, actor_id)
            self.save_loan(loan)
            self._audit(AuditEventType.LOAN_CLOSED, loan, actor_id,
                        close_reason=CloseReason.REPAID.value, note=reason)

        log_action(logger, "info", f"Loan {loan.reference} closed",
                   user_id=actor_id, action="close", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_CLOSED, loan, close_reason=loan.close_reason.value)])
        return loan

    def write_off(self, loan_id: str, actor_id: Optional[str] = None, reason: str = "") -> Loan:
        """
        Close a disbursed loan as unrecoverable

        Posts Dr loan-loss expense / Cr loans receivable for the unpaid
        principal and records it as ``written_off_amount``.
        """
        journal = None
        with self.locked_loan(loan_id) as loan:
            LoanStateMachine.assert_transition(loan, LoanState.CLOSED, action="write_off")
            amount = unpaid_principal(self.get_schedule(loan.id), loan.currency)
            if amount.is_positive():
                journal = self.ledger_poster.post_write_off(loan, amount, reason, actor_id)
            loan.written_off_amount = amount
            self._close(loan, CloseReason.WRITTEN_OFF, actor_id)
            self.save_loan(loan)
            self._audit(AuditEventType.LOAN_WRITTEN_OFF, loan, actor_id,
                        amount=amount.to_string(), reason=reason,
                        journal_entry_id=journal.id if journal else None)

        log_action(logger, "warning", f"Loan {loan.reference} written off: {amount.to_string()}",
                   user_id=actor_id, action="write_off", resource="loan", loan_id=loan.id)
        self.publish([self._event(DomainEvent.LOAN_WRITTEN_OFF, loan, amount=str(amount.amount),
                                  reason=reason)])
        return loan

    def reschedule(
        self,
        loan_id: str,
        new_terms: RescheduleTerms,
        actor_id: Optional[str] = None,
        effective_date: Optional[date] = None
    ) -> Loan:
        """
        Replace a disbursed loan with a new one on new terms

        The new loan carries the old loan's unpaid principal; unpaid interest
        on the old schedule is not carried over.

        Returns:
            The new loan, already disbursed
        """
        return self._supersede(loan_id, CloseReason.RESCHEDULED, new_terms, actor_id,
                               effective_date=effective_date)

    def top_up(
        self,
        loan_id: str,
        extra_principal: Money,
        actor_id: Optional[str] = None,
        method: str = "cash",
        new_terms: Optional[RescheduleTerms] = None,
        effective_date: Optional[date] = None
    ) -> Loan:
        """
        Replace a disbursed loan with a bigger one, paying out ``extra_principal``

        The new loan's principal is the old loan's unpaid principal plus the
        extra amount; terms default to the old loan's.

        Returns:
            The new loan, already disbursed
        """
        if not extra_principal.is_positive():
            raise LoanValidationError("Top-up amount must be positive", field="extra_principal",
                                      amount=extra_principal.amount)
        return self._supersede(loan_id, CloseReason.TOPPED_UP, new_terms, actor_id,
                               extra_principal=extra_principal, method=method,
                               effective_date=effective_date)

    def _supersede(
        self,
        loan_id: str,
        close_reason: CloseReason,
        new_terms: Optional[RescheduleTerms],
        actor_id: Optional[str],
        extra_principal: Optional[Money] = None,
        method: Optional[str] = None,
        effective_date: Optional[date] = None
    ) -> Loan:
        is_top_up = close_reason is CloseReason.TOPPED_UP
        action = "top_up" if is_top_up else "reschedule"

        with self.locked_loan(loan_id) as old_loan:
            LoanStateMachine.assert_transition(old_loan, LoanState.CLOSED, action=action)
            if extra_principal is not None and extra_principal.currency != old_loan.currency:
                raise LoanValidationError(
                    f"Top-up currency {extra_principal.currency} does not match loan currency {old_loan.currency}",
                    field="currency"
                )

            carried = unpaid_principal(self.get_schedule(old_loan.id), old_loan.currency)
            if not carried.is_positive():
                raise InvalidTransition("loan", old_loan.id, old_loan.status.value, LoanState.CLOSED.value,
                                        action=action, reason="no unpaid principal left to carry over")

            principal = carried + extra_principal if extra_principal is not None else carried
            terms = new_terms or RescheduleTerms.from_loan(old_loan)
            now = datetime.now(timezone.utc)
            new_loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                reference=self._new_reference(),
                borrower_id=old_loan.borrower_id,
                amount=principal,
                interest_rate=terms.interest_rate,
                term_value=terms.term_value,
                term_unit=terms.term_unit,
                repayment_frequency=terms.repayment_frequency,
                interest_method=terms.interest_method,
                rate_basis=terms.rate_basis,
                status=LoanState.DISBURSED,
                tenant_id=old_loan.tenant_id,
                branch_id=old_loan.branch_id,
                product_code=old_loan.product_code,
                purpose=old_loan.purpose,
                initiated_by=actor_id,
                approved_by=actor_id,
                approval_date=now,
                disbursed_by=actor_id,
                disbursement_date=effective_date or now.date(),
                disbursement_method=method if is_top_up else action,
                rescheduled_from_id=None if is_top_up else old_loan.id,
                top_up_of_id=old_loan.id if is_top_up else None
            )
            periods = self._materialize_schedule(new_loan)
            self.refresh_aggregates(new_loan, periods)
            self.save_loan(new_loan)

            old_loan.superseded_by_id = new_loan.id
            self._close(old_loan, close_reason, actor_id)
            self.save_loan(old_loan)

            journal = self.ledger_poster.post_loan_transfer(
                JournalEventType.TOP_UP if is_top_up else JournalEventType.RESCHEDULE,
                old_loan,
                new_loan,
                carried,
                extra_principal=extra_principal,
                method=method,
                actor_id=actor_id
            )

            audit_type = AuditEventType.LOAN_TOPPED_UP if is_top_up else AuditEventType.LOAN_RESCHEDULED
            self._audit(audit_type, old_loan, actor_id,
                        new_loan_id=new_loan.id,
                        carried_principal=carried.to_string(),
                        journal_entry_id=journal.id)
            self._audit(audit_type, new_loan, actor_id,
                        previous_loan_id=old_loan.id,
                        amount=new_loan.amount.to_string(),
                        extra_principal=extra_principal.to_string() if extra_principal else None,
                        journal_entry_id=journal.id)

        log_action(logger, "info",
                   f"Loan {old_loan.reference} {close_reason.value} into {new_loan.reference} "
                   f"({new_loan.amount.to_string()})",
                   user_id=actor_id, action=action, resource="loan", loan_id=old_loan.id)
        event_type = DomainEvent.LOAN_TOPPED_UP if is_top_up else DomainEvent.LOAN_RESCHEDULED
        self.publish([
            self._event(event_type, old_loan, new_loan_id=new_loan.id,
                        carried_principal=str(carried.amount), journal_entry_id=journal.id),
            self._event(DomainEvent.LOAN_CLOSED, old_loan, close_reason=close_reason.value),
        ])
        return new_loan

    def _close(self, loan: Loan, reason: CloseReason, actor_id: Optional[str]) -> None:
        loan.status = LoanState.CLOSED
        loan.close_reason = reason
        loan.closed_by = actor_id
        loan.closed_date = datetime.now(timezone.utc)

    def preview_schedule(self, loan_id: str, start_date: Optional[date] = None) -> List[SchedulePeriod]:
        """Generate the schedule a loan would get, without storing anything"""
        loan = self.require_loan(loan_id)
        start = start_date or loan.disbursement_date or datetime.now(timezone.utc).date()
        return generate_schedule(loan.schedule_terms(), start,
                                 self.calculation_config_for(loan.currency), loan_id=loan.id)

    def _materialize_schedule(self, loan: Loan) -> List[SchedulePeriod]:
        periods = generate_schedule(loan.schedule_terms(), loan.disbursement_date,
                                    self.calculation_config_for(loan.currency), loan_id=loan.id)
        self.save_schedule(periods)
        logger.debug(f"Generated {len(periods)} schedule periods for loan {loan.reference}")
        return periods

    def refresh_aggregates(self, loan: Loan, periods: List[SchedulePeriod]) -> Loan:
        """Recompute interest and recovered totals from the schedule"""
        currency = loan.currency
        loan.total_interest = sum_money((p.interest for p in periods), currency)
        loan.total_paid = sum_money((p.principal_paid + p.interest_paid for p in periods), currency)
        loan.charges_paid = sum_money((p.fees_paid + p.penalties_paid for p in periods), currency)
        return loan

    def save_schedule(self, periods: List[SchedulePeriod]) -> None:
        for period in periods:
            self.storage.save(self.schedule_table, period.record_id, period.to_dict())

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def get_schedule(self, loan_id: str) -> List[SchedulePeriod]:
        """Stored schedule periods ordered by period number"""
        periods = [SchedulePeriod.from_dict(data)
                   for data in self.storage.find(self.schedule_table, {"loan_id": loan_id})]
        periods.sort(key=lambda p: p.period)
        return periods

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        loans = [Loan.from_dict(data)
                 for data in self.storage.find(self.loans_table, {"borrower_id": borrower_id})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def list_loans(self, status: Optional[LoanState] = None, tenant_id: Optional[str] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = status.value
        if tenant_id is not None:
            filters["tenant_id"] = tenant_id
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_lineage(self, loan_id: str) -> List[Loan]:
        """
        The chain of loans a loan belongs to, oldest first

        Walks back through ``rescheduled_from_id`` / ``top_up_of_id`` and
        forward through ``superseded_by_id``.
        """
        loan = self.require_loan(loan_id)
        chain = [loan]
        seen = {loan.id}

        current = loan
        while current.supersedes_id and current.supersedes_id not in seen:
            current = self.require_loan(current.supersedes_id)
            seen.add(current.id)
            chain.insert(0, current)

        current = loan
        while current.superseded_by_id and current.superseded_by_id not in seen:
            current = self.require_loan(current.superseded_by_id)
            seen.add(current.id)
            chain.append(current)

        return chain
