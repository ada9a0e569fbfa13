"""
Payment Processing Module

Records repayments against disbursed loans and drives them through their
lifecycle: pending -> approved (allocated, applied, posted), pending ->
rejected, and approved or pending -> voided. A payment is allocated when it
is approved, against the schedule as it is at that moment, and the allocation
is stored on the payment so that a void can reverse exactly what was applied.

A (loan, method, reference) triple identifies a payment; submitting the same
triple twice fails with DuplicatePayment, also when the first one was voided.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .allocation import Allocation, PaymentAllocator
from .audit import AuditTrail, AuditEventType
from .currency import Money
from .events import DomainEvent, EventDispatcher, EventPayload
from .exceptions import (
    AllocationOverflow, DuplicatePayment, InvalidTransition, LoanValidationError, PaymentNotFound
)
from .ledger import LedgerPoster
from .loans import Loan, LoanManager, LoanState
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, UniqueViolation


logger = get_logger("loan_engine.payments")


class PaymentStatus(Enum):
    """Payment lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    VOIDED = "voided"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.VOIDED}),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.VOIDED}),
    PaymentStatus.REJECTED: frozenset(),
    PaymentStatus.VOIDED: frozenset(),
}


@dataclass
class Payment(StorageRecord):
    """Repayment received against a loan"""
    loan_id: str
    amount_paid: Money
    payment_date: date
    method: str                                 # cash, bank, mobile_money, ...
    reference: Optional[str] = None             # External receipt / transaction number
    status: PaymentStatus = PaymentStatus.PENDING
    applied: bool = False
    allocation: Optional[Allocation] = None
    journal_entry_id: Optional[str] = None
    void_journal_entry_id: Optional[str] = None
    recorded_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    voided_by: Optional[str] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    notes: Optional[str] = None
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def currency(self) -> str:
        return self.amount_paid.currency

    @property
    def unallocated(self) -> Money:
        """Part of the payment no schedule bucket could take"""
        if self.allocation is None:
            return Money.zero(self.currency)
        return self.allocation.unallocated

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        currency = data.pop('currency')
        data['amount_paid'] = Money(Decimal(data['amount_paid']), currency)
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['status'] = PaymentStatus(data['status'])
        if data.get('allocation'):
            data['allocation'] = Allocation.from_dict(data['allocation'])
        for name in ('approved_at', 'voided_at'):
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return super().from_dict(data)


@dataclass
class PaymentResult:
    """Outcome of a payment operation"""
    payment: Payment
    loan: Loan
    allocation: Optional[Allocation] = None
    warnings: List[AllocationOverflow] = field(default_factory=list)


class PaymentProcessor:
    """
    Records, approves, rejects and voids loan repayments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        ledger_poster: LedgerPoster,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.ledger_poster = ledger_poster
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher

        self.table_name = "loan_payments"
        self.storage.add_unique_constraint(self.table_name, ("loan_id", "method", "reference"))

    def _allocator(self, loan: Loan) -> PaymentAllocator:
        return PaymentAllocator(self.loan_manager.calculation_config_for(loan.currency))

    def _assert_transition(self, payment: Payment, target: PaymentStatus, action: str) -> None:
        if target not in PAYMENT_TRANSITIONS[payment.status]:
            raise InvalidTransition("payment", payment.id, payment.status.value, target.value, action=action)

    def _require_disbursed(self, loan: Loan, action: str) -> None:
        if loan.status is not LoanState.DISBURSED:
            raise InvalidTransition("loan", loan.id, loan.status.value, LoanState.DISBURSED.value,
                                    action=action, reason="payments are only accepted on disbursed loans")

    def _event(self, event_type: DomainEvent, payment: Payment, **data: Any) -> EventPayload:
        payload = {
            'loan_id': payment.loan_id,
            'amount': str(payment.amount_paid.amount),
            'currency': payment.currency,
            'method': payment.method,
            'reference': payment.reference,
            'status': payment.status.value,
            'tenant_id': payment.tenant_id,
        }
        payload.update(data)
        return EventPayload(event_type=event_type, entity_type="payment", entity_id=payment.id, data=payload)

    def _audit(self, event_type: AuditEventType, payment: Payment, actor_id: Optional[str],
               **metadata: Any) -> None:
        metadata.setdefault('loan_id', payment.loan_id)
        metadata.setdefault('amount', payment.amount_paid.to_string())
        metadata.setdefault('status', payment.status.value)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="payment",
            entity_id=payment.id,
            metadata=metadata,
            user_id=actor_id,
            tenant_id=payment.tenant_id
        )

    def _publish(self, events: List[EventPayload]) -> None:
        if self.event_dispatcher is not None:
            self.event_dispatcher.publish_all(events)

    def _save(self, payment: Payment) -> None:
        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, payment.id, payment.to_dict())

    def record_payment(
        self,
        loan_id: str,
        amount: Money,
        method: str = "cash",
        actor_id: Optional[str] = None,
        reference: Optional[str] = None,
        payment_date: Optional[date] = None,
        auto_approve: bool = True,
        notes: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a repayment on a disbursed loan

        Args:
            loan_id: Loan being repaid
            amount: Amount received, in the loan's currency
            method: Payment channel; selects the settlement account
            actor_id: Who captured the payment
            reference: External receipt number, unique per loan and method
            payment_date: Value date (defaults to today)
            auto_approve: Allocate and post immediately instead of leaving it pending
            notes: Free text

        Returns:
            PaymentResult; ``warnings`` holds an AllocationOverflow when part
            of the amount could not be allocated

        Raises:
            DuplicatePayment: If (loan, method, reference) was already recorded
            InvalidTransition: If the loan is not disbursed
            LockConflict: If another operation holds the loan
        """
        if not amount.is_positive():
            raise LoanValidationError("Payment amount must be positive", field="amount", amount=amount.amount)
        reference = reference.strip() if reference else None
        events: List[EventPayload] = []
        allocation = None
        warnings: List[AllocationOverflow] = []

        try:
            with self.loan_manager.locked_loan(loan_id) as loan:
                self._require_disbursed(loan, "record_payment")
                if amount.currency != loan.currency:
                    raise LoanValidationError(
                        f"Payment currency {amount.currency} does not match loan currency {loan.currency}",
                        field="currency"
                    )
                if reference and self.storage.find(self.table_name, {
                        "loan_id": loan_id, "method": method, "reference": reference}):
                    raise DuplicatePayment(loan_id, method, reference)

                now = datetime.now(timezone.utc)
                payment = Payment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    amount_paid=amount,
                    payment_date=payment_date or now.date(),
                    method=method,
                    reference=reference,
                    recorded_by=actor_id,
                    notes=notes,
                    tenant_id=loan.tenant_id,
                    branch_id=loan.branch_id
                )
                self._save(payment)
                self._audit(AuditEventType.PAYMENT_RECORDED, payment, actor_id,
                            method=method, reference=reference)
                events.append(self._event(DomainEvent.PAYMENT_RECORDED, payment))

                if auto_approve:
                    allocation, warnings = self._apply(loan, payment, actor_id)
                    events.append(self._event(DomainEvent.PAYMENT_APPLIED, payment,
                                              journal_entry_id=payment.journal_entry_id,
                                              unallocated=str(payment.unallocated.amount)))
        except UniqueViolation as exc:
            raise DuplicatePayment(loan_id, method, reference) from exc

        log_action(logger, "info",
                   f"Payment {payment.amount_paid.to_string()} via {method} recorded on loan {loan.reference}",
                   user_id=actor_id, action="record_payment", resource="payment",
                   loan_id=loan.id, payment_id=payment.id)
        self._publish(events)
        return PaymentResult(payment=payment, loan=loan, allocation=allocation, warnings=warnings)

    def approve_payment(self, payment_id: str, actor_id: Optional[str] = None) -> PaymentResult:
        """Approve a pending payment, allocating it against the schedule as it is now"""
        loan_id = self.require_payment(payment_id).loan_id
        with self.loan_manager.locked_loan(loan_id) as loan:
            payment = self.require_payment(payment_id)
            self._assert_transition(payment, PaymentStatus.APPROVED, "approve")
            self._require_disbursed(loan, "approve_payment")
            allocation, warnings = self._apply(loan, payment, actor_id)

        log_action(logger, "info", f"Payment {payment.id} approved on loan {loan.reference}",
                   user_id=actor_id, action="approve_payment", resource="payment",
                   loan_id=loan.id, payment_id=payment.id)
        self._publish([self._event(DomainEvent.PAYMENT_APPLIED, payment,
                                   journal_entry_id=payment.journal_entry_id,
                                   unallocated=str(payment.unallocated.amount))])
        return PaymentResult(payment=payment, loan=loan, allocation=allocation, warnings=warnings)

    def _apply(self, loan: Loan, payment: Payment, actor_id: Optional[str]):
        """Allocate, apply and post a payment; the caller holds the loan lock"""
        allocator = self._allocator(loan)
        periods = self.loan_manager.get_schedule(loan.id)
        allocation = allocator.allocate(payment.amount_paid, periods)
        touched = allocator.apply(allocation, periods)
        self.loan_manager.save_schedule(touched)
        self.loan_manager.refresh_aggregates(loan, periods)
        self.loan_manager.save_loan(loan)

        payment.allocation = allocation
        payment.status = PaymentStatus.APPROVED
        payment.applied = True
        payment.approved_by = actor_id
        payment.approved_at = datetime.now(timezone.utc)
        journal = self.ledger_poster.post_payment(loan, payment, allocation, actor_id)
        payment.journal_entry_id = journal.id
        self._save(payment)

        warnings = []
        if allocation.has_overflow:
            warning = AllocationOverflow(loan.id, payment.id, allocation.unallocated.amount, loan.currency)
            warnings.append(warning)
            log_action(logger, "warning", str(warning), user_id=actor_id, action="allocate",
                       resource="payment", loan_id=loan.id, payment_id=payment.id,
                       extra={"unallocated": str(allocation.unallocated.amount)})

        self._audit(AuditEventType.PAYMENT_APPROVED, payment, actor_id,
                    allocation=allocation.to_dict(),
                    journal_entry_id=journal.id,
                    outstanding=loan.outstanding.to_string())
        return allocation, warnings

    def reject_payment(self, payment_id: str, actor_id: Optional[str] = None,
                       reason: Optional[str] = None) -> Payment:
        """Reject a pending payment; nothing is allocated or posted"""
        loan_id = self.require_payment(payment_id).loan_id
        with self.loan_manager.locked_loan(loan_id):
            payment = self.require_payment(payment_id)
            self._assert_transition(payment, PaymentStatus.REJECTED, "reject")
            payment.status = PaymentStatus.REJECTED
            payment.rejected_by = actor_id
            payment.rejection_reason = reason
            self._save(payment)
            self._audit(AuditEventType.PAYMENT_REJECTED, payment, actor_id, reason=reason)

        log_action(logger, "info", f"Payment {payment.id} rejected",
                   user_id=actor_id, action="reject_payment", resource="payment",
                   loan_id=loan_id, payment_id=payment.id)
        self._publish([self._event(DomainEvent.PAYMENT_REJECTED, payment, reason=reason)])
        return payment

    def void_payment(self, payment_id: str, actor_id: Optional[str] = None, reason: str = "") -> PaymentResult:
        """
        Void a payment

        An applied payment has its recorded allocation reversed period by
        period and its journal mirrored; a pending one is simply marked
        voided. Only allowed while the loan is still disbursed.

        Raises:
            InvalidTransition: If the payment is rejected or already voided,
                or the loan is no longer disbursed
            AllocationMismatch: If the allocation no longer fits the schedule
        """
        loan_id = self.require_payment(payment_id).loan_id
        with self.loan_manager.locked_loan(loan_id) as loan:
            payment = self.require_payment(payment_id)
            self._assert_transition(payment, PaymentStatus.VOIDED, "void")
            if loan.status is not LoanState.DISBURSED:
                raise InvalidTransition("payment", payment.id, payment.status.value, PaymentStatus.VOIDED.value,
                                        action="void", reason=f"loan {loan.reference} is {loan.status.value}")

            if payment.applied:
                allocator = self._allocator(loan)
                periods = self.loan_manager.get_schedule(loan.id)
                touched = allocator.reverse(payment.allocation, periods)
                self.loan_manager.save_schedule(touched)
                self.loan_manager.refresh_aggregates(loan, periods)
                self.loan_manager.save_loan(loan)

                journal = self.ledger_poster.post_void(payment.journal_entry_id, payment, reason, actor_id)
                payment.void_journal_entry_id = journal.id
                payment.applied = False

            payment.status = PaymentStatus.VOIDED
            payment.voided_by = actor_id
            payment.voided_at = datetime.now(timezone.utc)
            payment.void_reason = reason
            self._save(payment)
            self._audit(AuditEventType.PAYMENT_VOIDED, payment, actor_id, reason=reason,
                        void_journal_entry_id=payment.void_journal_entry_id,
                        outstanding=loan.outstanding.to_string())

        log_action(logger, "info", f"Payment {payment.id} voided: {reason}",
                   user_id=actor_id, action="void_payment", resource="payment",
                   loan_id=loan.id, payment_id=payment.id)
        self._publish([self._event(DomainEvent.PAYMENT_VOIDED, payment, reason=reason,
                                   void_journal_entry_id=payment.void_journal_entry_id)])
        return PaymentResult(payment=payment, loan=loan, allocation=payment.allocation)

    def preview_allocation(self, loan_id: str, amount: Money) -> Allocation:
        """How a payment of ``amount`` would be split right now; nothing is stored"""
        loan = self.loan_manager.require_loan(loan_id)
        return self._allocator(loan).allocate(amount, self.loan_manager.get_schedule(loan.id))

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        """Get payment by ID"""
        data = self.storage.load(self.table_name, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        return payment

    def get_loan_payments(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        """Payments on a loan, oldest first"""
        filters: Dict[str, Any] = {"loan_id": loan_id}
        if status is not None:
            filters["status"] = status.value
        payments = [Payment.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        payments.sort(key=lambda p: p.created_at)
        return payments
