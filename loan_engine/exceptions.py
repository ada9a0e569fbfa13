"""
Typed Exception Hierarchy

Every engine error carries a machine-readable ``code`` and the structured
data callers need (loan id, payment id, states, amounts) so that nothing has
to be parsed out of a message string.

    LoanEngineError
    +-- InvalidTransition
    +-- LoanValidationError (also ValueError)
    +-- NotFoundError
    |   +-- LoanNotFound
    |   +-- PaymentNotFound
    |   +-- AccountNotFound
    |   +-- JournalNotFound
    +-- DuplicatePayment
    +-- LockConflict
    +-- LedgerImbalance
    +-- AllocationMismatch
    +-- AccountInUse
    +-- DuplicateAccountCode

    AllocationOverflow (a Warning, returned rather than raised)
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors"""

    code: str = "LOAN_ENGINE_ERROR"

    def __init__(self, message: str, **details: Any):
        self.details: Dict[str, Any] = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for API error bodies and logs"""
        return {
            "code": self.code,
            "message": str(self),
            "details": {k: (str(v) if isinstance(v, Decimal) else v) for k, v in self.details.items()},
        }


class InvalidTransition(LoanEngineError):
    """A state change that the transition table does not allow"""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, current: str, target: str,
                 action: Optional[str] = None, reason: Optional[str] = None, **details: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.target = target
        self.action = action or target
        self.reason = reason
        message = f"Cannot {self.action} {entity_type} {entity_id}: {current} -> {target} is not allowed"
        if reason:
            message = f"Cannot {self.action} {entity_type} {entity_id} in state {current}: {reason}"
        super().__init__(
            message,
            entity_type=entity_type,
            entity_id=entity_id,
            current=current,
            target=target,
            action=self.action,
            reason=reason,
            **details
        )


class LoanValidationError(LoanEngineError, ValueError):
    """Loan application or terms rejected before anything is stored"""

    code: str = "LOAN_VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        self.field = field
        super().__init__(message, field=field, **details)


class NotFoundError(LoanEngineError):
    """Referenced record does not exist"""

    code: str = "NOT_FOUND"


class LoanNotFound(NotFoundError):
    code: str = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id)


class PaymentNotFound(NotFoundError):
    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found", payment_id=payment_id)


class AccountNotFound(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account {account_ref} not found", account=account_ref)


class JournalNotFound(NotFoundError):
    code: str = "JOURNAL_NOT_FOUND"

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"Journal entry {journal_id} not found", journal_entry_id=journal_id)


class DuplicatePayment(LoanEngineError):
    """Same (loan, method, reference) submitted twice"""

    code: str = "DUPLICATE_PAYMENT"

    def __init__(self, loan_id: str, method: str, reference: str):
        self.loan_id = loan_id
        self.method = method
        self.reference = reference
        super().__init__(
            f"Payment {reference} via {method} already recorded for loan {loan_id}",
            loan_id=loan_id,
            method=method,
            reference=reference,
        )


class LockConflict(LoanEngineError):
    """Row lock on a loan could not be obtained in time; safe to retry"""

    code: str = "LOCK_CONFLICT"
    retryable: bool = True

    def __init__(self, loan_id: str, timeout_seconds: float):
        self.loan_id = loan_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Loan {loan_id} is locked by another operation (waited {timeout_seconds}s)",
            loan_id=loan_id,
            timeout_seconds=timeout_seconds,
            retryable=True,
        )


class LedgerImbalance(LoanEngineError):
    """Journal debits do not equal credits, or a line is malformed"""

    code: str = "LEDGER_IMBALANCE"

    def __init__(self, message: str, debits: Optional[Decimal] = None,
                 credits: Optional[Decimal] = None, currency: Optional[str] = None, **details: Any):
        self.debits = debits
        self.credits = credits
        self.currency = currency
        super().__init__(message, debits=debits, credits=credits, currency=currency, **details)


class AllocationMismatch(LoanEngineError):
    """A recorded allocation no longer fits the schedule it was applied to"""

    code: str = "ALLOCATION_MISMATCH"

    def __init__(self, message: str, loan_id: Optional[str] = None,
                 period: Optional[int] = None, **details: Any):
        self.loan_id = loan_id
        self.period = period
        super().__init__(message, loan_id=loan_id, period=period, **details)


class AccountInUse(LoanEngineError):
    """Account still referenced by ledger entries"""

    code: str = "ACCOUNT_IN_USE"

    def __init__(self, account_code: str, entry_count: int):
        self.account_code = account_code
        self.entry_count = entry_count
        super().__init__(
            f"Account {account_code} is referenced by {entry_count} ledger entries",
            account_code=account_code,
            entry_count=entry_count,
        )


class DuplicateAccountCode(LoanEngineError):
    code: str = "DUPLICATE_ACCOUNT_CODE"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account code {account_code} already exists", account_code=account_code)


class AllocationOverflow(UserWarning):
    """
    Payment exceeded everything owed on the schedule.

    Not raised: the remainder stays on the payment as ``unallocated`` and
    this warning travels back on the payment result.
    """

    code: str = "ALLOCATION_OVERFLOW"

    def __init__(self, loan_id: str, payment_id: str, unallocated: Decimal, currency: str):
        self.loan_id = loan_id
        self.payment_id = payment_id
        self.unallocated = unallocated
        self.currency = currency
        super().__init__(
            f"Payment {payment_id} on loan {loan_id} left {currency} {unallocated} unallocated"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "details": {
                "loan_id": self.loan_id,
                "payment_id": self.payment_id,
                "unallocated": str(self.unallocated),
                "currency": self.currency,
            },
        }
