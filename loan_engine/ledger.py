"""
Double-Entry Ledger Poster

Turns loan business events into balanced journal entries. Every journal has
at least two lines, every line is either a debit or a credit, and debits
equal credits. Journals and their lines are append-only: a void is a new
journal mirroring the original, never an edit.

Journals are saved through the caller's storage transaction, so a journal is
committed together with the loan or payment change that caused it, or not at all.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .accounts import Account, AccountRegistry
from .allocation import Allocation
from .audit import AuditTrail, AuditEventType
from .config import PostingAccounts
from .currency import Money, sum_money
from .exceptions import AccountNotFound, JournalNotFound, LedgerImbalance
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.ledger")


class JournalEventType(Enum):
    """Business event a journal records"""
    DISBURSEMENT = "disbursement"
    PAYMENT = "payment"
    PAYMENT_VOID = "payment_void"
    WRITE_OFF = "write_off"
    RESCHEDULE = "reschedule"
    TOP_UP = "top_up"


@dataclass
class LedgerEntry(StorageRecord):
    """
    Individual line of a journal entry
    Each line affects one account with either a debit or a credit
    """
    journal_entry_id: str
    line_number: int
    account_id: str
    account_code: str
    description: str
    debit: Money
    credit: Money
    loan_id: Optional[str] = None
    period: Optional[int] = None

    def __post_init__(self):
        """Validate that exactly one of debit or credit is positive"""
        if self.debit.currency != self.credit.currency:
            raise LedgerImbalance("Debit and credit amounts must use same currency",
                                  account_code=self.account_code)
        if self.debit.is_negative() or self.credit.is_negative():
            raise LedgerImbalance("Ledger amounts cannot be negative", account_code=self.account_code)
        if self.debit.is_positive() == self.credit.is_positive():
            raise LedgerImbalance(
                "Ledger line must have exactly one of debit or credit",
                debits=self.debit.amount,
                credits=self.credit.amount,
                currency=self.debit.currency,
                account_code=self.account_code
            )

    @property
    def currency(self) -> str:
        return self.debit.currency

    @property
    def is_debit(self) -> bool:
        return self.debit.is_positive()

    @property
    def amount(self) -> Money:
        """Get the non-zero amount (debit or credit)"""
        return self.debit if self.is_debit else self.credit

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        data = dict(data)
        currency = data.pop('currency')
        data['debit'] = Money(Decimal(data['debit']), currency)
        data['credit'] = Money(Decimal(data['credit']), currency)
        return super().from_dict(data)


@dataclass
class JournalEntry(StorageRecord):
    """
    Dated, described unit of work made of balanced ledger lines
    Immutable once posted
    """
    entry_date: date
    event_type: JournalEventType
    reference: str
    description: str
    currency: str
    loan_id: Optional[str] = None
    payment_id: Optional[str] = None
    reverses_id: Optional[str] = None   # ID of the journal this one mirrors
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None
    posted_by: Optional[str] = None
    lines: List[LedgerEntry] = field(default_factory=list)

    def _add_line(self, account: Account, description: str, debit: Money, credit: Money,
                  period: Optional[int], loan_id: Optional[str]) -> LedgerEntry:
        line = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=self.created_at,
            updated_at=self.created_at,
            journal_entry_id=self.id,
            line_number=len(self.lines) + 1,
            account_id=account.id,
            account_code=account.code,
            description=description,
            debit=debit,
            credit=credit,
            loan_id=loan_id or self.loan_id,
            period=period
        )
        self.lines.append(line)
        return line

    def debit(self, account: Account, amount: Money, description: str,
              period: Optional[int] = None, loan_id: Optional[str] = None) -> Optional[LedgerEntry]:
        """Add a debit line; zero amounts produce no line"""
        if amount.is_zero():
            return None
        return self._add_line(account, description, amount, Money.zero(amount.currency), period, loan_id)

    def credit(self, account: Account, amount: Money, description: str,
               period: Optional[int] = None, loan_id: Optional[str] = None) -> Optional[LedgerEntry]:
        """Add a credit line; zero amounts produce no line"""
        if amount.is_zero():
            return None
        return self._add_line(account, description, Money.zero(amount.currency), amount, period, loan_id)

    @property
    def total_debits(self) -> Money:
        return sum_money((line.debit for line in self.lines), self.currency)

    @property
    def total_credits(self) -> Money:
        return sum_money((line.credit for line in self.lines), self.currency)

    def validate_balance(self) -> None:
        """
        Validate that total debits equal total credits
        This is the fundamental rule of double-entry bookkeeping
        """
        if len(self.lines) < 2:
            raise LedgerImbalance(
                f"Journal {self.reference} needs at least two lines, has {len(self.lines)}",
                journal_entry_id=self.id
            )
        for line in self.lines:
            if line.currency != self.currency:
                raise LedgerImbalance(
                    f"Journal {self.reference} mixes {line.currency} into a {self.currency} entry",
                    journal_entry_id=self.id
                )
        if self.total_debits != self.total_credits:
            raise LedgerImbalance(
                f"Journal {self.reference} not balanced: debits={self.total_debits.to_string()}, "
                f"credits={self.total_credits.to_string()}",
                debits=self.total_debits.amount,
                credits=self.total_credits.amount,
                currency=self.currency,
                journal_entry_id=self.id
            )

    def to_dict(self) -> Dict[str, Any]:
        """Header only; lines are stored as ledger entries"""
        result = super().to_dict()
        del result['lines']
        result['line_count'] = len(self.lines)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], lines: Optional[List[LedgerEntry]] = None) -> 'JournalEntry':
        data = dict(data)
        data.pop('line_count', None)
        data['entry_date'] = date.fromisoformat(data['entry_date'])
        data['event_type'] = JournalEventType(data['event_type'])
        data['lines'] = lines or []
        return super().from_dict(data)


class LedgerPoster:
    """
    Posts balanced journals for loan events
    Balances are derived from ledger entries, never stored separately
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_registry: AccountRegistry,
        posting_accounts: PostingAccounts,
        audit_trail: AuditTrail,
        lock_timeout: Optional[float] = 5.0
    ):
        self.storage = storage
        self.lock_timeout = lock_timeout
        self.account_registry = account_registry
        self.posting_accounts = posting_accounts
        self.audit_trail = audit_trail
        self.journals_table = "journal_entries"
        self.entries_table = account_registry.ledger_entries_table

    def _account(self, code: str) -> Account:
        return self.account_registry.require_by_code(code)

    def _settlement_account(self, method: str) -> Account:
        return self._account(self.posting_accounts.account_for_method(method))

    def _new_journal(
        self,
        event_type: JournalEventType,
        loan,
        reference: str,
        description: str,
        entry_date: Optional[date] = None,
        payment_id: Optional[str] = None,
        reverses_id: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> JournalEntry:
        now = datetime.now(timezone.utc)
        return JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_date=entry_date or now.date(),
            event_type=event_type,
            reference=reference,
            description=description,
            currency=loan.currency,
            loan_id=loan.id,
            payment_id=payment_id,
            reverses_id=reverses_id,
            tenant_id=loan.tenant_id,
            branch_id=loan.branch_id,
            posted_by=actor_id
        )

    def post_disbursement(self, loan, method: str, actor_id: Optional[str] = None) -> JournalEntry:
        """Dr loans receivable / Cr the cash or bank account the money left from"""
        journal = self._new_journal(
            JournalEventType.DISBURSEMENT,
            loan,
            reference=f"DISB-{loan.reference}",
            description=f"Disbursement of loan {loan.reference}",
            entry_date=loan.disbursement_date,
            actor_id=actor_id
        )
        journal.debit(self._account(self.posting_accounts.loans_receivable), loan.amount,
                      "Loan principal disbursed")
        journal.credit(self._settlement_account(method), loan.amount, f"Disbursed via {method}")
        return self._post(journal)

    def post_payment(self, loan, payment, allocation: Allocation,
                     actor_id: Optional[str] = None) -> JournalEntry:
        """
        Dr the settlement account for the full amount; Cr one line per period
        per bucket (receivable for principal, income accounts for the rest),
        and Cr borrower overpayments for any unallocated remainder.
        """
        journal = self._new_journal(
            JournalEventType.PAYMENT,
            loan,
            reference=f"PMT-{payment.reference or payment.id[:8]}",
            description=f"Repayment on loan {loan.reference}",
            entry_date=payment.payment_date,
            payment_id=payment.id,
            actor_id=actor_id
        )
        journal.debit(self._settlement_account(payment.method), payment.amount_paid,
                      f"Repayment received via {payment.method}")

        penalty_income = self._account(self.posting_accounts.penalty_income)
        fee_income = self._account(self.posting_accounts.fee_income)
        interest_income = self._account(self.posting_accounts.interest_income)
        receivable = self._account(self.posting_accounts.loans_receivable)

        for line in allocation.lines:
            n = line.period
            journal.credit(penalty_income, line.penalties, f"Period {n} penalties", period=n)
            journal.credit(fee_income, line.fees, f"Period {n} fees", period=n)
            journal.credit(interest_income, line.interest, f"Period {n} interest", period=n)
            journal.credit(receivable, line.principal, f"Period {n} principal", period=n)

        journal.credit(self._account(self.posting_accounts.overpayment_liability), allocation.unallocated,
                       "Unallocated overpayment")
        return self._post(journal)

    def post_void(self, original_journal_id: str, payment, reason: str,
                  actor_id: Optional[str] = None) -> JournalEntry:
        """Post the exact mirror of a payment journal; the original stays untouched"""
        original = self.require_journal(original_journal_id)
        now = datetime.now(timezone.utc)
        journal = JournalEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_date=now.date(),
            event_type=JournalEventType.PAYMENT_VOID,
            reference=f"REV-{original.reference}",
            description=f"REVERSAL: {reason}",
            currency=original.currency,
            loan_id=original.loan_id,
            payment_id=payment.id,
            reverses_id=original.id,
            tenant_id=original.tenant_id,
            branch_id=original.branch_id,
            posted_by=actor_id
        )
        for line in original.lines:
            account = self.account_registry.get_account(line.account_id)
            description = f"REVERSAL: {line.description}"
            if line.is_debit:
                journal.credit(account, line.debit, description, period=line.period, loan_id=line.loan_id)
            else:
                journal.debit(account, line.credit, description, period=line.period, loan_id=line.loan_id)
        return self._post(journal)

    def post_write_off(self, loan, amount: Money, reason: str,
                       actor_id: Optional[str] = None) -> JournalEntry:
        """Dr loan-loss expense / Cr loans receivable for the unrecoverable principal"""
        journal = self._new_journal(
            JournalEventType.WRITE_OFF,
            loan,
            reference=f"WO-{loan.reference}",
            description=f"Write-off of loan {loan.reference}: {reason}",
            actor_id=actor_id
        )
        journal.debit(self._account(self.posting_accounts.loan_loss_expense), amount, "Principal written off")
        journal.credit(self._account(self.posting_accounts.loans_receivable), amount, "Principal written off")
        return self._post(journal)

    def post_loan_transfer(
        self,
        event_type: JournalEventType,
        old_loan,
        new_loan,
        carried_principal: Money,
        extra_principal: Optional[Money] = None,
        method: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> JournalEntry:
        """
        Move the receivable from a superseded loan to its replacement

        Dr receivable (new loan) for its full principal; Cr receivable (old loan)
        for the principal carried over; Cr the settlement account for any new
        money paid out on a top-up.
        """
        extra_principal = extra_principal or Money.zero(new_loan.currency)
        label = "Top-up" if event_type is JournalEventType.TOP_UP else "Reschedule"
        journal = self._new_journal(
            event_type,
            new_loan,
            reference=f"{event_type.value.upper()}-{new_loan.reference}",
            description=f"{label} of loan {old_loan.reference} into {new_loan.reference}",
            entry_date=new_loan.disbursement_date,
            actor_id=actor_id
        )
        receivable = self._account(self.posting_accounts.loans_receivable)
        journal.debit(receivable, carried_principal + extra_principal, f"Principal of loan {new_loan.reference}")
        journal.credit(receivable, carried_principal, f"Principal carried from loan {old_loan.reference}",
                       loan_id=old_loan.id)
        if extra_principal.is_positive():
            journal.credit(self._settlement_account(method or "cash"), extra_principal,
                           f"Top-up disbursed via {method or 'cash'}")
        return self._post(journal)

    def _post(self, journal: JournalEntry) -> JournalEntry:
        """Validate and persist a journal with its lines in one transaction"""
        try:
            journal.validate_balance()
        except LedgerImbalance:
            logger.critical(f"Refusing to post unbalanced journal {journal.reference}", exc_info=True)
            raise

        with self.storage.atomic():
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                entity_type="journal_entry",
                entity_id=journal.id,
                metadata={
                    "reference": journal.reference,
                    "event_type": journal.event_type.value,
                    "loan_id": journal.loan_id,
                    "payment_id": journal.payment_id,
                    "reverses_id": journal.reverses_id,
                    "line_count": len(journal.lines),
                    "total": journal.total_debits.amount
                },
                user_id=journal.posted_by,
                tenant_id=journal.tenant_id
            )
            self._lock_accounts(journal)
            self.storage.save(self.journals_table, journal.id, journal.to_dict())
            for line in journal.lines:
                self.storage.save(self.entries_table, line.id, line.to_dict())

        logger.info(f"Posted journal {journal.reference} ({journal.event_type.value}) "
                    f"for {journal.total_debits.to_string()}")
        return journal

    def _lock_accounts(self, journal: JournalEntry) -> None:
        """Hold every account the journal touches so none can be deleted under it"""
        codes = {line.account_id: line.account_code for line in journal.lines}
        for account_id in sorted(codes):
            self.storage.lock_record(self.account_registry.table_name, account_id, timeout=self.lock_timeout)
            if not self.storage.exists(self.account_registry.table_name, account_id):
                raise AccountNotFound(codes[account_id])

    def get_journal(self, journal_id: str) -> Optional[JournalEntry]:
        """Get a journal entry with its lines"""
        data = self.storage.load(self.journals_table, journal_id)
        if not data:
            return None
        return JournalEntry.from_dict(data, self.get_journal_lines(journal_id))

    def require_journal(self, journal_id: str) -> JournalEntry:
        journal = self.get_journal(journal_id)
        if journal is None:
            raise JournalNotFound(journal_id)
        return journal

    def get_journal_lines(self, journal_id: str) -> List[LedgerEntry]:
        lines = [LedgerEntry.from_dict(data)
                 for data in self.storage.find(self.entries_table, {"journal_entry_id": journal_id})]
        lines.sort(key=lambda line: line.line_number)
        return lines

    def find_journals(self, loan_id: Optional[str] = None,
                      payment_id: Optional[str] = None) -> List[JournalEntry]:
        """Journals for a loan and/or payment, oldest first"""
        filters = {}
        if loan_id:
            filters["loan_id"] = loan_id
        if payment_id:
            filters["payment_id"] = payment_id
        journals = [JournalEntry.from_dict(data, self.get_journal_lines(data["id"]))
                    for data in self.storage.find(self.journals_table, filters)]
        journals.sort(key=lambda j: j.created_at)
        return journals

    def get_account_balance(self, account_code: str, currency: str,
                            loan_id: Optional[str] = None) -> Money:
        """
        Signed balance of an account derived from its ledger entries

        Debit-normal accounts return debits minus credits, credit-normal
        accounts the reverse. Optionally restricted to one loan.
        """
        account = self._account(account_code)
        filters = {"account_id": account.id}
        if loan_id:
            filters["loan_id"] = loan_id
        entries = [LedgerEntry.from_dict(data) for data in self.storage.find(self.entries_table, filters)]
        entries = [e for e in entries if e.currency == currency]
        debits = sum_money((e.debit for e in entries), currency)
        credits = sum_money((e.credit for e in entries), currency)
        if account.account_type.is_debit_normal:
            return debits - credits
        return credits - debits
