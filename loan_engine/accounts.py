"""
Account Registry Module

Chart of accounts for the loan ledger. Accounts are identified by a unique
code, carry a type that fixes their normal balance, and may hang under a
parent account. An account referenced by any ledger entry cannot be deleted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .config import PostingAccounts
from .exceptions import AccountInUse, AccountNotFound, DuplicateAccountCode
from .storage import StorageInterface, StorageRecord, UniqueViolation
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger


logger = get_logger("loan_engine.accounts")


class AccountType(Enum):
    """Account types of the microfinance chart"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    INCOME = "income"         # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance
    CASH = "cash"             # Debit normal balance
    BANK = "bank"             # Debit normal balance

    @property
    def is_debit_normal(self) -> bool:
        return self in (AccountType.ASSET, AccountType.EXPENSE, AccountType.CASH, AccountType.BANK)


@dataclass
class Account(StorageRecord):
    """Ledger account"""
    code: str
    name: str
    account_type: AccountType
    parent_id: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        return super().from_dict(data)


def default_chart(posting: PostingAccounts) -> List[Tuple[str, str, AccountType]]:
    """Accounts the engine posts to, keyed by the configured codes"""
    methods = posting.method_accounts
    return [
        (methods.get("cash", posting.default_method_account), "Cash", AccountType.CASH),
        (methods.get("bank", "1010"), "Bank", AccountType.BANK),
        (methods.get("mobile_money", "1020"), "Mobile Money Float", AccountType.CASH),
        (posting.loans_receivable, "Loans Receivable", AccountType.ASSET),
        (posting.overpayment_liability, "Borrower Overpayments", AccountType.LIABILITY),
        (posting.interest_income, "Interest Income", AccountType.INCOME),
        (posting.fee_income, "Fee Income", AccountType.INCOME),
        (posting.penalty_income, "Penalty Income", AccountType.INCOME),
        (posting.loan_loss_expense, "Loan Loss Expense", AccountType.EXPENSE),
    ]


class AccountRegistry:
    """
    Manages the chart of accounts
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 ledger_entries_table: str = "ledger_entries", lock_timeout: Optional[float] = 5.0):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "accounts"
        self.ledger_entries_table = ledger_entries_table
        self.lock_timeout = lock_timeout
        self.storage.add_unique_constraint(self.table_name, ("code",))

    def create_account(
        self,
        code: str,
        name: str,
        account_type: AccountType,
        parent_code: Optional[str] = None,
        description: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Account:
        """
        Create a new ledger account

        Args:
            code: Unique account code (e.g. "1200")
            name: Display name
            account_type: Type fixing the normal balance
            parent_code: Code of an existing parent account
            description: Optional free text
            actor_id: Who created the account

        Returns:
            Created Account

        Raises:
            DuplicateAccountCode: If the code is taken
            AccountNotFound: If the parent code does not exist
        """
        code = code.strip()
        if not code:
            raise ValueError("Account code is required")
        if self.get_by_code(code):
            raise DuplicateAccountCode(code)

        parent_id = None
        if parent_code:
            parent_id = self.require_by_code(parent_code).id

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            account_type=account_type,
            parent_id=parent_id,
            description=description
        )

        # Concurrent creates of one code are caught at save or at commit
        try:
            with self.storage.atomic():
                self.storage.save(self.table_name, account.id, account.to_dict())
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_CREATED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "code": code,
                        "name": name,
                        "account_type": account_type.value,
                        "parent_id": parent_id
                    },
                    user_id=actor_id
                )
        except UniqueViolation as exc:
            raise DuplicateAccountCode(code) from exc
        logger.info(f"Created account {code} ({name})")
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_by_code(self, code: str) -> Optional[Account]:
        """Get account by its code"""
        found = self.storage.find(self.table_name, {"code": code})
        if found:
            return Account.from_dict(found[0])
        return None

    def require_by_code(self, code: str) -> Account:
        account = self.get_by_code(code)
        if account is None:
            raise AccountNotFound(code)
        return account

    def list_accounts(self, account_type: Optional[AccountType] = None) -> List[Account]:
        """List accounts ordered by code"""
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if account_type:
            accounts = [a for a in accounts if a.account_type == account_type]
        accounts.sort(key=lambda a: a.code)
        return accounts

    def get_children(self, code: str) -> List[Account]:
        parent = self.require_by_code(code)
        return [a for a in self.list_accounts() if a.parent_id == parent.id]

    def rename_account(self, code: str, name: str, actor_id: Optional[str] = None) -> Account:
        """Change an account's display name; code and type are fixed once created"""
        account = self.require_by_code(code)
        old_name = account.name
        account.name = name
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_UPDATED,
            entity_type="account",
            entity_id=account.id,
            metadata={"code": code, "old_name": old_name, "new_name": name},
            user_id=actor_id
        )
        return account

    def count_entries(self, account_id: str) -> int:
        """Number of ledger entries posted against an account"""
        return len(self.storage.find(self.ledger_entries_table, {"account_id": account_id}))

    def delete_account(self, code: str, actor_id: Optional[str] = None) -> None:
        """
        Delete an account that nothing references

        The account stays locked until the delete commits, so a journal
        being posted against it either lands first or fails.

        Raises:
            AccountInUse: If ledger entries or child accounts reference it
        """
        with self.storage.atomic():
            account = self.require_by_code(code)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_DELETED,
                entity_type="account",
                entity_id=account.id,
                metadata={"code": code},
                user_id=actor_id
            )
            self.storage.lock_record(self.table_name, account.id, timeout=self.lock_timeout)
            entry_count = self.count_entries(account.id)
            if entry_count:
                raise AccountInUse(code, entry_count)
            if self.get_children(code):
                raise AccountInUse(code, 0)

            self.storage.delete(self.table_name, account.id)
        logger.info(f"Deleted account {code}")

    def seed_default_chart(self, posting: PostingAccounts, actor_id: Optional[str] = None) -> List[Account]:
        """Create any missing accounts the poster needs; existing codes are left alone"""
        created = []
        for code, name, account_type in default_chart(posting):
            if self.get_by_code(code) is None:
                created.append(self.create_account(code, name, account_type, actor_id=actor_id))
        return created
