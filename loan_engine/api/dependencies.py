"""
Component wiring and request-scoped dependencies
"""

import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from ..accounts import AccountRegistry
from ..audit import AuditTrail
from ..config import LoanEngineConfig, get_config
from ..events import EventDispatcher
from ..ledger import LedgerPoster
from ..loans import LoanManager
from ..logging_config import get_logger
from ..payments import PaymentProcessor
from ..storage import StorageInterface, create_storage
from ..tenancy import DEFAULT_TENANT


logger = get_logger("loan_engine.api")


class LoanSystem:
    """Loan engine with all components initialized over one storage backend"""

    def __init__(self, settings: Optional[LoanEngineConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.settings = settings or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.settings.database_url,
                                                 lock_timeout=self.settings.lock_timeout_seconds)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.settings.enable_audit_logging,
                                      lock_timeout=self.settings.lock_timeout_seconds)
        self.event_dispatcher = EventDispatcher()
        self.posting_accounts = self.settings.posting_accounts()
        self.account_registry = AccountRegistry(self.storage, self.audit_trail,
                                                lock_timeout=self.settings.lock_timeout_seconds)
        self.ledger_poster = LedgerPoster(
            self.storage, self.account_registry, self.posting_accounts, self.audit_trail,
            lock_timeout=self.settings.lock_timeout_seconds
        )
        self.loan_manager = LoanManager(
            self.storage, self.ledger_poster, self.audit_trail,
            calculation_config=self.settings.calculation_config(),
            lock_timeout=self.settings.lock_timeout_seconds,
            event_dispatcher=self.event_dispatcher
        )
        self.payment_processor = PaymentProcessor(
            self.storage, self.loan_manager, self.ledger_poster, self.audit_trail,
            event_dispatcher=self.event_dispatcher
        )

        if self.settings.seed_default_accounts:
            created = self.account_registry.seed_default_chart(self.posting_accounts, actor_id="system")
            if created:
                logger.info(f"Seeded {len(created)} default ledger accounts")

    def close(self) -> None:
        self.storage.close()


# Global loan system instance, created on first use
_loan_system: Optional[LoanSystem] = None
_loan_system_lock = threading.Lock()


def get_loan_system() -> LoanSystem:
    global _loan_system
    with _loan_system_lock:
        if _loan_system is None:
            _loan_system = LoanSystem()
        return _loan_system


@dataclass(frozen=True)
class RequestContext:
    """Caller identity taken from request headers; resolved upstream"""
    tenant_id: str
    branch_id: Optional[str] = None
    actor_id: Optional[str] = None


def get_request_context(
    x_tenant_id: Optional[str] = Header(None),
    x_branch_id: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None)
) -> RequestContext:
    return RequestContext(
        tenant_id=x_tenant_id or DEFAULT_TENANT,
        branch_id=x_branch_id,
        actor_id=x_actor_id
    )
