"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
The calculation and posting settings are also exposed as small frozen structs so the
pure schedule and allocation code never reads global state.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class CalculationConfig:
    """Explicit rounding context handed to the schedule generator and allocator"""
    currency: str = "TZS"
    rounding_tolerance: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class PostingAccounts:
    """Chart-of-accounts codes used by the ledger poster"""
    loans_receivable: str = "1200"
    interest_income: str = "4000"
    fee_income: str = "4100"
    penalty_income: str = "4200"
    loan_loss_expense: str = "5000"
    overpayment_liability: str = "2100"
    method_accounts: Dict[str, str] = field(default_factory=lambda: {
        "cash": "1000",
        "bank": "1010",
        "mobile_money": "1020",
    })
    default_method_account: str = "1000"

    def account_for_method(self, method: str) -> str:
        """Cash or bank account code that a disbursement/payment method settles through"""
        return self.method_accounts.get(method, self.default_method_account)


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...
    lock_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Calculation configuration
    default_currency: str = "TZS"
    rounding_tolerance: str = "0.01"

    # Chart of accounts
    cash_account_code: str = "1000"
    bank_account_code: str = "1010"
    mobile_money_account_code: str = "1020"
    loans_receivable_account_code: str = "1200"
    overpayment_liability_account_code: str = "2100"
    interest_income_account_code: str = "4000"
    fee_income_account_code: str = "4100"
    penalty_income_account_code: str = "4200"
    loan_loss_expense_account_code: str = "5000"

    # Feature flags
    enable_audit_logging: bool = True
    seed_default_accounts: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    def calculation_config(self, currency: Optional[str] = None) -> CalculationConfig:
        """Build the rounding context for one currency"""
        return CalculationConfig(
            currency=currency or self.default_currency,
            rounding_tolerance=Decimal(self.rounding_tolerance),
        )

    def posting_accounts(self) -> PostingAccounts:
        """Build the account-code map used by the ledger poster"""
        return PostingAccounts(
            loans_receivable=self.loans_receivable_account_code,
            interest_income=self.interest_income_account_code,
            fee_income=self.fee_income_account_code,
            penalty_income=self.penalty_income_account_code,
            loan_loss_expense=self.loan_loss_expense_account_code,
            overpayment_liability=self.overpayment_liability_account_code,
            method_accounts={
                "cash": self.cash_account_code,
                "bank": self.bank_account_code,
                "mobile_money": self.mobile_money_account_code,
            },
            default_method_account=self.cash_account_code,
        )


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
