"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Type
from pydantic import BaseModel, Field

from ..currency import Money, decimal_from_string
from ..exceptions import LoanValidationError
from ..ledger import JournalEntry
from ..loans import Loan, LoanApplication, LoanProduct, RescheduleTerms
from ..payments import Payment
from ..schedule import InterestMethod, RateBasis, RepaymentFrequency, SchedulePeriod, TermUnit


def parse_enum(enum_cls: Type[Enum], value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise LoanValidationError(f"Invalid {field} '{value}', expected one of: {allowed}", field=field)


def _decimal(value: Optional[str], field: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError:
        raise LoanValidationError(f"Invalid decimal for {field}: '{value}'", field=field)


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (TZS, KES, USD, ...)")

    def to_money(self) -> Money:
        return Money(_decimal(self.amount, "amount"), self.currency)

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency)


class LoanProductModel(BaseModel):
    code: str
    name: str = ""
    active: bool = True
    interest_method: str = "flat"
    interest_rate: str = "0"
    rate_basis: Optional[str] = None
    min_principal: Optional[str] = None
    max_principal: Optional[str] = None
    min_term_months: Optional[int] = None
    max_term_months: Optional[int] = None

    def to_product(self) -> LoanProduct:
        return LoanProduct(
            code=self.code,
            name=self.name,
            active=self.active,
            interest_method=parse_enum(InterestMethod, self.interest_method, "interest_method"),
            interest_rate=_decimal(self.interest_rate, "interest_rate"),
            rate_basis=parse_enum(RateBasis, self.rate_basis, "rate_basis"),
            min_principal=_decimal(self.min_principal, "min_principal"),
            max_principal=_decimal(self.max_principal, "max_principal"),
            min_term_months=self.min_term_months,
            max_term_months=self.max_term_months
        )


# Loan schemas
class LoanApplicationRequest(BaseModel):
    borrower_id: str
    amount: MoneyModel
    term_value: int = Field(..., gt=0)
    term_unit: str = "months"
    repayment_frequency: str = "monthly"
    interest_rate: Optional[str] = None  # Decimal fraction as string, e.g. "0.02"
    interest_method: Optional[str] = None
    rate_basis: str = "per_period"
    purpose: Optional[str] = None
    product: Optional[LoanProductModel] = None

    def to_application(self) -> LoanApplication:
        return LoanApplication(
            borrower_id=self.borrower_id,
            amount=self.amount.to_money(),
            term_value=self.term_value,
            term_unit=parse_enum(TermUnit, self.term_unit, "term_unit"),
            repayment_frequency=parse_enum(RepaymentFrequency, self.repayment_frequency, "repayment_frequency"),
            interest_rate=_decimal(self.interest_rate, "interest_rate"),
            interest_method=parse_enum(InterestMethod, self.interest_method, "interest_method"),
            rate_basis=parse_enum(RateBasis, self.rate_basis, "rate_basis"),
            purpose=self.purpose
        )


class NewTermsModel(BaseModel):
    interest_rate: str
    term_value: int = Field(..., gt=0)
    term_unit: str = "months"
    repayment_frequency: str = "monthly"
    interest_method: str = "flat"
    rate_basis: str = "per_period"

    def to_terms(self) -> RescheduleTerms:
        return RescheduleTerms(
            interest_rate=_decimal(self.interest_rate, "interest_rate"),
            term_value=self.term_value,
            term_unit=parse_enum(TermUnit, self.term_unit, "term_unit"),
            repayment_frequency=parse_enum(RepaymentFrequency, self.repayment_frequency, "repayment_frequency"),
            interest_method=parse_enum(InterestMethod, self.interest_method, "interest_method"),
            rate_basis=parse_enum(RateBasis, self.rate_basis, "rate_basis")
        )


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class DisburseRequest(BaseModel):
    method: str = "cash"
    disbursement_date: Optional[date] = None


class RescheduleRequest(BaseModel):
    new_terms: NewTermsModel
    effective_date: Optional[date] = None


class TopUpRequest(BaseModel):
    extra_principal: MoneyModel
    method: str = "cash"
    new_terms: Optional[NewTermsModel] = None
    effective_date: Optional[date] = None


# Payment schemas
class PaymentRequest(BaseModel):
    amount: MoneyModel
    method: str = "cash"
    reference: Optional[str] = None
    payment_date: Optional[date] = None
    auto_approve: bool = True
    notes: Optional[str] = None


class AllocationPreviewRequest(BaseModel):
    amount: MoneyModel


class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# Account schemas
class CreateAccountRequest(BaseModel):
    code: str
    name: str
    account_type: str = Field(..., description="asset, liability, equity, income, expense, cash or bank")
    parent_code: Optional[str] = None
    description: Optional[str] = None


class RenameAccountRequest(BaseModel):
    name: str


# Response helpers
def loan_response(loan: Loan) -> Dict[str, Any]:
    data = loan.to_dict()
    data['outstanding'] = str(loan.outstanding.amount)
    return data


def schedule_response(periods: List[SchedulePeriod]) -> Dict[str, Any]:
    return {"periods": [period.to_dict() for period in periods], "count": len(periods)}


def payment_response(payment: Payment) -> Dict[str, Any]:
    data = payment.to_dict()
    data['unallocated'] = str(payment.unallocated.amount)
    return data


def journal_response(journal: JournalEntry) -> Dict[str, Any]:
    data = journal.to_dict()
    data['lines'] = [line.to_dict() for line in journal.lines]
    data['total_debits'] = str(journal.total_debits.amount)
    data['total_credits'] = str(journal.total_credits.amount)
    return data
