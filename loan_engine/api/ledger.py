"""
Chart of accounts and journal endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, RequestContext, get_loan_system, get_request_context
from .schemas import CreateAccountRequest, RenameAccountRequest, parse_enum, journal_response
from ..accounts import Account, AccountType


router = APIRouter()


def account_response(account: Account):
    return account.to_dict()


@router.get("/accounts")
async def list_accounts(system: LoanSystem = Depends(get_loan_system)):
    """List ledger accounts ordered by code"""
    accounts = system.account_registry.list_accounts()
    return {"accounts": [account_response(account) for account in accounts]}


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Create a ledger account"""
    account = system.account_registry.create_account(
        request.code,
        request.name,
        parse_enum(AccountType, request.account_type, "account_type"),
        parent_code=request.parent_code,
        description=request.description,
        actor_id=context.actor_id
    )
    return account_response(account)


@router.get("/accounts/{code}")
async def get_account(
    code: str,
    currency: str = "TZS",
    system: LoanSystem = Depends(get_loan_system)
):
    """Get an account with its balance derived from ledger entries"""
    account = system.account_registry.require_by_code(code)
    result = account_response(account)
    result["balance"] = str(system.ledger_poster.get_account_balance(code, currency.upper()).amount)
    result["currency"] = currency.upper()
    return result


@router.patch("/accounts/{code}")
async def rename_account(
    code: str,
    request: RenameAccountRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Rename an account"""
    return account_response(system.account_registry.rename_account(code, request.name, context.actor_id))


@router.delete("/accounts/{code}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    code: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Delete an account no ledger entry references"""
    system.account_registry.delete_account(code, context.actor_id)


@router.get("/journals/{journal_id}")
async def get_journal(journal_id: str, system: LoanSystem = Depends(get_loan_system)):
    """Get a journal entry with its lines"""
    return journal_response(system.ledger_poster.require_journal(journal_id))
