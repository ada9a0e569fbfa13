"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import LoanSystem, RequestContext, get_loan_system, get_request_context
from .schemas import (
    DisburseRequest, LoanApplicationRequest, ReasonRequest, RescheduleRequest, TopUpRequest,
    journal_response, loan_response, schedule_response
)
from ..exceptions import LoanNotFound, LoanValidationError
from ..loans import Loan, LoanState
from ..tenancy import tenant_context


router = APIRouter()


def get_scoped_loan(system: LoanSystem, loan_id: str, context: RequestContext) -> Loan:
    """Load a loan, hiding loans of other tenants"""
    loan = system.loan_manager.require_loan(loan_id)
    if loan.tenant_id != context.tenant_id:
        raise LoanNotFound(loan_id)
    return loan


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: LoanApplicationRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Capture a loan application"""
    product = request.product.to_product() if request.product else None
    with tenant_context(context.tenant_id, context.branch_id):
        loan = system.loan_manager.apply_for_loan(request.to_application(), context.actor_id, product=product)
    return loan_response(loan)


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """List the caller's tenant loans, optionally by status"""
    state = None
    if status_filter:
        try:
            state = LoanState(status_filter)
        except ValueError:
            raise LoanValidationError(f"Unknown loan status '{status_filter}'", field="status")
    loans = system.loan_manager.list_loans(status=state, tenant_id=context.tenant_id)
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Get loan details"""
    return loan_response(get_scoped_loan(system, loan_id, context))


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Approve a pending loan"""
    get_scoped_loan(system, loan_id, context)
    return loan_response(system.loan_manager.approve(loan_id, context.actor_id))


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: ReasonRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Reject a pending or approved loan"""
    get_scoped_loan(system, loan_id, context)
    return loan_response(system.loan_manager.reject(loan_id, context.actor_id, request.reason))


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Disburse an approved loan and generate its schedule"""
    get_scoped_loan(system, loan_id, context)
    loan = system.loan_manager.disburse(loan_id, context.actor_id, method=request.method,
                                        disbursement_date=request.disbursement_date)
    return loan_response(loan)


@router.post("/{loan_id}/close")
async def close_loan(
    loan_id: str,
    request: ReasonRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Close a fully repaid loan"""
    get_scoped_loan(system, loan_id, context)
    return loan_response(system.loan_manager.close(loan_id, context.actor_id, request.reason))


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: ReasonRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Write off the unpaid principal of a disbursed loan"""
    get_scoped_loan(system, loan_id, context)
    return loan_response(system.loan_manager.write_off(loan_id, context.actor_id, request.reason or ""))


@router.post("/{loan_id}/reschedule", status_code=status.HTTP_201_CREATED)
async def reschedule_loan(
    loan_id: str,
    request: RescheduleRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Replace a loan with a new one on new terms; returns the new loan"""
    get_scoped_loan(system, loan_id, context)
    new_loan = system.loan_manager.reschedule(loan_id, request.new_terms.to_terms(), context.actor_id,
                                              effective_date=request.effective_date)
    return loan_response(new_loan)


@router.post("/{loan_id}/top-up", status_code=status.HTTP_201_CREATED)
async def top_up_loan(
    loan_id: str,
    request: TopUpRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Replace a loan with a bigger one; returns the new loan"""
    get_scoped_loan(system, loan_id, context)
    new_loan = system.loan_manager.top_up(
        loan_id,
        request.extra_principal.to_money(),
        context.actor_id,
        method=request.method,
        new_terms=request.new_terms.to_terms() if request.new_terms else None,
        effective_date=request.effective_date
    )
    return loan_response(new_loan)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Get the stored repayment schedule"""
    get_scoped_loan(system, loan_id, context)
    return schedule_response(system.loan_manager.get_schedule(loan_id))


@router.get("/{loan_id}/schedule/preview")
async def preview_loan_schedule(
    loan_id: str,
    start_date: Optional[date] = None,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Generate the schedule the loan would get, without storing it"""
    get_scoped_loan(system, loan_id, context)
    return schedule_response(system.loan_manager.preview_schedule(loan_id, start_date=start_date))


@router.get("/{loan_id}/lineage")
async def get_loan_lineage(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Get the chain of rescheduled / topped-up loans, oldest first"""
    get_scoped_loan(system, loan_id, context)
    return {"loans": [loan_response(loan) for loan in system.loan_manager.get_lineage(loan_id)]}


@router.get("/{loan_id}/journals")
async def get_loan_journals(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Get journal entries posted for a loan"""
    get_scoped_loan(system, loan_id, context)
    journals = system.ledger_poster.find_journals(loan_id=loan_id)
    return {"journals": [journal_response(journal) for journal in journals]}
