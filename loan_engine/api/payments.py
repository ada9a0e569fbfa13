"""
Payment endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, RequestContext, get_loan_system, get_request_context
from .loans import get_scoped_loan
from .schemas import (
    AllocationPreviewRequest, PaymentRequest, ReasonRequest, VoidRequest, loan_response, payment_response
)
from ..exceptions import PaymentNotFound
from ..payments import Payment, PaymentResult


router = APIRouter()


def get_scoped_payment(system: LoanSystem, payment_id: str, context: RequestContext) -> Payment:
    payment = system.payment_processor.require_payment(payment_id)
    if payment.tenant_id != context.tenant_id:
        raise PaymentNotFound(payment_id)
    return payment


def result_response(result: PaymentResult):
    return {
        "payment": payment_response(result.payment),
        "loan": loan_response(result.loan),
        "allocation": result.allocation.to_dict() if result.allocation else None,
        "warnings": [warning.to_dict() for warning in result.warnings],
    }


@router.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Record a repayment; applied immediately unless auto_approve is false"""
    get_scoped_loan(system, loan_id, context)
    result = system.payment_processor.record_payment(
        loan_id,
        request.amount.to_money(),
        method=request.method,
        actor_id=context.actor_id,
        reference=request.reference,
        payment_date=request.payment_date,
        auto_approve=request.auto_approve,
        notes=request.notes
    )
    return result_response(result)


@router.get("/loans/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """List payments on a loan"""
    get_scoped_loan(system, loan_id, context)
    payments = system.payment_processor.get_loan_payments(loan_id)
    return {"payments": [payment_response(payment) for payment in payments], "count": len(payments)}


@router.post("/loans/{loan_id}/payments/preview")
async def preview_allocation(
    loan_id: str,
    request: AllocationPreviewRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Show how an amount would be allocated, without recording anything"""
    get_scoped_loan(system, loan_id, context)
    allocation = system.payment_processor.preview_allocation(loan_id, request.amount.to_money())
    return allocation.to_dict()


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Get payment details"""
    return payment_response(get_scoped_payment(system, payment_id, context))


@router.post("/payments/{payment_id}/approve")
async def approve_payment(
    payment_id: str,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Approve a pending payment"""
    get_scoped_payment(system, payment_id, context)
    return result_response(system.payment_processor.approve_payment(payment_id, context.actor_id))


@router.post("/payments/{payment_id}/reject")
async def reject_payment(
    payment_id: str,
    request: ReasonRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Reject a pending payment"""
    get_scoped_payment(system, payment_id, context)
    payment = system.payment_processor.reject_payment(payment_id, context.actor_id, request.reason)
    return payment_response(payment)


@router.post("/payments/{payment_id}/void")
async def void_payment(
    payment_id: str,
    request: VoidRequest,
    system: LoanSystem = Depends(get_loan_system),
    context: RequestContext = Depends(get_request_context)
):
    """Void a payment, reversing its allocation and journal"""
    get_scoped_payment(system, payment_id, context)
    return result_response(system.payment_processor.void_payment(payment_id, context.actor_id, request.reason))
