"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import LendingSystem, get_lending_system, get_actor_id, require_actor_id
from .schemas import (
    CreateLoanRequest, ApproveLoanRequest, RejectLoanRequest, PaymentRequest,
    SchedulePaymentRequest, loan_response, payment_response, balance_check_response
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a pending loan"""
    manager = system.loan_manager
    loan = manager.create_loan(
        client_id=request.client_id,
        loan_amount=request.loan_amount,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        purpose=request.purpose,
        start_date=request.start_date,
        payment_frequency=request.payment_frequency,
        actor_id=actor_id
    )
    return loan_response(loan, manager.clock())


@router.get("")
def list_loans(
    client_id: Optional[str] = None,
    status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, newest first"""
    manager = system.loan_manager
    today = manager.clock()
    loans = manager.list_loans(client_id=client_id, status=status)
    return {"loans": [loan_response(loan, today) for loan in loans]}


@router.get("/{loan_id}")
def get_loan(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    manager = system.loan_manager
    return loan_response(manager.get_loan(loan_id), manager.clock())


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a loan that has no payments"""
    system.loan_manager.delete_loan(loan_id, actor_id=actor_id)
    return {"loan_id": loan_id, "message": "Loan deleted successfully"}


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    actor_id: str = Depends(require_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    manager = system.loan_manager
    loan = manager.approve_loan(loan_id, request.approved_amount, actor_id, notes=request.notes)
    return loan_response(loan, manager.clock())


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    actor_id: str = Depends(require_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    manager = system.loan_manager
    loan = manager.reject_loan(loan_id, actor_id, notes=request.notes)
    return loan_response(loan, manager.clock())


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def apply_payment(
    loan_id: str,
    request: PaymentRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a completed payment against the loan"""
    manager = system.loan_manager
    result = manager.apply_payment(
        loan_id=loan_id,
        amount=request.amount,
        payment_date=request.payment_date,
        payment_method=request.payment_method,
        actor_id=actor_id,
        reference_number=request.reference_number,
        notes=request.notes
    )
    return {
        "payment": payment_response(result.payment),
        "loan": loan_response(result.loan, manager.clock()),
        "paid_off": result.paid_off
    }


@router.get("/{loan_id}/payments")
def get_loan_payments(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Payment history, by payment date"""
    manager = system.loan_manager
    manager.get_loan(loan_id)
    return {"payments": [payment_response(p) for p in manager.get_loan_payments(loan_id)]}


@router.post("/{loan_id}/scheduled-payments", status_code=status.HTTP_201_CREATED)
def schedule_payment(
    loan_id: str,
    request: SchedulePaymentRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    payment = system.loan_manager.schedule_payment(
        loan_id=loan_id,
        amount=request.amount,
        payment_date=request.payment_date,
        payment_method=request.payment_method,
        actor_id=actor_id,
        reference_number=request.reference_number,
        notes=request.notes
    )
    return payment_response(payment)


@router.post("/{loan_id}/scheduled-payments/cancel")
def cancel_scheduled_payments(
    loan_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    cancelled = system.loan_manager.cancel_scheduled_payments(loan_id, actor_id=actor_id)
    return {"loan_id": loan_id, "cancelled": cancelled}


@router.get("/{loan_id}/balance-check")
def verify_balance(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Compare the stored balance with the payment history"""
    return balance_check_response(system.loan_manager.verify_balance(loan_id))
