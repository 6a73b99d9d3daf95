"""
Payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import LendingSystem, get_lending_system, get_actor_id, require_actor_id
from .schemas import loan_response, payment_response


router = APIRouter()


@router.get("/{payment_id}")
def get_payment(payment_id: str, system: LendingSystem = Depends(get_lending_system)):
    return payment_response(system.loan_manager.get_payment(payment_id))


@router.post("/{payment_id}/complete")
def complete_scheduled_payment(
    payment_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a scheduled payment now"""
    manager = system.loan_manager
    result = manager.complete_scheduled_payment(payment_id, actor_id)
    return {
        "payment": payment_response(result.payment),
        "loan": loan_response(result.loan, manager.clock()),
        "paid_off": result.paid_off
    }


@router.delete("/{payment_id}")
def reverse_payment(
    payment_id: str,
    actor_id: str = Depends(require_actor_id),
    system: LendingSystem = Depends(get_lending_system)
):
    """Administrative reversal: delete the payment and restore the loan balance"""
    manager = system.loan_manager
    loan = manager.reverse_payment(payment_id, actor_id=actor_id)
    return {
        "payment_id": payment_id,
        "loan": loan_response(loan, manager.clock()),
        "message": "Payment reversed successfully"
    }
