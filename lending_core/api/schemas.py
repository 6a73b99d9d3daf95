"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..loans import Loan, Payment, BalanceCheck


class CreateLoanRequest(BaseModel):
    client_id: str
    loan_amount: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Nominal annual rate in percent, e.g. \"12.5\"")
    term_months: int = Field(..., description="Number of installments")
    purpose: Optional[str] = None
    start_date: Optional[str] = None  # ISO date string
    payment_frequency: Optional[str] = Field(
        None, description="daily, weekly, bi-weekly, monthly, quarterly, semi-annually, annually"
    )


class ApproveLoanRequest(BaseModel):
    approved_amount: str = Field(..., description="Decimal amount as string")
    notes: Optional[str] = None


class RejectLoanRequest(BaseModel):
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[str] = None  # ISO date string, defaults to today
    payment_method: str = Field(..., description="cash, bank_transfer, credit_card, check, online")
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class SchedulePaymentRequest(PaymentRequest):
    payment_date: str  # Must be in the future


def loan_response(loan: Loan, today: date) -> Dict[str, Any]:
    data = loan.to_dict()
    data["status"] = loan.effective_status(today).value
    data["is_overdue"] = loan.is_overdue(today)
    data["installment_amount"] = str(loan.scheduled_installment)
    return data


def payment_response(payment: Payment) -> Dict[str, Any]:
    return payment.to_dict()


def balance_check_response(check: BalanceCheck) -> Dict[str, Any]:
    return {
        "loan_id": check.loan_id,
        "consistent": check.consistent,
        "balance_consistent": check.balance_consistent,
        "due_date_consistent": check.due_date_consistent,
        "stored_balance": str(check.stored_balance),
        "expected_balance": str(check.expected_balance),
        "completed_total": str(check.completed_total),
        "completed_count": check.completed_count,
        "installments_paid": check.installments_paid
    }
