"""
Loan Module

Loan lifecycle and payment ledger: creation, one-time approval or rejection,
payment application with due-date advancement, payoff, administrative
reversal, and the consistency check tying ``remaining_balance`` to the
recorded payment history.

Every mutating operation reads the loan with ``load_for_update`` inside one
``atomic()`` unit, so concurrent writers against the same loan are serialized
and a payment row is never persisted without its balance change (or the
reverse).
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union
from contextlib import contextmanager
from enum import Enum
import logging
import uuid

from .amortization import installment
from .audit import AuditTrail, AuditEventType
from .errors import (
    LendingError, ValidationError, NotFoundError, ConflictError, DomainError
)
from .logging_config import log_action
from .money import ZERO, quantize_money, to_decimal, format_money
from .schedule import (
    PaymentFrequency, due_date_for, advance_due_date, term_end_date, to_date, utc_today
)
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Requested, awaiting decision
    APPROVED = "approved"    # Legacy open state; approval now goes straight to active
    ACTIVE = "active"        # Disbursed and in repayment
    OVERDUE = "overdue"      # Cached projection of an active loan past its due date
    REJECTED = "rejected"    # Terminal
    PAID_OFF = "paid_off"    # Terminal

    @classmethod
    def parse(cls, value: Union[str, 'LoanStatus']) -> 'LoanStatus':
        """Parse a stored or requested status; "completed" and "paid" mean paid_off"""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = _STATUS_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown loan status: {value!r}", {"status": value})

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        """Accepts payments"""
        return self in OPEN_STATUSES


_STATUS_ALIASES = {
    "completed": "paid_off",
    "paid": "paid_off",
    "paid-off": "paid_off",
}

OPEN_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.OVERDUE
})
TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.REJECTED, LoanStatus.PAID_OFF
})


class LoanTransition(Enum):
    """Actions that move a loan through its lifecycle"""
    APPROVE = "approve"
    REJECT = "reject"
    APPLY_PAYMENT = "apply_payment"
    REVERSE_PAYMENT = "reverse_payment"


# Source states each transition is legal from
ALLOWED_TRANSITIONS: Dict[LoanTransition, FrozenSet[LoanStatus]] = {
    LoanTransition.APPROVE: frozenset({LoanStatus.PENDING}),
    LoanTransition.REJECT: frozenset({LoanStatus.PENDING}),
    LoanTransition.APPLY_PAYMENT: OPEN_STATUSES,
    LoanTransition.REVERSE_PAYMENT: OPEN_STATUSES | {LoanStatus.PAID_OFF},
}


def check_transition(loan: 'Loan', transition: LoanTransition) -> None:
    """
    Raise if ``transition`` is illegal from the loan's current status

    Approve/reject from a non-pending loan is a ConflictError: the caller
    acted on stale state. Anything else is a DomainError.
    """
    if loan.status in ALLOWED_TRANSITIONS[transition]:
        return

    details = {"loan_id": loan.id, "status": loan.status.value, "transition": transition.value}
    if transition in (LoanTransition.APPROVE, LoanTransition.REJECT):
        raise ConflictError(
            f"Loan {loan.id} is {loan.status.value}, only pending loans can be {transition.value}d",
            details
        )
    if loan.status.is_terminal:
        raise DomainError(f"Loan {loan.id} is already closed ({loan.status.value})", details)
    raise DomainError(f"Loan {loan.id} is {loan.status.value} and not open for payments", details)


class PaymentStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"      # Scheduled for a future date
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    CHECK = "check"
    ONLINE = "online"

    @classmethod
    def parse(cls, value: Union[str, 'PaymentMethod']) -> 'PaymentMethod':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace(' ', '_').replace('-', '_')
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {value!r}", {"payment_method": value})


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _decimal_or_none(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class Loan(StorageRecord):
    """One credit extended to a client"""
    client_id: str
    loan_amount: Decimal                # Requested principal, immutable
    interest_rate: Decimal              # Nominal annual percent, immutable
    term_months: int                    # Number of installments, immutable
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    status: LoanStatus = LoanStatus.PENDING
    remaining_balance: Optional[Decimal] = None
    approved_amount: Optional[Decimal] = None
    installment_amount: Optional[Decimal] = None
    purpose: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_due_date: Optional[date] = None
    installments_paid: int = 0          # Completed payments applied so far
    approval_date: Optional[date] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None

    def __post_init__(self):
        if self.remaining_balance is None:
            self.remaining_balance = self.loan_amount

    @property
    def basis(self) -> Decimal:
        """Principal the balance is measured against"""
        if self.approved_amount is not None:
            return self.approved_amount
        return self.loan_amount

    @property
    def scheduled_installment(self) -> Decimal:
        """Stored installment, recomputed when absent"""
        if self.installment_amount:
            return self.installment_amount
        return installment(self.basis, self.interest_rate, self.term_months)

    def is_overdue(self, today: date) -> bool:
        """Derived overdue state; independent of the persisted status"""
        return (
            self.status.is_open
            and self.next_due_date is not None
            and self.next_due_date < today
            and self.remaining_balance > 0
        )

    def effective_status(self, today: date) -> LoanStatus:
        if self.is_overdue(today):
            return LoanStatus.OVERDUE
        if self.status == LoanStatus.OVERDUE:
            return LoanStatus.ACTIVE
        return self.status

    # Transitions. Callers hold the row lock and have run check_transition.

    def approve(self, approved_amount: Decimal, actor_id: Optional[str],
                notes: Optional[str], today: date) -> None:
        self.approved_amount = approved_amount
        self.remaining_balance = approved_amount
        computed = installment(approved_amount, self.interest_rate, self.term_months)
        self.installment_amount = computed if computed > 0 else None
        self.approval_date = today
        self.approved_by = actor_id
        self.approval_notes = notes
        self.start_date = max(self.start_date, today) if self.start_date else today
        self.end_date = term_end_date(self.start_date, self.term_months)
        self.installments_paid = 0
        self.next_due_date = due_date_for(self.start_date, self.payment_frequency, 1)
        self.status = LoanStatus.ACTIVE

    def reject(self, actor_id: Optional[str], notes: Optional[str], today: date) -> None:
        self.approval_date = today
        self.approved_by = actor_id
        self.approval_notes = notes
        self.next_due_date = None
        self.status = LoanStatus.REJECTED

    def record_payment(self, amount: Decimal, today: date) -> bool:
        """
        Apply one completed payment

        Returns:
            True if the payment paid the loan off
        """
        self.remaining_balance = quantize_money(self.remaining_balance - amount)
        if self.remaining_balance <= 0:
            self.remaining_balance = ZERO
            self.installments_paid += 1
            self.next_due_date = None
            self.status = LoanStatus.PAID_OFF
            return True

        self.next_due_date = self._advance_next_due(today)
        self.installments_paid += 1
        self.status = LoanStatus.ACTIVE
        return False

    def restore_payment(self, completed_total: Decimal, today: date) -> None:
        """
        Undo one completed payment

        Args:
            completed_total: Sum of the completed payments that remain
        """
        self.remaining_balance = max(ZERO, quantize_money(self.basis - completed_total))
        self.installments_paid = max(0, self.installments_paid - 1)
        if self.status == LoanStatus.PAID_OFF and self.remaining_balance > 0:
            self.status = LoanStatus.ACTIVE
        if self.status.is_open:
            if self.start_date:
                self.next_due_date = due_date_for(
                    self.start_date, self.payment_frequency, self.installments_paid + 1
                )
            elif self.next_due_date is None:
                self.next_due_date = advance_due_date(today, self.payment_frequency)

    def _advance_next_due(self, today: date) -> date:
        """
        One period past the scheduled due date

        Anchored on start_date when the stored due date matches the anchored
        schedule, so month-end clamping does not compound. Legacy rows whose
        due date was set some other way advance from that date.
        """
        if self.start_date:
            expected = due_date_for(self.start_date, self.payment_frequency, self.installments_paid + 1)
            if self.next_due_date is None or self.next_due_date == expected:
                return due_date_for(self.start_date, self.payment_frequency, self.installments_paid + 2)
        return advance_due_date(self.next_due_date or today, self.payment_frequency)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['payment_frequency'] = self.payment_frequency.value
        result['status'] = self.status.value
        for field in ('loan_amount', 'interest_rate', 'remaining_balance',
                      'approved_amount', 'installment_amount'):
            value = getattr(self, field)
            result[field] = str(value) if value is not None else None
        for field in ('start_date', 'end_date', 'next_due_date', 'approval_date'):
            value = getattr(self, field)
            result[field] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            loan_amount=Decimal(data['loan_amount']),
            interest_rate=Decimal(data['interest_rate']),
            term_months=int(data['term_months']),
            payment_frequency=PaymentFrequency.parse_lenient(data.get('payment_frequency')),
            status=LoanStatus.parse(data['status']),
            remaining_balance=_decimal_or_none(data.get('remaining_balance')),
            approved_amount=_decimal_or_none(data.get('approved_amount')),
            installment_amount=_decimal_or_none(data.get('installment_amount')),
            purpose=data.get('purpose'),
            start_date=_date_or_none(data.get('start_date')),
            end_date=_date_or_none(data.get('end_date')),
            next_due_date=_date_or_none(data.get('next_due_date')),
            installments_paid=data.get('installments_paid', 0),
            approval_date=_date_or_none(data.get('approval_date')),
            approved_by=data.get('approved_by'),
            approval_notes=data.get('approval_notes')
        )


@dataclass
class Payment(StorageRecord):
    """One funds-received event against a loan"""
    loan_id: str
    client_id: str                      # Copied from the loan at insertion
    amount: Decimal
    payment_date: date
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['payment_date'] = self.payment_date.isoformat()
        result['payment_method'] = self.payment_method.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            client_id=data['client_id'],
            amount=Decimal(data['amount']),
            payment_date=date.fromisoformat(data['payment_date']),
            payment_method=PaymentMethod(data['payment_method']),
            status=PaymentStatus(data['status']),
            reference_number=data.get('reference_number'),
            notes=data.get('notes'),
            processed_by=data.get('processed_by')
        )


@dataclass
class PaymentResult:
    """Outcome of applying a payment: the payment row and the loan after it"""
    payment: Payment
    loan: Loan

    @property
    def paid_off(self) -> bool:
        return self.loan.status == LoanStatus.PAID_OFF


@dataclass
class BalanceCheck:
    """Result of comparing a loan's stored state with its payment history"""
    loan_id: str
    stored_balance: Decimal
    expected_balance: Decimal
    completed_total: Decimal
    completed_count: int
    installments_paid: int
    due_date_consistent: bool

    @property
    def balance_consistent(self) -> bool:
        return self.stored_balance == self.expected_balance

    @property
    def consistent(self) -> bool:
        return (
            self.balance_consistent
            and self.due_date_consistent
            and self.completed_count == self.installments_paid
        )


def _require_positive_amount(value: Any, field: str) -> Decimal:
    try:
        amount = quantize_money(to_decimal(value))
    except ValueError:
        raise ValidationError(f"{field} must be a decimal amount", {field: value})
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero", {field: str(value)})
    return amount


def _require_date(value: Any, field: str) -> date:
    try:
        return to_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date", {field: value})


class LoanManager:
    """
    Loan lifecycle engine

    Owns the state machine for loans and keeps ``remaining_balance`` and
    ``next_due_date`` consistent with the recorded payments.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Callable[[], date] = utc_today,
        default_frequency: Union[str, PaymentFrequency] = PaymentFrequency.MONTHLY
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock
        self.default_frequency = PaymentFrequency.parse(default_frequency)

        self.loans_table = "loans"
        self.payments_table = "payments"

    # Operations

    def create_loan(
        self,
        client_id: str,
        loan_amount: Any,
        interest_rate: Any,
        term_months: int,
        purpose: Optional[str] = None,
        start_date: Optional[Union[date, str]] = None,
        payment_frequency: Optional[Union[str, PaymentFrequency]] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan in pending state with remaining_balance = loan_amount

        Raises:
            ValidationError: Missing or out-of-range input, unknown frequency
        """
        if client_id is None or str(client_id).strip() == "":
            raise ValidationError("client_id is required")
        amount = _require_positive_amount(loan_amount, "loan_amount")

        try:
            rate = to_decimal(interest_rate)
        except ValueError:
            raise ValidationError("interest_rate must be a decimal percentage", {"interest_rate": interest_rate})
        if rate < 0:
            raise ValidationError("interest_rate cannot be negative", {"interest_rate": str(rate)})

        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
            raise ValidationError("term_months must be a positive integer", {"term_months": term_months})

        start = _require_date(start_date, "start_date") if start_date else None
        try:
            frequency = (PaymentFrequency.parse(payment_frequency)
                         if payment_frequency is not None else self.default_frequency)
        except ValueError as e:
            raise ValidationError(str(e), {"payment_frequency": payment_frequency})

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=str(client_id),
            loan_amount=amount,
            interest_rate=rate,
            term_months=term_months,
            payment_frequency=frequency,
            status=LoanStatus.PENDING,
            remaining_balance=amount,
            purpose=purpose,
            start_date=start,
            end_date=term_end_date(start, term_months)
        )

        with self._unit_of_work("create_loan", loan.id):
            self._save_loan(loan)
            self._audit(AuditEventType.LOAN_CREATED, "loan", loan.id, actor_id, {
                "client_id": loan.client_id,
                "loan_amount": loan.loan_amount,
                "interest_rate": loan.interest_rate,
                "term_months": loan.term_months,
                "payment_frequency": loan.payment_frequency.value
            })

        log_action(logger, "info", f"Loan {loan.id} created for {format_money(amount)}",
                   user_id=actor_id, action="create_loan", resource=loan.id)
        return loan

    def approve_loan(self, loan_id: str, approved_amount: Any, actor_id: Optional[str],
                     notes: Optional[str] = None) -> Loan:
        """
        Approve a pending loan and start its repayment schedule

        Raises:
            ValidationError: approved_amount <= 0
            NotFoundError: Unknown loan
            ConflictError: Loan is no longer pending
        """
        amount = _require_positive_amount(approved_amount, "approved_amount")

        with self._unit_of_work("approve_loan", loan_id):
            loan = self._load_loan_for_update(loan_id)
            check_transition(loan, LoanTransition.APPROVE)
            loan.approve(amount, actor_id, notes, self.clock())
            self._save_loan(loan)
            self._audit(AuditEventType.LOAN_APPROVED, "loan", loan.id, actor_id, {
                "approved_amount": amount,
                "installment_amount": loan.installment_amount,
                "start_date": loan.start_date,
                "next_due_date": loan.next_due_date
            })

        log_action(logger, "info", f"Loan {loan_id} approved for {format_money(amount)}",
                   user_id=actor_id, action="approve_loan", resource=loan_id)
        return loan

    def reject_loan(self, loan_id: str, actor_id: Optional[str], notes: Optional[str] = None) -> Loan:
        """
        Reject a pending loan

        Raises:
            NotFoundError: Unknown loan
            ConflictError: Loan is no longer pending
        """
        with self._unit_of_work("reject_loan", loan_id):
            loan = self._load_loan_for_update(loan_id)
            check_transition(loan, LoanTransition.REJECT)
            loan.reject(actor_id, notes, self.clock())
            self._save_loan(loan)
            self._audit(AuditEventType.LOAN_REJECTED, "loan", loan.id, actor_id, {"notes": notes})

        log_action(logger, "info", f"Loan {loan_id} rejected",
                   user_id=actor_id, action="reject_loan", resource=loan_id)
        return loan

    def apply_payment(
        self,
        loan_id: str,
        amount: Any,
        payment_date: Optional[Union[date, str]],
        payment_method: Union[str, PaymentMethod],
        actor_id: Optional[str],
        reference_number: Optional[str] = None,
        notes: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a completed payment and apply it to the loan

        The payment row and the loan update commit together. Overpayment is
        accepted and simply pays the loan off.

        Raises:
            ValidationError: amount <= 0, unknown method, missing reference
            NotFoundError: Unknown loan
            DomainError: Loan is closed or not yet approved
        """
        amount, paid_on, method, reference_number = self._validate_payment(
            amount, payment_date, payment_method, reference_number
        )

        with self._unit_of_work("apply_payment", loan_id):
            loan = self._load_loan_for_update(loan_id)
            check_transition(loan, LoanTransition.APPLY_PAYMENT)

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                client_id=loan.client_id,
                amount=amount,
                payment_date=paid_on,
                payment_method=method,
                status=PaymentStatus.COMPLETED,
                reference_number=reference_number,
                notes=notes,
                processed_by=actor_id
            )
            self._save_payment(payment)
            paid_off = self._apply_to_loan(loan, payment, actor_id)

        log_action(logger, "info",
                   f"Payment {payment.id} of {format_money(amount)} applied to loan {loan_id}, "
                   f"balance {format_money(loan.remaining_balance)}",
                   user_id=actor_id, action="apply_payment", resource=loan_id)
        if paid_off:
            self._cancel_after_payoff(loan_id, actor_id)
        return PaymentResult(payment=payment, loan=loan)

    def reverse_payment(self, payment_id: str, actor_id: Optional[str] = None) -> Loan:
        """
        Delete a payment and undo its effect on the loan

        Completed payments give their amount back to the balance (reopening
        a paid-off loan) and step the due date back one period. Pending,
        failed and cancelled payments are simply removed.

        Raises:
            NotFoundError: Unknown payment
        """
        loan_id = self._get_payment_or_raise(payment_id).loan_id

        with self._unit_of_work("reverse_payment", payment_id):
            loan = self._load_loan_for_update(loan_id)
            payment = self._load_payment_for_update(payment_id)

            self.storage.delete(self.payments_table, payment.id)
            if payment.status == PaymentStatus.COMPLETED:
                check_transition(loan, LoanTransition.REVERSE_PAYMENT)
                loan.restore_payment(self._completed_total(loan.id), self.clock())
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

            self._audit(AuditEventType.PAYMENT_REVERSED, "payment", payment.id, actor_id, {
                "loan_id": loan.id,
                "amount": payment.amount,
                "payment_status": payment.status,
                "remaining_balance": loan.remaining_balance
            })

        log_action(logger, "info",
                   f"Payment {payment_id} reversed, loan {loan_id} balance {format_money(loan.remaining_balance)}",
                   user_id=actor_id, action="reverse_payment", resource=loan_id)
        return loan

    def schedule_payment(
        self,
        loan_id: str,
        amount: Any,
        payment_date: Union[date, str],
        payment_method: Union[str, PaymentMethod],
        actor_id: Optional[str],
        reference_number: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Payment:
        """
        Record a pending payment for a future date; the balance is untouched
        until it is completed

        Raises:
            ValidationError: Bad input or a date that is not in the future
            NotFoundError: Unknown loan
            DomainError: Loan is not open
        """
        amount, paid_on, method, reference_number = self._validate_payment(
            amount, payment_date, payment_method, reference_number
        )
        if paid_on <= self.clock():
            raise ValidationError("Scheduled payments must be dated in the future",
                                  {"payment_date": paid_on.isoformat()})

        with self._unit_of_work("schedule_payment", loan_id):
            loan = self._load_loan_for_update(loan_id)
            check_transition(loan, LoanTransition.APPLY_PAYMENT)
            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                client_id=loan.client_id,
                amount=amount,
                payment_date=paid_on,
                payment_method=method,
                status=PaymentStatus.PENDING,
                reference_number=reference_number,
                notes=notes,
                processed_by=actor_id
            )
            self._save_payment(payment)
            self._audit(AuditEventType.PAYMENT_SCHEDULED, "payment", payment.id, actor_id, {
                "loan_id": loan.id,
                "amount": amount,
                "payment_date": paid_on
            })

        return payment

    def complete_scheduled_payment(self, payment_id: str, actor_id: Optional[str]) -> PaymentResult:
        """
        Turn a pending payment into a completed one and apply it

        Raises:
            NotFoundError: Unknown payment
            ConflictError: Payment is no longer pending
            DomainError: Loan is closed
        """
        loan_id = self._get_payment_or_raise(payment_id).loan_id

        with self._unit_of_work("complete_scheduled_payment", payment_id):
            loan = self._load_loan_for_update(loan_id)
            payment = self._load_payment_for_update(payment_id)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError(
                    f"Payment {payment_id} is {payment.status.value}, not pending",
                    {"payment_id": payment_id, "status": payment.status.value}
                )
            check_transition(loan, LoanTransition.APPLY_PAYMENT)

            payment.status = PaymentStatus.COMPLETED
            payment.processed_by = actor_id
            payment.updated_at = datetime.now(timezone.utc)
            self._save_payment(payment)
            paid_off = self._apply_to_loan(loan, payment, actor_id)

        log_action(logger, "info", f"Scheduled payment {payment_id} completed on loan {loan_id}",
                   user_id=actor_id, action="complete_scheduled_payment", resource=loan_id)
        if paid_off:
            self._cancel_after_payoff(loan_id, actor_id)
        return PaymentResult(payment=payment, loan=loan)

    def cancel_scheduled_payments(self, loan_id: str, actor_id: Optional[str] = None) -> int:
        """
        Mark every pending payment on the loan cancelled

        Returns:
            Number of payments cancelled
        """
        cancelled = []
        with self._unit_of_work("cancel_scheduled_payments", loan_id):
            self._load_loan_for_update(loan_id)
            pending = self.storage.find(self.payments_table, {
                "loan_id": loan_id, "status": PaymentStatus.PENDING.value
            })
            now = datetime.now(timezone.utc)
            for data in pending:
                payment = self._load_payment_for_update(data['id'])
                if payment.status != PaymentStatus.PENDING:
                    continue
                payment.status = PaymentStatus.CANCELLED
                payment.updated_at = now
                self._save_payment(payment)
                cancelled.append(payment.id)

            if cancelled:
                self._audit(AuditEventType.SCHEDULED_PAYMENTS_CANCELLED, "loan", loan_id, actor_id, {
                    "payment_ids": cancelled
                })

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} scheduled payment(s) on loan {loan_id}")
        return len(cancelled)

    def delete_loan(self, loan_id: str, actor_id: Optional[str] = None) -> None:
        """
        Delete a loan with no payment history

        Raises:
            NotFoundError: Unknown loan
            DomainError: Payments reference the loan
        """
        with self._unit_of_work("delete_loan", loan_id):
            loan = self._load_loan_for_update(loan_id)
            payments = self.storage.find(self.payments_table, {"loan_id": loan_id})
            if payments:
                raise DomainError(
                    f"Loan {loan_id} has {len(payments)} payment(s) and cannot be deleted",
                    {"loan_id": loan_id, "payment_count": len(payments)}
                )
            self.storage.delete(self.loans_table, loan_id)
            self._audit(AuditEventType.LOAN_DELETED, "loan", loan_id, actor_id, {
                "status": loan.status, "client_id": loan.client_id
            })

        log_action(logger, "info", f"Loan {loan_id} deleted",
                   user_id=actor_id, action="delete_loan", resource=loan_id)

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: Unknown loan
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def list_loans(self, client_id: Optional[str] = None,
                   status: Optional[Union[str, LoanStatus]] = None) -> List[Loan]:
        """
        Loans matching the filters, newest first

        The status filter compares the status as of today, so a loan past its
        due date is listed as overdue whatever its stored status says.
        """
        filters = {}
        if client_id is not None:
            filters["client_id"] = str(client_id)
        wanted = LoanStatus.parse(status) if status is not None else None
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        if wanted is not None:
            today = self.clock()
            loans = [loan for loan in loans if loan.effective_status(today) == wanted]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_payment(self, payment_id: str) -> Payment:
        return self._get_payment_or_raise(payment_id)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payment history for a loan, by payment date"""
        payments = [Payment.from_dict(data)
                    for data in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def is_overdue(self, loan_id: str) -> bool:
        return self.get_loan(loan_id).is_overdue(self.clock())

    def verify_balance(self, loan_id: str) -> BalanceCheck:
        """
        Compare the stored balance and schedule with the payment history

        Expected balance is max(0, basis - sum of completed payments).
        ``next_due_date`` must be set exactly when the loan is open.
        """
        loan = self.get_loan(loan_id)
        completed = [p for p in self.get_loan_payments(loan_id) if p.status == PaymentStatus.COMPLETED]
        completed_total = sum((p.amount for p in completed), ZERO)

        if loan.status.is_open:
            due_date_consistent = loan.next_due_date is not None
        else:
            due_date_consistent = loan.next_due_date is None

        check = BalanceCheck(
            loan_id=loan.id,
            stored_balance=loan.remaining_balance,
            expected_balance=max(ZERO, quantize_money(loan.basis - completed_total)),
            completed_total=completed_total,
            completed_count=len(completed),
            installments_paid=loan.installments_paid,
            due_date_consistent=due_date_consistent
        )
        if not check.consistent:
            logger.warning(
                f"Loan {loan_id} inconsistent: stored balance {check.stored_balance}, "
                f"expected {check.expected_balance}, due date ok={due_date_consistent}"
            )
        return check

    # Internals

    @contextmanager
    def _unit_of_work(self, action: str, entity_id: str):
        """atomic() that logs unexpected rollbacks"""
        try:
            with self.storage.atomic():
                yield
        except (ValidationError, NotFoundError, ConflictError, DomainError):
            raise
        except LendingError as e:
            logger.error(f"{action} on {entity_id} rolled back: {e}")
            raise
        except Exception:
            logger.exception(f"{action} on {entity_id} rolled back")
            raise

    def _validate_payment(self, amount, payment_date, payment_method, reference_number):
        amount = _require_positive_amount(amount, "amount")
        paid_on = _require_date(payment_date, "payment_date") if payment_date else self.clock()
        method = PaymentMethod.parse(payment_method)
        if reference_number is not None:
            reference_number = str(reference_number).strip() or None
        if method != PaymentMethod.CASH and not reference_number:
            raise ValidationError(
                f"reference_number is required for {method.value} payments",
                {"payment_method": method.value}
            )
        return amount, paid_on, method, reference_number

    def _apply_to_loan(self, loan: Loan, payment: Payment, actor_id: Optional[str]) -> bool:
        paid_off = loan.record_payment(payment.amount, self.clock())
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        self._audit(AuditEventType.PAYMENT_APPLIED, "loan", loan.id, actor_id, {
            "payment_id": payment.id,
            "amount": payment.amount,
            "remaining_balance": loan.remaining_balance,
            "next_due_date": loan.next_due_date
        })
        if paid_off:
            self._audit(AuditEventType.LOAN_PAID_OFF, "loan", loan.id, actor_id, {
                "final_payment_id": payment.id
            })
        return paid_off

    def _cancel_after_payoff(self, loan_id: str, actor_id: Optional[str]) -> None:
        """Best effort; the payoff is already committed"""
        try:
            self.cancel_scheduled_payments(loan_id, actor_id)
        except Exception as e:
            logger.warning(f"Could not cancel scheduled payments for paid-off loan {loan_id}: {e}")

    def _completed_total(self, loan_id: str) -> Decimal:
        payments = self.storage.find(self.payments_table, {
            "loan_id": loan_id, "status": PaymentStatus.COMPLETED.value
        })
        return sum((Decimal(p['amount']) for p in payments), ZERO)

    def _load_loan_for_update(self, loan_id: str) -> Loan:
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def _load_payment_for_update(self, payment_id: str) -> Payment:
        data = self.storage.load_for_update(self.payments_table, payment_id)
        if not data:
            raise NotFoundError("payment", payment_id)
        return Payment.from_dict(data)

    def _get_payment_or_raise(self, payment_id: str) -> Payment:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise NotFoundError("payment", payment_id)
        return Payment.from_dict(data)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               actor_id: Optional[str], metadata: Dict[str, Any]) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=actor_id
            )
