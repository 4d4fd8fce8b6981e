"""
Payment arithmetic used when posting and reconciling payments.

Pure functions only; the payment service does the reads and writes.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from labbilling.core.invoice_calculations import ZERO, to_money
from labbilling.schemas.billing_schema import InvoiceStatus


MAX_PAYMENT_AMOUNT = Decimal("999999999.99")


@dataclass
class PlannedAllocation:
    invoice_id: str
    amount: Decimal
    new_paid_amount: Decimal
    new_status: InvoiceStatus


def _amount_text(amount: Decimal) -> str:
    # 100.00 and 100 produce the same key
    normalized = amount.normalize()
    return format(normalized, "f")


def generate_idempotency_key(
    invoice_id: str,
    amount: Decimal,
    payment_method: str,
    reference_number: Optional[str] = None,
) -> str:
    """Deterministic key identifying one payment attempt on one invoice."""
    raw = f"{invoice_id}_{_amount_text(amount)}_{payment_method}_{reference_number or 'none'}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def invoice_status_after_payment(total_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    if paid_amount >= total_amount:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIAL


def plan_allocation(
    payment_amount: Decimal,
    total_amount: Decimal,
    paid_amount: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Split a payment into the part applied to an invoice and the overpayment.

    Returns:
        ``(allocated, credit)``; ``credit`` is zero unless the payment is
        larger than the remaining balance.

    Raises:
        ValueError: If the payment amount is not positive.
    """
    if payment_amount <= ZERO:
        raise ValueError("Payment amount must be positive")
    remaining = max(ZERO, total_amount - paid_amount)
    allocated = min(payment_amount, remaining)
    return allocated, payment_amount - allocated


def plan_multi_invoice_allocations(
    payment_amount: Decimal,
    invoices: Sequence[Tuple[str, Decimal, Decimal]],
) -> Tuple[List[PlannedAllocation], Decimal]:
    """
    Spread one payment across invoices in the order given.

    Args:
        payment_amount: Amount received.
        invoices: ``(invoice_id, total_amount, paid_amount)`` tuples.

    Returns:
        The planned allocations (invoices with nothing left to pay are
        skipped) and the unapplied remainder.
    """
    if payment_amount <= ZERO:
        raise ValueError("Payment amount must be positive")

    remaining = payment_amount
    planned: List[PlannedAllocation] = []
    for invoice_id, total_amount, paid_amount in invoices:
        if remaining <= ZERO:
            break
        balance = total_amount - paid_amount
        if balance <= ZERO:
            continue
        amount = min(remaining, balance)
        new_paid = paid_amount + amount
        planned.append(
            PlannedAllocation(
                invoice_id=invoice_id,
                amount=amount,
                new_paid_amount=new_paid,
                new_status=invoice_status_after_payment(total_amount, new_paid),
            )
        )
        remaining -= amount
    return planned, remaining


def allocations_balance(
    payment_amount: Decimal,
    allocated_amounts: Iterable[Decimal],
    credit_amount: Decimal = ZERO,
) -> bool:
    """True when allocations plus credit account for the whole payment."""
    allocated = sum(allocated_amounts, ZERO)
    return to_money(allocated + credit_amount) == to_money(payment_amount)


def validate_payment_amount(amount: Decimal) -> bool:
    """A postable amount is non-negative, bounded and has at most two decimals."""
    if amount.is_nan() or amount < ZERO or amount > MAX_PAYMENT_AMOUNT:
        return False
    exponent = amount.normalize().as_tuple().exponent
    return not isinstance(exponent, int) or exponent >= -2


__all__ = [
    "MAX_PAYMENT_AMOUNT",
    "PlannedAllocation",
    "allocations_balance",
    "generate_idempotency_key",
    "invoice_status_after_payment",
    "plan_allocation",
    "plan_multi_invoice_allocations",
    "validate_payment_amount",
]
