"""
Invoice arithmetic: line and invoice totals, insurance coverage, due dates
and late fees.

All money is Decimal and rounded half-up to cents at the points where a
figure is reported.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Union

from labbilling.schemas.billing_schema import InvoiceLineItem, InvoiceTotals


CENT = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")

DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_LATE_FEE_RATE = Decimal("0.015")
LATE_FEE_PERIOD_DAYS = 30

# CPT (five digits) or HCPCS Level II (letter + four digits), optional modifier
_CPT_CODE_RE = re.compile(r"^([0-9]{5}|[A-Z][0-9]{4})(-[0-9A-Z]{2})?$")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Round a number half-up to cents."""
    return _to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _check_fraction(value: Decimal, label: str) -> None:
    if value < ZERO or value > ONE:
        raise ValueError(f"{label} must be between 0 and 1")


@dataclass
class ChargeLine:
    """A priced charge with optional discount and tax fractions."""
    quantity: Decimal
    unit_price: Decimal
    description: str = ""
    cpt_code: Optional[str] = None
    discount: Decimal = ZERO
    tax: Decimal = ZERO


@dataclass
class CalculatedLine:
    line: ChargeLine
    line_total: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    final_amount: Decimal


@dataclass
class InvoiceCalculation:
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    total: Decimal
    lines: List[CalculatedLine]


@dataclass
class InsuranceAdjustment:
    coverage_percent: Decimal
    deductible: Decimal = ZERO
    copay: Decimal = ZERO
    max_benefit: Optional[Decimal] = None


@dataclass
class CoverageResult:
    covered_amount: Decimal
    patient_responsibility: Decimal
    deductible_applied: Decimal
    copay_amount: Decimal


@dataclass
class PatientResponsibility:
    primary_coverage: Decimal
    secondary_coverage: Decimal
    total_coverage: Decimal
    patient_responsibility: Decimal


def calculate_line_item(line: ChargeLine) -> CalculatedLine:
    """
    Price one charge line.

    Discount is applied to quantity x unit price first; tax is charged on
    the discounted amount.

    Raises:
        ValueError: If quantity or price is negative, or discount/tax are
            outside [0, 1].
    """
    quantity = _to_decimal(line.quantity)
    unit_price = _to_decimal(line.unit_price)
    if quantity < ZERO or unit_price < ZERO:
        raise ValueError("Quantity and unit price must be non-negative")

    discount = _to_decimal(line.discount or ZERO)
    tax = _to_decimal(line.tax or ZERO)
    _check_fraction(discount, "Discount")
    _check_fraction(tax, "Tax rate")

    base_amount = quantity * unit_price
    discount_amount = base_amount * discount
    after_discount = base_amount - discount_amount
    tax_amount = after_discount * tax

    return CalculatedLine(
        line=line,
        line_total=to_money(base_amount),
        discount_amount=to_money(discount_amount),
        tax_amount=to_money(tax_amount),
        final_amount=to_money(after_discount + tax_amount),
    )


def calculate_invoice_total(lines: Sequence[ChargeLine]) -> InvoiceCalculation:
    """Aggregate the rounded per-line figures of an invoice."""
    if lines is None:
        raise ValueError("Line items must be a list")

    calculated = [calculate_line_item(line) for line in lines]
    return InvoiceCalculation(
        subtotal=to_money(sum((c.line_total for c in calculated), ZERO)),
        total_discount=to_money(sum((c.discount_amount for c in calculated), ZERO)),
        total_tax=to_money(sum((c.tax_amount for c in calculated), ZERO)),
        total=to_money(sum((c.final_amount for c in calculated), ZERO)),
        lines=calculated,
    )


def calculate_totals(
    items: Iterable[InvoiceLineItem],
    tax_rate: Number = ZERO,
    discount_amount: Optional[Number] = None,
    discount_percentage: Optional[Number] = None,
) -> InvoiceTotals:
    """
    Compute invoice-level totals for a list of line items.

    A fixed ``discount_amount`` takes precedence over
    ``discount_percentage``. Tax is charged on the discounted subtotal.

    Args:
        items: Line items; each contributes units x unit price.
        tax_rate: Tax fraction in [0, 1].
        discount_amount: Fixed discount, capped at the subtotal.
        discount_percentage: Discount fraction in [0, 1].

    Returns:
        InvoiceTotals with subtotal, discount, tax and total.
    """
    rate = _to_decimal(tax_rate)
    _check_fraction(rate, "Tax rate")

    subtotal = sum((item.total_price for item in items), ZERO)

    if discount_amount is not None:
        discount = _to_decimal(discount_amount)
        if discount < ZERO:
            raise ValueError("Discount amount cannot be negative")
        discount = min(discount, subtotal)
    elif discount_percentage is not None:
        percentage = _to_decimal(discount_percentage)
        _check_fraction(percentage, "Discount percentage")
        discount = subtotal * percentage
    else:
        discount = ZERO

    tax_amount = (subtotal - discount) * rate
    return InvoiceTotals(
        subtotal=to_money(subtotal),
        discount_amount=to_money(discount),
        tax_amount=to_money(tax_amount),
        total_amount=to_money(subtotal - discount + tax_amount),
    )


def apply_insurance_coverage(invoice_total: Number, insurance: InsuranceAdjustment) -> CoverageResult:
    """
    Split an invoice total into the insurer's share and the patient's.

    The deductible comes off first, coverage applies to the rest and is
    capped by ``max_benefit``; the copay is added to the patient's share.
    """
    total = _to_decimal(invoice_total)
    if total < ZERO:
        raise ValueError("Invoice total cannot be negative")
    coverage = _to_decimal(insurance.coverage_percent)
    _check_fraction(coverage, "Coverage percent")

    deductible_applied = min(_to_decimal(insurance.deductible), total)
    covered = (total - deductible_applied) * coverage
    if insurance.max_benefit is not None:
        covered = min(covered, _to_decimal(insurance.max_benefit))

    copay = _to_decimal(insurance.copay)
    patient_share = max(ZERO, total - covered + copay)
    return CoverageResult(
        covered_amount=to_money(covered),
        patient_responsibility=to_money(patient_share),
        deductible_applied=to_money(deductible_applied),
        copay_amount=to_money(copay),
    )


def calculate_patient_responsibility(
    invoice_total: Number,
    primary: Optional[InsuranceAdjustment] = None,
    secondary: Optional[InsuranceAdjustment] = None,
) -> PatientResponsibility:
    """Coordinate benefits: secondary coverage applies to what primary leaves."""
    total = _to_decimal(invoice_total)
    if total < ZERO:
        raise ValueError("Invoice total cannot be negative")

    primary_coverage = ZERO
    secondary_coverage = ZERO
    remaining = total

    if primary is not None:
        primary_coverage = apply_insurance_coverage(total, primary).covered_amount
        remaining = total - primary_coverage

    if secondary is not None and remaining > ZERO:
        secondary_coverage = apply_insurance_coverage(remaining, secondary).covered_amount

    total_coverage = primary_coverage + secondary_coverage
    return PatientResponsibility(
        primary_coverage=to_money(primary_coverage),
        secondary_coverage=to_money(secondary_coverage),
        total_coverage=to_money(total_coverage),
        patient_responsibility=to_money(max(ZERO, total - total_coverage)),
    )


def validate_cpt_code(code: Optional[str]) -> bool:
    """CPT or HCPCS code with an optional two-character modifier."""
    if not code or not isinstance(code, str):
        return False
    return bool(_CPT_CODE_RE.match(code))


def calculate_due_date(invoice_date: date, terms: int = DEFAULT_PAYMENT_TERMS_DAYS) -> date:
    if not isinstance(invoice_date, date):
        raise ValueError("Invalid invoice date")
    if terms < 0:
        raise ValueError("Payment terms cannot be negative")
    return invoice_date + timedelta(days=terms)


def is_invoice_overdue(due_date: date, current_date: Optional[date] = None) -> bool:
    if not isinstance(due_date, date):
        raise ValueError("Invalid due date")
    return (current_date or date.today()) > due_date


def calculate_late_fee(
    invoice_amount: Number,
    days_overdue: int,
    late_fee_rate: Number = DEFAULT_LATE_FEE_RATE,
    max_late_fee: Optional[Number] = None,
) -> Decimal:
    """
    Simple (non-compounding) late fee: ``rate`` per started 30-day period.

    Raises:
        ValueError: On negative amount, days or rate.
    """
    amount = _to_decimal(invoice_amount)
    rate = _to_decimal(late_fee_rate)
    if amount < ZERO or days_overdue < 0 or rate < ZERO:
        raise ValueError("Invalid input for late fee calculation")
    if days_overdue == 0:
        return to_money(ZERO)

    periods = math.ceil(days_overdue / LATE_FEE_PERIOD_DAYS)
    fee = amount * rate * periods
    if max_late_fee is not None and _to_decimal(max_late_fee) >= ZERO:
        fee = min(fee, _to_decimal(max_late_fee))
    return to_money(fee)


def format_invoice_number(sequence: int, prefix: str = "INV", pad_length: int = 6) -> str:
    """Format ``sequence`` as ``<prefix>-<zero padded number>``."""
    if sequence < 0:
        raise ValueError("Sequence number cannot be negative")
    if pad_length < 1:
        raise ValueError("Pad length must be at least 1")
    return f"{prefix}-{str(sequence).zfill(pad_length)}"


def validate_invoice_data(client_id: Optional[str], lines: Sequence[ChargeLine]) -> List[str]:
    """
    Check invoice input before it is saved.

    Returns:
        A list of error messages; empty when the data is valid.
    """
    errors: List[str] = []
    if not client_id:
        errors.append("Client ID is required")
    if not lines:
        errors.append("At least one line item is required")

    for index, line in enumerate(lines or [], start=1):
        if not (line.description or "").strip() and not line.cpt_code:
            errors.append(f"Line item {index}: Line item description or CPT code is required")
        elif line.cpt_code and not validate_cpt_code(line.cpt_code):
            errors.append(f"Line item {index}: Invalid CPT code {line.cpt_code}")
        if _to_decimal(line.quantity) <= ZERO:
            errors.append(f"Line item {index}: Quantity must be positive")
        if _to_decimal(line.unit_price) <= ZERO:
            errors.append(f"Line item {index}: Unit price must be positive")
    return errors


__all__ = [
    "CalculatedLine",
    "ChargeLine",
    "CoverageResult",
    "InsuranceAdjustment",
    "InvoiceCalculation",
    "PatientResponsibility",
    "apply_insurance_coverage",
    "calculate_due_date",
    "calculate_invoice_total",
    "calculate_late_fee",
    "calculate_line_item",
    "calculate_patient_responsibility",
    "calculate_totals",
    "format_invoice_number",
    "is_invoice_overdue",
    "to_money",
    "validate_cpt_code",
    "validate_invoice_data",
]
