"""
Invoice type classification rules.

Line items are bucketed into SNF, Hospice, Invalids or Regular invoices
so that each bucket can be sent on its own payment timeline. Rules are
static: a keyword hit in the description wins over the CPT code range.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Final, Iterable, List, Optional, Tuple

from labbilling.schemas.billing_schema import (
    InvoiceLineItem,
    InvoiceMixAnalysis,
    InvoiceStatus,
    InvoiceType,
    SeparatedGroup,
)


@dataclass(frozen=True)
class InvoiceTypeRule:
    invoice_type: InvoiceType
    cpt_ranges: Tuple[Tuple[str, str], ...]
    keywords: Tuple[str, ...]


# Order matters: first matching rule wins.
INVOICE_TYPE_RULES: Final[Tuple[InvoiceTypeRule, ...]] = (
    InvoiceTypeRule(
        InvoiceType.SNF,
        cpt_ranges=(("99304", "99310"), ("99315", "99316"), ("99318", "99318")),
        keywords=("nursing", "snf", "skilled"),
    ),
    InvoiceTypeRule(
        InvoiceType.INVALIDS,
        cpt_ranges=(("99999", "99999"),),
        keywords=("invalid", "review", "pending", "unknown"),
    ),
    InvoiceTypeRule(
        InvoiceType.HOSPICE,
        cpt_ranges=(("99377", "99378"), ("G0182", "G0182")),
        keywords=("hospice", "palliative", "end-of-life"),
    ),
)

DUE_DAYS_BY_TYPE: Final[Dict[InvoiceType, int]] = {
    InvoiceType.SNF: 30,
    InvoiceType.HOSPICE: 45,
    InvoiceType.INVALIDS: 60,
    InvoiceType.REGULAR: 30,
}

# Share of invoice value above which invalid items are worth splitting out.
INVALID_VALUE_SPLIT_THRESHOLD: Final[Decimal] = Decimal("0.10")


def determine_invoice_type(cpt_code: Optional[str], description: Optional[str] = None) -> InvoiceType:
    """
    Classify a line item by its description keywords, then its CPT code.

    Args:
        cpt_code: CPT/HCPCS code of the line item.
        description: Optional free-text description.

    Returns:
        The matching InvoiceType. Codes that are blank, ``"00000"`` or
        contain ``"?"`` are Invalids; anything unmatched is Regular.
    """
    code = (cpt_code or "").strip()

    if description:
        lowered = description.lower()
        for rule in INVOICE_TYPE_RULES:
            if any(keyword in lowered for keyword in rule.keywords):
                return rule.invoice_type

    for rule in INVOICE_TYPE_RULES:
        for start, end in rule.cpt_ranges:
            if start <= code <= end:
                return rule.invoice_type

    if not code or code == "00000" or "?" in code:
        return InvoiceType.INVALIDS

    return InvoiceType.REGULAR


def classify_line_item(item: InvoiceLineItem) -> InvoiceType:
    """Return the item's stored type, or classify it when it has none."""
    if item.invoice_type is not None:
        return item.invoice_type
    return determine_invoice_type(item.cpt_code, item.description)


def separate_line_items(items: Iterable[InvoiceLineItem]) -> Dict[InvoiceType, SeparatedGroup]:
    """
    Group line items by invoice type.

    Input items are never mutated; each grouped item is a copy carrying
    its assigned type. Groups are returned in first-seen order.
    """
    groups: Dict[InvoiceType, SeparatedGroup] = {}
    for item in items:
        invoice_type = classify_line_item(item)
        group = groups.get(invoice_type)
        if group is None:
            group = groups[invoice_type] = SeparatedGroup(type=invoice_type)
        group.items.append(item.model_copy(update={"invoice_type": invoice_type}))
        group.subtotal += item.total_price
    return groups


def calculate_type_due_date(invoice_type: InvoiceType, issue_date: Optional[date] = None) -> date:
    base = issue_date or date.today()
    return base + timedelta(days=DUE_DAYS_BY_TYPE.get(invoice_type, 30))


def initial_status_for_type(invoice_type: InvoiceType) -> InvoiceStatus:
    # Invalids need manual review before they go out.
    if invoice_type is InvoiceType.INVALIDS:
        return InvoiceStatus.DRAFT
    return InvoiceStatus.SENT


def analyze_line_item_mix(items: List[InvoiceLineItem]) -> InvoiceMixAnalysis:
    """
    Recommend whether a mixed invoice should be split by type.

    Every item is classified from its CPT code and description; a type
    stored on the item is ignored.

    Returns:
        InvoiceMixAnalysis with a per-type item count, a ``keep``/``split``
        recommendation, the reason and the payment delay risk.
    """
    if not items:
        return InvoiceMixAnalysis(
            recommendation="keep",
            reason="Invoice has no line items",
            type_breakdown={},
            potential_delay_risk="low",
        )

    breakdown: Dict[str, int] = {}
    total_value = Decimal("0")
    invalid_value = Decimal("0")
    for item in items:
        invoice_type = determine_invoice_type(item.cpt_code, item.description)
        breakdown[invoice_type.value] = breakdown.get(invoice_type.value, 0) + 1
        total_value += item.total_price
        if invoice_type is InvoiceType.INVALIDS:
            invalid_value += item.total_price

    if len(breakdown) == 1:
        return InvoiceMixAnalysis(
            recommendation="keep",
            reason="Invoice contains only one type - no separation needed",
            type_breakdown=breakdown,
            potential_delay_risk="low",
        )

    invalid_share = invalid_value / total_value if total_value > 0 else Decimal("0")
    if invalid_share > INVALID_VALUE_SPLIT_THRESHOLD:
        percentage = (invalid_share * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return InvoiceMixAnalysis(
            recommendation="split",
            reason=f"Invoice contains {percentage}% invalid items that will delay payment",
            type_breakdown=breakdown,
            potential_delay_risk="high",
        )

    if len(breakdown) > 2:
        return InvoiceMixAnalysis(
            recommendation="split",
            reason="Invoice contains multiple types that may have different payment timelines",
            type_breakdown=breakdown,
            potential_delay_risk="medium",
        )

    return InvoiceMixAnalysis(
        recommendation="keep",
        reason="Mixed types but low risk of payment delay",
        type_breakdown=breakdown,
        potential_delay_risk="low",
    )


__all__ = [
    "DUE_DAYS_BY_TYPE",
    "INVALID_VALUE_SPLIT_THRESHOLD",
    "INVOICE_TYPE_RULES",
    "InvoiceTypeRule",
    "analyze_line_item_mix",
    "calculate_type_due_date",
    "classify_line_item",
    "determine_invoice_type",
    "initial_status_for_type",
    "separate_line_items",
]
