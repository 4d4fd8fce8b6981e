from datetime import date
from decimal import Decimal

import pytest

from labbilling.core.invoice_types import (
    analyze_line_item_mix,
    calculate_type_due_date,
    determine_invoice_type,
    initial_status_for_type,
    separate_line_items,
)
from labbilling.schemas.billing_schema import InvoiceLineItem, InvoiceStatus, InvoiceType


def item(cpt_code, price="100", units=1, description=None, **extra):
    return InvoiceLineItem(
        cpt_code=cpt_code,
        unit_price=Decimal(price),
        units=units,
        description=description,
        **extra,
    )


@pytest.mark.parametrize("code", ["99304", "99306", "99310", "99315", "99316", "99318"])
def test_snf_code_ranges(code):
    """Nursing facility visit codes are SNF."""
    assert determine_invoice_type(code) == InvoiceType.SNF


@pytest.mark.parametrize("code", ["99377", "99378", "G0182"])
def test_hospice_code_ranges(code):
    """Hospice supervision codes are Hospice."""
    assert determine_invoice_type(code) == InvoiceType.HOSPICE


@pytest.mark.parametrize("code", ["", "   ", "00000", "8?047", "99999", None])
def test_invalid_codes(code):
    """Blank, placeholder and unreadable codes are Invalids."""
    assert determine_invoice_type(code) == InvoiceType.INVALIDS


@pytest.mark.parametrize("code", ["80053", "85025", "99317", "99311", "G0183"])
def test_unmatched_codes_are_regular(code):
    """Anything outside the rule ranges is Regular."""
    assert determine_invoice_type(code) == InvoiceType.REGULAR


def test_description_keyword_wins_over_code():
    """A description keyword overrides the CPT range."""
    assert determine_invoice_type("80053", "Skilled Nursing panel") == InvoiceType.SNF
    assert determine_invoice_type("99306", "Palliative care draw") == InvoiceType.HOSPICE
    assert determine_invoice_type("80053", "Pending insurance review") == InvoiceType.INVALIDS


def test_keywords_follow_rule_order():
    """SNF keywords are checked before Invalids and Hospice keywords."""
    assert determine_invoice_type("80053", "snf hospice pending") == InvoiceType.SNF
    assert determine_invoice_type("80053", "hospice - unknown payer") == InvoiceType.INVALIDS


def test_separation_is_disjoint_and_reconciles():
    """Every item lands in exactly one group and subtotals add up."""
    items = [
        item("99306", "120"),
        item("80053", "45", units=2),
        item("99377", "200"),
        item("00000", "30"),
        item("85025", "15"),
    ]

    groups = separate_line_items(items)

    assert list(groups) == [InvoiceType.SNF, InvoiceType.REGULAR, InvoiceType.HOSPICE, InvoiceType.INVALIDS]
    assert sum(len(group.items) for group in groups.values()) == len(items)
    assert groups[InvoiceType.REGULAR].subtotal == Decimal("105")
    assert sum(group.subtotal for group in groups.values()) == sum(i.total_price for i in items)
    for invoice_type, group in groups.items():
        assert all(grouped.invoice_type == invoice_type for grouped in group.items)


def test_separation_does_not_mutate_input():
    """Grouped items are copies; the input keeps no assigned type."""
    original = item("99306")

    separate_line_items([original])

    assert original.invoice_type is None


def test_separation_respects_stored_type():
    """An item that already carries a type keeps it."""
    groups = separate_line_items([item("80053", invoice_type=InvoiceType.HOSPICE)])

    assert list(groups) == [InvoiceType.HOSPICE]


def test_separation_of_empty_list():
    """No items means no groups."""
    assert separate_line_items([]) == {}


@pytest.mark.parametrize(
    "invoice_type,days",
    [
        (InvoiceType.SNF, 30),
        (InvoiceType.HOSPICE, 45),
        (InvoiceType.INVALIDS, 60),
        (InvoiceType.REGULAR, 30),
    ],
)
def test_due_date_per_type(invoice_type, days):
    """Each invoice type has its own payment terms."""
    issued = date(2025, 1, 1)
    assert (calculate_type_due_date(invoice_type, issued) - issued).days == days


def test_initial_status_per_type():
    """Invalids stay in draft for review; other types go out immediately."""
    assert initial_status_for_type(InvoiceType.INVALIDS) == InvoiceStatus.DRAFT
    assert initial_status_for_type(InvoiceType.SNF) == InvoiceStatus.SENT
    assert initial_status_for_type(InvoiceType.REGULAR) == InvoiceStatus.SENT


def test_mix_analysis_empty_invoice():
    """An empty invoice is kept as is."""
    analysis = analyze_line_item_mix([])

    assert analysis.recommendation == "keep"
    assert analysis.reason == "Invoice has no line items"
    assert analysis.type_breakdown == {}


def test_mix_analysis_single_type():
    """One type needs no separation."""
    analysis = analyze_line_item_mix([item("80053"), item("85025")])

    assert analysis.recommendation == "keep"
    assert analysis.type_breakdown == {"Regular": 2}
    assert analysis.potential_delay_risk == "low"


def test_mix_analysis_high_invalid_share():
    """Invalid items above the threshold trigger a high-risk split."""
    analysis = analyze_line_item_mix([item("80053", "75"), item("00000", "25")])

    assert analysis.recommendation == "split"
    assert analysis.potential_delay_risk == "high"
    assert analysis.reason == "Invoice contains 25.0% invalid items that will delay payment"


def test_mix_analysis_many_types():
    """Three or more types are split on medium risk."""
    analysis = analyze_line_item_mix([item("80053"), item("99306"), item("99377")])

    assert analysis.recommendation == "split"
    assert analysis.potential_delay_risk == "medium"
    assert analysis.type_breakdown == {"Regular": 1, "SNF": 1, "Hospice": 1}


def test_mix_analysis_two_types_low_risk():
    """Two types without many invalids are kept together."""
    analysis = analyze_line_item_mix([item("80053"), item("99306")])

    assert analysis.recommendation == "keep"
    assert analysis.reason == "Mixed types but low risk of payment delay"


def test_mix_analysis_small_invalid_share_is_kept():
    """A small invalid share does not force a split."""
    analysis = analyze_line_item_mix([item("80053", "950"), item("00000", "50")])

    assert analysis.recommendation == "keep"
    assert analysis.potential_delay_risk == "low"


def test_mix_analysis_reclassifies_stored_types():
    """Analysis looks at the codes, not at a type written on the item earlier."""
    analysis = analyze_line_item_mix(
        [item("80053", invoice_type=InvoiceType.SNF), item("85025", invoice_type=InvoiceType.HOSPICE)]
    )

    assert analysis.recommendation == "keep"
    assert analysis.type_breakdown == {"Regular": 2}
