import itertools

import pytest

from labbilling.core.backend_client import BackendError
from labbilling.core.errors import BackendServiceError
from labbilling.services.invoice_numbering import (
    COUNTER_STATUS_RPC,
    NEXT_NUMBER_RPC,
    RESET_COUNTER_RPC,
    generate_invoice_number,
    get_invoice_counter_status,
    reset_invoice_counter,
)


def test_generate_passes_exact_params(backend):
    """The procedure receives the laboratory id and a null prefix by default."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = "INV-2025-000001"

    number = generate_invoice_number(backend, "lab-1")

    assert number == "INV-2025-000001"
    assert backend.rpc_calls == [(NEXT_NUMBER_RPC, {"p_laboratory_id": "lab-1", "p_prefix": None})]


def test_generate_passes_custom_prefix(backend):
    """A custom prefix is forwarded unchanged."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = "LAB-2025-000009"

    assert generate_invoice_number(backend, "lab-1", prefix="LAB") == "LAB-2025-000009"
    assert backend.rpc_calls[0][1]["p_prefix"] == "LAB"


def test_sequential_numbers_never_collide(backend):
    """Each call returns the backend's next value."""
    counter = itertools.count(1)
    backend.rpc_handlers[NEXT_NUMBER_RPC] = lambda params: f"INV-2025-{next(counter):06d}"

    numbers = [generate_invoice_number(backend, "lab-1") for _ in range(25)]

    assert len(set(numbers)) == 25
    assert numbers[0] == "INV-2025-000001"
    assert numbers[-1] == "INV-2025-000025"


def test_generate_requires_laboratory(backend):
    """No laboratory, no number."""
    with pytest.raises(ValueError, match="laboratory_id is required"):
        generate_invoice_number(backend, "")
    assert backend.rpc_calls == []


def test_generate_empty_result_is_an_error(backend):
    """An empty procedure result is reported as a failure."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = None

    with pytest.raises(BackendServiceError, match="Failed to generate invoice number"):
        generate_invoice_number(backend, "lab-1")


def test_generate_is_not_retried(backend):
    """A failing call is attempted exactly once."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = "INV-2025-000001"
    backend.fail_on(f"rpc/{NEXT_NUMBER_RPC}", error=BackendError("connection reset by peer"))

    with pytest.raises(BackendServiceError) as excinfo:
        generate_invoice_number(backend, "lab-1")

    assert excinfo.value.category.value == "network"
    assert len(backend.requests_to(f"rpc/{NEXT_NUMBER_RPC}")) == 1


def test_counter_status_from_backend(backend):
    """Counter rows are returned as reported."""
    backend.rpc_handlers[COUNTER_STATUS_RPC] = [
        {
            "prefix": "INV",
            "year": 2025,
            "last_value": 41,
            "next_value": 42,
            "format_pattern": "{prefix}-{year}-{number:06d}",
            "sample_number": "INV-2025-000042",
        }
    ]

    status = get_invoice_counter_status(backend, "lab-1", 2025)

    assert status.next_value == 42
    assert status.sample_number == "INV-2025-000042"
    assert backend.rpc_calls == [(COUNTER_STATUS_RPC, {"p_laboratory_id": "lab-1", "p_year": 2025})]


def test_counter_status_default_preview(backend):
    """A laboratory without a counter gets the default preview."""
    backend.rpc_handlers[COUNTER_STATUS_RPC] = []

    status = get_invoice_counter_status(backend, "lab-1", 2030)

    assert status.prefix == "INV"
    assert status.last_value == 0
    assert status.next_value == 1
    assert status.sample_number == "INV-2030-000001"


def test_reset_counter(backend):
    """Resetting sends the new value to the backend."""
    backend.rpc_handlers[RESET_COUNTER_RPC] = None

    reset_invoice_counter(backend, "lab-1", 2025, new_value=10)

    assert backend.rpc_calls == [
        (RESET_COUNTER_RPC, {"p_laboratory_id": "lab-1", "p_year": 2025, "p_new_value": 10})
    ]


def test_reset_counter_rejects_negative(backend):
    """Counters cannot go below zero."""
    with pytest.raises(ValueError, match="new_value cannot be negative"):
        reset_invoice_counter(backend, "lab-1", new_value=-1)
