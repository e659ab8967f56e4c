from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.errors import MalformedEvent
from app.events import OrderSubmitted, is_pending, pending_marker


def test_to_fields_is_flat_strings_and_skips_empty_values():
    event = OrderSubmitted(
        order_id="ord-1",
        amount=Decimal("100.0000"),
        submitted_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        request_ip="10.0.0.1",
    )

    fields = event.to_fields()

    assert fields == {
        "order_id": "ord-1",
        "amount": "100.0000",
        "created_at": "2026-01-02T03:04:05+00:00",
        "request_ip": "10.0.0.1",
    }
    assert all(isinstance(v, str) for v in fields.values())


def test_from_fields_parses_amount_and_optional_attributes():
    event = OrderSubmitted.from_fields({
        "order_id": "ord-2",
        "amount": "42.5",
        "created_at": "2026-01-02T03:04:05+00:00",
        "customer_id": "cust-9",
        "description": "two widgets",
    })

    assert event.amount == Decimal("42.5000")
    assert event.customer_id == "cust-9"
    assert event.description == "two widgets"
    assert event.submitted_at.year == 2026


def test_from_fields_defaults_submission_time_when_unparsable():
    event = OrderSubmitted.from_fields({"order_id": "ord-3", "amount": "1", "created_at": "yesterday"})

    assert event.submitted_at.tzinfo is not None


@pytest.mark.parametrize(
    "fields",
    [
        {"amount": "10"},
        {"order_id": "ord-1"},
        {"order_id": "", "amount": "10"},
        {"order_id": "ord-1", "amount": "abc"},
        {"order_id": "ord-1", "amount": "NaN"},
        {"order_id": "ord-1", "amount": "Infinity"},
        {"order_id": "ord-1", "amount": "0"},
        {"order_id": "ord-1", "amount": "-5"},
        {"order_id": "ord-1", "amount": "1e12"},
        {"order_id": "ord-1", "amount": "1000000"},
        {"order_id": "ord-1", "amount": "0.00001"},
        {"order_id": "x" * 150, "amount": "10"},
        {"order_id": "bad id!", "amount": "10"},
    ],
)
def test_from_fields_rejects_malformed_entries(fields):
    with pytest.raises(MalformedEvent):
        OrderSubmitted.from_fields(fields)


def test_pending_marker_is_recognised():
    event = OrderSubmitted(
        order_id="ord-1",
        amount=Decimal("1.0000"),
        submitted_at=datetime.now(timezone.utc),
    )

    marker = pending_marker(event)

    assert marker["status"] == "processing"
    assert is_pending(marker)
    assert not is_pending({"order_id": "ord-1", "status": "completed"})
