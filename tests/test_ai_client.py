import io
import json
from datetime import date

import pytest

import ai_client
from ai_client import TextServiceClient, historical_payload
from models import Transaction, TransactionType


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture()
def configured_client():
    client = TextServiceClient()
    client.settings.ai_base_url = "http://ai.local"
    yield client
    client.settings.ai_base_url = ""


def _fake_urlopen(payload, seen):
    def fake(req, timeout):
        seen.append((req.full_url, json.loads(req.data.decode("utf-8")), timeout))
        return _Response(json.dumps(payload).encode("utf-8"))

    return fake


def test_scan_receipt_parses_amount_to_cents(monkeypatch, configured_client):
    seen = []
    monkeypatch.setattr(
        ai_client,
        "urlopen",
        _fake_urlopen({"date": "2024-03-02", "amount": 12.345, "description": " Cafe "}, seen),
    )
    scan = configured_client.scan_receipt("data:image/png;base64,AA")
    assert scan.date == date(2024, 3, 2)
    assert scan.amount_cents == 1235
    assert scan.description == "Cafe"
    assert seen[0][0] == "http://ai.local/scan-receipt"
    assert seen[0][1] == {"receiptImage": "data:image/png;base64,AA"}


def test_malformed_response_is_rejected(monkeypatch, configured_client):
    monkeypatch.setattr(ai_client, "urlopen", _fake_urlopen({"amount": "lots"}, []))
    with pytest.raises(RuntimeError, match="Unexpected"):
        configured_client.scan_receipt("x")


@pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_amount_is_rejected(monkeypatch, configured_client, amount):
    payload = {"date": "2024-03-02", "amount": amount, "description": "Cafe"}
    monkeypatch.setattr(ai_client, "urlopen", _fake_urlopen(payload, []))
    with pytest.raises(RuntimeError, match="Unexpected"):
        configured_client.scan_receipt("x")


def test_projection_posts_history(monkeypatch, configured_client):
    seen = []
    monkeypatch.setattr(ai_client, "urlopen", _fake_urlopen({"projection": "Steady"}, seen))
    history = historical_payload(
        [
            Transaction(
                date=date(2024, 1, 1),
                description="Pay",
                type=TransactionType.income,
                amount_cents=250050,
                category="Salary",
            )
        ]
    )
    assert configured_client.projection(history) == "Steady"
    sent = json.loads(seen[0][1]["historicalData"])
    assert sent == [{"date": "2024-01-01", "amount": 2500.5, "type": "income", "category": "Salary"}]


def test_unconfigured_client_refuses():
    client = TextServiceClient()
    client.settings.ai_base_url = ""
    with pytest.raises(RuntimeError, match="not configured"):
        client.projection("[]")
