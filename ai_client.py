from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings
from models import Transaction


@dataclass(frozen=True)
class ReceiptScan:
    date: date
    amount_cents: int
    description: str


def historical_payload(transactions: Sequence[Transaction]) -> str:
    return json.dumps(
        [
            {
                "date": txn.date.isoformat(),
                "amount": txn.amount_cents / 100,
                "type": txn.type.value,
                "category": txn.category,
            }
            for txn in transactions
        ]
    )


class TextServiceClient:
    """Thin client for the projection and receipt-scanning text services.

    Responses are untrusted; they are only checked for the expected shape.
    """

    def __init__(self) -> None:
        self.settings = get_settings()

    def _post(self, path: str, body: dict[str, object]) -> dict[str, object]:
        base_url = self.settings.ai_base_url
        if not base_url:
            raise RuntimeError("AI services are not configured")
        req = Request(
            f"{base_url}/{path}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.ai_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Failed to call AI service {path}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError("Unexpected AI service response")
        return payload

    def projection(self, historical_data: str) -> str:
        payload = self._post("projection", {"historicalData": historical_data})
        projection = payload.get("projection")
        if not isinstance(projection, str):
            raise RuntimeError("Unexpected AI service response")
        return projection

    def scan_receipt(self, receipt_image: str) -> ReceiptScan:
        payload = self._post("scan-receipt", {"receiptImage": receipt_image})
        try:
            scanned_on = date.fromisoformat(str(payload["date"]))
            amount = Decimal(str(payload["amount"]))
            description = str(payload["description"]).strip()
            if not amount.is_finite():
                raise ValueError("amount is not finite")
            amount_cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise RuntimeError("Unexpected AI service response") from exc
        if amount_cents < 0:
            raise RuntimeError("Unexpected AI service response")
        return ReceiptScan(date=scanned_on, amount_cents=amount_cents, description=description)
