import io
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from errors import ExternalServiceFailure
from gemini import GeminiClient, _response_text, extract_json_array, extract_json_object
from receipts import ReceiptScanner, normalize_category, parse_receipt_reply

NOW = datetime(2025, 3, 20, 8, tzinfo=timezone.utc)


class FakeClient:
    def __init__(self, reply=None, error=None) -> None:
        self.reply = reply
        self.error = error
        self.calls = 0

    def generate(self, prompt, *, image=None, mime_type="image/jpeg", **kwargs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


def _scanner(client, **kwargs) -> ReceiptScanner:
    return ReceiptScanner(client, clock=lambda: NOW, **kwargs)


def test_scan_extracts_fields_from_fenced_json():
    reply = (
        "Here is what I found:\n```json\n"
        '{"amount": 42.5, "date": "2025-03-18T13:45:00Z", '
        '"description": "Weekly shop", "merchantName": "Corner Market", '
        '"category": "Groceries"}\n```'
    )
    receipt = _scanner(FakeClient(reply)).scan(b"image-bytes")

    assert receipt.amount == Decimal("42.50")
    assert receipt.date == datetime(2025, 3, 18, 13, 45, tzinfo=timezone.utc)
    assert receipt.description == "Weekly shop"
    assert receipt.merchant_name == "Corner Market"
    assert receipt.category == "groceries"


def test_scan_fills_defaults_for_missing_fields():
    receipt = _scanner(FakeClient('{"amount": "12.30"}')).scan(b"img")

    assert receipt.amount == Decimal("12.30")
    assert receipt.date == NOW
    assert receipt.description == "Unknown purchase"
    assert receipt.merchant_name == "Unknown"
    assert receipt.category == "other-expense"


def test_scan_returns_fallback_for_unparseable_reply():
    receipt = _scanner(FakeClient("I could not read this receipt.")).scan(b"img")

    assert receipt.amount == Decimal("0")
    assert receipt.merchant_name == "Unknown"
    assert receipt.category == "other-expense"
    assert receipt.description == "Receipt scan failed (parsing error)"


@pytest.mark.parametrize(
    "error", [TimeoutError("deadline"), ExternalServiceFailure("HTTP 500")]
)
def test_scan_never_raises_on_ai_failure(error):
    receipt = _scanner(FakeClient(error=error)).scan(b"img")

    assert receipt.merchant_name == "Unknown"
    assert receipt.description == "Receipt scan failed (API error)"
    assert receipt.date == NOW


def test_oversized_image_skips_the_ai_call():
    client = FakeClient('{"amount": 1}')
    receipt = _scanner(client, max_bytes=10).scan(b"x" * 11)

    assert client.calls == 0
    assert receipt.merchant_name == "Unknown"
    assert receipt.description == "Receipt scan (manual entry required)"


def test_scan_without_api_key_falls_back():
    receipt = _scanner(GeminiClient(None)).scan(b"img")
    assert receipt.description == "Receipt scan failed (API error)"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("food", "food"),
        (" Travel ", "travel"),
        ("grocerie", "groceries"),
        ("utilites", "utilities"),
        ("spaceship", "other-expense"),
        ("", "other-expense"),
        (None, "other-expense"),
    ],
)
def test_normalize_category(raw, expected):
    assert normalize_category(raw) == expected


def test_negative_or_garbage_amount_becomes_zero():
    assert parse_receipt_reply('{"amount": -3}', NOW).amount == Decimal("0")
    assert parse_receipt_reply('{"amount": "abc"}', NOW).amount == Decimal("0")
    assert parse_receipt_reply('{"amount": "$1,234.5"}', NOW).amount == Decimal(
        "1234.50"
    )


def test_bad_date_falls_back_to_now():
    assert parse_receipt_reply('{"date": "last tuesday"}', NOW).date == NOW


def test_extract_json_helpers_skip_prose_and_braces():
    assert extract_json_object('Sure! {not json} then {"a": 1} done') == {"a": 1}
    assert extract_json_object("no object here") is None
    assert extract_json_array('Insights: ["one", "two"] hope it helps') == [
        "one",
        "two",
    ]
    assert extract_json_array("[broken") is None
    assert extract_json_array('{"a": [1]}') == [1]


def test_response_text_joins_parts_and_rejects_bad_shape():
    payload = {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}
    assert _response_text(payload) == "a\nb"
    with pytest.raises(ExternalServiceFailure):
        _response_text({"candidates": []})


def test_api_key_travels_in_a_header_not_the_url(monkeypatch):
    seen = []

    def fake_urlopen(req, timeout):
        seen.append(req)
        reply = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}
        return io.BytesIO(json.dumps(reply).encode("utf-8"))

    monkeypatch.setattr("gemini.urlopen", fake_urlopen)

    assert GeminiClient("secret-key").generate("hello") == "ok"
    (req,) = seen
    assert "secret-key" not in req.full_url
    assert req.full_url.endswith("/gemini-2.0-flash:generateContent")
    assert req.get_header("X-goog-api-key") == "secret-key"
