"""Receipt scanning: image in, best-effort structured fields out.

``ReceiptScanner.scan`` never raises. Anything that goes wrong (oversized
upload, AI timeout, HTTP failure, unparseable reply) yields a fallback
``ReceiptData`` whose ``merchant_name`` is ``"Unknown"``.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from rapidfuzz.distance import Levenshtein

from gemini import GeminiClient, extract_json_object
from instants import to_instant, utc_now
from models import DEFAULT_EXPENSE_CATEGORY, EXPENSE_CATEGORIES
from schemas import ReceiptData

logger = logging.getLogger(__name__)

UNKNOWN_MERCHANT = "Unknown"

PROMPT = (
    "You are a receipt analysis assistant. Analyze this receipt image and "
    "extract the total amount (number), the date (ISO format), a brief "
    "description of the purchase, the merchant/store name and a category, one "
    f"of: {', '.join(EXPENSE_CATEGORIES)}.\n"
    "Return ONLY valid JSON in this format:\n"
    '{"amount": number, "date": "ISO string", "description": "string", '
    '"merchantName": "string", "category": "string"}\n'
    "If you can't identify the receipt clearly, return amount 0, merchantName "
    '"Unknown" and category "other-expense".'
)


def fallback_receipt(reason: str, now: Optional[datetime] = None) -> ReceiptData:
    return ReceiptData(
        amount=Decimal("0"),
        date=to_instant(now or utc_now()),
        description=reason,
        merchant_name=UNKNOWN_MERCHANT,
        category=DEFAULT_EXPENSE_CATEGORY,
    )


def normalize_category(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if not value:
        return DEFAULT_EXPENSE_CATEGORY
    if value in EXPENSE_CATEGORIES:
        return value
    best: Optional[str] = None
    best_distance: Optional[int] = None
    for category in EXPENSE_CATEGORIES:
        dist = int(Levenshtein.distance(value, category))
        if best_distance is None or dist < best_distance:
            best, best_distance = category, dist
    if best is not None and best_distance is not None and best_distance <= 2:
        return best
    return DEFAULT_EXPENSE_CATEGORY


def _parse_amount(raw: object) -> Decimal:
    if raw is None or isinstance(raw, bool):
        return Decimal("0")
    try:
        amount = Decimal(str(raw).replace(",", "").lstrip("$").strip())
    except InvalidOperation:
        return Decimal("0")
    if not amount.is_finite() or amount < 0:
        return Decimal("0")
    return amount.quantize(Decimal("0.01"))


def _parse_date(raw: object, now: datetime) -> datetime:
    if not raw or not isinstance(raw, str):
        return now
    try:
        return to_instant(raw)
    except ValueError:
        return now


def parse_receipt_reply(text: str, now: Optional[datetime] = None) -> ReceiptData:
    now = to_instant(now or utc_now())
    data = extract_json_object(text)
    if data is None:
        logger.warning(f"receipt_parse_failed: text={text[:100]!r}")
        return fallback_receipt("Receipt scan failed (parsing error)", now)
    return ReceiptData(
        amount=_parse_amount(data.get("amount")),
        date=_parse_date(data.get("date"), now),
        description=str(data.get("description") or "Unknown purchase"),
        merchant_name=str(data.get("merchantName") or UNKNOWN_MERCHANT),
        category=normalize_category(data.get("category")),
    )


class ReceiptScanner:
    def __init__(
        self,
        client: GeminiClient,
        *,
        max_bytes: int = 5_000_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.max_bytes = max_bytes
        self.clock = clock

    def scan(self, image: bytes, mime_type: str = "image/jpeg") -> ReceiptData:
        now = self.clock()
        if len(image) > self.max_bytes:
            logger.info(f"receipt_too_large: bytes={len(image)}")
            return fallback_receipt("Receipt scan (manual entry required)", now)
        try:
            text = self.client.generate(PROMPT, image=image, mime_type=mime_type)
        except Exception:
            logger.exception("receipt_ai_failed")
            return fallback_receipt("Receipt scan failed (API error)", now)
        return parse_receipt_reply(text, now)
