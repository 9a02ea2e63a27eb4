from __future__ import annotations

from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, first, join_notes, normalize_currency, parse_date,
    parse_decimal, parse_side, price_from, scan_currency,
)

HEADERS = (
    "type", "btc_amount", "original_price_per_btc", "original_currency",
    "original_total_amount", "fees", "fees_currency", "transaction_date", "notes",
)
AMOUNT_KEYS = ("btc_amount", "btc amount", "bitcoin_amount", "amount (btc)", "amount")
PRICE_KEYS = ("original_price_per_btc", "price_per_btc", "price per btc", "original price", "price")
TOTAL_KEYS = ("original_total_amount", "total_amount", "total amount", "original cost", "total")
DATE_KEYS = ("transaction_date", "transaction date", "date")


def parse_standard(record: dict[str, Any], source: str, fallback_currency: str) -> TransactionDraft:
    """Generic snake_case layout; also used for JSON records in the import shape."""
    amount = parse_decimal(first(record, *AMOUNT_KEYS), "btc_amount", required=True)
    price = parse_decimal(first(record, *PRICE_KEYS), "price")
    total = parse_decimal(first(record, *TOTAL_KEYS), "total")
    if price == 0 and total == 0:
        raise RecordParseError("Missing price and total")
    if price == 0:
        price = price_from(total, amount)
    if total == 0:
        total = price * amount

    currency, note = normalize_currency(scan_currency(record, fallback_currency))
    fee_currency, _ = normalize_currency(first(record, "fees_currency", "fee_currency") or currency)

    return TransactionDraft(
        type=parse_side(first(record, "type", "transaction_type", "transaction type"), default="BUY"),
        btc_amount=amount,
        transaction_date=parse_date(first(record, *DATE_KEYS)),
        source=source,
        external_id=first(record, "external_id"),
        notes=join_notes(first(record, "notes", "note", "description"), note),
        original=OriginalAmounts(
            currency=currency,
            price_per_btc=price,
            total_cost=abs(total),
            fee=abs(parse_decimal(first(record, "fees", "fee"), "fees")),
            fee_currency=fee_currency,
        ),
    )


class StandardParser:
    """Hand-made spreadsheets; needs an amount, a price or total, and a date column."""

    name = "standard"
    signatures = (HEADERS,)

    def __init__(self, fallback_currency: str = "USD"):
        self.fallback_currency = fallback_currency

    def matches(self, raw: RawContent) -> bool:
        if raw.kind != "rows":
            return False
        hs = raw.header_set
        return (
            any(k in hs for k in AMOUNT_KEYS)
            and any(k in hs for k in PRICE_KEYS + TOTAL_KEYS)
            and any(k in hs for k in DATE_KEYS)
        )

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        return parse_standard(record, self.name, self.fallback_currency)
