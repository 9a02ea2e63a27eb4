from __future__ import annotations

from typing import Any

from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_contained, count_present, first, join_notes, normalize_currency,
    parse_date, parse_decimal, parse_side, price_from, scan_currency,
)

EXPORT_HEADERS = (
    "date", "type", "amount (btc)", "exchange", "original currency",
    "original price", "original cost", "original fee",
)
LEGACY_HEADERS = (
    "amount (btc)", "original price", "original cost", "original fee",
    "exchange", "eur rate", "usd rate",
)


class _OwnExportParser:
    """Shared row handling for the application's own CSV exports."""

    name = ""
    fallback_currency = "USD"

    def __init__(self, fallback_currency: str = "USD"):
        self.fallback_currency = fallback_currency

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        amount = parse_decimal(first(record, "amount (btc)", "btc_amount", "amount"), "amount", required=True)
        price = parse_decimal(first(record, "original price", "original_price_per_btc", "price"), "price")
        total = parse_decimal(first(record, "original cost", "original_total_amount", "total"), "total")
        fee = parse_decimal(first(record, "original fee", "fees", "fee"), "fee")
        if price == 0 and total:
            price = price_from(total, amount)
        if total == 0 and price:
            total = price * amount

        currency, note = normalize_currency(scan_currency(record, self.fallback_currency))
        exchange = first(record, "exchange")

        return TransactionDraft(
            type=parse_side(first(record, "type", "transaction_type"), default="BUY"),
            btc_amount=amount,
            transaction_date=parse_date(first(record, "date", "transaction date", "transaction_date")),
            source=self.name,
            notes=join_notes(f"Exchange: {exchange}" if exchange else None, first(record, "notes"), note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=abs(total),
                fee=abs(fee),
                fee_currency=currency,
            ),
        )


class BtcTrackerParser(_OwnExportParser):
    """CSV written by GET /export/transactions.csv."""

    name = "btctracker"
    signatures = (EXPORT_HEADERS,)

    def matches(self, raw: RawContent) -> bool:
        return (
            raw.kind == "rows"
            and count_present(raw, ("date", "type", "amount (btc)")) == 3
            and count_contained(raw, ("original price", "original cost")) >= 1
        )


class LegacyParser(_OwnExportParser):
    """Older export that also carried the EUR / USD rate used at the time."""

    name = "legacy"
    signatures = (EXPORT_HEADERS + ("eur rate", "usd rate"),)

    def matches(self, raw: RawContent) -> bool:
        return (
            raw.kind == "rows"
            and count_contained(raw, LEGACY_HEADERS) >= 3
            and count_contained(raw, ("eur rate", "usd rate")) == 2
        )
