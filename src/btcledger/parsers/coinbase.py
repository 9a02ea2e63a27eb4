from __future__ import annotations

from typing import Any

from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_present, first, join_notes, normalize_currency,
    pair_quote_currency, parse_date, parse_decimal, parse_side, price_from,
)


class CoinbaseParser:
    """Coinbase (Advanced Trade) fills export."""

    name = "coinbase"
    signatures = ((
        "portfolio", "trade id", "product", "side", "created at", "size",
        "size unit", "price", "fee", "total", "price/fee/total unit",
    ),)
    _markers = ("portfolio", "trade id", "product", "side", "created at")

    def matches(self, raw: RawContent) -> bool:
        return raw.kind == "rows" and count_present(raw, self._markers) >= 4

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        product = record.get("product") or "BTC-USD"
        currency, note = normalize_currency(
            first(record, "price/fee/total unit") or pair_quote_currency(product)
        )
        size = parse_decimal(first(record, "size", "btc_amount"), "size", required=True)
        total = abs(parse_decimal(first(record, "total", "executed value"), "total"))
        price = parse_decimal(record.get("price"), "price")
        if price == 0:
            price = price_from(total, size)
        trade_id = first(record, "trade id", "trade_id")

        return TransactionDraft(
            type=parse_side(record.get("side"), default="BUY"),
            btc_amount=size,
            transaction_date=parse_date(first(record, "created at", "created_at")),
            source=self.name,
            external_id=trade_id,
            notes=join_notes(f"Coinbase Trade: {trade_id or ''}", note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=total,
                fee=abs(parse_decimal(first(record, "fee", "fees"), "fee")),
                fee_currency=currency,
            ),
        )
