from __future__ import annotations

from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_present, first, join_notes, normalize_currency,
    pair_quote_currency, parse_date, parse_decimal, parse_side, price_from,
)


class KrakenParser:
    """Kraken 'trades' history export."""

    name = "kraken"
    signatures = ((
        "txid", "ordertxid", "pair", "time", "type", "ordertype", "price",
        "cost", "fee", "vol", "margin", "misc", "ledgers",
    ),)
    _markers = ("txid", "ordertxid", "pair", "vol", "cost", "margin", "ledgers")

    def matches(self, raw: RawContent) -> bool:
        return raw.kind == "rows" and count_present(raw, self._markers) >= 5

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        status = str(first(record, "status", "postatuscode") or "").lower()
        if status == "canceled":
            raise RecordParseError("Canceled order")

        currency, note = normalize_currency(pair_quote_currency(record.get("pair")))
        amount = parse_decimal(record.get("vol"), "vol", required=True)
        total = parse_decimal(record.get("cost"), "cost")
        price = parse_decimal(record.get("price"), "price")
        if price == 0:
            price = price_from(total, amount)

        return TransactionDraft(
            type=parse_side(record.get("type"), default="BUY"),
            btc_amount=amount,
            transaction_date=parse_date(record.get("time")),
            source=self.name,
            external_id=first(record, "txid"),
            notes=join_notes(f"Kraken Order: {first(record, 'ordertxid', 'txid') or ''}", note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=abs(total),
                fee=abs(parse_decimal(record.get("fee"), "fee")),
                fee_currency=currency,
            ),
        )
