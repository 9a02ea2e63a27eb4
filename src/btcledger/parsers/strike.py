from __future__ import annotations

from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_present, first, join_notes, normalize_currency,
    parse_date, parse_decimal, price_from,
)


class StrikeParser:
    name = "strike"
    signatures = ((
        "transaction id", "created time (utc)", "completed time (utc)", "status",
        "amount sold", "currency sold", "amount bought", "currency bought", "exchange rate",
    ),)
    _markers = ("transaction id", "amount sold", "currency sold", "amount bought", "currency bought", "exchange rate")

    def matches(self, raw: RawContent) -> bool:
        return raw.kind == "rows" and count_present(raw, self._markers) >= 4

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        status = str(record.get("status") or "").strip().lower()
        if status and status != "completed":
            raise RecordParseError(f"Transaction not completed: {status}")

        bought = str(record.get("currency bought") or "").strip().upper()
        sold = str(record.get("currency sold") or "").strip().upper()
        amount_bought = parse_decimal(record.get("amount bought"), "amount bought")
        amount_sold = parse_decimal(record.get("amount sold"), "amount sold")

        if bought == "BTC":
            side, btc, fiat, code = "BUY", amount_bought, amount_sold, sold
        elif sold == "BTC":
            side, btc, fiat, code = "SELL", amount_sold, amount_bought, bought
        else:
            raise RecordParseError("Neither side of the exchange is BTC")

        currency, note = normalize_currency(code or "USD")
        rate = parse_decimal(record.get("exchange rate"), "exchange rate")
        price = rate if rate > 0 else price_from(fiat, btc)
        tx_id = first(record, "transaction id")

        return TransactionDraft(
            type=side,
            btc_amount=btc,
            transaction_date=parse_date(first(record, "completed time (utc)", "created time (utc)")),
            source=self.name,
            external_id=tx_id,
            notes=join_notes(f"Strike Transaction: {tx_id or ''}", note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=abs(fiat),
                fee=abs(parse_decimal(record.get("fee"), "fee")),
                fee_currency=currency,
            ),
        )
