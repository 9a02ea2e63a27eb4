from __future__ import annotations

from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_present, first, join_notes, normalize_currency,
    parse_date, parse_decimal, price_from,
)

HEADERS = (
    "id", "exchange_name", "depot_name", "transaction_date", "buy_asset", "buy_amount",
    "sell_asset", "sell_amount", "fee_asset", "fee_amount", "transaction_type",
    "note", "linked_transaction",
)
_REQUIRED = (
    "exchange_name", "transaction_date", "buy_asset", "buy_amount",
    "sell_asset", "sell_amount", "transaction_type",
)


class Bitcoin21Parser:
    """21bitcoin app export; EUR based, dates as DD.MM.YYYY HH:MM:SS."""

    name = "21bitcoin"
    signatures = (HEADERS,)

    def matches(self, raw: RawContent) -> bool:
        if raw.kind != "rows":
            return False
        hs = raw.header_set
        return count_present(raw, _REQUIRED) >= 5 and bool(
            {"depot_name", "linked_transaction", "exchange_name"} & hs
        )

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        kind = str(record.get("transaction_type") or "").strip().lower()
        if kind != "trade":
            raise RecordParseError(f"Not a trade: {kind or '<empty>'}")

        buy_asset = str(record.get("buy_asset") or "").strip().upper()
        sell_asset = str(record.get("sell_asset") or "").strip().upper()
        buy_amount = parse_decimal(record.get("buy_amount"), "buy_amount")
        sell_amount = parse_decimal(record.get("sell_amount"), "sell_amount")

        if buy_asset == "BTC":
            side, btc, fiat, code = "BUY", buy_amount, sell_amount, sell_asset
        elif sell_asset == "BTC":
            side, btc, fiat, code = "SELL", sell_amount, buy_amount, buy_asset
        else:
            raise RecordParseError("Not a BTC trade")
        if btc <= 0:
            raise RecordParseError("BTC amount must be greater than zero")

        currency, note = normalize_currency(code or "EUR")
        fee = parse_decimal(record.get("fee_amount"), "fee_amount")
        fee_currency = currency
        if fee > 0 and record.get("fee_asset"):
            fee_currency, _ = normalize_currency(record["fee_asset"])
            if fee_currency == "BTC":
                fee, fee_currency = fee * price_from(fiat, btc), currency

        return TransactionDraft(
            type=side,
            btc_amount=btc,
            transaction_date=parse_date(record.get("transaction_date")),
            source=self.name,
            external_id=first(record, "id"),
            notes=join_notes(first(record, "note"), note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price_from(fiat, btc),
                total_cost=abs(fiat),
                fee=abs(fee),
                fee_currency=fee_currency,
            ),
        )
