from __future__ import annotations

from decimal import Decimal
from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import (
    RawContent, count_contained, count_present, fee_in_quote, first, join_notes, normalize_currency,
    pair_quote_currency, parse_date, parse_decimal, parse_side, price_from, split_amount_unit,
)

ORDER_HISTORY = (
    "date(utc)", "orderno", "pair", "type", "side", "order price", "order amount",
    "time", "executed", "average price", "trading total", "status",
)
TRADE_HISTORY = (
    "date(utc)", "pair", "base asset", "quote asset", "type", "price",
    "amount", "total", "fee", "fee coin",
)
_ORDER_MARKERS = ("date(utc)", "orderno", "pair", "side", "trading total")


class BinanceParser:
    """Binance spot exports: order history and trade history."""

    name = "binance"
    signatures = (ORDER_HISTORY, TRADE_HISTORY)

    def matches(self, raw: RawContent) -> bool:
        if raw.kind != "rows":
            return False
        if count_contained(raw, _ORDER_MARKERS) >= 3:
            return True
        return (
            count_present(raw, ("base asset", "quote asset")) == 2
            and count_present(raw, TRADE_HISTORY) >= 5
        )

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        if "base asset" in record or "quote asset" in record:
            return self._parse_trade(record)
        return self._parse_order(record)

    def _parse_trade(self, record: dict[str, Any]) -> TransactionDraft:
        base = str(record.get("base asset") or "BTC").strip().upper()
        if base != "BTC":
            raise RecordParseError(f"Not a BTC trade: {base}")
        pair = record.get("pair") or ""
        raw_currency = first(record, "quote asset") or (pair_quote_currency(pair) if pair else "USD")
        currency, note = normalize_currency(raw_currency)

        amount = parse_decimal(record.get("amount"), "amount", required=True)
        total = parse_decimal(record.get("total"), "total")
        price = parse_decimal(record.get("price"), "price") or price_from(total, amount)
        fee = parse_decimal(record.get("fee"), "fee")
        fee_coin, _ = normalize_currency(first(record, "fee coin") or currency)
        fee, fee_coin, fee_note = fee_in_quote(fee, fee_coin, price, currency, record.get("fee"))

        return TransactionDraft(
            type=parse_side(record.get("type"), default="BUY"),
            btc_amount=amount,
            transaction_date=parse_date(record.get("date(utc)")),
            source=self.name,
            notes=join_notes("Binance Trade", note, fee_note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=abs(total) or price * amount,
                fee=abs(fee),
                fee_currency=fee_coin,
            ),
        )

    def _parse_order(self, record: dict[str, Any]) -> TransactionDraft:
        status = str(record.get("status") or "").strip().upper()
        if status and status != "FILLED":
            raise RecordParseError(f"Order not filled: {status}")

        currency, note = normalize_currency(pair_quote_currency(record.get("pair")))
        amount, unit = split_amount_unit(record.get("executed"), "executed")
        if unit and unit != "BTC":
            raise RecordParseError(f"Unexpected executed unit: {unit}")
        total, _ = split_amount_unit(first(record, "trading total") or "0", "trading total")
        price = price_from(total, amount)

        fee = Decimal("0")
        fee_currency = currency
        fee_note = None
        if first(record, "fee"):
            fee, fee_unit = split_amount_unit(record["fee"], "fee")
            if fee_unit:
                fee_unit, _ = normalize_currency(fee_unit)
                fee, fee_currency, fee_note = fee_in_quote(fee, fee_unit, price, currency)

        return TransactionDraft(
            type=parse_side(first(record, "side", "type"), default="BUY"),
            btc_amount=amount,
            transaction_date=parse_date(record.get("date(utc)")),
            source=self.name,
            external_id=first(record, "orderno"),
            notes=join_notes(f"Binance Order: {first(record, 'orderno') or ''}", note, fee_note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=abs(total),
                fee=abs(fee),
                fee_currency=fee_currency,
            ),
        )
