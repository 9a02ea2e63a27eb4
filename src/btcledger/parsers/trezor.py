from __future__ import annotations

import re
from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import RawContent, count_present, first, parse_date, parse_decimal, price_from, join_notes

TYPE_MAP = {"RECV": "BUY", "SENT": "SELL"}


def _fiat_column(headers) -> tuple[str, str] | None:
    for h in headers:
        m = re.fullmatch(r"fiat \(([a-z]{3})\)", h)
        if m:
            return h, m.group(1).upper()
    return None


class TrezorParser:
    """Trezor Suite account export (';'-delimited)."""

    name = "trezor"
    signatures = ((
        "timestamp", "date", "time", "type", "transaction id", "fee", "fee unit",
        "address", "label", "amount", "amount unit", "fiat (usd)", "other",
    ),)
    _core = ("timestamp", "type", "transaction id", "fee unit", "amount", "amount unit")

    def matches(self, raw: RawContent) -> bool:
        return (
            raw.kind == "rows"
            and count_present(raw, self._core) == len(self._core)
            and _fiat_column(raw.headers) is not None
        )

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        kind = str(record.get("type", "")).strip().upper()
        if kind not in TYPE_MAP:
            raise RecordParseError(f"Unsupported Trezor transaction type: {kind or '<empty>'}")

        unit = str(record.get("amount unit") or "BTC").strip().upper()
        if unit != "BTC":
            raise RecordParseError(f"Unsupported amount unit: {unit}")
        amount = abs(parse_decimal(record.get("amount"), "amount", required=True))

        fiat = _fiat_column(record.keys())
        if fiat is None:
            raise RecordParseError("Missing fiat column")
        fiat_key, currency = fiat
        total = abs(parse_decimal(record.get(fiat_key), fiat_key))
        price = price_from(total, amount)

        fee = parse_decimal(record.get("fee"), "fee")
        fee_unit = str(record.get("fee unit") or "BTC").strip().upper()
        if fee_unit == "BTC":
            fee = fee * price
            fee_unit = currency

        when = record.get("timestamp")
        if not when:
            date, time_ = record.get("date"), record.get("time")
            when = f"{date} {time_}" if date and time_ else date

        return TransactionDraft(
            type=TYPE_MAP[kind],
            btc_amount=amount,
            transaction_date=parse_date(when),
            source=self.name,
            external_id=first(record, "transaction id"),
            notes=join_notes(record.get("label"), record.get("other")),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=total,
                fee=abs(fee),
                fee_currency=fee_unit,
            ),
        )
