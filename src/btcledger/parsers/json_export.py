from __future__ import annotations

from typing import Any

from ..errors import RecordParseError
from ..schemas import OriginalAmounts, TransactionDraft
from .base import RawContent, first, join_notes, normalize_currency, parse_date, parse_decimal, parse_side
from .standard import parse_standard


class JsonExportParser:
    """
    JSON documents: a list of transactions or {"transactions": [...]}.
    Each item is either our own export shape (nested "original") or the
    flat snake_case import shape.
    """

    name = "json_export"
    signatures = ()

    def __init__(self, fallback_currency: str = "USD"):
        self.fallback_currency = fallback_currency

    def matches(self, raw: RawContent) -> bool:
        if raw.kind != "payload":
            return False
        payload = raw.payload
        if isinstance(payload, dict):
            payload = payload.get("transactions")
        return isinstance(payload, list) and all(isinstance(item, dict) for item in payload)

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        if not isinstance(record, dict):
            raise RecordParseError("Transaction entry is not an object")
        original = record.get("original")
        if not isinstance(original, dict):
            return parse_standard(record, self.name, self.fallback_currency)

        currency, note = normalize_currency(original.get("currency") or self.fallback_currency)
        fee_currency, _ = normalize_currency(original.get("fee_currency") or currency)
        return TransactionDraft(
            type=parse_side(record.get("type")),
            btc_amount=parse_decimal(record.get("btc_amount"), "btc_amount", required=True),
            transaction_date=parse_date(record.get("transaction_date")),
            source=str(first(record, "source") or self.name),
            external_id=first(record, "external_id"),
            notes=join_notes(record.get("notes"), note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=parse_decimal(original.get("price_per_btc"), "price_per_btc"),
                total_cost=parse_decimal(original.get("total_cost"), "total_cost"),
                fee=parse_decimal(original.get("fee"), "fee"),
                fee_currency=fee_currency,
            ),
        )
