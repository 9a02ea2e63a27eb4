from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Iterator
from urllib.parse import urlencode

from ..errors import CredentialInvalid, NetworkFailure, RecordParseError
from ..log import mask_secret
from ..parsers.base import join_notes, normalize_currency, pair_quote_currency, parse_date, parse_decimal, parse_side
from ..schemas import CredentialField, OriginalAmounts, TransactionDraft
from .base import ExchangeAdapter, SyncOptions, day_end, day_start

logger = logging.getLogger(__name__)

AUTH_ERRORS = ("EAPI:Invalid key", "EAPI:Invalid signature", "EAPI:Invalid nonce", "EGeneral:Permission denied")
ASSET_ALIASES = {"XXBT": "BTC", "XBT": "BTC", "XBT.F": "BTC"}


def sign(path: str, data: dict[str, Any], secret: str) -> str:
    """API-Sign = b64(HMAC-SHA512(b64decode(secret), path + SHA256(nonce + postdata)))"""
    postdata = urlencode(data)
    digest = hashlib.sha256((str(data["nonce"]) + postdata).encode()).digest()
    mac = hmac.new(base64.b64decode(secret), path.encode() + digest, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


def normalize_asset(code: str) -> str:
    c = code.upper()
    if c in ASSET_ALIASES:
        return ASSET_ALIASES[c]
    if len(c) == 4 and c[0] in "XZ":
        return c[1:]
    return c


class KrakenAdapter(ExchangeAdapter):
    id = "kraken"
    name = "Kraken"
    base_url = "https://api.kraken.com"
    credential_fields = (
        CredentialField(key="apiKey", label="API Key", type="text"),
        CredentialField(key="apiSecret", label="Private Key", type="password"),
    )

    def _private(self, path: str, creds: dict[str, str], extra: dict[str, Any] | None = None) -> Any:
        data = {"nonce": str(int(time.time() * 1000)), **(extra or {})}
        try:
            signature = sign(path, data, creds["apiSecret"])
        except (binascii.Error, ValueError) as exc:
            logger.info("Kraken secret for key %s is not valid base64", mask_secret(creds.get("apiKey")))
            raise CredentialInvalid(self.id) from exc

        body = self._request(
            "POST",
            self.base_url + path,
            data=urlencode(data),
            headers={
                "API-Key": creds["apiKey"],
                "API-Sign": signature,
                "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
            },
        )
        errors = body.get("error") or []
        if any(e.startswith(AUTH_ERRORS) for e in errors):
            raise CredentialInvalid(self.id)
        if errors:
            raise NetworkFailure(self.name, ", ".join(errors))
        return body.get("result") or {}

    def _probe(self, creds: dict[str, str]) -> None:
        self._private("/0/private/Balance", creds)

    def _fetch_balances(self, creds: dict[str, str]) -> dict[str, Decimal]:
        result = self._private("/0/private/Balance", creds)
        balances: dict[str, Decimal] = {}
        for asset, amount in result.items():
            code = normalize_asset(asset)
            balances[code] = balances.get(code, Decimal("0")) + Decimal(str(amount))
        return balances

    def _iter_records(self, creds: dict[str, str], options: SyncOptions) -> Iterator[dict[str, Any]]:
        params: dict[str, Any] = {}
        if options.start_date:
            params["start"] = int(day_start(options.start_date).timestamp())
        if options.end_date:
            params["end"] = int(day_end(options.end_date).timestamp())

        ofs = 0
        while not options.should_stop():
            result = self._private("/0/private/TradesHistory", creds, {**params, "ofs": ofs})
            trades = result.get("trades") or {}
            if not trades:
                break
            for trade_id, trade in trades.items():
                yield {**trade, "trade_id": trade_id}
            ofs += len(trades)
            if ofs >= int(result.get("count") or 0):
                break

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        trade_id = record.get("trade_id")
        if not trade_id:
            raise RecordParseError("Kraken trade without id", record)
        currency, note = normalize_currency(pair_quote_currency(record.get("pair")))
        return TransactionDraft(
            type=parse_side(record.get("type")),
            btc_amount=parse_decimal(record.get("vol"), "vol", required=True),
            transaction_date=parse_date(record.get("time")),
            source=self.id,
            external_id=str(trade_id),
            notes=join_notes(f"Kraken Order: {record.get('ordertxid', '')}", note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=parse_decimal(record.get("price"), "price"),
                total_cost=parse_decimal(record.get("cost"), "cost"),
                fee=parse_decimal(record.get("fee"), "fee"),
                fee_currency=currency,
            ),
        )
