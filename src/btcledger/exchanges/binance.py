from __future__ import annotations

import datetime
import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Iterator
from urllib.parse import urlencode

import requests

from ..errors import CredentialInvalid, NetworkFailure, RecordParseError
from ..parsers.base import fee_in_quote, join_notes, normalize_currency, pair_quote_currency, parse_date, parse_decimal
from ..schemas import CredentialField, OriginalAmounts, TransactionDraft
from .base import ExchangeAdapter, SyncOptions, day_end, day_start

logger = logging.getLogger(__name__)

SYMBOLS = ("BTCUSDT", "BTCBUSD", "BTCUSDC", "BTCEUR", "BTCGBP")
PAGE_LIMIT = 1000
WINDOW = datetime.timedelta(hours=24)
# -2014 bad key format, -2015 invalid key / IP / permissions, -1022 bad signature
AUTH_CODES = {-2014, -2015, -1022}
INVALID_SYMBOL = -1121


class _InvalidSymbol(Exception):
    pass


def sign(query: str, secret: str) -> str:
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def _ms(dt: datetime.datetime) -> int:
    return int(dt.timestamp() * 1000)


class BinanceAdapter(ExchangeAdapter):
    id = "binance"
    name = "Binance"
    base_url = "https://api.binance.com"
    credential_fields = (
        CredentialField(key="apiKey", label="API Key", type="text"),
        CredentialField(key="apiSecret", label="Secret Key", type="password"),
    )

    def _signed_get(self, path: str, creds: dict[str, str], params: dict[str, Any] | None = None) -> Any:
        query = urlencode({**(params or {}), "timestamp": int(time.time() * 1000)})
        url = f"{self.base_url}{path}?{query}&signature={sign(query, creds['apiSecret'])}"
        return self._request("GET", url, headers={"X-MBX-APIKEY": creds["apiKey"]})

    def _raise_for_error(self, resp: requests.Response) -> None:
        try:
            code = int(resp.json().get("code"))
        except (ValueError, TypeError, AttributeError):
            code = None
        if code in AUTH_CODES:
            raise CredentialInvalid(self.id)
        if code == INVALID_SYMBOL:
            raise _InvalidSymbol()
        raise NetworkFailure(self.name, f"HTTP {resp.status_code}" + (f" (code {code})" if code else ""))

    def _probe(self, creds: dict[str, str]) -> None:
        self._signed_get("/api/v3/account", creds)

    def _fetch_balances(self, creds: dict[str, str]) -> dict[str, Decimal]:
        account = self._signed_get("/api/v3/account", creds)
        balances: dict[str, Decimal] = {}
        for b in account.get("balances") or []:
            total = Decimal(str(b.get("free") or 0)) + Decimal(str(b.get("locked") or 0))
            if total > 0:
                balances[b["asset"]] = total
        return balances

    def _trades(self, creds: dict[str, str], symbol: str, options: SyncOptions) -> Iterator[dict[str, Any]]:
        if options.start_date or options.end_date:
            yield from self._trades_windowed(creds, symbol, options)
            return
        params: dict[str, Any] = {"symbol": symbol, "limit": PAGE_LIMIT}
        while not options.should_stop():
            page = self._signed_get("/api/v3/myTrades", creds, params)
            yield from page
            if len(page) < PAGE_LIMIT:
                break
            params["fromId"] = int(page[-1]["id"]) + 1

    def _trades_windowed(self, creds: dict[str, str], symbol: str, options: SyncOptions) -> Iterator[dict[str, Any]]:
        # myTrades accepts at most 24h between startTime and endTime
        now = datetime.datetime.now(datetime.timezone.utc)
        start = day_start(options.start_date) if options.start_date else now - datetime.timedelta(days=365)
        end = min(day_end(options.end_date), now) if options.end_date else now
        while start < end and not options.should_stop():
            window_end = min(start + WINDOW, end)
            params = {"symbol": symbol, "limit": PAGE_LIMIT, "startTime": _ms(start), "endTime": _ms(window_end)}
            page = self._signed_get("/api/v3/myTrades", creds, params)
            yield from page
            if len(page) >= PAGE_LIMIT:
                # more in this window; continue right after the last trade
                start = datetime.datetime.fromtimestamp((int(page[-1]["time"]) + 1) / 1000, datetime.timezone.utc)
            else:
                start = window_end

    def _iter_records(self, creds: dict[str, str], options: SyncOptions) -> Iterator[dict[str, Any]]:
        for symbol in SYMBOLS:
            if options.should_stop():
                return
            try:
                for trade in self._trades(creds, symbol, options):
                    yield {**trade, "symbol": trade.get("symbol") or symbol}
            except _InvalidSymbol:
                logger.info("Binance: symbol %s not available, skipping", symbol)

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        if record.get("id") is None:
            raise RecordParseError("Binance trade without id", record)
        currency, note = normalize_currency(pair_quote_currency(record.get("symbol")))
        qty = parse_decimal(record.get("qty"), "qty", required=True)
        price = parse_decimal(record.get("price"), "price")
        total = parse_decimal(record.get("quoteQty"), "quoteQty") or price * qty

        fee = parse_decimal(record.get("commission"), "commission")
        fee_asset, _ = normalize_currency(record.get("commissionAsset") or currency)
        fee, fee_asset, fee_note = fee_in_quote(fee, fee_asset, price, currency, record.get("commission"))

        return TransactionDraft(
            type="BUY" if record.get("isBuyer") else "SELL",
            btc_amount=qty,
            transaction_date=parse_date(record.get("time")),
            source=self.id,
            external_id=f"{record.get('symbol')}-{record['id']}",  # trade ids are only unique per symbol
            notes=join_notes(f"Binance {record.get('symbol')} order {record.get('orderId', '')}", note, fee_note),
            original=OriginalAmounts(
                currency=currency,
                price_per_btc=price,
                total_cost=total,
                fee=fee,
                fee_currency=fee_asset,
            ),
        )
