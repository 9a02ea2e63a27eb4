# currency.py
"""
Currency conversion with a cached, EUR-based rate table.

- The rate source returns one table: units of each currency per 1 EUR.
- rate(A, B) = eur[B] / eur[A] in Decimal, so A->B->A gives back the input.
- A table older than the TTL is refreshed before it is trusted. A failed
  refresh never raises: the previous table (or the identity rate) is used and
  the fallback is flagged on every converted figure.
- After a failed refresh we wait `retry_seconds` before trying again.
"""
from __future__ import annotations

import datetime
import logging
import threading
import time
from decimal import Decimal
from typing import Callable, Optional, Protocol

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db import db_session
from .errors import RateUnavailable, UnsupportedCurrency
from .models import ExchangeRate
from .schemas import ConvertedAmounts

logger = logging.getLogger(__name__)

BASE_CURRENCY = "EUR"
BASE_CURRENCIES = ("EUR", "USD")
SECONDARY_CURRENCIES = ("GBP", "JPY", "CHF", "PLN")
SUPPORTED_CURRENCIES = BASE_CURRENCIES + SECONDARY_CURRENCIES

ONE = Decimal("1")


class RateSource(Protocol):
    def fetch(self) -> dict[str, Decimal]: ...


class HttpRateSource:
    """Fetch {"rates": {...}} from an exchangerate-api style endpoint."""

    def __init__(self, url: str, session: requests.Session | None = None, timeout: float = 15.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self) -> dict[str, Decimal]:
        resp = self.session.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        rates = resp.json()["rates"]
        table = {BASE_CURRENCY: ONE}
        for code in SUPPORTED_CURRENCIES:
            if code in rates and code != BASE_CURRENCY:
                table[code] = Decimal(str(rates[code]))
        return table


class SqlRateStore:
    """Persist the working table in `exchange_rates` as EUR -> X rows."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def load(self) -> tuple[dict[str, Decimal], datetime.datetime | None]:
        with db_session(self.session_factory) as db:
            rows = db.scalars(
                select(ExchangeRate).where(ExchangeRate.from_currency == BASE_CURRENCY)
            ).all()
            table = {r.to_currency: Decimal(r.rate) for r in rows}
            observed = min((r.observed_at for r in rows), default=None)
        return table, observed

    def save(self, table: dict[str, Decimal], observed_at: datetime.datetime) -> None:
        with db_session(self.session_factory) as db:
            for code, rate in table.items():
                db.merge(ExchangeRate(
                    from_currency=BASE_CURRENCY,
                    to_currency=code,
                    rate=rate,
                    observed_at=observed_at,
                ))


class CurrencyConverter:
    def __init__(
        self,
        source: RateSource,
        store: Optional[SqlRateStore] = None,
        ttl_seconds: int = 3600,
        retry_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.retry_seconds = retry_seconds
        self.clock = clock
        self._table: dict[str, Decimal] = {}
        self._observed_at: float | None = None
        self._last_failure: float | None = None
        self._lock = threading.Lock()

        if store is not None:
            table, observed = store.load()
            if table:
                self._table = table
                self._observed_at = observed.replace(tzinfo=datetime.timezone.utc).timestamp()
                logger.info("Loaded %d cached rates (observed %s)", len(table), observed.isoformat())

    # ---------- freshness ----------

    def age_seconds(self) -> float | None:
        if self._observed_at is None:
            return None
        return max(0.0, self.clock() - self._observed_at)

    def is_stale(self) -> bool:
        age = self.age_seconds()
        return age is None or age > self.ttl_seconds

    def ensure_fresh(self) -> bool:
        """Refresh when stale; returns False when the cached table had to be kept."""
        if not self.is_stale():
            return True
        with self._lock:
            if not self.is_stale():
                return True
            now = self.clock()
            if self._last_failure is not None and now - self._last_failure < self.retry_seconds:
                return False
            return self._refresh(now)

    def _refresh(self, now: float) -> bool:
        try:
            table = self.source.fetch()
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            self._last_failure = now
            logger.warning("Rate refresh failed, keeping %d cached rates: %s", len(self._table), exc)
            return False

        self._table = dict(table)
        self._table[BASE_CURRENCY] = ONE
        self._observed_at = now
        self._last_failure = None
        logger.info("Refreshed exchange rates: %s", ", ".join(sorted(self._table)))
        if self.store is not None:
            observed = datetime.datetime.fromtimestamp(now, datetime.timezone.utc).replace(tzinfo=None)
            self.store.save(self._table, observed)
        return True

    # ---------- conversion ----------

    def _check(self, code: str) -> str:
        c = (code or "").strip().upper()
        if c not in SUPPORTED_CURRENCIES:
            raise UnsupportedCurrency(code or "<missing>")
        return c

    def rate_info(self, from_currency: str, to_currency: str) -> tuple[Decimal, bool]:
        """(rate, fallback_applied) for one unit of `from_currency` in `to_currency`."""
        a, b = self._check(from_currency), self._check(to_currency)
        if a == b:
            return ONE, False
        self.ensure_fresh()
        table = self._table
        if a in table and b in table and table[a] > 0:
            return table[b] / table[a], False
        logger.warning(RateUnavailable(a, b).message + "; using identity rate")
        return ONE, True

    def rate(self, from_currency: str, to_currency: str) -> Decimal:
        return self.rate_info(from_currency, to_currency)[0]

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        return Decimal(amount) * self.rate(from_currency, to_currency)

    def convert_triple(
        self,
        price: Decimal,
        cost: Decimal,
        fee: Decimal,
        from_currency: str,
        to_currency: str,
        fee_currency: str | None = None,
    ) -> ConvertedAmounts:
        """
        Convert price, cost and fee into `to_currency`.
        The fee gets its own lookup when it is declared in another currency.
        """
        rate, fallback = self.rate_info(from_currency, to_currency)
        if fee_currency and fee_currency.upper() != from_currency.upper():
            fee_rate, fee_fallback = self.rate_info(fee_currency, to_currency)
            fallback = fallback or fee_fallback
        else:
            fee_rate = rate
        return ConvertedAmounts(
            price_per_btc=Decimal(price) * rate,
            total_cost=Decimal(cost) * rate,
            fee=Decimal(fee) * fee_rate,
            rate_used=rate,
            rate_fallback=fallback,
        )

    def snapshot(self) -> dict:
        age = self.age_seconds()
        return {
            "base": BASE_CURRENCY,
            "supported": list(SUPPORTED_CURRENCIES),
            "rates": {k: format(v, "f") for k, v in sorted(self._table.items())},
            "age_seconds": None if age is None else round(age, 1),
            "stale": self.is_stale(),
        }
