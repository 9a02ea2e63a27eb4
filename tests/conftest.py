# tests/conftest.py
# Shared fixtures: a throw-away SQLite ledger per test, a static rate table,
# fake HTTP plumbing for the adapters and a scripted exchange for sync runs.

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional

import pytest
import requests
from fastapi.testclient import TestClient

from btcledger.app import create_app
from btcledger.config import Settings
from btcledger.db import init_db, make_engine, make_session_factory
from btcledger.errors import CredentialInvalid, NetworkFailure, RecordParseError
from btcledger.exchanges import ExchangeAdapter, SyncOptions
from btcledger.schemas import CredentialField, OriginalAmounts, TransactionDraft
from btcledger.services import build_services
from btcledger.vault import CredentialVault

# Units of each currency per 1 EUR.
STATIC_RATES = {
    "EUR": Decimal("1"),
    "USD": Decimal("1.1"),
    "GBP": Decimal("0.85"),
    "JPY": Decimal("160"),
    "CHF": Decimal("0.95"),
    "PLN": Decimal("4.3"),
}

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


# --------------------------------------------------------------------------------------
# Rate sources / clock
# --------------------------------------------------------------------------------------
class StaticRateSource:
    def __init__(self, table: Optional[dict[str, Decimal]] = None):
        self.table = dict(table or STATIC_RATES)
        self.calls = 0

    def fetch(self) -> dict[str, Decimal]:
        self.calls += 1
        return dict(self.table)


class FailingRateSource:
    def __init__(self):
        self.calls = 0

    def fetch(self) -> dict[str, Decimal]:
        self.calls += 1
        raise requests.ConnectionError("rates host unreachable")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --------------------------------------------------------------------------------------
# HTTP fakes for adapter tests
# --------------------------------------------------------------------------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None):
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """
    Stand-in for requests.Session.
    `handler(method, url, kwargs)` returns a FakeResponse (or raises).
    Every call is recorded in `calls`.
    """

    def __init__(self, handler: Callable[[str, str, dict], FakeResponse]):
        self.handler = handler
        self.calls: list[tuple[str, str, dict]] = []

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        return self.handler(method, url, kwargs)


# --------------------------------------------------------------------------------------
# Scripted exchange
# --------------------------------------------------------------------------------------
class FakeAdapter(ExchangeAdapter):
    """
    Exchange that serves `pages` of native records.
    apiKey "good" is accepted, anything else is rejected.
    `fail_after` raises NetworkFailure once that many pages were served.
    `on_page(i)` runs after page i was handed out.
    """

    id = "fakex"
    name = "FakeX"
    base_url = "https://fakex.invalid"
    credential_fields = (
        CredentialField(key="apiKey", label="API Key", type="password"),
    )

    def __init__(self, vault: CredentialVault):
        super().__init__(vault, session=requests.Session())
        self.pages: list[list[dict[str, Any]]] = []
        self.fail_after: Optional[int] = None
        self.on_page: Optional[Callable[[int], None]] = None
        self.last_options: Optional[SyncOptions] = None
        self.probes = 0

    def _probe(self, creds: dict[str, str]) -> None:
        self.probes += 1
        if creds.get("apiKey") != "good":
            raise CredentialInvalid(self.id)

    def _fetch_balances(self, creds: dict[str, str]) -> dict[str, Decimal]:
        return {"BTC": Decimal("0.5"), "EUR": Decimal("120.25")}

    def _iter_records(self, creds: dict[str, str], options: SyncOptions) -> Iterator[dict[str, Any]]:
        self.last_options = options
        for i, page in enumerate(self.pages):
            if options.should_stop():
                return
            if self.fail_after is not None and i >= self.fail_after:
                raise NetworkFailure(self.name, "ConnectionError")
            yield from page
            if self.on_page:
                self.on_page(i)

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        if not record.get("id"):
            raise RecordParseError("trade without id", record)
        return TransactionDraft(
            type=record.get("side", "BUY"),
            btc_amount=Decimal(record["qty"]),
            transaction_date=record["time"],
            source=self.id,
            external_id=record["id"],
            original=OriginalAmounts(
                currency=record.get("currency", "EUR"),
                price_per_btc=Decimal(record["price"]),
                total_cost=Decimal(record["price"]) * Decimal(record["qty"]),
                fee=Decimal(record.get("fee", "0")),
            ),
        )


def trade(trade_id: str, qty: str = "0.01", price: str = "40000", day: int = 5, **extra) -> dict[str, Any]:
    return {"id": trade_id, "qty": qty, "price": price, "time": f"2024-01-{day:02d}T10:00:00", **extra}


# --------------------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        encryption_key=TEST_KEY,
        log_level="WARNING",
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.db_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def vault(session_factory) -> CredentialVault:
    return CredentialVault(session_factory, TEST_KEY)


@pytest.fixture
def rate_source() -> StaticRateSource:
    return StaticRateSource()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(settings, rate_source):
    svc = build_services(settings, rate_source=rate_source, adapter_factory=lambda v: [FakeAdapter(v)])
    yield svc
    svc.engine.dispose()


@pytest.fixture
def fake_adapter(services) -> FakeAdapter:
    return services.exchanges.adapter("fakex")


@pytest.fixture
def connected_fake(services, fake_adapter) -> FakeAdapter:
    services.vault.save("fakex", {"apiKey": "good"})
    return fake_adapter


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


@pytest.fixture
def cancel_event() -> threading.Event:
    return threading.Event()
