# tests/test_sync.py
# Exchange sync runs against the scripted FakeX exchange from conftest.

from __future__ import annotations

import datetime
import threading
from decimal import Decimal

import pytest

from btcledger.errors import CredentialInvalid, NetworkFailure, UnknownExchange
from btcledger.ingestion import RunState
from conftest import trade


def test_resync_skips_known_native_id(services, connected_fake):
    connected_fake.pages = [[trade("T1")]]
    first = services.ingestion.sync_exchange("fakex")
    assert (first.imported, first.skipped) == (1, 0)

    connected_fake.pages = [[trade("T1"), trade("T2", day=6)], [trade("T3", day=7)]]
    second = services.ingestion.sync_exchange("fakex")

    assert second.state == RunState.COMMITTED.value
    assert second.total == 3
    assert second.imported == 2
    assert second.skipped == 1
    assert second.skipped_duplicates == 1
    assert sorted(second.transactions) == ["fakex-T2", "fakex-T3"]
    assert services.ledger.count() == 3


def test_synced_records_carry_exchange_identity(services, connected_fake):
    connected_fake.pages = [[trade("T9", qty="0.02", price="41000", currency="USD")]]
    services.ingestion.sync_exchange("fakex")

    (tx,) = services.ledger.list_transactions()
    assert tx.id == "fakex-T9"
    assert tx.source == "fakex"
    assert tx.external_id == "T9"
    assert tx.original.currency == "USD"
    assert tx.converted.usd.rate_used == 1
    eur_rate = Decimal("1") / Decimal("1.1")
    assert tx.converted.eur.rate_used == eur_rate
    assert tx.converted.eur.total_cost == Decimal("41000") * Decimal("0.02") * eur_rate


def test_same_native_id_twice_in_one_batch_is_one_trade(services, connected_fake):
    connected_fake.pages = [[trade("T1")], [trade("T1")]]
    result = services.ingestion.sync_exchange("fakex")
    assert result.imported == 1
    assert result.skipped_duplicates == 1


def test_native_id_wins_over_matching_content(services, connected_fake):
    # two fills with identical size/price/time but distinct trade ids are two trades
    connected_fake.pages = [[trade("A1"), trade("A2")]]
    result = services.ingestion.sync_exchange("fakex")
    assert result.imported == 2


def test_resync_without_skip_appends_everything_again(services, connected_fake):
    connected_fake.pages = [[trade("T1")]]
    services.ingestion.sync_exchange("fakex")

    connected_fake.pages = [[trade("T1"), trade("T2", day=6), trade("T3", day=7)]]
    result = services.ingestion.sync_exchange("fakex", skip_duplicates=False)

    assert result.state == RunState.COMMITTED.value
    assert result.failure is None
    assert result.imported == 3
    assert services.ledger.count() == 4
    assert "fakex-T2" in result.transactions
    assert "fakex-T1" not in result.transactions

    t1_rows = [tx for tx in services.ledger.list_transactions() if tx.external_id == "T1"]
    assert len(t1_rows) == 2
    assert len({tx.id for tx in t1_rows}) == 2


def test_invalid_credentials_are_never_stored(services, fake_adapter):
    assert services.exchanges.test_connection("fakex", {"apiKey": "bad"}) is False
    assert "fakex" not in services.vault.list()

    with pytest.raises(CredentialInvalid):
        services.exchanges.save_credentials("fakex", {"apiKey": "bad"})
    assert "fakex" not in services.vault.list()


def test_missing_credential_field_fails_without_probing(services, fake_adapter):
    assert fake_adapter.test_connection({}) is False
    assert fake_adapter.probes == 0


def test_good_credentials_are_saved_and_listed(services, fake_adapter):
    services.exchanges.save_credentials("fakex", {"apiKey": "good", "extra": "dropped"})
    assert services.vault.list() == ["fakex"]
    stored = services.vault.get_credentials("fakex")
    assert stored["apiKey"] == "good"
    assert "extra" not in stored

    (info,) = services.exchanges.available_exchanges()
    assert info.id == "fakex"
    assert info.connected is True
    assert [f.key for f in info.credentials] == ["apiKey"]


def test_unconfigured_exchange_fails_the_run(services, fake_adapter):
    result = services.ingestion.sync_exchange("fakex")
    assert result.state == "failed"
    assert result.failure.code == "exchange_not_configured"


def test_stored_credentials_that_stopped_working(services, fake_adapter):
    services.vault.save("fakex", {"apiKey": "revoked"})
    result = services.ingestion.sync_exchange("fakex")
    assert result.failure.code == "credential_invalid"
    assert fake_adapter.get_status() is False


def test_outage_while_connecting_is_a_network_failure(services, connected_fake, monkeypatch):
    def unreachable(creds):
        raise NetworkFailure("FakeX", "ConnectionError")

    monkeypatch.setattr(connected_fake, "_probe", unreachable)
    result = services.ingestion.sync_exchange("fakex")

    assert result.state == RunState.FAILED.value
    assert result.failure.code == "network_failure"
    assert connected_fake.get_status() is False
    # a connection test during setup still just answers False
    assert connected_fake.test_connection({"apiKey": "good"}) is False


def test_unknown_exchange_raises(services):
    with pytest.raises(UnknownExchange):
        services.ingestion.sync_exchange("mtgox")


def test_invalid_dates_are_dropped_before_the_call(services, connected_fake):
    services.ingestion.sync_exchange("fakex", start_date="not-a-date", end_date="2024-02-30")
    assert connected_fake.last_options.start_date is None
    assert connected_fake.last_options.end_date is None

    services.ingestion.sync_exchange("fakex", start_date="2024-01-05", end_date="2024-01-31T12:00:00")
    assert connected_fake.last_options.start_date == datetime.date(2024, 1, 5)
    assert connected_fake.last_options.end_date == datetime.date(2024, 1, 31)


def test_network_failure_reports_partial_fetch(services, connected_fake):
    connected_fake.pages = [[trade("T1"), trade("T2", day=6)], [trade("T3", day=7)]]
    connected_fake.fail_after = 1

    result = services.ingestion.sync_exchange("fakex")

    assert result.state == RunState.FAILED.value
    assert result.failure.code == "network_failure"
    assert result.fetched == 2
    assert result.imported == 0
    assert services.ledger.count() == 0


def test_cancel_during_fetch_stops_paging(services, connected_fake):
    cancel = threading.Event()
    connected_fake.pages = [[trade("T1")], [trade("T2", day=6)], [trade("T3", day=7)]]
    connected_fake.on_page = lambda i: cancel.set()

    result = services.ingestion.sync_exchange("fakex", cancel=cancel)

    assert result.fetched == 1
    assert result.imported == 0
    assert services.ledger.count() == 0


def test_unparsable_exchange_record_is_reported(services, connected_fake):
    connected_fake.pages = [[trade("T1"), {"qty": "1"}]]
    result = services.ingestion.sync_exchange("fakex")
    assert result.imported == 1
    assert result.skipped_invalid == 1
    assert result.errors[0].row == 2


def test_balances_go_through_the_service(services, connected_fake):
    balances = services.exchanges.get_balances("fakex")
    assert balances == {"BTC": Decimal("0.5"), "EUR": Decimal("120.25")}


def test_delete_credentials(services, connected_fake):
    assert services.exchanges.delete_credentials("fakex") is True
    assert services.exchanges.delete_credentials("fakex") is False
    with pytest.raises(UnknownExchange):
        services.exchanges.delete_credentials("mtgox")
