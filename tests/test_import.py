# tests/test_import.py
# File import runs through the orchestrator: detect, parse, normalize, dedup, merge.

from __future__ import annotations

import threading
import time
from decimal import Decimal

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

from btcledger.ingestion import RunState, content_key
from btcledger.ledger import LedgerFilter
from btcledger.models import LedgerTransaction

STANDARD_HEADER = (
    "type,btc_amount,original_price_per_btc,original_currency,original_total_amount,"
    "fees,fees_currency,transaction_date,notes"
)


def _csv(*rows: str) -> bytes:
    return ("\n".join((STANDARD_HEADER,) + rows) + "\n").encode("utf-8")


TWO_EUR_ROWS = _csv(
    "BUY,0.1,30000,EUR,3000,1.5,EUR,2024-01-05T10:00:00,first",
    "BUY,0.2,31000,EUR,6200,2,EUR,2024-01-06T10:00:00,second",
)


def test_two_eur_rows_get_both_currencies(services):
    result = services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)

    assert result.state == RunState.COMMITTED.value
    assert result.source == "standard"
    assert (result.total, result.imported, result.skipped) == (2, 2, 0)
    assert len(result.transactions) == 2

    first, second = services.ledger.list_transactions()
    for tx in (first, second):
        assert tx.converted.eur.rate_used == Decimal("1")
        assert tx.converted.eur.rate_fallback is False
        assert tx.converted.usd is not None
        assert tx.converted.usd.rate_used == Decimal("1.1")

    assert first.original.currency == "EUR"
    assert first.converted.eur.total_cost == Decimal("3000")
    assert first.converted.usd.price_per_btc == Decimal("33000")
    assert first.converted.usd.fee == Decimal("1.65")
    assert second.btc_amount == Decimal("0.2")
    assert second.notes == "second"


def test_reimport_of_same_file_is_all_duplicates(services):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    again = services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)

    assert again.imported == 0
    assert again.skipped_duplicates == 2
    assert again.skipped == 2
    assert services.ledger.count() == 2


def test_skip_duplicates_off_imports_again(services):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    again = services.ingestion.import_file("mine.csv", TWO_EUR_ROWS, skip_duplicates=False)

    assert again.imported == 2
    assert services.ledger.count() == 4


def test_duplicate_rows_inside_one_file_collapse_against_ledger_only(services):
    data = _csv(
        "BUY,0.1,30000,EUR,3000,0,EUR,2024-01-05T10:00:00,",
        "BUY,0.1,30000,EUR,3000,0,EUR,2024-01-05T10:00:00.400,",
    )
    result = services.ingestion.import_file("mine.csv", data)
    # same row twice in one file is kept; only rows already in the ledger are duplicates
    assert result.imported == 2

    again = services.ingestion.import_file("mine.csv", data)
    assert again.skipped_duplicates == 2


def test_dedup_key_ignores_sub_second_precision(services):
    services.ingestion.import_file("a.csv", _csv("SELL,0.5,40000,USD,20000,0,USD,2024-03-01T08:00:00,"))
    result = services.ingestion.import_file("b.csv", _csv("SELL,0.5,40000.00,USD,,0,USD,2024-03-01T08:00:00.750,"))
    assert result.skipped_duplicates == 1
    assert result.imported == 0


def test_unsupported_currency_is_a_per_record_error(services):
    data = _csv(
        "BUY,0.1,30000,EUR,3000,0,EUR,2024-01-05T10:00:00,",
        "BUY,0.1,30000,XYZ,3000,0,XYZ,2024-01-06T10:00:00,",
    )
    result = services.ingestion.import_file("mine.csv", data)

    assert result.state == "committed"
    assert result.imported == 1
    assert result.skipped_invalid == 1
    (err,) = result.errors
    assert err.row == 3
    assert err.code == "unsupported_currency"


def test_parse_errors_are_reported_with_rows(services):
    data = _csv(
        "BUY,abc,30000,EUR,3000,0,EUR,2024-01-05T10:00:00,",
        "BUY,0.1,30000,EUR,3000,0,EUR,2024-01-06T10:00:00,",
    )
    result = services.ingestion.import_file("mine.csv", data)
    assert result.imported == 1
    assert result.skipped_invalid == 1
    assert result.errors[0].row == 2
    assert result.errors[0].raw["btc_amount"] == "abc"


def test_unrecognized_file_fails_the_run(services):
    result = services.ingestion.import_file("x.csv", b"foo,bar\n1,2\n")
    assert result.state == RunState.FAILED.value
    assert result.failure.code == "unrecognized_format"
    assert "trezor" in result.failure.message
    assert services.ledger.count() == 0


def test_unsupported_extension_fails_the_run(services):
    result = services.ingestion.import_file("x.pdf", b"%PDF")
    assert result.failure.code == "unsupported_file_type"


def test_detect_only_reports_format(services):
    assert services.ingestion.detect("mine.csv", TWO_EUR_ROWS) == "standard"
    assert services.ledger.count() == 0


def test_cancelled_import_commits_nothing(services):
    cancel = threading.Event()
    cancel.set()
    result = services.ingestion.import_file("mine.csv", TWO_EUR_ROWS, cancel=cancel)
    assert result.imported == 0
    assert result.fetched == 0
    assert services.ledger.count() == 0


def test_rates_are_refreshed_once_per_run(services, rate_source):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    assert rate_source.calls == 1


def test_failed_rate_source_still_imports_with_fallback_flag(settings):
    from btcledger.services import build_services
    from conftest import FailingRateSource

    svc = build_services(settings, rate_source=FailingRateSource(), adapter_factory=lambda v: [])
    data = _csv("BUY,0.1,30000,GBP,3000,0,GBP,2024-01-05T10:00:00,")
    result = svc.ingestion.import_file("mine.csv", data)

    assert result.imported == 1
    (tx,) = svc.ledger.list_transactions()
    assert tx.converted.eur.rate_used == Decimal("1")
    assert tx.converted.eur.rate_fallback is True
    assert tx.converted.usd.rate_fallback is True
    svc.engine.dispose()


def test_filters_on_ledger(services):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    services.ingestion.import_file("k.json", b'[{"type": "SELL", "btc_amount": "0.05", '
                                             b'"original_price_per_btc": "35000", "original_currency": "EUR", '
                                             b'"transaction_date": "2024-02-01T00:00:00"}]')

    assert services.ledger.count(LedgerFilter(type="sell")) == 1
    assert services.ledger.count(LedgerFilter(source="standard")) == 2
    page = services.ledger.list_transactions(LedgerFilter(limit=1, offset=1))
    assert page[0].notes == "second"


def test_content_key_shape(services):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    tx = services.ledger.list_transactions()[0]
    assert content_key(tx) == ("BUY", Decimal("0.1"), Decimal("30000"), tx.transaction_date)


def test_concurrent_imports_merge_one_at_a_time(services, monkeypatch):
    ledger = services.ingestion.ledger
    append = ledger.append_transactions
    active = []
    overlaps = []
    guard = threading.Lock()

    def tracking_append(batch):
        with guard:
            active.append(1)
            overlaps.append(len(active))
        time.sleep(0.05)
        try:
            append(batch)
        finally:
            with guard:
                active.pop()

    monkeypatch.setattr(ledger, "append_transactions", tracking_append)

    shared = "BUY,0.3,32000,EUR,9600,0,EUR,2024-01-09T09:00:00,shared"
    files = {
        "a.csv": _csv("BUY,0.1,30000,EUR,3000,0,EUR,2024-01-05T10:00:00,a", shared),
        "b.csv": _csv("SELL,0.2,31000,EUR,6200,0,EUR,2024-01-07T10:00:00,b", shared),
    }
    start = threading.Barrier(len(files))
    results = {}

    def worker(name):
        start.wait()
        results[name] = services.ingestion.import_file(name, files[name])

    threads = [threading.Thread(target=worker, args=(name,)) for name in files]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert max(overlaps) == 1
    assert all(r.state == RunState.COMMITTED.value for r in results.values())
    # whichever run merged second saw the shared row of the first
    assert sorted(r.imported for r in results.values()) == [1, 2]
    assert services.ledger.count() == 3
    assert sorted(tx.notes for tx in services.ledger.list_transactions()) == ["a", "b", "shared"]


def test_failed_write_leaves_ledger_untouched(services):
    services.ingestion.import_file("mine.csv", TWO_EUR_ROWS)
    inserted = []

    def fail_on_second(mapper, connection, target):
        inserted.append(target.id)
        if len(inserted) == 2:
            raise SQLAlchemyError("disk I/O error")

    event.listen(LedgerTransaction, "after_insert", fail_on_second)
    try:
        result = services.ingestion.import_file("more.csv", _csv(
            "BUY,0.4,33000,EUR,13200,0,EUR,2024-02-05T10:00:00,",
            "BUY,0.5,34000,EUR,17000,0,EUR,2024-02-06T10:00:00,",
            "SELL,0.1,35000,EUR,3500,0,EUR,2024-02-07T10:00:00,",
        ))
    finally:
        event.remove(LedgerTransaction, "after_insert", fail_on_second)

    assert len(inserted) == 2
    assert result.state == RunState.FAILED.value
    assert result.failure.code == "ledger_write_error"
    assert result.imported == 0
    assert services.ledger.count() == 2


def test_binance_row_with_bnb_fee_is_imported(services):
    data = (
        "Date(UTC),Pair,Base Asset,Quote Asset,Type,Price,Amount,Total,Fee,Fee Coin\n"
        "2024-01-05 10:00:00,BTCEUR,BTC,EUR,BUY,40000,0.01,400,0.0001,BNB\n"
    ).encode("utf-8")
    result = services.ingestion.import_file("binance.csv", data)

    assert result.source == "binance"
    assert result.imported == 1
    assert result.skipped_invalid == 0
    (tx,) = services.ledger.list_transactions()
    assert tx.converted.usd.fee == Decimal("0")
