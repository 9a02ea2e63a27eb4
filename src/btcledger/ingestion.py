# ingestion.py
"""
Ingestion orchestrator: one run per file upload or exchange sync.

States: STARTED -> FETCHING -> NORMALIZING -> DEDUPLICATING -> MERGING -> COMMITTED
        FAILED is reachable from any state and keeps the counters reached so far.

- FETCHING: file -> read + detect + parse; exchange -> paged adapter calls + parse.
- NORMALIZING: drafts -> CanonicalTransaction (EUR + USD via the converter).
- DEDUPLICATING / MERGING: under one process-wide lock, read the ledger,
  drop duplicates, append the survivors in a single write.
Cancellation (threading.Event) is honoured in FETCHING and NORMALIZING only.
"""
from __future__ import annotations

import logging
import threading
import uuid
from enum import Enum
from typing import Any, Hashable, Iterable, Optional

from .currency import CurrencyConverter
from .errors import CredentialInvalid, ExchangeNotConfigured, IngestError, NetworkFailure
from .exchange_service import ExchangeService
from .exchanges import SyncOptions, sanitize_date
from .ledger import Ledger
from .parsers import FormatRegistry, read_content
from .schemas import CanonicalTransaction, Converted, RecordError, RunFailure, RunResult, TransactionDraft

logger = logging.getLogger(__name__)

# single writer for dedup + merge across all runs in this process
_MERGE_LOCK = threading.Lock()


class RunState(str, Enum):
    STARTED = "started"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DEDUPLICATING = "deduplicating"
    MERGING = "merging"
    COMMITTED = "committed"
    FAILED = "failed"


class IngestionRun:
    def __init__(self, kind: str, cancel: Optional[threading.Event] = None):
        self.kind = kind
        self.cancel = cancel or threading.Event()
        self.state = RunState.STARTED
        self.history: list[RunState] = [RunState.STARTED]
        self.result = RunResult(state=self.state.value)

    def advance(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)
        self.result.state = state.value
        logger.debug("%s run (%s): %s", self.kind, self.result.source or "?", state.value)

    def fail(self, exc: IngestError) -> RunResult:
        logger.warning("%s run failed in %s: %s", self.kind, self.state.value, exc.message)
        self.advance(RunState.FAILED)
        self.result.failure = RunFailure(code=exc.code, message=exc.message)
        return self.finish()

    def finish(self) -> RunResult:
        r = self.result
        r.skipped = r.skipped_duplicates + r.skipped_invalid
        return r

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


# ---------- dedup keys ----------

def content_key(tx: TransactionDraft) -> tuple:
    """(type, btc_amount, original price, transaction date) -- file imports."""
    return (
        tx.type.value,
        tx.btc_amount,
        tx.original.price_per_btc,
        tx.transaction_date.replace(microsecond=0),
    )


def native_key(tx: TransactionDraft) -> Optional[tuple]:
    """(source, exchange-native id) -- exchange sync; None without a native id."""
    if not tx.external_id:
        return None
    return (tx.source, tx.external_id)


class Normalizer:
    def __init__(self, converter: CurrencyConverter):
        self.converter = converter

    def normalize(self, draft: TransactionDraft, tx_id: str | None = None) -> CanonicalTransaction:
        o = draft.original
        fee_ccy = o.effective_fee_currency
        converted = Converted(
            eur=self.converter.convert_triple(o.price_per_btc, o.total_cost, o.fee, o.currency, "EUR", fee_ccy),
            usd=self.converter.convert_triple(o.price_per_btc, o.total_cost, o.fee, o.currency, "USD", fee_ccy),
        )
        return CanonicalTransaction(
            **draft.model_dump(mode="python"),
            id=tx_id or uuid.uuid4().hex,
            converted=converted,
        )


class IngestionService:
    def __init__(
        self,
        registry: FormatRegistry,
        converter: CurrencyConverter,
        ledger: Ledger,
        exchanges: ExchangeService | None = None,
    ):
        self.registry = registry
        self.normalizer = Normalizer(converter)
        self.converter = converter
        self.ledger = ledger
        self.exchanges = exchanges

    # ---------- entry points ----------

    def detect(self, filename: str, data: bytes) -> str:
        """Name of the format that would be used; raises UnrecognizedFormat / UnsupportedFileType."""
        return self.registry.detect(read_content(filename, data)).name

    def import_file(
        self,
        filename: str,
        data: bytes,
        skip_duplicates: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        run = IngestionRun("import", cancel)
        run.advance(RunState.FETCHING)
        try:
            raw = read_content(filename, data)
            parser = self.registry.detect(raw)
        except IngestError as exc:
            return run.fail(exc)

        run.result.source = parser.name
        records = raw.records()
        run.result.total = len(records)
        outcome = self.registry.parse_all(
            parser, records, should_stop=run.cancel.is_set, first_row=2 if raw.kind == "rows" else 1,
        )
        run.result.fetched = outcome.seen
        logger.info("Import %s: %d record(s) as %s", filename, len(records), parser.name)
        return self._complete(run, outcome.drafts, outcome.errors, skip_duplicates, by_native_id=False)

    def sync_exchange(
        self,
        exchange_id: str,
        start_date: Any = None,
        end_date: Any = None,
        skip_duplicates: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        if self.exchanges is None:
            raise ExchangeNotConfigured(exchange_id)
        adapter = self.exchanges.adapter(exchange_id)  # UnknownExchange propagates

        run = IngestionRun("sync", cancel)
        run.result.source = exchange_id
        run.advance(RunState.FETCHING)

        if not adapter.is_configured():
            return run.fail(ExchangeNotConfigured(exchange_id))
        try:
            connected = adapter.connect()
        except NetworkFailure as exc:
            return run.fail(exc)
        if not connected:
            return run.fail(CredentialInvalid(exchange_id))

        options = SyncOptions(
            start_date=sanitize_date(start_date),
            end_date=sanitize_date(end_date),
            should_stop=run.cancel.is_set,
        )
        records: list[dict[str, Any]] = []
        try:
            for record in adapter.iter_records(options):
                records.append(record)
                run.result.fetched = len(records)
        except IngestError as exc:
            run.result.total = len(records)
            return run.fail(exc)

        run.result.total = len(records)
        outcome = self.registry.parse_all(adapter, records, should_stop=run.cancel.is_set, first_row=1)
        logger.info("Sync %s: fetched %d record(s)", exchange_id, len(records))
        return self._complete(run, outcome.drafts, outcome.errors, skip_duplicates, by_native_id=True)

    # ---------- shared tail ----------

    def _complete(
        self,
        run: IngestionRun,
        drafts: list[tuple[int, TransactionDraft]],
        errors: list[RecordError],
        skip_duplicates: bool,
        by_native_id: bool,
    ) -> RunResult:
        result = run.result
        result.errors.extend(errors)

        run.advance(RunState.NORMALIZING)
        self.converter.ensure_fresh()
        candidates: list[CanonicalTransaction] = []
        for row, draft in drafts:
            if run.cancelled:
                logger.info("Run cancelled during normalization after %d record(s)", len(candidates))
                break
            key = native_key(draft) if by_native_id else None
            tx_id = f"{draft.source}-{draft.external_id}" if key else None
            try:
                candidates.append(self.normalizer.normalize(draft, tx_id))
            except IngestError as exc:
                result.errors.append(RecordError(row=row, code=exc.code, reason=exc.message, raw=draft.model_dump(mode="json")))
        result.skipped_invalid = len(result.errors)

        with _MERGE_LOCK:
            run.advance(RunState.DEDUPLICATING)
            survivors, duplicates = self._deduplicate(candidates, skip_duplicates, by_native_id)
            result.skipped_duplicates = duplicates

            run.advance(RunState.MERGING)
            try:
                self.ledger.append_transactions(survivors)
            except IngestError as exc:
                return run.fail(exc)

        result.imported = len(survivors)
        result.transactions = [tx.id for tx in survivors]
        run.advance(RunState.COMMITTED)
        logger.info(
            "Run committed (%s): imported=%d duplicates=%d invalid=%d",
            result.source, result.imported, result.skipped_duplicates, result.skipped_invalid,
        )
        return run.finish()

    def _deduplicate(
        self,
        candidates: Iterable[CanonicalTransaction],
        skip_duplicates: bool,
        by_native_id: bool,
    ) -> tuple[list[CanonicalTransaction], int]:
        candidates = list(candidates)
        seen: set[Hashable] = set()
        ledger_ids: set[str] = set()

        if skip_duplicates or by_native_id:
            for tx in self.ledger.list_transactions():
                ledger_ids.add(tx.id)
                if skip_duplicates:
                    seen.add(content_key(tx))
                    nk = native_key(tx)
                    if nk:
                        seen.add(nk)

        survivors: list[CanonicalTransaction] = []
        batch_ids: set[Hashable] = set()
        for tx in candidates:
            nk = native_key(tx) if by_native_id else None
            if nk is not None:
                # the same native id twice in one batch is always one trade
                if nk in batch_ids or (skip_duplicates and nk in seen):
                    continue
                batch_ids.add(nk)
                if tx.id in ledger_ids:
                    # appended again on request; external_id still names the trade
                    tx = tx.model_copy(update={"id": uuid.uuid4().hex})
            elif skip_duplicates and content_key(tx) in seen:
                continue
            survivors.append(tx)
        return survivors, len(candidates) - len(survivors)
