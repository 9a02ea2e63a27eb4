# ledger.py
"""
Ledger persistence boundary.

The orchestrator only talks to the `Ledger` protocol:
  append_transactions(batch)  -> all-or-nothing append
  list_transactions(filter)   -> canonical records, oldest first

SqlLedger is the SQLAlchemy implementation over `ledger_transactions`.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import db_session
from .errors import LedgerWriteError, MergeConflict
from .models import LedgerTransaction
from .schemas import CanonicalTransaction, Converted, ConvertedAmounts, OriginalAmounts

logger = logging.getLogger(__name__)


@dataclass
class LedgerFilter:
    source: Optional[str] = None
    type: Optional[str] = None
    date_from: Optional[datetime.datetime] = None
    date_to: Optional[datetime.datetime] = None
    limit: Optional[int] = None
    offset: int = 0


class Ledger(Protocol):
    def append_transactions(self, batch: Sequence[CanonicalTransaction]) -> None: ...
    def list_transactions(self, flt: Optional[LedgerFilter] = None) -> list[CanonicalTransaction]: ...


# ---------- row <-> schema ----------

def to_row(tx: CanonicalTransaction) -> LedgerTransaction:
    eur, usd = tx.converted.eur, tx.converted.usd
    return LedgerTransaction(
        id=tx.id,
        type=tx.type.value,
        btc_amount=tx.btc_amount,
        transaction_date=tx.transaction_date,
        source=tx.source,
        external_id=tx.external_id,
        notes=tx.notes,
        original_currency=tx.original.currency,
        original_price_per_btc=tx.original.price_per_btc,
        original_total_cost=tx.original.total_cost,
        original_fee=tx.original.fee,
        original_fee_currency=tx.original.fee_currency,
        eur_price_per_btc=eur.price_per_btc,
        eur_total_cost=eur.total_cost,
        eur_fee=eur.fee,
        eur_rate_used=eur.rate_used,
        eur_rate_fallback=eur.rate_fallback,
        usd_price_per_btc=usd.price_per_btc,
        usd_total_cost=usd.total_cost,
        usd_fee=usd.fee,
        usd_rate_used=usd.rate_used,
        usd_rate_fallback=usd.rate_fallback,
    )


def from_row(row: LedgerTransaction) -> CanonicalTransaction:
    return CanonicalTransaction(
        id=row.id,
        type=row.type,
        btc_amount=row.btc_amount,
        transaction_date=row.transaction_date,
        source=row.source,
        external_id=row.external_id,
        notes=row.notes,
        original=OriginalAmounts(
            currency=row.original_currency,
            price_per_btc=row.original_price_per_btc,
            total_cost=row.original_total_cost,
            fee=row.original_fee,
            fee_currency=row.original_fee_currency,
        ),
        converted=Converted(
            eur=ConvertedAmounts(
                price_per_btc=row.eur_price_per_btc,
                total_cost=row.eur_total_cost,
                fee=row.eur_fee,
                rate_used=row.eur_rate_used,
                rate_fallback=bool(row.eur_rate_fallback),
            ),
            usd=ConvertedAmounts(
                price_per_btc=row.usd_price_per_btc,
                total_cost=row.usd_total_cost,
                fee=row.usd_fee,
                rate_used=row.usd_rate_used,
                rate_fallback=bool(row.usd_rate_fallback),
            ),
        ),
    )


class SqlLedger:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def append_transactions(self, batch: Sequence[CanonicalTransaction]) -> None:
        """One DB transaction for the whole batch; any failure leaves nothing behind."""
        if not batch:
            return
        try:
            with db_session(self.session_factory) as db:
                db.add_all([to_row(tx) for tx in batch])
                db.flush()
        except IntegrityError as exc:
            logger.error("Ledger append rejected (%d rows): %s", len(batch), exc.orig)
            raise MergeConflict(f"{len(batch)} transaction(s) conflict with existing ledger entries") from exc
        except SQLAlchemyError as exc:
            logger.error("Ledger append failed (%d rows): %s", len(batch), exc)
            raise LedgerWriteError(f"Could not write {len(batch)} transaction(s) to the ledger") from exc
        logger.info("Appended %d transaction(s) to the ledger", len(batch))

    def _query(self, flt: LedgerFilter):
        q = select(LedgerTransaction)
        if flt.source:
            q = q.where(LedgerTransaction.source == flt.source)
        if flt.type:
            q = q.where(LedgerTransaction.type == flt.type.upper())
        if flt.date_from:
            q = q.where(LedgerTransaction.transaction_date >= flt.date_from)
        if flt.date_to:
            q = q.where(LedgerTransaction.transaction_date <= flt.date_to)
        return q

    def list_transactions(self, flt: Optional[LedgerFilter] = None) -> list[CanonicalTransaction]:
        flt = flt or LedgerFilter()
        q = self._query(flt).order_by(LedgerTransaction.transaction_date, LedgerTransaction.created_at)
        if flt.offset:
            q = q.offset(flt.offset)
        if flt.limit is not None:
            q = q.limit(flt.limit)
        with db_session(self.session_factory) as db:
            return [from_row(r) for r in db.scalars(q).all()]

    def count(self, flt: Optional[LedgerFilter] = None) -> int:
        q = self._query(flt or LedgerFilter()).subquery()
        with db_session(self.session_factory) as db:
            return int(db.scalar(select(func.count()).select_from(q)) or 0)
