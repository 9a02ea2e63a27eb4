from __future__ import annotations
import datetime
from decimal import Decimal
from sqlalchemy import Boolean, DateTime, String, Text, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# ---------- Base ----------
class Base(DeclarativeBase):
    pass

# ---------- Decimal helper (exact, stored as text) ----------
class DecimalText(TypeDecorator):
    """SQLite has no real decimal type; keep the exact digits as a string."""
    impl = String(64)
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return format(Decimal(value), "f")
    def process_result_value(self, value, dialect):
        if value is None: return None
        return Decimal(value)

def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)

# ---------- ORM models ----------
class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # BUY / SELL
    type: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    btc_amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    # Store as naive UTC datetimes in SQLite
    transaction_date: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    original_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    original_price_per_btc: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    original_total_cost: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    original_fee: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    original_fee_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)

    eur_price_per_btc: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    eur_total_cost: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    eur_fee: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    eur_rate_used: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    eur_rate_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    usd_price_per_btc: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    usd_total_cost: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    usd_fee: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    usd_rate_used: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    usd_rate_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=_utcnow,
    )

Index("idx_ledger_type_date", LedgerTransaction.type, LedgerTransaction.transaction_date)
# Exchange-native ids; uniqueness is enforced by the sync dedup step, not the schema
Index("idx_ledger_source_external_id", LedgerTransaction.source, LedgerTransaction.external_id)

# One row per configured exchange; secrets_json maps field name -> "hexiv:hexct"
class ExchangeCredential(Base):
    __tablename__ = "exchange_credentials"
    exchange_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    secrets_json: Mapped[str] = mapped_column(Text, nullable=False)
    last_updated: Mapped[str] = mapped_column(String(32), nullable=False)

# Rate cache persisted between restarts
class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    from_currency: Mapped[str] = mapped_column(String(8), primary_key=True)
    to_currency: Mapped[str] = mapped_column(String(8), primary_key=True)
    rate: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    observed_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
