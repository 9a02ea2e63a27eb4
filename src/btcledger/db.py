from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# ---------- Engine / Session ----------

def make_engine(db_url: str) -> Engine:
    # echo=False to keep tests quiet
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    return create_engine(db_url, future=True, echo=False, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )

# ---------- Init helpers ----------

def _ensure_columns(conn, table: str, required: dict[str, str]) -> None:
    """
    Ensure each column in `required` exists on `table`.  For each missing col,
    perform ALTER TABLE … ADD COLUMN with the provided SQL snippet (type/default/constraints).
    """
    rows = conn.exec_driver_sql(f"PRAGMA table_info('{table}')").fetchall()
    existing = {row[1] for row in rows}  # row[1] = name

    for col_name, col_spec in required.items():
        if col_name not in existing:
            conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_spec}")


def _ensure_compatibility_objects(engine: Engine) -> None:
    """
    Ledger files created before notes / fee currency / fallback flags were
    tracked get the missing columns added in place (SQLite only, no Alembic).
    """
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        _ensure_columns(
            conn,
            "ledger_transactions",
            {
                "notes": "TEXT",
                "original_fee_currency": "VARCHAR(8)",
                "eur_rate_fallback": "BOOLEAN NOT NULL DEFAULT 0",
                "usd_rate_fallback": "BOOLEAN NOT NULL DEFAULT 0",
            },
        )


def init_db(engine: Engine) -> None:
    """
    Create ORM tables and ensure compatibility columns exist.
    """
    # Import models here to avoid circular imports
    from .models import Base  # noqa: WPS433 (import inside function)

    # Create ORM-managed tables
    Base.metadata.create_all(bind=engine)  # no-ops on existing

    _ensure_compatibility_objects(engine)

# convenience context manager used by the ledger, the vault and the rate store
@contextmanager
def db_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
