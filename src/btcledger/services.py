from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import requests
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, load_settings
from .currency import CurrencyConverter, HttpRateSource, RateSource, SqlRateStore
from .db import init_db, make_engine, make_session_factory
from .exchange_service import ExchangeService
from .exchanges import ExchangeAdapter, build_session
from .ingestion import IngestionService
from .ledger import SqlLedger
from .log import configure_logging
from .parsers import FormatRegistry, default_registry
from .vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, built once per process."""
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    vault: CredentialVault
    converter: CurrencyConverter
    ledger: SqlLedger
    registry: FormatRegistry
    exchanges: ExchangeService
    ingestion: IngestionService


def build_services(
    settings: Optional[Settings] = None,
    *,
    rate_source: Optional[RateSource] = None,
    http_session: Optional[requests.Session] = None,
    adapter_factory: Optional[Callable[[CredentialVault], Iterable[ExchangeAdapter]]] = None,
) -> Services:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = make_engine(settings.db_url)
    init_db(engine)
    factory = make_session_factory(engine)

    if settings.uses_default_key:
        logger.warning("BTCLEDGER_ENCRYPTION_KEY is not set; credentials are encrypted with the development key")
    vault = CredentialVault(factory, settings.encryption_key, allow_plaintext=settings.allow_plaintext_credentials)

    session = http_session or build_session(settings.http_retries)
    converter = CurrencyConverter(
        rate_source or HttpRateSource(settings.rates_url, session=session, timeout=settings.http_timeout),
        store=SqlRateStore(factory),
        ttl_seconds=settings.rate_ttl_seconds,
        retry_seconds=settings.rate_retry_seconds,
    )

    if adapter_factory is None:
        exchanges = ExchangeService.with_defaults(
            vault, session=session, timeout=settings.http_timeout, retries=settings.http_retries,
        )
    else:
        exchanges = ExchangeService(vault, adapter_factory(vault))

    ledger = SqlLedger(factory)
    registry = default_registry(settings.fallback_currency)
    ingestion = IngestionService(registry, converter, ledger, exchanges)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=factory,
        vault=vault,
        converter=converter,
        ledger=ledger,
        registry=registry,
        exchanges=exchanges,
        ingestion=ingestion,
    )
