from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

import requests

from .errors import CredentialInvalid, UnknownExchange
from .exchanges import ADAPTER_CLASSES, ExchangeAdapter
from .schemas import ExchangeInfo
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class ExchangeService:
    """Registry of exchange adapters plus the credential management entry points."""

    def __init__(self, vault: CredentialVault, adapters: Iterable[ExchangeAdapter]):
        self.vault = vault
        self._adapters: dict[str, ExchangeAdapter] = {a.id: a for a in adapters}

    @classmethod
    def with_defaults(
        cls,
        vault: CredentialVault,
        session: requests.Session | None = None,
        timeout: float = 15.0,
        retries: int = 3,
    ) -> "ExchangeService":
        return cls(vault, [c(vault, session=session, timeout=timeout, retries=retries) for c in ADAPTER_CLASSES])

    def adapter(self, exchange_id: str) -> ExchangeAdapter:
        try:
            return self._adapters[exchange_id]
        except KeyError:
            raise UnknownExchange(exchange_id) from None

    def available_exchanges(self) -> list[ExchangeInfo]:
        configured = set(self.vault.list())
        return [
            ExchangeInfo(
                id=a.id,
                name=a.get_name(),
                credentials=a.get_required_credentials(),
                connected=a.id in configured,
            )
            for a in self._adapters.values()
        ]

    def test_connection(self, exchange_id: str, credentials: dict[str, str]) -> bool:
        return self.adapter(exchange_id).test_connection(credentials)

    def save_credentials(self, exchange_id: str, credentials: dict[str, str]) -> None:
        """Test first; only credentials that work are stored."""
        adapter = self.adapter(exchange_id)
        known = {f.key for f in adapter.get_required_credentials()}
        fields = {k: v for k, v in credentials.items() if k in known}
        if not adapter.test_connection(fields):
            raise CredentialInvalid(exchange_id)
        self.vault.save(exchange_id, fields)

    def delete_credentials(self, exchange_id: str) -> bool:
        self.adapter(exchange_id)
        return self.vault.delete(exchange_id)

    def get_balances(self, exchange_id: str) -> dict[str, Decimal]:
        return self.adapter(exchange_id).get_balances()
