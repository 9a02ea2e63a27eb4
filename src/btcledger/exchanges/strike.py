from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterator

from ..errors import RecordParseError
from ..schemas import CredentialField, TransactionDraft
from .base import ExchangeAdapter, SyncOptions

logger = logging.getLogger(__name__)


class StrikeAdapter(ExchangeAdapter):
    """
    Strike exposes balances over its API but no trade history we can use;
    history comes in through the Strike CSV export instead.
    """

    id = "strike"
    name = "Strike"
    base_url = "https://api.strike.me/v1"
    credential_fields = (
        CredentialField(key="apiKey", label="API Key", type="password"),
    )

    def _get(self, path: str, creds: dict[str, str]) -> Any:
        return self._request(
            "GET",
            self.base_url + path,
            headers={"Authorization": f"Bearer {creds['apiKey']}", "Accept": "application/json"},
        )

    def _probe(self, creds: dict[str, str]) -> None:
        self._get("/accounts/profile", creds)

    def _fetch_balances(self, creds: dict[str, str]) -> dict[str, Decimal]:
        balances: dict[str, Decimal] = {}
        for b in self._get("/balances", creds) or []:
            amount = Decimal(str(b.get("current") or b.get("available") or 0))
            if amount > 0:
                balances[b.get("currency") or "?"] = amount
        return balances

    def _iter_records(self, creds: dict[str, str], options: SyncOptions) -> Iterator[dict[str, Any]]:
        logger.warning("Strike has no transaction history API; import the Strike CSV export instead")
        return iter(())

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        raise RecordParseError("Strike API records are not supported", record)
