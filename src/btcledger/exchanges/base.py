from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import CredentialInvalid, ExchangeNotConfigured, IngestError, NetworkFailure
from ..schemas import CredentialField, TransactionDraft
from ..vault import CredentialVault

logger = logging.getLogger(__name__)


def _never() -> bool:
    return False


@dataclass
class SyncOptions:
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None
    # checked between pages; True stops fetching
    should_stop: Callable[[], bool] = field(default=_never)


_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def sanitize_date(value: Any) -> Optional[datetime.date]:
    """Calendar date or None; anything unparsable is dropped, never sent upstream."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    m = _DATE.match(str(value).strip())
    if m:
        try:
            return datetime.date.fromisoformat(m.group(1))
        except ValueError:
            pass
    logger.warning("Dropping invalid date bound: %r", value)
    return None


def day_start(d: datetime.date) -> datetime.datetime:
    return datetime.datetime(d.year, d.month, d.day, tzinfo=datetime.timezone.utc)


def day_end(d: datetime.date) -> datetime.datetime:
    return day_start(d) + datetime.timedelta(days=1) - datetime.timedelta(milliseconds=1)


def build_session(retries: int = 3, backoff: float = 0.5) -> requests.Session:
    """Session that retries idempotent GETs on connection errors and 429/5xx."""
    retry = Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry))
    session.mount("http://", HTTPAdapter(max_retries=retry))
    return session


class ExchangeAdapter:
    """
    Common remote-account contract.

    Subclasses set `id`, `name`, `base_url`, `credential_fields` and implement:
      _probe(creds)                 -> raises on bad credentials
      _fetch_balances(creds)        -> {asset: amount}
      _iter_records(creds, options) -> native trade dicts, page by page
      parse(record)                 -> TransactionDraft (raises RecordParseError)
    """

    id = ""
    name = ""
    base_url = ""
    credential_fields: tuple[CredentialField, ...] = ()
    signatures: tuple[tuple[str, ...], ...] = ()

    def __init__(
        self,
        vault: CredentialVault,
        session: requests.Session | None = None,
        timeout: float = 15.0,
        retries: int = 3,
    ):
        self.vault = vault
        self.session = session or build_session(retries)
        self.timeout = timeout
        self._connected = False

    # ---------- contract ----------

    def get_name(self) -> str:
        return self.name

    def get_required_credentials(self) -> list[CredentialField]:
        return list(self.credential_fields)

    def test_connection(self, credentials: dict[str, str]) -> bool:
        """Try the credentials against the exchange. Never touches the vault."""
        try:
            return self._check(credentials)
        except IngestError as exc:
            logger.info("%s connection test failed: %s", self.name, exc.message)
            return False

    def connect(self) -> bool:
        """
        Check the stored credentials. False when they are missing or rejected;
        NetworkFailure propagates so callers can tell an outage from a bad key.
        """
        self._connected = False
        creds = self._credentials()
        if creds is None:
            return False
        try:
            self._connected = self._check(creds)
        except NetworkFailure:
            raise
        except IngestError as exc:
            logger.info("%s: stored credentials rejected: %s", self.name, exc.message)
        return self._connected

    def get_status(self) -> bool:
        return self._connected

    def is_configured(self) -> bool:
        return self.vault.has(self.id)

    def get_balances(self) -> dict[str, Decimal]:
        return self._fetch_balances(self._require_credentials())

    def iter_records(self, options: SyncOptions | None = None) -> Iterator[dict[str, Any]]:
        creds = self._require_credentials()
        yield from self._iter_records(creds, options or SyncOptions())

    def get_transactions(self, options: SyncOptions | None = None) -> list[TransactionDraft]:
        """Parsed records; ones that do not parse are logged and left out."""
        out: list[TransactionDraft] = []
        for record in self.iter_records(options):
            try:
                out.append(self.parse(record))
            except IngestError as exc:
                logger.warning("%s: skipping record: %s", self.name, exc.message)
        return out

    def matches(self, raw) -> bool:
        # adapters are selected by exchange id, never by content
        return False

    # ---------- hooks ----------

    def _probe(self, creds: dict[str, str]) -> None:
        raise NotImplementedError

    def _fetch_balances(self, creds: dict[str, str]) -> dict[str, Decimal]:
        raise NotImplementedError

    def _iter_records(self, creds: dict[str, str], options: SyncOptions) -> Iterator[dict[str, Any]]:
        raise NotImplementedError

    def parse(self, record: dict[str, Any]) -> TransactionDraft:
        raise NotImplementedError

    # ---------- helpers ----------

    def _check(self, credentials: dict[str, str]) -> bool:
        missing = [f.key for f in self.credential_fields if f.required and not credentials.get(f.key)]
        if missing:
            logger.info("%s: missing credential field(s) %s", self.name, ", ".join(missing))
            return False
        self._probe(credentials)
        return True

    def _credentials(self) -> Optional[dict[str, str]]:
        creds = self.vault.get_credentials(self.id)
        if creds is None:
            return None
        creds.pop("lastUpdated", None)
        return creds

    def _require_credentials(self) -> dict[str, str]:
        creds = self._credentials()
        if creds is None:
            raise ExchangeNotConfigured(self.id)
        return creds

    def _request(self, method: str, url: str, **kwargs) -> Any:
        """One HTTP call; transport problems become NetworkFailure, 401/403 CredentialInvalid."""
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            # the exception text can echo signed URLs; keep only its type
            raise NetworkFailure(self.name, type(exc).__name__) from exc

        if resp.status_code in (401, 403):
            raise CredentialInvalid(self.id)
        if resp.status_code >= 400:
            self._raise_for_error(resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise NetworkFailure(self.name, "response is not valid JSON") from exc

    def _raise_for_error(self, resp: requests.Response) -> None:
        raise NetworkFailure(self.name, f"HTTP {resp.status_code}")
