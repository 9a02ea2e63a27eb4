from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Protocol

from ..currency import SUPPORTED_CURRENCIES
from ..errors import RecordParseError
from ..schemas import TransactionDraft

ZERO = Decimal("0")
STABLECOINS = {"USDT": "USD", "USDC": "USD", "BUSD": "USD"}
BTC_CODES = ("XXBT", "XBT", "BTC")


@dataclass
class RawContent:
    """
    What the reader hands to the registry.
    kind == "rows": lower-cased `headers` and one dict per data row.
    kind == "payload": the decoded JSON document.
    """
    kind: str
    headers: tuple[str, ...] = ()
    rows: list[dict[str, str]] = field(default_factory=list)
    payload: Any = None
    delimiter: str = ","

    @property
    def header_set(self) -> frozenset[str]:
        return frozenset(self.headers)

    def records(self) -> list[Any]:
        if self.kind == "rows":
            return self.rows
        if isinstance(self.payload, dict):
            return list(self.payload.get("transactions") or [])
        if isinstance(self.payload, list):
            return self.payload
        return []


class FormatParser(Protocol):
    name: str
    # exact, ordered, lower-cased header layouts this variant owns
    signatures: tuple[tuple[str, ...], ...]

    def matches(self, raw: RawContent) -> bool: ...
    def parse(self, record: dict[str, Any]) -> TransactionDraft: ...


# ---------- header helpers ----------

def count_present(raw: RawContent, names: Iterable[str]) -> int:
    hs = raw.header_set
    return sum(1 for n in names if n in hs)


def count_contained(raw: RawContent, names: Iterable[str]) -> int:
    """Like count_present, but a header only has to contain the name."""
    return sum(1 for n in names if any(n in h for h in raw.headers))


def first(record: dict[str, Any], *keys: str) -> Any:
    """Value of the first key that is present and non-empty."""
    for k in keys:
        v = record.get(k)
        if v is not None and v != "":
            return v
    return None


# ---------- value helpers ----------

def parse_decimal(value: Any, what: str, *, required: bool = False, default: Decimal = ZERO) -> Decimal:
    """
    Lenient number parsing for spreadsheet cells:
    strips currency symbols / units, handles "1,234.5" and "0,5".
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        if required:
            raise RecordParseError(f"Missing {what}")
        return default
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))

    s = re.sub(r"[^0-9.,\-]", "", str(value))
    if "," in s and "." in s:
        s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", "") if re.fullmatch(r"-?\d{1,3}(,\d{3})+", s) else s.replace(",", ".")
    try:
        return Decimal(s)
    except InvalidOperation:
        raise RecordParseError(f"Invalid {what}: {value!r}") from None


def split_amount_unit(value: Any, what: str) -> tuple[Decimal, str]:
    """'0.00297BTC' -> (Decimal('0.00297'), 'BTC')"""
    m = re.fullmatch(r"\s*([-0-9.,]+)\s*([A-Za-z]*)\s*", str(value or ""))
    if not m:
        raise RecordParseError(f"Invalid {what}: {value!r}")
    return parse_decimal(m.group(1), what, required=True), m.group(2).upper()


def _utc_naive(dt: datetime.datetime) -> datetime.datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return dt


_DATE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
)


def parse_date(value: Any) -> datetime.datetime:
    """
    Source date -> naive UTC datetime.
    Accepts ISO-8601 (with or without 'Z'), unix seconds / milliseconds,
    MM/DD/YYYY and DD.MM.YYYY (optionally with a time).
    A missing value means "now".
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return _utc_naive(datetime.datetime.now(datetime.timezone.utc))

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(float(value))

    s = str(value).strip()
    if re.fullmatch(r"\d{9,13}(\.\d+)?", s):
        return _from_epoch(float(s))

    iso = s[:-1] + "+00:00" if s.endswith("Z") else s
    # fromisoformat wants exactly 6 fractional digits on older interpreters
    iso = re.sub(r"\.(\d+)", lambda m: "." + m.group(1)[:6].ljust(6, "0"), iso)
    try:
        return _utc_naive(datetime.datetime.fromisoformat(iso))
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(s, fmt)
        except ValueError:
            continue
    raise RecordParseError(f"Invalid date: {value!r}")


def _from_epoch(ts: float) -> datetime.datetime:
    if ts > 1e11:  # milliseconds
        ts = ts / 1000
    return datetime.datetime.fromtimestamp(ts, datetime.timezone.utc).replace(tzinfo=None)


def parse_side(value: Any, default: Optional[str] = None) -> str:
    s = str(value or default or "").strip().upper()
    if s in ("BUY", "SELL"):
        return s
    raise RecordParseError(f"Invalid transaction type: {value!r} (expected BUY or SELL)")


def normalize_currency(code: Any) -> tuple[str, Optional[str]]:
    """Upper-case a currency code; stablecoins map to USD with a note."""
    c = str(code or "").strip().upper()
    if c in STABLECOINS:
        return STABLECOINS[c], f"Quoted in {c} (treated as {STABLECOINS[c]})"
    return c, None


def scan_currency(record: dict[str, Any], fallback: str) -> str:
    """
    Best-effort currency for records that do not state one:
    an explicit currency column, then a code embedded in a column name
    such as "Fiat (EUR)" or "price eur", then `fallback`.
    """
    explicit = first(record, "original currency", "original_currency", "currency")
    if explicit:
        return str(explicit).strip().upper()

    for header in record:
        m = re.search(r"\(([a-z]{3})\)", header)
        if m and any(t in header for t in ("fiat", "price", "cost", "total")) and m.group(1) != "btc":
            return m.group(1).upper()

    for header in record:
        tokens = set(re.split(r"[^a-z]+", header))
        for code in SUPPORTED_CURRENCIES:
            if code.lower() in tokens:
                return code
    return fallback


def pair_quote_currency(pair: Any) -> str:
    """
    Quote currency of a BTC trading pair.
    Understands Kraken ("XXBTZEUR", "XBTUSD"), Binance ("BTCUSDT") and
    slash / dash forms ("BTC/EUR", "BTC-USD").
    """
    p = str(pair or "").strip().upper()
    for sep in ("/", "-"):
        if sep in p:
            base, quote = p.split(sep, 1)
            if base not in BTC_CODES:
                raise RecordParseError(f"Not a BTC pair: {pair!r}")
            return quote
    for prefix in BTC_CODES:
        if p.startswith(prefix) and len(p) > len(prefix):
            quote = p[len(prefix):]
            if len(quote) == 4 and quote[0] in "ZX":
                quote = quote[1:]
            return quote
    raise RecordParseError(f"Not a BTC pair: {pair!r}")


def join_notes(*parts: Optional[str]) -> Optional[str]:
    text = "; ".join(p for p in parts if p)
    return text or None


def price_from(total: Decimal, amount: Decimal) -> Decimal:
    return abs(total) / amount if amount > 0 else ZERO


def fee_in_quote(
    fee: Decimal, fee_asset: str, price: Decimal, currency: str, raw_fee: Any = None,
) -> tuple[Decimal, str, Optional[str]]:
    """
    (fee, fee_currency, note) for a fee paid in `fee_asset`.
    BTC fees are valued at the trade price; fees in coins we cannot price
    (BNB and the like) become 0 in the quote currency with a note.
    """
    if fee_asset == "BTC":
        return fee * price, currency, None
    if fee_asset not in SUPPORTED_CURRENCIES:
        return ZERO, currency, f"Fee paid in {fee_asset}: {raw_fee if raw_fee is not None else fee}"
    return fee, fee_asset, None
