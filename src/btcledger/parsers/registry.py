from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from pydantic import ValidationError

from ..errors import RecordParseError, UnrecognizedFormat
from ..schemas import RecordError, TransactionDraft
from .base import FormatParser, RawContent
from .binance import BinanceParser
from .bitcoin21 import Bitcoin21Parser
from .btctracker import BtcTrackerParser, LegacyParser
from .coinbase import CoinbaseParser
from .json_export import JsonExportParser
from .kraken import KrakenParser
from .standard import StandardParser
from .strike import StrikeParser
from .trezor import TrezorParser

logger = logging.getLogger(__name__)


@dataclass
class ParseOutcome:
    drafts: list[tuple[int, TransactionDraft]] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    # records looked at before a stop request (== all of them when not cancelled)
    seen: int = 0


def _validation_reason(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


class FormatRegistry:
    """Ordered list of parser variants; first match wins."""

    def __init__(self, parsers: Iterable[FormatParser]):
        self.parsers: list[FormatParser] = list(parsers)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.parsers]

    def detect(self, raw: RawContent) -> FormatParser:
        """
        Exact header signatures first, in priority order; then each
        variant's own (looser) `matches`. No match -> UnrecognizedFormat.
        """
        if raw.kind == "rows":
            for parser in self.parsers:
                if raw.headers in parser.signatures:
                    logger.debug("Exact header match: %s", parser.name)
                    return parser
        for parser in self.parsers:
            if parser.matches(raw):
                logger.debug("Loose header match: %s", parser.name)
                return parser
        raise UnrecognizedFormat(self.names)

    def parse_all(
        self,
        parser: FormatParser,
        records: Sequence[Any],
        should_stop: Callable[[], bool] = lambda: False,
        first_row: int = 2,
    ) -> ParseOutcome:
        """
        Parse every record; failures are collected with the offending row,
        never raised. `first_row` is 2 for CSV (row 1 is the header).
        """
        out = ParseOutcome()
        for i, record in enumerate(records, start=first_row):
            if should_stop():
                logger.info("Parsing stopped after %d record(s)", out.seen)
                break
            out.seen += 1
            try:
                out.drafts.append((i, parser.parse(record)))
            except RecordParseError as exc:
                out.errors.append(RecordError(row=i, code=exc.code, reason=exc.message, raw=record))
            except ValidationError as exc:
                out.errors.append(RecordError(
                    row=i, code=RecordParseError.code, reason=_validation_reason(exc), raw=record,
                ))
        return out


def default_registry(fallback_currency: str = "USD") -> FormatRegistry:
    return FormatRegistry([
        TrezorParser(),
        LegacyParser(fallback_currency),
        BtcTrackerParser(fallback_currency),
        KrakenParser(),
        BinanceParser(),
        CoinbaseParser(),
        StrikeParser(),
        Bitcoin21Parser(),
        StandardParser(fallback_currency),
        JsonExportParser(fallback_currency),
    ])
