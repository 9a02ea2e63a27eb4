# errors.py
"""
Error taxonomy for ingestion.

Every error carries:
  code    -> stable, machine-checkable reason code (snake_case)
  message -> human-readable text, safe to show to users (never contains secrets)

Per-record errors (RecordParseError, UnsupportedCurrency) are collected by the
orchestrator and reported; whole-run errors end the run in the Failed state.
"""

from __future__ import annotations

from typing import Any, Iterable


class IngestError(Exception):
    code = "ingest_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class UnsupportedFileType(IngestError):
    code = "unsupported_file_type"
    status_code = 422

    def __init__(self, filename: str):
        super().__init__(f"Unsupported file type for {filename!r}; upload a .csv or .json file")
        self.filename = filename


class UnrecognizedFormat(IngestError):
    code = "unrecognized_format"
    status_code = 422

    def __init__(self, tried: Iterable[str]):
        self.tried = list(tried)
        super().__init__(f"Unknown file format. Formats tried: {', '.join(self.tried)}")


class RecordParseError(IngestError):
    code = "record_parse_error"

    def __init__(self, reason: str, raw: Any = None):
        super().__init__(reason)
        self.raw = raw


class UnsupportedCurrency(IngestError):
    code = "unsupported_currency"

    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


class RateUnavailable(IngestError):
    code = "rate_unavailable"

    def __init__(self, from_currency: str, to_currency: str):
        super().__init__(f"No conversion rate available for {from_currency}/{to_currency}")
        self.from_currency = from_currency
        self.to_currency = to_currency


class CredentialInvalid(IngestError):
    code = "credential_invalid"

    def __init__(self, exchange_id: str):
        super().__init__(f"Invalid credentials for exchange: {exchange_id}")
        self.exchange_id = exchange_id


class CredentialCorrupted(IngestError):
    code = "credential_corrupted"

    def __init__(self, exchange_id: str, field: str):
        super().__init__(f"Stored credential field {field!r} for {exchange_id} could not be decrypted")
        self.exchange_id = exchange_id
        self.field = field


class UnknownExchange(IngestError):
    code = "unknown_exchange"
    status_code = 404

    def __init__(self, exchange_id: str):
        super().__init__(f"No adapter found for exchange: {exchange_id}")
        self.exchange_id = exchange_id


class ExchangeNotConfigured(IngestError):
    code = "exchange_not_configured"

    def __init__(self, exchange_id: str):
        super().__init__(f"Could not connect to exchange {exchange_id}; save valid credentials first")
        self.exchange_id = exchange_id


class NetworkFailure(IngestError):
    code = "network_failure"
    status_code = 502

    def __init__(self, exchange: str, detail: str):
        super().__init__(f"{exchange} request failed: {detail}")
        self.exchange = exchange


class MergeConflict(IngestError):
    code = "merge_conflict"
    status_code = 409


class LedgerWriteError(IngestError):
    code = "ledger_write_error"
    status_code = 500
