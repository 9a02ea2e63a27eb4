from __future__ import annotations

"""
Pydantic schemas (data models) used by the parsers, the orchestrator and the API.
- TransactionDraft is what a format parser or an exchange adapter produces:
  the canonical shape with source-declared (unconverted) money only.
- CanonicalTransaction adds the identity and the converted EUR/USD figures.
- Schemas are separate from the ORM rows in models.py; ledger.py maps between them.

Money is Decimal end to end and serialized as plain strings.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class TxType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


def _dec_to_str(v: Decimal | None) -> str | None:
    if v is None:
        return None
    s = format(v, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


class OriginalAmounts(BaseModel):
    """Source-declared money, exactly as the record stated it."""

    currency: str
    price_per_btc: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    fee_currency: Optional[str] = None

    @field_validator("currency", "fee_currency", mode="before")
    @classmethod
    def _upper(cls, v):
        return None if v is None else str(v).strip().upper()

    @field_serializer("price_per_btc", "total_cost", "fee")
    def _ser(self, v: Decimal) -> str | None:
        return _dec_to_str(v)

    @property
    def effective_fee_currency(self) -> str:
        return self.fee_currency or self.currency


class ConvertedAmounts(BaseModel):
    price_per_btc: Decimal
    total_cost: Decimal
    fee: Decimal
    rate_used: Decimal
    rate_fallback: bool = False

    @field_serializer("price_per_btc", "total_cost", "fee", "rate_used")
    def _ser(self, v: Decimal) -> str | None:
        return _dec_to_str(v)


class Converted(BaseModel):
    eur: ConvertedAmounts
    usd: ConvertedAmounts


class TransactionDraft(BaseModel):
    """
    A parsed record before normalization.

    Fields:
      type: BUY or SELL.
      btc_amount: strictly positive.
      transaction_date: naive UTC datetime as declared by the source.
      source: origin tag (format name, exchange id, "import").
      external_id: source-native trade/order id when the source has one.
      original: unconverted money.
    """

    type: TxType
    btc_amount: Decimal
    transaction_date: datetime
    source: str
    external_id: Optional[str] = None
    notes: Optional[str] = None
    original: OriginalAmounts

    @field_validator("btc_amount")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("btc_amount must be greater than zero")
        return v

    @field_serializer("btc_amount")
    def _ser_amount(self, v: Decimal) -> str | None:
        return _dec_to_str(v)


class CanonicalTransaction(TransactionDraft):
    model_config = ConfigDict(from_attributes=True)

    id: str
    converted: Converted


class RecordError(BaseModel):
    row: Optional[int] = None
    code: str
    reason: str
    raw: Any = None


class RunFailure(BaseModel):
    code: str
    message: str


class RunResult(BaseModel):
    """
    Summary of one ingestion run (file import or exchange sync).
    `skipped` is duplicates + invalid; `transactions` lists the ids imported.
    """

    state: str
    source: Optional[str] = None
    total: int = 0
    fetched: int = 0
    imported: int = 0
    skipped_duplicates: int = 0
    skipped_invalid: int = 0
    skipped: int = 0
    errors: List[RecordError] = Field(default_factory=list)
    failure: Optional[RunFailure] = None
    transactions: List[str] = Field(default_factory=list)


class CredentialField(BaseModel):
    key: str
    label: str
    type: str = "text"
    required: bool = True
    placeholder: Optional[str] = None


class ExchangeInfo(BaseModel):
    id: str
    name: str
    credentials: List[CredentialField]
    connected: bool


class DetectResponse(BaseModel):
    detected_format: str


class ImportResponse(BaseModel):
    imported: int
    skipped: int
    skipped_duplicates: int
    skipped_invalid: int
    total: int
    detected_format: Optional[str]
    errors: List[RecordError]
    failure: Optional[RunFailure] = None


class SyncRequest(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    skip_duplicates: bool = True


class CredentialsPayload(BaseModel):
    credentials: dict[str, str]


class ConnectionTestResponse(BaseModel):
    exchange: str
    success: bool


class TransactionPage(BaseModel):
    items: List[CanonicalTransaction]
    total: int
    limit: int
    offset: int
