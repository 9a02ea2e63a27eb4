from .base import ExchangeAdapter, SyncOptions, build_session, sanitize_date
from .binance import BinanceAdapter
from .coinbase import CoinbaseAdapter
from .kraken import KrakenAdapter
from .strike import StrikeAdapter

ADAPTER_CLASSES = (KrakenAdapter, StrikeAdapter, BinanceAdapter, CoinbaseAdapter)

__all__ = [
    "ADAPTER_CLASSES",
    "BinanceAdapter",
    "CoinbaseAdapter",
    "ExchangeAdapter",
    "KrakenAdapter",
    "StrikeAdapter",
    "SyncOptions",
    "build_session",
    "sanitize_date",
]
