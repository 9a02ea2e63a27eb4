__title__ = "BTC Ledger"
__version__ = "0.4.0"
