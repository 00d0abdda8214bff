"""Strategy orchestration over a MetaTrader 5 trading terminal."""
