"""1inch limit orders — config package."""
