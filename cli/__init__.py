"""1inch limit orders — cli package."""
