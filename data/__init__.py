"""1inch limit orders — data package."""
