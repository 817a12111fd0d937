"""1inch limit orders — core package."""
