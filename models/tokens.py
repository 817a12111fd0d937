"""Well-known token addresses per chain."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from eth_utils import to_checksum_address

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"

NATIVE_DECIMALS = 18

_TOKENS: dict[int, dict[str, str]] = {
    # Ethereum mainnet
    1: {
        "ETH": NATIVE_TOKEN,
        "WETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        "DAI": "0x6B175474E89094C44Da98b954EedeAC495271d0F",
    },
    # Polygon
    137: {
        "MATIC": NATIVE_TOKEN,
        "WMATIC": "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",
        "WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
        "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "USDC.e": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        "DAI": "0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063",
    },
    # Arbitrum One
    42161: {
        "ETH": NATIVE_TOKEN,
        "WETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        "USDC": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
        "DAI": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
    },
}


def tokens_for_chain(chain_id: int) -> Mapping[str, str]:
    """Symbol → address for ``chain_id``; empty for chains we do not list."""
    tokens = _TOKENS.get(chain_id, {})
    return MappingProxyType({sym: to_checksum_address(addr) for sym, addr in tokens.items()})


def is_native(token: str) -> bool:
    return token.lower() == NATIVE_TOKEN
