"""1inch limit orders — web3_infra package.

- OrderSigner: EIP-712 order signing with the wallet key
- RPCManager: JSON-RPC access with failover and timeouts
- TokenHelper: balances, allowances, approvals, on-chain cancel
"""

from .eip712_signer import OrderSigner, SignedOrder, recover_signer
from .rpc_manager import RPCManager, RPCManagerConfig
from .token_helper import ApprovalResult, TokenBalance, TokenHelper, TokenHelperConfig

__all__ = [
    "ApprovalResult",
    "OrderSigner",
    "RPCManager",
    "RPCManagerConfig",
    "SignedOrder",
    "TokenBalance",
    "TokenHelper",
    "TokenHelperConfig",
    "recover_signer",
]
