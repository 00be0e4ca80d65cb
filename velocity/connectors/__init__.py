"""Solana RPC and Jupiter aggregator connectors."""

from velocity.connectors.jupiter_client import JupiterClient, Quote, SwapTransaction
from velocity.connectors.rpc_client import EndpointFailover, SolanaRpcClient

__all__ = [
    "SolanaRpcClient",
    "EndpointFailover",
    "JupiterClient",
    "Quote",
    "SwapTransaction",
]
