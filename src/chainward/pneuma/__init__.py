"""
Pneuma - on-chain interaction layer for Chainward.

Provides the JSON-RPC execution context, the contract registry client,
ABI handling and the contract resolver/cache.

Uses httpx + eth-abi instead of the heavyweight web3.py.
"""
