"""Chain gateway implementations."""

from cctp_payment_relay.infrastructure.chains.web3_chain_gateway import (
    Web3ChainGateway,
    buffered_gas_limit,
    matches_filters,
    resolve_filters,
)

__all__ = [
    "Web3ChainGateway",
    "buffered_gas_limit",
    "matches_filters",
    "resolve_filters",
]
