"""Attestation service clients."""

from cctp_payment_relay.infrastructure.attestation.iris_attestation_client import (
    MAINNET_BASE_URL,
    PATH_URL_TEMPLATE,
    QUERY_URL_TEMPLATE,
    SANDBOX_BASE_URL,
    IrisAttestationClient,
)

__all__ = [
    "IrisAttestationClient",
    "MAINNET_BASE_URL",
    "PATH_URL_TEMPLATE",
    "QUERY_URL_TEMPLATE",
    "SANDBOX_BASE_URL",
]
