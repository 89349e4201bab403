"""Application settings."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cctp_payment_relay.domain.chain_models import DEFAULT_ALREADY_COMPLETED_MARKERS
from cctp_payment_relay.domain.chains import (
    RECEIVE_MESSAGE_FUNCTION,
    TRANSCEIVER_RECEIVE_FUNCTION,
    ChainProfile,
)
from cctp_payment_relay.infrastructure.attestation import QUERY_URL_TEMPLATE, SANDBOX_BASE_URL

_TESTNET_MESSAGE_TRANSMITTER = "0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275"


class RepositoryBackend(StrEnum):
    """Available persistence adapters for transfer state."""

    IN_MEMORY = "in_memory"
    POSTGRES = "postgres"


class ChainSettings(BaseModel):
    """One chain entry of `CCTP_RELAY_CHAINS`."""

    model_config = ConfigDict(extra="forbid")

    name: str
    chain_id: int
    cctp_domain: int
    layerzero_eid: int | None = None
    rpc_url: str | None = None
    receiver_address: str | None = None
    receive_function: str = RECEIVE_MESSAGE_FUNCTION
    usdc_address: str | None = None
    scan_chunk_blocks: int = Field(default=1000, ge=1)
    search_window_blocks: int = Field(default=1000, ge=0)
    reanchor_lag_blocks: int = Field(default=5000, ge=1)

    def to_profile(self) -> ChainProfile:
        return ChainProfile(
            name=self.name,
            chain_id=self.chain_id,
            cctp_domain=self.cctp_domain,
            layerzero_eid=self.layerzero_eid,
            receiver_address=self.receiver_address,
            receive_function=self.receive_function,
            usdc_address=self.usdc_address,
            scan_chunk_blocks=self.scan_chunk_blocks,
            search_window_blocks=self.search_window_blocks,
            reanchor_lag_blocks=self.reanchor_lag_blocks,
        )


def _default_chains() -> list[ChainSettings]:
    return [
        ChainSettings(
            name="Ethereum Sepolia",
            chain_id=11155111,
            cctp_domain=0,
            layerzero_eid=40161,
            rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            receiver_address=_TESTNET_MESSAGE_TRANSMITTER,
            usdc_address="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
            search_window_blocks=100,
            reanchor_lag_blocks=500,
        ),
        ChainSettings(
            name="OP Sepolia",
            chain_id=11155420,
            cctp_domain=2,
            layerzero_eid=40232,
            rpc_url="https://sepolia.optimism.io",
            receiver_address=_TESTNET_MESSAGE_TRANSMITTER,
            usdc_address="0x5fd84259d66Cd46123540766Be93DFE6D43130D7",
        ),
        ChainSettings(
            name="Arbitrum Sepolia",
            chain_id=421614,
            cctp_domain=3,
            layerzero_eid=40231,
            rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
            receiver_address="0x959d0fc6dD8efCf764BD3B0bbaC191F2D7Dd03f1",
            receive_function=TRANSCEIVER_RECEIVE_FUNCTION,
            usdc_address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
            scan_chunk_blocks=2000,
            search_window_blocks=3000,
            reanchor_lag_blocks=20000,
        ),
        ChainSettings(
            name="Base Sepolia",
            chain_id=84532,
            cctp_domain=6,
            layerzero_eid=40245,
            rpc_url="https://sepolia.base.org",
            receiver_address=_TESTNET_MESSAGE_TRANSMITTER,
            usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        ),
    ]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "CCTP Payment Relay"
    api_prefix: str = ""
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    repository_backend: RepositoryBackend = RepositoryBackend.IN_MEMORY
    postgres_dsn: str | None = None
    postgres_pool_min_size: int = 1
    postgres_pool_max_size: int = 10
    persistence_retry_base_delay_seconds: float = 1.0
    persistence_retry_max_delay_seconds: float = 60.0
    payment_log_path: str = "/tmp/payment-log.json"
    attestation_base_url: str = SANDBOX_BASE_URL
    attestation_url_template: str = QUERY_URL_TEMPLATE
    attestation_poll_interval_seconds: float = 15.0
    attestation_timeout_seconds: float = 600.0
    attestation_request_timeout_seconds: float = 10.0
    event_poll_interval_seconds: float = 3.0
    event_timeout_seconds: float = 300.0
    release_listener_autostart: bool = False
    chains: list[ChainSettings] = Field(default_factory=_default_chains)
    rpc_urls: dict[str, str] = Field(default_factory=dict)
    native_chain: str = "Arbitrum Sepolia"
    job_contract_address: str | None = "0x39158a9F92faB84561205B05223929eFF131455e"
    default_local_chain: str | None = "OP Sepolia"
    relayer_private_key: SecretStr | None = None
    gas_buffer_percent: float = 30.0
    fallback_gas_limit: int = 300_000
    receipt_timeout_seconds: float = 120.0
    rpc_retry_attempts: int = 3
    rpc_retry_base_delay_seconds: float = 0.5
    already_completed_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALREADY_COMPLETED_MARKERS)
    )
    min_relayer_balance_wei: int = 10**15
    verify_balance_delta: bool = True
    commission_percent: float = 1.0
    commission_min_units: int = 0
    max_concurrent_relays: int = 8
    recovery_cooldown_seconds: float = 5.0

    @field_validator("already_completed_markers", mode="before")
    @classmethod
    def parse_csv_list(cls, value: object) -> object:
        """Support comma-separated env var values in addition to JSON arrays."""

        if not isinstance(value, str):
            return value
        return [item.strip() for item in value.split(",") if item.strip()]

    @model_validator(mode="after")
    def validate_relay_settings(self) -> "Settings":
        """Ensure backend, timing and chain settings are consistent."""

        if self.repository_backend == RepositoryBackend.POSTGRES and not self.postgres_dsn:
            raise ValueError(
                "CCTP_RELAY_POSTGRES_DSN is required when CCTP_RELAY_REPOSITORY_BACKEND=postgres."
            )
        if self.postgres_pool_min_size < 1:
            raise ValueError("CCTP_RELAY_POSTGRES_POOL_MIN_SIZE must be >= 1.")
        if self.postgres_pool_max_size < self.postgres_pool_min_size:
            raise ValueError(
                "CCTP_RELAY_POSTGRES_POOL_MAX_SIZE must be >= CCTP_RELAY_POSTGRES_POOL_MIN_SIZE."
            )
        if self.persistence_retry_base_delay_seconds <= 0:
            raise ValueError("CCTP_RELAY_PERSISTENCE_RETRY_BASE_DELAY_SECONDS must be > 0.")
        if self.persistence_retry_max_delay_seconds < self.persistence_retry_base_delay_seconds:
            raise ValueError(
                "CCTP_RELAY_PERSISTENCE_RETRY_MAX_DELAY_SECONDS must be >= "
                "CCTP_RELAY_PERSISTENCE_RETRY_BASE_DELAY_SECONDS."
            )
        if self.attestation_poll_interval_seconds <= 0:
            raise ValueError("CCTP_RELAY_ATTESTATION_POLL_INTERVAL_SECONDS must be > 0.")
        if self.attestation_timeout_seconds <= 0:
            raise ValueError("CCTP_RELAY_ATTESTATION_TIMEOUT_SECONDS must be > 0.")
        if self.attestation_request_timeout_seconds <= 0:
            raise ValueError("CCTP_RELAY_ATTESTATION_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if (
            "{source_domain}" not in self.attestation_url_template
            or "{tx_hash}" not in self.attestation_url_template
        ):
            raise ValueError(
                "CCTP_RELAY_ATTESTATION_URL_TEMPLATE must contain {source_domain} and {tx_hash}."
            )
        if self.event_poll_interval_seconds <= 0:
            raise ValueError("CCTP_RELAY_EVENT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.event_timeout_seconds <= 0:
            raise ValueError("CCTP_RELAY_EVENT_TIMEOUT_SECONDS must be > 0.")

        chain_names = [chain.name for chain in self.chains]
        if len(set(chain_names)) != len(chain_names):
            raise ValueError("CCTP_RELAY_CHAINS must not contain duplicate chain names.")
        if self.native_chain not in chain_names:
            raise ValueError("CCTP_RELAY_NATIVE_CHAIN must name one of CCTP_RELAY_CHAINS.")
        if not self.default_local_chain:
            self.default_local_chain = None
        elif self.default_local_chain not in chain_names:
            raise ValueError("CCTP_RELAY_DEFAULT_LOCAL_CHAIN must name one of CCTP_RELAY_CHAINS.")
        unknown_rpc_chains = sorted(set(self.rpc_urls) - set(chain_names))
        if unknown_rpc_chains:
            raise ValueError(
                "CCTP_RELAY_RPC_URLS names unknown chain(s): " + ", ".join(unknown_rpc_chains)
            )

        if self.gas_buffer_percent < 0:
            raise ValueError("CCTP_RELAY_GAS_BUFFER_PERCENT must be >= 0.")
        if self.fallback_gas_limit < 21_000:
            raise ValueError("CCTP_RELAY_FALLBACK_GAS_LIMIT must be >= 21000.")
        if self.receipt_timeout_seconds <= 0:
            raise ValueError("CCTP_RELAY_RECEIPT_TIMEOUT_SECONDS must be > 0.")
        if self.rpc_retry_attempts < 1:
            raise ValueError("CCTP_RELAY_RPC_RETRY_ATTEMPTS must be >= 1.")
        if self.rpc_retry_base_delay_seconds < 0:
            raise ValueError("CCTP_RELAY_RPC_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if not 0 <= self.commission_percent <= 100:
            raise ValueError("CCTP_RELAY_COMMISSION_PERCENT must be between 0 and 100.")
        if self.commission_min_units < 0:
            raise ValueError("CCTP_RELAY_COMMISSION_MIN_UNITS must be >= 0.")
        if self.max_concurrent_relays < 1:
            raise ValueError("CCTP_RELAY_MAX_CONCURRENT_RELAYS must be >= 1.")
        if self.recovery_cooldown_seconds < 0:
            raise ValueError("CCTP_RELAY_RECOVERY_COOLDOWN_SECONDS must be >= 0.")
        return self

    def chain_profiles(self) -> list[ChainProfile]:
        """Configured chains as domain profiles."""

        return [chain.to_profile() for chain in self.chains]

    def rpc_url_for(self, chain_name: str) -> str | None:
        """RPC endpoint of a chain; `rpc_urls` overrides the chain entry."""

        override = self.rpc_urls.get(chain_name)
        if override:
            return override
        for chain in self.chains:
            if chain.name == chain_name:
                return chain.rpc_url
        return None

    model_config = SettingsConfigDict(env_prefix="CCTP_RELAY_", extra="ignore")


__all__ = ["ChainSettings", "RepositoryBackend", "Settings"]
