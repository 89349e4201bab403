"""Application bootstrap/wiring."""

import logging

from cctp_payment_relay.application.services import (
    EventWatcher,
    PaymentReleaseListener,
    RelayExecutor,
    RelayService,
)
from cctp_payment_relay.config import RepositoryBackend, Settings
from cctp_payment_relay.domain.chains import ChainDirectory
from cctp_payment_relay.domain.errors import RelayConfigurationError
from cctp_payment_relay.domain.ports import (
    AttestationClient,
    ChainGateway,
    RecoveryLog,
    TransferRecordRepository,
)
from cctp_payment_relay.infrastructure.attestation import IrisAttestationClient
from cctp_payment_relay.infrastructure.chains import Web3ChainGateway
from cctp_payment_relay.infrastructure.recovery_log import JsonFilePaymentLog
from cctp_payment_relay.infrastructure.repositories import (
    CachedTransferStatusStore,
    InMemoryTransferRepository,
    PostgresTransferRepository,
)

logger = logging.getLogger(__name__)


def _build_repository(settings: Settings) -> TransferRecordRepository:
    if settings.repository_backend == RepositoryBackend.POSTGRES:
        if settings.postgres_dsn is None:
            raise RelayConfigurationError(
                "CCTP_RELAY_POSTGRES_DSN is required when CCTP_RELAY_REPOSITORY_BACKEND=postgres."
            )
        return PostgresTransferRepository(
            dsn=settings.postgres_dsn,
            min_pool_size=settings.postgres_pool_min_size,
            max_pool_size=settings.postgres_pool_max_size,
        )
    logger.warning(
        "Using the in-memory transfer repository; transfer state will not survive restarts."
    )
    return InMemoryTransferRepository()


def _build_chain_directory(settings: Settings) -> ChainDirectory:
    return ChainDirectory(
        settings.chain_profiles(),
        native_chain=settings.native_chain,
        default_local_chain=settings.default_local_chain,
    )


def _build_gateways(
    settings: Settings,
    chains: ChainDirectory,
    private_key: str,
) -> dict[str, ChainGateway]:
    gateways: dict[str, ChainGateway] = {}
    for chain in chains.chains:
        rpc_url = settings.rpc_url_for(chain.name)
        if not rpc_url:
            logger.warning("No RPC URL configured for '%s'; relays via it will fail.", chain.name)
            continue
        gateways[chain.name] = Web3ChainGateway(
            chain,
            rpc_url,
            private_key=private_key,
            gas_buffer_percent=settings.gas_buffer_percent,
            fallback_gas_limit=settings.fallback_gas_limit,
            receipt_timeout_seconds=settings.receipt_timeout_seconds,
            rpc_retry_attempts=settings.rpc_retry_attempts,
            rpc_retry_base_delay_seconds=settings.rpc_retry_base_delay_seconds,
            already_completed_markers=settings.already_completed_markers,
        )
    return gateways


def _build_attestation_client(settings: Settings) -> AttestationClient:
    return IrisAttestationClient(
        settings.attestation_base_url,
        url_template=settings.attestation_url_template,
        poll_interval_seconds=settings.attestation_poll_interval_seconds,
        timeout_seconds=settings.attestation_timeout_seconds,
        request_timeout_seconds=settings.attestation_request_timeout_seconds,
    )


def _build_recovery_log(settings: Settings) -> RecoveryLog:
    return JsonFilePaymentLog(settings.payment_log_path)


def _build_release_listener(
    settings: Settings,
    chains: ChainDirectory,
    gateways: dict[str, ChainGateway],
) -> PaymentReleaseListener | None:
    gateway = gateways.get(chains.native.name)
    if gateway is None or not settings.job_contract_address:
        logger.info("Release listener unavailable: no native chain gateway or job contract.")
        return None
    return PaymentReleaseListener(
        gateway,
        settings.job_contract_address,
        chain_name=chains.native.name,
        poll_interval_seconds=settings.event_poll_interval_seconds,
    )


def build_relay_service(settings: Settings) -> RelayService:
    """Compose service graph."""

    if settings.relayer_private_key is None:
        raise RelayConfigurationError(
            "CCTP_RELAY_RELAYER_PRIVATE_KEY is required; no relay can be signed without it."
        )
    private_key = settings.relayer_private_key.get_secret_value().strip()
    if not private_key:
        raise RelayConfigurationError("CCTP_RELAY_RELAYER_PRIVATE_KEY must not be blank.")

    chains = _build_chain_directory(settings)
    gateways = _build_gateways(settings, chains, private_key)
    store = CachedTransferStatusStore(
        _build_repository(settings),
        retry_base_delay_seconds=settings.persistence_retry_base_delay_seconds,
        retry_max_delay_seconds=settings.persistence_retry_max_delay_seconds,
    )
    recovery_log = _build_recovery_log(settings)
    executor = RelayExecutor(
        store,
        chains,
        gateways,
        _build_attestation_client(settings),
        EventWatcher(
            gateways,
            poll_interval_seconds=settings.event_poll_interval_seconds,
            timeout_seconds=settings.event_timeout_seconds,
        ),
        job_contract_address=settings.job_contract_address,
        recovery_log=recovery_log,
        verify_balance_delta=settings.verify_balance_delta,
        commission_percent=settings.commission_percent,
        commission_min_units=settings.commission_min_units,
        min_relayer_balance_wei=settings.min_relayer_balance_wei,
    )
    logger.info(
        "Relay configured for %s chain(s); native chain %s.",
        len(gateways),
        chains.native.name,
    )
    return RelayService(
        store,
        executor,
        chains,
        recovery_log=recovery_log,
        max_concurrent_relays=settings.max_concurrent_relays,
        recovery_cooldown_seconds=settings.recovery_cooldown_seconds,
        release_listener=_build_release_listener(settings, chains, gateways),
        job_contract_address=settings.job_contract_address,
        listener_autostart=settings.release_listener_autostart,
    )


__all__ = ["build_relay_service"]
