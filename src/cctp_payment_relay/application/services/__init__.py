"""Application services public API."""

from cctp_payment_relay.application.services.event_watcher import EventWatcher
from cctp_payment_relay.application.services.payment_listener import (
    PAYMENT_RELEASED_EVENT,
    PaymentReleaseListener,
)
from cctp_payment_relay.application.services.recovery_manager import RecoveryManager
from cctp_payment_relay.application.services.relay_executor import (
    ALREADY_COMPLETED_TX_HASH,
    RelayExecutor,
    minimum_expected_delta,
)
from cctp_payment_relay.application.services.relay_service import (
    RelayService,
    normalize_tx_hash,
)

__all__ = [
    "ALREADY_COMPLETED_TX_HASH",
    "EventWatcher",
    "PAYMENT_RELEASED_EVENT",
    "PaymentReleaseListener",
    "RecoveryManager",
    "RelayExecutor",
    "RelayService",
    "minimum_expected_delta",
    "normalize_tx_hash",
]
