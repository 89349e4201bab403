"""Flat-file recovery log implementations."""

from cctp_payment_relay.infrastructure.recovery_log.json_file_payment_log import (
    COMPLETED_STATUS,
    FAILED_STATUS,
    PENDING_STATUS,
    JsonFilePaymentLog,
)

__all__ = ["COMPLETED_STATUS", "FAILED_STATUS", "JsonFilePaymentLog", "PENDING_STATUS"]
