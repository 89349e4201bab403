"""Contract ABI fragments the relay interacts with."""

from typing import Any

JOB_CONTRACT_EVENTS: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "string"},
            {"indexed": True, "name": "applicationId", "type": "uint256"},
            {"indexed": True, "name": "selectedApplicant", "type": "address"},
            {"indexed": False, "name": "useApplicantMilestones", "type": "bool"},
        ],
        "name": "JobStarted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "string"},
            {"indexed": True, "name": "jobGiver", "type": "address"},
            {"indexed": True, "name": "applicant", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "milestone", "type": "uint256"},
        ],
        "name": "PaymentReleased",
        "type": "event",
    },
]

CCTP_TRANSCEIVER_RECEIVE: dict[str, Any] = {
    "inputs": [
        {"name": "message", "type": "bytes"},
        {"name": "attestation", "type": "bytes"},
    ],
    "name": "receive",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function",
}

MESSAGE_TRANSMITTER_RECEIVE: dict[str, Any] = {
    "inputs": [
        {"name": "message", "type": "bytes"},
        {"name": "attestation", "type": "bytes"},
    ],
    "name": "receiveMessage",
    "outputs": [{"name": "success", "type": "bool"}],
    "stateMutability": "nonpayable",
    "type": "function",
}

ERC20_BALANCE_OF: dict[str, Any] = {
    "constant": True,
    "inputs": [{"name": "account", "type": "address"}],
    "name": "balanceOf",
    "outputs": [{"name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function",
}

RELAY_ABI: list[dict[str, Any]] = [
    *JOB_CONTRACT_EVENTS,
    CCTP_TRANSCEIVER_RECEIVE,
    MESSAGE_TRANSMITTER_RECEIVE,
    ERC20_BALANCE_OF,
]


def event_abi(name: str) -> dict[str, Any]:
    """Return the ABI entry of a known event."""

    for entry in RELAY_ABI:
        if entry["type"] == "event" and entry["name"] == name:
            return entry
    raise KeyError(f"Unknown event '{name}'.")


def event_signature(entry: dict[str, Any]) -> str:
    """Canonical `Name(type,...)` signature used for topic hashing."""

    types = ",".join(str(item["type"]) for item in entry["inputs"])
    return f"{entry['name']}({types})"


__all__ = [
    "CCTP_TRANSCEIVER_RECEIVE",
    "ERC20_BALANCE_OF",
    "JOB_CONTRACT_EVENTS",
    "MESSAGE_TRANSMITTER_RECEIVE",
    "RELAY_ABI",
    "event_abi",
    "event_signature",
]
