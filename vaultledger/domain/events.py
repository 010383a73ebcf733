from __future__ import annotations

from typing import Any, Literal, TypedDict


EventType = Literal[
    "balance_update",
    "withdrawal_submitted",
    "proposal_created",
    "approval_recorded",
    "drift_alert",
    "timelock_due_soon",
    "timelock_available",
    "low_balance_alert",
    "lock",
    "unlock",
]


class EventEnvelope(TypedDict):
    # ts is an ISO-8601 UTC timestamp taken at publish time.
    type: EventType
    data: dict[str, Any]
    ts: str
