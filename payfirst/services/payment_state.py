"""Pending payment lifecycle.

This module is the only place that decides how a pending payment moves
between states. Callbacks and gateway status polls both go through
``resolve_transition``.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class PaymentState(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentState.PENDING


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    # Same terminal status delivered again
    UNCHANGED = "unchanged"
    # A different terminal status than the one already stored; stored one wins
    CONFLICT = "conflict"


# Callback resultCode
CALLBACK_RESULT_STATES = {
    "00": PaymentState.COMPLETED,
    "01": PaymentState.FAILED,
}

# transactionStatus statusCode: 00 success, 01 still in process, 02 failed/cancelled
STATUS_QUERY_STATES = {
    "00": PaymentState.COMPLETED,
    "01": PaymentState.PENDING,
    "02": PaymentState.FAILED,
}


def state_for_callback(result_code: str | None) -> Optional[PaymentState]:
    """Terminal state implied by a callback, or None when the code is unknown."""
    return CALLBACK_RESULT_STATES.get((result_code or "").strip())


def state_for_status_query(status_code: str | None) -> Optional[PaymentState]:
    return STATUS_QUERY_STATES.get((status_code or "").strip())


def resolve_transition(current: PaymentState, target: PaymentState) -> TransitionOutcome:
    if not target.is_terminal:
        raise ValueError(f"{target.value} is not a terminal state")
    if current is PaymentState.PENDING:
        return TransitionOutcome.APPLIED
    if current is target:
        return TransitionOutcome.UNCHANGED
    return TransitionOutcome.CONFLICT
