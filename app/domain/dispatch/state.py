"""
Broadcast state: statuses, phases, transition tables, snapshots and effects.

Broadcast statuses: searching -> accepted | failed
Delivery/cart phases: controlled_parallel -> sequential -> sequential ...
Prescription phases: round -> round ...
Candidate request statuses: pending -> accepted | rejected | expired
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from .errors import IllegalTransitionError
from .ranking import RankedCandidate


class BroadcastKind(str, Enum):
    DELIVERY = "delivery"
    CART = "cart"
    PRESCRIPTION = "prescription"


class CandidateKind(str, Enum):
    VENDOR = "vendor"
    DELIVERY_PARTNER = "delivery_partner"


class BroadcastStatus(str, Enum):
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    FAILED = "failed"


class BroadcastPhase(str, Enum):
    CONTROLLED_PARALLEL = "controlled_parallel"
    SEQUENTIAL = "sequential"
    ROUND = "round"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    NO_CANDIDATES = "no_candidates"
    MAX_ROUNDS = "max_rounds"


STATUS_TRANSITIONS: dict[BroadcastStatus, frozenset[BroadcastStatus]] = {
    BroadcastStatus.SEARCHING: frozenset({BroadcastStatus.ACCEPTED, BroadcastStatus.FAILED}),
    BroadcastStatus.ACCEPTED: frozenset(),
    BroadcastStatus.FAILED: frozenset(),
}

PHASE_TRANSITIONS: dict[BroadcastPhase, frozenset[BroadcastPhase]] = {
    BroadcastPhase.CONTROLLED_PARALLEL: frozenset({BroadcastPhase.SEQUENTIAL}),
    BroadcastPhase.SEQUENTIAL: frozenset({BroadcastPhase.SEQUENTIAL}),
    BroadcastPhase.ROUND: frozenset({BroadcastPhase.ROUND}),
}

REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.ACCEPTED, RequestStatus.REJECTED, RequestStatus.EXPIRED}
    ),
    RequestStatus.ACCEPTED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset({BroadcastStatus.ACCEPTED, BroadcastStatus.FAILED})


def ensure_status_transition(current: BroadcastStatus, new: BroadcastStatus) -> None:
    if new not in STATUS_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Broadcast cannot move from {current.value} to {new.value}")


def ensure_phase_transition(current: BroadcastPhase, new: BroadcastPhase) -> None:
    if new not in PHASE_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Phase cannot move from {current.value} to {new.value}")


def ensure_request_transition(current: RequestStatus, new: RequestStatus) -> None:
    if new not in REQUEST_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Request cannot move from {current.value} to {new.value}")


class BroadcastSnapshot(BaseModel):
    """Immutable view of one Broadcast row"""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    kind: BroadcastKind
    order_id: Optional[int] = None
    origin_id: int
    origin_latitude: float
    origin_longitude: float
    status: BroadcastStatus = BroadcastStatus.SEARCHING
    current_phase: BroadcastPhase
    broadcast_round: int = 1
    search_radius_km: float
    phase_timeout_at: datetime
    timeout_at: datetime
    notified_ids: tuple[int, ...] = ()
    remaining_candidates: tuple[RankedCandidate, ...] = ()
    accepted_by_id: Optional[int] = None
    accepted_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    context: Optional[dict] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class NotifyCandidates(BaseModel):
    """Create a pending request and an outbox notification for each candidate"""

    model_config = ConfigDict(frozen=True)

    candidates: tuple[RankedCandidate, ...]
    expires_at: datetime
    phase: BroadcastPhase
    round: int


class ExpirePendingRequests(BaseModel):
    """Mark every still-pending request of the broadcast expired"""

    model_config = ConfigDict(frozen=True)


class CancelPendingRequests(BaseModel):
    """Reject every other pending request once a candidate has won"""

    model_config = ConfigDict(frozen=True)

    reason: str = "Another candidate accepted"


Effect = Union[NotifyCandidates, ExpirePendingRequests, CancelPendingRequests]


class TransitionOutcome(str, Enum):
    OPENED = "opened"
    NOOP = "noop"
    ESCALATED = "escalated"
    ACCEPTED = "accepted"
    FAILED = "failed"
    DUE = "due"


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: TransitionOutcome
    snapshot: BroadcastSnapshot
    effects: tuple[Effect, ...] = ()

    @property
    def changed(self) -> bool:
        return self.outcome != TransitionOutcome.NOOP
