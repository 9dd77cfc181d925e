"""
Phase Controller

Pure transitions over broadcast snapshots: (snapshot, now[, candidate pool]) -> Transition.
Nothing here touches the database; the service layer applies the resulting snapshot with a
conditional write and then executes the effects. Running the same transition twice against
the same snapshot yields the same result, so concurrent escalation triggers are harmless.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from .policies import BroadcastPolicy
from .ranking import Candidate, RankedCandidate, rank_candidates
from .state import (
    BroadcastSnapshot,
    BroadcastStatus,
    CancelPendingRequests,
    ExpirePendingRequests,
    FailureReason,
    NotifyCandidates,
    Transition,
    TransitionOutcome,
    ensure_phase_transition,
    ensure_status_transition,
)

logger = logging.getLogger(__name__)


def _phase_deadline(now: datetime, seconds: int, timeout_at: datetime) -> datetime:
    # A phase never outlives the broadcast itself
    return min(now + timedelta(seconds=seconds), timeout_at)


def open_broadcast(
    policy: BroadcastPolicy,
    origin_id: int,
    origin_latitude: float,
    origin_longitude: float,
    ranked: Sequence[RankedCandidate],
    now: datetime,
    order_id: Optional[int] = None,
    context: Optional[dict] = None,
) -> Transition:
    """
    INIT: split the ranked pool into the first batch and the remaining queue.

    With nobody inside the base radius the phase is due immediately, so the next
    escalation expands the radius instead of waiting out an empty phase.
    """
    batch = tuple(ranked[: policy.initial_batch_size])
    remaining = tuple(ranked[policy.initial_batch_size :])

    timeout_at = now + timedelta(seconds=policy.total_timeout_seconds)
    if batch:
        phase_timeout_at = _phase_deadline(now, policy.initial_phase_seconds, timeout_at)
    else:
        phase_timeout_at = now

    snapshot = BroadcastSnapshot(
        kind=policy.kind,
        order_id=order_id,
        origin_id=origin_id,
        origin_latitude=origin_latitude,
        origin_longitude=origin_longitude,
        status=BroadcastStatus.SEARCHING,
        current_phase=policy.initial_phase,
        broadcast_round=1,
        search_radius_km=policy.base_radius_km,
        phase_timeout_at=phase_timeout_at,
        timeout_at=timeout_at,
        notified_ids=tuple(c.id for c in batch),
        remaining_candidates=remaining,
        context=context,
    )

    effects = ()
    if batch:
        effects = (
            NotifyCandidates(
                candidates=batch,
                expires_at=phase_timeout_at,
                phase=policy.initial_phase,
                round=1,
            ),
        )

    return Transition(outcome=TransitionOutcome.OPENED, snapshot=snapshot, effects=effects)


def fail(snapshot: BroadcastSnapshot, reason: FailureReason) -> Transition:
    ensure_status_transition(snapshot.status, BroadcastStatus.FAILED)
    failed = snapshot.model_copy(
        update={"status": BroadcastStatus.FAILED, "failure_reason": reason}
    )
    return Transition(
        outcome=TransitionOutcome.FAILED,
        snapshot=failed,
        effects=(ExpirePendingRequests(),),
    )


def _expand_radius(
    policy: BroadcastPolicy,
    snapshot: BroadcastSnapshot,
    pool: Sequence[Candidate],
) -> tuple[float, list[RankedCandidate]]:
    """Widen the search step by step until someone new turns up or the max radius is hit"""
    radius = snapshot.search_radius_km
    max_radius = max(policy.max_radius_km, radius)
    found: list[RankedCandidate] = []

    while not found and radius < max_radius:
        radius = min(radius + policy.radius_step_km, max_radius)
        found = rank_candidates(
            snapshot.origin_latitude,
            snapshot.origin_longitude,
            pool,
            radius,
            exclude_ids=snapshot.notified_ids,
        )
        logger.info(
            f"🔍 Broadcast {snapshot.id}: {len(found)} new candidates within {radius}km"
        )

    return radius, found


def advance_on_timeout(
    policy: BroadcastPolicy,
    snapshot: BroadcastSnapshot,
    pool: Sequence[Candidate],
    now: datetime,
) -> Transition:
    """
    Timeout transition driven by the escalation sweep.

    - terminal broadcast or phase not yet due: no-op
    - overall timeout passed: failed(timeout)
    - round cap reached: failed(max_rounds)
    - otherwise expire pending requests and notify the next candidate (sequential) or
      batch (rounds), expanding the radius first when the queue is empty
    - an opening round that notified nobody is retried with the initial batch after
      expanding, and stays round 1
    """
    if snapshot.is_terminal:
        return Transition(outcome=TransitionOutcome.NOOP, snapshot=snapshot)

    if now >= snapshot.timeout_at:
        return fail(snapshot, FailureReason.TIMEOUT)

    if now < snapshot.phase_timeout_at:
        return Transition(outcome=TransitionOutcome.NOOP, snapshot=snapshot)

    # An empty opening round (nobody in the base radius) does not use up a round
    opening = not snapshot.notified_ids
    if not opening and snapshot.broadcast_round >= policy.max_rounds:
        return fail(snapshot, FailureReason.MAX_ROUNDS)

    radius = snapshot.search_radius_km
    remaining = list(snapshot.remaining_candidates)
    if not remaining:
        radius, remaining = _expand_radius(policy, snapshot, pool)
        if not remaining:
            widened = snapshot.model_copy(update={"search_radius_km": radius})
            return fail(widened, FailureReason.NO_CANDIDATES)

    if opening:
        phase = policy.initial_phase
        batch_size = policy.initial_batch_size
        phase_seconds = policy.initial_phase_seconds
        next_round = snapshot.broadcast_round
    else:
        ensure_phase_transition(snapshot.current_phase, policy.follow_up_phase)
        phase = policy.follow_up_phase
        batch_size = policy.follow_up_batch_size
        phase_seconds = policy.follow_up_phase_seconds
        next_round = snapshot.broadcast_round + 1

    batch = tuple(remaining[:batch_size])
    phase_timeout_at = _phase_deadline(now, phase_seconds, snapshot.timeout_at)

    advanced = snapshot.model_copy(
        update={
            "current_phase": phase,
            "broadcast_round": next_round,
            "search_radius_km": radius,
            "phase_timeout_at": phase_timeout_at,
            "notified_ids": snapshot.notified_ids + tuple(c.id for c in batch),
            "remaining_candidates": tuple(remaining[batch_size:]),
        }
    )

    return Transition(
        outcome=TransitionOutcome.ESCALATED,
        snapshot=advanced,
        effects=(
            ExpirePendingRequests(),
            NotifyCandidates(
                candidates=batch,
                expires_at=phase_timeout_at,
                phase=phase,
                round=next_round,
            ),
        ),
    )


def accept(snapshot: BroadcastSnapshot, candidate_id: int, now: datetime) -> Transition:
    """Any phase -> accepted. Raises IllegalTransitionError once terminal."""
    ensure_status_transition(snapshot.status, BroadcastStatus.ACCEPTED)
    accepted = snapshot.model_copy(
        update={
            "status": BroadcastStatus.ACCEPTED,
            "accepted_by_id": candidate_id,
            "accepted_at": now,
        }
    )
    return Transition(
        outcome=TransitionOutcome.ACCEPTED,
        snapshot=accepted,
        effects=(CancelPendingRequests(),),
    )


def mark_phase_due(snapshot: BroadcastSnapshot, now: datetime) -> Transition:
    """Universal-rejection fast path: end the current phase now"""
    if snapshot.is_terminal or snapshot.phase_timeout_at <= now:
        return Transition(outcome=TransitionOutcome.NOOP, snapshot=snapshot)
    return Transition(
        outcome=TransitionOutcome.DUE,
        snapshot=snapshot.model_copy(update={"phase_timeout_at": now}),
    )
