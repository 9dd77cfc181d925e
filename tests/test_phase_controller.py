"""
Unit tests for the pure phase transitions: opening, escalation, radius expansion,
deadlines, acceptance and terminal immutability.
"""

from datetime import datetime, timedelta

import pytest

from app.domain.dispatch import phase_controller
from app.domain.dispatch.errors import IllegalTransitionError
from app.domain.dispatch.policies import DELIVERY_POLICY, PRESCRIPTION_POLICY
from app.domain.dispatch.ranking import Candidate, rank_candidates
from app.domain.dispatch.state import (
    BroadcastPhase,
    BroadcastStatus,
    CancelPendingRequests,
    ExpirePendingRequests,
    FailureReason,
    NotifyCandidates,
    RequestStatus,
    TransitionOutcome,
    ensure_phase_transition,
    ensure_request_transition,
)

T0 = datetime(2026, 3, 2, 9, 0, 0)


def _pool(*lat_offsets, first_id=1):
    return [
        Candidate(id=first_id + i, latitude=offset, longitude=0.0)
        for i, offset in enumerate(lat_offsets)
    ]


def _open(policy, pool, now=T0):
    ranked = rank_candidates(0.0, 0.0, pool, policy.base_radius_km)
    transition = phase_controller.open_broadcast(policy, 900, 0.0, 0.0, ranked, now, order_id=1)
    return transition.snapshot.model_copy(update={"id": 1}), transition


def test_open_notifies_first_batch_and_queues_the_rest() -> None:
    pool = _pool(0.01, 0.02, 0.03, 0.04, 0.05)

    snapshot, transition = _open(DELIVERY_POLICY, pool)

    assert transition.outcome == TransitionOutcome.OPENED
    assert snapshot.status == BroadcastStatus.SEARCHING
    assert snapshot.current_phase == BroadcastPhase.CONTROLLED_PARALLEL
    assert snapshot.notified_ids == (1, 2, 3)
    assert [c.id for c in snapshot.remaining_candidates] == [4, 5]
    assert snapshot.phase_timeout_at == T0 + timedelta(seconds=20)
    assert snapshot.timeout_at == T0 + timedelta(seconds=180)

    (effect,) = transition.effects
    assert isinstance(effect, NotifyCandidates)
    assert [c.id for c in effect.candidates] == [1, 2, 3]
    assert effect.expires_at == snapshot.phase_timeout_at


def test_open_with_nobody_in_range_is_due_immediately() -> None:
    snapshot, transition = _open(DELIVERY_POLICY, [])

    assert transition.effects == ()
    assert snapshot.phase_timeout_at == T0
    assert snapshot.notified_ids == ()


def test_escalation_waits_for_phase_deadline() -> None:
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03, 0.04))

    transition = phase_controller.advance_on_timeout(
        DELIVERY_POLICY, snapshot, [], T0 + timedelta(seconds=19)
    )

    assert transition.outcome == TransitionOutcome.NOOP
    assert transition.snapshot == snapshot


def test_parallel_phase_times_out_into_sequential() -> None:
    """3 partners notified, nobody accepts; at 20s the next closest partner is asked alone."""
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03, 0.04, 0.05))
    now = T0 + timedelta(seconds=20)

    transition = phase_controller.advance_on_timeout(DELIVERY_POLICY, snapshot, [], now)

    advanced = transition.snapshot
    assert transition.outcome == TransitionOutcome.ESCALATED
    assert advanced.current_phase == BroadcastPhase.SEQUENTIAL
    assert advanced.broadcast_round == 2
    assert advanced.notified_ids == (1, 2, 3, 4)
    assert [c.id for c in advanced.remaining_candidates] == [5]
    assert advanced.phase_timeout_at == now + timedelta(seconds=20)

    expire, notify = transition.effects
    assert isinstance(expire, ExpirePendingRequests)
    assert [c.id for c in notify.candidates] == [4]
    assert notify.phase == BroadcastPhase.SEQUENTIAL
    assert notify.round == 2


def test_empty_queue_expands_radius_before_failing() -> None:
    """Nobody within 10 km: the search widens to 20 km and finds the partner at ~15.6 km."""
    pool = _pool(0.14)
    snapshot, _ = _open(DELIVERY_POLICY, pool)

    transition = phase_controller.advance_on_timeout(DELIVERY_POLICY, snapshot, pool, T0)

    assert transition.outcome == TransitionOutcome.ESCALATED
    assert transition.snapshot.search_radius_km == 20
    assert transition.snapshot.notified_ids == (1,)


def test_empty_opening_round_retries_the_first_batch() -> None:
    """Five partners ~15 km out: the widened search still runs the parallel batch of 3."""
    pool = _pool(0.135, 0.136, 0.137, 0.138, 0.139)
    snapshot, _ = _open(DELIVERY_POLICY, pool)

    transition = phase_controller.advance_on_timeout(DELIVERY_POLICY, snapshot, pool, T0)

    advanced = transition.snapshot
    assert advanced.current_phase == BroadcastPhase.CONTROLLED_PARALLEL
    assert advanced.broadcast_round == 1
    assert advanced.search_radius_km == 20
    assert advanced.notified_ids == (1, 2, 3)
    assert [c.id for c in advanced.remaining_candidates] == [4, 5]
    assert advanced.phase_timeout_at == T0 + timedelta(seconds=20)

    _, notify = transition.effects
    assert notify.phase == BroadcastPhase.CONTROLLED_PARALLEL
    assert notify.round == 1


def test_empty_opening_round_does_not_count_against_round_cap() -> None:
    pool = _pool(*(0.108 + 0.001 * i for i in range(15)))  # ~12 to ~13.6 km
    snapshot, _ = _open(PRESCRIPTION_POLICY, pool)

    now = T0
    rounds = []
    for _ in range(PRESCRIPTION_POLICY.max_rounds):
        snapshot = phase_controller.advance_on_timeout(
            PRESCRIPTION_POLICY, snapshot, pool, now
        ).snapshot
        rounds.append(snapshot.broadcast_round)
        now = snapshot.phase_timeout_at

    assert rounds == [1, 2, 3]
    assert len(snapshot.notified_ids) == 15
    assert snapshot.status == BroadcastStatus.SEARCHING


def test_no_candidates_at_max_radius_fails() -> None:
    pool = _pool(1.0)  # ~111 km
    snapshot, _ = _open(DELIVERY_POLICY, pool)

    transition = phase_controller.advance_on_timeout(DELIVERY_POLICY, snapshot, pool, T0)

    assert transition.outcome == TransitionOutcome.FAILED
    assert transition.snapshot.status == BroadcastStatus.FAILED
    assert transition.snapshot.failure_reason == FailureReason.NO_CANDIDATES
    assert transition.snapshot.search_radius_km == DELIVERY_POLICY.max_radius_km
    assert isinstance(transition.effects[0], ExpirePendingRequests)


def test_expansion_never_renotifies_a_candidate() -> None:
    pool = _pool(0.01, 0.02, 0.03)
    snapshot, _ = _open(DELIVERY_POLICY, pool)

    transition = phase_controller.advance_on_timeout(
        DELIVERY_POLICY, snapshot, pool, T0 + timedelta(seconds=20)
    )

    assert transition.outcome == TransitionOutcome.FAILED
    assert transition.snapshot.failure_reason == FailureReason.NO_CANDIDATES


def test_radius_never_shrinks() -> None:
    pool = _pool(0.01, 0.14, 0.25)  # ~1 km, ~15.6 km, ~27.8 km
    policy = DELIVERY_POLICY.with_overrides(batch_size=1)
    snapshot, _ = _open(policy, pool)
    now = T0
    radii = [snapshot.search_radius_km]

    while snapshot.status == BroadcastStatus.SEARCHING:
        now = now + timedelta(seconds=20)
        snapshot = phase_controller.advance_on_timeout(policy, snapshot, pool, now).snapshot
        radii.append(snapshot.search_radius_km)

    assert radii == sorted(radii)
    assert radii[-1] == policy.max_radius_km
    assert snapshot.notified_ids == (1, 2, 3)


def test_overall_timeout_fails_with_candidates_remaining() -> None:
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03, 0.04, 0.05))

    transition = phase_controller.advance_on_timeout(
        DELIVERY_POLICY, snapshot, [], T0 + timedelta(seconds=180)
    )

    assert transition.outcome == TransitionOutcome.FAILED
    assert transition.snapshot.failure_reason == FailureReason.TIMEOUT
    assert len(transition.snapshot.remaining_candidates) == 2


def test_phase_deadline_is_clamped_to_overall_timeout() -> None:
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03, 0.04))
    now = T0 + timedelta(seconds=170)

    advanced = phase_controller.advance_on_timeout(DELIVERY_POLICY, snapshot, [], now).snapshot

    assert advanced.phase_timeout_at == snapshot.timeout_at


def test_prescription_rounds_notify_batches() -> None:
    pool = _pool(*[0.001 * i for i in range(1, 13)])
    snapshot, transition = _open(PRESCRIPTION_POLICY, pool)

    assert snapshot.current_phase == BroadcastPhase.ROUND
    assert len(transition.effects[0].candidates) == 5

    now = T0 + timedelta(seconds=180)
    advanced = phase_controller.advance_on_timeout(PRESCRIPTION_POLICY, snapshot, pool, now)

    assert advanced.snapshot.current_phase == BroadcastPhase.ROUND
    assert advanced.snapshot.broadcast_round == 2
    assert [c.id for c in advanced.effects[1].candidates] == [6, 7, 8, 9, 10]


def test_round_cap_fails_broadcast() -> None:
    policy = PRESCRIPTION_POLICY.model_copy(update={"total_timeout_seconds": 3600})
    pool = _pool(*[0.001 * i for i in range(1, 21)])
    snapshot, _ = _open(policy, pool)
    now = T0

    for _ in range(policy.max_rounds - 1):
        now = now + timedelta(seconds=180)
        snapshot = phase_controller.advance_on_timeout(policy, snapshot, pool, now).snapshot

    now = now + timedelta(seconds=180)
    transition = phase_controller.advance_on_timeout(policy, snapshot, pool, now)

    assert snapshot.broadcast_round == policy.max_rounds
    assert transition.snapshot.failure_reason == FailureReason.MAX_ROUNDS


def test_accept_resolves_and_cancels_pending() -> None:
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03))
    now = T0 + timedelta(seconds=10)

    transition = phase_controller.accept(snapshot, 2, now)

    assert transition.snapshot.status == BroadcastStatus.ACCEPTED
    assert transition.snapshot.accepted_by_id == 2
    assert transition.snapshot.accepted_at == now
    assert isinstance(transition.effects[0], CancelPendingRequests)


def test_terminal_broadcast_is_never_advanced() -> None:
    """Accepted at 10s; a sweep at 21s must be a no-op."""
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01, 0.02, 0.03, 0.04))
    accepted = phase_controller.accept(snapshot, 1, T0 + timedelta(seconds=10)).snapshot

    transition = phase_controller.advance_on_timeout(
        DELIVERY_POLICY, accepted, [], T0 + timedelta(seconds=21)
    )

    assert transition.outcome == TransitionOutcome.NOOP
    assert transition.snapshot == accepted

    with pytest.raises(IllegalTransitionError):
        phase_controller.accept(accepted, 2, T0 + timedelta(seconds=12))
    with pytest.raises(IllegalTransitionError):
        phase_controller.fail(accepted, FailureReason.TIMEOUT)


def test_mark_phase_due() -> None:
    snapshot, _ = _open(DELIVERY_POLICY, _pool(0.01))
    now = T0 + timedelta(seconds=5)

    transition = phase_controller.mark_phase_due(snapshot, now)
    assert transition.outcome == TransitionOutcome.DUE
    assert transition.snapshot.phase_timeout_at == now

    again = phase_controller.mark_phase_due(transition.snapshot, now)
    assert again.outcome == TransitionOutcome.NOOP


def test_transition_tables_reject_backwards_moves() -> None:
    with pytest.raises(IllegalTransitionError):
        ensure_phase_transition(BroadcastPhase.SEQUENTIAL, BroadcastPhase.CONTROLLED_PARALLEL)
    with pytest.raises(IllegalTransitionError):
        ensure_phase_transition(BroadcastPhase.ROUND, BroadcastPhase.SEQUENTIAL)
    with pytest.raises(IllegalTransitionError):
        ensure_request_transition(RequestStatus.EXPIRED, RequestStatus.ACCEPTED)


def test_policy_overrides() -> None:
    policy = PRESCRIPTION_POLICY.with_overrides(base_radius_km=40, batch_size=2)

    assert policy.base_radius_km == 40
    assert policy.max_radius_km == 40
    assert policy.initial_batch_size == 2
    assert policy.follow_up_batch_size == 2

    delivery = DELIVERY_POLICY.with_overrides(batch_size=4)
    assert delivery.follow_up_batch_size == 1
    assert DELIVERY_POLICY.with_overrides() is DELIVERY_POLICY
