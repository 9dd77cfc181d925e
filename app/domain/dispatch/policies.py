"""Per-flavor broadcast constants"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from ... import config
from .state import BroadcastKind, BroadcastPhase, CandidateKind


class BroadcastPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: BroadcastKind
    candidate_kind: CandidateKind
    initial_phase: BroadcastPhase
    initial_batch_size: int
    initial_phase_seconds: int
    follow_up_phase: BroadcastPhase
    follow_up_batch_size: int
    follow_up_phase_seconds: int
    total_timeout_seconds: int
    base_radius_km: float
    radius_step_km: float
    max_radius_km: float
    max_rounds: int  # round 1 is the initial batch
    notification_type: str

    def with_overrides(
        self, base_radius_km: Optional[float] = None, batch_size: Optional[int] = None
    ) -> "BroadcastPolicy":
        """Apply per-request radius / batch overrides"""
        updates = {}
        if base_radius_km is not None:
            updates["base_radius_km"] = base_radius_km
            updates["max_radius_km"] = max(self.max_radius_km, base_radius_km)
        if batch_size is not None:
            updates["initial_batch_size"] = batch_size
            if self.follow_up_phase == BroadcastPhase.ROUND:
                updates["follow_up_batch_size"] = batch_size
        return self.model_copy(update=updates) if updates else self


DELIVERY_POLICY = BroadcastPolicy(
    kind=BroadcastKind.DELIVERY,
    candidate_kind=CandidateKind.DELIVERY_PARTNER,
    initial_phase=BroadcastPhase.CONTROLLED_PARALLEL,
    initial_batch_size=config.DELIVERY_PHASE1_PARTNER_COUNT,
    initial_phase_seconds=config.DELIVERY_PHASE1_TIMEOUT_SECONDS,
    follow_up_phase=BroadcastPhase.SEQUENTIAL,
    follow_up_batch_size=1,
    follow_up_phase_seconds=config.DELIVERY_PHASE_TIMEOUT_SECONDS,
    total_timeout_seconds=config.DELIVERY_TOTAL_TIMEOUT_SECONDS,
    base_radius_km=config.DELIVERY_BASE_RADIUS_KM,
    radius_step_km=config.DELIVERY_RADIUS_STEP_KM,
    max_radius_km=config.DELIVERY_MAX_RADIUS_KM,
    max_rounds=1 + config.MAX_SEQUENTIAL_ATTEMPTS,
    notification_type="delivery_request",
)

CART_POLICY = BroadcastPolicy(
    kind=BroadcastKind.CART,
    candidate_kind=CandidateKind.VENDOR,
    initial_phase=BroadcastPhase.CONTROLLED_PARALLEL,
    initial_batch_size=config.CART_PHASE1_VENDOR_COUNT,
    initial_phase_seconds=config.CART_PHASE1_TIMEOUT_SECONDS,
    follow_up_phase=BroadcastPhase.SEQUENTIAL,
    follow_up_batch_size=1,
    follow_up_phase_seconds=config.CART_SEQUENTIAL_TIMEOUT_SECONDS,
    total_timeout_seconds=config.CART_TOTAL_TIMEOUT_SECONDS,
    base_radius_km=config.CART_BASE_RADIUS_KM,
    radius_step_km=config.CART_RADIUS_STEP_KM,
    max_radius_km=config.CART_MAX_RADIUS_KM,
    max_rounds=1 + config.MAX_SEQUENTIAL_ATTEMPTS,
    notification_type="cart_order_request",
)

PRESCRIPTION_POLICY = BroadcastPolicy(
    kind=BroadcastKind.PRESCRIPTION,
    candidate_kind=CandidateKind.VENDOR,
    initial_phase=BroadcastPhase.ROUND,
    initial_batch_size=config.PRESCRIPTION_PHARMACIES_PER_ROUND,
    initial_phase_seconds=config.PRESCRIPTION_ROUND_TIMEOUT_SECONDS,
    follow_up_phase=BroadcastPhase.ROUND,
    follow_up_batch_size=config.PRESCRIPTION_PHARMACIES_PER_ROUND,
    follow_up_phase_seconds=config.PRESCRIPTION_ROUND_TIMEOUT_SECONDS,
    total_timeout_seconds=config.PRESCRIPTION_ROUND_TIMEOUT_SECONDS * config.PRESCRIPTION_MAX_ROUNDS,
    base_radius_km=config.PRESCRIPTION_BASE_RADIUS_KM,
    radius_step_km=config.PRESCRIPTION_RADIUS_STEP_KM,
    max_radius_km=config.PRESCRIPTION_MAX_RADIUS_KM,
    max_rounds=config.PRESCRIPTION_MAX_ROUNDS,
    notification_type="prescription_upload",
)

POLICIES = {
    BroadcastKind.DELIVERY: DELIVERY_POLICY,
    BroadcastKind.CART: CART_POLICY,
    BroadcastKind.PRESCRIPTION: PRESCRIPTION_POLICY,
}


def policy_for(kind: BroadcastKind) -> BroadcastPolicy:
    return POLICIES[BroadcastKind(kind)]
