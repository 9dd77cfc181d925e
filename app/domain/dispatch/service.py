"""Broadcast service - Starts broadcasts and applies phase transitions"""

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ...models_broadcast import CandidateRequest
from ...shared.clock import system_clock
from ...shared.validators import validate_latitude, validate_longitude
from .errors import (
    AlreadyResolvedError,
    NoCandidatesError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .events import RedisChangeFeed
from .notifier import Notifier
from .phase_controller import advance_on_timeout, mark_phase_due, open_broadcast
from .policies import BroadcastPolicy, policy_for
from .ranking import rank_candidates
from .repository import BroadcastRepository
from .state import (
    BroadcastKind,
    BroadcastSnapshot,
    BroadcastStatus,
    CancelPendingRequests,
    CandidateKind,
    Effect,
    ExpirePendingRequests,
    FailureReason,
    NotifyCandidates,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)

SKIPPED = "skipped"

CANDIDATE_LABELS = {
    CandidateKind.VENDOR: "pharmacies",
    CandidateKind.DELIVERY_PARTNER: "delivery partners",
}


class BroadcastService:
    """Outer shell around the pure phase controller"""

    def __init__(self, db: Session, clock=None, notifier: Optional[Notifier] = None, feed=None):
        self.db = db
        self.clock = clock or system_clock
        self.repo = BroadcastRepository()
        self.notifier = notifier or Notifier(db)
        self.feed = feed or RedisChangeFeed()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def unit_of_work(self, broadcast_id: Optional[int] = None):
        """Roll back on any error; persistence failures surface as TransientStoreError"""
        try:
            yield
        except DBAPIError as e:
            self.db.rollback()
            self.notifier.discard_pushes()
            logger.error(f"❌ Broadcast store error (broadcast {broadcast_id}): {str(e)}")
            raise TransientStoreError(
                "Broadcast store temporarily unavailable, please retry", broadcast_id
            ) from e
        except Exception:
            self.db.rollback()
            self.notifier.discard_pushes()
            raise

    @staticmethod
    def policy_for_snapshot(snapshot: BroadcastSnapshot) -> BroadcastPolicy:
        overrides = (snapshot.context or {}).get("policy_overrides") or {}
        return policy_for(snapshot.kind).with_overrides(**overrides)

    def apply_effects(
        self,
        snapshot: BroadcastSnapshot,
        policy: BroadcastPolicy,
        effects: Sequence[Effect],
        now: datetime,
    ) -> list[CandidateRequest]:
        created: list[CandidateRequest] = []
        for effect in effects:
            if isinstance(effect, NotifyCandidates):
                requests = self.repo.create_requests(
                    self.db, snapshot, policy.candidate_kind, effect
                )
                self.notifier.notify(snapshot, policy, requests, effect)
                created.extend(requests)
            elif isinstance(effect, ExpirePendingRequests):
                expired = self.repo.expire_pending_requests(self.db, snapshot.id, now)
                self.notifier.retire(snapshot.id, now)
                if expired:
                    logger.info(f"⌛ Broadcast {snapshot.id}: expired {expired} pending request(s)")
            elif isinstance(effect, CancelPendingRequests):
                cancelled = self.repo.cancel_pending_requests(
                    self.db, snapshot.id, effect.reason, now
                )
                self.notifier.retire(snapshot.id, now)
                if cancelled:
                    logger.info(
                        f"🚫 Broadcast {snapshot.id}: cancelled {cancelled} pending request(s)"
                    )
        return created

    def publish(self, snapshot: BroadcastSnapshot) -> None:
        self.feed.publish(snapshot)

    @staticmethod
    def _generate_order_number(now: datetime) -> str:
        return f"MED{now:%y%m%d}{secrets.token_hex(3).upper()}"

    @staticmethod
    def _overrides(base_radius_km: Optional[float], batch_size: Optional[int]) -> dict:
        overrides = {}
        if base_radius_km is not None:
            overrides["base_radius_km"] = base_radius_km
        if batch_size is not None:
            overrides["batch_size"] = batch_size
        return overrides

    @staticmethod
    def _coordinates(latitude, longitude) -> tuple[float, float]:
        if latitude is None or longitude is None:
            raise ValidationError("Latitude and longitude are required")
        try:
            return validate_latitude(latitude), validate_longitude(longitude)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _open(
        self,
        kind: BroadcastKind,
        origin_id: int,
        latitude: float,
        longitude: float,
        order_id: Optional[int],
        context: dict,
    ) -> tuple[BroadcastSnapshot, bool]:
        """Create the broadcast and notify the first batch (caller commits)"""
        now = self.clock.now()
        policy = policy_for(kind).with_overrides(**context.get("policy_overrides", {}))

        pool = self.repo.list_candidates(self.db, policy.candidate_kind)
        ranked = rank_candidates(latitude, longitude, pool, policy.base_radius_km)
        logger.info(
            f"🔍 {kind.value} broadcast: {len(ranked)} candidate(s) within {policy.base_radius_km}km"
        )

        transition = open_broadcast(
            policy, origin_id, latitude, longitude, ranked, now, order_id=order_id, context=context
        )
        row = self.repo.create_broadcast(self.db, transition.snapshot)
        snapshot = transition.snapshot.model_copy(update={"id": row.id, "version": row.version})
        self.apply_effects(snapshot, policy, transition.effects, now)
        return snapshot, bool(transition.effects)

    def _finish_start(self, snapshot: BroadcastSnapshot, notified: bool) -> BroadcastSnapshot:
        """After commit: publish, and escalate right away when nobody was in range"""
        logger.info(
            f"✅ Broadcast {snapshot.id} started ({snapshot.kind.value}, order {snapshot.order_id})"
        )
        self.publish(snapshot)

        if not notified:
            snapshot = self.advance_broadcast(snapshot.id)

        if (
            snapshot.status == BroadcastStatus.FAILED
            and snapshot.failure_reason == FailureReason.NO_CANDIDATES
        ):
            raise NoCandidatesError(
                f"No available {CANDIDATE_LABELS[policy_for(snapshot.kind).candidate_kind]} "
                f"found within {snapshot.search_radius_km}km",
                snapshot.id,
            )
        return snapshot

    def start_delivery_broadcast(
        self, order_id: int, radius_km: Optional[float] = None
    ) -> BroadcastSnapshot:
        """Find a delivery partner for an order, starting from its pharmacy's location"""
        with self.unit_of_work():
            order = self.repo.get_order(self.db, order_id)
            if not order:
                raise NotFoundError(f"Order {order_id} not found")
            if order.delivery_partner_id is not None:
                raise AlreadyResolvedError("Order already has a delivery partner")

            existing = self.repo.get_searching_broadcast(self.db, BroadcastKind.DELIVERY, order_id)
            if existing:
                logger.info(f"♻️ Order {order_id} already has searching broadcast {existing.id}")
                return self.repo.get_snapshot(self.db, existing.id)

            vendor = order.vendor
            if not vendor or vendor.latitude is None or vendor.longitude is None:
                raise ValidationError("Pharmacy location is missing for this order")

            context = {
                "order_number": order.order_number,
                "vendor_id": vendor.id,
                "vendor_name": vendor.pharmacy_name,
                "delivery_address": order.delivery_address,
                "delivery_fee": order.delivery_fee,
                "final_amount": order.final_amount,
                "policy_overrides": self._overrides(radius_km, None),
            }
            snapshot, notified = self._open(
                BroadcastKind.DELIVERY, vendor.id, vendor.latitude, vendor.longitude, order.id, context
            )
            self.db.commit()

        return self._finish_start(snapshot, notified)

    def start_cart_broadcast(
        self,
        patient_id: int,
        items: list[dict],
        delivery_latitude: float,
        delivery_longitude: float,
        delivery_address: Optional[str] = None,
        customer_phone: Optional[str] = None,
        total_amount: Optional[float] = None,
        delivery_fee: Optional[float] = None,
        handling_charges: Optional[float] = None,
        discount_amount: float = 0,
        final_amount: Optional[float] = None,
        payment_method: str = "cod",
        radius_km: Optional[float] = None,
    ) -> BroadcastSnapshot:
        """Create the order for a checked-out cart and offer it to nearby pharmacies"""
        if not items:
            raise ValidationError("Cart is empty")
        latitude, longitude = self._coordinates(delivery_latitude, delivery_longitude)

        with self.unit_of_work():
            now = self.clock.now()
            order = self.repo.create_order(
                self.db,
                order_number=self._generate_order_number(now),
                patient_id=patient_id,
                order_status="awaiting_pharmacy",
                delivery_address=delivery_address,
                customer_phone=customer_phone,
                delivery_latitude=latitude,
                delivery_longitude=longitude,
                items=items,
                total_amount=total_amount,
                delivery_fee=delivery_fee,
                handling_charges=handling_charges,
                discount_amount=discount_amount,
                final_amount=final_amount,
                payment_method=payment_method,
            )
            context = {
                "order_number": order.order_number,
                "patient_id": patient_id,
                "item_count": len(items),
                "items": items,
                "final_amount": final_amount,
                "delivery_address": delivery_address,
                "policy_overrides": self._overrides(radius_km, None),
            }
            snapshot, notified = self._open(
                BroadcastKind.CART, patient_id, latitude, longitude, order.id, context
            )
            self.db.commit()

        return self._finish_start(snapshot, notified)

    def start_prescription_broadcast(
        self,
        prescription_id: str,
        patient_id: int,
        patient_latitude: float,
        patient_longitude: float,
        order_id: Optional[int] = None,
        max_distance_km: Optional[float] = None,
        pharmacies_per_round: Optional[int] = None,
        prescription_url: Optional[str] = None,
    ) -> BroadcastSnapshot:
        """Offer an uploaded prescription to nearby pharmacies in rounds"""
        if not prescription_id:
            raise ValidationError("prescriptionId is required")
        if pharmacies_per_round is not None and pharmacies_per_round < 1:
            raise ValidationError("pharmaciesPerRound must be at least 1")
        latitude, longitude = self._coordinates(patient_latitude, patient_longitude)

        with self.unit_of_work():
            now = self.clock.now()
            if order_id is not None:
                order = self.repo.get_order(self.db, order_id)
                if not order:
                    raise NotFoundError(f"Order {order_id} not found")
                if order.vendor_id is not None:
                    raise AlreadyResolvedError("Order already assigned to a pharmacy")
                existing = self.repo.get_searching_broadcast(
                    self.db, BroadcastKind.PRESCRIPTION, order_id
                )
                if existing:
                    return self.repo.get_snapshot(self.db, existing.id)
            else:
                order = self.repo.create_order(
                    self.db,
                    order_number=self._generate_order_number(now),
                    patient_id=patient_id,
                    order_status="awaiting_pharmacy",
                    prescription_required=True,
                    prescription_id=prescription_id,
                    prescription_status="pending",
                    delivery_latitude=latitude,
                    delivery_longitude=longitude,
                )

            context = {
                "order_number": order.order_number,
                "patient_id": patient_id,
                "prescription_id": prescription_id,
                "prescription_url": prescription_url,
                "policy_overrides": self._overrides(max_distance_km, pharmacies_per_round),
            }
            snapshot, notified = self._open(
                BroadcastKind.PRESCRIPTION, patient_id, latitude, longitude, order.id, context
            )
            self.db.commit()

        return self._finish_start(snapshot, notified)

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def _advance(self, broadcast_id: int) -> tuple[str, BroadcastSnapshot]:
        with self.unit_of_work(broadcast_id):
            snapshot = self.repo.get_snapshot(self.db, broadcast_id)
            if not snapshot:
                raise NotFoundError(f"Broadcast {broadcast_id} not found", broadcast_id)

            now = self.clock.now()
            policy = self.policy_for_snapshot(snapshot)
            pool = []
            if not snapshot.is_terminal and not snapshot.remaining_candidates:
                pool = self.repo.list_candidates(self.db, policy.candidate_kind)

            transition = advance_on_timeout(policy, snapshot, pool, now)
            if not transition.changed:
                self.db.rollback()
                return transition.outcome.value, snapshot

            if not self.repo.apply_transition(self.db, snapshot, transition.snapshot):
                self.db.rollback()
                logger.info(f"⏭️ Broadcast {broadcast_id} already advanced by another caller")
                return SKIPPED, self.repo.get_snapshot(self.db, broadcast_id)

            after = transition.snapshot.model_copy(update={"version": snapshot.version + 1})
            self.apply_effects(after, policy, transition.effects, now)
            self.db.commit()

        if after.status == BroadcastStatus.FAILED:
            logger.warning(
                f"❌ Broadcast {broadcast_id} failed: {after.failure_reason.value} "
                f"(round {after.broadcast_round}, radius {after.search_radius_km}km)"
            )
        else:
            logger.info(
                f"📈 Broadcast {broadcast_id} escalated to {after.current_phase.value} "
                f"round {after.broadcast_round} (radius {after.search_radius_km}km)"
            )
        self.publish(after)
        return transition.outcome.value, after

    def advance_broadcast(self, broadcast_id: int) -> BroadcastSnapshot:
        """Run the timeout transition for one broadcast; a no-op unless it is due"""
        _, snapshot = self._advance(broadcast_id)
        return snapshot

    def expedite_broadcast(self, broadcast_id: int) -> BroadcastSnapshot:
        """End the current phase now and advance (every notified candidate rejected)"""
        with self.unit_of_work(broadcast_id):
            snapshot = self.repo.get_snapshot(self.db, broadcast_id)
            if not snapshot:
                raise NotFoundError(f"Broadcast {broadcast_id} not found", broadcast_id)

            transition = mark_phase_due(snapshot, self.clock.now())
            if transition.changed and self.repo.apply_transition(
                self.db, snapshot, transition.snapshot
            ):
                self.db.commit()
                logger.info(f"⚡ Broadcast {broadcast_id}: all candidates declined, phase ended early")
            else:
                self.db.rollback()

        return self.advance_broadcast(broadcast_id)

    def run_escalation_sweep(self) -> dict:
        """
        Advance every due broadcast.

        Safe to run from several triggers at once: a broadcast advanced elsewhere in the
        meantime loses its conditional write and is counted as skipped.
        """
        summary = {"checked": 0, "escalated": 0, "failed": 0, "skipped": 0, "errors": 0}

        with self.unit_of_work():
            due_ids = self.repo.list_due_broadcast_ids(self.db, self.clock.now())
            self.db.rollback()

        if due_ids:
            logger.info(f"⏰ Escalation sweep: {len(due_ids)} due broadcast(s)")

        for broadcast_id in due_ids:
            summary["checked"] += 1
            try:
                outcome, _ = self._advance(broadcast_id)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"❌ Failed to advance broadcast {broadcast_id}: {str(e)}")
                continue

            if outcome == TransitionOutcome.ESCALATED.value:
                summary["escalated"] += 1
            elif outcome == TransitionOutcome.FAILED.value:
                summary["failed"] += 1
            else:
                summary["skipped"] += 1

        return summary

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_broadcast(self, broadcast_id: int) -> BroadcastSnapshot:
        with self.unit_of_work(broadcast_id):
            snapshot = self.repo.get_snapshot(self.db, broadcast_id)
        if not snapshot:
            raise NotFoundError(f"Broadcast {broadcast_id} not found", broadcast_id)
        return snapshot

    def list_requests(self, broadcast_id: int) -> list[CandidateRequest]:
        self.get_broadcast(broadcast_id)
        with self.unit_of_work(broadcast_id):
            return self.repo.list_requests(self.db, broadcast_id)

    def candidate_inbox(self, candidate_kind: CandidateKind, candidate_id: int) -> list[dict]:
        """Pending requests a vendor or delivery partner can still answer"""
        with self.unit_of_work():
            requests = self.repo.list_pending_for_candidate(self.db, candidate_kind, candidate_id)
            inbox = []
            for request in requests:
                broadcast = request.broadcast
                inbox.append(
                    {
                        "request": request,
                        "kind": broadcast.kind,
                        "phase": broadcast.current_phase,
                        "context": broadcast.context or {},
                    }
                )
            return inbox
