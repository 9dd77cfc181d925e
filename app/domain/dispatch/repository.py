"""Broadcast Store - Database operations for broadcasts and candidate requests"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from ...models import DeliveryPartner, MedicineOrder, MedicineVendor
from ...models_broadcast import Broadcast, CandidateRequest
from .ranking import Candidate, RankedCandidate
from .state import (
    BroadcastKind,
    BroadcastSnapshot,
    BroadcastStatus,
    CandidateKind,
    NotifyCandidates,
    RequestStatus,
)

# Order column that records the winner of each broadcast flavor
WINNER_COLUMNS = {
    BroadcastKind.DELIVERY: MedicineOrder.delivery_partner_id,
    BroadcastKind.CART: MedicineOrder.vendor_id,
    BroadcastKind.PRESCRIPTION: MedicineOrder.vendor_id,
}


def to_snapshot(broadcast: Broadcast) -> BroadcastSnapshot:
    return BroadcastSnapshot(
        id=broadcast.id,
        kind=broadcast.kind,
        order_id=broadcast.order_id,
        origin_id=broadcast.origin_id,
        origin_latitude=broadcast.origin_latitude,
        origin_longitude=broadcast.origin_longitude,
        status=broadcast.status,
        current_phase=broadcast.current_phase,
        broadcast_round=broadcast.broadcast_round,
        search_radius_km=broadcast.search_radius_km,
        phase_timeout_at=broadcast.phase_timeout_at,
        timeout_at=broadcast.timeout_at,
        notified_ids=tuple(broadcast.notified_ids or ()),
        remaining_candidates=tuple(
            RankedCandidate(**entry) for entry in (broadcast.remaining_candidates or ())
        ),
        accepted_by_id=broadcast.accepted_by_id,
        accepted_at=broadcast.accepted_at,
        failure_reason=broadcast.failure_reason,
        context=broadcast.context,
        version=broadcast.version,
    )


def _row_values(snapshot: BroadcastSnapshot) -> dict:
    """Columns a transition may change"""
    return {
        "status": snapshot.status.value,
        "current_phase": snapshot.current_phase.value,
        "broadcast_round": snapshot.broadcast_round,
        "search_radius_km": snapshot.search_radius_km,
        "phase_timeout_at": snapshot.phase_timeout_at,
        "notified_ids": list(snapshot.notified_ids),
        "remaining_candidates": [c.model_dump() for c in snapshot.remaining_candidates],
        "accepted_by_id": snapshot.accepted_by_id,
        "accepted_at": snapshot.accepted_at,
        "failure_reason": snapshot.failure_reason.value if snapshot.failure_reason else None,
    }


class BroadcastRepository:
    """Repository for broadcast database operations"""

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------

    @staticmethod
    def create_broadcast(db: Session, snapshot: BroadcastSnapshot) -> Broadcast:
        """Insert a new broadcast row (flushed, not committed)"""
        broadcast = Broadcast(
            kind=snapshot.kind.value,
            order_id=snapshot.order_id,
            origin_id=snapshot.origin_id,
            origin_latitude=snapshot.origin_latitude,
            origin_longitude=snapshot.origin_longitude,
            timeout_at=snapshot.timeout_at,
            context=snapshot.context,
            version=1,
            **_row_values(snapshot),
        )
        db.add(broadcast)
        db.flush()
        return broadcast

    @staticmethod
    def get_broadcast(db: Session, broadcast_id: int) -> Optional[Broadcast]:
        return db.get(Broadcast, broadcast_id, populate_existing=True)

    @staticmethod
    def get_snapshot(db: Session, broadcast_id: int) -> Optional[BroadcastSnapshot]:
        broadcast = db.get(Broadcast, broadcast_id, populate_existing=True)
        return to_snapshot(broadcast) if broadcast else None

    @staticmethod
    def get_searching_broadcast(
        db: Session, kind: BroadcastKind, order_id: int
    ) -> Optional[Broadcast]:
        """Active broadcast for an order, if one is still searching"""
        return (
            db.query(Broadcast)
            .filter(
                Broadcast.kind == kind.value,
                Broadcast.order_id == order_id,
                Broadcast.status == BroadcastStatus.SEARCHING.value,
            )
            .order_by(Broadcast.id.desc())
            .first()
        )

    @staticmethod
    def list_due_broadcast_ids(db: Session, now: datetime) -> list[int]:
        """Searching broadcasts whose phase deadline or overall deadline has passed"""
        rows = (
            db.query(Broadcast.id)
            .filter(
                Broadcast.status == BroadcastStatus.SEARCHING.value,
                or_(Broadcast.phase_timeout_at <= now, Broadcast.timeout_at <= now),
            )
            .order_by(Broadcast.phase_timeout_at.asc())
            .all()
        )
        return [row.id for row in rows]

    @staticmethod
    def apply_transition(
        db: Session, before: BroadcastSnapshot, after: BroadcastSnapshot
    ) -> bool:
        """
        Conditional write of a transition.

        Only matches while the row is still searching at the version the transition was
        computed from; returns False when another caller got there first.
        """
        result = db.execute(
            update(Broadcast)
            .where(
                Broadcast.id == before.id,
                Broadcast.status == BroadcastStatus.SEARCHING.value,
                Broadcast.version == before.version,
            )
            .values(version=before.version + 1, **_row_values(after))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def claim_acceptance(
        db: Session, broadcast_id: int, candidate_id: int, now: datetime
    ) -> bool:
        """searching -> accepted, only if no winner has been recorded yet"""
        result = db.execute(
            update(Broadcast)
            .where(
                Broadcast.id == broadcast_id,
                Broadcast.status == BroadcastStatus.SEARCHING.value,
                Broadcast.accepted_by_id.is_(None),
            )
            .values(
                status=BroadcastStatus.ACCEPTED.value,
                accepted_by_id=candidate_id,
                accepted_at=now,
                version=Broadcast.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Candidate requests
    # ------------------------------------------------------------------

    @staticmethod
    def create_requests(
        db: Session,
        broadcast: BroadcastSnapshot,
        candidate_kind: CandidateKind,
        effect: NotifyCandidates,
    ) -> list[CandidateRequest]:
        requests = [
            CandidateRequest(
                broadcast_id=broadcast.id,
                order_id=broadcast.order_id,
                candidate_kind=candidate_kind.value,
                candidate_id=candidate.id,
                distance_km=candidate.distance_km,
                round=effect.round,
                status=RequestStatus.PENDING.value,
                expires_at=effect.expires_at,
            )
            for candidate in effect.candidates
        ]
        db.add_all(requests)
        db.flush()
        return requests

    @staticmethod
    def get_request(db: Session, request_id: int) -> Optional[CandidateRequest]:
        return db.get(CandidateRequest, request_id, populate_existing=True)

    @staticmethod
    def get_latest_request_for_candidate(
        db: Session, broadcast_id: int, candidate_id: int
    ) -> Optional[CandidateRequest]:
        return (
            db.query(CandidateRequest)
            .filter(
                CandidateRequest.broadcast_id == broadcast_id,
                CandidateRequest.candidate_id == candidate_id,
            )
            .order_by(CandidateRequest.id.desc())
            .first()
        )

    @staticmethod
    def list_requests(db: Session, broadcast_id: int) -> list[CandidateRequest]:
        return (
            db.query(CandidateRequest)
            .filter(CandidateRequest.broadcast_id == broadcast_id)
            .order_by(CandidateRequest.id.asc())
            .all()
        )

    @staticmethod
    def list_pending_for_candidate(
        db: Session, candidate_kind: CandidateKind, candidate_id: int
    ) -> list[CandidateRequest]:
        return (
            db.query(CandidateRequest)
            .filter(
                CandidateRequest.candidate_kind == candidate_kind.value,
                CandidateRequest.candidate_id == candidate_id,
                CandidateRequest.status == RequestStatus.PENDING.value,
            )
            .order_by(CandidateRequest.expires_at.asc())
            .all()
        )

    @staticmethod
    def count_pending_requests(db: Session, broadcast_id: int) -> int:
        return (
            db.query(func.count(CandidateRequest.id))
            .filter(
                CandidateRequest.broadcast_id == broadcast_id,
                CandidateRequest.status == RequestStatus.PENDING.value,
            )
            .scalar()
        )

    @staticmethod
    def _settle_request(
        db: Session,
        request_id: int,
        status: RequestStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        values = {"status": status.value, "responded_at": now}
        if reason is not None:
            values["rejection_reason"] = reason
        result = db.execute(
            update(CandidateRequest)
            .where(
                CandidateRequest.id == request_id,
                CandidateRequest.status == RequestStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @classmethod
    def claim_request(cls, db: Session, request_id: int, now: datetime) -> bool:
        """pending -> accepted"""
        return cls._settle_request(db, request_id, RequestStatus.ACCEPTED, now)

    @classmethod
    def reject_request(cls, db: Session, request_id: int, reason: str, now: datetime) -> bool:
        """pending -> rejected"""
        return cls._settle_request(db, request_id, RequestStatus.REJECTED, now, reason)

    @staticmethod
    def expire_pending_requests(db: Session, broadcast_id: int, now: datetime) -> int:
        result = db.execute(
            update(CandidateRequest)
            .where(
                CandidateRequest.broadcast_id == broadcast_id,
                CandidateRequest.status == RequestStatus.PENDING.value,
            )
            .values(status=RequestStatus.EXPIRED.value, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def cancel_pending_requests(db: Session, broadcast_id: int, reason: str, now: datetime) -> int:
        """Reject whatever is still pending once someone else has won"""
        result = db.execute(
            update(CandidateRequest)
            .where(
                CandidateRequest.broadcast_id == broadcast_id,
                CandidateRequest.status == RequestStatus.PENDING.value,
            )
            .values(status=RequestStatus.REJECTED.value, rejection_reason=reason, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Orders and candidate directory
    # ------------------------------------------------------------------

    @staticmethod
    def get_order(db: Session, order_id: int) -> Optional[MedicineOrder]:
        return db.get(MedicineOrder, order_id, populate_existing=True)

    @staticmethod
    def create_order(db: Session, **order_data) -> MedicineOrder:
        order = MedicineOrder(**order_data)
        db.add(order)
        db.flush()
        return order

    @staticmethod
    def order_winner(order: MedicineOrder, kind: BroadcastKind) -> Optional[int]:
        return getattr(order, WINNER_COLUMNS[BroadcastKind(kind)].key)

    @staticmethod
    def claim_order_winner(
        db: Session, kind: BroadcastKind, order_id: int, candidate_id: int, **order_updates
    ) -> bool:
        """Write the winner onto the order, only if nobody has been assigned yet"""
        column = WINNER_COLUMNS[BroadcastKind(kind)]
        result = db.execute(
            update(MedicineOrder)
            .where(MedicineOrder.id == order_id, column.is_(None))
            .values({column.key: candidate_id, **order_updates})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def get_vendor(db: Session, vendor_id: int) -> Optional[MedicineVendor]:
        return db.get(MedicineVendor, vendor_id)

    @staticmethod
    def list_candidates(db: Session, candidate_kind: CandidateKind) -> list[Candidate]:
        """Verified, available candidates with a known location, in insertion order"""
        if candidate_kind == CandidateKind.DELIVERY_PARTNER:
            rows = (
                db.query(
                    DeliveryPartner.id,
                    DeliveryPartner.current_latitude,
                    DeliveryPartner.current_longitude,
                )
                .filter(
                    DeliveryPartner.is_verified.is_(True),
                    DeliveryPartner.is_available.is_(True),
                    DeliveryPartner.current_latitude.isnot(None),
                    DeliveryPartner.current_longitude.isnot(None),
                )
                .order_by(DeliveryPartner.id.asc())
                .all()
            )
        else:
            rows = (
                db.query(MedicineVendor.id, MedicineVendor.latitude, MedicineVendor.longitude)
                .filter(
                    MedicineVendor.is_verified.is_(True),
                    MedicineVendor.is_available.is_(True),
                    MedicineVendor.latitude.isnot(None),
                    MedicineVendor.longitude.isnot(None),
                )
                .order_by(MedicineVendor.id.asc())
                .all()
            )

        return [Candidate(id=row[0], latitude=row[1], longitude=row[2]) for row in rows]

    @staticmethod
    def touch_delivery_partner(db: Session, partner_id: int, now: datetime) -> None:
        """Last-active bookkeeping; the only write the core makes to the directory"""
        db.execute(
            update(DeliveryPartner)
            .where(DeliveryPartner.id == partner_id)
            .values(location_updated_at=now)
            .execution_options(synchronize_session=False)
        )
