"""
Response Handler
Records a candidate's accept or reject for a pending request.

At most one candidate wins an order: the accept path is one transaction of conditional
writes (request still pending, order winner still empty, broadcast still searching) and
any lost condition rolls the whole accept back.
"""

import logging
from datetime import timedelta
from typing import Optional

from ... import config
from ...models_broadcast import CandidateRequest
from ...shared.validators import validate_decision
from .errors import (
    AlreadyResolvedError,
    DispatchError,
    ExpiredError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from .phase_controller import accept
from .repository import to_snapshot
from .service import BroadcastService
from .state import BroadcastKind, BroadcastStatus, RequestStatus

logger = logging.getLogger(__name__)

ORDER_UPDATES_ON_ACCEPT = {
    BroadcastKind.DELIVERY: {},
    BroadcastKind.CART: {"order_status": "confirmed"},
    BroadcastKind.PRESCRIPTION: {"order_status": "confirmed", "prescription_status": "approved"},
}


class ResponseHandler:
    def __init__(self, service: BroadcastService):
        self.service = service
        self.db = service.db
        self.repo = service.repo
        self.clock = service.clock
        self.notifier = service.notifier

    @staticmethod
    def _check_params(candidate_id: Optional[int], decision: Optional[str], **ids) -> str:
        missing = [name for name, value in ids.items() if value is None]
        if candidate_id is None:
            missing.append("candidateId")
        if not decision:
            missing.append("decision")
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        try:
            return validate_decision(decision)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def respond(
        self,
        request_id: Optional[int],
        candidate_id: Optional[int],
        decision: Optional[str],
        reason: Optional[str] = None,
    ) -> dict:
        """Answer a candidate request by its id"""
        decision = self._check_params(candidate_id, decision, requestId=request_id)

        with self.service.unit_of_work():
            request = self.repo.get_request(self.db, request_id)
            if not request or request.candidate_id != candidate_id:
                raise NotFoundError("Request not found")
            return self._respond(request, decision, reason)

    def respond_to_broadcast(
        self,
        broadcast_id: Optional[int],
        candidate_id: Optional[int],
        decision: Optional[str],
        reason: Optional[str] = None,
    ) -> dict:
        """Answer the candidate's latest request within a broadcast"""
        decision = self._check_params(candidate_id, decision, broadcastId=broadcast_id)

        with self.service.unit_of_work(broadcast_id):
            request = self.repo.get_latest_request_for_candidate(
                self.db, broadcast_id, candidate_id
            )
            if not request:
                raise NotFoundError("Request not found", broadcast_id)
            return self._respond(request, decision, reason)

    def _respond(self, request: CandidateRequest, decision: str, reason: Optional[str]) -> dict:
        now = self.clock.now()
        broadcast = self.repo.get_broadcast(self.db, request.broadcast_id)
        kind = BroadcastKind(broadcast.kind)

        if request.status != RequestStatus.PENDING.value:
            raise AlreadyResolvedError("This request has already been handled", broadcast.id)

        order = self.repo.get_order(self.db, broadcast.order_id) if broadcast.order_id else None
        if order is not None and self.repo.order_winner(order, kind) is not None:
            self._reject_as_assigned(request, now)
            raise AlreadyResolvedError("Order already assigned", broadcast.id)

        if now > request.expires_at + timedelta(seconds=config.RESPONSE_GRACE_SECONDS):
            logger.info(f"⌛ Late response to request {request.id} ignored")
            raise ExpiredError("This request has expired", broadcast.id)

        if decision == "reject":
            return self._reject(request, broadcast.id, reason, now)
        return self._accept(request, broadcast, order, kind, now)

    def _reject_as_assigned(self, request: CandidateRequest, now) -> None:
        self.db.rollback()
        if self.repo.reject_request(self.db, request.id, "Order already assigned", now):
            self.db.commit()

    def _reject(self, request: CandidateRequest, broadcast_id: int, reason, now) -> dict:
        if not self.repo.reject_request(self.db, request.id, reason or "Not available", now):
            raise AlreadyResolvedError("This request has already been handled", broadcast_id)

        pending_left = self.repo.count_pending_requests(self.db, broadcast_id)
        broadcast_status = self.repo.get_broadcast(self.db, broadcast_id).status
        self.db.commit()
        logger.info(
            f"👎 Candidate {request.candidate_id} declined request {request.id} "
            f"({pending_left} still pending)"
        )

        if pending_left == 0 and broadcast_status == BroadcastStatus.SEARCHING.value:
            # Fast path; the cron sweep and client observers will also get here
            try:
                self.service.expedite_broadcast(broadcast_id)
            except DispatchError as e:
                logger.warning(f"⚠️ Early escalation of broadcast {broadcast_id} failed: {e.message}")

        return {
            "success": True,
            "status": RequestStatus.REJECTED.value,
            "broadcastId": broadcast_id,
            "requestId": request.id,
            "message": "Rejection recorded",
        }

    def _accept(self, request: CandidateRequest, broadcast, order, kind: BroadcastKind, now) -> dict:
        candidate_id = request.candidate_id
        snapshot = to_snapshot(broadcast)
        try:
            transition = accept(snapshot, candidate_id, now)
        except IllegalTransitionError as e:
            raise AlreadyResolvedError("This broadcast is already closed", broadcast.id) from e

        if not self.repo.claim_request(self.db, request.id, now):
            raise AlreadyResolvedError("This request has already been handled", broadcast.id)

        if order is not None and not self.repo.claim_order_winner(
            self.db, kind, order.id, candidate_id, **ORDER_UPDATES_ON_ACCEPT[kind]
        ):
            self._reject_as_assigned(request, now)
            raise AlreadyResolvedError("Order already assigned", broadcast.id)

        if not self.repo.claim_acceptance(self.db, broadcast.id, candidate_id, now):
            raise AlreadyResolvedError("This broadcast is already closed", broadcast.id)

        accepted = transition.snapshot.model_copy(update={"version": snapshot.version + 1})
        policy = self.service.policy_for_snapshot(snapshot)
        self.service.apply_effects(accepted, policy, transition.effects, now)

        vendor = None
        if kind == BroadcastKind.DELIVERY:
            self.repo.touch_delivery_partner(self.db, candidate_id, now)
        elif order is not None:
            vendor = self.repo.get_vendor(self.db, candidate_id)
            pharmacy_name = vendor.pharmacy_name if vendor else "a pharmacy"
            self.notifier.notify_patient(
                order,
                "✅ Order Accepted!",
                f"Your order has been accepted by {pharmacy_name}. Order #{order.order_number}",
                "order_accepted",
                broadcast_id=broadcast.id,
            )

        self.db.commit()
        logger.info(
            f"🎉 Broadcast {broadcast.id} accepted by {request.candidate_kind} {candidate_id} "
            f"(order {broadcast.order_id})"
        )
        self.service.publish(accepted)

        result = {
            "success": True,
            "status": RequestStatus.ACCEPTED.value,
            "broadcastId": broadcast.id,
            "requestId": request.id,
            "orderId": order.id if order is not None else None,
            "orderNumber": order.order_number if order is not None else None,
            "message": "Order accepted successfully",
        }

        if kind == BroadcastKind.CART and order is not None:
            result["deliveryBroadcastId"] = self._chain_delivery(order.id, vendor)

        return result

    def _chain_delivery(self, order_id: int, vendor) -> Optional[int]:
        """Look for a delivery partner as soon as a pharmacy takes a cart order"""
        if not config.CHAIN_DELIVERY_ON_CART_ACCEPT:
            return None
        if vendor is None or vendor.latitude is None or vendor.longitude is None:
            logger.info(f"Order {order_id}: pharmacy has no location, delivery broadcast skipped")
            return None

        try:
            snapshot = self.service.start_delivery_broadcast(order_id)
            return snapshot.id
        except DispatchError as e:
            logger.warning(f"⚠️ Delivery broadcast for order {order_id} not started: {e.message}")
            return e.broadcast_id
