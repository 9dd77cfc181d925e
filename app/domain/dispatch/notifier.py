"""
Notifier
Writes one outbox notification per candidate request and delivers device pushes.

Outbox rows share the transaction of the transition that produced them. Pushes are queued
and only sent once that transaction has committed; a push failure is logged, never raised.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence

import httpx
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.orm import Session

from ... import config
from ...models import MedicineOrder, Notification
from ...models_broadcast import CandidateRequest
from .policies import BroadcastPolicy
from .state import BroadcastKind, BroadcastSnapshot, NotifyCandidates

logger = logging.getLogger(__name__)

REQUEST_TITLES = {
    BroadcastKind.DELIVERY: "🚨 New Delivery Request!",
    BroadcastKind.CART: "🛒 New Order Request",
    BroadcastKind.PRESCRIPTION: "📋 New Prescription Request",
}


class PushMessage(BaseModel):
    recipient_type: str
    recipient_ids: list[int]
    title: str
    body: str
    data: dict = {}


class PushGateway:
    """HTTP client for the send-push-notification endpoint"""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url if url is not None else config.PUSH_NOTIFICATION_URL
        self.token = token if token is not None else config.PUSH_NOTIFICATION_TOKEN
        self.timeout = timeout or config.PUSH_NOTIFICATION_TIMEOUT

    async def send(self, message: PushMessage) -> bool:
        if not self.url:
            logger.debug(f"Push gateway not configured, skipping {message.title}")
            return False

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        body = {
            "recipientType": message.recipient_type,
            "recipientIds": message.recipient_ids,
            "title": message.title,
            "body": message.body,
            "data": message.data,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
            logger.info(
                f"📲 Push sent to {len(message.recipient_ids)} {message.recipient_type}(s)"
            )
            return True
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Push notification failed: {str(e)}")
            return False


def _request_message(kind: BroadcastKind, context: dict, distance_km: Optional[float]) -> str:
    order_number = context.get("order_number") or "-"
    distance = f"{distance_km:.1f} km away" if distance_km is not None else "nearby"

    if kind == BroadcastKind.DELIVERY:
        vendor_name = context.get("vendor_name") or "a pharmacy"
        return f"Order #{order_number} from {vendor_name} ({distance}). Tap to accept!"
    if kind == BroadcastKind.CART:
        item_count = context.get("item_count", 0)
        return f"Order #{order_number} with {item_count} item(s) from a customer {distance}"
    return f"A customer {distance} uploaded a prescription. Review and respond."


class Notifier:
    """Outbox writer and push dispatcher for one unit of work"""

    def __init__(self, db: Session, gateway: Optional[PushGateway] = None):
        self.db = db
        self.gateway = gateway or PushGateway()
        self.pending_pushes: list[PushMessage] = []

    def notify(
        self,
        broadcast: BroadcastSnapshot,
        policy: BroadcastPolicy,
        requests: Sequence[CandidateRequest],
        effect: NotifyCandidates,
    ) -> list[Notification]:
        """One outbox row per freshly created candidate request"""
        context = broadcast.context or {}
        title = REQUEST_TITLES[broadcast.kind]

        notifications = []
        for request in requests:
            notifications.append(
                Notification(
                    recipient_type=policy.candidate_kind.value,
                    recipient_id=request.candidate_id,
                    broadcast_id=broadcast.id,
                    order_id=broadcast.order_id,
                    candidate_request_id=request.id,
                    type=policy.notification_type,
                    title=title,
                    message=_request_message(broadcast.kind, context, request.distance_km),
                    priority="high",
                    payload={
                        "broadcast_id": broadcast.id,
                        "request_id": request.id,
                        "order_id": broadcast.order_id,
                        "order_number": context.get("order_number"),
                        "phase": effect.phase.value,
                        "round": effect.round,
                        "distance_km": request.distance_km,
                        "expires_at": effect.expires_at.isoformat(),
                    },
                )
            )
        self.db.add_all(notifications)

        if requests:
            self.pending_pushes.append(
                PushMessage(
                    recipient_type=policy.candidate_kind.value,
                    recipient_ids=[r.candidate_id for r in requests],
                    title=title,
                    body=notifications[0].message if len(requests) == 1 else title,
                    data={
                        "broadcastId": broadcast.id,
                        "orderId": broadcast.order_id,
                        "orderNumber": context.get("order_number"),
                        "phase": effect.phase.value,
                        "broadcastRound": effect.round,
                    },
                )
            )

        logger.info(
            f"📨 Broadcast {broadcast.id}: notified {len(requests)} {policy.candidate_kind.value}(s) "
            f"({effect.phase.value}, round {effect.round})"
        )
        return notifications

    def retire(self, broadcast_id: int, now: datetime) -> int:
        """Mark the broadcast's unread candidate notifications read"""
        result = self.db.execute(
            update(Notification)
            .where(
                Notification.broadcast_id == broadcast_id,
                Notification.recipient_type != "patient",
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def notify_patient(
        self,
        order: MedicineOrder,
        title: str,
        message: str,
        notification_type: str,
        broadcast_id: Optional[int] = None,
    ) -> Notification:
        notification = Notification(
            recipient_type="patient",
            recipient_id=order.patient_id,
            broadcast_id=broadcast_id,
            order_id=order.id,
            type=notification_type,
            title=title,
            message=message,
            payload={"order_id": order.id, "order_number": order.order_number},
        )
        self.db.add(notification)
        self.pending_pushes.append(
            PushMessage(
                recipient_type="patient",
                recipient_ids=[order.patient_id],
                title=title,
                body=message,
                data={"orderId": order.id, "orderNumber": order.order_number},
            )
        )
        return notification

    def discard_pushes(self) -> None:
        """Drop queued pushes of a rolled back transaction"""
        self.pending_pushes.clear()

    async def flush_pushes(self) -> int:
        """Send every queued push; call only after commit"""
        messages, self.pending_pushes = self.pending_pushes, []
        sent = 0
        for message in messages:
            if await self.gateway.send(message):
                sent += 1
        return sent
