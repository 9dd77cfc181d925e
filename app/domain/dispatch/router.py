"""Broadcast router - FastAPI endpoints for broadcasts, responses and escalation"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ... import config
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...shared.clock import system_clock
from .events import RedisChangeFeed
from .notifier import Notifier, PushGateway
from .responses import ResponseHandler
from .schemas import (
    BroadcastEnvelope,
    BroadcastOut,
    CandidateRequestOut,
    InboxItem,
    RespondRequest,
    RespondResult,
    StartCartBroadcastRequest,
    StartDeliveryBroadcastRequest,
    StartPrescriptionBroadcastRequest,
    SweepSummary,
)
from .service import BroadcastService
from .state import BroadcastSnapshot, CandidateKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/broadcasts", tags=["Broadcasts"])

change_feed = RedisChangeFeed()

# Every open "searching" dialog calls the escalation trigger, so it gets its own budget
escalation_rate_limit = create_rate_limiter(
    limit=config.ESCALATION_RATE_LIMIT, window_seconds=60, key_prefix="broadcast_escalate"
)
response_rate_limit = create_rate_limiter(
    limit=config.RESPONSE_RATE_LIMIT, window_seconds=60, key_prefix="broadcast_respond"
)


def get_clock():
    return system_clock


def get_change_feed():
    return change_feed


def get_push_gateway() -> PushGateway:
    return PushGateway()


def get_broadcast_service(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    feed=Depends(get_change_feed),
    gateway: PushGateway = Depends(get_push_gateway),
) -> BroadcastService:
    """Dependency injection for BroadcastService"""
    return BroadcastService(db, clock=clock, notifier=Notifier(db, gateway), feed=feed)


def get_response_handler(
    service: BroadcastService = Depends(get_broadcast_service),
) -> ResponseHandler:
    return ResponseHandler(service)


def _envelope(service: BroadcastService, snapshot: BroadcastSnapshot, message=None):
    return BroadcastEnvelope(
        broadcast=BroadcastOut.from_snapshot(snapshot, service.clock.now()), message=message
    )


# ============================================================================
# START
# ============================================================================


@router.post("/delivery", response_model=BroadcastEnvelope)
async def start_delivery_broadcast(
    data: StartDeliveryBroadcastRequest,
    background_tasks: BackgroundTasks,
    service: BroadcastService = Depends(get_broadcast_service),
):
    """Look for a delivery partner around the order's pharmacy"""
    snapshot = service.start_delivery_broadcast(data.orderId, radius_km=data.radiusKm)
    background_tasks.add_task(service.notifier.flush_pushes)
    return _envelope(service, snapshot, "Searching for delivery partners")


@router.post("/cart", response_model=BroadcastEnvelope)
async def start_cart_broadcast(
    data: StartCartBroadcastRequest,
    background_tasks: BackgroundTasks,
    service: BroadcastService = Depends(get_broadcast_service),
):
    """Create the order for a cart and offer it to nearby pharmacies"""
    snapshot = service.start_cart_broadcast(
        patient_id=data.patientId,
        items=[item.model_dump() for item in data.items],
        delivery_latitude=data.deliveryLatitude,
        delivery_longitude=data.deliveryLongitude,
        delivery_address=data.deliveryAddress,
        customer_phone=data.customerPhone,
        total_amount=data.totalAmount,
        delivery_fee=data.deliveryFee,
        handling_charges=data.handlingCharges,
        discount_amount=data.discountAmount,
        final_amount=data.finalAmount,
        payment_method=data.paymentMethod,
        radius_km=data.radiusKm,
    )
    background_tasks.add_task(service.notifier.flush_pushes)
    return _envelope(service, snapshot, "Searching for pharmacies")


@router.post("/prescription", response_model=BroadcastEnvelope)
async def start_prescription_broadcast(
    data: StartPrescriptionBroadcastRequest,
    background_tasks: BackgroundTasks,
    service: BroadcastService = Depends(get_broadcast_service),
):
    """Offer an uploaded prescription to nearby pharmacies in rounds"""
    snapshot = service.start_prescription_broadcast(
        prescription_id=data.prescriptionId,
        patient_id=data.patientId,
        patient_latitude=data.patientLatitude,
        patient_longitude=data.patientLongitude,
        order_id=data.orderId,
        max_distance_km=data.maxDistanceKm,
        pharmacies_per_round=data.pharmaciesPerRound,
        prescription_url=data.prescriptionUrl,
    )
    background_tasks.add_task(service.notifier.flush_pushes)
    return _envelope(service, snapshot, "Searching for pharmacies")


# ============================================================================
# ESCALATION TRIGGER
# ============================================================================


@router.post("/escalate", response_model=SweepSummary)
async def escalate_due_broadcasts(
    background_tasks: BackgroundTasks,
    service: BroadcastService = Depends(get_broadcast_service),
    _: None = Depends(escalation_rate_limit),
):
    """Advance every due broadcast now. Idempotent; also run by the worker cron."""
    summary = service.run_escalation_sweep()
    background_tasks.add_task(service.notifier.flush_pushes)
    return SweepSummary(**summary)


# ============================================================================
# CANDIDATE RESPONSES
# ============================================================================


@router.post("/requests/{request_id}/respond", response_model=RespondResult)
async def respond_to_request(
    request_id: int,
    data: RespondRequest,
    background_tasks: BackgroundTasks,
    handler: ResponseHandler = Depends(get_response_handler),
    _: None = Depends(response_rate_limit),
):
    """Accept or reject a candidate request"""
    result = handler.respond(request_id, data.candidateId, data.decision, data.reason)
    background_tasks.add_task(handler.notifier.flush_pushes)
    return RespondResult(**result)


@router.post("/{broadcast_id}/respond", response_model=RespondResult)
async def respond_to_broadcast(
    broadcast_id: int,
    data: RespondRequest,
    background_tasks: BackgroundTasks,
    handler: ResponseHandler = Depends(get_response_handler),
    _: None = Depends(response_rate_limit),
):
    """Accept or reject the caller's latest request in a broadcast"""
    result = handler.respond_to_broadcast(
        broadcast_id, data.candidateId, data.decision, data.reason
    )
    background_tasks.add_task(handler.notifier.flush_pushes)
    return RespondResult(**result)


# ============================================================================
# READS
# ============================================================================


@router.get("/inbox/{candidate_kind}/{candidate_id}", response_model=list[InboxItem])
async def get_candidate_inbox(
    candidate_kind: CandidateKind,
    candidate_id: int,
    service: BroadcastService = Depends(get_broadcast_service),
):
    """Pending requests for a pharmacy or delivery partner"""
    return [
        InboxItem(
            request=CandidateRequestOut.model_validate(item["request"]),
            kind=item["kind"],
            phase=item["phase"],
            context=item["context"],
        )
        for item in service.candidate_inbox(candidate_kind, candidate_id)
    ]


@router.get("/{broadcast_id}", response_model=BroadcastEnvelope)
async def get_broadcast(
    broadcast_id: int,
    service: BroadcastService = Depends(get_broadcast_service),
):
    return _envelope(service, service.get_broadcast(broadcast_id))


@router.get("/{broadcast_id}/requests", response_model=list[CandidateRequestOut])
async def get_broadcast_requests(
    broadcast_id: int,
    service: BroadcastService = Depends(get_broadcast_service),
):
    return [CandidateRequestOut.model_validate(r) for r in service.list_requests(broadcast_id)]


@router.get("/{broadcast_id}/events")
async def stream_broadcast_events(
    broadcast_id: int,
    service: BroadcastService = Depends(get_broadcast_service),
    feed=Depends(get_change_feed),
):
    """Server-sent events: the current snapshot, then every change until it resolves"""
    snapshot = service.get_broadcast(broadcast_id)
    clock = service.clock

    def _event(current: BroadcastSnapshot) -> str:
        payload = BroadcastOut.from_snapshot(current, clock.now()).model_dump_json()
        return f"event: broadcast\ndata: {payload}\n\n"

    async def event_stream():
        yield _event(snapshot)
        if snapshot.is_terminal:
            return
        async for payload in feed.subscribe(broadcast_id):
            update = BroadcastSnapshot.model_validate(payload)
            yield _event(update)
            if update.is_terminal:
                return

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
