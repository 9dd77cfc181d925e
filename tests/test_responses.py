"""
Accept / reject handling: first accept wins, late and stale responses, early escalation
when every notified candidate declines, and the cart to delivery hand-off.
"""

import pytest
from sqlalchemy import update

from app.database import SessionLocal
from app.domain.dispatch.errors import (
    AlreadyResolvedError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from app.domain.dispatch.notifier import Notifier
from app.domain.dispatch.repository import BroadcastRepository
from app.domain.dispatch.responses import ResponseHandler
from app.domain.dispatch.service import BroadcastService
from app.domain.dispatch.state import BroadcastKind, BroadcastPhase, BroadcastStatus
from app.models import DeliveryPartner, MedicineOrder, Notification
from app.models_broadcast import Broadcast, CandidateRequest
from conftest import ORIGIN, START


@pytest.fixture
def delivery(service, make_vendor, make_partner, make_order):
    vendor = make_vendor()
    partners = [make_partner(0.01 * i) for i in range(1, 5)]
    order = make_order(vendor)
    snapshot = service.start_delivery_broadcast(order.id)
    requests = {r.candidate_id: r for r in service.list_requests(snapshot.id)}
    return snapshot, order, partners, requests


def test_accept_assigns_partner_and_closes_broadcast(db, service, handler, clock, delivery) -> None:
    snapshot, order, partners, requests = delivery
    winner = partners[1]

    clock.advance(10)
    result = handler.respond(requests[winner.id].id, winner.id, "accept")

    assert result["success"] is True
    assert result["status"] == "accepted"
    assert result["orderId"] == order.id
    assert "deliveryBroadcastId" not in result

    db.expire_all()
    assert db.get(MedicineOrder, order.id).delivery_partner_id == winner.id
    assert db.get(DeliveryPartner, winner.id).location_updated_at == clock.now()

    after = service.get_broadcast(snapshot.id)
    assert after.status == BroadcastStatus.ACCEPTED
    assert after.accepted_by_id == winner.id
    assert after.version == snapshot.version + 1

    for request in service.list_requests(snapshot.id):
        if request.candidate_id == winner.id:
            assert request.status == "accepted"
        else:
            assert request.status == "rejected"
            assert request.rejection_reason == "Another candidate accepted"

    unread = db.query(Notification).filter(Notification.is_read.is_(False)).count()
    assert unread == 0


def test_second_accept_loses(handler, clock, delivery) -> None:
    _, _, partners, requests = delivery

    clock.advance(5)
    handler.respond(requests[partners[0].id].id, partners[0].id, "accept")

    with pytest.raises(AlreadyResolvedError):
        handler.respond(requests[partners[2].id].id, partners[2].id, "accept")


@pytest.fixture
def race(monkeypatch, clock, gateway, feed):
    """
    Run `rival(handler, session)` on its own session right after the accepting handler
    has read the order, so the accept works from a stale view and must lose on its
    conditional writes.
    """
    original = BroadcastRepository.order_winner
    rivals = []

    def order_winner(order, kind):
        if rivals:
            rival = rivals.pop()
            rival_db = SessionLocal()
            try:
                rival_service = BroadcastService(
                    rival_db, clock=clock, notifier=Notifier(rival_db, gateway), feed=feed
                )
                rival(ResponseHandler(rival_service), rival_db)
            finally:
                rival_db.close()
        return original(order, kind)

    monkeypatch.setattr(BroadcastRepository, "order_winner", staticmethod(order_winner))
    return rivals.append


def test_concurrent_accepts_have_one_winner(db, handler, clock, delivery, race) -> None:
    snapshot, order, partners, requests = delivery
    first, second = partners[0], partners[1]
    race(lambda rival, _: rival.respond(requests[second.id].id, second.id, "accept"))

    clock.advance(5)
    with pytest.raises(AlreadyResolvedError):
        handler.respond(requests[first.id].id, first.id, "accept")

    db.expire_all()
    assert db.get(MedicineOrder, order.id).delivery_partner_id == second.id
    assert db.get(Broadcast, snapshot.id).accepted_by_id == second.id
    accepted = db.query(CandidateRequest).filter(CandidateRequest.status == "accepted").all()
    assert [r.candidate_id for r in accepted] == [second.id]
    assert db.get(CandidateRequest, requests[first.id].id).status == "rejected"


def test_order_claimed_mid_accept_rejects_the_request(db, handler, delivery, race) -> None:
    snapshot, order, partners, requests = delivery
    outsider = partners[3]

    def assign_elsewhere(_, rival_db):
        rival_db.get(MedicineOrder, order.id).delivery_partner_id = outsider.id
        rival_db.commit()

    race(assign_elsewhere)

    request_id = requests[partners[0].id].id
    with pytest.raises(AlreadyResolvedError):
        handler.respond(request_id, partners[0].id, "accept")

    db.expire_all()
    assert db.get(MedicineOrder, order.id).delivery_partner_id == outsider.id
    request = db.get(CandidateRequest, request_id)
    assert request.status == "rejected"
    assert request.rejection_reason == "Order already assigned"
    broadcast = db.get(Broadcast, snapshot.id)
    assert broadcast.status == "searching"
    assert broadcast.accepted_by_id is None


def test_broadcast_closed_mid_accept_rolls_back(db, handler, delivery, race) -> None:
    snapshot, order, partners, requests = delivery

    def close_broadcast(_, rival_db):
        rival_db.execute(
            update(Broadcast)
            .where(Broadcast.id == snapshot.id)
            .values(status="failed", failure_reason="timeout")
        )
        rival_db.commit()

    race(close_broadcast)

    request_id = requests[partners[0].id].id
    with pytest.raises(AlreadyResolvedError):
        handler.respond(request_id, partners[0].id, "accept")

    db.expire_all()
    assert db.get(MedicineOrder, order.id).delivery_partner_id is None
    assert db.get(CandidateRequest, request_id).status == "pending"
    assert db.get(Broadcast, snapshot.id).accepted_by_id is None


def test_accept_after_order_was_assigned_elsewhere(db, handler, delivery) -> None:
    _, order, partners, requests = delivery
    db.get(MedicineOrder, order.id).delivery_partner_id = partners[3].id
    db.commit()

    request_id = requests[partners[0].id].id
    with pytest.raises(AlreadyResolvedError):
        handler.respond(request_id, partners[0].id, "accept")

    request = db.get(CandidateRequest, request_id, populate_existing=True)
    assert request.status == "rejected"
    assert request.rejection_reason == "Order already assigned"


def test_late_response_is_expired(handler, clock, delivery) -> None:
    _, _, partners, requests = delivery

    clock.advance(20 + 31)
    with pytest.raises(ExpiredError):
        handler.respond(requests[partners[0].id].id, partners[0].id, "accept")


def test_response_within_grace_window_still_counts(service, handler, clock, delivery) -> None:
    snapshot, _, partners, requests = delivery

    clock.advance(20 + 25)
    result = handler.respond(requests[partners[0].id].id, partners[0].id, "accept")

    assert result["status"] == "accepted"
    assert service.get_broadcast(snapshot.id).status == BroadcastStatus.ACCEPTED


def test_unknown_request_or_wrong_candidate(handler, delivery) -> None:
    _, _, partners, requests = delivery

    with pytest.raises(NotFoundError):
        handler.respond(99999, partners[0].id, "accept")
    with pytest.raises(NotFoundError):
        handler.respond(requests[partners[0].id].id, partners[1].id, "accept")


def test_missing_or_invalid_fields(handler, delivery) -> None:
    _, _, partners, requests = delivery
    request_id = requests[partners[0].id].id

    with pytest.raises(ValidationError) as exc_info:
        handler.respond(None, None, "accept")
    assert "requestId" in exc_info.value.message
    assert "candidateId" in exc_info.value.message

    with pytest.raises(ValidationError):
        handler.respond(request_id, partners[0].id, None)
    with pytest.raises(ValidationError):
        handler.respond(request_id, partners[0].id, "maybe")


def test_reject_records_reason(db, handler, delivery) -> None:
    snapshot, _, partners, requests = delivery

    result = handler.respond(requests[partners[0].id].id, partners[0].id, "reject")
    handler.respond_to_broadcast(snapshot.id, partners[1].id, "reject", "Bike is in repair")

    assert result == {
        "success": True,
        "status": "rejected",
        "broadcastId": snapshot.id,
        "requestId": requests[partners[0].id].id,
        "message": "Rejection recorded",
    }
    db.expire_all()
    assert db.get(CandidateRequest, requests[partners[0].id].id).rejection_reason == "Not available"
    assert db.get(CandidateRequest, requests[partners[1].id].id).rejection_reason == "Bike is in repair"


def test_everyone_declining_escalates_without_waiting(service, handler, delivery) -> None:
    snapshot, _, partners, requests = delivery

    for partner in partners[:3]:
        handler.respond(requests[partner.id].id, partner.id, "reject")

    after = service.get_broadcast(snapshot.id)
    assert after.current_phase == BroadcastPhase.SEQUENTIAL
    assert after.broadcast_round == 2
    assert after.notified_ids[-1] == partners[3].id
    assert after.phase_timeout_at == START.replace(second=20)


def test_rejected_request_cannot_be_accepted(handler, delivery) -> None:
    snapshot, _, partners, _ = delivery

    handler.respond_to_broadcast(snapshot.id, partners[0].id, "reject")

    with pytest.raises(AlreadyResolvedError):
        handler.respond_to_broadcast(snapshot.id, partners[0].id, "accept")


def test_cart_accept_confirms_order_and_starts_delivery(
    db, service, handler, make_vendor, make_partner
) -> None:
    pharmacy = make_vendor(0.01, pharmacy_name="City Care Pharmacy")
    make_vendor(0.02)
    rider = make_partner(0.012)

    cart = service.start_cart_broadcast(
        patient_id=501,
        items=[{"medicineId": 3, "name": "Cetirizine", "quantity": 1, "unitPrice": 40.0}],
        delivery_latitude=ORIGIN[0],
        delivery_longitude=ORIGIN[1],
        final_amount=70.0,
    )
    request = next(r for r in service.list_requests(cart.id) if r.candidate_id == pharmacy.id)

    result = handler.respond(request.id, pharmacy.id, "accept")

    db.expire_all()
    order = db.get(MedicineOrder, cart.order_id)
    assert order.vendor_id == pharmacy.id
    assert order.order_status == "confirmed"

    patient_note = db.query(Notification).filter(Notification.recipient_type == "patient").one()
    assert patient_note.type == "order_accepted"
    assert "City Care Pharmacy" in patient_note.message
    assert patient_note.is_read is False

    delivery_broadcast = db.get(Broadcast, result["deliveryBroadcastId"])
    assert delivery_broadcast.kind == BroadcastKind.DELIVERY.value
    assert delivery_broadcast.order_id == order.id
    assert delivery_broadcast.notified_ids == [rider.id]


def test_prescription_accept_approves(db, service, handler, make_vendor) -> None:
    pharmacy = make_vendor(0.005)

    snapshot = service.start_prescription_broadcast("rx-991", 501, ORIGIN[0], ORIGIN[1])
    request = service.list_requests(snapshot.id)[0]

    result = handler.respond(request.id, pharmacy.id, "accept")

    db.expire_all()
    order = db.get(MedicineOrder, snapshot.order_id)
    assert result["orderNumber"] == order.order_number
    assert order.vendor_id == pharmacy.id
    assert order.prescription_status == "approved"
    assert order.order_status == "confirmed"
