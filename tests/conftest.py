# Ensure the project root is on sys.path and the app uses a throwaway in-memory database
import os
import sys
from datetime import datetime
from pathlib import Path

_root = str(Path(__file__).resolve().parent.parent)
if sys.path[0:1] != [_root]:
    sys.path.insert(0, _root)

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PUSH_NOTIFICATION_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from app import models, models_broadcast  # noqa: F401
from app.database import Base, SessionLocal, engine, get_db
from app.domain.dispatch import router as dispatch_router
from app.domain.dispatch.notifier import Notifier, PushGateway
from app.domain.dispatch.responses import ResponseHandler
from app.domain.dispatch.service import BroadcastService
from app.models import DeliveryPartner, MedicineOrder, MedicineVendor
from app.shared.clock import FrozenClock

START = datetime(2026, 3, 2, 9, 0, 0)

# Bengaluru; 0.01 degrees of latitude is about 1.11 km
ORIGIN = (12.9716, 77.5946)


class RecordingPushGateway(PushGateway):
    def __init__(self):
        super().__init__(url="")
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return True


class RecordingChangeFeed:
    def __init__(self):
        self.published = []

    def publish(self, snapshot):
        self.published.append(snapshot)

    async def subscribe(self, broadcast_id):
        for snapshot in list(self.published):
            if snapshot.id == broadcast_id:
                yield snapshot.model_dump(mode="json")


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def gateway():
    return RecordingPushGateway()


@pytest.fixture
def feed():
    return RecordingChangeFeed()


@pytest.fixture
def service(db, clock, gateway, feed):
    return BroadcastService(db, clock=clock, notifier=Notifier(db, gateway), feed=feed)


@pytest.fixture
def handler(service):
    return ResponseHandler(service)


@pytest.fixture
def make_vendor(db):
    def _make(lat_offset=0.0, lng_offset=0.0, **kwargs):
        data = {
            "pharmacy_name": "Pharmacy",
            "latitude": ORIGIN[0] + lat_offset,
            "longitude": ORIGIN[1] + lng_offset,
            "is_verified": True,
            "is_available": True,
        }
        data.update(kwargs)
        vendor = MedicineVendor(**data)
        db.add(vendor)
        db.commit()
        return vendor

    return _make


@pytest.fixture
def make_partner(db):
    def _make(lat_offset=0.0, lng_offset=0.0, **kwargs):
        data = {
            "name": "Rider",
            "current_latitude": ORIGIN[0] + lat_offset,
            "current_longitude": ORIGIN[1] + lng_offset,
            "is_verified": True,
            "is_available": True,
        }
        data.update(kwargs)
        partner = DeliveryPartner(**data)
        db.add(partner)
        db.commit()
        return partner

    return _make


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    def _make(vendor=None, **kwargs):
        counter["n"] += 1
        data = {
            "order_number": f"MEDTEST{counter['n']:04d}",
            "patient_id": 501,
            "vendor_id": vendor.id if vendor else None,
            "order_status": "confirmed",
            "delivery_address": "12 MG Road",
            "final_amount": 420.0,
            "delivery_fee": 30.0,
        }
        data.update(kwargs)
        order = MedicineOrder(**data)
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture
def client(db, clock, gateway, feed):
    from app.main import app

    def _get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[dispatch_router.get_clock] = lambda: clock
    app.dependency_overrides[dispatch_router.get_change_feed] = lambda: feed
    app.dependency_overrides[dispatch_router.get_push_gateway] = lambda: gateway
    app.dependency_overrides[dispatch_router.escalation_rate_limit] = lambda: None
    app.dependency_overrides[dispatch_router.response_rate_limit] = lambda: None

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
