"""Dispatch domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_latitude, validate_longitude, validate_phone
from .state import BroadcastSnapshot


class StartDeliveryBroadcastRequest(BaseModel):
    """Schema for starting a delivery partner broadcast"""

    orderId: int
    radiusKm: Optional[float] = None

    @field_validator("radiusKm")
    @classmethod
    def validate_radius(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Radius must be greater than 0")
        return v


class CartItem(BaseModel):
    medicineId: Optional[int] = None
    vendorMedicineId: Optional[int] = None
    name: Optional[str] = None
    quantity: int = 1
    unitPrice: float = 0
    discountAmount: float = 0
    totalPrice: Optional[float] = None

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v):
        if v < 1:
            raise ValueError("Quantity must be at least 1")
        return v


class StartCartBroadcastRequest(BaseModel):
    """Schema for broadcasting a checked-out cart to nearby pharmacies"""

    patientId: int
    items: list[CartItem]
    deliveryLatitude: float
    deliveryLongitude: float
    deliveryAddress: Optional[str] = None
    customerPhone: Optional[str] = None
    totalAmount: Optional[float] = None
    deliveryFee: Optional[float] = None
    handlingCharges: Optional[float] = None
    discountAmount: float = 0
    finalAmount: Optional[float] = None
    paymentMethod: str = "cod"
    radiusKm: Optional[float] = None

    @field_validator("deliveryLatitude")
    @classmethod
    def validate_lat(cls, v):
        return validate_latitude(v)

    @field_validator("deliveryLongitude")
    @classmethod
    def validate_lng(cls, v):
        return validate_longitude(v)

    @field_validator("customerPhone")
    @classmethod
    def validate_customer_phone(cls, v):
        if v:
            return validate_phone(v)
        return v


class StartPrescriptionBroadcastRequest(BaseModel):
    """Schema for broadcasting an uploaded prescription"""

    prescriptionId: str
    patientId: int
    patientLatitude: float
    patientLongitude: float
    orderId: Optional[int] = None
    maxDistanceKm: Optional[float] = None
    pharmaciesPerRound: Optional[int] = None
    prescriptionUrl: Optional[str] = None

    @field_validator("patientLatitude")
    @classmethod
    def validate_lat(cls, v):
        return validate_latitude(v)

    @field_validator("patientLongitude")
    @classmethod
    def validate_lng(cls, v):
        return validate_longitude(v)


class RespondRequest(BaseModel):
    """
    Candidate decision. Fields are optional here so that missing values are reported
    with the dispatch error payload instead of a schema error.
    """

    candidateId: Optional[int] = None
    decision: Optional[str] = None
    reason: Optional[str] = None


class BroadcastOut(BaseModel):
    """Broadcast snapshot as exposed to clients (remaining queue reduced to a count)"""

    id: int
    kind: str
    order_id: Optional[int]
    origin_id: int
    origin_latitude: float
    origin_longitude: float
    status: str
    current_phase: str
    broadcast_round: int
    search_radius_km: float
    phase_timeout_at: datetime
    timeout_at: datetime
    notified_ids: list[int]
    candidates_notified: int
    candidates_remaining: int
    phase_seconds_left: int
    accepted_by_id: Optional[int] = None
    accepted_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    context: Optional[dict] = None
    version: int

    @classmethod
    def from_snapshot(cls, snapshot: BroadcastSnapshot, now: datetime) -> "BroadcastOut":
        seconds_left = 0
        if not snapshot.is_terminal:
            seconds_left = max(0, int((snapshot.phase_timeout_at - now).total_seconds()))
        return cls(
            id=snapshot.id,
            kind=snapshot.kind.value,
            order_id=snapshot.order_id,
            origin_id=snapshot.origin_id,
            origin_latitude=snapshot.origin_latitude,
            origin_longitude=snapshot.origin_longitude,
            status=snapshot.status.value,
            current_phase=snapshot.current_phase.value,
            broadcast_round=snapshot.broadcast_round,
            search_radius_km=snapshot.search_radius_km,
            phase_timeout_at=snapshot.phase_timeout_at,
            timeout_at=snapshot.timeout_at,
            notified_ids=list(snapshot.notified_ids),
            candidates_notified=len(snapshot.notified_ids),
            candidates_remaining=len(snapshot.remaining_candidates),
            phase_seconds_left=seconds_left,
            accepted_by_id=snapshot.accepted_by_id,
            accepted_at=snapshot.accepted_at,
            failure_reason=snapshot.failure_reason.value if snapshot.failure_reason else None,
            context=snapshot.context,
            version=snapshot.version,
        )


class BroadcastEnvelope(BaseModel):
    success: bool = True
    broadcast: BroadcastOut
    message: Optional[str] = None


class CandidateRequestOut(BaseModel):
    id: int
    broadcast_id: int
    order_id: Optional[int]
    candidate_kind: str
    candidate_id: int
    distance_km: Optional[float]
    round: int
    status: str
    expires_at: datetime
    responded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    class Config:
        from_attributes = True


class InboxItem(BaseModel):
    request: CandidateRequestOut
    kind: str
    phase: str
    context: dict


class RespondResult(BaseModel):
    success: bool
    status: str
    broadcastId: int
    requestId: int
    orderId: Optional[int] = None
    orderNumber: Optional[str] = None
    deliveryBroadcastId: Optional[int] = None
    message: str


class SweepSummary(BaseModel):
    success: bool = True
    checked: int
    escalated: int
    failed: int
    skipped: int
    errors: int
