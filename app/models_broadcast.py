"""
Broadcast Store Models

One Broadcast row per matching attempt for an order, one CandidateRequest row per
candidate notified within it. Once a broadcast is accepted or failed both tables are
an audit trail and are never rewritten.
"""

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Broadcast(Base):
    __tablename__ = "broadcasts"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(20), nullable=False, index=True)  # delivery, cart, prescription
    order_id = Column(Integer, ForeignKey("medicine_orders.id"), nullable=True, index=True)
    origin_id = Column(Integer, nullable=False)  # vendor (delivery) or patient (cart/prescription)
    origin_latitude = Column(Float, nullable=False)
    origin_longitude = Column(Float, nullable=False)

    # Status workflow: searching -> accepted | failed (both terminal)
    status = Column(String(20), default="searching", nullable=False, index=True)
    # controlled_parallel -> sequential (delivery, cart) or round (prescription)
    current_phase = Column(String(30), nullable=False)
    broadcast_round = Column(Integer, default=1, nullable=False)
    search_radius_km = Column(Float, nullable=False)

    phase_timeout_at = Column(DateTime, nullable=False, index=True)
    timeout_at = Column(DateTime, nullable=False)

    notified_ids = Column(JSON, default=list, nullable=False)  # append-only
    remaining_candidates = Column(JSON, default=list, nullable=False)  # [{"id", "distance_km"}]

    accepted_by_id = Column(Integer, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(30), nullable=True)  # timeout, no_candidates, max_rounds

    context = Column(JSON, nullable=True)  # Order summary shown to candidates

    # Bumped by every conditional write; a stale writer matches zero rows
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    requests = relationship(
        "CandidateRequest", back_populates="broadcast", order_by="CandidateRequest.id"
    )
    order = relationship("MedicineOrder")


class CandidateRequest(Base):
    __tablename__ = "candidate_requests"

    id = Column(Integer, primary_key=True, index=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id"), nullable=False, index=True)
    order_id = Column(Integer, nullable=True)
    candidate_kind = Column(String(30), nullable=False)  # vendor, delivery_partner
    candidate_id = Column(Integer, nullable=False, index=True)
    distance_km = Column(Float, nullable=True)
    round = Column(Integer, default=1, nullable=False)

    # pending -> accepted | rejected | expired
    status = Column(String(20), default="pending", nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    responded_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    broadcast = relationship("Broadcast", back_populates="requests")
