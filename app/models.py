from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class MedicineVendor(Base):
    """Pharmacy that can take cart and prescription orders"""

    __tablename__ = "medicine_vendors"

    id = Column(Integer, primary_key=True, index=True)
    pharmacy_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    orders = relationship("MedicineOrder", back_populates="vendor")


class DeliveryPartner(Base):
    __tablename__ = "delivery_partners"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    location_updated_at = Column(DateTime, nullable=True)  # Touched when a partner wins an order
    created_at = Column(DateTime, server_default=func.now())


class MedicineOrder(Base):
    __tablename__ = "medicine_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    patient_id = Column(Integer, nullable=False, index=True)

    # Winner fields - written once by the conditional update of the winning acceptance
    vendor_id = Column(Integer, ForeignKey("medicine_vendors.id"), nullable=True, index=True)
    delivery_partner_id = Column(
        Integer, ForeignKey("delivery_partners.id"), nullable=True, index=True
    )

    # awaiting_pharmacy -> confirmed -> ready_for_pickup -> out_for_delivery -> delivered
    order_status = Column(String(50), default="placed", nullable=False, index=True)
    prescription_status = Column(String(50), nullable=True)  # pending, approved, rejected
    prescription_id = Column(String(64), nullable=True)
    prescription_required = Column(Boolean, default=False, nullable=False)

    # Delivery details
    delivery_address = Column(Text, nullable=True)
    customer_phone = Column(String(50), nullable=True)
    delivery_latitude = Column(Float, nullable=True)
    delivery_longitude = Column(Float, nullable=True)

    # Cart contents and amounts (charge arithmetic happens upstream)
    items = Column(JSON, default=list, nullable=True)
    total_amount = Column(Float, nullable=True)
    delivery_fee = Column(Float, nullable=True)
    handling_charges = Column(Float, nullable=True)
    discount_amount = Column(Float, default=0, nullable=True)
    final_amount = Column(Float, nullable=True)
    payment_method = Column(String(20), default="cod", nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    vendor = relationship("MedicineVendor", back_populates="orders")
    delivery_partner = relationship("DeliveryPartner")


class Notification(Base):
    """Notification outbox. Rendering and device delivery happen elsewhere."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_type = Column(String(30), nullable=False)  # vendor, delivery_partner, patient
    recipient_id = Column(Integer, nullable=False, index=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id"), nullable=True, index=True)
    order_id = Column(Integer, nullable=True)
    candidate_request_id = Column(Integer, nullable=True)

    type = Column(String(50), nullable=False)  # delivery_request, cart_order_request, ...
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(20), default="normal", nullable=False)
    payload = Column(JSON, nullable=True)

    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
