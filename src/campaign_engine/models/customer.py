"""Customer population models read by the audience resolver."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from campaign_engine.db.base import Base


class Customer(Base):
    """Restaurant customer owned by the ordering and loyalty subsystems."""

    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_restaurant_last_visit", "restaurant_id", "last_visit_at"),
        Index("ix_customers_restaurant_points", "restaurant_id", "total_points"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    restaurant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    last_visit_at = Column(DateTime(timezone=True), nullable=True)
    total_points = Column(Integer, nullable=False, default=0, server_default="0")
    consent_push = Column(Boolean, nullable=False, default=True, server_default="true")
    consent_whatsapp = Column(Boolean, nullable=False, default=False, server_default="false")
    consent_email = Column(Boolean, nullable=False, default=True, server_default="true")
    consent_sms = Column(Boolean, nullable=False, default=False, server_default="false")
    consent_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tag_assignments = relationship(
        "CustomerTagAssignment", back_populates="customer", cascade="all, delete-orphan"
    )


class CustomerTag(Base):
    """Restaurant-scoped label used for segmentation (VIP, Inactive, ...)."""

    __tablename__ = "customer_tags"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    restaurant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False, default="#3B82F6", server_default="#3B82F6")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    assignments = relationship(
        "CustomerTagAssignment", back_populates="tag", cascade="all, delete-orphan"
    )


class CustomerTagAssignment(Base):
    """Many-to-many link between customers and tags."""

    __tablename__ = "customer_tag_assignments"
    __table_args__ = (
        UniqueConstraint("customer_id", "tag_id", name="uq_customer_tag_assignments_customer_tag"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag_id = Column(
        UUID(as_uuid=True), ForeignKey("customer_tags.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="tag_assignments")
    tag = relationship("CustomerTag", back_populates="assignments")
