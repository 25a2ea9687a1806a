"""
trip_session.py - Trip session model.

CRITICAL: `state` only ever moves forward (PENDING -> IN_PROGRESS -> COMPLETED).
`version` increases by one for every accepted verification command and backs
the optimistic check on completion.
"""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String
from sqlalchemy.orm import relationship

from sealguard.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class TripSession(Base):
    __tablename__ = "trip_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(36), nullable=False, unique=True, index=True)

    source = Column(String(200), nullable=False)
    destination = Column(String(200), nullable=False)
    created_by = Column(String(100), nullable=False, index=True)

    state = Column(String(20), nullable=False, index=True, default="PENDING")
    version = Column(Integer, nullable=False, default=0)

    # Operator declarations (key -> value), frozen when verification starts
    declared_fields = Column(JSON, nullable=False, default=dict)
    declared_images = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    registered_seals = relationship(
        "SealRegistration",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SealRegistration.position",
    )
    scans = relationship(
        "SealScan",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SealScan.id",
    )
    seal_statuses = relationship(
        "SealStatusEntry", back_populates="session", cascade="all, delete-orphan"
    )
    field_verifications = relationship(
        "FieldVerificationEntry",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="FieldVerificationEntry.position",
    )
    verification_record = relationship(
        "VerificationRecord", back_populates="session", uselist=False, cascade="all, delete-orphan"
    )
    activities = relationship(
        "VerificationActivity",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="VerificationActivity.id",
    )
