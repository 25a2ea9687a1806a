"""
seals.py - Seal registration, scan and status models.

Uniqueness is enforced on the normalized identifier, so two requests that
race on the same tag cannot both be stored.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sealguard.database import Base

from .trip_session import utcnow


class SealRegistration(Base):
    """Operator-declared seal tag (immutable once verification starts)."""

    __tablename__ = "seal_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    seal_id = Column(String(100), nullable=False)
    normalized_id = Column(String(100), nullable=False, index=True)
    method = Column(String(20), nullable=False, default="manual")
    image_ref = Column(String(500), nullable=True)
    registered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    session = relationship("TripSession", back_populates="registered_seals")

    __table_args__ = (
        UniqueConstraint("session_pk", "normalized_id", name="uq_registration_session_tag"),
    )


class SealScan(Base):
    """One guard scan; at most one per normalized identifier per session."""

    __tablename__ = "seal_scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, index=True)

    identifier = Column(String(100), nullable=False)
    normalized_id = Column(String(100), nullable=False)
    method = Column(String(20), nullable=False, default="manual")
    image_ref = Column(String(500), nullable=True)
    matched = Column(Boolean, nullable=False, default=False)
    registry_id = Column(String(100), nullable=True)
    scanned_by = Column(String(100), nullable=True)
    scanned_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("TripSession", back_populates="scans")

    __table_args__ = (
        UniqueConstraint("session_pk", "normalized_id", name="uq_scan_session_tag"),
    )


class SealStatusEntry(Base):
    """Current status of one registered seal."""

    __tablename__ = "seal_statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, index=True)

    seal_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="UNSCANNED", index=True)
    comment = Column(Text, nullable=True)
    evidence_refs = Column(JSON, nullable=False, default=list)
    acted_by = Column(String(100), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=True)
    scanned = Column(Boolean, nullable=False, default=False)
    scan_verified = Column(Boolean, nullable=False, default=False)

    session = relationship("TripSession", back_populates="seal_statuses")

    __table_args__ = (
        UniqueConstraint("session_pk", "seal_id", name="uq_status_session_seal"),
    )
