"""
verification_record.py - Finalized verification record.

CRITICAL: One record per session (unique session_pk). The record is written
in the same transaction that moves the session to COMPLETED and is never
updated afterwards.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from sealguard.database import Base


class VerificationRecord(Base):
    __tablename__ = "verification_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, unique=True, index=True)

    service_id = Column(String(100), nullable=False)
    completed_by = Column(String(100), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)

    # Canonical record body and its SHA-256 over the RFC 8785 form
    record = Column(JSON, nullable=False)
    record_digest = Column(String(64), nullable=False)

    # Queryable counts (the record body is authoritative)
    total_seals = Column(Integer, nullable=False)
    verified_count = Column(Integer, nullable=False)
    missing_count = Column(Integer, nullable=False)
    broken_count = Column(Integer, nullable=False)
    tampered_count = Column(Integer, nullable=False)
    all_match = Column(Boolean, nullable=False)

    session = relationship("TripSession", back_populates="verification_record", uselist=False)

    __table_args__ = (
        CheckConstraint("total_seals >= 0", name="record_total_seals_non_negative"),
    )
