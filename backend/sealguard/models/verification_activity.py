"""
verification_activity.py - Append-only verification audit log.

One row per accepted command. Rows are never updated or deleted by the service.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from sealguard.database import Base

from .trip_session import utcnow


class VerificationActivity(Base):
    __tablename__ = "verification_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, index=True)

    action = Column(String(50), nullable=False, index=True)
    actor = Column(String(100), nullable=True)
    seal_id = Column(String(100), nullable=True)
    field_key = Column(String(100), nullable=True)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    has_evidence = Column(Boolean, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    session = relationship("TripSession", back_populates="activities")
