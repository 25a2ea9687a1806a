from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sealguard.database import Base


class FieldVerificationEntry(Base):
    __tablename__ = "field_verifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_pk = Column(Integer, ForeignKey("trip_sessions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    field_key = Column(String(100), nullable=False)
    field_group = Column(String(10), nullable=False, default="trip")
    operator_value = Column(JSON, nullable=True)
    guard_value = Column(JSON, nullable=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    matches = Column(Boolean, nullable=False, default=True)
    comment = Column(Text, nullable=True)

    session = relationship("TripSession", back_populates="field_verifications")

    __table_args__ = (
        UniqueConstraint("session_pk", "field_key", name="uq_field_session_key"),
    )
