from .trip_session import TripSession
from .seals import SealRegistration, SealScan, SealStatusEntry
from .field_verification import FieldVerificationEntry
from .verification_record import VerificationRecord
from .verification_activity import VerificationActivity

__all__ = [
    "TripSession",
    "SealRegistration",
    "SealScan",
    "SealStatusEntry",
    "FieldVerificationEntry",
    "VerificationRecord",
    "VerificationActivity",
]
