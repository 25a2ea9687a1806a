"""
states.py - Closed state enumerations for the verification engine.

Every status the engine stores or compares is one of these members.
No status is ever compared as a bare string inside the engine.
"""

from enum import Enum


class SessionState(str, Enum):
    """Outer lifecycle of a trip session."""

    PENDING = "PENDING"          # Editable by the operator, verification not started
    IN_PROGRESS = "IN_PROGRESS"  # Guard verification active
    COMPLETED = "COMPLETED"      # Terminal, every child record frozen


class SealState(str, Enum):
    """Per-seal verification status."""

    UNSCANNED = "UNSCANNED"
    VERIFIED = "VERIFIED"
    BROKEN = "BROKEN"
    TAMPERED = "TAMPERED"
    MISSING = "MISSING"


class CaptureMethod(str, Enum):
    """How a seal identifier was captured (registration or scan)."""

    MANUAL = "manual"
    DIGITAL = "digital"


class FieldGroup(str, Enum):
    """Origin of a declared field on the operator's form."""

    TRIP = "trip"
    IMAGE = "image"


# Statuses that can only be accepted with a comment and evidence attached
EVIDENCE_REQUIRED_STATES = frozenset({SealState.BROKEN, SealState.TAMPERED})

# Statuses a guard may assign explicitly (UNSCANNED is initial-only)
OVERRIDE_STATES = frozenset(
    {SealState.VERIFIED, SealState.BROKEN, SealState.TAMPERED, SealState.MISSING}
)
