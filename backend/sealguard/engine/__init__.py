"""
Verification engine: pure, synchronous, no I/O.

Every mutating command runs against one VerificationState aggregate that the
service layer loads from (and writes back to) the database.
"""

from .completion import (
    FieldOutcome,
    FinalizedVerification,
    SealOutcome,
    VerificationSummary,
    complete,
    format_timestamp,
    prepare_summary,
)
from .errors import (
    ErrorKind,
    VerificationError,
    VerificationErrorCode,
    VerificationException,
)
from .fields import (
    UNSET,
    FieldPartition,
    FieldVerification,
    FieldVerificationComparator,
    build_declared_fields,
    partition_fields,
)
from .lifecycle import SessionLifecycle, can_accept_field_edits, can_accept_scans
from .matcher import MatchResult, match, normalize_identifier
from .registry import RegisteredSeal, SealRegistry, build_registry, registered_seals
from .state import ScannedSeal, ScanOutcome, SessionSnapshot, VerificationState
from .states import CaptureMethod, FieldGroup, SealState, SessionState
from .status_tracker import (
    DEFAULT_MISSING_COMMENT,
    SealStatusRecord,
    SealStatusTracker,
    finalize_unscanned,
)

__all__ = [
    "CaptureMethod",
    "DEFAULT_MISSING_COMMENT",
    "ErrorKind",
    "FieldGroup",
    "FieldOutcome",
    "FieldPartition",
    "FieldVerification",
    "FieldVerificationComparator",
    "FinalizedVerification",
    "MatchResult",
    "RegisteredSeal",
    "ScanOutcome",
    "ScannedSeal",
    "SealOutcome",
    "SealRegistry",
    "SealState",
    "SealStatusRecord",
    "SealStatusTracker",
    "SessionLifecycle",
    "SessionSnapshot",
    "SessionState",
    "UNSET",
    "VerificationError",
    "VerificationErrorCode",
    "VerificationException",
    "VerificationState",
    "VerificationSummary",
    "build_declared_fields",
    "build_registry",
    "can_accept_field_edits",
    "can_accept_scans",
    "complete",
    "finalize_unscanned",
    "format_timestamp",
    "match",
    "normalize_identifier",
    "partition_fields",
    "prepare_summary",
    "registered_seals",
]
