"""
errors.py - Verification Error Taxonomy

Errors are contracts, not strings. Every rejection the engine produces
carries a machine-readable code and a kind telling the caller what to do:

- VALIDATION: caller-fixable, re-prompt the guard
- STATE: the caller's view of the session is stale, refetch before retrying
- NOT_FOUND: the referenced session, seal, scan or field does not exist
- COLLABORATOR: persistence unavailable; reads may be retried, completion
  must be re-queried first because a prior attempt may have committed
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    STATE = "STATE"
    NOT_FOUND = "NOT_FOUND"
    COLLABORATOR = "COLLABORATOR"


class VerificationErrorCode(str, Enum):
    # VALIDATION
    MISSING_EVIDENCE = "MISSING_EVIDENCE"
    DUPLICATE_SCAN = "DUPLICATE_SCAN"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    INVALID_STATUS = "INVALID_STATUS"

    # STATE
    INVALID_SESSION_STATE = "INVALID_SESSION_STATE"
    SESSION_ALREADY_FINALIZED = "SESSION_ALREADY_FINALIZED"
    VERSION_CONFLICT = "VERSION_CONFLICT"

    # NOT_FOUND
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    UNKNOWN_SEAL = "UNKNOWN_SEAL"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    SCAN_NOT_FOUND = "SCAN_NOT_FOUND"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"

    # COLLABORATOR
    COLLABORATOR_UNAVAILABLE = "COLLABORATOR_UNAVAILABLE"


@dataclass(frozen=True)
class VerificationError:
    """Immutable error payload."""
    code: VerificationErrorCode
    kind: ErrorKind
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize the error for the HTTP boundary.

        Returns:
            dict: `code`, `kind`, `message` and `details` (empty dict when unset).
        """
        return {
            "code": self.code.value,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details or {},
        }


class VerificationException(Exception):
    """Raised for every rejected engine command."""
    def __init__(self, error: VerificationError):
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> VerificationErrorCode:
        return self.error.code


# Pre-defined error factories for consistency
def missing_evidence(seal_id: str, status: str, has_comment: bool, evidence_count: int) -> VerificationError:
    """
    BROKEN and TAMPERED need both a non-empty comment and at least one attachment.

    The details name which of the two is absent so the guard can be told exactly
    what to add.
    """
    missing = []
    if not has_comment:
        missing.append("comment")
    if evidence_count < 1:
        missing.append("evidence")
    return VerificationError(
        code=VerificationErrorCode.MISSING_EVIDENCE,
        kind=ErrorKind.VALIDATION,
        message=f"{status} requires a comment and at least one evidence photo",
        details={"seal_id": seal_id, "status": status, "missing": missing},
    )


def duplicate_scan(observed_id: str, matched: bool, registry_id: Optional[str] = None) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.DUPLICATE_SCAN,
        kind=ErrorKind.VALIDATION,
        message=f"Seal {observed_id.strip()} has already been scanned",
        details={"observed_id": observed_id, "matched": matched, "registry_id": registry_id},
    )


def illegal_transition(current: str, requested: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.ILLEGAL_TRANSITION,
        kind=ErrorKind.VALIDATION,
        message=f"Cannot transition from {current} to {requested}",
        details={"current": current, "requested": requested},
    )


def invalid_status(requested: str, allowed: list) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.INVALID_STATUS,
        kind=ErrorKind.VALIDATION,
        message=f"Status {requested} cannot be assigned explicitly",
        details={"requested": requested, "allowed": sorted(allowed)},
    )


def invalid_session_state(session_id: str, state: str, required: str) -> VerificationError:
    """
    Create an error for an operation attempted in the wrong lifecycle state.

    Parameters:
        session_id (str): Session the command targeted.
        state (str): The session's current lifecycle state.
        required (str): The state the operation needs.

    Returns:
        VerificationError: STATE error with code `INVALID_SESSION_STATE`.
    """
    return VerificationError(
        code=VerificationErrorCode.INVALID_SESSION_STATE,
        kind=ErrorKind.STATE,
        message=f"Session {session_id} is {state}; operation requires {required}",
        details={"session_id": session_id, "state": state, "required": required},
    )


def session_already_finalized(session_id: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.SESSION_ALREADY_FINALIZED,
        kind=ErrorKind.STATE,
        message=f"Session {session_id} is completed; verification records are frozen",
        details={"session_id": session_id},
    )


def version_conflict(session_id: str, expected: int, actual: int) -> VerificationError:
    """
    The session changed after the caller computed its summary.

    Returned instead of completing so the guard confirms against fresh numbers.
    """
    return VerificationError(
        code=VerificationErrorCode.VERSION_CONFLICT,
        kind=ErrorKind.STATE,
        message=f"Session {session_id} changed since the summary was computed",
        details={"session_id": session_id, "expected_version": expected, "actual_version": actual},
    )


def session_not_found(session_id: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.SESSION_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        message=f"Session {session_id} not found",
        details={"session_id": session_id},
    )


def unknown_seal(seal_id: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.UNKNOWN_SEAL,
        kind=ErrorKind.NOT_FOUND,
        message=f"Seal {seal_id} is not registered on this session",
        details={"seal_id": seal_id},
    )


def unknown_field(field_key: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.UNKNOWN_FIELD,
        kind=ErrorKind.NOT_FOUND,
        message=f"Field {field_key} is not declared on this session",
        details={"field_key": field_key},
    )


def scan_not_found(observed_id: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.SCAN_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        message=f"No scan recorded for {observed_id.strip()}",
        details={"observed_id": observed_id},
    )


def record_not_found(session_id: str) -> VerificationError:
    return VerificationError(
        code=VerificationErrorCode.RECORD_NOT_FOUND,
        kind=ErrorKind.NOT_FOUND,
        message=f"Session {session_id} has no finalized verification record",
        details={"session_id": session_id},
    )


def collaborator_unavailable(operation: str, reason: str) -> VerificationError:
    """
    Create an error for a persistence failure.

    Parameters:
        operation (str): The engine command that was running.
        reason (str): Short description of the underlying failure.

    Returns:
        VerificationError: COLLABORATOR error. `details.retry_safe` is False for
        `complete`, which must be re-queried before any retry.
    """
    return VerificationError(
        code=VerificationErrorCode.COLLABORATOR_UNAVAILABLE,
        kind=ErrorKind.COLLABORATOR,
        message="Verification store unavailable",
        details={
            "operation": operation,
            "reason": reason,
            "retry_safe": operation != "complete",
        },
    )
