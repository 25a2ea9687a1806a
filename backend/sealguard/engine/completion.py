"""
completion.py - Verification Completion Coordinator.

CRITICAL INVARIANTS:
1. complete() runs only on an IN_PROGRESS session, and only once
2. Every registered seal still UNSCANNED becomes MISSING
3. The finalized record and the COMPLETED transition are applied together:
   all changes are staged first, nothing is applied until every step that
   can fail has passed
4. The finalized record is the only verification record; it is built here
   and nowhere else

Record digest:
    SHA-256 over the RFC 8785 canonical form of to_record()
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from jcs import canonicalize

from .errors import (
    VerificationException,
    invalid_session_state,
    version_conflict,
)
from .fields import FieldPartition, partition_fields
from .states import FieldGroup, SealState, SessionState
from .status_tracker import DEFAULT_MISSING_COMMENT, finalize_unscanned

if TYPE_CHECKING:
    from .state import VerificationState

UTC = timezone.utc


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """
    Format a timestamp as UTC ISO 8601 with millisecond precision and a 'Z'.

    Naive datetimes are taken to be UTC (SQLite drops the offset on read).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class VerificationSummary:
    """What finalization will do, shown to the guard before confirming."""
    session_id: str
    total_seals: int
    scanned_seals: int
    unscanned_seals: int
    status_breakdown: dict[str, int]
    will_mark_missing: tuple[str, ...]
    fields: FieldPartition
    version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_seals": self.total_seals,
            "scanned_seals": self.scanned_seals,
            "unscanned_seals": self.unscanned_seals,
            "status_breakdown": dict(self.status_breakdown),
            "will_mark_missing": list(self.will_mark_missing),
            "fields": self.fields.to_dict(),
            "version": self.version,
        }


@dataclass(frozen=True)
class SealOutcome:
    status: SealState
    comment: Optional[str] = None
    evidence_refs: tuple[str, ...] = ()
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "comment": self.comment,
            "evidenceRefs": list(self.evidence_refs),
            "verifiedBy": self.verified_by,
            "verifiedAt": format_timestamp(self.verified_at),
        }


@dataclass(frozen=True)
class FieldOutcome:
    operator_value: Any
    guard_value: Any
    matches: bool
    is_verified: bool
    comment: Optional[str] = None
    group: FieldGroup = FieldGroup.TRIP

    def to_dict(self) -> dict[str, Any]:
        return {
            "operatorValue": self.operator_value,
            "guardValue": self.guard_value,
            "matches": self.matches,
            "isVerified": self.is_verified,
            "comment": self.comment,
            "group": self.group.value,
        }


@dataclass(frozen=True)
class FinalizedVerification:
    """The canonical, immutable outcome of one session's verification."""
    session_id: str
    seal_statuses: dict[str, SealOutcome]
    field_outcomes: dict[str, FieldOutcome]
    fields: FieldPartition
    completed_at: datetime
    completed_by: str
    missing_marked: tuple[str, ...] = ()
    service_id: Optional[str] = None
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def all_match(self) -> bool:
        return self.fields.all_match

    def to_record(self) -> dict[str, Any]:
        """
        Persisted record shape consumed by reporting collaborators.

        Returns:
            dict: `fieldVerifications` (key -> operator/guard value, matches,
            isVerified, comment), `sealStatuses` (seal id -> status, comment,
            evidenceRefs, verifiedBy, verifiedAt), `verificationTimestamp`, and
            the aggregate counts and field partition.
        """
        return {
            "sessionId": self.session_id,
            "verificationTimestamp": format_timestamp(self.completed_at),
            "completedBy": self.completed_by,
            "serviceId": self.service_id,
            "fieldVerifications": {
                key: outcome.to_dict() for key, outcome in self.field_outcomes.items()
            },
            "sealStatuses": {
                seal_id: outcome.to_dict() for seal_id, outcome in self.seal_statuses.items()
            },
            "sealTags": dict(self.counts),
            "missingMarked": list(self.missing_marked),
            "fieldSummary": self.fields.to_dict(),
            "allMatch": self.all_match,
        }

    def digest(self) -> str:
        return hashlib.sha256(canonicalize(self.to_record())).hexdigest()


def seal_counts(statuses: dict[str, SealOutcome]) -> dict[str, int]:
    counts = {
        "total": len(statuses),
        "verified": 0,
        "missing": 0,
        "broken": 0,
        "tampered": 0,
    }
    for outcome in statuses.values():
        key = outcome.status.value.lower()
        if key in counts:
            counts[key] += 1
    return counts


def prepare_summary(state: "VerificationState") -> VerificationSummary:
    """Read-only preview of completion. Mutates nothing."""
    total = len(state.registry)
    scanned = state.seals.scanned_ids()
    return VerificationSummary(
        session_id=state.session_id,
        total_seals=total,
        scanned_seals=len(scanned),
        unscanned_seals=total - len(scanned),
        status_breakdown=state.seals.status_breakdown(),
        will_mark_missing=tuple(
            finalize_unscanned(state.registry.ids(), scanned, state.seals.statuses())
        ),
        fields=state.fields.partition(),
        version=state.version,
    )


def complete(
    state: "VerificationState",
    acting_user_id: str,
    *,
    now: Optional[datetime] = None,
    expected_version: Optional[int] = None,
    missing_comment: str = DEFAULT_MISSING_COMMENT,
    service_id: Optional[str] = None,
) -> FinalizedVerification:
    """
    Finalize verification for one session.

    Steps:
        1. Guard: session must be IN_PROGRESS (and at `expected_version`)
        2. Stage MISSING for every registered seal still UNSCANNED
        3. Snapshot the field partition
        4. Snapshot all seal statuses, including the staged MISSING ones
        5. Apply: seal statuses, COMPLETED transition, finalized record

    Args:
        state: The session aggregate
        acting_user_id: Guard completing the verification
        now: Completion timestamp (defaults to current UTC time)
        expected_version: Version the caller's summary was computed at
        missing_comment: Comment stored on machine-assigned MISSING seals
        service_id: Identity of the service writing the record

    Returns:
        FinalizedVerification

    Raises:
        VerificationException: INVALID_SESSION_STATE when not IN_PROGRESS,
            VERSION_CONFLICT when the session changed since the summary
    """
    # 1. Guard clauses (nothing staged yet)
    if state.lifecycle.state != SessionState.IN_PROGRESS:
        raise VerificationException(
            invalid_session_state(
                state.session_id,
                state.lifecycle.state.value,
                SessionState.IN_PROGRESS.value,
            )
        )
    if expected_version is not None and expected_version != state.version:
        raise VerificationException(
            version_conflict(state.session_id, expected_version, state.version)
        )
    state.lifecycle.check_transition(SessionState.COMPLETED)

    completed_at = now or datetime.now(UTC)

    # 2. Stage MISSING
    unscanned = state.seals.unscanned_ids()
    staged = state.seals.stage_missing(
        unscanned, actor=acting_user_id, at=completed_at, comment=missing_comment
    )

    # 3. Field snapshot
    field_records = state.fields.records()
    field_outcomes = {
        f.key: FieldOutcome(
            operator_value=f.operator_value,
            guard_value=f.guard_value,
            matches=f.matches,
            is_verified=f.is_verified,
            comment=f.comment,
            group=f.group,
        )
        for f in field_records
    }

    # 4. Seal snapshot (registry order)
    seal_statuses = {
        seal_id: SealOutcome(
            status=staged[seal_id].status,
            comment=staged[seal_id].comment,
            evidence_refs=staged[seal_id].evidence_refs,
            verified_by=staged[seal_id].acted_by,
            verified_at=staged[seal_id].changed_at,
        )
        for seal_id in state.registry.ids()
    }

    finalized = FinalizedVerification(
        session_id=state.session_id,
        seal_statuses=seal_statuses,
        field_outcomes=field_outcomes,
        fields=partition_fields(field_records),
        completed_at=completed_at,
        completed_by=acting_user_id,
        missing_marked=tuple(unscanned),
        service_id=service_id,
        counts=seal_counts(seal_statuses),
    )

    # 5. Apply (cannot fail past this point)
    state.seals.apply_staged(staged)
    state.lifecycle.transition(SessionState.COMPLETED)
    state.mark_finalized(finalized)
    return finalized
