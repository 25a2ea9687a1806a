"""
state.py - Per-session verification aggregate.

VerificationState is rebuilt from a SessionSnapshot for every command, runs
exactly one command, and is then written back by the service layer. The
version counter increases by one for every accepted mutation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from .completion import (
    FinalizedVerification,
    VerificationSummary,
    complete,
    prepare_summary,
)
from .errors import (
    VerificationException,
    duplicate_scan,
    scan_not_found,
    unknown_seal,
)
from .fields import (
    UNSET,
    FieldVerification,
    FieldVerificationComparator,
    build_declared_fields,
)
from .lifecycle import SessionLifecycle
from .matcher import match, normalize_identifier
from .registry import RegisteredSeal, build_registry
from .states import CaptureMethod, SessionState
from .status_tracker import (
    DEFAULT_MISSING_COMMENT,
    SealStatusRecord,
    SealStatusTracker,
)


@dataclass(frozen=True)
class ScannedSeal:
    """One guard scan, matched or not."""
    identifier: str
    method: CaptureMethod = CaptureMethod.MANUAL
    matched: bool = False
    registry_id: Optional[str] = None
    image_ref: Optional[str] = None
    scanned_by: Optional[str] = None
    scanned_at: Optional[datetime] = None

    @property
    def normalized(self) -> str:
        return normalize_identifier(self.identifier)


@dataclass(frozen=True)
class ScanOutcome:
    matched: bool
    duplicate: bool = False
    registry_id: Optional[str] = None
    scan: Optional[ScannedSeal] = None


@dataclass
class SessionSnapshot:
    """Everything persisted about one session, as loaded by the service."""
    session_id: str
    state: SessionState = SessionState.PENDING
    registered_seals: list[RegisteredSeal] = field(default_factory=list)
    declared_fields: dict[str, Any] = field(default_factory=dict)
    declared_images: dict[str, Any] = field(default_factory=dict)
    seal_records: dict[str, SealStatusRecord] = field(default_factory=dict)
    # None means "not yet materialized": built from the declared fields
    field_records: Optional[list[FieldVerification]] = None
    scans: list[ScannedSeal] = field(default_factory=list)
    version: int = 0
    finalized: Optional[FinalizedVerification] = None


class VerificationState:
    """Aggregate root for one trip session's seal and field verification."""

    def __init__(self, snapshot: SessionSnapshot):
        self.session_id = snapshot.session_id
        self.registry = build_registry(snapshot.registered_seals)
        self.lifecycle = SessionLifecycle(snapshot.session_id, snapshot.state)
        self.seals = SealStatusTracker(self.registry, self.lifecycle, snapshot.seal_records)
        if snapshot.field_records is None:
            field_records = build_declared_fields(
                snapshot.declared_fields, snapshot.declared_images
            )
        else:
            field_records = snapshot.field_records
        self.fields = FieldVerificationComparator(self.lifecycle, field_records)
        self._scans = {scan.normalized: scan for scan in snapshot.scans}
        self.version = snapshot.version
        self.finalized = snapshot.finalized

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    def scans(self) -> list[ScannedSeal]:
        return list(self._scans.values())

    def _touch(self) -> None:
        self.version += 1

    def resolve_seal_id(self, seal_id: str) -> str:
        """Registered identifier for `seal_id`, tolerating case and whitespace."""
        if seal_id in self.registry:
            return seal_id
        result = match(seal_id, self.registry)
        if not result.matched:
            raise VerificationException(unknown_seal(seal_id))
        return result.registry_id

    # --- Operator setup ---

    def register_seal(self, seal: RegisteredSeal) -> RegisteredSeal:
        """
        Add a seal to the registry while the session is still PENDING.

        Raises:
            VerificationException: INVALID_SESSION_STATE once verification started
            ValueError: On an empty or normalized-duplicate identifier
        """
        self.lifecycle.require_pending()
        registry = build_registry([*self.registry, seal])
        self.registry = registry
        self.seals = SealStatusTracker(
            registry,
            self.lifecycle,
            {record.seal_id: record for record in self.seals.records()},
        )
        self._touch()
        return seal

    # --- Lifecycle ---

    def start(self) -> SessionState:
        """PENDING -> IN_PROGRESS."""
        previous = self.lifecycle.transition(SessionState.IN_PROGRESS)
        self._touch()
        return previous

    def mark_finalized(self, finalized: FinalizedVerification) -> None:
        self.finalized = finalized
        self._touch()

    # --- Scans ---

    def ingest_scan(
        self,
        observed_id: str,
        method: CaptureMethod = CaptureMethod.MANUAL,
        *,
        actor: Optional[str] = None,
        image_ref: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ScanOutcome:
        """
        Record one guard scan and, when it matches, verify the seal.

        Unmatched scans are kept (the guard sees them as "not in registry")
        but touch no seal status.

        Raises:
            ValueError: On an empty identifier
            VerificationException: DUPLICATE_SCAN when the same normalized
                identifier was already scanned in this session
        """
        self.lifecycle.require_active()
        key = normalize_identifier(observed_id)
        if not key:
            raise ValueError("Observed seal identifier must not be empty")

        existing = self._scans.get(key)
        if existing is not None:
            raise VerificationException(
                duplicate_scan(observed_id, existing.matched, existing.registry_id)
            )

        result = match(observed_id, self.registry)
        if result.matched:
            self.seals.record_scan(result.registry_id, observed_id, actor=actor, at=at)

        scan = ScannedSeal(
            identifier=observed_id.strip(),
            method=CaptureMethod(method),
            matched=result.matched,
            registry_id=result.registry_id,
            image_ref=image_ref,
            scanned_by=actor,
            scanned_at=at,
        )
        self._scans[key] = scan
        self._touch()
        return ScanOutcome(
            matched=result.matched,
            duplicate=False,
            registry_id=result.registry_id,
            scan=scan,
        )

    def remove_scan(
        self,
        observed_id: str,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> ScannedSeal:
        """Undo a scan; a seal it verified goes back to UNSCANNED."""
        self.lifecycle.require_active()
        key = normalize_identifier(observed_id)
        scan = self._scans.get(key)
        if scan is None:
            raise VerificationException(scan_not_found(observed_id))
        if scan.matched:
            self.seals.revert_scan(scan.registry_id, actor=actor, at=at)
        del self._scans[key]
        self._touch()
        return scan

    # --- Seal status ---

    def set_seal_status(
        self,
        seal_id: str,
        status,
        comment: Optional[str] = None,
        evidence_refs: Optional[Sequence[str]] = None,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SealStatusRecord:
        self.lifecycle.require_active()
        registry_id = self.resolve_seal_id(seal_id)
        before = self.seals.get(registry_id)
        record = self.seals.set_status(
            registry_id, status, comment, evidence_refs, actor=actor, at=at
        )
        if record is not before:
            self._touch()
        return record

    # --- Fields ---

    def toggle_field(self, key: str) -> FieldVerification:
        record = self.fields.toggle_verified(key)
        self._touch()
        return record

    def verify_all_fields(self) -> list[FieldVerification]:
        records = self.fields.verify_all()
        self._touch()
        return records

    def annotate_field(
        self,
        key: str,
        comment: Optional[str] = None,
        guard_value: Any = UNSET,
    ) -> FieldVerification:
        record = self.fields.annotate(key, comment=comment, guard_value=guard_value)
        self._touch()
        return record

    # --- Completion ---

    def summary(self) -> VerificationSummary:
        return prepare_summary(self)

    def complete(
        self,
        acting_user_id: str,
        *,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
        missing_comment: str = DEFAULT_MISSING_COMMENT,
        service_id: Optional[str] = None,
    ) -> FinalizedVerification:
        return complete(
            self,
            acting_user_id,
            now=now,
            expected_version=expected_version,
            missing_comment=missing_comment,
            service_id=service_id,
        )

