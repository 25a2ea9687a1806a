"""
service.py - Verification Service orchestrator.

CRITICAL INVARIANTS (violations result in IMMEDIATE REJECTION):
1. Every mutating command runs under a row lock on the session (SELECT FOR UPDATE)
2. The engine decides, the service only loads and writes back
3. Completed sessions CANNOT change; the finalized record is written in the
   same transaction as the COMPLETED transition
4. Every accepted command appends one activity row

FAILURE SEMANTICS:
- Validation errors (missing evidence, bad status) -> 400
- Duplicates, stale state, finalized sessions -> 409
- Unknown session / seal / field / scan -> 404
- DB unreachable -> 503 COLLABORATOR_UNAVAILABLE + full rollback

The service never commits. The caller (endpoint) commits on success and
rolls back on any exception.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session as DBSession

from sealguard.config import settings
from sealguard.engine import (
    UNSET,
    CaptureMethod,
    FieldGroup,
    FieldVerification,
    FinalizedVerification,
    RegisteredSeal,
    ScannedSeal,
    SealState,
    SealStatusRecord,
    SessionSnapshot,
    SessionState,
    VerificationError,
    VerificationErrorCode,
    VerificationException,
    VerificationState,
    VerificationSummary,
    build_declared_fields,
    build_registry,
    normalize_identifier,
    registered_seals,
)
from sealguard.engine.errors import (
    collaborator_unavailable,
    duplicate_scan,
    record_not_found,
    session_not_found,
)
from sealguard.models import (
    FieldVerificationEntry,
    SealRegistration,
    SealScan,
    SealStatusEntry,
    TripSession,
    VerificationActivity,
    VerificationRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Outcome of one scan command."""

    matched: bool
    duplicate: bool = False
    registry_id: Optional[str] = None
    error: Optional[VerificationError] = None


@dataclass
class SealTagCheck:
    tag: str
    exists: bool
    session_ids: list[str]


@dataclass
class CompletionResult:
    """Internal result of a completion."""

    session_id: str
    completed_at: datetime
    completed_by: str
    record: dict[str, Any]
    record_digest: str
    missing_marked: list[str]
    all_match: bool


class VerificationService:
    """
    Authoritative verification service.

    Loads one VerificationState per command, applies exactly one engine
    operation and writes the aggregate back.
    """

    def __init__(
        self,
        db: DBSession,
        service_id: str = settings.SERVICE_ID,
        missing_comment: str = settings.MISSING_SEAL_COMMENT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.service_id = service_id
        self.missing_comment = missing_comment
        self._clock = clock or (lambda: datetime.now(UTC))

    # =========================================================
    # OPERATOR SETUP
    # =========================================================

    def create_session(
        self,
        source: str,
        destination: str,
        created_by: str,
        seals: Sequence[RegisteredSeal] = (),
        declared_fields: Optional[dict[str, Any]] = None,
        declared_images: Optional[dict[str, Any]] = None,
    ) -> TripSession:
        """
        Create a PENDING session with its registered seals and declarations.

        Raises:
            ValueError: Duplicate seal identifiers or colliding field keys
        """
        declared_fields = dict(declared_fields or {})
        declared_images = dict(declared_images or {})
        now = self._clock()

        registry = build_registry(
            RegisteredSeal(
                seal_id=seal.seal_id.strip(),
                method=seal.method,
                image_ref=seal.image_ref,
                registered_at=seal.registered_at or now,
            )
            for seal in seals
        )
        # Validates key collisions; the rows are materialized on start
        build_declared_fields(declared_fields, declared_images)

        with self._store("create_session"):
            row = TripSession(
                session_id=str(uuid4()),
                source=source,
                destination=destination,
                created_by=created_by,
                state=SessionState.PENDING.value,
                version=0,
                declared_fields=declared_fields,
                declared_images=declared_images,
                created_at=now,
            )
            for position, seal in enumerate(registry):
                row.registered_seals.append(self._registration_row(position, seal))
            self.db.add(row)
            self._log(
                row,
                "SESSION_CREATED",
                actor=created_by,
                details={"seal_count": len(registry), "field_count": len(declared_fields)},
            )
            self.db.flush()

        logger.info(
            "Session created: session_id=%s, seals=%d, fields=%d, images=%d",
            row.session_id,
            len(registry),
            len(declared_fields),
            len(declared_images),
        )
        return row

    def register_seal(
        self,
        session_id: str,
        seal_id: str,
        method: CaptureMethod = CaptureMethod.MANUAL,
        image_ref: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> RegisteredSeal:
        """Add a seal to a PENDING session."""
        with self._store("register_seal"):
            row = self._lock_session(session_id)
            state = self._load(row)
            seal = state.register_seal(
                RegisteredSeal(
                    seal_id=seal_id.strip(),
                    method=CaptureMethod(method),
                    image_ref=image_ref,
                    registered_at=self._clock(),
                )
            )
            self._write_back(row, state)
            self._log(row, "SEAL_REGISTERED", actor=actor, seal_id=seal.seal_id)
            self.db.flush()
        return seal

    def registered_seals(self, session_id: str) -> list[RegisteredSeal]:
        with self._store("registered_seals"):
            row = self._get_session(session_id)
            return registered_seals(self._load(row).registry)

    def check_seal_tag(self, tag: str) -> SealTagCheck:
        """Report whether a physical tag is already registered on any session."""
        normalized = normalize_identifier(tag)
        if not normalized:
            raise ValueError("Seal tag must not be empty")
        with self._store("check_seal_tag"):
            stmt = (
                select(TripSession.session_id)
                .join(SealRegistration, SealRegistration.session_pk == TripSession.id)
                .where(SealRegistration.normalized_id == normalized)
                .order_by(TripSession.created_at.desc())
            )
            session_ids = list(self.db.execute(stmt).scalars().all())
        return SealTagCheck(tag=tag.strip(), exists=bool(session_ids), session_ids=session_ids)

    # =========================================================
    # LIFECYCLE
    # =========================================================

    def start_verification(self, session_id: str, actor: Optional[str] = None) -> TripSession:
        """PENDING -> IN_PROGRESS; materializes seal statuses and field rows."""
        with self._store("start"):
            row = self._lock_session(session_id)
            state = self._load(row)
            state.start()
            row.started_at = self._clock()
            self._write_back(row, state)
            self._log(
                row,
                "VERIFICATION_STARTED",
                actor=actor,
                previous_status=SessionState.PENDING.value,
                new_status=SessionState.IN_PROGRESS.value,
            )
            self.db.flush()

        logger.info("Verification started: session_id=%s, seals=%d", session_id, len(state.registry))
        return row

    def get_session(self, session_id: str) -> TripSession:
        with self._store("get_session"):
            return self._get_session(session_id)

    def get_session_state(self, session_id: str) -> tuple[TripSession, VerificationState]:
        """Session row plus its aggregate (read-only; nothing is written back)."""
        with self._store("get_session"):
            row = self._get_session(session_id)
            return row, self._load(row)

    def list_pending_sessions(self) -> list[TripSession]:
        """Guard work queue: IN_PROGRESS sessions, most recently started first."""
        with self._store("list_pending_sessions"):
            stmt = (
                select(TripSession)
                .where(TripSession.state == SessionState.IN_PROGRESS.value)
                .order_by(TripSession.started_at.desc(), TripSession.id.desc())
            )
            return list(self.db.execute(stmt).scalars().all())

    # =========================================================
    # SCANS
    # =========================================================

    def record_scan(
        self,
        session_id: str,
        identifier: str,
        method: CaptureMethod = CaptureMethod.MANUAL,
        image_ref: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ScanResult:
        """
        Ingest one guard scan.

        A resubmitted identifier is reported as a duplicate (no state change),
        which makes client retries safe.

        Raises:
            ValueError: Empty identifier
            VerificationException: Session missing or not IN_PROGRESS
        """
        with self._store("record_scan"):
            row = self._lock_session(session_id)
            state = self._load(row)
            try:
                outcome = state.ingest_scan(
                    identifier, method, actor=actor, image_ref=image_ref, at=self._clock()
                )
            except VerificationException as e:
                if e.code != VerificationErrorCode.DUPLICATE_SCAN:
                    raise
                details = e.error.details or {}
                logger.warning("Duplicate scan: session_id=%s, identifier=%s", session_id, identifier.strip())
                return ScanResult(
                    matched=details.get("matched", False),
                    duplicate=True,
                    registry_id=details.get("registry_id"),
                    error=e.error,
                )

            self._write_back(row, state)
            self._log(
                row,
                "SEAL_SCANNED",
                actor=actor,
                seal_id=outcome.registry_id,
                new_status=SealState.VERIFIED.value if outcome.matched else None,
                details={"identifier": outcome.scan.identifier, "matched": outcome.matched},
            )
            try:
                self.db.flush()
            except IntegrityError as e:
                # A concurrent request stored the same normalized identifier first
                raise VerificationException(
                    duplicate_scan(identifier, outcome.matched, outcome.registry_id)
                ) from e

        return ScanResult(matched=outcome.matched, registry_id=outcome.registry_id)

    def remove_scan(self, session_id: str, identifier: str, actor: Optional[str] = None) -> ScannedSeal:
        """Undo a scan before completion."""
        with self._store("remove_scan"):
            row = self._lock_session(session_id)
            state = self._load(row)
            scan = state.remove_scan(identifier, actor=actor, at=self._clock())
            self._write_back(row, state)
            self._log(
                row,
                "SCAN_REMOVED",
                actor=actor,
                seal_id=scan.registry_id,
                details={"identifier": scan.identifier, "matched": scan.matched},
            )
            self.db.flush()
        return scan

    # =========================================================
    # SEAL STATUS
    # =========================================================

    def set_seal_status(
        self,
        session_id: str,
        seal_id: str,
        status: str,
        comment: Optional[str] = None,
        evidence_refs: Optional[Sequence[str]] = None,
        actor: Optional[str] = None,
    ) -> SealStatusRecord:
        with self._store("set_status"):
            row = self._lock_session(session_id)
            state = self._load(row)
            state.lifecycle.require_active()
            registry_id = state.resolve_seal_id(seal_id)
            before = state.seals.get(registry_id)
            try:
                record = state.set_seal_status(
                    registry_id, status, comment, evidence_refs, actor=actor, at=self._clock()
                )
            except VerificationException as e:
                if e.code == VerificationErrorCode.MISSING_EVIDENCE:
                    logger.warning(
                        "Status change rejected: session_id=%s, seal_id=%s, missing=%s",
                        session_id,
                        registry_id,
                        (e.error.details or {}).get("missing"),
                    )
                raise

            if record is before:
                # No-op (MISSING -> MISSING): nothing to write or log
                return record

            self._write_back(row, state)
            self._log(
                row,
                "SEAL_STATUS_CHANGED",
                actor=actor,
                seal_id=registry_id,
                previous_status=before.status.value,
                new_status=record.status.value,
                has_evidence=bool(record.evidence_refs),
            )
            self.db.flush()

        if record.status != SealState.VERIFIED:
            logger.info(
                "Seal %s marked %s: session_id=%s", registry_id, record.status.value, session_id
            )
        return record

    # =========================================================
    # FIELDS
    # =========================================================

    def toggle_field(self, session_id: str, key: str, actor: Optional[str] = None) -> FieldVerification:
        with self._store("toggle_field"):
            row = self._lock_session(session_id)
            state = self._load(row)
            field = state.toggle_field(key)
            self._write_back(row, state)
            self._log(
                row,
                "FIELD_TOGGLED",
                actor=actor,
                field_key=key,
                details={"is_verified": field.is_verified},
            )
            self.db.flush()
        return field

    def verify_all_fields(self, session_id: str, actor: Optional[str] = None) -> list[FieldVerification]:
        with self._store("verify_all"):
            row = self._lock_session(session_id)
            state = self._load(row)
            fields = state.verify_all_fields()
            self._write_back(row, state)
            self._log(row, "FIELDS_VERIFIED", actor=actor, details={"count": len(fields)})
            self.db.flush()
        return fields

    def annotate_field(
        self,
        session_id: str,
        key: str,
        comment: Optional[str] = None,
        guard_value: Any = UNSET,
        actor: Optional[str] = None,
    ) -> FieldVerification:
        with self._store("annotate_field"):
            row = self._lock_session(session_id)
            state = self._load(row)
            field = state.annotate_field(key, comment=comment, guard_value=guard_value)
            self._write_back(row, state)
            self._log(
                row,
                "FIELD_ANNOTATED",
                actor=actor,
                field_key=key,
                details={"matches": field.matches, "has_comment": field.comment is not None},
            )
            self.db.flush()
        return field

    # =========================================================
    # COMPLETION
    # =========================================================

    def get_summary(self, session_id: str) -> VerificationSummary:
        with self._store("summary"):
            row = self._get_session(session_id)
            return self._load(row).summary()

    def complete_verification(
        self,
        session_id: str,
        acting_user_id: str,
        expected_version: Optional[int] = None,
    ) -> CompletionResult:
        """
        Finalize verification.

        INVARIANTS ENFORCED:
        - Session must be IN_PROGRESS (a second completion is rejected)
        - Unscanned seals become MISSING
        - Record, statuses and COMPLETED transition are flushed together

        Raises:
            VerificationException: INVALID_SESSION_STATE, VERSION_CONFLICT,
                SESSION_NOT_FOUND, COLLABORATOR_UNAVAILABLE
        """
        with self._store("complete"):
            # 1. Lock session
            row = self._lock_session(session_id)

            # 2. Engine completion (staged, then applied)
            state = self._load(row)
            finalized = state.complete(
                acting_user_id,
                now=self._clock(),
                expected_version=expected_version,
                missing_comment=self.missing_comment,
                service_id=self.service_id,
            )

            # 3. Write back statuses, state and version
            self._write_back(row, state)
            row.completed_at = finalized.completed_at

            # 4. Persist the single finalized record
            record = finalized.to_record()
            digest = finalized.digest()
            self.db.add(self._record_row(row, finalized, record, digest))
            for seal_id in finalized.missing_marked:
                self._log(
                    row,
                    "SEAL_STATUS_CHANGED",
                    actor=acting_user_id,
                    seal_id=seal_id,
                    previous_status=SealState.UNSCANNED.value,
                    new_status=SealState.MISSING.value,
                    has_evidence=False,
                )
            self._log(
                row,
                "VERIFICATION_COMPLETED",
                actor=acting_user_id,
                previous_status=SessionState.IN_PROGRESS.value,
                new_status=SessionState.COMPLETED.value,
                details={"counts": finalized.counts, "all_match": finalized.all_match},
            )

            # 5. Flush (commit happens in the caller)
            self.db.flush()

        counts = finalized.counts
        logger.info(
            "VERIFICATION COMPLETED: session_id=%s, verified=%d, missing=%d, broken=%d, tampered=%d, all_match=%s, digest=%s",
            session_id,
            counts["verified"],
            counts["missing"],
            counts["broken"],
            counts["tampered"],
            finalized.all_match,
            digest[:16] + "...",
        )
        return CompletionResult(
            session_id=session_id,
            completed_at=finalized.completed_at,
            completed_by=acting_user_id,
            record=record,
            record_digest=digest,
            missing_marked=list(finalized.missing_marked),
            all_match=finalized.all_match,
        )

    def get_verification_record(self, session_id: str) -> VerificationRecord:
        with self._store("get_record"):
            row = self._get_session(session_id)
            if row.verification_record is None:
                raise VerificationException(record_not_found(session_id))
            return row.verification_record

    # =========================================================
    # PRIVATE METHODS - LOAD / WRITE BACK
    # =========================================================

    @contextmanager
    def _store(self, operation: str) -> Iterator[None]:
        """Translate database outages into COLLABORATOR_UNAVAILABLE."""
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            logger.error("Verification store unavailable during %s: %s", operation, e)
            raise VerificationException(
                collaborator_unavailable(operation, type(e).__name__)
            ) from e

    def _get_session(self, session_id: str) -> TripSession:
        stmt = select(TripSession).where(TripSession.session_id == session_id)
        row = self.db.execute(stmt).scalar_one_or_none()
        if row is None:
            raise VerificationException(session_not_found(session_id))
        return row

    def _lock_session(self, session_id: str) -> TripSession:
        """Lock session for exclusive access (SELECT FOR UPDATE)."""
        stmt = (
            select(TripSession)
            .where(TripSession.session_id == session_id)
            .with_for_update()
        )
        row = self.db.execute(stmt).scalar_one_or_none()
        if row is None:
            raise VerificationException(session_not_found(session_id))
        return row

    def _load(self, row: TripSession) -> VerificationState:
        snapshot = SessionSnapshot(
            session_id=row.session_id,
            state=SessionState(row.state),
            registered_seals=[
                RegisteredSeal(
                    seal_id=r.seal_id,
                    method=CaptureMethod(r.method),
                    image_ref=r.image_ref,
                    registered_at=r.registered_at,
                )
                for r in row.registered_seals
            ],
            declared_fields=dict(row.declared_fields or {}),
            declared_images=dict(row.declared_images or {}),
            seal_records={
                e.seal_id: SealStatusRecord(
                    seal_id=e.seal_id,
                    status=SealState(e.status),
                    comment=e.comment,
                    evidence_refs=tuple(e.evidence_refs or ()),
                    acted_by=e.acted_by,
                    changed_at=e.changed_at,
                    scanned=e.scanned,
                    scan_verified=bool(e.scan_verified),
                )
                for e in row.seal_statuses
            },
            field_records=[
                FieldVerification(
                    key=f.field_key,
                    operator_value=f.operator_value,
                    guard_value=f.guard_value,
                    group=FieldGroup(f.field_group),
                    is_verified=f.is_verified,
                    matches=f.matches,
                    comment=f.comment,
                )
                for f in row.field_verifications
            ]
            if row.field_verifications
            else None,
            scans=[
                ScannedSeal(
                    identifier=s.identifier,
                    method=CaptureMethod(s.method),
                    matched=s.matched,
                    registry_id=s.registry_id,
                    image_ref=s.image_ref,
                    scanned_by=s.scanned_by,
                    scanned_at=s.scanned_at,
                )
                for s in row.scans
            ],
            version=row.version,
        )
        return VerificationState(snapshot)

    def _write_back(self, row: TripSession, state: VerificationState) -> None:
        row.state = state.state.value
        row.version = state.version

        # Registrations (append-only)
        known = {r.seal_id for r in row.registered_seals}
        for position, seal in enumerate(state.registry):
            if seal.seal_id not in known:
                row.registered_seals.append(self._registration_row(position, seal))

        # Statuses and fields exist from the moment verification starts
        if state.state != SessionState.PENDING:
            entries = {e.seal_id: e for e in row.seal_statuses}
            for record in state.seals.records():
                entry = entries.get(record.seal_id)
                if entry is None:
                    entry = SealStatusEntry(seal_id=record.seal_id)
                    row.seal_statuses.append(entry)
                entry.status = record.status.value
                entry.comment = record.comment
                entry.evidence_refs = list(record.evidence_refs)
                entry.acted_by = record.acted_by
                entry.changed_at = record.changed_at
                entry.scanned = record.scanned
                entry.scan_verified = record.scan_verified

            field_rows = {f.field_key: f for f in row.field_verifications}
            for position, field in enumerate(state.fields.records()):
                entry = field_rows.get(field.key)
                if entry is None:
                    entry = FieldVerificationEntry(field_key=field.key, position=position)
                    row.field_verifications.append(entry)
                entry.field_group = field.group.value
                entry.operator_value = field.operator_value
                entry.guard_value = field.guard_value
                entry.is_verified = field.is_verified
                entry.matches = field.matches
                entry.comment = field.comment

        # Scans
        current = {scan.normalized: scan for scan in state.scans()}
        for scan_row in list(row.scans):
            if scan_row.normalized_id not in current:
                row.scans.remove(scan_row)
        stored = {scan_row.normalized_id for scan_row in row.scans}
        for key, scan in current.items():
            if key not in stored:
                row.scans.append(
                    SealScan(
                        identifier=scan.identifier,
                        normalized_id=key,
                        method=scan.method.value,
                        image_ref=scan.image_ref,
                        matched=scan.matched,
                        registry_id=scan.registry_id,
                        scanned_by=scan.scanned_by,
                        scanned_at=scan.scanned_at,
                    )
                )

    def _registration_row(self, position: int, seal: RegisteredSeal) -> SealRegistration:
        return SealRegistration(
            position=position,
            seal_id=seal.seal_id,
            normalized_id=normalize_identifier(seal.seal_id),
            method=seal.method.value,
            image_ref=seal.image_ref,
            registered_at=seal.registered_at or self._clock(),
        )

    def _record_row(
        self,
        row: TripSession,
        finalized: FinalizedVerification,
        record: dict[str, Any],
        digest: str,
    ) -> VerificationRecord:
        counts = finalized.counts
        return VerificationRecord(
            session=row,
            service_id=self.service_id,
            completed_by=finalized.completed_by,
            completed_at=finalized.completed_at,
            record=record,
            record_digest=digest,
            total_seals=counts["total"],
            verified_count=counts["verified"],
            missing_count=counts["missing"],
            broken_count=counts["broken"],
            tampered_count=counts["tampered"],
            all_match=finalized.all_match,
        )

    def _log(self, row: TripSession, action: str, **fields: Any) -> None:
        self.db.add(VerificationActivity(session=row, action=action, created_at=self._clock(), **fields))
