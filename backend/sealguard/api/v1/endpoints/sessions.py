"""
sessions.py - Session setup, lifecycle and completion endpoints.

ENDPOINTS:
- POST /sessions                         create (PENDING)
- GET  /sessions/pending                 guard work queue
- GET  /sessions/{id}                    full session view
- POST /sessions/{id}/seals              register seal (PENDING only)
- POST /sessions/{id}/start              PENDING -> IN_PROGRESS
- GET  /sessions/{id}/summary            completion preview
- POST /sessions/{id}/complete           one-time finalization
- GET  /sessions/{id}/verification       finalized record + digest
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session as DBSession

from sealguard.api.v1.errors import command
from sealguard.database import get_db
from sealguard.engine import RegisteredSeal, VerificationState
from sealguard.models import TripSession
from sealguard.schemas.verification import (
    ActorRequest,
    CompleteRequest,
    CompleteResponse,
    FieldOut,
    FieldPartitionOut,
    RegisteredSealOut,
    RejectionResponse,
    ScanOut,
    SealRegisterRequest,
    SealStatusOut,
    SessionCreateRequest,
    SessionListItem,
    SessionOut,
    SummaryOut,
    VerificationRecordOut,
)
from sealguard.services.verification import VerificationService

router = APIRouter()

REJECTIONS = {
    400: {"model": RejectionResponse, "description": "Bad request"},
    404: {"model": RejectionResponse, "description": "Not found"},
    409: {"model": RejectionResponse, "description": "State conflict"},
    503: {"model": RejectionResponse, "description": "Store unavailable"},
}


def session_out(row: TripSession, state: VerificationState) -> SessionOut:
    """Session view built from the row (metadata, scans) and its aggregate."""
    return SessionOut(
        session_id=row.session_id,
        source=row.source,
        destination=row.destination,
        created_by=row.created_by,
        state=state.state.value,
        version=state.version,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        registered_seals=[RegisteredSealOut.model_validate(r) for r in row.registered_seals],
        seal_statuses=[
            SealStatusOut(
                seal_id=record.seal_id,
                status=record.status.value,
                comment=record.comment,
                evidence_refs=list(record.evidence_refs),
                acted_by=record.acted_by,
                changed_at=record.changed_at,
                scanned=record.scanned,
            )
            for record in state.seals.records()
        ],
        scans=[ScanOut.model_validate(s) for s in row.scans],
        fields=[field_out(f) for f in state.fields.records()],
        field_summary=FieldPartitionOut(**state.fields.partition().to_dict()),
    )


def field_out(field) -> FieldOut:
    return FieldOut(
        key=field.key,
        group=field.group.value,
        operator_value=field.operator_value,
        guard_value=field.guard_value,
        is_verified=field.is_verified,
        matches=field.matches,
        comment=field.comment,
    )


@router.post(
    "",
    response_model=SessionOut,
    status_code=status.HTTP_201_CREATED,
    responses=REJECTIONS,
    summary="Create trip session",
)
def create_session(request: SessionCreateRequest, db: DBSession = Depends(get_db)) -> SessionOut:
    """Operator registers trip details, seal tags and image groups."""
    service = VerificationService(db)
    with command(db, "create_session"):
        row = service.create_session(
            source=request.source,
            destination=request.destination,
            created_by=request.created_by,
            seals=[
                RegisteredSeal(seal_id=s.seal_id, method=s.method, image_ref=s.image_ref)
                for s in request.seals
            ],
            declared_fields=request.declared_fields,
            declared_images=request.declared_images,
        )
        session_id = row.session_id

    with command(db, "get_session"):
        row, state = service.get_session_state(session_id)
        return session_out(row, state)


@router.get("/pending", response_model=list[SessionListItem], summary="Sessions awaiting verification")
def list_pending_sessions(db: DBSession = Depends(get_db)) -> list[SessionListItem]:
    service = VerificationService(db)
    with command(db, "list_pending_sessions"):
        rows = service.list_pending_sessions()
        return [SessionListItem.model_validate(row) for row in rows]


@router.get("/{session_id}", response_model=SessionOut, responses=REJECTIONS)
def get_session(session_id: str, db: DBSession = Depends(get_db)) -> SessionOut:
    service = VerificationService(db)
    with command(db, "get_session"):
        row, state = service.get_session_state(session_id)
        return session_out(row, state)


@router.post(
    "/{session_id}/seals",
    response_model=RegisteredSealOut,
    status_code=status.HTTP_201_CREATED,
    responses=REJECTIONS,
    summary="Register an additional seal",
)
def register_seal(
    session_id: str,
    request: SealRegisterRequest,
    db: DBSession = Depends(get_db),
) -> RegisteredSealOut:
    service = VerificationService(db)
    with command(db, "register_seal"):
        seal = service.register_seal(
            session_id,
            request.seal_id,
            method=request.method,
            image_ref=request.image_ref,
            actor=request.acting_user_id,
        )
        return RegisteredSealOut(
            seal_id=seal.seal_id,
            method=seal.method.value,
            image_ref=seal.image_ref,
            registered_at=seal.registered_at,
        )


@router.post("/{session_id}/start", response_model=SessionOut, responses=REJECTIONS, summary="Start verification")
def start_verification(
    session_id: str,
    request: Optional[ActorRequest] = None,
    db: DBSession = Depends(get_db),
) -> SessionOut:
    service = VerificationService(db)
    with command(db, "start"):
        service.start_verification(session_id, actor=request.acting_user_id if request else None)

    with command(db, "get_session"):
        row, state = service.get_session_state(session_id)
        return session_out(row, state)


@router.get("/{session_id}/summary", response_model=SummaryOut, responses=REJECTIONS)
def get_summary(session_id: str, db: DBSession = Depends(get_db)) -> SummaryOut:
    """Preview of completion. Nothing is written."""
    service = VerificationService(db)
    with command(db, "summary"):
        summary = service.get_summary(session_id)
        return SummaryOut(**summary.to_dict())


@router.post(
    "/{session_id}/complete",
    response_model=CompleteResponse,
    responses=REJECTIONS,
    summary="Complete verification",
    description="""
Finalize verification for a session.

**Invariants:**
- Session must be IN_PROGRESS; a second completion returns 409
- Every unscanned registered seal becomes MISSING
- `expected_version` (from the summary) rejects completion with 409 if the
  session changed in between
- On 503 the outcome is unknown: re-query the session before retrying
"""
)
def complete_verification(
    session_id: str,
    request: CompleteRequest,
    db: DBSession = Depends(get_db),
) -> CompleteResponse:
    service = VerificationService(db)
    with command(db, "complete"):
        result = service.complete_verification(
            session_id,
            request.acting_user_id,
            expected_version=request.expected_version,
        )

    return CompleteResponse(
        session_id=result.session_id,
        completed_at=result.completed_at,
        completed_by=result.completed_by,
        missing_marked=result.missing_marked,
        all_match=result.all_match,
        record_digest=result.record_digest,
    )


@router.get("/{session_id}/verification", response_model=VerificationRecordOut, responses=REJECTIONS)
def get_verification_record(session_id: str, db: DBSession = Depends(get_db)) -> VerificationRecordOut:
    service = VerificationService(db)
    with command(db, "get_record"):
        record = service.get_verification_record(session_id)
        return VerificationRecordOut(
            session_id=session_id,
            service_id=record.service_id,
            completed_by=record.completed_by,
            completed_at=record.completed_at,
            record=record.record,
            record_digest=record.record_digest,
            total_seals=record.total_seals,
            verified_count=record.verified_count,
            missing_count=record.missing_count,
            broken_count=record.broken_count,
            tampered_count=record.tampered_count,
            all_match=record.all_match,
        )
