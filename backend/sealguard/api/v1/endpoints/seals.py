"""
seals.py - Seal status and seal tag endpoints.

ENDPOINTS:
- PATCH /sessions/{id}/seals/{seal_id}/status    guard status override
- GET   /seal-tags/check?tag=                    tag already registered?

BROKEN and TAMPERED need a comment and at least one evidence reference;
the 400 body names what is missing under `details.missing`.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session as DBSession

from sealguard.api.v1.endpoints.sessions import REJECTIONS
from sealguard.api.v1.errors import command
from sealguard.database import get_db
from sealguard.schemas.verification import SealStatusOut, SealStatusRequest, SealTagCheckOut
from sealguard.services.verification import VerificationService

router = APIRouter()


@router.patch(
    "/sessions/{session_id}/seals/{seal_id}/status",
    response_model=SealStatusOut,
    responses=REJECTIONS,
    summary="Set seal status",
)
def set_seal_status(
    session_id: str,
    seal_id: str,
    request: SealStatusRequest,
    db: DBSession = Depends(get_db),
) -> SealStatusOut:
    service = VerificationService(db)
    with command(db, "set_status"):
        record = service.set_seal_status(
            session_id,
            seal_id,
            request.status,
            comment=request.comment,
            evidence_refs=request.evidence_refs,
            actor=request.acting_user_id,
        )

    return SealStatusOut(
        seal_id=record.seal_id,
        status=record.status.value,
        comment=record.comment,
        evidence_refs=list(record.evidence_refs),
        acted_by=record.acted_by,
        changed_at=record.changed_at,
        scanned=record.scanned,
    )


@router.get("/seal-tags/check", response_model=SealTagCheckOut, responses=REJECTIONS)
def check_seal_tag(tag: str = Query(..., min_length=1), db: DBSession = Depends(get_db)) -> SealTagCheckOut:
    service = VerificationService(db)
    with command(db, "check_seal_tag"):
        result = service.check_seal_tag(tag)
        return SealTagCheckOut(tag=result.tag, exists=result.exists, session_ids=result.session_ids)
