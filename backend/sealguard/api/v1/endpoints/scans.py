"""
scans.py - Guard scan endpoints.

ENDPOINTS:
- POST   /sessions/{id}/scans                 record a scan
- DELETE /sessions/{id}/scans/{identifier}    undo a scan

A resubmitted identifier answers 409 with `duplicate: true` and changes
nothing, so clients may retry a scan whose response was lost.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session as DBSession

from sealguard.api.v1.endpoints.sessions import REJECTIONS
from sealguard.api.v1.errors import command, rejection_body
from sealguard.database import get_db
from sealguard.engine import VerificationErrorCode
from sealguard.schemas.verification import ActorRequest, ScanOut, ScanRequest, ScanResponse
from sealguard.services.verification import VerificationService

router = APIRouter()


def duplicate_response(matched: bool, registry_id: Optional[str], error: Optional[dict]) -> JSONResponse:
    body = ScanResponse(matched=matched, duplicate=True, registry_id=registry_id, error=error)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump())


@router.post(
    "/{session_id}/scans",
    response_model=ScanResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**REJECTIONS, 409: {"model": ScanResponse, "description": "Duplicate scan or state conflict"}},
    summary="Record seal scan",
)
def record_scan(session_id: str, request: ScanRequest, db: DBSession = Depends(get_db)):
    service = VerificationService(db)
    try:
        with command(db, "record_scan"):
            result = service.record_scan(
                session_id,
                request.identifier,
                method=request.method,
                image_ref=request.image_ref,
                actor=request.acting_user_id,
            )
    except HTTPException as e:
        # Lost an insert race on the unique scan constraint
        detail = e.detail if isinstance(e.detail, dict) else {}
        if detail.get("code") != VerificationErrorCode.DUPLICATE_SCAN.value:
            raise
        details = detail.get("details") or {}
        return duplicate_response(details.get("matched", False), details.get("registry_id"), detail)

    if result.duplicate:
        error = rejection_body(result.error) if result.error else None
        return duplicate_response(result.matched, result.registry_id, error)

    return ScanResponse(matched=result.matched, duplicate=False, registry_id=result.registry_id)


@router.delete(
    "/{session_id}/scans/{identifier}",
    response_model=ScanOut,
    responses=REJECTIONS,
    summary="Undo seal scan",
)
def remove_scan(
    session_id: str,
    identifier: str,
    request: Optional[ActorRequest] = None,
    db: DBSession = Depends(get_db),
) -> ScanOut:
    service = VerificationService(db)
    with command(db, "remove_scan"):
        scan = service.remove_scan(
            session_id, identifier, actor=request.acting_user_id if request else None
        )

    return ScanOut(
        identifier=scan.identifier,
        method=scan.method.value,
        matched=scan.matched,
        registry_id=scan.registry_id,
        image_ref=scan.image_ref,
        scanned_by=scan.scanned_by,
        scanned_at=scan.scanned_at,
    )
