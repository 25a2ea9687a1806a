"""
fields.py - Field verification endpoints.

ENDPOINTS:
- POST  /sessions/{id}/fields/verify-all
- POST  /sessions/{id}/fields/{key}/toggle
- PATCH /sessions/{id}/fields/{key}
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session as DBSession

from sealguard.api.v1.endpoints.sessions import REJECTIONS, field_out
from sealguard.api.v1.errors import command
from sealguard.database import get_db
from sealguard.engine import UNSET
from sealguard.schemas.verification import ActorRequest, FieldAnnotateRequest, FieldOut
from sealguard.services.verification import VerificationService

router = APIRouter()


@router.post("/{session_id}/fields/verify-all", response_model=list[FieldOut], responses=REJECTIONS)
def verify_all_fields(
    session_id: str,
    request: Optional[ActorRequest] = None,
    db: DBSession = Depends(get_db),
) -> list[FieldOut]:
    service = VerificationService(db)
    with command(db, "verify_all"):
        fields = service.verify_all_fields(session_id, actor=request.acting_user_id if request else None)
    return [field_out(f) for f in fields]


@router.post("/{session_id}/fields/{key}/toggle", response_model=FieldOut, responses=REJECTIONS)
def toggle_field(
    session_id: str,
    key: str,
    request: Optional[ActorRequest] = None,
    db: DBSession = Depends(get_db),
) -> FieldOut:
    service = VerificationService(db)
    with command(db, "toggle_field"):
        field = service.toggle_field(session_id, key, actor=request.acting_user_id if request else None)
    return field_out(field)


@router.patch("/{session_id}/fields/{key}", response_model=FieldOut, responses=REJECTIONS)
def annotate_field(
    session_id: str,
    key: str,
    request: FieldAnnotateRequest,
    db: DBSession = Depends(get_db),
) -> FieldOut:
    service = VerificationService(db)
    guard_value = request.guard_value if "guard_value" in request.model_fields_set else UNSET
    with command(db, "annotate_field"):
        field = service.annotate_field(
            session_id,
            key,
            comment=request.comment,
            guard_value=guard_value,
            actor=request.acting_user_id,
        )
    return field_out(field)
