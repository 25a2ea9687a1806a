"""
verification.py - Pydantic schemas for the verification API.

HARD INVARIANTS:
- Seal identifiers are compared trimmed and case-insensitively; the API
  stores them as submitted (trimmed)
- BROKEN / TAMPERED status changes need a comment AND evidence_refs
- The finalized record body is returned exactly as persisted
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sealguard.engine import CaptureMethod

# --- Session setup ---


class SealRegistrationIn(BaseModel):
    """Seal tag declared by the operator."""

    seal_id: str = Field(..., min_length=1, max_length=100, description="Seal tag identifier")
    method: CaptureMethod = Field(CaptureMethod.MANUAL, description="manual or digital")
    image_ref: str | None = Field(None, max_length=500, description="Opaque image reference")

    @field_validator("seal_id")
    @classmethod
    def seal_id_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("seal_id must not be blank")
        return v


class SessionCreateRequest(BaseModel):
    source: str = Field(..., min_length=1, max_length=200)
    destination: str = Field(..., min_length=1, max_length=200)
    created_by: str = Field(..., min_length=1, max_length=100, description="Operator reference")
    seals: list[SealRegistrationIn] = Field(default_factory=list)
    declared_fields: dict[str, Any] = Field(
        default_factory=dict, description="Trip and driver details (key -> value)"
    )
    declared_images: dict[str, Any] = Field(
        default_factory=dict, description="Image groups (key -> opaque reference)"
    )


class SealRegisterRequest(SealRegistrationIn):
    acting_user_id: str | None = None


class ActorRequest(BaseModel):
    acting_user_id: str | None = Field(None, description="Acting user reference")


# --- Session views ---


class RegisteredSealOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seal_id: str
    method: str
    image_ref: str | None = None
    registered_at: datetime | None = None


class SealStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seal_id: str
    status: str
    comment: str | None = None
    evidence_refs: list[str] = Field(default_factory=list)
    acted_by: str | None = None
    changed_at: datetime | None = None
    scanned: bool = False


class ScanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    identifier: str
    method: str
    matched: bool
    registry_id: str | None = None
    image_ref: str | None = None
    scanned_by: str | None = None
    scanned_at: datetime | None = None


class FieldOut(BaseModel):
    key: str
    group: str
    operator_value: Any = None
    guard_value: Any = None
    is_verified: bool
    matches: bool
    comment: str | None = None


class FieldPartitionOut(BaseModel):
    matches: list[str] = Field(default_factory=list)
    mismatches: list[str] = Field(default_factory=list)
    unverified: list[str] = Field(default_factory=list)


class SessionOut(BaseModel):
    """Full session view (operator and guard)."""

    session_id: str
    source: str
    destination: str
    created_by: str
    state: str
    version: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    registered_seals: list[RegisteredSealOut] = Field(default_factory=list)
    seal_statuses: list[SealStatusOut] = Field(default_factory=list)
    scans: list[ScanOut] = Field(default_factory=list)
    fields: list[FieldOut] = Field(default_factory=list)
    field_summary: FieldPartitionOut = Field(default_factory=FieldPartitionOut)


class SessionListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    source: str
    destination: str
    created_by: str
    state: str
    created_at: datetime
    started_at: datetime | None = None


class SealTagCheckOut(BaseModel):
    tag: str
    exists: bool
    session_ids: list[str] = Field(default_factory=list)


# --- Scans ---


class ScanRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=100, description="Observed seal tag")
    method: CaptureMethod = Field(CaptureMethod.MANUAL)
    image_ref: str | None = Field(None, max_length=500)
    acting_user_id: str | None = None

    @field_validator("identifier")
    @classmethod
    def identifier_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("identifier must not be blank")
        return v


class ScanResponse(BaseModel):
    """
    Scan outcome.

    HTTP 201: new scan stored (matched or not)
    HTTP 409: duplicate, `error` carries DUPLICATE_SCAN
    """

    matched: bool
    duplicate: bool = False
    registry_id: str | None = None
    error: dict[str, Any] | None = None


# --- Seal status ---


class SealStatusRequest(BaseModel):
    status: str = Field(..., description="VERIFIED, BROKEN, TAMPERED or MISSING")
    comment: str | None = Field(None, max_length=2000)
    evidence_refs: list[str] = Field(
        default_factory=list, description="Opaque attachment references"
    )
    acting_user_id: str | None = None


# --- Fields ---


class FieldAnnotateRequest(BaseModel):
    """
    Guard comment and optional observed value.

    Leaving `guard_value` out keeps the stored value; sending it (even as
    null) records what the guard observed.
    """

    comment: str | None = Field(None, max_length=2000)
    guard_value: Any = None
    acting_user_id: str | None = None


# --- Completion ---


class SummaryOut(BaseModel):
    session_id: str
    total_seals: int
    scanned_seals: int
    unscanned_seals: int
    status_breakdown: dict[str, int]
    will_mark_missing: list[str]
    fields: FieldPartitionOut
    version: int


class CompleteRequest(BaseModel):
    acting_user_id: str = Field(..., min_length=1, description="Guard completing the verification")
    expected_version: int | None = Field(
        None, ge=0, description="Session version the summary was computed at"
    )


class CompleteResponse(BaseModel):
    status: str = Field("completed")
    session_id: str
    completed_at: datetime
    completed_by: str
    missing_marked: list[str]
    all_match: bool
    record_digest: str


class VerificationRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    service_id: str
    completed_by: str
    completed_at: datetime
    record: dict[str, Any]
    record_digest: str
    total_seals: int
    verified_count: int
    missing_count: int
    broken_count: int
    tampered_count: int
    all_match: bool


# --- Rejection Response ---


class RejectionResponse(BaseModel):
    """
    Error response for rejected commands.

    HTTP 400: validation (missing evidence, bad status, bad input)
    HTTP 404: unknown session, seal, field or scan
    HTTP 409: duplicates, stale or finalized session
    HTTP 503: verification store unavailable
    """

    status: str = Field("rejected", description="Always 'rejected'")
    code: str = Field(..., description="Machine-readable rejection code")
    kind: str | None = Field(None, description="VALIDATION, STATE, NOT_FOUND or COLLABORATOR")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] | None = Field(None, description="Additional context")
