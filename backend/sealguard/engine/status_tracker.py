"""
status_tracker.py - Per-seal status state machine.

UNSCANNED -> VERIFIED | BROKEN | TAMPERED | MISSING

CRITICAL INVARIANTS:
1. BROKEN and TAMPERED are accepted only with a non-empty comment AND at
   least one evidence reference
2. A seal verified by a scan cannot be verified by a scan again
3. MISSING -> MISSING is a no-op (completion may be re-run safely)
4. No status changes once the owning session is COMPLETED
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from .errors import (
    VerificationException,
    duplicate_scan,
    invalid_status,
    missing_evidence,
    unknown_seal,
)
from .lifecycle import SessionLifecycle
from .matcher import match, normalize_identifier
from .registry import SealRegistry
from .states import EVIDENCE_REQUIRED_STATES, OVERRIDE_STATES, SealState

DEFAULT_MISSING_COMMENT = "Seal not found during verification"


@dataclass(frozen=True)
class SealStatusRecord:
    """Current status of one registered seal."""
    seal_id: str
    status: SealState = SealState.UNSCANNED
    comment: Optional[str] = None
    evidence_refs: tuple[str, ...] = ()
    acted_by: Optional[str] = None
    changed_at: Optional[datetime] = None
    # True when a matching guard scan confirmed the physical tag
    scanned: bool = False
    # True when the VERIFIED status came from that scan, not a guard override
    scan_verified: bool = False


def finalize_unscanned(
    all_registered_ids: Iterable[str],
    scanned_ids: Iterable[str],
    statuses: Optional[Mapping[str, SealState]] = None,
) -> list[str]:
    """
    Registered seal ids that completion must mark MISSING.

    A seal qualifies when no scan matched it and its status (when statuses are
    supplied) is still UNSCANNED. Manual overrides such as TAMPERED are kept.

    Args:
        all_registered_ids: Registered identifiers in registry order
        scanned_ids: Identifiers confirmed by scans (compared normalized)
        statuses: Optional current status per registered identifier

    Returns:
        Identifiers in registry order
    """
    scanned = {normalize_identifier(seal_id) for seal_id in scanned_ids}
    unscanned = []
    for seal_id in all_registered_ids:
        if normalize_identifier(seal_id) in scanned:
            continue
        if statuses is not None and statuses.get(seal_id, SealState.UNSCANNED) != SealState.UNSCANNED:
            continue
        unscanned.append(seal_id)
    return unscanned


def _coerce_status(value) -> SealState:
    try:
        return SealState(value)
    except ValueError:
        raise VerificationException(
            invalid_status(str(value), [s.value for s in OVERRIDE_STATES])
        )


class SealStatusTracker:
    """
    Owns the SealStatusRecord of every registered seal in one session.

    Records are immutable; each accepted command swaps in a new record.
    """

    def __init__(
        self,
        registry: SealRegistry,
        lifecycle: SessionLifecycle,
        records: Optional[Mapping[str, SealStatusRecord]] = None,
    ):
        self._registry = registry
        self._lifecycle = lifecycle
        existing = records or {}
        self._records = {
            seal_id: existing.get(seal_id) or SealStatusRecord(seal_id=seal_id)
            for seal_id in registry.ids()
        }

    # --- Queries ---

    def get(self, seal_id: str) -> SealStatusRecord:
        record = self._records.get(seal_id)
        if record is None:
            raise VerificationException(unknown_seal(seal_id))
        return record

    def records(self) -> list[SealStatusRecord]:
        """All records in registry order."""
        return [self._records[seal_id] for seal_id in self._registry.ids()]

    def statuses(self) -> dict[str, SealState]:
        return {seal_id: record.status for seal_id, record in self._records.items()}

    def scanned_ids(self) -> list[str]:
        return [r.seal_id for r in self.records() if r.scanned]

    def unscanned_ids(self) -> list[str]:
        return finalize_unscanned(self._registry.ids(), self.scanned_ids(), self.statuses())

    def status_breakdown(self) -> dict[str, int]:
        """Histogram over every SealState (zero entries included)."""
        breakdown = {state.value: 0 for state in SealState}
        for record in self._records.values():
            breakdown[record.status.value] += 1
        return breakdown

    # --- Commands ---

    def record_scan(
        self,
        seal_id: str,
        observed_id: str,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SealStatusRecord:
        """
        Apply a guard scan that the matcher resolved to `seal_id`.

        Raises:
            VerificationException: UNKNOWN_SEAL if `observed_id` does not match
                `seal_id`, DUPLICATE_SCAN if a scan already verified the seal,
                plus the lifecycle guard errors.
        """
        self._lifecycle.require_active()
        current = self.get(seal_id)

        result = match(observed_id, self._registry)
        if not result.matched or result.registry_id != seal_id:
            raise VerificationException(unknown_seal(observed_id))

        if current.scanned and current.status == SealState.VERIFIED:
            raise VerificationException(duplicate_scan(observed_id, True, seal_id))

        if current.status == SealState.VERIFIED:
            # Manually verified earlier; the scan only confirms it physically
            updated = replace(current, scanned=True)
        else:
            updated = SealStatusRecord(
                seal_id=seal_id,
                status=SealState.VERIFIED,
                acted_by=actor,
                changed_at=at,
                scanned=True,
                scan_verified=True,
            )
        self._records[seal_id] = updated
        return updated

    def revert_scan(
        self,
        seal_id: str,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SealStatusRecord:
        """
        Undo a scan.

        A seal VERIFIED by that scan returns to UNSCANNED. A guard override
        (including a manual VERIFIED) is kept and only loses `scanned`.
        """
        self._lifecycle.require_active()
        current = self.get(seal_id)
        if not current.scanned:
            return current

        if current.scan_verified and current.status == SealState.VERIFIED:
            updated = SealStatusRecord(seal_id=seal_id, acted_by=actor, changed_at=at)
        else:
            updated = replace(current, scanned=False, scan_verified=False)
        self._records[seal_id] = updated
        return updated

    def set_status(
        self,
        seal_id: str,
        new_status,
        comment: Optional[str] = None,
        evidence_refs: Optional[Sequence[str]] = None,
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SealStatusRecord:
        """
        Explicit guard override.

        Args:
            seal_id: Registered identifier
            new_status: VERIFIED, BROKEN, TAMPERED or MISSING
            comment: Free text; required for BROKEN/TAMPERED
            evidence_refs: Opaque attachment references; at least one
                required for BROKEN/TAMPERED
            actor: Acting guard
            at: Change timestamp

        Returns:
            The stored record

        Raises:
            VerificationException: MISSING_EVIDENCE, INVALID_STATUS,
                UNKNOWN_SEAL, SESSION_ALREADY_FINALIZED, INVALID_SESSION_STATE
        """
        self._lifecycle.require_active()
        status = _coerce_status(new_status)
        if status not in OVERRIDE_STATES:
            raise VerificationException(
                invalid_status(status.value, [s.value for s in OVERRIDE_STATES])
            )
        current = self.get(seal_id)

        text = (comment or "").strip() or None
        refs = tuple(ref for ref in (evidence_refs or ()) if ref and ref.strip())

        if status in EVIDENCE_REQUIRED_STATES and (text is None or not refs):
            raise VerificationException(
                missing_evidence(seal_id, status.value, text is not None, len(refs))
            )

        if status == SealState.MISSING and current.status == SealState.MISSING:
            return current

        updated = replace(
            current,
            status=status,
            comment=text,
            evidence_refs=refs,
            acted_by=actor,
            changed_at=at,
            scan_verified=False,
        )
        self._records[seal_id] = updated
        return updated

    # --- Completion support ---

    def stage_missing(
        self,
        seal_ids: Iterable[str],
        *,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
        comment: str = DEFAULT_MISSING_COMMENT,
    ) -> dict[str, SealStatusRecord]:
        """
        Compute the record map with `seal_ids` marked MISSING, without applying it.

        Seals already MISSING are left untouched.
        """
        staged = dict(self._records)
        for seal_id in seal_ids:
            current = self.get(seal_id)
            if current.status == SealState.MISSING:
                continue
            staged[seal_id] = replace(
                current,
                status=SealState.MISSING,
                comment=comment,
                evidence_refs=(),
                acted_by=actor,
                changed_at=at,
            )
        return staged

    def apply_staged(self, staged: Mapping[str, SealStatusRecord]) -> None:
        self._records = {seal_id: staged[seal_id] for seal_id in self._registry.ids()}
