"""
test_verification_service.py - VerificationService against a real database.

TESTS:
1. Setup -> start -> scan -> status -> complete writes one finalized record
2. Duplicate scans are reported, not stored
3. Completed sessions stay frozen; completion is single-use
4. Every accepted command leaves an activity row
5. Database outages surface as COLLABORATOR_UNAVAILABLE
"""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from sealguard.engine import (
    CaptureMethod,
    RegisteredSeal,
    SealState,
    VerificationErrorCode,
    VerificationException,
)
from sealguard.models import SealScan, TripSession, VerificationActivity, VerificationRecord
from sealguard.services.verification import VerificationService

NOW = datetime(2024, 3, 1, 9, 30, 15, 250000, tzinfo=UTC)


@pytest.fixture
def service(db):
    return VerificationService(db, service_id="test-verifier", clock=lambda: NOW)


@pytest.fixture
def started(service, db):
    """A started session with seals A1, A2, A3 and two declared fields."""
    row = service.create_session(
        source="Pune Plant",
        destination="Nhava Sheva",
        created_by="operator-3",
        seals=[RegisteredSeal(s) for s in ["A1", "A2", "A3"]],
        declared_fields={"vehicleNumber": "MH12AB1234", "driverName": "R. Patil"},
        declared_images={"loadingPhotos": "img://set-1"},
    )
    db.commit()
    service.start_verification(row.session_id, actor="guard-7")
    db.commit()
    return row.session_id


def _activities(db, session_id):
    stmt = (
        select(VerificationActivity.action)
        .join(TripSession, TripSession.id == VerificationActivity.session_pk)
        .where(TripSession.session_id == session_id)
        .order_by(VerificationActivity.id)
    )
    return list(db.execute(stmt).scalars().all())


class TestSessionSetup:
    """Operator side."""

    def test_create_session_pending(self, service, db):
        """New sessions are PENDING with ordered registrations."""
        row = service.create_session(
            "Pune", "Mumbai", "operator-3", seals=[RegisteredSeal(" S-1 "), RegisteredSeal("S-2")]
        )
        db.commit()
        assert row.state == "PENDING"
        assert row.version == 0
        assert [s.seal_id for s in service.registered_seals(row.session_id)] == ["S-1", "S-2"]

    def test_duplicate_registration_rejected(self, service):
        """Normalized duplicate tags are a ValueError."""
        with pytest.raises(ValueError):
            service.create_session("Pune", "Mumbai", "op", seals=[RegisteredSeal("S-1"), RegisteredSeal("s-1")])

    def test_register_seal_only_while_pending(self, service, db, started):
        """Registration after start is INVALID_SESSION_STATE."""
        with pytest.raises(VerificationException) as exc:
            service.register_seal(started, "A4")
        assert exc.value.code == VerificationErrorCode.INVALID_SESSION_STATE

    def test_register_seal_pending(self, service, db):
        """An extra seal is appended to the registry."""
        row = service.create_session("Pune", "Mumbai", "op", seals=[RegisteredSeal("S-1")])
        db.commit()
        service.register_seal(row.session_id, "S-2", method=CaptureMethod.DIGITAL)
        db.commit()
        seals = service.registered_seals(row.session_id)
        assert [(s.seal_id, s.method) for s in seals] == [
            ("S-1", CaptureMethod.MANUAL),
            ("S-2", CaptureMethod.DIGITAL),
        ]

    def test_check_seal_tag(self, service, db, started):
        """Registered tags are found regardless of case."""
        found = service.check_seal_tag(" a2 ")
        assert found.exists is True
        assert found.session_ids == [started]
        assert service.check_seal_tag("Z9").exists is False

    def test_unknown_session(self, service):
        """Commands on a missing session are SESSION_NOT_FOUND."""
        with pytest.raises(VerificationException) as exc:
            service.start_verification("does-not-exist")
        assert exc.value.code == VerificationErrorCode.SESSION_NOT_FOUND


class TestVerificationFlow:
    """Guard side, end to end through the database."""

    def test_start_materializes_statuses(self, service, started):
        """Starting creates one UNSCANNED status per seal and one field row per declaration."""
        row, state = service.get_session_state(started)
        assert row.state == "IN_PROGRESS"
        assert [e.status for e in row.seal_statuses] == ["UNSCANNED"] * 3
        assert {f.field_key for f in row.field_verifications} == {
            "vehicleNumber",
            "driverName",
            "loadingPhotos",
        }
        assert state.version == 1

    def test_pending_queue(self, service, db, started):
        """Started sessions appear in the guard queue; pending ones do not."""
        service.create_session("Pune", "Mumbai", "op")
        db.commit()
        assert [row.session_id for row in service.list_pending_sessions()] == [started]

    def test_full_flow(self, service, db, started):
        """Scenario: a1 + B9 scanned, A2 TAMPERED, complete -> A3 MISSING."""
        assert service.record_scan(started, "a1 ", actor="guard-7").matched is True
        assert service.record_scan(started, "B9", actor="guard-7").matched is False
        service.set_seal_status(started, "A2", "TAMPERED", "wire cut", ["img://e1"], actor="guard-7")
        service.toggle_field(started, "driverName", actor="guard-7")
        db.commit()

        summary = service.get_summary(started)
        assert (summary.total_seals, summary.scanned_seals, summary.unscanned_seals) == (3, 1, 2)

        result = service.complete_verification(started, "guard-7", expected_version=summary.version)
        db.commit()

        assert result.missing_marked == ["A3"]
        assert result.all_match is False
        assert result.record["sealStatuses"]["A1"]["status"] == "VERIFIED"
        assert result.record["sealStatuses"]["A2"]["status"] == "TAMPERED"
        assert result.record["sealStatuses"]["A3"]["status"] == "MISSING"
        assert result.record["fieldSummary"]["unverified"] == ["loadingPhotos", "vehicleNumber"]

        record = service.get_verification_record(started)
        assert record.record_digest == result.record_digest
        assert record.service_id == "test-verifier"
        assert (record.verified_count, record.tampered_count, record.missing_count) == (1, 1, 1)

        row = service.get_session(started)
        assert row.state == "COMPLETED"
        assert {e.seal_id: e.status for e in row.seal_statuses} == {
            "A1": "VERIFIED",
            "A2": "TAMPERED",
            "A3": "MISSING",
        }

    def test_duplicate_scan_reported(self, service, db, started):
        """The second submission returns duplicate=True and stores nothing."""
        service.record_scan(started, "A1")
        db.commit()
        result = service.record_scan(started, " a1")
        assert result.duplicate is True
        assert result.matched is True
        assert result.registry_id == "A1"
        assert result.error.code == VerificationErrorCode.DUPLICATE_SCAN
        assert len(db.execute(select(SealScan)).scalars().all()) == 1

    def test_remove_scan(self, service, db, started):
        """Undo returns the seal to UNSCANNED."""
        service.record_scan(started, "A1")
        db.commit()
        service.remove_scan(started, "A1")
        db.commit()
        _, state = service.get_session_state(started)
        assert state.seals.get("A1").status == SealState.UNSCANNED
        assert state.scans() == []

    def test_remove_scan_keeps_manual_verification(self, service, db, started):
        """Undoing the scan of a hand-verified seal keeps it VERIFIED across reloads."""
        service.set_seal_status(started, "A3", "VERIFIED", "checked by hand", actor="guard-2")
        db.commit()
        service.record_scan(started, "a3")
        db.commit()
        service.remove_scan(started, "A3")
        db.commit()
        _, state = service.get_session_state(started)
        record = state.seals.get("A3")
        assert record.status == SealState.VERIFIED
        assert record.comment == "checked by hand"
        assert record.scanned is False

        result = service.complete_verification(started, "guard-7")
        db.commit()
        assert "A3" not in result.missing_marked

    def test_repeated_missing_not_logged(self, service, db, started):
        """Marking an already MISSING seal MISSING again writes nothing."""
        service.set_seal_status(started, "A2", "MISSING", "not on the container")
        db.commit()
        _, state = service.get_session_state(started)
        version = state.version

        record = service.set_seal_status(started, "A2", "MISSING")
        db.commit()
        assert record.comment == "not on the container"
        _, state = service.get_session_state(started)
        assert state.version == version
        assert _activities(db, started).count("SEAL_STATUS_CHANGED") == 1

    def test_missing_evidence_rejected(self, service, db, started):
        """BROKEN without evidence raises and leaves the seal untouched."""
        with pytest.raises(VerificationException) as exc:
            service.set_seal_status(started, "A1", "BROKEN", "seal snapped", [])
        assert exc.value.code == VerificationErrorCode.MISSING_EVIDENCE
        db.rollback()
        _, state = service.get_session_state(started)
        assert state.seals.get("A1").status == SealState.UNSCANNED

    def test_annotate_divergent_value(self, service, db, started):
        """A differing guard value is persisted as a mismatch."""
        field = service.annotate_field(started, "vehicleNumber", comment="plate differs", guard_value="MH12XX0000")
        db.commit()
        assert field.matches is False
        row = service.get_session(started)
        entry = next(f for f in row.field_verifications if f.field_key == "vehicleNumber")
        assert entry.guard_value == "MH12XX0000"
        assert entry.matches is False


class TestFinalization:
    """Completed sessions are frozen."""

    def test_second_completion_rejected(self, service, db, started):
        """Second complete is INVALID_SESSION_STATE; one record exists."""
        service.complete_verification(started, "guard-7")
        db.commit()
        with pytest.raises(VerificationException) as exc:
            service.complete_verification(started, "guard-8")
        assert exc.value.code == VerificationErrorCode.INVALID_SESSION_STATE
        db.rollback()
        assert len(db.execute(select(VerificationRecord)).scalars().all()) == 1

    def test_mutation_after_completion(self, service, db, started):
        """Scans, overrides and field edits report SESSION_ALREADY_FINALIZED."""
        service.complete_verification(started, "guard-7")
        db.commit()
        for call in (
            lambda: service.record_scan(started, "A2"),
            lambda: service.set_seal_status(started, "A3", "VERIFIED"),
            lambda: service.verify_all_fields(started),
        ):
            with pytest.raises(VerificationException) as exc:
                call()
            assert exc.value.code == VerificationErrorCode.SESSION_ALREADY_FINALIZED
            db.rollback()

    def test_stale_version_rejected(self, service, db, started):
        """expected_version from an old summary is VERSION_CONFLICT."""
        stale = service.get_summary(started).version
        service.record_scan(started, "A1")
        db.commit()
        with pytest.raises(VerificationException) as exc:
            service.complete_verification(started, "guard-7", expected_version=stale)
        assert exc.value.code == VerificationErrorCode.VERSION_CONFLICT
        db.rollback()
        assert service.get_session(started).state == "IN_PROGRESS"

    def test_record_not_found_before_completion(self, service, started):
        """No record exists until completion."""
        with pytest.raises(VerificationException) as exc:
            service.get_verification_record(started)
        assert exc.value.code == VerificationErrorCode.RECORD_NOT_FOUND

    def test_activity_log(self, service, db, started):
        """Every accepted command appends one activity row."""
        service.record_scan(started, "A1")
        service.set_seal_status(started, "A2", "BROKEN", "snapped", ["img://2"])
        service.verify_all_fields(started)
        service.complete_verification(started, "guard-7")
        db.commit()
        assert _activities(db, started) == [
            "SESSION_CREATED",
            "VERIFICATION_STARTED",
            "SEAL_SCANNED",
            "SEAL_STATUS_CHANGED",
            "FIELDS_VERIFIED",
            "SEAL_STATUS_CHANGED",
            "VERIFICATION_COMPLETED",
        ]


class TestCollaboratorFailure:
    """Database outages map to COLLABORATOR_UNAVAILABLE."""

    def _broken_db(self):
        db = MagicMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        return db

    def test_read_is_retry_safe(self):
        """Reads may be retried."""
        service = VerificationService(self._broken_db())
        with pytest.raises(VerificationException) as exc:
            service.get_summary("any")
        assert exc.value.code == VerificationErrorCode.COLLABORATOR_UNAVAILABLE
        assert exc.value.error.details["retry_safe"] is True

    def test_complete_is_not_retry_safe(self):
        """Completion must be re-queried before any retry."""
        service = VerificationService(self._broken_db())
        with pytest.raises(VerificationException) as exc:
            service.complete_verification("any", "guard-7")
        assert exc.value.code == VerificationErrorCode.COLLABORATOR_UNAVAILABLE
        assert exc.value.error.details["retry_safe"] is False
