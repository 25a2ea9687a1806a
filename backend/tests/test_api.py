"""
Test API endpoints for session setup, scanning, status overrides and completion.
"""

from fastapi.testclient import TestClient

from sealguard.engine import VerificationException
from sealguard.engine.errors import duplicate_scan
from sealguard.main import app
from sealguard.services.verification import VerificationService

client = TestClient(app)


def _create_session(seals=("A1", "A2", "A3"), fields=None, start=True):
    response = client.post(
        "/api/v1/sessions",
        json={
            "source": "Pune Plant",
            "destination": "Nhava Sheva",
            "created_by": "operator-3",
            "seals": [{"seal_id": s} for s in seals],
            "declared_fields": fields or {"vehicleNumber": "MH12AB1234", "driverName": "R. Patil"},
            "declared_images": {"loadingPhotos": "img://set-1"},
        },
    )
    assert response.status_code == 201
    session_id = response.json()["session_id"]
    if start:
        started = client.post(f"/api/v1/sessions/{session_id}/start", json={"acting_user_id": "guard-7"})
        assert started.status_code == 200
    return session_id


class TestHealth:
    def test_health(self):
        """Health check answers ok."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestSessionAPI:
    """Session setup and lifecycle endpoints."""

    def test_create_session(self):
        """Creation returns a PENDING session with unverified fields."""
        response = client.post(
            "/api/v1/sessions",
            json={
                "source": "Pune",
                "destination": "Mumbai",
                "created_by": "operator-3",
                "seals": [{"seal_id": "S-1", "method": "digital", "image_ref": "img://s1"}],
                "declared_fields": {"vehicleNumber": "MH12AB1234"},
            },
        )
        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "PENDING"
        assert data["registered_seals"][0]["method"] == "digital"
        assert data["field_summary"]["unverified"] == ["vehicleNumber"]

    def test_duplicate_seal_registration_400(self):
        """Normalized duplicate tags are rejected at setup."""
        response = client.post(
            "/api/v1/sessions",
            json={
                "source": "Pune",
                "destination": "Mumbai",
                "created_by": "operator-3",
                "seals": [{"seal_id": "S-1"}, {"seal_id": " s-1 "}],
            },
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_INPUT"

    def test_register_seal_after_start_409(self):
        """The registry is frozen once verification starts."""
        session_id = _create_session()
        response = client.post(f"/api/v1/sessions/{session_id}/seals", json={"seal_id": "A4"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_SESSION_STATE"

    def test_start_twice_409(self):
        """A second start is an illegal transition."""
        session_id = _create_session()
        response = client.post(f"/api/v1/sessions/{session_id}/start")
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "ILLEGAL_TRANSITION"

    def test_unknown_session_404(self):
        """Unknown sessions are 404."""
        response = client.get("/api/v1/sessions/no-such-session")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "SESSION_NOT_FOUND"

    def test_pending_queue(self):
        """Started sessions are listed for guards."""
        session_id = _create_session()
        _create_session(start=False)
        response = client.get("/api/v1/sessions/pending")
        assert response.status_code == 200
        assert [s["session_id"] for s in response.json()] == [session_id]

    def test_seal_tag_check(self):
        """Tag check finds registered tags case-insensitively."""
        session_id = _create_session(seals=("TAG-77",), start=False)
        response = client.get("/api/v1/seal-tags/check", params={"tag": "tag-77"})
        assert response.status_code == 200
        assert response.json() == {"tag": "tag-77", "exists": True, "session_ids": [session_id]}


class TestScanAPI:
    """Scan ingestion."""

    def test_scan_matched_and_unmatched(self):
        """Matching and non-matching scans are both accepted."""
        session_id = _create_session()
        matched = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "a1 "})
        unmatched = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "B9"})
        assert matched.status_code == 201
        assert matched.json() == {"matched": True, "duplicate": False, "registry_id": "A1", "error": None}
        assert unmatched.status_code == 201
        assert unmatched.json()["matched"] is False

    def test_duplicate_scan_409(self):
        """Re-submitting a scan answers 409 with duplicate=true."""
        session_id = _create_session()
        client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "A1"})
        response = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": " a1"})
        assert response.status_code == 409
        data = response.json()
        assert data["duplicate"] is True
        assert data["registry_id"] == "A1"
        assert data["error"]["code"] == "DUPLICATE_SCAN"

    def test_duplicate_from_store_409(self, monkeypatch):
        """A duplicate caught by the unique scan constraint answers with the same body."""
        session_id = _create_session()

        def lost_race(self, session_id, identifier, **kwargs):
            raise VerificationException(duplicate_scan(identifier, True, "A1"))

        monkeypatch.setattr(VerificationService, "record_scan", lost_race)
        response = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "A1"})
        assert response.status_code == 409
        data = response.json()
        assert data["matched"] is True
        assert data["duplicate"] is True
        assert data["registry_id"] == "A1"
        assert data["error"]["code"] == "DUPLICATE_SCAN"
        assert "detail" not in data

    def test_blank_identifier_422(self):
        """Whitespace-only identifiers fail request validation."""
        session_id = _create_session()
        response = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "   "})
        assert response.status_code == 422

    def test_undo_scan(self):
        """Deleting a scan returns the seal to UNSCANNED."""
        session_id = _create_session()
        client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "A1"})
        response = client.delete(f"/api/v1/sessions/{session_id}/scans/a1")
        assert response.status_code == 200
        assert response.json()["registry_id"] == "A1"

        session = client.get(f"/api/v1/sessions/{session_id}").json()
        statuses = {s["seal_id"]: s["status"] for s in session["seal_statuses"]}
        assert statuses["A1"] == "UNSCANNED"
        assert session["scans"] == []

    def test_scan_pending_session_409(self):
        """Scans need an IN_PROGRESS session."""
        session_id = _create_session(start=False)
        response = client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "A1"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_SESSION_STATE"


class TestSealStatusAPI:
    """Guard status overrides."""

    def test_tampered_without_evidence_400(self):
        """Missing evidence is a 400 naming what is missing."""
        session_id = _create_session()
        response = client.patch(
            f"/api/v1/sessions/{session_id}/seals/A2/status",
            json={"status": "TAMPERED", "comment": "wire cut"},
        )
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "MISSING_EVIDENCE"
        assert detail["kind"] == "VALIDATION"
        assert detail["details"]["missing"] == ["evidence"]

    def test_tampered_with_evidence(self):
        """Comment plus evidence is accepted."""
        session_id = _create_session()
        response = client.patch(
            f"/api/v1/sessions/{session_id}/seals/A2/status",
            json={
                "status": "TAMPERED",
                "comment": "wire cut",
                "evidence_refs": ["img://e1"],
                "acting_user_id": "guard-7",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "TAMPERED"
        assert data["evidence_refs"] == ["img://e1"]
        assert data["acted_by"] == "guard-7"

    def test_invalid_status_400(self):
        """Statuses outside the closed set are 400."""
        session_id = _create_session()
        response = client.patch(f"/api/v1/sessions/{session_id}/seals/A1/status", json={"status": "UNSCANNED"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_STATUS"

    def test_unknown_seal_404(self):
        """Unregistered seals are 404."""
        session_id = _create_session()
        response = client.patch(f"/api/v1/sessions/{session_id}/seals/Z9/status", json={"status": "VERIFIED"})
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UNKNOWN_SEAL"


class TestFieldAPI:
    """Field verification."""

    def test_toggle_and_verify_all(self):
        """Toggle flips one field, verify-all verifies every field."""
        session_id = _create_session()
        toggled = client.post(f"/api/v1/sessions/{session_id}/fields/driverName/toggle")
        assert toggled.status_code == 200
        assert toggled.json()["is_verified"] is True

        response = client.post(f"/api/v1/sessions/{session_id}/fields/verify-all")
        assert response.status_code == 200
        assert all(f["is_verified"] and f["matches"] for f in response.json())

    def test_annotate_guard_value(self):
        """A divergent guard value is recorded as a mismatch."""
        session_id = _create_session()
        response = client.patch(
            f"/api/v1/sessions/{session_id}/fields/vehicleNumber",
            json={"comment": "plate differs", "guard_value": "MH12XX0000"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["matches"] is False
        assert data["guard_value"] == "MH12XX0000"

    def test_annotate_comment_only(self):
        """Without guard_value the field stays unverified."""
        session_id = _create_session()
        response = client.patch(
            f"/api/v1/sessions/{session_id}/fields/vehicleNumber", json={"comment": "checked later"}
        )
        assert response.status_code == 200
        assert response.json()["is_verified"] is False
        assert response.json()["guard_value"] == "MH12AB1234"

    def test_unknown_field_404(self):
        """Undeclared fields are 404."""
        session_id = _create_session()
        response = client.post(f"/api/v1/sessions/{session_id}/fields/trailer/toggle")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UNKNOWN_FIELD"


class TestCompletionAPI:
    """Summary, completion and record retrieval."""

    def test_full_flow(self):
        """a1 + B9 scanned, A2 TAMPERED, complete -> A3 MISSING."""
        session_id = _create_session()
        client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "a1 "})
        client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "B9"})
        client.patch(
            f"/api/v1/sessions/{session_id}/seals/A2/status",
            json={"status": "TAMPERED", "comment": "wire cut", "evidence_refs": ["img://e1"]},
        )
        client.post(f"/api/v1/sessions/{session_id}/fields/driverName/toggle")

        summary = client.get(f"/api/v1/sessions/{session_id}/summary").json()
        assert (summary["total_seals"], summary["scanned_seals"], summary["unscanned_seals"]) == (3, 1, 2)
        assert summary["will_mark_missing"] == ["A3"]

        response = client.post(
            f"/api/v1/sessions/{session_id}/complete",
            json={"acting_user_id": "guard-7", "expected_version": summary["version"]},
        )
        assert response.status_code == 200
        completed = response.json()
        assert completed["status"] == "completed"
        assert completed["missing_marked"] == ["A3"]
        assert completed["all_match"] is False

        record = client.get(f"/api/v1/sessions/{session_id}/verification").json()
        assert record["record_digest"] == completed["record_digest"]
        seals = record["record"]["sealStatuses"]
        assert {k: v["status"] for k, v in seals.items()} == {
            "A1": "VERIFIED",
            "A2": "TAMPERED",
            "A3": "MISSING",
        }
        assert record["record"]["fieldSummary"] == {
            "matches": ["driverName"],
            "mismatches": [],
            "unverified": ["loadingPhotos", "vehicleNumber"],
        }
        assert (record["verified_count"], record["tampered_count"], record["missing_count"]) == (1, 1, 1)

    def test_second_completion_409(self):
        """Completing twice is rejected."""
        session_id = _create_session()
        first = client.post(f"/api/v1/sessions/{session_id}/complete", json={"acting_user_id": "guard-7"})
        assert first.status_code == 200
        second = client.post(f"/api/v1/sessions/{session_id}/complete", json={"acting_user_id": "guard-7"})
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "INVALID_SESSION_STATE"

    def test_stale_version_409(self):
        """A stale expected_version is a VERSION_CONFLICT."""
        session_id = _create_session()
        version = client.get(f"/api/v1/sessions/{session_id}/summary").json()["version"]
        client.post(f"/api/v1/sessions/{session_id}/scans", json={"identifier": "A1"})
        response = client.post(
            f"/api/v1/sessions/{session_id}/complete",
            json={"acting_user_id": "guard-7", "expected_version": version},
        )
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "VERSION_CONFLICT"

    def test_status_change_after_completion_409(self):
        """Finalized sessions reject overrides."""
        session_id = _create_session()
        client.post(f"/api/v1/sessions/{session_id}/complete", json={"acting_user_id": "guard-7"})
        response = client.patch(f"/api/v1/sessions/{session_id}/seals/A1/status", json={"status": "VERIFIED"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "SESSION_ALREADY_FINALIZED"

    def test_record_before_completion_404(self):
        """No record until the session completes."""
        session_id = _create_session()
        response = client.get(f"/api/v1/sessions/{session_id}/verification")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "RECORD_NOT_FOUND"

    def test_complete_requires_acting_user(self):
        """acting_user_id is mandatory."""
        session_id = _create_session()
        response = client.post(f"/api/v1/sessions/{session_id}/complete", json={})
        assert response.status_code == 422
