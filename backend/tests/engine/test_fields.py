"""
test_fields.py - Field verification comparator and partition.
"""

import pytest

from sealguard.engine import (
    FieldGroup,
    FieldVerification,
    FieldVerificationComparator,
    SessionLifecycle,
    SessionState,
    VerificationErrorCode,
    VerificationException,
    build_declared_fields,
    partition_fields,
)


@pytest.fixture
def comparator(lifecycle):
    fields = build_declared_fields(
        {"vehicleNumber": "MH12AB1234", "driverName": "R. Patil", "grossWeight": 18250},
        {"loadingPhotos": "img://set-1"},
    )
    return FieldVerificationComparator(lifecycle, fields)


class TestPartition:
    """partition_fields() classification."""

    def test_three_way_split(self):
        """Verified+matching, verified+diverging and unverified are separated."""
        fields = [
            FieldVerification("a", 1, 1, is_verified=True, matches=True),
            FieldVerification("b", 1, 2, is_verified=True, matches=False),
            FieldVerification("c", 1, 1, is_verified=False, matches=True),
        ]
        partition = partition_fields(fields)
        assert partition.matches == ("a",)
        assert partition.mismatches == ("b",)
        assert partition.unverified == ("c",)
        assert partition.all_match is False

    def test_unverified_never_counts_as_match(self):
        """matches=True is irrelevant while the field is unverified."""
        partition = partition_fields([FieldVerification("x", "v", "v", matches=True)])
        assert partition.matches == ()
        assert partition.unverified == ("x",)

    def test_order_independent(self):
        """Input order does not change the result."""
        fields = [
            FieldVerification("z", 1, 1, is_verified=True),
            FieldVerification("m", 1, 1, is_verified=True),
        ]
        assert partition_fields(fields) == partition_fields(list(reversed(fields)))

    def test_empty_is_all_match(self):
        """No declared fields means nothing can fail."""
        assert partition_fields([]).all_match is True


class TestComparator:
    """Guard commands on declared fields."""

    def test_declared_fields_start_unverified(self, comparator):
        """Every declared field and image group starts unverified, guard value = operator value."""
        records = {f.key: f for f in comparator.records()}
        assert set(records) == {"vehicleNumber", "driverName", "grossWeight", "loadingPhotos"}
        assert all(not f.is_verified for f in records.values())
        assert records["grossWeight"].guard_value == 18250
        assert records["loadingPhotos"].group == FieldGroup.IMAGE

    def test_toggle_flips_verified(self, comparator):
        """Toggle twice returns to unverified; matches stays True."""
        assert comparator.toggle_verified("driverName").is_verified is True
        field = comparator.toggle_verified("driverName")
        assert field.is_verified is False
        assert field.matches is True

    def test_verify_all(self, comparator):
        """Every declared field becomes verified and matching."""
        comparator.annotate("grossWeight", guard_value=17000)
        comparator.verify_all()
        partition = comparator.partition()
        assert partition.all_match is True
        assert comparator.get("grossWeight").guard_value == 18250
        assert len(comparator.records()) == 4

    def test_divergent_guard_value_is_mismatch(self, comparator):
        """A different observed value verifies the field as a mismatch."""
        field = comparator.annotate("vehicleNumber", comment="plate differs", guard_value="MH12AB9999")
        assert field.is_verified is True
        assert field.matches is False
        assert comparator.partition().mismatches == ("vehicleNumber",)

    def test_guard_value_compared_normalized(self, comparator):
        """Case and surrounding whitespace are not a divergence."""
        field = comparator.annotate("vehicleNumber", guard_value=" mh12ab1234 ")
        assert field.matches is True

    def test_comment_only_does_not_verify(self, comparator):
        """A comment alone leaves verification state alone."""
        field = comparator.annotate("driverName", comment="  licence checked ")
        assert field.comment == "licence checked"
        assert field.is_verified is False

    def test_unknown_field(self, comparator):
        """Keys outside the declared set are UNKNOWN_FIELD."""
        with pytest.raises(VerificationException) as exc:
            comparator.toggle_verified("trailerNumber")
        assert exc.value.code == VerificationErrorCode.UNKNOWN_FIELD

    def test_edits_rejected_after_completion(self, comparator, lifecycle):
        """Field edits stop once the session is COMPLETED."""
        lifecycle.transition(SessionState.COMPLETED)
        with pytest.raises(VerificationException) as exc:
            comparator.verify_all()
        assert exc.value.code == VerificationErrorCode.SESSION_ALREADY_FINALIZED
        assert comparator.partition().matches == ()

    def test_edits_rejected_before_start(self):
        """Field edits need an IN_PROGRESS session."""
        comparator = FieldVerificationComparator(
            SessionLifecycle("s1"), build_declared_fields({"a": 1})
        )
        with pytest.raises(VerificationException) as exc:
            comparator.toggle_verified("a")
        assert exc.value.code == VerificationErrorCode.INVALID_SESSION_STATE


class TestDeclaredFields:
    def test_image_key_collision(self):
        """An image group may not reuse a field key."""
        with pytest.raises(ValueError):
            build_declared_fields({"front": "x"}, {"front": "img://1"})
