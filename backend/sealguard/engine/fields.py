"""
fields.py - Field Verification Comparator.

The guard attests to each operator-declared field (trip details, driver
details, image groups). A field starts UNVERIFIED; the guard's action makes
it VERIFIED with `matches` defaulting to True. `matches` only becomes False
when the guard records a divergent value.

partition_fields() is the single classification used for live display, the
finalized record and tests.
"""

from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional

from .errors import VerificationException, unknown_field
from .lifecycle import SessionLifecycle
from .matcher import normalize_identifier
from .states import FieldGroup

UNSET = object()


@dataclass(frozen=True)
class FieldVerification:
    """Guard attestation of one declared field."""
    key: str
    operator_value: Any
    guard_value: Any
    group: FieldGroup = FieldGroup.TRIP
    is_verified: bool = False
    matches: bool = True
    comment: Optional[str] = None


@dataclass(frozen=True)
class FieldPartition:
    """Three-way classification of field keys (each tuple sorted)."""
    matches: tuple[str, ...] = ()
    mismatches: tuple[str, ...] = ()
    unverified: tuple[str, ...] = ()

    @property
    def all_match(self) -> bool:
        return not self.mismatches and not self.unverified

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "matches": list(self.matches),
            "mismatches": list(self.mismatches),
            "unverified": list(self.unverified),
        }


def partition_fields(fields: Iterable[FieldVerification]) -> FieldPartition:
    """
    Classify fields into matches, mismatches and unverified.

    Unverified fields are never counted as matches, whatever their `matches`
    flag says. The result does not depend on input order.
    """
    matches, mismatches, unverified = [], [], []
    for field in fields:
        if not field.is_verified:
            unverified.append(field.key)
        elif field.matches:
            matches.append(field.key)
        else:
            mismatches.append(field.key)
    return FieldPartition(
        matches=tuple(sorted(matches)),
        mismatches=tuple(sorted(mismatches)),
        unverified=tuple(sorted(unverified)),
    )


def values_match(operator_value: Any, guard_value: Any) -> bool:
    """String values compare like seal identifiers; everything else by equality."""
    if isinstance(operator_value, str) and isinstance(guard_value, str):
        return normalize_identifier(operator_value) == normalize_identifier(guard_value)
    return operator_value == guard_value


def build_declared_fields(
    declared_fields: Mapping[str, Any],
    declared_images: Optional[Mapping[str, Any]] = None,
) -> list[FieldVerification]:
    """
    One unverified FieldVerification per declared field and image group.

    Raises:
        ValueError: If an image group reuses a field key
    """
    fields = [
        FieldVerification(key=key, operator_value=value, guard_value=value)
        for key, value in declared_fields.items()
    ]
    for key, value in (declared_images or {}).items():
        if key in declared_fields:
            raise ValueError(f"Image group {key!r} collides with a declared field")
        fields.append(
            FieldVerification(
                key=key, operator_value=value, guard_value=value, group=FieldGroup.IMAGE
            )
        )
    return fields


class FieldVerificationComparator:
    """Accumulates guard field attestations for one session."""

    def __init__(self, lifecycle: SessionLifecycle, fields: Iterable[FieldVerification]):
        self._lifecycle = lifecycle
        self._fields = {field.key: field for field in fields}

    def get(self, key: str) -> FieldVerification:
        field = self._fields.get(key)
        if field is None:
            raise VerificationException(unknown_field(key))
        return field

    def records(self) -> list[FieldVerification]:
        return list(self._fields.values())

    def partition(self) -> FieldPartition:
        return partition_fields(self._fields.values())

    def toggle_verified(self, key: str) -> FieldVerification:
        """Flip `is_verified` for one field. `matches` is left as it is."""
        self._lifecycle.require_active()
        current = self.get(key)
        updated = replace(current, is_verified=not current.is_verified)
        self._fields[key] = updated
        return updated

    def verify_all(self) -> list[FieldVerification]:
        """Accept every declared field as verified and matching."""
        self._lifecycle.require_active()
        for key, current in self._fields.items():
            self._fields[key] = replace(
                current,
                is_verified=True,
                matches=True,
                guard_value=current.operator_value,
            )
        return self.records()

    def annotate(self, key: str, comment: Optional[str] = None, guard_value: Any = UNSET) -> FieldVerification:
        """
        Record a guard comment and, optionally, the value the guard observed.

        Supplying `guard_value` counts as the guard acting on the field: it
        becomes verified and `matches` is recomputed against the operator value.
        """
        self._lifecycle.require_active()
        current = self.get(key)
        changes: dict[str, Any] = {}
        if comment is not None:
            changes["comment"] = comment.strip() or None
        if guard_value is not UNSET:
            changes["guard_value"] = guard_value
            changes["matches"] = values_match(current.operator_value, guard_value)
            changes["is_verified"] = True
        updated = replace(current, **changes)
        self._fields[key] = updated
        return updated
