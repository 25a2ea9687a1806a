"""Engine fixtures (pure, no database)."""

import pytest

from sealguard.engine import (
    RegisteredSeal,
    SessionLifecycle,
    SessionSnapshot,
    SessionState,
    VerificationState,
    build_registry,
)


@pytest.fixture
def registry():
    return build_registry(RegisteredSeal(seal_id=s) for s in ["A1", "A2", "A3"])


@pytest.fixture
def lifecycle():
    return SessionLifecycle("trip-1", SessionState.IN_PROGRESS)


@pytest.fixture
def make_state():
    """Build a VerificationState; started unless `state` says otherwise."""

    def _make(
        seals=("A1", "A2", "A3"),
        fields=None,
        images=None,
        state=SessionState.IN_PROGRESS,
    ):
        snapshot = SessionSnapshot(
            session_id="trip-1",
            state=state,
            registered_seals=[RegisteredSeal(seal_id=s) for s in seals],
            declared_fields=dict(fields or {}),
            declared_images=dict(images or {}),
        )
        return VerificationState(snapshot)

    return _make
