"""
registry.py - Operator-declared seal tags for one session.

The registry is a frozen snapshot: it is built once when verification
starts and never mutated by the engine afterwards.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional

from .states import CaptureMethod


@dataclass(frozen=True)
class RegisteredSeal:
    """A seal tag declared by the operator at loading time."""
    seal_id: str
    method: CaptureMethod = CaptureMethod.MANUAL
    image_ref: Optional[str] = None
    registered_at: Optional[datetime] = None


class SealRegistry:
    """Ordered, immutable sequence of registered seals."""

    def __init__(self, seals: Iterable[RegisteredSeal]):
        self._seals = tuple(seals)
        self._by_id = {seal.seal_id: seal for seal in self._seals}

    def __iter__(self) -> Iterator[RegisteredSeal]:
        return iter(self._seals)

    def __len__(self) -> int:
        return len(self._seals)

    def __contains__(self, seal_id: object) -> bool:
        return seal_id in self._by_id

    def ids(self) -> list[str]:
        return [seal.seal_id for seal in self._seals]

    def get(self, seal_id: str) -> Optional[RegisteredSeal]:
        return self._by_id.get(seal_id)


def build_registry(seals: Iterable[RegisteredSeal]) -> SealRegistry:
    """
    Build a registry, rejecting identifiers that collide after normalization.

    Raises:
        ValueError: On an empty identifier or a normalized duplicate
    """
    # Local import: matcher depends on RegisteredSeal from this module
    from .matcher import normalize_identifier

    seen: dict[str, str] = {}
    accepted = []
    for seal in seals:
        key = normalize_identifier(seal.seal_id)
        if not key:
            raise ValueError("Seal identifier must not be empty")
        if key in seen:
            raise ValueError(
                f"Seal {seal.seal_id!r} duplicates registered seal {seen[key]!r}"
            )
        seen[key] = seal.seal_id
        accepted.append(seal)
    return SealRegistry(accepted)


def registered_seals(registry: SealRegistry) -> list[RegisteredSeal]:
    """Ordered registered seals of a session (read-only view)."""
    return list(registry)
