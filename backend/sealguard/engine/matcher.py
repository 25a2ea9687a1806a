"""
matcher.py - Seal identifier normalization and matching.

normalize_identifier() is the ONLY definition of "same seal" in the engine.
Scan matching, duplicate detection and the final reconciliation table all
go through it.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .registry import RegisteredSeal


def normalize_identifier(raw: str) -> str:
    """Trim surrounding whitespace and compare case-insensitively."""
    return raw.strip().lower()


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one observed identifier."""
    matched: bool
    registry_id: Optional[str] = None


def match(observed_id: str, registry: Iterable[RegisteredSeal]) -> MatchResult:
    """
    Match a guard-observed identifier against the registered seals.

    Matched iff exactly one registry entry normalizes to the same value. Two
    registry entries that collide after normalization make the tag ambiguous,
    which is reported as unmatched.

    Args:
        observed_id: Raw identifier as typed or decoded by the guard
        registry: Registered seals (any iterable, order irrelevant)

    Returns:
        MatchResult with the registry identifier of the matching seal
    """
    wanted = normalize_identifier(observed_id)
    if not wanted:
        return MatchResult(matched=False)

    hits = [seal for seal in registry if normalize_identifier(seal.seal_id) == wanted]
    if len(hits) != 1:
        return MatchResult(matched=False)
    return MatchResult(matched=True, registry_id=hits[0].seal_id)
