"""
Verification service package.

Orchestrates the verification engine against the database.
"""

from .service import (
    CompletionResult,
    ScanResult,
    SealTagCheck,
    VerificationService,
)

__all__ = [
    "CompletionResult",
    "ScanResult",
    "SealTagCheck",
    "VerificationService",
]
