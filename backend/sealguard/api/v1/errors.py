"""
errors.py - HTTP mapping for verification rejections.

RESPONSE CODES:
- 400 Bad Request: MISSING_EVIDENCE, INVALID_STATUS, malformed input
- 404 Not Found: unknown session, seal, field, scan or record
- 409 Conflict: DUPLICATE_SCAN, ILLEGAL_TRANSITION, every STATE error
- 503 Service Unavailable: COLLABORATOR_UNAVAILABLE
- 500 Internal Server Error: anything else
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session as DBSession

from sealguard.engine import (
    ErrorKind,
    VerificationError,
    VerificationErrorCode,
    VerificationException,
)
from sealguard.engine.errors import collaborator_unavailable

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    VerificationErrorCode.MISSING_EVIDENCE: status.HTTP_400_BAD_REQUEST,
    VerificationErrorCode.INVALID_STATUS: status.HTTP_400_BAD_REQUEST,
    VerificationErrorCode.DUPLICATE_SCAN: status.HTTP_409_CONFLICT,
    VerificationErrorCode.ILLEGAL_TRANSITION: status.HTTP_409_CONFLICT,
}

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STATE: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.COLLABORATOR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: VerificationError) -> int:
    return _STATUS_BY_CODE.get(error.code) or _STATUS_BY_KIND[error.kind]


def rejection_body(error: VerificationError) -> dict:
    return {"status": "rejected", **error.to_dict()}


def rejection(error: VerificationError) -> HTTPException:
    return HTTPException(status_code=status_for(error), detail=rejection_body(error))


@contextmanager
def command(db: DBSession, operation: str) -> Iterator[None]:
    """
    Run one service call as a transaction.

    Commits when the block succeeds, rolls back and raises the mapped
    HTTPException otherwise.
    """
    try:
        yield
        db.commit()

    except HTTPException:
        db.rollback()
        raise

    except VerificationException as e:
        db.rollback()
        logger.warning("%s rejected: %s - %s", operation, e.error.code.value, e.error.message)
        raise rejection(e.error)

    except (OperationalError, InterfaceError) as e:
        # Commit itself failed; for completion the outcome is unknown
        db.rollback()
        logger.error("%s failed, store unavailable: %s", operation, str(e))
        raise rejection(collaborator_unavailable(operation, type(e).__name__))

    except ValueError as e:
        db.rollback()
        logger.warning("%s bad request: %s", operation, str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "status": "rejected",
                "code": "INVALID_INPUT",
                "kind": ErrorKind.VALIDATION.value,
                "message": str(e),
                "details": {},
            },
        )

    except Exception as e:
        db.rollback()
        logger.exception("%s internal error: %s", operation, str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "status": "error",
                "code": "INTERNAL_ERROR",
                "message": f"Internal server error during {operation}",
            },
        )
