"""Institute-scope authorization for callable entry points."""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.errors import InvalidInputError, UnauthenticatedError, UnauthorizedError
from app.core.security import SessionClaims
from app.db.models import Teacher
from app.db.repositories import TeacherRepository

logger = logging.getLogger(__name__)


def parse_uuid(value: str | UUID | None, field: str) -> UUID:
    if isinstance(value, UUID):
        return value
    if not value:
        raise InvalidInputError(f"{field} is required")
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidInputError(f"{field} is not a valid id") from None


def require_teacher(db: Session, caller: SessionClaims | None) -> Teacher:
    """Resolve the calling teacher; parents never hold institute scope."""
    if caller is None:
        raise UnauthenticatedError("Must be authenticated")
    if caller.is_parent:
        raise UnauthorizedError("Not authorized")
    try:
        teacher_id = UUID(caller.subject)
    except ValueError:
        raise UnauthorizedError("Not authorized") from None
    teacher = TeacherRepository(db).get(teacher_id)
    if teacher is None:
        raise UnauthorizedError("Not authorized")
    return teacher


def require_institute_access(db: Session, caller: SessionClaims | None, institute_id: UUID) -> Teacher:
    """Return the caller's teacher row if it belongs to *institute_id*."""
    teacher = require_teacher(db, caller)
    if teacher.institute_id != institute_id:
        logger.warning("Institute scope mismatch for teacher %s", teacher.id)
        raise UnauthorizedError("Not authorized for this institute")
    return teacher
