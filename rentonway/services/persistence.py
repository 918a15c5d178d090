from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import AuditLog
from services.errors import ConflictError


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def commit_changes(db: Session, conflict_message: str = "Record was modified by another request. Reload and retry.") -> None:
    """Commit the unit of work, mapping lost races to a conflict."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(conflict_message) from exc
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(conflict_message) from exc


def flush_changes(db: Session, conflict_message: str = "Record was modified by another request. Reload and retry.") -> None:
    try:
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(conflict_message) from exc
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(conflict_message) from exc
