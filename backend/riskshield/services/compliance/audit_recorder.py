"""
Audit Recorder

Append-only log of every state transition and dispatch outcome.

Core Principles:
1. The log records what happened. It never decides. It never edits history.
2. Append-only - no updates or deletes. User references are nulled, not
   cascaded, when a user is removed.
3. Best-effort secondary: a failed write is logged and reported to the
   caller, but the primary transition that triggered it stands.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import AuditLogDB, utcnow


logger = logging.getLogger(__name__)


class AuditRecorder:
    """
    Writes and reads the company audit log.

    Writes happen inside a SAVEPOINT so a failing insert cannot poison the
    caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # WRITE
    # =========================================================================

    def record(
        self,
        company_id: Optional[str],
        user_id: Optional[str],
        entity_type: str,
        entity_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[AuditLogDB]:
        """
        Append one audit entry.

        Returns the entry, or None when the write failed. A failure is
        logged at ERROR and never raised.
        """
        entry = AuditLogDB(
            id=str(uuid4()),
            company_id=company_id,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            details=details or {},
            created_at=created_at or utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
                self.db.flush()
        except SQLAlchemyError:
            logger.exception(
                f"Audit write failed: {entity_type}/{entity_id} action={action} company={company_id}"
            )
            return None
        return entry

    def anonymize_user(self, user_id: str) -> int:
        """
        Null the user reference on every entry written by `user_id`.
        Called before a user row is removed so history survives.
        """
        result = self.db.execute(
            update(AuditLogDB)
            .where(AuditLogDB.user_id == user_id)
            .values(user_id=None)
        )
        return result.rowcount or 0

    # =========================================================================
    # READ
    # =========================================================================

    def list_for_company(
        self,
        company_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Newest-first page of a company's log with optional filters."""
        query = self.db.query(AuditLogDB).filter(AuditLogDB.company_id == company_id)
        if entity_type:
            query = query.filter(AuditLogDB.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditLogDB.entity_id == entity_id)
        if action:
            query = query.filter(AuditLogDB.action == action)

        total = query.count()
        logs = (
            query.order_by(AuditLogDB.created_at.desc(), AuditLogDB.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {"logs": logs, "total": total, "limit": limit, "offset": offset}

    def trail_for_entity(self, entity_type: str, entity_id: str) -> List[AuditLogDB]:
        """Chronological history of one entity."""
        return (
            self.db.query(AuditLogDB)
            .filter(
                AuditLogDB.entity_type == entity_type,
                AuditLogDB.entity_id == str(entity_id),
            )
            .order_by(AuditLogDB.created_at.asc())
            .all()
        )

    def list_for_user(self, user_id: str, limit: int = 100) -> List[AuditLogDB]:
        return (
            self.db.query(AuditLogDB)
            .filter(AuditLogDB.user_id == user_id)
            .order_by(AuditLogDB.created_at.desc())
            .limit(limit)
            .all()
        )


def serialize_audit_entry(entry: AuditLogDB) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "company_id": entry.company_id,
        "user_id": entry.user_id,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "details": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
