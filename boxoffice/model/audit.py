from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .orm import AuditLog


def add_audit(session: AsyncSession, action: str, entity: str,
              entity_id: Optional[str] = None,
              organizer_id: Optional[str] = None,
              details: Optional[Dict[str, Any]] = None,
              at: Optional[float] = None) -> None:
    # joins the caller's unit of work; committed (or not) with it
    session.add(AuditLog(
        action=action,
        entity=entity,
        entity_id=entity_id,
        organizer_id=organizer_id,
        details=details or {},
        created_at=now_ts() if at is None else at,
    ))
