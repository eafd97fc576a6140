"""Audit logging for admin and lifecycle actions."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.database import Base, session_scope
from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)


class AuditLog(Base):
    """Persistent audit log entry."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    timestamp = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False, index=True)
    actor_id = Column(String(128), nullable=False, index=True)
    actor_type = Column(String(16), nullable=False, default="system")
    action = Column(String(256), nullable=False, index=True)
    module = Column(String(128), nullable=False)
    entity_type = Column(String(64), nullable=True)
    entity_id = Column(String(64), nullable=True, index=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    status = Column(String(32), default="success")


async def log_action(
    actor_id: str,
    action: str,
    module: str,
    details: Optional[dict[str, Any]] = None,
    actor_type: str = "system",
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    status: str = "success",
    session: Optional[AsyncSession] = None,
) -> None:
    """Write an audit log entry, inside ``session`` when one is given."""
    entry = AuditLog(
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        module=module,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        ip_address=ip_address,
        status=status,
    )
    try:
        async with session_scope(session) as s:
            s.add(entry)
        logger.debug("audit_logged", action=action, actor_id=actor_id, module=module)
    except Exception as exc:
        logger.error("audit_log_failed", action=action, error=str(exc))


async def list_audit_entries(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    session: Optional[AsyncSession] = None,
) -> list[AuditLog]:
    """Return the newest audit entries, optionally for one entity."""
    stmt = select(AuditLog).order_by(AuditLog.timestamp.desc()).limit(limit)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    async with session_scope(session) as s:
        result = await s.execute(stmt)
        return list(result.scalars().all())
