"""
Audit logging for admin actions.
Writes append-only AuditLog entries; merges are never silent.
"""

from datetime import datetime, timezone
from typing import Optional, Any
from uuid import uuid4

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.api.db.models import AuditLog


class AuditLogger:
    """Append-only audit logger bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        actor_id: str,
        action: str,
        target_type: str,
        target_id: str,
        ip_address: str,
        user_agent: str,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Write an audit log entry and commit it.

        Args:
            actor_id: ID of the admin performing the action
            action: '{entity type}.{verb}', e.g. 'venues.merge'
            target_type: entity type tag ('venues', 'events', ...)
            target_id: ID of the surviving/affected record
            before: state before the action, JSON-serialisable
            after: state after the action, JSON-serialisable

        Returns:
            ID of the created audit log entry
        """
        entry_id = str(uuid4())
        stmt = insert(AuditLog).values(
            id=entry_id,
            actorId=actor_id,
            action=action,
            targetType=target_type,
            targetId=target_id,
            before=before,
            after=after,
            ipAddress=ip_address,
            userAgent=user_agent,
            createdAt=datetime.now(timezone.utc),
        )
        await self.session.execute(stmt)
        await self.session.commit()
        return entry_id


def extract_client_info(request) -> tuple[str, str]:
    """(ip_address, user_agent) for a FastAPI request."""
    # X-Admin-Client-IP is set by the authenticating proxy, then
    # X-Forwarded-For, then the socket peer
    ip_address = request.headers.get("X-Admin-Client-IP", "").strip()
    if not ip_address:
        ip_address = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not ip_address:
        ip_address = request.client.host if request.client else "unknown"

    user_agent = request.headers.get("User-Agent", "unknown")

    return ip_address, user_agent


async def audit_action(
    db: AsyncSession,
    request,
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    before: Optional[dict[str, Any]] = None,
    after: Optional[dict[str, Any]] = None,
) -> str:
    """Log an admin action, taking IP and user agent from the request."""
    audit_logger = AuditLogger(db)
    ip_address, user_agent = extract_client_info(request)

    return await audit_logger.log(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        ip_address=ip_address,
        user_agent=user_agent,
        before=before,
        after=after,
    )
