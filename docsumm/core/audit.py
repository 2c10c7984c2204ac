from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsumm.db.models import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)

# payloads describe transitions, never the material being summarized
_CONTENT_KEYS = frozenset({"content", "original_content", "summary_text", "transcript", "prompt", "text"})


def _scrub(payload: Dict[str, Any]) -> Dict[str, Any]:
    dropped = sorted(k for k in payload if k in _CONTENT_KEYS)
    if dropped:
        logger.warning("audit payload keys dropped keys=%s", ",".join(dropped))
    return {k: v for k, v in payload.items() if k not in _CONTENT_KEYS}


async def write_audit_event(
    session: AsyncSession,
    *,
    summary_id: str,
    event_type: AuditEventType,
    payload: Dict[str, Any],
    job_id: str | None = None,
    commit: bool = False,
) -> None:
    """Stage an event row; by default it is committed with the caller's transition."""
    session.add(AuditEvent(summary_id=summary_id, job_id=job_id, event_type=event_type, payload=_scrub(payload)))
    if commit:
        await session.commit()


async def list_audit_events(session: AsyncSession, summary_id: str) -> List[AuditEvent]:
    res = await session.execute(
        select(AuditEvent).where(AuditEvent.summary_id == summary_id).order_by(AuditEvent.id.asc())
    )
    return list(res.scalars().all())
