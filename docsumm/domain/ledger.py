from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docsumm.core.audit import write_audit_event
from docsumm.db.models import AuditEventType, User, utcnow

logger = logging.getLogger(__name__)


async def get_or_create_user(session: AsyncSession, user_id: str, *, default_credits: int = 3) -> User:
    res = await session.execute(select(User).where(User.id == user_id))
    user = res.scalar_one_or_none()
    if user is not None:
        return user

    user = User(id=user_id, credits=default_credits)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # lost a create race; the other row wins
        await session.rollback()
        res = await session.execute(select(User).where(User.id == user_id))
        user = res.scalar_one()
    return user


async def get_balance(session: AsyncSession, user_id: str) -> int | None:
    res = await session.execute(
        select(User.credits).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def consume(session: AsyncSession, user_id: str) -> int | None:
    """Take one credit. Returns the new balance, or None when the user has none left."""
    res = await session.execute(
        update(User)
        .where(User.id == user_id, User.credits > 0)
        .values(credits=User.credits - 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await session.rollback()
        return None
    balance = await get_balance(session, user_id)
    await session.commit()
    return balance


async def refund(session: AsyncSession, user_id: str, *, summary_id: str | None = None) -> int | None:
    """Give one credit back. Returns the new balance, or None for an unknown user."""
    res = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=User.credits + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await session.rollback()
        logger.warning("refund skipped, unknown user user_id=%s", user_id)
        return None

    if summary_id is not None:
        await write_audit_event(
            session,
            summary_id=summary_id,
            event_type=AuditEventType.CREDIT_REFUNDED,
            payload={"user_id": user_id},
        )
    balance = await get_balance(session, user_id)
    await session.commit()
    return balance
