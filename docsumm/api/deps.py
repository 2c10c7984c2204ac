from __future__ import annotations

import secrets
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsumm.core.config import Settings, settings
from docsumm.db.session import get_session_maker
from docsumm.domain import ledger
from docsumm.runtime.summarizer import Summarizer


def get_settings() -> Settings:
    return settings


async def get_db(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> AsyncIterator[AsyncSession]:
    async with session_maker() as session:
        yield session


@lru_cache(maxsize=1)
def _default_summarizer() -> Summarizer:
    return Summarizer.from_settings(settings)


def get_summarizer() -> Summarizer:
    return _default_summarizer()


async def get_current_user_id(
    x_user_id: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_db),
) -> str:
    user_id = (x_user_id or "").strip()

    if cfg.auth_enabled:
        # identity comes from the upstream auth layer; accounts are not created here
        if not user_id or await ledger.get_balance(session, user_id) is None:
            raise HTTPException(status_code=401, detail="unauthorized")
        return user_id

    user_id = user_id or cfg.guest_user_id
    await ledger.get_or_create_user(session, user_id, default_credits=cfg.default_credits)
    return user_id


def verify_worker_secret(
    x_worker_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
) -> None:
    expected = (cfg.worker_secret or "").strip()
    if not expected:
        return

    provided = x_worker_secret
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized worker request")
