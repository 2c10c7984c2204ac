from typing import AsyncGenerator, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from docsumm.api.deps import get_settings, get_summarizer
from docsumm.core.config import Settings
from docsumm.db.base import Base
from docsumm.db.models import SourceType
from docsumm.db.session import create_engine_for, create_session_maker, get_session_maker, init_db
from docsumm.domain import ledger

USER_ID = "11111111-1111-1111-1111-111111111111"

SAMPLE_TEXT = (
    "The city council approved a new transit plan on Monday. "
    "The plan adds three bus lines and extends service hours. "
    "Funding comes from a regional infrastructure grant."
)

VALID_SUMMARY = """TL;DR
- The council approved a transit plan.
- Three bus lines are added.
- A regional grant pays for it.

Full Summary
The city council approved a transit plan that adds bus lines, funded by a grant."""


class FakeSummarizer:
    """Records calls; returns ``text`` or raises ``error``."""

    def __init__(self, text: str = VALID_SUMMARY, error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[tuple[SourceType, str, str]] = []

    async def summarize(self, source_type: SourceType, content: str, *, request_id: str = "-") -> str:
        self.calls.append((source_type, content, request_id))
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as s:
        yield s


@pytest.fixture
async def user_id(session) -> str:
    await ledger.get_or_create_user(session, USER_ID, default_credits=3)
    return USER_ID


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        worker_secret=None,
        auth_enabled=False,
        default_credits=3,
        job_retry_backoff_s=0,
        auto_trigger_worker=False,
    )


@pytest.fixture
def fake_summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def client(tmp_path, test_settings, fake_summarizer) -> Generator[TestClient, None, None]:
    from docsumm.main import create_app

    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # each request runs on its own loop, so connections are never pooled across them
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    maker = create_session_maker(engine)

    app = create_app()
    app.dependency_overrides[get_session_maker] = lambda: maker
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_summarizer] = lambda: fake_summarizer

    yield TestClient(app)
