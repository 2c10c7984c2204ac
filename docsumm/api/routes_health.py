from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from docsumm.api.deps import get_db

router = APIRouter(tags=["health"])


@router.get("/")
def root():
    return {"service": "docsumm", "version": "0.1.0"}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ready")
async def ready(session: AsyncSession = Depends(get_db)):
    await session.execute(text("SELECT 1"))
    return {"ready": True}
