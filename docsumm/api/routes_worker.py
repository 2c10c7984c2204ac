from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsumm.api.deps import get_settings, get_summarizer, verify_worker_secret
from docsumm.api.schemas_worker import WorkerBatchResponse
from docsumm.core.config import Settings
from docsumm.core.errors import extract_error_code
from docsumm.db.session import get_session_maker
from docsumm.runtime.summarizer import Summarizer
from docsumm.runtime.worker import run_worker_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["worker"], dependencies=[Depends(verify_worker_secret)])


@router.api_route("/summary-worker", methods=["GET", "POST"], response_model=WorkerBatchResponse)
async def summary_worker(
    cfg: Settings = Depends(get_settings),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    summarizer: Summarizer = Depends(get_summarizer),
):
    """Scheduler entry point: process one batch of queued summary jobs."""
    try:
        result = await run_worker_batch(
            session_maker,
            summarizer,
            batch_size=cfg.worker_batch_size,
            concurrency=cfg.worker_concurrency,
            max_attempts=cfg.job_max_attempts,
            backoff_s=cfg.job_retry_backoff_s,
        )
    except Exception as e:
        logger.exception("worker batch failed")
        return JSONResponse(status_code=500, content={"error": str(e), "code": extract_error_code(e)})
    return result.to_dict()
