from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsumm.api.deps import get_current_user_id, get_db, get_settings, get_summarizer
from docsumm.api.schemas_events import AuditEventResponse
from docsumm.api.schemas_summaries import SummaryCreateRequest, SummaryCreateResponse, SummaryResponse
from docsumm.core.audit import list_audit_events
from docsumm.core.config import Settings
from docsumm.core.errors import AppError, ErrorCode, to_user_message
from docsumm.db.models import SummaryRequest
from docsumm.db.session import get_session_maker
from docsumm.domain import job_queue, ledger
from docsumm.domain.submission import validate_submission
from docsumm.runtime.summarizer import Summarizer
from docsumm.runtime.worker import run_worker_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/summaries", tags=["summaries"])

_DEFAULT_FAILURE_MESSAGE = "The summary could not be completed. Please try again."


def _to_response(summary: SummaryRequest) -> SummaryResponse:
    resp = SummaryResponse.model_validate(summary)
    if summary.error_message:
        resp.error_message = to_user_message(summary.error_message, _DEFAULT_FAILURE_MESSAGE)
    return resp


async def _get_owned(session: AsyncSession, summary_id: str, user_id: str) -> SummaryRequest:
    summary = await job_queue.get_summary(session, summary_id, user_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="summary not found")
    return summary


@router.post("", response_model=SummaryCreateResponse, status_code=202)
async def create_summary(
    req: SummaryCreateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
    cfg: Settings = Depends(get_settings),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    summarizer: Summarizer = Depends(get_summarizer),
):
    content = validate_submission(req.source_type, req.content)

    remaining = await ledger.consume(session, user_id)
    if remaining is None:
        raise AppError("not enough credits", ErrorCode.INSUFFICIENT_CREDITS, 402)

    try:
        summary = await job_queue.create_summary(
            session, user_id=user_id, source_type=req.source_type, original_content=content
        )
    except Exception:
        await session.rollback()
        await ledger.refund(session, user_id)
        logger.exception("summary creation failed, credit refunded user_id=%s", user_id)
        raise

    if cfg.auto_trigger_worker:
        background_tasks.add_task(
            run_worker_batch,
            session_maker,
            summarizer,
            batch_size=cfg.worker_batch_size,
            concurrency=cfg.worker_concurrency,
            max_attempts=cfg.job_max_attempts,
            backoff_s=cfg.job_retry_backoff_s,
        )

    return SummaryCreateResponse(
        id=summary.id,
        status=summary.status,
        summary=_to_response(summary),
        remaining_credits=remaining,
    )


@router.get("/{summary_id}", response_model=SummaryResponse)
async def get_summary(
    summary_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    return _to_response(await _get_owned(session, summary_id, user_id))


@router.post("/{summary_id}/cancel", response_model=SummaryResponse)
async def cancel_summary(
    summary_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    summary = await job_queue.cancel(session, summary_id=summary_id, owner_id=user_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="summary not found")
    return _to_response(summary)


@router.get("/{summary_id}/events", response_model=list[AuditEventResponse])
async def get_summary_events(
    summary_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
):
    await _get_owned(session, summary_id, user_id)
    events = await list_audit_events(session, summary_id)
    return [AuditEventResponse.model_validate(e, from_attributes=True) for e in events]
