from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsumm.core.errors import AppError, ErrorCode, extract_error_code, format_error_message
from docsumm.domain import job_queue, ledger
from docsumm.domain.job_queue import ClaimedJob
from docsumm.runtime.summarizer import Summarizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    completed: bool
    duration_ms: int
    error_code: Optional[str] = None
    credit_refunded: bool = False


@dataclass
class WorkerBatchResult:
    picked: int = 0
    completed: int = 0
    failed: int = 0
    avg_duration_ms: int = 0
    failure_codes: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_outcomes(cls, outcomes: Sequence[JobOutcome]) -> "WorkerBatchResult":
        codes = Counter(o.error_code for o in outcomes if not o.completed and o.error_code)
        durations = [o.duration_ms for o in outcomes]
        return cls(
            picked=len(outcomes),
            completed=sum(1 for o in outcomes if o.completed),
            failed=sum(1 for o in outcomes if not o.completed),
            avg_duration_ms=round(sum(durations) / len(durations)) if durations else 0,
            failure_codes=dict(codes),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "picked": self.picked,
            "completed": self.completed,
            "failed": self.failed,
            "avgDurationMs": self.avg_duration_ms,
            "failureCodes": self.failure_codes,
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _error_message(error: Exception) -> str:
    if isinstance(error, AppError):
        return error.message
    return str(error) or type(error).__name__


async def _refund_if_terminal(session: AsyncSession, result: job_queue.FailResult, job: ClaimedJob, request_id: str) -> bool:
    if not (result.terminal and result.applied and not result.canceled_by_user and result.owner_id):
        return False
    try:
        return await ledger.refund(session, result.owner_id, summary_id=job.summary_id) is not None
    except Exception:
        await session.rollback()
        logger.exception("credit refund failed request_id=%s user_id=%s", request_id, result.owner_id)
        return False


async def process_job(
    session: AsyncSession,
    summarizer: Summarizer,
    job: ClaimedJob,
    *,
    max_attempts: int = job_queue.DEFAULT_MAX_ATTEMPTS,
    backoff_s: int = job_queue.DEFAULT_RETRY_BACKOFF_S,
) -> JobOutcome:
    """Run one leased job to completion, retry or terminal failure."""
    started = time.monotonic()
    request_id = f"worker-{job.job_id}-{job.attempt_count}"

    if not await job_queue.mark_processing(session, job.summary_id):
        logger.info("job skipped request_id=%s summary_id=%s reason=summary-not-pending", request_id, job.summary_id)
        return JobOutcome(False, _elapsed_ms(started), ErrorCode.SUMMARY_CANCELED)

    try:
        text = await summarizer.summarize(job.source_type, job.original_content, request_id=request_id)
        applied = await job_queue.complete(session, summary_id=job.summary_id, job_id=job.job_id, text=text)
    except Exception as e:
        await session.rollback()
        code = extract_error_code(e)
        result = await job_queue.fail(
            session,
            summary_id=job.summary_id,
            job_id=job.job_id,
            attempt_count=job.attempt_count,
            error_message=format_error_message(code, _error_message(e)),
            max_attempts=job_queue.resolve_max_attempts(code, job.attempt_count, max_attempts),
            backoff_s=backoff_s,
        )

        refunded = await _refund_if_terminal(session, result, job, request_id)

        duration_ms = _elapsed_ms(started)
        logger.info(
            "job failed request_id=%s summary_id=%s duration_ms=%d code=%s terminal=%s canceled_by_user=%s refunded=%s",
            request_id,
            job.summary_id,
            duration_ms,
            code,
            result.terminal,
            result.canceled_by_user,
            refunded,
        )
        return JobOutcome(False, duration_ms, code, refunded)

    duration_ms = _elapsed_ms(started)
    if not applied:
        logger.info("job dropped after cancellation request_id=%s summary_id=%s", request_id, job.summary_id)
        return JobOutcome(False, duration_ms, ErrorCode.SUMMARY_CANCELED)

    logger.info("job completed request_id=%s summary_id=%s duration_ms=%d", request_id, job.summary_id, duration_ms)
    return JobOutcome(True, duration_ms)


async def _release_crashed_job(
    session_maker: async_sessionmaker[AsyncSession],
    job: ClaimedJob,
    error: Exception,
    started: float,
    *,
    max_attempts: int,
    backoff_s: int,
) -> JobOutcome:
    """Record a failure for a job whose processing raised, so its lease is not left behind."""
    request_id = f"worker-{job.job_id}-{job.attempt_count}"
    code = extract_error_code(error)
    logger.exception("job crashed request_id=%s summary_id=%s code=%s", request_id, job.summary_id, code)

    refunded = False
    try:
        async with session_maker() as session:
            result = await job_queue.fail(
                session,
                summary_id=job.summary_id,
                job_id=job.job_id,
                attempt_count=job.attempt_count,
                error_message=format_error_message(code, _error_message(error)),
                max_attempts=job_queue.resolve_max_attempts(code, job.attempt_count, max_attempts),
                backoff_s=backoff_s,
            )
            refunded = await _refund_if_terminal(session, result, job, request_id)
    except Exception:
        logger.exception("could not release crashed job request_id=%s summary_id=%s", request_id, job.summary_id)
    return JobOutcome(False, _elapsed_ms(started), code, refunded)


async def run_worker_batch(
    session_maker: async_sessionmaker[AsyncSession],
    summarizer: Summarizer,
    *,
    batch_size: int = 5,
    concurrency: int = 1,
    max_attempts: int = job_queue.DEFAULT_MAX_ATTEMPTS,
    backoff_s: int = job_queue.DEFAULT_RETRY_BACKOFF_S,
) -> WorkerBatchResult:
    """Claim one batch and process it; jobs run concurrently up to ``concurrency``."""
    async with session_maker() as session:
        jobs = await job_queue.claim(session, limit=batch_size)

    if not jobs:
        return WorkerBatchResult()

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(job: ClaimedJob) -> JobOutcome:
        async with semaphore:
            started = time.monotonic()
            try:
                async with session_maker() as job_session:
                    return await process_job(
                        job_session, summarizer, job, max_attempts=max_attempts, backoff_s=backoff_s
                    )
            except Exception as e:
                return await _release_crashed_job(
                    session_maker, job, e, started, max_attempts=max_attempts, backoff_s=backoff_s
                )

    outcomes = await asyncio.gather(*(_run(job) for job in jobs))
    result = WorkerBatchResult.from_outcomes(outcomes)
    logger.info(
        "worker batch done picked=%d completed=%d failed=%d refunded=%d avg_duration_ms=%d",
        result.picked,
        result.completed,
        result.failed,
        sum(1 for o in outcomes if o.credit_refunded),
        result.avg_duration_ms,
    )
    return result
