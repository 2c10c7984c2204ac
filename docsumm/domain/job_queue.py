from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docsumm.core.audit import write_audit_event
from docsumm.core.errors import ErrorCode, extract_error_code, format_error_message
from docsumm.db.models import (
    AuditEventType,
    JobStatus,
    SourceType,
    SummaryJob,
    SummaryRequest,
    SummaryStatus,
    utcnow,
)
from docsumm.domain.state_machine import TransitionError, ensure_transition_allowed, is_terminal, sources_for

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = format_error_message(ErrorCode.SUMMARY_CANCELED, "Summary canceled at user request.")
CANCELED_MARKER = f"[{ErrorCode.SUMMARY_CANCELED}]"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_S = 30

RETRYABLE_ERROR_CODES = frozenset(
    {
        ErrorCode.REQUEST_FAILED,
        ErrorCode.TIMEOUT,
        ErrorCode.UNKNOWN,
        ErrorCode.EMPTY_RESPONSE,
        ErrorCode.OUTPUT_INVALID,
    }
)

_ACTIVE_SUMMARY = [s for s in SummaryStatus if not is_terminal(s)]
_ACTIVE_JOB = [s for s in JobStatus if not is_terminal(s)]


@dataclass(frozen=True)
class ClaimedJob:
    job_id: str
    summary_id: str
    attempt_count: int
    source_type: SourceType
    original_content: str


@dataclass(frozen=True)
class FailResult:
    terminal: bool
    canceled_by_user: bool
    owner_id: str | None
    # False when the summary was already finalized by someone else
    applied: bool = True


def is_canceled_message(error_message: str | None) -> bool:
    return bool(error_message) and CANCELED_MARKER in error_message


def resolve_max_attempts(error_code: str, attempt_count: int, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> int:
    """Retryable codes get the full ceiling; anything else fails on this attempt."""
    return max_attempts if error_code in RETRYABLE_ERROR_CODES else attempt_count


def _not_canceled():
    return or_(
        SummaryRequest.error_message.is_(None),
        ~SummaryRequest.error_message.contains(CANCELED_MARKER, autoescape=True),
    )


async def _load_summary(session: AsyncSession, summary_id: str) -> SummaryRequest | None:
    res = await session.execute(
        select(SummaryRequest)
        .where(SummaryRequest.id == summary_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


# -----------------------
# creation / reads
# -----------------------

async def create_summary(
    session: AsyncSession,
    *,
    user_id: str | None,
    source_type: SourceType,
    original_content: str,
) -> SummaryRequest:
    """Create a pending summary and its queued job in one transaction."""
    now = utcnow()
    summary = SummaryRequest(
        user_id=user_id,
        source_type=source_type,
        original_content=original_content,
        status=SummaryStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    session.add(summary)
    await session.flush()

    job = SummaryJob(
        summary_id=summary.id,
        status=JobStatus.QUEUED,
        attempt_count=0,
        scheduled_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    await write_audit_event(
        session,
        summary_id=summary.id,
        job_id=job.id,
        event_type=AuditEventType.SUMMARY_CREATED,
        payload={"source_type": source_type.value, "content_chars": len(original_content)},
    )
    await session.commit()
    return summary


async def get_summary(session: AsyncSession, summary_id: str, user_id: str) -> SummaryRequest | None:
    summary = await _load_summary(session, summary_id)
    if summary is None or summary.user_id != user_id:
        return None
    return summary


async def get_job(session: AsyncSession, summary_id: str) -> SummaryJob | None:
    res = await session.execute(
        select(SummaryJob)
        .where(SummaryJob.summary_id == summary_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


# -----------------------
# lease lifecycle
# -----------------------

async def claim(session: AsyncSession, *, limit: int, now: datetime | None = None) -> list[ClaimedJob]:
    """Lease up to ``limit`` eligible jobs, oldest first.

    Candidates are selected with ``FOR UPDATE SKIP LOCKED`` where the backend
    supports it; each lease is then taken with a status-guarded update, so a
    row another claimer got first matches nothing and is skipped.
    """
    if limit <= 0:
        return []
    now = now or utcnow()

    candidates = await session.execute(
        select(SummaryJob.id)
        .join(SummaryRequest, SummaryRequest.id == SummaryJob.summary_id)
        .where(
            SummaryJob.status == JobStatus.QUEUED,
            SummaryJob.scheduled_at <= now,
            SummaryRequest.status == SummaryStatus.PENDING,
        )
        .order_by(SummaryJob.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True, of=SummaryJob)
    )
    candidate_ids = list(candidates.scalars().all())

    leased: list[str] = []
    for job_id in candidate_ids:
        res = await session.execute(
            update(SummaryJob)
            .where(
                SummaryJob.id == job_id,
                SummaryJob.status.in_(sources_for(JobStatus.PROCESSING)),
            )
            .values(
                status=JobStatus.PROCESSING,
                locked_at=now,
                updated_at=now,
                attempt_count=SummaryJob.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            leased.append(job_id)

    if not leased:
        await session.commit()
        return []

    rows = await session.execute(
        select(
            SummaryJob.id,
            SummaryJob.summary_id,
            SummaryJob.attempt_count,
            SummaryRequest.source_type,
            SummaryRequest.original_content,
        )
        .join(SummaryRequest, SummaryRequest.id == SummaryJob.summary_id)
        .where(SummaryJob.id.in_(leased))
        .order_by(SummaryJob.created_at.asc())
    )
    claimed = [
        ClaimedJob(
            job_id=row.id,
            summary_id=row.summary_id,
            attempt_count=row.attempt_count,
            source_type=row.source_type,
            original_content=row.original_content,
        )
        for row in rows
    ]

    for job in claimed:
        await write_audit_event(
            session,
            summary_id=job.summary_id,
            job_id=job.job_id,
            event_type=AuditEventType.JOB_CLAIMED,
            payload={"attempt": job.attempt_count},
        )
    await session.commit()
    return claimed


async def mark_processing(session: AsyncSession, summary_id: str) -> bool:
    """pending -> processing; False means the summary was canceled (or taken) meanwhile."""
    res = await session.execute(
        update(SummaryRequest)
        .where(
            SummaryRequest.id == summary_id,
            SummaryRequest.status.in_(sources_for(SummaryStatus.PROCESSING)),
        )
        .values(status=SummaryStatus.PROCESSING, error_message=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return res.rowcount == 1


async def complete(session: AsyncSession, *, summary_id: str, job_id: str, text: str) -> bool:
    now = utcnow()
    res = await session.execute(
        update(SummaryRequest)
        .where(
            SummaryRequest.id == summary_id,
            SummaryRequest.status.in_(sources_for(SummaryStatus.COMPLETED)),
        )
        .values(status=SummaryStatus.COMPLETED, summary_text=text, error_message=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    if res.rowcount != 1:
        await session.execute(
            update(SummaryJob)
            .where(SummaryJob.id == job_id)
            .values(status=JobStatus.FAILED, scheduled_at=now, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await write_audit_event(
            session,
            summary_id=summary_id,
            job_id=job_id,
            event_type=AuditEventType.JOB_DROPPED,
            payload={"reason": "summary_not_processing"},
        )
        await session.commit()
        logger.info("completion not applied summary_id=%s job_id=%s", summary_id, job_id)
        return False

    await session.execute(
        update(SummaryJob)
        .where(SummaryJob.id == job_id)
        .values(status=JobStatus.COMPLETED, locked_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await write_audit_event(
        session,
        summary_id=summary_id,
        job_id=job_id,
        event_type=AuditEventType.JOB_COMPLETED,
        payload={"summary_chars": len(text)},
    )
    await session.commit()
    return True


async def fail(
    session: AsyncSession,
    *,
    summary_id: str,
    job_id: str,
    attempt_count: int,
    error_message: str,
    max_attempts: int,
    backoff_s: int = DEFAULT_RETRY_BACKOFF_S,
) -> FailResult:
    """Decide retry vs terminal for a failed attempt.

    A user cancellation already recorded on the summary forces a terminal
    outcome and its message is kept as is.
    """
    now = utcnow()
    retry = attempt_count < max_attempts
    target = SummaryStatus.PENDING if retry else SummaryStatus.FAILED

    res = await session.execute(
        update(SummaryRequest)
        .where(
            SummaryRequest.id == summary_id,
            SummaryRequest.status.in_(_ACTIVE_SUMMARY),
            _not_canceled(),
        )
        .values(status=target, error_message=error_message, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    applied = res.rowcount == 1

    summary = await _load_summary(session, summary_id)
    if summary is None:
        await session.rollback()
        return FailResult(terminal=False, canceled_by_user=False, owner_id=None, applied=False)

    canceled = False
    if not applied:
        canceled = is_canceled_message(summary.error_message)
        retry = False

    job_target = JobStatus.QUEUED if retry else JobStatus.FAILED
    job = await session.get(SummaryJob, job_id, populate_existing=True)
    # a cancel may already have failed the job
    if job is not None and job.status != JobStatus.FAILED:
        try:
            ensure_transition_allowed(job.status, job_target)
        except TransitionError:
            await session.rollback()
            raise

    await session.execute(
        update(SummaryJob)
        .where(SummaryJob.id == job_id)
        .values(
            status=job_target,
            scheduled_at=now + timedelta(seconds=backoff_s) if retry else now,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await write_audit_event(
        session,
        summary_id=summary_id,
        job_id=job_id,
        event_type=AuditEventType.JOB_RETRY_SCHEDULED if retry else AuditEventType.JOB_FAILED,
        payload={
            "attempt": attempt_count,
            "max_attempts": max_attempts,
            "canceled_by_user": canceled,
            "error_code": _code_of(error_message),
        },
    )
    await session.commit()

    if not applied and not canceled:
        logger.warning(
            "failure not applied, summary already %s summary_id=%s job_id=%s",
            summary.status.value,
            summary_id,
            job_id,
        )

    return FailResult(
        terminal=not retry,
        canceled_by_user=canceled,
        owner_id=summary.user_id,
        applied=applied or canceled,
    )


async def cancel(session: AsyncSession, *, summary_id: str, owner_id: str) -> SummaryRequest | None:
    """Owner-only cancel; no-op on terminal summaries. Returns the current record."""
    now = utcnow()
    res = await session.execute(
        update(SummaryRequest)
        .where(
            SummaryRequest.id == summary_id,
            SummaryRequest.user_id == owner_id,
            SummaryRequest.status.in_(_ACTIVE_SUMMARY),
        )
        .values(status=SummaryStatus.FAILED, error_message=CANCELED_MESSAGE, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    if res.rowcount == 1:
        await session.execute(
            update(SummaryJob)
            .where(SummaryJob.summary_id == summary_id, SummaryJob.status.in_(_ACTIVE_JOB))
            .values(status=JobStatus.FAILED, scheduled_at=now, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await write_audit_event(
            session,
            summary_id=summary_id,
            event_type=AuditEventType.SUMMARY_CANCELED,
            payload={},
        )
    await session.commit()

    summary = await _load_summary(session, summary_id)
    if summary is None or summary.user_id != owner_id:
        return None
    return summary


def _code_of(error_message: str) -> str | None:
    code = extract_error_code(error_message, default="")
    return code or None
