from docsumm.core.audit import list_audit_events
from docsumm.core.errors import AppError, ErrorCode
from docsumm.db.models import AuditEventType, JobStatus, SourceType, SummaryStatus
from docsumm.domain import job_queue, ledger
from docsumm.runtime.worker import JobOutcome, WorkerBatchResult, process_job, run_worker_batch

from .conftest import SAMPLE_TEXT, VALID_SUMMARY, FakeSummarizer


async def _submit_paid(session, user_id):
    assert await ledger.consume(session, user_id) == 2
    return await job_queue.create_summary(
        session, user_id=user_id, source_type=SourceType.TEXT, original_content=SAMPLE_TEXT
    )


async def test_batch_completes_jobs(session_maker, session, user_id):
    summary = await _submit_paid(session, user_id)
    summarizer = FakeSummarizer()

    result = await run_worker_batch(session_maker, summarizer, batch_size=5, backoff_s=0)

    assert (result.picked, result.completed, result.failed) == (1, 1, 0)
    assert summarizer.calls[0][2] == f"worker-{(await job_queue.get_job(session, summary.id)).id}-1"

    current = await job_queue._load_summary(session, summary.id)
    assert current.status == SummaryStatus.COMPLETED
    assert current.summary_text == VALID_SUMMARY
    assert await ledger.get_balance(session, user_id) == 2


async def test_empty_queue_returns_zero_counts(session_maker):
    result = await run_worker_batch(session_maker, FakeSummarizer())
    assert result.to_dict() == {"picked": 0, "completed": 0, "failed": 0, "avgDurationMs": 0, "failureCodes": {}}


async def test_three_retryable_failures_refund_exactly_once(session_maker, session, user_id):
    summary = await _submit_paid(session, user_id)
    summarizer = FakeSummarizer(error=AppError("model overloaded", ErrorCode.REQUEST_FAILED, 502))

    results = [
        await run_worker_batch(session_maker, summarizer, max_attempts=3, backoff_s=0) for _ in range(4)
    ]

    assert [r.picked for r in results] == [1, 1, 1, 0]
    assert results[0].failure_codes == {ErrorCode.REQUEST_FAILED: 1}
    assert len(summarizer.calls) == 3

    current = await job_queue._load_summary(session, summary.id)
    assert current.status == SummaryStatus.FAILED
    assert current.error_message.startswith(f"[{ErrorCode.REQUEST_FAILED}]")
    assert current.original_content == SAMPLE_TEXT

    events = [e.event_type for e in await list_audit_events(session, summary.id)]
    assert events.count(AuditEventType.CREDIT_REFUNDED) == 1
    assert await ledger.get_balance(session, user_id) == 3


async def test_non_retryable_error_is_terminal_on_first_attempt(session_maker, session, user_id):
    summary = await _submit_paid(session, user_id)
    summarizer = FakeSummarizer(error=AppError("fallback broke", ErrorCode.FALLBACK_OUTPUT_INVALID, 500))

    result = await run_worker_batch(session_maker, summarizer, backoff_s=0)

    assert result.failure_codes == {ErrorCode.FALLBACK_OUTPUT_INVALID: 1}
    job = await job_queue.get_job(session, summary.id)
    assert job.status == JobStatus.FAILED
    assert job.attempt_count == 1
    assert await ledger.get_balance(session, user_id) == 3


async def test_cancellation_during_processing_is_not_refunded(session_maker, session, user_id):
    summary = await _submit_paid(session, user_id)

    class CancelingSummarizer(FakeSummarizer):
        async def summarize(self, source_type, content, *, request_id="-"):
            async with session_maker() as other:
                await job_queue.cancel(other, summary_id=summary.id, owner_id=user_id)
            return await super().summarize(source_type, content, request_id=request_id)

    result = await run_worker_batch(session_maker, CancelingSummarizer(), backoff_s=0)

    assert result.failure_codes == {ErrorCode.SUMMARY_CANCELED: 1}
    current = await job_queue._load_summary(session, summary.id)
    assert current.summary_text is None
    assert current.error_message == job_queue.CANCELED_MESSAGE
    assert await ledger.get_balance(session, user_id) == 2


async def test_canceled_before_processing_skips_summarizer(session_maker, session, user_id):
    summary = await _submit_paid(session, user_id)
    [job] = await job_queue.claim(session, limit=1)
    await job_queue.cancel(session, summary_id=summary.id, owner_id=user_id)

    summarizer = FakeSummarizer()
    async with session_maker() as job_session:
        outcome = await process_job(job_session, summarizer, job)

    assert outcome.completed is False
    assert outcome.error_code == ErrorCode.SUMMARY_CANCELED
    assert summarizer.calls == []


def test_batch_result_aggregates_outcomes():
    result = WorkerBatchResult.from_outcomes(
        [
            JobOutcome(True, 100),
            JobOutcome(False, 300, ErrorCode.TIMEOUT),
            JobOutcome(False, 200, ErrorCode.TIMEOUT),
        ]
    )
    assert result.to_dict() == {
        "picked": 3,
        "completed": 1,
        "failed": 2,
        "avgDurationMs": 200,
        "failureCodes": {ErrorCode.TIMEOUT: 2},
    }


async def test_crashing_job_does_not_sink_the_batch(session_maker, session, user_id, monkeypatch):
    healthy = await job_queue.create_summary(
        session, user_id=user_id, source_type=SourceType.TEXT, original_content=SAMPLE_TEXT
    )
    broken = await job_queue.create_summary(
        session, user_id=user_id, source_type=SourceType.TEXT, original_content=SAMPLE_TEXT
    )
    original = job_queue.mark_processing

    async def flaky_mark_processing(job_session, summary_id):
        if summary_id == broken.id:
            raise RuntimeError("database is locked")
        return await original(job_session, summary_id)

    monkeypatch.setattr(job_queue, "mark_processing", flaky_mark_processing)

    result = await run_worker_batch(session_maker, FakeSummarizer(), batch_size=5, backoff_s=0)

    assert (result.picked, result.completed, result.failed) == (2, 1, 1)
    assert result.failure_codes == {ErrorCode.UNKNOWN: 1}
    assert (await job_queue._load_summary(session, healthy.id)).status == SummaryStatus.COMPLETED

    current = await job_queue._load_summary(session, broken.id)
    assert current.status == SummaryStatus.PENDING
    assert current.error_message.startswith(f"[{ErrorCode.UNKNOWN}]")
    job = await job_queue.get_job(session, broken.id)
    assert job.status == JobStatus.QUEUED
    assert job.locked_at is None
