from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Set, Union

from docsumm.db.models import JobStatus, SummaryStatus

Status = Union[SummaryStatus, JobStatus]

_SUMMARY_ALLOWED: Dict[SummaryStatus, Set[SummaryStatus]] = {
    SummaryStatus.PENDING: {SummaryStatus.PROCESSING, SummaryStatus.FAILED},
    # PENDING again = requeued for retry
    SummaryStatus.PROCESSING: {SummaryStatus.COMPLETED, SummaryStatus.PENDING, SummaryStatus.FAILED},
    SummaryStatus.COMPLETED: set(),
    SummaryStatus.FAILED: set(),
}

_JOB_ALLOWED: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass(frozen=True)
class TransitionError(Exception):
    from_status: Status
    to_status: Status
    def __str__(self) -> str:
        return f"invalid transition: {self.from_status.value} -> {self.to_status.value}"


def _table(status: Status) -> Dict:
    return _SUMMARY_ALLOWED if isinstance(status, SummaryStatus) else _JOB_ALLOWED


def is_terminal(status: Status) -> bool:
    return not _table(status)[status]


def ensure_transition_allowed(from_status: Status, to_status: Status) -> None:
    allowed = _table(from_status).get(from_status, set())
    if to_status not in allowed:
        raise TransitionError(from_status=from_status, to_status=to_status)


def sources_for(to_status: Status) -> Set[Status]:
    """Statuses a row may be in for a conditional update into ``to_status``."""
    return {src for src, targets in _table(to_status).items() if to_status in targets}
