#!/usr/bin/env python3
"""Polling policy and loop for usage export jobs."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from usage_export_client import CircleCIUsageClient, ExportJob, JobTimeoutError
from usage_export_events import log_event

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_INTERVAL_SECONDS = 30.0


@dataclass(frozen=True)
class PollPolicy:
    """How often, and how many times, to ask for a job's status.

    ``backoff_factor`` of 1.0 keeps the delay fixed. ``sleep`` and ``clock``
    are swapped out in tests so no real waiting happens.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    backoff_factor: float = 1.0
    max_interval_seconds: Optional[float] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be 0 or greater.")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be 1.0 or greater.")

    def delay_for(self, attempt: int) -> float:
        delay = self.interval_seconds * (self.backoff_factor ** max(0, attempt - 1))
        if self.max_interval_seconds is not None:
            delay = min(delay, self.max_interval_seconds)
        return delay


@dataclass
class PollState:
    job: ExportJob
    attempt: int = 0
    waited_seconds: float = 0.0
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self.finished_at - self.started_at)


def poll_job(
    client: CircleCIUsageClient,
    org_id: str,
    job: ExportJob,
    policy: PollPolicy,
    debug: bool = False,
) -> PollState:
    """Fetch the job status until it leaves ``processing``.

    API errors and malformed responses from the client propagate straight
    away. Raises ``JobTimeoutError`` when the job is still processing after
    ``policy.max_attempts`` status checks; no sleep follows the last one.
    """
    state = PollState(job=job, started_at=policy.clock())
    while True:
        state.attempt += 1
        state.job = client.get_job(org_id, job.job_id)
        log_event(
            "JOB_STATUS",
            job_id=job.job_id,
            state=state.job.state,
            attempt=state.attempt,
            max_attempts=policy.max_attempts,
        )
        if not state.job.is_processing:
            break
        if state.attempt >= policy.max_attempts:
            state.finished_at = policy.clock()
            raise JobTimeoutError(state.attempt)
        delay = policy.delay_for(state.attempt)
        log_event(
            "JOB_WAIT",
            job_id=job.job_id,
            seconds=delay,
            attempt=state.attempt,
            max_attempts=policy.max_attempts,
        )
        policy.sleep(delay)
        state.waited_seconds += delay
    state.finished_at = policy.clock()
    if debug:
        log_event("DEBUG_POLL", attempts=state.attempt, waited_seconds=state.waited_seconds)
    return state
