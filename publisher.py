"""
Publisher — turns one job's reconciled progress into an SSE stream.

Each connected client gets its own stream_progress() generator. Live
samples arrive from the progress registry through a queue; if none show
up within the staleness interval the stream also starts polling the job
store on a fixed interval, and whichever path sees the job finish first
ends the stream with a single terminal event.
"""

import asyncio
import logging
import os
from typing import AsyncGenerator, Optional, Protocol

from pydantic import BaseModel

from models import (
    CompleteEvent,
    ConnectedEvent,
    ErrorEvent,
    JobStatus,
    ProgressEvent,
    ProgressSample,
)
from progress import ProgressRegistry

log = logging.getLogger(__name__)

STALE_SECONDS = float(os.getenv("PROGRESS_STALE_SECONDS", "2.0"))
POLL_SECONDS = float(os.getenv("PROGRESS_POLL_SECONDS", "2.0"))
MAX_POLL_FAILURES = int(os.getenv("PROGRESS_MAX_POLL_FAILURES", "3"))
DEFAULT_STEPS = int(os.getenv("PROGRESS_DEFAULT_STEPS", "20"))


class JobStatusSource(Protocol):
    async def get_status(self, job_id: str) -> Optional[JobStatus]: ...


def _frame(event: BaseModel) -> str:
    return f"data: {event.model_dump_json()}\n\n"


def percentage(value: int, max_value: int) -> int:
    """round(value/max*100) clamped to 0-100; 0 when max is not positive."""
    if max_value <= 0:
        return 0
    return max(0, min(100, round(value / max_value * 100)))


def progress_event(current: int, total: int) -> ProgressEvent:
    return ProgressEvent(
        currentStep=current,
        totalSteps=total,
        percentage=percentage(current, total),
        status=f"Step {current} of {total}",
    )


def _terminal_event(status: JobStatus) -> Optional[BaseModel]:
    if status.status == "completed":
        return CompleteEvent()
    if status.status == "failed":
        return ErrorEvent(message=status.error_message or "Generation failed")
    return None


async def stream_progress(
    job_id: str,
    registry: ProgressRegistry,
    jobs: JobStatusSource,
    total_steps: Optional[int] = None,
    stale_after: float = STALE_SECONDS,
    poll_interval: float = POLL_SECONDS,
    max_poll_failures: int = MAX_POLL_FAILURES,
) -> AsyncGenerator[str, None]:
    """Async generator yielding SSE-formatted events for one client."""
    yield _frame(ConnectedEvent())

    try:
        job = await jobs.get_status(job_id)
    except Exception as e:
        log.warning("Status lookup for %s failed: %s", job_id, e)
        yield _frame(ErrorEvent(message="Could not load job status"))
        return
    if job is None:
        log.warning("Progress requested for unknown job %s", job_id)
        yield _frame(ErrorEvent(message="Job not found"))
        return
    terminal = _terminal_event(job)
    if terminal is not None:
        yield _frame(terminal)
        return

    queue: asyncio.Queue[ProgressSample] = asyncio.Queue(maxsize=256)

    def on_sample(sample: ProgressSample) -> None:
        try:
            queue.put_nowait(sample)
        except asyncio.QueueFull:
            pass  # drop if client is slow

    try:
        unsubscribe = registry.subscribe(job_id, on_sample)
    except Exception:
        log.exception("Could not subscribe to progress for %s", job_id)
        yield _frame(ErrorEvent(message="Could not track job progress"))
        return

    log.info("Progress stream opened for %s", job_id)
    loop = asyncio.get_running_loop()
    getter: Optional[asyncio.Future] = None
    try:
        yield _frame(progress_event(0, total_steps or job.total_steps or DEFAULT_STEPS))

        polling = False
        failures = 0
        deadline = loop.time() + stale_after
        getter = asyncio.ensure_future(queue.get())

        while True:
            done, _ = await asyncio.wait({getter}, timeout=max(0.0, deadline - loop.time()))

            if getter in done:
                sample = getter.result()
                getter = asyncio.ensure_future(queue.get())
                yield _frame(progress_event(sample.value, sample.max))
                if not polling:
                    deadline = loop.time() + stale_after
                continue

            if not polling:
                log.info("No live progress for %s in %.1fs; polling job status", job_id, stale_after)
                polling = True
            deadline = loop.time() + poll_interval

            try:
                status = await jobs.get_status(job_id)
            except Exception as e:
                failures += 1
                log.warning("Status poll %d/%d for %s failed: %s", failures, max_poll_failures, job_id, e)
                if failures >= max_poll_failures:
                    yield _frame(ErrorEvent(message="Lost contact with job status"))
                    return
                continue
            failures = 0

            if status is None:
                yield _frame(ErrorEvent(message="Job not found"))
                return
            terminal = _terminal_event(status)
            if terminal is not None:
                log.info("Job %s reached %s", job_id, status.status)
                yield _frame(terminal)
                return
    finally:
        if getter is not None:
            getter.cancel()
        unsubscribe()
        log.info("Progress stream closed for %s", job_id)
