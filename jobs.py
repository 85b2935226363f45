"""
Jobs — in-memory record of every generation this process queued.

Answers "is it done, and what happened" for the progress publisher's
polling fallback and for the HTTP status endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from comfyui_client import ComfyUIClient, ExecutionFailed, output_images
from models import JobPage, JobRecord, JobStatus, OutputImage

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
LOST_CONTACT = "Lost contact with ComfyUI"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStore:
    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}

    def create(self, job_id: str, total_steps: int) -> JobRecord:
        now = _now()
        record = JobRecord(job_id=job_id, total_steps=total_steps, created_at=now, updated_at=now)
        self._jobs[job_id] = record
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def _update(self, job_id: str, **fields) -> None:
        record = self._jobs.get(job_id)
        if record is None:
            return
        for name, value in fields.items():
            setattr(record, name, value)
        record.updated_at = _now()

    def mark_processing(self, job_id: str) -> None:
        self._update(job_id, status="processing")

    def mark_completed(self, job_id: str, images: list[OutputImage]) -> None:
        self._update(job_id, status="completed", images=images)

    def mark_failed(self, job_id: str, message: str) -> None:
        self._update(job_id, status="failed", error_message=message)

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        record = self._jobs.get(job_id)
        if record is None:
            return None
        return JobStatus(
            status=record.status,
            total_steps=record.total_steps,
            error_message=record.error_message,
        )

    def list_jobs(self, page: int = 1, page_size: int = 10) -> JobPage:
        """Newest first (insertion order reversed)."""
        page = max(1, page)
        page_size = min(MAX_PAGE_SIZE, max(1, page_size))
        records = list(reversed(self._jobs.values()))
        offset = (page - 1) * page_size
        items = records[offset:offset + page_size]
        return JobPage(
            items=items,
            total=len(records),
            page=page,
            page_size=page_size,
            has_more=offset + len(items) < len(records),
        )

    async def track(self, client: ComfyUIClient, job_id: str) -> None:
        """Follow a queued job on the engine until it finishes or fails."""
        self.mark_processing(job_id)
        try:
            entry = await client.wait_for_completion(job_id)
        except ExecutionFailed as e:
            log.warning("Job %s failed: %s", job_id, e)
            self.mark_failed(job_id, str(e))
            return
        except Exception:
            log.exception("Lost track of job %s", job_id)
            self.mark_failed(job_id, LOST_CONTACT)
            return
        images = output_images(entry)
        self.mark_completed(job_id, images)
        log.info("Job %s completed with %d image(s)", job_id, len(images))
