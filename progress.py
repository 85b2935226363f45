"""
Progress — per-job subscriber registry for real-time generation updates.

In-memory pub/sub keyed by job id: subscribe() registers a callback and
lazily opens the engine socket, the returned function unsubscribes.
When a job loses its last subscriber its reconciliation state is purged.
"""

import logging
from typing import Callable

from engine_adapter import EngineAdapter
from models import ProgressSample

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSample], None]


class _Subscription:
    __slots__ = ("job_id", "callback", "active")

    def __init__(self, job_id: str, callback: ProgressCallback):
        self.job_id = job_id
        self.callback = callback
        self.active = True


class ProgressRegistry:
    def __init__(self, adapter: EngineAdapter):
        self.adapter = adapter
        self._subscribers: dict[str, list[_Subscription]] = {}
        adapter.dispatch = self.publish

    def subscribe(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register callback for job_id. Returns an idempotent unsubscribe function."""
        assert isinstance(job_id, str) and job_id, "job_id must be a non-empty string"
        assert callable(callback), "callback must be callable"

        sub = _Subscription(job_id, callback)
        self._subscribers.setdefault(job_id, []).append(sub)
        self.adapter.ensure_connected()

        def unsubscribe() -> None:
            self._remove(sub)

        return unsubscribe

    def _remove(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        sub.active = False
        subs = self._subscribers.get(sub.job_id)
        if subs is None:
            return
        try:
            subs.remove(sub)
        except ValueError:
            pass
        if not subs:
            del self._subscribers[sub.job_id]
            self.adapter.purge_job(sub.job_id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, job_id: str, sample: ProgressSample) -> bool:
        """Push a reconciled sample to every subscriber of job_id. False if there were none."""
        subs = self._subscribers.get(job_id)
        if not subs:
            log.debug("No subscribers for %s", job_id)
            return False
        for sub in list(subs):
            try:
                sub.callback(sample)
            except Exception:
                log.exception("Progress subscriber for %s failed", job_id)
        return job_id in self._subscribers

    async def close(self) -> None:
        """Drop every subscriber and reset the engine connection."""
        for subs in self._subscribers.values():
            for sub in subs:
                sub.active = False
        self._subscribers.clear()
        await self.adapter.close_connection()
