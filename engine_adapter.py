"""
Engine Adapter — one shared event socket to the ComfyUI server.

Classifies every inbound frame into a progress shape, applies the
inference-progress latch per job, and hands reconciled samples to a
dispatch function (the progress registry's fan-out).

Message types:
  progress            per-step inference progress (authoritative)
  execution_progress  same payload, alternate envelope (authoritative)
  progress_state      per-node setup progress, summed into one sample;
                      dropped once a job has reported inference progress
"""

import asyncio
import json
import logging
from typing import Callable, Optional

import websockets

from models import ProgressSample

log = logging.getLogger(__name__)

Dispatch = Callable[[str, ProgressSample], bool]

GRANULAR_TYPES = ("progress", "execution_progress")
AGGREGATE_TYPE = "progress_state"


def _number(raw) -> Optional[int]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return int(raw)


class EngineAdapter:
    """Owns the socket task and the per-job inference latch."""

    def __init__(self, ws_url: str, dispatch: Optional[Dispatch] = None):
        self.ws_url = ws_url
        self.dispatch = dispatch
        self._task: Optional[asyncio.Task] = None
        # job_id -> last inference sample; presence closes the latch for setup progress
        self._last_granular: dict[str, ProgressSample] = {}

    # -- connection lifecycle -------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_connected(self) -> None:
        """Start the shared receive loop unless it is already running."""
        if self.connected:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("No running event loop; live progress unavailable, relying on status polling")
            return
        log.info("Opening engine socket %s", self.ws_url)
        self._task = loop.create_task(self._receive_loop())

    async def _receive_loop(self) -> None:
        try:
            async with websockets.connect(self.ws_url, max_size=None) as ws:
                log.info("Engine socket connected")
                async for raw in ws:
                    if isinstance(raw, bytes):
                        continue  # preview image frames
                    self.on_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Engine socket unavailable (%s); will reconnect on next subscribe", e)
        else:
            log.info("Engine socket closed by server")

    async def close_connection(self) -> None:
        """Stop the socket and forget every job's reconciliation state."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._last_granular.clear()
        log.info("Engine socket closed; reconciliation state cleared")

    # -- per-job state --------------------------------------------------------

    def purge_job(self, job_id: str) -> None:
        self._last_granular.pop(job_id, None)

    def last_granular(self, job_id: str) -> Optional[ProgressSample]:
        return self._last_granular.get(job_id)

    # -- message handling -----------------------------------------------------

    def on_message(self, raw) -> None:
        """Handle one text frame. Never raises."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Skipping malformed engine frame: %r", str(raw)[:200])
            return
        if not isinstance(message, dict):
            log.warning("Skipping non-object engine frame: %r", str(raw)[:200])
            return

        kind = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        try:
            if kind in GRANULAR_TYPES:
                self._on_granular(kind, data)
            elif kind == AGGREGATE_TYPE:
                self._on_aggregate(data)
            else:
                log.debug("Ignoring engine message type %r", kind)
        except Exception:
            log.exception("Failed to handle engine message type %r", kind)

    def _on_granular(self, kind: str, data: dict) -> None:
        job_id = data.get("prompt_id")
        value = _number(data.get("value"))
        max_value = _number(data.get("max"))
        if not job_id or value is None or max_value is None:
            log.debug("Incomplete %s payload: %r", kind, data)
            return
        sample = ProgressSample(value=value, max=max_value)
        log.debug("%s %s: %d/%d", kind, job_id, value, max_value)
        # unwatched jobs keep no reconciliation state
        if self._deliver(job_id, sample):
            self._last_granular[job_id] = sample
        else:
            self._last_granular.pop(job_id, None)

    def _on_aggregate(self, data: dict) -> None:
        job_id = data.get("prompt_id")
        nodes = data.get("nodes")
        if not job_id or not isinstance(nodes, dict):
            return
        if job_id in self._last_granular:
            log.debug("progress_state %s dropped: inference progress already seen", job_id)
            return

        total_value = 0
        total_max = 0
        for node in nodes.values():
            if not isinstance(node, dict):
                continue
            value = _number(node.get("value"))
            max_value = _number(node.get("max"))
            if value is None or max_value is None:
                continue
            total_value += value
            total_max += max_value

        if total_max <= 0:
            return
        log.debug("progress_state %s: %d/%d across %d nodes", job_id, total_value, total_max, len(nodes))
        self._deliver(job_id, ProgressSample(value=total_value, max=total_max))

    def _deliver(self, job_id: str, sample: ProgressSample) -> bool:
        """True when the job had at least one subscriber."""
        if self.dispatch is None:
            return False
        return bool(self.dispatch(job_id, sample))
