"""
ComfyUI Client — HTTP side of the local diffusion server.

Queues workflow prompts, reads execution history, waits for completion,
and moves images in and out. Live progress arrives separately over the
event socket (see engine_adapter.py); ws_url() derives its address.
"""

import asyncio
import json
import logging
import os
import uuid
from typing import Optional
from urllib.parse import urlsplit

import httpx

from models import HistoryEntry, OutputImage

log = logging.getLogger(__name__)

COMFYUI_URL = os.getenv("COMFYUI_URL", "http://127.0.0.1:8000")
COMFYUI_CLIENT_ID = os.getenv("COMFYUI_CLIENT_ID", "") or uuid.uuid4().hex
HISTORY_MAX_ERRORS = int(os.getenv("COMFYUI_HISTORY_MAX_ERRORS", "20"))


class ComfyUIError(RuntimeError):
    pass


class ExecutionFailed(ComfyUIError):
    """The engine ran the prompt and reported an execution error."""


def _raise_for(response: httpx.Response, action: str) -> None:
    if response.status_code >= 400:
        raise ComfyUIError(f"Failed to {action}: {response.status_code} - {response.text}")


class ComfyUIClient:
    def __init__(self, base_url: str = COMFYUI_URL, client_id: str = COMFYUI_CLIENT_ID, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.timeout = timeout

    def ws_url(self) -> str:
        """ws://host/ws for http, wss:// for https."""
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return f"{scheme}://{parts.netloc}/ws?clientId={self.client_id}"

    async def queue_prompt(self, workflow: dict) -> str:
        """Queue a workflow for execution and return the engine's prompt_id."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/prompt",
                json={"prompt": workflow, "client_id": self.client_id},
            )
        _raise_for(response, "queue prompt")
        data = response.json()
        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise ComfyUIError(f"Engine accepted prompt without an id: {data}")
        return prompt_id

    async def get_history(self, prompt_id: str) -> Optional[HistoryEntry]:
        """History for one prompt, or None while the engine has none yet."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}/history/{prompt_id}")
        _raise_for(response, "get history")
        entry = response.json().get(prompt_id)
        if not entry:
            return None
        return HistoryEntry(**entry)

    async def wait_for_completion(
        self, prompt_id: str, poll_interval: float = 0.5, max_errors: int = HISTORY_MAX_ERRORS
    ) -> HistoryEntry:
        """
        Poll history until the prompt finishes.

        No overall timeout: generations can legitimately take hours.
        Failed history reads are retried; more than max_errors in a row
        re-raises the last one. Raises ExecutionFailed carrying the
        engine's execution_error payloads.
        """
        errors_in_row = 0
        while True:
            try:
                history = await self.get_history(prompt_id)
            except (httpx.HTTPError, ComfyUIError) as e:
                errors_in_row += 1
                if errors_in_row > max_errors:
                    raise
                log.warning("History read for %s failed (%d/%d): %s", prompt_id, errors_in_row, max_errors, e)
                await asyncio.sleep(poll_interval)
                continue
            errors_in_row = 0
            if history is not None:
                if history.status.completed:
                    return history
                if history.status.status_str == "error":
                    errors = [
                        json.dumps(msg[1])
                        for msg in history.status.messages
                        if isinstance(msg, (list, tuple)) and len(msg) > 1 and msg[0] == "execution_error"
                    ]
                    raise ExecutionFailed(f"Workflow execution failed: {', '.join(errors) or 'Unknown error'}")
            await asyncio.sleep(poll_interval)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/system_stats")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_image(self, filename: str, subfolder: str = "", folder_type: str = "output") -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.base_url}/view",
                params={"filename": filename, "subfolder": subfolder, "type": folder_type},
            )
        _raise_for(response, "get image")
        return response.content

    async def upload_image(self, data: bytes, filename: str) -> dict:
        """Upload a reference image; returns {"name", "subfolder", "type"}."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/upload/image",
                files={"image": (filename, data, "image/png")},
                data={"overwrite": "true"},
            )
        _raise_for(response, "upload image")
        return response.json()


def output_images(entry: HistoryEntry) -> list[OutputImage]:
    """Flatten every node's saved images from a history entry."""
    images = []
    for output in entry.outputs.values():
        if not isinstance(output, dict):
            continue
        for image in output.get("images", []):
            if isinstance(image, dict) and image.get("filename"):
                images.append(OutputImage(**image))
    return images
