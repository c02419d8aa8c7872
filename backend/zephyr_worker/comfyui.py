# backend/zephyr_worker/comfyui.py
import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from .graph import ExecutionGraph, Workflow
from .progress import ProgressCallback, ProgressTracker, parse_event

logger = logging.getLogger(__name__)


class ComfyUIError(Exception):
    pass


class ExecutionFailed(ComfyUIError):
    pass


class ComfyUITimeout(ComfyUIError):
    pass


def _history_error_message(entry: Mapping[str, Any]) -> str:
    messages = (entry.get("status") or {}).get("messages") or []
    for item in messages:
        if isinstance(item, (list, tuple)) and len(item) == 2 and item[0] == "execution_error":
            detail = item[1] if isinstance(item[1], dict) else {}
            if detail.get("exception_message"):
                return f"Workflow execution failed: {detail['exception_message']}"
    return "Workflow execution failed"


class ComfyUIClient:
    """
    One client per job: an HTTP client for submitting work and fetching
    results plus an event socket feeding the progress tracker.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8188",
        timeout: float = 30.0,
        node_weights: Optional[Mapping[str, int]] = None,
        http: Optional[httpx.AsyncClient] = None,
        ws_url: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = (ws_url or self.base_url.replace("https://", "wss://").replace("http://", "ws://")).rstrip("/")
        self.client_id = uuid4().hex
        self.node_weights = node_weights
        self.http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self.tracker: Optional[ProgressTracker] = None
        self._ws = None
        self._listener: Optional[asyncio.Task] = None

    async def connect(self):
        ws_url = f"{self.ws_url}/ws?clientId={self.client_id}"
        logger.info("[ComfyUI] Connecting to WebSocket: %s", ws_url)
        self._ws = await websockets.connect(ws_url, max_size=None)
        logger.info("[ComfyUI] WebSocket connected")
        self._listener = asyncio.create_task(self._listen())

    async def disconnect(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        await self.http.aclose()

    async def _listen(self):
        try:
            async for message in self._ws:
                self.handle_message(message)
        except ConnectionClosed:
            pass
        logger.info("[ComfyUI] WebSocket closed")

    def handle_message(self, raw: Union[str, bytes]):
        # binary frames are preview images
        if isinstance(raw, (bytes, bytearray)):
            return
        try:
            message = json.loads(raw)
        except ValueError:
            return
        event = parse_event(message)
        if event is None or self.tracker is None:
            return
        try:
            self.tracker.handle(event)
        except Exception:
            logger.exception("[ComfyUI] Progress handler failed")

    async def queue_prompt(self, workflow: Workflow, on_progress: Optional[ProgressCallback] = None) -> str:
        graph = ExecutionGraph(workflow, weights=self.node_weights)
        prompt_id = str(uuid4())
        # bind before submitting so early socket events are not lost
        self.tracker = ProgressTracker(graph, submission_id=prompt_id, on_progress=on_progress)
        logger.info("[ComfyUI] Total nodes in workflow: %d (weight %d)", graph.node_count, graph.total_weight)

        response = await self.http.post(
            "/prompt",
            json={"prompt": workflow, "client_id": self.client_id, "prompt_id": prompt_id},
        )
        if response.status_code >= 400:
            self.tracker = None
            raise ComfyUIError(f"Failed to queue prompt: {response.status_code} - {response.text}")

        prompt_id = response.json().get("prompt_id") or prompt_id
        self.tracker.submission_id = prompt_id
        logger.info("[ComfyUI] Queued prompt: %s", prompt_id)
        return prompt_id

    async def wait_for_completion(
        self, prompt_id: str, timeout: float = 600.0, poll_interval: float = 1.0
    ) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            if self.tracker is not None and self.tracker.error:
                raise ExecutionFailed(f"Workflow execution failed: {self.tracker.error}")

            response = await self.http.get(f"/history/{prompt_id}")
            if response.status_code == 200:
                entry = response.json().get(prompt_id) or {}
                status = entry.get("status") or {}
                if status.get("status_str") == "error":
                    raise ExecutionFailed(_history_error_message(entry))
                if status.get("completed"):
                    return entry.get("outputs") or {}

            await asyncio.sleep(poll_interval)

        raise ComfyUITimeout(f"Timeout waiting for completion after {timeout:g}s")

    async def upload_image(self, data: bytes, filename: str) -> str:
        response = await self.http.post(
            "/upload/image",
            files={"image": (filename, data, "image/png")},
            data={"overwrite": "true"},
        )
        if response.status_code >= 400:
            raise ComfyUIError(f"Failed to upload image: {response.status_code} - {response.text}")
        result = response.json()
        name = result.get("name") or filename
        subfolder = result.get("subfolder")
        return f"{subfolder}/{name}" if subfolder else name

    async def get_image(self, filename: str, subfolder: str = "", type: str = "output") -> bytes:
        response = await self.http.get(
            "/view", params={"filename": filename, "subfolder": subfolder, "type": type}
        )
        if response.status_code >= 400:
            raise ComfyUIError(f"Failed to fetch image: {response.status_code}")
        return response.content

    async def check_health(self) -> bool:
        try:
            response = await self.http.get("/system_stats")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
