"""HTTP client for a Midjourney gateway (midjourney-proxy style API).

The gateway relays prompts and button presses to Discord and exposes each
job as a task that is polled until it finishes. Finished tasks are mapped
to ``JobRecord`` so the rest of the app never sees the wire format.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from app.models.job import JobAttachment, JobOption, JobRecord

logger = logging.getLogger(__name__)

LoadingCallback = Callable[[str | None, str | None], None]

# Submit codes: 1 = submitted, 22 = queued behind other jobs
_ACCEPTED_CODES = {1, 22}
_FAILED_STATUSES = {"FAILURE", "CANCEL"}


class MidjourneyError(Exception):
    """The gateway rejected a request or reported a failed job."""


def _parse_task(task: dict[str, Any]) -> JobRecord:
    properties = task.get("properties") or {}
    options = [
        JobOption(label=button["label"], custom=button["customId"])
        for button in task.get("buttons") or []
        if button.get("label") and button.get("customId")
    ]
    image_url = task.get("imageUrl")
    attachments = [JobAttachment(url=image_url)] if image_url else []
    return JobRecord(
        id=str(task["id"]),
        flags=int(properties.get("flags") or 0),
        prompt=properties.get("finalPrompt") or task.get("prompt") or "",
        progress=task.get("progress"),
        result_url=image_url,
        attachments=attachments,
        options=options,
    )


class MidjourneyClient:
    """Submit prompts and button actions, then wait for the resulting job."""

    def __init__(
        self,
        base_url: str,
        salai_token: str = "",
        server_id: str = "",
        channel_id: str = "",
        hugging_face_token: str = "",
        timeout: float = 20.0,
        poll_interval: float = 3.0,
        job_timeout: float = 600.0,
        remix: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.salai_token = salai_token
        self.server_id = server_id
        self.channel_id = channel_id
        self.hugging_face_token = hugging_face_token
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.remix = remix
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def host(self) -> str:
        return httpx.URL(self.base_url).host

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.salai_token:
            headers["mj-api-secret"] = self.salai_token
        if self.hugging_face_token:
            headers["X-HuggingFace-Token"] = self.hugging_face_token
        return headers

    def _account_filter(self) -> dict[str, str]:
        account: dict[str, str] = {}
        if self.server_id:
            account["guildId"] = self.server_id
        if self.channel_id:
            account["channelId"] = self.channel_id
        return account

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def init(self) -> None:
        """Open the HTTP client and check that the gateway answers."""
        resp = await self._client().post("/mj/account/list", json={})
        resp.raise_for_status()
        logger.info("Connected to Midjourney gateway at %s", self.base_url)

    async def imagine(
        self, prompt: str, loading: LoadingCallback | None = None,
    ) -> JobRecord | None:
        payload: dict[str, Any] = {"prompt": prompt}
        account = self._account_filter()
        if account:
            payload["accountFilter"] = account
        task_id = await self._submit("/mj/submit/imagine", payload)
        return await self._wait_for_task(task_id, loading)

    async def custom(
        self,
        msg_id: str,
        flags: int,
        custom_id: str,
        loading: LoadingCallback | None = None,
    ) -> JobRecord | None:
        """Press the button identified by ``custom_id`` on job ``msg_id``."""
        payload = {
            "taskId": msg_id,
            "customId": custom_id,
            "flags": flags,
            "chooseSameChannel": True,
            "state": "remix" if self.remix else "",
        }
        task_id = await self._submit("/mj/submit/action", payload)
        return await self._wait_for_task(task_id, loading)

    async def _submit(self, path: str, payload: dict[str, Any]) -> str:
        resp = await self._client().post(path, json=payload)
        resp.raise_for_status()
        data = resp.json()
        code = data.get("code")
        if code not in _ACCEPTED_CODES or not data.get("result"):
            raise MidjourneyError(
                f"Submit to {path} rejected (code={code}): "
                f"{data.get('description', 'no description')}"
            )
        return str(data["result"])

    async def _wait_for_task(
        self, task_id: str, loading: LoadingCallback | None,
    ) -> JobRecord | None:
        """Poll a task until it succeeds, fails, or the job timeout passes."""
        client = self._client()
        deadline = time.monotonic() + self.job_timeout
        last_progress: str | None = None

        while True:
            resp = await client.get(f"/mj/task/{task_id}/fetch")
            resp.raise_for_status()
            if not resp.content:
                return None
            task = resp.json()
            status = task.get("status")

            progress = task.get("progress")
            if loading and progress and progress != last_progress:
                loading(task.get("imageUrl"), progress)
            last_progress = progress

            if status == "SUCCESS":
                return _parse_task(task)
            if status in _FAILED_STATUSES:
                raise MidjourneyError(
                    f"Task {task_id} {status.lower()}: "
                    f"{task.get('failReason') or 'unknown reason'}"
                )
            if time.monotonic() >= deadline:
                raise MidjourneyError(f"Task {task_id} timed out after {self.job_timeout:.0f}s")
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None
