"""Lifecycle of the connection to the Midjourney gateway.

The client is created lazily on the first request. If the gateway host
stops resolving while the session is live, the session drops back to
uninitialized and reconnects in the background; the next call through
``ensure_ready()`` waits for (or repeats) that reconnection.
"""

import asyncio
import enum
import logging
import socket
from collections.abc import Callable

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from app.config import settings
from app.services.errors import SessionError
from app.services.midjourney_client import MidjourneyClient

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


def is_resolution_failure(exc: BaseException, host: str | None = None) -> bool:
    """True if ``exc`` (or anything it was raised from) is a DNS lookup failure.

    When ``host`` is given, httpx errors must also have been raised for a
    request to that host.
    """
    if host is not None and isinstance(exc, httpx.RequestError):
        try:
            request_host = exc.request.url.host
        except RuntimeError:
            request_host = None
        if request_host != host:
            return False

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _default_client_factory() -> MidjourneyClient:
    return MidjourneyClient(
        settings.mj_gateway_url,
        salai_token=settings.salai_token,
        server_id=settings.server_id,
        channel_id=settings.channel_id,
        hugging_face_token=settings.hugging_face_token,
        timeout=settings.mj_timeout_seconds,
        poll_interval=settings.mj_poll_interval_seconds,
        job_timeout=settings.mj_job_timeout_seconds,
        remix=settings.mj_remix,
    )


class SessionManager:
    """Owns the gateway client and its ready/uninitialized state."""

    def __init__(
        self,
        client_factory: Callable[[], MidjourneyClient] = _default_client_factory,
        max_attempts: int = 3,
        base_delay: float = 3.0,
    ) -> None:
        self._client_factory = client_factory
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.state = SessionState.UNINITIALIZED
        self._client: MidjourneyClient | None = None
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def client(self) -> MidjourneyClient:
        if self._client is None or not self.is_ready:
            raise SessionError("Midjourney session is not initialized")
        return self._client

    async def ensure_ready(self) -> MidjourneyClient:
        """Connect if needed. No-op when the session is already ready."""
        if self.is_ready and self._client is not None:
            return self._client

        async with self._lock:
            if self.is_ready and self._client is not None:
                return self._client

            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
                retry=retry_if_exception(is_resolution_failure),
                before_sleep=before_sleep_log(logger, logging.ERROR),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    client = self._client_factory()
                    try:
                        await client.init()
                    except Exception:
                        await client.close()
                        raise

            self._client = client
            self.state = SessionState.READY
            logger.info("Midjourney client initialized")
            return client

    def report_failure(self, exc: BaseException) -> bool:
        """Reset the session if ``exc`` is a DNS failure against the gateway.

        Returns True when a reset (and background reconnect) was started.
        """
        if not self.is_ready or self._client is None:
            return False
        if not is_resolution_failure(exc, host=self._client.host):
            return False

        logger.error("DNS failure reaching %s, reinitializing Midjourney session", self._client.host)
        stale = self._client
        self._client = None
        self.state = SessionState.UNINITIALIZED
        self._reconnect_task = asyncio.create_task(self._reconnect(stale))
        return True

    async def _reconnect(self, stale: MidjourneyClient) -> None:
        await stale.close()
        try:
            await self.ensure_ready()
        except Exception:
            logger.exception("Midjourney reinitialization failed")

    async def close(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        if self._client:
            await self._client.close()
            self._client = None
        self.state = SessionState.UNINITIALIZED


# Singleton instance
session_manager = SessionManager()
