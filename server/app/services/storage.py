"""File-backed job store.

All records live in a single JSON document, ``{"messages": {<id>: record}}``,
which is rewritten atomically (temp file + ``os.replace``) on every write.
Eviction runs as part of each write: expired entries are dropped first,
then only the newest ``max_entries`` are kept in insertion order.
"""

import asyncio
import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles
from pydantic import ValidationError

from app.config import settings
from app.models.job import JobRecord

logger = logging.getLogger(__name__)

_EMPTY_DOCUMENT: dict[str, Any] = {"messages": {}}


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobStore:
    """Persistent mapping from job id to ``JobRecord``.

    Writes are serialized per instance so concurrent requests cannot lose
    each other's updates between load and save.
    """

    def __init__(
        self,
        path: Path,
        max_entries: int = 100,
        max_age_ms: int = 24 * 60 * 60 * 1000,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.path = Path(path)
        self.max_entries = max_entries
        self.max_age_ms = max_age_ms
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def _temp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    async def initialize(self) -> None:
        """Make sure the backing file exists and holds a valid document."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                content = await f.read()
            if not content.strip():
                raise ValueError("empty storage file")
            json.loads(content)
        except (OSError, ValueError):
            logger.info("Creating fresh job storage at %s", self.path)
            await self._write(_EMPTY_DOCUMENT)

    async def get(self, job_id: str) -> JobRecord | None:
        messages = await self._load()
        data = messages.get(job_id)
        if not isinstance(data, dict) or self._is_expired(data, self._clock()):
            return None
        try:
            return JobRecord.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed stored job %s: %s", job_id, e)
            return None

    async def put(self, job_id: str, record: JobRecord) -> JobRecord:
        """Store ``record`` under ``job_id`` and persist the whole mapping."""
        async with self._lock:
            messages = await self._load()
            now = self._clock()

            stored = record.model_copy(update={"timestamp": now})
            # Re-inserting moves the id to the newest position
            messages.pop(job_id, None)
            messages[job_id] = stored.model_dump(mode="json", by_alias=True)

            cleaned = self._evict(messages, now)
            await self._write({"messages": cleaned})
            return stored

    async def list_ids(self) -> list[str]:
        return list((await self._load()).keys())

    def _is_expired(self, data: dict[str, Any], now: int) -> bool:
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, int) or isinstance(timestamp, bool) or not timestamp:
            timestamp = now
        return now - timestamp > self.max_age_ms

    def _evict(self, messages: dict[str, Any], now: int) -> dict[str, Any]:
        fresh = []
        for job_id, data in messages.items():
            if not isinstance(data, dict):
                logger.warning("Dropping malformed stored job %s", job_id)
                continue
            if not self._is_expired(data, now):
                fresh.append((job_id, data))
        kept = fresh[-self.max_entries:] if self.max_entries > 0 else []
        dropped = len(messages) - len(kept)
        if dropped:
            logger.info("Evicted %d stored job(s)", dropped)
        return dict(kept)

    async def _load(self) -> dict[str, Any]:
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return {}

        if not content.strip():
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.error("Invalid JSON in %s, resetting storage", self.path)
            await self._write(_EMPTY_DOCUMENT)
            return {}

        if not isinstance(data, dict):
            logger.error("Unexpected document type in %s, resetting storage", self.path)
            await self._write(_EMPTY_DOCUMENT)
            return {}

        # Older files stored the mapping without the "messages" wrapper
        messages = data["messages"] if "messages" in data else data
        return messages if isinstance(messages, dict) else {}

    async def _write(self, document: dict[str, Any]) -> None:
        temp_path = self._temp_path
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2))
        os.replace(temp_path, self.path)


# Singleton instance
job_store = JobStore(
    settings.storage_file,
    max_entries=settings.storage_max_entries,
    max_age_ms=settings.storage_max_age_ms,
)
