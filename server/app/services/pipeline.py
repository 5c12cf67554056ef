"""Generate → variation → upscale pipeline.

Each step reads the job record persisted by the previous one, resolves the
labeled follow-on action it needs (``V1``..``V4`` on the original job,
``U1``/``U2`` on the variation) and calls the image service through the
session and retry layers. Upscales run one after another with a pacing
delay before each call; a failed upscale is skipped, not fatal.
"""

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from typing import Any

from app.models.job import (
    GenerateImagesResponse,
    JobOption,
    JobRecord,
    UpscaledImage,
    UpscaleFromVariationResponse,
)
from app.services.errors import InvalidRequestError, JobNotFoundError, UpstreamError
from app.services.retry import ResilientInvoker
from app.services.session import SessionManager
from app.services.storage import JobStore

logger = logging.getLogger(__name__)

PROMPT_SUFFIX = "--iw 2 --ar 1:1 --v 6 --style raw"
UPSCALE_LABELS = ("U1", "U2")
MIN_COUNT, MAX_COUNT = 1, 10
MIN_VARIATION, MAX_VARIATION = 1, 4
MIN_UPSCALE_DELAY_MS = 10_000
MAX_UPSCALE_DELAY_MS = 15_000

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")


def _parse_int(value: Any) -> int | None:
    """Leading-integer parse: ``"3"``, ``3.7`` and ``"3px"`` all give 3."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    match = _INT_PREFIX.match(str(value))
    return int(match.group(1)) if match else None


def _parse_strict_int(value: Any) -> int | None:
    """Whole numbers only: ``2`` or ``"2"``; ``2.5`` and ``"2abc"`` give None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def build_prompt(keyword: str) -> str:
    return f"{keyword} {PROMPT_SUFFIX}"


def pacing_delay_ms(requested: Any, rng: random.Random) -> int:
    """Delay before an upscale: the caller's value clamped to 10-15s, else random."""
    if requested:
        value = _parse_int(requested) or MIN_UPSCALE_DELAY_MS
        return max(MIN_UPSCALE_DELAY_MS, min(value, MAX_UPSCALE_DELAY_MS))
    return rng.randrange(MIN_UPSCALE_DELAY_MS, MAX_UPSCALE_DELAY_MS)


def _log_progress(tag: str) -> Callable[[str | None, str | None], None]:
    def loading(uri: str | None, progress: str | None) -> None:
        logger.info("[%s] loading: %s - %s", tag, progress, uri)

    return loading


class PipelineService:
    """Runs the generation pipeline against a job store and gateway session."""

    def __init__(
        self,
        store: JobStore,
        session: SessionManager,
        invoker: ResilientInvoker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.invoker = invoker or ResilientInvoker()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def generate_images(self, keyword: Any, count: Any) -> GenerateImagesResponse:
        if not keyword or not isinstance(keyword, str) or count is None:
            raise InvalidRequestError(
                "Both keyword and count parameters are required",
                example={"keyword": "delicious pancakes", "count": 3},
            )

        requested = _parse_int(count)
        if requested is None or not MIN_COUNT <= requested <= MAX_COUNT:
            raise InvalidRequestError(
                f"Count must be a number between {MIN_COUNT} and {MAX_COUNT}",
                received=count,
            )
        if requested > 1:
            logger.warning(
                "Requested %d images but a single imagine job is submitted", requested,
            )

        client = await self.session.ensure_ready()
        prompt = build_prompt(keyword)
        logger.info("Generating image with prompt: %s", prompt)

        try:
            job = await client.imagine(prompt, _log_progress("Imagine"))
            if not job:
                raise UpstreamError("MidJourney failed to respond to the imagine request")
        except UpstreamError:
            raise
        except Exception as e:
            self.session.report_failure(e)
            logger.exception("Error generating image")
            raise UpstreamError(str(e)) from e

        await self.store.put(job.id, job)

        return GenerateImagesResponse(
            message_id=job.id,
            image_url=job.image_url,
            options=job.option_labels,
            generated_count=1,
        )

    async def generate_upscale_from_variation(
        self,
        original_message_id: Any,
        variation_number: Any,
        delay_between_upscales: Any = None,
    ) -> UpscaleFromVariationResponse:
        variation = _parse_strict_int(variation_number)
        if (
            not original_message_id
            or not isinstance(original_message_id, str)
            or variation is None
            or not MIN_VARIATION <= variation <= MAX_VARIATION
        ):
            raise InvalidRequestError(
                "Both originalMessageId and variationNumber (1-4) are required",
            )

        original = await self.store.get(original_message_id)
        if not original or not original.options:
            raise JobNotFoundError("Original message not found or has no options")

        variation_label = f"V{variation}"
        variation_option = original.find_option(variation_label)
        if not variation_option:
            raise JobNotFoundError(
                f"Variation {variation_label} not available",
                availableOptions=original.option_labels,
            )

        await self.session.ensure_ready()
        logger.info("Creating variation %s...", variation_label)
        try:
            variation_job = await self.invoker.invoke(
                lambda: self._run_action(original, variation_option, "Variation"),
            )
        except Exception as e:
            raise UpstreamError(str(e)) from e

        if not variation_job or not variation_job.options:
            raise UpstreamError(
                "Failed to create variation",
                details="No options available" if variation_job else "No response from Midjourney",
            )

        await self.store.put(variation_job.id, variation_job)
        logger.info("Variation created successfully: %s", variation_job.id)

        upscaled = await self._upscale_all(variation_job, delay_between_upscales)

        if delay_between_upscales:
            delay_mode = f"{delay_between_upscales}ms (clamped to 10-15s)"
        else:
            delay_mode = "random 10-15s"

        return UpscaleFromVariationResponse(
            original_message_id=original_message_id,
            variation_label=variation_label,
            variation_message_id=variation_job.id,
            upscaled_images=upscaled,
            actual_delays_used={"betweenUpscales": delay_mode},
        )

    async def _upscale_all(
        self, variation_job: JobRecord, delay_between_upscales: Any,
    ) -> list[UpscaledImage]:
        results: list[UpscaledImage] = []

        for label in UPSCALE_LABELS:
            delay_ms = pacing_delay_ms(delay_between_upscales, self._rng)
            logger.info("Waiting %.1f seconds before next upscale...", delay_ms / 1000)
            await self._sleep(delay_ms / 1000)

            option = variation_job.find_option(label)
            if not option:
                logger.warning("No option found for %s", label)
                continue

            logger.info("Starting upscale for %s...", label)
            try:
                upscale = await self.invoker.invoke(
                    lambda: self._run_action(variation_job, option, label),
                )
            except Exception:
                logger.exception("Upscale failed for %s", label)
                continue

            if not upscale:
                logger.warning("Upscale failed for %s: no response", label)
                continue

            image_url = upscale.image_url
            if not image_url:
                logger.warning("No image URL found for %s", label)
                continue

            await self.store.put(upscale.id, upscale)
            logger.info("Upscale completed for %s: %s", label, image_url)
            results.append(UpscaledImage(
                label=label,
                image_url=image_url,
                upscale_number=int(label[1:]),
            ))

        return results

    async def _run_action(self, job: JobRecord, option: JobOption, tag: str) -> JobRecord | None:
        """Invoke one follow-on action, resetting the session on gateway DNS loss."""
        client = await self.session.ensure_ready()
        try:
            return await client.custom(
                msg_id=job.id,
                flags=job.flags,
                custom_id=option.custom,
                loading=_log_progress(tag),
            )
        except Exception as e:
            self.session.report_failure(e)
            raise
