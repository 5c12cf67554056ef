import logging
import traceback

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.services.errors import PipelineError
from app.services.pipeline import PipelineService
from app.services.session import session_manager
from app.services.storage import job_store

router = APIRouter()
logger = logging.getLogger(__name__)


async def _read_body(req: Request) -> dict:
    try:
        body = await req.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _error_response(exc: PipelineError, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={**extra, **exc.to_dict()})


@router.post("/generate-images", response_model=None)
async def generate_images(req: Request) -> dict | JSONResponse:
    """Submit one imagine job for a keyword and persist the result."""
    body = await _read_body(req)
    service = PipelineService(job_store, session_manager)

    try:
        result = await service.generate_images(body.get("keyword"), body.get("count"))
    except PipelineError as e:
        if e.status_code >= 500:
            return _error_response(e, success=False)
        return _error_response(e)
    except Exception:
        logger.exception("Endpoint error: /generate-images")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )

    return result.model_dump(by_alias=True)


@router.post("/generate-upscale-from-variation", response_model=None)
async def generate_upscale_from_variation(req: Request) -> dict | JSONResponse:
    """Create a variation of a stored job, then upscale it as U1 and U2.

    Upscales are paced 10-15s apart. Individual upscale failures are left
    out of ``upscaledImages`` rather than failing the request.
    """
    body = await _read_body(req)
    service = PipelineService(job_store, session_manager)

    try:
        result = await service.generate_upscale_from_variation(
            body.get("originalMessageId"),
            body.get("variationNumber"),
            body.get("delayBetweenUpscales"),
        )
    except PipelineError as e:
        return _error_response(e)
    except Exception as e:
        logger.exception("/generate-upscale-from-variation error")
        content: dict[str, str] = {"error": str(e)}
        if settings.is_development:
            content["stack"] = "".join(traceback.format_exception(e))
        return JSONResponse(status_code=500, content=content)

    return result.model_dump(by_alias=True)


@router.get("/messages/{message_id}")
async def get_message(message_id: str) -> dict:
    """Return a stored job record."""
    record = await job_store.get(message_id)
    if not record:
        raise HTTPException(status_code=404, detail="Message not found")
    return record.model_dump(by_alias=True)
