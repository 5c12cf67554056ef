"""Error types raised by the generation pipeline.

Routes translate ``PipelineError`` subclasses into JSON responses using
``status_code`` and ``to_dict()``; anything else is treated as unexpected.
"""

from typing import Any


class PipelineError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class InvalidRequestError(PipelineError):
    """Caller input is missing or out of range."""

    status_code = 400


class JobNotFoundError(PipelineError):
    """Unknown job id or unavailable option label."""

    status_code = 404


class UpstreamError(PipelineError):
    """The image service failed or returned an unusable result."""

    status_code = 500


class SessionError(RuntimeError):
    """The gateway session was used before it was ready."""
