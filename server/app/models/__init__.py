from app.models.job import (
    GenerateImagesResponse,
    JobAttachment,
    JobOption,
    JobRecord,
    UpscaledImage,
    UpscaleFromVariationResponse,
)

__all__ = [
    "GenerateImagesResponse",
    "JobAttachment",
    "JobOption",
    "JobRecord",
    "UpscaledImage",
    "UpscaleFromVariationResponse",
]
