from pydantic import BaseModel, ConfigDict, Field


def _to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


class JobOption(BaseModel):
    """A follow-on action offered by a job, e.g. ``V2`` or ``U1``."""

    label: str
    custom: str


class JobAttachment(BaseModel):
    url: str


class JobRecord(BaseModel):
    """Snapshot of one job on the image service.

    ``flags`` and the option tokens are opaque and must be sent back
    unchanged when invoking a follow-on action.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

    id: str
    flags: int = 0
    prompt: str = ""
    progress: str | None = None
    result_url: str | None = None
    attachments: list[JobAttachment] = Field(default_factory=list)
    options: list[JobOption] = Field(default_factory=list)
    timestamp: int | None = None

    @property
    def image_url(self) -> str | None:
        if self.result_url:
            return self.result_url
        if self.attachments:
            return self.attachments[0].url
        return None

    @property
    def option_labels(self) -> list[str]:
        return [o.label for o in self.options]

    def find_option(self, label: str) -> JobOption | None:
        for option in self.options:
            if option.label == label:
                return option
        return None


class GenerateImagesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

    success: bool = True
    message_id: str
    image_url: str | None = None
    options: list[str] = Field(default_factory=list)
    generated_count: int = 1


class UpscaledImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

    label: str
    image_url: str
    upscale_number: int


class UpscaleFromVariationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=_to_camel)

    status: str = "completed"
    original_message_id: str
    variation_label: str
    variation_message_id: str
    upscaled_images: list[UpscaledImage] = Field(default_factory=list)
    actual_delays_used: dict[str, str] = Field(default_factory=dict)
