"""Job payload schemas - a tagged union keyed by job kind."""

import math
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from jobrelay.jobs.errors import ValidationError
from jobrelay.jobs.types import JobKind


class TextPurpose(str, Enum):
    """What a text-generation request produces for the report."""

    EXECUTIVE_SUMMARY = "executive_summary"
    REPAIR_RECOMMENDATIONS = "repair_recommendations"
    GENERIC = "generic"


class TextGenerationPayload(BaseModel):
    """Prompt sent to the rate-limited text-generation API."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["text-generation"] = "text-generation"
    prompt: str = Field(..., min_length=1, description="User prompt")
    purpose: TextPurpose = Field(default=TextPurpose.GENERIC)
    max_tokens: int = Field(default=1000, gt=0, le=32768)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    report_id: Optional[str] = Field(default=None, description="Report the text is for")
    user_id: Optional[str] = Field(default=None, description="Requesting user")

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be blank")
        return v

    @property
    def estimated_tokens(self) -> int:
        """Rough token estimate: 1 token ~ 4 characters."""
        return math.ceil(len(self.prompt) / 4)


class TranscodePayload(BaseModel):
    """Source video to transcode into the standard MP4 rendition."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["transcode"] = "transcode"
    source_url: str = Field(..., min_length=1, description="s3:// or https:// input")
    output_prefix: Optional[str] = Field(
        default=None,
        description="s3:// destination prefix (defaults to configured output bucket)",
    )
    video_id: Optional[str] = Field(default=None, description="Pool video row id")
    project_id: Optional[str] = Field(default=None)

    @field_validator("source_url")
    @classmethod
    def source_url_scheme(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("s3://", "https://")):
            raise ValueError("source_url must be an s3:// or https:// location")
        return v

    @field_validator("output_prefix")
    @classmethod
    def output_prefix_scheme(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith("s3://"):
            raise ValueError("output_prefix must be an s3:// location")
        return v


JobPayload = Annotated[
    Union[TextGenerationPayload, TranscodePayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(JobPayload)


def parse_payload(kind: JobKind, data: Any) -> Union[TextGenerationPayload, TranscodePayload]:
    """
    Validate raw submit input into the payload model for kind.

    Args:
        kind: Job kind the payload is submitted under
        data: Payload model instance or mapping of fields

    Returns:
        Validated, immutable payload model

    Raises:
        ValidationError: If the payload is empty, malformed, or of another kind
    """
    if not data:
        raise ValidationError(f"payload must not be empty for {kind.value}", kind.value)

    if isinstance(data, BaseModel):
        if getattr(data, "kind", None) != kind.value:
            raise ValidationError(
                f"payload of kind {getattr(data, 'kind', None)!r} submitted as {kind.value}",
                kind.value,
            )
        return data  # type: ignore[return-value]

    if not isinstance(data, Mapping):
        raise ValidationError(
            f"payload must be a mapping, got {type(data).__name__}", kind.value
        )

    if data.get("kind", kind.value) != kind.value:
        raise ValidationError(
            f"payload of kind {data['kind']!r} submitted as {kind.value}", kind.value
        )

    try:
        return _payload_adapter.validate_python({**data, "kind": kind.value})
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {kind.value} payload: {details}", kind.value) from e
