"""Request/response models shared by the image client and the pipe surface."""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


Provider = Literal["gemini", "openai-compatible"]

_PROVIDER_ALIASES = {
    "openai": "openai-compatible",
    "openai_compatible": "openai-compatible",
}


class ProviderConfig(BaseModel):
    """Endpoint and credential for one image-generation provider."""

    provider: Provider = Field(default="gemini", description="API dialect spoken by the endpoint")
    base_url: str = Field(default="", description="API base URL")
    model: str = Field(default="", description="Model identifier")
    api_key: str = Field(default="", description="API key (Bearer)", repr=False)

    @field_validator("provider", mode="before")
    @classmethod
    def _normalise_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = value.strip().lower()
            return _PROVIDER_ALIASES.get(key, key)
        return value

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)


class GenerationRequest(BaseModel):
    prompt: str
    aspect_ratio: str = "1:1"
    resolution: str = "1K"
    # Raw base64, never a data URI.
    reference_image: Optional[str] = None


class GenerationResult(BaseModel):
    """Outcome of one generation call. Exactly one of image/error is set."""

    success: bool
    image: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "GenerationResult":
        if bool(self.image) == bool(self.error):
            raise ValueError("GenerationResult needs exactly one of 'image' or 'error'")
        if self.success != bool(self.image):
            raise ValueError("GenerationResult.success must match the presence of 'image'")
        return self

    @classmethod
    def ok(cls, image: str) -> "GenerationResult":
        return cls(success=True, image=image)

    @classmethod
    def fail(cls, error: str) -> "GenerationResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProviderRequest(BaseModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str]
    json_body: Dict[str, Any]
