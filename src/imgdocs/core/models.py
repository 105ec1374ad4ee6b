"""Request and result types shared by the orchestrator, transport, and API."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from imgdocs.core.documents import ImageDocument


class GenerationOptions(BaseModel):
    """Per-request generation settings.

    Every field is optional; ``None`` means "use the configured default".
    Two requests whose options differ only in unset fields share a
    fingerprint.
    """

    model_id: str | None = Field(default=None, description="HuggingFace model ID.")
    width: int | None = Field(default=None, ge=64, le=2048)
    height: int | None = Field(default=None, ge=64, le=2048)
    steps: int | None = Field(default=None, ge=1, le=50)
    guidance: float | None = Field(default=None, ge=0.0)
    seed: int | None = Field(default=None, ge=0, le=2**32 - 1)
    negative_prompt: str | None = None


@dataclass
class GenerationRequest:
    """One call to :meth:`GenerationOrchestrator.generate`.

    Attributes:
        prompt: Prompt text for the image.
        options: Generation settings.
        document_id: Existing document to append a version to, if any.
    """

    prompt: str
    options: GenerationOptions = field(default_factory=GenerationOptions)
    document_id: str | None = None


@dataclass
class GenerationResult:
    """Saved document plus the bytes of the version that was just added."""

    document: ImageDocument
    file_content: bytes

    @property
    def version_id(self) -> str:
        return self.document.versions[-1].id
