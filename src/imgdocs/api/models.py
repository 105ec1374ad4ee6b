"""Pydantic request models for the imgdocs API.

Models
------
GenerateRequest
    Payload for ``POST /api/generate`` — prompt, options, and an optional
    target document.
RegenerateRequest
    Payload for ``POST /api/documents/{id}/regenerate``.
ModeRequest
    Payload for ``POST /api/mode`` — the inputs of the display mode
    classifier.
UploadRequest
    Payload for ``POST /api/documents`` — base64 input images.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from imgdocs.core.models import GenerationOptions


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        document_id: Existing document to append a version to.  Omit to let
            the server create a document (or reuse the one an identical
            earlier request created).
        prompt: Prompt text for the image.
        options: Generation settings; unset fields use server defaults.
    """

    document_id: str | None = Field(
        default=None,
        description="Existing document to append a version to.",
    )
    prompt: str = Field(
        ...,
        min_length=1,
        description="Prompt text for the image.",
    )
    options: GenerationOptions = Field(
        default_factory=GenerationOptions,
        description="Generation settings; unset fields use server defaults.",
    )


class RegenerateRequest(BaseModel):
    """Request body for ``POST /api/documents/{id}/regenerate``."""

    options: GenerationOptions = Field(default_factory=GenerationOptions)


class ModeRequest(BaseModel):
    """Request body for the ``POST /api/mode`` endpoint.

    Attributes:
        document_id: Document to classify; unknown ids count as no document.
        prompt: Prompt currently entered by the user, if any.
        loading: Whether a generation is in progress on the client.
        error: Error message the client is currently showing, if any.
    """

    document_id: str | None = None
    prompt: str | None = None
    loading: bool = False
    error: str | None = None


class UploadRequest(BaseModel):
    """Request body for ``POST /api/documents``.

    Attributes:
        images: Base64 images (plain or ``data:`` URLs) stored as input slots.
    """

    images: list[str] = Field(
        ...,
        min_length=1,
        max_length=16,
        description="Base64-encoded images (plain or data: URLs).",
    )
