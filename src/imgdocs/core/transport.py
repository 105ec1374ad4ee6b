"""Generation transport: the opaque call that turns a prompt into image bytes.

The orchestrator only sees the :class:`GenerationTransport` protocol.  It
imposes no retry policy; a failed call surfaces as :class:`TransportError`
and the caller decides whether to try again.

:class:`PipelineTransport` is the production implementation, running a local
diffusers pipeline through :class:`~imgdocs.core.model_manager.ModelManager`.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Protocol

from imgdocs.core.config import ImgDocsConfig
from imgdocs.core.errors import TransportError
from imgdocs.core.imaging import encode_png
from imgdocs.core.model_manager import ModelManager
from imgdocs.core.models import GenerationOptions

logger = logging.getLogger(__name__)


class GenerationTransport(Protocol):
    """Anything that can produce PNG bytes for a prompt."""

    async def call(self, prompt: str, options: GenerationOptions) -> bytes:
        """Generate one image; raise :class:`TransportError` on failure."""
        ...


class PipelineTransport:
    """Run generations on a local :class:`ModelManager`.

    Unset options fall back to the configuration defaults; a missing seed is
    drawn at random.  Pipeline work happens in a worker thread so the event
    loop keeps serving other requests.
    """

    def __init__(self, model_manager: ModelManager, config: ImgDocsConfig) -> None:
        self._model_manager = model_manager
        self._config = config

    async def call(self, prompt: str, options: GenerationOptions) -> bytes:
        try:
            return await asyncio.to_thread(self._generate_png, prompt, options)
        except Exception as exc:
            raise TransportError(f"Image generation failed: {exc}") from exc

    def _generate_png(self, prompt: str, options: GenerationOptions) -> bytes:
        cfg = self._config
        seed = options.seed if options.seed is not None else random.randint(0, 2**32 - 1)

        self._model_manager.load_model(options.model_id or cfg.model_id)
        image = self._model_manager.generate(
            prompt=prompt,
            width=options.width or cfg.default_width,
            height=options.height or cfg.default_height,
            steps=options.steps or cfg.num_inference_steps,
            guidance_scale=(
                options.guidance if options.guidance is not None else cfg.guidance_scale
            ),
            seed=seed,
            negative_prompt=options.negative_prompt,
        )
        return encode_png(image)
