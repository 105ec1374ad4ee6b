"""Local diffusers pipeline backing the generation transport.

:class:`ModelManager` owns at most one text-to-image pipeline at a time.
:class:`~imgdocs.core.transport.PipelineTransport` drives it from a worker
thread; nothing else in the engine knows that torch exists.

- **Lazy loading** — ``torch`` and ``diffusers`` are imported inside
  :meth:`ModelManager.load_model`, so importing imgdocs stays cheap.
- **Switching** — requesting a different model unloads the current one first.
- **Turbo guidance** — models whose id contains ``"turbo"`` always run with
  ``guidance_scale=0.0``.
- **Seeded runs** — every call builds a fresh ``torch.Generator``.
"""

from __future__ import annotations

import gc
import logging
import threading

from PIL import Image

from imgdocs.core.config import ImgDocsConfig

logger = logging.getLogger(__name__)

_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the config dtype string → ``torch.dtype`` mapping (built lazily)."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


class ModelManager:
    """Load, run, and unload a single diffusers pipeline.

    Generation runs in worker threads, so load/generate/unload are serialized
    with a lock: a switch can never pull the pipeline out from under a run.

    Attributes:
        _config (ImgDocsConfig): device, dtype, cache dir, performance flags.
        _pipeline: Loaded pipeline or ``None``.
        _current_model_id (str | None): HuggingFace id of ``_pipeline``.
    """

    def __init__(self, config: ImgDocsConfig) -> None:
        self._config = config
        self._pipeline = None
        self._current_model_id: str | None = None
        self._lock = threading.RLock()

    def load_model(self, hf_id: str) -> None:
        """Make *hf_id* the loaded pipeline (no-op if it already is).

        Raises:
            Exception: Whatever diffusers raises; the manager is left with
                nothing loaded.
        """
        with self._lock:
            if self._current_model_id == hf_id and self._pipeline is not None:
                logger.debug("Model '%s' already loaded.", hf_id)
                return

            if self._pipeline is not None:
                logger.info("Switching model '%s' -> '%s'.", self._current_model_id, hf_id)
                self.unload()

            import torch
            from diffusers import AutoPipelineForText2Image

            torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.bfloat16)
            logger.info(
                "Loading model '%s' (dtype=%s, device=%s).",
                hf_id,
                self._config.torch_dtype,
                self._config.device,
            )

            try:
                pipeline = AutoPipelineForText2Image.from_pretrained(
                    hf_id,
                    torch_dtype=torch_dtype,
                    cache_dir=str(self._config.models_dir),
                )

                if self._config.enable_model_cpu_offload:
                    pipeline.enable_sequential_cpu_offload()
                else:
                    pipeline = pipeline.to(self._config.device)

                if self._config.enable_attention_slicing:
                    pipeline.enable_attention_slicing()

                if self._config.compile_model:
                    pipeline.unet = torch.compile(
                        pipeline.unet,
                        mode="reduce-overhead",
                        fullgraph=True,
                    )

                self._pipeline = pipeline
                self._current_model_id = hf_id
                logger.info("Model '%s' loaded.", hf_id)
            except Exception:
                self._pipeline = None
                self._current_model_id = None
                logger.exception("Failed to load model '%s'.", hf_id)
                raise

    def generate(
        self,
        prompt: str,
        width: int,
        height: int,
        steps: int,
        guidance_scale: float,
        seed: int,
        negative_prompt: str | None = None,
    ) -> Image.Image:
        """Run the loaded pipeline once and return the first image.

        Raises:
            RuntimeError: If no model is loaded.
        """
        with self._lock:
            if self._pipeline is None:
                raise RuntimeError("No model is loaded.  Call load_model(hf_id) first.")

            import torch

            if self._current_model_id and "turbo" in self._current_model_id.lower():
                if guidance_scale != 0.0:
                    logger.warning(
                        "Turbo model '%s': forcing guidance_scale %.1f -> 0.0.",
                        self._current_model_id,
                        guidance_scale,
                    )
                    guidance_scale = 0.0

            generator = torch.Generator(device=self._config.device).manual_seed(seed)

            kwargs: dict = {
                "prompt": prompt,
                "width": width,
                "height": height,
                "num_inference_steps": steps,
                "guidance_scale": guidance_scale,
                "generator": generator,
            }
            if negative_prompt:
                kwargs["negative_prompt"] = negative_prompt

            logger.info(
                "Generating %dx%d, %d steps, guidance=%.1f, seed=%d.",
                width,
                height,
                steps,
                guidance_scale,
                seed,
            )
            output = self._pipeline(**kwargs)
            return output.images[0]

    def unload(self) -> None:
        """Drop the pipeline and release GPU memory (no-op when empty)."""
        with self._lock:
            if self._pipeline is None:
                return

            model_id = self._current_model_id
            self._pipeline = None
            self._current_model_id = None
            gc.collect()

            try:
                import torch

                if torch.cuda.is_available():
                    torch.cuda.empty_cache()
                    torch.cuda.synchronize()
            except ImportError:
                pass

            logger.info("Unloaded model '%s'.", model_id)

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        return self._current_model_id
