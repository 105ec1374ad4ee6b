"""imgdocs - lifecycle engine for AI-generated image documents."""

__version__ = "0.1.0"

from imgdocs.core.dedup import RequestDedupStore, fingerprint
from imgdocs.core.documents import ImageDocument, append_version
from imgdocs.core.models import GenerationOptions, GenerationRequest, GenerationResult
from imgdocs.core.modes import DisplayMode, derive_mode
from imgdocs.core.orchestrator import GenerationOrchestrator, request_generation

__all__ = [
    "DisplayMode",
    "GenerationOptions",
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationResult",
    "ImageDocument",
    "RequestDedupStore",
    "append_version",
    "derive_mode",
    "fingerprint",
    "request_generation",
]
