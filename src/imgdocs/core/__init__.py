"""Core engine for image documents.

This package holds everything that has real invariants:

- **Document model** (documents.py): the persisted ``ImageDocument`` and the
  pure ``append_version`` operation.
- **Request deduplication** (dedup.py): in-flight registries that keep
  concurrent identical requests down to one generation and one write.
- **Orchestrator** (orchestrator.py): decides between creating a document and
  appending a version, and drives the async work.
- **Display modes** (modes.py): pure classifier from document + flags to the
  mode the user should see.

Collaborators live beside them: storage backends (storage.py), the
generation transport and its diffusers model manager (transport.py,
model_manager.py), PNG/base64 helpers (imaging.py), configuration
(config.py), and the error hierarchy (errors.py).

Usage Example
-------------
    import asyncio
    from imgdocs.core import (
        GenerationOrchestrator, GenerationRequest, InMemoryDocumentStore,
        RequestDedupStore, derive_mode,
    )

    orchestrator = GenerationOrchestrator(
        RequestDedupStore(), InMemoryDocumentStore(), transport
    )
    result = asyncio.run(orchestrator.generate(GenerationRequest(prompt="a cat")))
    derive_mode(result.document)  # DisplayMode.DISPLAY
"""

from imgdocs.core.dedup import RequestDedupStore, fingerprint
from imgdocs.core.documents import (
    ImageDocument,
    PromptEntry,
    VersionInfo,
    add_input_files,
    append_version,
    create_document,
    validate_document,
)
from imgdocs.core.errors import (
    DocumentNotFound,
    ImgDocsError,
    InvariantViolation,
    StorageError,
    TransportError,
)
from imgdocs.core.models import GenerationOptions, GenerationRequest, GenerationResult
from imgdocs.core.modes import DisplayMode, derive_mode
from imgdocs.core.orchestrator import GenerationOrchestrator, request_generation
from imgdocs.core.storage import DocumentStore, FileDocumentStore, InMemoryDocumentStore

__all__ = [
    "DisplayMode",
    "DocumentNotFound",
    "DocumentStore",
    "FileDocumentStore",
    "GenerationOptions",
    "GenerationOrchestrator",
    "GenerationRequest",
    "GenerationResult",
    "ImageDocument",
    "ImgDocsError",
    "InMemoryDocumentStore",
    "InvariantViolation",
    "PromptEntry",
    "RequestDedupStore",
    "StorageError",
    "TransportError",
    "VersionInfo",
    "add_input_files",
    "append_version",
    "create_document",
    "derive_mode",
    "fingerprint",
    "request_generation",
    "validate_document",
]
