"""imgdocs — FastAPI Application.

This module defines the FastAPI ``app`` instance, the REST routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Generation** goes through one :class:`GenerationOrchestrator` per
  process, so concurrent identical requests from any number of clients share
  one pipeline run and one document write.
- **Documents** persist in a :class:`FileDocumentStore` under
  ``config.documents_dir``.
- **Display modes** are computed server-side by :func:`derive_mode` so every
  client renders the same state for the same inputs.

Endpoints
---------
========  ======================================  ===============================
Method    Path                                    Purpose
========  ======================================  ===============================
GET       ``/api/config``                         Version and generation defaults
POST      ``/api/generate``                       Generate (create or append)
POST      ``/api/mode``                           Classify the display mode
POST      ``/api/documents``                      Create a document from uploads
GET       ``/api/documents/{id}``                 Document metadata
GET       ``/api/documents/{id}/files/{slot}``    Raw PNG for one slot
POST      ``/api/documents/{id}/regenerate``      New version, current prompt
DELETE    ``/api/documents/{id}``                 Delete a document
GET       ``/api/stats``                          In-flight request counters
========  ======================================  ===============================

Usage
-----
CLI (installed entry point)::

    imgdocs

Direct invocation::

    python -m imgdocs.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from imgdocs import __version__
from imgdocs.api.models import GenerateRequest, ModeRequest, RegenerateRequest, UploadRequest
from imgdocs.core.config import config
from imgdocs.core.dedup import RequestDedupStore
from imgdocs.core.documents import ImageDocument, add_input_files
from imgdocs.core.errors import (
    DocumentNotFound,
    ImgDocsError,
    InvariantViolation,
    StorageError,
    TransportError,
)
from imgdocs.core.imaging import decode_base64_image
from imgdocs.core.model_manager import ModelManager
from imgdocs.core.models import GenerationRequest
from imgdocs.core.modes import DisplayMode, derive_mode
from imgdocs.core.orchestrator import GenerationOrchestrator, request_generation
from imgdocs.core.storage import FileDocumentStore
from imgdocs.core.transport import PipelineTransport

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engine on startup and release the model on shutdown.

    No model is loaded at startup; the transport loads it on the first
    generation.
    """
    model_manager = ModelManager(config)
    app.state.model_manager = model_manager
    app.state.orchestrator = GenerationOrchestrator(
        RequestDedupStore(),
        FileDocumentStore(config.documents_dir),
        PipelineTransport(model_manager, config),
        stale_after=config.request_stale_seconds,
    )
    logger.info("Orchestrator ready (documents in %s).", config.documents_dir)

    yield

    model_manager.unload()
    logger.info("ModelManager unloaded on shutdown.")


app = FastAPI(
    title="imgdocs",
    description="Image document lifecycle API: deduplicated generation and version history.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Helpers.
# ---------------------------------------------------------------------------


def _orchestrator() -> GenerationOrchestrator:
    return app.state.orchestrator


def _http_error(exc: Exception) -> HTTPException:
    """Map an engine exception to the HTTP status the client should see."""
    if isinstance(exc, DocumentNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvariantViolation):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransportError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _summarize(document: ImageDocument) -> dict:
    """Document metadata for JSON responses; file bytes are served separately."""
    data = document.model_dump(mode="json", exclude={"files"})
    data["slots"] = list(document.files)
    data["mode"] = derive_mode(document).value

    current = document.current_version_info
    data["current_file_url"] = (
        f"/api/documents/{document.id}/files/{current.id}" if current else None
    )
    return data


async def _load(document_id: str) -> ImageDocument:
    try:
        return await _orchestrator().storage.get(document_id)
    except StorageError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/api/config")
async def get_config() -> dict:
    """Return the API version, generation defaults, and display modes."""
    return {
        "version": __version__,
        "defaults": {
            "model_id": config.model_id,
            "width": config.default_width,
            "height": config.default_height,
            "steps": config.num_inference_steps,
            "guidance": config.guidance_scale,
        },
        "modes": [mode.value for mode in DisplayMode],
    }


@app.post("/api/generate")
async def generate(req: GenerateRequest) -> dict:
    """Generate an image, creating a document or appending a version.

    Identical concurrent requests share one generation and receive the same
    document.  Repeating a request without ``document_id`` appends to the
    document the first one created.

    Raises:
        HTTPException: 400 blank prompt, 404 unknown document, 409 corrupt
            document, 502 generation failure, 500 storage failure.
    """
    request = GenerationRequest(
        prompt=req.prompt,
        options=req.options,
        document_id=req.document_id,
    )
    try:
        result = await request_generation(_orchestrator(), request)
    except (ImgDocsError, ValueError) as exc:
        raise _http_error(exc) from exc

    return {
        "success": True,
        "version_id": result.version_id,
        "document": _summarize(result.document),
    }


@app.post("/api/documents/{document_id}/regenerate")
async def regenerate(document_id: str, req: RegenerateRequest | None = None) -> dict:
    """Append a new version generated from the document's current prompt."""
    options = req.options if req is not None else None
    try:
        result = await _orchestrator().regenerate(document_id, options)
    except (ImgDocsError, ValueError) as exc:
        raise _http_error(exc) from exc

    return {
        "success": True,
        "version_id": result.version_id,
        "document": _summarize(result.document),
    }


@app.post("/api/mode")
async def get_mode(req: ModeRequest) -> dict:
    """Classify what the client should display.

    An unknown ``document_id`` is treated as "no document yet" rather than an
    error: the first write of a generation may not have landed.
    """
    document = None
    if req.document_id:
        try:
            document = await _orchestrator().storage.get(req.document_id)
        except DocumentNotFound:
            document = None
        except StorageError as exc:
            raise _http_error(exc) from exc

    mode = derive_mode(document, prompt=req.prompt, loading=req.loading, error=req.error)
    return {"mode": mode.value}


@app.post("/api/documents")
async def upload_document(req: UploadRequest) -> dict:
    """Create a document holding uploaded input images and no versions."""
    try:
        contents = [decode_base64_image(image) for image in req.images]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        document = await _orchestrator().storage.put(add_input_files(ImageDocument(), contents))
    except StorageError as exc:
        raise _http_error(exc) from exc

    return {"success": True, "document": _summarize(document)}


@app.get("/api/documents/{document_id}")
async def get_document(document_id: str) -> dict:
    """Return document metadata (prompts, versions, slot names)."""
    return _summarize(await _load(document_id))


@app.get("/api/documents/{document_id}/files/{slot}")
async def get_document_file(document_id: str, slot: str) -> Response:
    """Return the PNG stored in one slot of a document."""
    document = await _load(document_id)
    content = document.files.get(slot)
    if content is None:
        raise HTTPException(status_code=404, detail=f"No slot {slot!r} on {document_id}")
    return Response(content=content, media_type="image/png")


@app.delete("/api/documents/{document_id}")
async def delete_document(document_id: str) -> dict:
    """Delete a document and forget any request that created it."""
    orchestrator = _orchestrator()
    try:
        await orchestrator.storage.delete(document_id)
    except StorageError as exc:
        raise _http_error(exc) from exc

    orchestrator.dedup.forget_document(document_id)
    return {"success": True, "deleted": document_id}


@app.get("/api/stats")
async def get_stats() -> dict:
    """Return counters from the request deduplication store and the loaded model."""
    dedup = _orchestrator().dedup
    return {
        "generations_in_flight": len(dedup.pending_calls),
        "creations_in_flight": len(dedup.pending_document_creations),
        "documents_tracked": len(dedup.created_documents),
        "requests_dispatched": dedup.request_counter,
        "loaded_model": app.state.model_manager.current_model_id,
    }


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Configure logging and launch the uvicorn ASGI server.

    Host, port, and log level come from :data:`~imgdocs.core.config.config`
    (``IMGDOCS_SERVER_HOST``, ``IMGDOCS_SERVER_PORT``, ``IMGDOCS_LOG_LEVEL``).
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "imgdocs.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
