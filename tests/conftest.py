"""Shared pytest fixtures for imgdocs tests."""

import asyncio
import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from imgdocs.core.config import ImgDocsConfig
from imgdocs.core.dedup import RequestDedupStore
from imgdocs.core.documents import ImageDocument, PromptEntry, VersionInfo
from imgdocs.core.errors import StorageError, TransportError
from imgdocs.core.models import GenerationOptions
from imgdocs.core.orchestrator import GenerationOrchestrator
from imgdocs.core.storage import InMemoryDocumentStore


class FakeTransport:
    """Generation transport double that records calls.

    Attributes:
        calls: ``(prompt, options)`` for every call made.
        error: If set, every call raises it after recording.
        gate: If set, calls wait for the event before returning.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, GenerationOptions]] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self._produced = 0

    async def call(self, prompt: str, options: GenerationOptions) -> bytes:
        self.calls.append((prompt, options))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self._produced += 1
        return f"image-{self._produced}".encode()


class CountingStore(InMemoryDocumentStore):
    """In-memory store that counts reads and writes."""

    def __init__(self) -> None:
        super().__init__()
        self.gets = 0
        self.puts: list[ImageDocument] = []

    async def get(self, document_id: str) -> ImageDocument:
        self.gets += 1
        await asyncio.sleep(0)
        return await super().get(document_id)

    async def put(self, document: ImageDocument) -> ImageDocument:
        self.puts.append(document)
        await asyncio.sleep(0)
        return await super().put(document)


class FlakyStore(CountingStore):
    """Counting store whose next ``put_failures`` writes raise StorageError."""

    def __init__(self) -> None:
        super().__init__()
        self.put_failures = 0

    async def put(self, document: ImageDocument) -> ImageDocument:
        if self.put_failures:
            self.put_failures -= 1
            await asyncio.sleep(0)
            raise StorageError("disk full")
        return await super().put(document)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ImgDocsConfig:
    """Create a test configuration with temporary directories."""
    return ImgDocsConfig(
        _env_file=None,
        model_id="stabilityai/sdxl-turbo",  # Won't actually load in tests
        models_dir=str(temp_dir / "models"),
        data_dir=str(temp_dir / "data"),
        device="cpu",
        torch_dtype="float32",
        default_width=1024,
        default_height=1024,
        num_inference_steps=9,
        guidance_scale=0.0,
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def failing_transport() -> FakeTransport:
    transport = FakeTransport()
    transport.error = TransportError("upstream exploded")
    return transport


@pytest.fixture
def memory_store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def dedup_store() -> RequestDedupStore:
    return RequestDedupStore()


@pytest.fixture
def orchestrator(
    dedup_store: RequestDedupStore, memory_store: CountingStore, fake_transport: FakeTransport
) -> GenerationOrchestrator:
    """Orchestrator over isolated in-memory collaborators."""
    return GenerationOrchestrator(dedup_store, memory_store, fake_transport)


@pytest.fixture
def test_client(monkeypatch, test_config: ImgDocsConfig, fake_transport: FakeTransport):
    """FastAPI TestClient over temporary storage and a fake transport.

    Entering the client runs the application lifespan, so the orchestrator
    is built exactly as in production apart from the transport.
    """
    from fastapi.testclient import TestClient

    import imgdocs.api.main as api_main

    monkeypatch.setattr(api_main, "config", test_config)
    monkeypatch.setattr(api_main, "PipelineTransport", lambda manager, cfg: fake_transport)

    with TestClient(api_main.app) as client:
        yield client


@pytest.fixture
def single_version_doc() -> ImageDocument:
    """Saved document with one version generated from prompt ``p1``."""
    return ImageDocument(
        id="doc-1",
        created_at=1000,
        prompt="Original test prompt",
        current_version=0,
        current_prompt_key="p1",
        versions=[VersionInfo(id="v1", created_at=1000, prompt_key="p1")],
        prompts={"p1": PromptEntry(text="Original test prompt", created_at=1000)},
        files={"v1": b"X"},
    )


@pytest.fixture
def upload_only_doc() -> ImageDocument:
    """Document with an uploaded input image and no versions."""
    return ImageDocument(id="doc-upload", created_at=1000, files={"in1": b"upload"})


@pytest.fixture
def png_bytes() -> bytes:
    """A small real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(0, 128, 255)).save(buffer, format="PNG")
    return buffer.getvalue()
