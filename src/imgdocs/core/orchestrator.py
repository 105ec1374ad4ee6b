"""Generation orchestration: decide what a request should do, then do it once.

Decision order for :meth:`GenerationOrchestrator.generate`:

1. ``document_id`` given → append a version to that document.
2. No ``document_id`` and the prompt/options fingerprint has never created a
   document → generate, then create a new document (``v1`` / ``p1``).
3. No ``document_id`` but the fingerprint already created a document → same
   as (1) against that document.  A double click or a re-fired effect thus
   appends a version instead of creating a duplicate document.

Concurrent identical requests collapse onto one leader through the
:class:`~imgdocs.core.dedup.RequestDedupStore`: one transport call, one
storage write, one shared :class:`~imgdocs.core.models.GenerationResult`.
The leader runs in its own task and every caller awaits it through
``asyncio.shield``, so a caller that gives up does not cancel the work.

Appends re-read the document under the store's per-document writer slot,
so version ids stay gap-free when different requests target one document.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from imgdocs.core.dedup import RequestDedupStore, fingerprint, normalize_prompt
from imgdocs.core.documents import append_version, create_document, validate_document
from imgdocs.core.errors import DocumentNotFound
from imgdocs.core.models import GenerationOptions, GenerationRequest, GenerationResult
from imgdocs.core.storage import DocumentStore

if TYPE_CHECKING:
    from imgdocs.core.transport import GenerationTransport

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Drive generation requests against storage and the transport.

    Args:
        dedup: In-flight request registry shared by every caller.
        storage: Document persistence.
        transport: Image generation backend.
        stale_after: Seconds after which settled dispatch timestamps are
            pruned from *dedup*.
    """

    def __init__(
        self,
        dedup: RequestDedupStore,
        storage: DocumentStore,
        transport: GenerationTransport,
        *,
        stale_after: float = 300.0,
    ) -> None:
        self._dedup = dedup
        self._storage = storage
        self._transport = transport
        self._stale_after = stale_after
        self._tasks: set[asyncio.Task] = set()

    @property
    def dedup(self) -> RequestDedupStore:
        return self._dedup

    @property
    def storage(self) -> DocumentStore:
        return self._storage

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate an image for *request* and persist it.

        Raises:
            ValueError: If the prompt is blank.
            TransportError: The generation call failed; nothing was written.
            DocumentNotFound: ``document_id`` does not exist.
            StorageError: A read or write failed.
            InvariantViolation: The target document is corrupt.
        """
        if not request.prompt or not request.prompt.strip():
            raise ValueError("prompt must not be empty")

        self._dedup.prune_stale(self._stale_after)

        key = fingerprint(request.prompt, request.options, request.document_id)
        since_last = self._dedup.seconds_since_dispatch(key)
        acquisition = self._dedup.acquire_or_join(key)
        if acquisition.is_leader:
            request_id = self._dedup.next_request_id()
            logger.info("[%s] Dispatching generation %s.", request_id, key[:12])
            if since_last is not None:
                logger.info(
                    "[%s] Same request last dispatched %.1fs ago.", request_id, since_last
                )
            task = asyncio.ensure_future(self._lead(key, request, request_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return await asyncio.shield(acquisition.future)

    async def regenerate(
        self, document_id: str, options: GenerationOptions | None = None
    ) -> GenerationResult:
        """Append a new version to *document_id* using its current prompt.

        Raises:
            ValueError: If the document has no prompt to regenerate from.
        """
        document = await self._storage.get(document_id)
        prompt = document.current_prompt_text
        if not prompt:
            raise ValueError(f"Document {document_id} has no prompt to regenerate")
        return await self.generate(
            GenerationRequest(
                prompt=prompt,
                options=options or GenerationOptions(),
                document_id=document_id,
            )
        )

    # -- Leader -------------------------------------------------------------

    async def _lead(self, key: str, request: GenerationRequest, request_id: str) -> None:
        try:
            result = await self._run(request, request_id)
        except asyncio.CancelledError:
            self._dedup.abandon(key)
            raise
        except Exception as exc:
            logger.warning("[%s] Generation failed: %s", request_id, exc)
            self._dedup.reject(key, exc)
        else:
            logger.info(
                "[%s] Stored %s on document %s.",
                request_id,
                result.version_id,
                result.document.id,
            )
            self._dedup.resolve(key, result)

    async def _run(self, request: GenerationRequest, request_id: str) -> GenerationResult:
        if request.document_id is not None:
            return await self._append(request, request.document_id)

        creation_key = fingerprint(request.prompt, request.options)
        existing_id = self._dedup.created_documents.get(creation_key)
        if existing_id is None:
            return await self._create(request, creation_key)

        logger.info("[%s] Reusing document %s for repeated request.", request_id, existing_id)
        try:
            return await self._append(request, existing_id)
        except DocumentNotFound:
            logger.warning(
                "[%s] Document %s is gone; creating a new one.", request_id, existing_id
            )
            self._dedup.forget_document(existing_id)
            return await self._create(request, creation_key)

    async def _create(self, request: GenerationRequest, creation_key: str) -> GenerationResult:
        file_content = await self._transport.call(request.prompt, request.options)

        async def create():
            return await self._storage.put(create_document(file_content, request.prompt.strip()))

        created = await self._dedup.acquire_or_join_document_creation(creation_key, create)
        if created.document is None:
            return await self._write_version(created.id, request.prompt, file_content)
        return GenerationResult(created.document, file_content)

    async def _append(self, request: GenerationRequest, document_id: str) -> GenerationResult:
        # Fail on a missing or corrupt document before spending a generation.
        validate_document(await self._storage.get(document_id))
        file_content = await self._transport.call(request.prompt, request.options)
        return await self._write_version(document_id, request.prompt, file_content)

    async def _write_version(
        self, document_id: str, prompt: str, file_content: bytes
    ) -> GenerationResult:
        async with self._dedup.document_writer(document_id):
            document = await self._storage.get(document_id)
            validate_document(document)

            current = document.current_prompt_text or ""
            new_prompt = None
            if not document.prompts or normalize_prompt(prompt) != normalize_prompt(current):
                new_prompt = prompt.strip()

            saved = await self._storage.put(append_version(document, file_content, new_prompt))
        return GenerationResult(saved, file_content)


async def request_generation(
    orchestrator: GenerationOrchestrator, request: GenerationRequest
) -> GenerationResult:
    """Entry point for the rendering layer; see :meth:`GenerationOrchestrator.generate`."""
    return await orchestrator.generate(request)
