"""Request deduplication state for image generation.

:class:`RequestDedupStore` tracks work that is *in flight* so that concurrent
requests for the same logical unit of work share one outbound call instead
of racing each other.  It replaces process-wide module state with an explicit
object: the orchestrator receives one at construction time and tests build a
fresh store per case.

Work is keyed by a *fingerprint* — a SHA-256 digest of the normalized prompt,
the options that were actually set, and the target document id (if any).

Single-flight Registries
------------------------
``pending_calls``
    fingerprint → future of the running generation.  At most one leader per
    fingerprint; everyone else joins the existing future.
``pending_document_creations``
    fingerprint → task creating a brand-new document.  Deduplicated
    separately so that a retried image call never re-creates a document.
``created_documents``
    fingerprint → id of the document already created for it.  This is the
    only durable entry: it survives settlement and turns a repeated request
    into a version append on the same document.

Every entry in ``pending_calls``, ``processing_requests``,
``pending_prompts`` and ``pending_document_creations`` is removed when its
work settles, on success and on failure alike.

All check-and-insert operations are synchronous, so under a single asyncio
event loop no two callers can both become leader for one key.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

from imgdocs.core.documents import ImageDocument

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Whether a caller started a unit of work or joined one."""

    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass(frozen=True)
class Acquisition:
    """Result of :meth:`RequestDedupStore.acquire_or_join`.

    A leader must settle ``future`` through :meth:`RequestDedupStore.resolve`
    or :meth:`RequestDedupStore.reject`; a follower only awaits it.
    """

    role: Role
    future: asyncio.Future

    @property
    def is_leader(self) -> bool:
        return self.role is Role.LEADER


@dataclass(frozen=True)
class CreatedDocument:
    """Outcome of a deduplicated document creation.

    ``document`` is ``None`` when the fingerprint already had a document and
    the creation function was never called.
    """

    id: str
    document: ImageDocument | None = None


def _mark_retrieved(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def normalize_prompt(text: str) -> str:
    """Strip and collapse whitespace; case is preserved."""
    return " ".join(text.split())


def fingerprint(
    prompt: str,
    options: BaseModel | dict[str, Any] | None = None,
    document_id: str | None = None,
) -> str:
    """Derive the deduplication key for one logical unit of generation work.

    Options left unset (``None``) do not contribute, so ``{}`` and
    ``{"seed": None}`` fingerprint identically.

    Args:
        prompt: Prompt text; normalized before hashing.
        options: Generation options as a Pydantic model or plain dict.
        document_id: Target document, if the request appends to one.

    Returns:
        Hex SHA-256 digest.
    """
    if isinstance(options, BaseModel):
        options_data = options.model_dump(exclude_none=True)
    else:
        options_data = {k: v for k, v in (options or {}).items() if v is not None}

    canonical = json.dumps(
        {
            "prompt": normalize_prompt(prompt),
            "options": options_data,
            "document_id": document_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RequestDedupStore:
    """In-flight request registry for one process (or one test case).

    Attributes:
        pending_calls: fingerprint → future of the running generation.
        processing_requests: fingerprints whose leader is still running.
        pending_prompts: fingerprints with a document creation in flight.
        request_timestamps: fingerprint → clock reading of the last dispatch.
        request_counter: number of request ids handed out so far.
        created_documents: fingerprint → id of the document created for it.
        pending_document_creations: fingerprint → running creation task.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

        self.pending_calls: dict[str, asyncio.Future] = {}
        self.processing_requests: set[str] = set()
        self.pending_prompts: set[str] = set()
        self.request_timestamps: dict[str, float] = {}
        self.request_counter = 0
        self.created_documents: dict[str, str] = {}
        self.pending_document_creations: dict[str, asyncio.Task] = {}

        # Per-document writer locks, reference counted so idle ids are dropped.
        self._document_locks: dict[str, asyncio.Lock] = {}
        self._document_lock_users: dict[str, int] = {}

    # -- Generation calls ---------------------------------------------------

    def acquire_or_join(self, key: str) -> Acquisition:
        """Become leader for *key*, or join the leader already running.

        Must be called from inside a running event loop.
        """
        existing = self.pending_calls.get(key)
        if existing is not None:
            logger.debug("Joining in-flight request %s.", key[:12])
            return Acquisition(Role.FOLLOWER, existing)

        future = asyncio.get_running_loop().create_future()
        # Every caller may have gone away before a rejection lands.
        future.add_done_callback(_mark_retrieved)
        self.pending_calls[key] = future
        self.processing_requests.add(key)
        self.request_timestamps[key] = self._clock()
        logger.debug("Leading new request %s.", key[:12])
        return Acquisition(Role.LEADER, future)

    def resolve(self, key: str, value: Any) -> None:
        """Settle the leader future for *key* with *value* and release it."""
        future = self._release(key)
        if future is not None and not future.done():
            future.set_result(value)

    def reject(self, key: str, exc: BaseException) -> None:
        """Settle the leader future for *key* with *exc* and release it."""
        future = self._release(key)
        if future is not None and not future.done():
            future.set_exception(exc)

    def abandon(self, key: str) -> None:
        """Release *key* after its leader was cancelled; followers see the cancellation."""
        future = self._release(key)
        if future is not None and not future.done():
            future.cancel()

    def _release(self, key: str) -> asyncio.Future | None:
        self.processing_requests.discard(key)
        return self.pending_calls.pop(key, None)

    def is_pending(self, key: str) -> bool:
        """Whether any work for *key* is currently in flight."""
        return key in self.pending_calls or key in self.pending_document_creations

    # -- Document creation --------------------------------------------------

    async def acquire_or_join_document_creation(
        self,
        key: str,
        create_fn: Callable[[], Awaitable[ImageDocument]],
    ) -> CreatedDocument:
        """Create the document for *key* at most once.

        - If *key* already produced a document, return its id without calling
          *create_fn*.
        - If a creation for *key* is running, wait for it.
        - Otherwise call *create_fn* (which must return the saved document)
          and remember the new id under *key*.

        A failed creation is propagated to every waiter and leaves no trace,
        so a later call can retry.
        """
        existing_id = self.created_documents.get(key)
        if existing_id is not None:
            logger.debug("Fingerprint %s already created %s.", key[:12], existing_id)
            return CreatedDocument(existing_id)

        task = self.pending_document_creations.get(key)
        if task is None:
            task = asyncio.ensure_future(self._create_document(key, create_fn))
            self.pending_document_creations[key] = task
            self.pending_prompts.add(key)
        else:
            logger.debug("Joining in-flight document creation %s.", key[:12])

        return await asyncio.shield(task)

    async def _create_document(
        self,
        key: str,
        create_fn: Callable[[], Awaitable[ImageDocument]],
    ) -> CreatedDocument:
        try:
            document = await create_fn()
            if document.id is None:
                raise ValueError("create_fn must return a saved document with an id")
            self.created_documents[key] = document.id
            logger.info("Created document %s.", document.id)
            return CreatedDocument(document.id, document)
        finally:
            self.pending_document_creations.pop(key, None)
            self.pending_prompts.discard(key)

    def forget_document(self, document_id: str) -> int:
        """Drop every ``created_documents`` pointer to *document_id*.

        Call this after the document is deleted so an identical request
        creates a fresh document instead of appending to a missing one.

        Returns:
            Number of fingerprints that pointed at the document.
        """
        stale = [key for key, value in self.created_documents.items() if value == document_id]
        for key in stale:
            del self.created_documents[key]
        return len(stale)

    # -- Document writers ---------------------------------------------------

    @asynccontextmanager
    async def document_writer(self, document_id: str) -> AsyncIterator[None]:
        """Hold the single-writer slot for *document_id*.

        Read-modify-write sequences on one document run one at a time, so
        version numbers are assigned without gaps or collisions.
        """
        lock = self._document_locks.get(document_id)
        if lock is None:
            lock = self._document_locks[document_id] = asyncio.Lock()
        self._document_lock_users[document_id] = self._document_lock_users.get(document_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._document_lock_users[document_id] -= 1
            if not self._document_lock_users[document_id]:
                del self._document_lock_users[document_id]
                del self._document_locks[document_id]

    @property
    def active_writers(self) -> int:
        """Number of documents with a writer holding or awaiting the slot."""
        return len(self._document_locks)

    # -- Bookkeeping --------------------------------------------------------

    def next_request_id(self) -> str:
        """Return a unique request id (``req-1``, ``req-2``, ...)."""
        self.request_counter += 1
        return f"req-{self.request_counter}"

    def seconds_since_dispatch(self, key: str) -> float | None:
        """Age of the last dispatch for *key*, or ``None`` if never seen."""
        stamp = self.request_timestamps.get(key)
        if stamp is None:
            return None
        return self._clock() - stamp

    def prune_stale(self, max_age: float) -> int:
        """Drop dispatch timestamps older than *max_age* for settled work.

        In-flight fingerprints are never pruned.

        Returns:
            Number of timestamps removed.
        """
        now = self._clock()
        stale = [
            key
            for key, stamp in self.request_timestamps.items()
            if now - stamp > max_age and not self.is_pending(key)
        ]
        for key in stale:
            del self.request_timestamps[key]
        return len(stale)
