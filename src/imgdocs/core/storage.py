"""Document storage backends.

The orchestrator talks to storage through the small :class:`DocumentStore`
protocol: ``get``, ``put`` and ``delete``, all asynchronous.  Storage offers
last-write-wins semantics only; concurrent writers on one document are kept
apart by :meth:`RequestDedupStore.document_writer`, not here.

Backends
--------
InMemoryDocumentStore
    Dict-backed store that deep-copies on the way in and out.  Used by the
    tests and handy for embedding.
FileDocumentStore
    One directory per document::

        <root>/<document id>/document.json   # metadata, slot names
        <root>/<document id>/v1.png          # one file per slot
        <root>/<document id>/in1.png

    Slots recorded in ``document.json`` are never rewritten, matching the
    append-only document model.  Blocking IO runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from imgdocs.core.documents import ImageDocument
from imgdocs.core.errors import DocumentNotFound, StorageError

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
METADATA_FILENAME = "document.json"


def new_document_id() -> str:
    """Return a fresh document identifier."""
    return f"img_{uuid.uuid4().hex}"


class DocumentStore(Protocol):
    """Persistence contract consumed by the orchestrator."""

    async def get(self, document_id: str) -> ImageDocument:
        """Return the stored document or raise :class:`DocumentNotFound`."""
        ...

    async def put(self, document: ImageDocument) -> ImageDocument:
        """Persist *document*, assigning an id if it has none."""
        ...

    async def delete(self, document_id: str) -> None:
        """Remove the document or raise :class:`DocumentNotFound`."""
        ...


class InMemoryDocumentStore:
    """Dict-backed :class:`DocumentStore`.

    Stored documents are copied on every read and write so callers can never
    mutate persisted state through a returned reference.
    """

    def __init__(self) -> None:
        self._documents: dict[str, ImageDocument] = {}

    async def get(self, document_id: str) -> ImageDocument:
        try:
            return self._documents[document_id].model_copy(deep=True)
        except KeyError:
            raise DocumentNotFound(document_id) from None

    async def put(self, document: ImageDocument) -> ImageDocument:
        if document.id is None:
            document = document.model_copy(update={"id": new_document_id()})
        self._documents[document.id] = document.model_copy(deep=True)
        return document.model_copy(deep=True)

    async def delete(self, document_id: str) -> None:
        if self._documents.pop(document_id, None) is None:
            raise DocumentNotFound(document_id)

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._documents

    def __len__(self) -> int:
        return len(self._documents)


class FileDocumentStore:
    """Directory-per-document :class:`DocumentStore` on the local file system."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("Document store at %s.", self.root)

    async def get(self, document_id: str) -> ImageDocument:
        return await asyncio.to_thread(self._read, document_id)

    async def put(self, document: ImageDocument) -> ImageDocument:
        if document.id is None:
            document = document.model_copy(update={"id": new_document_id()})
        await asyncio.to_thread(self._write, document)
        return document

    async def delete(self, document_id: str) -> None:
        await asyncio.to_thread(self._remove, document_id)

    # -- Blocking helpers ---------------------------------------------------

    def _document_dir(self, document_id: str) -> Path:
        # Ids come from URLs; anything that is not a plain name cannot exist.
        if not _SAFE_NAME.match(document_id):
            raise DocumentNotFound(document_id)
        return self.root / document_id

    def _read(self, document_id: str) -> ImageDocument:
        doc_dir = self._document_dir(document_id)
        metadata_path = doc_dir / METADATA_FILENAME
        if not metadata_path.exists():
            raise DocumentNotFound(document_id)

        try:
            with open(metadata_path, encoding="utf-8") as handle:
                metadata = json.load(handle)
            if not isinstance(metadata, dict):
                raise ValueError("metadata is not a JSON object")
            slots = metadata.pop("slots", [])
            files = {slot: (doc_dir / f"{slot}.png").read_bytes() for slot in slots}
            return ImageDocument.model_validate({**metadata, "files": files})
        except (OSError, ValueError, ValidationError) as exc:
            raise StorageError(f"Cannot read document {document_id}: {exc}") from exc

    def _write(self, document: ImageDocument) -> None:
        doc_dir = self._document_dir(document.id)
        for slot in document.files:
            if not _SAFE_NAME.match(slot):
                raise StorageError(f"Invalid slot name {slot!r} on document {document.id}")

        try:
            doc_dir.mkdir(parents=True, exist_ok=True)

            # Slots listed in the committed metadata are immutable.  Any other
            # slot file on disk is left over from a failed write and is replaced.
            committed = self._committed_slots(doc_dir)
            for slot, content in document.files.items():
                if slot in committed:
                    continue
                slot_path = doc_dir / f"{slot}.png"
                tmp_slot = doc_dir / f"{slot}.png.tmp"
                tmp_slot.write_bytes(content)
                tmp_slot.replace(slot_path)

            metadata = document.model_dump(mode="json", exclude={"files"})
            metadata["slots"] = list(document.files)

            # Write-then-rename so readers never observe half a metadata file.
            tmp_path = doc_dir / f"{METADATA_FILENAME}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(metadata, handle, indent=2)
            tmp_path.replace(doc_dir / METADATA_FILENAME)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot write document {document.id}: {exc}") from exc

        logger.debug("Saved document %s (%d slots).", document.id, len(document.files))

    @staticmethod
    def _committed_slots(doc_dir: Path) -> set[str]:
        """Slot names recorded by the last successful write (empty if none)."""
        metadata_path = doc_dir / METADATA_FILENAME
        if not metadata_path.exists():
            return set()
        with open(metadata_path, encoding="utf-8") as handle:
            metadata = json.load(handle)
        if not isinstance(metadata, dict):
            raise ValueError("metadata is not a JSON object")
        return set(metadata.get("slots", []))

    def _remove(self, document_id: str) -> None:
        doc_dir = self._document_dir(document_id)
        if not (doc_dir / METADATA_FILENAME).exists():
            raise DocumentNotFound(document_id)
        try:
            shutil.rmtree(doc_dir)
        except OSError as exc:
            raise StorageError(f"Cannot delete document {document_id}: {exc}") from exc
        logger.info("Deleted document %s.", document_id)
