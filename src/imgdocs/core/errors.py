"""Exception hierarchy for the image document engine.

Every failure surfaces to the immediate caller; nothing here is swallowed by
the dedup store or the orchestrator.

- :class:`TransportError` — the external generation call failed.
- :class:`StorageError` — a read or write against the document store failed.
- :class:`DocumentNotFound` — the requested document id does not exist.
- :class:`InvariantViolation` — a stored document is internally inconsistent.
"""

from __future__ import annotations


class ImgDocsError(Exception):
    """Base class for all imgdocs errors."""


class TransportError(ImgDocsError):
    """The image generation transport failed to produce image bytes."""


class StorageError(ImgDocsError):
    """The document store could not complete a read or write."""


class DocumentNotFound(StorageError):
    """No document exists for the requested id."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InvariantViolation(ImgDocsError):
    """A document violates the version/prompt/file-slot invariants."""
