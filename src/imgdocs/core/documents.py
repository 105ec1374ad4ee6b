"""Image document model and the pure version-append operation.

An :class:`ImageDocument` is the persisted record of one image generation
thread.  It holds three append-only structures that must advance together:

- ``files`` — binary content keyed by *slot*.  Input slots (``in1``, ``in2``,
  ...) hold user uploads; version slots (``v1``, ``v2``, ...) hold generated
  outputs.
- ``prompts`` — prompt entries keyed ``p1``, ``p2``, ... with
  ``current_prompt_key`` pointing at the active one.
- ``versions`` — one :class:`VersionInfo` per version slot, in creation order,
  with ``current_version`` pointing at the newest.

None of the functions in this module mutate their input.  They return a new
document that the caller is responsible for persisting.

Usage
-----
::

    doc = create_document(png_bytes, "a goblin workshop")
    doc = append_version(doc, more_png_bytes)                 # v2, carries p1
    doc = append_version(doc, other_png_bytes, "a forge")     # v3, new p2
"""

from __future__ import annotations

import re
import time
from typing import Literal

from pydantic import BaseModel, Field

from imgdocs.core.errors import InvariantViolation

VERSION_SLOT_PATTERN = re.compile(r"^v(\d+)$")
INPUT_SLOT_PREFIX = "in"


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def is_version_slot(key: str) -> bool:
    """Whether *key* names a generated-version slot (``v1``, ``v2``, ...)."""
    return VERSION_SLOT_PATTERN.match(key) is not None


def is_input_slot(key: str) -> bool:
    """Whether *key* names a user-upload slot (``in1``, ``in2``, ...)."""
    return key.startswith(INPUT_SLOT_PREFIX)


class PromptEntry(BaseModel):
    """A single prompt text recorded on a document."""

    text: str
    created_at: int


class VersionInfo(BaseModel):
    """Metadata for one generated version.

    Attributes:
        id: Version slot key (``v1``, ``v2``, ...).
        created_at: Epoch milliseconds when the version was appended.
        prompt_key: Key into ``prompts`` for the prompt that produced this
            version.  ``None`` for legacy documents that never recorded one.
    """

    id: str
    created_at: int
    prompt_key: str | None = None


class ImageDocument(BaseModel):
    """Persisted aggregate for one image generation thread.

    Attributes:
        id: Stable identifier, ``None`` until the first save.
        type: Constant discriminator.
        prompt: Legacy single-prompt field, superseded by ``prompts``.
        files: Binary content keyed by slot.
        created_at: Epoch milliseconds, set once on the first append.
        current_version: 0-based index into ``versions``.
        versions: Append-only version log.
        prompts: Append-only prompt log keyed ``p1``, ``p2``, ...
        current_prompt_key: Active key into ``prompts``.
    """

    id: str | None = None
    type: Literal["image"] = "image"
    prompt: str | None = None
    files: dict[str, bytes] = Field(default_factory=dict)
    created_at: int | None = None
    current_version: int | None = None
    versions: list[VersionInfo] = Field(default_factory=list)
    prompts: dict[str, PromptEntry] = Field(default_factory=dict)
    current_prompt_key: str | None = None

    @property
    def version_slots(self) -> list[str]:
        """Version slot keys present in ``files``, in numeric order."""
        slots = [key for key in self.files if is_version_slot(key)]
        return sorted(slots, key=lambda key: int(key[1:]))

    @property
    def input_slots(self) -> list[str]:
        """Input slot keys present in ``files``, in insertion order."""
        return [key for key in self.files if is_input_slot(key)]

    @property
    def has_versions(self) -> bool:
        return bool(self.versions)

    @property
    def has_input_files(self) -> bool:
        return bool(self.input_slots)

    @property
    def is_empty(self) -> bool:
        """A freshly created record with no versions and no uploads."""
        return not self.versions and not self.input_slots

    @property
    def current_prompt_text(self) -> str | None:
        """Text of the active prompt, falling back to the legacy field."""
        if self.current_prompt_key and self.current_prompt_key in self.prompts:
            return self.prompts[self.current_prompt_key].text
        return self.prompt

    @property
    def current_version_info(self) -> VersionInfo | None:
        if not self.versions or self.current_version is None:
            return None
        return self.versions[self.current_version]


def append_version(
    doc: ImageDocument,
    file_content: bytes,
    new_prompt_text: str | None = None,
    *,
    now: int | None = None,
) -> ImageDocument:
    """Return a copy of *doc* with one more generated version.

    When *new_prompt_text* is given a new prompt entry ``p{n+1}`` is recorded
    and becomes current.  Otherwise the new version carries the document's
    ``current_prompt_key`` forward (``None`` if the document never had one).

    The version id is ``v{n+1}`` where ``n`` is the number of version slots
    already in ``files``; ``current_version`` always ends up pointing at the
    appended version.

    Args:
        doc: Existing document, possibly empty.
        file_content: Image bytes for the new version slot.
        new_prompt_text: Optional prompt that produced this version.
        now: Timestamp override in epoch milliseconds.

    Returns:
        A new :class:`ImageDocument`; *doc* is left untouched.
    """
    timestamp = now if now is not None else now_ms()

    prompts = dict(doc.prompts)
    prompt_key = doc.current_prompt_key
    if new_prompt_text is not None:
        prompt_key = f"p{len(prompts) + 1}"
        prompts[prompt_key] = PromptEntry(text=new_prompt_text, created_at=timestamp)

    version_id = f"v{len(doc.version_slots) + 1}"
    files = {**doc.files, version_id: file_content}
    versions = [
        *doc.versions,
        VersionInfo(id=version_id, created_at=timestamp, prompt_key=prompt_key),
    ]

    return doc.model_copy(
        update={
            "files": files,
            "prompts": prompts,
            "current_prompt_key": prompt_key,
            "versions": versions,
            "current_version": len(versions) - 1,
            "created_at": doc.created_at if doc.created_at is not None else timestamp,
        }
    )


def create_document(
    file_content: bytes, prompt_text: str, *, now: int | None = None
) -> ImageDocument:
    """Build an unsaved document holding ``v1`` generated from ``p1``."""
    return append_version(ImageDocument(), file_content, prompt_text, now=now)


def add_input_files(
    doc: ImageDocument, contents: list[bytes], *, now: int | None = None
) -> ImageDocument:
    """Return a copy of *doc* with uploaded images in new input slots.

    Slots are numbered after the existing input slots (``in1``, ``in2``, ...).
    Versions and prompts are left untouched.
    """
    files = dict(doc.files)
    start = len(doc.input_slots)
    for offset, content in enumerate(contents, start=1):
        files[f"{INPUT_SLOT_PREFIX}{start + offset}"] = content

    timestamp = now if now is not None else now_ms()
    return doc.model_copy(
        update={
            "files": files,
            "created_at": doc.created_at if doc.created_at is not None else timestamp,
        }
    )


def validate_document(doc: ImageDocument) -> None:
    """Check the version/prompt/file-slot invariants of a stored document.

    Raises:
        InvariantViolation: If the version log and version slots disagree,
            a version references an unknown prompt, or a pointer is out of
            range.
    """
    label = doc.id or "<unsaved>"
    slots = doc.version_slots

    if len(slots) != len(doc.versions):
        raise InvariantViolation(
            f"{label}: {len(doc.versions)} versions but {len(slots)} version slots"
        )

    for index, version in enumerate(doc.versions, start=1):
        if version.id != f"v{index}":
            raise InvariantViolation(
                f"{label}: version {index} has id {version.id!r}, expected 'v{index}'"
            )
        if version.id not in doc.files:
            raise InvariantViolation(f"{label}: no file slot for version {version.id!r}")
        if version.prompt_key is not None and version.prompt_key not in doc.prompts:
            raise InvariantViolation(
                f"{label}: version {version.id!r} references unknown prompt "
                f"{version.prompt_key!r}"
            )

    if doc.prompts and doc.current_prompt_key not in doc.prompts:
        raise InvariantViolation(
            f"{label}: current prompt key {doc.current_prompt_key!r} does not resolve"
        )

    if doc.versions and (
        doc.current_version is None or not 0 <= doc.current_version < len(doc.versions)
    ):
        raise InvariantViolation(
            f"{label}: current version {doc.current_version!r} out of range"
        )
