"""Display mode classification for an image document.

:func:`derive_mode` is a pure, memoryless function: given the latest document
snapshot and the caller's transient flags it returns what the user should
see.  It keeps no state between calls; callers simply re-invoke it whenever
any input changes.
"""

from __future__ import annotations

import logging
from enum import Enum

from imgdocs.core.documents import ImageDocument

logger = logging.getLogger(__name__)


class DisplayMode(str, Enum):
    """What the rendering layer should show for an image document."""

    PLACEHOLDER = "placeholder"  # nothing to show yet
    UPLOAD_WAITING = "uploadWaiting"  # uploaded inputs, waiting for a prompt
    GENERATING = "generating"  # a generation is underway
    DISPLAY = "display"  # at least one generated version exists
    ERROR = "error"


def derive_mode(
    document: ImageDocument | None,
    prompt: str | None = None,
    loading: bool = False,
    error: BaseException | str | None = None,
) -> DisplayMode:
    """Classify the display mode; the first matching rule wins.

    1. ``error`` is set → ERROR, even while loading.
    2. ``loading`` with a non-empty ``prompt`` → GENERATING, even with no
       document yet (the first write may not have landed).
    3. No document → PLACEHOLDER.
    4. Input uploads, no prompt, no versions → UPLOAD_WAITING.
    5. Prompt or loading, no versions → GENERATING.
    6. At least one version → DISPLAY.
    7. Anything else (an inert or empty record) → PLACEHOLDER.
    """
    if error:
        return DisplayMode.ERROR

    if loading and prompt:
        return DisplayMode.GENERATING

    if document is None:
        return DisplayMode.PLACEHOLDER

    has_versions = document.has_versions
    logger.debug(
        "Deriving mode: prompt=%s loading=%s versions=%s inputs=%s empty=%s",
        bool(prompt),
        loading,
        has_versions,
        document.has_input_files,
        document.is_empty,
    )

    if document.has_input_files and not prompt and not has_versions:
        return DisplayMode.UPLOAD_WAITING

    if (prompt or loading) and not has_versions:
        return DisplayMode.GENERATING

    if has_versions:
        return DisplayMode.DISPLAY

    return DisplayMode.PLACEHOLDER
