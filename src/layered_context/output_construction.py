from __future__ import annotations

import io
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from layered_context.config import ContextEntry

# The composed document is fed verbatim to a model: changing any of these
# strings changes behavior and must be reflected in the snapshot tests.
SECTION_HEADER = "# Context [{scope}] {source}"
SECTION_META = "> priority={priority} label={label}"
SEPARATOR = "---"
SECTION_JOINER = "\n\n"


def render_section(entry: ContextEntry) -> str:
    """Render one entry as a header, an opening separator, its content and a closing separator.

    Args:
        entry (ContextEntry): the entry to render

    Returns:
        str: the section text, without a trailing newline
    """
    out = io.StringIO()
    out.write(SECTION_HEADER.format(scope=entry.scope_type.value, source=entry.source_path.as_posix()))
    out.write("\n")
    out.write(SECTION_META.format(priority=entry.priority_score, label=entry.scope_label))
    out.write("\n")
    out.write(SEPARATOR)
    out.write("\n")
    body = entry.content.strip()
    if body:
        out.write(body)
        out.write("\n")
    out.write(SEPARATOR)
    return out.getvalue()


def compose_document(entries: Sequence[ContextEntry]) -> str:
    """Build the composed document from entries already in their final order.

    Sections are separated by one blank line and the document ends with a
    single newline. No entries give an empty document.

    Args:
        entries (Sequence[ContextEntry]): ordered, budget-bounded entries

    Returns:
        str: the composed document
    """
    if not entries:
        return ""
    return SECTION_JOINER.join(render_section(e) for e in entries) + "\n"
