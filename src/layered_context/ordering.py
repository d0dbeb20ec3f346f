from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple

from layered_context.config import SCOPE_RANK, ContextEntry, ScopeType

if TYPE_CHECKING:
    from collections.abc import Sequence


def order_entries(entries: Sequence[ContextEntry]) -> list[ContextEntry]:
    """Order entries for composition.

    Highest priority first. Equal priorities keep tier order (global, project,
    directory, then subdirectory/full project) and, inside a tier, the order the
    loader produced them in; `sorted` is stable so the input order settles the rest.

    Args:
        entries (Sequence[ContextEntry]): entries of one run, in discovery order

    Returns:
        list[ContextEntry]: the ordered entries
    """
    return sorted(entries, key=lambda e: (-e.priority_score, SCOPE_RANK[e.scope_type]))


class TruncationResult(NamedTuple):
    kept: list[ContextEntry]
    total_bytes: int
    dropped: int


def truncate_to_budget(
    entries: Sequence[ContextEntry],
    *,
    max_bytes: int,
    max_entries: int,
) -> TruncationResult:
    """Keep the longest prefix of `entries` that fits both budgets.

    The walk stops at the first entry that would push the count above
    `max_entries` or the byte total above `max_bytes`. Later entries are never
    considered, even if smaller ones would still fit.

    Args:
        entries (Sequence[ContextEntry]): entries in priority order
        max_bytes (int): budget on the summed `size_bytes`
        max_entries (int): budget on the number of entries

    Returns:
        TruncationResult: the kept prefix, its byte total and how many entries were cut
    """
    kept: list[ContextEntry] = []
    total = 0
    for entry in entries:
        size = entry.size_bytes
        if len(kept) + 1 > max_entries or total + size > max_bytes:
            break
        kept.append(entry)
        total += size
    return TruncationResult(kept=kept, total_bytes=total, dropped=len(entries) - len(kept))


class MergeStatistics(NamedTuple):
    total_entries: int
    entries_by_scope: dict[ScopeType, int]
    total_content_length: int
    average_content_length: int
    min_priority: int | None
    max_priority: int | None


def merge_statistics(entries: Sequence[ContextEntry]) -> MergeStatistics:
    by_scope = dict.fromkeys(ScopeType, 0)
    total = 0
    for e in entries:
        by_scope[e.scope_type] += 1
        total += len(e.content)
    priorities = [e.priority_score for e in entries]
    return MergeStatistics(
        total_entries=len(entries),
        entries_by_scope=by_scope,
        total_content_length=total,
        average_content_length=round(total / len(entries)) if entries else 0,
        min_priority=min(priorities) if priorities else None,
        max_priority=max(priorities) if priorities else None,
    )
