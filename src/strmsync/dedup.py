"""Collapse same-name items that differ only by container format."""

from __future__ import annotations

import logging
import posixpath

from strmsync.models import RemoteItem

logger = logging.getLogger(__name__)

# Lower index wins. Anything not listed ranks after all of these.
FORMAT_PRIORITY: tuple[str, ...] = (
    "mkv", "mp4", "avi", "mov", "wmv", "flv", "m4v", "mpg", "mpeg", "3gp", "webm",
)

_RANK: dict[str, int] = {ext: i for i, ext in enumerate(FORMAT_PRIORITY)}
_UNRANKED = len(FORMAT_PRIORITY)


def extension_priority(ext: str) -> int:
    """Return the rank of an extension (lower is better).

    Comparison ignores case and a leading period.
    """
    return _RANK.get(ext.lstrip(".").lower(), _UNRANKED)


def _split(path: str) -> tuple[str, str]:
    """Split a remote path into (base, extension) on the final component only."""
    base, ext = posixpath.splitext(path)
    return base, ext


def deduplicate(items: list[RemoteItem]) -> list[RemoteItem]:
    """Keep one item per base path, choosing the best-ranked format.

    Groups are emitted in the order their first member was seen. Ties between
    unranked extensions go to the first-seen item.
    """
    groups: dict[str, list[RemoteItem]] = {}
    for item in items:
        base, _ = _split(item.path)
        groups.setdefault(base, []).append(item)

    result: list[RemoteItem] = []
    dropped = 0

    for base, group in groups.items():
        if len(group) == 1:
            result.append(group[0])
            continue

        best = min(group, key=lambda it: extension_priority(_split(it.path)[1]))
        result.append(best)
        dropped += len(group) - 1

        siblings = [_split(it.path)[1] for it in group if it is not best]
        logger.info(
            "Duplicate formats for %s: keeping %s, dropping %s",
            posixpath.basename(base),
            posixpath.basename(best.path),
            ", ".join(siblings),
        )

    if dropped:
        logger.info("Removed %d duplicate items by format priority", dropped)

    return result
