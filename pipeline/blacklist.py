"""
Tag blacklist: loading, pre-filtering raw tags and persisting updates.

A missing or corrupt blacklist file degrades to "no filtering" with a warning;
it never stops a run.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Tuple

from filesystem.file_ops import FileSystemOperations
from utils.text import normalize_tag

logger = logging.getLogger(__name__)

BLACKLIST_FIELD = "blacklistedTags"


@dataclass(frozen=True)
class Blacklist:
    """Read-only set of normalized blacklisted tags."""

    tags: FrozenSet[str] = frozenset()

    @classmethod
    def from_iterable(cls, tags: Iterable[str]) -> "Blacklist":
        return cls(frozenset(normalize_tag(t) for t in tags if normalize_tag(t)))

    def __contains__(self, tag: object) -> bool:
        return normalize_tag(tag) in self.tags

    def __len__(self) -> int:
        return len(self.tags)

    def apply_to_final_tags(self, tags: Iterable[str]) -> List[str]:
        """Drop blacklisted strings from an already-normalized tag list."""
        return [t for t in tags if normalize_tag(t) not in self.tags]


def load_blacklist(path: Path, filesystem_ops: FileSystemOperations = None) -> Blacklist:
    """
    Load the blacklist from a ``{"blacklistedTags": [...]}`` JSON document.

    Returns an empty blacklist, with a logged warning, if the file is missing,
    is not valid JSON, or the field is not an array of strings.
    """
    filesystem_ops = filesystem_ops or FileSystemOperations()

    if not path.exists():
        logger.warning(f"No blacklist file found at {path}; no tags will be filtered")
        return Blacklist()

    try:
        data = filesystem_ops.read_json(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"{path} is not a valid JSON file ({e}); no tags will be filtered")
        return Blacklist()

    tags = data.get(BLACKLIST_FIELD) if isinstance(data, dict) else None
    if not isinstance(tags, list):
        logger.warning(f'"{BLACKLIST_FIELD}" in {path} is not an array; no tags will be filtered')
        return Blacklist()

    if not all(isinstance(t, str) for t in tags):
        logger.warning(f'"{BLACKLIST_FIELD}" in {path} contains non-string entries; no tags will be filtered')
        return Blacklist()

    blacklist = Blacklist.from_iterable(tags)
    logger.info(f"Loaded {len(blacklist)} blacklisted tags from {path}")
    return blacklist


def filter_blacklisted_tags(
    raw_tags: Iterable[str],
    blacklist: Optional[Blacklist]
) -> Tuple[List[str], List[str]]:
    """
    Partition raw tags into (kept, removed) by blacklist membership.

    Both lists hold normalized strings, in input order.
    """
    blacklisted = blacklist.tags if blacklist else frozenset()
    kept = []
    removed = []

    for tag in raw_tags:
        normalized = normalize_tag(tag)
        if normalized in blacklisted:
            removed.append(normalized)
        else:
            kept.append(normalized)

    return kept, removed


def save_blacklist(
    path: Path,
    tags: Iterable[str],
    model: str,
    prompt: str,
    timestamp: str,
    filesystem_ops: FileSystemOperations = None
) -> None:
    """Write the blacklist sorted case-insensitively, replacing the file atomically."""
    filesystem_ops = filesystem_ops or FileSystemOperations()
    final_list = sorted({normalize_tag(t) for t in tags if normalize_tag(t)}, key=lambda t: (t.casefold(), t))

    filesystem_ops.write_json_atomic(path, {
        BLACKLIST_FIELD: final_list,
        'lastUpdated': timestamp,
        'model': model,
        'prompt': prompt,
    })
