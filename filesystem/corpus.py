"""
Tag extraction from the per-song metadata corpus.

Every record file may carry its own ``tags`` list plus nested namespace objects
(``lastfm``, ``musicbrainz``, ...) holding further tag lists. Extraction does no
deduplication; the batch runner dedupes over the whole corpus.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from filesystem.file_ops import FileSystemOperations
from utils.exceptions import CorpusError, FilesystemError

logger = logging.getLogger(__name__)

TagSource = Tuple[str, str]

LOCAL_TAGS_FIELD = "tags"


def _collect_strings(value: Any) -> List[str]:
    """Tag strings from a field value, skipping non-strings and blank strings."""
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []

    collected = []
    for item in items:
        # MusicBrainz exports sometimes store {"name": ..., "count": ...} objects
        if isinstance(item, dict):
            item = item.get("name")
        if isinstance(item, str) and item.strip():
            collected.append(item)
    return collected


class MetadataCorpus:
    """A directory of per-item JSON metadata records."""

    def __init__(
        self,
        songs_dir: Path,
        tag_sources: Sequence[Sequence[str]],
        filesystem_ops: FileSystemOperations = None,
        recursive: bool = False
    ):
        self.songs_dir = songs_dir
        self.tag_sources: List[TagSource] = [(str(ns), str(fld)) for ns, fld in tag_sources]
        self.filesystem_ops = filesystem_ops or FileSystemOperations()
        self.recursive = recursive

        self.files_read = 0
        self.files_skipped = 0

    def iter_records(self) -> Iterator[Dict[str, Any]]:
        """
        Yield every metadata record in the corpus.

        Files that cannot be read or parsed are skipped with a warning.

        Raises:
            CorpusError: If the corpus directory itself cannot be scanned
        """
        try:
            paths = self.filesystem_ops.discover_metadata_files(self.songs_dir, self.recursive)
        except FilesystemError as e:
            raise CorpusError(str(self.songs_dir), e.reason)

        for path in paths:
            try:
                data = self.filesystem_ops.read_json(path)
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Could not parse tags from file: {path} ({e})")
                self.files_skipped += 1
                continue

            self.files_read += 1

            if isinstance(data, dict):
                yield data
            elif isinstance(data, list):
                for item in data:
                    if isinstance(item, dict):
                        yield item
            else:
                logger.warning(f"Metadata file is not a JSON object: {path}")

    def tags_from_record(self, record: Dict[str, Any]) -> List[str]:
        """Raw tags of one record: local tags first, then configured sources in order."""
        tags = _collect_strings(record.get(LOCAL_TAGS_FIELD))

        for namespace, field_name in self.tag_sources:
            container = record.get(namespace)
            if isinstance(container, dict):
                tags.extend(_collect_strings(container.get(field_name)))

        return tags

    def load_all_tags(self) -> List[str]:
        """Every raw tag string in the corpus, duplicates included."""
        all_tags = []
        for record in self.iter_records():
            all_tags.extend(self.tags_from_record(record))

        logger.debug(f"Read {self.files_read} metadata files, skipped {self.files_skipped}")
        return all_tags


def load_all_tags(songs_dir: Path, tag_sources: Sequence[Sequence[str]]) -> List[str]:
    """Collect raw tags from every metadata record file in ``songs_dir``."""
    return MetadataCorpus(songs_dir, tag_sources).load_all_tags()
