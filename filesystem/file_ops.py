"""
Filesystem operations for metadata records, JSON state files and JSONL logs.

All paths are pathlib-based. JSON state files (blacklist, mapping export) are
replaced atomically; JSONL logs are only ever appended to.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List

from utils.exceptions import FilesystemError

logger = logging.getLogger(__name__)


class FileSystemOperations:
    """Handles all filesystem operations with proper error handling."""

    def __init__(self, metadata_extensions: Iterable[str] = ('.json', '.json5'),
                 ignored_dirs: Iterable[str] = ()):
        """
        Initialize filesystem operations.

        Args:
            metadata_extensions: Metadata record file extensions (with dots)
            ignored_dirs: Directory names to ignore during recursive scanning
        """
        self.metadata_extensions = {ext.lower() for ext in metadata_extensions}
        self.ignored_dirs = {name.lower() for name in ignored_dirs}

    def discover_metadata_files(self, root_dir: Path, recursive: bool = False) -> List[Path]:
        """
        Discover metadata record files in a directory, sorted by path.

        Raises:
            FilesystemError: If the root directory cannot be accessed
        """
        if not root_dir.exists():
            raise FilesystemError(str(root_dir), "scan", "Directory does not exist")

        if not root_dir.is_dir():
            raise FilesystemError(str(root_dir), "scan", "Path is not a directory")

        try:
            pattern = "**/*" if recursive else "*"
            found = []
            for path in root_dir.glob(pattern):
                if not path.is_file():
                    continue
                if self._should_ignore_parent(path, root_dir):
                    continue
                if path.suffix.lower() in self.metadata_extensions:
                    found.append(path)
            return sorted(found)

        except PermissionError as e:
            raise FilesystemError(str(root_dir), "scan", f"Permission denied: {e}")
        except OSError as e:
            raise FilesystemError(str(root_dir), "scan", f"OS error: {e}")

    def _should_ignore_parent(self, file_path: Path, root_dir: Path) -> bool:
        """Check if any directory between root and file should be ignored."""
        try:
            relative_parents = file_path.relative_to(root_dir).parents
        except ValueError:
            return False
        return any(parent.name.lower() in self.ignored_dirs for parent in relative_parents)

    def read_json(self, path: Path) -> Any:
        """
        Read and parse a JSON document.

        Raises:
            OSError: If the file cannot be read
            json.JSONDecodeError: If the content is not valid JSON
        """
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def write_json_atomic(self, path: Path, data: Any, indent: int = 2) -> None:
        """
        Replace a JSON file atomically via a temporary file in the same directory.

        Raises:
            FilesystemError: If the file cannot be written
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, ensure_ascii=False, indent=indent)
                    f.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise FilesystemError(str(path), "write", str(e))

    def append_jsonl(self, path: Path, objects: List[Dict[str, Any]]) -> int:
        """
        Append objects to a JSONL file, one compact object per line.

        All lines of one call are written with a single write so a batch is
        appended as a unit.

        Returns:
            Number of lines appended

        Raises:
            FilesystemError: If the file cannot be written
        """
        if not objects:
            return 0

        lines = "".join(
            json.dumps(obj, ensure_ascii=False, separators=(',', ':')) + "\n"
            for obj in objects
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Terminate a line torn by an earlier crash before appending
            if path.exists() and path.stat().st_size > 0:
                with open(path, 'rb') as tail:
                    tail.seek(-1, os.SEEK_END)
                    if tail.read(1) != b"\n":
                        lines = "\n" + lines
            with open(path, 'a', encoding='utf-8') as f:
                f.write(lines)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise FilesystemError(str(path), "append", str(e))

        return len(objects)

    def iter_jsonl(self, path: Path) -> Iterator[Dict[str, Any]]:
        """
        Yield the JSON objects of a JSONL file.

        Blank lines are ignored; unparsable lines and non-object lines are
        skipped with a warning. A missing file yields nothing.
        """
        if not path.exists():
            return

        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                for line_number, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"Could not parse JSONL line {line_number} in {path}: {line[:200]}")
                        continue
                    if not isinstance(obj, dict):
                        logger.warning(f"Skipping non-object JSONL line {line_number} in {path}")
                        continue
                    yield obj
        except OSError as e:
            raise FilesystemError(str(path), "read", str(e))
