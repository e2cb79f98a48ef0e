"""
Persistence layers for the tag-map pipeline.

Result log: append-only JSONL of TagMapEntry records. It is the pipeline's
output and its resumption checkpoint: a source already present is never
processed again.

Oracle response cache: raw oracle response text keyed by a hash of the stage
prompt, model, payload and sampling options, so a re-run after a failed batch
does not repeat the stage calls that already succeeded.
"""

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from api.schemas import TagMapEntry
from filesystem.file_ops import FileSystemOperations
from utils.exceptions import CacheError, FilesystemError
from utils.text import normalize_tag

logger = logging.getLogger(__name__)


class ResultLog:
    """Append-only TagMapEntry log."""

    def __init__(self, results_file: Path, filesystem_ops: FileSystemOperations = None):
        self.results_file = results_file
        self.filesystem_ops = filesystem_ops or FileSystemOperations()

    def load_entries(self) -> List[Dict[str, Any]]:
        """
        Load every parsable entry of the log.

        Unparsable lines are skipped with a warning.
        """
        try:
            return list(self.filesystem_ops.iter_jsonl(self.results_file))
        except FilesystemError as e:
            raise CacheError("result log", "load", str(e))

    def load_processed_sources(self) -> Set[str]:
        """Normalized ``source`` of every entry already in the log."""
        processed = set()
        for entry in self.load_entries():
            source = entry.get('source')
            if isinstance(source, str) and source:
                processed.add(normalize_tag(source))
        return processed

    def append_entries(self, entries: List[TagMapEntry]) -> int:
        """Append a whole batch of entries; never rewrites earlier lines."""
        try:
            return self.filesystem_ops.append_jsonl(
                self.results_file, [entry.to_json_dict() for entry in entries]
            )
        except FilesystemError as e:
            raise CacheError("result log", "append", str(e))


class OracleResponseCache:
    """JSON file cache of oracle responses with expiry."""

    def __init__(self, cache_file: Path, expiry_days: int = 30):
        self.cache_file = cache_file
        self.expiry_days = expiry_days
        self._dirty = False
        self._cache_data = self._load_cache()

    def _load_cache(self) -> Dict[str, Any]:
        try:
            if self.cache_file.exists():
                with open(self.cache_file, 'r', encoding='utf-8') as f:
                    cache_data = json.load(f)
                if isinstance(cache_data, dict):
                    logger.debug(f"Loaded oracle response cache with {len(cache_data)} entries")
                    return cache_data
                logger.warning(f"Ignoring oracle response cache with unexpected layout: {self.cache_file}")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Error loading oracle response cache: {e}")

        return {}

    def _save_cache(self):
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_file, 'w', encoding='utf-8') as f:
                json.dump(self._cache_data, f, ensure_ascii=False, indent=2)
            self._dirty = False
            logger.debug(f"Saved oracle response cache with {len(self._cache_data)} entries")
        except OSError as e:
            logger.warning(f"Error saving oracle response cache: {e}")

    @staticmethod
    def generate_cache_key(system_prompt: str, model: str, payload: str, **options) -> str:
        """Deterministic key for one oracle request."""
        key_data = {
            'system_prompt': system_prompt,
            'model': model,
            'payload': payload,
            'options': options,
        }
        key_str = json.dumps(key_data, sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(key_str.encode('utf-8')).hexdigest()

    def __len__(self) -> int:
        return len(self._cache_data)

    def get(self, cache_key: str) -> Optional[str]:
        """Cached response text, or None if absent or expired."""
        cached_entry = self._cache_data.get(cache_key)
        if not isinstance(cached_entry, dict):
            return None

        if time.time() - cached_entry.get('timestamp', 0) < (self.expiry_days * 24 * 3600):
            logger.debug("Oracle response cache hit")
            return cached_entry.get('response')

        del self._cache_data[cache_key]
        self._dirty = True
        logger.debug("Oracle response cache entry expired, removed")
        return None

    def put(self, cache_key: str, response: str, model: str):
        self._cache_data[cache_key] = {
            'timestamp': time.time(),
            'response': response,
            'model': model,
        }
        self._dirty = True

    def cleanup_expired_entries(self):
        """Remove expired cache entries."""
        expiry_threshold = self.expiry_days * 24 * 3600
        now = time.time()

        expired_keys = [
            key for key, entry in self._cache_data.items()
            if not isinstance(entry, dict) or now - entry.get('timestamp', 0) > expiry_threshold
        ]
        for key in expired_keys:
            del self._cache_data[key]

        if expired_keys:
            self._dirty = True
            logger.info(f"Removed {len(expired_keys)} expired oracle cache entries")

    def flush(self):
        """Write the cache to disk if it changed."""
        if self._dirty:
            self._save_cache()


class CacheManager:
    """Coordinates the result log and the optional oracle response cache."""

    def __init__(
        self,
        results_file: Path,
        api_cache_file: Optional[Path] = None,
        expiry_days: int = 30,
        filesystem_ops: FileSystemOperations = None
    ):
        self.result_log = ResultLog(results_file, filesystem_ops)
        self.response_cache = (
            OracleResponseCache(api_cache_file, expiry_days) if api_cache_file else None
        )

        if self.response_cache:
            self.response_cache.cleanup_expired_entries()

        logger.debug("Cache manager initialized")

    def load_processed_sources(self) -> Set[str]:
        return self.result_log.load_processed_sources()

    def append_entries(self, entries: List[TagMapEntry]) -> int:
        return self.result_log.append_entries(entries)

    def force_save_all(self):
        if self.response_cache:
            self.response_cache.flush()

    def get_cache_statistics(self) -> Dict[str, Any]:
        return {
            'results_file': str(self.result_log.results_file),
            'response_cache_file': str(self.response_cache.cache_file) if self.response_cache else None,
            'response_cache_entries': len(self.response_cache) if self.response_cache else 0,
        }
