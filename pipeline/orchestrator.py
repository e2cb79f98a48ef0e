"""
Pipeline orchestrator that coordinates the five-stage tag-map process.

This module manages the entire pipeline flow: corpus extraction, blacklist
pre-filtering, the oracle stages, entry assembly and the resumable batch loop
over the append-only result log. It also reduces the result log to the
app-facing mapping file.
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from api.client import OracleClient, create_oracle_client
from api.schemas import MappingFile, TagClass, TagMapEntry, TagMapRunStats, utc_timestamp
from caching.cache_manager import CacheManager
from filesystem.corpus import MetadataCorpus
from filesystem.file_ops import FileSystemOperations
from pipeline.assembler import EntryAssembler, StageLookups
from pipeline.blacklist import Blacklist, filter_blacklisted_tags, load_blacklist
from pipeline.stages import (
    CanonicalizerStage, ClassifierStage, DescriptorStage, SplitterStage, SubgenreStage,
    build_lookup
)
from utils.config_loader import PromptSet, resolve_path
from utils.logging_config import log_processing_progress
from utils.text import dedupe_preserve_order, normalize_tag

logger = logging.getLogger(__name__)


class TagMapPipeline:
    """
    Main pipeline orchestrator for tag normalization.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        prompts: PromptSet,
        oracle_client: Optional[OracleClient] = None,
        blacklist: Optional[Blacklist] = None,
        cache_manager: Optional[CacheManager] = None,
        corpus: Optional[MetadataCorpus] = None,
        use_cache: bool = True
    ):
        """
        Initialize the tag-map pipeline.

        Args:
            config: Configuration dictionary
            prompts: System prompts for the oracle stages
            oracle_client: Client to use instead of one built from ``config``
            blacklist: Blacklist to use instead of loading ``paths.blacklist_file``
            cache_manager: Result log / response cache to use instead of the configured ones
            corpus: Metadata corpus to use instead of ``paths.songs_dir``
            use_cache: Whether to cache raw oracle responses
        """
        self.config = config
        self.prompts = prompts
        paths = config['paths']

        self.filesystem_ops = FileSystemOperations()

        if cache_manager is None:
            caching_enabled = use_cache and config['caching'].get('enabled', True)
            cache_manager = CacheManager(
                results_file=resolve_path(paths['results_file']),
                api_cache_file=resolve_path(paths['api_cache_file']) if caching_enabled else None,
                expiry_days=config['caching']['cache_expiry_days'],
                filesystem_ops=self.filesystem_ops
            )
        self.cache_manager = cache_manager

        self.api_client = oracle_client or create_oracle_client(
            config, response_cache=self.cache_manager.response_cache
        )
        self.model_name = self.api_client.model

        self.blacklist = (
            blacklist if blacklist is not None
            else load_blacklist(resolve_path(paths['blacklist_file']), self.filesystem_ops)
        )

        self.corpus = corpus or MetadataCorpus(
            resolve_path(paths['songs_dir']),
            config['pipeline']['tag_sources'],
            filesystem_ops=self.filesystem_ops
        )

        self.batch_size = config['pipeline']['batch_size']

        # Initialize pipeline stages
        self.canonicalizer = CanonicalizerStage(self.api_client, prompts.canonicalizer)
        self.splitter = SplitterStage(self.api_client, prompts.splitter)
        self.classifier = ClassifierStage(self.api_client, prompts.classifier)
        self.descriptor_extractor = DescriptorStage(self.api_client, prompts.descriptor)
        self.subgenre_mapper = SubgenreStage(self.api_client, prompts.subgenre)
        self.assembler = EntryAssembler(self.model_name)

    def build_tag_map_for_batch(self, raw_tags: Sequence[str]) -> List[TagMapEntry]:
        """
        Run every stage over one batch and assemble one entry per raw tag.

        Raises:
            OracleCommunicationError: If any oracle call fails
            MalformedOracleResponse: If any oracle call returns unusable output
        """
        raw_tags = list(raw_tags)
        lookups = StageLookups()

        # Stage 1: Canonicalization
        lookups.canonical_by_source = build_lookup(self.canonicalizer.process(raw_tags))

        # Stage 2: Splitting
        canonical_tags = dedupe_preserve_order(
            c.canonical for c in lookups.canonical_by_source.values() if c.canonical
        )
        lookups.split_by_source = build_lookup(self.splitter.process(canonical_tags))

        unique_parts = dedupe_preserve_order(
            part
            for split in lookups.split_by_source.values()
            for part in split.parts
            if part
        )

        # Stage 3: Classification
        lookups.class_by_source = build_lookup(self.classifier.process(unique_parts))

        # Stage 4: Descriptor extraction
        lookups.desc_by_source = build_lookup(self.descriptor_extractor.process(unique_parts))

        # Stage 5: Subgenre hierarchy, genre-like parts only
        genre_parts = [
            part for part in unique_parts
            if part in lookups.class_by_source
            and lookups.class_by_source[part].tag_class in (TagClass.GENRE.value, TagClass.SUBGENRE.value)
        ]
        lookups.sub_by_source = build_lookup(self.subgenre_mapper.process(genre_parts))

        created_at = utc_timestamp()
        return [self.assembler.assemble(raw, lookups, created_at) for raw in raw_tags]

    def process_corpus(self, limit: Optional[int] = None) -> TagMapRunStats:
        """
        Map every unprocessed corpus tag, one batch at a time.

        A failing batch is logged and skipped; its tags stay unprocessed and
        are retried by the next run.

        Args:
            limit: Optional cap on the number of tags considered this run

        Returns:
            Run counters
        """
        logger.info(f"Starting tag-map run over {self.corpus.songs_dir}")
        start_time = time.time()
        stats = TagMapRunStats()

        raw_tags = self.corpus.load_all_tags()
        stats.raw_tags = len(raw_tags)

        # normalized key -> first-seen raw spelling
        representatives: Dict[str, str] = {}
        for tag in raw_tags:
            key = normalize_tag(tag)
            if key and key not in representatives:
                representatives[key] = tag
        stats.unique_tags = len(representatives)
        logger.info(f"Found {stats.raw_tags} raw tags ({stats.unique_tags} unique)")

        kept, removed = filter_blacklisted_tags(representatives, self.blacklist)
        stats.blacklisted = len(removed)
        stats.kept = len(kept)
        logger.info(f"Blacklist removed {stats.blacklisted} tags, {stats.kept} remain")
        if removed:
            logger.debug(f"Blacklisted tags: {', '.join(removed)}")

        if limit is not None:
            kept = kept[:limit]
            logger.info(f"Limited processing to {limit} tags")

        processed = self.cache_manager.load_processed_sources()
        todo = [representatives[key] for key in kept if key not in processed]
        stats.already_processed = len(kept) - len(todo)
        stats.to_process = len(todo)
        logger.info(
            f"{stats.already_processed} tags already processed, {stats.to_process} to process"
        )

        if not todo:
            logger.info("Nothing to do; all tags already processed")
            return stats

        if not self.api_client.is_model_available():
            logger.warning(
                f"Model {self.model_name} is not listed by the oracle service; "
                f"stage calls will probably fail"
            )

        batches = [todo[i:i + self.batch_size] for i in range(0, len(todo), self.batch_size)]
        stats.batches_total = len(batches)

        for index, batch in enumerate(batches, start=1):
            try:
                entries = self.build_tag_map_for_batch(batch)
                written = self.cache_manager.append_entries(entries)
            except Exception as e:
                stats.batches_failed += 1
                logger.error(f"Batch {index}/{stats.batches_total} failed, skipping {batch}: {e}")
                continue
            finally:
                self.cache_manager.force_save_all()

            stats.batches_succeeded += 1
            stats.entries_written += written
            log_processing_progress(
                index, stats.batches_total, logger, "Processed batch {current}/{total} ({percentage:.1f}%)"
            )

        processing_time = time.time() - start_time
        logger.info(
            f"Tag-map run finished in {processing_time:.2f} seconds: "
            f"{stats.entries_written} entries written, {stats.batches_failed} batches failed"
        )
        logger.debug(f"Oracle statistics: {self.api_client.get_statistics()}")
        logger.debug(f"Cache statistics: {self.cache_manager.get_cache_statistics()}")

        return stats

    def close(self):
        self.cache_manager.force_save_all()
        self.api_client.close()


def export_mapping(
    results_file: Path,
    mapping_file: Path,
    blacklist: Optional[Blacklist] = None,
    filesystem_ops: FileSystemOperations = None
) -> MappingFile:
    """
    Reduce the result log to ``{updated_at, mappings: {source: normalized_tags}}``.

    Entries sharing a normalized source are merged preserving order; entries
    with no tags left (after the optional blacklist post-filter) are skipped.
    The mapping file is replaced atomically.

    Raises:
        FilesystemError: If the mapping file cannot be written
    """
    filesystem_ops = filesystem_ops or FileSystemOperations()
    mappings: Dict[str, List[str]] = {}
    skipped = 0

    for entry in filesystem_ops.iter_jsonl(results_file):
        source = normalize_tag(entry.get('source'))
        tags = entry.get('normalized_tags')
        if not source or not isinstance(tags, list):
            skipped += 1
            continue

        tags = [normalize_tag(t) for t in tags if isinstance(t, str) and normalize_tag(t)]
        if blacklist is not None:
            tags = blacklist.apply_to_final_tags(tags)
        if not tags:
            skipped += 1
            continue

        mappings[source] = dedupe_preserve_order(mappings.get(source, []) + tags)

    mapping = MappingFile(updated_at=utc_timestamp(), mappings=mappings)
    filesystem_ops.write_json_atomic(mapping_file, mapping.model_dump())

    logger.info(f"Exported {len(mappings)} tag mappings to {mapping_file} ({skipped} entries skipped)")
    return mapping
