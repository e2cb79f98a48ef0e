"""
LLM-assisted blacklist augmentation.

Corpus tags that are neither blacklisted nor already decided are sent to a
blacklist-classifier stage in batches. Every decision is appended to a JSONL
log (the resumption checkpoint), and newly blacklisted tags are merged into
the blacklist file after each batch.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set

from api.client import OracleClient
from api.schemas import BlacklistDecision, utc_timestamp
from filesystem.corpus import MetadataCorpus
from filesystem.file_ops import FileSystemOperations
from pipeline.blacklist import load_blacklist, save_blacklist
from pipeline.stages import BlacklistClassifierStage
from utils.logging_config import log_processing_progress
from utils.text import normalize_tag

logger = logging.getLogger(__name__)


class BlacklistAugmenter:
    """Resumable blacklist classification over the metadata corpus."""

    def __init__(
        self,
        api_client: OracleClient,
        prompt: str,
        corpus: MetadataCorpus,
        blacklist_file: Path,
        decisions_file: Path,
        batch_size: int = 20,
        prompt_name: str = "",
        filesystem_ops: FileSystemOperations = None
    ):
        """
        Args:
            api_client: Oracle client for the classifier calls
            prompt: Blacklist-classifier system prompt
            corpus: Metadata corpus to read tags from
            blacklist_file: Blacklist JSON file to extend
            decisions_file: JSONL log of every decision made so far
            batch_size: Tags per oracle call
            prompt_name: Prompt identifier recorded in the blacklist file
        """
        self.api_client = api_client
        self.stage = BlacklistClassifierStage(api_client, prompt)
        self.corpus = corpus
        self.blacklist_file = blacklist_file
        self.decisions_file = decisions_file
        self.batch_size = batch_size
        self.prompt_name = prompt_name
        self.filesystem_ops = filesystem_ops or FileSystemOperations()

    def load_decided_tags(self) -> Set[str]:
        decided = set()
        for line in self.filesystem_ops.iter_jsonl(self.decisions_file):
            tag = normalize_tag(line.get('tag'))
            if tag:
                decided.add(tag)
        return decided

    def pending_tags(self) -> List[str]:
        """Unique corpus tags still to classify, sorted case-insensitively."""
        unique_tags = {normalize_tag(t) for t in self.corpus.load_all_tags()}
        unique_tags.discard("")

        skip = self.load_decided_tags() | load_blacklist(self.blacklist_file, self.filesystem_ops).tags
        todo = sorted((t for t in unique_tags if t not in skip), key=lambda t: (t.casefold(), t))

        logger.info(f"Total unique tags: {len(unique_tags)}")
        logger.info(f"Already decided or blacklisted: {len(unique_tags) - len(todo)}")
        logger.info(f"Remaining to classify: {len(todo)}")
        return todo

    def merge_into_blacklist(self, decisions: List[BlacklistDecision]) -> int:
        """
        Add the tags decided "blacklist" to the blacklist file.

        Returns:
            Number of newly blacklisted tags (the file is untouched if zero)
        """
        current = set(load_blacklist(self.blacklist_file, self.filesystem_ops).tags)
        added = []

        for decision in decisions:
            if decision.is_blacklisted and decision.tag and decision.tag not in current:
                current.add(decision.tag)
                added.append(decision.tag)

        if not added:
            return 0

        save_blacklist(
            self.blacklist_file, current,
            model=self.api_client.model,
            prompt=self.prompt_name,
            timestamp=utc_timestamp(),
            filesystem_ops=self.filesystem_ops
        )
        logger.info(f"Blacklist updated: +{len(added)} tags ({', '.join(added)})")
        return len(added)

    def run(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Classify every pending tag; failing batches are logged and skipped.

        Returns:
            Counters: pending, batches_total, batches_failed, decisions_written, blacklisted
        """
        todo = self.pending_tags()
        if limit:
            todo = todo[:limit]
            logger.info(f"Limited classification to {limit} tags")

        stats = {
            'pending': len(todo),
            'batches_total': 0,
            'batches_failed': 0,
            'decisions_written': 0,
            'blacklisted': 0,
        }

        if not todo:
            logger.info("All tags already classified. Nothing to do.")
            return stats

        if not self.api_client.is_model_available():
            logger.warning(f"Model {self.api_client.model} is not listed by the oracle service")

        batches = [todo[i:i + self.batch_size] for i in range(0, len(todo), self.batch_size)]
        stats['batches_total'] = len(batches)

        for index, batch in enumerate(batches, start=1):
            try:
                decisions = [d for d in self.stage.process(batch) if d.tag]
                stats['decisions_written'] += self.filesystem_ops.append_jsonl(
                    self.decisions_file, [d.model_dump() for d in decisions]
                )
                stats['blacklisted'] += self.merge_into_blacklist(decisions)
            except Exception as e:
                stats['batches_failed'] += 1
                logger.error(f"Blacklist batch {index}/{len(batches)} failed: {e}")
                continue

            log_processing_progress(
                index, len(batches), logger, "Classified batch {current}/{total} ({percentage:.1f}%)"
            )

        logger.info(
            f"Blacklist classification finished: {stats['decisions_written']} decisions, "
            f"{stats['blacklisted']} newly blacklisted, {stats['batches_failed']} batches failed"
        )
        return stats
