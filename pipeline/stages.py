"""
Oracle stages of the tag-map pipeline.

Stage 1: Canonicalizer - raw tag -> single canonical spelling
Stage 2: Splitter - canonical tag -> independent semantic parts
Stage 3: Classifier - part -> genre / subgenre / mood / descriptor / invalid / other
Stage 4: Descriptor extractor - part -> descriptors and an advisory genre reading
Stage 5: Subgenre mapper - genre/subgenre part -> parent genre

All stages share one call shape and differ only in prompt and record type.
"""

import logging
from typing import Dict, List, Sequence, Type

from pydantic import BaseModel, ValidationError

from api.client import OracleClient
from api.schemas import (
    BlacklistDecision, CanonicalTag, ClassifiedTag, DescriptorInfo, SplitResult, SubgenreInfo
)

logger = logging.getLogger(__name__)


class OracleStage:
    """Base class: send a batch to the oracle and decode one record per array element."""

    name = "oracle"
    record_model: Type[BaseModel] = BaseModel

    def __init__(self, api_client: OracleClient, prompt: str):
        self.api_client = api_client
        self.prompt = prompt

    def process(self, tags: Sequence[str]) -> List[BaseModel]:
        """
        Run the stage over ``tags``.

        A call with no tags returns an empty list without contacting the oracle.
        Transport and malformed-response errors propagate to the caller.
        """
        if not tags:
            return []

        items = self.api_client.request_array(self.prompt, tags, stage=self.name)
        records = self.decode_records(items)

        logger.debug(f"{self.name}: {len(tags)} tags in, {len(records)} records out")
        return records

    def decode_records(self, items: List) -> List[BaseModel]:
        """
        Decode array elements into records.

        Non-object elements are skipped; missing fields inside an object take
        their defaults, so one bad element never fails the whole stage.
        """
        records = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                logger.warning(f"{self.name}: skipping non-object element {index}: {str(item)[:200]}")
                continue
            try:
                records.append(self.record_model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"{self.name}: skipping invalid element {index}: {e}")
        return records


class CanonicalizerStage(OracleStage):
    """Stage 1: map raw tags to canonical spellings."""

    name = "canonicalizer"
    record_model = CanonicalTag


class SplitterStage(OracleStage):
    """Stage 2: split compound canonical tags into parts."""

    name = "splitter"
    record_model = SplitResult


class ClassifierStage(OracleStage):
    """Stage 3: classify parts."""

    name = "classifier"
    record_model = ClassifiedTag


class DescriptorStage(OracleStage):
    """Stage 4: extract descriptors from parts."""

    name = "descriptor"
    record_model = DescriptorInfo


class SubgenreStage(OracleStage):
    """Stage 5: resolve subgenres to parent genres."""

    name = "subgenre"
    record_model = SubgenreInfo


class BlacklistClassifierStage(OracleStage):
    """Decide whether corpus tags belong on the blacklist."""

    name = "blacklist"
    record_model = BlacklistDecision


def build_lookup(records: Sequence[BaseModel], key: str = "source") -> Dict[str, BaseModel]:
    """Index records by their normalized key; later duplicates replace earlier ones."""
    lookup = {}
    for record in records:
        value = getattr(record, key)
        if value:
            lookup[value] = record
    return lookup
