"""
Entry assembly: merge the per-stage lookups into one TagMapEntry per raw tag.

Priority per part:
  1. SubgenreInfo is authoritative for genre/subgenre decisions
     (subgenre -> part as "subgenre" plus its parent as "genre").
  2. Without SubgenreInfo, a classifier "genre"/"subgenre" verdict is used.
  3. Descriptors are appended as "mood" when the classifier independently
     classified the same descriptor string as mood, else as "descriptor".

Stage omissions never fail an entry; they fall back to the canonical string
with type "other".
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from api.schemas import (
    CanonicalAction, CanonicalTag, ClassifiedTag, DescriptorInfo, SplitResult,
    SubgenreInfo, TagClass, TagMapEntry, TagType, utc_timestamp
)
from utils.text import normalize_tag

GENRE_CLASSES = (TagClass.GENRE.value, TagClass.SUBGENRE.value)


@dataclass
class StageLookups:
    """Per-batch stage outputs, keyed by normalized source string."""

    canonical_by_source: Dict[str, CanonicalTag] = field(default_factory=dict)
    split_by_source: Dict[str, SplitResult] = field(default_factory=dict)
    class_by_source: Dict[str, ClassifiedTag] = field(default_factory=dict)
    desc_by_source: Dict[str, DescriptorInfo] = field(default_factory=dict)
    sub_by_source: Dict[str, SubgenreInfo] = field(default_factory=dict)


def align_tag_types(tags: Sequence[str], types: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Deduplicate tags preserving first-seen order and realign their types.

    Each kept tag takes the type at its first position; missing types are
    padded with "other", surplus types are dropped.
    """
    aligned_tags = []
    aligned_types = []
    seen = set()

    for index, tag in enumerate(tags):
        if tag in seen:
            continue
        seen.add(tag)
        aligned_tags.append(tag)
        aligned_types.append(types[index] if index < len(types) else TagType.OTHER.value)

    return aligned_tags, aligned_types


class _FinalTags:
    """Ordered final tag list that refuses duplicates."""

    def __init__(self):
        self.tags: List[str] = []
        self.types: List[str] = []

    def add(self, tag: str, tag_type: TagType) -> bool:
        if not tag or tag in self.tags:
            return False
        self.tags.append(tag)
        self.types.append(tag_type.value)
        return True

    def __len__(self) -> int:
        return len(self.tags)


class EntryAssembler:
    """Builds TagMapEntry records from stage lookups; never raises for missing data."""

    def __init__(self, model_name: str):
        self.model_name = model_name

    def assemble(
        self,
        raw_tag: str,
        lookups: StageLookups,
        created_at: Optional[str] = None
    ) -> TagMapEntry:
        created_at = created_at or utc_timestamp()
        canonical = lookups.canonical_by_source.get(normalize_tag(raw_tag))

        if canonical is None:
            return self._fallback_entry(raw_tag, created_at)

        split = lookups.split_by_source.get(canonical.canonical) or SplitResult(
            source=canonical.canonical,
            parts=[canonical.canonical],
            reason="Not split by model."
        )

        final = _FinalTags()
        relevant: Dict[str, None] = {}

        for part in split.parts:
            part = normalize_tag(part)
            if not part:
                continue
            relevant[part] = None

            self._resolve_genre(part, lookups, final, relevant)
            self._resolve_descriptors(part, lookups, final, relevant)

        if not len(final):
            fallback = canonical.canonical or normalize_tag(raw_tag)
            final.add(fallback, TagType.OTHER)
            relevant[fallback] = None

        normalized_tags, tag_types = align_tag_types(final.tags, final.types)

        return TagMapEntry(
            source=raw_tag,
            normalized_tags=normalized_tags,
            tag_types=tag_types,
            canonical_stage=canonical,
            split_stage=split,
            classification_stage=[
                lookups.class_by_source[s] for s in relevant if s in lookups.class_by_source
            ],
            descriptor_stage=[
                lookups.desc_by_source[s] for s in relevant if s in lookups.desc_by_source
            ],
            subgenre_stage=[
                lookups.sub_by_source[s] for s in relevant if s in lookups.sub_by_source
            ],
            model=self.model_name,
            created_at=created_at,
        )

    def _resolve_genre(self, part: str, lookups: StageLookups, final: _FinalTags,
                       relevant: Dict[str, None]):
        sub = lookups.sub_by_source.get(part)

        if sub is not None:
            if sub.is_subgenre:
                final.add(part, TagType.SUBGENRE)
                parent = normalize_tag(sub.parent_genre)
                if parent:
                    final.add(parent, TagType.GENRE)
                    relevant[parent] = None
            else:
                final.add(part, TagType.GENRE)
            return

        cls = lookups.class_by_source.get(part)
        if cls is not None and cls.tag_class in GENRE_CLASSES:
            tag_type = TagType.SUBGENRE if cls.tag_class == TagClass.SUBGENRE.value else TagType.GENRE
            final.add(part, tag_type)

    def _resolve_descriptors(self, part: str, lookups: StageLookups, final: _FinalTags,
                             relevant: Dict[str, None]):
        desc = lookups.desc_by_source.get(part)
        if desc is None:
            return

        # invalid_descriptors are dropped
        for descriptor in desc.descriptors:
            descriptor = normalize_tag(descriptor)
            if not descriptor:
                continue
            relevant[descriptor] = None

            cls = lookups.class_by_source.get(descriptor)
            is_mood = cls is not None and cls.tag_class == TagClass.MOOD.value
            final.add(descriptor, TagType.MOOD if is_mood else TagType.DESCRIPTOR)

    def _fallback_entry(self, raw_tag: str, created_at: str) -> TagMapEntry:
        """Entry for a raw tag the canonicalizer left out of its response."""
        canonical_text = normalize_tag(raw_tag)

        return TagMapEntry(
            source=raw_tag,
            normalized_tags=[canonical_text],
            tag_types=[TagType.OTHER.value],
            canonical_stage=CanonicalTag(
                source=raw_tag,
                canonical=canonical_text,
                action=CanonicalAction.IDENTITY.value,
                reason="No canonical mapping available; used raw tag as canonical."
            ),
            split_stage=SplitResult(
                source=canonical_text,
                parts=[canonical_text],
                reason="Not split (no canonical info)."
            ),
            model=self.model_name,
            created_at=created_at,
        )
