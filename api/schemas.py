"""
Pydantic schemas for the tag-map pipeline.

These models define the records each oracle stage returns and the TagMapEntry
persisted to the result log. Validators coerce the loosely-typed oracle output:
string fields are normalized, missing fields fall back to safe defaults, and
unknown enum values degrade to the neutral member instead of failing the record.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.text import normalize_tag


class CanonicalAction(str, Enum):
    IDENTITY = "identity"
    ABBREVIATION_TO_FULL = "abbreviation_to_full"
    ALIAS_TO_CANONICAL = "alias_to_canonical"
    SPELLFIX_TO_CANONICAL = "spellfix_to_canonical"


class TagClass(str, Enum):
    GENRE = "genre"
    SUBGENRE = "subgenre"
    MOOD = "mood"
    DESCRIPTOR = "descriptor"
    INVALID = "invalid"
    OTHER = "other"


class TagType(str, Enum):
    """Type labels attached to final normalized tags."""

    GENRE = "genre"
    SUBGENRE = "subgenre"
    MOOD = "mood"
    DESCRIPTOR = "descriptor"
    OTHER = "other"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_normalized_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [normalize_tag(item) for item in value]


class StageRecord(BaseModel):
    """Common base: every record is keyed by a normalized source string."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    source: str = Field(default="", description="Input string this record describes")
    reason: str = Field(default="", description="Short explanation from the oracle")

    @field_validator('source', mode='before')
    @classmethod
    def normalize_source(cls, v):
        return normalize_tag(v)

    @field_validator('reason', mode='before')
    @classmethod
    def coerce_reason(cls, v):
        return _as_text(v)


class CanonicalTag(StageRecord):
    """Stage 1: raw tag -> single preferred spelling."""

    canonical: str = Field(default="", description="Normalized canonical form")
    action: CanonicalAction = Field(default=CanonicalAction.IDENTITY)

    @field_validator('canonical', mode='before')
    @classmethod
    def normalize_canonical(cls, v):
        return normalize_tag(v)

    @field_validator('action', mode='before')
    @classmethod
    def coerce_action(cls, v):
        v = normalize_tag(v)
        valid = {member.value for member in CanonicalAction}
        return v if v in valid else CanonicalAction.IDENTITY.value


class SplitResult(StageRecord):
    """Stage 2: canonical string -> independent semantic parts."""

    parts: List[str] = Field(default_factory=list)

    @field_validator('parts', mode='before')
    @classmethod
    def normalize_parts(cls, v):
        return _as_normalized_list(v)


class ClassifiedTag(StageRecord):
    """Stage 3: part -> tag class."""

    tag_class: TagClass = Field(default=TagClass.OTHER, alias="class")

    @field_validator('tag_class', mode='before')
    @classmethod
    def coerce_class(cls, v):
        v = normalize_tag(v)
        valid = {member.value for member in TagClass}
        return v if v in valid else TagClass.OTHER.value


class DescriptorInfo(StageRecord):
    """Stage 4: descriptors carried by a part."""

    genre_like: str = Field(default="", description="Advisory genre reading, not authoritative")
    descriptors: List[str] = Field(default_factory=list)
    invalid_descriptors: List[str] = Field(default_factory=list)

    @field_validator('genre_like', mode='before')
    @classmethod
    def normalize_genre_like(cls, v):
        return normalize_tag(v) if v else ""

    @field_validator('descriptors', 'invalid_descriptors', mode='before')
    @classmethod
    def normalize_descriptor_lists(cls, v):
        return _as_normalized_list(v)


class SubgenreInfo(StageRecord):
    """Stage 5: genre hierarchy for genre/subgenre parts."""

    is_subgenre: bool = False
    parent_genre: str = ""

    @field_validator('is_subgenre', mode='before')
    @classmethod
    def coerce_is_subgenre(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ('true', 'yes', '1')
        return bool(v)

    @field_validator('parent_genre', mode='before')
    @classmethod
    def normalize_parent(cls, v):
        return normalize_tag(v) if v else ""


class BlacklistDecision(BaseModel):
    """Blacklist-classifier verdict for a single tag."""

    model_config = ConfigDict(extra='allow')

    tag: str = ""
    decision: str = ""
    score: Optional[float] = None
    reason: str = ""

    @field_validator('tag', mode='before')
    @classmethod
    def normalize_tag_field(cls, v):
        return normalize_tag(v)

    @field_validator('decision', mode='before')
    @classmethod
    def normalize_decision(cls, v):
        return normalize_tag(v)

    @field_validator('score', mode='before')
    @classmethod
    def coerce_score(cls, v):
        try:
            return float(v) if v is not None else None
        except (TypeError, ValueError):
            return None

    @field_validator('reason', mode='before')
    @classmethod
    def coerce_reason(cls, v):
        return _as_text(v)

    @property
    def is_blacklisted(self) -> bool:
        return self.decision == "blacklist"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class TagMapEntry(BaseModel):
    """One persisted result-log line: the full mapping for one raw tag."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    source: str = Field(..., description="Raw tag as seen in metadata")
    normalized_tags: List[str] = Field(default_factory=list)
    tag_types: List[TagType] = Field(default_factory=list)
    canonical_stage: CanonicalTag
    split_stage: SplitResult
    classification_stage: List[ClassifiedTag] = Field(default_factory=list)
    descriptor_stage: List[DescriptorInfo] = Field(default_factory=list)
    subgenre_stage: List[SubgenreInfo] = Field(default_factory=list)
    model: str = ""
    created_at: str = Field(default_factory=utc_timestamp)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


class TagMapRunStats(BaseModel):
    """Counters reported at the end of a mapping run."""

    raw_tags: int = 0
    unique_tags: int = 0
    blacklisted: int = 0
    kept: int = 0
    already_processed: int = 0
    to_process: int = 0
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    entries_written: int = 0


class MappingFile(BaseModel):
    """App-facing tag -> canonical tags mapping."""

    updated_at: str = Field(default_factory=utc_timestamp)
    mappings: Dict[str, List[str]] = Field(default_factory=dict)
