import json

import pytest

from api.client import OracleClient
from api.schemas import CanonicalTag, ClassifiedTag, SubgenreInfo
from pipeline.stages import (
    CanonicalizerStage, ClassifierStage, DescriptorStage, SplitterStage, SubgenreStage,
    build_lookup
)
from utils.exceptions import MalformedOracleResponse


class StaticTransport:
    def __init__(self, content):
        self.content = content
        self.calls = 0

    def chat(self, model, messages, options):
        self.calls += 1
        return self.content


def stage_for(stage_cls, items):
    transport = StaticTransport(items if isinstance(items, str) else json.dumps(items))
    return stage_cls(OracleClient(transport, model="m"), "PROMPT"), transport


def test_empty_batch_skips_the_oracle():
    stage, transport = stage_for(CanonicalizerStage, [])
    assert stage.process([]) == []
    assert transport.calls == 0


def test_canonical_records_are_normalized_with_defaults():
    stage, _ = stage_for(CanonicalizerStage, [
        {"source": "  Deep  House", "canonical": "Deep House", "action": "identity", "reason": "ok"},
        {"source": "DnB", "canonical": "Drum And Bass", "action": "something_new"},
        {"source": "hiphop"},
    ])

    records = stage.process(["Deep House", "DnB", "hiphop"])

    assert [r.source for r in records] == ["deep house", "dnb", "hiphop"]
    assert records[0].canonical == "deep house"
    assert records[1].action == "identity"
    assert records[2].canonical == ""
    assert records[2].reason == ""


def test_non_object_elements_are_skipped(caplog):
    stage, _ = stage_for(SplitterStage, [
        "rock",
        None,
        {"source": "rock / metal", "parts": ["Rock", " METAL "]},
    ])

    records = stage.process(["rock / metal"])

    assert len(records) == 1
    assert records[0].parts == ["rock", "metal"]
    assert "skipping non-object element" in caplog.text


def test_classifier_reads_class_field():
    stage, _ = stage_for(ClassifierStage, [
        {"source": "dark", "class": "Mood"},
        {"source": "zzz", "class": "nonsense"},
        {"source": "seen live"},
    ])

    records = stage.process(["dark", "zzz", "seen live"])

    assert [r.tag_class for r in records] == ["mood", "other", "other"]
    assert records[0].model_dump(by_alias=True)["class"] == "mood"


def test_descriptor_defaults():
    stage, _ = stage_for(DescriptorStage, [{"source": "dark techno", "descriptors": ["Dark"]}])

    record = stage.process(["dark techno"])[0]

    assert record.descriptors == ["dark"]
    assert record.invalid_descriptors == []
    assert record.genre_like == ""


@pytest.mark.parametrize("value, expected", [
    (True, True), ("true", True), ("Yes", True), ("false", False), (None, False), (0, False),
])
def test_subgenre_flag_coercion(value, expected):
    stage, _ = stage_for(SubgenreStage, [{"source": "x", "is_subgenre": value, "parent_genre": "Y"}])
    record = stage.process(["x"])[0]
    assert record.is_subgenre is expected
    assert record.parent_genre == "y"


def test_malformed_response_propagates():
    stage, _ = stage_for(ClassifierStage, "I'm sorry, I can't help with that.")
    with pytest.raises(MalformedOracleResponse):
        stage.process(["rock"])


def test_build_lookup_skips_empty_keys_and_keeps_last_duplicate():
    records = [
        ClassifiedTag(source="rock", tag_class="genre"),
        ClassifiedTag(source="", tag_class="mood"),
        ClassifiedTag(source="Rock", tag_class="subgenre"),
    ]

    lookup = build_lookup(records)

    assert list(lookup) == ["rock"]
    assert lookup["rock"].tag_class == "subgenre"


def test_build_lookup_by_other_key():
    records = [SubgenreInfo(source="deep house", is_subgenre=True, parent_genre="house")]
    assert build_lookup(records)["deep house"].parent_genre == "house"
    assert build_lookup([CanonicalTag(source="a", canonical="b")], key="canonical")["b"].source == "a"
