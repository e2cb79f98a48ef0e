import json

import pytest

from conftest import write_song
from filesystem.corpus import MetadataCorpus, load_all_tags
from utils.exceptions import CorpusError

TAG_SOURCES = [["lastfm", "tags"], ["musicbrainz", "artistTags"], ["musicbrainz", "genres"]]


def test_collects_local_and_namespaced_tags(tmp_path):
    write_song(tmp_path, "a", {
        "tags": ["Deep House", "", "   ", 7, None],
        "lastfm": {"tags": ["house", {"name": "Chill"}]},
        "musicbrainz": {"genres": "electronic", "artistTags": [{"count": 2}]},
    })

    assert load_all_tags(tmp_path, TAG_SOURCES) == ["Deep House", "house", "Chill", "electronic"]


def test_keeps_duplicates(tmp_path):
    write_song(tmp_path, "a", {"tags": ["rock"]})
    write_song(tmp_path, "b", {"tags": ["rock", "Rock"]})

    assert load_all_tags(tmp_path, TAG_SOURCES) == ["rock", "rock", "Rock"]


def test_unparsable_records_are_skipped(tmp_path, caplog):
    write_song(tmp_path, "good", {"tags": ["jazz"]})
    (tmp_path / "bad.json").write_text("{oops", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("not a record", encoding="utf-8")

    corpus = MetadataCorpus(tmp_path, TAG_SOURCES)

    assert corpus.load_all_tags() == ["jazz"]
    assert corpus.files_read == 1
    assert corpus.files_skipped == 1
    assert "Could not parse tags" in caplog.text


def test_array_files_hold_several_records(tmp_path):
    (tmp_path / "batch.json").write_text(
        json.dumps([{"tags": ["a"]}, "noise", {"lastfm": {"tags": ["b"]}}]), encoding="utf-8"
    )

    assert load_all_tags(tmp_path, TAG_SOURCES) == ["a", "b"]


def test_non_recursive_by_default(tmp_path):
    write_song(tmp_path, "top", {"tags": ["top"]})
    write_song(tmp_path / "nested", "deep", {"tags": ["deep"]})

    assert MetadataCorpus(tmp_path, TAG_SOURCES).load_all_tags() == ["top"]
    assert MetadataCorpus(tmp_path, TAG_SOURCES, recursive=True).load_all_tags() == ["deep", "top"]


def test_missing_corpus_directory_raises(tmp_path):
    with pytest.raises(CorpusError):
        load_all_tags(tmp_path / "missing", TAG_SOURCES)
