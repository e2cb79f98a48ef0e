import json

from pipeline.blacklist import (
    BLACKLIST_FIELD, Blacklist, filter_blacklisted_tags, load_blacklist, save_blacklist
)
from utils.text import normalize_tag


def write_blacklist(path, payload):
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload, encoding="utf-8")
    return path


def test_load_blacklist_normalizes_entries(tmp_path):
    path = write_blacklist(tmp_path / "bl.json", {BLACKLIST_FIELD: ["Seen Live", "  favorites  "]})

    blacklist = load_blacklist(path)

    assert blacklist.tags == frozenset({"seen live", "favorites"})
    assert "SEEN   live" in blacklist


def test_missing_blacklist_is_empty(tmp_path, caplog):
    blacklist = load_blacklist(tmp_path / "missing.json")

    assert len(blacklist) == 0
    assert "No blacklist file" in caplog.text


def test_corrupt_blacklist_is_empty(tmp_path, caplog):
    path = write_blacklist(tmp_path / "bl.json", "{not json")

    assert len(load_blacklist(path)) == 0
    assert "not a valid JSON file" in caplog.text


def test_non_array_field_is_empty(tmp_path):
    path = write_blacklist(tmp_path / "bl.json", {BLACKLIST_FIELD: "seen live"})

    assert len(load_blacklist(path)) == 0


def test_non_string_members_give_empty_blacklist(tmp_path):
    path = write_blacklist(tmp_path / "bl.json", {BLACKLIST_FIELD: ["seen live", 3]})

    assert len(load_blacklist(path)) == 0


def test_filter_partitions_normalized_tags():
    blacklist = Blacklist.from_iterable(["seen live", "favorites"])
    raw = ["Deep House", "Seen Live", "rock", "FAVORITES", "rock"]

    kept, removed = filter_blacklisted_tags(raw, blacklist)

    assert kept == ["deep house", "rock", "rock"]
    assert removed == ["seen live", "favorites"]
    assert not set(kept) & blacklist.tags
    assert set(kept) | set(removed) == {normalize_tag(t) for t in raw}


def test_filter_without_blacklist_keeps_everything():
    kept, removed = filter_blacklisted_tags(["A", "b"], None)

    assert kept == ["a", "b"]
    assert removed == []


def test_apply_to_final_tags():
    blacklist = Blacklist.from_iterable(["electronic"])

    assert blacklist.apply_to_final_tags(["techno", "electronic", "dark"]) == ["techno", "dark"]


def test_save_blacklist_sorts_case_insensitively(tmp_path):
    path = tmp_path / "bl.json"

    save_blacklist(path, ["b", "A", "c", "a"], model="gemma3:4b", prompt="p.txt",
                   timestamp="2024-01-01T00:00:00Z")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data[BLACKLIST_FIELD] == ["a", "b", "c"]
    assert data["model"] == "gemma3:4b"
    assert data["prompt"] == "p.txt"
    assert data["lastUpdated"] == "2024-01-01T00:00:00Z"
    assert load_blacklist(path).tags == frozenset({"a", "b", "c"})
