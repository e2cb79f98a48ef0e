import json
from typing import Callable, Dict, List

import pytest

from api.client import OracleClient
from utils.config_loader import PromptSet, load_config
from utils.text import normalize_tag


class ScriptedTransport:
    """
    In-memory oracle transport.

    ``handlers`` maps a system prompt to a function that receives the request
    tags and returns the response text (or raises).
    """

    def __init__(self, handlers: Dict[str, Callable[[List[str]], str]], models=("gemma3:4b",)):
        self.handlers = handlers
        self.models = list(models)
        self.calls = []

    def chat(self, model, messages, options):
        system_prompt = messages[0]['content']
        tags = json.loads(messages[1]['content'])['tags']
        self.calls.append((system_prompt, tags))
        return self.handlers[system_prompt](tags)

    def list_models(self):
        return self.models

    def close(self):
        pass

    def calls_for(self, system_prompt):
        return [tags for prompt, tags in self.calls if prompt == system_prompt]


@pytest.fixture
def prompts():
    return PromptSet(
        canonicalizer="CANON",
        splitter="SPLIT",
        classifier="CLASSIFY",
        descriptor="DESCRIBE",
        subgenre="SUBGENRE",
        blacklist="BLACKLIST",
    )


# Hand-written oracle knowledge used by the pipeline tests
CANONICAL = {
    "deep house": ("deep house", "identity"),
    "rock / metal": ("rock / metal", "identity"),
    "dark techno": ("dark techno", "identity"),
    "dnb": ("drum and bass", "abbreviation_to_full"),
    "hiphop": ("hip hop", "alias_to_canonical"),
}
SPLITS = {
    "rock / metal": ["rock", "metal"],
}
CLASSES = {
    "deep house": "subgenre",
    "rock": "genre",
    "metal": "genre",
    "dark techno": "subgenre",
    "dark": "mood",
    "drum and bass": "genre",
    "hip hop": "genre",
}
DESCRIPTORS = {
    "dark techno": (["dark"], ["asdf"]),
}
SUBGENRES = {
    "deep house": (True, "house"),
    "rock": (False, ""),
    "metal": (False, ""),
    "dark techno": (True, "techno"),
    "drum and bass": (False, ""),
    "hip hop": (False, ""),
}


def canonicalize(tags):
    records = []
    for t in tags:
        key = normalize_tag(t)
        if key in CANONICAL:
            canonical, action = CANONICAL[key]
            records.append({"source": t, "canonical": canonical, "action": action, "reason": "r"})
    return json.dumps(records)


def split(tags):
    return json.dumps([{"source": t, "parts": SPLITS.get(t, [t]), "reason": "r"} for t in tags])


def classify(tags):
    return json.dumps([{"source": t, "class": CLASSES.get(t, "other"), "reason": "r"} for t in tags])


def describe(tags):
    items = []
    for t in tags:
        descriptors, invalid = DESCRIPTORS.get(t, ([], []))
        items.append({
            "source": t, "genre_like": "", "descriptors": descriptors,
            "invalid_descriptors": invalid, "reason": "r"
        })
    return json.dumps(items)


def subgenre(tags):
    return json.dumps([
        {"source": t, "is_subgenre": SUBGENRES[t][0], "parent_genre": SUBGENRES[t][1], "reason": "r"}
        for t in tags if t in SUBGENRES
    ])


@pytest.fixture
def transport(prompts):
    return ScriptedTransport({
        prompts.canonicalizer: canonicalize,
        prompts.splitter: split,
        prompts.classifier: classify,
        prompts.descriptor: describe,
        prompts.subgenre: subgenre,
    })


@pytest.fixture
def oracle_client(transport):
    return OracleClient(transport, model="gemma3:4b")


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ("TAG_MAP_MODEL", "OLLAMA_HOST"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config(None)
    cfg['paths'].update({
        'songs_dir': str(tmp_path / "songs"),
        'results_file': str(tmp_path / "data" / "results.jsonl"),
        'blacklist_file': str(tmp_path / "blacklist.json"),
        'blacklist_results_file': str(tmp_path / "data" / "blacklist-results.jsonl"),
        'mapping_file': str(tmp_path / "mapping.json"),
        'api_cache_file': str(tmp_path / "cache" / "oracle.json"),
        'log_file': str(tmp_path / "tag-map.log"),
    })
    cfg['caching']['enabled'] = False
    return cfg


def write_song(songs_dir, name, record):
    songs_dir.mkdir(parents=True, exist_ok=True)
    path = songs_dir / f"{name}.json"
    path.write_text(json.dumps(record), encoding="utf-8")
    return path
