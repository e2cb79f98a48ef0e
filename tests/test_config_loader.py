import pytest
import yaml

from utils.config_loader import (
    DEFAULT_MODEL, DEFAULT_OLLAMA_HOST, PROMPT_FILES, PROJECT_ROOT, load_config, load_prompts,
    resolve_path
)
from utils.exceptions import ConfigurationError, PromptFileError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for var in ("TAG_MAP_MODEL", "OLLAMA_HOST"):
        monkeypatch.delenv(var, raising=False)


def write_prompts(prompts_dir, skip=()):
    prompts_dir.mkdir(parents=True, exist_ok=True)
    for stage, filename in PROMPT_FILES.items():
        if stage not in skip:
            (prompts_dir / filename).write_text(f"{stage} prompt\n", encoding="utf-8")
    return prompts_dir


def test_defaults():
    config = load_config(None)

    assert config['api']['model'] == DEFAULT_MODEL == "gemma3:4b"
    assert config['api']['host'] == DEFAULT_OLLAMA_HOST == "http://localhost:11434"
    assert config['api']['temperature'] == 0.0
    assert config['api']['top_p'] == 0.1
    assert config['pipeline']['batch_size'] == 1
    assert config['pipeline']['default_limit'] == 20


def test_yaml_file_is_merged(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("api:\n  model: qwen2.5:7b\npipeline:\n  batch_size: 5\n", encoding="utf-8")

    config = load_config(path)

    assert config['api']['model'] == "qwen2.5:7b"
    assert config['api']['host'] == DEFAULT_OLLAMA_HOST
    assert config['pipeline']['batch_size'] == 5
    assert config['pipeline']['tag_sources'][0] == ["lastfm", "tags"]


def test_model_and_host_environment(monkeypatch):
    monkeypatch.setenv("TAG_MAP_MODEL", "mistral:7b")
    monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434")

    config = load_config(None)

    assert config['api']['model'] == "mistral:7b"
    assert config['api']['host'] == "http://gpu-box:11434"


def test_nested_environment_overrides(monkeypatch):
    monkeypatch.setenv("TAG_MAP_API__MAX_RETRIES", "2")
    monkeypatch.setenv("TAG_MAP_LOGGING__LEVEL", "DEBUG")
    monkeypatch.setenv("TAG_MAP_PIPELINE__BLACKLIST_FINAL_TAGS", "false")

    config = load_config(None)

    assert config['api']['max_retries'] == 2
    assert config['logging']['level'] == "DEBUG"
    assert config['pipeline']['blacklist_final_tags'] is False


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("api: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(path)


@pytest.mark.parametrize("section, key, value", [
    ("api", "host", "localhost:11434"),
    ("api", "max_retries", -1),
    ("pipeline", "batch_size", 0),
    ("pipeline", "tag_sources", [["lastfm"]]),
    ("logging", "level", "LOUD"),
])
def test_invalid_values_raise(tmp_path, section, key, value):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({section: {key: value}}), encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_load_prompts(tmp_path):
    prompts = load_prompts(write_prompts(tmp_path / "prompts"))

    assert prompts.canonicalizer == "canonicalizer prompt"
    assert prompts.subgenre == "subgenre prompt"


def test_missing_stage_prompt_fails_fast(tmp_path):
    prompts_dir = write_prompts(tmp_path / "prompts", skip=("splitter",))

    with pytest.raises(PromptFileError) as excinfo:
        load_prompts(prompts_dir)
    assert PROMPT_FILES['splitter'] in str(excinfo.value)


def test_empty_stage_prompt_fails_fast(tmp_path):
    prompts_dir = write_prompts(tmp_path / "prompts")
    (prompts_dir / PROMPT_FILES['classifier']).write_text("  \n", encoding="utf-8")

    with pytest.raises(PromptFileError):
        load_prompts(prompts_dir)


def test_blacklist_prompt_only_required_on_request(tmp_path):
    prompts_dir = write_prompts(tmp_path / "prompts", skip=("blacklist",))

    assert load_prompts(prompts_dir).blacklist == ""
    with pytest.raises(PromptFileError):
        load_prompts(prompts_dir, require_blacklist=True)


def test_bundled_prompts_load():
    prompts = load_prompts(PROJECT_ROOT / "prompts", require_blacklist=True)
    assert "JSON array" in prompts.canonicalizer


def test_resolve_path(tmp_path):
    assert resolve_path("data/x.jsonl") == PROJECT_ROOT / "data" / "x.jsonl"
    assert resolve_path(str(tmp_path / "abs.json")) == tmp_path / "abs.json"
