import json
import logging

import pytest

import main
from conftest import write_song


@pytest.mark.parametrize("value, expected", [
    (None, 20),
    ("5", 5),
    ("abc", None),
    ("0", None),
    ("-3", None),
])
def test_parse_limit(value, expected):
    limit, warning = main.parse_limit(value)

    assert limit == expected
    assert (warning is None) == (expected is not None)


def test_limit_flag_forms():
    assert not hasattr(main.parse_arguments([]), "limit")
    assert main.parse_arguments(["--limit"]).limit is None
    assert main.parse_arguments(["--limit=7"]).limit == "7"
    assert main.parse_arguments(["blacklist", "-l", "3"]).limit == "3"


def test_default_command_is_map():
    assert main.parse_arguments([]).command == "map"
    assert main.parse_arguments(["export"]).command == "export"


def test_bare_limit_before_command_keeps_the_command():
    args = main.parse_arguments(["--limit", "blacklist"])
    assert args.command == "blacklist"
    assert args.limit is None
    assert main.parse_limit(args.limit) == (20, None)

    args = main.parse_arguments(["-l", "export"])
    assert args.command == "export"
    assert args.limit is None

    assert main.parse_arguments(["--limit", "5"]).command == "map"


@pytest.fixture
def quiet_logging(monkeypatch):
    monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: logging.getLogger("tag-map"))


def write_config(tmp_path, **paths):
    config = {
        'paths': {
            'songs_dir': str(tmp_path / "songs"),
            'results_file': str(tmp_path / "results.jsonl"),
            'blacklist_file': str(tmp_path / "blacklist.json"),
            'mapping_file': str(tmp_path / "mapping.json"),
            'prompts_dir': str(tmp_path / "prompts"),
            'api_cache_file': str(tmp_path / "cache.json"),
            **paths,
        },
    }
    path = tmp_path / "config.yaml"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


def test_export_command(tmp_path, quiet_logging):
    (tmp_path / "results.jsonl").write_text(
        json.dumps({"source": "Dark Techno", "normalized_tags": ["dark techno", "techno", "seen live"]}) + "\n",
        encoding="utf-8"
    )
    (tmp_path / "blacklist.json").write_text(json.dumps({"blacklistedTags": ["seen live"]}), encoding="utf-8")

    assert main.main(["export", "--config", str(write_config(tmp_path))]) == 0

    mapping = json.loads((tmp_path / "mapping.json").read_text(encoding="utf-8"))
    assert mapping["mappings"] == {"dark techno": ["dark techno", "techno"]}


def test_missing_prompt_fails_fast(tmp_path, quiet_logging, capsys):
    write_song(tmp_path / "songs", "a", {"tags": ["rock"]})

    assert main.main(["--config", str(write_config(tmp_path))]) == 1
    assert "Cannot load stage prompt" in capsys.readouterr().err


def test_invalid_config_exits_with_error(tmp_path, quiet_logging, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("api:\n  max_retries: -1\n", encoding="utf-8")

    assert main.main(["--config", str(path)]) == 1
    assert "max_retries" in capsys.readouterr().err


def test_cli_overrides(tmp_path):
    args = main.parse_arguments([
        "--songs-dir", str(tmp_path), "--model", "qwen2.5:7b", "--batch-size", "4", "--no-cache"
    ])
    config = main.apply_cli_overrides(
        {'paths': {}, 'api': {}, 'pipeline': {}, 'blacklist': {}, 'caching': {}}, args
    )

    assert config['paths']['songs_dir'] == str(tmp_path)
    assert config['api']['model'] == "qwen2.5:7b"
    assert config['pipeline']['batch_size'] == 4
    assert config['blacklist']['batch_size'] == 4
    assert config['caching']['enabled'] is False
