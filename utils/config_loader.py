"""
Configuration management for the tag-map pipeline.

This module handles loading and validating configuration from YAML files
with sensible defaults and environment variable support, and loads the
per-stage oracle prompts into an immutable prompt set.
"""

import json
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field

from utils.exceptions import ConfigurationError, PromptFileError

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_MODEL = "gemma3:4b"
DEFAULT_OLLAMA_HOST = "http://localhost:11434"

# Bare --limit flag value
DEFAULT_LIMIT = 20

PROMPT_FILES = {
    'canonicalizer': "tag-canonicalizer-prompt.txt",
    'splitter': "tag-splitter-prompt.txt",
    'classifier': "tag-classifier-prompt.txt",
    'descriptor': "tag-descriptor-prompt.txt",
    'subgenre': "tag-subgenre-prompt.txt",
    'blacklist': "tag-blacklist-prompt.txt",
}


@dataclass
class TagMapConfig:
    """Structured configuration class with defaults."""

    api: dict = field(default_factory=lambda: {
        'provider': "ollama",          # "ollama" (native /api/chat) or "openai"
        'model': DEFAULT_MODEL,
        'host': DEFAULT_OLLAMA_HOST,
        'timeout_seconds': 120.0,
        'max_retries': 0,
        'temperature': 0.0,
        'top_p': 0.1,
    })

    paths: dict = field(default_factory=lambda: {
        'songs_dir': "server/assets/songs",
        'results_file': "data/tag-map-results.jsonl",
        'blacklist_file': "server/assets/tag-blacklist.json",
        'blacklist_results_file': "data/tag-blacklist-model-results.jsonl",
        'mapping_file': "server/assets/tag-expanded-mappings.json",
        'prompts_dir': "prompts",
        'api_cache_file': "~/.cache/tag-map/oracle-responses.json",
        'log_file': "data/tag-map.log",
    })

    pipeline: dict = field(default_factory=lambda: {
        'batch_size': 1,
        'default_limit': DEFAULT_LIMIT,
        'tag_sources': [
            ["lastfm", "tags"],
            ["musicbrainz", "artistTags"],
            ["musicbrainz", "artistGenres"],
            ["musicbrainz", "genres"],
        ],
        'blacklist_final_tags': True,
    })

    blacklist: dict = field(default_factory=lambda: {
        'batch_size': 20,
    })

    caching: dict = field(default_factory=lambda: {
        'enabled': True,
        'cache_expiry_days': 30,
    })

    logging: dict = field(default_factory=lambda: {
        'level': "INFO",
    })


@dataclass(frozen=True)
class PromptSet:
    """System prompts for every oracle stage, loaded once at startup."""

    canonicalizer: str
    splitter: str
    classifier: str
    descriptor: str
    subgenre: str
    blacklist: str = ""


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file with defaults and environment variable support.

    Args:
        config_path: Path to configuration file (optional)

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config_dict = _dataclass_to_dict(TagMapConfig())

    if config_path and config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                file_config = yaml.safe_load(f)
                if file_config:
                    if not isinstance(file_config, dict):
                        raise ConfigurationError(
                            f"Config file {config_path} must contain a mapping"
                        )
                    config_dict = _merge_configs(config_dict, file_config)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except IOError as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}")

    config_dict = _apply_env_overrides(config_dict)

    _validate_config(config_dict)

    return config_dict


def resolve_path(value: str, base_dir: Path = PROJECT_ROOT) -> Path:
    """Expand ~ and anchor relative paths at the project root."""
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def load_prompts(prompts_dir: Path, require_blacklist: bool = False) -> PromptSet:
    """
    Load every stage prompt from a directory.

    A missing or empty prompt file fails fast: every call of that stage would
    otherwise be meaningless.

    Raises:
        PromptFileError: If a mandatory prompt is missing or empty
    """
    prompts = {}
    for stage, filename in PROMPT_FILES.items():
        mandatory = stage != 'blacklist' or require_blacklist
        prompt_path = prompts_dir / filename
        try:
            text = prompt_path.read_text(encoding='utf-8').strip()
        except OSError as e:
            if mandatory:
                raise PromptFileError(str(prompt_path), str(e))
            text = ""
        if mandatory and not text:
            raise PromptFileError(str(prompt_path), "prompt file is empty")
        prompts[stage] = text

    return PromptSet(**prompts)


def _dataclass_to_dict(obj) -> Dict[str, Any]:
    """Convert dataclass to dictionary recursively."""
    if hasattr(obj, '__dataclass_fields__'):
        return {
            field_name: _dataclass_to_dict(getattr(obj, field_name))
            for field_name in obj.__dataclass_fields__
        }
    elif isinstance(obj, dict):
        return {k: _dataclass_to_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_dataclass_to_dict(item) for item in obj]
    else:
        return obj


def _merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge configuration dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    TAG_MAP_MODEL and OLLAMA_HOST override the oracle model and address.
    Other variables prefixed with TAG_MAP_ use double underscores to
    represent nested keys.

    Examples:
        TAG_MAP_API__MAX_RETRIES=2
        TAG_MAP_LOGGING__LEVEL=DEBUG
    """
    prefix = "TAG_MAP_"

    for env_var, value in sorted(os.environ.items()):
        if not env_var.startswith(prefix) or env_var == "TAG_MAP_MODEL":
            continue

        key_path = env_var[len(prefix):].lower().split('__')
        if len(key_path) < 2 or not all(key_path):
            continue

        _set_nested_value(config, key_path, _convert_env_value(value))

    model = os.environ.get("TAG_MAP_MODEL")
    if model:
        config.setdefault('api', {})['model'] = model

    host = os.environ.get("OLLAMA_HOST")
    if host:
        config.setdefault('api', {})['host'] = host

    return config


def _convert_env_value(value: str) -> Any:
    """Convert environment variable string to appropriate Python type."""
    if value.lower() in ('true', 'yes', 'on'):
        return True
    elif value.lower() in ('false', 'no', 'off'):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if value.startswith(('[', '{')):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

    return value


def _set_nested_value(config: Dict[str, Any], key_path: list, value: Any):
    """Set a value in a nested dictionary using a list of keys."""
    current = config

    for key in key_path[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[key_path[-1]] = value


def _validate_config(config: Dict[str, Any]):
    """
    Validate configuration values.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    api_config = config.get('api', {})

    provider = api_config.get('provider', 'ollama')
    if provider not in ('ollama', 'openai'):
        raise ConfigurationError("api.provider must be 'ollama' or 'openai'")

    model = api_config.get('model')
    if not isinstance(model, str) or not model.strip():
        raise ConfigurationError("api.model must be a non-empty string")

    host = api_config.get('host')
    if not isinstance(host, str) or not host.startswith(('http://', 'https://')):
        raise ConfigurationError("api.host must be an http(s) URL")

    max_retries = api_config.get('max_retries', 0)
    if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
        raise ConfigurationError("api.max_retries must be a non-negative integer")

    timeout_seconds = api_config.get('timeout_seconds', 120.0)
    if not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0:
        raise ConfigurationError("api.timeout_seconds must be a positive number")

    pipeline_config = config.get('pipeline', {})

    batch_size = pipeline_config.get('batch_size', 1)
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size < 1:
        raise ConfigurationError("pipeline.batch_size must be a positive integer")

    default_limit = pipeline_config.get('default_limit', DEFAULT_LIMIT)
    if not isinstance(default_limit, int) or default_limit < 1:
        raise ConfigurationError("pipeline.default_limit must be a positive integer")

    tag_sources = pipeline_config.get('tag_sources', [])
    if not isinstance(tag_sources, list):
        raise ConfigurationError("pipeline.tag_sources must be a list of [namespace, field] pairs")
    for pair in tag_sources:
        if (not isinstance(pair, (list, tuple)) or len(pair) != 2
                or not all(isinstance(part, str) and part for part in pair)):
            raise ConfigurationError(
                f"pipeline.tag_sources entry must be a [namespace, field] pair: {pair!r}"
            )

    blacklist_config = config.get('blacklist', {})
    bl_batch_size = blacklist_config.get('batch_size', 20)
    if not isinstance(bl_batch_size, int) or isinstance(bl_batch_size, bool) or bl_batch_size < 1:
        raise ConfigurationError("blacklist.batch_size must be a positive integer")

    logging_config = config.get('logging', {})
    log_level = str(logging_config.get('level', 'INFO'))
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if log_level.upper() not in valid_levels:
        raise ConfigurationError(f"logging.level must be one of {valid_levels}")

    caching_config = config.get('caching', {})
    expiry_days = caching_config.get('cache_expiry_days', 30)
    if not isinstance(expiry_days, int) or expiry_days < 1:
        raise ConfigurationError("caching.cache_expiry_days must be a positive integer")

