#!/usr/bin/env python3
"""
Regression checker for tag mapping against a live model.

Parses tests/regression_tag_cases.txt lines of the form:
  Raw Tag => tag:type, tag:type

Then runs every raw tag through the full stage pipeline and compares the
assembled normalized tags and types with the expectation. Uses the oracle
response cache to avoid redundant model calls.

NOTE: This requires a running oracle service with the configured model.
"""
import re
import sys
from pathlib import Path
from typing import List, Optional, Tuple

ROOT = Path(__file__).resolve().parents[1]
CASES_FILE = ROOT / "tests" / "regression_tag_cases.txt"

sys.path.insert(0, str(ROOT))

from caching.cache_manager import CacheManager
from pipeline.blacklist import Blacklist
from pipeline.orchestrator import TagMapPipeline
from utils.config_loader import load_config, load_prompts, resolve_path
from utils.exceptions import TagMapError

Expected = List[Tuple[str, str]]


def parse_case(line: str) -> Optional[Tuple[str, Expected]]:
    """Parse a test case line."""
    line = line.strip()
    if not line or line.startswith('#'):
        return None
    # Format: Raw Tag => tag:type, tag:type
    m = re.match(r"(.+?)\s*=>\s*(.+)$", line)
    if not m:
        return None
    raw, expected = m.group(1).strip(), m.group(2).strip()

    pairs = []
    for item in expected.split(','):
        tag, _, tag_type = item.strip().rpartition(':')
        pairs.append((tag.strip(), tag_type.strip()))
    return raw, pairs


def format_pairs(pairs: Expected) -> str:
    return ", ".join(f"{tag}:{tag_type}" for tag, tag_type in pairs)


def main() -> int:
    """Run regression tests."""
    config = load_config(ROOT / "config.yaml")
    prompts = load_prompts(resolve_path(config['paths']['prompts_dir']))

    # Results stay in memory; only the response cache is persisted
    cache_manager = CacheManager(
        results_file=Path("/dev/null"),
        api_cache_file=resolve_path(config['paths']['api_cache_file']),
        expiry_days=config['caching']['cache_expiry_days']
    )
    pipeline = TagMapPipeline(config, prompts, blacklist=Blacklist(), cache_manager=cache_manager)

    if not pipeline.api_client.is_model_available():
        print(f"ERROR: model {pipeline.model_name} is not available. Regression tests require the model.")
        return 1

    # Load test cases
    cases = []
    with open(CASES_FILE, 'r', encoding='utf-8') as f:
        for line in f:
            parsed = parse_case(line)
            if parsed:
                cases.append(parsed)

    total = len(cases)
    if total == 0:
        print("No test cases found.")
        return 0

    print(f"Running {total} regression tests with model {pipeline.model_name}...")

    passed = 0
    failures = []

    for i, (raw, expected) in enumerate(cases, 1):
        if i % 10 == 0:
            print(f"Progress: {i}/{total}")

        try:
            entry = pipeline.build_tag_map_for_batch([raw])[0]
            got = list(zip(entry.normalized_tags, entry.tag_types))
        except TagMapError as e:
            print(f"Error mapping {raw}: {e}")
            got = [("error", "other")]

        if got == expected:
            passed += 1
        else:
            failures.append((raw, expected, got))

    pipeline.close()

    print(f"\nRegression test results:")
    print(f"Checked {total} cases: {passed} passed, {len(failures)} failed.")
    print(f"Success rate: {passed/total*100:.1f}%")

    if failures:
        print(f"\n{len(failures)} Failures:")
        for raw, expected, got in failures:
            print(f" - {raw}: expected {format_pairs(expected)}, got {format_pairs(got)}")
        return 1

    print("All regression tests passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
