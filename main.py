#!/usr/bin/env python3
"""
tag-map: LLM-assisted music tag normalization

Reduces the noisy free-text tags of a song metadata corpus (Last.fm,
MusicBrainz, local tags) to a canonical genre/subgenre/mood/descriptor
taxonomy through a resumable, multi-stage oracle pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from api.client import create_oracle_client
from filesystem.corpus import MetadataCorpus
from pipeline.blacklist import load_blacklist
from pipeline.blacklist_augment import BlacklistAugmenter
from pipeline.orchestrator import TagMapPipeline, export_mapping
from utils.config_loader import DEFAULT_LIMIT, PROMPT_FILES, load_config, load_prompts, resolve_path
from utils.exceptions import TagMapError
from utils.logging_config import setup_logging

COMMANDS = ("map", "blacklist", "export")


def parse_limit(value: Optional[str], default: int = DEFAULT_LIMIT) -> Tuple[Optional[int], Optional[str]]:
    """
    Interpret a --limit value.

    A bare flag means ``default``. A positive integer is used as-is; anything
    else is ignored (no limit) and reported back as a warning message.

    Returns:
        (limit, warning)
    """
    if value is None:
        return default, None

    try:
        limit = int(value)
    except ValueError:
        return None, f"Ignoring invalid --limit value {value!r}; processing without a limit"

    if limit < 1:
        return None, f"Ignoring non-positive --limit value {limit}; processing without a limit"
    return limit, None


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Normalize music metadata tags with a local LLM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Map every unprocessed corpus tag
  %(prog)s --limit                  # Map at most 20 tags (quick test run)
  %(prog)s --limit=200              # Map at most 200 tags
  %(prog)s blacklist                # Let the model extend the tag blacklist
  %(prog)s export                   # Write the app-facing mapping file
        """
    )

    parser.add_argument(
        "command",
        nargs="?",
        default=None,
        choices=COMMANDS,
        help="map: run the tag-map pipeline (default); blacklist: classify tags for the "
             "blacklist; export: reduce the result log to the mapping file"
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: ./config.yaml)"
    )

    parser.add_argument(
        "--limit", "-l",
        nargs="?",
        const=None,
        default=argparse.SUPPRESS,
        metavar="N",
        help=f"Limit processing to N tags (bare flag: {DEFAULT_LIMIT})"
    )

    parser.add_argument(
        "--songs-dir",
        type=Path,
        help="Metadata corpus directory (overrides paths.songs_dir)"
    )

    parser.add_argument(
        "--results-file",
        type=Path,
        help="Result log (overrides paths.results_file)"
    )

    parser.add_argument(
        "--model",
        type=str,
        help="Oracle model (overrides api.model and TAG_MAP_MODEL)"
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Tags per batch (overrides pipeline.batch_size / blacklist.batch_size)"
    )

    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Do not read or write the oracle response cache"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)

    # A bare --limit directly before the command swallows the command name
    if args.command is None and getattr(args, "limit", None) in COMMANDS:
        args.command, args.limit = args.limit, None
    if args.command is None:
        args.command = "map"

    return args


def apply_cli_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Fold command line overrides into the loaded configuration."""
    if args.songs_dir:
        config['paths']['songs_dir'] = str(args.songs_dir)
    if args.results_file:
        config['paths']['results_file'] = str(args.results_file)
    if args.model:
        config['api']['model'] = args.model
    if args.batch_size and args.batch_size > 0:
        config['pipeline']['batch_size'] = args.batch_size
        config['blacklist']['batch_size'] = args.batch_size
    if args.no_cache:
        config['caching']['enabled'] = False
    return config


def run_map(config: dict, limit: Optional[int], use_cache: bool, logger: logging.Logger) -> int:
    prompts = load_prompts(resolve_path(config['paths']['prompts_dir']))

    pipeline = TagMapPipeline(config=config, prompts=prompts, use_cache=use_cache)
    try:
        stats = pipeline.process_corpus(limit=limit)
    finally:
        pipeline.close()

    logger.info(
        f"Processing complete. Wrote {stats.entries_written} entries, "
        f"{stats.batches_succeeded}/{stats.batches_total} batches succeeded, "
        f"{stats.batches_failed} failed"
    )
    if stats.batches_failed:
        logger.info("Failed batches stay unprocessed; run again to retry them.")
    return 0


def run_blacklist(config: dict, limit: Optional[int], logger: logging.Logger) -> int:
    prompts_dir = resolve_path(config['paths']['prompts_dir'])
    prompts = load_prompts(prompts_dir, require_blacklist=True)
    paths = config['paths']

    api_client = create_oracle_client(config)
    try:
        augmenter = BlacklistAugmenter(
            api_client,
            prompts.blacklist,
            corpus=MetadataCorpus(resolve_path(paths['songs_dir']), config['pipeline']['tag_sources']),
            blacklist_file=resolve_path(paths['blacklist_file']),
            decisions_file=resolve_path(paths['blacklist_results_file']),
            batch_size=config['blacklist']['batch_size'],
            prompt_name=PROMPT_FILES['blacklist']
        )
        stats = augmenter.run(limit=limit)
    finally:
        api_client.close()

    if stats['blacklisted']:
        logger.info("Tag classification complete. Blacklist has been updated.")
    else:
        logger.info("Nothing new was blacklisted.")
    return 0


def run_export(config: dict, logger: logging.Logger) -> int:
    paths = config['paths']
    blacklist = None
    if config['pipeline'].get('blacklist_final_tags', True):
        blacklist = load_blacklist(resolve_path(paths['blacklist_file']))

    mapping = export_mapping(
        resolve_path(paths['results_file']),
        resolve_path(paths['mapping_file']),
        blacklist=blacklist
    )
    logger.info(f"Mapping file holds {len(mapping.mappings)} tags")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    try:
        args = parse_arguments(argv)

        # Default config path is in the same directory as this script
        if args.config:
            config_path = args.config
        else:
            script_dir = Path(__file__).parent
            config_path = script_dir / "config.yaml"

        config = load_config(config_path)
        config = apply_cli_overrides(config, args)

        log_level = "DEBUG" if args.verbose else config.get("logging", {}).get("level", "INFO")
        log_file = config['paths'].get('log_file')
        logger = setup_logging(log_level, resolve_path(log_file) if log_file else None)

        limit = None
        if hasattr(args, 'limit'):
            limit, warning = parse_limit(args.limit, config['pipeline']['default_limit'])
            if warning:
                logger.warning(warning)

        if not config_path.exists():
            logger.info(f"Config file not found at {config_path}; using default configuration")

        logger.info(f"Starting tag-map {args.command}")
        logger.info(f"Model: {config['api']['model']} at {config['api']['host']}")

        if args.command == "blacklist":
            return run_blacklist(config, limit, logger)
        if args.command == "export":
            return run_export(config, logger)
        return run_map(config, limit, not args.no_cache, logger)

    except KeyboardInterrupt:
        print("\nOperation cancelled by user.")
        return 1
    except TagMapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        # Handle encoding errors in the exception message itself
        try:
            error_msg = str(e)
        except (UnicodeDecodeError, UnicodeEncodeError):
            error_msg = repr(e).encode('utf-8', errors='replace').decode('utf-8')

        print(f"Unexpected error: {error_msg}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
