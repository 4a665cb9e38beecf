"""
Memingest CLI: batch ingestion and retry-queue operations.

Usage:
    memingest ingest relational [--since TS] [--until TS] [--source-system ID]
    memingest ingest legacy --source-system ID [--chat-history F] [--memories F] [--mappings F]
    memingest retry [--max-attempts N] [--dry-run]
    memingest status
    memingest exhausted [--requeue MEMORY_ID]

Exit codes:
    0  run completed (item failures are reported in the summary, not here)
    1  fatal error (configuration, store connectivity)
    2  another retry pass holds the queue lock
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

from memingest.core.config import IngestConfig, IngestOptions
from memingest.core.engine import MemoryIngestor
from memingest.core.errors import ConfigurationError, MemingestError, RetryPassInProgressError
from memingest.ingestion.sources import LegacyExportSource, RelationalTurnSource, coerce_timestamp
from memingest.platform import get_config_dir

logger = logging.getLogger("Memingest.CLI")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_LOCKED = 2

DEFAULT_CONFIG_FILE = "config.yaml"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load_config(args: argparse.Namespace) -> IngestConfig:
    if getattr(args, "config", None):
        return IngestConfig.from_yaml(args.config)
    default_path = get_config_dir() / DEFAULT_CONFIG_FILE
    if default_path.is_file():
        logger.debug("Using config file %s", default_path)
        return IngestConfig.from_yaml(str(default_path))
    return IngestConfig.from_env()


def _build_ingestor(config: IngestConfig) -> MemoryIngestor:
    return MemoryIngestor(config)


def _timestamp_arg(value: str) -> float:
    try:
        return coerce_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid timestamp '{value}': {e}")


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def cmd_ingest(args: argparse.Namespace) -> int:
    config = _load_config(args)
    ingestor = _build_ingestor(config)
    try:
        ingestor.initialize()
        if args.source == "relational":
            source = RelationalTurnSource(
                ingestor.relational,
                since=args.since,
                until=args.until,
                source_system_id=args.source_system,
            )
        else:
            source = LegacyExportSource(
                source_system_id=args.source_system,
                chat_history=args.chat_history,
                memories=args.memories,
                mappings=args.mappings,
            )
        options = IngestOptions(
            dry_run=True if args.dry_run else None,
            batch_size=args.batch_size,
            max_attempts=args.max_attempts,
            batch_delay_seconds=args.delay,
            skip_existing=False if args.no_skip_existing else None,
        )
        summary = ingestor.run_ingestion(source, options)
    except MemingestError as e:
        logger.error("Ingestion aborted: %s", e)
        return EXIT_FATAL
    finally:
        ingestor.close()
    _emit(summary.to_dict())
    return EXIT_OK


def cmd_retry(args: argparse.Namespace) -> int:
    config = _load_config(args)
    ingestor = _build_ingestor(config)
    try:
        summary = ingestor.run_retry_pass(max_attempts=args.max_attempts, dry_run=args.dry_run)
    except RetryPassInProgressError as e:
        logger.error("%s", e)
        return EXIT_LOCKED
    except MemingestError as e:
        logger.error("Retry pass aborted: %s", e)
        return EXIT_FATAL
    finally:
        ingestor.close()
    _emit(summary.to_dict())
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    ingestor = _build_ingestor(config)
    try:
        status = ingestor.status()
    except MemingestError as e:
        logger.error("Status unavailable: %s", e)
        return EXIT_FATAL
    finally:
        ingestor.close()
    _emit(status)
    return EXIT_OK


def cmd_exhausted(args: argparse.Namespace) -> int:
    config = _load_config(args)
    ingestor = _build_ingestor(config)
    try:
        queue = ingestor.retry_queue()
        if args.requeue:
            if not queue.requeue(args.requeue):
                logger.error("No exhausted entry %s", args.requeue)
                return EXIT_FATAL
            _emit({"requeued": args.requeue})
            return EXIT_OK
        entries = queue.exhausted(limit=args.limit)
    except MemingestError as e:
        logger.error("Retry queue unavailable: %s", e)
        return EXIT_FATAL
    finally:
        ingestor.close()
    _emit(
        {
            "exhausted": [
                {
                    "memory_id": entry.record.id,
                    "persona_id": entry.record.persona_id,
                    "attempts": entry.attempts,
                    "last_error": entry.last_error,
                    "last_attempt_at": entry.last_attempt_at,
                }
                for entry in entries
            ]
        }
    )
    return EXIT_OK


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", metavar="PATH", default=None,
                        help="YAML config file (default: config.yaml in the config dir, else environment).")
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Debug logging.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memingest",
        description="Ingest conversational history into long-term vector memory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  memingest ingest relational --since 2024-01-01T00:00:00Z\n"
               "  memingest ingest legacy --source-system lilith --memories memories.json \\\n"
               "      --mappings uuid-mappings.json --dry-run\n"
               "  memingest retry --max-attempts 5\n"
               "  memingest exhausted --requeue 6f1c...\n",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Run one ingestion pass over a source.")
    ingest_sources = ingest.add_subparsers(dest="source", required=True)

    relational = ingest_sources.add_parser("relational", help="Turns from the relational store.")
    relational.add_argument("--since", type=_timestamp_arg, default=None, metavar="TS")
    relational.add_argument("--until", type=_timestamp_arg, default=None, metavar="TS")
    relational.add_argument("--source-system", default=None, metavar="ID")

    legacy = ingest_sources.add_parser("legacy", help="A legacy JSON export.")
    legacy.add_argument("--source-system", required=True, metavar="ID")
    legacy.add_argument("--chat-history", default=None, metavar="PATH")
    legacy.add_argument("--memories", default=None, metavar="PATH")
    legacy.add_argument("--mappings", default=None, metavar="PATH")

    for sub in (relational, legacy):
        _add_common(sub)
        sub.add_argument("--dry-run", action="store_true", default=False,
                         help="Embed to validate content but write nothing.")
        sub.add_argument("--batch-size", type=int, default=None, metavar="N")
        sub.add_argument("--max-attempts", type=int, default=None, metavar="N")
        sub.add_argument("--delay", type=float, default=None, metavar="SECONDS",
                         help="Pause between batches.")
        sub.add_argument("--no-skip-existing", action="store_true", default=False,
                         help="Always upsert instead of pre-checking the vector store.")

    retry = subparsers.add_parser("retry", help="Re-drive pending retry-queue entries.")
    _add_common(retry)
    retry.add_argument("--max-attempts", type=int, default=None, metavar="N")
    retry.add_argument("--dry-run", action="store_true", default=False)

    status = subparsers.add_parser("status", help="Retry-queue and store counts.")
    _add_common(status)

    exhausted = subparsers.add_parser("exhausted", help="List or requeue exhausted entries.")
    _add_common(exhausted)
    exhausted.add_argument("--requeue", default=None, metavar="MEMORY_ID")
    exhausted.add_argument("--limit", type=int, default=100, metavar="N")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    commands = {
        "ingest": cmd_ingest,
        "retry": cmd_retry,
        "status": cmd_status,
        "exhausted": cmd_exhausted,
    }
    handler = commands.get(args.command)
    if handler is not None:
        try:
            return handler(args)
        except ConfigurationError as e:
            logger.error("Configuration error: %s", e)
            return EXIT_FATAL

    parser.print_help()
    return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
