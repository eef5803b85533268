#!/usr/bin/env python3
"""Command-line interface for the FoodData Central seeding job."""

import argparse
import logging
import sys
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fdc_seeder.config import SeederConfig
from fdc_seeder.data_layer.ingredient_store import IngredientStore
from fdc_seeder.ingestion.batch_writer import BatchWriter
from fdc_seeder.ingestion.checkpoint_store import CheckpointStore
from fdc_seeder.ingestion.ingestion_errors import IngestionError
from fdc_seeder.ingestion.orchestrator import IngestionOrchestrator, RunState, graceful_shutdown
from fdc_seeder.ingestion.record_transformer import RecordTransformer
from fdc_seeder.ingestion.usda_client import RateLimitedClient
from fdc_seeder.log_config import setup_logging
from fdc_seeder.monitor import Monitor
from fdc_seeder.output.formatters import (
    format_db_stats,
    format_status_json,
    format_status_summary,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to seeder YAML config (default: built-in defaults + environment)"
    )
    common.add_argument(
        "--checkpoint",
        type=str,
        default=None,
        help="Checkpoint file path (overrides config)"
    )
    common.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level, e.g. DEBUG or INFO (overrides config)"
    )

    parser = argparse.ArgumentParser(
        prog="fdc-seeder",
        description="Seed the ingredient store from USDA FoodData Central"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser(
        "run",
        aliases=["resume"],
        parents=[common],
        help="Start ingestion, or resume from the checkpoint if one exists"
    )
    run.add_argument(
        "--fresh",
        action="store_true",
        help="Discard any existing checkpoint and start from page 1"
    )
    run.set_defaults(handler=cmd_run)

    monitor = sub.add_parser("monitor", parents=[common], help="Live progress view")
    monitor.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between refreshes (default: config monitor_interval)"
    )
    monitor.add_argument("--once", action="store_true", help="Render one snapshot and exit")
    monitor.set_defaults(handler=cmd_monitor)

    status = sub.add_parser("status", parents=[common], help="One-shot checkpoint summary")
    status.add_argument("--json", action="store_true", help="Print the checkpoint as JSON")
    status.add_argument("--db", action="store_true", help="Include ingredient store statistics")
    status.set_defaults(handler=cmd_status)

    return parser


def load_config(args: argparse.Namespace) -> SeederConfig:
    config = SeederConfig.load(args.config)
    setup_logging(args.log_level or config.log_level)
    return config


def checkpoint_store(args: argparse.Namespace, config: SeederConfig) -> CheckpointStore:
    return CheckpointStore(args.checkpoint or config.checkpoint_path, error_cap=config.error_cap)


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args)
    checkpoints = checkpoint_store(args, config)
    if args.fresh:
        checkpoints.clear()

    store = IngredientStore.from_url(config.database_url)
    store.create_schema()

    client = RateLimitedClient.from_config(config)
    logger.info(
        "SEEDER starting key=%s requests_per_hour=%s partitions=%s",
        client.masked_key, client.requests_per_hour, ",".join(config.data_types),
    )
    if config.uses_demo_key:
        logger.warning(
            "SEEDER using %s: about %s requests/hour. Set USDA_API_KEY for a full run.",
            client.api_key, client.requests_per_hour,
        )

    orchestrator = IngestionOrchestrator(
        client=client,
        transformer=RecordTransformer(),
        writer=BatchWriter(store, batch_size=config.batch_size),
        checkpoints=checkpoints,
        partitions=config.data_types,
        page_size=config.page_size,
        page_retry_budget=config.page_retry_budget,
        page_retry_delay=config.page_retry_delay,
        max_save_failures=config.max_save_failures,
    )
    with graceful_shutdown(orchestrator):
        outcome = orchestrator.run()

    checkpoint = outcome.checkpoint
    print(
        f"Processed {checkpoint.processed_items:,} item(s): "
        f"{checkpoint.successful_inserts:,} inserted, "
        f"{checkpoint.skipped_duplicates:,} duplicate(s), "
        f"{len(checkpoint.errors)} error(s) logged",
        file=sys.stderr
    )
    if outcome.state == RunState.ALL_COMPLETE:
        print("Seeding complete.", file=sys.stderr)
    elif outcome.interrupted:
        print(f"Stopped ({outcome.reason}); run again to resume.", file=sys.stderr)
    else:
        print(f"Error: run aborted: {outcome.reason}", file=sys.stderr)
    return outcome.exit_code


def cmd_monitor(args: argparse.Namespace) -> int:
    config = load_config(args)
    interval = args.interval if args.interval is not None else config.monitor_interval
    monitor = Monitor(
        checkpoint_store(args, config),
        interval=interval,
        clear_screen=not args.once and sys.stdout.isatty(),
    )
    return monitor.run(max_ticks=1 if args.once else None)


def cmd_status(args: argparse.Namespace) -> int:
    config = load_config(args)
    checkpoint = checkpoint_store(args, config).load()
    stats = IngredientStore.from_url(config.database_url).stats() if args.db else None

    if args.json:
        print(format_status_json(checkpoint, db_stats=stats))
        return 0

    if checkpoint is None:
        print("No active run.")
    else:
        print(format_status_summary(checkpoint))
    if stats is not None:
        print()
        print(format_db_stats(stats))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.handler(args)
    except IngestionError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except SQLAlchemyError as e:
        print(f"Error: database unavailable: {str(e).splitlines()[0]}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
