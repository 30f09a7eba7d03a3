"""
Command line entry point for the replication service.

    listing-replicator                      continuous scheduled replication
    listing-replicator --once               one cycle, mode chosen automatically
    listing-replicator --mode media-only    one cycle in the given mode
    listing-replicator --reset Property     reset a checkpoint (or "all")
    listing-replicator --discover-schema    add columns for new upstream fields
    listing-replicator --show-state         print checkpoints
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from core.config import Settings, settings as default_settings
from core.exceptions import ReplicationException, StartupError
from core.logging import setup_logging
from models.base import RunStatus, SyncMode
from replication.bootstrap import ReplicationContext, bootstrap
from replication.extractors.upstream_client import ENTITY_RESOURCE, MEDIA_RESOURCE
from replication.scheduler import ReplicationScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class ReplicatorArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1 like every other failure"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = ReplicatorArgumentParser(
        prog="listing-replicator",
        description="Replicate listings and media from the upstream listing API"
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle with automatic mode selection and exit"
    )
    action.add_argument(
        "--mode",
        choices=[mode.value for mode in SyncMode],
        help="Run a single cycle in the given mode and exit"
    )
    action.add_argument(
        "--reset",
        metavar="RESOURCE",
        help=f"Reset a checkpoint to epoch zero ({ENTITY_RESOURCE}, {MEDIA_RESOURCE} or all)"
    )
    action.add_argument(
        "--discover-schema",
        action="store_true",
        help="Discover upstream fields and add missing listing columns"
    )
    action.add_argument(
        "--show-state",
        action="store_true",
        help="Print replication checkpoints"
    )
    return parser


async def _show_state(ctx: ReplicationContext) -> int:
    checkpoints = await ctx.checkpoints.list_all()
    if not checkpoints:
        print("No checkpoints recorded yet")
    for checkpoint in checkpoints:
        print(
            f"{checkpoint.resource_name}: timestamp={checkpoint.last_timestamp} "
            f"key={checkpoint.last_key} processed={checkpoint.records_processed} "
            f"last_run_at={checkpoint.last_run_at}"
        )
    return EXIT_OK


async def _reset(ctx: ReplicationContext, resource: str) -> int:
    if resource.lower() == "all":
        names = {ENTITY_RESOURCE, MEDIA_RESOURCE}
        names.update(c.resource_name for c in await ctx.checkpoints.list_all())
    else:
        names = {resource}

    for name in sorted(names):
        await ctx.checkpoints.reset(name)
        print(f"Reset checkpoint {name}")
    return EXIT_OK


async def _discover(ctx: ReplicationContext) -> int:
    statements = await ctx.discovery.run(apply=True)
    for statement in statements:
        print(statement)
    print(f"{len(statements)} column additions applied")
    return EXIT_OK


async def _run_once(ctx: ReplicationContext, mode: Optional[SyncMode]) -> int:
    if ctx.config.SCHEMA_DISCOVERY_ON_STARTUP:
        await ctx.discovery.run(apply=True)
    summary = await ctx.runner.run_cycle(mode)
    return EXIT_FAILURE if summary.status == RunStatus.FAILED else EXIT_OK


async def _run_continuous(ctx: ReplicationContext) -> int:
    if ctx.config.SCHEMA_DISCOVERY_ON_STARTUP:
        await ctx.discovery.run(apply=True)
    await ReplicationScheduler(ctx.runner, ctx.config).run_forever()
    return EXIT_OK


async def run_command(args: argparse.Namespace, config: Optional[Settings] = None) -> int:
    """Bootstrap, dispatch the selected command and release resources"""
    config = config or default_settings

    try:
        ctx = await bootstrap(config)
    except StartupError as e:
        logger.error(f"Startup failed: {e}", extra={"error_context": e.to_dict()})
        return EXIT_FAILURE

    try:
        if args.show_state:
            return await _show_state(ctx)
        if args.reset:
            return await _reset(ctx, args.reset)
        if args.discover_schema:
            return await _discover(ctx)
        if args.once or args.mode:
            return await _run_once(ctx, SyncMode(args.mode) if args.mode else None)
        return await _run_continuous(ctx)
    except ReplicationException as e:
        logger.error(f"Command failed: {e}", extra={"error_context": e.to_dict()})
        return EXIT_FAILURE
    finally:
        await ctx.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger.info(f"Listing replicator starting ({default_settings.ENVIRONMENT})")
    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
