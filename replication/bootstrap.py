"""
Build the replication object graph once per process.

The engine and session factory are created here and injected into every
component; nothing else in the package opens its own pool.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.database import check_connection, create_engine, create_session_factory
from core.exceptions import DatabaseConnectionError, StartupError
from replication.checkpoint import CheckpointStore
from replication.discovery import SchemaDiscovery
from replication.extractors.upstream_client import UpstreamClient
from replication.governor import RateGovernor
from replication.loaders.listing_loader import ListingLoader
from replication.loaders.media_loader import MediaReconciler
from replication.run_log import RunLog
from replication.runner import ReplicationRunner

logger = logging.getLogger(__name__)


@dataclass
class ReplicationContext:
    config: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    governor: RateGovernor
    client: UpstreamClient
    checkpoints: CheckpointStore
    run_log: RunLog
    discovery: SchemaDiscovery
    runner: ReplicationRunner

    async def aclose(self):
        await self.client.aclose()
        await self.engine.dispose()
        logger.info("Replication resources released")


async def bootstrap(config: Optional[Settings] = None) -> ReplicationContext:
    """
    Connect to storage and wire up all components.

    Raises:
        StartupError: Storage is unreachable
    """
    config = config or default_settings

    engine = create_engine(config)
    try:
        await check_connection(engine)
    except DatabaseConnectionError as e:
        await engine.dispose()
        raise StartupError(
            "Cannot start replication: database unreachable",
            context={"environment": config.ENVIRONMENT},
            original_exception=e
        )

    session_factory = create_session_factory(engine)
    governor = RateGovernor(config)
    client = UpstreamClient(governor, config)
    checkpoints = CheckpointStore(session_factory)
    run_log = RunLog(session_factory)

    runner = ReplicationRunner(
        client=client,
        checkpoints=checkpoints,
        listing_loader=ListingLoader(session_factory),
        media_reconciler=MediaReconciler(session_factory, config),
        governor=governor,
        run_log=run_log,
        config=config
    )

    if config.ENABLE_GEOCODING or config.ENABLE_ADDRESS_STANDARDIZATION:
        logger.info(
            f"Enrichment flags: geocoding={config.ENABLE_GEOCODING}, "
            f"address_standardization={config.ENABLE_ADDRESS_STANDARDIZATION} "
            f"(handled by the enrichment job)"
        )

    return ReplicationContext(
        config=config,
        engine=engine,
        session_factory=session_factory,
        governor=governor,
        client=client,
        checkpoints=checkpoints,
        run_log=run_log,
        discovery=SchemaDiscovery(client, session_factory),
        runner=runner
    )
