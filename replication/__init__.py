"""
Incremental listing replication from the upstream OData service.

This package contains every component of the replication engine:

Modules:
    governor: Token bucket rate limiting and per-class circuit breakers
    checkpoint: Durable (timestamp, key) watermarks per resource
    runner: Cycle orchestrator for full, incremental and media-only modes
    run_log: Persistence of cycle summaries
    discovery: Best-effort schema discovery from upstream metadata
    scheduler: APScheduler integration for periodic cycles
    bootstrap: Wiring of engine, client and stores from settings
    cli: Command line entry point

Subpackages:
    extractors: Upstream OData client
    transformers: Field mapping from upstream records to table rows
    loaders: Listing upserts and media reconciliation

Architecture:
    Each cycle runs in two phases:

    1. Entities - Page through listings after the Property checkpoint,
       upsert each record and advance the checkpoint once per page
    2. Media - Fetch media for the affected listings, drop orphans and
       relink media_keys and preferred_media_key on each listing

    Every Kth cycle skips the entity phase and reconciles media only for
    listings whose media changed since the Media checkpoint.

Usage:
    from replication.bootstrap import bootstrap

    ctx = await bootstrap(settings)
    try:
        summary = await ctx.runner.run_cycle()
    finally:
        await ctx.aclose()

Error Handling:
    Components raise the exceptions in core.exceptions. The runner absorbs
    failures at the cycle boundary and records them in the run log, so a
    failed cycle never stops the process.
"""

__all__ = [
    "RateGovernor",
    "CheckpointStore",
    "ReplicationRunner",
    "RunLog",
    "SchemaDiscovery",
    "ReplicationScheduler",
    "UpstreamClient",
    "ListingLoader",
    "MediaReconciler",
]
