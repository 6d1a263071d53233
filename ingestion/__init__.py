"""
Sync pipeline components for remote record ingestion.

This package contains every component of the synchronization pipeline:

Modules:
    catalog: Field catalog (custom-field label -> local column registry)
    schema_planner: Additive schema evolution planner and executor
    runner: Sync orchestrator driving one entity kind through the pipeline
    service: run_sync / cleanup_old_runs entry points
    scheduler: APScheduler integration for periodic sync runs

Subpackages:
    extractors: Remote record client (pagination, retries) and OAuth token manager
    transformers: Type coercion engine and record normalizer
    loaders: Merge/upsert engine honouring local-owned fields

Architecture:
    Each page of remote records flows through four phases:

    1. Fetch - one page with rate-limit aware retries
    2. Coerce - labels resolved through the catalog, values coerced per field
    3. Evolve - nullable columns added for fields in use
    4. Merge - idempotent upsert, one transaction per record

    Field and record failures are recorded on the SyncRun; only fetch and
    catalog failures end a run.

Usage:
    from ingestion.service import run_sync

    summaries = await run_sync([EntityKind.MATTERS])

Example:
    async with async_session_maker() as session:
        async with RemoteRecordClient() as client:
            summary = await SyncOrchestrator(session, client).run(EntityKind.MATTERS)

    print(f"{summary.records_upserted} records upserted, {summary.error_count} errors")

Error Handling:
    All components use the exceptions from core.exceptions for structured
    error handling; see that module for the fatal / non-fatal split.
"""

__all__ = [
    "FieldCatalog",
    "SchemaEvolutionPlanner",
    "SchemaEvolver",
    "SyncOrchestrator",
    "SyncScheduler",
    "RemoteRecordClient",
    "TokenManager",
    "TypeCoercionEngine",
    "RecordNormalizer",
    "MergeLoader",
    "run_sync",
]
