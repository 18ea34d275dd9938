"""BizArchive - Process Entry Point.

Dynatrace bizevents exporter: archives every configured integration's events
into hour-partitioned ZIP objects and exits 0 when all integrations
succeeded, 1 otherwise.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional, Sequence

from bizarchive.config import Settings, settings
from bizarchive.connectors.dynatrace.auth import DynatraceOAuth
from bizarchive.connectors.dynatrace.client import QueryClient
from bizarchive.core.blocking import abandoned_threads, run_blocking
from bizarchive.core.errors import CheckpointIOError, ConfigError
from bizarchive.core.logging import get_logger
from bizarchive.database import build_engine, check_connection
from bizarchive.exporter.orchestrator import run_all
from bizarchive.exporter.window_pipeline import WindowPipeline
from bizarchive.models.integration import Integration, select_integrations
from bizarchive.scheduler.jobs import start_scheduler, stop_scheduler
from bizarchive.storage.blob import archive_blob_store, checkpoint_blob_store
from bizarchive.storage.checkpoints import S3CheckpointStore
from bizarchive.storage.sql_checkpoints import SqlCheckpointStore
from bizarchive.storage.uploader import ArchiveUploader
from bizarchive.storage.verify import verify_storage

logger = get_logger("main")


def build_checkpoint_store(cfg: Settings):
    backend = cfg.checkpoint_backend.lower()
    if backend == "s3":
        return S3CheckpointStore(checkpoint_blob_store(cfg))
    if backend == "sql":
        engine = build_engine(cfg.checkpoint_database_url)
        if not check_connection(engine):
            raise CheckpointIOError("Checkpoint database is not reachable")
        return SqlCheckpointStore(engine)
    raise ConfigError(f"Unknown CHECKPOINT_BACKEND: {cfg.checkpoint_backend}")


async def run_export(codes: Sequence[str] = (), cfg: Optional[Settings] = None) -> bool:
    """One export run over the selected integrations."""
    cfg = cfg or settings
    logger.info("Starting Dynatrace Bizevents Exporter")
    logger.info(f"Loaded configuration: {json.dumps(cfg.redacted(), default=str)}")

    missing = cfg.missing_required()
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(sorted(missing))}")

    try:
        integrations = select_integrations(codes or cfg.integration_codes)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    if not integrations:
        logger.info("No integrations to process")
        return True
    logger.info(f"Found {len(integrations)} integration(s) to process")

    oauth = DynatraceOAuth(
        cfg.oauth_token_url,
        cfg.oauth_client_id,
        cfg.oauth_client_secret,
        cfg.oauth_scope,
        cfg.oauth_resource_urn,
    )
    try:
        # Fail the whole run before any integration starts if auth is broken.
        await oauth.get_token()

        archive_store = archive_blob_store(cfg)
        if cfg.verify_storage:
            await run_blocking(verify_storage, archive_store, checkpoint_blob_store(cfg))

        uploader = ArchiveUploader(archive_store)
        checkpoints = build_checkpoint_store(cfg)
        query_client = QueryClient(
            oauth,
            cfg.tenant_name,
            max_polls=cfg.max_polls,
            poll_interval=cfg.poll_interval_seconds,
            request_timeout=cfg.request_timeout_seconds,
        )

        async def run_one(integration: Integration):
            pipeline = WindowPipeline(
                integration,
                query_client,
                checkpoints,
                uploader,
                page_size=cfg.bizevents_page_size,
                staging_dir=cfg.temp_local_dir,
                max_part_bytes=cfg.max_archive_bytes,
            )
            return await pipeline.run()

        try:
            return await run_all(
                integrations,
                run_one,
                max_workers=cfg.max_parallel_executions,
                deadline_seconds=cfg.max_task_duration_hours * 3600,
                wait_interval_seconds=cfg.task_wait_interval_seconds,
                grace_seconds=cfg.shutdown_grace_seconds,
                drain_seconds=cfg.time_wait_after_upload_secs,
            )
        finally:
            await query_client.close()
    finally:
        await oauth.close()


async def run_scheduled(codes: Sequence[str] = ()) -> None:
    """Run the export every hour until the process is stopped."""
    start_scheduler(lambda: run_export(codes), enabled=True)
    try:
        await asyncio.Event().wait()
    finally:
        await stop_scheduler()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bizarchive",
        description="Archive Dynatrace bizevents into hour-partitioned S3 objects.",
    )
    parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="CODE",
        help="Export only this integration code (repeatable), e.g. IC-07",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Keep running and export every hour instead of once",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.schedule or settings.scheduler_enabled:
            asyncio.run(run_scheduled(args.only))
            return 0
        ok = asyncio.run(run_export(args.only))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1
    except Exception:
        logger.exception("Job failed")
        return 1

    if not ok:
        logger.error("One or more integration tasks failed")
        return 1
    return 0


def cli() -> None:
    code = main()
    stuck = abandoned_threads()
    if stuck:
        # Interpreter shutdown would join these threads, so exit without it.
        logger.error(f"Exiting with {len(stuck)} abandoned worker thread(s) still running")
        logging.shutdown()
        os._exit(code)
    sys.exit(code)


if __name__ == "__main__":
    cli()
