"""BizArchive - Task Orchestrator.

Runs one Window Pipeline per integration on a bounded pool of async workers,
waits up to an overall deadline, then cancels what is left. Failures are
recorded per integration and never cancel siblings.
"""

import asyncio
import os
import time
from typing import Awaitable, Callable, Dict, List, Sequence

from bizarchive.config import settings
from bizarchive.core.blocking import BlockingPool, reset_pool, use_pool
from bizarchive.core.logging import get_logger
from bizarchive.models.integration import Integration

logger = get_logger("exporter.orchestrator")

RunOne = Callable[[Integration], Awaitable[object]]


def pool_size(max_workers: int, integration_count: int) -> int:
    available = os.cpu_count() or 1
    return max(1, min(max_workers, integration_count, available))


async def _guarded(
    integration: Integration, run_one: RunOne, slots: asyncio.Semaphore
) -> bool:
    async with slots:
        started = time.monotonic()
        try:
            await run_one(integration)
        except Exception:
            logger.exception(
                f"[{integration.id}] Integration task failed",
                extra={"integration_id": integration.id},
            )
            return False
        logger.info(
            f"[{integration.id}] Integration task finished",
            extra={
                "integration_id": integration.id,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return True


async def _wait_with_deadline(
    tasks: Dict[asyncio.Task, Integration],
    deadline_seconds: float,
    wait_interval_seconds: float,
    grace_seconds: float,
) -> None:
    """Wait in slices until every task is done or the deadline expires."""
    waited = 0.0
    pending = set(tasks)
    while pending and waited < deadline_seconds:
        slice_seconds = min(wait_interval_seconds, deadline_seconds - waited)
        logger.info(
            f"Waiting up to {slice_seconds:.0f}s for integration tasks "
            f"(total waited {waited:.0f}/{deadline_seconds:.0f}s, {len(pending)} pending)"
        )
        started = time.monotonic()
        _, pending = await asyncio.wait(pending, timeout=slice_seconds)
        waited += time.monotonic() - started

    if not pending:
        return

    logger.warning(
        f"Timeout waiting for integration tasks after {deadline_seconds:.0f}s, "
        f"cancelling {len(pending)} task(s)"
    )
    for task in pending:
        task.cancel()
    _, stragglers = await asyncio.wait(pending, timeout=grace_seconds)
    for task in stragglers:
        integration = tasks[task]
        logger.error(
            f"[{integration.id}] Task did not stop within {grace_seconds:.0f}s grace period, abandoning",
            extra={"integration_id": integration.id},
        )


async def run_all(
    integrations: Sequence[Integration],
    run_one: RunOne,
    max_workers: int | None = None,
    deadline_seconds: float | None = None,
    wait_interval_seconds: float | None = None,
    grace_seconds: float | None = None,
    drain_seconds: float | None = None,
) -> bool:
    """Run every integration; True only if all of them completed without error."""
    max_workers = max_workers or settings.max_parallel_executions
    if deadline_seconds is None:
        deadline_seconds = settings.max_task_duration_hours * 3600
    if wait_interval_seconds is None:
        wait_interval_seconds = settings.task_wait_interval_seconds
    if grace_seconds is None:
        grace_seconds = settings.shutdown_grace_seconds
    if drain_seconds is None:
        drain_seconds = settings.time_wait_after_upload_secs

    if not integrations:
        logger.info("No integrations to process")
        return True

    size = pool_size(max_workers, len(integrations))
    logger.info(
        f"Launching {size} integration worker(s) for {len(integrations)} integration(s) "
        f"(available CPUs={os.cpu_count()}, configured max={max_workers})"
    )

    slots = asyncio.Semaphore(size)
    pool = BlockingPool(size)
    tasks: Dict[asyncio.Task, Integration] = {}
    # Tasks copy the context at creation, so their blocking calls use this run's pool.
    token = use_pool(pool)
    try:
        for integration in dict.fromkeys(integrations):
            task = asyncio.create_task(
                _guarded(integration, run_one, slots), name=f"export-{integration.id}"
            )
            tasks[task] = integration
    finally:
        reset_pool(token)

    try:
        await _wait_with_deadline(tasks, deadline_seconds, wait_interval_seconds, grace_seconds)
    finally:
        pool.shutdown()

    failed: List[str] = []
    for task, integration in tasks.items():
        if not task.done() or task.cancelled() or not task.result():
            failed.append(integration.id)

    if drain_seconds > 0:
        logger.info(f"Waiting {drain_seconds:.0f}s to let run telemetry settle")
        await asyncio.sleep(drain_seconds)

    if failed:
        logger.error(f"{len(failed)} integration task(s) failed: {', '.join(failed)}")
        return False
    logger.info("All integration tasks completed successfully")
    return True
