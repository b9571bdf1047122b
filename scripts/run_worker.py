"""Headless pipeline worker.

Resumes every non-terminal job whose heartbeat has gone stale and keeps
sweeping, so jobs survive an API restart even when no API process is up.
"""

import asyncio
import logging

from ugc_pipeline.config import configure_logging, settings
from ugc_pipeline.db import init_db
from ugc_pipeline.generation import KieClient
from ugc_pipeline.jobs import JobStore
from ugc_pipeline.ledger import CreditLedger
from ugc_pipeline.orchestrator import PipelineOrchestrator
from ugc_pipeline.storage import S3AssetStore

logger = logging.getLogger("run_worker")


async def _run() -> None:
    orchestrator = PipelineOrchestrator(
        store=JobStore(),
        ledger=CreditLedger(),
        generation=KieClient(),
        assets=S3AssetStore(),
    )
    logger.info("Worker started; sweeping every %ss", settings.sweep_interval_sec)
    try:
        await orchestrator.run_sweeper(settings.sweep_interval_sec)
    finally:
        await orchestrator.shutdown()


def main() -> None:
    configure_logging()
    init_db()
    asyncio.run(_run())


if __name__ == "__main__":
    main()
