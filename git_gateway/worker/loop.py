"""
Webhook worker loop.

Flow per cycle:
1. Poll: load unprocessed webhook events below the retry cap, oldest first
2. Process: run each event through the trigger engine
3. Publish: hand stored domain events to their subscribers
4. Compensate: execute pending compensation entries
5. Sleep when the cycle found nothing to do
"""
from __future__ import annotations

import asyncio
import logging
import signal
import time
import uuid
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..config import get_settings
from ..db.base import get_session_local
from ..transactions.compensation import CompensationManager
from ..transactions.events import EventPublisher
from ..webhooks.engine import WebhookEngine

logger = logging.getLogger(__name__)


class WorkerLoop:
    """Background loop that drains pending events and compensations."""

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        run_compensations: bool = True,
    ):
        """Initialize worker loop.

        Args:
            poll_interval: Seconds between idle poll cycles (default from config)
            batch_size: Max events processed per cycle (default from config)
            run_compensations: Also execute pending compensation entries
        """
        self.settings = get_settings()
        self.poll_interval = poll_interval or self.settings.event_processing_interval
        self.batch_size = batch_size or self.settings.event_batch_size
        self.run_compensations = run_compensations
        self.running = False
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"

        logger.info(
            f"Worker initialized: id={self.worker_id}, "
            f"poll_interval={self.poll_interval}s, "
            f"batch_size={self.batch_size}, "
            f"compensations={self.run_compensations}"
        )

    def start(self) -> None:
        """Start the worker loop. Runs until stopped."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting...")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            while self.running:
                try:
                    summary = self.run_once()
                    if summary["events"] == 0:
                        time.sleep(self.poll_interval)
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    # Sleep on error to avoid tight loop
                    time.sleep(self.poll_interval)
        finally:
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        """Signal the worker to stop after the current cycle."""
        logger.info(f"Worker {self.worker_id} stopping...")
        self.running = False

    def _signal_handler(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def run_once(self) -> Dict[str, int]:
        """Run a single poll cycle and report what it did."""
        db = get_session_local()()
        try:
            return asyncio.run(self._cycle(db))
        finally:
            db.close()

    async def _cycle(self, db: Session) -> Dict[str, int]:
        outcomes = await WebhookEngine(db).process_pending(limit=self.batch_size)
        failed = sum(1 for o in outcomes if not o.processed)
        if outcomes:
            logger.info(
                f"Processed {len(outcomes)} pending events ({failed} left for retry)"
            )

        publisher = EventPublisher(db, max_retries=self.settings.event_max_retries)
        published = await publisher.publish_pending(limit=self.batch_size)
        if published["failed"]:
            logger.warning(f"{published['failed']} domain events left for retry")

        compensations = {"total": 0, "executed": 0, "failed": 0}
        if self.run_compensations:
            compensations = await CompensationManager(db).execute_all_pending()
            if compensations["failed"]:
                logger.error(f"{compensations['failed']} compensations failed after retries")

        return {
            "events": len(outcomes),
            "events_failed": failed,
            "domain_events": published["published"],
            "domain_events_failed": published["failed"],
            "compensations_executed": compensations["executed"],
            "compensations_failed": compensations["failed"],
        }


def run_worker(
    poll_interval: Optional[float] = None,
    batch_size: Optional[int] = None,
    run_compensations: bool = True,
) -> None:
    """Run the worker loop.

    Args:
        poll_interval: Seconds between idle poll cycles
        batch_size: Max events processed per cycle
        run_compensations: Also execute pending compensation entries
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    worker = WorkerLoop(
        poll_interval=poll_interval,
        batch_size=batch_size,
        run_compensations=run_compensations,
    )
    worker.start()
