"""
Casso Polling Worker

Periodically pulls recent transactions from Casso and feeds them to the
reconciliation coordinator. Complements the webhook: a missed or failed
push is picked up on the next poll, and re-seen transactions are absorbed
by the coordinator's idempotency check.

Usage:
- API trigger: POST /api/casso/sync
- Background task: started from the server lifespan when CASSO_POLL_ENABLED
- Standalone: python -m reconciliation.workers.casso_poller

Features:
- Fetch retries with backoff inside one tick
- A failed tick touches no order state; the next tick tries again
- Operator alert when every retry of a tick fails
"""

import asyncio
import logging
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Sequence

from reconciliation.errors import UpstreamUnavailable
from sentry_integration import capture_message

logger = logging.getLogger(__name__)

# Backoff between fetch attempts within one tick (seconds)
RETRY_DELAYS = (2, 5, 15)
# How far back each poll looks
LOOKBACK_DAYS = 1


class CassoPoller:
    """
    Background worker for Casso transaction polling.

    This worker:
    1. Fetches the latest page of transactions from Casso
    2. Retries the fetch with backoff on gateway failures
    3. Hands every transaction to the coordinator
    4. Can run continuously or as a one-shot process
    """

    def __init__(
        self,
        coordinator,
        gateway,
        poll_interval: int = 60,
        page_size: int = 100,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            coordinator: ReconciliationCoordinator
            gateway: CassoClient (or anything with list_transactions)
            poll_interval: Seconds between polls when running continuously
            page_size: Transactions fetched per poll
            retry_delays: Backoff schedule for failed fetches
            sleep: Sleep coroutine (replaceable in tests)
        """
        self.coordinator = coordinator
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.page_size = page_size
        self.retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self._running = False
        self.last_run: Optional[dict] = None

    async def _fetch_with_retry(self, from_date: date, to_date: date):
        attempts = len(self.retry_delays) + 1
        last_error: Optional[UpstreamUnavailable] = None

        for attempt in range(attempts):
            try:
                return await self.gateway.list_transactions(
                    from_date=from_date,
                    to_date=to_date,
                    page=1,
                    page_size=self.page_size,
                )
            except UpstreamUnavailable as e:
                last_error = e
                if attempt < len(self.retry_delays):
                    delay = self.retry_delays[attempt]
                    logger.warning(
                        f"Casso fetch failed (attempt {attempt + 1}/{attempts}), retrying in {delay}s: {e}"
                    )
                    await self._sleep(delay)

        raise last_error

    async def process_once(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> dict:
        """
        Run one poll cycle.

        Returns:
            Processing statistics
        """
        today = datetime.now(timezone.utc).date()
        from_date = from_date or (today - timedelta(days=LOOKBACK_DAYS))
        to_date = to_date or today

        stats = {
            "fetched": 0,
            "outcomes": {},
            "error": None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            transactions = await self._fetch_with_retry(from_date, to_date)
        except UpstreamUnavailable as e:
            logger.error(f"Casso poll failed after {len(self.retry_delays) + 1} attempts: {e}")
            capture_message(
                "Casso gateway unavailable; poll cycle skipped",
                level="error",
                error=str(e),
                from_date=from_date.isoformat(),
            )
            stats["error"] = str(e)
            self.last_run = stats
            return stats

        results = await self.coordinator.ingest_batch(transactions)

        stats["fetched"] = len(transactions)
        stats["outcomes"] = dict(Counter(r.outcome.value for r in results))
        self.last_run = stats
        return stats

    async def run_continuous(self):
        """
        Run the poller continuously.

        Use stop() (or cancel the task) to end it.
        """
        self._running = True
        logger.info(f"Starting Casso poller (page_size={self.page_size}, poll_interval={self.poll_interval}s)")

        while self._running:
            try:
                stats = await self.process_once()

                if stats["fetched"] > 0:
                    logger.info(f"Polled {stats['fetched']} Casso transactions: {stats['outcomes']}")

            except Exception as e:
                logger.exception(f"Casso poller error: {e}")

            await self._sleep(self.poll_interval)

    def stop(self):
        """Stop the continuous poller."""
        self._running = False
        logger.info("Casso poller stopping...")


async def run_worker():
    """Run the Casso poller as a standalone process."""
    from database.connection import init_db
    from reconciliation.dependencies import get_poller

    await init_db()
    worker = get_poller()

    try:
        await worker.run_continuous()
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    asyncio.run(run_worker())
