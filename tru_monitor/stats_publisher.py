import asyncio
import datetime
import json
import logging
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional

from .anonymizer import format_timestamp
from .bus import MessageBus
from .config import (CLEANUP_INTERVAL_SECONDS, DB_HISTORY_RETENTION_DAYS, DB_RECORDS_RETENTION_DAYS,
                     MESSAGE_VERSION, STATS_PUBLISH_INTERVAL_SECONDS, SUBJECT_PREFIX)
from .database import AggregatorStore
from .errors import BusError
from .federation_client import subject_for

log = logging.getLogger("TruMonitor.StatsPublisher")


class StatsPublisher:
    """
    Periodically snapshots the aggregator store, appends the snapshot to
    history and broadcasts it. Runs a retention purge on its own, slower timer.
    """

    def __init__(self, store: AggregatorStore, bus: MessageBus, executor: Optional[Executor] = None,
                 interval: float = STATS_PUBLISH_INTERVAL_SECONDS,
                 cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
                 history_days: int = DB_HISTORY_RETENTION_DAYS, records_days: int = DB_RECORDS_RETENTION_DAYS,
                 prefix: str = SUBJECT_PREFIX, clock: Callable[[], datetime.datetime] = None):
        self.store = store
        self.bus = bus
        self.executor = executor
        self.interval = interval
        self.cleanup_interval = cleanup_interval
        self.history_days = history_days
        self.records_days = records_days
        self.subject = subject_for('network_stats', prefix)
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._tasks: List[asyncio.Task] = []

    async def publish_once(self) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        stats = await loop.run_in_executor(self.executor, self.store.compute_aggregated_stats)
        await loop.run_in_executor(self.executor, self.store.save_snapshot, stats)

        message = {
            'version': MESSAGE_VERSION,
            'type': 'network_stats',
            'timestamp': format_timestamp(self._clock()),
            'data': stats,
        }
        try:
            await self.bus.publish(self.subject, json.dumps(message).encode('utf-8'))
            log.info(f"Published stats: {stats['activeNodes']} nodes, {stats['totalTasks']} tasks, "
                     f"{stats['totalInvoices']} invoices")
        except BusError as e:
            log.warning(f"Stats snapshot saved but not published: {e}")
        return message

    async def run_cleanup(self) -> Dict[str, int]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.store.purge, self.history_days, self.records_days)

    async def _publish_loop(self):
        log.info(f"Stats publisher started. Publishing every {self.interval}s")
        while True:
            try:
                await self.publish_once()
            except Exception:
                log.error("Error in stats publisher task:", exc_info=True)
            await asyncio.sleep(self.interval)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.run_cleanup()
            except Exception:
                log.error("Error in database cleanup task:", exc_info=True)

    def start(self):
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._publish_loop()),
                       asyncio.create_task(self._cleanup_loop())]

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log.info("Stats publisher stopped.")
