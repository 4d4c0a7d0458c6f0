import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, AsyncIterable, Dict, Optional, Union

from .config import HEARTBEAT_INTERVAL_SECONDS
from .errors import PrivacyViolationError
from .events import ParsedLogEntry, TaskEvent
from .federation_client import FederationClient
from .log_parser import LogParser

log = logging.getLogger("TruMonitor.NodeMonitor")


@dataclass
class NodeCounters:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    total_invoices: int = 0
    active_tasks: int = 0
    dropped_messages: int = 0


class NodeMonitor:
    """
    Node-side pipeline: log source -> LogParser -> FederationClient.

    A TaskEvent is published when the parser hands it over, i.e. once the
    execution window has closed, so task_received and task_completed for the
    same execution go out back to back.
    """

    def __init__(self, source, client: FederationClient, parser: Optional[LogParser] = None,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS):
        self.source = source
        self.client = client
        self.parser = parser or LogParser()
        self.heartbeat_interval = heartbeat_interval
        self.counters = NodeCounters()
        self._task: Optional[asyncio.Task] = None

    def get_status(self) -> Dict[str, Any]:
        status = asdict(self.counters)
        status['federation'] = self.client.get_stats()
        return status

    async def _publish(self, publish, *args) -> bool:
        try:
            return await publish(*args)
        except PrivacyViolationError:
            # Already logged by the client; the message is dropped for good.
            self.counters.dropped_messages += 1
            return False

    async def handle_event(self, event: Union[ParsedLogEntry, TaskEvent]):
        if isinstance(event, TaskEvent):
            self.counters.total_tasks += 1
            await self._publish(self.client.publish_task_received, event)
            if event.is_closed:
                if event.status == 'failed':
                    self.counters.failed_tasks += 1
                else:
                    self.counters.completed_tasks += 1
                await self._publish(self.client.publish_task_completed, event)
            return

        if event.type == 'semaphore' and event.semaphore is not None:
            self.counters.active_tasks = event.semaphore.current
        elif event.type == 'invoice':
            self.counters.total_invoices += 1
            await self._publish(self.client.publish_invoice, event)

    async def send_heartbeat(self) -> bool:
        return await self._publish(self.client.publish_heartbeat, self.counters.active_tasks,
                                   self.counters.total_tasks, self.counters.total_invoices)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send_heartbeat()
            except Exception:
                log.error("Error in heartbeat task:", exc_info=True)

    async def run(self, lines: Optional[AsyncIterable[Optional[str]]] = None):
        """Consumes the log source until it ends or the task is cancelled."""
        await self._publish(self.client.publish_node_joined)
        await self.send_heartbeat()
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            async for event in self.parser.parse_async(lines if lines is not None else self.source.lines()):
                try:
                    await self.handle_event(event)
                except Exception:
                    log.error("Error handling parsed log event:", exc_info=True)
        except asyncio.CancelledError:
            log.warning("Node monitor is cancelled.")
            raise
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._publish(self.client.publish_node_left)
            log.info(f"Node monitor stopped. Counters: {asdict(self.counters)}")

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
