"""
Node-side federation publisher.

Every outgoing message passes two independent privacy gates (the
anonymizer's validator and the severity-graded detector) before it reaches
the bus. Privacy failures are raised to the caller and never retried;
transport failures feed a circuit breaker.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

from .anonymizer import FederationAnonymizer, validate_message
from .bus import MessageBus
from .config import (CIRCUIT_BREAKER_RESET_SECONDS, CIRCUIT_BREAKER_THRESHOLD, MAX_MESSAGES_PER_MINUTE,
                     SUBJECT_PREFIX)
from .errors import BusError, CircuitOpenError, PrivacyViolationError, RateLimitedError
from .events import FederationMessage, ParsedLogEntry, TaskEvent
from .privacy_checker import PrivacyViolationDetector

log = logging.getLogger("TruMonitor.FederationClient")

SUBJECT_SUFFIXES = {
    'task_received': 'tasks.received',
    'task_completed': 'tasks.completed',
    'invoice_created': 'invoices.created',
    'heartbeat': 'heartbeat',
    'node_joined': 'node_joined',
    'node_left': 'node_left',
    'network_stats': 'stats.aggregated',
}


def subject_for(message_type: str, prefix: str = SUBJECT_PREFIX) -> str:
    return f"{prefix}.{SUBJECT_SUFFIXES[message_type]}"


@dataclass
class FederationStats:
    messages_sent: int = 0
    messages_received: int = 0
    errors: int = 0
    privacy_violations: int = 0
    rate_limited: int = 0
    circuit_rejections: int = 0


class FederationClient:
    def __init__(self, bus: MessageBus, anonymizer: FederationAnonymizer, prefix: str = SUBJECT_PREFIX,
                 max_messages_per_minute: int = MAX_MESSAGES_PER_MINUTE,
                 breaker_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
                 breaker_reset_seconds: float = CIRCUIT_BREAKER_RESET_SECONDS,
                 privacy_checks: bool = True, monotonic: Callable[[], float] = time.monotonic):
        self.bus = bus
        self.anonymizer = anonymizer
        self.prefix = prefix
        self.max_messages_per_minute = max_messages_per_minute
        self.breaker_threshold = breaker_threshold
        self.breaker_reset_seconds = breaker_reset_seconds
        self.privacy_checks = privacy_checks
        self.detector = PrivacyViolationDetector()
        self.stats = FederationStats()
        self._monotonic = monotonic
        self._window_start = monotonic()
        self._window_count = 0
        self._failure_count = 0
        self._circuit_opened_at: Optional[float] = None

    @property
    def node_id(self) -> str:
        return self.anonymizer.node_id

    @property
    def circuit_open(self) -> bool:
        if self._circuit_opened_at is None:
            return False
        if self._monotonic() - self._circuit_opened_at >= self.breaker_reset_seconds:
            log.info("Circuit breaker closed")
            self._circuit_opened_at = None
            self._failure_count = 0
            return False
        return True

    def is_healthy(self) -> bool:
        return self.bus.is_connected and not self.circuit_open

    def get_stats(self) -> Dict[str, Any]:
        stats = asdict(self.stats)
        stats.update({
            'connected': self.bus.is_connected,
            'busStatus': self.bus.status,
            'circuitOpen': self.circuit_open,
            'nodeId': self.node_id,
        })
        return stats

    # --- Gates ---

    def _check_privacy(self, message: FederationMessage):
        try:
            validate_message(message)
            if self.privacy_checks:
                # nodeId is a random identifier, so only the payload is scanned.
                self.detector.assert_safe(message.data, context=f"{message.type} message")
        except PrivacyViolationError as e:
            self.stats.privacy_violations += 1
            log.error(f"Dropped {message.type} message: {e.reason}")
            raise

    def _check_rate_limit(self):
        now = self._monotonic()
        if now - self._window_start >= 60:
            self._window_start = now
            self._window_count = 0
        if self._window_count >= self.max_messages_per_minute:
            raise RateLimitedError(f"More than {self.max_messages_per_minute} messages this minute")
        self._window_count += 1

    def _record_failure(self):
        self.stats.errors += 1
        self._failure_count += 1
        if self._failure_count >= self.breaker_threshold and self._circuit_opened_at is None:
            self._circuit_opened_at = self._monotonic()
            log.warning(f"Circuit breaker opened after {self._failure_count} consecutive failures")

    # --- Publishing ---

    async def publish(self, message: FederationMessage) -> bool:
        """
        Returns True once the message is on the bus, False when it was skipped
        or the transport failed. Raises PrivacyViolationError when the message
        must never be sent.
        """
        self._check_privacy(message)
        subject = subject_for(message.type, self.prefix)
        try:
            if self.circuit_open:
                raise CircuitOpenError("Circuit breaker open")
            self._check_rate_limit()
        except CircuitOpenError:
            self.stats.circuit_rejections += 1
            log.warning(f"Circuit breaker open, skipping publish to {subject}")
            return False
        except RateLimitedError:
            self.stats.rate_limited += 1
            log.warning(f"Rate limit exceeded, skipping publish to {subject}")
            return False

        payload = json.dumps(message.to_dict(), separators=(',', ':')).encode('utf-8')
        try:
            await self.bus.publish(subject, payload)
        except BusError as e:
            log.error(f"Failed to publish to {subject}: {e}")
            self._record_failure()
            return False

        self._failure_count = 0
        self.stats.messages_sent += 1
        log.debug(f"Published {message.type} to {subject}")
        return True

    async def publish_task_received(self, task: TaskEvent) -> bool:
        return await self.publish(self.anonymizer.anonymize_task_received(task))

    async def publish_task_completed(self, task: TaskEvent) -> bool:
        return await self.publish(self.anonymizer.anonymize_task_completed(task))

    async def publish_invoice(self, invoice: Union[ParsedLogEntry, Dict[str, Any]]) -> bool:
        return await self.publish(self.anonymizer.anonymize_invoice(invoice))

    async def publish_heartbeat(self, active_tasks: int = 0, total_tasks: int = 0,
                                total_invoices: int = 0) -> bool:
        return await self.publish(self.anonymizer.anonymize_heartbeat(
            self.bus.is_connected, active_tasks, total_tasks, total_invoices))

    async def publish_node_joined(self) -> bool:
        return await self.publish(self.anonymizer.anonymize_node_joined())

    async def publish_node_left(self) -> bool:
        return await self.publish(self.anonymizer.anonymize_node_left())

    # --- Subscribing ---

    async def subscribe_stats(self) -> AsyncIterator[Dict[str, Any]]:
        """Yields each network_stats snapshot the aggregator publishes."""
        subscription = await self.bus.subscribe(subject_for('network_stats', self.prefix))
        try:
            async for subject, payload in subscription:
                try:
                    data = json.loads(payload)
                except ValueError:
                    self.stats.errors += 1
                    log.warning(f"Ignoring malformed message on {subject}")
                    continue
                self.stats.messages_received += 1
                yield data
        finally:
            subscription.close()

    async def close(self, timeout: float = 5.0):
        try:
            await asyncio.wait_for(self.bus.close(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Timed out closing the federation bus")
