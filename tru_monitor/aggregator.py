"""
Aggregator-side message router.

Inbound federation messages are untrusted: each one is shape-checked, then
rate limited per node and globally, and only then written to the store.
Store calls run in the database thread pool, one message at a time.
"""

import asyncio
import json
import logging
import re
import time
from concurrent.futures import Executor
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from .anonymizer import BUCKET_TABLES, UNKNOWN_BUCKET
from .bus import MessageBus, Subscription
from .config import GLOBAL_RATE_LIMIT, RATE_LIMIT_PER_NODE, RATE_LIMIT_WINDOW_SECONDS, SUBJECT_PREFIX
from .database import AggregatorStore
from .events import FederationMessage
from .federation_client import SUBJECT_SUFFIXES

log = logging.getLogger("TruMonitor.Aggregator")

MAX_STRING_LENGTH = 64
HASH_RE = re.compile(r'^[a-f0-9]{8,64}$', re.IGNORECASE)
NODE_ID_RE = re.compile(r'^node-[a-f0-9-]{36}$', re.IGNORECASE)

# Each bucket field only accepts the labels its anonymizer table can produce.
BUCKET_FIELDS = {
    'executionTimeBucket': 'execution_time',
    'gasUsedBucket': 'gas',
    'stepsComputedBucket': 'steps',
    'memoryUsedBucket': 'memory_mb',
    'totalTasksBucket': 'total_tasks',
    'activeTasksBucket': 'active_tasks',
}
STRING_FIELDS = ('chainId', 'taskType', 'status', 'operation')
HASH_FIELDS = ('taskIdHash', 'invoiceIdHash')

REQUIRED_FIELDS = {
    'task_received': ('taskIdHash',),
    'task_completed': ('taskIdHash',),
    'invoice_created': ('invoiceIdHash',),
    'heartbeat': (),
    'node_joined': (),
    'node_left': (),
}


def _allowed_labels(metric: str):
    bounds, overflow = BUCKET_TABLES[metric]
    return {label for _, label in bounds} | {overflow, UNKNOWN_BUCKET}


ALLOWED_BUCKETS = {field: _allowed_labels(metric) for field, metric in BUCKET_FIELDS.items()}


def validate_inbound(message: Any) -> Optional[str]:
    """Returns None for a well-formed message, otherwise the reason it is rejected."""
    if not isinstance(message, dict):
        return "message is not an object"
    message_type = message.get('type')
    if message_type not in REQUIRED_FIELDS:
        return f"unsupported type {message_type!r}"
    node_id = message.get('nodeId')
    if not isinstance(node_id, str) or len(node_id) > 50 or not NODE_ID_RE.match(node_id):
        return "invalid nodeId"

    data = message.get('data', {})
    if not isinstance(data, dict):
        return "invalid data field"
    for field in REQUIRED_FIELDS[message_type]:
        if data.get(field) is None:
            return f"missing {field}"
    for field in HASH_FIELDS:
        value = data.get(field)
        if value is not None and not (isinstance(value, str) and HASH_RE.match(value)):
            return f"invalid {field}"
    for field, allowed in ALLOWED_BUCKETS.items():
        if field in data and data[field] not in allowed:
            return f"invalid {field}"
    for field in STRING_FIELDS:
        value = data.get(field)
        if value is not None and not (isinstance(value, str) and len(value) <= MAX_STRING_LENGTH):
            return f"invalid {field}"
    return None


class RateLimiter:
    """Fixed-window counters: one per node plus a global ceiling."""

    def __init__(self, per_node: int = RATE_LIMIT_PER_NODE, global_limit: int = GLOBAL_RATE_LIMIT,
                 window: float = RATE_LIMIT_WINDOW_SECONDS, monotonic: Callable[[], float] = time.monotonic):
        self.per_node = per_node
        self.global_limit = global_limit
        self.window = window
        self._monotonic = monotonic
        self._global = [0, monotonic()]
        self._nodes: Dict[str, list] = {}

    def is_limited(self, node_id: str) -> bool:
        now = self._monotonic()
        if now - self._global[1] >= self.window:
            self._global = [0, now]
        self._global[0] += 1
        if self._global[0] > self.global_limit:
            log.error("[SECURITY] Global rate limit exceeded")
            return True

        entry = self._nodes.get(node_id)
        if entry is None or now - entry[1] >= self.window:
            self._nodes[node_id] = [1, now]
            return False
        entry[0] += 1
        if entry[0] > self.per_node:
            log.warning(f"[SECURITY] Rate limit exceeded for node {node_id[:12]}... ({entry[0]} msgs/window)")
            return True
        return False

    def prune(self):
        """Drops counters for nodes that have been quiet for ten windows."""
        now = self._monotonic()
        for node_id in [n for n, (_, start) in self._nodes.items() if now - start > self.window * 10]:
            del self._nodes[node_id]


@dataclass
class AggregatorStats:
    received: int = 0
    processed: int = 0
    invalid: int = 0
    rate_limited: int = 0
    errors: int = 0


class FederationAggregator:
    def __init__(self, bus: MessageBus, store: AggregatorStore, executor: Optional[Executor] = None,
                 prefix: str = SUBJECT_PREFIX, rate_limiter: Optional[RateLimiter] = None):
        self.bus = bus
        self.store = store
        self.executor = executor
        self.prefix = prefix
        self.rate_limiter = rate_limiter or RateLimiter()
        self.stats = AggregatorStats()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._handlers = {
            'task_received': self._handle_task_received,
            'task_completed': self._handle_task_completed,
            'invoice_created': self._handle_invoice_created,
            'heartbeat': self._handle_heartbeat,
            'node_joined': self._handle_node_status,
            'node_left': self._handle_node_status,
        }
        self._ingest_subjects = {f"{prefix}.{SUBJECT_SUFFIXES[t]}": t for t in self._handlers}

    def get_stats(self) -> Dict[str, int]:
        return asdict(self.stats)

    async def handle_message(self, subject: str, payload: bytes) -> bool:
        """Validates, rate limits and stores one message. Returns True if it was stored."""
        expected_type = self._ingest_subjects.get(subject)
        if expected_type is None:
            return False
        self.stats.received += 1

        try:
            message = json.loads(payload)
        except ValueError:
            self.stats.invalid += 1
            log.warning(f"[VALIDATION] Malformed JSON on {subject}")
            return False

        reason = validate_inbound(message)
        if reason is None and message.get('type') != expected_type:
            reason = f"type {message.get('type')!r} does not match subject"
        if reason is not None:
            self.stats.invalid += 1
            log.warning(f"[VALIDATION] Rejected message on {subject}: {reason}")
            return False

        if self.rate_limiter.is_limited(message['nodeId']):
            self.stats.rate_limited += 1
            return False

        handler = self._handlers[expected_type]
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self.executor, handler, FederationMessage.from_dict(message))
        except Exception:
            self.stats.errors += 1
            log.error(f"Error storing {expected_type} message", exc_info=True)
            return False
        self.stats.processed += 1
        return True

    # --- Handlers (run in the executor) ---

    def _handle_task_received(self, message):
        data = message.data
        log.debug(f"Task received: {data['taskIdHash'][:12]}...")
        self.store.upsert_task(data['taskIdHash'], data.get('chainId'), data.get('taskType'))

    def _handle_task_completed(self, message):
        data = message.data
        log.debug(f"Task completed: {data['taskIdHash'][:12]}...")
        self.store.update_task_completed(
            data['taskIdHash'],
            status=data.get('status') or 'completed',
            success=bool(data.get('success')),
            time_bucket=data.get('executionTimeBucket'),
            gas_bucket=data.get('gasUsedBucket'),
            cached=bool(data.get('cached')),
        )

    def _handle_invoice_created(self, message):
        data = message.data
        log.debug(f"Invoice created: {data['invoiceIdHash'][:12]}...")
        self.store.upsert_invoice(
            data['invoiceIdHash'],
            task_id_hash=data.get('taskIdHash'),
            chain_id=data.get('chainId'),
            steps_bucket=data.get('stepsComputedBucket'),
            memory_bucket=data.get('memoryUsedBucket'),
            operation=data.get('operation'),
        )

    def _handle_heartbeat(self, message):
        data = message.data
        log.debug(f"Heartbeat from: {message.node_id[:12]}...")
        self.store.upsert_node(
            message.node_id,
            status=data.get('status') or 'online',
            total_tasks_bucket=data.get('totalTasksBucket'),
            active_tasks_bucket=data.get('activeTasksBucket'),
        )

    def _handle_node_status(self, message):
        status = 'offline' if message.type == 'node_left' else 'online'
        log.info(f"Node {message.node_id[:12]}... is {status}")
        self.store.upsert_node(message.node_id, status=status)

    # --- Lifecycle ---

    async def _consume(self):
        async for subject, payload in self._subscription:
            try:
                await self.handle_message(subject, payload)
            except Exception:
                self.stats.errors += 1
                log.error(f"Error in aggregator consume task on {subject}:", exc_info=True)
            if self.stats.received % 1000 == 0:
                self.rate_limiter.prune()

    async def start(self):
        self._subscription = await self.bus.subscribe(f"{self.prefix}.>")
        self._task = asyncio.create_task(self._consume())
        log.info(f"Aggregator subscribed to {self.prefix}.>")

    async def stop(self):
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        log.info(f"Aggregator stopped. Stats: {self.get_stats()}")
