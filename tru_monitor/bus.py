"""
Federation message bus.

Subjects are dot-separated tokens. In subscription patterns `*` matches
exactly one token and `>` matches one or more trailing tokens, so
`truebit.>` receives every federation message.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional, Tuple

import aiohttp

from .config import (BUS_CONNECT_TIMEOUT_SECONDS, BUS_PUBLISH_TIMEOUT_SECONDS, BUS_RECONNECT_BASE_DELAY,
                     BUS_RECONNECT_MAX_ATTEMPTS, BUS_RECONNECT_MAX_DELAY)
from .errors import BusDisconnectedError, BusTimeoutError

log = logging.getLogger("TruMonitor.Bus")

SUBSCRIPTION_QUEUE_SIZE = 1000

_CLOSED = object()


def subject_matches(pattern: str, subject: str) -> bool:
    pattern_tokens = pattern.split('.')
    subject_tokens = subject.split('.')
    for index, token in enumerate(pattern_tokens):
        if token == '>':
            return len(subject_tokens) > index
        if index >= len(subject_tokens):
            return False
        if token != '*' and token != subject_tokens[index]:
            return False
    return len(pattern_tokens) == len(subject_tokens)


class Subscription:
    """Async iterator of (subject, payload) pairs for one subject pattern."""

    def __init__(self, bus: 'MessageBus', pattern: str, maxsize: int = SUBSCRIPTION_QUEUE_SIZE):
        self.bus = bus
        self.pattern = pattern
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def deliver(self, subject: str, payload: bytes):
        if self._closed:
            return
        try:
            self._queue.put_nowait((subject, payload))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning(f"Subscription '{self.pattern}' is full, dropping message on {subject}")

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.bus._remove_subscription(self)
        # Wake a pending reader even if the queue is full.
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Tuple[str, bytes]:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class MessageBus:
    """Subject-addressed publish/subscribe. Payloads are raw bytes."""

    def __init__(self):
        self.status = 'disconnected'
        self._subscriptions: List[Subscription] = []

    @property
    def is_connected(self) -> bool:
        return self.status == 'connected'

    async def connect(self) -> bool:
        raise NotImplementedError

    async def publish(self, subject: str, payload: bytes):
        raise NotImplementedError

    async def subscribe(self, pattern: str) -> Subscription:
        subscription = Subscription(self, pattern)
        self._subscriptions.append(subscription)
        return subscription

    async def close(self):
        for subscription in list(self._subscriptions):
            subscription.close()
        self.status = 'disconnected'

    def _remove_subscription(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _dispatch(self, subject: str, payload: bytes) -> int:
        delivered = 0
        for subscription in list(self._subscriptions):
            if subject_matches(subscription.pattern, subject):
                subscription.deliver(subject, payload)
                delivered += 1
        return delivered


class InMemoryBus(MessageBus):
    """Single-process bus; a node and an aggregator can share one instance."""

    async def connect(self) -> bool:
        self.status = 'connected'
        return True

    async def publish(self, subject: str, payload: bytes):
        if not self.is_connected:
            raise BusDisconnectedError(f"Bus is {self.status}, cannot publish to {subject}")
        self._dispatch(subject, payload)


class WebSocketBus(MessageBus):
    """
    Client for a WebSocket relay (see relay.py). Frames are JSON text:
    {"op": "sub"|"pub"|"msg", "subject": ..., "payload": ...}.

    Reconnects with exponential backoff up to max_attempts, then settles in
    'disconnected' and publishers get BusDisconnectedError.
    """

    def __init__(self, url: str, max_attempts: int = BUS_RECONNECT_MAX_ATTEMPTS,
                 base_delay: float = BUS_RECONNECT_BASE_DELAY, max_delay: float = BUS_RECONNECT_MAX_DELAY,
                 publish_timeout: float = BUS_PUBLISH_TIMEOUT_SECONDS,
                 connect_timeout: float = BUS_CONNECT_TIMEOUT_SECONDS):
        super().__init__()
        self.url = url
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.publish_timeout = publish_timeout
        self.connect_timeout = connect_timeout
        self.reconnections = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self) -> bool:
        self._closing = False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None,
                                                                                connect=self.connect_timeout))
        if not await self._connect_with_backoff():
            return False
        self._reader_task = asyncio.create_task(self._reader_loop())
        return True

    async def _connect_with_backoff(self) -> bool:
        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            self.status = 'connecting' if attempt == 1 else 'reconnecting'
            try:
                self._ws = await self._session.ws_connect(self.url, heartbeat=30)
                for subscription in self._subscriptions:
                    await self._ws.send_str(json.dumps({'op': 'sub', 'subject': subscription.pattern}))
                self.status = 'connected'
                log.info(f"Connected to federation bus at {self.url}")
                return True
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                if attempt == self.max_attempts:
                    break
                log.warning(f"Bus connection attempt {attempt}/{self.max_attempts} failed: {e}. "
                            f"Retrying in {delay:.1f}s...")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_delay)

        self.status = 'disconnected'
        log.error(f"Giving up on federation bus at {self.url} after {self.max_attempts} attempts.")
        return False

    async def _reader_loop(self):
        while not self._closing:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning(f"Bus connection error: {self._ws.exception()}")
                    break
            if self._closing:
                break
            log.warning("Lost connection to federation bus, reconnecting...")
            if not await self._connect_with_backoff():
                return
            self.reconnections += 1

    def _handle_frame(self, text: str):
        try:
            frame = json.loads(text)
        except ValueError:
            log.warning("Ignoring malformed frame from bus relay")
            return
        if not isinstance(frame, dict) or frame.get('op') != 'msg':
            return
        subject, payload = frame.get('subject'), frame.get('payload')
        if not isinstance(subject, str) or not isinstance(payload, str):
            return
        self._dispatch(subject, payload.encode('utf-8'))

    async def publish(self, subject: str, payload: bytes):
        if not self.is_connected or self._ws is None or self._ws.closed:
            raise BusDisconnectedError(f"Bus is {self.status}, cannot publish to {subject}")
        frame = json.dumps({'op': 'pub', 'subject': subject, 'payload': payload.decode('utf-8')})
        try:
            await asyncio.wait_for(self._ws.send_str(frame), timeout=self.publish_timeout)
        except asyncio.TimeoutError:
            raise BusTimeoutError(f"Publish to {subject} timed out after {self.publish_timeout}s")
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise BusDisconnectedError(f"Publish to {subject} failed: {e}") from e

    async def subscribe(self, pattern: str) -> Subscription:
        subscription = await super().subscribe(pattern)
        if self.is_connected and self._ws is not None and not self._ws.closed:
            await self._ws.send_str(json.dumps({'op': 'sub', 'subject': pattern}))
        return subscription

    async def close(self):
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        await super().close()
        log.info("Disconnected from federation bus.")


def create_bus(url: Optional[str]) -> MessageBus:
    if not url or url == 'memory://':
        return InMemoryBus()
    return WebSocketBus(url)
