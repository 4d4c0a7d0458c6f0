"""
Log Parser

Turns raw TrueBit worker output (ANSI coloured, container prefixed, with
pretty-printed JSON spread over several lines) into typed entries, and groups
the entries of one execution into a TaskEvent.
"""

import datetime
import json
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Union

from .config import CONTAINER_PREFIX
from .events import ExecutionMetrics, ParsedLogEntry, SemaphoreEvent, TaskEvent

log = logging.getLogger("TruMonitor.LogParser")

ANSI_RE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')
CONTAINER_PREFIX_RE = re.compile(r'^' + re.escape(CONTAINER_PREFIX) + r'\s+\| ?')
TIMESTAMP_PREFIX_RE = re.compile(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}')

# 2025-11-24 13:55:34 info: @truebit/worker-runner-node-0x558f...:1.4.0 <message>
LOG_LINE_RE = re.compile(
    r'^(?P<timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) (?P<level>info|warn|error|debug): '
    r'@(?P<source>[^\s:]+):(?P<version>[0-9][\w.+-]*)\s+(?P<message>.+)$'
)

TASK_RECEIVED_RE = re.compile(r'Message received from task_created:')
TASK_COMPLETED_RE = re.compile(r'Execution ([a-f0-9-]+) completed')
EXECUTION_ID_RE = re.compile(r'executionId[\'":\s]+([a-f0-9-]+)', re.IGNORECASE)
INVOICE_RE = re.compile(r'InvoiceSubscriber')
SEMAPHORE_ACQUIRE_RE = re.compile(r'Using slot (\d+)/(\d+)')
SEMAPHORE_RELEASE_RE = re.compile(r'Released slot \((\d+)/(\d+) now active\)')
# No capture group: the address is never extracted.
REGISTRATION_RE = re.compile(r'Node with address 0x[0-9A-Fa-f]+ (?:registered successfully|requested registration)')
WALLET_RE = re.compile(r'0x[0-9A-Fa-f]{40}')
# Best-effort: from the first '{' to a '}' closing the message. Not a bracket matcher.
JSON_PAYLOAD_RE = re.compile(r'(\{.*\})\s*$', re.DOTALL)

EXECUTION_OUTPUT_MARKERS = ('Command execution stdout:', 'Command execution stderr:')

LineSource = Union[str, Iterable[Optional[str]]]


def clean_line(line: str) -> str:
    """Removes ANSI colour codes and the docker compose container prefix."""
    line = ANSI_RE.sub('', line.rstrip('\r\n'))
    return CONTAINER_PREFIX_RE.sub('', line)


def _is_entry_start(line: str) -> bool:
    if TIMESTAMP_PREFIX_RE.match(line):
        return True
    return any(marker in line for marker in EXECUTION_OUTPUT_MARKERS)


class MultilineAggregator:
    """
    Groups continuation lines with the entry they belong to.

    A line that starts with a timestamp (or carries an execution output marker)
    opens a new entry; anything else is appended to the open entry with a
    newline. Lines seen before any entry was opened are returned on their own.
    """

    def __init__(self):
        self._current: Optional[List[str]] = None

    def feed(self, line: str) -> List[str]:
        cleaned = clean_line(line)
        if not cleaned.strip():
            return []

        if _is_entry_start(cleaned):
            completed = self.flush()
            self._current = [cleaned]
            return completed

        if self._current is not None:
            self._current.append(cleaned)
            return []
        return [cleaned]

    def flush(self) -> List[str]:
        if self._current is None:
            return []
        block = '\n'.join(self._current)
        self._current = None
        return [block]

    @property
    def pending(self) -> bool:
        return self._current is not None


def aggregate_lines(lines: Iterable[str]) -> Iterator[str]:
    aggregator = MultilineAggregator()
    for line in lines:
        yield from aggregator.feed(line)
    yield from aggregator.flush()


def extract_json(text: str) -> Any:
    """Returns the trailing JSON object of a message, or None."""
    match = JSON_PAYLOAD_RE.search(text)
    if not match:
        return None
    blob = match.group(1)
    try:
        return json.loads(blob)
    except ValueError:
        pass
    # The regex runs to the last brace; retry with a decoder that stops at the
    # end of the first complete object.
    try:
        value, _ = json.JSONDecoder().raw_decode(blob)
        return value
    except ValueError:
        return None


def classify_message(message: str) -> str:
    if TASK_RECEIVED_RE.search(message):
        return 'task_received'
    if TASK_COMPLETED_RE.search(message):
        return 'task_completed'
    if INVOICE_RE.search(message):
        return 'invoice'
    if SEMAPHORE_ACQUIRE_RE.search(message) or SEMAPHORE_RELEASE_RE.search(message):
        return 'semaphore'
    if REGISTRATION_RE.search(message):
        return 'registration'
    if 'Task' in message and 'downloaded successfully' in message:
        return 'task_download'
    if 'Starting task execution' in message:
        return 'task_start'
    if 'Message published to compute_outcome' in message:
        return 'task_published'
    return 'info'


def extract_execution_id(message: str) -> Optional[str]:
    match = EXECUTION_ID_RE.search(message)
    if match:
        return match.group(1)
    match = TASK_COMPLETED_RE.search(message)
    return match.group(1) if match else None


def extract_semaphore(message: str) -> Optional[SemaphoreEvent]:
    for action, pattern in (('acquire', SEMAPHORE_ACQUIRE_RE), ('release', SEMAPHORE_RELEASE_RE)):
        match = pattern.search(message)
        if match:
            current, total = int(match.group(1)), int(match.group(2))
            if current > total:
                log.debug(f"Ignoring semaphore line with current > total ({current}/{total})")
                return None
            return SemaphoreEvent(action=action, current=current, total=total)
    return None


def parse_line(line: str) -> Optional[ParsedLogEntry]:
    """
    Classifies one cleaned log line (or aggregated multi-line block).
    Never raises: anything unrecognised comes back as a 'raw' entry.
    """
    if not line or not line.strip():
        return None

    lines = line.split('\n')
    match = LOG_LINE_RE.match(lines[0])
    if not match:
        return _parse_non_log_line(line)

    first_message = match.group('message').strip()
    message = '\n'.join([first_message] + lines[1:]) if len(lines) > 1 else first_message
    entry_type = classify_message(first_message)
    timestamp = datetime.datetime.strptime(match.group('timestamp'), '%Y-%m-%d %H:%M:%S').replace(
        tzinfo=datetime.timezone.utc)

    fields: Dict[str, Any] = {}
    if entry_type in ('task_received', 'task_completed'):
        fields['execution_id'] = extract_execution_id(message)
        fields['data'] = extract_json(message)
    elif entry_type == 'semaphore':
        fields['semaphore'] = extract_semaphore(first_message)
        if fields['semaphore'] is None:
            entry_type = 'info'
    elif entry_type == 'invoice':
        fields['data'] = extract_json(message)
    elif entry_type == 'registration':
        # The operator's wallet address never leaves this function.
        fields['data'] = {'registered': 'registered successfully' in first_message}
        message = WALLET_RE.sub('0x[REDACTED]', message)
        line = WALLET_RE.sub('0x[REDACTED]', line)
    elif entry_type == 'task_start':
        fields['execution_id'] = extract_execution_id(message)

    return ParsedLogEntry(
        type=entry_type,
        raw=line,
        timestamp=timestamp,
        level=match.group('level'),
        version=match.group('version'),
        message=message,
        **fields,
    )


def _parse_non_log_line(line: str) -> ParsedLogEntry:
    trimmed = line.strip()
    if trimmed.startswith(('{', '[')):
        try:
            return ParsedLogEntry(type='json_data', raw=line, data=json.loads(trimmed))
        except ValueError:
            pass

    if any(marker in line for marker in EXECUTION_OUTPUT_MARKERS):
        payload = extract_json(line)
        return ParsedLogEntry(type='execution_output', raw=line, data=payload, metrics_payload=payload)

    return ParsedLogEntry(type='raw', raw=line)


def _dig(data: Dict[str, Any], *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_execution_metrics(payload: Any) -> Optional[ExecutionMetrics]:
    """
    Reads the fixed metric paths out of an execution result payload.
    Accepts the decoded mapping or its JSON text; returns None if it is neither.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None

    elapsed_ns = _as_int(payload.get('elapsed'))
    wasm_hash = _dig(payload, 'execution', 'wasm', 'hash')
    return ExecutionMetrics(
        elapsed_ms=elapsed_ns / 1e6 if elapsed_ns is not None else None,
        exit_code=_as_int(_dig(payload, 'wasi', 'exitCode')),
        gas_limit=_as_int(_dig(payload, 'metering', 'limits', 'gas')),
        gas_used=_as_int(_dig(payload, 'metering', 'last', 'steps')),
        memory_limit=_as_int(_dig(payload, 'metering', 'limits', 'memory')),
        memory_peak=_as_int(_dig(payload, 'metering', 'peak', 'memory')),
        call_limit=_as_int(_dig(payload, 'metering', 'limits', 'call')),
        call_peak=_as_int(_dig(payload, 'metering', 'peak', 'call')),
        frame_limit=_as_int(_dig(payload, 'metering', 'limits', 'frame')),
        frame_peak=_as_int(_dig(payload, 'metering', 'peak', 'frame')),
        wasm_size=_as_int(_dig(payload, 'execution', 'wasm', 'size')),
        wasm_hash=wasm_hash if isinstance(wasm_hash, str) else None,
        cached=_dig(payload, 'execution', 'prepare', 'cached') is True,
    )


KNOWN_TASK_TYPES = ('javascript', 'python', 'wasm')
CHAIN_ID_RE = re.compile(r'\d{1,20}')


def parse_task_input(data: Any) -> Dict[str, Any]:
    """Pulls the low-cardinality task attributes out of a task_created payload."""
    if not isinstance(data, dict):
        return {'task_type': 'unknown', 'chain_id': None}
    task = data.get('payload') if isinstance(data.get('payload'), dict) else data

    task_type = 'unknown'
    source = task.get('source')
    if isinstance(source, str):
        if 'function' in source:
            task_type = 'javascript'
        elif 'def ' in source:
            task_type = 'python'
    if task_type == 'unknown' and task.get('taskType') in KNOWN_TASK_TYPES:
        task_type = task['taskType']

    chain_id = task.get('chainId')
    chain_id = str(chain_id) if isinstance(chain_id, (int, str)) and not isinstance(chain_id, bool) else None
    if chain_id is not None and not CHAIN_ID_RE.fullmatch(chain_id):
        chain_id = None
    return {'task_type': task_type, 'chain_id': chain_id}


class TaskGrouper:
    """
    Single-slot task state machine. A task_received entry opens a TaskEvent;
    start, execution output and completion entries attach to it until the
    completion closes it. Everything else passes through.
    """

    def __init__(self):
        self.current: Optional[TaskEvent] = None

    def feed(self, entry: ParsedLogEntry) -> Iterator[Union[ParsedLogEntry, TaskEvent]]:
        if entry.type == 'task_received':
            if self.current is not None:
                log.debug(f"Task {self.current.execution_id} superseded before completion")
                yield self._take()
            self.current = TaskEvent(
                execution_id=entry.execution_id,
                received_at=entry.timestamp,
                logs=[entry],
                task_input=parse_task_input(entry.data),
            )
            return

        task = self.current
        if task is None:
            yield entry
            return

        if entry.type == 'execution_output':
            metrics = parse_execution_metrics(entry.metrics_payload)
            if metrics is not None:
                task.metrics = metrics
            task.status = 'executing'
            task.logs.append(entry)
        elif entry.type == 'task_start':
            task.started_at = entry.timestamp
            task.status = 'executing'
            task.logs.append(entry)
        elif entry.type == 'task_completed':
            task.completed_at = entry.timestamp
            exit_code = task.metrics.exit_code if task.metrics else None
            task.status = 'failed' if exit_code not in (None, 0) else 'completed'
            task.logs.append(entry)
            yield self._take()
        else:
            yield entry

    def flush(self) -> Iterator[TaskEvent]:
        if self.current is not None:
            yield self._take()

    def _take(self) -> TaskEvent:
        task, self.current = self.current, None
        return task


def _split(item: str) -> List[str]:
    return item.split('\n') if '\n' in item else [item]


class LogParser:
    """
    Public entry point. Each call to parse()/parse_async() starts from a clean
    state, so one parser can be reused for any number of streams.
    """

    def parse(self, lines: LineSource) -> Iterator[Union[ParsedLogEntry, TaskEvent]]:
        if isinstance(lines, str):
            lines = lines.split('\n')
        aggregator = MultilineAggregator()
        grouper = TaskGrouper()
        for item in lines:
            if item is None:
                blocks = aggregator.flush()
            else:
                blocks = [block for part in _split(item) for block in aggregator.feed(part)]
            for block in blocks:
                yield from self._emit(block, grouper)
        for block in aggregator.flush():
            yield from self._emit(block, grouper)
        yield from grouper.flush()

    async def parse_async(self, lines: AsyncIterable[Optional[str]]) -> AsyncIterator[Union[ParsedLogEntry, TaskEvent]]:
        """
        Async variant for live sources. A None item means the source went idle
        and flushes the pending multi-line entry without waiting for the next
        timestamped line.
        """
        aggregator = MultilineAggregator()
        grouper = TaskGrouper()
        async for item in lines:
            if item is None:
                blocks = aggregator.flush()
            else:
                blocks = [block for part in _split(item) for block in aggregator.feed(part)]
            for block in blocks:
                for event in self._emit(block, grouper):
                    yield event
        for block in aggregator.flush():
            for event in self._emit(block, grouper):
                yield event
        for event in grouper.flush():
            yield event

    @staticmethod
    def _emit(block: str, grouper: TaskGrouper) -> Iterator[Union[ParsedLogEntry, TaskEvent]]:
        entry = parse_line(block)
        if entry is not None:
            yield from grouper.feed(entry)


def parse_log_stream(text: LineSource) -> List[Union[ParsedLogEntry, TaskEvent]]:
    return list(LogParser().parse(text))
