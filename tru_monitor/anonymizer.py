"""
Federation Anonymizer

Converts local events into privacy-preserving federation messages:
- no wallet addresses, keys, task inputs/outputs or IP addresses
- execution and invoice ids hashed with a node-local secret salt
- continuous metrics replaced by bucket labels
- timestamps floored to a 5-minute grid

The salt never leaves the node, which is what makes the hashes one-way.
"""

import datetime
import hashlib
import json
import logging
import os
import re
import secrets
import uuid
from typing import Any, Callable, Dict, Optional, Union

from .config import MESSAGE_VERSION
from .errors import PrivacyViolationError
from .events import FederationMessage, ParsedLogEntry, TaskEvent

log = logging.getLogger("TruMonitor.Anonymizer")

Clock = Callable[[], datetime.datetime]

# Exclusive upper bounds; values past the last bound get the overflow label.
BUCKET_TABLES = {
    'execution_time': ([(100, '<100ms'), (500, '100-500ms'), (1000, '500ms-1s'), (5000, '1-5s'),
                        (10000, '5-10s'), (30000, '10-30s'), (60000, '30s-1m')], '>1m'),
    'gas': ([(100_000, '<100K'), (1_000_000, '100K-1M'), (10_000_000, '1M-10M'),
             (100_000_000, '10M-100M')], '>100M'),
    'steps': ([(100_000, '<100K'), (1_000_000, '100K-1M'), (10_000_000, '1M-10M'),
               (100_000_000, '10M-100M')], '>100M'),
    'memory_mb': ([(64, '<64MB'), (256, '64-256MB'), (1024, '256MB-1GB')], '>1GB'),
    'active_tasks': ([(1, '0'), (2, '1'), (4, '2-3'), (6, '4-5')], '>5'),
    'total_tasks': ([(1, '0'), (10, '1-10'), (50, '10-50'), (100, '50-100'), (500, '100-500'),
                     (1000, '500-1K')], '>1K'),
}
UNKNOWN_BUCKET = 'unknown'

TIMESTAMP_GRID_MINUTES = 5

WALLET_PATTERN = re.compile(r'0x[a-fA-F0-9]{40}')
EXECUTION_ID_KEY_PATTERN = re.compile(r'"execution_id"\s*:', re.IGNORECASE)
SENSITIVE_KEY_PATTERN = re.compile(r'"(input_data|output_data|error_data|private_key|wallet)"\s*:', re.IGNORECASE)
IPV4_PATTERN = re.compile(r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}')


def _numeric(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number < 0:  # NaN or negative
        return None
    return number


def bucket_index(metric: str, value: Any) -> int:
    """Position of value in the metric's bucket table, or -1 when unknown."""
    bounds, _ = BUCKET_TABLES[metric]
    number = _numeric(value)
    if number is None:
        return -1
    for index, (upper, _) in enumerate(bounds):
        if number < upper:
            return index
    return len(bounds)


def bucket(metric: str, value: Any) -> str:
    bounds, overflow = BUCKET_TABLES[metric]
    index = bucket_index(metric, value)
    if index < 0:
        return UNKNOWN_BUCKET
    return bounds[index][1] if index < len(bounds) else overflow


def bucket_execution_time(elapsed_ms: Any) -> str:
    return bucket('execution_time', elapsed_ms)


def bucket_gas_usage(gas_used: Any) -> str:
    return bucket('gas', gas_used)


def bucket_steps_computed(steps: Any) -> str:
    return bucket('steps', steps)


def bucket_memory_used(num_bytes: Any) -> str:
    number = _numeric(num_bytes)
    return bucket('memory_mb', number / (1024 * 1024) if number is not None else None)


def bucket_active_tasks(count: Any) -> str:
    return bucket('active_tasks', count)


def bucket_total_tasks(count: Any) -> str:
    return bucket('total_tasks', count)


def parse_timestamp(value: Union[str, datetime.datetime]) -> datetime.datetime:
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def round_timestamp(value: Union[str, datetime.datetime]) -> datetime.datetime:
    """Floors a timestamp to the 5-minute grid in UTC."""
    ts = parse_timestamp(value)
    return ts.replace(minute=ts.minute - ts.minute % TIMESTAMP_GRID_MINUTES, second=0, microsecond=0)


def format_timestamp(value: datetime.datetime) -> str:
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def validate_message(message: Union[FederationMessage, Dict[str, Any]]) -> bool:
    """
    Last check before anything is published. Raises PrivacyViolationError
    instead of returning False so a caller can never ignore the result.
    """
    payload = message.to_dict() if isinstance(message, FederationMessage) else message
    serialized = json.dumps(payload, separators=(',', ':'), default=str)

    if WALLET_PATTERN.search(serialized):
        raise PrivacyViolationError('Wallet address detected in message', 'wallet_address')
    if EXECUTION_ID_KEY_PATTERN.search(serialized):
        raise PrivacyViolationError('Execution ID in cleartext', 'execution_id')
    if SENSITIVE_KEY_PATTERN.search(serialized):
        raise PrivacyViolationError('Sensitive field detected in message', 'sensitive_field')
    if IPV4_PATTERN.search(serialized):
        raise PrivacyViolationError('IP address detected in message', 'ip_address')
    return True


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class FederationAnonymizer:
    def __init__(self, node_id: Optional[str] = None, salt: Optional[str] = None,
                 created_at: Optional[str] = None, clock: Optional[Clock] = None):
        # Random node id, never derived from the wallet.
        self.node_id = node_id or f"node-{uuid.uuid4()}"
        self._salt = salt or secrets.token_hex(32)
        self._clock = clock or _utc_now
        self.created_at = created_at or format_timestamp(self._clock())

    def hash_with_salt(self, value: Optional[Any]) -> Optional[str]:
        if value is None or value == '':
            return None
        return hashlib.sha256((str(value) + self._salt).encode('utf-8')).hexdigest()

    def _envelope(self, message_type: str, timestamp: Optional[datetime.datetime],
                  data: Dict[str, Any]) -> FederationMessage:
        rounded = round_timestamp(timestamp or self._clock())
        return FederationMessage(version=MESSAGE_VERSION, type=message_type, node_id=self.node_id,
                                 timestamp=format_timestamp(rounded), data=data)

    def anonymize_task_received(self, task: TaskEvent) -> FederationMessage:
        return self._envelope('task_received', task.received_at, {
            'chainId': task.task_input.get('chain_id'),
            'taskType': task.task_input.get('task_type') or 'unknown',
            'taskIdHash': self.hash_with_salt(task.execution_id),
        })

    def anonymize_task_completed(self, task: TaskEvent) -> FederationMessage:
        metrics = task.metrics
        exit_code = metrics.exit_code if metrics else None
        return self._envelope('task_completed', task.completed_at or task.received_at, {
            'chainId': task.task_input.get('chain_id'),
            'taskIdHash': self.hash_with_salt(task.execution_id),
            # Binary outcome only, no error details.
            'status': task.status,
            'success': exit_code == 0,
            'executionTimeBucket': bucket_execution_time(metrics.elapsed_ms if metrics else None),
            'gasUsedBucket': bucket_gas_usage(metrics.gas_used if metrics else None),
            'cached': bool(metrics and metrics.cached),
        })

    def anonymize_heartbeat(self, connected: bool, active_tasks: int = 0, total_tasks: int = 0,
                            total_invoices: int = 0) -> FederationMessage:
        # Exact small counts are kept alongside the buckets for network totals.
        return self._envelope('heartbeat', None, {
            'status': 'online' if connected else 'offline',
            'activeTasks': active_tasks or 0,
            'totalTasks': total_tasks or 0,
            'totalInvoices': total_invoices or 0,
            'activeTasksBucket': bucket_active_tasks(active_tasks or 0),
            'totalTasksBucket': bucket_total_tasks(total_tasks or 0),
        })

    def anonymize_node_joined(self) -> FederationMessage:
        return self._envelope('node_joined', None, {'status': 'online'})

    def anonymize_node_left(self) -> FederationMessage:
        return self._envelope('node_left', None, {'status': 'offline'})

    def anonymize_invoice(self, invoice: Union[ParsedLogEntry, Dict[str, Any]]) -> FederationMessage:
        """
        Accepts an invoice log entry or a stored invoice mapping
        ({'id', 'timestamp', 'details'}); details may be a dict or JSON text.
        """
        if isinstance(invoice, ParsedLogEntry):
            invoice_id, timestamp, details = None, invoice.timestamp, invoice.data
        else:
            invoice_id, timestamp, details = invoice.get('id'), invoice.get('timestamp'), invoice.get('details')
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                log.warning("Invoice details are not valid JSON; publishing without metrics")
                details = {}
        if not isinstance(details, dict):
            details = {}

        line_items = details.get('lineItem')
        first_item = line_items[0] if isinstance(line_items, list) and line_items and isinstance(line_items[0], dict) else {}
        steps = details.get('totalStepsComputed') or first_item.get('total_steps_computed')
        memory = details.get('peakMemoryUsed') or first_item.get('peak_memory_used')
        chain_id = details.get('chainId')

        return self._envelope('invoice_created', parse_timestamp(timestamp) if timestamp else None, {
            'invoiceIdHash': self.hash_with_salt(details.get('invoiceId') or invoice_id),
            'taskIdHash': self.hash_with_salt(details.get('taskId') or details.get('executionId')),
            'chainId': str(chain_id) if chain_id is not None else None,
            'stepsComputedBucket': bucket_steps_computed(steps),
            'memoryUsedBucket': bucket_memory_used(memory),
            'operation': details.get('operation') or first_item.get('operation') or 'compute',
        })

    # --- Credentials ---

    def serialize(self) -> str:
        return json.dumps({'nodeId': self.node_id, 'salt': self._salt, 'createdAt': self.created_at})

    @classmethod
    def _from_json(cls, text: str, clock: Optional[Clock] = None) -> 'FederationAnonymizer':
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("credentials must be a JSON object")
        node_id, salt = data.get('nodeId'), data.get('salt')
        if not isinstance(node_id, str) or not node_id or not isinstance(salt, str) or not salt:
            raise ValueError("credentials are missing nodeId or salt")
        return cls(node_id=node_id, salt=salt, created_at=data.get('createdAt'), clock=clock)

    @classmethod
    def deserialize(cls, text: str, clock: Optional[Clock] = None) -> 'FederationAnonymizer':
        """Restores saved credentials; corrupt state mints new ones instead of failing."""
        try:
            return cls._from_json(text, clock)
        except (ValueError, TypeError) as e:
            log.warning(f"Stored federation credentials are unreadable ({e}); generating new ones.")
            return cls(clock=clock)

    @classmethod
    def load_or_create(cls, path: str, clock: Optional[Clock] = None) -> 'FederationAnonymizer':
        try:
            with open(path, 'r') as f:
                anonymizer = cls._from_json(f.read(), clock)
            log.info(f"Loaded federation credentials for {anonymizer.node_id}")
            return anonymizer
        except FileNotFoundError:
            log.info(f"No federation credentials at '{path}', generating new ones.")
        except (ValueError, TypeError) as e:
            log.warning(f"Federation credentials at '{path}' are corrupt ({e}); generating new ones.")

        anonymizer = cls(clock=clock)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Owner-only from creation; fchmod also tightens a pre-existing file.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(anonymizer.serialize())
        return anonymizer
