import datetime
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SemaphoreEvent:
    action: str  # 'acquire' or 'release'
    current: int
    total: int


@dataclass(frozen=True)
class ExecutionMetrics:
    """Flat view of the metrics JSON a worker prints after running a task.

    Times are in milliseconds and sizes in bytes. Paths missing from the source
    payload are left as None.
    """
    elapsed_ms: Optional[float] = None
    exit_code: Optional[int] = None
    gas_limit: Optional[int] = None
    gas_used: Optional[int] = None
    memory_limit: Optional[int] = None
    memory_peak: Optional[int] = None
    call_limit: Optional[int] = None
    call_peak: Optional[int] = None
    frame_limit: Optional[int] = None
    frame_peak: Optional[int] = None
    wasm_size: Optional[int] = None
    wasm_hash: Optional[str] = None
    cached: bool = False


@dataclass(frozen=True)
class ParsedLogEntry:
    type: str
    raw: str
    timestamp: Optional[datetime.datetime] = None
    level: Optional[str] = None
    version: Optional[str] = None
    message: Optional[str] = None
    execution_id: Optional[str] = None
    semaphore: Optional[SemaphoreEvent] = None
    data: Any = None
    metrics_payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class TaskEvent:
    """One execution window, from the task_received line to its completion."""
    execution_id: Optional[str]
    received_at: Optional[datetime.datetime] = None
    started_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    status: str = 'received'
    logs: List[ParsedLogEntry] = field(default_factory=list)
    metrics: Optional[ExecutionMetrics] = None
    task_input: Dict[str, Any] = field(default_factory=dict)

    type = 'task_event'

    @property
    def is_closed(self) -> bool:
        return self.status in ('completed', 'failed')

    def to_dict(self) -> Dict[str, Any]:
        payload = _jsonable(asdict(self))
        payload['type'] = self.type
        return payload


def _jsonable(value):
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class FederationMessage:
    """Versioned envelope; the only thing a node ever sends to the network."""
    version: str
    type: str
    node_id: str
    timestamp: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'type': self.type,
            'nodeId': self.node_id,
            'timestamp': self.timestamp,
            'data': dict(self.data),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'FederationMessage':
        return cls(
            version=payload.get('version', ''),
            type=payload.get('type', ''),
            node_id=payload.get('nodeId', ''),
            timestamp=payload.get('timestamp', ''),
            data=payload.get('data') or {},
        )
