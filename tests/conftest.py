"""
Shared fixtures for TrueBit monitor tests.
"""

import builtins
import contextlib
import datetime
import os
import tempfile

import pytest

WALLET = "0x558f1A2b3C4d5E6f7a8B9c0D1e2F3a4B5c6D7e8F"
EXECUTION_ID = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"

METRICS_JSON = """{
  "elapsed": 7500000000,
  "metering": {
    "limits": {"gas": 50000000, "memory": 536870912, "call": 1000, "frame": 5000},
    "peak": {"memory": 104857600, "call": 12, "frame": 40},
    "last": {"steps": 2500000}
  },
  "execution": {"wasm": {"size": 20480, "hash": "ab12cd"}, "prepare": {"cached": true}},
  "wasi": {"exitCode": 0}
}"""


class FakeClock:
    """Injectable clock; advance() moves it forward."""

    def __init__(self, start=None):
        self.now = start or datetime.datetime(2025, 1, 1, 10, 32, 47, tzinfo=datetime.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db(monkeypatch, clock):
    """Create a temporary aggregator store with full schema."""
    import tru_monitor.config as config
    from tru_monitor.database import AggregatorStore

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    monkeypatch.setattr(config, "DATABASE_FILE", path)

    try:
        store = AggregatorStore(path, clock=clock)
        store.init_db()
        yield store
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def anonymizer(clock):
    from tru_monitor.anonymizer import FederationAnonymizer

    return FederationAnonymizer(node_id="node-6f1c2d3e-4b5a-4c6d-8e7f-9a0b1c2d3e4f", salt="a" * 64, clock=clock)


@pytest.fixture
def worker_log():
    """A realistic slice of worker output for one task, with noise around it."""
    return [
        "\x1b[32mrunner-node  | \x1b[0m2025-01-01 10:31:02 info: @truebit/worker-runner-node:1.4.0 "
        f"Node with address {WALLET} registered successfully",
        "runner-node  | 2025-01-01 10:31:05 info: @truebit/worker-runner-node:1.4.0 "
        "Message received from task_created: {",
        f'runner-node  |   "executionId": "{EXECUTION_ID}",',
        'runner-node  |   "payload": {"chainId": 11155111, "source": "function main() { return 1 }"}',
        "runner-node  | }",
        "runner-node  | 2025-01-01 10:31:05 info: @truebit/worker-runner-node:1.4.0 Using slot 1/4",
        "runner-node  | 2025-01-01 10:31:06 info: @truebit/worker-runner-node:1.4.0 Starting task execution",
        "runner-node  | Command execution stdout: " + METRICS_JSON.split("\n")[0],
    ] + ["runner-node  | " + part for part in METRICS_JSON.split("\n")[1:]] + [
        f"runner-node  | 2025-01-01 10:31:14 info: @truebit/worker-runner-node:1.4.0 Execution {EXECUTION_ID} completed",
        "runner-node  | 2025-01-01 10:31:14 info: @truebit/worker-runner-node:1.4.0 Released slot (0/4 now active)",
        "runner-node  | 2025-01-01 10:31:20 info: @truebit/worker-runner-node:1.4.0 InvoiceSubscriber: invoice {"
        '"invoiceId": "inv-1", "taskId": "' + EXECUTION_ID + '", "chainId": 11155111, '
        '"lineItem": [{"total_steps_computed": 2500000, "peak_memory_used": 104857600, "operation": "compute"}]}',
    ]
