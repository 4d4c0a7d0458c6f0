"""
Tests for inbound validation, rate limiting and message routing on the
aggregator side.
"""

import asyncio
import json

import pytest

from tru_monitor.aggregator import FederationAggregator, RateLimiter, validate_inbound
from tru_monitor.bus import InMemoryBus
from tru_monitor.federation_client import FederationClient
from tru_monitor.log_parser import LogParser

NODE_ID = "node-6f1c2d3e-4b5a-4c6d-8e7f-9a0b1c2d3e4f"
TASK_HASH = "c" * 64


def _message(message_type, data=None, node_id=NODE_ID):
    return {"version": "1.0", "type": message_type, "nodeId": node_id,
            "timestamp": "2025-01-01T10:30:00.000Z", "data": data or {}}


def _payload(message):
    return json.dumps(message).encode("utf-8")


class TestValidateInbound:
    def test_accepts_well_formed_messages(self):
        assert validate_inbound(_message("task_received", {"taskIdHash": TASK_HASH, "chainId": "1"})) is None
        assert validate_inbound(_message("task_completed", {
            "taskIdHash": TASK_HASH, "executionTimeBucket": "5-10s", "gasUsedBucket": ">100M"})) is None
        assert validate_inbound(_message("heartbeat", {"totalTasksBucket": "0", "activeTasksBucket": "unknown"})) is None
        assert validate_inbound(_message("node_left")) is None

    @pytest.mark.parametrize("message,reason", [
        ("not a dict", "message is not an object"),
        (_message("something_else"), "unsupported type 'something_else'"),
        (_message("heartbeat", node_id="node-short"), "invalid nodeId"),
        (_message("heartbeat", node_id="0x558f1A2b3C4d5E6f7a8B9c0D1e2F3a4B5c6D7e8F"), "invalid nodeId"),
        (_message("task_received", {}), "missing taskIdHash"),
        (_message("task_received", {"taskIdHash": "not-hex!"}), "invalid taskIdHash"),
        (_message("task_completed", {"taskIdHash": TASK_HASH, "executionTimeBucket": "1M-10M"}),
         "invalid executionTimeBucket"),
        (_message("task_received", {"taskIdHash": TASK_HASH, "chainId": "x" * 65}), "invalid chainId"),
        (_message("task_received", {"taskIdHash": TASK_HASH, "taskType": 5}), "invalid taskType"),
    ])
    def test_rejects_bad_messages(self, message, reason):
        assert validate_inbound(message) == reason

    def test_rejects_non_object_data(self):
        message = _message("heartbeat")
        message["data"] = ["x"]
        assert validate_inbound(message) == "invalid data field"


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRateLimiter:
    def test_per_node_limit_resets_each_window(self):
        monotonic = FakeMonotonic()
        limiter = RateLimiter(per_node=2, global_limit=100, window=1.0, monotonic=monotonic)

        assert [limiter.is_limited("a") for _ in range(3)] == [False, False, True]
        assert limiter.is_limited("b") is False

        monotonic.now += 1.0
        assert limiter.is_limited("a") is False

    def test_global_limit(self):
        limiter = RateLimiter(per_node=100, global_limit=2, window=1.0, monotonic=FakeMonotonic())
        assert [limiter.is_limited(n) for n in ("a", "b", "c")] == [False, False, True]

    def test_prune_forgets_quiet_nodes(self):
        monotonic = FakeMonotonic()
        limiter = RateLimiter(window=1.0, monotonic=monotonic)
        limiter.is_limited("a")
        monotonic.now += 11
        limiter.prune()
        assert limiter._nodes == {}


@pytest.fixture
def aggregator(temp_db):
    bus = InMemoryBus()
    return FederationAggregator(bus, temp_db, rate_limiter=RateLimiter(per_node=5, global_limit=100))


@pytest.mark.asyncio
async def test_routes_each_type_to_the_store(aggregator, temp_db):
    assert await aggregator.handle_message("truebit.tasks.received", _payload(
        _message("task_received", {"taskIdHash": TASK_HASH, "chainId": "1", "taskType": "python"})))
    assert await aggregator.handle_message("truebit.tasks.completed", _payload(
        _message("task_completed", {"taskIdHash": TASK_HASH, "status": "completed", "success": True,
                                    "executionTimeBucket": "1-5s", "gasUsedBucket": "<100K", "cached": True})))
    assert await aggregator.handle_message("truebit.invoices.created", _payload(
        _message("invoice_created", {"invoiceIdHash": "d" * 64, "taskIdHash": TASK_HASH,
                                     "stepsComputedBucket": "<100K", "memoryUsedBucket": "<64MB"})))
    assert await aggregator.handle_message("truebit.heartbeat", _payload(
        _message("heartbeat", {"status": "online", "totalTasksBucket": "1-10", "activeTasksBucket": "1"})))
    assert await aggregator.handle_message("truebit.node_left", _payload(_message("node_left")))

    task = temp_db.get_task(TASK_HASH)
    assert (task["status"], task["success"], task["cached"]) == ("completed", 1, 1)
    assert temp_db.get_invoice("d" * 64)["memory_used_bucket"] == "<64MB"
    node = temp_db.get_node(NODE_ID)
    assert node["status"] == "offline"
    assert node["total_tasks_bucket"] == "1-10"
    assert aggregator.get_stats()["processed"] == 5


@pytest.mark.asyncio
async def test_rejects_bad_input(aggregator, temp_db):
    assert not await aggregator.handle_message("truebit.heartbeat", b"{nope")
    assert not await aggregator.handle_message("truebit.heartbeat", _payload(_message("node_joined")))
    assert not await aggregator.handle_message("truebit.tasks.received", _payload(
        _message("task_received", {"taskIdHash": "zz"})))
    # Subjects outside the ingest set are not counted.
    assert not await aggregator.handle_message("truebit.stats.aggregated", b"{}")

    stats = aggregator.get_stats()
    assert stats["received"] == 3
    assert stats["invalid"] == 3
    assert temp_db.compute_aggregated_stats()["totalNodes"] == 0


@pytest.mark.asyncio
async def test_rate_limited_messages_are_not_stored(temp_db):
    aggregator = FederationAggregator(InMemoryBus(), temp_db, rate_limiter=RateLimiter(per_node=1))
    payload = _payload(_message("heartbeat"))

    assert await aggregator.handle_message("truebit.heartbeat", payload)
    assert not await aggregator.handle_message("truebit.heartbeat", payload)
    assert aggregator.get_stats()["rate_limited"] == 1
    assert temp_db.get_node(NODE_ID)["heartbeat_count"] == 1


@pytest.mark.asyncio
async def test_store_errors_are_counted(aggregator, temp_db, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(temp_db, "upsert_node", broken)
    assert not await aggregator.handle_message("truebit.heartbeat", _payload(_message("heartbeat")))
    assert aggregator.get_stats()["errors"] == 1


@pytest.mark.asyncio
async def test_two_nodes_reporting_the_same_task(temp_db, clock, worker_log):
    from tru_monitor.anonymizer import FederationAnonymizer

    bus = InMemoryBus()
    await bus.connect()
    aggregator = FederationAggregator(bus, temp_db)
    await aggregator.start()

    salt = "e" * 64
    first = FederationClient(bus, FederationAnonymizer(salt=salt, clock=clock))
    second = FederationClient(bus, FederationAnonymizer(salt=salt, clock=clock))
    task = next(e for e in LogParser().parse(worker_log) if e.type == "task_event")
    for client in (first, second):
        await client.publish_node_joined()
        await client.publish_task_received(task)
        await client.publish_task_completed(task)

    for _ in range(100):
        if aggregator.get_stats()["processed"] == 6:
            break
        await asyncio.sleep(0.01)
    await aggregator.stop()

    stats = temp_db.compute_aggregated_stats()
    assert stats["totalTasks"] == 1
    assert stats["completedTasks"] == 1
    assert stats["activeNodes"] == 2
    assert stats["chainDistribution"] == {"11155111": 1}
    task_hash = first.anonymizer.hash_with_salt(task.execution_id)
    assert temp_db.get_task(task_hash)["reporting_nodes"] == 2


@pytest.mark.asyncio
async def test_consume_survives_an_unexpected_error(temp_db):
    bus = InMemoryBus()
    await bus.connect()
    limiter = RateLimiter()
    real_is_limited = limiter.is_limited
    calls = []

    def flaky_is_limited(node_id):
        calls.append(node_id)
        if len(calls) == 1:
            raise RuntimeError("limiter exploded")
        return real_is_limited(node_id)

    limiter.is_limited = flaky_is_limited
    aggregator = FederationAggregator(bus, temp_db, rate_limiter=limiter)
    await aggregator.start()

    await bus.publish("truebit.node_joined", _payload(_message("node_joined")))
    await bus.publish("truebit.heartbeat", _payload(_message("heartbeat", {"activeTasksBucket": "1"})))
    for _ in range(100):
        if aggregator.get_stats()["processed"] == 1:
            break
        await asyncio.sleep(0.01)

    assert not aggregator._task.done()
    await aggregator.stop()

    stats = aggregator.get_stats()
    assert stats["errors"] == 1
    assert stats["processed"] == 1
    assert temp_db.get_node(NODE_ID)["active_tasks_bucket"] == "1"


def test_free_form_task_type_still_passes_inbound_validation(anonymizer, worker_log):
    lines = [line.replace('"source": "function main() { return 1 }"', '"taskType": "' + "x" * 100 + '"')
             for line in worker_log]
    task = next(e for e in LogParser().parse(lines) if e.type == "task_event")

    message = anonymizer.anonymize_task_received(task).to_dict()

    assert message["data"]["taskType"] == "unknown"
    assert validate_inbound(message) is None
