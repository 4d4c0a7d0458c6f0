"""
Tests for the federation anonymizer: bucketing, hashing, rounding,
message builders, the pre-publish validator and credential persistence.
"""

import datetime
import json
import os
import re

import pytest

from tru_monitor.anonymizer import (
    BUCKET_TABLES,
    FederationAnonymizer,
    bucket,
    bucket_active_tasks,
    bucket_execution_time,
    bucket_gas_usage,
    bucket_index,
    bucket_memory_used,
    bucket_total_tasks,
    round_timestamp,
    format_timestamp,
    validate_message,
)
from tru_monitor.errors import PrivacyViolationError
from tru_monitor.events import ExecutionMetrics, FederationMessage, TaskEvent
from tru_monitor.log_parser import LogParser

from conftest import EXECUTION_ID, WALLET

UTC = datetime.timezone.utc


class TestBuckets:
    @pytest.mark.parametrize("value,expected", [
        (0, "<100ms"), (99.9, "<100ms"), (100, "100-500ms"), (999, "500ms-1s"), (1000, "1-5s"),
        (7500, "5-10s"), (10000, "10-30s"), (59999, "30s-1m"), (60000, ">1m"),
    ])
    def test_execution_time(self, value, expected):
        assert bucket_execution_time(value) == expected

    @pytest.mark.parametrize("value", [None, -1, "abc", True, float("nan")])
    def test_unknown_values(self, value):
        assert bucket_execution_time(value) == "unknown"
        assert bucket_gas_usage(value) == "unknown"

    def test_gas_and_memory(self):
        assert bucket_gas_usage(99_999) == "<100K"
        assert bucket_gas_usage(2_500_000) == "1M-10M"
        assert bucket_gas_usage(100_000_000) == ">100M"
        assert bucket_memory_used(10 * 1024 * 1024) == "<64MB"
        assert bucket_memory_used(100 * 1024 * 1024) == "64-256MB"
        assert bucket_memory_used(1024 * 1024 * 1024) == ">1GB"

    def test_task_counts(self):
        assert [bucket_active_tasks(n) for n in (0, 1, 2, 3, 4, 5, 6)] == ["0", "1", "2-3", "2-3", "4-5",
                                                                           "4-5", ">5"]
        assert [bucket_total_tasks(n) for n in (0, 1, 9, 10, 49, 50, 99, 100, 499, 500, 999, 1000)] == [
            "0", "1-10", "1-10", "10-50", "10-50", "50-100", "50-100", "100-500", "100-500", "500-1K", "500-1K",
            ">1K"]

    @pytest.mark.parametrize("metric", sorted(BUCKET_TABLES))
    def test_bucket_order_is_monotonic(self, metric):
        bounds, _ = BUCKET_TABLES[metric]
        samples = [0] + [upper - 1 for upper, _ in bounds] + [upper for upper, _ in bounds] + [bounds[-1][0] * 10]
        indices = [bucket_index(metric, v) for v in sorted(samples)]
        assert indices == sorted(indices)
        assert bucket(metric, sorted(samples)[-1]) == BUCKET_TABLES[metric][1]


class TestRounding:
    def test_floors_to_five_minutes(self):
        assert format_timestamp(round_timestamp("2025-01-01T10:32:47Z")) == "2025-01-01T10:30:00.000Z"
        assert format_timestamp(round_timestamp("2025-01-01T10:35:00.999Z")) == "2025-01-01T10:35:00.000Z"

    def test_is_idempotent(self):
        once = round_timestamp(datetime.datetime(2025, 1, 1, 23, 59, 59, 999999, tzinfo=UTC))
        assert round_timestamp(once) == once
        assert once == datetime.datetime(2025, 1, 1, 23, 55, tzinfo=UTC)

    def test_converts_to_utc(self):
        tz = datetime.timezone(datetime.timedelta(hours=2))
        rounded = round_timestamp(datetime.datetime(2025, 1, 1, 12, 7, tzinfo=tz))
        assert rounded == datetime.datetime(2025, 1, 1, 10, 5, tzinfo=UTC)
        assert round_timestamp(datetime.datetime(2025, 1, 1, 12, 7)).tzinfo == UTC


class TestHashing:
    def test_deterministic_and_salt_sensitive(self, anonymizer):
        other = FederationAnonymizer(node_id=anonymizer.node_id, salt="b" * 64)
        assert anonymizer.hash_with_salt("abc") == anonymizer.hash_with_salt("abc")
        assert anonymizer.hash_with_salt("abc") != other.hash_with_salt("abc")
        assert re.fullmatch(r"[a-f0-9]{64}", anonymizer.hash_with_salt("abc"))

    def test_missing_values(self, anonymizer):
        assert anonymizer.hash_with_salt(None) is None
        assert anonymizer.hash_with_salt("") is None

    def test_new_identity_is_random(self):
        first, second = FederationAnonymizer(), FederationAnonymizer()
        assert first.node_id != second.node_id
        assert re.fullmatch(r"node-[a-f0-9-]{36}", first.node_id)
        assert first.hash_with_salt("x") != second.hash_with_salt("x")


def _task(elapsed_ms=7500, exit_code=0, status="completed", cached=False):
    return TaskEvent(
        execution_id="abc",
        received_at=datetime.datetime(2025, 1, 1, 10, 31, 5, tzinfo=UTC),
        completed_at=datetime.datetime(2025, 1, 1, 10, 36, 14, tzinfo=UTC),
        status=status,
        metrics=ExecutionMetrics(elapsed_ms=elapsed_ms, exit_code=exit_code, gas_used=2_500_000, cached=cached),
        task_input={"task_type": "javascript", "chain_id": "1"},
    )


class TestBuilders:
    def test_task_lifecycle_scenario(self, anonymizer):
        message = anonymizer.anonymize_task_completed(_task())

        assert message.type == "task_completed"
        assert message.version == "1.0"
        assert message.data["success"] is True
        assert message.data["executionTimeBucket"] == "5-10s"
        assert message.data["gasUsedBucket"] == "1M-10M"
        assert message.data["taskIdHash"] == anonymizer.hash_with_salt("abc")
        assert message.timestamp == "2025-01-01T10:35:00.000Z"

    def test_task_lifecycle_from_log_lines(self, anonymizer, worker_log):
        task = next(e for e in LogParser().parse(worker_log) if e.type == "task_event")
        received = anonymizer.anonymize_task_received(task)
        completed = anonymizer.anonymize_task_completed(task)

        assert received.data == {"chainId": "11155111", "taskType": "javascript",
                                 "taskIdHash": anonymizer.hash_with_salt(EXECUTION_ID)}
        assert completed.data["success"] is True
        assert completed.data["executionTimeBucket"] == "5-10s"
        assert completed.data["cached"] is True
        assert validate_message(received) and validate_message(completed)

    def test_failed_and_missing_metrics(self, anonymizer):
        failed = anonymizer.anonymize_task_completed(_task(exit_code=2, status="failed"))
        assert failed.data["success"] is False
        assert failed.data["status"] == "failed"

        bare = TaskEvent(execution_id="abc", received_at=datetime.datetime(2025, 1, 1, tzinfo=UTC))
        message = anonymizer.anonymize_task_completed(bare)
        assert message.data["success"] is False
        assert message.data["executionTimeBucket"] == "unknown"
        assert message.data["cached"] is False

    def test_heartbeat(self, anonymizer):
        message = anonymizer.anonymize_heartbeat(True, active_tasks=3, total_tasks=42, total_invoices=7)
        assert message.data == {
            "status": "online", "activeTasks": 3, "totalTasks": 42, "totalInvoices": 7,
            "activeTasksBucket": "2-3", "totalTasksBucket": "10-50",
        }
        assert message.timestamp == "2025-01-01T10:30:00.000Z"
        assert anonymizer.anonymize_heartbeat(False).data["status"] == "offline"

    def test_node_joined_and_left(self, anonymizer):
        assert anonymizer.anonymize_node_joined().data == {"status": "online"}
        left = anonymizer.anonymize_node_left()
        assert left.type == "node_left"
        assert left.node_id == anonymizer.node_id

    def test_invoice_from_json_string_with_line_item_fallbacks(self, anonymizer):
        details = json.dumps({"invoiceId": "inv-9", "taskId": "abc", "chainId": 5,
                              "lineItem": [{"total_steps_computed": 50_000, "peak_memory_used": 300 * 1024 * 1024}]})
        message = anonymizer.anonymize_invoice({"id": 1, "timestamp": "2025-01-01T10:44:00Z", "details": details})

        assert message.type == "invoice_created"
        assert message.data == {
            "invoiceIdHash": anonymizer.hash_with_salt("inv-9"),
            "taskIdHash": anonymizer.hash_with_salt("abc"),
            "chainId": "5",
            "stepsComputedBucket": "<100K",
            "memoryUsedBucket": "256MB-1GB",
            "operation": "compute",
        }
        assert message.timestamp == "2025-01-01T10:40:00.000Z"

    def test_invoice_with_unreadable_details(self, anonymizer):
        message = anonymizer.anonymize_invoice({"id": 12, "details": "{oops"})
        assert message.data["invoiceIdHash"] == anonymizer.hash_with_salt(12)
        assert message.data["stepsComputedBucket"] == "unknown"
        assert message.data["chainId"] is None


class TestValidator:
    def _message(self, data):
        return FederationMessage("1.0", "heartbeat", "node-x", "2025-01-01T10:30:00.000Z", data)

    @pytest.mark.parametrize("message_type", ["task_received", "task_completed", "heartbeat", "invoice_created"])
    def test_rejects_wallet_for_any_type(self, message_type):
        message = FederationMessage("1.0", message_type, "node-x", "2025-01-01T10:30:00.000Z", {"note": WALLET})
        with pytest.raises(PrivacyViolationError) as exc_info:
            validate_message(message)
        assert exc_info.value.violation_type == "wallet_address"

    @pytest.mark.parametrize("data,violation", [
        ({"execution_id": "abc"}, "execution_id"),
        ({"Execution_ID": "abc"}, "execution_id"),
        ({"input_data": "x"}, "sensitive_field"),
        ({"private_key": "x"}, "sensitive_field"),
        ({"peer": "10.0.0.12"}, "ip_address"),
    ])
    def test_rejects_sensitive_content(self, data, violation):
        with pytest.raises(PrivacyViolationError) as exc_info:
            validate_message(self._message(data))
        assert exc_info.value.violation_type == violation

    def test_accepts_plain_dicts_and_clean_messages(self, anonymizer):
        assert validate_message({"type": "heartbeat", "data": {"status": "online"}})
        assert validate_message(anonymizer.anonymize_heartbeat(True, 1, 2, 3))


class TestCredentials:
    def test_serialize_round_trip(self, anonymizer):
        restored = FederationAnonymizer.deserialize(anonymizer.serialize())
        assert restored.node_id == anonymizer.node_id
        assert restored.hash_with_salt("abc") == anonymizer.hash_with_salt("abc")
        assert restored.created_at == anonymizer.created_at

    @pytest.mark.parametrize("text", ["not json", "[]", '{"nodeId": "node-x"}', '{"salt": ""}'])
    def test_corrupt_state_mints_new_credentials(self, text):
        fresh = FederationAnonymizer.deserialize(text)
        assert fresh.node_id.startswith("node-")
        assert fresh.hash_with_salt("abc") is not None

    def test_load_or_create_persists_credentials(self, tmp_path):
        path = str(tmp_path / "state" / "credentials.json")
        created = FederationAnonymizer.load_or_create(path)
        loaded = FederationAnonymizer.load_or_create(path)

        assert loaded.node_id == created.node_id
        assert loaded.hash_with_salt("abc") == created.hash_with_salt("abc")
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_load_or_create_replaces_corrupt_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("garbage")
        anonymizer = FederationAnonymizer.load_or_create(str(path))
        assert json.loads(path.read_text())["nodeId"] == anonymizer.node_id

    def test_credentials_are_owner_only_under_permissive_umask(self, tmp_path):
        path = tmp_path / "credentials.json"
        old_umask = os.umask(0)
        try:
            FederationAnonymizer.load_or_create(str(path))
        finally:
            os.umask(old_umask)
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_replaced_credentials_lose_group_and_other_access(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("garbage")
        os.chmod(path, 0o644)
        FederationAnonymizer.load_or_create(str(path))
        assert os.stat(path).st_mode & 0o777 == 0o600
