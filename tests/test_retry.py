import json
import time

import pytest
import redis

from streamqueue.models import Message
from streamqueue.retry import RetryManager, is_test_mode, retry_delay_seconds
from streamqueue.utils import compare_message_ids


class FakeRedis:
    def __init__(self, fail_writes=False):
        self.streams = {}
        self.zsets = {}
        self.fail_writes = fail_writes
        self._ms = 1000

    def xadd(self, name, fields):
        if self.fail_writes:
            raise redis.ResponseError("write refused")
        self._ms += 1
        entry_id = f"{self._ms}-0"
        self.streams.setdefault(name, []).append((entry_id, dict(fields)))
        return entry_id.encode()

    def zadd(self, name, mapping):
        if self.fail_writes:
            raise redis.ResponseError("write refused")
        self.zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    def zrangebyscore(self, name, min, max, start=None, num=None):
        items = sorted(self.zsets.get(name, {}).items(), key=lambda kv: kv[1])
        chosen = [member for member, score in items if float(min) <= score <= float(max)]
        if start is not None and num is not None:
            chosen = chosen[start : start + num]
        return [m.encode() for m in chosen]

    def zrem(self, name, *values):
        zset = self.zsets.get(name, {})
        removed = 0
        for value in values:
            key = value.decode() if isinstance(value, bytes) else value
            if zset.pop(key, None) is not None:
                removed += 1
        return removed


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def manager(client):
    return RetryManager(client, "retry-test-stream")


def test_is_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "1")
    assert is_test_mode() is True
    monkeypatch.setenv("TEST_MODE", "0")
    assert is_test_mode() is False
    monkeypatch.delenv("TEST_MODE")
    assert is_test_mode() is False


@pytest.mark.parametrize("count, expected", [(0, 1), (1, 2), (2, 4), (3, 8)])
def test_retry_delay_test_mode(monkeypatch, count, expected):
    monkeypatch.setenv("TEST_MODE", "1")
    assert retry_delay_seconds(count) == expected


@pytest.mark.parametrize("count, expected", [(0, 60), (1, 120), (2, 240)])
def test_retry_delay_normal_mode(monkeypatch, count, expected):
    monkeypatch.delenv("TEST_MODE", raising=False)
    assert retry_delay_seconds(count) == expected


def test_queue_names(manager):
    assert manager.retry_queue_name == "retry-test-stream.retry"
    assert manager.dead_letter_queue_name == "retry-test-stream.dlq"


def test_non_positive_max_retries_uses_default(client):
    assert RetryManager(client, "s", max_retries=0).effective_max_retries == 3
    assert RetryManager(client, "s", max_retries=5).effective_max_retries == 5


def test_dead_letter_queue_holds_messages(manager, client):
    for i in range(3):
        message = Message(
            id=f"original-id-{i}",
            type="test-message",
            data={"value": f"dlq-test-{i}", "test": True},
            metadata={"retry_count": "3", "last_error": "failure"},
        )
        manager.send_to_dead_letter_queue(message)

    entries = client.streams["retry-test-stream.dlq"]
    assert len(entries) == 3
    for i, (_, fields) in enumerate(entries):
        assert fields["type"] == "test-message"
        metadata = json.loads(fields["metadata"])
        assert metadata["original_id"] == f"original-id-{i}"
        assert metadata["retry_count"] == "3"
        assert "failure_time" in metadata
        assert json.loads(fields["data"]) == {"value": f"dlq-test-{i}", "test": True}


def test_send_to_dead_letter_queue_raises_on_error():
    manager = RetryManager(FakeRedis(fail_writes=True), "s")
    with pytest.raises(redis.ResponseError):
        manager.send_to_dead_letter_queue(Message(id="1-0", type="t"))


def test_handle_failure_schedules_retry(monkeypatch, manager, client):
    monkeypatch.setenv("TEST_MODE", "1")
    message = Message(id="5-0", type="email", data={"to": "user@example.com"})
    before = time.time()
    dead = manager.handle_failure(message, ValueError("boom"))

    assert dead is False
    assert message.metadata["retry_count"] == "1"
    assert message.metadata["last_error"] == "boom"
    assert "last_retry_time" in message.metadata
    zset = client.zsets["retry-test-stream.retry"]
    assert len(zset) == 1
    (member, score), = zset.items()
    assert json.loads(member)["id"] == "5-0"
    assert int(before) + 1 <= score <= time.time() + 1


def test_handle_failure_at_limit_goes_to_dead_letter(manager, client):
    message = Message(id="7-0", type="email", metadata={"retry_count": "3"})
    dead = manager.handle_failure(message, RuntimeError("again"))

    assert dead is True
    assert message.metadata["retry_count"] == "4"
    assert message.metadata["original_id"] == "7-0"
    assert "retry-test-stream.retry" not in client.zsets
    assert len(client.streams["retry-test-stream.dlq"]) == 1


def test_handle_failure_swallows_storage_errors():
    manager = RetryManager(FakeRedis(fail_writes=True), "s")
    message = Message(id="1-0", type="t")
    assert manager.handle_failure(message, RuntimeError("x")) is False
    assert message.metadata["retry_count"] == "1"


def test_handle_failure_bad_retry_count_counts_as_zero(manager):
    message = Message(id="1-0", type="t", metadata={"retry_count": "abc"})
    manager.handle_failure(message, RuntimeError("x"))
    assert message.metadata["retry_count"] == "1"


def test_reschedule_stale_increments_and_schedules(monkeypatch, manager, client):
    monkeypatch.setenv("TEST_MODE", "1")
    message = Message(id="9-0", type="blocking-message", data={"value": "test-message"})
    assert manager.reschedule_stale(message) is False
    assert message.metadata["retry_count"] == "1"
    assert "last_error" not in message.metadata
    assert len(client.zsets["retry-test-stream.retry"]) == 1


def test_reschedule_stale_at_limit_keeps_count(manager, client):
    message = Message(id="9-0", type="t", metadata={"retry_count": "3"})
    assert manager.reschedule_stale(message) is True
    assert message.metadata["retry_count"] == "3"
    assert len(client.streams["retry-test-stream.dlq"]) == 1


def test_requeue_due_moves_message_back(monkeypatch, manager, client):
    monkeypatch.setenv("TEST_MODE", "1")
    original = Message(id="1000-0", type="blocking-message", data={"value": "test-message"})
    manager.reschedule_stale(original)
    manager.schedule_retry(original, 0)
    # two entries for the same message collapse into one member with the latest score
    new_ids = manager.requeue_due()

    assert len(new_ids) == 1
    assert compare_message_ids(new_ids[0], "1000-0") > 0
    entry_id, fields = client.streams["retry-test-stream"][0]
    assert entry_id == new_ids[0]
    assert fields["type"] == "blocking-message"
    assert "retry_count" in fields["metadata"]
    assert json.loads(fields["data"]) == {"value": "test-message"}
    assert client.zsets["retry-test-stream.retry"] == {}


def test_requeue_due_leaves_future_entries(manager, client):
    manager.schedule_retry(Message(id="1-0", type="t"), 3600)
    assert manager.requeue_due() == []
    assert len(client.zsets["retry-test-stream.retry"]) == 1
    assert "retry-test-stream" not in client.streams


def test_requeue_due_drops_unparsable_entries(manager, client):
    client.zsets["retry-test-stream.retry"] = {"not json": 1.0}
    assert manager.requeue_due() == []
    assert client.zsets["retry-test-stream.retry"] == {}
    assert "retry-test-stream" not in client.streams


def test_requeue_due_limits_batch(manager, client):
    for i in range(12):
        manager.schedule_retry(Message(id=f"{i}-0", type="t"), 0)
    assert len(manager.requeue_due()) == 10
    assert len(client.zsets["retry-test-stream.retry"]) == 2


def test_requeue_due_keeps_entry_when_xadd_fails(manager, client):
    manager.schedule_retry(Message(id="1-0", type="t"), 0)
    client.fail_writes = True
    assert manager.requeue_due() == []
    assert len(client.zsets["retry-test-stream.retry"]) == 1