import json
from datetime import timedelta

import pytest

from streamqueue.cli import JSON_HEADER, main, show_topic_info, terminate_topic
from streamqueue.types import ConsumerInfo, GroupInfo, TopicInfo


class FakeQueue:
    def __init__(self, infos):
        self.stream_name = "orders"
        self._infos = list(infos)
        self.terminated = False

    def get_topic_info(self):
        if len(self._infos) > 1:
            return self._infos.pop(0)
        return self._infos[0]

    def terminate_topic(self):
        self.terminated = True


def _existing():
    return TopicInfo(
        stream_name="orders",
        exists=True,
        length=4,
        first_entry_id="1-0",
        last_entry_id="4-0",
        groups=[
            GroupInfo(
                name="default-group",
                pending=1,
                last_delivered_id="3-0",
                consumers=[ConsumerInfo(name="c1", pending=1, idle=timedelta(seconds=2))],
            )
        ],
    )


def test_show_missing_topic(capsys):
    info = show_topic_info(FakeQueue([TopicInfo(stream_name="orders")]))
    out = capsys.readouterr().out
    assert info.exists is False
    assert "'orders' does not exist" in out
    assert JSON_HEADER not in out


def test_show_existing_topic_json_round_trip(capsys):
    expected = _existing()
    info = show_topic_info(FakeQueue([expected]))
    out = capsys.readouterr().out
    assert info is expected
    assert "default-group" in out
    payload = json.loads(out.split(JSON_HEADER, 1)[1])
    assert payload == expected.to_dict()


def test_terminate_cancelled(monkeypatch, capsys):
    queue = FakeQueue([_existing()])
    monkeypatch.setattr("builtins.input", lambda prompt="": "no")
    assert terminate_topic(queue) is False
    assert queue.terminated is False
    assert "cancelled" in capsys.readouterr().out


def test_terminate_confirmed(monkeypatch, capsys):
    queue = FakeQueue([_existing(), TopicInfo(stream_name="orders")])
    monkeypatch.setattr("builtins.input", lambda prompt="": "yes")
    assert terminate_topic(queue) is True
    assert queue.terminated is True
    assert "topic is gone" in capsys.readouterr().out


def test_terminate_missing_topic_asks_nothing(monkeypatch):
    def refuse(prompt=""):
        raise AssertionError("input should not be requested")

    queue = FakeQueue([TopicInfo(stream_name="orders")])
    monkeypatch.setattr("builtins.input", refuse)
    assert terminate_topic(queue) is False
    assert queue.terminated is False


def test_terminate_end_of_input_cancels(monkeypatch):
    def eof(prompt=""):
        raise EOFError

    queue = FakeQueue([_existing()])
    monkeypatch.setattr("builtins.input", eof)
    assert terminate_topic(queue) is False
    assert queue.terminated is False


def test_main_without_stream_prints_usage(capsys):
    assert main([]) == 1
    assert "-stream" in capsys.readouterr().out


@pytest.mark.parametrize("args", [["-stream=s", "-redis=127.0.0.1:1"], ["--stream", "s", "--redis", "127.0.0.1:1"]])
def test_main_unreachable_redis(args, capsys):
    assert main(args) == 1
    assert "connecting to Redis failed" in capsys.readouterr().err