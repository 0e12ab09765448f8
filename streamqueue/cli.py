"""Command-line tool that shows or terminates a stream topic."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta
from typing import Sequence

import redis

from .queue import MessageQueue
from .types import TopicInfo

USAGE = """usage:
  topic-manager -action=info -stream=my-stream
  topic-manager -action=terminate -stream=my-stream

options:
  -action    operation (info|terminate)
  -stream    stream name (required)
  -group     consumer group name (default: default-group)
  -redis     Redis address (default: localhost:6379)"""

JSON_HEADER = "Details (JSON):"


def _duration(delta: timedelta) -> str:
    return f"{delta.total_seconds():g}s"


def show_topic_info(queue: MessageQueue) -> TopicInfo:
    """Print a readable summary of the queue's topic followed by its JSON form."""
    print("Fetching topic information...")
    info = queue.get_topic_info()
    if not info.exists:
        print(f"Stream '{info.stream_name}' does not exist")
        return info

    print(f"Stream: {info.stream_name}")
    print(f"   messages: {info.length}")
    print(f"   first entry id: {info.first_entry_id}")
    print(f"   last entry id: {info.last_entry_id}")
    print(f"   consumer groups: {len(info.groups)}")
    for number, group in enumerate(info.groups, start=1):
        print(f"\n   consumer group {number}:")
        print(f"     name: {group.name}")
        print(f"     pending: {group.pending}")
        print(f"     last delivered id: {group.last_delivered_id}")
        print(f"     consumers: {len(group.consumers)}")
        for index, consumer in enumerate(group.consumers, start=1):
            print(
                f"       consumer {index}: {consumer.name} "
                f"(pending: {consumer.pending}, idle: {_duration(consumer.idle)})"
            )

    print(f"\n{JSON_HEADER}")
    print(json.dumps(info.to_dict(), indent=2, ensure_ascii=False))
    return info


def terminate_topic(queue: MessageQueue) -> bool:
    """Ask for confirmation, then delete the topic; return whether it was terminated."""
    print(f"Warning: about to terminate topic '{queue.stream_name}'")
    print("   this deletes:")
    print("   - all unprocessed messages")
    print("   - all consumer groups")
    print("   - all pending messages")
    print("")

    try:
        info = queue.get_topic_info()
    except redis.RedisError as err:
        print(f"reading topic information failed: {err}", file=sys.stderr)
    else:
        if not info.exists:
            print("   topic does not exist, nothing to terminate")
            return False
        print(f"   current state: {info.length} messages, {len(info.groups)} consumer groups")

    try:
        answer = input("\nConfirm termination? (type 'yes' to confirm): ")
    except EOFError:
        answer = ""
    if answer.strip() != "yes":
        print("Operation cancelled")
        return False

    print("Terminating topic...")
    queue.terminate_topic()
    print("Topic terminated")

    try:
        info = queue.get_topic_info()
    except redis.RedisError as err:
        print(f"verification failed: {err}", file=sys.stderr)
    else:
        if not info.exists:
            print("Verified: topic is gone")
        else:
            print(f"Warning: topic still exists ({info.length} messages)")
    return True


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="topic-manager", add_help=True)
    parser.add_argument("-action", "--action", default="info", help="info or terminate")
    parser.add_argument("-stream", "--stream", default="", help="stream name")
    parser.add_argument("-group", "--group", default="default-group", help="consumer group")
    parser.add_argument("-redis", "--redis", default="localhost:6379", help="Redis address")
    return parser


def _client(address: str) -> redis.Redis:
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, "6379"
    return redis.Redis(host=host or "localhost", port=int(port), socket_connect_timeout=5)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the topic manager and return the process exit status."""
    args = _parser().parse_args(argv)
    if not args.stream:
        print(USAGE)
        return 1

    try:
        client = _client(args.redis)
        client.ping()
    except (redis.RedisError, ValueError) as err:
        print(f"connecting to Redis failed: {err}", file=sys.stderr)
        return 1

    queue = MessageQueue(client, args.stream, args.group, "manager")
    try:
        if args.action == "info":
            show_topic_info(queue)
        elif args.action == "terminate":
            terminate_topic(queue)
        else:
            print(f"unknown action: {args.action}", file=sys.stderr)
            return 1
    except redis.RedisError as err:
        print(f"operation failed: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())