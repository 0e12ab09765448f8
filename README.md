# streamqueue

A message queue built on Redis Streams. Producers append typed messages
to a stream. Consumers in a consumer group read them and pass each one to
the handler registered for its type. A message is acknowledged once it
has been handled.

When a handler fails, the message is retried with exponential back-off.
A message that keeps failing is moved to a dead-letter stream. Entries
that every consumer group has acknowledged can be removed from the
stream. A Redis lock makes sure only one consumer does this at a time.

## Installation

```
pip install streamqueue
```

You also need a Redis server that supports streams and consumer groups.

## Quick start

```python
import redis

from streamqueue.models import MessageHandler, StartPosition
from streamqueue.producer import Producer
from streamqueue.queue import MessageQueue


class WelcomeHandler(MessageHandler):
    message_type = "welcome"

    def handle(self, message):
        print("welcoming", message.data["to"])
        # raising an exception here marks the message as failed


client = redis.Redis()

consumer = MessageQueue(
    client, "tasks", "workers", "worker-1",
    start_position=StartPosition.EARLIEST,
)
consumer.register_handler(WelcomeHandler())
consumer.start()

producer = Producer(client, "tasks")
producer.publish_message("welcome", {"to": "someone@example.com"}, {"source": "signup"})

# ... later
consumer.stop()
```

## Concepts

These live in `streamqueue.models`:

- **`Message`**: has an `id` assigned by Redis, a `type`, a JSON `data`
  mapping and a string-to-string `metadata` mapping.
- **`MessageHandler`**: set `message_type`, then implement
  `handle(message)`. It handles one message at a time.
- **`BatchMessageHandler`**: set `message_type` and optionally
  `batch_size`, then implement `handle_batch(messages)`. If `batch_size`
  is 0, the queue's `BatchConfig.batch_size` is used. When a type has
  both kinds of handler, the batch handler wins.
- **`StartPosition`**: where a new consumer group starts reading.
  - `LATEST` is the default.
  - `EARLIEST` starts at the first entry.
  - `SPECIFIC` starts at the entry named by `specific_id`. `start()`
    raises `ValueError` if that ID is empty.
- **`BatchConfig`**: `enable_batch`, `batch_size` (default 10) and
  `batch_timeout` (default 500 ms). When batching is on, each read
  fetches up to `batch_size` entries and blocks for at most
  `batch_timeout`. Otherwise each read fetches one entry and blocks for
  up to five seconds.
- **`CleanupPolicy`**: `enable_auto_cleanup` (default off),
  `cleanup_interval` (5 minutes), `max_stream_length` (10000) and
  `min_retention` (1 hour).

Other modules:

- `streamqueue.producer.Producer`: `publish_message(type, data, metadata)`
  appends an entry and returns its ID. `get_topic_info()` describes the
  stream.
- `streamqueue.queue.MessageQueue`: the consumer. Its keyword options
  are:
  - `start_position` and `specific_id`
  - `batch_config` and `cleanup_policy`
  - `logger`
  - `max_retries`: 0 or less means 3

  `start()` creates the group if it is missing, along with the stream.
  It raises `QueueStoppedError` once the queue has been stopped. A
  queue cannot be restarted.
- `streamqueue.types`: `TopicInfo`, `GroupInfo` and `ConsumerInfo`, each
  with `to_dict()`. In the dictionary form, a consumer's idle time is
  given in nanoseconds.

A message without a `type` field, or with data or metadata that is not
valid JSON, is logged and acknowledged without being handled. A message
whose type has no registered handler is acknowledged as well.

## Retries and dead letters

Retries are handled by `streamqueue.retry.RetryManager`. When handling a
message fails:

1. `retry_count` in its metadata is incremented, and `last_error` and
   `last_retry_time` are set.
2. If the previous count was below the maximum, the whole message is
   added to the sorted set `<stream>.retry`. It becomes due after 2^n
   minutes, or 2^n seconds when the environment variable `TEST_MODE=1`
   is set.
3. Otherwise it is appended to the stream `<stream>.dlq`, with
   `original_id` and `failure_time` added to its metadata.
4. Either way, the original entry is acknowledged.

Every five seconds, a background thread moves up to ten due messages
from the retry set back onto the stream.

Entries that stay unacknowledged for five minutes are claimed again and
sent down the same path. In test mode the limit is three seconds. Entries
that were already pending for the group when the consumer starts are
claimed and handled right away.

## Stopping and topic deletion

If the stream or its consumer group disappears while a consumer is
running, the consumer stops by itself.

- `wait_done(timeout)` blocks until the queue has stopped, whether it
  stopped by itself or through `stop()`.
- `is_auto_stopped` tells which of the two happened.
- `terminate_topic()` stops the queue, destroys every consumer group of
  the stream and deletes the stream.

## Cleanup

Cleanup is done by `streamqueue.cleaner.MessageCleaner`, which you reach
through `MessageQueue.cleaner`. It deletes entries that meet all of
these conditions:

- they are older than `min_retention`, judged by the timestamp in their
  ID;
- they are not beyond the lowest last-delivered ID of any group;
- they are not pending in any group.

There are two ways to run it:

- **By hand**: `cleanup_messages()` runs it immediately.
- **In the background**: when `enable_auto_cleanup` is set, a thread
  checks the stream every `cleanup_interval`. If the stream is longer
  than `max_stream_length`, it runs `coordinated_cleanup()`.

`coordinated_cleanup()` works like this:

- It first takes the lock `cleanup_lock:<stream>` through
  `streamqueue.coordinator.CleanupCoordinator`.
- If another consumer holds the lock, it raises
  `streamqueue.lock.LockError`.
- Totals are recorded in the hash `cleanup_stats:<stream>` for seven
  days. You can read them with `get_cleanup_stats()`.

`streamqueue.lock.AutoExtendMutex` is the lock used here. It is a
single-key Redis lock, and it renews its expiry in the background while
it is held.

## Logging

The package logs through the standard `logging` module under the name
`streamqueue`. To log elsewhere, pass your own `streamqueue.models.Logger`
(anything with `printf(fmt, *args)`):

- to `MessageQueue(logger=...)`, or
- to `Producer.with_logger(...)`.

## Example handlers

`streamqueue.handlers` contains two sample handlers. They only log and
sleep.

- `EmailHandler` handles messages of type `email`. It requires `to`,
  `subject` and `body` in the data, and fails when the body is `FAIL`.
- `OrderHandler` handles messages of type `order`. It requires
  `order_id`, `user_id` and a numeric `amount`, and fails when the order
  ID is `FAIL`.

## Inspecting and terminating topics

Show a stream's length, its first and last entry IDs, and its groups and
consumers, followed by the same information as JSON:

```
topic-manager --action info --stream my-stream
```

Destroy the stream's consumer groups and delete the stream. You are asked
to confirm by typing `yes`:

```
topic-manager --action terminate --stream my-stream
```

| Option     | Meaning                    | Default          |
|------------|----------------------------|------------------|
| `--action` | `info` or `terminate`      | `info`           |
| `--stream` | stream name (required)     |                  |
| `--group`  | consumer group name        | `default-group`  |
| `--redis`  | Redis address `host:port`  | `localhost:6379` |

The options can also be written with a single dash, for example
`-stream=my-stream`. The command exits with status 1 in these cases:

- no stream is given;
- Redis cannot be reached;
- the action is unknown;
- a Redis operation fails.

## What it does not do

The package is a library plus this one inspection tool. It has no
command that runs a consumer, and it neither starts nor manages a Redis
server. Consumers run only inside a program of your own that creates a
`MessageQueue` and calls `start()`.

## Running the tests

```
pip install -e ".[test]"
pytest
```