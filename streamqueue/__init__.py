"""Message queue on Redis Streams with consumer groups, retries, dead letters and cleanup."""

__version__ = "0.1.0"

__all__ = [
    "cleaner",
    "cli",
    "coordinator",
    "handlers",
    "lock",
    "models",
    "producer",
    "queue",
    "retry",
    "types",
    "utils",
]