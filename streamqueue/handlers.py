"""Example handlers for e-mail and order messages."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from .models import Message, MessageHandler

log = logging.getLogger("streamqueue")


def _required_str(data: Mapping[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"missing {what}")
    return value


class EmailHandler(MessageHandler):
    """Pretends to send an e-mail; a body of ``FAIL`` makes it fail."""

    message_type = "email"

    def __init__(self, delay: float = 2.0) -> None:
        self.delay = delay

    def handle(self, message: Message) -> None:
        log.info("handling e-mail message: %s", message.id)
        recipient = _required_str(message.data, "to", "recipient")
        subject = _required_str(message.data, "subject", "subject")
        body = _required_str(message.data, "body", "body")
        log.info("sending e-mail to: %s, subject: %s", recipient, subject)
        time.sleep(self.delay)
        if body == "FAIL":
            raise RuntimeError("simulated e-mail delivery failure")
        log.info("e-mail sent: %s", message.id)


class OrderHandler(MessageHandler):
    """Pretends to process an order; an order id of ``FAIL`` makes it fail."""

    message_type = "order"

    def __init__(self, delay: float = 3.0) -> None:
        self.delay = delay

    def handle(self, message: Message) -> None:
        log.info("handling order message: %s", message.id)
        order_id = _required_str(message.data, "order_id", "order id")
        user_id = _required_str(message.data, "user_id", "user id")
        amount = message.data.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValueError("missing order amount")
        log.info("processing order: %s, user: %s, amount: %.2f", order_id, user_id, amount)
        time.sleep(self.delay)
        if order_id == "FAIL":
            raise RuntimeError("simulated order processing failure")
        log.info("order processed: %s", message.id)