"""Notification delivery channels.

A notifier delivers one message to one user over one channel. Delivery
failures raise NotifierError with a gateway status code; the notification job
handler decides from the code whether to retry.
"""

import logging
from datetime import datetime
from typing import Any, Literal, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from moneysync.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

Channel = Literal["push", "email", "sms", "in_app"]


class DeliveryReceipt(BaseModel):
    message_id: str = Field(default_factory=lambda: str(uuid4()))
    channel: Channel
    user_id: str
    delivered_at: datetime


class Notifier(Protocol):
    async def send(
        self, user_id: str, title: str, body: str, data: dict[str, Any]
    ) -> DeliveryReceipt: ...


class LoggingNotifier:
    """Development notifier that records messages instead of delivering them."""

    def __init__(self, channel: Channel = "in_app", clock: Clock = utcnow):
        self.channel = channel
        self._clock = clock
        self.sent: list[tuple[str, str, str, dict[str, Any]]] = []

    async def send(
        self, user_id: str, title: str, body: str, data: dict[str, Any]
    ) -> DeliveryReceipt:
        self.sent.append((user_id, title, body, data))
        logger.info(f"[{self.channel}] to {user_id}: {title}")
        return DeliveryReceipt(
            channel=self.channel, user_id=user_id, delivered_at=self._clock()
        )
