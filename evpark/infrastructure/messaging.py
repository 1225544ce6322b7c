# File: evpark/infrastructure/messaging.py
"""
Outbound notification transport

The engine only knows the Notifier capability: direct messages to one user
and posts to the shared channel. Implementations:

1. LoggingNotifier - logs and keeps an in-memory outbox (tests, dry runs)
2. RedisNotifier - publishes JSON messages on Redis Pub/Sub channels for a
   separate delivery worker (mail, chat) to pick up
"""

from dataclasses import dataclass, asdict, field
from typing import List, Optional, Dict, Any, Protocol
from datetime import datetime
import json
import logging

import redis

from ..domain.errors import TransientInfrastructureError
from ..domain.models import new_id


@dataclass
class Notification:
    """One outbound message"""
    recipient: Optional[str]
    subject: str
    body: str
    channel: bool = False
    notification_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class Notifier(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None:
        ...

    def post_channel(self, text: str) -> None:
        ...


class LoggingNotifier:
    """Logs every message and keeps it in `sent`"""

    def __init__(self):
        self.sent: List[Notification] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append(Notification(recipient=recipient, subject=subject, body=body))
        self._logger.info(f"To {recipient}: {subject}")

    def post_channel(self, text: str) -> None:
        self.sent.append(Notification(recipient=None, subject="channel", body=text, channel=True))
        self._logger.info(f"Channel: {text}")

    def messages_for(self, recipient: str) -> List[Notification]:
        return [n for n in self.sent if n.recipient == recipient]

    def clear(self):
        """Clear the outbox (for testing)"""
        self.sent.clear()


class RedisNotifier:
    """Redis-based notifier using Pub/Sub"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        direct_topic: str = "evpark:notifications",
        channel_topic: str = "evpark:channel",
        client: Optional[redis.Redis] = None
    ):
        self.redis_client = client or redis.Redis.from_url(redis_url)
        self.direct_topic = direct_topic
        self.channel_topic = channel_topic
        self._logger = logging.getLogger(self.__class__.__name__)

    def send(self, recipient: str, subject: str, body: str) -> None:
        self._publish(self.direct_topic, Notification(recipient=recipient, subject=subject, body=body))

    def post_channel(self, text: str) -> None:
        self._publish(
            self.channel_topic,
            Notification(recipient=None, subject="channel", body=text, channel=True)
        )

    def _publish(self, topic: str, notification: Notification) -> None:
        try:
            receivers = self.redis_client.publish(topic, notification.to_json())
        except redis.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            raise TransientInfrastructureError(f"Notification service temporarily unavailable: {e}") from e
        self._logger.debug(
            f"Published {notification.notification_id} to {topic} ({receivers} receivers)"
        )
