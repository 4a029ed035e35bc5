from __future__ import annotations

import json
import logging
import queue
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from app import events
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.crm.errors import InfrastructureError


logger = logging.getLogger("app.crm.bus")

RawMessage = bytes | str


class MessageChannel(Protocol):
    """Inbound channel with at-least-once delivery and opaque framing."""

    name: str

    def receive(self, timeout: float) -> RawMessage | None: ...


def _encode(message: RawMessage | Mapping[str, Any]) -> RawMessage:
    if isinstance(message, Mapping):
        return json.dumps(dict(message), ensure_ascii=False)
    return message


class InMemoryChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: queue.Queue[RawMessage] = queue.Queue()

    def put(self, message: RawMessage | Mapping[str, Any]) -> None:
        self._queue.put(_encode(message))

    def receive(self, timeout: float) -> RawMessage | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class RedisListChannel:
    """Channel backed by a redis list; producers RPUSH, the consumer BLPOPs."""

    def __init__(self, name: str, client: Any, key: str) -> None:
        self.name = name
        self.client = client
        self.key = key

    def put(self, message: RawMessage | Mapping[str, Any]) -> None:
        try:
            self.client.rpush(self.key, _encode(message))
        except RedisError as exc:
            raise InfrastructureError(f"failed to publish to channel '{self.name}'") from exc

    def receive(self, timeout: float) -> RawMessage | None:
        try:
            item = self.client.blpop([self.key], timeout=max(int(timeout), 1))
        except RedisError as exc:
            raise InfrastructureError(f"failed to read channel '{self.name}'") from exc
        if item is None:
            return None
        _key, value = item
        return value


@dataclass(slots=True)
class EmailPublisher:
    """Publishes send-email requests for the external mailer through celery."""

    def send_email(
        self,
        *,
        hub_id: uuid.UUID,
        sender: Mapping[str, Any],
        recipient: Mapping[str, Any],
        subject: str | None,
        message: str,
        client_id: uuid.UUID,
    ) -> str:
        settings = get_settings()
        request = {
            "hub_id": str(hub_id),
            "sender": dict(sender),
            "subject": subject,
            "message": message,
            "recipients": [dict(recipient)],
        }
        try:
            result = celery_app.send_task(
                settings.email_send_task,
                kwargs={"request": request},
                queue=settings.email_send_queue,
            )
        except (OperationalError, RedisError) as exc:
            logger.error(
                "email.send_request_failed",
                extra={"hub_id": str(hub_id), "client_id": str(client_id), "error": str(exc)},
            )
            raise InfrastructureError("failed to enqueue email") from exc

        task_id = str(result.id)
        events.publish(
            "crm.email.send_requested",
            hub_id=hub_id,
            payload={"task_id": task_id, "client_id": str(client_id), "subject": subject},
        )
        return task_id


email_publisher = EmailPublisher()
