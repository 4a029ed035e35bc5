"""Background ingestion worker: ``python -m app.worker``.

Starts one consumer thread per inbound channel. Each thread drains its redis
list sequentially; the process runs until SIGINT or SIGTERM.
"""

from __future__ import annotations

import logging
import signal
import threading

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.redis_client import get_sync_redis_client
from app.crm.bus import RedisListChannel
from app.crm.ingestion import (
    CHANNEL_CLIENTS,
    CHANNEL_OUTBOUND_EMAIL,
    CHANNEL_REPLIES,
    CHANNEL_TASKS,
    ChannelConsumer,
    ingestion_router,
)
from app.logging import configure_logging
from app.otel import setup_otel


logger = logging.getLogger("app.crm.worker")


def channel_keys() -> dict[str, str]:
    settings = get_settings()
    return {
        CHANNEL_OUTBOUND_EMAIL: settings.channel_outbound_email,
        CHANNEL_REPLIES: settings.channel_replies,
        CHANNEL_CLIENTS: settings.channel_clients,
        CHANNEL_TASKS: settings.channel_tasks,
    }


def build_consumers(client, stop_event: threading.Event) -> list[ChannelConsumer]:  # type: ignore[no-untyped-def]
    timeout = float(get_settings().channel_receive_timeout_seconds)
    return [
        ChannelConsumer(
            RedisListChannel(name, client, key),
            ingestion_router,
            SessionLocal,
            logical_name=name,
            receive_timeout=timeout,
            stop_event=stop_event,
        )
        for name, key in channel_keys().items()
    ]


def run() -> None:
    configure_logging("worker")
    settings = get_settings()
    setup_otel("worker", settings.otel_enabled)

    client = get_sync_redis_client()
    if client is None:
        logger.error("worker.redis_disabled")
        raise SystemExit(1)

    stop_event = threading.Event()

    def _request_stop(signum, frame) -> None:  # type: ignore[no-untyped-def]
        logger.info("worker.stopping", extra={"reason": signal.Signals(signum).name})
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    threads = [
        threading.Thread(target=consumer.run, name=f"crm-consumer-{consumer.logical_name}", daemon=True)
        for consumer in build_consumers(client, stop_event)
    ]
    for thread in threads:
        thread.start()
    logger.info("worker.started", extra={"channel": ",".join(channel_keys())})

    while not stop_event.is_set():
        stop_event.wait(1.0)
    for thread in threads:
        thread.join(timeout=float(settings.channel_receive_timeout_seconds) + 1.0)
    logger.info("worker.stopped")


if __name__ == "__main__":
    run()
