from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
hub_id_var: ContextVar[str | None] = ContextVar("hub_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_hub_id() -> str | None:
    return hub_id_var.get()


@contextmanager
def bound_context(*, correlation_id: str | None = None, hub_id: uuid.UUID | str | None = None) -> Iterator[str]:
    """Bind a correlation id (minted when absent) and optionally a hub for the enclosed work.

    Used by background consumers, where no HTTP middleware sets the ids.
    """
    resolved = correlation_id or str(uuid.uuid4())
    correlation_token = correlation_id_var.set(resolved)
    hub_token = hub_id_var.set(str(hub_id) if hub_id else None)
    try:
        yield resolved
    finally:
        hub_id_var.reset(hub_token)
        correlation_id_var.reset(correlation_token)

