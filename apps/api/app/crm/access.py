from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.errors import UnauthorizedError
from app.crm.models import CRMClient
from app.crm.repositories import client_repository


@dataclass
class ActorUser:
    """Authenticated caller; ``hub_id`` always comes from the session, never from request input."""

    user_id: str
    hub_id: uuid.UUID
    roles: set[str] = field(default_factory=set)
    email: str | None = None
    name: str | None = None
    correlation_id: str | None = None


def has_access(actor_user: ActorUser) -> bool:
    return get_settings().crm_access_role in actor_user.roles


def is_admin(actor_user: ActorUser) -> bool:
    return get_settings().crm_admin_role in actor_user.roles


def is_manager(actor_user: ActorUser) -> bool:
    return get_settings().crm_manager_role in actor_user.roles


def require_access(actor_user: ActorUser) -> None:
    if not has_access(actor_user):
        raise UnauthorizedError(f"Missing role: {get_settings().crm_access_role}")


def require_admin(actor_user: ActorUser) -> None:
    require_access(actor_user)
    if not is_admin(actor_user):
        raise UnauthorizedError(f"Missing role: {get_settings().crm_admin_role}")


def can_view_client(session: Session, actor_user: ActorUser, client: CRMClient) -> bool:
    if client.hub_id != actor_user.hub_id:
        return False
    if is_admin(actor_user):
        return True
    if is_manager(actor_user) and actor_user.email:
        return client_repository.is_assigned_to_manager_email(
            session,
            actor_user.hub_id,
            client.id,
            actor_user.email.strip().lower(),
        )
    return False


def ensure_client_access(session: Session, actor_user: ActorUser, client: CRMClient) -> None:
    if not can_view_client(session, actor_user, client):
        raise UnauthorizedError("client is not available to the current user")
