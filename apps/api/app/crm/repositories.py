from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from app.crm.models import CRMClient, CRMClientManager, CRMHub, CRMImportantField, CRMManager


class HubScopedRepository:
    """Builds queries that never leave the caller's hub."""

    model: Any = None

    def apply_scope_query(self, query: Select[Any], hub_id: uuid.UUID) -> Select[Any]:
        return query.where(self.model.hub_id == hub_id)

    def get(self, session: Session, hub_id: uuid.UUID, entity_id: uuid.UUID) -> Any | None:
        stmt = self.apply_scope_query(select(self.model).where(self.model.id == entity_id), hub_id)
        return session.scalar(stmt)


class HubRepository:
    def get(self, session: Session, hub_id: uuid.UUID) -> CRMHub | None:
        return session.get(CRMHub, hub_id)


class ClientRepository(HubScopedRepository):
    model = CRMClient

    def get_by_public_id(self, session: Session, hub_id: uuid.UUID, public_id: uuid.UUID) -> CRMClient | None:
        stmt = self.apply_scope_query(select(CRMClient).where(CRMClient.public_id == public_id), hub_id)
        return session.scalar(stmt)

    def get_by_email(self, session: Session, hub_id: uuid.UUID, email: str) -> CRMClient | None:
        stmt = self.apply_scope_query(select(CRMClient).where(CRMClient.email == email), hub_id)
        return session.scalar(stmt)

    def get_by_phone(self, session: Session, hub_id: uuid.UUID, phone: str) -> CRMClient | None:
        stmt = self.apply_scope_query(select(CRMClient).where(CRMClient.phone == phone), hub_id)
        return session.scalar(stmt)

    def public_id_exists(self, session: Session, hub_id: uuid.UUID, public_id: uuid.UUID) -> bool:
        stmt = self.apply_scope_query(select(CRMClient.id).where(CRMClient.public_id == public_id), hub_id)
        return session.scalar(stmt) is not None

    def list_by_ids(self, session: Session, hub_id: uuid.UUID, client_ids: list[uuid.UUID]) -> list[CRMClient]:
        if not client_ids:
            return []
        stmt = self.apply_scope_query(select(CRMClient).where(CRMClient.id.in_(client_ids)), hub_id)
        return list(session.scalars(stmt).all())

    def list_for_manager(self, session: Session, hub_id: uuid.UUID, manager_id: uuid.UUID) -> list[CRMClient]:
        stmt = (
            select(CRMClient)
            .join(CRMClientManager, CRMClientManager.client_id == CRMClient.id)
            .where(CRMClientManager.manager_id == manager_id)
            .order_by(CRMClient.name.asc(), CRMClient.id.asc())
        )
        return list(session.scalars(self.apply_scope_query(stmt, hub_id)).all())

    def is_assigned_to_manager_email(
        self,
        session: Session,
        hub_id: uuid.UUID,
        client_id: uuid.UUID,
        manager_email: str,
    ) -> bool:
        stmt = (
            select(CRMClientManager.client_id)
            .join(CRMManager, CRMManager.id == CRMClientManager.manager_id)
            .where(
                CRMClientManager.client_id == client_id,
                CRMManager.hub_id == hub_id,
                CRMManager.email == manager_email,
            )
        )
        return session.scalar(stmt) is not None


class ManagerRepository(HubScopedRepository):
    model = CRMManager

    def get_by_email(self, session: Session, hub_id: uuid.UUID, email: str) -> CRMManager | None:
        stmt = self.apply_scope_query(select(CRMManager).where(CRMManager.email == email), hub_id)
        return session.scalar(stmt)

    def list_all(self, session: Session, hub_id: uuid.UUID) -> list[CRMManager]:
        stmt = self.apply_scope_query(select(CRMManager), hub_id).order_by(CRMManager.name.asc(), CRMManager.email.asc())
        return list(session.scalars(stmt).all())

    def list_for_client(self, session: Session, hub_id: uuid.UUID, client_id: uuid.UUID) -> list[CRMManager]:
        stmt = (
            select(CRMManager)
            .join(CRMClientManager, CRMClientManager.manager_id == CRMManager.id)
            .where(CRMClientManager.client_id == client_id)
            .order_by(CRMManager.name.asc())
        )
        return list(session.scalars(self.apply_scope_query(stmt, hub_id)).all())


class ImportantFieldRepository(HubScopedRepository):
    model = CRMImportantField

    def list_names(self, session: Session, hub_id: uuid.UUID) -> list[str]:
        stmt = self.apply_scope_query(select(CRMImportantField.field), hub_id).order_by(
            CRMImportantField.position.asc(),
            CRMImportantField.field.asc(),
        )
        return list(session.scalars(stmt).all())


hub_repository = HubRepository()
client_repository = ClientRepository()
manager_repository = ManagerRepository()
important_field_repository = ImportantFieldRepository()
