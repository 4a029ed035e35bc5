from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.access import ActorUser, ensure_client_access
from app.crm.bus import email_publisher
from app.crm.errors import ConflictError, InfrastructureError, InputValidationError, NotFoundError
from app.crm.ledger import ClientEventType, build_event_payload, event_ledger, parse_event_type
from app.crm.models import (
    CRMClient,
    CRMClientEvent,
    CRMClientField,
    CRMClientManager,
    CRMHub,
    CRMImportantField,
    CRMManager,
)
from app.crm.normalization import (
    normalize_custom_fields,
    normalize_email,
    normalize_name,
    normalize_phone,
    sanitize_text,
)
from app.crm.repositories import (
    client_repository,
    hub_repository,
    important_field_repository,
    manager_repository,
)
from app.crm.schemas import (
    AttachmentCreate,
    ClientCreate,
    ClientEventRead,
    ClientRead,
    ClientUpdate,
    CommentCreate,
    HubCreate,
    HubRead,
    ImportantFieldsRead,
    ManagerCreate,
    ManagerRead,
    ManagerWithClients,
)
from app.crm.search import load_custom_fields, project_client, remove_client, remove_hub_clients


logger = logging.getLogger("app.crm.store")

client_field_table = CRMClientField.__table__


@contextmanager
def store_transaction(session: Session, conflict_message: str) -> Iterator[None]:
    """Commit on success; map constraint violations to ConflictError and driver failures to InfrastructureError."""
    try:
        yield
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(conflict_message) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        raise InfrastructureError("store unavailable") from exc


def to_client_read(client: CRMClient, custom_fields: Mapping[str, str]) -> ClientRead:
    return ClientRead(
        id=client.id,
        hub_id=client.hub_id,
        public_id=client.public_id,
        name=client.name,
        email=client.email,
        phone=client.phone,
        fields=client.fields,
        custom_fields=dict(sorted(custom_fields.items())),
        created_at=client.created_at,
        updated_at=client.updated_at,
    )


def write_custom_fields(session: Session, client_id: uuid.UUID, fields: Mapping[str, str]) -> None:
    session.execute(delete(client_field_table).where(client_field_table.c.client_id == client_id))
    if fields:
        session.execute(
            insert(client_field_table),
            [{"client_id": client_id, "field": name, "value": value} for name, value in fields.items()],
        )


class HubService:
    def create_hub(self, session: Session, actor_user: ActorUser, dto: HubCreate) -> HubRead:
        hub = CRMHub(name=dto.name)
        session.add(hub)
        with store_transaction(session, "hub already exists"):
            session.flush()
            read = HubRead.model_validate(hub)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.hub",
            entity_id=str(read.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        return read

    def get_hub(self, session: Session, hub_id: uuid.UUID) -> CRMHub:
        hub = hub_repository.get(session, hub_id)
        if hub is None:
            raise NotFoundError("hub not found")
        return hub


class ClientService:
    entity_type = "crm.client"
    max_public_id_attempts = 5

    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        hub_service.get_hub(session, actor_user.hub_id)
        read = self._insert_client(
            session,
            hub_id=actor_user.hub_id,
            name=normalize_name(dto.name),
            email=normalize_email(dto.email),
            phone=normalize_phone(dto.phone),
            fields=normalize_custom_fields(dto.fields),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        return read

    def get_client(self, session: Session, hub_id: uuid.UUID, client_id: uuid.UUID) -> CRMClient:
        client = client_repository.get(session, hub_id, client_id)
        if client is None:
            raise NotFoundError("client not found")
        return client

    def get_client_read(self, session: Session, hub_id: uuid.UUID, client_id: uuid.UUID) -> ClientRead:
        client = self.get_client(session, hub_id, client_id)
        return to_client_read(client, load_custom_fields(session, client.id))

    def get_client_by_public_id(self, session: Session, hub_id: uuid.UUID, public_id: uuid.UUID) -> CRMClient:
        client = client_repository.get_by_public_id(session, hub_id, public_id)
        if client is None:
            raise NotFoundError("client not found")
        return client

    def update_client(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        dto: ClientUpdate,
    ) -> ClientRead:
        client = self.get_client(session, actor_user.hub_id, client_id)
        before = to_client_read(client, load_custom_fields(session, client.id)).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)

        if "name" in changes:
            client.name = normalize_name(changes["name"])
        if "email" in changes:
            client.email = normalize_email(changes["email"])
        if "phone" in changes:
            client.phone = normalize_phone(changes["phone"])
        self._ensure_identity_available(session, client.hub_id, client.email, client.phone, exclude_id=client.id)

        with store_transaction(session, "client email or phone already exists in hub"):
            if changes.get("fields") is not None:
                write_custom_fields(session, client.id, normalize_custom_fields(changes["fields"]))
            project_client(session, client)
            read = to_client_read(client, load_custom_fields(session, client.id))

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(client_id),
            action="update",
            before=before,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        events.publish(
            "crm.client.updated",
            hub_id=actor_user.hub_id,
            payload={"client_id": str(client_id)},
            actor_user_id=actor_user.user_id,
        )
        return read

    def replace_custom_fields(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        fields: Mapping[str, str],
    ) -> ClientRead:
        return self.update_client(session, actor_user, client_id, ClientUpdate(fields=dict(fields)))

    def set_custom_field(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        field: str,
        value: str,
    ) -> ClientRead:
        normalized = normalize_custom_fields({field: value})
        if not normalized:
            raise InputValidationError("custom field name and value must not be empty")
        client = self.get_client(session, actor_user.hub_id, client_id)
        fields = load_custom_fields(session, client.id)
        fields.update(normalized)
        return self.update_client(session, actor_user, client_id, ClientUpdate(fields=fields))

    def delete_custom_field(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        field: str,
    ) -> ClientRead:
        client = self.get_client(session, actor_user.hub_id, client_id)
        fields = load_custom_fields(session, client.id)
        if fields.pop(field.strip(), None) is None:
            raise NotFoundError(f"custom field '{field}' not found")
        return self.update_client(session, actor_user, client_id, ClientUpdate(fields=fields))

    def delete_client(self, session: Session, actor_user: ActorUser, client_id: uuid.UUID) -> None:
        client = self.get_client(session, actor_user.hub_id, client_id)
        before = to_client_read(client, load_custom_fields(session, client.id)).model_dump(mode="json")
        with store_transaction(session, "client could not be deleted"):
            self._delete_dependents(session, [client.id])
            remove_client(session, client.id)
            session.execute(delete(CRMClient).where(CRMClient.id == client.id))

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(client_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        events.publish(
            "crm.client.deleted",
            hub_id=actor_user.hub_id,
            payload={"client_id": str(client_id)},
            actor_user_id=actor_user.user_id,
        )
        logger.info("client.deleted", extra={"hub_id": str(actor_user.hub_id), "client_id": str(client_id)})

    def delete_all_clients(self, session: Session, actor_user: ActorUser) -> int:
        hub_id = actor_user.hub_id
        client_ids = list(session.scalars(select(CRMClient.id).where(CRMClient.hub_id == hub_id)).all())
        with store_transaction(session, "clients could not be deleted"):
            self._delete_dependents(session, client_ids)
            remove_hub_clients(session, hub_id)
            session.execute(delete(CRMClient).where(CRMClient.hub_id == hub_id))

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(hub_id),
            action="delete_all",
            before={"count": len(client_ids)},
            after=None,
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        logger.info("client.deleted_all", extra={"hub_id": str(hub_id)})
        return len(client_ids)

    def upsert_client(
        self,
        session: Session,
        hub_id: uuid.UUID,
        dto: ClientCreate,
        *,
        actor_user_id: str | None = None,
    ) -> tuple[ClientRead, bool]:
        """Create a client or update the one sharing its email (then phone) in the hub.

        Returns the client and whether it was created.
        """
        hub_service.get_hub(session, hub_id)
        name = normalize_name(dto.name)
        email = normalize_email(dto.email)
        phone = normalize_phone(dto.phone)
        fields = normalize_custom_fields(dto.fields)

        existing = client_repository.get_by_email(session, hub_id, email) if email else None
        if existing is None and phone:
            existing = client_repository.get_by_phone(session, hub_id, phone)

        if existing is None:
            read = self._insert_client(
                session,
                hub_id=hub_id,
                name=name,
                email=email,
                phone=phone,
                fields=fields,
                actor_user_id=actor_user_id,
                correlation_id=None,
            )
            return read, True

        existing.name = name
        existing.email = email
        existing.phone = phone
        self._ensure_identity_available(session, hub_id, email, phone, exclude_id=existing.id)
        with store_transaction(session, "client email or phone already exists in hub"):
            if fields:
                write_custom_fields(session, existing.id, fields)
            project_client(session, existing)
            read = to_client_read(existing, load_custom_fields(session, existing.id))
        events.publish(
            "crm.client.updated",
            hub_id=hub_id,
            payload={"client_id": str(existing.id)},
            actor_user_id=actor_user_id,
        )
        return read, False

    def list_available_fields(self, session: Session, hub_id: uuid.UUID) -> list[str]:
        in_use = session.scalars(
            select(CRMClientField.field)
            .join(CRMClient, CRMClient.id == CRMClientField.client_id)
            .where(CRMClient.hub_id == hub_id)
            .distinct()
        ).all()
        return sorted(set(in_use) | set(important_field_repository.list_names(session, hub_id)))

    def _insert_client(
        self,
        session: Session,
        *,
        hub_id: uuid.UUID,
        name: str,
        email: str | None,
        phone: str | None,
        fields: Mapping[str, str],
        actor_user_id: str | None,
        correlation_id: str | None,
    ) -> ClientRead:
        self._ensure_identity_available(session, hub_id, email, phone)
        client = CRMClient(
            hub_id=hub_id,
            public_id=self._new_public_id(session, hub_id),
            name=name,
            email=email,
            phone=phone,
        )
        session.add(client)
        with store_transaction(session, "client email, phone or public id already exists in hub"):
            session.flush()
            write_custom_fields(session, client.id, fields)
            project_client(session, client)
            read = to_client_read(client, fields)

        audit.record(
            actor_user_id=actor_user_id or "system",
            entity_type=self.entity_type,
            entity_id=str(read.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=correlation_id,
            hub_id=hub_id,
        )
        events.publish(
            "crm.client.created",
            hub_id=hub_id,
            payload={"client_id": str(read.id), "public_id": str(read.public_id)},
            actor_user_id=actor_user_id,
        )
        logger.info("client.created", extra={"hub_id": str(hub_id), "client_id": str(read.id)})
        return read

    def _new_public_id(self, session: Session, hub_id: uuid.UUID) -> uuid.UUID:
        for _ in range(self.max_public_id_attempts):
            candidate = uuid.uuid4()
            if not client_repository.public_id_exists(session, hub_id, candidate):
                return candidate
        raise ConflictError("could not allocate a unique public id")

    def _ensure_identity_available(
        self,
        session: Session,
        hub_id: uuid.UUID,
        email: str | None,
        phone: str | None,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        # The ORM flushes pending attribute changes before querying; disable it so the
        # lookup sees committed state only.
        with session.no_autoflush:
            if email:
                holder = client_repository.get_by_email(session, hub_id, email)
                if holder is not None and holder.id != exclude_id:
                    session.rollback()
                    raise ConflictError(f"client with email '{email}' already exists in hub")
            if phone:
                holder = client_repository.get_by_phone(session, hub_id, phone)
                if holder is not None and holder.id != exclude_id:
                    session.rollback()
                    raise ConflictError(f"client with phone '{phone}' already exists in hub")

    @staticmethod
    def _delete_dependents(session: Session, client_ids: list[uuid.UUID]) -> None:
        if not client_ids:
            return
        session.execute(delete(CRMClientEvent).where(CRMClientEvent.client_id.in_(client_ids)))
        session.execute(delete(CRMClientManager).where(CRMClientManager.client_id.in_(client_ids)))
        session.execute(delete(client_field_table).where(client_field_table.c.client_id.in_(client_ids)))


class ManagerService:
    entity_type = "crm.manager"

    def create_manager(self, session: Session, actor_user: ActorUser, dto: ManagerCreate) -> ManagerRead:
        hub_service.get_hub(session, actor_user.hub_id)
        email = normalize_email(str(dto.email))
        if manager_repository.get_by_email(session, actor_user.hub_id, email) is not None:
            raise ConflictError(f"manager with email '{email}' already exists in hub")

        manager = CRMManager(hub_id=actor_user.hub_id, name=dto.name, email=email, is_user=dto.is_user)
        session.add(manager)
        with store_transaction(session, f"manager with email '{email}' already exists in hub"):
            session.flush()
            read = ManagerRead.model_validate(manager)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(read.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        return read

    def create_or_update_manager(
        self,
        session: Session,
        hub_id: uuid.UUID,
        *,
        name: str,
        email: str,
        is_user: bool = False,
    ) -> CRMManager:
        """Upsert on ``(hub, email)``: the name is refreshed and ``is_user`` is only ever raised."""
        normalized_email = normalize_email(email)
        if normalized_email is None:
            raise InputValidationError("manager email must not be empty")
        normalized_name = normalize_name(name)

        manager = manager_repository.get_by_email(session, hub_id, normalized_email)
        if manager is None:
            manager = CRMManager(hub_id=hub_id, name=normalized_name, email=normalized_email, is_user=is_user)
            session.add(manager)
        else:
            manager.name = normalized_name
            manager.is_user = manager.is_user or is_user

        with store_transaction(session, f"manager with email '{normalized_email}' already exists in hub"):
            session.flush()
        return manager

    def actor_identity(self, actor_user: ActorUser) -> dict[str, str]:
        """Name and normalized email the current user appears under as a manager."""
        email = normalize_email(actor_user.email)
        if email is None:
            raise InputValidationError("current user has no email")
        return {"name": normalize_name(actor_user.name or email), "email": email}

    def ensure_actor_manager(self, session: Session, actor_user: ActorUser) -> CRMManager:
        identity = self.actor_identity(actor_user)
        return self.create_or_update_manager(session, actor_user.hub_id, **identity, is_user=True)

    def get_manager(self, session: Session, hub_id: uuid.UUID, manager_id: uuid.UUID) -> CRMManager:
        manager = manager_repository.get(session, hub_id, manager_id)
        if manager is None:
            raise NotFoundError("manager not found")
        return manager

    def list_managers_with_clients(self, session: Session, hub_id: uuid.UUID) -> list[ManagerWithClients]:
        return [
            self._with_clients(session, hub_id, manager)
            for manager in manager_repository.list_all(session, hub_id)
        ]

    def list_client_managers(self, session: Session, hub_id: uuid.UUID, client_id: uuid.UUID) -> list[ManagerRead]:
        return [ManagerRead.model_validate(item) for item in manager_repository.list_for_client(session, hub_id, client_id)]

    def assign_clients(
        self,
        session: Session,
        actor_user: ActorUser,
        manager_id: uuid.UUID,
        client_ids: list[uuid.UUID],
    ) -> ManagerWithClients:
        """Replace the manager's whole assignment set with ``client_ids``."""
        manager = self.get_manager(session, actor_user.hub_id, manager_id)
        wanted = list(dict.fromkeys(client_ids))
        clients = client_repository.list_by_ids(session, actor_user.hub_id, wanted)
        if len(clients) != len(wanted):
            found = {client.id for client in clients}
            missing = [str(client_id) for client_id in wanted if client_id not in found]
            raise NotFoundError("one or more clients not found", details={"client_ids": missing})

        before = [str(item.id) for item in client_repository.list_for_manager(session, actor_user.hub_id, manager.id)]
        with store_transaction(session, "assignment conflict"):
            session.execute(delete(CRMClientManager).where(CRMClientManager.manager_id == manager.id))
            if wanted:
                session.execute(
                    insert(CRMClientManager),
                    [{"client_id": client_id, "manager_id": manager.id} for client_id in wanted],
                )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(manager.id),
            action="assign_clients",
            before={"client_ids": before},
            after={"client_ids": [str(item) for item in wanted]},
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        events.publish(
            "crm.manager.assigned",
            hub_id=actor_user.hub_id,
            payload={"manager_id": str(manager.id), "client_ids": [str(item) for item in wanted]},
            actor_user_id=actor_user.user_id,
        )
        return self._with_clients(session, actor_user.hub_id, manager)

    def _with_clients(self, session: Session, hub_id: uuid.UUID, manager: CRMManager) -> ManagerWithClients:
        clients = client_repository.list_for_manager(session, hub_id, manager.id)
        return ManagerWithClients(
            manager=ManagerRead.model_validate(manager),
            clients=[to_client_read(client, load_custom_fields(session, client.id)) for client in clients],
        )


class ImportantFieldService:
    def list_fields(self, session: Session, hub_id: uuid.UUID) -> ImportantFieldsRead:
        return ImportantFieldsRead(fields=important_field_repository.list_names(session, hub_id))

    def replace_fields(self, session: Session, actor_user: ActorUser, fields: list[str]) -> ImportantFieldsRead:
        hub_service.get_hub(session, actor_user.hub_id)
        names = list(dict.fromkeys(name.strip() for name in fields if name and name.strip()))
        before = important_field_repository.list_names(session, actor_user.hub_id)
        with store_transaction(session, "duplicate important field"):
            session.execute(delete(CRMImportantField).where(CRMImportantField.hub_id == actor_user.hub_id))
            if names:
                session.execute(
                    insert(CRMImportantField),
                    [
                        {"hub_id": actor_user.hub_id, "field": name, "position": position}
                        for position, name in enumerate(names)
                    ],
                )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.important_fields",
            entity_id=str(actor_user.hub_id),
            action="replace",
            before={"fields": before},
            after={"fields": names},
            correlation_id=actor_user.correlation_id,
            hub_id=actor_user.hub_id,
        )
        return ImportantFieldsRead(fields=names)

    def partition(
        self,
        session: Session,
        hub_id: uuid.UUID,
        custom_fields: Mapping[str, str],
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Split a client's fields into important ones (in configured order) and the rest (sorted)."""
        important_names = important_field_repository.list_names(session, hub_id)
        important = {name: custom_fields[name] for name in important_names if name in custom_fields}
        other = {name: custom_fields[name] for name in sorted(custom_fields) if name not in important}
        return important, other


class ClientEventService:
    """User-initiated timeline entries."""

    def add_comment(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        dto: CommentCreate,
    ) -> ClientEventRead:
        client = client_service.get_client(session, actor_user.hub_id, client_id)
        ensure_client_access(session, actor_user, client)
        event_type = parse_event_type(dto.event_type)
        text = sanitize_text(dto.text)
        subject = dto.subject.strip() if dto.subject and dto.subject.strip() else None

        # The send request goes out before the author is stored as a manager.
        if event_type == ClientEventType.EMAIL.value:
            if not client.email:
                raise InputValidationError("client has no email address")
            email_publisher.send_email(
                hub_id=actor_user.hub_id,
                sender=manager_service.actor_identity(actor_user),
                recipient={
                    "address": client.email,
                    "name": client.name,
                    "fields": load_custom_fields(session, client.id),
                },
                subject=subject,
                message=text,
                client_id=client.id,
            )

        manager = manager_service.ensure_actor_manager(session, actor_user)

        data: dict[str, Any] = {"text": text}
        if subject is not None:
            data["subject"] = subject
        return event_ledger.append(
            session,
            hub_id=actor_user.hub_id,
            client_id=client.id,
            manager_id=manager.id,
            event_type=event_type,
            payload=build_event_payload(event_type, data),
            actor_user_id=actor_user.user_id,
        )

    def add_attachment(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        dto: AttachmentCreate,
    ) -> ClientEventRead:
        client = client_service.get_client(session, actor_user.hub_id, client_id)
        ensure_client_access(session, actor_user, client)
        manager = manager_service.ensure_actor_manager(session, actor_user)
        event_type = ClientEventType.DOCUMENT_LINK.value
        return event_ledger.append(
            session,
            hub_id=actor_user.hub_id,
            client_id=client.id,
            manager_id=manager.id,
            event_type=event_type,
            payload=build_event_payload(event_type, {"text": sanitize_text(dto.text), "url": dto.url}),
            actor_user_id=actor_user.user_id,
        )


hub_service = HubService()
client_service = ClientService()
manager_service = ManagerService()
important_field_service = ImportantFieldService()
client_event_service = ClientEventService()
