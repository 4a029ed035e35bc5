from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.access import ActorUser, ensure_client_access, is_admin, is_manager, require_access
from app.crm.ledger import ClientEventType, event_ledger
from app.crm.models import CRMClient, CRMClientManager, CRMManager
from app.crm.schemas import ClientDetailRead, ClientEventPage, ClientPage, ClientRead, ClientSummary
from app.crm.search import load_custom_fields, search_client_ids
from app.crm.service import (
    client_service,
    important_field_service,
    manager_service,
    to_client_read,
)

# Newest documents shown on the client card; documents_total reports the full count.
DETAIL_DOCUMENTS_LIMIT = 100


def parse_public_id(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None


class ClientQueryService:
    """Role-scoped read views over clients and their timelines."""

    def list_clients(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        search: str | None = None,
        public_id: str | uuid.UUID | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> ClientPage:
        require_access(actor_user)
        page = max(page, 1)
        per_page = per_page or get_settings().clients_per_page
        empty = ClientPage(items=[], total=0, page=page, per_page=per_page)

        stmt = self._scoped_clients(actor_user)
        if stmt is None:
            return empty

        if public_id is not None and str(public_id).strip():
            parsed = parse_public_id(public_id)
            if parsed is None:
                return empty
            stmt = stmt.where(CRMClient.public_id == parsed)

        if search and search.strip():
            ranked_ids = search_client_ids(session, actor_user.hub_id, search)
            if not ranked_ids:
                return empty
            visible = set(session.scalars(stmt.with_only_columns(CRMClient.id).where(CRMClient.id.in_(ranked_ids))).all())
            ordered_ids = [client_id for client_id in ranked_ids if client_id in visible]
            page_ids = ordered_ids[(page - 1) * per_page : page * per_page]
            clients_by_id = {client.id: client for client in session.scalars(select(CRMClient).where(CRMClient.id.in_(page_ids))).all()}
            items = [self._read(session, clients_by_id[client_id]) for client_id in page_ids]
            return ClientPage(items=items, total=len(ordered_ids), page=page, per_page=per_page)

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        clients = session.scalars(
            stmt.order_by(CRMClient.name.asc(), CRMClient.id.asc()).offset((page - 1) * per_page).limit(per_page)
        ).all()
        return ClientPage(
            items=[self._read(session, client) for client in clients],
            total=int(total),
            page=page,
            per_page=per_page,
        )

    def list_clients_api(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        public_id: str | None = None,
        search: str | None = None,
        page: int = 1,
    ) -> list[ClientSummary]:
        result = self.list_clients(session, actor_user, search=search, public_id=public_id, page=page)
        return [
            ClientSummary(
                public_id=item.public_id,
                name=item.name,
                email=item.email,
                phone=item.phone,
                fields=item.custom_fields,
            )
            for item in result.items
        ]

    def client_detail(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        *,
        page: int = 1,
    ) -> ClientDetailRead:
        require_access(actor_user)
        client = client_service.get_client(session, actor_user.hub_id, client_id)
        ensure_client_access(session, actor_user, client)

        custom_fields = load_custom_fields(session, client.id)
        important, other = important_field_service.partition(session, actor_user.hub_id, custom_fields)
        timeline = event_ledger.list_events(session, hub_id=actor_user.hub_id, client_id=client.id, page=page)
        documents = event_ledger.list_events(
            session,
            hub_id=actor_user.hub_id,
            client_id=client.id,
            event_type=ClientEventType.DOCUMENT_LINK.value,
            per_page=DETAIL_DOCUMENTS_LIMIT,
        )
        return ClientDetailRead(
            client=to_client_read(client, custom_fields),
            managers=manager_service.list_client_managers(session, actor_user.hub_id, client.id),
            events=timeline.items,
            total_events=timeline.total,
            documents=documents.items,
            documents_total=documents.total,
            important_fields=important,
            other_fields=other,
            available_fields=client_service.list_available_fields(session, actor_user.hub_id),
        )

    def list_client_events(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        *,
        event_type: str | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> ClientEventPage:
        require_access(actor_user)
        client = client_service.get_client(session, actor_user.hub_id, client_id)
        ensure_client_access(session, actor_user, client)
        return event_ledger.list_events(
            session,
            hub_id=actor_user.hub_id,
            client_id=client.id,
            event_type=event_type,
            page=page,
            per_page=per_page,
        )

    def _scoped_clients(self, actor_user: ActorUser):
        stmt = select(CRMClient).where(CRMClient.hub_id == actor_user.hub_id)
        if is_admin(actor_user):
            return stmt
        if is_manager(actor_user) and actor_user.email:
            assigned = (
                select(CRMClientManager.client_id)
                .join(CRMManager, CRMManager.id == CRMClientManager.manager_id)
                .where(
                    CRMManager.hub_id == actor_user.hub_id,
                    CRMManager.email == actor_user.email.strip().lower(),
                )
            )
            return stmt.where(CRMClient.id.in_(assigned))
        return None

    @staticmethod
    def _read(session: Session, client: CRMClient) -> ClientRead:
        return to_client_read(client, load_custom_fields(session, client.id))


client_query_service = ClientQueryService()
