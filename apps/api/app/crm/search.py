from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Row, delete, func, insert, select
from sqlalchemy.orm import Session

from app.crm.models import CRMClient, CRMClientField, CRMClientSearchDocument
from app.metrics import observe_search_projection

# Shadow rows are written with Core statements so the ORM identity map never
# holds a stale copy of a document that was deleted and re-inserted.
search_table = CRMClientSearchDocument.__table__


def concatenate_field_values(fields: Mapping[str, str]) -> str | None:
    """Join custom field values ordered by field name; None when nothing remains."""
    values = [fields[name].strip() for name in sorted(fields) if fields[name] and fields[name].strip()]
    joined = " ".join(values).strip()
    return joined or None


def build_search_document(name: str, email: str | None, phone: str | None, fields_text: str | None) -> str:
    return " ".join(part for part in [name, email, phone, fields_text] if part)


def derive_search_row(client: CRMClient, fields: Mapping[str, str]) -> dict[str, Any]:
    fields_text = concatenate_field_values(fields)
    return {
        "client_id": client.id,
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "fields": fields_text,
        "document": build_search_document(client.name, client.email, client.phone, fields_text),
    }


def load_custom_fields(session: Session, client_id: uuid.UUID) -> dict[str, str]:
    rows = session.execute(
        select(CRMClientField.field, CRMClientField.value).where(CRMClientField.client_id == client_id)
    ).all()
    return {field: value for field, value in rows}


def derive_client_document(session: Session, client: CRMClient) -> dict[str, Any]:
    """Compute a client's search row from the source tables without writing it."""
    session.flush()
    return derive_search_row(client, load_custom_fields(session, client.id))


def project_client(session: Session, client: CRMClient) -> dict[str, Any]:
    """Re-derive the client's denormalized fields and replace its search document.

    Runs inside the caller's transaction; the caller commits.
    """
    row = derive_client_document(session, client)
    client.fields = row["fields"]
    session.execute(delete(search_table).where(search_table.c.client_id == client.id))
    session.execute(insert(search_table).values(**row))
    observe_search_projection("upsert")
    return row


def remove_client(session: Session, client_id: uuid.UUID) -> None:
    session.execute(delete(search_table).where(search_table.c.client_id == client_id))
    observe_search_projection("delete")


def remove_hub_clients(session: Session, hub_id: uuid.UUID) -> None:
    session.execute(
        delete(search_table).where(search_table.c.client_id.in_(select(CRMClient.id).where(CRMClient.hub_id == hub_id)))
    )
    observe_search_projection("delete")


def get_search_document(session: Session, client_id: uuid.UUID) -> dict[str, Any] | None:
    row = session.execute(select(search_table).where(search_table.c.client_id == client_id)).mappings().first()
    return dict(row) if row is not None else None


def rebuild_search_index(session: Session, hub_id: uuid.UUID | None = None) -> int:
    """Re-derive every search document (optionally for one hub) from scratch."""
    client_stmt = select(CRMClient).order_by(CRMClient.id)
    field_stmt = select(CRMClientField.client_id, CRMClientField.field, CRMClientField.value)
    if hub_id is not None:
        client_stmt = client_stmt.where(CRMClient.hub_id == hub_id)
        field_stmt = field_stmt.join(CRMClient, CRMClient.id == CRMClientField.client_id).where(CRMClient.hub_id == hub_id)

    session.flush()
    clients = session.scalars(client_stmt).all()
    fields_by_client: dict[uuid.UUID, dict[str, str]] = defaultdict(dict)
    for client_id, field, value in session.execute(field_stmt).all():
        fields_by_client[client_id][field] = value

    if hub_id is None:
        session.execute(delete(search_table))
    else:
        remove_hub_clients(session, hub_id)

    rows: list[dict[str, Any]] = []
    for client in clients:
        row = derive_search_row(client, fields_by_client.get(client.id, {}))
        client.fields = row["fields"]
        rows.append(row)
    if rows:
        session.execute(insert(search_table), rows)
    observe_search_projection("rebuild", len(rows))
    return len(rows)


def _tokenize(term: str) -> list[str]:
    tokens: list[str] = []
    for token in term.casefold().split():
        if token not in tokens:
            tokens.append(token)
    return tokens


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _score(row: Row[Any], tokens: list[str]) -> int:
    document = row.document.casefold()
    name = row.name.casefold()
    return sum(document.count(token) + (2 if token in name else 0) for token in tokens)


def search_client_ids(
    session: Session,
    hub_id: uuid.UUID,
    term: str,
    limit: int | None = None,
) -> list[uuid.UUID]:
    """Return ids of the hub's clients matching every token of ``term``, best match first.

    The shadow table is tenant-agnostic, so the hub restriction is applied here
    through a join on the source table before any ranking happens.
    """
    tokens = _tokenize(term)
    if not tokens:
        return []

    stmt = (
        select(search_table.c.client_id, search_table.c.name, search_table.c.document)
        .join(CRMClient, CRMClient.id == search_table.c.client_id)
        .where(CRMClient.hub_id == hub_id)
    )
    for token in tokens:
        stmt = stmt.where(func.lower(search_table.c.document).like(f"%{_escape_like(token)}%", escape="\\"))

    rows = session.execute(stmt).all()
    ranked = sorted(rows, key=lambda row: (-_score(row, tokens), row.name.casefold(), str(row.client_id)))
    client_ids = [row.client_id for row in ranked]
    return client_ids[:limit] if limit is not None else client_ids
