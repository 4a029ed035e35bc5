from __future__ import annotations

import csv
import io
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app import audit
from app.crm.access import ActorUser, require_access
from app.crm.errors import CRMError, InfrastructureError, InputValidationError
from app.crm.normalization import normalize_email, normalize_phone
from app.crm.schemas import ClientCreate, ImportResult, ImportRowResult
from app.crm.service import client_service
from app.metrics import observe_import_row


logger = logging.getLogger("app.crm.store")

CORE_COLUMNS = {"name", "email", "phone"}


def decode_csv(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return payload.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InputValidationError("CSV file must be UTF-8 encoded") from exc


def _split_row(raw_row: dict[str | None, Any]) -> tuple[dict[str, str], dict[str, str]]:
    core: dict[str, str] = {}
    fields: dict[str, str] = {}
    for key, value in raw_row.items():
        # Extra cells beyond the header land under the None key.
        if key is None or not isinstance(value, str):
            continue
        column = key.strip()
        cell = value.strip()
        if not column or not cell:
            continue
        if column.lower() in CORE_COLUMNS:
            core[column.lower()] = cell
        else:
            fields[column] = cell
    return core, fields


def import_clients_csv(session: Session, actor_user: ActorUser, payload: bytes | str) -> ImportResult:
    """Upsert one client per CSV row; each row commits or fails on its own."""
    require_access(actor_user)
    reader = csv.DictReader(io.StringIO(decode_csv(payload)))
    if not reader.fieldnames or "name" not in {name.strip().lower() for name in reader.fieldnames if name}:
        raise InputValidationError("CSV header must contain a 'name' column")

    rows: list[ImportRowResult] = []
    for row_number, raw_row in enumerate(reader, start=2):
        core, fields = _split_row(raw_row)
        if not core.get("name"):
            rows.append(ImportRowResult(row_number=row_number, status="skipped", reason="name is required"))
            continue

        try:
            dto = ClientCreate(
                name=core["name"],
                email=normalize_email(core.get("email")),
                phone=normalize_phone(core.get("phone")),
                fields=fields,
            )
            client, _created = client_service.upsert_client(
                session,
                actor_user.hub_id,
                dto,
                actor_user_id=actor_user.user_id,
            )
        except ValidationError as exc:
            reason = str(exc.errors()[0].get("msg", "invalid row"))
            rows.append(ImportRowResult(row_number=row_number, status="failed", reason=reason))
        except InfrastructureError:
            raise
        except CRMError as exc:
            rows.append(ImportRowResult(row_number=row_number, status="failed", reason=exc.message))
        else:
            rows.append(ImportRowResult(row_number=row_number, status="succeeded", client_id=client.id))

        last = rows[-1]
        if last.status == "failed":
            logger.warning(
                "client_import.row_failed",
                extra={"hub_id": str(actor_user.hub_id), "row_number": row_number, "reason": last.reason},
            )

    for row in rows:
        observe_import_row(row.status)

    result = ImportResult(
        total=len(rows),
        succeeded=sum(1 for row in rows if row.status == "succeeded"),
        skipped=sum(1 for row in rows if row.status == "skipped"),
        failed=sum(1 for row in rows if row.status == "failed"),
        rows=rows,
    )
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type="crm.client_import",
        entity_id=str(actor_user.hub_id),
        action="import",
        before=None,
        after={"total": result.total, "succeeded": result.succeeded, "skipped": result.skipped, "failed": result.failed},
        correlation_id=actor_user.correlation_id,
        hub_id=actor_user.hub_id,
    )
    logger.info(
        "client_import.completed",
        extra={"hub_id": str(actor_user.hub_id), "outcome": f"{result.succeeded}/{result.total}"},
    )
    return result
