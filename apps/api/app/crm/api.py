from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import get_request_context
from app.core.database import get_db
from app.crm.access import ActorUser, ensure_client_access, require_access, require_admin
from app.crm.errors import CRMError
from app.crm.import_export import import_clients_csv
from app.crm.query import client_query_service
from app.crm.schemas import (
    AttachmentCreate,
    ClientCreate,
    ClientDetailRead,
    ClientEventPage,
    ClientEventRead,
    ClientPage,
    ClientRead,
    ClientSummary,
    ClientUpdate,
    CommentCreate,
    CustomFieldValue,
    HubCreate,
    HubRead,
    ImportantFieldsRead,
    ImportantFieldsUpdate,
    ImportResult,
    ManagerAssignRequest,
    ManagerCreate,
    ManagerRead,
    ManagerWithClients,
    SearchRebuildResult,
)
from app.crm.search import rebuild_search_index
from app.crm.service import (
    client_event_service,
    client_service,
    hub_service,
    important_field_service,
    manager_service,
    store_transaction,
)


logger = logging.getLogger("app.crm.api")

hubs_router = APIRouter(prefix="/api/crm", tags=["crm.hubs"])
clients_router = APIRouter(prefix="/api/crm", tags=["crm.clients"])
events_router = APIRouter(prefix="/api/crm", tags=["crm.events"])
managers_router = APIRouter(prefix="/api/crm", tags=["crm.managers"])
important_fields_router = APIRouter(prefix="/api/crm", tags=["crm.important_fields"])
search_router = APIRouter(prefix="/api/crm", tags=["crm.search"])
v1_router = APIRouter(prefix="/api/v1", tags=["crm.api"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def _correlation_id_of(request: Request) -> str | None:
    context = get_request_context(request)
    return get_correlation_id() or (context.correlation_id if context else None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = _correlation_id_of(request)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if auth_user.hub_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="hub_id claim is required")
    correlation_id = _correlation_id_of(request)
    return ActorUser(
        user_id=auth_user.sub,
        hub_id=auth_user.hub_id,
        roles=set(auth_user.roles),
        email=auth_user.email,
        name=auth_user.name,
        correlation_id=correlation_id,
    )


def _accessible_client(db: Session, user: ActorUser, client_id: uuid.UUID) -> None:
    require_access(user)
    client = client_service.get_client(db, user.hub_id, client_id)
    ensure_client_access(db, user, client)


@hubs_router.post("/hubs", response_model=HubRead, status_code=status.HTTP_201_CREATED)
def create_hub(
    request: Request,
    dto: HubCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> HubRead | JSONResponse:
    try:
        require_admin(user)
        return hub_service.create_hub(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.get("/clients", response_model=ClientPage)
def list_clients(
    request: Request,
    search: str | None = Query(default=None),
    public_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientPage | JSONResponse:
    try:
        return client_query_service.list_clients(
            db,
            user,
            search=search,
            public_id=public_id,
            page=page,
            per_page=per_page,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        require_access(user)
        return client_service.create_client(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.delete("/clients", response_model=dict[str, int], status_code=status.HTTP_200_OK)
def delete_all_clients(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        require_admin(user)
        return {"deleted": client_service.delete_all_clients(db, user)}
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.get("/clients/fields", response_model=list[str])
def list_available_fields(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[str] | JSONResponse:
    try:
        require_access(user)
        return client_service.list_available_fields(db, user.hub_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.post("/clients/import", response_model=ImportResult)
async def import_clients(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportResult | JSONResponse:
    payload = await file.read()
    try:
        return import_clients_csv(db, user, payload)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.get("/clients/{client_id}", response_model=ClientDetailRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientDetailRead | JSONResponse:
    try:
        return client_query_service.client_detail(db, user, client_id, page=page)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.patch("/clients/{client_id}", response_model=ClientRead)
def update_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        _accessible_client(db, user, client_id)
        return client_service.update_client(db, user, client_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_admin(user)
        client_service.delete_client(db, user, client_id)
    except CRMError as exc:
        return crm_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@clients_router.put("/clients/{client_id}/fields", response_model=ClientRead)
def replace_custom_fields(
    request: Request,
    client_id: uuid.UUID,
    fields: dict[str, str],
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        _accessible_client(db, user, client_id)
        return client_service.replace_custom_fields(db, user, client_id, fields)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.put("/clients/{client_id}/fields/{field_name}", response_model=ClientRead)
def set_custom_field(
    request: Request,
    client_id: uuid.UUID,
    field_name: str,
    dto: CustomFieldValue,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        _accessible_client(db, user, client_id)
        return client_service.set_custom_field(db, user, client_id, field_name, dto.value)
    except CRMError as exc:
        return crm_error_response(request, exc)


@clients_router.delete("/clients/{client_id}/fields/{field_name}", response_model=ClientRead)
def delete_custom_field(
    request: Request,
    client_id: uuid.UUID,
    field_name: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        _accessible_client(db, user, client_id)
        return client_service.delete_custom_field(db, user, client_id, field_name)
    except CRMError as exc:
        return crm_error_response(request, exc)


@events_router.get("/clients/{client_id}/events", response_model=ClientEventPage)
def list_client_events(
    request: Request,
    client_id: uuid.UUID,
    event_type: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientEventPage | JSONResponse:
    try:
        return client_query_service.list_client_events(
            db,
            user,
            client_id,
            event_type=event_type,
            page=page,
            per_page=per_page,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@events_router.post(
    "/clients/{client_id}/comments",
    response_model=ClientEventRead,
    status_code=status.HTTP_201_CREATED,
)
def add_comment(
    request: Request,
    client_id: uuid.UUID,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientEventRead | JSONResponse:
    try:
        require_access(user)
        return client_event_service.add_comment(db, user, client_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@events_router.post(
    "/clients/{client_id}/attachments",
    response_model=ClientEventRead,
    status_code=status.HTTP_201_CREATED,
)
def add_attachment(
    request: Request,
    client_id: uuid.UUID,
    dto: AttachmentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientEventRead | JSONResponse:
    try:
        require_access(user)
        return client_event_service.add_attachment(db, user, client_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@managers_router.get("/managers", response_model=list[ManagerWithClients])
def list_managers(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ManagerWithClients] | JSONResponse:
    try:
        require_admin(user)
        return manager_service.list_managers_with_clients(db, user.hub_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@managers_router.post("/managers", response_model=ManagerRead, status_code=status.HTTP_201_CREATED)
def create_manager(
    request: Request,
    dto: ManagerCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ManagerRead | JSONResponse:
    try:
        require_admin(user)
        return manager_service.create_manager(db, user, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@managers_router.put("/managers/{manager_id}/clients", response_model=ManagerWithClients)
def assign_clients(
    request: Request,
    manager_id: uuid.UUID,
    dto: ManagerAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ManagerWithClients | JSONResponse:
    try:
        require_admin(user)
        return manager_service.assign_clients(db, user, manager_id, dto.client_ids)
    except CRMError as exc:
        return crm_error_response(request, exc)


@important_fields_router.get("/important-fields", response_model=ImportantFieldsRead)
def get_important_fields(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportantFieldsRead | JSONResponse:
    try:
        require_access(user)
        return important_field_service.list_fields(db, user.hub_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@important_fields_router.put("/important-fields", response_model=ImportantFieldsRead)
def replace_important_fields(
    request: Request,
    dto: ImportantFieldsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportantFieldsRead | JSONResponse:
    try:
        require_admin(user)
        return important_field_service.replace_fields(db, user, dto.fields)
    except CRMError as exc:
        return crm_error_response(request, exc)


@search_router.post("/search/rebuild", response_model=SearchRebuildResult)
def rebuild_search(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SearchRebuildResult | JSONResponse:
    try:
        require_admin(user)
        with store_transaction(db, "search index could not be rebuilt"):
            indexed = rebuild_search_index(db, user.hub_id)
        return SearchRebuildResult(indexed=indexed)
    except CRMError as exc:
        return crm_error_response(request, exc)


@v1_router.get("/clients", response_model=list[ClientSummary])
def api_list_clients(
    request: Request,
    public_id: str | None = Query(default=None),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientSummary] | JSONResponse:
    try:
        return client_query_service.list_clients_api(db, user, public_id=public_id, search=search, page=page)
    except CRMError as exc:
        return crm_error_response(request, exc)
    except Exception as exc:
        logger.exception("api.list_clients_failed", extra={"hub_id": str(user.hub_id), "error": str(exc)})
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="internal_error",
            message="failed to list clients",
        )
