from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class HubCreate(BaseModel):
    name: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _strip_required(value)


class HubRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    created_at: datetime


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    fields: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _strip_required(value)


class ClientUpdate(BaseModel):
    """Partial update; only attributes present in the payload are written.

    ``fields``, when present, replaces the full custom field set.
    """

    name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    fields: dict[str, str] | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _strip_required(value)


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    hub_id: uuid.UUID
    public_id: uuid.UUID
    name: str
    email: str | None
    phone: str | None
    fields: str | None
    custom_fields: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ClientSummary(BaseModel):
    public_id: uuid.UUID
    name: str
    email: str | None
    phone: str | None
    fields: dict[str, str] = Field(default_factory=dict)


class ClientPage(BaseModel):
    items: list[ClientRead]
    total: int
    page: int
    per_page: int


class CustomFieldValue(BaseModel):
    value: str = Field(min_length=1)


class ManagerCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    is_user: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _strip_required(value)


class ManagerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    hub_id: uuid.UUID
    name: str
    email: str
    is_user: bool


class ManagerWithClients(BaseModel):
    manager: ManagerRead
    clients: list[ClientRead]


class ManagerAssignRequest(BaseModel):
    client_ids: list[uuid.UUID] = Field(default_factory=list)


class ImportantFieldsUpdate(BaseModel):
    fields: list[str] = Field(default_factory=list)


class ImportantFieldsRead(BaseModel):
    fields: list[str]


# Event payload variants, one per event tag.


class TextEventPayload(BaseModel):
    text: str


class TaskAssignee(BaseModel):
    name: str
    email: str


class TaskEventPayload(BaseModel):
    public_id: str
    text: str | None = None
    subject: str
    track: str | None = None
    priority: str
    status: str
    assignee: TaskAssignee | None = None


class EmailEventPayload(BaseModel):
    text: str | None = None
    subject: str | None = None


class DocumentLinkEventPayload(BaseModel):
    text: str
    url: str


class ReplyEventPayload(BaseModel):
    subject: str | None = None
    text: str


class UnsubscribedEventPayload(BaseModel):
    text: str | None = None


class ClientEventRead(BaseModel):
    id: int
    client_id: uuid.UUID
    manager_id: uuid.UUID
    event_type: str
    event_data: dict[str, Any]
    created_at: datetime


class ClientEventPage(BaseModel):
    items: list[ClientEventRead]
    total: int
    page: int
    per_page: int


class CommentCreate(BaseModel):
    event_type: str = "Comment"
    text: str = Field(min_length=1)
    subject: str | None = None

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        return _strip_required(value)


class AttachmentCreate(BaseModel):
    text: str = Field(min_length=1)
    url: str = Field(min_length=1)

    @field_validator("text", "url")
    @classmethod
    def validate_required(cls, value: str) -> str:
        return _strip_required(value)


class ClientDetailRead(BaseModel):
    client: ClientRead
    managers: list[ManagerRead]
    events: list[ClientEventRead]
    total_events: int
    documents: list[ClientEventRead]
    documents_total: int
    important_fields: dict[str, str]
    other_fields: dict[str, str]
    available_fields: list[str]


class ImportRowResult(BaseModel):
    row_number: int
    status: Literal["succeeded", "skipped", "failed"]
    reason: str | None = None
    client_id: uuid.UUID | None = None


class ImportResult(BaseModel):
    total: int
    succeeded: int
    skipped: int
    failed: int
    rows: list[ImportRowResult]


class SearchRebuildResult(BaseModel):
    indexed: int
