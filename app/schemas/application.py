"""Pydantic schemas for applications and their field hierarchy."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.application import ApplicationStatus


class ParticipantRead(BaseModel):
    """Schema for reading a participant."""

    id: str
    email: str
    first_name: str
    last_name: str
    phone: str | None = None
    date_of_birth: date | None = None

    model_config = {"from_attributes": True}


class FieldResponseRead(BaseModel):
    """Schema for reading one stored answer row."""

    id: str
    field_version_id: str
    choice_version_id: str | None = None
    response_value: str | None = None
    score: str | None = None
    response_metadata: dict[str, Any] | None = None
    is_raw: bool

    model_config = {"from_attributes": True}


class FieldNode(BaseModel):
    """One field of the application tree with its answers and children."""

    field_version_id: str
    field_id: str
    title: str
    field_type: str
    hierarchy_level: int
    display_order: int
    responses: list[FieldResponseRead] = Field(default_factory=list)
    children: list["FieldNode"] = Field(default_factory=list)


class ApplicationRead(BaseModel):
    """Schema for reading an application."""

    id: str
    participant_id: str
    form_id: str
    typeform_response_id: str
    submission_date: datetime
    status: ApplicationStatus
    answers_processed: bool
    red_count: int
    yellow_count: int
    green_count: int
    calculated_score: int | None = None
    application_data: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class ApplicationDetail(BaseModel):
    """Application with participant and answer hierarchy."""

    application: ApplicationRead
    participant: ParticipantRead | None = None
    fields: list[FieldNode] = Field(default_factory=list)


class ReprocessRequest(BaseModel):
    """Schema for re-processing a stored submission."""

    typeform_response_id: str


class ReprocessResult(BaseModel):
    """Result of re-processing one application."""

    application_id: str
    score: int | None = None


class UnprocessedLookupResult(BaseModel):
    """Result of the unprocessed-lock sweep."""

    count: int
    pending: list[str]
    failed: list[str] = Field(default_factory=list)


class DuplicateCheckResult(BaseModel):
    """Whether a submission token already has an application."""

    is_duplicate: bool
    existing_application: ApplicationRead | None = None
