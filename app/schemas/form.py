"""Pydantic schemas for provider form definitions and versioned form reads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProviderChoice(BaseModel):
    """Choice as returned by the form provider API."""

    model_config = ConfigDict(extra="allow")

    id: str
    label: str = ""
    ref: str | None = None


class ProviderField(BaseModel):
    """Field as returned by the form provider API.

    Group fields nest their children under ``properties.fields``; choice
    fields list options under ``properties.choices``.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    type: str
    ref: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def children(self) -> list["ProviderField"]:
        """Nested fields of a group."""
        return [ProviderField.model_validate(f) for f in self.properties.get("fields") or []]

    @property
    def choices(self) -> list[ProviderChoice]:
        """Provider-defined choices."""
        return [ProviderChoice.model_validate(c) for c in self.properties.get("choices") or []]


class ProviderWorkspace(BaseModel):
    """Workspace link of a provider form."""

    href: str | None = None

    @property
    def workspace_id(self) -> str | None:
        """Workspace id parsed from the trailing href segment."""
        if not self.href:
            return None
        return self.href.rstrip("/").rsplit("/", 1)[-1]


class ProviderForm(BaseModel):
    """Form definition returned by ``get_form_details``."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    workspace: ProviderWorkspace | None = None
    fields: list[ProviderField] = Field(default_factory=list)


class ChoiceVersionRead(BaseModel):
    """Schema for reading a choice version."""

    id: str
    field_version_id: str
    choice_id: str
    choice_label: str
    choice_ref: str | None = None
    display_order: int
    version_date: datetime
    is_active: bool

    model_config = {"from_attributes": True}


class FieldVersionRead(BaseModel):
    """Schema for reading a field version."""

    id: str
    form_id: str
    field_id: str
    field_title: str
    field_type: str
    field_ref: str | None = None
    properties: dict[str, Any] | None = None
    is_scored: bool
    parent_field_version_id: str | None = None
    hierarchy_level: int
    display_order: int
    version_date: datetime
    is_active: bool

    model_config = {"from_attributes": True}


class FieldVersionWithChoices(FieldVersionRead):
    """Field version with its active choices."""

    choices: list[ChoiceVersionRead] = Field(default_factory=list)


class FormRead(BaseModel):
    """Schema for reading a form."""

    id: str
    form_id: str
    form_title: str
    workspace_id: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class FormSyncResult(BaseModel):
    """Result of a form sync."""

    form_id: str
    internal_form_id: str
    fields_processed: int
    fields_failed: int
    fields_deactivated: int
