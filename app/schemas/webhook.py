"""Pydantic schemas for inbound Typeform webhook payloads.

Choice answers arrive in several wire shapes (``choice`` object, ``choices``
as ``{ids, labels, refs}`` or as a list). They are normalised here, at the
boundary, into a tagged ``SingleChoice | MultiChoice`` selection so that
ingestion never has to sniff payload shapes.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

FORM_RESPONSE_EVENT = "form_response"


class ChoiceItem(BaseModel):
    """One selected option as delivered by the provider."""

    id: str | None = None
    label: str | None = None
    ref: str | None = None


class SingleChoice(BaseModel):
    """A single selected option (``choice`` wire shape)."""

    kind: Literal["single"] = "single"
    item: ChoiceItem


class MultiChoice(BaseModel):
    """A list of selected options (``choices`` wire shape)."""

    kind: Literal["multi"] = "multi"
    items: list[ChoiceItem] = Field(default_factory=list)


Selection = Annotated[SingleChoice | MultiChoice, Field(discriminator="kind")]


def _choice_item(raw: Any) -> ChoiceItem:
    if isinstance(raw, dict):
        return ChoiceItem(
            id=raw.get("id"),
            label=raw.get("label") if raw.get("label") is not None else raw.get("other"),
            ref=raw.get("ref"),
        )
    return ChoiceItem(id=str(raw))


def normalize_selection(raw_answer: dict[str, Any]) -> dict[str, Any] | None:
    """Build the tagged selection for a raw answer dict.

    Returns None for answers that carry no choice data.
    """
    choices = raw_answer.get("choices")
    if isinstance(choices, dict):
        ids = choices.get("ids") or []
        labels = choices.get("labels") or []
        refs = choices.get("refs") or []
        items = []
        # Zip by the longest list; "other" answers may add a label without an id
        for index in range(max(len(ids), len(labels))):
            items.append(
                {
                    "id": ids[index] if index < len(ids) else None,
                    "label": labels[index] if index < len(labels) else None,
                    "ref": refs[index] if index < len(refs) else None,
                }
            )
        if choices.get("other"):
            items.append({"id": None, "label": choices["other"], "ref": None})
        return {"kind": "multi", "items": items}

    if isinstance(choices, list):
        return {
            "kind": "multi",
            "items": [_choice_item(item).model_dump() for item in choices],
        }

    choice = raw_answer.get("choice")
    if choice is not None:
        return {"kind": "single", "item": _choice_item(choice).model_dump()}

    return None


class AnswerField(BaseModel):
    """Reference from an answer back to its form field."""

    id: str
    type: str | None = None
    ref: str | None = None


class WebhookAnswer(BaseModel):
    """One answer in a form response."""

    model_config = ConfigDict(extra="allow")

    type: str
    field: AnswerField
    text: str | None = None
    email: str | None = None
    phone_number: str | None = None
    number: int | float | None = None
    date: str | None = None
    boolean: bool | None = None
    url: str | None = None
    file_url: str | None = None
    choice: dict[str, Any] | None = None
    choices: dict[str, Any] | list[Any] | None = None
    selection: Selection | None = None

    @model_validator(mode="before")
    @classmethod
    def attach_selection(cls, data: Any) -> Any:
        if isinstance(data, dict) and "selection" not in data:
            data = {**data, "selection": normalize_selection(data)}
        return data

    def wire_payload(self) -> dict[str, Any]:
        """Return the answer as delivered, without the derived selection."""
        return self.model_dump(exclude={"selection"}, exclude_none=True)


class DefinitionField(BaseModel):
    """Field as described in the response's embedded form definition."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str | None = None
    type: str | None = None
    ref: str | None = None
    allow_multiple_selections: bool | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    choices: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def allows_multiple(self) -> bool:
        """Whether the definition marks this field as multi-select."""
        return bool(
            self.allow_multiple_selections
            or self.properties.get("allow_multiple_selections")
        )


class FormDefinition(BaseModel):
    """Embedded form definition."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    title: str | None = None
    fields: list[DefinitionField] = Field(default_factory=list)


class FormResponse(BaseModel):
    """The ``form_response`` body of a webhook delivery."""

    model_config = ConfigDict(extra="allow")

    form_id: str | None = None
    token: str | None = None
    landed_at: datetime | None = None
    submitted_at: datetime | None = None
    answers: list[WebhookAnswer] = Field(default_factory=list)
    definition: FormDefinition = Field(default_factory=FormDefinition)

    def field_definitions(self) -> dict[str, DefinitionField]:
        """Map field id to its definition entry."""
        return {field.id: field for field in self.definition.fields}


class TypeformWebhook(BaseModel):
    """Webhook envelope."""

    model_config = ConfigDict(extra="allow")

    event_id: str | None = None
    event_type: str | None = None
    form_response: FormResponse | None = None
