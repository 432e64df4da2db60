"""Pydantic schemas for request/response validation."""

from app.schemas.application import (
    ApplicationDetail,
    ApplicationRead,
    FieldNode,
    FieldResponseRead,
    ParticipantRead,
    ReprocessRequest,
    ReprocessResult,
    UnprocessedLookupResult,
)
from app.schemas.form import (
    ChoiceVersionRead,
    FieldVersionRead,
    FieldVersionWithChoices,
    FormRead,
    FormSyncResult,
    ProviderChoice,
    ProviderField,
    ProviderForm,
)
from app.schemas.scoring import ScoreSummaryRead, ScoringRuleRead, ScoringRuleUpsert
from app.schemas.webhook import (
    FormResponse,
    MultiChoice,
    SingleChoice,
    TypeformWebhook,
    WebhookAnswer,
)

__all__ = [
    "ApplicationDetail",
    "ApplicationRead",
    "FieldNode",
    "FieldResponseRead",
    "ParticipantRead",
    "ReprocessRequest",
    "ReprocessResult",
    "UnprocessedLookupResult",
    "ChoiceVersionRead",
    "FieldVersionRead",
    "FieldVersionWithChoices",
    "FormRead",
    "FormSyncResult",
    "ProviderChoice",
    "ProviderField",
    "ProviderForm",
    "ScoreSummaryRead",
    "ScoringRuleRead",
    "ScoringRuleUpsert",
    "FormResponse",
    "MultiChoice",
    "SingleChoice",
    "TypeformWebhook",
    "WebhookAnswer",
]
