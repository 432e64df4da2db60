"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
from sqlalchemy import StaticPool, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.deps import get_crm_client, get_form_provider
from app.core.config import settings
from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.models.application import Application
from app.models.form import Form
from app.rules.loader import RulesetLoader
from app.schemas.form import ProviderForm
from app.schemas.webhook import TypeformWebhook
from app.services.applications import ApplicationService
from app.services.crm import CRMClient, NullCRMClient
from app.services.form_sync import FormSyncService
from app.services.scoring_rules import ScoringRuleService
from app.services.typeform import FormProvider, FormProviderError


# Use SQLite for testing (simpler than spinning up postgres)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FORM_ID = "ScreeningForm1"


class FakeFormProvider(FormProvider):
    """In-memory form provider keyed by form id."""

    def __init__(self, forms: dict[str, dict[str, Any]] | None = None):
        self.forms = dict(forms or {})
        self.calls: list[str] = []

    def set_form(self, definition: dict[str, Any]) -> None:
        self.forms[definition["id"]] = definition

    async def get_form_details(self, form_id: str) -> ProviderForm:
        self.calls.append(form_id)
        if form_id not in self.forms:
            raise FormProviderError(form_id, "API returned 404", status_code=404)
        return ProviderForm.model_validate(self.forms[form_id])


class RecordingCRMClient(CRMClient):
    """CRM fake that records every call."""

    def __init__(
        self,
        contact_id: str | None = "contact-1",
        deal_id: str | None = "deal-1",
        fail_with: Exception | None = None,
    ):
        self.contact_id = contact_id
        self.deal_id = deal_id
        self.fail_with = fail_with
        self.calls: list[tuple[str, Any]] = []

    async def find_contact_by_email(self, email: str) -> str | None:
        self.calls.append(("find_contact_by_email", email))
        if self.fail_with is not None:
            raise self.fail_with
        return self.contact_id

    async def find_most_recent_deal_for_contact(self, contact_id: str) -> str | None:
        self.calls.append(("find_most_recent_deal_for_contact", contact_id))
        return self.deal_id

    async def update_deal_properties(self, deal_id: str, properties: dict[str, Any]) -> None:
        self.calls.append(("update_deal_properties", (deal_id, properties)))

    async def update_deal_stage(self, deal_id: str, pipeline: str, stage: str) -> None:
        self.calls.append(("update_deal_stage", (deal_id, pipeline, stage)))


def screening_form_definition(
    steps: int = 5,
    support_title: str = "Tell us about your support network",
    include_support_group: bool = True,
) -> dict[str, Any]:
    """Provider definition of the screening form used across tests."""
    fields: list[dict[str, Any]] = [
        {
            "id": "full_name",
            "title": "What is your full name?",
            "type": "short_text",
            "ref": "full_name",
            "properties": {},
        },
        {
            "id": "email",
            "title": "Your email address",
            "type": "email",
            "ref": "email",
            "properties": {},
        },
        {
            "id": "prior_treatment",
            "title": "Have you received treatment before?",
            "type": "yes_no",
            "ref": "prior_treatment",
            "properties": {},
        },
        {
            "id": "current_medications",
            "title": "Which medications do you take?",
            "type": "multiple_choice",
            "ref": "current_medications",
            "properties": {
                "allow_multiple_selection": True,
                "choices": [
                    {"id": "med_ssri", "label": "SSRIs", "ref": "ssri"},
                    {"id": "med_lithium", "label": "Lithium", "ref": "lithium"},
                    {"id": "med_none", "label": "None", "ref": "none"},
                ],
            },
        },
        {
            "id": "wellbeing_scale",
            "title": "How are you feeling?",
            "type": "opinion_scale",
            "ref": "wellbeing_scale",
            "properties": {"steps": steps, "start_at_one": True},
        },
    ]
    if include_support_group:
        fields.append(
            {
                "id": "support_group",
                "title": "Support",
                "type": "group",
                "ref": "support_group",
                "properties": {
                    "fields": [
                        {
                            "id": "support_network",
                            "title": support_title,
                            "type": "long_text",
                            "ref": "support_network",
                            "properties": {},
                        },
                        {
                            "id": "emergency_contact_name",
                            "title": "Emergency contact name",
                            "type": "short_text",
                            "ref": "emergency_contact_name",
                            "properties": {},
                        },
                    ]
                },
            }
        )
    return {
        "id": FORM_ID,
        "title": "Applicant Screening",
        "workspace": {"href": "https://api.typeform.com/workspaces/ws123"},
        "fields": fields,
    }


def build_answers(
    prior_treatment: bool = True,
    medications: tuple[tuple[str, str], ...] = (("med_ssri", "SSRIs"), ("med_lithium", "Lithium")),
    wellbeing: int = 2,
) -> list[dict[str, Any]]:
    """Answers to the screening form as delivered by the webhook."""
    return [
        {
            "type": "text",
            "text": "Ada King Lovelace",
            "field": {"id": "full_name", "type": "short_text", "ref": "full_name"},
        },
        {
            "type": "email",
            "email": "ada@example.com",
            "field": {"id": "email", "type": "email", "ref": "email"},
        },
        {
            "type": "boolean",
            "boolean": prior_treatment,
            "field": {"id": "prior_treatment", "type": "yes_no", "ref": "prior_treatment"},
        },
        {
            "type": "choices",
            "choices": {
                "ids": [choice_id for choice_id, _ in medications],
                "labels": [label for _, label in medications],
            },
            "field": {
                "id": "current_medications",
                "type": "multiple_choice",
                "ref": "current_medications",
            },
        },
        {
            "type": "number",
            "number": wellbeing,
            "field": {"id": "wellbeing_scale", "type": "opinion_scale", "ref": "wellbeing_scale"},
        },
        {
            "type": "text",
            "text": "Family nearby",
            "field": {"id": "support_network", "type": "long_text", "ref": "support_network"},
        },
        {
            "type": "text",
            "text": "Charles Babbage",
            "field": {
                "id": "emergency_contact_name",
                "type": "short_text",
                "ref": "emergency_contact_name",
            },
        },
    ]


def build_webhook(
    token: str = "abc123",
    answers: list[dict[str, Any]] | None = None,
    form_id: str = FORM_ID,
    event_type: str = "form_response",
) -> dict[str, Any]:
    """A complete webhook delivery body."""
    definition = screening_form_definition()

    def flatten(fields: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # The embedded definition lists answerable fields without groups
        flat = []
        for f in fields:
            if f["type"] == "group":
                flat.extend(flatten(f["properties"]["fields"]))
            else:
                flat.append({"id": f["id"], "title": f["title"], "type": f["type"], "ref": f["ref"]})
        return flat

    return {
        "event_id": f"evt-{token}",
        "event_type": event_type,
        "form_response": {
            "form_id": form_id,
            "token": token,
            "landed_at": "2025-01-15T09:55:00Z",
            "submitted_at": "2025-01-15T10:00:00Z",
            "definition": {
                "id": form_id,
                "title": definition["title"],
                "fields": flatten(definition["fields"]),
            },
            "answers": answers if answers is not None else build_answers(),
        },
    }


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def form_provider() -> FakeFormProvider:
    """Provider serving the screening form."""
    return FakeFormProvider({FORM_ID: screening_form_definition()})


@pytest.fixture
def crm_client() -> CRMClient:
    """CRM client used by API requests; disabled unless a test swaps it."""
    return NullCRMClient()


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch):
    """Pin settings that change endpoint behaviour."""
    monkeypatch.setattr(settings, "typeform_webhook_secret", None)
    monkeypatch.setattr(settings, "cron_secure_key", "cron-test-key")
    monkeypatch.setattr(settings, "retry_delay_ms", 0)
    monkeypatch.setattr(settings, "hubspot_access_token", None)
    return settings


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    form_provider: FakeFormProvider,
    crm_client: CRMClient,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async API client with overridden dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_form_provider] = lambda: form_provider
    app.dependency_overrides[get_crm_client] = lambda: crm_client

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers() -> dict[str, str]:
    """Authorization headers for scheduled-job endpoints."""
    return {"Authorization": "Bearer cron-test-key"}


@pytest.fixture
async def synced_form(async_session: AsyncSession, form_provider: FakeFormProvider):
    """Screening form synced into the version store."""
    result = await FormSyncService(async_session, form_provider).sync_form(FORM_ID)
    return result


@pytest.fixture
async def seeded_rules(async_session: AsyncSession, synced_form):
    """Example seed rules bound to the synced screening form."""
    seed = RulesetLoader().load("example-screening-v1.yaml")
    return await ScoringRuleService(async_session).import_seed(seed)


async def create_application(
    session: AsyncSession,
    token: str = "abc123",
    answers: list[dict[str, Any]] | None = None,
) -> Application:
    """Create the application for a webhook delivery without running the pipeline."""
    webhook = TypeformWebhook.model_validate(build_webhook(token, answers))
    result = await session.execute(select(Form).where(Form.form_id == FORM_ID))
    application, _ = await ApplicationService(session).create_application(
        webhook.form_response, result.scalar_one()
    )
    return application
