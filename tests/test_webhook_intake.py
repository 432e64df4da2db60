"""Tests for webhook intake: validation, dedup, locking, ingestion and scoring."""

import asyncio
import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.security import compute_webhook_signature
from app.models.application import Application, ApplicationFieldResponse
from app.schemas.webhook import TypeformWebhook
from app.services.answer_ingestion import AnswerIngestionService
from app.services.intake import (
    IntakeOutcome,
    WebhookIntakeService,
    WebhookValidationError,
    validate_webhook,
)
from app.services.processing_lock import ProcessingLockService
from app.services.scoring import ScoringService
from tests.conftest import build_webhook

WEBHOOK_URL = "/api/v1/webhooks/typeform"


def _store_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("server closed the connection"))


async def _count(session: AsyncSession, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


class TestValidateWebhook:
    """Envelope checks."""

    def test_valid(self) -> None:
        webhook = TypeformWebhook.model_validate(build_webhook())

        assert validate_webhook(webhook).token == "abc123"

    def test_wrong_event_type(self) -> None:
        webhook = TypeformWebhook.model_validate(build_webhook(event_type="form_updated"))

        with pytest.raises(WebhookValidationError, match="Unsupported event type"):
            validate_webhook(webhook)

    def test_missing_token(self) -> None:
        payload = build_webhook()
        del payload["form_response"]["token"]

        with pytest.raises(WebhookValidationError, match="missing required fields"):
            validate_webhook(TypeformWebhook.model_validate(payload))

    def test_missing_form_response(self) -> None:
        webhook = TypeformWebhook.model_validate({"event_type": "form_response"})

        with pytest.raises(WebhookValidationError):
            validate_webhook(webhook)


class TestIntakeOutcomeBody:
    """Response body rendering."""

    def test_success_includes_score(self) -> None:
        outcome = IntakeOutcome(
            http_status=200,
            status="success",
            tracking_id="t-1",
            message="Webhook processed successfully",
            application_id="app-1",
            score=-9,
        )

        assert outcome.body() == {
            "status": "success",
            "tracking_id": "t-1",
            "message": "Webhook processed successfully",
            "application_id": "app-1",
            "score": -9,
        }

    def test_error_omits_empty_fields(self) -> None:
        outcome = IntakeOutcome(
            http_status=500, status="error", tracking_id="t-2", message="Internal server error"
        )

        assert outcome.body() == {
            "status": "error",
            "tracking_id": "t-2",
            "message": "Internal server error",
        }


class TestWebhookEndpoint:
    """POST /webhooks/typeform."""

    @pytest.mark.asyncio
    async def test_success(self, client, async_session: AsyncSession, seeded_rules) -> None:
        response = await client.post(WEBHOOK_URL, json=build_webhook())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["score"] == -9
        assert data["tracking_id"]
        assert data["application_id"]
        assert await _count(async_session, ApplicationFieldResponse) == 8

    @pytest.mark.asyncio
    async def test_lock_released_after_success(
        self, client, async_session: AsyncSession, synced_form
    ) -> None:
        await client.post(WEBHOOK_URL, json=build_webhook())

        assert await ProcessingLockService(async_session).get_lock("abc123") is None

    @pytest.mark.asyncio
    async def test_participant_created_from_answers(
        self, client, async_session: AsyncSession, synced_form
    ) -> None:
        data = (await client.post(WEBHOOK_URL, json=build_webhook())).json()

        detail = (await client.get(f"/api/v1/applications/{data['application_id']}")).json()

        participant = detail["participant"]
        assert participant["email"] == "ada@example.com"
        assert participant["first_name"] == "Ada"
        assert participant["last_name"] == "Lovelace"

    @pytest.mark.asyncio
    async def test_wrong_event_type(self, client, synced_form) -> None:
        response = await client.post(WEBHOOK_URL, json=build_webhook(event_type="form_updated"))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_token(self, client, synced_form) -> None:
        payload = build_webhook()
        payload["form_response"]["token"] = None

        response = await client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, client) -> None:
        response = await client.post(
            WEBHOOK_URL,
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_form_is_generic_500(self, client, async_session: AsyncSession) -> None:
        response = await client.post(WEBHOOK_URL, json=build_webhook(form_id="NeverSynced"))

        assert response.status_code == 500
        data = response.json()
        assert data["status"] == "error"
        assert data["message"] == "Internal server error"
        assert data["tracking_id"]
        assert await _count(async_session, Application) == 0

    @pytest.mark.asyncio
    async def test_duplicate_after_processing_is_ignored(
        self, client, async_session: AsyncSession, synced_form
    ) -> None:
        first = await client.post(WEBHOOK_URL, json=build_webhook())
        second = await client.post(WEBHOOK_URL, json=build_webhook())

        assert first.status_code == 200
        assert second.status_code == 202
        data = second.json()
        assert data["status"] == "ignored"
        assert data["application_id"] == first.json()["application_id"]
        assert await _count(async_session, Application) == 1
        assert await _count(async_session, ApplicationFieldResponse) == 8

    @pytest.mark.asyncio
    async def test_held_lock_is_ignored(
        self, client, async_session: AsyncSession, synced_form
    ) -> None:
        await ProcessingLockService(async_session).acquire("abc123", "other-worker")

        response = await client.post(WEBHOOK_URL, json=build_webhook())

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "ignored"
        assert data["token"] == "abc123"
        # Application exists but the holder is responsible for processing it
        assert await _count(async_session, Application) == 1
        assert await _count(async_session, ApplicationFieldResponse) == 0


class TestWebhookSignature:
    """Signature verification when a secret is configured."""

    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch: pytest.MonkeyPatch) -> str:
        monkeypatch.setattr(settings, "typeform_webhook_secret", "s3cret")
        return "s3cret"

    @pytest.mark.asyncio
    async def test_valid_signature(self, client, synced_form, webhook_secret: str) -> None:
        body = json.dumps(build_webhook()).encode("utf-8")

        response = await client.post(
            WEBHOOK_URL,
            content=body,
            headers={
                "Content-Type": "application/json",
                "Typeform-Signature": compute_webhook_signature(body, webhook_secret),
            },
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client, synced_form) -> None:
        body = json.dumps(build_webhook()).encode("utf-8")

        response = await client.post(
            WEBHOOK_URL,
            content=body,
            headers={"Content-Type": "application/json", "Typeform-Signature": "sha256=bogus"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_signature(self, client, synced_form) -> None:
        response = await client.post(WEBHOOK_URL, json=build_webhook())

        assert response.status_code == 401


class TestConcurrentDeliveries:
    """Two deliveries of the same token."""

    @pytest.mark.asyncio
    async def test_second_delivery_while_first_in_flight(
        self,
        async_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        webhook = TypeformWebhook.model_validate(build_webhook("abc123"))
        service_a = WebhookIntakeService(async_session)
        original = service_a.ingestion.process_answers
        outcomes: dict[str, IntakeOutcome] = {}

        async def deliver_b_then_ingest(*args, **kwargs):
            # B arrives after A created the application and took the lock
            async with session_factory() as other:
                outcomes["b"] = await WebhookIntakeService(other).handle_delivery(webhook)
            return await original(*args, **kwargs)

        monkeypatch.setattr(service_a.ingestion, "process_answers", deliver_b_then_ingest)

        outcomes["a"] = await service_a.handle_delivery(webhook)

        assert outcomes["a"].http_status == 200
        assert outcomes["a"].status == "success"
        assert outcomes["b"].http_status == 202
        assert outcomes["b"].status == "ignored"
        assert await _count(async_session, Application) == 1
        assert await _count(async_session, ApplicationFieldResponse) == 8
        assert await ProcessingLockService(async_session).get_lock("abc123") is None


    @pytest.mark.asyncio
    async def test_racing_creates_resolve_to_one_application(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Both deliveries miss the dedup check; the unique token decides."""
        webhook = TypeformWebhook.model_validate(build_webhook("abc123"))
        first_done = asyncio.Event()

        async with session_factory() as session_a, session_factory() as session_b:
            service_a = WebhookIntakeService(session_a)
            service_b = WebhookIntakeService(session_b)
            real_lookup = service_b.applications.get_by_token
            lookups = []

            async def lookup_before_first_insert(token):
                lookups.append(token)
                if len(lookups) == 1:
                    # B's dedup read happened before A inserted its row
                    await first_done.wait()
                    return None
                return await real_lookup(token)

            monkeypatch.setattr(
                service_b.applications, "get_by_token", lookup_before_first_insert
            )

            async def deliver_first():
                try:
                    return await service_a.handle_delivery(webhook)
                finally:
                    first_done.set()

            first, second = await asyncio.gather(
                deliver_first(), service_b.handle_delivery(webhook)
            )

        assert first.http_status == 200
        assert second.http_status == 202
        assert second.status == "ignored"
        assert second.application_id == first.application_id
        # Dedup read, then the lookup after the unique constraint fired
        assert lookups == ["abc123", "abc123"]
        assert await _count(async_session, Application) == 1
        assert await _count(async_session, ApplicationFieldResponse) == 8


class TestPipelineFailures:
    """Failures after the lock is taken."""

    @pytest.mark.asyncio
    async def test_scoring_failure_releases_lock(
        self,
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        calls = []

        async def failing_score(self, application_id):
            calls.append(application_id)
            raise _store_error()

        monkeypatch.setattr(ScoringService, "calculate_score", failing_score)
        webhook = TypeformWebhook.model_validate(build_webhook())

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        assert outcome.http_status == 500
        assert outcome.message == "Internal server error"
        # One retry after the first failure
        assert len(calls) == 2
        assert await ProcessingLockService(async_session).get_lock("abc123") is None

    @pytest.mark.asyncio
    async def test_non_transient_failure_is_not_retried(
        self,
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        calls = []

        async def buggy_score(self, application_id):
            calls.append(application_id)
            raise RuntimeError("scoring exploded")

        monkeypatch.setattr(ScoringService, "calculate_score", buggy_score)
        webhook = TypeformWebhook.model_validate(build_webhook())

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        assert outcome.http_status == 500
        assert len(calls) == 1
        assert await ProcessingLockService(async_session).get_lock("abc123") is None

    @pytest.mark.asyncio
    async def test_ingestion_retried_once_after_store_error(
        self,
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = AnswerIngestionService.process_answers
        calls = []

        async def flaky_ingest(self, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise _store_error()
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(AnswerIngestionService, "process_answers", flaky_ingest)
        webhook = TypeformWebhook.model_validate(build_webhook())

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        assert outcome.http_status == 200
        assert outcome.status == "success"
        assert len(calls) == 2
        assert await _count(async_session, ApplicationFieldResponse) == 8
        assert await ProcessingLockService(async_session).get_lock("abc123") is None

    @pytest.mark.asyncio
    async def test_ingestion_failing_twice_is_reported(
        self,
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        calls = []

        async def failing_ingest(self, *args, **kwargs):
            calls.append(1)
            raise _store_error()

        monkeypatch.setattr(AnswerIngestionService, "process_answers", failing_ingest)
        webhook = TypeformWebhook.model_validate(build_webhook())

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        assert outcome.http_status == 500
        assert len(calls) == 2
        assert await _count(async_session, ApplicationFieldResponse) == 0

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_completes(
        self,
        async_session: AsyncSession,
        synced_form,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = ScoringService.calculate_score

        async def failing_score(self, application_id):
            raise RuntimeError("scoring exploded")

        webhook = TypeformWebhook.model_validate(build_webhook())
        monkeypatch.setattr(ScoringService, "calculate_score", failing_score)
        await WebhookIntakeService(async_session).handle_delivery(webhook)
        monkeypatch.setattr(ScoringService, "calculate_score", original)

        outcome = await WebhookIntakeService(async_session).handle_delivery(webhook)

        # Rows already exist, so ingestion is skipped and only scoring runs
        assert outcome.http_status == 200
        assert outcome.score == 0
        assert await _count(async_session, ApplicationFieldResponse) == 8
