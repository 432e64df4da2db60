"""CRM collaborator: HubSpot deal sync for scored applications.

The scoring pipeline only depends on the ``CRMClient`` contract. Failures
here never change the outcome of scoring; callers log and continue.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from app.core.config import settings
from app.models.application import Application, ApplicationStatus
from app.models.participant import Participant

logger = logging.getLogger(__name__)


# Deal property names on the HubSpot side
DEAL_PROP_APPLICATION_STATUS = "application_status"
DEAL_PROP_APPLICATION_SCORE = "application_score"
DEAL_PROP_SCREENER_NOTES = "screener_notes"

# Internal status -> pipeline stage id
STATUS_TO_STAGE: dict[ApplicationStatus, str] = {
    ApplicationStatus.PENDING: "1142575458",
    ApplicationStatus.NEW: "1142575458",
    ApplicationStatus.SCREENING_SCHEDULED: "appointmentscheduled",
    ApplicationStatus.SCREENING_NO_SHOW: "appointmentscheduled",
    ApplicationStatus.INVITED_TO_RESCHEDULE: "appointmentscheduled",
    ApplicationStatus.SECONDARY_SCREENING: "appointmentscheduled",
    ApplicationStatus.SCREENING_IN_PROCESS: "appointmentscheduled",
    ApplicationStatus.MEDICAL_REVIEW_REQUIRED: "appointmentscheduled",
    ApplicationStatus.CONDITIONALLY_APPROVED: "qualifiedtobuy",
    ApplicationStatus.CLOSED: "121534028",
}

# Internal status -> application_status dropdown label
STATUS_LABELS: dict[ApplicationStatus, str] = {
    ApplicationStatus.PENDING: "Pending",
    ApplicationStatus.NEW: "Pending",
    ApplicationStatus.SCREENING_SCHEDULED: "Screening Scheduled",
    ApplicationStatus.SCREENING_NO_SHOW: "Screening No Show",
    ApplicationStatus.INVITED_TO_RESCHEDULE: "Invited to Reschedule",
    ApplicationStatus.SECONDARY_SCREENING: "Secondary Screening",
    ApplicationStatus.MEDICAL_REVIEW_REQUIRED: "Medical Review Required",
    ApplicationStatus.SCREENING_IN_PROCESS: "Screening",
    ApplicationStatus.CONDITIONALLY_APPROVED: "Conditionally Approved",
    ApplicationStatus.CLOSED: "Screening Completed",
}


def score_summary(red: int, yellow: int, green: int) -> str:
    """Format aggregate counts for the deal's score property."""
    return f"Red: {red} / Yellow: {yellow} / Green: {green}"


def stage_for_status(status: ApplicationStatus | str) -> str | None:
    """Return the pipeline stage mapped to an application status."""
    try:
        return STATUS_TO_STAGE.get(ApplicationStatus(status))
    except ValueError:
        return None


def label_for_status(status: ApplicationStatus | str) -> str | None:
    """Return the application_status dropdown label for a status."""
    try:
        return STATUS_LABELS.get(ApplicationStatus(status))
    except ValueError:
        return None


class CRMError(Exception):
    """Raised when a CRM API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_missing_scopes(self) -> bool:
        """Whether the token lacks the scopes for this call."""
        return self.status_code == 403


class CRMClient(ABC):
    """Abstract CRM operations used by the scoring tail."""

    @abstractmethod
    async def find_contact_by_email(self, email: str) -> str | None:
        """Return the CRM contact id for an email, if any."""
        pass

    @abstractmethod
    async def find_most_recent_deal_for_contact(self, contact_id: str) -> str | None:
        """Return the most recently modified deal id for a contact."""
        pass

    @abstractmethod
    async def update_deal_properties(self, deal_id: str, properties: dict[str, Any]) -> None:
        """Patch properties on a deal."""
        pass

    @abstractmethod
    async def update_deal_stage(self, deal_id: str, pipeline: str, stage: str) -> None:
        """Move a deal to a pipeline stage."""
        pass

    @property
    def enabled(self) -> bool:
        """Whether calls reach a real CRM."""
        return True


class NullCRMClient(CRMClient):
    """CRM client used when no CRM is configured."""

    async def find_contact_by_email(self, email: str) -> str | None:
        return None

    async def find_most_recent_deal_for_contact(self, contact_id: str) -> str | None:
        return None

    async def update_deal_properties(self, deal_id: str, properties: dict[str, Any]) -> None:
        return None

    async def update_deal_stage(self, deal_id: str, pipeline: str, stage: str) -> None:
        return None

    @property
    def enabled(self) -> bool:
        return False


class HubSpotClient(CRMClient):
    """HubSpot CRM v3 client.

    Authentication: private app access token via Bearer header.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.hubspot_api_base_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
        except httpx.HTTPError as exc:
            raise CRMError(f"HubSpot {method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise CRMError(
                f"HubSpot {method} {path} failed: {response.status_code} {response.text[:300]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()

    async def find_contact_by_email(self, email: str) -> str | None:
        data = await self._request(
            "POST",
            "/crm/v3/objects/contacts/search",
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
                ],
                "properties": ["email"],
                "limit": 1,
            },
        )
        results = data.get("results") or []
        return results[0]["id"] if results else None

    async def find_most_recent_deal_for_contact(self, contact_id: str) -> str | None:
        assoc = await self._request(
            "GET", f"/crm/v3/objects/contacts/{contact_id}/associations/deals"
        )
        deal_ids = [r["id"] for r in assoc.get("results") or []]
        if not deal_ids:
            return None

        batch = await self._request(
            "POST",
            "/crm/v3/objects/deals/batch/read",
            json={
                "properties": ["lastmodifieddate", "createdate"],
                "inputs": [{"id": deal_id} for deal_id in deal_ids],
            },
        )

        def modified_at(deal: dict[str, Any]) -> datetime:
            props = deal.get("properties") or {}
            raw = props.get("lastmodifieddate") or props.get("createdate")
            if not raw:
                return datetime.min
            try:
                return datetime.fromisoformat(raw.replace("Z", "+00:00")).replace(tzinfo=None)
            except ValueError:
                return datetime.min

        deals = sorted(batch.get("results") or [], key=modified_at, reverse=True)
        return deals[0]["id"] if deals else deal_ids[0]

    async def update_deal_properties(self, deal_id: str, properties: dict[str, Any]) -> None:
        await self._request(
            "PATCH", f"/crm/v3/objects/deals/{deal_id}", json={"properties": properties}
        )

    async def update_deal_stage(self, deal_id: str, pipeline: str, stage: str) -> None:
        await self._request(
            "PATCH",
            f"/crm/v3/objects/deals/{deal_id}",
            json={"properties": {"pipeline": pipeline, "dealstage": stage}},
        )


def get_crm_client() -> CRMClient:
    """Build the configured CRM client."""
    if settings.hubspot_access_token:
        return HubSpotClient(settings.hubspot_access_token)
    return NullCRMClient()


@dataclass
class CRMSyncResult:
    """Outcome of one application sync."""

    synced: bool
    deal_id: str | None = None
    reason: str | None = None


class CRMSyncService:
    """Pushes application status and score onto the participant's deal."""

    def __init__(self, client: CRMClient, pipeline_id: str | None = None):
        self.client = client
        self.pipeline_id = pipeline_id or settings.hubspot_pipeline_id

    async def sync_application(
        self,
        application: Application,
        participant: Participant | None,
    ) -> CRMSyncResult:
        """Sync one application to its CRM deal.

        Missing-scope (403) errors on property updates are skipped; other
        CRMErrors propagate to the caller.
        """
        if not self.client.enabled:
            return CRMSyncResult(synced=False, reason="crm_disabled")

        if not participant or not participant.email:
            logger.info(f"CRM sync skipped for {application.id}: no participant email")
            return CRMSyncResult(synced=False, reason="no_email")

        contact_id = await self.client.find_contact_by_email(participant.email)
        if not contact_id:
            logger.info(f"CRM sync skipped for {application.id}: no contact")
            return CRMSyncResult(synced=False, reason="no_contact")

        deal_id = await self.client.find_most_recent_deal_for_contact(contact_id)
        if not deal_id:
            logger.info(f"CRM sync skipped for {application.id}: no deal")
            return CRMSyncResult(synced=False, reason="no_deal")

        properties: dict[str, Any] = {
            DEAL_PROP_APPLICATION_SCORE: score_summary(
                application.red_count, application.yellow_count, application.green_count
            ),
        }
        status_label = label_for_status(application.status)
        if status_label:
            properties[DEAL_PROP_APPLICATION_STATUS] = status_label
        if application.screener_notes:
            properties[DEAL_PROP_SCREENER_NOTES] = application.screener_notes

        try:
            await self.client.update_deal_properties(deal_id, properties)
        except CRMError as exc:
            if not exc.is_missing_scopes:
                raise
            logger.warning(f"CRM property update skipped for deal {deal_id} (missing scopes)")

        stage = stage_for_status(application.status)
        if stage:
            try:
                await self.client.update_deal_stage(deal_id, self.pipeline_id, stage)
            except CRMError as exc:
                if not exc.is_missing_scopes:
                    raise
                logger.warning(f"CRM stage update skipped for deal {deal_id} (missing scopes)")

        logger.info(f"CRM sync complete: application={application.id[:8]} deal={deal_id}")
        return CRMSyncResult(synced=True, deal_id=deal_id)
