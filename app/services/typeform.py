"""Form provider abstraction and Typeform API client."""

import logging
from abc import ABC, abstractmethod

import httpx

from app.core.config import settings
from app.schemas.form import ProviderForm

logger = logging.getLogger(__name__)


class FormProviderError(Exception):
    """Raised when the form provider cannot return a form definition."""

    def __init__(self, form_id: str, message: str, status_code: int | None = None):
        self.form_id = form_id
        self.status_code = status_code
        super().__init__(f"Form provider error for {form_id}: {message}")


class FormProvider(ABC):
    """Abstract base class for form definition providers."""

    @abstractmethod
    async def get_form_details(self, form_id: str) -> ProviderForm:
        """Return the current definition of a form.

        Raises FormProviderError on failure.
        """
        pass


class TypeformClient(FormProvider):
    """Typeform Create API client (``GET /forms/{form_id}``).

    Authentication: personal access token via Bearer header.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.typeform_api_key
        self.base_url = (base_url or settings.typeform_api_base_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def get_form_details(self, form_id: str) -> ProviderForm:
        if not self.api_key:
            raise FormProviderError(form_id, "TYPEFORM_API_KEY is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/forms/{form_id}",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as exc:
            raise FormProviderError(form_id, f"Request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FormProviderError(form_id, f"HTTP error: {exc}") from exc

        if response.status_code != 200:
            detail = response.text[:500] if response.text else f"status {response.status_code}"
            raise FormProviderError(
                form_id,
                f"API returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        form = ProviderForm.model_validate(response.json())
        logger.info(f"Fetched form {form_id} with {len(form.fields)} top-level fields")
        return form
