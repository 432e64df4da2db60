"""Tests for the Typeform API client."""

import httpx
import pytest

from app.services.typeform import FormProviderError, TypeformClient
from tests.conftest import FORM_ID, screening_form_definition


def _client(handler, api_key: str | None = "tfp_test") -> TypeformClient:
    return TypeformClient(
        api_key=api_key,
        base_url="https://typeform.test",
        transport=httpx.MockTransport(handler),
    )


class TestTypeformClient:
    """GET /forms/{form_id}."""

    @pytest.mark.asyncio
    async def test_fetches_form(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=screening_form_definition())

        form = await _client(handler).get_form_details(FORM_ID)

        assert form.id == FORM_ID
        assert form.workspace.workspace_id == "ws123"
        assert [f.id for f in form.fields[-1].children] == [
            "support_network",
            "emergency_contact_name",
        ]
        assert seen[0].url == f"https://typeform.test/forms/{FORM_ID}"
        assert seen[0].headers["Authorization"] == "Bearer tfp_test"

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"code": "FORM_NOT_FOUND"})

        with pytest.raises(FormProviderError) as exc_info:
            await _client(handler).get_form_details("Missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.form_id == "Missing"

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FormProviderError) as exc_info:
            await _client(handler).get_form_details(FORM_ID)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_missing_api_key(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(FormProviderError, match="TYPEFORM_API_KEY"):
            await _client(handler, api_key="").get_form_details(FORM_ID)
