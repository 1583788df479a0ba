"""
Bitrix client tests
Request shape and error classification against a mocked HTTP transport
"""
import json
import httpx
import pytest
from opsportal.bitrix.client import BitrixClient, DEAL_SELECT_FIELDS
from opsportal.core.exceptions import BitrixException, BitrixRateLimitError
from tests.test_helpers import make_deals

WEBHOOK_URL = "https://example.bitrix24.com/rest/1/token/"


def make_client(handler, **kwargs) -> BitrixClient:
    kwargs.setdefault("deal_stages", ["C2:PREPAYMENT_INVOICE", "C2:EXECUTING"])
    return BitrixClient(
        base_url=WEBHOOK_URL,
        enabled=True,
        transport=httpx.MockTransport(handler),
        **kwargs
    )


@pytest.mark.unit
@pytest.mark.asyncio
class TestFetchDeals:

    async def test_request_shape(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": [], "total": 0})

        await make_client(handler).fetch_deals(start=20, limit=10)

        assert captured["url"] == "https://example.bitrix24.com/rest/1/token/crm.deal.list.json"
        body = captured["body"]
        assert body["order"] == {"DATE_CREATE": "DESC"}
        assert body["start"] == 20
        assert body["select"] == DEAL_SELECT_FIELDS
        assert body["filter"] == {
            "LOGIC": "OR",
            "0": {"STAGE_ID": "C2:PREPAYMENT_INVOICE"},
            "1": {"STAGE_ID": "C2:EXECUTING"}
        }

    async def test_single_stage_filter(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": [], "total": 0})

        await make_client(handler, deal_stages=["C2:EXECUTING"]).fetch_deals()

        assert captured["body"]["filter"] == {"STAGE_ID": "C2:EXECUTING"}

    async def test_result_is_trimmed_to_limit(self):
        deals = make_deals(50)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": deals, "total": 73, "next": 50})

        page = await make_client(handler).fetch_deals(start=0, limit=10)

        assert len(page["result"]) == 10
        assert page["result"][0]["ID"] == "1"
        assert page["total"] == 73


@pytest.mark.unit
@pytest.mark.asyncio
class TestErrorClassification:

    async def test_http_429_is_rate_limit(self):
        client = make_client(lambda request: httpx.Response(429, text="Too Many Requests"))

        with pytest.raises(BitrixRateLimitError):
            await client.fetch_deals()

    async def test_query_limit_exceeded_body_is_rate_limit(self):
        body = {"error": "QUERY_LIMIT_EXCEEDED", "error_description": "Too many requests"}
        client = make_client(lambda request: httpx.Response(503, json=body))

        with pytest.raises(BitrixRateLimitError):
            await client.fetch_deals()

    async def test_query_limit_exceeded_payload_with_200_is_rate_limit(self):
        client = make_client(lambda request: httpx.Response(200, json={"error": "QUERY_LIMIT_EXCEEDED"}))

        with pytest.raises(BitrixRateLimitError):
            await client.fetch_deals()

    async def test_server_error_carries_status_and_body(self):
        client = make_client(lambda request: httpx.Response(500, text="Internal error"))

        with pytest.raises(BitrixException) as exc_info:
            await client.fetch_deals()

        assert not isinstance(exc_info.value, BitrixRateLimitError)
        assert exc_info.value.details["status_code"] == 500
        assert exc_info.value.details["error_body"] == "Internal error"

    async def test_bitrix_error_payload(self):
        body = {"error": "ACCESS_DENIED", "error_description": "Access denied"}
        client = make_client(lambda request: httpx.Response(200, json=body))

        with pytest.raises(BitrixException) as exc_info:
            await client.fetch_deals()

        assert "ACCESS_DENIED" in exc_info.value.message

    async def test_non_json_response(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(BitrixException):
            await client.fetch_deals()

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(BitrixException):
            await make_client(handler).fetch_deals()

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(BitrixException) as exc_info:
            await make_client(handler).fetch_deals()

        assert "timed out" in exc_info.value.message

    async def test_not_configured(self):
        client = BitrixClient(base_url="", enabled=True)

        assert client.is_configured() is False
        with pytest.raises(BitrixException):
            await client.fetch_deals()

    async def test_disabled_client_is_not_configured(self):
        assert BitrixClient(base_url=WEBHOOK_URL, enabled=False).is_configured() is False

