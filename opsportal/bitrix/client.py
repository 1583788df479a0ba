"""
Bitrix client module
Bitrix24 REST client for pulling deals into the portal
"""
from typing import Optional, Dict, Any, List
import httpx
from opsportal.core import config
from opsportal.core.exceptions import BitrixException, BitrixRateLimitError
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)

# Bitrix returns this error code (usually with HTTP 503) when the
# per-webhook request budget is exhausted
QUERY_LIMIT_EXCEEDED = "QUERY_LIMIT_EXCEEDED"

DEAL_SELECT_FIELDS = [
    "ID", "TITLE", "OPPORTUNITY", "CURRENCY_ID", "DATE_CREATE", "STAGE_ID",
    "STAGE_SEMANTIC_ID", "LEAD_ID", "CONTACT_ID", "COMPANY_ID", "ASSIGNED_BY_ID",
    "CREATED_BY_ID", "BEGINDATE", "CLOSEDATE", "DATE_MODIFY", "CLOSED", "IS_NEW",
    "COMMENTS", "ADDITIONAL_INFO", "CATEGORY_ID", "SOURCE_ID",
    "UF_CRM_1681747087033",  # Full address
    "UF_CRM_1681645659170",  # Customer name
    "UF_CRM_1681974166046",  # Mobile number
    "UF_CRM_1681649038953",  # Order number
    "UF_CRM_1681648179537",  # Amount and currency, "510|INR"
    "UF_CRM_1681749732453",  # Package and partner, "<package> By : <partner>"
    "UF_CRM_1681648036958",  # Service date and time
    "UF_CRM_1681647842342",  # Order time slot
    "UF_CRM_1681648200083",  # Commission (%)
    "UF_CRM_1681648284105",  # Advance amount
    "UF_CRM_1723904458952",  # Taxes and fee
    "UF_CRM_1681747291577",  # Service slot time
]


class BitrixClient:
    """Bitrix24 REST client using an Incoming Webhook.

    Requires BITRIX_WEBHOOK_URL like:
    https://<account>.bitrix24.com/rest/<user_id>/<webhook_token>/
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: float = config.BITRIX_TIMEOUT_SECONDS,
        verify_tls: bool = config.BITRIX_VERIFY_TLS,
        enabled: bool = config.BITRIX_ENABLED,
        deal_stages: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url if base_url is not None else config.BITRIX_WEBHOOK_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.verify_tls = verify_tls
        self.enabled = enabled
        self.deal_stages = deal_stages if deal_stages is not None else list(config.BITRIX_DEAL_STAGES)
        self._transport = transport

    def is_configured(self) -> bool:
        return self.enabled and bool(self.base_url)

    def _build_deal_filter(self) -> Dict[str, Any]:
        if not self.deal_stages:
            return {}
        if len(self.deal_stages) == 1:
            return {"STAGE_ID": self.deal_stages[0]}
        deal_filter: Dict[str, Any] = {"LOGIC": "OR"}
        for index, stage in enumerate(self.deal_stages):
            deal_filter[str(index)] = {"STAGE_ID": stage}
        return deal_filter

    async def _post(self, method: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured():
            raise BitrixException("Bitrix24 is not configured", {"method": method})

        url = f"{self.base_url}/{method}.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                verify=self.verify_tls,
                transport=self._transport
            ) as client:
                resp = await client.post(url, json=data)
        except httpx.TimeoutException as exc:
            logger.warning(f"Bitrix request timed out ({method}): {exc}")
            raise BitrixException(f"Bitrix24 request timed out after {self.timeout_seconds}s", {"method": method})
        except httpx.HTTPError as exc:
            logger.warning(f"Bitrix request failed ({method}): {exc}")
            raise BitrixException(f"Bitrix24 request failed: {exc}", {"method": method})

        error_body = resp.text[:200] if resp.status_code != 200 else ""
        if resp.status_code == 429 or QUERY_LIMIT_EXCEEDED in error_body:
            logger.warning(f"Bitrix rate limit hit for {method}: Status {resp.status_code}")
            raise BitrixRateLimitError(details={"method": method, "status_code": resp.status_code})

        if resp.status_code == 401:
            logger.error(
                f"Bitrix authentication failed for {method}: "
                f"Status {resp.status_code}, Response: {error_body}"
            )
        if resp.status_code != 200:
            logger.error(f"Bitrix HTTP error for {method}: {resp.status_code}, Response: {error_body}")
            raise BitrixException(
                f"Bitrix24 API error: {resp.status_code}",
                {"method": method, "status_code": resp.status_code, "error_body": error_body}
            )

        try:
            payload = resp.json()
        except ValueError:
            raise BitrixException("Bitrix24 returned a non-JSON response", {"method": method})

        if isinstance(payload, dict) and payload.get("error"):
            if payload.get("error") == QUERY_LIMIT_EXCEEDED:
                raise BitrixRateLimitError(details={"method": method})
            raise BitrixException(
                f"Bitrix24 error: {payload.get('error')}",
                {"method": method, "error_description": payload.get("error_description", "")}
            )
        return payload

    async def fetch_deals(self, start: int = 0, limit: int = 10) -> Dict[str, Any]:
        """Fetch one page of deals, newest first.

        Returns {"result": [...], "total": int}. Raises BitrixRateLimitError when
        Bitrix throttles the webhook and BitrixException for any other failure.
        """
        payload = {
            "filter": self._build_deal_filter(),
            "order": {"DATE_CREATE": "DESC"},
            "select": DEAL_SELECT_FIELDS,
            "start": start,
        }
        logger.debug(f"Fetching {limit} deals starting from {start}")
        resp = await self._post("crm.deal.list", payload)

        # crm.deal.list pages are fixed at 50 server side; trim to the requested size
        deals = (resp.get("result") or [])[:limit]
        return {"result": deals, "total": int(resp.get("total") or len(deals))}
