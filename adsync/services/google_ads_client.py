"""Google Ads REST client for the sync workers.

WHAT:
    Issues authenticated, rate-limited GAQL queries against the Google Ads
    REST API and normalizes responses into `MetricsRow` and dimension
    records. Also enumerates the customer accounts a connection can reach.

WHY:
    - Every request draws from the shared token bucket first, so all worker
      processes together stay inside the developer-token quota
    - Access tokens come from the credential vault on every request; a token
      refreshed by another worker is picked up immediately
    - Workers only ever see normalized rows, never provider JSON

ERRORS:
    - RateLimitExceeded: limiter wait timed out (retryable)
    - AuthError: vault could not produce a token (permanent)
    - ProviderError: non-2xx response or transport failure

REFERENCES:
    - https://developers.google.com/google-ads/api/rest/overview
    - adsync/services/rate_limiter.py, adsync/services/token_service.py
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import httpx

from adsync.config import Settings, get_settings
from adsync.exceptions import ProviderError, RateLimitExceeded
from adsync.models import EntityStatusEnum
from adsync.schemas import AccessibleCustomer, AdGroupRecord, AdRecord, CampaignRecord, MetricsRow
from adsync.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MICROS = Decimal(1_000_000)
ADS_LIMIT = 1000


# =============================================================================
# GAQL
# =============================================================================

_METRIC_FIELDS = (
    "segments.date, metrics.impressions, metrics.clicks, metrics.cost_micros, "
    "metrics.conversions, metrics.conversions_value"
)

CAMPAIGN_PERFORMANCE_QUERY = (
    "SELECT campaign.id, campaign.name, campaign.status, {metrics} "
    "FROM campaign "
    "WHERE segments.date BETWEEN '{start}' AND '{end}'"
)

AD_GROUP_PERFORMANCE_QUERY = (
    "SELECT campaign.id, campaign.name, ad_group.id, ad_group.name, ad_group.status, {metrics} "
    "FROM ad_group "
    "WHERE segments.date BETWEEN '{start}' AND '{end}'"
)

AD_PERFORMANCE_QUERY = (
    "SELECT campaign.id, campaign.name, ad_group.id, ad_group.name, "
    "ad_group_ad.ad.id, ad_group_ad.ad.name, {metrics} "
    "FROM ad_group_ad "
    "WHERE segments.date BETWEEN '{start}' AND '{end}'"
)

CAMPAIGNS_QUERY = (
    "SELECT campaign.id, campaign.name, campaign.status, campaign.advertising_channel_type, "
    "campaign_budget.amount_micros, campaign.start_date, campaign.end_date "
    "FROM campaign WHERE campaign.status != 'REMOVED'"
)

AD_GROUPS_QUERY = (
    "SELECT ad_group.id, ad_group.name, ad_group.status, campaign.id "
    "FROM ad_group WHERE ad_group.status != 'REMOVED'"
)

ADS_QUERY = (
    "SELECT ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group_ad.ad.type, ad_group_ad.ad.final_urls, "
    "ad_group_ad.status, ad_group.id, campaign.id "
    f"FROM ad_group_ad WHERE ad_group_ad.status != 'REMOVED' LIMIT {ADS_LIMIT}"
)

CUSTOMER_METADATA_QUERY = (
    "SELECT customer.id, customer.descriptive_name, customer.currency_code, "
    "customer.time_zone, customer.manager FROM customer LIMIT 1"
)


# =============================================================================
# NORMALIZATION HELPERS
# =============================================================================

def normalize_customer_id(customer_id: str) -> str:
    """'123-456-7890' -> '1234567890'."""
    return str(customer_id).replace("-", "").strip()


def normalize_status(value: Optional[str]) -> EntityStatusEnum:
    """Map provider status strings onto ENABLED/PAUSED/REMOVED/UNKNOWN."""
    if not value:
        return EntityStatusEnum.unknown
    try:
        return EntityStatusEnum(str(value).upper())
    except ValueError:
        return EntityStatusEnum.unknown


def _decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _micros(value: Any) -> Decimal:
    return _decimal(value) / MICROS


def _int(value: Any) -> int:
    # int64 fields arrive as JSON strings
    if value in (None, ""):
        return 0
    return int(value)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def _row_to_metrics(result: Dict[str, Any]) -> MetricsRow:
    campaign = result.get("campaign", {})
    ad_group = result.get("adGroup") or {}
    ad = (result.get("adGroupAd") or {}).get("ad") or {}
    metrics = result.get("metrics", {})
    segments = result.get("segments", {})

    return MetricsRow(
        date=_parse_date(segments.get("date")),
        campaign_id=str(campaign.get("id")),
        campaign_name=campaign.get("name") or f"Campaign {campaign.get('id')}",
        campaign_status=normalize_status(campaign["status"]) if campaign.get("status") else None,
        ad_group_id=str(ad_group["id"]) if ad_group.get("id") else None,
        ad_group_name=ad_group.get("name"),
        ad_group_status=normalize_status(ad_group["status"]) if ad_group.get("status") else None,
        ad_id=str(ad["id"]) if ad.get("id") else None,
        ad_name=ad.get("name"),
        impressions=_int(metrics.get("impressions")),
        clicks=_int(metrics.get("clicks")),
        cost=_micros(metrics.get("costMicros")),
        conversions=_decimal(metrics.get("conversions")),
        conversion_value=_decimal(metrics.get("conversionsValue")),
    )


# =============================================================================
# CLIENT
# =============================================================================

class GoogleAdsApiClient:
    """Rate-limited Google Ads REST client.

    Args:
        token_provider: Callable returning a valid access token for a
            connection id (CredentialVault.get_valid_access_token).
        rate_limiter: Shared token bucket; one token per HTTP request.
        http_client: Optional httpx.Client (tests pass a MockTransport).
    """

    def __init__(
        self,
        token_provider: Callable[[UUID], str],
        rate_limiter: RateLimiter,
        *,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        max_wait_ms: Optional[int] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._token_provider = token_provider
        self._limiter = rate_limiter
        self._max_wait_ms = max_wait_ms if max_wait_ms is not None else self.settings.RATE_LIMIT_MAX_WAIT_MS
        self._http = http_client or httpx.Client(timeout=self.settings.HTTP_TIMEOUT_SECONDS)
        self._base = f"{self.settings.GOOGLE_ADS_BASE_URL.rstrip('/')}/{self.settings.GOOGLE_ADS_API_VERSION}"

    def close(self) -> None:
        self._http.close()

    # ---- transport ----------------------------------------------------

    def _headers(self, access_token: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "developer-token": self.settings.GOOGLE_DEVELOPER_TOKEN,
            "Content-Type": "application/json",
        }
        if self.settings.GOOGLE_LOGIN_CUSTOMER_ID:
            headers["login-customer-id"] = normalize_customer_id(self.settings.GOOGLE_LOGIN_CUSTOMER_ID)
        return headers

    def _request(self, connection_id: UUID, method: str, path: str, body: Optional[dict] = None) -> dict:
        if not self._limiter.wait_for_token(1, self._max_wait_ms):
            raise RateLimitExceeded(self._limiter.key, self._max_wait_ms)

        access_token = self._token_provider(connection_id)
        url = f"{self._base}/{path}"
        try:
            response = self._http.request(method, url, headers=self._headers(access_token), json=body)
        except httpx.HTTPError as e:
            raise ProviderError(f"Google Ads request failed: {e}") from e

        if not response.is_success:
            raise ProviderError(
                f"Google Ads API {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json() if response.content else {}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:300]
        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            return str((payload.get("error") or {}).get("message") or payload)[:300]
        return str(payload)[:300]

    def search(self, connection_id: UUID, customer_id: str, query: str) -> List[Dict[str, Any]]:
        """Run a GAQL query and return every result row across pages."""
        cid = normalize_customer_id(customer_id)
        results: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        pages = 0

        while True:
            body: Dict[str, Any] = {"query": query}
            if page_token:
                body["pageToken"] = page_token
            payload = self._request(connection_id, "POST", f"customers/{cid}/googleAds:search", body)
            results.extend(payload.get("results", []))
            pages += 1
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.debug("[GOOGLE_ADS] customer=%s rows=%d pages=%d", cid, len(results), pages)
        return results

    # ---- metrics --------------------------------------------------------

    def _fetch_metrics(self, template: str, connection_id: UUID, customer_id: str, start: date, end: date) -> List[MetricsRow]:
        query = template.format(metrics=_METRIC_FIELDS, start=start.isoformat(), end=end.isoformat())
        return [_row_to_metrics(r) for r in self.search(connection_id, customer_id, query)]

    def fetch_campaign_performance(self, connection_id: UUID, customer_id: str, start: date, end: date) -> List[MetricsRow]:
        return self._fetch_metrics(CAMPAIGN_PERFORMANCE_QUERY, connection_id, customer_id, start, end)

    def fetch_ad_group_performance(self, connection_id: UUID, customer_id: str, start: date, end: date) -> List[MetricsRow]:
        return self._fetch_metrics(AD_GROUP_PERFORMANCE_QUERY, connection_id, customer_id, start, end)

    def fetch_ad_performance(self, connection_id: UUID, customer_id: str, start: date, end: date) -> List[MetricsRow]:
        return self._fetch_metrics(AD_PERFORMANCE_QUERY, connection_id, customer_id, start, end)

    # ---- dimensions -----------------------------------------------------

    def fetch_campaigns(self, connection_id: UUID, customer_id: str) -> List[CampaignRecord]:
        records = []
        for r in self.search(connection_id, customer_id, CAMPAIGNS_QUERY):
            campaign = r.get("campaign", {})
            budget_micros = (r.get("campaignBudget") or {}).get("amountMicros")
            records.append(CampaignRecord(
                external_id=str(campaign.get("id")),
                name=campaign.get("name") or f"Campaign {campaign.get('id')}",
                status=normalize_status(campaign.get("status")),
                campaign_type=campaign.get("advertisingChannelType"),
                budget=_micros(budget_micros) if budget_micros is not None else None,
                start_date=_parse_date(campaign.get("startDate")),
                end_date=_parse_date(campaign.get("endDate")),
            ))
        return records

    def fetch_ad_groups(self, connection_id: UUID, customer_id: str) -> List[AdGroupRecord]:
        records = []
        for r in self.search(connection_id, customer_id, AD_GROUPS_QUERY):
            ad_group = r.get("adGroup", {})
            records.append(AdGroupRecord(
                external_id=str(ad_group.get("id")),
                name=ad_group.get("name") or f"Ad group {ad_group.get('id')}",
                campaign_external_id=str((r.get("campaign") or {}).get("id")),
                status=normalize_status(ad_group.get("status")),
            ))
        return records

    def fetch_ads(self, connection_id: UUID, customer_id: str) -> List[AdRecord]:
        records = []
        for r in self.search(connection_id, customer_id, ADS_QUERY):
            ad_group_ad = r.get("adGroupAd", {})
            ad = ad_group_ad.get("ad", {})
            final_urls = ad.get("finalUrls") or []
            records.append(AdRecord(
                external_id=str(ad.get("id")),
                name=ad.get("name") or f"Ad {ad.get('id')}",
                ad_group_external_id=str((r.get("adGroup") or {}).get("id")),
                campaign_external_id=str((r.get("campaign") or {}).get("id")),
                status=normalize_status(ad_group_ad.get("status")),
                ad_type=ad.get("type"),
                final_url=final_urls[0] if final_urls else None,
            ))
        return records

    # ---- accounts -------------------------------------------------------

    def list_accessible_customers(self, connection_id: UUID) -> List[AccessibleCustomer]:
        """List accounts reachable with this connection.

        Two steps: list resource names, then one metadata query per id. A
        failed metadata fetch is logged and that id is skipped.
        """
        payload = self._request(connection_id, "GET", "customers:listAccessibleCustomers")
        resource_names = payload.get("resourceNames", [])
        logger.info("[GOOGLE_ADS] Connection %s can access %d customers", connection_id, len(resource_names))

        customers: List[AccessibleCustomer] = []
        for resource_name in resource_names:
            customer_id = resource_name.split("/")[-1]
            try:
                rows = self.search(connection_id, customer_id, CUSTOMER_METADATA_QUERY)
            except (ProviderError, RateLimitExceeded) as e:
                logger.warning("[GOOGLE_ADS] Skipping customer %s: %s", customer_id, e)
                continue

            customer = (rows[0] if rows else {}).get("customer", {})
            customers.append(AccessibleCustomer(
                external_id=customer_id,
                name=customer.get("descriptiveName") or f"Account {customer_id}",
                currency=customer.get("currencyCode") or "USD",
                timezone=customer.get("timeZone") or "America/Los_Angeles",
                is_manager=bool(customer.get("manager", False)),
            ))
        return customers
