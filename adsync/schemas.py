"""Pydantic schemas exchanged between the API client, vault, queue and workers."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .models import EntityStatusEnum, ProviderEnum, SyncJobTypeEnum


# OAuth ----------------------------------------------------------

class OAuthTokens(BaseModel):
    """Result of an authorization-code exchange."""

    access_token: str
    refresh_token: Optional[str] = Field(default=None, description="Only returned on the first consent")
    expires_at: datetime
    email: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)


class RefreshedToken(BaseModel):
    access_token: str
    expires_at: datetime


# Provider rows --------------------------------------------------

class MetricsRow(BaseModel):
    """One normalized metrics row, independent of aggregation level.

    Campaign-level rows leave the ad-group/ad fields empty; ad-group rows
    leave the ad fields empty.
    """

    date: date
    campaign_id: str
    campaign_name: str
    campaign_status: Optional[EntityStatusEnum] = None
    ad_group_id: Optional[str] = None
    ad_group_name: Optional[str] = None
    ad_group_status: Optional[EntityStatusEnum] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    cost: Decimal = Decimal("0")
    conversions: Decimal = Decimal("0")
    conversion_value: Decimal = Decimal("0")

    @property
    def level(self) -> str:
        if self.ad_id:
            return "ad"
        if self.ad_group_id:
            return "ad_group"
        return "campaign"


class CampaignRecord(BaseModel):
    external_id: str
    name: str
    status: EntityStatusEnum = EntityStatusEnum.unknown
    campaign_type: Optional[str] = None
    budget: Optional[Decimal] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class AdGroupRecord(BaseModel):
    external_id: str
    name: str
    campaign_external_id: str
    status: EntityStatusEnum = EntityStatusEnum.unknown


class AdRecord(BaseModel):
    external_id: str
    name: str
    ad_group_external_id: str
    campaign_external_id: str
    status: EntityStatusEnum = EntityStatusEnum.unknown
    ad_type: Optional[str] = None
    final_url: Optional[str] = None


class AccessibleCustomer(BaseModel):
    """An ad account reachable with a connection's credentials."""

    external_id: str
    name: str
    currency: str = "USD"
    timezone: str = "America/Los_Angeles"
    is_manager: bool = False


# Queue payloads -------------------------------------------------

class SyncJobPayload(BaseModel):
    """Payload of an `ads-sync` queue task."""

    sync_job_id: UUID
    organization_id: UUID
    ad_account_id: UUID
    connection_id: UUID
    customer_id: str
    provider: ProviderEnum = ProviderEnum.google_ads
    job_type: SyncJobTypeEnum
    date_from: date
    date_to: date
    initiated_by: Optional[str] = None

    @field_validator("date_to")
    @classmethod
    def _range_is_ordered(cls, value: date, info):
        date_from = info.data.get("date_from")
        if date_from and value < date_from:
            raise ValueError("date_to must not precede date_from")
        return value


class DimensionsJobPayload(BaseModel):
    """Payload of an `ads-dimensions` queue task."""

    organization_id: UUID
    ad_account_id: UUID
    connection_id: UUID
    customer_id: str
    provider: ProviderEnum = ProviderEnum.google_ads


# Results --------------------------------------------------------

class ReconcileResult(BaseModel):
    created: int = 0
    updated: int = 0
    unchanged: int = 0  # Kept because the stored row has higher granularity
    skipped: int = 0    # Missing parent dimension

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged

    def merge(self, other: "ReconcileResult") -> "ReconcileResult":
        return ReconcileResult(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
            skipped=self.skipped + other.skipped,
        )


class ManualSyncResult(BaseModel):
    """Returned to the REST layer as soon as the manual sync is accepted."""

    job_ids: List[str]
    status: str = "enqueued"
    date_from: date
    date_to: date

    @property
    def job_id(self) -> str:
        return self.job_ids[0]


class TriggerSummary(BaseModel):
    """Outcome of a scheduled trigger run across all accounts."""

    accounts: int = 0
    enqueued: int = 0
    skipped: int = 0
    failed: int = 0
    job_ids: List[str] = Field(default_factory=list)
