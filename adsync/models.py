"""SQLAlchemy ORM models and enums.

This module defines the warehouse schema for the sync pipeline using UUID
primary keys and explicit relationships:

- Connection / AdAccount: credentials and the accounts they grant access to
- Campaign / AdGroup / Ad: dimensions, keyed by (ad_account_id, external_id)
- MetricsFact: daily measures keyed by the full grain (natural_key)
- SyncJob: durable record of one queued (account, date range, type) unit
"""

import uuid
import enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from adsync.utils.dates import utcnow


# Single Base used by the entire package
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    google_ads = "GOOGLE_ADS"
    meta_ads = "META_ADS"
    tiktok_ads = "TIKTOK_ADS"


class ConnectionStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    expired = "EXPIRED"
    disconnected = "DISCONNECTED"


class AccountSyncStatusEnum(str, enum.Enum):
    pending = "PENDING"
    syncing = "SYNCING"
    synced = "SYNCED"
    error = "ERROR"


class EntityStatusEnum(str, enum.Enum):
    enabled = "ENABLED"
    paused = "PAUSED"
    removed = "REMOVED"
    unknown = "UNKNOWN"


class SourceGranularityEnum(str, enum.Enum):
    """Fidelity of a fact row. Ordered: a lower rank never overwrites a higher one."""
    partial_day = "PARTIAL_DAY"
    full_day = "FULL_DAY"

    @property
    def rank(self) -> int:
        return 0 if self is SourceGranularityEnum.partial_day else 1


class SyncJobTypeEnum(str, enum.Enum):
    initial_sync = "INITIAL_SYNC"
    daily_sync = "DAILY_SYNC"
    intraday_sync = "INTRADAY_SYNC"
    manual_sync = "MANUAL_SYNC"
    backfill = "BACKFILL"


class SyncJobStatusEnum(str, enum.Enum):
    pending = "PENDING"
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


NON_TERMINAL_JOB_STATUSES = (SyncJobStatusEnum.pending, SyncJobStatusEnum.running)


# Models ---------------------------------------------------------

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    connections = relationship("Connection", back_populates="organization")
    ad_accounts = relationship("AdAccount", back_populates="organization")


class Connection(Base):
    """OAuth grant for one provider within an organization.

    Tokens are stored encrypted (see adsync.security). `token_version` is
    bumped on every refresh so concurrent refreshers can detect a lost race
    with a conditional UPDATE.
    """
    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("organization_id", "provider", name="uq_connection_org_provider"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    provider_email = Column(String, nullable=True)
    scopes = Column(JSON, nullable=True)

    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    access_token_expiry = Column(DateTime, nullable=True)
    token_version = Column(Integer, nullable=False, default=0)
    last_refreshed_at = Column(DateTime, nullable=True)

    status = Column(
        Enum(ConnectionStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ConnectionStatusEnum.active,
    )
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="connections")
    ad_accounts = relationship("AdAccount", back_populates="connection")

    def __str__(self):
        return f"{self.provider.value} ({self.status.value})"


class AdAccount(Base):
    __tablename__ = "ad_accounts"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_ad_account_org_provider_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_id = Column(String, nullable=False)  # Customer ID in the provider, digits only
    name = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    timezone = Column(String, nullable=False, default="America/Los_Angeles")

    # Soft delete: disabling never removes the row or its facts
    is_enabled = Column(Boolean, nullable=False, default=True)
    sync_status = Column(
        Enum(AccountSyncStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=AccountSyncStatusEnum.pending,
    )
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    organization = relationship("Organization", back_populates="ad_accounts")
    connection = relationship("Connection", back_populates="ad_accounts")
    campaigns = relationship("Campaign", back_populates="ad_account")
    sync_jobs = relationship("SyncJob", back_populates="ad_account")


class Campaign(Base):
    __tablename__ = "campaigns"
    __table_args__ = (UniqueConstraint("ad_account_id", "external_id", name="uq_campaign_account_external"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("ad_accounts.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    campaign_type = Column(String, nullable=True)  # advertisingChannelType (SEARCH, DISPLAY, ...)
    budget = Column(Numeric(18, 4), nullable=True)  # Daily budget in account currency
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ad_account = relationship("AdAccount", back_populates="campaigns")
    ad_groups = relationship("AdGroup", back_populates="campaign")


class AdGroup(Base):
    __tablename__ = "ad_groups"
    __table_args__ = (UniqueConstraint("ad_account_id", "external_id", name="uq_ad_group_account_external"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("ad_accounts.id"), nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    campaign = relationship("Campaign", back_populates="ad_groups")
    ads = relationship("Ad", back_populates="ad_group")


class Ad(Base):
    __tablename__ = "ads"
    __table_args__ = (UniqueConstraint("ad_account_id", "external_id", name="uq_ad_account_external"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("ad_accounts.id"), nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    ad_group_id = Column(UUID(as_uuid=True), ForeignKey("ad_groups.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=EntityStatusEnum.unknown,
    )
    ad_type = Column(String, nullable=True)
    final_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ad_group = relationship("AdGroup", back_populates="ads")


class MetricsFact(Base):
    """Daily performance measures for one grain.

    Grain: (date, provider, ad_account_id, campaign_id, ad_group_id, ad_id)
    with ad_group_id/ad_id nullable for campaign- and ad-group-level rows.
    `natural_key` serializes the grain with "-" for missing members so the
    unique constraint also covers the NULL cases.

    Measures are replaced wholesale on every sync (last write wins).
    """
    __tablename__ = "metrics_facts"
    __table_args__ = (UniqueConstraint("natural_key", name="uq_metrics_fact_natural_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    date = Column(Date, nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("ad_accounts.id"), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    ad_group_id = Column(UUID(as_uuid=True), ForeignKey("ad_groups.id"), nullable=True)
    ad_id = Column(UUID(as_uuid=True), ForeignKey("ads.id"), nullable=True)
    natural_key = Column(String, nullable=False)

    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)

    source_granularity = Column(
        Enum(SourceGranularityEnum, values_callable=_enum_values),
        nullable=False,
        default=SourceGranularityEnum.full_day,
    )
    ingested_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @staticmethod
    def build_natural_key(day, provider, ad_account_id, campaign_id, ad_group_id=None, ad_id=None) -> str:
        provider_value = provider.value if isinstance(provider, ProviderEnum) else str(provider)
        parts = [
            day.isoformat(),
            provider_value,
            str(ad_account_id),
            str(campaign_id),
            str(ad_group_id) if ad_group_id else "-",
            str(ad_id) if ad_id else "-",
        ]
        return "|".join(parts)

    def __str__(self):
        return f"{self.date.isoformat()} - {self.natural_key} - {self.impressions} impr"


class SyncJob(Base):
    """Durable record of one queued sync unit.

    The queue task id equals `str(SyncJob.id)`, so a redelivered task always
    finds its record. Terminal states: COMPLETED, FAILED, CANCELLED.
    """
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("ad_accounts.id"), nullable=False, index=True)
    job_type = Column(Enum(SyncJobTypeEnum, values_callable=_enum_values), nullable=False)
    status = Column(
        Enum(SyncJobStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=SyncJobStatusEnum.pending,
    )
    date_from = Column(Date, nullable=False)
    date_to = Column(Date, nullable=False)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    initiated_by = Column(String, nullable=True)  # User id for manual syncs

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    metrics = Column(JSON, nullable=True)  # {"rowsProcessed", "rowsSkipped", "durationMs"}

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ad_account = relationship("AdAccount", back_populates="sync_jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_JOB_STATUSES

    def __str__(self):
        return f"{self.job_type.value} {self.date_from}..{self.date_to} ({self.status.value})"
