"""Tests for the fact/dimension reconciler.

WHAT:
    - Dimension upserts are idempotent by (account, external id)
    - Fact upserts replace measures wholesale by grain key
    - PARTIAL_DAY data never overwrites FULL_DAY data
    - Rows whose parent dimension is missing are skipped, not fatal

WHY:
    Syncs overlap (daily windows re-read yesterday, retries re-read whole
    chunks), so writing the same rows twice must leave one copy of each.

REFERENCES:
    adsync/services/reconciler.py
"""

from datetime import date
from decimal import Decimal

from adsync.models import AdGroup, Campaign, EntityStatusEnum, MetricsFact, SourceGranularityEnum
from adsync.schemas import AdGroupRecord, CampaignRecord, MetricsRow
from adsync.services.reconciler import MetricsReconciler, granularity_for

TODAY = date(2024, 1, 15)


def _row(day=date(2024, 1, 10), impressions=100, clicks=5, cost="5.00", **extra):
    fields = dict(
        date=day,
        campaign_id="111",
        campaign_name="Brand",
        impressions=impressions,
        clicks=clicks,
        cost=Decimal(cost),
        conversions=Decimal("1"),
        conversion_value=Decimal("20"),
    )
    fields.update(extra)
    return MetricsRow(**fields)


def test_granularity_for_today_is_partial():
    assert granularity_for(TODAY, TODAY) == SourceGranularityEnum.partial_day
    assert granularity_for(date(2024, 1, 14), TODAY) == SourceGranularityEnum.full_day


def test_campaign_rows_create_dimension_and_fact(test_db_session, test_account):
    result = MetricsReconciler(test_db_session, test_account).upsert_fact_rows([_row()], "campaign", TODAY)

    assert result.created == 1
    assert result.processed == 1
    campaign = test_db_session.query(Campaign).one()
    assert campaign.external_id == "111"
    assert campaign.name == "Brand"
    fact = test_db_session.query(MetricsFact).one()
    assert fact.campaign_id == campaign.id
    assert fact.ad_group_id is None
    assert fact.impressions == 100
    assert fact.spend == Decimal("5.00")
    assert fact.source_granularity == SourceGranularityEnum.full_day


def test_writing_same_rows_twice_keeps_one_fact(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    reconciler.upsert_fact_rows([_row()], "campaign", TODAY)
    result = reconciler.upsert_fact_rows([_row(impressions=150, clicks=7)], "campaign", TODAY)

    assert result.updated == 1
    assert test_db_session.query(Campaign).count() == 1
    fact = test_db_session.query(MetricsFact).one()
    assert fact.impressions == 150
    assert fact.clicks == 7


def test_partial_day_never_overwrites_full_day(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    day = date(2024, 1, 14)

    # Final numbers for the 14th, then a late intraday-style read claiming
    # the 14th is still "today"
    reconciler.upsert_fact_rows([_row(day=day, impressions=500)], "campaign", TODAY)
    result = reconciler.upsert_fact_rows([_row(day=day, impressions=90)], "campaign", day)

    assert result.unchanged == 1
    fact = test_db_session.query(MetricsFact).one()
    assert fact.impressions == 500
    assert fact.source_granularity == SourceGranularityEnum.full_day


def test_full_day_replaces_partial_day(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    reconciler.upsert_fact_rows([_row(day=TODAY, impressions=40)], "campaign", TODAY)
    reconciler.upsert_fact_rows([_row(day=TODAY, impressions=400)], "campaign", date(2024, 1, 16))

    fact = test_db_session.query(MetricsFact).one()
    assert fact.impressions == 400
    assert fact.source_granularity == SourceGranularityEnum.full_day


def test_ad_group_rows_without_campaign_are_skipped(test_db_session, test_account):
    row = _row(ad_group_id="999", ad_group_name="Orphans", campaign_id="404")
    result = MetricsReconciler(test_db_session, test_account).upsert_fact_rows([row], "ad_group", TODAY)

    assert result.skipped == 1
    assert result.created == 0
    assert test_db_session.query(AdGroup).count() == 0
    assert test_db_session.query(MetricsFact).count() == 0


def test_ad_group_facts_key_on_ad_group(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    reconciler.upsert_fact_rows([_row()], "campaign", TODAY)
    ad_group_row = _row(ad_group_id="555", ad_group_name="Exact", ad_group_status=EntityStatusEnum.enabled)
    result = reconciler.upsert_fact_rows([ad_group_row], "ad_group", TODAY)

    assert result.created == 1
    assert test_db_session.query(MetricsFact).count() == 2
    ad_group = test_db_session.query(AdGroup).one()
    assert ad_group.status == EntityStatusEnum.enabled
    keys = {f.natural_key for f in test_db_session.query(MetricsFact).all()}
    assert any(k.endswith(f"|{ad_group.id}|-") for k in keys)
    assert any(k.endswith("|-|-") for k in keys)


def test_metrics_row_does_not_clobber_dimension_status(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    reconciler.upsert_campaigns([
        CampaignRecord(external_id="111", name="Brand", status=EntityStatusEnum.paused, budget=Decimal("25")),
    ])
    reconciler.upsert_fact_rows([_row(campaign_name="Brand (renamed)")], "campaign", TODAY)

    campaign = test_db_session.query(Campaign).one()
    assert campaign.name == "Brand (renamed)"
    assert campaign.status == EntityStatusEnum.paused
    assert campaign.budget == Decimal("25")


def test_dimension_refresh_is_idempotent(test_db_session, test_account):
    reconciler = MetricsReconciler(test_db_session, test_account)
    campaigns = [CampaignRecord(external_id="111", name="Brand", status=EntityStatusEnum.enabled)]
    ad_groups = [
        AdGroupRecord(external_id="555", name="Exact", campaign_external_id="111"),
        AdGroupRecord(external_id="556", name="Lost", campaign_external_id="404"),
    ]

    first = reconciler.upsert_campaigns(campaigns)
    second = reconciler.upsert_campaigns(campaigns)
    groups = reconciler.upsert_ad_groups(ad_groups)

    assert (first.created, second.updated) == (1, 1)
    assert (groups.created, groups.skipped) == (1, 1)
    assert test_db_session.query(Campaign).count() == 1
    assert test_db_session.query(AdGroup).count() == 1


def test_checkpoint_runs_after_each_batch(test_db_session, test_account):
    calls = []
    MetricsReconciler(test_db_session, test_account).upsert_fact_rows(
        [_row()], "campaign", TODAY, checkpoint=lambda: calls.append(True),
    )
    assert len(calls) == 2
