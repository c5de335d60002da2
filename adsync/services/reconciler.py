"""Fact/dimension reconciler for the warehouse.

WHAT:
    Idempotent upserts of campaign/ad-group/ad dimensions and daily metrics
    facts for one ad account.

WHY:
    - At-least-once job delivery means every write here can run twice; all
      writes are keyed by natural identity and replace values wholesale
    - Dimensions are committed before the facts that reference them
    - A row whose parent dimension is missing is skipped and counted, never
      fatal to the job

GRANULARITY:
    Facts dated before the account's current day are FULL_DAY, facts for the
    current day PARTIAL_DAY. A PARTIAL_DAY fetch never overwrites a stored
    FULL_DAY row; equal or higher fidelity always overwrites.

REFERENCES:
    - adsync/models.py (MetricsFact.natural_key)
    - adsync/workers/sync_processor.py, adsync/workers/dimensions_processor.py
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.exceptions import DimensionMissing
from adsync.models import (
    Ad,
    AdAccount,
    AdGroup,
    Campaign,
    EntityStatusEnum,
    MetricsFact,
    SourceGranularityEnum,
)
from adsync.schemas import AdGroupRecord, AdRecord, CampaignRecord, MetricsRow, ReconcileResult

logger = logging.getLogger(__name__)

Checkpoint = Optional[Callable[[], None]]


def granularity_for(day: date, today: date) -> SourceGranularityEnum:
    return SourceGranularityEnum.partial_day if day >= today else SourceGranularityEnum.full_day


class MetricsReconciler:
    """Upserts dimensions and facts for a single ad account."""

    def __init__(self, db: Session, account: AdAccount):
        self.db = db
        self.account = account

    # =========================================================================
    # DIMENSIONS
    # =========================================================================

    def _upsert_dimension(self, model: Type, external_id: str, fields: Dict) -> Tuple[object, bool]:
        """UPSERT a dimension by (ad_account_id, external_id).

        WHAT: Create-or-update; None values in `fields` leave the stored
            value alone (a metrics row carries no campaign budget).
        WHY: Two workers may create the same campaign concurrently; the loser
            hits the unique constraint inside its SAVEPOINT and re-reads.
        """
        for attempt in (1, 2):
            instance = (
                self.db.query(model)
                .filter(model.ad_account_id == self.account.id, model.external_id == external_id)
                .first()
            )
            if instance is not None:
                for key, value in fields.items():
                    if value is not None:
                        setattr(instance, key, value)
                return instance, False

            create_fields = {k: v for k, v in fields.items() if v is not None}
            create_fields.setdefault("status", EntityStatusEnum.unknown)
            try:
                with self.db.begin_nested():
                    instance = model(ad_account_id=self.account.id, external_id=external_id, **create_fields)
                    self.db.add(instance)
                return instance, True
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.info("[RECONCILE] Concurrent insert of %s %s, re-reading", model.__tablename__, external_id)
        raise RuntimeError("unreachable")

    def upsert_campaign(self, record: CampaignRecord) -> Tuple[Campaign, bool]:
        return self._upsert_dimension(Campaign, record.external_id, {
            "name": record.name,
            "status": record.status,
            "campaign_type": record.campaign_type,
            "budget": record.budget,
            "start_date": record.start_date,
            "end_date": record.end_date,
        })

    def upsert_campaigns(self, records: Iterable[CampaignRecord]) -> ReconcileResult:
        result = ReconcileResult()
        for record in records:
            _, created = self.upsert_campaign(record)
            if created:
                result.created += 1
            else:
                result.updated += 1
        self.db.commit()
        return result

    def upsert_ad_groups(self, records: Iterable[AdGroupRecord]) -> ReconcileResult:
        result = ReconcileResult()
        campaign_ids = self._id_map(Campaign)
        for record in records:
            campaign_id = campaign_ids.get(record.campaign_external_id)
            if campaign_id is None:
                self._log_missing(DimensionMissing("campaign", record.campaign_external_id))
                result.skipped += 1
                continue
            _, created = self._upsert_dimension(AdGroup, record.external_id, {
                "name": record.name,
                "status": record.status,
                "campaign_id": campaign_id,
            })
            if created:
                result.created += 1
            else:
                result.updated += 1
        self.db.commit()
        return result

    def upsert_ads(self, records: Iterable[AdRecord]) -> ReconcileResult:
        result = ReconcileResult()
        campaign_ids = self._id_map(Campaign)
        ad_group_ids = self._id_map(AdGroup)
        for record in records:
            ad_group_id = ad_group_ids.get(record.ad_group_external_id)
            campaign_id = campaign_ids.get(record.campaign_external_id)
            if ad_group_id is None or campaign_id is None:
                missing = ("ad_group", record.ad_group_external_id) if ad_group_id is None else ("campaign", record.campaign_external_id)
                self._log_missing(DimensionMissing(*missing))
                result.skipped += 1
                continue
            _, created = self._upsert_dimension(Ad, record.external_id, {
                "name": record.name,
                "status": record.status,
                "ad_type": record.ad_type,
                "final_url": record.final_url,
                "campaign_id": campaign_id,
                "ad_group_id": ad_group_id,
            })
            if created:
                result.created += 1
            else:
                result.updated += 1
        self.db.commit()
        return result

    def _id_map(self, model: Type) -> Dict[str, UUID]:
        rows = (
            self.db.query(model.external_id, model.id)
            .filter(model.ad_account_id == self.account.id)
            .all()
        )
        return {external_id: internal_id for external_id, internal_id in rows}

    def _log_missing(self, error: DimensionMissing) -> None:
        logger.warning("[RECONCILE] account=%s %s - row skipped", self.account.id, error.message)

    # =========================================================================
    # FACTS
    # =========================================================================

    def _upsert_dimensions_from_rows(self, rows: List[MetricsRow], level: str) -> None:
        """Upsert the dimension each row describes at its own level.

        Parents are not created here: an ad-group row whose campaign is
        unknown is skipped later in the fact pass.
        """
        if level == "campaign":
            for row in {r.campaign_id: r for r in rows}.values():
                self._upsert_dimension(Campaign, row.campaign_id, {
                    "name": row.campaign_name,
                    "status": row.campaign_status,
                })
        elif level == "ad_group":
            campaign_ids = self._id_map(Campaign)
            for row in {r.ad_group_id: r for r in rows if r.ad_group_id}.values():
                campaign_id = campaign_ids.get(row.campaign_id)
                if campaign_id is None:
                    continue
                self._upsert_dimension(AdGroup, row.ad_group_id, {
                    "name": row.ad_group_name or f"Ad group {row.ad_group_id}",
                    "status": row.ad_group_status,
                    "campaign_id": campaign_id,
                })
        elif level == "ad":
            campaign_ids = self._id_map(Campaign)
            ad_group_ids = self._id_map(AdGroup)
            latest = {r.ad_id: r for r in rows if r.ad_id}
            for row in latest.values():
                campaign_id = campaign_ids.get(row.campaign_id)
                ad_group_id = ad_group_ids.get(row.ad_group_id or "")
                if campaign_id is None or ad_group_id is None:
                    continue
                self._upsert_dimension(Ad, row.ad_id, {
                    "name": row.ad_name or f"Ad {row.ad_id}",
                    "campaign_id": campaign_id,
                    "ad_group_id": ad_group_id,
                })
        self.db.commit()

    def upsert_fact(
        self,
        row: MetricsRow,
        campaign_id: UUID,
        ad_group_id: Optional[UUID],
        ad_id: Optional[UUID],
        granularity: SourceGranularityEnum,
    ) -> str:
        """UPSERT one fact by its grain key, replacing every measure.

        Returns:
            "created", "updated" or "unchanged" (stored row has higher
            granularity).
        """
        natural_key = MetricsFact.build_natural_key(
            row.date, self.account.provider, self.account.id, campaign_id, ad_group_id, ad_id,
        )
        measures = {
            "impressions": row.impressions,
            "clicks": row.clicks,
            "spend": row.cost,
            "conversions": row.conversions,
            "conversion_value": row.conversion_value,
            "source_granularity": granularity,
        }

        for attempt in (1, 2):
            fact = self.db.query(MetricsFact).filter(MetricsFact.natural_key == natural_key).first()
            if fact is not None:
                if fact.source_granularity.rank > granularity.rank:
                    return "unchanged"
                for key, value in measures.items():
                    setattr(fact, key, value)
                return "updated"

            try:
                with self.db.begin_nested():
                    self.db.add(MetricsFact(
                        date=row.date,
                        provider=self.account.provider,
                        ad_account_id=self.account.id,
                        campaign_id=campaign_id,
                        ad_group_id=ad_group_id,
                        ad_id=ad_id,
                        natural_key=natural_key,
                        **measures,
                    ))
                return "created"
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.info("[RECONCILE] Concurrent insert of fact %s, re-reading", natural_key)
        raise RuntimeError("unreachable")

    def upsert_fact_rows(
        self,
        rows: List[MetricsRow],
        level: str,
        today: date,
        checkpoint: Checkpoint = None,
    ) -> ReconcileResult:
        """Dimension pass, then fact pass, for rows of one aggregation level.

        Args:
            rows: Normalized rows, all of the same `level`
                ("campaign", "ad_group" or "ad").
            today: Current date in the account timezone (granularity cutoff).
            checkpoint: Called after each committed batch; raises to abort
                (cancellation).
        """
        result = ReconcileResult()
        if not rows:
            return result

        self._upsert_dimensions_from_rows(rows, level)
        if checkpoint:
            checkpoint()

        campaign_ids = self._id_map(Campaign)
        ad_group_ids = self._id_map(AdGroup) if level in ("ad_group", "ad") else {}
        ad_ids = self._id_map(Ad) if level == "ad" else {}

        for row in rows:
            try:
                campaign_id = campaign_ids.get(row.campaign_id)
                if campaign_id is None:
                    raise DimensionMissing("campaign", row.campaign_id)
                ad_group_id = ad_id = None
                if level in ("ad_group", "ad"):
                    ad_group_id = ad_group_ids.get(row.ad_group_id or "")
                    if ad_group_id is None:
                        raise DimensionMissing("ad_group", row.ad_group_id or "-")
                if level == "ad":
                    ad_id = ad_ids.get(row.ad_id or "")
                    if ad_id is None:
                        raise DimensionMissing("ad", row.ad_id or "-")
            except DimensionMissing as e:
                self._log_missing(e)
                result.skipped += 1
                continue

            outcome = self.upsert_fact(row, campaign_id, ad_group_id, ad_id, granularity_for(row.date, today))
            setattr(result, outcome, getattr(result, outcome) + 1)

        self.db.commit()
        if checkpoint:
            checkpoint()

        logger.info(
            "[RECONCILE] account=%s level=%s created=%d updated=%d unchanged=%d skipped=%d",
            self.account.id, level, result.created, result.updated, result.unchanged, result.skipped,
        )
        return result

