"""Handler for `ads-dimensions` jobs: refresh campaign/ad group/ad metadata.

Runs campaigns, then ad groups, then ads (progress 33/66/100) so every
level finds its parent already committed, checking the attempt deadline
between levels. Ads are best-effort: the provider caps the listing and a
rejected ads query should not discard the campaign and ad group refresh.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from adsync.exceptions import AccountNotFound, ProviderError
from adsync.models import AdAccount
from adsync.schemas import DimensionsJobPayload
from adsync.services.reconciler import MetricsReconciler
from adsync.workers.worker_pool import JobContext, execute_job

logger = logging.getLogger(__name__)


async def run_dimensions_job(
    ctx: Dict[str, Any], payload: Dict[str, Any], job_type: Optional[str] = None,
) -> Dict[str, Any]:
    """arq entry point for `ads-dimensions` jobs."""
    return await execute_job(ctx, process_dimensions_job, payload, job_type)


def process_dimensions_job(ctx: JobContext) -> Dict[str, Any]:
    payload = DimensionsJobPayload.model_validate(ctx.payload)
    client = ctx.deps["ads_client"]
    db = ctx.deps["session_factory"]()

    try:
        account = db.query(AdAccount).filter(AdAccount.id == payload.ad_account_id).first()
        if account is None or not account.is_enabled:
            raise AccountNotFound(f"Ad account {payload.ad_account_id} missing or disabled")

        reconciler = MetricsReconciler(db, account)
        logger.info("[DIMENSIONS] Refreshing dimensions for account %s", account.external_id)

        campaigns = reconciler.upsert_campaigns(client.fetch_campaigns(payload.connection_id, payload.customer_id))
        ctx.report_progress(33)
        ctx.check_deadline()

        ad_groups = reconciler.upsert_ad_groups(client.fetch_ad_groups(payload.connection_id, payload.customer_id))
        ctx.report_progress(66)
        ctx.check_deadline()

        ads_synced = 0
        try:
            ads = reconciler.upsert_ads(client.fetch_ads(payload.connection_id, payload.customer_id))
            ads_synced = ads.created + ads.updated
        except ProviderError as e:
            if e.retryable:
                raise
            logger.warning("[DIMENSIONS] Ads listing rejected for account %s: %s", account.external_id, e)
        ctx.report_progress(100)

        result = {
            "campaignsSynced": campaigns.created + campaigns.updated,
            "adGroupsSynced": ad_groups.created + ad_groups.updated,
            "adsSynced": ads_synced,
            "skipped": campaigns.skipped + ad_groups.skipped,
        }
        logger.info("[DIMENSIONS] Account %s: %s", account.external_id, result)
        return result
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
