"""Refcode mapping refresh from the ad platform.

WHAT:
    Pulls campaigns and ads (with creative url_tags) for an organization's Meta
    ad account, upserts MetaCampaign reference rows, and upserts a
    RefcodeMapping for every `refcode=` found in the url_tags.

WHY:
    Donation refcodes are declared on the ad creative. Mapping them directly is
    the highest-confidence attribution the backfill can make.

LAST WRITER WINS:
    Ads are applied in ascending `updated_time`, so when several ads share a
    refcode the most recently active ad owns the mapping.

REFERENCES:
    - donorlink/services/meta_ads_client.py
    - donorlink/services/attribution_backfill_service.py (consumer)
"""

import logging
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from donorlink.models import MetaCampaign, PlatformEnum, RefcodeMapping
from donorlink.services.meta_ads_client import MetaAdsClient, extract_refcode

logger = logging.getLogger(__name__)


def parse_meta_time(value: Optional[str]) -> Optional[datetime]:
    """Parse Meta's `2024-05-01T12:00:00+0000` timestamps to naive UTC."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
        return parsed
    return None


class RefcodeMappingService:
    def __init__(self, db: Session):
        self.db = db

    def sync_from_meta(self, organization_id: UUID, client: MetaAdsClient, account_id: str) -> Dict[str, int]:
        """Refresh MetaCampaign and RefcodeMapping rows for one organization.

        Raises:
            MetaAdsClientError: propagated from the client; nothing is committed.
        """
        campaigns = client.get_campaigns(account_id)
        ads = client.get_ads(account_id)
        campaign_names = {c.get("id"): c.get("name") for c in campaigns}

        logger.info(
            "[REFCODE_SYNC] Org %s: %d campaigns, %d ads from Meta",
            organization_id, len(campaigns), len(ads),
        )

        ads.sort(key=lambda ad: parse_meta_time(ad.get("updated_time")) or datetime.min)

        counts = {"campaigns": len(campaigns), "ads": len(ads), "ads_upserted": 0,
                  "mappings_created": 0, "mappings_updated": 0, "ads_without_refcode": 0}
        now = datetime.utcnow()

        for ad in ads:
            campaign_id = ad.get("campaign_id")
            if not campaign_id:
                continue
            creative = ad.get("creative") or {}
            creative_id = creative.get("id")
            url_tags = creative.get("url_tags")
            if url_tags is None and creative_id:
                url_tags = client.get_creative_url_tags(creative_id)
            refcode = extract_refcode(url_tags)
            updated_at = parse_meta_time(ad.get("updated_time"))

            row = (
                self.db.query(MetaCampaign)
                .filter(
                    MetaCampaign.organization_id == organization_id,
                    MetaCampaign.campaign_id == campaign_id,
                    MetaCampaign.ad_id == ad.get("id"),
                )
                .first()
            )
            if row is None:
                row = MetaCampaign(organization_id=organization_id, campaign_id=campaign_id, ad_id=ad.get("id"))
                self.db.add(row)
            row.campaign_name = campaign_names.get(campaign_id) or row.campaign_name
            row.creative_id = creative_id
            row.refcode = refcode
            row.status = ad.get("status")
            row.ad_updated_at = updated_at
            row.synced_at = now
            counts["ads_upserted"] += 1

            if not refcode:
                counts["ads_without_refcode"] += 1
                continue

            mapping = (
                self.db.query(RefcodeMapping)
                .filter(RefcodeMapping.organization_id == organization_id, RefcodeMapping.refcode == refcode)
                .first()
            )
            if mapping is None:
                mapping = RefcodeMapping(organization_id=organization_id, refcode=refcode)
                self.db.add(mapping)
                counts["mappings_created"] += 1
            else:
                counts["mappings_updated"] += 1
            mapping.platform = PlatformEnum.meta.value
            mapping.campaign_id = campaign_id
            mapping.campaign_name = row.campaign_name
            mapping.ad_id = ad.get("id")
            mapping.creative_id = creative_id
            mapping.source = "declared"
            mapping.confidence = None
            mapping.updated_at = now
            self.db.flush()

        self.db.commit()
        logger.info("[REFCODE_SYNC] Org %s done: %s", organization_id, counts)
        return counts
