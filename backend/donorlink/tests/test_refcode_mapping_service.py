"""Tests for the refcode mapping refresh.

WHAT:
    MetaCampaign/RefcodeMapping upserts from a fake Meta client, last writer
    wins on shared refcodes, creative url_tags fallback.

REFERENCES:
    - donorlink/services/refcode_mapping_service.py (module under test)
"""

from datetime import datetime

import pytest

from donorlink.models import MetaCampaign, RefcodeMapping
from donorlink.services.meta_ads_client import MetaAdsAuthenticationError
from donorlink.services.refcode_mapping_service import RefcodeMappingService, parse_meta_time


class FakeMetaClient:
    def __init__(self, campaigns, ads, creatives=None, error=None):
        self.campaigns = campaigns
        self.ads = ads
        self.creatives = creatives or {}
        self.error = error
        self.creative_lookups = []

    def get_campaigns(self, account_id):
        if self.error:
            raise self.error
        return list(self.campaigns)

    def get_ads(self, account_id):
        return list(self.ads)

    def get_creative_url_tags(self, creative_id):
        self.creative_lookups.append(creative_id)
        return self.creatives.get(creative_id)


CAMPAIGNS = [
    {"id": "c-1", "name": "Fall Appeal"},
    {"id": "c-2", "name": "Fall Appeal Retargeting"},
]


def _ad(ad_id, campaign_id, updated, url_tags=None, creative_id=None, with_tags=True):
    creative = {"id": creative_id or f"cr-{ad_id}"}
    if with_tags:
        creative["url_tags"] = url_tags
    return {"id": ad_id, "campaign_id": campaign_id, "status": "ACTIVE",
            "updated_time": updated, "creative": creative}


def test_parse_meta_time_normalizes_to_utc():
    assert parse_meta_time("2024-05-01T12:00:00+0200") == datetime(2024, 5, 1, 10, 0)
    assert parse_meta_time("2024-05-01T12:00:00") == datetime(2024, 5, 1, 12, 0)
    assert parse_meta_time("yesterday") is None
    assert parse_meta_time(None) is None


def test_most_recently_updated_ad_owns_shared_refcode(test_db_session, organization):
    client = FakeMetaClient(CAMPAIGNS, [
        # Newer ad listed first; ordering must come from updated_time
        _ad("a-2", "c-2", "2025-02-01T00:00:00+0000", "refcode=meta_fall_2025"),
        _ad("a-1", "c-1", "2025-01-01T00:00:00+0000", "utm_source=fb&refcode=meta_fall_2025"),
    ])

    counts = RefcodeMappingService(test_db_session).sync_from_meta(organization.id, client, "act_1")

    mapping = test_db_session.query(RefcodeMapping).filter_by(organization_id=organization.id).one()
    assert mapping.refcode == "meta_fall_2025"
    assert (mapping.campaign_id, mapping.ad_id) == ("c-2", "a-2")
    assert mapping.campaign_name == "Fall Appeal Retargeting"
    assert mapping.source == "declared"
    assert counts["mappings_created"] == 1
    assert counts["mappings_updated"] == 1
    assert counts["ads_upserted"] == 2


def test_creative_lookup_when_expansion_omits_url_tags(test_db_session, organization):
    client = FakeMetaClient(
        CAMPAIGNS,
        [_ad("a-1", "c-1", "2025-01-01T00:00:00+0000", creative_id="cr-9", with_tags=False)],
        creatives={"cr-9": "refcode=sms_gala"},
    )

    RefcodeMappingService(test_db_session).sync_from_meta(organization.id, client, "act_1")

    assert client.creative_lookups == ["cr-9"]
    row = test_db_session.query(MetaCampaign).filter_by(ad_id="a-1").one()
    assert row.refcode == "sms_gala"
    assert row.creative_id == "cr-9"
    assert test_db_session.query(RefcodeMapping).filter_by(refcode="sms_gala").count() == 1


def test_ads_without_refcode_are_counted_but_not_mapped(test_db_session, organization):
    client = FakeMetaClient(CAMPAIGNS, [
        _ad("a-1", "c-1", "2025-01-01T00:00:00+0000", "utm_source=fb"),
        _ad("a-3", None, "2025-01-01T00:00:00+0000", "refcode=orphan"),
    ])

    counts = RefcodeMappingService(test_db_session).sync_from_meta(organization.id, client, "act_1")

    assert counts["ads_without_refcode"] == 1
    assert counts["ads_upserted"] == 1
    assert test_db_session.query(RefcodeMapping).count() == 0


def test_resync_updates_existing_rows(test_db_session, organization):
    service = RefcodeMappingService(test_db_session)
    service.sync_from_meta(organization.id, FakeMetaClient(CAMPAIGNS, [
        _ad("a-1", "c-1", "2025-01-01T00:00:00+0000", "refcode=meta_fall_2025"),
    ]), "act_1")

    counts = service.sync_from_meta(organization.id, FakeMetaClient(CAMPAIGNS, [
        _ad("a-1", "c-1", "2025-03-01T00:00:00+0000", "refcode=meta_fall_2025_b"),
    ]), "act_1")

    assert counts["mappings_created"] == 1
    assert test_db_session.query(MetaCampaign).count() == 1
    row = test_db_session.query(MetaCampaign).one()
    assert row.refcode == "meta_fall_2025_b"
    assert row.ad_updated_at == datetime(2025, 3, 1)


def test_client_errors_propagate(test_db_session, organization):
    client = FakeMetaClient([], [], error=MetaAdsAuthenticationError("expired"))

    with pytest.raises(MetaAdsAuthenticationError):
        RefcodeMappingService(test_db_session).sync_from_meta(organization.id, client, "act_1")
