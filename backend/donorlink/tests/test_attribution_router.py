"""API tests for the attribution endpoints.

REFERENCES:
    - donorlink/routers/attribution.py (module under test)
"""

from datetime import datetime
from unittest.mock import patch

import pytest

from donorlink.models import AttributionRecord, MetaCampaign, RefcodeMapping
from donorlink.services.credential_service import store_credentials


@pytest.fixture
def fall_campaign(test_db_session, organization, add_transaction):
    test_db_session.add(MetaCampaign(
        organization_id=organization.id, campaign_id="meta_fall_2025", campaign_name="Fall Appeal",
        ad_id="ad-1", ad_updated_at=datetime(2025, 1, 1),
    ))
    test_db_session.commit()
    add_transaction(organization.id, "T1", amount="40.00", refcode="meta_fall_2025")


class TestAutoMatch:
    def test_camel_case_payload_dry_run(self, client, member_headers, organization, fall_campaign, test_db_session):
        response = client.post(
            "/attribution/auto-match",
            json={"organizationId": str(organization.id), "dryRun": True},
            headers=member_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dryRun"] is True
        assert data["summary"]["matched"] == 1
        assert data["matches"][0]["refcode"] == "meta_fall_2025"
        assert test_db_session.query(AttributionRecord).count() == 0

    def test_snake_case_payload_applies(self, client, member_headers, organization, fall_campaign, test_db_session):
        response = client.post(
            "/attribution/auto-match",
            json={"organization_id": str(organization.id), "dry_run": False},
            headers=member_headers,
        )

        assert response.status_code == 200
        assert response.json()["summary"]["written"] == 1
        assert test_db_session.query(AttributionRecord).count() == 1

    def test_members_must_name_their_organization(self, client, member_headers):
        response = client.post("/attribution/auto-match", json={"dryRun": True}, headers=member_headers)

        assert response.status_code == 403

    def test_members_cannot_touch_other_organizations(self, client, member_headers, other_organization):
        response = client.post(
            "/attribution/auto-match",
            json={"organizationId": str(other_organization.id)},
            headers=member_headers,
        )

        assert response.status_code == 403

    def test_cron_may_run_across_all_organizations(self, client, cron_headers, fall_campaign):
        response = client.post("/attribution/auto-match", json={}, headers=cron_headers)

        assert response.status_code == 200
        assert response.json()["dryRun"] is True


class TestHistoricalBackfill:
    def test_runs_for_member_organization(self, client, member_headers, organization, test_db_session, add_transaction):
        test_db_session.add(RefcodeMapping(
            organization_id=organization.id, refcode="meta_fall_2025", platform="meta", campaign_id="c-1",
        ))
        test_db_session.commit()
        add_transaction(organization.id, "T1", refcode="meta_fall_2025")

        response = client.post(
            "/attribution/backfill", json={"organization_id": str(organization.id)}, headers=member_headers
        )

        assert response.status_code == 200
        assert response.json()["summary"]["attributed"] == 1

    def test_inverted_date_range_is_rejected(self, client, member_headers, organization):
        response = client.post(
            "/attribution/backfill",
            json={"organization_id": str(organization.id), "start_date": "2025-03-02", "end_date": "2025-03-01"},
            headers=member_headers,
        )

        assert response.status_code == 422


def test_detect_mismatches_defaults_to_dry_run(client, member_headers, organization):
    response = client.post(
        "/attribution/detect-mismatches", json={"organization_id": str(organization.id)}, headers=member_headers
    )

    assert response.status_code == 200
    assert response.json()["dry_run"] is True
    assert response.json()["summary"]["scanned"] == 0


def test_recover_click_ids_with_nothing_to_do(client, member_headers, organization):
    response = client.post(
        "/attribution/recover-click-ids", json={"organization_id": str(organization.id)}, headers=member_headers
    )

    assert response.status_code == 200
    assert response.json()["summary"] == {"total_processed": 0}


class TestRefcodeMappingSync:
    def test_missing_meta_credentials(self, client, member_headers, organization):
        response = client.post(
            "/attribution/refcode-mappings/sync", json={"organization_id": str(organization.id)},
            headers=member_headers,
        )

        assert response.status_code == 400
        assert "Meta credentials" in response.json()["error"]

    @patch("donorlink.services.meta_ads_client.FacebookAdsApi")
    @patch("donorlink.services.meta_ads_client.AdAccount")
    def test_syncs_with_stored_credentials(
        self, mock_account_class, mock_api, client, member_headers, organization, test_db_session
    ):
        from donorlink.services import meta_ads_client

        meta_ads_client._rate_limit_call_times.clear()
        store_credentials(test_db_session, organization.id, "meta", {"access_token": "tok", "ad_account_id": "42"})
        account = mock_account_class.return_value
        account.get_campaigns.return_value = [{"id": "c-1", "name": "Fall Appeal"}]
        account.get_ads.return_value = [{
            "id": "ad-1", "campaign_id": "c-1", "updated_time": "2025-01-01T00:00:00+0000",
            "creative": {"id": "cr-1", "url_tags": "refcode=meta_fall_2025"},
        }]

        response = client.post(
            "/attribution/refcode-mappings/sync", json={"organization_id": str(organization.id)},
            headers=member_headers,
        )

        assert response.status_code == 200
        assert response.json()["mappings_created"] == 1
        mock_account_class.assert_called_with("act_42")
        assert test_db_session.query(RefcodeMapping).one().campaign_name == "Fall Appeal"

    @patch("donorlink.services.meta_ads_client.FacebookAdsApi")
    @patch("donorlink.services.meta_ads_client.AdAccount")
    def test_meta_errors_become_bad_gateway(
        self, mock_account_class, mock_api, client, member_headers, organization, test_db_session
    ):
        from facebook_business.exceptions import FacebookRequestError

        store_credentials(test_db_session, organization.id, "meta", {"access_token": "tok", "ad_account_id": "42"})
        mock_account_class.return_value.get_campaigns.side_effect = FacebookRequestError(
            message="expired", request_context={}, http_status=401, http_headers={}, body={}
        )

        response = client.post(
            "/attribution/refcode-mappings/sync", json={"organization_id": str(organization.id)},
            headers=member_headers,
        )

        assert response.status_code == 502
        assert response.json()["success"] is False
