"""Meta Ads API Client Service.

WHAT:
    Wrapper for the Facebook Business SDK providing rate-limited, read-only
    access to the campaign and ad metadata the attribution engine consumes:
    campaigns, ads and the url_tags of each ad's creative.

WHY:
    - Refcodes are declared in each creative's url_tags (`refcode=...`); the
      mapping refresh needs them to resolve refcode -> campaign/ad/creative
    - Rate limiting enforcement (200 calls/hour per access token)
    - Graceful error handling (400/401/403 responses)

WHERE USED:
    - donorlink/services/refcode_mapping_service.py
    - donorlink/routers/attribution.py (POST /attribution/refcode-mappings/sync)

RATE LIMITS:
    - 200 API calls per hour per access token, shared across methods
    - Implements decorator: @rate_limit(calls_per_hour=200)

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api
"""

import logging
from collections import defaultdict, deque
from functools import wraps
from time import time, sleep
from typing import Any, Deque, Dict, List, Optional
from urllib.parse import parse_qs

from facebook_business.api import FacebookAdsApi
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.campaign import Campaign
from facebook_business.adobjects.ad import Ad
from facebook_business.adobjects.adcreative import AdCreative
from facebook_business.exceptions import FacebookRequestError

logger = logging.getLogger(__name__)

# Call timestamps per access token (one budget per token across all methods)
_rate_limit_call_times: Dict[str, Deque[float]] = defaultdict(deque)


def rate_limit(calls_per_hour: int):
    """Decorator to enforce rate limiting using a sliding window.

    WHAT:
        Tracks call timestamps per access token and sleeps when the next call
        would exceed `calls_per_hour`.

    WHY:
        Meta throttles per token/account across endpoints, so every decorated
        method of the same client draws from one budget.

    Args:
        calls_per_hour: Maximum number of calls allowed per hour
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            owner = args[0] if args else None
            key = getattr(owner, "access_token", None) or func.__qualname__
            call_times = _rate_limit_call_times[key]
            now = time()

            # Remove calls older than 1 hour (3600 seconds)
            while call_times and call_times[0] < now - 3600:
                call_times.popleft()

            # If at limit, sleep until oldest call expires
            if len(call_times) >= calls_per_hour:
                sleep_time = 3600 - (now - call_times[0]) + 1
                logger.warning(
                    "[META_CLIENT] Rate limit reached (%d calls/hour). Sleeping for %.1fs",
                    calls_per_hour, sleep_time,
                )
                sleep(sleep_time)
                call_times.popleft()

            call_times.append(now)
            return func(*args, **kwargs)
        return wrapper
    return decorator


class MetaAdsClientError(Exception):
    """Base exception for Meta Ads Client errors."""
    pass


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when authentication fails (401)."""
    pass


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient (403)."""
    pass


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when request is malformed (400)."""
    pass


def extract_refcode(url_tags: Optional[str]) -> Optional[str]:
    """Pull the `refcode` parameter out of an ad's url_tags query string.

    >>> extract_refcode("utm_source=fb&refcode=meta_climate_2024")
    'meta_climate_2024'
    """
    if not url_tags:
        return None
    params = parse_qs(url_tags.lstrip("?"), keep_blank_values=False)
    values = params.get("refcode") or params.get("ref_code")
    if not values:
        return None
    refcode = values[0].strip()
    # Unexpanded macros like {{ad.name}} are not usable refcodes
    if not refcode or "{{" in refcode:
        return None
    return refcode


class MetaAdsClient:
    """Client for reading campaign/ad metadata from the Meta Marketing API.

    Usage:
        ```python
        client = MetaAdsClient(access_token="YOUR_TOKEN")
        campaigns = client.get_campaigns("act_123456789")
        ads = client.get_ads("act_123456789")
        ```
    """

    def __init__(self, access_token: str, app_id: Optional[str] = None, app_secret: Optional[str] = None):
        """Initialize the SDK with the organization's access token.

        Args:
            access_token: Meta access token (system user or OAuth)
            app_id: Optional Meta app ID
            app_secret: Optional Meta app secret
        """
        self.access_token = access_token

        FacebookAdsApi.init(
            app_id=app_id,
            app_secret=app_secret,
            access_token=access_token
        )

        logger.info("[META_CLIENT] Initialized with access token")

    @staticmethod
    def normalize_account_id(account_id: str) -> str:
        return account_id if account_id.startswith("act_") else f"act_{account_id}"

    @rate_limit(calls_per_hour=200)
    def get_campaigns(self, account_id: str) -> List[Dict[str, Any]]:
        """Fetch all campaigns for an ad account.

        Returns:
            List of campaign dicts with id, name, status, updated_time

        Raises:
            MetaAdsAuthenticationError: Invalid or expired token
            MetaAdsPermissionError: Insufficient permissions for account
            MetaAdsValidationError: Invalid account ID format
            MetaAdsClientError: Other API errors
        """
        account_id = self.normalize_account_id(account_id)
        try:
            logger.info("[META_CLIENT] Fetching campaigns for account: %s", account_id)

            account = AdAccount(account_id)
            campaigns = account.get_campaigns(fields=[
                Campaign.Field.id,
                Campaign.Field.name,
                Campaign.Field.status,
                Campaign.Field.updated_time,
            ])

            # SDK iterator handles pagination automatically
            result = [dict(campaign) for campaign in campaigns]

            logger.info("[META_CLIENT] Fetched %d campaigns", len(result))
            return result

        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching campaigns for {account_id}")

    @rate_limit(calls_per_hour=200)
    def get_ads(self, account_id: str) -> List[Dict[str, Any]]:
        """Fetch all ads for an ad account, with the creative's url_tags.

        Returns:
            List of ad dicts with id, name, status, campaign_id, updated_time
            and creative ({id, url_tags} when the expansion is returned)
        """
        account_id = self.normalize_account_id(account_id)
        try:
            logger.info("[META_CLIENT] Fetching ads for account: %s", account_id)

            account = AdAccount(account_id)
            ads = account.get_ads(fields=[
                Ad.Field.id,
                Ad.Field.name,
                Ad.Field.status,
                Ad.Field.campaign_id,
                Ad.Field.updated_time,
                "creative{id,url_tags}",
            ])

            result = [dict(ad) for ad in ads]
            logger.info("[META_CLIENT] Fetched %d ads", len(result))
            return result

        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching ads for {account_id}")

    @rate_limit(calls_per_hour=200)
    def get_creative_url_tags(self, creative_id: str) -> Optional[str]:
        """Fetch url_tags for one creative (fallback when the ad expansion omits it)."""
        try:
            creative = AdCreative(creative_id).api_get(fields=[
                AdCreative.Field.id,
                AdCreative.Field.url_tags,
            ])
            return dict(creative).get("url_tags")

        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching creative {creative_id}")

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Translate FacebookRequestError into specific exception types.

        Raises:
            MetaAdsAuthenticationError: For 401 errors
            MetaAdsPermissionError: For 403 errors
            MetaAdsValidationError: For 400 errors
            MetaAdsClientError: For other errors (429, 500, etc.)
        """
        error_code = error.api_error_code()
        error_message = error.api_error_message()
        http_status = error.http_status()

        logger.error(
            "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
            context, http_status, error_code, error_message,
        )

        if http_status == 401:
            raise MetaAdsAuthenticationError(
                f"Authentication failed while {context}. Token may be expired or invalid."
            )
        elif http_status == 403:
            raise MetaAdsPermissionError(
                f"Permission denied while {context}. Check token permissions."
            )
        elif http_status == 400:
            raise MetaAdsValidationError(
                f"Invalid request while {context}: {error_message}"
            )
        elif http_status == 429:
            raise MetaAdsClientError(
                f"Rate limit exceeded while {context}."
            )
        else:
            raise MetaAdsClientError(
                f"API error while {context}: HTTP {http_status}, {error_message}"
            )
