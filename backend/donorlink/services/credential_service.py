"""Credential service for encrypting and loading per-organization API credentials.

WHAT:
    Stores processor and ad-platform credentials as one encrypted JSON object
    per (organization, platform) and restores them for API clients.

WHY:
    - Keeps encryption logic out of routers and workers.
    - Reconciliation and ingestion need the processor username/password; the
      refcode mapping refresh needs the Meta access token and ad account.

REFERENCES:
    - donorlink/security.py (encrypt_credentials / decrypt_credentials)
    - donorlink/models.py (ApiCredential)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from donorlink.exceptions import ValidationFailure
from donorlink.models import ApiCredential, Organization, PlatformEnum
from donorlink.security import decrypt_credentials, encrypt_credentials
from donorlink.services.meta_ads_client import MetaAdsClient
from donorlink.services.processor_export_client import (
    DEFAULT_BASE_URL,
    MAX_POLLS,
    POLL_INTERVAL_SECONDS,
    ProcessorExportClient,
)

logger = logging.getLogger(__name__)

REQUIRED_KEYS = {
    PlatformEnum.actblue.value: ("username", "password"),
    PlatformEnum.meta.value: ("access_token", "ad_account_id"),
}


def _validate(platform: str, credentials: Dict[str, Any]) -> None:
    missing = [k for k in REQUIRED_KEYS.get(platform, ()) if not credentials.get(k)]
    if missing:
        raise ValidationFailure(f"{platform} credentials missing: {', '.join(missing)}")


def store_credentials(
    db: Session,
    organization_id: UUID,
    platform: str,
    credentials: Dict[str, Any],
) -> ApiCredential:
    """Encrypt and upsert the credential row for (organization, platform)."""
    _validate(platform, credentials)
    ciphertext = encrypt_credentials(credentials, context=f"{organization_id}:{platform}")

    row = (
        db.query(ApiCredential)
        .filter(ApiCredential.organization_id == organization_id, ApiCredential.platform == platform)
        .first()
    )
    if row is None:
        row = ApiCredential(organization_id=organization_id, platform=platform)
        db.add(row)
    row.encrypted_credentials = ciphertext
    row.is_active = True
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    logger.info("[CREDENTIALS] Stored %s credentials for org %s", platform, organization_id)
    return row


def get_credentials(db: Session, organization_id: UUID, platform: str) -> Optional[Dict[str, Any]]:
    """Decrypted credentials, or None when the organization has none active.

    Raises:
        ValueError: stored ciphertext cannot be decrypted
    """
    row = (
        db.query(ApiCredential)
        .filter(
            ApiCredential.organization_id == organization_id,
            ApiCredential.platform == platform,
            ApiCredential.is_active.is_(True),
        )
        .first()
    )
    if row is None:
        return None
    return decrypt_credentials(row.encrypted_credentials, context=f"{organization_id}:{platform}")


def organizations_with_credentials(
    db: Session,
    platform: str,
    organization_id: Optional[UUID] = None,
) -> List[Tuple[Organization, ApiCredential]]:
    """Organizations with an active credential row for `platform`, by name."""
    query = (
        db.query(Organization, ApiCredential)
        .join(ApiCredential, ApiCredential.organization_id == Organization.id)
        .filter(ApiCredential.platform == platform, ApiCredential.is_active.is_(True))
    )
    if organization_id:
        query = query.filter(Organization.id == organization_id)
    return query.order_by(Organization.name.asc()).all()


# Client builders -------------------------------------------------


def build_export_client(
    credentials: Dict[str, Any],
    base_url: str = DEFAULT_BASE_URL,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    max_polls: int = MAX_POLLS,
) -> ProcessorExportClient:
    return ProcessorExportClient(
        username=credentials["username"],
        password=credentials["password"],
        base_url=base_url,
        poll_interval=poll_interval,
        max_polls=max_polls,
    )


def export_client_factory(db: Session, **client_options) -> Callable[[UUID], ProcessorExportClient]:
    """Per-organization export client factory for the transaction ingestor.

    Raises (when called):
        ValidationFailure: organization has no active processor credentials
    """
    def factory(organization_id: UUID) -> ProcessorExportClient:
        credentials = get_credentials(db, organization_id, PlatformEnum.actblue.value)
        if not credentials:
            raise ValidationFailure(
                "No active processor credentials", organization_id=str(organization_id)
            )
        return build_export_client(credentials, **client_options)

    return factory


def meta_client_for(db: Session, organization_id: UUID) -> Tuple[MetaAdsClient, str]:
    """Return (client, ad_account_id) for the organization's Meta credentials."""
    credentials = get_credentials(db, organization_id, PlatformEnum.meta.value)
    if not credentials:
        raise ValidationFailure("No active Meta credentials", organization_id=str(organization_id))
    client = MetaAdsClient(
        access_token=credentials["access_token"],
        app_id=credentials.get("app_id"),
        app_secret=credentials.get("app_secret"),
    )
    return client, credentials["ad_account_id"]
