"""Payment-processor export client.

WHAT:
    Async client for the processor's CSV export API:
        1. POST   {base_url}            -> {"id": ...}         (submit)
        2. GET    {base_url}/{id}       -> {"status", "download_url"} (poll)
        3. GET    download_url          -> CSV body            (download)

WHY:
    The export API is the system of record for donations. It is slow (exports
    take tens of seconds) and flaky, so every call has a timeout and polling is
    bounded; callers isolate failures to one chunk or one organization.

REFERENCES:
    - donorlink/services/transaction_ingestor.py
    - donorlink/services/reconciliation_service.py
"""

import asyncio
import csv
import io
import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import httpx

from donorlink.exceptions import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://secure.actblue.com/api/v1/csvs"
CSV_TYPE = "paid_contributions"
POLL_INTERVAL_SECONDS = 10
MAX_POLLS = 30
REQUEST_TIMEOUT_SECONDS = 30.0


class ProcessorExportError(UpstreamError):
    """Export API rejected a request or returned an unusable response."""
    pass


class ProcessorExportTimeout(ProcessorExportError):
    """Export was not ready within the polling budget."""
    pass


def normalize_header(name: str) -> str:
    """`"Donor First Name"` -> `"donor_first_name"`."""
    return "_".join(name.strip().strip('"').lower().split())


def parse_csv(text: str) -> List[Dict[str, str]]:
    """Parse export rows; quoted fields may contain commas and newlines."""
    if not text or not text.strip():
        return []
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    if reader.fieldnames is None:
        return []
    reader.fieldnames = [normalize_header(h) for h in reader.fieldnames]

    rows = []
    for row in reader:
        cleaned = {k: (v or "").strip() for k, v in row.items() if k}
        if any(cleaned.values()):
            rows.append(cleaned)
    return rows


def parse_amount(value: Optional[str]) -> Decimal:
    """Parse `"$1,250.00"` style amounts; unparseable values count as zero."""
    if not value:
        return Decimal("0")
    try:
        return Decimal(value.replace("$", "").replace(",", "").strip() or "0")
    except InvalidOperation:
        return Decimal("0")


def summarize_rows(rows: List[Dict[str, str]]) -> Tuple[int, Decimal]:
    """Row count and gross total of the `amount` column."""
    total = sum((parse_amount(row.get("amount")) for row in rows), Decimal("0"))
    return len(rows), total


class ProcessorExportClient:
    """Submit, poll and download paid-contribution exports for one account."""

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = DEFAULT_BASE_URL,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_polls: int = MAX_POLLS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth = httpx.BasicAuth(username, password)
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout
        self.transport = transport

    def _client(self, auth: bool = True) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=self.auth if auth else None,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    async def submit(self, start: date, end: date) -> str:
        payload = {
            "csv_type": CSV_TYPE,
            "date_range_start": start.isoformat(),
            "date_range_end": end.isoformat(),
        }
        logger.info("[PROCESSOR_EXPORT] Requesting export %s..%s", payload["date_range_start"], payload["date_range_end"])

        try:
            async with self._client() as client:
                response = await client.post(self.base_url, json=payload)
        except httpx.RequestError as e:
            raise ProcessorExportError(f"Export request failed: {e}") from e

        if response.status_code not in (200, 202):
            raise ProcessorExportError(f"Export API error {response.status_code}: {response.text[:200]}")

        try:
            export_id = response.json().get("id")
        except ValueError as e:
            raise ProcessorExportError("Export API returned invalid JSON") from e
        if not export_id:
            raise ProcessorExportError("Export API did not return an export id")

        logger.info("[PROCESSOR_EXPORT] Export %s created", export_id)
        return str(export_id)

    async def wait_for_download(self, export_id: str) -> str:
        """Poll until the export is complete; return its download URL."""
        async with self._client() as client:
            for attempt in range(1, self.max_polls + 1):
                try:
                    response = await client.get(f"{self.base_url}/{export_id}")
                except httpx.RequestError as e:
                    raise ProcessorExportError(f"Export status check failed: {e}") from e

                if response.status_code != 200:
                    raise ProcessorExportError(
                        f"Export status check error {response.status_code}: {response.text[:200]}"
                    )

                data: Dict[str, Any] = response.json()
                status = data.get("status")
                logger.debug("[PROCESSOR_EXPORT] Export %s status (poll %d): %s", export_id, attempt, status)

                if status == "complete":
                    url = data.get("download_url")
                    if not url:
                        raise ProcessorExportError(f"Export {export_id} complete without download_url")
                    return url
                if status == "failed":
                    raise ProcessorExportError(f"Export {export_id} generation failed")

                if attempt < self.max_polls:
                    await asyncio.sleep(self.poll_interval)

        raise ProcessorExportTimeout(
            f"Export {export_id} not ready after {self.max_polls} polls"
        )

    async def download_rows(self, url: str) -> List[Dict[str, str]]:
        # Download URLs are pre-signed; sending credentials to them is unnecessary
        try:
            async with self._client(auth=False) as client:
                response = await client.get(url)
        except httpx.RequestError as e:
            raise ProcessorExportError(f"Export download failed: {e}") from e

        if response.status_code != 200:
            raise ProcessorExportError(f"Export download error {response.status_code}")

        try:
            rows = parse_csv(response.text)
        except csv.Error as e:
            raise ProcessorExportError(f"Malformed export CSV: {e}") from e

        logger.info("[PROCESSOR_EXPORT] Downloaded %d rows", len(rows))
        return rows

    async def fetch_rows(self, start: date, end: date) -> List[Dict[str, str]]:
        export_id = await self.submit(start, end)
        url = await self.wait_for_download(export_id)
        return await self.download_rows(url)

    async def fetch_totals(self, start: date, end: date) -> Tuple[int, Decimal]:
        rows = await self.fetch_rows(start, end)
        return summarize_rows(rows)
