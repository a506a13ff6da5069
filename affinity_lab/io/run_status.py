"""
Run-status store.

One status record per (dataset_id, country), persisted at
audiences/<dataset_id>/<country_lower>/_run/status.json. It is the only
source of truth for cross-invocation state and cancellation, so callers
re-read it for every check instead of keeping a copy.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from affinity_lab.core.models import RunState, RunStatus
from affinity_lab.io.blob_store import BlobStore
from affinity_lab.utils import constants

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def audience_prefix(dataset_id: str, country: str) -> str:
    return f"{constants.AUDIENCES_PREFIX}/{dataset_id}/{country.lower()}"


def status_key(dataset_id: str, country: str) -> str:
    return f"{audience_prefix(dataset_id, country)}/{constants.RUN_STATUS_DIR}/{constants.RUN_STATUS_FILE}"


class RunStatusStore:
    """Reads and writes run-status records in a blob store."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def get(self, dataset_id: str, country: str) -> Optional[RunStatus]:
        data = self.blobs.get_json(status_key(dataset_id, country))
        if not data:
            return None
        return RunStatus.from_dict(data)

    def put(self, status: RunStatus) -> None:
        status.updated_at = utc_now_iso()
        self.blobs.put_json(status_key(status.dataset_id, status.country), status.to_dict())

    def request_cancellation(self, dataset_id: str, country: str) -> Optional[RunStatus]:
        """Flag the running record for cancellation. Returns None when nothing is running."""
        status = self.get(dataset_id, country)
        if status is None or not status.is_running:
            return None
        status.cancel_requested = True
        status.message = "Cancellation requested"
        self.put(status)
        logger.info(f"Cancellation requested for run {status.run_id} ({dataset_id}/{country})")
        return status

    def is_cancellation_requested(self, dataset_id: str, country: str, run_id: str) -> bool:
        status = self.get(dataset_id, country)
        if status is None or status.run_id != run_id:
            # Superseded by another run
            return True
        return status.cancel_requested


def is_stale(status: RunStatus, stale_after_seconds: float, now: Optional[datetime] = None) -> bool:
    """A running record not updated within stale_after_seconds is treated as abandoned."""
    if status.status != RunState.RUNNING:
        return False
    last = parse_iso(status.updated_at) or parse_iso(status.started_at)
    if last is None:
        return True
    now = now or datetime.now(timezone.utc)
    return (now - last).total_seconds() > stale_after_seconds
