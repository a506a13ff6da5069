"""
Result persistence.

Per (dataset, country, recipe) under audiences/<dataset>/<country>/<recipe>/:
    <timestamp>-result.json   full LabAnalysisResult
    <timestamp>-segment.csv   every segment device (batch runs)
    latest.json               AudienceRunResult summary

All writes are best-effort: a storage failure is logged and the run carries
on with the in-memory result.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd

from affinity_lab.core.models import AudienceRunResult, LabAnalysisResult, RunState, SegmentDevice
from affinity_lab.io.blob_store import BlobStore
from affinity_lab.io.run_status import audience_prefix
from affinity_lab.utils import constants
from affinity_lab.utils.errors import safe_execute

logger = logging.getLogger(__name__)

SEGMENT_CSV_COLUMNS = ["ad_id", "matched_steps", "total_visits", "avg_dwell_minutes", "categories"]


def result_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ")


def recipe_prefix(dataset_id: str, country: str, recipe_id: str) -> str:
    return f"{audience_prefix(dataset_id, country)}/{recipe_id}"


def latest_key(dataset_id: str, country: str, recipe_id: str) -> str:
    return f"{recipe_prefix(dataset_id, country, recipe_id)}/{constants.LATEST_FILE}"


def segment_csv(devices: List[SegmentDevice]) -> str:
    df = pd.DataFrame(
        [
            (d.device_id, d.matched_step_count, d.total_visits, d.avg_dwell_minutes, ";".join(d.categories_visited))
            for d in devices
        ],
        columns=SEGMENT_CSV_COLUMNS,
    )
    return df.to_csv(index=False)


def summarize(
    result: LabAnalysisResult,
    recipe_name: str,
    run_id: Optional[str],
    started_at: Optional[str],
) -> AudienceRunResult:
    """Headline numbers of a completed analysis, as stored in latest.json."""
    stats = result.stats
    return AudienceRunResult(
        recipe_id=result.config.recipe.id,
        name=recipe_name,
        dataset_id=result.config.dataset_id,
        country=result.config.country,
        status=RunState.COMPLETED,
        run_id=run_id,
        started_at=started_at,
        completed_at=result.analyzed_at,
        segment_size=stats.segment_size,
        segment_percent=stats.segment_percent,
        total_postal_codes=stats.total_postal_codes,
        avg_affinity_index=stats.avg_affinity_index,
        top_hotspots=[
            {"postal_code": h.postal_code, "city": h.city, "category": h.category, "affinity_index": h.affinity_index}
            for h in stats.top_hotspots[:constants.LATEST_HOTSPOTS_LIMIT]
        ],
    )


class ResultWriter:
    """Writes analysis artefacts for one (dataset, country) pair."""

    def __init__(self, blobs: BlobStore, segment_preview_limit: int = constants.SEGMENT_PREVIEW_LIMIT):
        self.blobs = blobs
        self.segment_preview_limit = segment_preview_limit

    def save_result(self, result: LabAnalysisResult, timestamp: Optional[str] = None) -> Optional[str]:
        """Full result JSON; the embedded segment is truncated to the preview limit."""
        cfg = result.config
        key = f"{recipe_prefix(cfg.dataset_id, cfg.country, cfg.recipe.id)}/{timestamp or result_timestamp()}-result.json"
        stored = safe_execute(
            self.blobs.put_json, key, result.to_dict(segment_limit=self.segment_preview_limit),
            error_context=f"Saving result {key}",
        )
        return key if stored is not None else None

    def save_segment_csv(
        self, dataset_id: str, country: str, recipe_id: str,
        devices: List[SegmentDevice], timestamp: Optional[str] = None,
    ) -> Optional[str]:
        key = f"{recipe_prefix(dataset_id, country, recipe_id)}/{timestamp or result_timestamp()}-segment.csv"
        stored = safe_execute(
            self.blobs.put_text, key, segment_csv(devices),
            error_context=f"Saving segment export {key}",
        )
        return key if stored is not None else None

    def save_latest(self, summary: AudienceRunResult) -> None:
        key = latest_key(summary.dataset_id, summary.country, summary.recipe_id)
        safe_execute(self.blobs.put_json, key, summary.to_dict(), error_context=f"Saving summary {key}")

    def persist(
        self,
        result: LabAnalysisResult,
        recipe_name: str,
        run_id: Optional[str] = None,
        started_at: Optional[str] = None,
        with_segment_csv: bool = False,
    ) -> AudienceRunResult:
        """Write result, optional segment CSV and latest.json; return the summary."""
        cfg = result.config
        timestamp = result_timestamp()
        summary = summarize(result, recipe_name, run_id, started_at)
        summary.result_key = self.save_result(result, timestamp)
        if with_segment_csv:
            summary.segment_csv_key = self.save_segment_csv(
                cfg.dataset_id, cfg.country, cfg.recipe.id, result.segment_devices, timestamp
            )
        self.save_latest(summary)
        logger.info(f"Persisted results for {cfg.recipe.id} ({cfg.dataset_id}/{cfg.country})")
        return summary


def load_audience_results(blobs: BlobStore, dataset_id: str, country: str) -> List[AudienceRunResult]:
    """Every readable latest.json under the dataset/country prefix."""
    prefix = audience_prefix(dataset_id, country) + "/"
    results = []
    for key in blobs.list_keys(prefix):
        if not key.endswith("/" + constants.LATEST_FILE):
            continue
        data = safe_execute(blobs.get_json, key, error_context=f"Reading {key}")
        if not data:
            continue
        try:
            results.append(AudienceRunResult(**data))
        except TypeError as e:
            logger.warning(f"Skipping unreadable summary {key}: {e}")
    results.sort(key=lambda r: r.recipe_id)
    return results
