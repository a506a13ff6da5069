"""
Analysis context.

Everything a run needs that outlives a single call (query executor, blob
store, run-status store, the warmed geocoder caches, scorer and audience
catalog) is held in one explicit object and passed into the orchestrator,
so tests can swap any collaborator for a fake.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from affinity_lab.config.loader import LabSettings, load_settings
from affinity_lab.core.audiences import AudienceCatalog, load_catalog
from affinity_lab.core.scoring import AffinityScorer
from affinity_lab.geo.polygons import PolygonStore
from affinity_lab.geo.reverse_geocode import CoordinateCache, ReverseGeocoder
from affinity_lab.io.blob_store import BlobStore, build_blob_store
from affinity_lab.io.query import PollPolicy, QueryExecutor
from affinity_lab.io.run_status import RunStatusStore
from affinity_lab.utils.env import env_optional

logger = logging.getLogger(__name__)


@dataclass
class AnalysisContext:
    settings: LabSettings
    executor: QueryExecutor
    blobs: BlobStore
    status_store: RunStatusStore
    geocoder: ReverseGeocoder
    scorer: AffinityScorer
    catalog: AudienceCatalog
    poll_policy: PollPolicy


def build_geocoder(settings: LabSettings, blobs: Optional[BlobStore] = None) -> ReverseGeocoder:
    geo = settings.geocoding
    polygons = PolygonStore(
        geo.polygon_dir,
        url_template=geo.polygon_url_template,
        blobs=blobs,
        timeout_seconds=geo.download_timeout_seconds,
    )
    cache = CoordinateCache(
        max_entries=geo.cache_max_entries,
        evict_fraction=geo.cache_evict_fraction,
        precision=geo.coordinate_precision,
    )
    return ReverseGeocoder(polygons, cache)


def build_executor(settings: LabSettings, poll_policy: PollPolicy) -> QueryExecutor:
    from affinity_lab.io.athena import AthenaQueryExecutor

    q = settings.query
    return AthenaQueryExecutor(
        database=q.database,
        output_location=q.output_location,
        temp_location=q.temp_location,
        workgroup=q.workgroup,
        region_name=env_optional("AWS_REGION"),
        poll_policy=poll_policy,
    )


def build_context(
    settings: Optional[LabSettings] = None,
    executor: Optional[QueryExecutor] = None,
    blobs: Optional[BlobStore] = None,
    catalog: Optional[AudienceCatalog] = None,
) -> AnalysisContext:
    """
    Assemble a context from settings, defaulting to Athena and the configured blob store.

    Raises:
        ConfigurationError: if Athena is needed but credentials or the output location are missing
    """
    settings = settings or load_settings()
    poll_policy = PollPolicy(settings.query.poll_interval_seconds, settings.query.max_poll_attempts)
    if blobs is None:
        blobs = build_blob_store(settings.storage.blob_root, settings.storage.bucket)
    if executor is None:
        executor = build_executor(settings, poll_policy)
    context = AnalysisContext(
        settings=settings,
        executor=executor,
        blobs=blobs,
        status_store=RunStatusStore(blobs),
        geocoder=build_geocoder(settings, blobs),
        scorer=AffinityScorer(settings.scoring),
        catalog=catalog or load_catalog(),
        poll_policy=poll_policy,
    )
    logger.info(f"Analysis context ready (executor={type(executor).__name__}, blobs={type(blobs).__name__})")
    return context
