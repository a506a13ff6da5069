"""
Run orchestration.

Sequences spatial join, recipe matching, origin resolution, geocoding and
scoring in three modes:

- run_single: one recipe, synchronous, reports progress through a callback.
- run_batch: many recipes against one spatial join (the union of their
  categories); recipes are then matched and scored in memory one by one.
- start_batch_async / advance_batch: the batch split into externally
  resumable phases for callers with a bounded execution window. Each call
  re-reads the run-status record, re-polls the query handles stored there
  and moves the pipeline forward by at most one phase:

      spatial     materializing join + device count submitted
      origins     materializing origin join submitted
      processing  both tables read, recipes scored, results persisted
      done        temp tables dropped (best-effort)

Cancellation is cooperative. It is checked before every async phase and
before every recipe of a batch; once seen, the remaining recipes are marked
cancelled and no further queries are issued for them.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from affinity_lab.core.audiences import collect_all_categories
from affinity_lab.core.context import AnalysisContext
from affinity_lab.core.models import (
    AudienceRunResult,
    GeocodingCoverage,
    GeoInfo,
    LabAnalysisResult,
    LabConfig,
    LabStats,
    PipelinePhase,
    Recipe,
    RunPhase,
    RunState,
    RunStatus,
    Visit,
)
from affinity_lab.core.origins import attach_origins, build_materialized_origins_sql, parse_origin_rows, resolve_origins
from affinity_lab.core.progress import ProgressCallback, ProgressEvent, no_progress
from affinity_lab.core.recipe import build_segment, group_by_device
from affinity_lab.core.results import ResultWriter
from affinity_lab.core.scoring import compute_stats
from affinity_lab.core.spatial_join import (
    SpatialJoinEngine,
    SpatialJoinParams,
    parse_total_devices,
    parse_visit_rows,
)
from affinity_lab.geo.reverse_geocode import GeocodeKind, GeocodePoint, aggregate_by_zipcode, batch_reverse_geocode
from affinity_lab.io.query import QueryState, run_query, temp_table_name
from affinity_lab.io.run_status import is_stale, utc_now_iso
from affinity_lab.utils import constants
from affinity_lab.utils.errors import LaboratoryError, QueryExecutionError, RunInProgressError, safe_execute
from affinity_lab.utils.run_id import generate_run_id
from affinity_lab.utils.run_logging import RunLogHandler

logger = logging.getLogger(__name__)

HANDLE_SPATIAL_JOIN = "spatial_join"
HANDLE_TOTAL_DEVICES = "total_devices"
HANDLE_ORIGINS = "origins"


def device_homes(visits_by_device: Dict[str, List[Visit]]) -> Dict[str, Tuple[float, float]]:
    """
    Home coordinate per device: the origin seen on the most distinct days.

    Ties go to the coordinate seen first. Devices without any origin are absent.
    """
    homes = {}
    for device_id, visits in visits_by_device.items():
        days: Dict[Tuple[float, float], Set[str]] = {}
        first_seen: Dict[Tuple[float, float], str] = {}
        for v in visits:
            if not v.has_origin:
                continue
            key = (v.origin_lat, v.origin_lng)
            days.setdefault(key, set()).add(v.date)
            if key not in first_seen or v.date < first_seen[key]:
                first_seen[key] = v.date
        if days:
            homes[device_id] = min(days, key=lambda k: (-len(days[k]), first_seen[k], k))
    return homes


def _progress_for(index: int, total: int) -> int:
    span = constants.PROGRESS_SCORING_DONE - constants.PROGRESS_SCORING_START
    return constants.PROGRESS_SCORING_START + round((index + 1) / max(total, 1) * span)


def _empty_result(config: LabConfig, total_devices: int) -> LabAnalysisResult:
    return LabAnalysisResult(
        config=config,
        analyzed_at=utc_now_iso(),
        segment_total=0,
        segment_devices=[],
        records=[],
        profiles=[],
        stats=LabStats(total_devices_in_dataset=total_devices),
    )


class RunOrchestrator:
    """Runs laboratory analyses against an AnalysisContext."""

    def __init__(self, ctx: AnalysisContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.engine = SpatialJoinEngine(ctx.executor, ctx.poll_policy)
        self.writer = ResultWriter(ctx.blobs, ctx.settings.run.segment_preview_limit)

    # ------------------------------------------------------------------
    # Shared building blocks
    # ------------------------------------------------------------------

    def _join_params(
        self,
        dataset_id: str,
        country: str,
        categories: Iterable[str],
        date_from: Optional[str],
        date_to: Optional[str],
        radius_m: Optional[float],
    ) -> SpatialJoinParams:
        spatial = self.settings.spatial
        params = SpatialJoinParams(
            dataset_id=dataset_id,
            categories=frozenset(categories),
            country=country,
            date_from=date_from,
            date_to=date_to,
            radius_m=radius_m if radius_m is not None else spatial.radius_m,
            cell_size_deg=spatial.cell_size_deg,
            accuracy_threshold_m=spatial.accuracy_threshold_m,
            poi_table=self.settings.poi_table,
        )
        params.validate()
        return params

    def _resolve_origins_for(
        self,
        params: SpatialJoinParams,
        device_ids: Sequence[str],
        visits_by_device: Dict[str, List[Visit]],
        on_batch=None,
    ) -> int:
        """Query origins for the given devices and attach them to their visits."""
        if not device_ids:
            return 0
        origins = resolve_origins(
            self.ctx.executor,
            params.dataset_id,
            device_ids,
            params.ping_filter,
            batch_size=self.settings.query.origin_batch_size,
            poll_policy=self.ctx.poll_policy,
            on_batch=on_batch,
        )
        visits = [v for d in device_ids for v in visits_by_device.get(d, [])]
        return len(attach_origins(visits, origins))

    def _coverage(self, visits_by_device: Dict[str, List[Visit]], country: str) -> GeocodingCoverage:
        homes = device_homes(visits_by_device)
        counts: Dict[Tuple[float, float], int] = {}
        for coord in homes.values():
            counts[coord] = counts.get(coord, 0) + 1
        points = [GeocodePoint(lat, lng, n) for (lat, lng), n in counts.items()]
        aggregation = aggregate_by_zipcode(batch_reverse_geocode(self.ctx.geocoder, points, country), len(homes))
        return GeocodingCoverage(
            matched_devices=aggregation.matched_devices,
            foreign_devices=aggregation.foreign_devices,
            unmatched_domestic=aggregation.unmatched_domestic,
        )

    def _geocode_visits(self, visits: Iterable[Visit], country: str) -> List[Tuple[Visit, GeoInfo]]:
        geocoded = []
        for v in visits:
            if not v.has_origin:
                continue
            outcome = self.ctx.geocoder.classify(v.origin_lat, v.origin_lng, country)
            if outcome.kind == GeocodeKind.MATCHED:
                geocoded.append((v, outcome.geo))
        return geocoded

    def analyze(
        self,
        config: LabConfig,
        visits_by_device: Dict[str, List[Visit]],
        total_devices: int,
        segment=None,
        report: ProgressCallback = no_progress,
    ) -> LabAnalysisResult:
        """
        Score one recipe against visits whose origins are already attached.

        Only the segment's visits in the recipe's own categories are scored,
        so categories fetched for other recipes of a batch never leak in.
        """
        recipe = config.recipe
        if segment is None:
            segment = build_segment(recipe, visits_by_device)
        if not segment:
            logger.info(f"Recipe {recipe.id}: empty segment, nothing to score")
            return _empty_result(config, total_devices)

        categories = recipe.categories
        scoped = {
            d.device_id: [v for v in visits_by_device[d.device_id] if v.category in categories]
            for d in segment
        }
        report(ProgressEvent("geocoding", constants.PROGRESS_GEOCODING_START, "Geocoding device origins..."))
        geocoded = self._geocode_visits((v for visits in scoped.values() for v in visits), config.country)
        coverage = self._coverage(scoped, config.country)
        report(ProgressEvent(
            "geocoding", constants.PROGRESS_GEOCODING_DONE,
            f"Geocoded {len(geocoded)} visits ({coverage.matched_devices} devices matched)",
        ))

        report(ProgressEvent("scoring", constants.PROGRESS_SCORING_START, "Computing affinity indices..."))
        scoring = self.ctx.scorer.score(geocoded, config.min_visits_per_zipcode)
        stats = compute_stats(scoring, segment, total_devices, coverage, self.settings.scoring)
        report(ProgressEvent(
            "scoring", constants.PROGRESS_SCORING_DONE,
            f"Scored {len(scoring.records)} postal code x category pairs",
        ))
        return LabAnalysisResult(
            config=config,
            analyzed_at=utc_now_iso(),
            segment_total=len(segment),
            segment_devices=segment,
            records=scoring.records,
            profiles=scoring.profiles,
            stats=stats,
        )

    # ------------------------------------------------------------------
    # Single recipe
    # ------------------------------------------------------------------

    def run_single(self, config: LabConfig, report: ProgressCallback = no_progress) -> LabAnalysisResult:
        """
        Synchronous single-recipe analysis; the result is persisted before it is returned.

        Raises:
            ConfigurationError: unsupported country, missing polygons or invalid radius
            QueryExecutionError, QueryTimeoutError: the spatial join failed
        """
        recipe = config.recipe
        self.ctx.geocoder.polygons.ensure_available(config.country)
        params = self._join_params(
            config.dataset_id, config.country, recipe.categories, config.date_from, config.date_to, config.radius_m
        )
        logger.info(f"Single run for recipe {recipe.id} on {config.dataset_id}/{config.country}")

        report(ProgressEvent("spatial_join", constants.PROGRESS_SPATIAL_JOIN_START, "Matching pings to POIs..."))
        join = self.engine.run(params)
        report(ProgressEvent(
            "spatial_join", constants.PROGRESS_SPATIAL_JOIN_DONE,
            f"Found {len(join.visits)} visits from {join.device_count} devices",
        ))

        visits_by_device = group_by_device(join.visits)
        segment = build_segment(recipe, visits_by_device)
        report(ProgressEvent(
            "recipe", constants.PROGRESS_RECIPE_DONE,
            f"{len(segment)} of {len(visits_by_device)} devices match the recipe",
        ))

        if segment:
            report(ProgressEvent("origins", constants.PROGRESS_ORIGINS_START, "Resolving device origins..."))

            def on_batch(done: int, total: int) -> None:
                report(ProgressEvent(
                    "origins", constants.PROGRESS_ORIGINS_START, f"Origins for {done}/{total} devices",
                    current=done, total=total,
                ))

            self._resolve_origins_for(params, [d.device_id for d in segment], visits_by_device, on_batch)

        result = self.analyze(config, visits_by_device, join.total_devices, segment, report)
        self.writer.persist(result, recipe.name)
        report(ProgressEvent("done", constants.PROGRESS_COMPLETE, "Analysis complete"))
        return result

    # ------------------------------------------------------------------
    # Batch bookkeeping
    # ------------------------------------------------------------------

    def _claim(
        self,
        dataset_id: str,
        country: str,
        recipes: Sequence[Recipe],
        date_from: Optional[str],
        date_to: Optional[str],
        radius_m: Optional[float],
        min_visits: Optional[int],
    ) -> RunStatus:
        """Persist a fresh running record, refusing while a live run holds the key."""
        existing = self.ctx.status_store.get(dataset_id, country)
        if existing is not None and existing.is_running:
            if not is_stale(existing, self.settings.run.stale_after_seconds):
                raise RunInProgressError(existing.run_id, dataset_id, country)
            logger.warning(f"Overwriting stale run {existing.run_id} for {dataset_id}/{country}")

        now = utc_now_iso()
        status = RunStatus(
            run_id=generate_run_id(),
            dataset_id=dataset_id,
            country=country,
            audience_ids=[r.id for r in recipes],
            audience_states={r.id: RunState.RUNNING.value for r in recipes},
            total=len(recipes),
            message="Starting",
            started_at=now,
            date_from=date_from,
            date_to=date_to,
            radius_m=radius_m,
            min_visits_per_zipcode=min_visits,
            recipes=[r.to_dict() for r in recipes],
        )
        self.ctx.status_store.put(status)
        return status

    def _save_status(self, record: RunStatus, **changes) -> None:
        """Apply changes and persist, keeping a cancellation flag set by another caller."""
        for name, value in changes.items():
            setattr(record, name, value)
        stored = self.ctx.status_store.get(record.dataset_id, record.country)
        if stored is not None and stored.run_id != record.run_id:
            logger.warning(f"Run {record.run_id} was superseded by {stored.run_id}; status not saved")
            return
        if stored is not None and stored.cancel_requested:
            record.cancel_requested = True
        if record.percent > constants.PROGRESS_COMPLETE:
            record.percent = constants.PROGRESS_COMPLETE
        safe_execute(self.ctx.status_store.put, record, error_context=f"Saving status of run {record.run_id}")

    def _config_for(self, status: RunStatus, recipe: Recipe) -> LabConfig:
        min_visits = status.min_visits_per_zipcode
        return LabConfig(
            dataset_id=status.dataset_id,
            country=status.country,
            recipe=recipe,
            date_from=status.date_from,
            date_to=status.date_to,
            min_visits_per_zipcode=min_visits if min_visits is not None else self.settings.scoring.min_visits_per_zipcode,
            radius_m=status.radius_m if status.radius_m is not None else self.settings.spatial.radius_m,
        )

    def _cancelled_result(self, status: RunStatus, recipe: Recipe) -> AudienceRunResult:
        status.audience_states[recipe.id] = RunState.CANCELLED.value
        return AudienceRunResult(
            recipe_id=recipe.id,
            name=recipe.name,
            dataset_id=status.dataset_id,
            country=status.country,
            status=RunState.CANCELLED,
            run_id=status.run_id,
            started_at=status.started_at,
            completed_at=utc_now_iso(),
            error="Cancelled by user",
        )

    def _process_recipes(
        self,
        status: RunStatus,
        recipes: Sequence[Recipe],
        visits_by_device: Dict[str, List[Visit]],
        total_devices: int,
        report: ProgressCallback = no_progress,
        params: Optional[SpatialJoinParams] = None,
    ) -> List[AudienceRunResult]:
        """
        Score each recipe in turn, checking for cancellation before each one.

        With params given, origins are resolved per recipe for devices not yet
        attempted, so a cancelled recipe never issues its origin queries.
        A failing recipe is recorded as failed and its siblings proceed.
        """
        attempted: Set[str] = set()
        results: List[AudienceRunResult] = []
        for index, recipe in enumerate(recipes):
            if self.ctx.status_store.is_cancellation_requested(status.dataset_id, status.country, status.run_id):
                logger.info(f"Run {status.run_id}: cancellation requested after {index} recipes")
                status.cancel_requested = True
                results.extend(self._cancelled_result(status, r) for r in recipes[index:])
                break

            percent = _progress_for(index, len(recipes))
            message = f"Processing {recipe.name} ({index + 1}/{len(recipes)})..."
            report(ProgressEvent("processing", percent, message, current=index + 1, total=len(recipes)))
            self._save_status(
                status, phase=RunPhase.PROCESSING, current=index + 1,
                current_audience_name=recipe.name, message=message,
            )

            try:
                config = self._config_for(status, recipe)
                segment = build_segment(recipe, visits_by_device)
                if params is not None:
                    pending = sorted(d.device_id for d in segment if d.device_id not in attempted)
                    self._resolve_origins_for(params, pending, visits_by_device)
                    attempted.update(pending)
                result = self.analyze(config, visits_by_device, total_devices, segment)
                summary = self.writer.persist(
                    result, recipe.name, status.run_id, status.started_at, with_segment_csv=True
                )
                status.completed_audiences.append(recipe.id)
                status.audience_states[recipe.id] = RunState.COMPLETED.value
                logger.info(
                    f"{recipe.name}: {result.stats.segment_size} devices, "
                    f"avg affinity {result.stats.avg_affinity_index}"
                )
            except Exception as e:
                logger.error(f"Recipe {recipe.id} failed: {type(e).__name__}: {e}")
                status.audience_states[recipe.id] = RunState.FAILED.value
                summary = AudienceRunResult(
                    recipe_id=recipe.id,
                    name=recipe.name,
                    dataset_id=status.dataset_id,
                    country=status.country,
                    status=RunState.FAILED,
                    run_id=status.run_id,
                    started_at=status.started_at,
                    completed_at=utc_now_iso(),
                    error=str(e),
                )
            results.append(summary)
            report(ProgressEvent(
                "recipe_complete", percent, f"Finished {recipe.name}", current=index + 1, total=len(recipes),
            ))
            self._save_status(status, percent=percent)
        return results

    def _finish(self, status: RunStatus, results: Sequence[AudienceRunResult]) -> RunStatus:
        failed = [r.recipe_id for r in results if r.status == RunState.FAILED]
        if any(r.status == RunState.CANCELLED for r in results):
            state, message = RunState.CANCELLED, f"Cancelled after {len(status.completed_audiences)} recipes"
        elif results and len(failed) == len(results):
            state, message = RunState.FAILED, "Every recipe failed"
        else:
            state = RunState.COMPLETED
            message = f"Completed {len(status.completed_audiences)}/{status.total} recipes"
            if failed:
                message += f" ({len(failed)} failed: {', '.join(failed)})"
        self._save_status(
            status,
            status=state,
            message=message,
            percent=constants.PROGRESS_COMPLETE,
            completed_at=utc_now_iso(),
            error="; ".join(f"{r.recipe_id}: {r.error}" for r in results if r.status == RunState.FAILED) or None,
        )
        logger.info(f"Run {status.run_id} finished: {state.value} ({message})")
        return status

    def _fail(self, status: RunStatus, error: Exception) -> None:
        logger.error(f"Run {status.run_id} failed: {type(error).__name__}: {error}")
        for recipe_id, state in status.audience_states.items():
            if state == RunState.RUNNING.value:
                status.audience_states[recipe_id] = RunState.FAILED.value
        self._save_status(
            status, status=RunState.FAILED, error=str(error), message="Run failed", completed_at=utc_now_iso()
        )

    # ------------------------------------------------------------------
    # Synchronous batch
    # ------------------------------------------------------------------

    def run_batch(
        self,
        dataset_id: str,
        country: str,
        recipes: Sequence[Recipe],
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        radius_m: Optional[float] = None,
        min_visits: Optional[int] = None,
        report: ProgressCallback = no_progress,
    ) -> List[AudienceRunResult]:
        """
        Evaluate many recipes against a single spatial join.

        Raises:
            RunInProgressError: a live run already holds (dataset_id, country)
            ConfigurationError, QueryExecutionError, QueryTimeoutError: the run as a whole failed
        """
        self.ctx.geocoder.polygons.ensure_available(country)
        params = self._join_params(
            dataset_id, country, collect_all_categories(recipes), date_from, date_to, radius_m
        )
        status = self._claim(dataset_id, country, recipes, date_from, date_to, radius_m, min_visits)
        with RunLogHandler(status.run_id, self.settings.storage.log_root):
            try:
                logger.info(
                    f"Batch run {status.run_id}: {len(recipes)} recipes, "
                    f"{len(params.categories)} categories on {dataset_id}/{country}"
                )
                report(ProgressEvent("spatial_join", constants.PROGRESS_SPATIAL_JOIN_START, "Matching pings to POIs..."))
                self._save_status(status, phase=RunPhase.SPATIAL_JOIN, percent=constants.PROGRESS_SPATIAL_JOIN_START)
                join = self.engine.run(params)
                report(ProgressEvent(
                    "spatial_join", constants.PROGRESS_SPATIAL_JOIN_DONE,
                    f"Found {len(join.visits)} visits from {join.device_count} devices",
                ))
                self._save_status(
                    status, phase=RunPhase.ORIGINS, percent=constants.PROGRESS_SPATIAL_JOIN_DONE,
                    message=f"Spatial join found {len(join.visits)} visits",
                )
                visits_by_device = group_by_device(join.visits)
                results = self._process_recipes(
                    status, recipes, visits_by_device, join.total_devices, report, params=params
                )
            except Exception as e:
                self._fail(status, e)
                raise
            self._finish(status, results)
        report(ProgressEvent("done", constants.PROGRESS_COMPLETE, status.message))
        return results

    # ------------------------------------------------------------------
    # Asynchronous batch
    # ------------------------------------------------------------------

    def start_batch_async(
        self,
        dataset_id: str,
        country: str,
        recipes: Sequence[Recipe],
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        radius_m: Optional[float] = None,
        min_visits: Optional[int] = None,
    ) -> RunStatus:
        """Phase 1: submit the materializing spatial join and the device count, then return."""
        self.ctx.geocoder.polygons.ensure_available(country)
        params = self._join_params(
            dataset_id, country, collect_all_categories(recipes), date_from, date_to, radius_m
        )
        status = self._claim(dataset_id, country, recipes, date_from, date_to, radius_m, min_visits)
        with RunLogHandler(status.run_id, self.settings.storage.log_root):
            visits_table = temp_table_name("visits", status.run_id)
            try:
                handles = self.engine.submit_materializing(params, visits_table)
            except Exception as e:
                self._fail(status, e)
                raise
            self._save_status(
                status,
                pipeline_phase=PipelinePhase.SPATIAL,
                phase=RunPhase.SPATIAL_JOIN,
                percent=constants.PROGRESS_SPATIAL_JOIN_START,
                query_handles=handles,
                visits_table=visits_table,
                message="Spatial join submitted",
            )
        return status

    def _handles_done(self, status: RunStatus, names: Sequence[str]) -> bool:
        """Poll stored handles once each; True when all succeeded."""
        done = True
        for name in names:
            handle = status.query_handles[name]
            polled = self.ctx.executor.poll(handle)
            if polled.state in (QueryState.FAILED, QueryState.CANCELLED):
                raise QueryExecutionError(polled.error or f"Query {polled.state.value}", handle=handle)
            if polled.state != QueryState.SUCCEEDED:
                done = False
        return done

    def advance_batch(self, dataset_id: str, country: str) -> Optional[RunStatus]:
        """
        Move an async batch forward by at most one phase and return its status.

        Safe to call repeatedly from independent invocations; a terminal or
        missing record is returned unchanged.
        """
        status = self.ctx.status_store.get(dataset_id, country)
        if status is None or not status.is_running or status.pipeline_phase is None:
            return status

        with RunLogHandler(status.run_id, self.settings.storage.log_root):
            try:
                if status.cancel_requested:
                    return self._finish_cancelled(status)

                if status.pipeline_phase == PipelinePhase.SPATIAL:
                    if not self._handles_done(status, [HANDLE_SPATIAL_JOIN, HANDLE_TOTAL_DEVICES]):
                        self._save_status(status, message="Spatial join running")
                        return status
                    if status.continue_triggered:
                        logger.info(f"Run {status.run_id}: origin resolution already being submitted")
                        return status
                    self._save_status(status, continue_triggered=True, message="Submitting origin resolution")
                    self._submit_origins(status)
                    return status

                if status.pipeline_phase == PipelinePhase.ORIGINS:
                    if not self._handles_done(status, [HANDLE_ORIGINS]):
                        self._save_status(status, message="Resolving origins")
                        return status
                    self._save_status(
                        status, pipeline_phase=PipelinePhase.PROCESSING, phase=RunPhase.GEOCODING,
                        percent=constants.PROGRESS_GEOCODING_START, message="Reading materialized tables",
                    )
                    if self.ctx.status_store.is_cancellation_requested(dataset_id, country, status.run_id):
                        return self._finish_cancelled(status)
                    self._process_async(status)
                    return status
            except Exception as e:
                self._fail(status, e)
                self._cleanup(status)
                if not isinstance(e, LaboratoryError):
                    raise
        return status

    def _submit_origins(self, status: RunStatus) -> None:
        """Phase 2: one materializing query resolving origins for every matched device."""
        origins_table = temp_table_name("origins", status.run_id)
        params = self._join_params(
            status.dataset_id, status.country,
            collect_all_categories(Recipe.from_dict(r) for r in status.recipes),
            status.date_from, status.date_to, status.radius_m,
        )
        sql = build_materialized_origins_sql(status.dataset_id, status.visits_table, params.ping_filter)
        handle = self.ctx.executor.submit_materializing(sql, origins_table)
        logger.info(f"Run {status.run_id}: submitted origin join into {origins_table} ({handle})")
        handles = dict(status.query_handles)
        handles[HANDLE_ORIGINS] = handle
        self._save_status(
            status,
            pipeline_phase=PipelinePhase.ORIGINS,
            phase=RunPhase.ORIGINS,
            percent=constants.PROGRESS_ORIGINS_START,
            query_handles=handles,
            origins_table=origins_table,
            message="Origin resolution submitted",
        )

    def _process_async(self, status: RunStatus) -> None:
        """Phase 3: read both materialized tables, score every recipe, clean up."""
        executor = self.ctx.executor
        policy = self.ctx.poll_policy
        visits = parse_visit_rows(run_query(executor, f"SELECT * FROM {status.visits_table}", policy))
        origins = parse_origin_rows(run_query(executor, f"SELECT * FROM {status.origins_table}", policy))
        total_devices = parse_total_devices(executor.fetch(status.query_handles[HANDLE_TOTAL_DEVICES]))
        resolved = attach_origins(visits, origins)
        logger.info(
            f"Run {status.run_id}: {len(visits)} visits, {len(resolved)} with origins, "
            f"{total_devices} devices in dataset"
        )
        self._save_status(
            status, percent=constants.PROGRESS_GEOCODING_DONE,
            message=f"Loaded {len(visits)} visits ({len(resolved)} with origins)",
        )

        recipes = [Recipe.from_dict(r) for r in status.recipes]
        results = self._process_recipes(status, recipes, group_by_device(visits), total_devices)
        self._cleanup(status)
        status.pipeline_phase = PipelinePhase.DONE
        self._finish(status, results)

    def _finish_cancelled(self, status: RunStatus) -> RunStatus:
        for recipe_id, state in status.audience_states.items():
            if state == RunState.RUNNING.value:
                status.audience_states[recipe_id] = RunState.CANCELLED.value
        self._cleanup(status)
        self._save_status(
            status,
            status=RunState.CANCELLED,
            cancel_requested=True,
            pipeline_phase=PipelinePhase.DONE,
            message=f"Cancelled after {len(status.completed_audiences)} recipes",
            completed_at=utc_now_iso(),
        )
        logger.info(f"Run {status.run_id} cancelled")
        return status

    def _cleanup(self, status: RunStatus) -> None:
        """Drop temp tables and their data; failures are logged only."""
        for table in (status.visits_table, status.origins_table):
            if not table:
                continue
            safe_execute(self.ctx.executor.drop_table, table, error_context=f"Dropping {table}")
            safe_execute(self.ctx.executor.delete_materialized_data, table, error_context=f"Deleting data of {table}")

    # ------------------------------------------------------------------
    # Status and control
    # ------------------------------------------------------------------

    def get_status(self, dataset_id: str, country: str) -> Optional[RunStatus]:
        return self.ctx.status_store.get(dataset_id, country)

    def stop(self, dataset_id: str, country: str) -> Optional[RunStatus]:
        return self.ctx.status_store.request_cancellation(dataset_id, country)
