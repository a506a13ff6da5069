"""
Affinity scoring.

Turns geocoded visits of a recipe's segment into per (postal code, category)
AffinityRecords, per postal code ZipcodeProfiles and LabStats.

affinity_index = round(w_c * concentration + w_f * frequency + w_d * dwell)

  concentration  local category share / national category share, capped
                 at concentration_cap and rescaled to 0-100
  frequency      log2(visits per device) / log2(frequency_cap), clamped
  dwell          avg dwell / category median dwell (both capped at
                 dwell_cap_minutes), divided by dwell_ratio_cap, clamped

Every score falls back to 0 on a zero denominator.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from affinity_lab.config.loader import ScoringSettings
from affinity_lab.core.categories import category_group, category_label
from affinity_lab.core.models import (
    AffinityHotspot,
    AffinityRecord,
    CategoryStat,
    GeocodingCoverage,
    GeoInfo,
    LabStats,
    SegmentDevice,
    Visit,
    ZipcodeProfile,
)

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def concentration_score(local_share: float, national_share: float, cap: float) -> int:
    if national_share <= 0 or cap <= 0:
        return 0
    return round_half_up(_clamp01((local_share / national_share) / cap) * 100)


def frequency_score(frequency: float, cap: float) -> int:
    if frequency <= 0 or cap <= 1:
        return 0
    return round_half_up(_clamp01(math.log2(frequency) / math.log2(cap)) * 100)


def dwell_score(avg_dwell: float, median_dwell: float, dwell_cap: float, ratio_cap: float) -> int:
    median = min(median_dwell, dwell_cap)
    if not median > 0 or ratio_cap <= 0:
        return 0
    avg = min(max(avg_dwell, 0.0), dwell_cap)
    return round_half_up(_clamp01((avg / median) / ratio_cap) * 100)


def affinity_index(concentration: int, frequency: int, dwell: int, weights: Dict[str, float]) -> int:
    raw = (
        weights["concentration"] * concentration
        + weights["frequency"] * frequency
        + weights["dwell"] * dwell
    )
    if not math.isfinite(raw):
        return 0
    return min(max(round_half_up(raw), 0), 100)


def dominant_group(affinities: Dict[str, int], fallback: str) -> str:
    """Group with the highest average affinity; fallback when no group averages above 0."""
    sums: Dict[str, List[int]] = {}
    for category, score in affinities.items():
        sums.setdefault(category_group(category), []).append(score)
    best, best_avg = fallback, 0.0
    for group, scores in sums.items():
        avg = sum(scores) / len(scores)
        if avg > best_avg:
            best, best_avg = group, avg
    return best


@dataclass
class ScoringResult:
    records: List[AffinityRecord] = field(default_factory=list)
    profiles: List[ZipcodeProfile] = field(default_factory=list)
    category_devices: Dict[str, int] = field(default_factory=dict)
    visits_scored: int = 0
    avg_dwell_minutes: float = 0.0


_COLUMNS = ["postal_code", "city", "province", "region", "category", "device_id", "dwell"]


class AffinityScorer:
    """Scores geocoded visits with the configured weights and caps."""

    def __init__(self, settings: ScoringSettings):
        self.settings = settings

    def score(self, geocoded: Sequence[Tuple[Visit, GeoInfo]], min_visits: Optional[int] = None) -> ScoringResult:
        """
        Args:
            geocoded: (visit, postal info) pairs for matched, geocoded visits
            min_visits: noise floor on a postal code's total visits
        """
        s = self.settings
        floor = s.min_visits_per_zipcode if min_visits is None else min_visits
        if not geocoded:
            return ScoringResult()

        df = pd.DataFrame(
            [(g.postal_code, g.city, g.province, g.region, v.category, v.device_id, v.dwell_minutes)
             for v, g in geocoded],
            columns=_COLUMNS,
        )
        grand_total = len(df)
        national_share = df.groupby("category").size() / grand_total
        median_dwell = df.groupby("category")["dwell"].median()

        zip_totals = df.groupby("postal_code").agg(
            total=("dwell", "size"),
            devices=("device_id", "nunique"),
            total_dwell=("dwell", "sum"),
            city=("city", "first"),
            province=("province", "first"),
            region=("region", "first"),
        )
        kept = zip_totals[zip_totals["total"] >= floor]
        dropped = len(zip_totals) - len(kept)
        if dropped:
            logger.info(f"Dropped {dropped} postal codes below the noise floor of {floor} visits")
        if kept.empty:
            return ScoringResult(visits_scored=grand_total, avg_dwell_minutes=round(float(df["dwell"].mean()), 1))

        scoped = df[df["postal_code"].isin(kept.index)]
        zip_cat = scoped.groupby(["postal_code", "category"]).agg(
            visits=("dwell", "size"),
            unique_devices=("device_id", "nunique"),
            avg_dwell=("dwell", "mean"),
        ).reset_index()

        records = []
        for row in zip_cat.itertuples(index=False):
            zt = kept.loc[row.postal_code]
            total = int(zt["total"])
            freq = float(row.visits) / int(row.unique_devices) if row.unique_devices > 0 else 0.0
            local_share = row.visits / total if total > 0 else 0.0
            c = concentration_score(local_share, float(national_share.get(row.category, 0.0)), s.concentration_cap)
            f = frequency_score(freq, s.frequency_cap)
            d = dwell_score(float(row.avg_dwell), float(median_dwell.get(row.category, 0.0)),
                            s.dwell_cap_minutes, s.dwell_ratio_cap)
            records.append(AffinityRecord(
                postal_code=row.postal_code,
                city=zt["city"],
                province=zt["province"],
                region=zt["region"],
                category=row.category,
                visits=int(row.visits),
                unique_devices=int(row.unique_devices),
                avg_dwell_minutes=round(float(row.avg_dwell), 1),
                frequency=round(freq, 2),
                total_visits_from_zipcode=total,
                concentration_score=c,
                frequency_score=f,
                dwell_score=d,
                affinity_index=affinity_index(c, f, d, s.weights),
            ))
        records.sort(key=lambda r: (-r.affinity_index, r.postal_code, r.category))

        profiles = self._profiles(records, kept)
        category_devices = scoped.groupby("category")["device_id"].nunique().astype(int).to_dict()
        logger.info(f"Scored {len(records)} affinity records across {len(profiles)} postal codes")
        return ScoringResult(
            records=records,
            profiles=profiles,
            category_devices=category_devices,
            visits_scored=grand_total,
            avg_dwell_minutes=round(float(df["dwell"].mean()), 1),
        )

    def _profiles(self, records: List[AffinityRecord], zip_totals: pd.DataFrame) -> List[ZipcodeProfile]:
        profiles: Dict[str, ZipcodeProfile] = {}
        for rec in records:
            profile = profiles.get(rec.postal_code)
            if profile is None:
                zt = zip_totals.loc[rec.postal_code]
                total = int(zt["total"])
                profile = ZipcodeProfile(
                    postal_code=rec.postal_code,
                    city=rec.city,
                    province=rec.province,
                    region=rec.region,
                    total_visits=total,
                    unique_devices=int(zt["devices"]),
                    avg_dwell_minutes=round(float(zt["total_dwell"]) / total, 1) if total else 0.0,
                    affinities={},
                    top_category=rec.category,
                    top_affinity=rec.affinity_index,
                    dominant_group=category_group(rec.category),
                )
                profiles[rec.postal_code] = profile
            profile.affinities[rec.category] = rec.affinity_index
            if rec.affinity_index > profile.top_affinity:
                profile.top_affinity = rec.affinity_index
                profile.top_category = rec.category
        for profile in profiles.values():
            profile.dominant_group = dominant_group(profile.affinities, profile.dominant_group)
        return sorted(profiles.values(), key=lambda p: (-p.top_affinity, p.postal_code))


def compute_stats(
    scoring: ScoringResult,
    segment: List[SegmentDevice],
    total_devices_in_dataset: int,
    coverage: GeocodingCoverage,
    settings: ScoringSettings,
) -> LabStats:
    records = scoring.records
    total_record_visits = sum(r.visits for r in records)

    by_category: Dict[str, List[AffinityRecord]] = {}
    for rec in records:
        by_category.setdefault(rec.category, []).append(rec)

    breakdown = []
    for category, recs in by_category.items():
        visits = sum(r.visits for r in recs)
        dwell_total = sum(r.avg_dwell_minutes * r.visits for r in recs)
        top = max(recs, key=lambda r: r.affinity_index)
        breakdown.append(CategoryStat(
            category=category,
            label=category_label(category),
            group=category_group(category),
            visits=visits,
            unique_devices=scoring.category_devices.get(category, 0),
            avg_dwell_minutes=round(dwell_total / visits, 1) if visits else 0.0,
            percent_of_total=round(visits / total_record_visits * 100, 2) if total_record_visits else 0.0,
            postal_codes_with_visits=len({r.postal_code for r in recs}),
            avg_affinity=round_half_up(sum(r.affinity_index for r in recs) / len(recs)),
            max_affinity=top.affinity_index,
            max_affinity_zipcode=top.postal_code,
            max_affinity_city=top.city,
        ))
    breakdown.sort(key=lambda c: (-c.visits, c.category))

    hotspots = [
        AffinityHotspot(
            postal_code=r.postal_code,
            city=r.city,
            category=r.category,
            category_label=category_label(r.category),
            affinity_index=r.affinity_index,
            visits=r.visits,
            unique_devices=r.unique_devices,
            avg_dwell_minutes=r.avg_dwell_minutes,
        )
        for r in records
        if r.affinity_index >= settings.hotspot_threshold
    ][:settings.max_hotspots]

    segment_size = len(segment)
    return LabStats(
        total_visits_analyzed=scoring.visits_scored,
        total_devices_in_dataset=total_devices_in_dataset,
        segment_size=segment_size,
        segment_percent=round(segment_size / total_devices_in_dataset * 100, 2) if total_devices_in_dataset > 0 else 0.0,
        total_postal_codes=len(scoring.profiles),
        categories_analyzed=len(by_category),
        avg_affinity_index=round_half_up(sum(r.affinity_index for r in records) / len(records)) if records else 0,
        avg_dwell_minutes=scoring.avg_dwell_minutes,
        category_breakdown=breakdown,
        top_hotspots=hotspots,
        coverage=coverage,
    )
