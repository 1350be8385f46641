"""
Aggregation of proximity pairs into exposure summaries.

Provides:
- AggregationSpec: grouping key, denominator rule and population policy
- aggregate: the single core that every mode is built on
- aggregate_by_threshold / _by_category / _by_type / _by_juvenile
- summarize: all four modes at once
- records_to_frame: flat pandas view for reporting

Denominators always come from the full facility universe, never from the
matched set alone (the by-type ``percent_of_matched`` share is the one
exception, and it is kept in its own field):

==========  ==============================  =================================
mode        percent denominator             juvenile / non-juvenile denominators
==========  ==============================  =================================
threshold   all facilities                  all juvenile / non-juvenile facilities
category    all facilities                  all juvenile / non-juvenile facilities
type        facilities of that type         juvenile / non-juvenile of that type
juvenile    facilities with that flag       (same subset)
==========  ==============================  =================================

A percentage is None when its denominator is empty.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Literal, Optional, Sequence

import pandas as pd

from src import config
from src.exposure.proximity import ProximityPair, sources_per_facility
from src.watershed.models import DataQualityError, Facility

logger = logging.getLogger(__name__)

JUVENILE_LABEL = "juvenile"
NON_JUVENILE_LABEL = "non-juvenile"

# Grouping key: (facility, its pairs) -> labels the facility counts toward
KeyFunction = Callable[[Facility, Sequence[ProximityPair]], Iterable[str]]


class PopulationPolicy(Enum):
    """How unknown (None) populations are treated in population sums."""

    EXCLUDE_UNKNOWN = "exclude_unknown"  # left out of the sum, still counted
    REQUIRE_KNOWN = "require_known"  # unknown population is a data-quality error


def percentage(count: int, denominator: int) -> Optional[float]:
    """
    ``count`` as a percentage of ``denominator``; None when the denominator is 0.

    Examples:
        >>> percentage(1, 4)
        25.0
        >>> percentage(0, 0) is None
        True
    """
    if denominator == 0:
        return None
    return 100.0 * count / denominator


@dataclass(frozen=True)
class SubsetStats:
    count: int
    denominator: int
    percent: Optional[float]
    population: int


@dataclass(frozen=True)
class AggregateRecord:
    """
    One row of a summary table.

    Attributes:
        mode: Aggregation mode that produced the row
        key: Group label (threshold, category, facility type or juvenile flag)
        facility_count: Distinct matched facilities in the group
        denominator: Size of the universe slice used for ``percent``
        percent: facility_count / denominator * 100, None if denominator is 0
        population: Summed population of the matched facilities (unknowns skipped)
        unknown_population_count: Matched facilities whose population is unknown
        juvenile: Juvenile part of the group against its own denominator
        non_juvenile: Non-juvenile part against its own denominator
        percent_of_matched: Share of all matched facilities (by-type mode only)
    """

    mode: str
    key: str
    facility_count: int
    denominator: int
    percent: Optional[float]
    population: int
    unknown_population_count: int
    juvenile: SubsetStats
    non_juvenile: SubsetStats
    percent_of_matched: Optional[float] = None


@dataclass(frozen=True)
class AggregationSpec:
    """
    Configuration for one aggregation mode.

    Attributes:
        mode: Name written to each record
        key: Grouping-key function
        denominator: "universe" divides by the whole facility universe;
            "group" divides by universe facilities whose own key matches
        labels: Labels that always get a row, even with no matches
        include_matched_share: Also compute percent_of_matched
        population_policy: Treatment of unknown populations
    """

    mode: str
    key: KeyFunction
    denominator: Literal["universe", "group"] = "universe"
    labels: Sequence[str] = field(default_factory=tuple)
    include_matched_share: bool = False
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN

    def __post_init__(self):
        if self.denominator not in ("universe", "group"):
            raise ValueError(f"Unknown denominator rule '{self.denominator}'")


def _labels_for(spec: AggregationSpec, facility: Facility, pairs: Sequence[ProximityPair]) -> List[str]:
    labels = []
    for label in spec.key(facility, pairs):
        if label is None or not str(label).strip():
            raise DataQualityError(
                f"Facility '{facility.id}' has no '{spec.mode}' grouping label"
            )
        labels.append(str(label))
    return labels


def _population(facilities: Iterable[Facility], policy: PopulationPolicy) -> int:
    total = 0
    for f in facilities:
        if f.population is None:
            if policy is PopulationPolicy.REQUIRE_KNOWN:
                raise DataQualityError(f"Facility '{f.id}' has unknown population")
            continue
        total += f.population
    return total


def _subset(members: List[Facility], universe: List[Facility], juvenile: bool, policy) -> SubsetStats:
    chosen = [f for f in members if f.is_juvenile == juvenile]
    denom = sum(1 for f in universe if f.is_juvenile == juvenile)
    return SubsetStats(
        count=len(chosen),
        denominator=denom,
        percent=percentage(len(chosen), denom),
        population=_population(chosen, policy),
    )


def aggregate(
    matched: Dict[str, Sequence[ProximityPair]],
    universe: Sequence[Facility],
    spec: AggregationSpec,
) -> List[AggregateRecord]:
    """
    Group matched facilities and compute counts, percentages and populations.

    Args:
        matched: Facility id -> that facility's pairs, for matched facilities only
        universe: Every facility under study (source of all denominators)
        spec: Grouping and denominator configuration

    Returns:
        One record per label; ``spec.labels`` first in their given order,
        then any other labels in sorted order

    Raises:
        DataQualityError: On a blank grouping label or a matched facility id
            missing from the universe
    """
    universe = list(universe)
    by_id = {f.id: f for f in universe}

    groups: Dict[str, Dict[str, Facility]] = defaultdict(dict)
    for fid, fpairs in matched.items():
        facility = by_id.get(fid)
        if facility is None:
            raise DataQualityError(f"Matched facility '{fid}' is not in the facility universe")
        for label in _labels_for(spec, facility, fpairs):
            groups[label][fid] = facility

    # Universe slices for the "group" denominator rule
    slices: Dict[str, List[Facility]] = defaultdict(list)
    if spec.denominator == "group":
        for f in universe:
            for label in _labels_for(spec, f, ()):
                slices[label].append(f)

    labels = list(spec.labels) + sorted(set(groups) - set(spec.labels))
    matched_total = len(matched)

    records = []
    for label in labels:
        members = list(groups.get(label, {}).values())
        base = universe if spec.denominator == "universe" else slices.get(label, [])
        records.append(
            AggregateRecord(
                mode=spec.mode,
                key=label,
                facility_count=len(members),
                denominator=len(base),
                percent=percentage(len(members), len(base)),
                population=_population(members, spec.population_policy),
                unknown_population_count=sum(1 for f in members if f.population is None),
                juvenile=_subset(members, base, True, spec.population_policy),
                non_juvenile=_subset(members, base, False, spec.population_policy),
                percent_of_matched=(
                    percentage(len(members), matched_total) if spec.include_matched_share else None
                ),
            )
        )
    return records


def _group_pairs(pairs: Sequence[ProximityPair]) -> Dict[str, List[ProximityPair]]:
    grouped: Dict[str, List[ProximityPair]] = defaultdict(list)
    for pair in pairs:
        grouped[pair.facility_id].append(pair)
    return grouped


def threshold_label(threshold: int) -> str:
    return f"more than {threshold}"


def aggregate_by_threshold(
    pairs: Sequence[ProximityPair],
    universe: Sequence[Facility],
    thresholds: Sequence[int] = config.DEFAULT_THRESHOLDS,
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
) -> List[AggregateRecord]:
    """
    Distinct facilities with more than N qualifying sources, for each N.

    Thresholds are strict: "more than 1" leaves out facilities matched by
    exactly one source.
    """
    counts = sources_per_facility(pairs)

    def key(facility: Facility, _pairs) -> List[str]:
        n = counts.get(facility.id, 0)
        return [threshold_label(t) for t in thresholds if n > t]

    spec = AggregationSpec(
        mode="threshold",
        key=key,
        denominator="universe",
        labels=tuple(threshold_label(t) for t in thresholds),
        population_policy=population_policy,
    )
    return aggregate(_group_pairs(pairs), universe, spec)


def aggregate_by_category(
    pairs: Sequence[ProximityPair],
    universe: Sequence[Facility],
    categories: Optional[Sequence[str]] = None,
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
) -> List[AggregateRecord]:
    """
    Distinct facilities per source category, against the whole universe.

    A facility matched by sources of two categories counts once in each.
    """

    def key(_facility: Facility, fpairs: Sequence[ProximityPair]) -> List[str]:
        return sorted({p.source_category for p in fpairs})

    spec = AggregationSpec(
        mode="category",
        key=key,
        denominator="universe",
        labels=tuple(categories or ()),
        population_policy=population_policy,
    )
    return aggregate(_group_pairs(pairs), universe, spec)


def aggregate_by_type(
    pairs: Sequence[ProximityPair],
    universe: Sequence[Facility],
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
) -> List[AggregateRecord]:
    """
    Distinct facilities per facility type.

    ``percent`` is against that type's universe count, ``percent_of_matched``
    against all matched facilities. Every type present in the universe gets
    a row.
    """
    spec = AggregationSpec(
        mode="type",
        key=lambda facility, _pairs: [facility.facility_type],
        denominator="group",
        labels=tuple(sorted({f.facility_type for f in universe})),
        include_matched_share=True,
        population_policy=population_policy,
    )
    return aggregate(_group_pairs(pairs), universe, spec)


def aggregate_by_juvenile(
    pairs: Sequence[ProximityPair],
    universe: Sequence[Facility],
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
) -> List[AggregateRecord]:
    """Distinct facilities split by juvenile flag, each against its own subset."""
    spec = AggregationSpec(
        mode="juvenile",
        key=lambda facility, _pairs: [JUVENILE_LABEL if facility.is_juvenile else NON_JUVENILE_LABEL],
        denominator="group",
        labels=(JUVENILE_LABEL, NON_JUVENILE_LABEL),
        population_policy=population_policy,
    )
    return aggregate(_group_pairs(pairs), universe, spec)


def summarize(
    pairs: Sequence[ProximityPair],
    universe: Sequence[Facility],
    thresholds: Sequence[int] = config.DEFAULT_THRESHOLDS,
    categories: Optional[Sequence[str]] = None,
    population_policy: PopulationPolicy = PopulationPolicy.EXCLUDE_UNKNOWN,
) -> Dict[str, List[AggregateRecord]]:
    """Run all four aggregation modes; returns mode name -> records."""
    universe = list(universe)
    summary = {
        "threshold": aggregate_by_threshold(pairs, universe, thresholds, population_policy),
        "category": aggregate_by_category(pairs, universe, categories, population_policy),
        "type": aggregate_by_type(pairs, universe, population_policy),
        "juvenile": aggregate_by_juvenile(pairs, universe, population_policy),
    }
    logger.info(
        f"Aggregated {len(pairs)} pairs over {len(universe)} facilities: "
        + ", ".join(f"{mode}={len(rows)} rows" for mode, rows in summary.items())
    )
    return summary


def records_to_frame(records: Sequence[AggregateRecord]) -> pd.DataFrame:
    """
    Flatten records into a DataFrame, one row per record.

    Sub-split fields are prefixed ``juvenile_`` / ``non_juvenile_``;
    undefined percentages stay missing (NaN), never 0.
    """
    rows = []
    for rec in records:
        row = asdict(rec)
        for prefix in ("juvenile", "non_juvenile"):
            for k, v in row.pop(prefix).items():
                row[f"{prefix}_{k}"] = v
        rows.append(row)
    return pd.DataFrame(rows)
