"""
Downstream exposure analysis: proximity join and aggregation.
"""

from .proximity import ProximityPair, join_downstream, sources_per_facility
from .aggregation import (
    AggregateRecord,
    AggregationSpec,
    PopulationPolicy,
    aggregate,
    aggregate_by_category,
    aggregate_by_juvenile,
    aggregate_by_threshold,
    aggregate_by_type,
    percentage,
    records_to_frame,
    summarize,
)
from .pipeline import AnalysisResult, ExposurePipeline

__all__ = [
    "ProximityPair",
    "join_downstream",
    "sources_per_facility",
    "AggregateRecord",
    "AggregationSpec",
    "PopulationPolicy",
    "aggregate",
    "aggregate_by_category",
    "aggregate_by_juvenile",
    "aggregate_by_threshold",
    "aggregate_by_type",
    "percentage",
    "records_to_frame",
    "summarize",
    "AnalysisResult",
    "ExposurePipeline",
]
