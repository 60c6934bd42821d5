# apps/discovery/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

EXPOSURE_METRIC = "exposure"
CONVERSION_METRIC = "conversion"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class DeviceType(str, Enum):
    TV = "tv"
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"


class RecommendationSource(str, Enum):
    GRAPH = "graph"
    CONTEXT_AWARE = "context_aware"


@dataclass
class TemporalPatterns:
    hourly_patterns: List[float] = field(default_factory=lambda: [0.5] * 24)
    weekday_patterns: List[float] = field(default_factory=lambda: [0.5] * 7)


@dataclass
class UserProfile:
    user_id: UUID
    temporal_patterns: TemporalPatterns = field(default_factory=TemporalPatterns)


@dataclass
class RecommendationContext:
    time_of_day: Optional[str] = None
    device_type: Optional[DeviceType] = None
    mood: Optional[str] = None


@dataclass
class ScoredContent:
    content_id: UUID
    score: float
    source: RecommendationSource
    # provenance for logs and debugging, e.g. "time_of_day:evening"
    based_on: List[str] = field(default_factory=list)


@dataclass
class Experiment:
    id: UUID
    name: str
    description: Optional[str]
    status: ExperimentStatus
    traffic_allocation: float
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Variant:
    id: UUID
    experiment_id: UUID
    name: str
    weight: float
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Assignment:
    experiment_id: UUID
    user_id: UUID
    variant_id: UUID
    assigned_at: Optional[datetime] = None


@dataclass
class MetricAggregate:
    """Raw per-variant counts as read from the metric fact table."""

    exposures: int = 0
    conversions: int = 0
    value_sum: float = 0.0
    value_count: int = 0


@dataclass
class VariantMetrics:
    variant_id: UUID
    variant_name: str
    exposures: int
    conversions: int
    conversion_rate: float
    avg_metric_value: float


@dataclass
class ExperimentMetrics:
    experiment_id: UUID
    variant_metrics: List[VariantMetrics]
