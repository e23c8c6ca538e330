"""geoforge data models — all Pydantic v2, all frozen (immutable)."""

from geoforge.models.artifacts import ArtifactSpec, ArtifactStatus
from geoforge.models.caches import CacheDomain, CacheStats
from geoforge.models.pipeline import (
    PipelineDefinition,
    SourceSpec,
    load_pipeline,
    pipeline_from_dict,
)
from geoforge.models.reports import (
    CacheReport,
    FetchReport,
    GateResult,
    GateStatus,
    RunReport,
    RunStatus,
)
from geoforge.models.services import ProbeKind, ProbeSpec, ServiceDefinition
from geoforge.models.stages import (
    DurationClass,
    StageDefinition,
    StageOutcome,
    StageResult,
)

__all__ = [
    # artifacts
    "ArtifactSpec",
    "ArtifactStatus",
    # caches
    "CacheDomain",
    "CacheStats",
    # pipeline
    "PipelineDefinition",
    "SourceSpec",
    "load_pipeline",
    "pipeline_from_dict",
    # reports
    "CacheReport",
    "FetchReport",
    "GateResult",
    "GateStatus",
    "RunReport",
    "RunStatus",
    # services
    "ProbeKind",
    "ProbeSpec",
    "ServiceDefinition",
    # stages
    "DurationClass",
    "StageDefinition",
    "StageOutcome",
    "StageResult",
]
