"""Pipeline definition model and loader.

A pipeline definition is a TOML (or JSON) file declaring sources,
artifacts, stages, services, and cache domains.  Relative artifact paths
resolve against ``data_dir``; relative ``data_dir``, cache, and working
directory paths resolve against the directory holding the definition file.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from geoforge.errors import ConfigurationError
from geoforge.models.artifacts import ArtifactSpec
from geoforge.models.caches import CacheDomain
from geoforge.models.services import ServiceDefinition
from geoforge.models.stages import StageDefinition


class SourceSpec(BaseModel):
    """A remote file to acquire into an artifact."""

    model_config = ConfigDict(frozen=True)

    url: str
    artifact: str


class PipelineDefinition(BaseModel):
    """The static pipeline: declared once at startup, evaluated per run."""

    model_config = ConfigDict(frozen=True)

    name: str
    data_dir: Path
    variables: dict[str, str] = {}
    sources: list[SourceSpec] = []
    artifacts: dict[str, ArtifactSpec] = {}
    stages: list[StageDefinition] = []
    services: list[ServiceDefinition] = []
    caches: list[CacheDomain] = []

    @model_validator(mode="after")
    def _check_references(self) -> "PipelineDefinition":
        problems: list[str] = []

        for key, spec in self.artifacts.items():
            if key != spec.name:
                problems.append(f"artifact key {key!r} does not match name {spec.name!r}")

        for source in self.sources:
            if source.artifact not in self.artifacts:
                problems.append(f"source {source.url} targets unknown artifact {source.artifact!r}")

        seen_stages: set[str] = set()
        producers: dict[str, str] = {}
        service_names = {svc.name for svc in self.services}
        for stage in self.stages:
            if stage.stage_id in seen_stages:
                problems.append(f"duplicate stage {stage.stage_id!r}")
            seen_stages.add(stage.stage_id)
            if not stage.command:
                problems.append(f"stage {stage.stage_id!r} has no command")
            for name in [*stage.inputs, *stage.outputs]:
                if name not in self.artifacts:
                    problems.append(f"stage {stage.stage_id!r} references unknown artifact {name!r}")
            for name in stage.outputs:
                if name in producers:
                    problems.append(
                        f"artifact {name!r} produced by both {producers[name]!r} "
                        f"and {stage.stage_id!r}"
                    )
                producers[name] = stage.stage_id
            for svc in stage.requires_services:
                if svc not in service_names:
                    problems.append(f"stage {stage.stage_id!r} requires unknown service {svc!r}")

        if len(service_names) != len(self.services):
            problems.append("duplicate service names")
        for svc in self.services:
            for name in svc.prerequisites:
                if name not in self.artifacts:
                    problems.append(f"service {svc.name!r} references unknown artifact {name!r}")

        cache_names = [c.name for c in self.caches]
        if len(set(cache_names)) != len(cache_names):
            problems.append("duplicate cache domain names")
        for cache in self.caches:
            for name in cache.upstream:
                if name not in self.artifacts:
                    problems.append(f"cache {cache.name!r} references unknown artifact {name!r}")

        if problems:
            raise ValueError("; ".join(problems))
        return self

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def artifact(self, name: str) -> ArtifactSpec:
        return self.artifacts[name]

    def stage(self, stage_id: str) -> StageDefinition:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        raise KeyError(stage_id)

    def service(self, name: str) -> ServiceDefinition:
        for svc in self.services:
            if svc.name == name:
                return svc
        raise KeyError(name)

    def cache(self, name: str) -> CacheDomain:
        for cache in self.caches:
            if cache.name == name:
                return cache
        raise KeyError(name)

    def caches_fed_by(self, artifact_names: list[str]) -> list[CacheDomain]:
        """Cache domains tied to any of the given artifacts."""
        wanted = set(artifact_names)
        return [c for c in self.caches if wanted.intersection(c.upstream)]

    @property
    def state_dir(self) -> Path:
        """Where geoforge keeps its own bookkeeping (lock, ledger)."""
        return self.data_dir / ".geoforge"

    def resolve_command(self, argv: list[str]) -> list[str]:
        """Substitute ``{artifact}`` and ``{variable}`` placeholders."""
        mapping: dict[str, str] = {"data_dir": str(self.data_dir)}
        mapping.update(self.variables)
        mapping.update({name: str(spec.path) for name, spec in self.artifacts.items()})
        try:
            return [arg.format_map(mapping) for arg in argv]
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(
                f"Cannot resolve command {argv!r}: unknown placeholder {exc}"
            ) from exc


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------


def _read_document(path: Path) -> dict[str, Any]:
    if path.suffix == ".json":
        return json.loads(path.read_text(encoding="utf-8"))
    with path.open("rb") as fh:
        return tomllib.load(fh)


def _resolve(base: Path, value: str | Path) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else base / p


def pipeline_from_dict(raw: dict[str, Any], base_dir: Path) -> PipelineDefinition:
    """Build a PipelineDefinition from a parsed document.

    Path resolution happens here so the model itself only ever holds
    absolute (or caller-chosen) paths.
    """
    doc = dict(raw)
    data_dir = _resolve(base_dir, doc.get("data_dir", "data"))
    doc["data_dir"] = data_dir

    artifacts: dict[str, Any] = {}
    for name, spec in (doc.get("artifacts") or {}).items():
        spec = dict(spec)
        spec.setdefault("name", name)
        spec["path"] = _resolve(data_dir, spec.get("path", name))
        artifacts[name] = spec
    doc["artifacts"] = artifacts

    stages = []
    for stage in doc.get("stages") or []:
        stage = dict(stage)
        if stage.get("working_dir"):
            stage["working_dir"] = _resolve(base_dir, stage["working_dir"])
        stages.append(stage)
    doc["stages"] = stages

    caches = []
    for cache in doc.get("caches") or []:
        cache = dict(cache)
        cache["path"] = _resolve(base_dir, cache["path"])
        caches.append(cache)
    doc["caches"] = caches

    try:
        return PipelineDefinition.model_validate(doc)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline definition: {exc}") from exc


def load_pipeline(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Pipeline definition not found: {path}")
    try:
        raw = _read_document(path)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    return pipeline_from_dict(raw, path.resolve().parent)
