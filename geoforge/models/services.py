"""Long-running service models and their readiness probes."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, model_validator


class ProbeKind(str, Enum):
    HTTP = "http"
    COMMAND = "command"


class ProbeSpec(BaseModel):
    """How to ask a service whether it is ready.

    ``http`` probes GET ``url`` and expect ``expected_status``; ``command``
    probes run ``command`` and expect exit status 0 (``pg_isready``,
    ``docker inspect``, and so on).
    """

    model_config = ConfigDict(frozen=True)

    kind: ProbeKind = ProbeKind.HTTP
    url: str = ""
    expected_status: int = 200
    command: list[str] = []
    timeout_seconds: float = 5.0

    @model_validator(mode="after")
    def _check_target(self) -> "ProbeSpec":
        if self.kind == ProbeKind.HTTP and not self.url:
            raise ValueError("http probe requires a url")
        if self.kind == ProbeKind.COMMAND and not self.command:
            raise ValueError("command probe requires a command")
        return self


class ServiceDefinition(BaseModel):
    """A long-running process or container gated by prerequisite artifacts."""

    model_config = ConfigDict(frozen=True)

    name: str
    prerequisites: list[str] = []  # artifact names
    start_command: list[str] = []  # empty: started out-of-band
    probe: ProbeSpec
    poll_interval_seconds: float = 3.0
    ready_timeout_seconds: float = 120.0
