from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator

_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")
_BITRATE_RE = re.compile(r"^(\d+)([kKmM]?)$")

MAX_FRAMERATE = 60


class JobState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


LIVE_STATES = frozenset({JobState.STARTING, JobState.RUNNING, JobState.STOPPING})


def parse_resolution(res: str) -> tuple[int, int]:
    m = _RESOLUTION_RE.match(res.strip().lower())
    if not m:
        raise ValueError(f"resolution must look like WIDTHxHEIGHT, got {res!r}")
    w, h = int(m.group(1)), int(m.group(2))
    if w <= 0 or h <= 0:
        raise ValueError(f"resolution must be positive, got {res!r}")
    return w, h


def bitrate_kbps(bitrate: str) -> int:
    """'2000k' -> 2000, '4M' -> 4000, '500000' (bits/s) -> 500."""
    m = _BITRATE_RE.match(bitrate.strip())
    if not m:
        raise ValueError(f"bitrate must look like 2000k, 4M or 500000, got {bitrate!r}")
    value, unit = int(m.group(1)), m.group(2).lower()
    if unit == "k":
        return value
    if unit == "m":
        return value * 1000
    return max(1, value // 1000)


class InputSource(BaseModel):
    id: int
    name: str = ""
    url: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def address(self) -> str:
        """Stream URL with credentials embedded when both are set."""
        if not self.username or not self.password:
            return self.url
        parts = urlsplit(self.url)
        host = parts.netloc.rsplit("@", 1)[-1]
        userinfo = f"{quote(self.username, safe='')}:{quote(self.password, safe='')}"
        return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


class LayoutTemplate(BaseModel):
    id: int
    name: str = ""
    grid_rows: int = Field(ge=1)
    grid_cols: int = Field(ge=1)

    @property
    def total_slots(self) -> int:
        return self.grid_rows * self.grid_cols


class SlotMapping(BaseModel):
    job_id: int
    slot: int
    source: InputSource


class Endpoint(BaseModel):
    host: str
    port: int
    url: str


class RelayJob(BaseModel):
    id: int
    name: str
    layout: LayoutTemplate
    resolution: str = "1920x1080"
    framerate: int = Field(default=25, ge=1, le=MAX_FRAMERATE)
    bitrate: str = "2000k"
    state: JobState = JobState.STOPPED
    last_error: Optional[str] = None
    output_port: Optional[int] = None
    output_url: Optional[str] = None

    @field_validator("resolution")
    @classmethod
    def _valid_resolution(cls, v: str) -> str:
        parse_resolution(v)
        return v.lower()

    @field_validator("bitrate")
    @classmethod
    def _valid_bitrate(cls, v: str) -> str:
        bitrate_kbps(v)
        return v

    @property
    def size(self) -> tuple[int, int]:
        return parse_resolution(self.resolution)


class StartResponse(BaseModel):
    id: int
    endpoint_url: str
    port: int


class StopResponse(BaseModel):
    id: int
    stopped: bool


class PipelinePreview(BaseModel):
    id: int
    engine: str
    description: dict[str, Any]
    command: str
