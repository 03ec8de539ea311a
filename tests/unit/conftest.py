"""Shared fixtures: an in-memory job store and python-child transcoders."""

from __future__ import annotations

import sys
from typing import Any, Dict, List, Optional, Tuple

import pytest

from relay.config import Settings
from relay.database import job_from_row
from relay.errors import NotFoundError
from relay.models import (
    LIVE_STATES,
    Endpoint,
    InputSource,
    JobState,
    LayoutTemplate,
    RelayJob,
    SlotMapping,
)
from relay.pipelines import PipelineSpec
from relay.process import start_process

SLEEPER = "import time; time.sleep(60)"


class MemoryStore:
    """Stands in for PgStore; keeps every state write for assertions."""

    def __init__(self) -> None:
        self.jobs: Dict[int, RelayJob] = {}
        self.mappings: Dict[int, List[SlotMapping]] = {}
        self.inputs: Dict[int, InputSource] = {}
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.history: List[Tuple[int, JobState]] = []
        self.opened = False

    # -- fixtures helpers ---------------------------------------------------

    def add_input(self, input_id: int, url: str, **kw: Any) -> InputSource:
        src = InputSource(id=input_id, name=kw.pop("name", f"cam-{input_id}"), url=url, **kw)
        self.inputs[input_id] = src
        return src

    def add_job(
        self,
        job_id: int,
        *,
        rows: int = 2,
        cols: int = 2,
        slots: Optional[Dict[int, int]] = None,
        name: Optional[str] = None,
        **kw: Any,
    ) -> RelayJob:
        job = RelayJob(
            id=job_id,
            name=name or f"wall-{job_id}",
            layout=LayoutTemplate(id=rows * 10 + cols, name=f"{rows}x{cols}", grid_rows=rows, grid_cols=cols),
            **kw,
        )
        self.jobs[job_id] = job
        self.mappings[job_id] = [
            SlotMapping(job_id=job_id, slot=slot, source=self.inputs[input_id])
            for slot, input_id in sorted((slots or {}).items())
        ]
        return job

    def add_row(self, job_id: int, slots: Optional[Dict[int, int]] = None, **columns: Any) -> Dict[str, Any]:
        """Store a job as an unvalidated database row, as PgStore would read it."""
        row = {
            "id": job_id, "name": f"wall-{job_id}", "resolution": "1920x1080", "framerate": 25,
            "bitrate": "2000k", "status": "stopped", "last_error": None, "output_port": None,
            "output_url": None, "layout_id": 22, "layout_name": "2x2", "grid_rows": 2, "grid_cols": 2,
        }
        row.update(columns)
        self.rows[job_id] = row
        self.mappings[job_id] = [
            SlotMapping(job_id=job_id, slot=slot, source=self.inputs[input_id])
            for slot, input_id in sorted((slots or {}).items())
        ]
        return row

    def states(self, job_id: int) -> List[JobState]:
        return [s for j, s in self.history if j == job_id]

    # -- store interface ----------------------------------------------------

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.opened = False

    async def reset_stale_jobs(self) -> int:
        count = 0
        for job_id, job in list(self.jobs.items()):
            if job.state in LIVE_STATES:
                await self.set_state(job_id, JobState.STOPPED, last_error="interrupted by service restart")
                count += 1
        return count

    async def get_job(self, job_id: int) -> RelayJob:
        if job_id in self.rows:
            return job_from_row(self.rows[job_id])
        try:
            return self.jobs[job_id]
        except KeyError:
            raise NotFoundError(f"relay job {job_id} not found", phase="load") from None

    async def get_mappings(self, job_id: int) -> List[SlotMapping]:
        return list(self.mappings.get(job_id, []))

    async def set_state(
        self,
        job_id: int,
        state: JobState,
        *,
        endpoint: Optional[Endpoint] = None,
        last_error: Optional[str] = None,
    ) -> None:
        if job_id in self.rows:
            self.rows[job_id].update(status=state.value, last_error=last_error)
            self.history.append((job_id, state))
            return
        job = await self.get_job(job_id)
        update: Dict[str, Any] = {"state": state}
        if state is JobState.RUNNING:
            update.update(
                output_port=endpoint.port if endpoint else None,
                output_url=endpoint.url if endpoint else None,
                last_error=None,
            )
        elif state in (JobState.STOPPED, JobState.ERROR):
            update.update(output_port=None, output_url=None, last_error=last_error)
        self.jobs[job_id] = job.model_copy(update=update)
        self.history.append((job_id, state))

    async def list_inputs(self) -> List[Dict[str, Any]]:
        return [{"id": s.id, "name": s.name, "status": "disconnected", "last_error": None}
                for s in self.inputs.values()]

    async def list_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": j.id,
                "name": j.name,
                "status": j.state.value,
                "last_error": j.last_error,
                "output_port": j.output_port,
                "output_url": j.output_url,
            }
            for j in self.jobs.values()
        ]


def python_launcher(code: str, launched: Optional[list] = None):
    """Launcher that records the rendered PipelineSpec but runs `python -c code` instead."""

    async def _launch(spec: PipelineSpec, *, port: int, tail_lines: int = 50):
        if launched is not None:
            launched.append(spec)
        child = PipelineSpec(argv=[sys.executable, "-c", code], pretty=spec.pretty)
        return await start_process(child, port=port, tail_lines=tail_lines)

    return _launch


@pytest.fixture
def settings() -> Settings:
    return Settings(
        db_dsn="postgresql://unused/unused",
        base_port=8554,
        port_count=4,
        api_port=3000,
        launch_grace_s=0,
        stop_timeout_s=2.0,
        snapshot_interval_s=30.0,
        observer_queue_size=64,
    )


@pytest.fixture
def store() -> MemoryStore:
    s = MemoryStore()
    s.add_input(1, "rtsp://10.0.0.11:554/stream1")
    s.add_input(2, "rtsp://10.0.0.12:554/stream1")
    s.add_input(3, "rtsp://10.0.0.13:554/stream1", username="admin", password="s3cret")
    s.add_job(1, slots={0: 1, 1: 2, 2: 3}, name="Lobby Wall")
    s.add_job(2, rows=1, cols=1, slots={0: 1}, name="Ops")
    s.add_job(3, slots={}, name="Unmapped")
    return s


@pytest.fixture
def make_launcher():
    def _make(code: str = SLEEPER, launched: Optional[list] = None):
        return python_launcher(code, launched)

    return _make
