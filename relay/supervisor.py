"""Relay job supervision.

The supervisor owns the registry of live transcoder processes. Every
operation on a job (start, stop, and the exit notification of its process)
runs under that job's asyncio.Lock, so for one job they are applied in the
order they acquire the lock and never overlap. Different jobs proceed
concurrently; stop_all() issues per-job stops concurrently and joins them,
taking no lock of its own. It covers jobs still starting as well as live ones.
A job lock exists only while some operation holds or waits on it.

Ports are acquired after the layout has been validated and are released in
exactly one place, _finalize(), after the owning process has been reaped.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol

from .broadcaster import StatusBroadcaster
from .config import Settings
from .errors import (
    AlreadyRunningError,
    NoMappingsError,
    NotFoundError,
    ProcessCrashError,
    ProcessLaunchError,
    RelayError,
)
from .layout import resolve_layout
from .models import Endpoint, JobState, RelayJob, SlotMapping
from .pipelines import PipelineDescription, PipelineSpec, build_pipeline, get_renderer, publish_path
from .ports import PortAllocator
from .process import ProcHandle, start_process, stop_process, wait_process

LOG = logging.getLogger("relay.supervisor")

Launcher = Callable[..., Awaitable[ProcHandle]]


class JobStore(Protocol):
    async def get_job(self, job_id: int) -> RelayJob: ...

    async def get_mappings(self, job_id: int) -> List[SlotMapping]: ...

    async def set_state(
        self,
        job_id: int,
        state: JobState,
        *,
        endpoint: Optional[Endpoint] = None,
        last_error: Optional[str] = None,
    ) -> None: ...


def describe_job(job: RelayJob, mappings: List[SlotMapping]) -> PipelineDescription:
    """Resolve a job's layout and build its (endpoint-less) pipeline description."""
    if not mappings:
        raise NoMappingsError(f"relay job {job.id} has no input streams mapped", phase="load")
    width, height = job.size
    layout = resolve_layout(
        job.layout.grid_rows,
        job.layout.grid_cols,
        width,
        height,
        [(m.slot, m.source) for m in mappings],
    )
    return build_pipeline(layout, framerate=job.framerate, bitrate=job.bitrate)


class Supervisor:
    def __init__(
        self,
        store: JobStore,
        ports: PortAllocator,
        broadcaster: StatusBroadcaster,
        settings: Settings,
        *,
        launcher: Optional[Launcher] = None,
        renderer: Optional[Callable[[PipelineDescription, str], PipelineSpec]] = None,
    ) -> None:
        self.store = store
        self.ports = ports
        self.broadcaster = broadcaster
        self.settings = settings
        self._launch = launcher or start_process
        self._render = renderer or get_renderer(settings.engine)
        self._live: Dict[int, ProcHandle] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()
        self._starting: Counter = Counter()
        self._watchers: Dict[int, asyncio.Task] = {}

    @asynccontextmanager
    async def _job_lock(self, job_id: int) -> AsyncIterator[None]:
        # A lock lives only while someone holds or waits on it.
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_users[job_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if self._lock_users[job_id] <= 0:
                del self._lock_users[job_id]
                self._locks.pop(job_id, None)

    def active_job_ids(self) -> FrozenSet[int]:
        return frozenset(self._live)

    def is_live(self, job_id: int) -> bool:
        return job_id in self._live

    def endpoint_for(self, job: RelayJob, port: int) -> Endpoint:
        return Endpoint(
            host=f"{self.settings.output_host}:{port}",
            port=port,
            url=f"rtsp://{self.settings.public_host}:{port}/{publish_path(job.name)}",
        )

    def publish_url(self, job: RelayJob, port: int) -> str:
        return f"rtsp://{self.settings.output_host}:{port}/{publish_path(job.name)}"

    def render(self, description: PipelineDescription) -> PipelineSpec:
        return self._render(description, self.settings.transcoder_path)

    # -- start --------------------------------------------------------------

    async def start(self, job_id: int) -> Endpoint:
        # Counted before the lock is taken so stop_all() sees starts still queued on it.
        self._starting[job_id] += 1
        try:
            return await self._start(job_id)
        finally:
            self._starting[job_id] -= 1
            if self._starting[job_id] <= 0:
                del self._starting[job_id]

    async def _start(self, job_id: int) -> Endpoint:
        async with self._job_lock(job_id):
            if job_id in self._live:
                raise AlreadyRunningError(f"relay job {job_id} is already running", phase="start")

            job: Optional[RelayJob] = None
            port: Optional[int] = None
            handle: Optional[ProcHandle] = None
            phase = "load"
            try:
                job = await self.store.get_job(job_id)
                mappings = await self.store.get_mappings(job_id)
                phase = "resolve"
                description = describe_job(job, mappings)

                phase = "persist"
                await self.store.set_state(job_id, JobState.STARTING)

                phase = "allocate"
                port = self.ports.acquire(job_id)
                endpoint = self.endpoint_for(job, port)

                phase = "render"
                spec = self.render(description.with_publish_url(self.publish_url(job, port)))

                phase = "launch"
                handle = await self._launch(spec, port=port, tail_lines=self.settings.stderr_tail_lines)
                await self._await_launch(job_id, handle)

                self._live[job_id] = handle
                self._watchers[job_id] = asyncio.get_running_loop().create_task(self._watch(job_id, handle))

                phase = "persist"
                await self.store.set_state(job_id, JobState.RUNNING, endpoint=endpoint)
            except BaseException as exc:
                if job is None and isinstance(exc, NotFoundError):
                    raise
                await self._abort_start(job_id, phase, exc, port, handle)
                raise

        LOG.info("relay job %d running pid=%d on %s", job_id, handle.pid, endpoint.url)
        self.broadcaster.emit_event("started", job_id, {"endpointUrl": endpoint.url, "port": port, "pid": handle.pid})
        return endpoint

    async def _await_launch(self, job_id: int, handle: ProcHandle) -> None:
        grace = self.settings.launch_grace_s
        if grace <= 0:
            return
        try:
            await asyncio.wait_for(asyncio.shield(handle.popen.wait()), timeout=grace)
        except asyncio.TimeoutError:
            return
        await wait_process(handle)
        raise ProcessLaunchError(
            f"transcoder exited during startup with status {handle.popen.returncode}: "
            f"{handle.diagnostics() or 'no diagnostics'}",
            phase="launch",
        )

    async def _abort_start(
        self,
        job_id: int,
        phase: str,
        exc: BaseException,
        port: Optional[int],
        handle: Optional[ProcHandle],
    ) -> None:
        # Called with the job lock held; nothing else can finalize this handle.
        if handle is not None:
            handle.stopping = True
            handle.finalized = True
            self._live.pop(job_id, None)
            watcher = self._watchers.pop(job_id, None)
            if watcher is not None:
                watcher.cancel()
            await stop_process(handle, self.settings.stop_timeout_s)
        if port is not None:
            self.ports.release(port)

        if isinstance(exc, RelayError):
            if exc.phase is None:
                exc.phase = phase
            else:
                phase = exc.phase
        if isinstance(exc, asyncio.CancelledError):
            message = f"start cancelled during {phase}"
        else:
            message = str(exc) or type(exc).__name__
        LOG.error("relay job %d failed to start (phase=%s): %s", job_id, phase, message)
        try:
            await self.store.set_state(job_id, JobState.ERROR, last_error=message)
        except Exception:
            LOG.exception("relay job %d: could not persist error state", job_id)
        self.broadcaster.emit_event("error", job_id, {"phase": phase, "message": message})

    # -- stop ---------------------------------------------------------------

    async def stop(self, job_id: int) -> bool:
        """Stop the job's process; False when nothing was running."""
        async with self._job_lock(job_id):
            handle = self._live.get(job_id)
            if handle is None:
                return False

            handle.stopping = True
            try:
                await self.store.set_state(job_id, JobState.STOPPING)
            except Exception:
                LOG.exception("relay job %d: could not persist stopping state", job_id)
            LOG.info("stopping relay job %d pid=%d", job_id, handle.pid)
            rc = await stop_process(handle, self.settings.stop_timeout_s)
            await self._finalize(job_id, handle, JobState.STOPPED, detail={"returncode": rc})
        return True

    async def stop_all(self) -> List[int]:
        """Stop every live job and every job with a start in flight.

        A stop queues on the job lock behind the pending start, so a process
        launched by that start is terminated before this returns.
        """
        ids = sorted(set(self._live) | set(self._starting))
        if not ids:
            return []
        results = await asyncio.gather(*(self.stop(i) for i in ids), return_exceptions=True)
        stopped = []
        for job_id, res in zip(ids, results):
            if isinstance(res, BaseException):
                LOG.error("relay job %d failed to stop: %s", job_id, res)
            elif res:
                stopped.append(job_id)
        return stopped

    # -- exit handling --------------------------------------------------------

    async def _watch(self, job_id: int, handle: ProcHandle) -> None:
        try:
            rc = await wait_process(handle)
            async with self._job_lock(job_id):
                if handle.finalized or handle.stopping:
                    return
                crash = ProcessCrashError(
                    f"transcoder exited unexpectedly with status {rc}",
                    returncode=rc,
                    diagnostics=handle.diagnostics(),
                )
                LOG.error("relay job %d: %s\n%s", job_id, crash, crash.diagnostics or "(no stderr)")
                message = str(crash)
                if crash.diagnostics:
                    message = f"{message}: {handle.stderr_tail[-1]}"
                await self._finalize(
                    job_id,
                    handle,
                    JobState.ERROR,
                    last_error=message,
                    detail={"returncode": rc, "diagnostics": crash.diagnostics},
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("relay job %d: exit handling failed", job_id)

    async def _finalize(
        self,
        job_id: int,
        handle: ProcHandle,
        state: JobState,
        *,
        last_error: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Caller holds the job lock and the process has been reaped.
        if handle.finalized:
            return
        handle.finalized = True
        if self._live.get(job_id) is handle:
            del self._live[job_id]
        watcher = self._watchers.get(job_id)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        self._watchers.pop(job_id, None)
        self.ports.release(handle.port)

        event = "stopped" if state is JobState.STOPPED else "error"
        payload = dict(detail or {})
        payload["port"] = handle.port
        if last_error:
            payload["message"] = last_error
        try:
            await self.store.set_state(job_id, state, last_error=last_error)
        finally:
            LOG.info("relay job %d %s (port %d released)", job_id, state.value, handle.port)
            self.broadcaster.emit_event(event, job_id, payload)
