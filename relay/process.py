from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

from .errors import ProcessLaunchError
from .pipelines import PipelineSpec

LOG = logging.getLogger("relay.process")


@dataclass(eq=False)
class ProcHandle:
    popen: asyncio.subprocess.Process
    spec: PipelineSpec
    port: int
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=50))
    reader: Optional[asyncio.Task] = None
    stopping: bool = False
    finalized: bool = False

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def alive(self) -> bool:
        return self.popen.returncode is None

    def diagnostics(self) -> str:
        return "\n".join(self.stderr_tail)


async def _drain_stderr(handle: ProcHandle) -> None:
    # Keep the pipe empty and remember the last lines for crash reports.
    stream = handle.popen.stderr
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            handle.stderr_tail.append(text)


async def start_process(spec: PipelineSpec, *, port: int, tail_lines: int = 50) -> ProcHandle:
    # Start a new session so we can terminate the whole pipeline.
    try:
        popen = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise ProcessLaunchError(f"cannot launch {spec.argv[0]}: {e}", phase="launch") from e

    handle = ProcHandle(popen=popen, spec=spec, port=port, stderr_tail=deque(maxlen=tail_lines))
    handle.reader = asyncio.get_running_loop().create_task(_drain_stderr(handle))
    LOG.debug("spawned pid=%d: %s", popen.pid, spec.pretty)
    return handle


def _signal_group(handle: ProcHandle, sig: int) -> None:
    try:
        os.killpg(os.getpgid(handle.pid), sig)
    except ProcessLookupError:
        pass


async def wait_process(handle: ProcHandle, reader_timeout_s: float = 2.0) -> int:
    """Wait for exit, then give the stderr reader a bounded time to hit EOF.

    A grandchild that escaped the process group can hold the pipe open, so
    the reader is cancelled rather than awaited forever.
    """
    rc = await handle.popen.wait()
    if handle.reader is not None and not handle.reader.done():
        try:
            await asyncio.wait_for(asyncio.shield(handle.reader), timeout=reader_timeout_s)
        except asyncio.TimeoutError:
            LOG.warning("pid=%d exited but its stderr stayed open, detaching reader", handle.pid)
            handle.reader.cancel()
    return rc


async def stop_process(handle: ProcHandle, timeout_s: float = 5.0) -> int:
    if handle.alive:
        _signal_group(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(handle.popen.wait()), timeout=timeout_s)
        except asyncio.TimeoutError:
            LOG.warning("pid=%d ignored SIGTERM for %.1fs, killing", handle.pid, timeout_s)
            _signal_group(handle, signal.SIGKILL)
    return await wait_process(handle)
