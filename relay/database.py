from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

import asyncpg
from pydantic import ValidationError

from .config import Settings
from .errors import ConfigurationError, NotFoundError
from .models import Endpoint, InputSource, JobState, LayoutTemplate, RelayJob, SlotMapping

LOG = logging.getLogger("relay.database")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS input_streams (
  id          SERIAL PRIMARY KEY,
  name        TEXT NOT NULL,
  rtsp_url    TEXT NOT NULL,
  username    TEXT,
  password    TEXT,
  status      TEXT NOT NULL DEFAULT 'disconnected'
              CHECK (status IN ('connected', 'disconnected', 'error')),
  last_error  TEXT,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS layout_templates (
  id          SERIAL PRIMARY KEY,
  name        TEXT NOT NULL UNIQUE,
  grid_rows   INTEGER NOT NULL CHECK (grid_rows >= 1),
  grid_cols   INTEGER NOT NULL CHECK (grid_cols >= 1),
  total_slots INTEGER GENERATED ALWAYS AS (grid_rows * grid_cols) STORED,
  description TEXT,
  created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS output_streams (
  id                 SERIAL PRIMARY KEY,
  name               TEXT NOT NULL,
  layout_template_id INTEGER NOT NULL REFERENCES layout_templates(id) ON DELETE RESTRICT,
  output_port        INTEGER,
  output_url         TEXT,
  resolution         TEXT NOT NULL DEFAULT '1920x1080',
  framerate          INTEGER NOT NULL DEFAULT 25 CHECK (framerate BETWEEN 1 AND 60),
  bitrate            TEXT NOT NULL DEFAULT '2000k',
  status             TEXT NOT NULL DEFAULT 'stopped'
                     CHECK (status IN ('stopped', 'starting', 'running', 'stopping', 'error')),
  last_error         TEXT,
  created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  updated_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS stream_mappings (
  id               SERIAL PRIMARY KEY,
  output_stream_id INTEGER NOT NULL REFERENCES output_streams(id) ON DELETE CASCADE,
  input_stream_id  INTEGER NOT NULL REFERENCES input_streams(id) ON DELETE CASCADE,
  slot_position    INTEGER NOT NULL CHECK (slot_position >= 0),
  created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
  UNIQUE (output_stream_id, slot_position)
);

CREATE INDEX IF NOT EXISTS idx_input_streams_status ON input_streams(status);
CREATE INDEX IF NOT EXISTS idx_output_streams_status ON output_streams(status);
CREATE INDEX IF NOT EXISTS idx_stream_mappings_output ON stream_mappings(output_stream_id);

INSERT INTO layout_templates (name, grid_rows, grid_cols, description) VALUES
  ('Single', 1, 1, 'Single stream full screen'),
  ('2x2 Grid', 2, 2, '4 streams in a 2x2 grid'),
  ('3x3 Grid', 3, 3, '9 streams in a 3x3 grid'),
  ('4x4 Grid', 4, 4, '16 streams in a 4x4 grid'),
  ('2x3 Grid', 2, 3, '6 streams in a 2x3 grid'),
  ('2x4 Grid', 2, 4, '8 streams in a 2x4 grid'),
  ('3x4 Grid', 3, 4, '12 streams in a 3x4 grid')
ON CONFLICT (name) DO NOTHING;
"""

_JOB_SQL = """
SELECT os.id, os.name, os.resolution, os.framerate, os.bitrate, os.status, os.last_error,
       os.output_port, os.output_url,
       lt.id AS layout_id, lt.name AS layout_name, lt.grid_rows, lt.grid_cols
FROM output_streams os
JOIN layout_templates lt ON os.layout_template_id = lt.id
WHERE os.id = $1
"""

_MAPPINGS_SQL = """
SELECT sm.slot_position, ist.id, ist.name, ist.rtsp_url, ist.username, ist.password
FROM stream_mappings sm
JOIN input_streams ist ON sm.input_stream_id = ist.id
WHERE sm.output_stream_id = $1
ORDER BY sm.slot_position
"""

RESTART_MESSAGE = "interrupted by service restart"


def job_from_row(row: Mapping[str, Any]) -> RelayJob:
    """Build a RelayJob from an output_streams row joined with its layout template.

    Resolution, bitrate and framerate are free-form columns; a value the
    pipeline cannot use is a configuration error on that job.
    """
    try:
        return RelayJob(
            id=row["id"],
            name=row["name"],
            layout=LayoutTemplate(
                id=row["layout_id"],
                name=row["layout_name"],
                grid_rows=row["grid_rows"],
                grid_cols=row["grid_cols"],
            ),
            resolution=row["resolution"],
            framerate=row["framerate"],
            bitrate=row["bitrate"],
            state=JobState(row["status"]),
            last_error=row["last_error"],
            output_port=row["output_port"],
            output_url=row["output_url"],
        )
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"relay job {row['id']} has invalid settings: {problems}", phase="load") from e


def _jsonable(row: asyncpg.Record) -> dict[str, Any]:
    d = dict(row)
    for k, v in d.items():
        if isinstance(v, datetime):
            d[k] = v.isoformat()
    return d


class PgStore:
    """Persistence collaborator: reads job/layout/mapping/source rows, writes job status."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pool: Optional[asyncpg.Pool] = None

    async def open(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.settings.db_dsn,
                min_size=self.settings.db_min_size,
                max_size=self.settings.db_max_size,
            )
            await self.init_schema()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PgStore is not open")
        return self._pool

    async def init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def get_job(self, job_id: int) -> RelayJob:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(_JOB_SQL, job_id)
        if not row:
            raise NotFoundError(f"relay job {job_id} not found", phase="load")
        return job_from_row(row)

    async def get_mappings(self, job_id: int) -> List[SlotMapping]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(_MAPPINGS_SQL, job_id)
        return [
            SlotMapping(
                job_id=job_id,
                slot=r["slot_position"],
                source=InputSource(
                    id=r["id"],
                    name=r["name"],
                    url=r["rtsp_url"],
                    username=r["username"],
                    password=r["password"],
                ),
            )
            for r in rows
        ]

    async def set_state(
        self,
        job_id: int,
        state: JobState,
        *,
        endpoint: Optional[Endpoint] = None,
        last_error: Optional[str] = None,
    ) -> None:
        async with self.pool.acquire() as conn:
            if state is JobState.RUNNING:
                res = await conn.execute(
                    """
                    UPDATE output_streams
                    SET status=$2, output_port=$3, output_url=$4, last_error=NULL, updated_at=NOW()
                    WHERE id=$1
                    """,
                    job_id, state.value,
                    endpoint.port if endpoint else None,
                    endpoint.url if endpoint else None,
                )
            elif state in (JobState.STOPPED, JobState.ERROR):
                res = await conn.execute(
                    """
                    UPDATE output_streams
                    SET status=$2, output_port=NULL, output_url=NULL, last_error=$3, updated_at=NOW()
                    WHERE id=$1
                    """,
                    job_id, state.value, last_error,
                )
            else:
                res = await conn.execute(
                    "UPDATE output_streams SET status=$2, updated_at=NOW() WHERE id=$1",
                    job_id, state.value,
                )
        if res.endswith(" 0"):
            raise NotFoundError(f"relay job {job_id} not found", phase="persist")

    async def list_inputs(self) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT id, name, status, last_error FROM input_streams ORDER BY id")
        return [_jsonable(r) for r in rows]

    async def list_jobs(self) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, name, status, last_error, output_port, output_url FROM output_streams ORDER BY id"
            )
        return [_jsonable(r) for r in rows]

    async def reset_stale_jobs(self) -> int:
        """Jobs left Starting/Running/Stopping by a previous run have no process any more."""
        async with self.pool.acquire() as conn:
            res = await conn.execute(
                """
                UPDATE output_streams
                SET status='stopped', output_port=NULL, output_url=NULL, last_error=$1, updated_at=NOW()
                WHERE status IN ('starting', 'running', 'stopping')
                """,
                RESTART_MESSAGE,
            )
        count = int(res.rsplit(" ", 1)[-1])
        if count:
            LOG.warning("reset %d relay job(s) left live by a previous run", count)
        return count
