"""
Job Store - persistence for jobs, steps, ledger entries and owner preferences.

Two implementations share one interface:

- InMemoryJobStore: single-process store used in tests and local runs
- PostgresJobStore: asyncpg-backed store for deployments

Both enforce the same write rules:
- a job that reached done/error/suggested rejects further writes
- claim_job is a conditional update queued -> processing
- steps must arrive with sequence_no == last + 1
- (reference_type, reference_id) is unique across the ledger

Usage:
    from services.orchestrator.db import create_store

    store = await create_store(config)
    job = await store.get_job(job_id)
"""

import asyncio
import copy
import json
import logging
from typing import Any, Iterable, Optional

import asyncpg

from core.config import Config
from core.errors import DuplicateReferenceError, JobImmutableError, PipelineError

from .state import Job, JobStatus, LedgerEntry, Step, TERMINAL_STATUSES, utcnow

logger = logging.getLogger(__name__)


class JobStore:
    """Interface consumed by the orchestrator and the ledger."""

    async def get_job(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def insert_job(self, job: Job) -> Job:
        raise NotImplementedError

    async def upsert_job(self, job: Job) -> Job:
        raise NotImplementedError

    async def claim_job(self, job_id: str) -> bool:
        raise NotImplementedError

    async def list_jobs_by_status(self, statuses: Iterable[JobStatus], limit: int = 50) -> list[Job]:
        raise NotImplementedError

    async def append_step(self, step: Step) -> Step:
        raise NotImplementedError

    async def list_steps(self, job_id: str) -> list[Step]:
        raise NotImplementedError

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        raise NotImplementedError

    async def find_ledger_entry(self, reference_type: str, reference_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    async def get_balance(self, owner_id: str) -> int:
        raise NotImplementedError

    async def get_owner_preferences(self, owner_id: str) -> dict:
        raise NotImplementedError

    async def set_owner_preferences(self, owner_id: str, prefs: dict) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    """
    Dict-backed store. Each operation holds one lock, so every write is
    atomic in the same way a single SQL statement would be.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._steps: dict[str, list[Step]] = {}
        self._ledger: dict[tuple[str, str], LedgerEntry] = {}
        self._prefs: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def insert_job(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise PipelineError(f"Job {job.id} already exists", error_code="DUPLICATE_JOB")
            self._jobs[job.id] = copy.deepcopy(job)
        return job

    async def upsert_job(self, job: Job) -> Job:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is not None and stored.status in TERMINAL_STATUSES:
                raise JobImmutableError(f"Job {job.id} is {stored.status.value}; write rejected")
            job.updated_at = utcnow()
            self._jobs[job.id] = copy.deepcopy(job)
        return job

    async def claim_job(self, job_id: str) -> bool:
        async with self._lock:
            stored = self._jobs.get(job_id)
            if stored is None or stored.status != JobStatus.QUEUED:
                return False
            stored.status = JobStatus.PROCESSING
            stored.updated_at = utcnow()
            return True

    async def list_jobs_by_status(self, statuses: Iterable[JobStatus], limit: int = 50) -> list[Job]:
        wanted = set(statuses)
        async with self._lock:
            jobs = [j for j in self._jobs.values() if j.status in wanted]
        jobs.sort(key=lambda j: j.created_at)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def append_step(self, step: Step) -> Step:
        async with self._lock:
            steps = self._steps.setdefault(step.job_id, [])
            expected = len(steps) + 1
            if step.sequence_no != expected:
                raise PipelineError(
                    f"Step {step.sequence_no} out of order for job {step.job_id} (expected {expected})",
                    error_code="STEP_OUT_OF_ORDER",
                )
            steps.append(step)
        return step

    async def list_steps(self, job_id: str) -> list[Step]:
        async with self._lock:
            return list(self._steps.get(job_id, []))

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._lock:
            if entry.reference in self._ledger:
                raise DuplicateReferenceError(entry.reference_type, entry.reference_id)
            self._ledger[entry.reference] = entry
        return entry

    async def find_ledger_entry(self, reference_type: str, reference_id: str) -> Optional[LedgerEntry]:
        async with self._lock:
            return self._ledger.get((reference_type, reference_id))

    async def list_ledger_entries(self, owner_id: str) -> list[LedgerEntry]:
        async with self._lock:
            entries = [e for e in self._ledger.values() if e.owner_id == owner_id]
        return sorted(entries, key=lambda e: e.created_at)

    async def get_balance(self, owner_id: str) -> int:
        async with self._lock:
            return sum(e.delta for e in self._ledger.values() if e.owner_id == owner_id)

    async def get_owner_preferences(self, owner_id: str) -> dict:
        async with self._lock:
            return copy.deepcopy(self._prefs.get(owner_id, {}))

    async def set_owner_preferences(self, owner_id: str, prefs: dict) -> None:
        async with self._lock:
            self._prefs[owner_id] = copy.deepcopy(prefs)


# ============================================================================
# PostgreSQL
# ============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS generation_jobs (
    id TEXT PRIMARY KEY,
    parent_id TEXT REFERENCES generation_jobs(id),
    owner_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    working_variables JSONB NOT NULL DEFAULT '{}'::jsonb,
    prompt_text TEXT,
    output_url TEXT,
    error JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS generation_jobs_status_idx ON generation_jobs (status, created_at);

CREATE TABLE IF NOT EXISTS generation_steps (
    job_id TEXT NOT NULL REFERENCES generation_jobs(id),
    sequence_no INTEGER NOT NULL,
    step_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (job_id, sequence_no)
);

CREATE TABLE IF NOT EXISTS credit_ledger (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    delta INTEGER NOT NULL,
    reason TEXT NOT NULL,
    source TEXT NOT NULL,
    reference_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (reference_type, reference_id)
);
CREATE INDEX IF NOT EXISTS credit_ledger_owner_idx ON credit_ledger (owner_id);

CREATE TABLE IF NOT EXISTS owner_preferences (
    owner_id TEXT PRIMARY KEY,
    prefs JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_TERMINAL_SQL = "('done', 'error', 'suggested')"


async def _init_connection(conn: asyncpg.Connection):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


def _row_to_job(row: Any) -> Job:
    return Job.from_dict(dict(row))


def _row_to_entry(row: Any) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        owner_id=row["owner_id"],
        delta=row["delta"],
        reason=row["reason"],
        source=row["source"],
        reference_type=row["reference_type"],
        reference_id=row["reference_id"],
        created_at=row["created_at"],
    )


class PostgresJobStore(JobStore):
    """
    asyncpg-backed store.

    Usage:
        store = await PostgresJobStore.connect(config.database.url)
        await store.ensure_schema()
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @classmethod
    async def connect(cls, url: str, min_size: int = 2, max_size: int = 10) -> "PostgresJobStore":
        pool = await asyncpg.create_pool(url, min_size=min_size, max_size=max_size, init=_init_connection)
        return cls(pool)

    async def ensure_schema(self) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        await self.db_pool.close()

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM generation_jobs WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def insert_job(self, job: Job) -> Job:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO generation_jobs (
                    id, parent_id, owner_id, mode, status, working_variables,
                    prompt_text, output_url, error, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                job.id,
                job.parent_id,
                job.owner_id,
                job.mode.value,
                job.status.value,
                job.working_variables.to_dict(),
                job.prompt_text,
                job.output_url,
                job.error,
                job.created_at,
                job.updated_at,
            )
        return job

    async def upsert_job(self, job: Job) -> Job:
        job.updated_at = utcnow()
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO generation_jobs (
                    id, parent_id, owner_id, mode, status, working_variables,
                    prompt_text, output_url, error, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    working_variables = EXCLUDED.working_variables,
                    prompt_text = EXCLUDED.prompt_text,
                    output_url = EXCLUDED.output_url,
                    error = EXCLUDED.error,
                    updated_at = EXCLUDED.updated_at
                WHERE generation_jobs.status NOT IN {_TERMINAL_SQL}
                RETURNING id
                """,
                job.id,
                job.parent_id,
                job.owner_id,
                job.mode.value,
                job.status.value,
                job.working_variables.to_dict(),
                job.prompt_text,
                job.output_url,
                job.error,
                job.created_at,
                job.updated_at,
            )
        if row is None:
            raise JobImmutableError(f"Job {job.id} is terminal; write rejected")
        return job

    async def claim_job(self, job_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE generation_jobs
                SET status = 'processing', updated_at = NOW()
                WHERE id = $1 AND status = 'queued'
                RETURNING id
                """,
                job_id,
            )
        return row is not None

    async def list_jobs_by_status(self, statuses: Iterable[JobStatus], limit: int = 50) -> list[Job]:
        values = [s.value for s in statuses]
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM generation_jobs
                WHERE status = ANY($1::text[])
                ORDER BY created_at
                LIMIT $2
                """,
                values,
                limit,
            )
        return [_row_to_job(r) for r in rows]

    async def append_step(self, step: Step) -> Step:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO generation_steps (job_id, sequence_no, step_type, payload, created_at)
                SELECT $1, $2, $3, $4, $5
                WHERE COALESCE(
                    (SELECT MAX(sequence_no) FROM generation_steps WHERE job_id = $1), 0
                ) + 1 = $2
                ON CONFLICT DO NOTHING
                """,
                step.job_id,
                step.sequence_no,
                step.type,
                json.loads(json.dumps(step.payload, default=str)),
                step.created_at,
            )
        if result.endswith(" 0"):
            raise PipelineError(
                f"Step {step.sequence_no} out of order for job {step.job_id}",
                error_code="STEP_OUT_OF_ORDER",
            )
        return step

    async def list_steps(self, job_id: str) -> list[Step]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM generation_steps WHERE job_id = $1 ORDER BY sequence_no",
                job_id,
            )
        steps = []
        for row in rows:
            payload = row["payload"] or {}
            steps.append(Step(
                job_id=row["job_id"],
                sequence_no=row["sequence_no"],
                type=row["step_type"],
                input=payload.get("input"),
                output=payload.get("output"),
                timing=payload.get("timing") or {},
                error=payload.get("error"),
                created_at=row["created_at"],
            ))
        return steps

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        try:
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO credit_ledger (
                        id, owner_id, delta, reason, source,
                        reference_type, reference_id, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    entry.id,
                    entry.owner_id,
                    entry.delta,
                    entry.reason,
                    entry.source,
                    entry.reference_type,
                    entry.reference_id,
                    entry.created_at,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateReferenceError(entry.reference_type, entry.reference_id) from e
        return entry

    async def find_ledger_entry(self, reference_type: str, reference_id: str) -> Optional[LedgerEntry]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM credit_ledger WHERE reference_type = $1 AND reference_id = $2",
                reference_type,
                reference_id,
            )
        return _row_to_entry(row) if row else None

    async def get_balance(self, owner_id: str) -> int:
        async with self.db_pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COALESCE(SUM(delta), 0) FROM credit_ledger WHERE owner_id = $1",
                owner_id,
            )
        return int(value or 0)

    async def get_owner_preferences(self, owner_id: str) -> dict:
        async with self.db_pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT prefs FROM owner_preferences WHERE owner_id = $1",
                owner_id,
            )
        return dict(value or {})

    async def set_owner_preferences(self, owner_id: str, prefs: dict) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO owner_preferences (owner_id, prefs, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (owner_id) DO UPDATE SET prefs = EXCLUDED.prefs, updated_at = NOW()
                """,
                owner_id,
                prefs,
            )


async def create_store(config: Config) -> JobStore:
    """Postgres when DATABASE_URL is set, in-memory otherwise."""
    if config.database.url:
        store = await PostgresJobStore.connect(
            config.database.url,
            min_size=config.database.pool_min_size,
            max_size=config.database.pool_max_size,
        )
        await store.ensure_schema()
        logger.info("Job store: PostgreSQL")
        return store

    logger.warning("DATABASE_URL not set - using in-memory job store (state is lost on restart)")
    return InMemoryJobStore()
