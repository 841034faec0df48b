"""
Job record store.

Plain CRUD over the `generation_jobs` table.  The table carries a unique
index on `run_id`; an insert that collides raises `DuplicateRunError` so the
orchestrator can hand back the record that won.  No business rules live here.
"""

import copy
import logging
import threading
from typing import Optional

from postgrest.exceptions import APIError
from pydantic_core import to_jsonable_python
from supabase import Client

from ..errors import DuplicateRunError, JobNotFound, StoreUnavailable
from .models import Job, utcnow

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class SupabaseJobStore:
    """Jobs persisted through the Supabase service-role client."""

    def __init__(self, client: Client, table: str = "generation_jobs"):
        self._client = client
        self._table = table

    def _rows(self):
        return self._client.table(self._table)

    def create(self, job: Job) -> Job:
        try:
            result = self._rows().insert(job.to_row()).execute()
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise DuplicateRunError(job.run_id) from e
            logger.error(f"Job insert failed for run {job.run_id}: {e}")
            raise StoreUnavailable(f"job insert failed: {e}") from e
        rows = result.data or []
        return Job.from_row(rows[0]) if rows else job

    def get(self, job_id: str) -> Optional[Job]:
        return self._select_one("id", job_id)

    def get_by_run_id(self, run_id: str) -> Optional[Job]:
        return self._select_one("run_id", run_id)

    def _select_one(self, column: str, value: str) -> Optional[Job]:
        try:
            result = self._rows().select("*").eq(column, value).limit(1).execute()
        except APIError as e:
            logger.error(f"Job lookup by {column}={value} failed: {e}")
            raise StoreUnavailable(f"job lookup failed: {e}") from e
        rows = result.data or []
        return Job.from_row(rows[0]) if rows else None

    def update(self, job_id: str, **fields) -> Job:
        fields["updated_at"] = utcnow()
        patch = to_jsonable_python(fields)
        try:
            result = self._rows().update(patch).eq("id", job_id).execute()
        except APIError as e:
            logger.error(f"Job update failed for {job_id}: {e}")
            raise StoreUnavailable(f"job update failed: {e}") from e
        rows = result.data or []
        if not rows:
            raise JobNotFound(f"job {job_id} not found")
        return Job.from_row(rows[0])

    def delete(self, job_id: str) -> None:
        try:
            self._rows().delete().eq("id", job_id).execute()
        except APIError as e:
            logger.error(f"Job delete failed for {job_id}: {e}")
            raise StoreUnavailable(f"job delete failed: {e}") from e


class InMemoryJobStore:
    """
    Process-local store with the same contract as `SupabaseJobStore`.

    Used for local development and tests.  A single lock covers both the
    row map and the run_id index so the uniqueness check and the insert are
    one step.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._by_run: dict[str, str] = {}

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.run_id in self._by_run:
                raise DuplicateRunError(job.run_id)
            stored = job.model_copy(deep=True)
            self._jobs[stored.id] = stored
            self._by_run[stored.run_id] = stored.id
            return stored.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def get_by_run_id(self, run_id: str) -> Optional[Job]:
        with self._lock:
            job_id = self._by_run.get(run_id)
            job = self._jobs.get(job_id) if job_id else None
            return job.model_copy(deep=True) if job else None

    def update(self, job_id: str, **fields) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(f"job {job_id} not found")
            values = job.model_dump()
            values.update(copy.deepcopy(fields))
            values["updated_at"] = utcnow()
            updated = Job.model_validate(values)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is not None:
                self._by_run.pop(job.run_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
