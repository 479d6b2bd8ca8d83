"""Job Store port: job records, source documents, leases and cancel flags.

Two implementations:
- ``InMemoryJobStore`` for tests and single-process runs
- ``RedisJobStore`` backed by the arq Redis connection

Leases give at most one in-flight execution per job id. A save whose
progress sequence is older than the stored one is rejected, so snapshots
never go backwards.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

from taxflow.pipeline.job import ProcessingJob
from taxflow.shared.errors import JobNotFoundError, StaleProgressError

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 7 * 86400


class JobStore(ABC):
    """Persistence for processing jobs."""

    @abstractmethod
    async def create(self, job: ProcessingJob) -> None:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> ProcessingJob:
        """Load a job.

        Raises:
            JobNotFoundError: Unknown job id
        """
        pass

    @abstractmethod
    async def save(self, job: ProcessingJob) -> None:
        """Persist a job.

        Raises:
            JobNotFoundError: Unknown job id
            StaleProgressError: Stored snapshot is newer than ``job.progress``
        """
        pass

    @abstractmethod
    async def put_document(self, job_id: str, document: bytes) -> None:
        pass

    @abstractmethod
    async def get_document(self, job_id: str) -> bytes:
        pass

    @abstractmethod
    async def acquire_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        """Take the exclusive lease for ``job_id``; False if someone else holds it."""
        pass

    @abstractmethod
    async def release_lease(self, job_id: str, owner: str) -> None:
        """Release the lease if ``owner`` still holds it."""
        pass

    @abstractmethod
    async def request_cancel(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def is_cancel_requested(self, job_id: str) -> bool:
        pass

    @abstractmethod
    async def clear_cancel(self, job_id: str) -> None:
        pass


class InMemoryJobStore(JobStore):
    """Process-local store. Jobs are copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, ProcessingJob] = {}
        self._documents: dict[str, bytes] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._cancel_flags: set[str] = set()

    async def create(self, job: ProcessingJob) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> ProcessingJob:
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            return self._jobs[job_id].model_copy(deep=True)

    async def save(self, job: ProcessingJob) -> None:
        with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise JobNotFoundError(job.id)
            if stored.progress.sequence > job.progress.sequence:
                raise StaleProgressError(job.id, stored.progress.sequence, job.progress.sequence)
            self._jobs[job.id] = job.model_copy(deep=True)

    async def put_document(self, job_id: str, document: bytes) -> None:
        with self._lock:
            self._documents[job_id] = document

    async def get_document(self, job_id: str) -> bytes:
        with self._lock:
            if job_id not in self._documents:
                raise JobNotFoundError(job_id)
            return self._documents[job_id]

    async def acquire_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._lock:
            holder = self._leases.get(job_id)
            if holder is not None and holder[1] > now and holder[0] != owner:
                return False
            self._leases[job_id] = (owner, now + ttl_seconds)
            return True

    async def release_lease(self, job_id: str, owner: str) -> None:
        with self._lock:
            holder = self._leases.get(job_id)
            if holder is not None and holder[0] == owner:
                del self._leases[job_id]

    async def request_cancel(self, job_id: str) -> None:
        with self._lock:
            self._cancel_flags.add(job_id)

    async def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancel_flags

    async def clear_cancel(self, job_id: str) -> None:
        with self._lock:
            self._cancel_flags.discard(job_id)


# KEYS[1] = lease key, ARGV[1] = owner
RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1] = job key, ARGV[1] = job json, ARGV[2] = sequence, ARGV[3] = ttl seconds
# Returns 1 on write, 0 when the stored snapshot is newer, -1 when missing.
SAVE_JOB_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    return -1
end
local stored = cjson.decode(current)['progress']['sequence']
if stored > tonumber(ARGV[2]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[3]))
return 1
"""


class RedisJobStore(JobStore):
    """Redis-backed store sharing the arq connection.

    Keys:
        job:{id}           job JSON
        job:{id}:document  source document bytes
        job:{id}:lease     lease owner token (SET NX PX)
        job:{id}:cancel    cancel flag
    """

    def __init__(self, redis: Any, ttl_seconds: int = JOB_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def _key(job_id: str, suffix: str = "") -> str:
        return f"job:{job_id}:{suffix}" if suffix else f"job:{job_id}"

    async def create(self, job: ProcessingJob) -> None:
        await self._redis.set(self._key(job.id), job.model_dump_json(), ex=self._ttl)

    async def get(self, job_id: str) -> ProcessingJob:
        raw = await self._redis.get(self._key(job_id))
        if raw is None:
            raise JobNotFoundError(job_id)
        return ProcessingJob.model_validate_json(raw)

    async def save(self, job: ProcessingJob) -> None:
        outcome = await self._redis.eval(
            SAVE_JOB_SCRIPT,
            1,
            self._key(job.id),
            job.model_dump_json(),
            job.progress.sequence,
            self._ttl,
        )
        if outcome == -1:
            raise JobNotFoundError(job.id)
        if outcome == 0:
            stored = await self.get(job.id)
            raise StaleProgressError(job.id, stored.progress.sequence, job.progress.sequence)

    async def put_document(self, job_id: str, document: bytes) -> None:
        await self._redis.set(self._key(job_id, "document"), document, ex=self._ttl)

    async def get_document(self, job_id: str) -> bytes:
        document = await self._redis.get(self._key(job_id, "document"))
        if document is None:
            raise JobNotFoundError(job_id)
        return bytes(document)

    async def acquire_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        acquired = await self._redis.set(
            self._key(job_id, "lease"), owner, nx=True, px=int(ttl_seconds * 1000)
        )
        return bool(acquired)

    async def release_lease(self, job_id: str, owner: str) -> None:
        released = await self._redis.eval(
            RELEASE_LEASE_SCRIPT, 1, self._key(job_id, "lease"), owner
        )
        if not released:
            logger.warning(f"Lease for job {job_id} expired or was taken before release")

    async def request_cancel(self, job_id: str) -> None:
        await self._redis.set(self._key(job_id, "cancel"), "1", ex=self._ttl)

    async def is_cancel_requested(self, job_id: str) -> bool:
        return bool(await self._redis.exists(self._key(job_id, "cancel")))

    async def clear_cancel(self, job_id: str) -> None:
        await self._redis.delete(self._key(job_id, "cancel"))
