"""Job store on Redis.

Keys (optionally prefixed):

    job:{job_id}        JSON job record
    jobs:pending        sorted set, member = job id, score = enqueue time (ms)
    jobs:user:{user_id} list of job ids, newest pushed left
    jobs:thread:{id}    id of the first job created in that chat thread

ZPOPMIN makes pop-oldest a single atomic server-side operation. Updates to
one job run in a WATCH/MULTI transaction so concurrent writers to the same
job serialize.
"""

import logging
from typing import Any, List

import redis

from larkbot.models import COMPLETED, FAILED, PENDING, QUESTIONING, Job
from larkbot.store.base import JobStore, in_queue, now_ms

JOB_PREFIX = "job:"
PENDING_JOBS_KEY = "jobs:pending"
USER_JOBS_PREFIX = "jobs:user:"
THREAD_JOBS_PREFIX = "jobs:thread:"

LOG = logging.getLogger("larkbot.store.redis_store")


class RedisJobStore(JobStore):
    """Job records, queue and history in one Redis database."""

    def __init__(self, client: "redis.Redis", key_prefix: str = "", clock=now_ms) -> None:
        super().__init__(clock=clock)
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> "RedisJobStore":
        pool = redis.ConnectionPool.from_url(url, decode_responses=True)
        return cls(redis.Redis(connection_pool=pool), key_prefix=key_prefix)

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}{JOB_PREFIX}{job_id}"

    def _pending_key(self) -> str:
        return f"{self._prefix}{PENDING_JOBS_KEY}"

    def _user_key(self, user_id: str) -> str:
        return f"{self._prefix}{USER_JOBS_PREFIX}{user_id}"

    def _thread_key(self, thread_id: str) -> str:
        return f"{self._prefix}{THREAD_JOBS_PREFIX}{thread_id}"

    @staticmethod
    def _dump(job: Job) -> str:
        return job.model_dump_json(exclude_none=True)

    def create(self, **fields: Any) -> Job:
        job = self._build_job(fields)
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._job_key(job.id), self._dump(job))
        if job.status != QUESTIONING:
            pipe.zadd(self._pending_key(), {job.id: job.created_at})
        pipe.lpush(self._user_key(job.user_id), job.id)
        if job.thread_id:
            pipe.set(self._thread_key(job.thread_id), job.id, nx=True)
        pipe.execute()
        LOG.info("Created job %s for user %s, status %s", job.id, job.user_id, job.status)
        return job

    def get(self, job_id: str) -> Job | None:
        raw = self._redis.get(self._job_key(job_id))
        if not raw:
            return None
        return Job.model_validate_json(raw)

    def update(self, job_id: str, **changes: Any) -> Job | None:
        key = self._job_key(job_id)

        def _apply(pipe: Any) -> Job | None:
            raw = pipe.get(key)
            if not raw:
                return None
            job = Job.model_validate_json(raw)
            updated = self._merge(job, changes)
            pipe.multi()
            pipe.set(key, self._dump(updated))
            if "status" in changes and updated.status != job.status:
                if in_queue(job.status):
                    pipe.zrem(self._pending_key(), job_id)
                if updated.status == PENDING:
                    pipe.zadd(self._pending_key(), {job_id: self._clock()})
                LOG.info("Job %s status %s -> %s", job_id, job.status, updated.status)
            return updated

        return self._redis.transaction(_apply, key, value_from_callable=True)

    def list_for_user(self, user_id: str, limit: int = 10) -> List[Job]:
        if limit <= 0:
            return []
        ids = self._redis.lrange(self._user_key(user_id), 0, limit - 1) or []
        jobs = [job for job in (self.get(i) for i in ids) if job is not None]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def find_by_thread(self, thread_id: str) -> Job | None:
        job_id = self._redis.get(self._thread_key(thread_id))
        return self.get(job_id) if job_id else None

    def dequeue_oldest_pending(self) -> Job | None:
        while True:
            popped = self._redis.zpopmin(self._pending_key(), 1)
            if not popped:
                return None
            job_id = popped[0][0]
            if self.get(job_id) is None:
                LOG.warning("Queue entry %s has no job record", job_id)
                continue
            return self.update(job_id, **self._processing_changes())

    def claim(self, job_id: str) -> Job | None:
        key = self._job_key(job_id)
        pending_key = self._pending_key()

        def _take(pipe: Any) -> Job | None:
            raw = pipe.get(key)
            if not raw:
                return None
            job = Job.model_validate_json(raw)
            if job.status == PENDING:
                if pipe.zscore(pending_key, job_id) is None:
                    LOG.info("Job %s was taken from the queue by another worker", job_id)
                    return None
            elif job.status not in (FAILED, COMPLETED):
                LOG.info("Job %s is %s, not claimable", job_id, job.status)
                return None
            updated = self._merge(job, self._processing_changes(job))
            pipe.multi()
            pipe.set(key, self._dump(updated))
            if job.status == PENDING:
                pipe.zrem(pending_key, job_id)
            LOG.info("Job %s status %s -> %s", job_id, job.status, updated.status)
            return updated

        # Watching the queue too: a concurrent ZPOPMIN of this job aborts the claim
        return self._redis.transaction(_take, key, pending_key, value_from_callable=True)

    def pending_count(self) -> int:
        return int(self._redis.zcard(self._pending_key()) or 0)
