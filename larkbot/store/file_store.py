"""Job store on the local filesystem.

Layout under data_dir (default .larkbot/):

    jobs/{job_id}.yaml              one record per job, rewritten in place
    queue/pending/{score}-{job_id}  empty marker files; score = enqueue time (ms)
    queue/claimed/                  markers are renamed here when popped
    users/{user_id}.log             job ids appended one per line
    threads/{thread_id}             id of the first job created in that chat thread

Popping the queue renames the marker into claimed/; rename is atomic, so
only one caller (thread or process) can win a given entry.
"""

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, List

import yaml

from larkbot.models import COMPLETED, FAILED, PENDING, QUESTIONING, Job
from larkbot.store.base import JobStore, in_queue, now_ms

JOBS_DIR = "jobs"
PENDING_DIR = "queue/pending"
CLAIMED_DIR = "queue/claimed"
USERS_DIR = "users"
THREADS_DIR = "threads"
SCORE_WIDTH = 15
LOCK_STRIPES = 64

LOG = logging.getLogger("larkbot.store.file_store")


def _safe_name(value: str) -> str:
    return re.sub(r"[^\w.-]", "_", value)


class FileJobStore(JobStore):
    """YAML files + marker-file queue."""

    def __init__(self, data_dir: Path | str, clock=now_ms) -> None:
        super().__init__(clock=clock)
        self._base = Path(data_dir)
        self._locks = [threading.RLock() for _ in range(LOCK_STRIPES)]
        self._history_guard = threading.Lock()

    # -- paths -----------------------------------------------------------------

    def _job_path(self, job_id: str) -> Path:
        return self._base / JOBS_DIR / f"{_safe_name(job_id)}.yaml"

    def _pending_dir(self) -> Path:
        return self._base / PENDING_DIR

    def _claimed_dir(self) -> Path:
        return self._base / CLAIMED_DIR

    def _history_path(self, user_id: str) -> Path:
        return self._base / USERS_DIR / f"{_safe_name(user_id)}.log"

    def _thread_path(self, thread_id: str) -> Path:
        return self._base / THREADS_DIR / _safe_name(thread_id)

    def _lock(self, job_id: str) -> threading.RLock:
        # Striped; no caller holds one job's lock while taking another's
        return self._locks[hash(job_id) % LOCK_STRIPES]

    # -- records ---------------------------------------------------------------

    def _write(self, job: Job) -> Path:
        path = self._job_path(job.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = job.model_dump(mode="json", exclude_none=True)
        raw = yaml.dump(
            payload,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=1000,
        )
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{job.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(raw)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        LOG.debug("Saved job %s (%s) to %s", job.id, job.status, path)
        return path

    def get(self, job_id: str) -> Job | None:
        path = self._job_path(job_id)
        if not path.is_file():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            LOG.warning("Failed to load job %s: %s", path, e)
            return None
        if not data:
            return None
        return Job.model_validate(data)

    # -- queue index -----------------------------------------------------------

    def _queue_entries(self, job_id: str) -> List[Path]:
        base = self._pending_dir()
        if not base.is_dir():
            return []
        return list(base.glob(f"*-{_safe_name(job_id)}"))

    def _enqueue(self, job_id: str, score: int) -> None:
        """Add or re-score a queue entry; at most one entry per job."""
        self._remove_from_queue(job_id)
        base = self._pending_dir()
        base.mkdir(parents=True, exist_ok=True)
        (base / f"{score:0{SCORE_WIDTH}d}-{_safe_name(job_id)}").touch()
        LOG.debug("Enqueued job %s (score %s)", job_id, score)

    def _remove_from_queue(self, job_id: str) -> bool:
        removed = False
        for entry in self._queue_entries(job_id):
            try:
                entry.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed

    def _take_entry(self, entry: Path) -> bool:
        """Rename a marker into claimed/. False if another caller took it first."""
        claimed = self._claimed_dir()
        claimed.mkdir(parents=True, exist_ok=True)
        target = claimed / entry.name
        try:
            os.rename(entry, target)
        except FileNotFoundError:
            return False
        target.unlink(missing_ok=True)
        return True

    def pending_count(self) -> int:
        base = self._pending_dir()
        if not base.is_dir():
            return 0
        return sum(1 for _ in base.iterdir())

    # -- history ---------------------------------------------------------------

    def _append_history(self, user_id: str, job_id: str) -> None:
        path = self._history_path(user_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._history_guard:
            with path.open("a", encoding="utf-8") as f:
                f.write(f"{job_id}\n")

    def _index_thread(self, thread_id: str, job_id: str) -> None:
        path = self._thread_path(thread_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with path.open("x", encoding="utf-8") as f:
                f.write(job_id)
        except FileExistsError:
            LOG.debug("Thread %s already indexed, keeping its first job", thread_id)

    # -- JobStore --------------------------------------------------------------

    def create(self, **fields: Any) -> Job:
        job = self._build_job(fields)
        with self._lock(job.id):
            self._write(job)
            if job.status != QUESTIONING:
                self._enqueue(job.id, job.created_at)
        self._append_history(job.user_id, job.id)
        if job.thread_id:
            self._index_thread(job.thread_id, job.id)
        LOG.info("Created job %s for user %s, status %s", job.id, job.user_id, job.status)
        return job

    def update(self, job_id: str, **changes: Any) -> Job | None:
        with self._lock(job_id):
            job = self.get(job_id)
            if job is None:
                return None
            updated = self._merge(job, changes)
            self._write(updated)
            if "status" in changes and updated.status != job.status:
                if in_queue(job.status):
                    self._remove_from_queue(job_id)
                if updated.status == PENDING:
                    self._enqueue(job_id, self._clock())
                LOG.info("Job %s status %s -> %s", job_id, job.status, updated.status)
            return updated

    def list_for_user(self, user_id: str, limit: int = 10) -> List[Job]:
        path = self._history_path(user_id)
        if not path.is_file() or limit <= 0:
            return []
        ids: List[str] = []
        for line in reversed(path.read_text(encoding="utf-8").splitlines()):
            job_id = line.strip()
            if job_id and job_id not in ids:
                ids.append(job_id)
            if len(ids) >= limit:
                break
        jobs = [job for job in (self.get(i) for i in ids) if job is not None]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def find_by_thread(self, thread_id: str) -> Job | None:
        path = self._thread_path(thread_id)
        if not path.is_file():
            return None
        return self.get(path.read_text(encoding="utf-8").strip())

    def dequeue_oldest_pending(self) -> Job | None:
        base = self._pending_dir()
        if not base.is_dir():
            return None
        for entry in sorted(base.iterdir()):
            if not self._take_entry(entry):
                continue
            job_id = entry.name.split("-", 1)[1]
            job = self.get(job_id)
            if job is None:
                LOG.warning("Queue entry %s has no job record", entry.name)
                continue
            return self.update(job_id, **self._processing_changes())
        return None

    def claim(self, job_id: str) -> Job | None:
        with self._lock(job_id):
            job = self.get(job_id)
            if job is None:
                return None
            if job.status == PENDING:
                entries = sorted(self._queue_entries(job_id))
                if not any(self._take_entry(e) for e in entries):
                    LOG.info("Job %s was taken from the queue by another worker", job_id)
                    return None
            elif job.status not in (FAILED, COMPLETED):
                LOG.info("Job %s is %s, not claimable", job_id, job.status)
                return None
            return self.update(job_id, **self._processing_changes(job))
