"""Bounded in-memory work queue with a background worker thread."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

_LOGGER = logging.getLogger("chrono.dispatch")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DispatchQueue:
    """Run `worker(request_id)` jobs one at a time off the request thread.

    `submit` never blocks: when the queue is full the job is recorded as
    `rejected` and nothing is enqueued. Job records move through
    queued -> running -> succeeded | failed and are kept for polling
    until they expire or the store grows past `max_jobs`.
    """

    def __init__(
        self,
        worker: Callable[[int], dict],
        max_queue: int = 100,
        max_jobs: int = 500,
        ttl_seconds: int = 24 * 3600,
    ):
        self._worker = worker
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._jobs: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs
        self._ttl_seconds = ttl_seconds
        self._thread: Optional[threading.Thread] = None

    def submit(self, request_id: int, *, trace_id: str = "") -> dict:
        self._cleanup()
        job_id = uuid.uuid4().hex
        job = {
            "job_id": job_id,
            "request_id": request_id,
            "status": "queued",
            "created_at": _now(),
            "started_at": None,
            "finished_at": None,
            "trace_id": trace_id,
            "result": None,
            "error": None,
        }
        with self._lock:
            self._jobs[job_id] = job
            self._evict_locked()
        try:
            self._queue.put_nowait(job_id)
        except queue.Full:
            with self._lock:
                job["status"] = "rejected"
                job["error"] = "dispatch queue is full"
                job["finished_at"] = _now()
            _LOGGER.warning("dispatch_rejected request_id=%s queue_size=%s", request_id, self._queue.maxsize)
            return {"job_id": job_id, "status": "rejected"}
        self._ensure_worker()
        return {"job_id": job_id, "status": "queued"}

    def get(self, job_id: str) -> Optional[dict]:
        self._cleanup()
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._loop, name="chrono-dispatch", daemon=True)
            self._thread.start()

    def _loop(self) -> None:
        while True:
            job_id = self._queue.get()
            try:
                self._run_job(job_id)
            finally:
                self._queue.task_done()

    def _run_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job["status"] = "running"
            job["started_at"] = _now()
            request_id = job["request_id"]
        try:
            result = self._worker(request_id)
            with self._lock:
                job["status"] = "succeeded"
                job["result"] = result
                job["finished_at"] = _now()
        except Exception as exc:
            _LOGGER.error("dispatch_failed request_id=%s job_id=%s error=%s", request_id, job_id, exc)
            with self._lock:
                job["status"] = "failed"
                job["error"] = str(exc)
                job["finished_at"] = _now()

    def _evict_locked(self) -> None:
        if len(self._jobs) <= self._max_jobs:
            return
        # remove oldest finished first
        finished = sorted(
            (j for j in self._jobs.values() if j.get("finished_at")),
            key=lambda x: x.get("finished_at") or "",
        )
        for old in finished[: max(0, len(self._jobs) - self._max_jobs)]:
            self._jobs.pop(old["job_id"], None)

    def _cleanup(self) -> None:
        cutoff = time.time() - self._ttl_seconds
        with self._lock:
            to_delete = []
            for job_id, job in self._jobs.items():
                finished = job.get("finished_at")
                if not finished:
                    continue
                if datetime.fromisoformat(finished).timestamp() < cutoff:
                    to_delete.append(job_id)
            for job_id in to_delete:
                self._jobs.pop(job_id, None)
