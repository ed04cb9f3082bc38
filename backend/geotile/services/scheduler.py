"""
Tile job scheduler.

Drives the conversion of a georeferenced document into a tile pyramid:

    queued -> running -> succeeded | failed | canceled

Invariants:
- At most one live (queued or running) job per document. Submissions for a
  document with a live job are rejected; the check and insert happen under
  the scheduler lock.
- Terminal states are final. A failed job is retried by creating a new job
  that references it through ``retry_of``.
- Cancellation is cooperative and observed between tiles, never mid-tile.

Jobs are persisted as JSON after every state change and periodically while
running, so a restarted process resumes running jobs from their recorded
progress. Workers pull job ids from a priority queue: higher ``priority``
first, FIFO within the same priority.
"""

import itertools
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from geotile.config import settings
from geotile.models.geo import FittedTransform, TileCoordinate
from geotile.models.jobs import StepProgress, TileJob, TileJobState
from geotile.services.access import AccessService, access_service
from geotile.services.errors import (
    GeoreferenceError,
    HistoryEntryNotFoundError,
    InvalidJobTransitionError,
    JobConflictError,
    JobNotFoundError,
    NotGeoreferencedError,
    PipelineError,
    TileRenderError,
    TileStorageError,
    ValidationError,
)
from geotile.services.history import HistoryService, history_service
from geotile.services.quota import QuotaService, quota_service
from geotile.services.render import TileRenderService, tile_render_service
from geotile.services.storage import StorageService, storage_service
from geotile.services.tile_store import TileStore, tile_store
from geotile.services.tiles import iter_tiles, tiles_per_zoom

logger = logging.getLogger(__name__)

# Progress is flushed to disk at least this often while running
PERSIST_EVERY_TILES = 25


class TileJobScheduler:
    """Owns tile jobs, their queue and their state transitions."""

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        history: Optional[HistoryService] = None,
        access: Optional[AccessService] = None,
        quota: Optional[QuotaService] = None,
        renderer: Optional[TileRenderService] = None,
        store: Optional[TileStore] = None,
        jobs_dir: Optional[Path] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        render_timeout_seconds: Optional[float] = None,
        storage_timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage or storage_service
        if history is None:
            history = HistoryService(self.storage) if storage else history_service
        self.history = history
        self.access = access or access_service
        self.quota = quota or quota_service
        self.renderer = renderer or tile_render_service
        self.store = store or tile_store
        self.jobs_dir = jobs_dir or settings.jobs_dir
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

        self.max_attempts = max_attempts or settings.tile_max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.tile_backoff_base_seconds
        )
        self.backoff_max_seconds = (
            backoff_max_seconds if backoff_max_seconds is not None else settings.tile_backoff_max_seconds
        )
        self.render_timeout_seconds = render_timeout_seconds or settings.render_timeout_seconds
        self.storage_timeout_seconds = storage_timeout_seconds or settings.storage_timeout_seconds
        self._sleep = sleep

        self._lock = threading.RLock()
        self._jobs: dict[str, TileJob] = {}
        self._live_by_document: dict[str, str] = {}
        self._claimed: set[str] = set()
        self._queue: "queue.PriorityQueue[tuple[int, int, str]]" = queue.PriorityQueue()
        self._sequence = itertools.count()

    # ------------------------------------------------------------
    # Persistence and queueing
    # ------------------------------------------------------------

    def _job_path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _persist(self, job: TileJob) -> None:
        job.save(self._job_path(job.job_id))

    def _enqueue(self, job: TileJob) -> None:
        self._queue.put((-job.priority, next(self._sequence), job.job_id))

    def next_job(self, timeout: Optional[float] = None) -> Optional[str]:
        """Pop the next job id to advance, or None when the queue stays empty."""
        try:
            _, _, job_id = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return job_id

    def recover(self) -> int:
        """
        Reload persisted jobs and re-enqueue every live one.

        Running jobs resume from their recorded progress.
        """
        recovered = 0
        with self._lock:
            for path in sorted(self.jobs_dir.glob("*.json")):
                try:
                    job = TileJob.load(path)
                except Exception as e:
                    logger.error(f"Failed to load job {path.name}: {e}")
                    continue
                self._jobs[job.job_id] = job
                if job.state.is_terminal:
                    continue
                self._live_by_document[job.document_id] = job.job_id
                self._enqueue(job)
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} live tile jobs")
        return recovered

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def _get_locked(self, job_id: str) -> TileJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' does not exist", {"job_id": job_id})
        return job

    def get_job(self, job_id: str) -> TileJob:
        """Snapshot of a job."""
        with self._lock:
            return self._get_locked(job_id).model_copy(deep=True)

    def get_job_for(self, job_id: str, user_id: str) -> TileJob:
        """Snapshot of a job the user may see; other organizations' jobs look missing."""
        job = self.get_job(job_id)
        if not self.access.is_member(user_id, job.organization_id):
            raise JobNotFoundError(f"Job '{job_id}' does not exist", {"job_id": job_id})
        return job

    def list_jobs(self, document_id: str) -> List[TileJob]:
        """Jobs for a document, newest first."""
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.document_id == document_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def live_job(self, document_id: str) -> Optional[TileJob]:
        with self._lock:
            job_id = self._live_by_document.get(document_id)
            return self._jobs[job_id].model_copy(deep=True) if job_id else None

    # ------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------

    def _check_request(self, zoom_levels: Sequence[int], priority: int) -> None:
        if not zoom_levels:
            raise ValidationError("At least one zoom level is required", code="INVALID_ZOOM_LEVELS")
        bad = [z for z in zoom_levels if not 0 <= z <= settings.max_zoom]
        if bad:
            raise ValidationError(
                f"Zoom levels must be between 0 and {settings.max_zoom}",
                {"invalid": bad},
                code="INVALID_ZOOM_LEVELS",
            )
        if not settings.min_priority <= priority <= settings.max_priority:
            raise ValidationError(
                f"Priority must be between {settings.min_priority} and {settings.max_priority}",
                {"priority": priority},
                code="INVALID_PRIORITY",
            )

    def submit(
        self,
        document_id: str,
        organization_id: str,
        user_id: str,
        zoom_levels: Optional[Sequence[int]] = None,
        priority: Optional[int] = None,
        retry_of: Optional[str] = None,
    ) -> TileJob:
        """
        Queue a tile job for a georeferenced document.

        Raises:
            AuthorizationError: Caller is not a member of the organization
            DocumentNotFoundError: Unknown document (or another organization's)
            NotGeoreferencedError: The document has no active transform
            JobConflictError: The document already has a queued or running job
            QuotaExceededError: The tile count does not fit the organization's quota
        """
        zoom_levels = sorted(set(zoom_levels if zoom_levels is not None else settings.default_zoom_levels))
        priority = priority if priority is not None else settings.default_priority
        self._check_request(zoom_levels, priority)

        self.access.require_member(user_id, organization_id)
        document = self.storage.get_document(document_id, organization_id)
        if not document.is_georeferenced:
            raise NotGeoreferencedError(
                "Document must be georeferenced before tile generation",
                {"document_id": document_id},
            )

        bounds = document.active_fit.footprint
        per_zoom = tiles_per_zoom(zoom_levels, bounds)
        total = sum(per_zoom.values())

        with self._lock:
            live_id = self._live_by_document.get(document_id)
            if live_id is not None:
                live = self._jobs[live_id]
                raise JobConflictError(
                    "A tile job is already queued or running for this document",
                    {"job_id": live_id, "state": live.state.value},
                )

            self.quota.consume(organization_id, total)

            job = TileJob(
                job_id=str(uuid.uuid4()),
                document_id=document_id,
                organization_id=organization_id,
                zoom_levels=zoom_levels,
                priority=priority,
                fit_entry_id=document.active_fit.history_entry_id,
                bounds=bounds,
                step_progress=StepProgress(
                    total_tiles=total,
                    tiles_per_zoom=per_zoom,
                    current_step="Queued",
                ),
                retry_of=retry_of,
                created_at=datetime.now(timezone.utc),
                created_by=user_id,
            )
            try:
                self._persist(job)
            except OSError:
                self.quota.release(organization_id, total)
                raise
            self._jobs[job.job_id] = job
            self._live_by_document[document_id] = job.job_id
            self._enqueue(job)

        logger.info(
            f"Queued tile job {job.job_id} for document {document_id}: "
            f"zooms={zoom_levels}, tiles={total}, priority={priority}"
        )
        return job.model_copy(deep=True)

    def retry(self, job_id: str, user_id: str) -> TileJob:
        """Create a new job repeating a failed one."""
        failed = self.get_job_for(job_id, user_id)
        if failed.state != TileJobState.FAILED:
            raise InvalidJobTransitionError(
                f"Only failed jobs can be retried (job is {failed.state.value})",
                {"job_id": job_id, "state": failed.state.value},
            )
        logger.info(f"Retrying failed tile job {job_id}")
        return self.submit(
            failed.document_id,
            failed.organization_id,
            user_id,
            failed.zoom_levels,
            failed.priority,
            retry_of=job_id,
        )

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------

    def _finish_locked(self, job: TileJob, state: TileJobState, step: str, error: Optional[dict[str, Any]] = None) -> None:
        job.state = state
        job.completed_at = datetime.now(timezone.utc)
        job.step_progress.current_step = step
        job.error = error
        if self._live_by_document.get(job.document_id) == job.job_id:
            del self._live_by_document[job.document_id]
        self._persist(job)

    def _finish(self, job_id: str, state: TileJobState, step: str, error: Optional[dict[str, Any]] = None) -> None:
        with self._lock:
            self._finish_locked(self._jobs[job_id], state, step, error)
        if state == TileJobState.FAILED:
            logger.error(f"Tile job {job_id} failed: {error}")
        else:
            logger.info(f"Tile job {job_id} {state.value}")

    def cancel(self, job_id: str, user_id: str) -> TileJob:
        """
        Cancel a job.

        A queued job, or a running job no worker holds, is canceled at once.
        A job being advanced is flagged and stops before its next tile.
        """
        self.get_job_for(job_id, user_id)
        with self._lock:
            job = self._get_locked(job_id)
            if job.state.is_terminal:
                raise InvalidJobTransitionError(
                    f"Job is already {job.state.value}",
                    {"job_id": job_id, "state": job.state.value},
                )
            never_started = job.state == TileJobState.QUEUED
            job.cancel_requested = True
            if job_id in self._claimed:
                self._persist(job)
                logger.info(f"Cancellation requested for running tile job {job_id}")
            else:
                self._finish_locked(job, TileJobState.CANCELED, "Canceled")
                logger.info(f"Tile job {job_id} canceled")
                if never_started:
                    self.quota.release(job.organization_id, job.step_progress.total_tiles)
            return job.model_copy(deep=True)

    def advance(self, job_id: str) -> TileJob:
        """
        Run a job to a terminal state.

        Moves a queued job to running, renders every remaining tile (skipping
        tiles already recorded as completed) and finishes as succeeded, failed
        or canceled. Terminal jobs are returned unchanged.
        """
        with self._lock:
            job = self._get_locked(job_id)
            if job.state.is_terminal:
                return job.model_copy(deep=True)
            if job_id in self._claimed:
                raise InvalidJobTransitionError(
                    "Job is already being advanced by another worker",
                    {"job_id": job_id},
                )
            self._claimed.add(job_id)
            if job.state == TileJobState.QUEUED:
                job.state = TileJobState.RUNNING
                job.started_at = datetime.now(timezone.utc)
                job.step_progress.current_step = "Starting"
                self._persist(job)
                logger.info(f"Tile job {job_id} running")
            else:
                logger.info(
                    f"Resuming tile job {job_id} at tile "
                    f"{job.step_progress.completed_tiles}/{job.step_progress.total_tiles}"
                )

        try:
            self._run(job_id)
        except Exception as e:
            logger.exception(f"Unexpected error in tile job {job_id}: {e}")
            self._finish(job_id, TileJobState.FAILED, "Failed", {
                "kind": "internal",
                "code": "INTERNAL_ERROR",
                "message": "Unexpected error while generating tiles",
                "details": {"exception": type(e).__name__},
            })
        finally:
            with self._lock:
                self._claimed.discard(job_id)

        return self.get_job(job_id)

    def _run(self, job_id: str) -> None:
        with self._lock:
            job = self._get_locked(job_id).model_copy(deep=True)

        try:
            entry = self.history.get_entry(job.document_id, job.fit_entry_id)
        except HistoryEntryNotFoundError as e:
            self._finish(job_id, TileJobState.FAILED, "Failed", NotGeoreferencedError(
                "The transform this job was submitted with no longer exists",
                e.details,
            ).to_dict())
            return
        transform = entry.transform

        already_done = job.step_progress.completed_tiles
        for index, tile in enumerate(iter_tiles(job.bounds, job.zoom_levels)):
            if index < already_done:
                continue

            with self._lock:
                live = self._jobs[job_id]
                if live.cancel_requested:
                    self._finish_locked(live, TileJobState.CANCELED, "Canceled")
                    logger.info(f"Tile job {job_id} canceled after {index} tiles")
                    return
                zoom_changed = live.step_progress.current_zoom != tile.z
                live.step_progress.current_zoom = tile.z
                live.step_progress.current_step = f"Rendering zoom {tile.z}"
                if zoom_changed:
                    self._persist(live)

            try:
                self._render_tile(job.document_id, transform, tile)
            except PipelineError as e:
                self._finish(job_id, TileJobState.FAILED, "Failed", e.to_dict())
                return

            with self._lock:
                live = self._jobs[job_id]
                live.step_progress.completed_tiles = index + 1
                if (index + 1) % PERSIST_EVERY_TILES == 0:
                    self._persist(live)

        self._finish(job_id, TileJobState.SUCCEEDED, "Completed")

    # ------------------------------------------------------------
    # Tile steps
    # ------------------------------------------------------------

    def _call(self, error_cls, label: str, timeout: float, fn, *args):
        """
        Run ``fn`` with a timeout, turning timeouts and I/O errors into retryable pipeline errors.

        Each call runs on its own daemon thread; a call that hangs past its
        timeout keeps only that thread.
        """
        future: Future = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=run, name="tile-call", daemon=True).start()
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            raise error_cls(f"{label} timed out after {timeout}s", {"timeout_seconds": timeout}, retryable=True)
        except OSError as e:
            raise error_cls(f"{label} failed: {e.strerror or type(e).__name__}", retryable=True)

    def _render_tile(self, document_id: str, transform: FittedTransform, tile: TileCoordinate) -> None:
        """Render and store one tile, retrying transient failures with exponential backoff."""
        last_error: Optional[PipelineError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                data = self._call(
                    TileRenderError, "Tile rendering", self.render_timeout_seconds,
                    self.renderer.render, document_id, transform, tile,
                )
                self._call(
                    TileStorageError, "Tile storage", self.storage_timeout_seconds,
                    self.store.put_tile, document_id, tile, data,
                )
                return
            except PipelineError as e:
                if not e.retryable:
                    raise
                last_error = e

            if attempt < self.max_attempts:
                delay = min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
                logger.warning(
                    f"Tile {tile.z}/{tile.x}/{tile.y} of {document_id} failed "
                    f"(attempt {attempt}/{self.max_attempts}): {last_error.message}; retrying in {delay:.2f}s"
                )
                self._sleep(delay)

        last_error.details = {
            **last_error.details,
            "attempts": self.max_attempts,
            "tile": tile.model_dump(),
        }
        raise last_error


class TileWorkerPool:
    """Background threads pulling jobs from the scheduler queue."""

    def __init__(self, scheduler: TileJobScheduler, worker_count: Optional[int] = None, poll_seconds: float = 0.5):
        self.scheduler = scheduler
        self.worker_count = worker_count or settings.tile_worker_count
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._stop.clear()
        for i in range(self.worker_count):
            thread = threading.Thread(target=self._work, name=f"tile-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.worker_count} tile workers")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Tile workers stopped")

    def _work(self) -> None:
        while not self._stop.is_set():
            job_id = self.scheduler.next_job(timeout=self.poll_seconds)
            if job_id is None:
                continue
            try:
                self.scheduler.advance(job_id)
            except GeoreferenceError as e:
                logger.warning(f"Skipping job {job_id}: {e.message}")
            except Exception as e:
                logger.exception(f"Worker failed on job {job_id}: {e}")


# Global service instance
tile_scheduler = TileJobScheduler()
