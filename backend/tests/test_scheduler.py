"""
Tests for the tile job scheduler.

Rendering and storage are replaced with in-memory fakes so every failure
mode can be scripted; backoff sleeps are recorded instead of slept.
"""

import threading
import time

import pytest

from conftest import png_bytes
from geotile.models.document import FileType
from geotile.models.jobs import TileJob, TileJobState
from geotile.services.errors import (
    AuthorizationError,
    InvalidJobTransitionError,
    JobConflictError,
    JobNotFoundError,
    NotGeoreferencedError,
    QuotaExceededError,
    TileRenderError,
    ValidationError,
)
from geotile.services.georeference import GeoreferenceService
from geotile.services.quota import QuotaService
from geotile.services.scheduler import TileJobScheduler, TileWorkerPool
from geotile.services.tiles import tiles_per_zoom

ZOOMS = [0, 1, 2, 3, 4, 5]


class FakeRenderer:
    """Renders placeholder bytes; ``failures`` maps call number to an exception."""

    def __init__(self, failures=None, on_render=None):
        self.failures = failures or {}
        self.on_render = on_render
        self.calls = []
        self._lock = threading.Lock()

    def render(self, document_id, transform, tile):
        with self._lock:
            self.calls.append(tile)
            call_number = len(self.calls)
        if self.on_render:
            self.on_render(call_number, tile)
        failure = self.failures.get(call_number)
        if failure is not None:
            raise failure
        return b"tile-%d-%d-%d" % (tile.z, tile.x, tile.y)


class FakeStore:
    """Keeps tiles in a dict; ``failures`` maps call number to an exception."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.tiles = {}
        self.calls = 0

    def put_tile(self, document_id, tile, data):
        self.calls += 1
        failure = self.failures.get(self.calls)
        if failure is not None:
            raise failure
        self.tiles[(document_id, tile.z, tile.x, tile.y)] = data


@pytest.fixture
def quota():
    return QuotaService(default_limit=10_000)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_scheduler(storage, history, access, quota, tmp_path, sleeps):
    def factory(renderer=None, store=None, **overrides):
        options = dict(
            jobs_dir=tmp_path / "jobs",
            max_attempts=3,
            backoff_base_seconds=0.5,
            backoff_max_seconds=8.0,
            render_timeout_seconds=5.0,
            storage_timeout_seconds=5.0,
            sleep=sleeps.append,
        )
        options.update(overrides)
        scheduler = TileJobScheduler(
            storage=storage,
            history=history,
            access=access,
            quota=quota,
            renderer=renderer or FakeRenderer(),
            store=store or FakeStore(),
            **options,
        )
        return scheduler

    return factory


@pytest.fixture
def scheduler(make_scheduler, renderer, store):
    return make_scheduler(renderer, store)


@pytest.fixture
def make_georeferenced(storage, history, access, scenario_points):
    """Create a georeferenced 64x48 document owned by org-1."""
    service = GeoreferenceService(storage, history, access)

    def factory():
        document = storage.create_document(
            organization_id="org-1",
            name="Sheet",
            original_filename="sheet.png",
            file_type=FileType.PNG,
            content=png_bytes(),
            width_px=64,
            height_px=48,
            created_by="alice",
        )
        return service.georeference(document.document_id, "org-1", "alice", scenario_points).document

    return factory


@pytest.fixture
def georeferenced(make_georeferenced):
    return make_georeferenced()


def expected_total(document, zooms=ZOOMS):
    return sum(tiles_per_zoom(zooms, document.active_fit.footprint).values())


class TestSubmit:
    """Tests for job submission."""

    def test_not_georeferenced(self, scheduler, document):
        with pytest.raises(NotGeoreferencedError):
            scheduler.submit(document.document_id, "org-1", "alice", ZOOMS)

    def test_queued_job_with_exact_estimate(self, scheduler, georeferenced, quota):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS, priority=7)

        assert job.state == TileJobState.QUEUED
        assert job.priority == 7
        assert job.fit_entry_id == georeferenced.active_fit.history_entry_id
        assert job.step_progress.total_tiles == expected_total(georeferenced)
        # The tiny footprint needs far fewer tiles than the full pyramid
        assert job.step_progress.total_tiles < sum(4 ** z for z in ZOOMS)
        assert quota.remaining("org-1") == 10_000 - job.step_progress.total_tiles

    def test_defaults(self, scheduler, georeferenced):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice")
        assert job.zoom_levels == [0, 1, 2, 3, 4, 5, 6]
        assert job.priority == 5

    def test_non_member(self, scheduler, georeferenced):
        with pytest.raises(AuthorizationError):
            scheduler.submit(georeferenced.document_id, "org-1", "bob", ZOOMS)

    @pytest.mark.parametrize("zooms,priority", [([], 5), ([-1], 5), ([23], 5), ([0], 0), ([0], 11)])
    def test_invalid_request(self, scheduler, georeferenced, zooms, priority):
        with pytest.raises(ValidationError):
            scheduler.submit(georeferenced.document_id, "org-1", "alice", zooms, priority)

    def test_quota_exceeded(self, make_scheduler, georeferenced, quota):
        scheduler = make_scheduler()
        quota.set_limit("org-1", 2)

        with pytest.raises(QuotaExceededError) as exc_info:
            scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        assert exc_info.value.details["remaining"] == 2
        assert exc_info.value.details["requested"] == expected_total(georeferenced)
        assert scheduler.live_job(georeferenced.document_id) is None


class TestOneLiveJobPerDocument:
    """At most one queued or running job per document."""

    def test_second_submission_rejected_until_terminal(self, scheduler, georeferenced):
        first = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        with pytest.raises(JobConflictError) as exc_info:
            scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        assert exc_info.value.details["job_id"] == first.job_id

        scheduler.advance(first.job_id)
        second = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        assert second.job_id != first.job_id

    def test_allowed_after_cancel(self, scheduler, georeferenced):
        first = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        scheduler.cancel(first.job_id, "alice")
        assert scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS).state == TileJobState.QUEUED

    def test_concurrent_submissions(self, scheduler, georeferenced):
        results = []
        barrier = threading.Barrier(8)

        def submit():
            barrier.wait()
            try:
                results.append(scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS))
            except JobConflictError as e:
                results.append(e)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        jobs = [r for r in results if isinstance(r, TileJob)]
        assert len(jobs) == 1
        assert len(results) == 8

    def test_different_documents_independent(self, scheduler, make_georeferenced):
        a = make_georeferenced()
        b = make_georeferenced()
        scheduler.submit(a.document_id, "org-1", "alice", ZOOMS)
        scheduler.submit(b.document_id, "org-1", "alice", ZOOMS)


class TestAdvance:
    """Tests for driving jobs through their states."""

    def test_success(self, scheduler, georeferenced, renderer, store):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        done = scheduler.advance(job.job_id)

        total = expected_total(georeferenced)
        assert done.state == TileJobState.SUCCEEDED
        assert done.step_progress.completed_tiles == total
        assert done.step_progress.percent == 100.0
        assert done.started_at is not None and done.completed_at is not None
        assert len(store.tiles) == total
        assert [t.z for t in renderer.calls] == sorted(t.z for t in renderer.calls)
        assert scheduler.live_job(georeferenced.document_id) is None

    def test_terminal_job_unchanged(self, scheduler, georeferenced, renderer):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        scheduler.advance(job.job_id)
        calls = len(renderer.calls)

        again = scheduler.advance(job.job_id)
        assert again.state == TileJobState.SUCCEEDED
        assert len(renderer.calls) == calls

    def test_transient_failures_retried_with_backoff(self, make_scheduler, georeferenced, sleeps):
        renderer = FakeRenderer({
            1: TileRenderError("busy", retryable=True),
            2: TileRenderError("busy", retryable=True),
        })
        scheduler = make_scheduler(renderer)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.SUCCEEDED
        assert sleeps == [0.5, 1.0]

    def test_retries_exhausted(self, make_scheduler, georeferenced, sleeps):
        renderer = FakeRenderer({n: TileRenderError("busy", retryable=True) for n in (1, 2, 3)})
        scheduler = make_scheduler(renderer)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.FAILED
        assert done.error["code"] == "TILE_RENDER_FAILED"
        assert done.error["details"]["attempts"] == 3
        assert done.error["retryable"] is True
        assert done.step_progress.completed_tiles == 0
        assert sleeps == [0.5, 1.0]
        assert scheduler.live_job(georeferenced.document_id) is None

    def test_backoff_is_capped(self, make_scheduler, georeferenced, sleeps):
        renderer = FakeRenderer({n: TileRenderError("busy", retryable=True) for n in range(1, 6)})
        scheduler = make_scheduler(renderer, max_attempts=6, backoff_base_seconds=1.0, backoff_max_seconds=4.0)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        assert scheduler.advance(job.job_id).state == TileJobState.SUCCEEDED
        assert sleeps == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_non_retryable_fails_immediately(self, make_scheduler, georeferenced, sleeps):
        renderer = FakeRenderer({1: TileRenderError("corrupt raster")})
        scheduler = make_scheduler(renderer)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.FAILED
        assert done.error["message"] == "corrupt raster"
        assert done.error["retryable"] is False
        assert sleeps == []
        assert len(renderer.calls) == 1

    def test_storage_io_error_is_retryable(self, make_scheduler, georeferenced, sleeps):
        store = FakeStore({1: OSError(28, "No space left on device")})
        scheduler = make_scheduler(store=store)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        assert scheduler.advance(job.job_id).state == TileJobState.SUCCEEDED
        assert sleeps == [0.5]

    def test_render_timeout(self, make_scheduler, georeferenced):
        renderer = FakeRenderer(on_render=lambda n, tile: time.sleep(0.5) if n == 1 else None)
        scheduler = make_scheduler(renderer, max_attempts=1, render_timeout_seconds=0.05)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.FAILED
        assert done.error["code"] == "TILE_RENDER_FAILED"
        assert "timed out" in done.error["message"]

    def test_hung_renders_do_not_block_later_calls(self, make_scheduler, georeferenced):
        release = threading.Event()
        renderer = FakeRenderer(on_render=lambda n, tile: release.wait(5) if n <= 4 else None)
        scheduler = make_scheduler(renderer, render_timeout_seconds=0.1)

        try:
            first = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
            assert scheduler.advance(first.job_id).state == TileJobState.FAILED

            second = scheduler.retry(first.job_id, "alice")
            done = scheduler.advance(second.job_id)
        finally:
            release.set()

        # Calls 1-4 are still hanging when the retry reaches a healthy renderer
        assert done.state == TileJobState.SUCCEEDED
        assert len(renderer.calls) == 4 + done.step_progress.total_tiles

    def test_unexpected_error_is_recorded(self, make_scheduler, georeferenced):
        renderer = FakeRenderer({1: RuntimeError("boom")})
        scheduler = make_scheduler(renderer)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.FAILED
        assert done.error["code"] == "INTERNAL_ERROR"
        assert "boom" not in done.error["message"]


class TestCancel:
    """Tests for cooperative cancellation."""

    def test_cancel_queued_releases_quota(self, scheduler, georeferenced, quota):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        canceled = scheduler.cancel(job.job_id, "alice")

        assert canceled.state == TileJobState.CANCELED
        assert quota.remaining("org-1") == 10_000

    def test_cancel_terminal_rejected(self, scheduler, georeferenced):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        scheduler.advance(job.job_id)
        with pytest.raises(InvalidJobTransitionError):
            scheduler.cancel(job.job_id, "alice")

    def test_cancel_running_stops_between_tiles(self, make_scheduler, georeferenced, store):
        holder = {}

        def cancel_on_second(call_number, tile):
            if call_number == 2:
                requested = scheduler.cancel(holder["job_id"], "alice")
                assert requested.state == TileJobState.RUNNING
                assert requested.cancel_requested

        renderer = FakeRenderer(on_render=cancel_on_second)
        scheduler = make_scheduler(renderer, store)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        holder["job_id"] = job.job_id

        done = scheduler.advance(job.job_id)

        assert done.state == TileJobState.CANCELED
        # The in-flight tile finishes; nothing after it starts
        assert done.step_progress.completed_tiles == 2
        assert len(store.tiles) == 2
        assert len(renderer.calls) == 2

    def test_cancel_other_users_job(self, scheduler, georeferenced):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        with pytest.raises(JobNotFoundError):
            scheduler.cancel(job.job_id, "bob")


class TestRetry:
    """Tests for retrying failed jobs."""

    def test_retry_failed_creates_new_job(self, make_scheduler, georeferenced):
        renderer = FakeRenderer({1: TileRenderError("corrupt raster")})
        scheduler = make_scheduler(renderer)
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS, priority=8)
        scheduler.advance(job.job_id)

        retried = scheduler.retry(job.job_id, "alice")

        assert retried.job_id != job.job_id
        assert retried.retry_of == job.job_id
        assert retried.priority == 8
        assert retried.state == TileJobState.QUEUED
        assert scheduler.get_job(job.job_id).state == TileJobState.FAILED
        assert scheduler.advance(retried.job_id).state == TileJobState.SUCCEEDED

    def test_retry_requires_failed(self, scheduler, georeferenced):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        with pytest.raises(InvalidJobTransitionError):
            scheduler.retry(job.job_id, "alice")


class TestQueueAndRecovery:
    """Tests for priority ordering and resuming persisted jobs."""

    def test_priority_then_fifo(self, scheduler, make_georeferenced):
        docs = [make_georeferenced() for _ in range(4)]
        low = scheduler.submit(docs[0].document_id, "org-1", "alice", [0], priority=1)
        high_first = scheduler.submit(docs[1].document_id, "org-1", "alice", [0], priority=9)
        mid = scheduler.submit(docs[2].document_id, "org-1", "alice", [0], priority=5)
        high_second = scheduler.submit(docs[3].document_id, "org-1", "alice", [0], priority=9)

        order = [scheduler.next_job(timeout=0.1) for _ in range(4)]

        assert order == [high_first.job_id, high_second.job_id, mid.job_id, low.job_id]
        assert scheduler.next_job(timeout=0.01) is None

    def test_resume_running_job_after_restart(self, make_scheduler, georeferenced, tmp_path):
        first = make_scheduler()
        job = first.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        # Simulate a crash after two tiles were rendered
        path = tmp_path / "jobs" / f"{job.job_id}.json"
        crashed = TileJob.load(path)
        crashed.state = TileJobState.RUNNING
        crashed.step_progress.completed_tiles = 2
        crashed.save(path)

        renderer = FakeRenderer()
        restarted = make_scheduler(renderer)
        assert restarted.recover() == 1
        assert restarted.next_job(timeout=0.1) == job.job_id

        with pytest.raises(JobConflictError):
            restarted.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)

        done = restarted.advance(job.job_id)
        total = expected_total(georeferenced)
        assert done.state == TileJobState.SUCCEEDED
        assert len(renderer.calls) == total - 2
        assert done.step_progress.completed_tiles == total

    def test_recover_skips_terminal_jobs(self, make_scheduler, georeferenced):
        first = make_scheduler()
        job = first.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        first.advance(job.job_id)

        restarted = make_scheduler()
        assert restarted.recover() == 0
        assert restarted.get_job(job.job_id).state == TileJobState.SUCCEEDED

    def test_job_status_hidden_from_other_organizations(self, scheduler, georeferenced):
        job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
        assert scheduler.get_job_for(job.job_id, "alice").job_id == job.job_id
        with pytest.raises(JobNotFoundError):
            scheduler.get_job_for(job.job_id, "bob")
        with pytest.raises(JobNotFoundError):
            scheduler.get_job("missing")


class TestWorkerPool:
    """Tests for background workers."""

    def test_workers_complete_queued_jobs(self, scheduler, georeferenced):
        pool = TileWorkerPool(scheduler, worker_count=2, poll_seconds=0.05)
        pool.start()
        try:
            job = scheduler.submit(georeferenced.document_id, "org-1", "alice", ZOOMS)
            deadline = time.time() + 10
            while time.time() < deadline:
                if scheduler.get_job(job.job_id).state.is_terminal:
                    break
                time.sleep(0.02)
        finally:
            pool.stop()

        assert scheduler.get_job(job.job_id).state == TileJobState.SUCCEEDED


class TestQuotaService:
    """Tests for the usage quota gate."""

    def test_check_does_not_consume(self):
        quota = QuotaService(default_limit=10)
        decision = quota.check("org", 4)

        assert decision.allowed is True
        assert decision.remaining == 10
        assert quota.remaining("org") == 10

    def test_consume_and_release(self):
        quota = QuotaService(default_limit=10)
        assert quota.consume("org", 4) == 6
        assert quota.check("org", 7).allowed is False

        quota.release("org", 4)
        assert quota.remaining("org") == 10

    def test_consume_over_limit(self):
        quota = QuotaService(default_limit=3)
        with pytest.raises(QuotaExceededError) as exc_info:
            quota.consume("org", 4)
        assert exc_info.value.remaining == 3
        assert quota.remaining("org") == 3
