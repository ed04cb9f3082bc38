"""
Tests for the georeferencing service and the transformation history ledger.
"""

import pytest

from conftest import make_points
from geotile.models.geo import TransformFamily
from geotile.services import georeference as georeference_module
from geotile.services.errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    DegenerateGeometryError,
    DocumentNotFoundError,
    HistoryEntryNotFoundError,
    InsufficientPointsError,
)
from geotile.services.georeference import GeoreferenceService, compute_fit


def shifted(dx):
    return lambda x, y: (-122.0 + dx + 1.0e-5 * x, 37.0 + 1.0e-5 * y)


@pytest.fixture
def service(storage, history, access):
    return GeoreferenceService(storage, history, access)


class TestComputeFit:
    """Tests for the pure fit pipeline."""

    def test_scenario(self, scenario_points):
        fit = compute_fit(scenario_points, TransformFamily.AFFINE, None, 200, 200)

        assert fit.family == TransformFamily.AFFINE
        assert fit.polynomial_order is None
        assert fit.accuracy.rmse_meters == pytest.approx(0.0, abs=1e-6)
        assert fit.bounds.north == pytest.approx(37.001)
        assert fit.extent_bounds.north == pytest.approx(37.002)

    def test_polynomial_defaults_to_order_2(self):
        pixels = [(0, 0), (1000, 0), (0, 1000), (1000, 1000), (500, 200), (200, 700)]
        fit = compute_fit(make_points(pixels, shifted(0)), "polynomial")
        assert fit.polynomial_order == 2
        assert fit.extent_bounds is None


class TestGeoreference:
    """Tests for applying fits to documents."""

    def test_applies_active_fit_and_records_history(self, service, document, scenario_points, history):
        result = service.georeference(document.document_id, "org-1", "alice", scenario_points)

        assert result.applied is True
        assert result.document.is_georeferenced
        assert result.document.version == 1
        assert result.document.active_fit.history_entry_id == result.entry.entry_id
        assert result.document.active_fit.control_points == scenario_points

        entries = history.list_entries(document.document_id)
        assert len(entries) == 1
        assert entries[0].applied is True
        assert entries[0].point_count == 3
        assert entries[0].fitted_by == "alice"

    def test_trial_fit_does_not_change_active(self, service, document, scenario_points, storage):
        result = service.georeference(document.document_id, "org-1", "alice", scenario_points, activate=False)

        assert result.applied is False
        reloaded = storage.load_document(document.document_id)
        assert reloaded.active_fit is None
        assert reloaded.version == 0
        assert service.list_history(document.document_id, "org-1", "alice")[0].applied is False

    def test_failed_validation_records_nothing(self, service, document, scenario_points, history):
        with pytest.raises(InsufficientPointsError):
            service.georeference(document.document_id, "org-1", "alice", scenario_points[:2])
        assert history.list_entries(document.document_id) == []

    def test_collinear_points(self, service, document):
        points = make_points([(0, 0), (10, 10), (20, 20)], shifted(0))
        with pytest.raises(DegenerateGeometryError):
            service.georeference(document.document_id, "org-1", "alice", points)

    def test_non_member_denied(self, service, document, scenario_points):
        with pytest.raises(AuthorizationError):
            service.georeference(document.document_id, "org-1", "bob", scenario_points)

    def test_other_organization_looks_missing(self, service, document, scenario_points):
        with pytest.raises(DocumentNotFoundError):
            service.georeference(document.document_id, "org-2", "bob", scenario_points)

    def test_concurrent_update_is_rejected(self, service, document, scenario_points, monkeypatch, history):
        """A fit applied between read and write makes the slower request fail."""
        real_compute_fit = georeference_module.compute_fit
        racing = {"done": False}

        def compute_then_race(*args, **kwargs):
            fit = real_compute_fit(*args, **kwargs)
            if not racing["done"]:
                racing["done"] = True
                service.georeference(
                    document.document_id, "org-1", "alice",
                    make_points([(0, 0), (100, 0), (0, 100)], shifted(0.5)),
                )
            return fit

        monkeypatch.setattr(georeference_module, "compute_fit", compute_then_race)

        with pytest.raises(ConcurrentUpdateError):
            service.georeference(document.document_id, "org-1", "alice", scenario_points)

        entries = history.list_entries(document.document_id)
        assert [e.applied for e in entries] == [True, False]
        winner = service.get_document(document.document_id, "org-1", "alice")
        assert winner.active_fit.history_entry_id == entries[0].entry_id
        assert winner.version == 1


    def test_ledger_failure_leaves_active_fit_untouched(self, service, document, scenario_points, history, monkeypatch):
        def full_disk(entry):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(history, "append", full_disk)

        with pytest.raises(OSError):
            service.georeference(document.document_id, "org-1", "alice", scenario_points)

        unchanged = service.get_document(document.document_id, "org-1", "alice")
        assert unchanged.active_fit is None
        assert unchanged.version == 0

    def test_active_fit_names_a_ledger_entry(self, service, document, scenario_points, history):
        result = service.georeference(document.document_id, "org-1", "alice", scenario_points)

        entry = history.get_entry(document.document_id, result.document.active_fit.history_entry_id)
        assert entry.applied is True


class TestHistory:
    """Tests for ledger listing and rollback."""

    def test_history_is_append_only_and_newest_first(self, service, document, scenario_points):
        first = service.georeference(document.document_id, "org-1", "alice", scenario_points)
        second = service.georeference(
            document.document_id, "org-1", "alice",
            make_points([(0, 0), (100, 0), (0, 100)], shifted(1.0)),
        )

        entries = service.list_history(document.document_id, "org-1", "alice")
        assert [e.entry_id for e in entries] == [second.entry.entry_id, first.entry.entry_id]

    def test_rollback_rederives_accuracy_and_bounds(self, service, document, scenario_points, storage):
        first = service.georeference(document.document_id, "org-1", "alice", scenario_points)
        service.georeference(
            document.document_id, "org-1", "alice",
            make_points([(0, 0), (100, 0), (0, 100)], shifted(1.0)),
        )

        # Tamper with the cached accuracy on the current document to prove it is recomputed
        current = storage.load_document(document.document_id)
        current.active_fit.accuracy.rmse_meters = 999.0
        storage.save_document(current)

        restored = service.activate_entry(document.document_id, first.entry.entry_id, "org-1", "alice")

        assert restored.active_fit.history_entry_id == first.entry.entry_id
        assert restored.active_fit.accuracy.rmse_meters == pytest.approx(0.0, abs=1e-6)
        assert restored.active_fit.bounds.west == pytest.approx(-122.0)
        assert restored.active_fit.extent_bounds is not None
        assert restored.version == 3
        assert len(service.list_history(document.document_id, "org-1", "alice")) == 2

    def test_rollback_unknown_entry(self, service, document):
        with pytest.raises(HistoryEntryNotFoundError):
            service.activate_entry(document.document_id, "missing", "org-1", "alice")

    def test_torn_line_is_skipped(self, service, document, scenario_points, storage, history):
        service.georeference(document.document_id, "org-1", "alice", scenario_points)
        with open(storage.get_history_path(document.document_id), "a") as f:
            f.write('{"entry_id": "half')

        assert len(history.list_entries(document.document_id)) == 1
