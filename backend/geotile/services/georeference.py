"""
Georeferencing service: turns control points into a document's active transform.

Pipeline per request:
1. Membership check and document lookup
2. Control point validation
3. Transform fit, accuracy evaluation and bounds (pure, CPU bound)
4. Ledger append and, when requested, active-fit update under the document lock
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from geotile.models.document import ActiveFit, Document, HistoryEntry
from geotile.models.geo import (
    AccuracyReport,
    ControlPoint,
    FittedTransform,
    GeoBounds,
    TransformFamily,
)
from geotile.services.access import AccessService, access_service
from geotile.services.accuracy import evaluate_accuracy
from geotile.services.bounds import bounds_from_points, bounds_from_raster
from geotile.services.errors import ConcurrentUpdateError
from geotile.services.history import HistoryService, history_service
from geotile.services.storage import StorageService, storage_service
from geotile.services.transforms import DEFAULT_POLYNOMIAL_ORDER, fit_transform
from geotile.services.validation import validate_control_points

logger = logging.getLogger(__name__)


@dataclass
class FitComputation:
    """Everything derived from one set of control points."""
    family: TransformFamily
    polynomial_order: Optional[int]
    transform: FittedTransform
    accuracy: AccuracyReport
    bounds: GeoBounds
    extent_bounds: Optional[GeoBounds]
    processing_time_ms: int = 0


@dataclass
class GeoreferenceResult:
    """Outcome of a georeference request."""
    document: Document
    entry: HistoryEntry
    fit: FitComputation
    applied: bool


def compute_fit(
    points: Sequence[ControlPoint],
    family=TransformFamily.AFFINE,
    order: Optional[int] = None,
    width_px: int = 0,
    height_px: int = 0,
) -> FitComputation:
    """
    Validate, fit and score a transform. Pure function of its inputs.

    The raster extent bounds are only computed when the raster size is known.
    """
    start_time = time.time()

    family = validate_control_points(points, family, order)
    if family == TransformFamily.POLYNOMIAL:
        order = order if order is not None else DEFAULT_POLYNOMIAL_ORDER
    else:
        order = None

    transform = fit_transform(points, family, order)
    accuracy = evaluate_accuracy(transform, points)
    bounds = bounds_from_points(points)

    extent_bounds = None
    if width_px > 0 and height_px > 0:
        extent_bounds = bounds_from_raster(transform, width_px, height_px).union(bounds)

    return FitComputation(
        family=family,
        polynomial_order=order,
        transform=transform,
        accuracy=accuracy,
        bounds=bounds,
        extent_bounds=extent_bounds,
        processing_time_ms=int((time.time() - start_time) * 1000),
    )


class GeoreferenceService:
    """Applies fits to documents and maintains their history."""

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        history: Optional[HistoryService] = None,
        access: Optional[AccessService] = None,
    ):
        self.storage = storage or storage_service
        if history is None:
            history = HistoryService(self.storage) if storage else history_service
        self.history = history
        self.access = access or access_service

    def get_document(self, document_id: str, organization_id: str, user_id: str) -> Document:
        self.access.require_member(user_id, organization_id)
        return self.storage.get_document(document_id, organization_id)

    def georeference(
        self,
        document_id: str,
        organization_id: str,
        user_id: str,
        control_points: Sequence[ControlPoint],
        family=TransformFamily.AFFINE,
        polynomial_order: Optional[int] = None,
        activate: bool = True,
    ) -> GeoreferenceResult:
        """
        Fit a transform for a document.

        The fit is always recorded in the history ledger. It becomes the active
        transform when ``activate`` is set and no other fit was applied to the
        document since it was read.

        Raises:
            AuthorizationError: Caller is not a member of the organization
            DocumentNotFoundError: Unknown document (or another organization's)
            ValidationError: Invalid control points
            NumericError: Singular system or unsupported family
            ConcurrentUpdateError: Another fit was applied concurrently
        """
        document = self.get_document(document_id, organization_id, user_id)
        read_version = document.version

        logger.info(
            f"Georeferencing document {document_id} with {len(control_points)} points "
            f"({family.value if isinstance(family, TransformFamily) else family})"
        )
        fit = compute_fit(
            control_points,
            family,
            polynomial_order,
            document.width_px,
            document.height_px,
        )

        now = datetime.now(timezone.utc)
        entry = HistoryEntry(
            entry_id=str(uuid.uuid4()),
            document_id=document_id,
            family=fit.family,
            polynomial_order=fit.polynomial_order,
            point_count=len(control_points),
            rmse_meters=fit.accuracy.rmse_meters,
            transform=fit.transform,
            control_points=list(control_points),
            applied=activate,
            fitted_at=now,
            fitted_by=user_id,
        )

        if not activate:
            self.history.append(entry)
            return GeoreferenceResult(document=document, entry=entry, fit=fit, applied=False)

        active_fit = ActiveFit(
            history_entry_id=entry.entry_id,
            family=fit.family,
            polynomial_order=fit.polynomial_order,
            transform=fit.transform,
            control_points=list(control_points),
            accuracy=fit.accuracy,
            bounds=fit.bounds,
            extent_bounds=fit.extent_bounds,
            fitted_at=now,
            fitted_by=user_id,
        )

        with self.storage.lock(document_id):
            current = self.storage.load_document(document_id)
            if current is not None and current.version != read_version:
                self.history.append(entry.model_copy(update={"applied": False}))
                raise ConcurrentUpdateError(
                    "Document was re-georeferenced concurrently; retry the request",
                    {"expected_version": read_version, "current_version": current.version},
                )
            # The active fit must always name an entry already in the ledger
            self.history.append(entry)
            document = self.storage.set_active_fit(document_id, active_fit, expected_version=read_version)

        logger.info(
            f"Document {document_id} georeferenced: rmse={fit.accuracy.rmse_meters:.3f} m "
            f"in {fit.processing_time_ms}ms"
        )
        return GeoreferenceResult(document=document, entry=entry, fit=fit, applied=True)

    def list_history(self, document_id: str, organization_id: str, user_id: str) -> List[HistoryEntry]:
        """Ledger entries for a document, newest first."""
        self.get_document(document_id, organization_id, user_id)
        return list(reversed(self.history.list_entries(document_id)))

    def activate_entry(
        self,
        document_id: str,
        entry_id: str,
        organization_id: str,
        user_id: str,
    ) -> Document:
        """
        Make a past fit the active transform again.

        Accuracy and bounds are re-derived from the stored parameters and
        control points rather than copied from the ledger.
        """
        document = self.get_document(document_id, organization_id, user_id)
        entry = self.history.get_entry(document_id, entry_id)

        accuracy = evaluate_accuracy(entry.transform, entry.control_points)
        bounds = bounds_from_points(entry.control_points)
        extent_bounds = None
        if document.width_px > 0 and document.height_px > 0:
            extent_bounds = bounds_from_raster(entry.transform, document.width_px, document.height_px).union(bounds)

        active_fit = ActiveFit(
            history_entry_id=entry.entry_id,
            family=entry.family,
            polynomial_order=entry.polynomial_order,
            transform=entry.transform,
            control_points=entry.control_points,
            accuracy=accuracy,
            bounds=bounds,
            extent_bounds=extent_bounds,
            fitted_at=entry.fitted_at,
            fitted_by=entry.fitted_by,
        )
        document = self.storage.set_active_fit(document_id, active_fit, expected_version=document.version)
        logger.info(f"Re-activated fit {entry_id} on document {document_id} by {user_id}")
        return document


# Global service instance
georeference_service = GeoreferenceService()
