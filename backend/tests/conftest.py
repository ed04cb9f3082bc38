"""
Shared fixtures.

Data directories are pointed at a temporary folder before anything from
``geotile`` is imported, since the module-level services create their
directories on import.
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import cv2
import numpy as np
import pytest

_TMP_ROOT = tempfile.mkdtemp(prefix="geotile-tests-")
os.environ.setdefault("GEOTILE_DATA_DIR", str(Path(_TMP_ROOT) / "data"))
os.environ.setdefault("GEOTILE_STORAGE_ROOT", str(Path(_TMP_ROOT) / "storage"))

# Adjust Python path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from geotile.models.document import FileType  # noqa: E402
from geotile.models.geo import ControlPoint  # noqa: E402
from geotile.services.access import AccessService  # noqa: E402
from geotile.services.history import HistoryService  # noqa: E402
from geotile.services.storage import StorageService  # noqa: E402


# Affine scenario: 100 px = 0.001 degrees, origin at (-122.0, 37.0)
SCENARIO_POINTS = [
    ControlPoint(pixel_x=0, pixel_y=0, longitude=-122.0, latitude=37.0),
    ControlPoint(pixel_x=100, pixel_y=0, longitude=-121.999, latitude=37.0),
    ControlPoint(pixel_x=0, pixel_y=100, longitude=-122.0, latitude=37.001),
]


def make_points(pixels, mapping):
    """Control points whose geographic side is ``mapping(x, y)``."""
    points = []
    for x, y in pixels:
        lon, lat = mapping(x, y)
        points.append(ControlPoint(pixel_x=x, pixel_y=y, longitude=lon, latitude=lat))
    return points


def png_bytes(width: int = 64, height: int = 48) -> bytes:
    """A small gradient PNG."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :, 0] = np.linspace(0, 255, width, dtype=np.uint8)[None, :]
    image[:, :, 1] = np.linspace(0, 255, height, dtype=np.uint8)[:, None]
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


@pytest.fixture
def scenario_points():
    return list(SCENARIO_POINTS)


@pytest.fixture
def storage(tmp_path):
    return StorageService(tmp_path / "documents")


@pytest.fixture
def history(storage):
    return HistoryService(storage)


@pytest.fixture
def access():
    return AccessService({"alice": {"org-1"}, "bob": {"org-2"}})


@pytest.fixture
def document(storage):
    """A 64x48 PNG document owned by org-1."""
    return storage.create_document(
        organization_id="org-1",
        name="Survey sheet",
        original_filename="sheet.png",
        file_type=FileType.PNG,
        content=png_bytes(),
        width_px=64,
        height_px=48,
        created_by="alice",
    )


@pytest.fixture
def now():
    return datetime.now(timezone.utc)
