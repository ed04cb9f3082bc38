"""
API route modules.
"""

from geotile.routes.documents import router as documents_router
from geotile.routes.georeference import router as georeference_router
from geotile.routes.tiles import router as tiles_router

__all__ = [
    "documents_router",
    "georeference_router",
    "tiles_router",
]
