"""
Application configuration settings.
"""

from pathlib import Path
from typing import List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # API Settings
    api_v1_prefix: str = "/api/v1"
    debug: bool = False
    
    # File Storage
    data_dir: Path = Path("./data")
    
    # Storage Root for rendered tiles
    storage_root: Path = Path("./storage")
    
    # Upload Limits
    max_file_size_mb: int = 50
    allowed_content_types: list[str] = ["application/pdf", "image/png", "image/jpeg"]
    
    # Rasterization Settings
    default_dpi: int = 150
    max_dpi: int = 600
    min_dpi: int = 72
    
    # ============================================================
    # GEOREFERENCING SETTINGS
    # ============================================================
    
    # --- Control Point Validation ---
    # Design matrices with a condition number above this are degenerate
    condition_number_threshold: float = 1e8
    # Two control points closer than this (pixels) are coincident
    coincident_tolerance_px: float = 1e-6
    # Highest polynomial order accepted
    max_polynomial_order: int = 3
    
    # --- Solver ---
    # Relative singular value below which a system is singular
    singular_pivot_tolerance: float = 1e-12
    
    # --- Accuracy ---
    # "haversine" (great-circle) or "equirectangular"
    residual_distance_method: str = "haversine"
    
    # --- Bounds ---
    # Points sampled along each raster edge when computing the footprint
    bounds_edge_samples: int = 16
    
    # ============================================================
    # TILE GENERATION SETTINGS
    # ============================================================
    
    default_zoom_levels: List[int] = [0, 1, 2, 3, 4, 5, 6]
    default_priority: int = 5
    min_priority: int = 1
    max_priority: int = 10
    max_zoom: int = 22
    tile_size: int = 256
    
    # --- Retry Policy ---
    tile_max_attempts: int = 3
    tile_backoff_base_seconds: float = 0.5
    tile_backoff_max_seconds: float = 8.0
    
    # --- Timeouts (seconds) ---
    render_timeout_seconds: float = 30.0
    storage_timeout_seconds: float = 10.0
    
    # --- Workers ---
    tile_worker_count: int = 2
    
    # --- Access ---
    # user id -> organization ids, seeded into the membership registry
    organization_memberships: dict[str, List[str]] = {}
    
    # --- Quota ---
    # Tiles each organization may generate
    default_tile_quota: int = 100_000
    
    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024
    
    @property
    def documents_dir(self) -> Path:
        return self.data_dir / "documents"
    
    @property
    def jobs_dir(self) -> Path:
        return self.data_dir / "jobs"
    
    @property
    def tiles_dir(self) -> Path:
        return self.storage_root / "tiles"
    
    class Config:
        env_prefix = "GEOTILE_"
        env_file = ".env"
        extra = "ignore"


# Global settings instance
settings = Settings()
