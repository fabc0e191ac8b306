"""
Projection consumers.

Each projection owns exactly one downstream store and applies change
records to it idempotently:
- SearchProjection: Elasticsearch document per row
- CacheProjection: Redis row cache plus per-author sorted-set index
"""

from ..config import AppConfig, ProjectionKind
from .base import ApplyOutcome, Projection, PROJECTED_FIELDS, project_row
from .cache import CacheProjection
from .search import SearchProjection


def build_projection(kind: ProjectionKind, config: AppConfig) -> Projection:
    """Create a projection with its own downstream client."""
    if kind is ProjectionKind.SEARCH:
        return SearchProjection.from_config(config.search)
    if kind is ProjectionKind.CACHE:
        return CacheProjection.from_config(config.cache)
    raise ValueError(f"Unknown projection: {kind}")


__all__ = [
    "ApplyOutcome",
    "Projection",
    "PROJECTED_FIELDS",
    "project_row",
    "CacheProjection",
    "SearchProjection",
    "build_projection",
]
