"""
HTTP API package for the CDC projector.

This package provides:
- The `posts` source store schema and repository
- Read/write routes with cache-aside reads and degraded-mode fallbacks
"""

from .models import Base, Post
from .store import SourceStore
from .app import PostsApi, create_app

__all__ = [
    "Base",
    "Post",
    "SourceStore",
    "PostsApi",
    "create_app",
]
