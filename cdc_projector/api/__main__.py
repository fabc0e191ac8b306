"""
Run the HTTP API: python -m cdc_projector.api
"""

import logging
import sys

from aiohttp import web

from ..config import app_config
from ..core.exceptions import FatalConfigurationError
from ..core.logging import setup_logging
from ..projections.cache import create_cache_client
from ..projections.search import create_search_client
from .app import PostsApi, create_app
from .store import SourceStore

logger = logging.getLogger(__name__)


def build_app() -> web.Application:
    api = PostsApi(
        store=SourceStore.from_config(app_config.source_database),
        cache_client=create_cache_client(app_config.cache),
        search_client=create_search_client(app_config.search),
        api_config=app_config.api,
        cache_config=app_config.cache,
        search_config=app_config.search,
    )
    return create_app(api)


def main() -> None:
    setup_logging(app_config.logging, app_config.environment)
    try:
        app_config.validate()
    except FatalConfigurationError as e:
        logger.error(f"Fatal configuration error: {e}")
        sys.exit(1)
    logger.info(f"Starting HTTP API on {app_config.api.host}:{app_config.api.port}")
    web.run_app(build_app(), host=app_config.api.host, port=app_config.api.port, print=None)


if __name__ == "__main__":
    main()
